from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

import jsonschema

from turnchain.errors import ValidationError

Executor = Callable[[dict, Any], Union[str, Awaitable[str]]]

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def normalize_schema(schema: dict | None) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("properties", {})
    return s


@dataclass
class FunctionSpec:
    """
    A function the model may ask the chain to run.

    ``parameters`` is a JSON Schema describing the arguments.  It is sent
    to the model and checked for well-formedness here, but arguments are
    never validated against it.
    """

    name: str
    description: str
    executor: Executor
    parameters: dict | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not _NAME_RE.match(self.name):
            raise ValidationError(
                f"Invalid function name {self.name!r}: use 1-64 letters, digits, '_' or '-'"
            )
        if not callable(self.executor):
            raise ValidationError(f"Executor for {self.name!r} is not callable")
        if self.parameters is not None:
            if not isinstance(self.parameters, dict):
                raise ValidationError(f"Parameters for {self.name!r} must be a JSON Schema object")
            try:
                jsonschema.Draft202012Validator.check_schema(
                    normalize_schema(self.parameters)
                )
            except jsonschema.SchemaError as e:
                raise ValidationError(
                    f"Invalid parameters schema for {self.name!r}: {e.message}"
                ) from e

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": normalize_schema(self.parameters),
            },
        }
