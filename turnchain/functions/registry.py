from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Callable

from turnchain.errors import DuplicateNameError, ExecutionError, FunctionNotFoundError
from turnchain.functions.base import Executor, FunctionSpec
from turnchain.types import ErrorCode, FunctionResult

logger = logging.getLogger(__name__)


class FunctionRegistry:
    def __init__(self, functions: list[FunctionSpec] | None = None):
        self._functions: dict[str, FunctionSpec] = {}
        for spec in functions or []:
            self.register(spec)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    def register(self, spec: FunctionSpec, *, overwrite: bool = False) -> None:
        if spec.name in self._functions and not overwrite:
            raise DuplicateNameError(spec.name)
        self._functions[spec.name] = spec

    def function(
        self, name: str | None = None, description: str | None = None,
        parameters: dict | None = None,
    ) -> Callable[[Executor], Executor]:
        """Decorator registering the wrapped callable as a function."""

        def decorator(fn: Executor) -> Executor:
            self.register(FunctionSpec(
                name=name or fn.__name__,
                description=description or inspect.getdoc(fn) or "",
                executor=fn,
                parameters=parameters,
            ))
            return fn

        return decorator

    def get(self, name: str) -> FunctionSpec | None:
        return self._functions.get(name)

    def resolve(self, name: str) -> FunctionSpec:
        spec = self.get(name)
        if spec is None:
            raise FunctionNotFoundError(name)
        return spec

    def list(self) -> list[FunctionSpec]:
        return sorted(self._functions.values(), key=lambda f: f.name)

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.list()]

    def to_openai_schema(self) -> list[dict]:
        return [f.to_openai_schema() for f in self.list()]

    async def execute(
        self, name: str, arguments: dict[str, Any], context: Any = None
    ) -> FunctionResult:
        """
        Run the executor registered under *name*.

        Never raises for executor failures: an unknown name, an exception
        from the executor or a non-string return value come back as a failed
        ``FunctionResult`` carrying an ``ExecutionError``.
        """
        try:
            spec = self.resolve(name)
        except FunctionNotFoundError as e:
            return FunctionResult.failure(ExecutionError(name, e), ErrorCode.UNKNOWN_FUNCTION)

        start = time.monotonic()
        try:
            result = spec.executor(arguments, context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Function %s raised: %s", name, e, exc_info=True)
            return FunctionResult.failure(
                ExecutionError(name, e), ErrorCode.FUNCTION_EXCEPTION, duration_ms
            )
        duration_ms = int((time.monotonic() - start) * 1000)

        if not isinstance(result, str):
            return FunctionResult.failure(
                ExecutionError(
                    name, f"returned {type(result).__name__}, expected str"
                ),
                ErrorCode.INVALID_RESULT,
                duration_ms,
            )
        return FunctionResult(success=True, content=result, duration_ms=duration_ms)
