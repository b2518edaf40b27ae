"""Exception taxonomy for turnchain."""

from __future__ import annotations


class TurnchainError(Exception):
    """Base class for every error raised by turnchain."""


class ValidationError(TurnchainError, ValueError):
    """A message, function spec or config was built with an invalid combination."""


class MergeError(TurnchainError):
    """A delta stream could not be reduced into a well-formed message."""


class ProviderError(TurnchainError):
    """The model client failed to produce a response."""


class ChainError(TurnchainError):
    """A chain run was halted by its own run policy."""


class DuplicateNameError(TurnchainError, ValueError):
    """A function name is already registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Function already registered: {name}")
        self.name = name


class FunctionNotFoundError(TurnchainError, KeyError):
    """No function is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown function: {self.name}"


class ExecutionError(TurnchainError):
    """
    A function executor failed.

    Never raised out of the registry: it is carried on a failed
    ``FunctionResult`` and turned into a ``tool`` message for the model.
    """

    def __init__(self, name: str, cause: BaseException | str) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"{name}: {cause}")

    @property
    def description(self) -> str:
        if isinstance(self.cause, BaseException):
            return f"{type(self.cause).__name__}: {self.cause}"
        return str(self.cause)
