from __future__ import annotations

from dataclasses import dataclass, field

from turnchain.errors import ExecutionError


class ErrorCode:
    UNKNOWN_FUNCTION = "unknown_function"
    FUNCTION_EXCEPTION = "function_exception"
    INVALID_RESULT = "invalid_result"


@dataclass
class FunctionResult:
    success: bool
    content: str
    error: ExecutionError | None = None
    error_code: str | None = None
    duration_ms: int = 0
    metadata: dict = field(default_factory=dict)

    @classmethod
    def failure(
        cls, error: ExecutionError, error_code: str, duration_ms: int = 0
    ) -> FunctionResult:
        return cls(
            success=False,
            content=f"ERROR: {error.description}",
            error=error,
            error_code=error_code,
            duration_ms=duration_ms,
        )
