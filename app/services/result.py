from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Failures that will not improve by waiting: fail fast, no retry.
TERMINAL_ERROR_CODES = frozenset(
    {
        "tenant_not_found",
        "tenant_inactive",
        "invalid_item",
        "invalid_transition",
        "transport_rejected",
    }
)


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    @property
    def retryable(self) -> bool:
        """Only meaningful for failures: unknown codes are treated as transient."""
        return not self.ok and self.error_code not in TERMINAL_ERROR_CODES
