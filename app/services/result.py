from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a best-effort step (audit log write, LLM polish).

    A failure never fails the reply turn; it is surfaced in the debug payload.
    """

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

    @staticmethod
    def from_exception(exc: BaseException, code: str) -> "Result[T]":
        return Result.failure(f"{type(exc).__name__}: {exc}", code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def error_payload(self) -> Optional[dict[str, Any]]:
        """Shape stored as `debug.log_error`; None on success."""
        if self.ok:
            return None
        return {"code": self.error_code, "error": self.error}
