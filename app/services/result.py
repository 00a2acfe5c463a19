from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")
U = TypeVar("U")


@dataclass
class Result(Generic[T]):
    """Outcome of parsing untrusted data at a service boundary."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "parse_error") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if not self.ok:
            return Result(ok=False, error=self.error, error_code=self.error_code)
        return Result.success(fn(self.value))

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
