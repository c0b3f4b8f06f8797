from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: dict = field(default_factory=dict)

    @staticmethod
    def success(value: T, **details) -> "Result[T]":
        return Result(ok=True, value=value, details=details)

    @staticmethod
    def failure(error: str, code: str = "unknown", **details) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, details=details)

    @property
    def is_stale(self) -> bool:
        return not self.ok and self.error_code == "stale_transition"

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
