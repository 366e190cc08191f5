"""
Outcome of a best-effort chain: the caller decides how to render a degraded
value instead of inferring it from ``None``.
"""
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """A usable value that is worse than what was asked for."""
    value: T
    reason: str

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    reason: str
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def value(self) -> None:
        return None


Outcome = Union[Success[T], Degraded[T], Failed]
