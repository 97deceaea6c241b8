"""Explicit success/failure values for operations that degrade instead of raising.

Storage and provider calls never abort a conversation turn. They return
``Ok(value)`` or ``Err(reason)`` so a caller can tell "no data" from
"operation failed", then usually collapse both to a default with
``unwrap_or``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
D = TypeVar("D")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result carrying a value."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap_or(self, default: D) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err:
    """Failed result carrying a short machine-readable reason."""

    reason: str
    cause: Exception | None = None

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap_or(self, default: D) -> D:
        return default


Result = Union[Ok[T], Err]
