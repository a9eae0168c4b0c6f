"""
Confidence-gated values.

A field the model may or may not have filled in confidently is either
``Known(value)`` or ``UNKNOWN``. There is no third state, and nothing
downstream may replace ``UNKNOWN`` with a default.
"""

from dataclasses import dataclass
from typing import Any, Generic, Iterable, Optional, TypeVar, Union

T = TypeVar("T")


class _Unknown:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Known(Generic[T]):
    value: T


Gated = Union[Known[T], _Unknown]


def is_known(gated: Any) -> bool:
    return isinstance(gated, Known)


def to_optional(gated: "Gated[T]") -> Optional[T]:
    return gated.value if isinstance(gated, Known) else None


def from_optional(value: Optional[T]) -> "Gated[T]":
    return UNKNOWN if value is None else Known(value)


def gate_choice(raw: Any, allowed: Iterable[str]) -> "Gated[str]":
    """Known only when ``raw`` is a string naming one of ``allowed`` (case-insensitive)."""
    if not isinstance(raw, str):
        return UNKNOWN
    wanted = raw.strip().lower()
    for option in allowed:
        if option.lower() == wanted:
            return Known(option)
    return UNKNOWN


def gate_text(raw: Any) -> "Gated[str]":
    """Known for any non-blank string."""
    if isinstance(raw, str) and raw.strip():
        return Known(raw.strip())
    return UNKNOWN
