"""Type definitions for utility modules."""

from typing import Protocol, TypeVar


class UtilityError(Exception):
    """Base exception for utility-related errors."""

    pass


class AsyncTimeoutError(UtilityError):
    """Exception raised when async operations timeout."""

    pass


T = TypeVar("T")


class Clock(Protocol):
    """Callable returning the current time as epoch seconds."""

    def __call__(self) -> float:
        ...
