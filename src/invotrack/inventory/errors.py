from __future__ import annotations

from typing import List, Optional, Tuple


class InvoTrackError(Exception):
    """Base class for inventory core failures.

    `already_handled` is set when the failure was already recorded (for
    example as an invoice in `error` status) so callers do not report it twice.
    """

    def __init__(self, message: str, *, already_handled: bool = False) -> None:
        super().__init__(message)
        self.already_handled = already_handled


class ValidationError(InvoTrackError):
    """Bad input or a reference to a record that does not exist."""

    def __init__(self, message: str, *, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found


class InvalidStatusTransition(ValidationError):
    pass


class StorageError(InvoTrackError):
    pass


class CapacityExceededError(StorageError):
    """The underlying store has no room left for the write."""

    def __init__(self, message: str, *, key: Optional[str] = None, needed_bytes: Optional[int] = None) -> None:
        super().__init__(message)
        self.key = key
        self.needed_bytes = needed_bytes


class PartialBatchError(InvoTrackError):
    """One or more lines of a merge batch failed.

    Collected during a merge and turned into the invoice error message; it
    is not raised out of finalize.
    """

    def __init__(self, failures: Optional[List[Tuple[int, str]]] = None) -> None:
        self.failures: List[Tuple[int, str]] = list(failures or [])
        super().__init__(self.summary())

    def add(self, index: int, exc: BaseException) -> None:
        self.failures.append((index, f"{type(exc).__name__}: {exc}"))
        self.args = (self.summary(),)

    def __bool__(self) -> bool:
        return bool(self.failures)

    def summary(self) -> str:
        if not self.failures:
            return "no failed lines"
        head = "; ".join(f"line {i + 1}: {msg}" for i, msg in self.failures[:5])
        more = len(self.failures) - 5
        if more > 0:
            head += f"; and {more} more"
        return f"{len(self.failures)} line(s) failed to save ({head})"
