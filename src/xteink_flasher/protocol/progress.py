"""
Progress events for device operations.

Device operations are generators: they yield ``ProgressEvent`` items while
transferring and return their result when done. Callers either iterate the
generator themselves, or hand it to ``drive`` to push every event into a
callback and get the result back.

Example:
    data = drive(conn.read_full_flash(), on_progress=print)
"""

from dataclasses import dataclass
from typing import Callable, Generator, Optional, TypeVar

from xteink_flasher.core.errors import Cancelled

T = TypeVar("T")

ProgressCallback = Callable[[str, int, int], None]


@dataclass(frozen=True)
class ProgressEvent:
    unit: str
    current: int
    total: int


Operation = Generator[ProgressEvent, None, T]


class CancellationToken:
    """Cooperative cancellation flag, checked between transfer blocks."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled("Operation cancelled")


def drive(
    operation: Operation,
    on_progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
) -> T:
    """
    Run an operation to completion, forwarding progress to a callback.

    Raises:
        Cancelled: If ``cancel`` is set between two events
    """
    while True:
        if cancel is not None and cancel.cancelled:
            operation.close()
            cancel.raise_if_cancelled()
        try:
            event = next(operation)
        except StopIteration as stop:
            return stop.value
        if on_progress:
            on_progress(event.unit, event.current, event.total)
