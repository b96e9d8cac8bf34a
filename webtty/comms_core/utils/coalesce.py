import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)


T = TypeVar("T")


class Coalescer(Generic[T]):
    """
    Collapses bursts of values into the latest one.

    The first value pushed opens a window of ``window`` seconds; values pushed
    while it is open replace the pending one. When the window closes the
    callback receives only the last value.
    """

    def __init__(self, window: float, callback: Callable[[T], None]):
        self.window = window
        self._callback = callback
        self._pending: Optional[T] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> Optional[T]:
        return self._pending

    def push(self, value: T) -> None:
        self._pending = value
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.window, self._fire)

    def flush(self) -> None:
        """Deliver the pending value now instead of waiting for the window to close."""
        if self._handle is not None:
            self._handle.cancel()
            self._fire()

    def cancel(self) -> None:
        """Drop the pending value."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._pending = None

    def _fire(self) -> None:
        value, self._pending, self._handle = self._pending, None, None
        if value is None:
            return
        try:
            self._callback(value)
        except Exception as e:
            logger.exception(f"Coalesced callback failed for {value!r}: {e}")
