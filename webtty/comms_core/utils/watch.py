import asyncio
from typing import Generic, List, TypeVar
import logging

logger = logging.getLogger(__name__)


T = TypeVar("T")


class WatchChannel(Generic[T]):
    """
    Single-producer channel that always holds a latest value.

    Receivers get the value current at subscription time first, then every
    later value. A receiver that falls behind loses its oldest unread values,
    never the newest one, so the producer never blocks.
    """

    def __init__(self, initial_value: T):
        self._value: T = initial_value
        self._receivers: List[asyncio.Queue] = []

    def send(self, value: T) -> None:
        """Send a new value to all receivers."""
        self._value = value

        for queue in self._receivers:
            # If the queue is full, remove the oldest item to make room for the new one
            if queue.full():
                try:
                    _ = queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(value)

    def subscribe(self, max_size: int = 1) -> 'WatchChannel.WatchReceiver':
        """Subscribe a new receiver to the channel."""
        queue = asyncio.Queue(maxsize=max_size)
        self._receivers.append(queue)
        return WatchChannel.WatchReceiver(queue, self._value, self)

    def unsubscribe(self, queue: asyncio.Queue):
        """Unsubscribe a receiver from the channel."""
        try:
            self._receivers.remove(queue)
        except ValueError:
            # Queue was already removed
            logger.debug("Receiver already unsubscribed from watch channel")

    def get_latest(self) -> T:
        return self._value

    @property
    def receiver_count(self) -> int:
        return len(self._receivers)

    class WatchReceiver:
        def __init__(self, queue: asyncio.Queue, initial_value, channel: 'WatchChannel'):
            self._queue = queue
            self._initial_value = initial_value
            self._first_value = True
            self._channel = channel

        async def recv(self):
            """Receive the next value. Returns the current value on the first call."""
            if self._first_value:
                self._first_value = False
                return self._initial_value
            val = await self._queue.get()
            self._queue.task_done()
            return val

        def close(self):
            """Close this receiver and remove it from the channel."""
            if self._channel:
                self._channel.unsubscribe(self._queue)
                self._channel = None
