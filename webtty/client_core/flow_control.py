"""
Flow Controller - hysteresis window over unacknowledged terminal output.

Every output frame takes credit from the window when it arrives and gives it
back once the emulator has consumed it. Acks report consumed bytes to the
remote side in batches. Above the high-water mark acks are withheld, which is
the backpressure signal; they resume in a single batch once the window has
drained to the low-water mark.
"""

from __future__ import annotations

import logging
from typing import Optional

from webtty.client_core.config import FlowControl

logger = logging.getLogger(__name__)

__all__ = ["FlowController"]


class FlowController:
    """
    Tracks pending (received, not yet consumed) and unacknowledged bytes.

    State is only touched from the event loop that drives the session, so no
    locking is needed.

    Window Management:
    - received(): pending += min(size, limit); throttle when pending > high_water
    - consumed(): pending -= credit; release when pending <= low_water
    - take_ack(): hand out everything consumed since the last ack, unless throttled
    """

    __slots__ = (
        'config',
        'pending',
        'throttled',
        '_unacked',
        '_stats',
    )

    def __init__(self, config: FlowControl):
        if not isinstance(config, FlowControl):
            config = FlowControl.model_validate(config)
        self.config = config
        self.pending = 0
        self.throttled = False
        self._unacked = 0

        self._stats = {
            "bytes_received": 0,
            "bytes_consumed": 0,
            "bytes_acked": 0,
            "ack_count": 0,
            "throttle_count": 0,
        }

    def received(self, size: int) -> int:
        """
        Account for an inbound output frame.

        Args:
            size: Frame payload size in bytes.

        Returns:
            The credit taken by the frame. Pass it back to consumed() once the
            frame has been written to the emulator.
        """
        credit = min(size, self.config.limit)
        self.pending += credit
        self._stats["bytes_received"] += size

        if not self.throttled and self.pending > self.config.high_water:
            self.throttled = True
            self._stats["throttle_count"] += 1
            logger.debug(f"Flow control: throttling (pending {self.pending} > highWater {self.config.high_water})")

        return credit

    def consumed(self, credit: int) -> bool:
        """
        Give back the credit of a frame the emulator has finished writing.

        Returns:
            True if this released the throttle.
        """
        self.pending = max(0, self.pending - credit)
        self._unacked += credit
        self._stats["bytes_consumed"] += credit

        if self.throttled and self.pending <= self.config.low_water:
            self.throttled = False
            logger.debug(f"Flow control: released (pending {self.pending} <= lowWater {self.config.low_water})")
            return True
        return False

    def take_ack(self) -> Optional[int]:
        """
        Collect the bytes consumed since the previous ack.

        Returns:
            The byte count to acknowledge, or None while throttled or when
            nothing has been consumed since the last ack.
        """
        if self.throttled or self._unacked == 0:
            return None

        count, self._unacked = self._unacked, 0
        self._stats["bytes_acked"] += count
        self._stats["ack_count"] += 1
        return count

    @property
    def unacked(self) -> int:
        return self._unacked

    def snapshot(self) -> dict:
        """Counters for diagnostics."""
        return {
            "limit": self.config.limit,
            "high_water": self.config.high_water,
            "low_water": self.config.low_water,
            "pending": self.pending,
            "unacked": self._unacked,
            "throttled": self.throttled,
            **self._stats,
        }
