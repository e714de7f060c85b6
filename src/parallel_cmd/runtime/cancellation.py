"""Process-wide, single-shot cancellation signal."""

from __future__ import annotations

import logging

import anyio

__all__ = ["CancellationSignal"]

logger = logging.getLogger(__name__)


class CancellationSignal:
    """Broadcast stop request, fired at most once.

    Every process runner waits on the same signal; firing it wakes all
    of them. Must be created and fired on the event loop thread.

    Example:
        signal = CancellationSignal()
        signal.fire()      # True, first call wins
        signal.fire()      # False, already fired
        await signal.wait()
    """

    def __init__(self) -> None:
        self._event = anyio.Event()

    @property
    def is_fired(self) -> bool:
        return self._event.is_set()

    def fire(self) -> bool:
        """Fire the signal.

        Returns:
            True if this call fired it, False if it had already fired
        """
        if self._event.is_set():
            return False
        self._event.set()
        logger.debug("Cancellation signal fired")
        return True

    async def wait(self) -> None:
        await self._event.wait()
