"""Cooperative cancellation signal shared between a caller and a search."""

import threading

from loguru import logger


class CancellationToken:
    """
    Set-once flag checked between per-file iterations.

    Safe to cancel from another thread (e.g. a signal handler) while the
    search runs on the event loop.
    """

    def __init__(self):
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.debug("Cancellation requested")
        self._event.set()


class _NeverCancelled(CancellationToken):
    def cancel(self) -> None:
        raise RuntimeError("The shared NONE token cannot be cancelled")


NONE = _NeverCancelled()
