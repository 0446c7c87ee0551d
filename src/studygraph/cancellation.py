from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable

from .errors import CancellationError


class CancellationToken:
    """Cooperative cancellation flag with an optional forceful abort.

    ``cancel()`` only asks work not to start; units poll ``cancelled`` at
    coarse checkpoints. ``abort()`` implies ``cancel()`` and additionally
    wakes ``wait_aborted()`` so running subprocesses can be killed.

    Safe to trigger from any thread.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._aborted = threading.Event()
        self._lock = threading.Lock()
        self._abort_callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def cancel(self) -> bool:
        """Set the flag. Returns True the first time only."""
        with self._lock:
            if self._cancelled.is_set():
                return False
            self._cancelled.set()
            return True

    def abort(self) -> None:
        self.cancel()
        with self._lock:
            if self._aborted.is_set():
                return
            self._aborted.set()
            callbacks, self._abort_callbacks = self._abort_callbacks, []
        for cb in callbacks:
            cb()

    def raise_if_cancelled(self, message: str = "Operation cancelled") -> None:
        if self.cancelled:
            raise CancellationError(message)

    async def wait_aborted(self) -> None:
        """Block until ``abort()`` is called."""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()

        def _wake() -> None:
            loop.call_soon_threadsafe(lambda: fut.done() or fut.set_result(None))

        with self._lock:
            if self._aborted.is_set():
                return
            self._abort_callbacks.append(_wake)
        try:
            await fut
        finally:
            with self._lock:
                if _wake in self._abort_callbacks:
                    self._abort_callbacks.remove(_wake)
