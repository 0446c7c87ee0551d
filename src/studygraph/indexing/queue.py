from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..settings import StudyGraphSettings

logger = logging.getLogger(__name__)

Unit = Callable[[], Awaitable[Any]]


class WorkQueue:
    """FIFO admission with a hard ceiling on concurrently running units.

    Units start in submission order; with a ceiling above one they may finish
    in any order. The queue never reports unit failures to whoever enqueued
    them; callers needing outcomes track them separately or use ``submit``.
    """

    def __init__(self, name: str, concurrency: int):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.name = name
        self.concurrency = concurrency
        self._pending: deque[tuple[Unit, asyncio.Future[Any] | None]] = deque()
        self._running = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def size(self) -> int:
        """Pending plus running units."""
        return len(self._pending) + self._running

    @property
    def running(self) -> int:
        return self._running

    def enqueue(self, unit: Unit) -> None:
        """Fire and forget."""
        self._admit(unit, None)

    def submit(self, unit: Unit) -> asyncio.Future[Any]:
        """Admit ``unit`` and return a future for its result."""
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._admit(unit, fut)
        return fut

    async def join(self) -> None:
        await self._idle.wait()

    def _admit(self, unit: Unit, fut: asyncio.Future[Any] | None) -> None:
        self._pending.append((unit, fut))
        self._idle.clear()
        self._pump()

    def _pump(self) -> None:
        while self._pending and self._running < self.concurrency:
            unit, fut = self._pending.popleft()
            self._running += 1
            asyncio.get_running_loop().create_task(self._run(unit, fut))

    async def _run(self, unit: Unit, fut: asyncio.Future[Any] | None) -> None:
        try:
            value = await unit()
        except asyncio.CancelledError:
            if fut is not None:
                fut.cancel()
            raise
        except Exception as e:
            if fut is None:
                logger.exception("%s queue: unit failed", self.name)
            elif not fut.done():
                fut.set_exception(e)
        else:
            if fut is not None and not fut.done():
                fut.set_result(value)
        finally:
            self._running -= 1
            self._pump()
            if not self._pending and self._running == 0:
                self._idle.set()


@dataclass
class WorkQueues:
    """The two process-wide queues.

    ``indexing`` bounds the orchestrator's per-resource agent runs.
    ``processing`` is reserved for callers that turn uploaded files into
    chunks; nothing in this package submits to it, but it is sized from
    settings so those callers share one ceiling.
    """

    processing: WorkQueue
    indexing: WorkQueue

    @classmethod
    def from_settings(cls, s: StudyGraphSettings) -> WorkQueues:
        return cls(
            processing=WorkQueue("processing", s.processing_concurrency),
            indexing=WorkQueue("indexing", s.indexing_concurrency),
        )
