"""Per-batch file logs.

Each batch gets ``{log_dir}/{YYYY-MM-DDTHH-MM-SS}_{batch[:8]}/`` holding a
combined ``batch.log``, one ``phaseN-<name>.log`` per phase and an ``agents/``
directory for agent subprocess output. Handlers hang off the ``studygraph``
logger and only accept records emitted while this batch is the active one in
the current context, so concurrent batches never share a file.
"""

from __future__ import annotations

import contextvars
import logging
import time
from pathlib import Path

logger = logging.getLogger(__name__)

PHASE_NAMES = {
    1: "foundation",
    2: "linking",
    3: "cross-linking",
    4: "graph-cleanup",
    5: "metadata-extraction",
}

FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

_active_batch: contextvars.ContextVar[str | None] = contextvars.ContextVar("studygraph_batch", default=None)


class _BatchFilter(logging.Filter):
    def __init__(self, batch_id: str):
        super().__init__()
        self.batch_id = batch_id

    def filter(self, record: logging.LogRecord) -> bool:
        return _active_batch.get() == self.batch_id


class BatchLog:
    """File logging for one indexing batch. Falls back to console-only when
    the directory cannot be created."""

    def __init__(self, batch_id: str, session_id: str, base_dir: str | Path | None):
        self.batch_id = batch_id
        self.session_id = session_id
        self.dir: Path | None = None
        self._root = logging.getLogger("studygraph")
        self._batch_handler: logging.Handler | None = None
        self._phase_handler: logging.Handler | None = None
        self._phase: int | None = None
        self._filter = _BatchFilter(batch_id)
        if base_dir is None:
            return
        stamp = time.strftime("%Y-%m-%dT%H-%M-%S")
        path = Path(base_dir) / f"{stamp}_{batch_id[:8]}"
        try:
            (path / "agents").mkdir(parents=True, exist_ok=True)
            self._batch_handler = self._add_handler(path / "batch.log")
        except OSError as e:
            logger.warning("Could not create batch log directory %s, logging to console only: %s", path, e)
            return
        self.dir = path

    @property
    def enabled(self) -> bool:
        return self.dir is not None

    @property
    def agents_dir(self) -> Path | None:
        return self.dir / "agents" if self.dir is not None else None

    def activate(self) -> contextvars.Token[str | None]:
        """Route records from the current context to this batch's files."""
        return _active_batch.set(self.batch_id)

    def deactivate(self, token: contextvars.Token[str | None]) -> None:
        _active_batch.reset(token)

    def start_phase(self, phase: int) -> None:
        self.end_phase()
        self._phase = phase
        name = PHASE_NAMES.get(phase, f"phase{phase}")
        if self.dir is not None:
            try:
                self._phase_handler = self._add_handler(self.dir / f"phase{phase}-{name}.log")
            except OSError as e:
                logger.warning("Could not open phase log for phase %d: %s", phase, e)
        logger.info("=== Phase %d: %s ===", phase, name)

    def end_phase(self) -> None:
        if self._phase is not None:
            logger.info("=== End phase %d ===", self._phase)
        self._phase = None
        if self._phase_handler is not None:
            self._remove_handler(self._phase_handler)
            self._phase_handler = None

    def close(self) -> None:
        self.end_phase()
        if self._batch_handler is not None:
            self._remove_handler(self._batch_handler)
            self._batch_handler = None

    def _add_handler(self, path: Path) -> logging.Handler:
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(FORMAT))
        handler.addFilter(self._filter)
        self._root.addHandler(handler)
        return handler

    def _remove_handler(self, handler: logging.Handler) -> None:
        self._root.removeHandler(handler)
        handler.close()
