from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..cancellation import CancellationToken
from ..errors import BatchAlreadyRunning, ErrorType
from ..graph.store import new_id

PHASES = (1, 2, 3, 4, 5)


class UnitStatus(str, Enum):
    PENDING = "pending"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (UnitStatus.COMPLETED, UnitStatus.FAILED, UnitStatus.CANCELLED)


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class BatchRunState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class UnitState:
    id: str
    status: UnitStatus = UnitStatus.PENDING
    attempts: int = 0
    duration_ms: int | None = None
    error_type: ErrorType | None = None
    error_message: str | None = None
    metadata_status: UnitStatus | None = None
    metadata_error_type: ErrorType | None = None
    metadata_error_message: str | None = None


@dataclass(slots=True)
class PhaseState:
    status: PhaseStatus = PhaseStatus.PENDING
    message: str | None = None
    links_added: int | None = None
    stats: dict[str, int] | None = None
    completed: int | None = None
    failed: int | None = None


@dataclass
class BatchState:
    """In-memory progress of one session-wide indexing run. Never persisted."""

    session_id: str
    unit_ids: list[str]
    batch_id: str = field(default_factory=new_id)
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    state: BatchRunState = BatchRunState.RUNNING
    units: dict[str, UnitState] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    current: list[str] = field(default_factory=list)
    current_phase: int | None = None
    phases: dict[int, PhaseState] = field(default_factory=lambda: {n: PhaseState() for n in PHASES})

    def __post_init__(self) -> None:
        for uid in self.unit_ids:
            self.units.setdefault(uid, UnitState(id=uid))

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


# --- point-in-time snapshots handed to callers ---


class ResourceProgress(BaseModel):
    id: str
    status: UnitStatus
    attempts: int = 0
    duration_ms: int | None = None
    error_type: ErrorType | None = None
    error_message: str | None = None
    metadata_status: UnitStatus | None = None
    metadata_error_type: ErrorType | None = None
    metadata_error_message: str | None = None


class PhaseProgress(BaseModel):
    status: PhaseStatus
    message: str | None = None
    links_added: int | None = None
    stats: dict[str, int] | None = None
    completed: int | None = None
    failed: int | None = None


class PhaseOverview(BaseModel):
    current: int | None = None
    phase1: PhaseProgress
    phase2: PhaseProgress
    phase3: PhaseProgress
    phase4: PhaseProgress
    phase5: PhaseProgress


class BatchStatus(BaseModel):
    session_id: str
    batch_id: str
    state: BatchRunState
    resources: list[ResourceProgress] = Field(default_factory=list)
    phase: PhaseOverview
    current_unit_ids: list[str] = Field(default_factory=list)
    completed_unit_ids: list[str] = Field(default_factory=list)
    started_at: float
    finished_at: float | None = None
    cancelled: bool = False


def _phase_progress(p: PhaseState) -> PhaseProgress:
    return PhaseProgress(
        status=p.status,
        message=p.message,
        links_added=p.links_added,
        stats=dict(p.stats) if p.stats is not None else None,
        completed=p.completed,
        failed=p.failed,
    )


class SessionBatchTracker:
    """Thread-safe store of the current ``BatchState`` per session.

    A finished batch stays readable until the next ``start`` for the same
    session replaces it, or until ``discard``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches: dict[str, BatchState] = {}

    def start(self, session_id: str, unit_ids: list[str]) -> BatchState:
        with self._lock:
            existing = self._batches.get(session_id)
            if existing is not None and existing.state is BatchRunState.RUNNING:
                raise BatchAlreadyRunning(session_id)
            batch = BatchState(session_id=session_id, unit_ids=list(unit_ids))
            self._batches[session_id] = batch
            return batch

    def get(self, session_id: str) -> BatchState | None:
        with self._lock:
            return self._batches.get(session_id)

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            batch = self._batches.get(session_id)
            return batch is not None and batch.state is BatchRunState.RUNNING

    def cancel(self, session_id: str, *, force: bool = False) -> bool:
        """Request cancellation. True only the first time for a running batch.

        ``force`` also aborts in-flight agent subprocesses.
        """
        with self._lock:
            batch = self._batches.get(session_id)
            if batch is None or batch.state is not BatchRunState.RUNNING:
                return False
            token = batch.token
        first = token.cancel()
        if force:
            token.abort()
        return first

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._batches.pop(session_id, None)

    # --- unit bookkeeping ---

    def _unit(self, session_id: str, unit_id: str) -> tuple[BatchState, UnitState] | None:
        batch = self._batches.get(session_id)
        if batch is None:
            return None
        unit = batch.units.get(unit_id)
        if unit is None:
            unit = batch.units[unit_id] = UnitState(id=unit_id)
            batch.unit_ids.append(unit_id)
        return batch, unit

    def mark_running(self, session_id: str, unit_id: str) -> None:
        with self._lock:
            found = self._unit(session_id, unit_id)
            if found is None:
                return
            batch, unit = found
            unit.status = UnitStatus.INDEXING
            if unit_id not in batch.current:
                batch.current.append(unit_id)

    def mark_completed(
        self, session_id: str, unit_id: str, *, attempts: int = 1, duration_ms: int | None = None
    ) -> None:
        with self._lock:
            found = self._unit(session_id, unit_id)
            if found is None:
                return
            batch, unit = found
            unit.status = UnitStatus.COMPLETED
            unit.attempts = attempts
            unit.duration_ms = duration_ms
            if unit_id in batch.current:
                batch.current.remove(unit_id)
            if unit_id not in batch.completed:
                batch.completed.append(unit_id)

    def mark_failed(
        self,
        session_id: str,
        unit_id: str,
        error_type: ErrorType,
        message: str,
        *,
        attempts: int = 0,
        duration_ms: int | None = None,
    ) -> None:
        with self._lock:
            found = self._unit(session_id, unit_id)
            if found is None:
                return
            batch, unit = found
            if unit.status is UnitStatus.COMPLETED:
                return
            unit.status = UnitStatus.FAILED
            unit.error_type = error_type
            unit.error_message = message
            unit.attempts = attempts
            unit.duration_ms = duration_ms
            if unit_id in batch.current:
                batch.current.remove(unit_id)

    def mark_cancelled(self, session_id: str, unit_id: str) -> None:
        with self._lock:
            found = self._unit(session_id, unit_id)
            if found is None:
                return
            batch, unit = found
            if unit.status is UnitStatus.COMPLETED:
                return
            unit.status = UnitStatus.CANCELLED
            if unit_id in batch.current:
                batch.current.remove(unit_id)

    def mark_metadata(
        self,
        session_id: str,
        unit_id: str,
        status: UnitStatus,
        *,
        error_type: ErrorType | None = None,
        message: str | None = None,
    ) -> None:
        """Record the enrichment outcome of a unit without touching its graph status."""
        with self._lock:
            found = self._unit(session_id, unit_id)
            if found is None:
                return
            batch, unit = found
            unit.metadata_status = status
            unit.metadata_error_type = error_type
            unit.metadata_error_message = message
            if status is UnitStatus.INDEXING:
                if unit_id not in batch.current:
                    batch.current.append(unit_id)
            elif unit_id in batch.current:
                batch.current.remove(unit_id)

    def set_phase(self, session_id: str, phase: int, status: PhaseStatus, **fields: Any) -> None:
        """Record a phase transition; extra keyword fields land on ``PhaseState``."""
        with self._lock:
            batch = self._batches.get(session_id)
            if batch is None:
                return
            state = batch.phases[phase]
            state.status = status
            for name, value in fields.items():
                setattr(state, name, value)
            if status is PhaseStatus.RUNNING:
                batch.current_phase = phase

    def finish(self, session_id: str) -> BatchRunState | None:
        with self._lock:
            batch = self._batches.get(session_id)
            if batch is None:
                return None
            if batch.token.cancelled:
                batch.state = BatchRunState.CANCELLED
                for unit in batch.units.values():
                    if not unit.status.terminal:
                        unit.status = UnitStatus.CANCELLED
                    if unit.metadata_status is not None and not unit.metadata_status.terminal:
                        unit.metadata_status = UnitStatus.CANCELLED
                for phase in batch.phases.values():
                    if phase.status in (PhaseStatus.PENDING, PhaseStatus.RUNNING):
                        phase.status = PhaseStatus.CANCELLED
            else:
                batch.state = BatchRunState.COMPLETED
            batch.current.clear()
            batch.current_phase = None
            batch.finished_at = time.time()
            return batch.state

    def status(self, session_id: str) -> BatchStatus | None:
        with self._lock:
            batch = self._batches.get(session_id)
            if batch is None:
                return None
            return BatchStatus(
                session_id=batch.session_id,
                batch_id=batch.batch_id,
                state=batch.state,
                resources=[
                    ResourceProgress(
                        id=u.id,
                        status=u.status,
                        attempts=u.attempts,
                        duration_ms=u.duration_ms,
                        error_type=u.error_type,
                        error_message=u.error_message,
                        metadata_status=u.metadata_status,
                        metadata_error_type=u.metadata_error_type,
                        metadata_error_message=u.metadata_error_message,
                    )
                    for u in (batch.units[uid] for uid in batch.unit_ids)
                ],
                phase=PhaseOverview(
                    current=batch.current_phase,
                    **{f"phase{n}": _phase_progress(batch.phases[n]) for n in PHASES},
                ),
                current_unit_ids=list(batch.current),
                completed_unit_ids=list(batch.completed),
                started_at=batch.started_at,
                finished_at=batch.finished_at,
                cancelled=batch.token.cancelled,
            )
