"""Session-wide indexing in five ordered phases.

1. foundation: lecture notes and specifications, one at a time
2. linking: every other resource, bounded by the indexing queue
3. cross-linking: one agent run over the whole session
4. cleanup: cleanup agent decisions, then programmatic consistency passes
5. enrichment: per-resource metadata for every graph-indexed resource

A phase starts only after every unit of the previous one is terminal.
Per-resource failures are recorded on the batch and never stop siblings.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, cast

from ..agents.runner import AgentRunner
from ..agents.schemas import CleanupResult, CrossLinkResult
from ..agents.tasks import cleanup_task, cross_link_task
from ..cancellation import CancellationToken
from ..errors import AgentError, CancellationError, ErrorType, IndexingError
from ..graph.cleanup import GraphCleanup
from ..graph.models import Resource
from ..graph.relationships import RelationshipStore
from ..graph.store import GraphDB
from ..settings import Thoroughness
from .batch import BatchState, BatchStatus, PhaseStatus, SessionBatchTracker, UnitStatus
from .batch_log import BatchLog
from .indexer import IndexOutcome, ResourceIndexer
from .queue import WorkQueues

logger = logging.getLogger(__name__)

UnitWork = Callable[[str], Awaitable[IndexOutcome]]
PhaseResult = tuple[PhaseStatus, dict[str, Any]]


class Phase(IntEnum):
    FOUNDATION = 1
    LINKING = 2
    CROSS_LINK = 3
    CLEANUP = 4
    ENRICH = 5


@dataclass(slots=True)
class RunOptions:
    reindex: bool = False
    thoroughness: Thoroughness = "standard"
    skip_phases: frozenset[int] = field(default_factory=frozenset)


class PhaseOrchestrator:
    def __init__(
        self,
        db: GraphDB,
        *,
        tracker: SessionBatchTracker,
        queues: WorkQueues,
        runner: AgentRunner,
        store: RelationshipStore,
        cleanup: GraphCleanup,
        indexer: ResourceIndexer | None = None,
        log_dir: str | Path | None = None,
        cleanup_min_concepts: int = 3,
    ):
        self.db = db
        self.tracker = tracker
        self.queues = queues
        self.runner = runner
        self.store = store
        self.cleanup = cleanup
        self.indexer = indexer or ResourceIndexer(db, runner, store)
        self.log_dir = log_dir
        self.cleanup_min_concepts = cleanup_min_concepts
        self._tasks: set[asyncio.Task[BatchStatus]] = set()

    # --- public surface ---

    async def start_session(
        self, session_id: str, options: RunOptions | None = None
    ) -> asyncio.Task[BatchStatus]:
        """Register a batch for the session and run it in the background.

        Raises ``BatchAlreadyRunning`` when the session has an unfinished batch.
        """
        options = options or RunOptions()
        unit_ids = await asyncio.to_thread(self._select_units, session_id, options.reindex)
        return self._launch(session_id, unit_ids, options)

    async def run_session(self, session_id: str, options: RunOptions | None = None) -> BatchStatus:
        task = await self.start_session(session_id, options)
        return await task

    async def index_resource(
        self, session_id: str, resource_id: str, options: RunOptions | None = None
    ) -> BatchStatus:
        """Run a full batch limited to one resource."""
        options = options or RunOptions()
        resource = await asyncio.to_thread(self._get_resource, resource_id)
        if resource is None or resource.session_id != session_id:
            raise LookupError(f"resource {resource_id} not found in session {session_id}")
        return await self._launch(session_id, [resource_id], options)

    def cancel(self, session_id: str, *, force: bool = False) -> bool:
        cancelled = self.tracker.cancel(session_id, force=force)
        if cancelled:
            logger.info("Cancellation requested for session %s (force=%s)", session_id, force)
        return cancelled

    def status(self, session_id: str) -> BatchStatus | None:
        return self.tracker.status(session_id)

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # --- batch lifecycle ---

    def _launch(self, session_id: str, unit_ids: list[str], options: RunOptions) -> asyncio.Task[BatchStatus]:
        batch = self.tracker.start(session_id, unit_ids)
        logger.info(
            "Starting indexing batch %s for session %s: %d resources", batch.batch_id[:8], session_id, len(unit_ids)
        )
        task = asyncio.get_running_loop().create_task(self._run(batch, options))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, batch: BatchState, options: RunOptions) -> BatchStatus:
        blog = BatchLog(batch.batch_id, batch.session_id, self.log_dir)
        ctx = blog.activate()
        try:
            try:
                resources = await asyncio.to_thread(self._prepare, batch.unit_ids, options.reindex)
            except Exception as e:
                logger.exception("Could not prepare batch for session %s", batch.session_id)
                error_type = ErrorType.DB_ERROR if isinstance(e, sqlite3.Error) else ErrorType.UNKNOWN
                for uid in batch.unit_ids:
                    self.tracker.mark_failed(batch.session_id, uid, error_type, str(e))
                for phase in Phase:
                    self.tracker.set_phase(batch.session_id, phase, PhaseStatus.FAILED, message=str(e))
                return self._finish(batch, blog)

            foundation = [r.id for r in resources if r.type.is_foundation]
            linking = [r.id for r in resources if not r.type.is_foundation]
            graph_work = functools.partial(self._graph_unit, options.thoroughness, batch.token, blog.agents_dir)
            meta_work = functools.partial(self._metadata_unit, batch.token, blog.agents_dir)

            await self._phase(
                batch, Phase.FOUNDATION, options, blog,
                functools.partial(self._unit_phase, batch, blog, foundation, graph_work, sequential=True),
            )
            await self._phase(
                batch, Phase.LINKING, options, blog,
                functools.partial(self._unit_phase, batch, blog, linking, graph_work, sequential=False),
            )
            await self._phase(
                batch, Phase.CROSS_LINK, options, blog, functools.partial(self._cross_link, batch, blog)
            )
            await self._phase(batch, Phase.CLEANUP, options, blog, functools.partial(self._cleanup, batch, blog))
            await self._phase(
                batch, Phase.ENRICH, options, blog, functools.partial(self._enrich, batch, blog, meta_work)
            )
            return self._finish(batch, blog)
        finally:
            if self.tracker.is_running(batch.session_id):
                # Task itself was cancelled.
                batch.token.cancel()
                self.tracker.finish(batch.session_id)
            blog.close()
            blog.deactivate(ctx)

    def _finish(self, batch: BatchState, blog: BatchLog) -> BatchStatus:
        state = self.tracker.finish(batch.session_id)
        status = self.tracker.status(batch.session_id)
        if status is None:
            raise RuntimeError(f"batch for session {batch.session_id} vanished before it finished")
        done = sum(1 for r in status.resources if r.status is UnitStatus.COMPLETED)
        failed = sum(1 for r in status.resources if r.status is UnitStatus.FAILED)
        logger.info(
            "Batch %s for session %s %s: %d completed, %d failed, %d total%s",
            batch.batch_id[:8],
            batch.session_id,
            state.value if state is not None else "finished",
            done,
            failed,
            len(status.resources),
            f" (logs in {blog.dir})" if blog.enabled else "",
        )
        return status

    async def _phase(
        self,
        batch: BatchState,
        phase: Phase,
        options: RunOptions,
        blog: BatchLog,
        body: Callable[[], Awaitable[PhaseResult]],
    ) -> None:
        sid = batch.session_id
        if batch.token.cancelled:
            self.tracker.set_phase(sid, phase, PhaseStatus.CANCELLED)
            return
        if int(phase) in options.skip_phases:
            logger.info("Phase %d skipped by request", phase)
            self.tracker.set_phase(sid, phase, PhaseStatus.SKIPPED, message="skipped by request")
            return

        blog.start_phase(phase)
        self.tracker.set_phase(sid, phase, PhaseStatus.RUNNING)
        try:
            status, fields = await body()
        except CancellationError:
            status, fields = PhaseStatus.CANCELLED, {}
        except Exception as e:
            logger.exception("Phase %d failed for session %s", phase, sid)
            status, fields = PhaseStatus.FAILED, {"message": str(e)}
        finally:
            blog.end_phase()
        self.tracker.set_phase(sid, phase, status, **fields)

    # --- per-resource phases ---

    async def _unit_phase(
        self,
        batch: BatchState,
        blog: BatchLog,
        unit_ids: list[str],
        work: UnitWork,
        *,
        sequential: bool,
        metadata: bool = False,
    ) -> PhaseResult:
        if not unit_ids:
            return PhaseStatus.SKIPPED, {"message": "no resources"}
        queue = self.queues.indexing
        run_unit = functools.partial(self._unit, batch, blog, work=work, metadata=metadata)
        if sequential:
            results = []
            for uid in unit_ids:
                results.append(await queue.submit(functools.partial(run_unit, uid)))
        else:
            futures = [queue.submit(functools.partial(run_unit, uid)) for uid in unit_ids]
            results = await asyncio.gather(*futures)

        completed = results.count(UnitStatus.COMPLETED)
        failed = results.count(UnitStatus.FAILED)
        fields: dict[str, Any] = {"completed": completed, "failed": failed}
        if batch.token.cancelled:
            return PhaseStatus.CANCELLED, fields
        if failed and not completed:
            fields["message"] = "every resource failed"
            return PhaseStatus.FAILED, fields
        return PhaseStatus.COMPLETED, fields

    async def _unit(
        self, batch: BatchState, blog: BatchLog, uid: str, *, work: UnitWork, metadata: bool = False
    ) -> UnitStatus:
        """One resource in one phase. Never raises.

        With ``metadata`` the outcome lands on the unit's metadata fields and
        its graph indexing status is left as phases 1-2 recorded it.
        """
        sid = batch.session_id
        ctx = blog.activate()
        try:
            if batch.token.cancelled:
                return self._record(sid, uid, UnitStatus.CANCELLED, metadata)
            self._record(sid, uid, UnitStatus.INDEXING, metadata)
            try:
                outcome = await work(uid)
            except CancellationError:
                return self._record(sid, uid, UnitStatus.CANCELLED, metadata)
            except IndexingError as e:
                return self._record(
                    sid, uid, UnitStatus.FAILED, metadata,
                    error_type=e.error_type, message=str(e), attempts=e.attempts,
                )
            except Exception as e:
                logger.exception("Unexpected failure indexing %s", uid)
                return self._record(sid, uid, UnitStatus.FAILED, metadata, error_type=ErrorType.UNKNOWN, message=str(e))
            return self._record(
                sid, uid, UnitStatus.COMPLETED, metadata, attempts=outcome.attempts, duration_ms=outcome.duration_ms
            )
        finally:
            blog.deactivate(ctx)

    def _record(
        self,
        sid: str,
        uid: str,
        status: UnitStatus,
        metadata: bool,
        *,
        error_type: ErrorType | None = None,
        message: str | None = None,
        attempts: int = 0,
        duration_ms: int | None = None,
    ) -> UnitStatus:
        if metadata:
            self.tracker.mark_metadata(sid, uid, status, error_type=error_type, message=message)
        elif status is UnitStatus.INDEXING:
            self.tracker.mark_running(sid, uid)
        elif status is UnitStatus.COMPLETED:
            self.tracker.mark_completed(sid, uid, attempts=attempts, duration_ms=duration_ms)
        elif status is UnitStatus.FAILED:
            self.tracker.mark_failed(sid, uid, error_type or ErrorType.UNKNOWN, message or "", attempts=attempts)
        else:
            self.tracker.mark_cancelled(sid, uid)
        return status

    async def _graph_unit(
        self, thoroughness: Thoroughness, token: CancellationToken, log_dir: Path | None, uid: str
    ) -> IndexOutcome:
        return await self.indexer.index_graph(uid, thoroughness, token, log_dir=log_dir)

    async def _metadata_unit(self, token: CancellationToken, log_dir: Path | None, uid: str) -> IndexOutcome:
        return await self.indexer.index_metadata(uid, token, log_dir=log_dir)

    async def _enrich(self, batch: BatchState, blog: BatchLog, work: UnitWork) -> PhaseResult:
        indexed = await asyncio.to_thread(self._graph_indexed, batch.unit_ids)
        return await self._unit_phase(batch, blog, indexed, work, sequential=False, metadata=True)

    # --- session-wide phases ---

    async def _cross_link(self, batch: BatchState, blog: BatchLog) -> PhaseResult:
        sid = batch.session_id
        if await asyncio.to_thread(self._concept_count, sid) == 0:
            return PhaseStatus.SKIPPED, {"message": "no concepts"}
        task = await asyncio.to_thread(cross_link_task, self.db, sid)
        try:
            run = await self.runner.run(task, batch.token, log_dir=blog.agents_dir)
        except AgentError as e:
            return PhaseStatus.FAILED, {"message": f"cross-link agent failed: {e}"}
        if run.result is None:
            return PhaseStatus.COMPLETED, {"links_added": 0, "message": "agent produced no output"}
        added = await asyncio.to_thread(self.store.apply_cross_links, sid, cast(CrossLinkResult, run.result))
        return PhaseStatus.COMPLETED, {"links_added": added}

    async def _cleanup(self, batch: BatchState, blog: BatchLog) -> PhaseResult:
        sid = batch.session_id
        stats: dict[str, int] = {}
        message = None
        concepts = await asyncio.to_thread(self._concept_count, sid)
        if concepts < self.cleanup_min_concepts:
            logger.info("Skipping cleanup agent: %d concepts (minimum %d)", concepts, self.cleanup_min_concepts)
        else:
            task = await asyncio.to_thread(cleanup_task, self.db, sid)
            try:
                run = await self.runner.run(task, batch.token, log_dir=blog.agents_dir)
            except AgentError as e:
                message = f"cleanup agent failed: {e}"
            else:
                if run.result is not None:
                    applied = await asyncio.to_thread(
                        self.cleanup.apply_cleanup_result, sid, cast(CleanupResult, run.result)
                    )
                    stats.update(applied.as_dict())

        batch.token.raise_if_cancelled("cleanup cancelled")
        passes = await asyncio.to_thread(functools.partial(self.cleanup.run, sid, token=batch.token))
        stats.update(passes.as_dict())
        if message is not None:
            return PhaseStatus.FAILED, {"stats": stats, "message": message}
        return PhaseStatus.COMPLETED, {"stats": stats}

    # --- database helpers (run in worker threads) ---

    def _select_units(self, session_id: str, reindex: bool) -> list[str]:
        with self.db.read() as tx:
            resources = [
                r
                for r in tx.list_resources(session_id)
                if r.is_indexed and (reindex or not r.is_graph_indexed)
            ]
        resources.sort(key=lambda r: not r.type.is_foundation)
        return [r.id for r in resources]

    def _prepare(self, unit_ids: list[str], reindex: bool) -> list[Resource]:
        if reindex:
            with self.db.transaction() as tx:
                for uid in unit_ids:
                    tx.set_graph_indexed(uid, False)
        with self.db.read() as tx:
            resources = [tx.get_resource(uid) for uid in unit_ids]
        return [r for r in resources if r is not None]

    def _get_resource(self, resource_id: str) -> Resource | None:
        with self.db.read() as tx:
            return tx.get_resource(resource_id)

    def _graph_indexed(self, unit_ids: list[str]) -> list[str]:
        with self.db.read() as tx:
            resources = [tx.get_resource(uid) for uid in unit_ids]
        return [r.id for r in resources if r is not None and r.is_graph_indexed]

    def _concept_count(self, session_id: str) -> int:
        with self.db.read() as tx:
            return tx.count_concepts(session_id)
