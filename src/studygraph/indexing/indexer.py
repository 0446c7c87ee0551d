from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from ..agents.runner import AgentRunner
from ..agents.schemas import ExtractionResult, MetadataResult
from ..agents.tasks import extraction_task, metadata_task
from ..cancellation import CancellationToken
from ..errors import AgentError, CancellationError, ErrorType, IndexingError
from ..graph.relationships import RelationshipStore
from ..graph.store import GraphDB
from ..settings import Thoroughness

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexOutcome:
    """Result of one resource in one phase.

    ``applied`` is False when the agent exited cleanly without submitting,
    or when the resource was not eligible; nothing was written then.
    """

    resource_id: str
    attempts: int = 0
    duration_ms: int = 0
    applied: bool = False
    stats: dict[str, Any] = field(default_factory=dict)


def _error_type(exc: Exception) -> ErrorType:
    if isinstance(exc, AgentError):
        return exc.error_type
    if isinstance(exc, sqlite3.Error):
        return ErrorType.DB_ERROR
    return ErrorType.UNKNOWN


class ResourceIndexer:
    """Runs the per-resource agents and writes their results.

    Every failure leaves as ``IndexingError`` carrying the typed error and the
    number of attempts used. ``CancellationError`` passes through untouched.
    """

    def __init__(self, db: GraphDB, runner: AgentRunner, store: RelationshipStore):
        self.db = db
        self.runner = runner
        self.store = store

    async def index_graph(
        self,
        resource_id: str,
        thoroughness: Thoroughness = "standard",
        token: CancellationToken | None = None,
        *,
        log_dir: Path | None = None,
    ) -> IndexOutcome:
        started = time.monotonic()
        outcome = IndexOutcome(resource_id=resource_id)
        try:
            resource = await asyncio.to_thread(self._get_resource, resource_id)
            if not resource.is_indexed:
                logger.warning("Resource %s is not content-indexed yet, skipping", resource.name)
                return outcome
            task = await asyncio.to_thread(extraction_task, self.db, resource_id, thoroughness)
            run = await self.runner.run(task, token, log_dir=log_dir)
            outcome.attempts = run.attempts
            if run.result is None:
                logger.warning("Extraction for %s produced no output; graph left unchanged", resource.name)
            else:
                extraction = cast(ExtractionResult, run.result)
                logger.info(
                    "Extracted %d concepts and %d links from %s",
                    len(extraction.concepts),
                    extraction.link_count,
                    resource.name,
                )
                stats = await asyncio.to_thread(
                    self.store.apply_extraction, resource_id, extraction, started_at=started
                )
                outcome.applied = True
                outcome.stats = {
                    "concepts_created": stats.concepts_created,
                    "concepts_updated": stats.concepts_updated,
                    "relationships_created": stats.relationships_created,
                }
        except CancellationError:
            raise
        except Exception as e:
            raise self._wrap(e, resource_id, "graph indexing", outcome.attempts) from e
        finally:
            outcome.duration_ms = int((time.monotonic() - started) * 1000)
        return outcome

    async def index_metadata(
        self,
        resource_id: str,
        token: CancellationToken | None = None,
        *,
        log_dir: Path | None = None,
    ) -> IndexOutcome:
        started = time.monotonic()
        outcome = IndexOutcome(resource_id=resource_id)
        try:
            resource = await asyncio.to_thread(self._get_resource, resource_id)
            task = await asyncio.to_thread(metadata_task, self.db, resource_id)
            run = await self.runner.run(task, token, log_dir=log_dir)
            outcome.attempts = run.attempts
            if run.result is None:
                logger.warning("Metadata extraction for %s produced no output", resource.name)
            else:
                metadata = cast(MetadataResult, run.result)
                stats = await asyncio.to_thread(
                    self.store.apply_metadata, resource_id, metadata, started_at=started
                )
                outcome.applied = True
                outcome.stats = {
                    "questions": stats.questions,
                    "question_links": stats.question_links,
                    "concepts_updated": stats.concepts_updated,
                }
        except CancellationError:
            raise
        except Exception as e:
            raise self._wrap(e, resource_id, "metadata extraction", outcome.attempts) from e
        finally:
            outcome.duration_ms = int((time.monotonic() - started) * 1000)
        return outcome

    def _get_resource(self, resource_id: str):
        with self.db.read() as tx:
            resource = tx.get_resource(resource_id)
        if resource is None:
            raise LookupError(f"resource {resource_id} not found")
        return resource

    @staticmethod
    def _wrap(exc: Exception, resource_id: str, what: str, attempts: int) -> IndexingError:
        if isinstance(exc, AgentError):
            attempts = exc.attempts
        error_type = _error_type(exc)
        if error_type is ErrorType.UNKNOWN:
            logger.exception("Unexpected error during %s of %s", what, resource_id)
        else:
            logger.error("%s failed for %s (%s): %s", what.capitalize(), resource_id, error_type.value, exc)
        return IndexingError(f"{what} failed: {exc}", error_type, resource_id, attempts=attempts)
