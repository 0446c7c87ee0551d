"""Wiring of the graph store, agents and orchestrator behind one object."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .agents.runner import AgentRunner
from .graph.amortiser import Amortiser
from .graph.cleanup import GraphCleanup
from .graph.models import Chunk, ResourceType
from .graph.relationships import RelationshipStore
from .graph.search import SearchHit, search_chunks
from .graph.store import GraphDB, GraphTx
from .indexing.batch import SessionBatchTracker
from .indexing.orchestrator import PhaseOrchestrator
from .indexing.queue import WorkQueues
from .settings import StudyGraphSettings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class StudyGraphService:
    settings: StudyGraphSettings
    db: GraphDB
    tracker: SessionBatchTracker
    queues: WorkQueues
    runner: AgentRunner
    store: RelationshipStore
    cleanup: GraphCleanup
    amortiser: Amortiser
    orchestrator: PhaseOrchestrator

    def search(self, session_id: str, query: str, limit: int = 10) -> list[SearchHit]:
        """Keyword search over the session's chunks; links matching concepts to the hits."""
        hits, matched = search_chunks(self.db, session_id, query, limit)
        logger.info("Search %r in %s: %d results (%d matched)", query, session_id, len(hits), len(matched))
        try:
            self.amortiser.amortise_search(session_id, query, matched)
        except Exception:
            logger.exception("Search amortisation failed for %r", query)
        return hits

    def read_chunk(self, session_id: str, chunk_id: str) -> Chunk:
        with self.db.read() as tx:
            chunk = tx.get_chunk(chunk_id)
            resource = tx.get_resource(chunk.resource_id) if chunk is not None else None
        if chunk is None or resource is None or resource.session_id != session_id:
            raise LookupError(f"chunk {chunk_id} not found in session {session_id}")
        try:
            self.amortiser.amortise_read(session_id, chunk_id)
        except Exception:
            logger.exception("Read amortisation failed for chunk %s", chunk_id)
        return chunk


def build_service(s: StudyGraphSettings | None = None) -> StudyGraphService:
    s = s or default_settings
    db = GraphDB(path=s.db_path)
    db.init()
    tracker = SessionBatchTracker()
    queues = WorkQueues.from_settings(s)
    runner = AgentRunner.from_settings(s)
    store = RelationshipStore(db, fuzzy_threshold=s.fuzzy_threshold)
    cleanup = GraphCleanup(db)
    orchestrator = PhaseOrchestrator(
        db,
        tracker=tracker,
        queues=queues,
        runner=runner,
        store=store,
        cleanup=cleanup,
        log_dir=s.log_dir,
        cleanup_min_concepts=s.cleanup_min_concepts,
    )
    return StudyGraphService(
        settings=s,
        db=db,
        tracker=tracker,
        queues=queues,
        runner=runner,
        store=store,
        cleanup=cleanup,
        amortiser=Amortiser(db, max_new=s.amortise_max_new),
        orchestrator=orchestrator,
    )


# --- loading pre-chunked material ---


class ChunkDoc(BaseModel):
    title: str | None = None
    content: str = ""
    node_type: str = "section"
    metadata: dict[str, Any] = Field(default_factory=dict)
    children: list[ChunkDoc] = Field(default_factory=list)


class FileDoc(BaseModel):
    filename: str
    role: str = "PRIMARY"
    content: str = ""


class ResourceDoc(BaseModel):
    name: str
    type: ResourceType = ResourceType.OTHER
    label: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    files: list[FileDoc] = Field(default_factory=list)
    chunks: list[ChunkDoc] = Field(default_factory=list)


class SessionDoc(BaseModel):
    """Input format of ``load_session``: resources with their chunk trees."""

    session_id: str
    resources: list[ResourceDoc] = Field(default_factory=list)


@dataclass(slots=True)
class LoadStats:
    resources: int = 0
    files: int = 0
    chunks: int = 0


def _add_chunks(
    tx: GraphTx, resource_id: str, docs: list[ChunkDoc], parent_id: str | None, depth: int, start: int
) -> int:
    """Insert a chunk subtree in pre-order; returns the next free index."""
    index = start
    for doc in docs:
        chunk = tx.add_chunk(
            resource_id=resource_id,
            index=index,
            title=doc.title,
            content=doc.content,
            parent_id=parent_id,
            depth=depth,
            node_type=doc.node_type,
            metadata=doc.metadata or None,
        )
        index = _add_chunks(tx, resource_id, doc.children, chunk.id, depth + 1, index + 1)
    return index


def load_session(db: GraphDB, doc: SessionDoc) -> LoadStats:
    """Insert content-indexed resources, files and chunks in one transaction."""
    stats = LoadStats()
    with db.transaction() as tx:
        for res in doc.resources:
            resource = tx.add_resource(
                session_id=doc.session_id,
                name=res.name,
                type=res.type,
                label=res.label,
                metadata=res.metadata or None,
            )
            stats.resources += 1
            for f in res.files:
                tx.add_file(resource_id=resource.id, filename=f.filename, role=f.role, content=f.content)
                stats.files += 1
            count = _add_chunks(tx, resource.id, res.chunks, None, 0, 0)
            stats.chunks += count
            logger.debug("Loaded %s: %d chunks", res.name, count)
    logger.info(
        "Loaded %d resources (%d files, %d chunks) into session %s",
        stats.resources,
        stats.files,
        stats.chunks,
        doc.session_id,
    )
    return stats


def load_session_file(db: GraphDB, path: str | Path) -> LoadStats:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return load_session(db, SessionDoc.model_validate(raw))
