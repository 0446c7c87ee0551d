"""Low-confidence edges created as a side effect of search and read traffic.

Both entry points are best-effort: any failure is logged and reported as
zero new edges so the read or search they augment never fails.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .models import Chunk, Concept, EntityType, Provenance, Relationship
from .store import GraphDB, new_id
from .text import contains_word, query_terms

logger = logging.getLogger(__name__)

SEARCH_EXACT_NAME = 0.7
SEARCH_NAME_TOKENS = 0.6
SEARCH_ALIAS = 0.5
SEARCH_DESCRIPTION = 0.4

READ_TITLE_AND_CONTENT = 0.7
READ_TITLE = 0.6
READ_CONTENT = 0.5
READ_ALIAS = 0.45


def score_search_match(concept: Concept, query: str, terms: Sequence[str]) -> float | None:
    if not terms:
        return None
    name = concept.name.lower()
    if name == " ".join(query.lower().split()):
        return SEARCH_EXACT_NAME
    if all(t in name for t in terms):
        return SEARCH_NAME_TOKENS
    if any(all(t in alias.lower() for t in terms) for alias in concept.aliases):
        return SEARCH_ALIAS
    if concept.description and all(t in concept.description.lower() for t in terms):
        return SEARCH_DESCRIPTION
    return None


def score_read_match(concept: Concept, chunk: Chunk) -> float | None:
    title = chunk.title or ""
    in_title = contains_word(title, concept.name)
    in_content = contains_word(chunk.content, concept.name)
    if in_title and in_content:
        return READ_TITLE_AND_CONTENT
    if in_title:
        return READ_TITLE
    if in_content:
        return READ_CONTENT
    for alias in concept.aliases:
        if contains_word(title, alias) or contains_word(chunk.content, alias):
            return READ_ALIAS
    return None


class Amortiser:
    def __init__(self, db: GraphDB, *, max_new: int = 10):
        self.db = db
        self.max_new = max_new

    def amortise_search(self, session_id: str, query: str, chunk_ids: Sequence[str]) -> int:
        """Link concepts matching a search query to every chunk it returned."""
        try:
            if not chunk_ids:
                return 0
            terms = query_terms(query)
            with self.db.read() as tx:
                scored = []
                for concept in tx.list_concepts(session_id):
                    score = score_search_match(concept, query, terms)
                    if score is not None:
                        scored.append((concept, score))
                if not scored:
                    return 0
                scored.sort(key=lambda cs: -cs[1])
                chunks = [c for c in (tx.get_chunk(cid) for cid in chunk_ids) if c is not None]
            pairs = [(chunk, concept, score) for chunk in chunks for concept, score in scored]
            created = self._link(session_id, pairs)
            if created:
                logger.info("Search amortisation created %d relationships for query %r", created, query)
            return created
        except Exception:
            logger.exception("Search amortisation failed for query %r", query)
            return 0

    def amortise_read(self, session_id: str, chunk_id: str) -> int:
        """Link concepts mentioned in a chunk that was just read."""
        try:
            with self.db.read() as tx:
                chunk = tx.get_chunk(chunk_id)
                if chunk is None:
                    return 0
                scored = []
                for concept in tx.list_concepts(session_id):
                    score = score_read_match(concept, chunk)
                    if score is not None:
                        scored.append((concept, score))
            scored.sort(key=lambda cs: -cs[1])
            created = self._link(session_id, [(chunk, concept, score) for concept, score in scored])
            if created:
                logger.info("Read amortisation created %d relationships for chunk %s", created, chunk_id)
            return created
        except Exception:
            logger.exception("Read amortisation failed for chunk %s", chunk_id)
            return 0

    def _link(self, session_id: str, pairs: Sequence[tuple[Chunk, Concept, float]]) -> int:
        if not pairs or self.max_new <= 0:
            return 0
        with self.db.transaction() as tx:
            existing = tx.relationship_pairs(session_id)
            new: list[Relationship] = []
            for chunk, concept, score in pairs:
                if len(new) >= self.max_new:
                    break
                if (chunk.id, concept.id) in existing:
                    continue
                existing.add((chunk.id, concept.id))
                new.append(
                    Relationship(
                        id=new_id(),
                        session_id=session_id,
                        source_type=EntityType.CHUNK,
                        source_id=chunk.id,
                        source_label=chunk.title,
                        target_type=EntityType.CONCEPT,
                        target_id=concept.id,
                        target_label=concept.name,
                        relationship="related_to",
                        confidence=score,
                        created_by=Provenance.AMORTISED,
                    )
                )
            return tx.insert_relationships(new)
