"""Keyword search over a session's chunks."""

from __future__ import annotations

from dataclasses import dataclass, field

from .models import Chunk
from .store import GraphDB
from .text import query_terms

OVERFETCH = 3
MAX_OCCURRENCES = 5


@dataclass(slots=True)
class SearchHit:
    chunk: Chunk
    resource_name: str
    score: int
    keywords: list[str] = field(default_factory=list)


def score_chunk(chunk: Chunk, query: str, terms: list[str]) -> tuple[int, list[str]]:
    """Rank a matching chunk: title hits first, then body occurrences and node type."""
    q = query.lower().strip()
    title = (chunk.title or "").lower()
    score = 0
    if title == q:
        score += 10
    elif q and q in title:
        score += 6
    matched = [t for t in terms if t in title]
    score += 4 * len(matched)
    if q:
        score += min(chunk.content.lower().count(q), MAX_OCCURRENCES)
    if chunk.node_type in ("definition", "theorem"):
        score += 2
    elif chunk.node_type == "question":
        score += 1
    return score, matched


def search_chunks(db: GraphDB, session_id: str, query: str, limit: int = 10) -> tuple[list[SearchHit], list[str]]:
    """Best ``limit`` hits, plus the ids of every chunk that matched.

    A chunk matches when its title or content contains every query term
    longer than one character.
    """
    terms = query_terms(query)
    if not terms or limit <= 0:
        return [], []
    with db.read() as tx:
        chunks = tx.search_chunks(session_id, terms, limit * OVERFETCH)
        names = {r.id: r.name for r in tx.list_resources(session_id)}
    hits = []
    for chunk in chunks:
        score, matched = score_chunk(chunk, query, terms)
        hits.append(
            SearchHit(chunk=chunk, resource_name=names.get(chunk.resource_id, ""), score=score, keywords=matched)
        )
    hits.sort(key=lambda h: -h.score)
    return hits[:limit], [c.id for c in chunks]
