from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass

from ..agents.schemas import CleanupResult
from ..cancellation import CancellationToken
from .models import EntityType, Relationship
from .store import GraphDB, GraphTx
from .text import to_title_case

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupStats:
    duplicate_relationships_removed: int = 0
    orphaned_concepts_removed: int = 0
    integrity_issues_fixed: int = 0

    @property
    def total(self) -> int:
        return (
            self.duplicate_relationships_removed
            + self.orphaned_concepts_removed
            + self.integrity_issues_fixed
        )

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class CleanupAgentStats:
    concepts_merged: int = 0
    concepts_deleted: int = 0
    relationships_deleted: int = 0
    duplicates_after_merge: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class MergeStats:
    canonical_id: str
    merged: list[str]
    relationships_redirected: int = 0
    duplicates_removed: int = 0


def _survivor_order(rel: Relationship) -> tuple[float, float, str]:
    return (-rel.confidence, rel.created_at, rel.id)


def duplicate_relationship_ids(rels: Sequence[Relationship]) -> list[str]:
    """Ids to delete so each identity key keeps one edge.

    The survivor has the highest confidence, then the earliest creation
    time, then the smallest id.
    """
    groups: dict[tuple[str, str, str, str, str], list[Relationship]] = {}
    for rel in rels:
        groups.setdefault(rel.key(), []).append(rel)
    doomed: list[str] = []
    for group in groups.values():
        if len(group) > 1:
            group.sort(key=_survivor_order)
            doomed.extend(r.id for r in group[1:])
    return doomed


def deduplicate_relationships(tx: GraphTx, session_id: str) -> int:
    return tx.delete_relationships(duplicate_relationship_ids(tx.list_relationships(session_id)))


def remove_orphaned_concepts(tx: GraphTx, session_id: str) -> int:
    concepts = tx.list_concepts(session_id)
    if not concepts:
        return 0
    referenced: set[str] = set()
    for rel in tx.list_relationships(session_id):
        if rel.source_type is EntityType.CONCEPT:
            referenced.add(rel.source_id)
        if rel.target_type is EntityType.CONCEPT:
            referenced.add(rel.target_id)
    return tx.delete_concepts([c.id for c in concepts if c.id not in referenced])


def repair_referential_integrity(tx: GraphTx, session_id: str) -> int:
    existing = {c.id for c in tx.list_concepts(session_id)}
    dangling = [
        rel.id
        for rel in tx.list_relationships(session_id)
        if (rel.source_type is EntityType.CONCEPT and rel.source_id not in existing)
        or (rel.target_type is EntityType.CONCEPT and rel.target_id not in existing)
    ]
    return tx.delete_relationships(dangling)


class GraphCleanup:
    """Session-wide consistency passes over concepts and relationships."""

    def __init__(self, db: GraphDB):
        self.db = db

    def run(
        self,
        session_id: str,
        *,
        token: CancellationToken | None = None,
        skip_orphans: bool = False,
    ) -> CleanupStats:
        """Dedup, orphan removal and integrity repair in one transaction.

        A cancellation observed between passes rolls everything back.
        """
        stats = CleanupStats()
        with self.db.transaction() as tx:
            stats.duplicate_relationships_removed = deduplicate_relationships(tx, session_id)
            if token is not None:
                token.raise_if_cancelled("programmatic cleanup cancelled")
            if not skip_orphans:
                stats.orphaned_concepts_removed = remove_orphaned_concepts(tx, session_id)
            if token is not None:
                token.raise_if_cancelled("programmatic cleanup cancelled")
            stats.integrity_issues_fixed = repair_referential_integrity(tx, session_id)

        if stats.total:
            logger.info(
                "Cleanup for session %s: %d duplicate relationships, %d orphaned concepts, %d integrity issues",
                session_id,
                stats.duplicate_relationships_removed,
                stats.orphaned_concepts_removed,
                stats.integrity_issues_fixed,
            )
        else:
            logger.info("Cleanup for session %s: graph is clean", session_id)
        return stats

    def merge_concepts(
        self,
        session_id: str,
        canonical: str,
        merge_names: Sequence[str],
        merged_description: str | None = None,
    ) -> MergeStats:
        with self.db.transaction() as tx:
            stats = self._merge(tx, session_id, canonical, merge_names, merged_description)
            if stats is None:
                raise LookupError(f"canonical concept not found: {to_title_case(canonical)}")
            stats.duplicates_removed = deduplicate_relationships(tx, session_id)
        logger.info(
            "Merged %s into %s: %d relationships redirected, %d duplicates removed",
            stats.merged,
            canonical,
            stats.relationships_redirected,
            stats.duplicates_removed,
        )
        return stats

    def _merge(
        self,
        tx: GraphTx,
        session_id: str,
        canonical_name: str,
        merge_names: Sequence[str],
        merged_description: str | None,
    ) -> MergeStats | None:
        name = to_title_case(canonical_name)
        canonical = tx.get_concept_by_name(session_id, name)
        if canonical is None:
            return None
        stats = MergeStats(canonical_id=canonical.id, merged=[])
        for raw in merge_names:
            dup_name = to_title_case(raw)
            dup = tx.get_concept_by_name(session_id, dup_name)
            if dup is None or dup.id == canonical.id:
                continue
            stats.relationships_redirected += tx.redirect_concept(dup.id, canonical.id, canonical.name)
            for alias in (dup.name, *dup.aliases):
                if alias != canonical.name and alias not in canonical.aliases:
                    canonical.aliases.append(alias)
            tx.delete_concepts([dup.id])
            stats.merged.append(dup.name)
        if merged_description:
            canonical.description = merged_description
        tx.update_concept(canonical)
        return stats

    def apply_cleanup_result(self, session_id: str, result: CleanupResult) -> CleanupAgentStats:
        """Apply a cleanup agent's decisions in one transaction.

        Merges first, then concept deletions (with their relationships), then
        relationship deletions by id, then dedup of whatever merging collapsed.
        """
        stats = CleanupAgentStats()
        if result.is_empty:
            logger.info("Cleanup decisions for session %s: nothing to apply", session_id)
            return stats

        with self.db.transaction() as tx:
            for merge in result.merges:
                merged = self._merge(
                    tx, session_id, merge.canonical_name, merge.merge_names, merge.merged_description
                )
                if merged is None:
                    logger.warning("Canonical concept not found: %s", to_title_case(merge.canonical_name))
                    continue
                stats.concepts_merged += len(merged.merged)

            doomed = []
            for raw in result.delete_concepts:
                concept = tx.get_concept_by_name(session_id, to_title_case(raw))
                if concept is not None:
                    doomed.append(concept.id)
            if doomed:
                stats.relationships_deleted += tx.delete_concept_relationships(doomed)
                stats.concepts_deleted = tx.delete_concepts(doomed)

            stats.relationships_deleted += tx.delete_relationships(result.delete_relationships)
            stats.duplicates_after_merge = deduplicate_relationships(tx, session_id)

        logger.info(
            "Cleanup decisions for session %s: %d merged, %d deleted, %d relationships removed",
            session_id,
            stats.concepts_merged,
            stats.concepts_deleted,
            stats.relationships_deleted,
        )
        return stats

    def clear_graph(self, session_id: str) -> tuple[int, int]:
        """Delete every concept and relationship of a session."""
        with self.db.transaction() as tx:
            rels = tx.delete_session_relationships(session_id)
            concepts = tx.delete_session_concepts(session_id)
            for resource in tx.list_resources(session_id):
                tx.set_graph_indexed(resource.id, False)
        logger.info("Cleared graph for session %s: %d concepts, %d relationships", session_id, concepts, rels)
        return concepts, rels
