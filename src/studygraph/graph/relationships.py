from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from ..agents.schemas import (
    DEFAULT_CONCEPT_CONFIDENCE,
    DEFAULT_FILE_CONFIDENCE,
    DEFAULT_QUESTION_CONFIDENCE,
    CrossLinkResult,
    ExtractionResult,
    MetadataResult,
)
from .models import Chunk, EntityType, Provenance, Question, Relationship, Resource
from .store import GraphDB, GraphTx, new_id
from .text import find_chunk_by_label, fuzzy_match_title, title_index, to_title_case

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExtractionStats:
    concepts_created: int = 0
    concepts_updated: int = 0
    relationships_removed: int = 0
    relationships_created: int = 0


@dataclass(slots=True)
class MetadataStats:
    questions: int = 0
    question_links: int = 0
    concepts_updated: int = 0
    chunks_updated: int = 0


def _elapsed_ms(started_at: float | None) -> int | None:
    if started_at is None:
        return None
    return int((time.monotonic() - started_at) * 1000)


class _Batch:
    """Relationships for one write, deduplicated on their identity key.

    A repeated key keeps the higher-confidence edge.
    """

    def __init__(self) -> None:
        self._rels: dict[tuple[str, str, str, str, str], Relationship] = {}

    def add(self, rel: Relationship) -> None:
        key = rel.key()
        prev = self._rels.get(key)
        if prev is None or rel.confidence > prev.confidence:
            self._rels[key] = rel

    def __len__(self) -> int:
        return len(self._rels)

    def values(self) -> list[Relationship]:
        return list(self._rels.values())


class RelationshipStore:
    """Turns agent results into normalised relationship rows."""

    def __init__(self, db: GraphDB, *, fuzzy_threshold: float = 0.6):
        self.db = db
        self.fuzzy_threshold = fuzzy_threshold

    # --- extraction ---

    def apply_extraction(
        self, resource_id: str, result: ExtractionResult, *, started_at: float | None = None
    ) -> ExtractionStats:
        """Replace everything this resource's previous extraction produced.

        Runs as one transaction: delete the resource's system edges, upsert
        concepts, insert the new edges and flag the resource graph-indexed.
        """
        stats = ExtractionStats()
        with self.db.transaction() as tx:
            resource = tx.get_resource(resource_id)
            if resource is None:
                raise LookupError(f"resource {resource_id} not found")
            chunks = tx.list_chunks(resource_id)
            stats.relationships_removed = tx.delete_system_relationships_for_resource(
                resource_id, [c.id for c in chunks]
            )

            for concept in result.concepts:
                name = to_title_case(concept.name)
                if not name:
                    continue
                _, created = tx.upsert_concept(
                    session_id=resource.session_id,
                    name=name,
                    description=concept.description or None,
                    aliases=concept.aliases,
                )
                if created:
                    stats.concepts_created += 1
                else:
                    stats.concepts_updated += 1

            batch = self._extraction_batch(tx, resource, chunks, result)
            stats.relationships_created = tx.insert_relationships(batch.values())
            tx.set_graph_indexed(resource_id, True, _elapsed_ms(started_at))

        logger.info(
            "Extraction applied for %s: %d concepts new, %d updated, %d edges replaced by %d",
            resource.name,
            stats.concepts_created,
            stats.concepts_updated,
            stats.relationships_removed,
            stats.relationships_created,
        )
        return stats

    def _extraction_batch(
        self, tx: GraphTx, resource: Resource, chunks: list[Chunk], result: ExtractionResult
    ) -> _Batch:
        concept_ids = {c.name: c.id for c in tx.list_concepts(resource.session_id)}
        titles = title_index((c.title, c.id) for c in chunks)
        chunk_by_id = {c.id: c for c in chunks}
        batch = _Batch()

        def edge(
            source_type: EntityType,
            source_id: str,
            source_label: str | None,
            target_id: str,
            target_label: str,
            kind: str,
            confidence: float,
        ) -> Relationship:
            return Relationship(
                id=new_id(),
                session_id=resource.session_id,
                source_type=source_type,
                source_id=source_id,
                source_label=source_label,
                target_type=EntityType.CONCEPT,
                target_id=target_id,
                target_label=target_label,
                relationship=kind,
                confidence=confidence,
                created_by=Provenance.SYSTEM,
                created_from_resource_id=resource.id,
            )

        for link in result.file_concept_links:
            name = to_title_case(link.concept_name)
            concept_id = concept_ids.get(name)
            if concept_id is None:
                logger.debug("Dropping link to unknown concept %r", name)
                continue
            source_type, source_id, source_label = EntityType.RESOURCE, resource.id, resource.name
            if link.chunk_title:
                chunk_id = fuzzy_match_title(link.chunk_title, titles, self.fuzzy_threshold)
                if chunk_id is not None:
                    source_type, source_id = EntityType.CHUNK, chunk_id
                    source_label = chunk_by_id[chunk_id].title
            conf = DEFAULT_FILE_CONFIDENCE if link.confidence is None else link.confidence
            batch.add(edge(source_type, source_id, source_label, concept_id, name, link.relationship, conf))

        for link in result.concept_concept_links:
            src_name = to_title_case(link.source_concept)
            dst_name = to_title_case(link.target_concept)
            src_id, dst_id = concept_ids.get(src_name), concept_ids.get(dst_name)
            if src_id is None or dst_id is None or src_id == dst_id:
                continue
            conf = DEFAULT_CONCEPT_CONFIDENCE if link.confidence is None else link.confidence
            batch.add(edge(EntityType.CONCEPT, src_id, src_name, dst_id, dst_name, link.relationship, conf))

        for link in result.question_concept_links:
            name = to_title_case(link.concept_name)
            concept_id = concept_ids.get(name)
            if concept_id is None:
                continue
            chunk = find_chunk_by_label(chunks, link.question_label)
            if chunk is not None:
                source_type, source_id = EntityType.CHUNK, chunk.id
            else:
                source_type, source_id = EntityType.RESOURCE, resource.id
            conf = DEFAULT_QUESTION_CONFIDENCE if link.confidence is None else link.confidence
            batch.add(edge(source_type, source_id, link.question_label, concept_id, name, link.relationship, conf))

        return batch

    # --- cross links ---

    def apply_cross_links(self, session_id: str, result: CrossLinkResult) -> int:
        """Insert concept links that do not exist yet. Returns how many were added."""
        with self.db.transaction() as tx:
            concept_ids = {c.name: c.id for c in tx.list_concepts(session_id)}
            existing = {r.key() for r in tx.list_relationships(session_id)}
            batch = _Batch()
            for link in result.links:
                src_name = to_title_case(link.source_concept)
                dst_name = to_title_case(link.target_concept)
                src_id, dst_id = concept_ids.get(src_name), concept_ids.get(dst_name)
                if src_id is None or dst_id is None or src_id == dst_id:
                    continue
                rel = Relationship(
                    id=new_id(),
                    session_id=session_id,
                    source_type=EntityType.CONCEPT,
                    source_id=src_id,
                    source_label=src_name,
                    target_type=EntityType.CONCEPT,
                    target_id=dst_id,
                    target_label=dst_name,
                    relationship=link.relationship,
                    confidence=DEFAULT_CONCEPT_CONFIDENCE if link.confidence is None else link.confidence,
                    created_by=Provenance.AGENT,
                )
                if rel.key() in existing:
                    continue
                batch.add(rel)
            added = tx.insert_relationships(batch.values())
        logger.info("Cross-linking added %d relationships to session %s", added, session_id)
        return added

    # --- metadata ---

    def apply_metadata(
        self, resource_id: str, result: MetadataResult, *, started_at: float | None = None
    ) -> MetadataStats:
        stats = MetadataStats()
        with self.db.transaction() as tx:
            resource = tx.get_resource(resource_id)
            if resource is None:
                raise LookupError(f"resource {resource_id} not found")
            tx.delete_questions(resource_id)
            chunks = tx.list_chunks(resource_id)
            titles = title_index((c.title, c.id) for c in chunks)
            concept_ids = {c.name: c.id for c in tx.list_concepts(resource.session_id)}

            batch = _Batch()
            for q in result.questions:
                question = Question(
                    id=new_id(),
                    resource_id=resource_id,
                    session_id=resource.session_id,
                    question_number=q.question_number,
                    content=q.content,
                    chunk_id=(
                        fuzzy_match_title(q.chunk_title, titles, self.fuzzy_threshold)
                        if q.chunk_title
                        else None
                    ),
                    parent_number=q.parent_number,
                    marks=q.marks,
                    question_type=q.question_type,
                    command_words=q.command_words,
                    mark_scheme_text=q.mark_scheme_text,
                    solution_text=q.solution_text,
                    metadata=q.metadata or {},
                )
                tx.add_question(question)
                stats.questions += 1
                for link in q.concept_links:
                    name = to_title_case(link.concept_name)
                    concept_id = concept_ids.get(name)
                    if concept_id is None:
                        continue
                    batch.add(
                        Relationship(
                            id=new_id(),
                            session_id=resource.session_id,
                            source_type=EntityType.QUESTION,
                            source_id=question.id,
                            source_label=q.question_number,
                            target_type=EntityType.CONCEPT,
                            target_id=concept_id,
                            target_label=name,
                            relationship=link.relationship,
                            confidence=(
                                DEFAULT_QUESTION_CONFIDENCE if link.confidence is None else link.confidence
                            ),
                            created_by=Provenance.SYSTEM,
                            created_from_resource_id=resource_id,
                        )
                    )
            stats.question_links = tx.insert_relationships(batch.values())

            for cu in result.concept_updates:
                concept = tx.get_concept_by_name(resource.session_id, to_title_case(cu.name))
                if concept is None:
                    continue
                changed = False
                # First writer wins; later resources never replace content.
                if cu.content and not concept.content:
                    concept.content = cu.content
                    changed = True
                if cu.content_type:
                    concept.content_type = cu.content_type
                    changed = True
                if cu.metadata:
                    concept.metadata = cu.metadata
                    changed = True
                if changed:
                    tx.update_concept(concept)
                    stats.concepts_updated += 1

            if result.resource_metadata:
                tx.merge_resource_metadata(resource_id, result.resource_metadata)
            for cm in result.chunk_metadata:
                chunk_id = fuzzy_match_title(cm.chunk_title, titles, self.fuzzy_threshold)
                if chunk_id is None:
                    continue
                tx.merge_chunk_metadata(chunk_id, cm.metadata)
                stats.chunks_updated += 1

            tx.set_meta_indexed(resource_id, _elapsed_ms(started_at))

        logger.info(
            "Metadata applied for %s: %d questions, %d concept updates",
            resource.name,
            stats.questions,
            stats.concepts_updated,
        )
        return stats
