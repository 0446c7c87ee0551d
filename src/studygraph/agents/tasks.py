"""Agent task definitions.

Each builder reads just enough to describe the task and defers the snapshot
itself to ``AgentTask.build_snapshot`` so every attempt sees fresh state.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from ..graph.models import EntityType, Resource
from ..graph.store import GraphDB, GraphTx
from ..settings import Thoroughness
from . import prompts
from .schemas import RESULT_MODELS, AgentModel, TaskKind
from .snapshot import (
    ResourceConceptRef,
    Snapshot,
    SnapshotChunk,
    SnapshotConcept,
    SnapshotFile,
    SnapshotRelationship,
    SnapshotResource,
)

EXTRACTION_TIERS: dict[str, tuple[int, str]] = {
    "quick": (8, "selective"),
    "standard": (15, "standard"),
    "thorough": (30, "comprehensive"),
}
CLEANUP_MAX_TURNS = 12
CROSS_LINK_MAX_TURNS = 15
METADATA_MAX_TURNS = 20


@dataclass(slots=True)
class AgentTask:
    kind: TaskKind
    label: str
    build_snapshot: Callable[[], Snapshot]
    system_prompt: str
    instruction: str
    max_turns: int

    @property
    def result_model(self) -> type[AgentModel]:
        return RESULT_MODELS[self.kind]


def _snapshot_resource(r: Resource) -> SnapshotResource:
    return SnapshotResource(id=r.id, name=r.name, type=r.type.value, label=r.label)


def _snapshot_chunks(tx: GraphTx, resource_id: str) -> list[SnapshotChunk]:
    return [
        SnapshotChunk(
            id=c.id,
            title=c.title,
            content=c.content,
            depth=c.depth,
            node_type=c.node_type,
            parent_id=c.parent_id,
        )
        for c in tx.list_chunks(resource_id)
    ]


def _snapshot_concepts(tx: GraphTx, session_id: str) -> list[SnapshotConcept]:
    return [
        SnapshotConcept(name=c.name, description=c.description, aliases=c.aliases)
        for c in tx.list_concepts(session_id)
    ]


def _snapshot_relationships(
    tx: GraphTx, session_id: str, *, concepts_only: bool = False
) -> list[SnapshotRelationship]:
    out = []
    for r in tx.list_relationships(session_id):
        if concepts_only and not (
            r.source_type is EntityType.CONCEPT and r.target_type is EntityType.CONCEPT
        ):
            continue
        out.append(
            SnapshotRelationship(
                id=r.id,
                source_type=r.source_type.value,
                source_label=r.source_label,
                target_type=r.target_type.value,
                target_label=r.target_label,
                relationship=r.relationship,
                confidence=r.confidence,
            )
        )
    return out


def _require_resource(tx: GraphTx, resource_id: str) -> Resource:
    resource = tx.get_resource(resource_id)
    if resource is None:
        raise LookupError(f"resource {resource_id} not found")
    return resource


def extraction_task(db: GraphDB, resource_id: str, thoroughness: Thoroughness) -> AgentTask:
    max_turns, strategy = EXTRACTION_TIERS[thoroughness]
    with db.read() as tx:
        resource = _require_resource(tx, resource_id)
        files = tx.list_files(resource_id)

    def build() -> Snapshot:
        with db.read() as tx:
            return Snapshot(
                kind="extraction",
                resource=_snapshot_resource(resource),
                files=[SnapshotFile(filename=f.filename, role=f.role) for f in tx.list_files(resource_id)],
                chunks=_snapshot_chunks(tx, resource_id),
                concepts=_snapshot_concepts(tx, resource.session_id),
                relationships=_snapshot_relationships(tx, resource.session_id, concepts_only=True),
            )

    return AgentTask(
        kind="extraction",
        label=resource.name,
        build_snapshot=build,
        system_prompt=prompts.extraction_prompt(resource, files, strategy),
        instruction=prompts.extraction_instruction(resource),
        max_turns=max_turns,
    )


def cleanup_task(db: GraphDB, session_id: str) -> AgentTask:
    def build() -> Snapshot:
        with db.read() as tx:
            return Snapshot(
                kind="cleanup",
                concepts=_snapshot_concepts(tx, session_id),
                relationships=_snapshot_relationships(tx, session_id),
            )

    return AgentTask(
        kind="cleanup",
        label=f"cleanup:{session_id}",
        build_snapshot=build,
        system_prompt=prompts.CLEANUP_PROMPT,
        instruction=prompts.CLEANUP_INSTRUCTION,
        max_turns=CLEANUP_MAX_TURNS,
    )


def cross_link_task(db: GraphDB, session_id: str) -> AgentTask:
    def build() -> Snapshot:
        with db.read() as tx:
            resources = [r for r in tx.list_resources(session_id) if r.is_graph_indexed]
            chunk_owner = {c.id: r.id for r in resources for c in tx.list_chunks(r.id)}
            resource_concepts: dict[str, list[ResourceConceptRef]] = {r.id: [] for r in resources}
            for rel in tx.list_relationships(session_id):
                if rel.target_type is not EntityType.CONCEPT:
                    continue
                if rel.source_type is EntityType.RESOURCE:
                    owner = rel.source_id
                elif rel.source_type is EntityType.CHUNK:
                    owner = chunk_owner.get(rel.source_id)
                else:
                    continue
                if owner in resource_concepts:
                    resource_concepts[owner].append(
                        ResourceConceptRef(
                            name=rel.target_label or "",
                            relationship=rel.relationship,
                            confidence=rel.confidence,
                        )
                    )
            return Snapshot(
                kind="cross_link",
                concepts=_snapshot_concepts(tx, session_id),
                relationships=_snapshot_relationships(tx, session_id),
                resources=[_snapshot_resource(r) for r in resources],
                resource_concepts=resource_concepts,
            )

    return AgentTask(
        kind="cross_link",
        label=f"cross-link:{session_id}",
        build_snapshot=build,
        system_prompt=prompts.CROSS_LINK_PROMPT,
        instruction=prompts.CROSS_LINK_INSTRUCTION,
        max_turns=CROSS_LINK_MAX_TURNS,
    )


def metadata_task(db: GraphDB, resource_id: str) -> AgentTask:
    with db.read() as tx:
        resource = _require_resource(tx, resource_id)
        files = tx.list_files(resource_id)

    def build() -> Snapshot:
        with db.read() as tx:
            return Snapshot(
                kind="metadata",
                resource=_snapshot_resource(resource),
                files=[
                    SnapshotFile(filename=f.filename, role=f.role, content=f.content)
                    for f in tx.list_files(resource_id)
                ],
                chunks=_snapshot_chunks(tx, resource_id),
                concepts=_snapshot_concepts(tx, resource.session_id),
            )

    return AgentTask(
        kind="metadata",
        label=resource.name,
        build_snapshot=build,
        system_prompt=prompts.metadata_prompt(resource, files),
        instruction=prompts.metadata_instruction(resource),
        max_turns=METADATA_MAX_TURNS,
    )
