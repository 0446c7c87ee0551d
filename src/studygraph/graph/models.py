from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResourceType(str, Enum):
    LECTURE_NOTES = "LECTURE_NOTES"
    SPECIFICATION = "SPECIFICATION"
    PAST_PAPER = "PAST_PAPER"
    PROBLEM_SHEET = "PROBLEM_SHEET"
    OTHER = "OTHER"

    @property
    def is_foundation(self) -> bool:
        """Foundation material seeds concepts before dependent material runs."""
        return self in FOUNDATION_TYPES


FOUNDATION_TYPES = frozenset({ResourceType.LECTURE_NOTES, ResourceType.SPECIFICATION})


class EntityType(str, Enum):
    RESOURCE = "resource"
    CHUNK = "chunk"
    QUESTION = "question"
    CONCEPT = "concept"


class Provenance(str, Enum):
    SYSTEM = "system"
    AGENT = "agent"
    AMORTISED = "amortised"


# Direction-agnostic kinds: A->B and B->A are the same edge.
SYMMETRIC_KINDS = frozenset({"related_to", "contradicts"})


@dataclass(slots=True)
class Resource:
    id: str
    session_id: str
    name: str
    type: ResourceType
    label: str | None = None
    is_indexed: bool = False
    is_graph_indexed: bool = False
    is_meta_indexed: bool = False
    graph_index_duration_ms: int | None = None
    meta_index_duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ResourceFile:
    id: str
    resource_id: str
    filename: str
    role: str
    content: str = ""


@dataclass(slots=True)
class Chunk:
    """A node of a resource's hierarchical content tree."""

    id: str
    resource_id: str
    index: int
    title: str | None
    content: str
    parent_id: str | None = None
    depth: int = 0
    node_type: str = "section"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Concept:
    """A canonical, session-scoped topic.

    `name` is unique per session once canonicalised.
    """

    id: str
    session_id: str
    name: str
    description: str | None = None
    aliases: list[str] = field(default_factory=list)
    content: str | None = None
    content_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: Provenance = Provenance.SYSTEM


@dataclass(slots=True)
class Relationship:
    """A typed, confidence-scored directed edge."""

    id: str
    session_id: str
    source_type: EntityType
    source_id: str
    target_type: EntityType
    target_id: str
    relationship: str
    confidence: float = 1.0
    source_label: str | None = None
    target_label: str | None = None
    created_by: Provenance = Provenance.SYSTEM
    created_from_resource_id: str | None = None
    created_at: float = 0.0

    def key(self) -> tuple[str, str, str, str, str]:
        """Identity used for deduplication.

        Endpoint ids of symmetric kinds are sorted so both directions collide.
        """
        src, dst = self.source_id, self.target_id
        if self.relationship in SYMMETRIC_KINDS and dst < src:
            src, dst = dst, src
        return (self.source_type.value, src, self.target_type.value, dst, self.relationship)


@dataclass(slots=True)
class Question:
    id: str
    resource_id: str
    session_id: str
    question_number: str
    content: str
    chunk_id: str | None = None
    parent_number: str | None = None
    marks: int | None = None
    question_type: str | None = None
    command_words: str | None = None
    mark_scheme_text: str | None = None
    solution_text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
