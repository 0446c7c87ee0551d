"""Session knowledge graph: storage, text matching and consistency passes."""

from .models import Chunk, Concept, EntityType, Provenance, Question, Relationship, Resource, ResourceType
from .store import GraphDB, GraphTx
from .relationships import RelationshipStore
from .cleanup import CleanupStats, GraphCleanup
from .amortiser import Amortiser

__all__ = [
    "Amortiser",
    "Chunk",
    "CleanupStats",
    "Concept",
    "EntityType",
    "GraphCleanup",
    "GraphDB",
    "GraphTx",
    "Provenance",
    "Question",
    "Relationship",
    "RelationshipStore",
    "Resource",
    "ResourceType",
]
