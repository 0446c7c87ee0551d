"""Study-material knowledge graph builder.

This package provides:
- A supervised runner for external extraction / cleanup / cross-link agents
- Relationship normalisation and graph-consistency passes over a SQLite store
- A phased, cancellable session indexing orchestrator
"""

__version__ = "0.1.0"
