"""Session indexing: work queues, batch tracking and the phase orchestrator."""

from .batch import BatchRunState, BatchStatus, PhaseStatus, SessionBatchTracker, UnitStatus
from .batch_log import BatchLog
from .indexer import IndexOutcome, ResourceIndexer
from .orchestrator import Phase, PhaseOrchestrator, RunOptions
from .queue import WorkQueue, WorkQueues

__all__ = [
    "BatchLog",
    "BatchRunState",
    "BatchStatus",
    "IndexOutcome",
    "Phase",
    "PhaseOrchestrator",
    "PhaseStatus",
    "ResourceIndexer",
    "RunOptions",
    "SessionBatchTracker",
    "UnitStatus",
    "WorkQueue",
    "WorkQueues",
]
