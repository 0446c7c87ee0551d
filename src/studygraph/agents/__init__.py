"""External agent invocation: tasks, snapshots, the tool server and the runner."""

from .schemas import CleanupResult, CrossLinkResult, ExtractionResult, MetadataResult
from .runner import AgentOutcome, AgentRunner
from .tasks import AgentTask, cleanup_task, cross_link_task, extraction_task, metadata_task

__all__ = [
    "AgentOutcome",
    "AgentRunner",
    "AgentTask",
    "CleanupResult",
    "CrossLinkResult",
    "ExtractionResult",
    "MetadataResult",
    "cleanup_task",
    "cross_link_task",
    "extraction_task",
    "metadata_task",
]
