from __future__ import annotations

from enum import Enum


class ErrorType(str, Enum):
    """Per-unit failure taxonomy reported on batch status."""

    LLM_ERROR = "llm_error"
    PARSE_ERROR = "parse_error"
    DB_ERROR = "db_error"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (ErrorType.LLM_ERROR, ErrorType.PARSE_ERROR)


class StudyGraphError(Exception):
    """Base class for studygraph errors."""


class CancellationError(StudyGraphError):
    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class BatchAlreadyRunning(StudyGraphError):
    def __init__(self, session_id: str):
        super().__init__(f"an indexing batch is already running for session {session_id}")
        self.session_id = session_id


class AgentError(StudyGraphError):
    """An agent attempt (or the whole retry budget) failed."""

    def __init__(self, message: str, error_type: ErrorType, *, attempts: int = 1):
        super().__init__(message)
        self.error_type = error_type
        self.attempts = attempts


class IndexingError(StudyGraphError):
    """Terminal failure of one resource in one phase."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType,
        resource_id: str,
        *,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.resource_id = resource_id
        self.attempts = attempts
