from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

Thoroughness = Literal["quick", "standard", "thorough"]


class StudyGraphSettings(BaseSettings):
    """Unified configuration for studygraph.

    Environment variables are prefixed with STUDYGRAPH_.
    """

    model_config = SettingsConfigDict(env_prefix="STUDYGRAPH_", extra="ignore")

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")
    db_path: str = Field(default="data/studygraph.db")
    log_dir: str | None = Field(
        default="data/indexer-logs", description="Per-batch log directory; unset disables file logs"
    )

    # --- Agents ---
    agent_command: str = Field(default="claude", description="Agent executable (shell-split)")
    agent_model: str = Field(default="sonnet")
    agent_max_attempts: int = Field(default=3, ge=1)
    agent_retry_wait_s: float = Field(default=1.0, ge=0.0)
    agent_timeout_s: float = Field(default=1800.0, gt=0.0)
    agent_blocked_tools: list[str] = Field(
        default_factory=lambda: ["Bash", "Edit", "Write", "NotebookEdit", "WebFetch", "WebSearch", "Task"]
    )
    default_thoroughness: Thoroughness = "standard"
    cleanup_min_concepts: int = Field(default=3, description="Skip the cleanup agent below this")

    # --- Queues ---
    processing_concurrency: int = Field(default=1, ge=1)
    indexing_concurrency: int = Field(default=2, ge=1)

    # --- Graph consistency ---
    fuzzy_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    amortise_max_new: int = Field(default=10, ge=0)


settings = StudyGraphSettings()
