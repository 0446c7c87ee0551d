"""Point-in-time graph slices handed to agents, and the files around them.

An attempt directory holds ``snapshot.json`` (read by the tool server),
``mcp-config.json`` (tells the agent how to start the tool server),
``system-prompt.txt`` and, once the agent submits, ``result.json``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

from pydantic import BaseModel, Field

from .schemas import TaskKind

SNAPSHOT_FILE = "snapshot.json"
MCP_CONFIG_FILE = "mcp-config.json"
SYSTEM_PROMPT_FILE = "system-prompt.txt"
RESULT_FILE = "result.json"

TOOL_SERVER_MODULE = "studygraph.agents.tool_server"


class SnapshotResource(BaseModel):
    id: str
    name: str
    type: str
    label: str | None = None


class SnapshotFile(BaseModel):
    filename: str
    role: str
    content: str = ""


class SnapshotChunk(BaseModel):
    id: str
    title: str | None = None
    content: str = ""
    depth: int = 0
    node_type: str = "section"
    parent_id: str | None = None


class SnapshotConcept(BaseModel):
    name: str
    description: str | None = None
    aliases: list[str] = Field(default_factory=list)


class SnapshotRelationship(BaseModel):
    id: str
    source_type: str
    source_label: str | None = None
    target_type: str
    target_label: str | None = None
    relationship: str
    confidence: float


class ResourceConceptRef(BaseModel):
    name: str
    relationship: str
    confidence: float


class Snapshot(BaseModel):
    kind: TaskKind
    resource: SnapshotResource | None = None
    files: list[SnapshotFile] = Field(default_factory=list)
    chunks: list[SnapshotChunk] = Field(default_factory=list)
    concepts: list[SnapshotConcept] = Field(default_factory=list)
    relationships: list[SnapshotRelationship] = Field(default_factory=list)
    resources: list[SnapshotResource] = Field(default_factory=list)
    resource_concepts: dict[str, list[ResourceConceptRef]] = Field(default_factory=dict)


def write_snapshot(workdir: Path, snapshot: Snapshot) -> Path:
    path = workdir / SNAPSHOT_FILE
    path.write_text(snapshot.model_dump_json(), encoding="utf-8")
    return path


def load_snapshot(workdir: Path) -> Snapshot:
    return Snapshot.model_validate_json((workdir / SNAPSHOT_FILE).read_text(encoding="utf-8"))


def write_mcp_config(workdir: Path, server_name: str) -> Path:
    """Point the agent at this interpreter's tool server for ``workdir``."""
    config = {
        "mcpServers": {
            server_name: {
                "type": "stdio",
                "command": sys.executable,
                "args": ["-m", TOOL_SERVER_MODULE, str(workdir)],
            }
        }
    }
    path = workdir / MCP_CONFIG_FILE
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


def write_system_prompt(workdir: Path, prompt: str) -> Path:
    path = workdir / SYSTEM_PROMPT_FILE
    path.write_text(prompt, encoding="utf-8")
    return path
