"""Stdio tool server started by an agent for one attempt.

    python -m studygraph.agents.tool_server SNAPSHOT_DIR

Reads ``snapshot.json`` from SNAPSHOT_DIR once, answers newline-delimited
JSON-RPC requests on stdin/stdout, and writes ``result.json`` to the same
directory when the task's submit tool is called.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import IO, Any

from pydantic import ValidationError

from .protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    SERVER_VERSION,
    Method,
    Request,
    ToolCallParams,
    error,
    result,
    text_content,
)
from .snapshot import load_snapshot
from .tools import SnapshotTools, ToolError

logger = logging.getLogger(__name__)


class ToolServer:
    def __init__(self, tools: SnapshotTools):
        self.tools = tools

    @classmethod
    def from_dir(cls, workdir: Path) -> ToolServer:
        return cls(SnapshotTools(load_snapshot(workdir), workdir))

    def handle(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Answer one request. Notifications get no response."""
        try:
            req = Request.model_validate(message)
        except ValidationError:
            return error(message.get("id"), INVALID_REQUEST, "Invalid request")

        method = Method.parse(req.method)
        if method is None:
            if req.is_notification:
                return None
            return error(req.id, METHOD_NOT_FOUND, "Method not found")

        if method is Method.INITIALIZED:
            return None
        if method is Method.INITIALIZE:
            return result(
                req.id,
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": f"studygraph-{self.tools.kind}", "version": SERVER_VERSION},
                },
            )
        if method is Method.TOOLS_LIST:
            return result(req.id, {"tools": self.tools.list_tools()})

        try:
            params = ToolCallParams.model_validate(req.params)
        except ValidationError:
            return error(req.id, INVALID_PARAMS, "tools/call needs a tool name")
        try:
            text = self.tools.call(params.name, params.arguments)
        except ToolError as e:
            return result(req.id, text_content(str(e), is_error=True))
        except Exception:
            logger.exception("Tool %s failed", params.name)
            return error(req.id, INTERNAL_ERROR, f"Internal error in tool {params.name}")
        return result(req.id, text_content(text))

    def handle_line(self, line: str) -> dict[str, Any] | None:
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            return error(None, PARSE_ERROR, "Parse error")
        if not isinstance(message, dict):
            return error(None, PARSE_ERROR, "Parse error")
        return self.handle(message)

    def serve(self, stdin: IO[str], stdout: IO[str]) -> None:
        for line in stdin:
            response = self.handle_line(line)
            if response is not None:
                stdout.write(json.dumps(response) + "\n")
                stdout.flush()


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m studygraph.agents.tool_server SNAPSHOT_DIR", file=sys.stderr)
        return 2
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    ToolServer.from_dir(Path(args[0])).serve(sys.stdin, sys.stdout)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
