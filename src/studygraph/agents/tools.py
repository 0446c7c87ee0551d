"""Read-only tools over a snapshot, plus one submit tool per task kind."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..graph.text import dice_coefficient
from .schemas import RESULT_MODELS, TaskKind
from .snapshot import RESULT_FILE, Snapshot, SnapshotChunk, SnapshotRelationship

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 20
SNIPPET_CONTEXT = 100
SECTION_MIN_SCORE = 0.3
SIMILAR_DEFAULT_THRESHOLD = 0.5

_NO_ARGS: dict[str, Any] = {"type": "object", "properties": {}, "required": []}


def _string_arg(name: str, description: str, *, required: bool = True) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {name: {"type": "string", "description": description}},
        "required": [name] if required else [],
    }


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: dict(_NO_ARGS))

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


def _submit_schema(kind: str) -> dict[str, Any]:
    return RESULT_MODELS[kind].model_json_schema(by_alias=True)


TOOL_SPECS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            "get_material_overview",
            "Hierarchical table of contents of the material with node types and content lengths. "
            "Call this first to plan your reading.",
        ),
        ToolSpec(
            "read_section",
            "Read a section and all of its descendants. The title is fuzzy matched.",
            _string_arg("title", "Section title to read"),
        ),
        ToolSpec(
            "search_material",
            "Substring search across all sections. Returns snippets with surrounding context.",
            _string_arg("query", "Substring to search for"),
        ),
        ToolSpec(
            "search_content",
            "Substring search across all sections. Returns snippets with surrounding context.",
            _string_arg("query", "Substring to search for"),
        ),
        ToolSpec(
            "get_existing_concepts",
            "Concepts already in this session's graph, optionally filtered by name.",
            _string_arg("query", "Optional name filter (substring match)", required=False),
        ),
        ToolSpec(
            "get_concept_relationships",
            "All relationships involving one concept.",
            _string_arg("conceptName", "Exact concept name"),
        ),
        ToolSpec(
            "read_file_by_role",
            "Full processed text of the files with a role (PRIMARY, MARK_SCHEME, SOLUTIONS, SUPPLEMENT).",
            _string_arg("role", "File role to read"),
        ),
        ToolSpec("list_concepts", "List all concepts with descriptions, aliases and relationship counts."),
        ToolSpec(
            "find_similar_concepts",
            "Concepts whose names are similar to the given name.",
            {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Concept name to compare against"},
                    "threshold": {"type": "number", "description": "Minimum similarity (0-1, default 0.5)"},
                },
                "required": ["name"],
            },
        ),
        ToolSpec(
            "get_concept_detail",
            "Full details of a concept including every relationship involving it.",
            _string_arg("name", "Concept name"),
        ),
        ToolSpec("get_relationship_stats", "Totals of relationships by kind and by endpoint types."),
        ToolSpec(
            "preview_merge",
            "Show which relationships would be redirected if concepts were merged.",
            {
                "type": "object",
                "properties": {
                    "canonicalName": {"type": "string", "description": "Concept to keep"},
                    "mergeNames": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["canonicalName", "mergeNames"],
            },
        ),
        ToolSpec("list_resources", "List indexed resources with their ids, types and labels."),
        ToolSpec(
            "get_resource_concepts",
            "Concepts linked to one resource.",
            _string_arg("resourceId", "Resource id"),
        ),
        ToolSpec(
            "submit_extraction",
            "Submit the final extraction. Call exactly once when done.",
            _submit_schema("extraction"),
        ),
        ToolSpec("submit_cleanup", "Submit final merge and delete decisions.", _submit_schema("cleanup")),
        ToolSpec(
            "submit_cross_links",
            "Submit new concept-to-concept relationships.",
            _submit_schema("cross_link"),
        ),
        ToolSpec(
            "submit_metadata",
            "Submit questions, concept content, resource and section metadata.",
            _submit_schema("metadata"),
        ),
    )
}

TOOLSETS: dict[str, tuple[str, ...]] = {
    "extraction": (
        "get_material_overview",
        "read_section",
        "search_material",
        "get_existing_concepts",
        "get_concept_relationships",
        "submit_extraction",
    ),
    "cleanup": (
        "list_concepts",
        "find_similar_concepts",
        "get_concept_detail",
        "get_relationship_stats",
        "preview_merge",
        "submit_cleanup",
    ),
    "cross_link": (
        "list_concepts",
        "get_concept_relationships",
        "list_resources",
        "get_resource_concepts",
        "submit_cross_links",
    ),
    "metadata": (
        "get_material_overview",
        "read_section",
        "read_file_by_role",
        "search_content",
        "get_existing_concepts",
        "submit_metadata",
    ),
}


class ToolError(Exception):
    """A tool call the agent should see as a failed call."""


_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def _matches(value: Any, json_type: str) -> bool:
    if isinstance(value, bool) and json_type in ("number", "integer"):
        return False
    return isinstance(value, _JSON_TYPES[json_type])


def check_arguments(spec: ToolSpec, arguments: dict[str, Any]) -> None:
    """Reject arguments whose JSON type differs from the tool's input schema.

    Only properties declaring a plain ``type`` are checked; null means absent.
    """
    properties = spec.input_schema.get("properties", {})
    for key, value in arguments.items():
        schema = properties.get(key) or {}
        json_type = schema.get("type")
        if value is None or not isinstance(json_type, str) or json_type not in _JSON_TYPES:
            continue
        if not _matches(value, json_type):
            raise ToolError(f"Invalid arguments for {spec.name}: {key} must be of type {json_type}")
        item_type = (schema.get("items") or {}).get("type")
        if json_type == "array" and isinstance(item_type, str) and item_type in _JSON_TYPES:
            if not all(_matches(item, item_type) for item in value):
                raise ToolError(f"Invalid arguments for {spec.name}: every {key} entry must be of type {item_type}")


def _section_score(query: str, title: str | None) -> float:
    if not title:
        return 0.0
    q, t = query.lower(), title.lower()
    if q == t:
        return 1.0
    if q in t or t in q:
        return 0.8
    return dice_coefficient(q, t)


def _set_dice(a: str, b: str) -> float:
    """Dice over distinct bigrams, used for near-duplicate concept names."""
    a, b = a.lower(), b.lower()
    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0
    ba = {a[i : i + 2] for i in range(len(a) - 1)}
    bb = {b[i : i + 2] for i in range(len(b) - 1)}
    return 2.0 * len(ba & bb) / (len(ba) + len(bb))


def _format_rel(r: SnapshotRelationship) -> str:
    return f"{r.source_label} --[{r.relationship}]--> {r.target_label} (confidence: {r.confidence})"


class SnapshotTools:
    """Implements every tool; ``TOOLSETS`` decides which ones a kind may call."""

    def __init__(self, snapshot: Snapshot, workdir: Path):
        self.snapshot = snapshot
        self.workdir = workdir
        self.kind: TaskKind = snapshot.kind
        self._children: dict[str | None, list[SnapshotChunk]] = {}
        for chunk in snapshot.chunks:
            self._children.setdefault(chunk.parent_id, []).append(chunk)

    @property
    def result_path(self) -> Path:
        return self.workdir / RESULT_FILE

    def list_tools(self) -> list[dict[str, Any]]:
        return [TOOL_SPECS[name].describe() for name in TOOLSETS[self.kind]]

    def call(self, name: str, arguments: dict[str, Any]) -> str:
        if name not in TOOLSETS[self.kind]:
            raise ToolError(f"Unknown tool: {name}")
        check_arguments(TOOL_SPECS[name], arguments)
        handler: Callable[[dict[str, Any]], str] = getattr(self, f"_tool_{name}")
        try:
            return handler(arguments)
        except (TypeError, ValueError) as e:
            raise ToolError(f"Invalid arguments for {name}: {e}") from e

    # --- material ---

    def _subtree(self, chunk: SnapshotChunk) -> list[SnapshotChunk]:
        out = [chunk]
        for child in self._children.get(chunk.id, []):
            out.extend(self._subtree(child))
        return out

    def _tool_get_material_overview(self, args: dict[str, Any]) -> str:
        lines: list[str] = []

        def render(parent_id: str | None, indent: int) -> None:
            for c in self._children.get(parent_id, []):
                label = f"[{c.node_type}] " if c.node_type != "section" else ""
                lines.append(f"{'  ' * indent}{label}{c.title or '(untitled)'} ({len(c.content)} chars)")
                render(c.id, indent + 1)

        render(None, 0)
        return "\n".join(lines) or "No structured content available."

    def _tool_read_section(self, args: dict[str, Any]) -> str:
        query = str(args.get("title") or "")
        best: SnapshotChunk | None = None
        best_score = SECTION_MIN_SCORE
        for c in self.snapshot.chunks:
            score = _section_score(query, c.title)
            if score > best_score:
                best, best_score = c, score
        if best is None:
            return f"No section found matching: {query}"
        parts = []
        for c in self._subtree(best):
            prefix = "  " * max(0, c.depth - best.depth)
            label = f"[{c.node_type}] " if c.node_type != "section" else ""
            parts.append(f"{prefix}{label}{c.title or '(untitled)'}\n{prefix}{c.content}")
        return "\n\n".join(parts)

    def _search(self, args: dict[str, Any]) -> str:
        raw = str(args.get("query") or "")
        query = raw.lower()
        if not query:
            return "Empty query."
        results = []
        for c in self.snapshot.chunks:
            idx = c.content.lower().find(query)
            if idx < 0:
                continue
            start = max(0, idx - SNIPPET_CONTEXT)
            end = min(len(c.content), idx + len(query) + SNIPPET_CONTEXT)
            results.append(f"{c.title or '(untitled)'}:\n...{c.content[start:end]}...")
            if len(results) >= SEARCH_LIMIT:
                break
        return "\n\n".join(results) if results else f"No matches found for: {raw}"

    _tool_search_material = _search
    _tool_search_content = _search

    def _tool_read_file_by_role(self, args: dict[str, Any]) -> str:
        role = str(args.get("role") or "")
        files = [f for f in self.snapshot.files if f.role == role]
        if not files:
            return f"No files found with role: {role}"
        return "\n\n".join(f"=== {f.filename} ({f.role}) ===\n\n{f.content}" for f in files)

    # --- concepts ---

    def _concept_rels(self, name: str) -> list[SnapshotRelationship]:
        return [
            r
            for r in self.snapshot.relationships
            if (r.source_type == "concept" and r.source_label == name)
            or (r.target_type == "concept" and r.target_label == name)
        ]

    def _tool_get_existing_concepts(self, args: dict[str, Any]) -> str:
        raw = str(args.get("query") or "")
        query = raw.lower()
        concepts = [c for c in self.snapshot.concepts if query in c.name.lower()]
        if not concepts:
            return "No existing concepts" + (f" matching: {raw}" if raw else "") + "."
        return "\n".join(c.name + (f": {c.description}" if c.description else "") for c in concepts)

    def _tool_get_concept_relationships(self, args: dict[str, Any]) -> str:
        name = str(args.get("conceptName") or args.get("name") or "")
        rels = self._concept_rels(name)
        if not rels:
            return f"No relationships found for: {name}"
        return "\n".join(_format_rel(r) for r in rels)

    def _tool_list_concepts(self, args: dict[str, Any]) -> str:
        counts: Counter[str] = Counter()
        for r in self.snapshot.relationships:
            if r.source_type == "concept" and r.source_label:
                counts[r.source_label] += 1
            if r.target_type == "concept" and r.target_label:
                counts[r.target_label] += 1
        lines = []
        for c in self.snapshot.concepts:
            line = f"{c.name} ({counts[c.name]} rels)"
            if c.description:
                line += f": {c.description}"
            if c.aliases:
                line += f" [aliases: {', '.join(c.aliases)}]"
            lines.append(line)
        return "\n".join(lines) or "No concepts found."

    def _tool_find_similar_concepts(self, args: dict[str, Any]) -> str:
        name = str(args.get("name") or "")
        threshold = float(args.get("threshold") or SIMILAR_DEFAULT_THRESHOLD)
        matches = sorted(
            (
                (c.name, _set_dice(name, c.name))
                for c in self.snapshot.concepts
                if c.name.lower() != name.lower()
            ),
            key=lambda m: -m[1],
        )
        matches = [m for m in matches if m[1] >= threshold]
        if not matches:
            return f"No similar concepts found above threshold {threshold}"
        return "\n".join(f"{n} (similarity: {s:.3f})" for n, s in matches)

    def _tool_get_concept_detail(self, args: dict[str, Any]) -> str:
        name = str(args.get("name") or "")
        concept = next((c for c in self.snapshot.concepts if c.name == name), None)
        if concept is None:
            return f"Concept not found: {name}"
        lines = [f"Name: {concept.name}"]
        if concept.description:
            lines.append(f"Description: {concept.description}")
        if concept.aliases:
            lines.append(f"Aliases: {', '.join(concept.aliases)}")
        rels = self._concept_rels(name)
        lines.append("")
        lines.append(f"Relationships ({len(rels)}):")
        for r in rels:
            lines.append(
                f"  {r.source_label} --[{r.relationship}]--> {r.target_label} "
                f"({r.source_type}->{r.target_type}, confidence: {r.confidence}, id: {r.id})"
            )
        return "\n".join(lines)

    def _tool_get_relationship_stats(self, args: dict[str, Any]) -> str:
        rels = self.snapshot.relationships
        by_kind = Counter(r.relationship for r in rels)
        by_ends = Counter(f"{r.source_type}->{r.target_type}" for r in rels)
        lines = [f"Total relationships: {len(rels)}", "", "By type:"]
        lines += [f"  {k}: {v}" for k, v in by_kind.most_common()]
        lines += ["", "By source->target type:"]
        lines += [f"  {k}: {v}" for k, v in by_ends.most_common()]
        return "\n".join(lines)

    def _tool_preview_merge(self, args: dict[str, Any]) -> str:
        canonical = str(args.get("canonicalName") or "")
        names = {c.name for c in self.snapshot.concepts}
        if canonical not in names:
            return f"Canonical concept not found: {canonical}"
        merge_names = args.get("mergeNames") or []
        if not isinstance(merge_names, list):
            raise ToolError("Invalid arguments for preview_merge: mergeNames must be a list of concept names")
        requested = [str(n) for n in merge_names]
        found = [n for n in requested if n in names]
        missing = [n for n in requested if n not in names]
        lines = ["Merge preview:", f"  Keep: {canonical}", f"  Merge: {', '.join(found)}"]
        if missing:
            lines.append(f"  Not found: {', '.join(missing)}")
        affected = [r for n in found for r in self._concept_rels(n)]
        lines.append("")
        lines.append(f"Relationships to redirect: {len(affected)}")
        lines += [f"  {r.source_label} --[{r.relationship}]--> {r.target_label}" for r in affected]
        return "\n".join(lines)

    # --- resources ---

    def _tool_list_resources(self, args: dict[str, Any]) -> str:
        if not self.snapshot.resources:
            return "No resources found."
        return "\n".join(
            f"{r.id} | {r.type} | {r.name}" + (f" ({r.label})" if r.label else "")
            for r in self.snapshot.resources
        )

    def _tool_get_resource_concepts(self, args: dict[str, Any]) -> str:
        rid = str(args.get("resourceId") or "")
        refs = self.snapshot.resource_concepts.get(rid, [])
        if not refs:
            return f"No concepts linked to resource: {rid}"
        return "\n".join(f"{c.name} ({c.relationship}, confidence: {c.confidence})" for c in refs)

    # --- submit ---

    def _submit(self, args: dict[str, Any]) -> str:
        model = RESULT_MODELS[self.kind]
        try:
            parsed = model.model_validate(args)
        except ValidationError as e:
            raise ToolError(f"Submission rejected, fix these fields and submit again:\n{e}") from e
        self.result_path.write_text(parsed.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        logger.info("Result written to %s", self.result_path)
        return "Result submitted successfully."

    _tool_submit_extraction = _submit
    _tool_submit_cleanup = _submit
    _tool_submit_cross_links = _submit
    _tool_submit_metadata = _submit
