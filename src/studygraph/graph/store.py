from __future__ import annotations

import json
import sqlite3
import time
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import (
    Chunk,
    Concept,
    EntityType,
    Provenance,
    Question,
    Relationship,
    Resource,
    ResourceFile,
    ResourceType,
)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS resources (
  id TEXT PRIMARY KEY,
  session_id TEXT NOT NULL,
  name TEXT NOT NULL,
  type TEXT NOT NULL,
  label TEXT,
  is_indexed INTEGER NOT NULL DEFAULT 0,
  is_graph_indexed INTEGER NOT NULL DEFAULT 0,
  is_meta_indexed INTEGER NOT NULL DEFAULT 0,
  graph_index_duration_ms INTEGER,
  meta_index_duration_ms INTEGER,
  metadata_json TEXT,
  created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS files (
  id TEXT PRIMARY KEY,
  resource_id TEXT NOT NULL REFERENCES resources(id) ON DELETE CASCADE,
  filename TEXT NOT NULL,
  role TEXT NOT NULL,
  content TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS chunks (
  id TEXT PRIMARY KEY,
  resource_id TEXT NOT NULL REFERENCES resources(id) ON DELETE CASCADE,
  parent_id TEXT,
  idx INTEGER NOT NULL,
  title TEXT,
  content TEXT NOT NULL DEFAULT '',
  depth INTEGER NOT NULL DEFAULT 0,
  node_type TEXT NOT NULL DEFAULT 'section',
  metadata_json TEXT
);

CREATE TABLE IF NOT EXISTS concepts (
  id TEXT PRIMARY KEY,
  session_id TEXT NOT NULL,
  name TEXT NOT NULL,
  description TEXT,
  aliases_json TEXT,
  content TEXT,
  content_type TEXT,
  metadata_json TEXT,
  created_by TEXT NOT NULL DEFAULT 'system',
  created_at REAL NOT NULL,
  UNIQUE(session_id, name)
);

CREATE TABLE IF NOT EXISTS relationships (
  id TEXT PRIMARY KEY,
  session_id TEXT NOT NULL,
  source_type TEXT NOT NULL,
  source_id TEXT NOT NULL,
  source_label TEXT,
  target_type TEXT NOT NULL,
  target_id TEXT NOT NULL,
  target_label TEXT,
  relationship TEXT NOT NULL,
  confidence REAL NOT NULL DEFAULT 1.0,
  created_by TEXT NOT NULL DEFAULT 'system',
  created_from_resource_id TEXT,
  created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS questions (
  id TEXT PRIMARY KEY,
  resource_id TEXT NOT NULL REFERENCES resources(id) ON DELETE CASCADE,
  session_id TEXT NOT NULL,
  chunk_id TEXT,
  question_number TEXT NOT NULL,
  parent_number TEXT,
  marks INTEGER,
  question_type TEXT,
  command_words TEXT,
  content TEXT NOT NULL,
  mark_scheme_text TEXT,
  solution_text TEXT,
  metadata_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_resources_session ON resources(session_id);
CREATE INDEX IF NOT EXISTS idx_chunks_resource ON chunks(resource_id, idx);
CREATE INDEX IF NOT EXISTS idx_rel_session ON relationships(session_id);
CREATE INDEX IF NOT EXISTS idx_rel_source ON relationships(source_type, source_id);
CREATE INDEX IF NOT EXISTS idx_rel_target ON relationships(target_type, target_id);
CREATE INDEX IF NOT EXISTS idx_rel_origin ON relationships(created_from_resource_id);
CREATE INDEX IF NOT EXISTS idx_questions_resource ON questions(resource_id);
"""


def new_id() -> str:
    return uuid.uuid4().hex


def _dump(obj: Any) -> str | None:
    return json.dumps(obj) if obj else None


def _load(raw: str | None, default: Any) -> Any:
    return json.loads(raw) if raw else default


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _row_to_resource(row: sqlite3.Row) -> Resource:
    return Resource(
        id=row["id"],
        session_id=row["session_id"],
        name=row["name"],
        type=ResourceType(row["type"]),
        label=row["label"],
        is_indexed=bool(row["is_indexed"]),
        is_graph_indexed=bool(row["is_graph_indexed"]),
        is_meta_indexed=bool(row["is_meta_indexed"]),
        graph_index_duration_ms=row["graph_index_duration_ms"],
        meta_index_duration_ms=row["meta_index_duration_ms"],
        metadata=_load(row["metadata_json"], {}),
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        resource_id=row["resource_id"],
        parent_id=row["parent_id"],
        index=row["idx"],
        title=row["title"],
        content=row["content"],
        depth=row["depth"],
        node_type=row["node_type"],
        metadata=_load(row["metadata_json"], {}),
    )


def _row_to_concept(row: sqlite3.Row) -> Concept:
    return Concept(
        id=row["id"],
        session_id=row["session_id"],
        name=row["name"],
        description=row["description"],
        aliases=_load(row["aliases_json"], []),
        content=row["content"],
        content_type=row["content_type"],
        metadata=_load(row["metadata_json"], {}),
        created_by=Provenance(row["created_by"]),
    )


def _row_to_relationship(row: sqlite3.Row) -> Relationship:
    return Relationship(
        id=row["id"],
        session_id=row["session_id"],
        source_type=EntityType(row["source_type"]),
        source_id=row["source_id"],
        source_label=row["source_label"],
        target_type=EntityType(row["target_type"]),
        target_id=row["target_id"],
        target_label=row["target_label"],
        relationship=row["relationship"],
        confidence=row["confidence"],
        created_by=Provenance(row["created_by"]),
        created_from_resource_id=row["created_from_resource_id"],
        created_at=row["created_at"],
    )


def _row_to_question(row: sqlite3.Row) -> Question:
    return Question(
        id=row["id"],
        resource_id=row["resource_id"],
        session_id=row["session_id"],
        chunk_id=row["chunk_id"],
        question_number=row["question_number"],
        parent_number=row["parent_number"],
        marks=row["marks"],
        question_type=row["question_type"],
        command_words=row["command_words"],
        content=row["content"],
        mark_scheme_text=row["mark_scheme_text"],
        solution_text=row["solution_text"],
        metadata=_load(row["metadata_json"], {}),
    )


class GraphTx:
    """Query helpers bound to one open connection.

    Obtained from ``GraphDB.transaction()`` (writes, one atomic unit) or
    ``GraphDB.read()`` (autocommit reads).
    """

    def __init__(self, con: sqlite3.Connection):
        self.con = con

    # --- resources ---

    def add_resource(
        self,
        *,
        session_id: str,
        name: str,
        type: ResourceType,
        label: str | None = None,
        is_indexed: bool = True,
        metadata: dict[str, Any] | None = None,
        resource_id: str | None = None,
    ) -> Resource:
        rid = resource_id or new_id()
        self.con.execute(
            """
            INSERT INTO resources(id, session_id, name, type, label, is_indexed, metadata_json, created_at)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (rid, session_id, name, type.value, label, int(is_indexed), _dump(metadata), time.time()),
        )
        return Resource(
            id=rid,
            session_id=session_id,
            name=name,
            type=type,
            label=label,
            is_indexed=is_indexed,
            metadata=metadata or {},
        )

    def get_resource(self, resource_id: str) -> Resource | None:
        row = self.con.execute("SELECT * FROM resources WHERE id=?", (resource_id,)).fetchone()
        return _row_to_resource(row) if row else None

    def list_resources(self, session_id: str) -> list[Resource]:
        rows = self.con.execute(
            "SELECT * FROM resources WHERE session_id=? ORDER BY created_at, id", (session_id,)
        ).fetchall()
        return [_row_to_resource(r) for r in rows]

    def set_graph_indexed(self, resource_id: str, indexed: bool, duration_ms: int | None = None) -> None:
        self.con.execute(
            "UPDATE resources SET is_graph_indexed=?, graph_index_duration_ms=? WHERE id=?",
            (int(indexed), duration_ms, resource_id),
        )

    def set_meta_indexed(self, resource_id: str, duration_ms: int | None = None) -> None:
        self.con.execute(
            "UPDATE resources SET is_meta_indexed=1, meta_index_duration_ms=? WHERE id=?",
            (duration_ms, resource_id),
        )

    def merge_resource_metadata(self, resource_id: str, metadata: dict[str, Any]) -> None:
        row = self.con.execute("SELECT metadata_json FROM resources WHERE id=?", (resource_id,)).fetchone()
        if row is None:
            return
        merged = {**_load(row["metadata_json"], {}), **metadata}
        self.con.execute(
            "UPDATE resources SET metadata_json=? WHERE id=?", (_dump(merged), resource_id)
        )

    # --- files ---

    def add_file(self, *, resource_id: str, filename: str, role: str, content: str = "") -> ResourceFile:
        fid = new_id()
        self.con.execute(
            "INSERT INTO files(id, resource_id, filename, role, content) VALUES (?,?,?,?,?)",
            (fid, resource_id, filename, role, content),
        )
        return ResourceFile(id=fid, resource_id=resource_id, filename=filename, role=role, content=content)

    def list_files(self, resource_id: str) -> list[ResourceFile]:
        rows = self.con.execute(
            "SELECT * FROM files WHERE resource_id=? ORDER BY rowid", (resource_id,)
        ).fetchall()
        return [
            ResourceFile(
                id=r["id"], resource_id=r["resource_id"], filename=r["filename"], role=r["role"], content=r["content"]
            )
            for r in rows
        ]

    # --- chunks ---

    def add_chunk(
        self,
        *,
        resource_id: str,
        index: int,
        title: str | None,
        content: str = "",
        parent_id: str | None = None,
        depth: int = 0,
        node_type: str = "section",
        metadata: dict[str, Any] | None = None,
        chunk_id: str | None = None,
    ) -> Chunk:
        cid = chunk_id or new_id()
        self.con.execute(
            """
            INSERT INTO chunks(id, resource_id, parent_id, idx, title, content, depth, node_type, metadata_json)
            VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (cid, resource_id, parent_id, index, title, content, depth, node_type, _dump(metadata)),
        )
        return Chunk(
            id=cid,
            resource_id=resource_id,
            parent_id=parent_id,
            index=index,
            title=title,
            content=content,
            depth=depth,
            node_type=node_type,
            metadata=metadata or {},
        )

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        row = self.con.execute("SELECT * FROM chunks WHERE id=?", (chunk_id,)).fetchone()
        return _row_to_chunk(row) if row else None

    def list_chunks(self, resource_id: str) -> list[Chunk]:
        rows = self.con.execute(
            "SELECT * FROM chunks WHERE resource_id=? ORDER BY idx, rowid", (resource_id,)
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def search_chunks(self, session_id: str, terms: Sequence[str], limit: int) -> list[Chunk]:
        """Chunks of the session whose title or content contains every term (case-insensitive)."""
        sql = "SELECT c.* FROM chunks c JOIN resources r ON r.id = c.resource_id WHERE r.session_id=?"
        params: list[Any] = [session_id]
        for term in terms:
            pattern = "%" + term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
            sql += " AND (c.title LIKE ? ESCAPE '\\' OR c.content LIKE ? ESCAPE '\\')"
            params += [pattern, pattern]
        sql += " ORDER BY r.created_at, c.idx LIMIT ?"
        params.append(limit)
        return [_row_to_chunk(r) for r in self.con.execute(sql, params).fetchall()]

    def merge_chunk_metadata(self, chunk_id: str, metadata: dict[str, Any]) -> None:
        row = self.con.execute("SELECT metadata_json FROM chunks WHERE id=?", (chunk_id,)).fetchone()
        if row is None:
            return
        merged = {**_load(row["metadata_json"], {}), **metadata}
        self.con.execute("UPDATE chunks SET metadata_json=? WHERE id=?", (_dump(merged), chunk_id))

    # --- concepts ---

    def get_concept(self, concept_id: str) -> Concept | None:
        row = self.con.execute("SELECT * FROM concepts WHERE id=?", (concept_id,)).fetchone()
        return _row_to_concept(row) if row else None

    def get_concept_by_name(self, session_id: str, name: str) -> Concept | None:
        row = self.con.execute(
            "SELECT * FROM concepts WHERE session_id=? AND name=?", (session_id, name)
        ).fetchone()
        return _row_to_concept(row) if row else None

    def list_concepts(self, session_id: str) -> list[Concept]:
        rows = self.con.execute(
            "SELECT * FROM concepts WHERE session_id=? ORDER BY name", (session_id,)
        ).fetchall()
        return [_row_to_concept(r) for r in rows]

    def count_concepts(self, session_id: str) -> int:
        return self.con.execute(
            "SELECT COUNT(*) FROM concepts WHERE session_id=?", (session_id,)
        ).fetchone()[0]

    def upsert_concept(
        self,
        *,
        session_id: str,
        name: str,
        description: str | None = None,
        aliases: Iterable[str] = (),
        created_by: Provenance = Provenance.SYSTEM,
    ) -> tuple[Concept, bool]:
        """Create the concept or fold the mention into the existing row.

        Later mentions union their aliases and replace the description when
        one is given. Returns ``(concept, created)``.
        """
        existing = self.get_concept_by_name(session_id, name)
        if existing is None:
            concept = Concept(
                id=new_id(),
                session_id=session_id,
                name=name,
                description=description,
                aliases=[a for a in dict.fromkeys(aliases) if a and a != name],
                created_by=created_by,
            )
            self.con.execute(
                """
                INSERT INTO concepts(id, session_id, name, description, aliases_json, created_by, created_at)
                VALUES (?,?,?,?,?,?,?)
                """,
                (
                    concept.id,
                    session_id,
                    name,
                    description,
                    _dump(concept.aliases),
                    created_by.value,
                    time.time(),
                ),
            )
            return concept, True

        for alias in aliases:
            if alias and alias != existing.name and alias not in existing.aliases:
                existing.aliases.append(alias)
        if description:
            existing.description = description
        self.update_concept(existing)
        return existing, False

    def update_concept(self, concept: Concept) -> None:
        self.con.execute(
            """
            UPDATE concepts SET name=?, description=?, aliases_json=?, content=?, content_type=?, metadata_json=?
            WHERE id=?
            """,
            (
                concept.name,
                concept.description,
                _dump(concept.aliases),
                concept.content,
                concept.content_type,
                _dump(concept.metadata),
                concept.id,
            ),
        )

    def delete_concepts(self, concept_ids: Sequence[str]) -> int:
        if not concept_ids:
            return 0
        cur = self.con.execute(
            f"DELETE FROM concepts WHERE id IN ({_placeholders(len(concept_ids))})", tuple(concept_ids)
        )
        return cur.rowcount

    def delete_session_concepts(self, session_id: str) -> int:
        return self.con.execute("DELETE FROM concepts WHERE session_id=?", (session_id,)).rowcount

    # --- relationships ---

    def insert_relationships(self, rels: Iterable[Relationship]) -> int:
        now = time.time()
        rows = []
        for r in rels:
            if not r.created_at:
                r.created_at = now
            rows.append(
                (
                    r.id,
                    r.session_id,
                    r.source_type.value,
                    r.source_id,
                    r.source_label,
                    r.target_type.value,
                    r.target_id,
                    r.target_label,
                    r.relationship,
                    r.confidence,
                    r.created_by.value,
                    r.created_from_resource_id,
                    r.created_at,
                )
            )
        self.con.executemany(
            """
            INSERT INTO relationships(
              id, session_id, source_type, source_id, source_label, target_type, target_id,
              target_label, relationship, confidence, created_by, created_from_resource_id, created_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            rows,
        )
        return len(rows)

    def list_relationships(self, session_id: str) -> list[Relationship]:
        rows = self.con.execute(
            "SELECT * FROM relationships WHERE session_id=? ORDER BY created_at, id", (session_id,)
        ).fetchall()
        return [_row_to_relationship(r) for r in rows]

    def relationship_pairs(self, session_id: str) -> set[tuple[str, str]]:
        """All existing ``(source_id, target_id)`` pairs of the session."""
        rows = self.con.execute(
            "SELECT source_id, target_id FROM relationships WHERE session_id=?", (session_id,)
        ).fetchall()
        return {(r[0], r[1]) for r in rows}

    def delete_relationships(self, rel_ids: Sequence[str]) -> int:
        if not rel_ids:
            return 0
        deleted = 0
        # Stay well under SQLITE_MAX_VARIABLE_NUMBER.
        for i in range(0, len(rel_ids), 500):
            batch = tuple(rel_ids[i : i + 500])
            cur = self.con.execute(
                f"DELETE FROM relationships WHERE id IN ({_placeholders(len(batch))})", batch
            )
            deleted += cur.rowcount
        return deleted

    def delete_concept_relationships(self, concept_ids: Sequence[str]) -> int:
        if not concept_ids:
            return 0
        ph = _placeholders(len(concept_ids))
        cur = self.con.execute(
            f"""
            DELETE FROM relationships
            WHERE (source_type='concept' AND source_id IN ({ph}))
               OR (target_type='concept' AND target_id IN ({ph}))
            """,
            (*concept_ids, *concept_ids),
        )
        return cur.rowcount

    def delete_system_relationships_for_resource(self, resource_id: str, chunk_ids: Sequence[str]) -> int:
        """Drop everything a previous extraction of this resource produced.

        Question edges belong to metadata extraction and are left alone.
        """
        sources = (resource_id, *chunk_ids)
        ph = _placeholders(len(sources))
        cur = self.con.execute(
            f"""
            DELETE FROM relationships
            WHERE created_by='system' AND source_type != 'question'
              AND (created_from_resource_id=? OR source_id IN ({ph}))
            """,
            (resource_id, *sources),
        )
        return cur.rowcount

    def redirect_concept(self, old_id: str, new_id_: str, new_label: str) -> int:
        moved = self.con.execute(
            """
            UPDATE relationships SET source_id=?, source_label=?
            WHERE source_type='concept' AND source_id=?
            """,
            (new_id_, new_label, old_id),
        ).rowcount
        moved += self.con.execute(
            """
            UPDATE relationships SET target_id=?, target_label=?
            WHERE target_type='concept' AND target_id=?
            """,
            (new_id_, new_label, old_id),
        ).rowcount
        return moved

    def delete_session_relationships(self, session_id: str) -> int:
        return self.con.execute("DELETE FROM relationships WHERE session_id=?", (session_id,)).rowcount

    # --- questions ---

    def add_question(self, q: Question) -> None:
        self.con.execute(
            """
            INSERT INTO questions(
              id, resource_id, session_id, chunk_id, question_number, parent_number, marks,
              question_type, command_words, content, mark_scheme_text, solution_text, metadata_json
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                q.id,
                q.resource_id,
                q.session_id,
                q.chunk_id,
                q.question_number,
                q.parent_number,
                q.marks,
                q.question_type,
                q.command_words,
                q.content,
                q.mark_scheme_text,
                q.solution_text,
                _dump(q.metadata),
            ),
        )

    def list_questions(self, resource_id: str) -> list[Question]:
        rows = self.con.execute(
            "SELECT * FROM questions WHERE resource_id=? ORDER BY rowid", (resource_id,)
        ).fetchall()
        return [_row_to_question(r) for r in rows]

    def delete_questions(self, resource_id: str) -> list[str]:
        """Delete a resource's questions and every relationship touching them."""
        ids = [
            r[0] for r in self.con.execute("SELECT id FROM questions WHERE resource_id=?", (resource_id,))
        ]
        if ids:
            ph = _placeholders(len(ids))
            self.con.execute(
                f"""
                DELETE FROM relationships
                WHERE (source_type='question' AND source_id IN ({ph}))
                   OR (target_type='question' AND target_id IN ({ph}))
                """,
                (*ids, *ids),
            )
            self.con.execute("DELETE FROM questions WHERE resource_id=?", (resource_id,))
        return ids


@dataclass
class GraphDB:
    path: str

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON")
        return con

    def init(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        con = self.connect()
        try:
            con.executescript(SCHEMA)
        finally:
            con.close()

    @contextmanager
    def transaction(self) -> Iterator[GraphTx]:
        """One ``BEGIN IMMEDIATE ... COMMIT`` unit; rolls back on any exception."""
        con = self.connect()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield GraphTx(con)
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")
        finally:
            con.close()

    @contextmanager
    def read(self) -> Iterator[GraphTx]:
        con = self.connect()
        try:
            yield GraphTx(con)
        finally:
            con.close()
