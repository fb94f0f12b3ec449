"""
Recollect SQLite Memory Store
-----------------------------
Persistent storage for memories, tags, associations and the retrieval log.
SQLite provides ACID guarantees and zero-config operation; an FTS5
external-content table mirrors memory content and tags for lexical search.

Every listing in this module only returns *active* memories: not superseded
and not past their expiry. Rows are still readable by id through ``get``.
"""

import sqlite3
import json
import time
import logging
import threading
import contextlib
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Iterator, Tuple, Union

from recollect.core.types import (
    Memory,
    MemoryType,
    Importance,
    MemorySource,
    Embedding,
    Tag,
    MemorySystemStats,
    IMPORTANCE_RANK,
    new_id,
)
from recollect.errors import InvalidInputError

logger = logging.getLogger("Recollect.SQLite")

SCHEMA_VERSION = 1

CREATE_MEMORIES = """
CREATE TABLE IF NOT EXISTS memories (
    id                 TEXT PRIMARY KEY,
    content            TEXT NOT NULL,
    type               TEXT NOT NULL,
    importance         TEXT NOT NULL DEFAULT 'medium',
    source             TEXT NOT NULL DEFAULT 'system',

    -- Provenance
    source_outcome_id  TEXT,
    source_task_id     TEXT,

    -- JSON array of normalized tag names (denormalized copy of memory_tags)
    tags               TEXT NOT NULL DEFAULT '[]',
    -- JSON array of floats, NULL when no embedding was generated
    embedding          TEXT,
    confidence         REAL NOT NULL DEFAULT 1.0,

    access_count       INTEGER NOT NULL DEFAULT 0,
    last_accessed_at   REAL,

    expires_at         REAL,
    superseded_by      TEXT,
    created_at         REAL NOT NULL,
    updated_at         REAL NOT NULL
);
"""

CREATE_TAGS = """
CREATE TABLE IF NOT EXISTS tags (
    id           TEXT PRIMARY KEY,
    name         TEXT NOT NULL UNIQUE,
    memory_count INTEGER NOT NULL DEFAULT 0,
    created_at   REAL NOT NULL
);
"""

CREATE_MEMORY_TAGS = """
CREATE TABLE IF NOT EXISTS memory_tags (
    memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    tag_id    TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (memory_id, tag_id)
);
"""

CREATE_ASSOCIATIONS = """
CREATE TABLE IF NOT EXISTS memory_associations (
    id               TEXT PRIMARY KEY,
    memory_id        TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    association_type TEXT NOT NULL,
    target_id        TEXT NOT NULL,
    strength         REAL NOT NULL DEFAULT 0.5,
    context          TEXT,
    created_at       REAL NOT NULL
);
"""

# No foreign key: the log outlives the memories it mentions.
CREATE_RETRIEVALS = """
CREATE TABLE IF NOT EXISTS memory_retrievals (
    id               TEXT PRIMARY KEY,
    memory_id        TEXT NOT NULL,
    outcome_id       TEXT,
    task_id          TEXT,
    retrieval_method TEXT NOT NULL,
    query            TEXT,
    relevance_score  REAL,
    was_useful       INTEGER,
    created_at       REAL NOT NULL
);
"""

SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);",
    "CREATE INDEX IF NOT EXISTS idx_memories_importance ON memories(importance);",
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_memories_superseded ON memories(superseded_by);",
    "CREATE INDEX IF NOT EXISTS idx_memories_expires ON memories(expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_memories_source_outcome ON memories(source_outcome_id);",
    "CREATE INDEX IF NOT EXISTS idx_memory_tags_tag ON memory_tags(tag_id);",
    "CREATE INDEX IF NOT EXISTS idx_assoc_memory ON memory_associations(memory_id);",
    "CREATE INDEX IF NOT EXISTS idx_assoc_target ON memory_associations(target_id, association_type);",
    "CREATE INDEX IF NOT EXISTS idx_retrievals_memory ON memory_retrievals(memory_id);",
]

CREATE_FTS = """
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    content,
    tags,
    content='memories',
    content_rowid='rowid',
    tokenize='porter unicode61'
);
"""

CREATE_FTS_TRIGGERS = [
    """
    CREATE TRIGGER IF NOT EXISTS memories_fts_insert AFTER INSERT ON memories BEGIN
        INSERT INTO memories_fts(rowid, content, tags) VALUES (new.rowid, new.content, new.tags);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_fts_delete AFTER DELETE ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content, tags)
        VALUES ('delete', old.rowid, old.content, old.tags);
    END;
    """,
    """
    CREATE TRIGGER IF NOT EXISTS memories_fts_update AFTER UPDATE OF content, tags ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, content, tags)
        VALUES ('delete', old.rowid, old.content, old.tags);
        INSERT INTO memories_fts(rowid, content, tags) VALUES (new.rowid, new.content, new.tags);
    END;
    """,
]

IMPORTANCE_ORDER_SQL = (
    "CASE {col} "
    + " ".join(f"WHEN '{name}' THEN {rank}" for name, rank in IMPORTANCE_RANK.items())
    + " ELSE 0 END"
)

UPDATABLE_FIELDS = ("content", "type", "importance", "confidence", "expires_at", "tags", "source")


def active_filter(alias: str = "") -> str:
    """SQL fragment selecting active memories; binds one parameter (now)."""
    p = f"{alias}." if alias else ""
    return f"{p}superseded_by IS NULL AND ({p}expires_at IS NULL OR {p}expires_at > ?)"


def importance_order(alias: str = "") -> str:
    return IMPORTANCE_ORDER_SQL.format(col=f"{alias}.importance" if alias else "importance")


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Normalize and de-duplicate tags, keeping first-seen order and dropping blanks."""
    seen: List[str] = []
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        name = normalize_tag(tag)
        if name and name not in seen:
            seen.append(name)
    return seen


def parse_tags(raw: Optional[str], memory_id: str = "?") -> List[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Malformed tags JSON on memory %s; treating as empty", memory_id)
        return []
    if not isinstance(parsed, list):
        logger.warning("Tags on memory %s are not a list; treating as empty", memory_id)
        return []
    return [str(t) for t in parsed if isinstance(t, str)]


def parse_embedding(raw: Optional[str], memory_id: str = "?") -> Optional[Embedding]:
    if raw is None or raw == "":
        return None
    try:
        parsed = json.loads(raw)
        if not isinstance(parsed, list) or not parsed:
            raise ValueError("embedding is not a non-empty list")
        return Embedding(values=[float(x) for x in parsed])
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        logger.warning("Malformed embedding on memory %s; treating as absent: %s", memory_id, e)
        return None


def _coerce_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidInputError(f"'{value}' is not one of: {allowed}", field=field)


def _check_confidence(confidence: float) -> float:
    try:
        value = float(confidence)
    except (TypeError, ValueError):
        raise InvalidInputError(f"'{confidence}' is not a number", field="confidence")
    if not 0.0 <= value <= 1.0:
        raise InvalidInputError(f"{value} is outside [0, 1]", field="confidence")
    return value


def _check_content(content: str) -> str:
    if not isinstance(content, str) or not content.strip():
        raise InvalidInputError("content must be a non-empty string", field="content")
    return content


class SQLiteMemoryStore:
    """Manages memories and their satellites in SQLite with full CRUD and query capabilities."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._fts5_available = False
        self._initialize()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")
        return self._conn

    @contextlib.contextmanager
    def locked(self) -> Iterator[sqlite3.Connection]:
        """Yield the shared connection while holding the store lock."""
        with self._lock:
            yield self._get_conn()

    def _initialize(self):
        with self.locked() as conn:
            conn.execute(CREATE_MEMORIES)
            conn.execute(CREATE_TAGS)
            conn.execute(CREATE_MEMORY_TAGS)
            conn.execute(CREATE_ASSOCIATIONS)
            conn.execute(CREATE_RETRIEVALS)
            conn.execute(SCHEMA_META)
            for idx in CREATE_INDEXES:
                conn.execute(idx)
            self._fts5_available = self._ensure_fts5(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES (?, ?)",
                ("version", str(SCHEMA_VERSION)),
            )
            conn.commit()
        logger.info(
            "SQLite memory store initialized at %s (fts5=%s)", self.db_path, self._fts5_available
        )

    @staticmethod
    def _ensure_fts5(conn: sqlite3.Connection) -> bool:
        """Create the FTS5 mirror table and its sync triggers; False if FTS5 is missing."""
        existed = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'memories_fts'"
        ).fetchone() is not None
        try:
            conn.execute(CREATE_FTS)
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 unavailable, lexical search will use LIKE fallback: %s", e)
            return False
        for trigger in CREATE_FTS_TRIGGERS:
            conn.execute(trigger)
        if not existed:
            # Populate from rows written before the index existed.
            conn.execute("INSERT INTO memories_fts(memories_fts) VALUES('rebuild')")
        return True

    @property
    def fts5_available(self) -> bool:
        return self._fts5_available

    def row_to_memory(self, row: sqlite3.Row) -> Memory:
        d = dict(row)
        memory_id = d.get("id", "?")
        d["tags"] = parse_tags(d.get("tags"), memory_id)
        d["embedding"] = parse_embedding(d.get("embedding"), memory_id)
        try:
            d["type"] = MemoryType(d.get("type"))
        except ValueError:
            logger.warning("Unknown memory type '%s' on %s; using context", d.get("type"), memory_id)
            d["type"] = MemoryType.CONTEXT
        try:
            d["importance"] = Importance(d.get("importance"))
        except ValueError:
            d["importance"] = Importance.MEDIUM
        try:
            d["source"] = MemorySource(d.get("source"))
        except ValueError:
            d["source"] = MemorySource.SYSTEM
        return Memory(**d)

    def _rows_to_memories(self, rows) -> List[Memory]:
        return [self.row_to_memory(row) for row in rows]

    # --- CRUD Operations ---

    def create(
        self,
        content: str,
        type: Union[MemoryType, str],
        importance: Union[Importance, str, None] = None,
        source: Union[MemorySource, str] = MemorySource.SYSTEM,
        source_outcome_id: Optional[str] = None,
        source_task_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        embedding: Optional[Embedding] = None,
        confidence: float = 1.0,
        expires_at: Optional[float] = None,
    ) -> Memory:
        now = time.time()
        memory = Memory(
            content=_check_content(content),
            type=_coerce_enum(MemoryType, type, "type"),
            importance=_coerce_enum(Importance, importance or Importance.MEDIUM, "importance"),
            source=_coerce_enum(MemorySource, source, "source"),
            source_outcome_id=source_outcome_id,
            source_task_id=source_task_id,
            tags=normalize_tags(tags),
            embedding=embedding,
            confidence=_check_confidence(confidence),
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        with self.locked() as conn:
            conn.execute(
                """INSERT INTO memories (
                    id, content, type, importance, source, source_outcome_id, source_task_id,
                    tags, embedding, confidence, access_count, last_accessed_at,
                    expires_at, superseded_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, NULL, ?, ?)""",
                (
                    memory.id, memory.content, memory.type.value, memory.importance.value,
                    memory.source.value, memory.source_outcome_id, memory.source_task_id,
                    json.dumps(memory.tags), self._dump_embedding(memory.embedding),
                    memory.confidence, memory.expires_at, memory.created_at, memory.updated_at,
                ),
            )
            self._link_tags(conn, memory.id, memory.tags)
            conn.commit()
        return memory

    @staticmethod
    def _dump_embedding(embedding: Optional[Embedding]) -> Optional[str]:
        return json.dumps(embedding.values) if embedding is not None else None

    def get(self, memory_id: str) -> Optional[Memory]:
        with self.locked() as conn:
            row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        if row is None:
            return None
        return self.row_to_memory(row)

    def update(self, memory_id: str, **fields) -> Optional[Memory]:
        """Update content/type/importance/confidence/expires_at/tags/source; None if missing."""
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"cannot update {sorted(unknown)}", field="fields")

        columns: Dict[str, Any] = {}
        if "content" in fields:
            columns["content"] = _check_content(fields["content"])
        if "type" in fields:
            columns["type"] = _coerce_enum(MemoryType, fields["type"], "type").value
        if "importance" in fields:
            columns["importance"] = _coerce_enum(Importance, fields["importance"], "importance").value
        if "source" in fields:
            columns["source"] = _coerce_enum(MemorySource, fields["source"], "source").value
        if "confidence" in fields:
            columns["confidence"] = _check_confidence(fields["confidence"])
        if "expires_at" in fields:
            columns["expires_at"] = fields["expires_at"]

        with self.locked() as conn:
            row = conn.execute("SELECT tags FROM memories WHERE id = ?", (memory_id,)).fetchone()
            if row is None:
                return None
            if "tags" in fields:
                new_tags = normalize_tags(fields["tags"])
                old_tags = parse_tags(row["tags"], memory_id)
                self._unlink_tags(conn, memory_id, [t for t in old_tags if t not in new_tags])
                self._link_tags(conn, memory_id, new_tags)
                columns["tags"] = json.dumps(new_tags)
            columns["updated_at"] = time.time()
            set_clause = ", ".join(f"{k} = ?" for k in columns)
            conn.execute(
                f"UPDATE memories SET {set_clause} WHERE id = ?",
                list(columns.values()) + [memory_id],
            )
            conn.commit()
        return self.get(memory_id)

    def delete(self, memory_id: str) -> bool:
        with self.locked() as conn:
            self._release_tag_counts(conn, [memory_id])
            cursor = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            conn.commit()
        return cursor.rowcount > 0

    def supersede(self, old_id: str, new_id: str) -> Optional[Memory]:
        """Mark ``old_id`` as replaced by ``new_id``. Both rows are kept."""
        if old_id == new_id:
            raise InvalidInputError("a memory cannot supersede itself", field="new_id")
        with self.locked() as conn:
            if conn.execute("SELECT 1 FROM memories WHERE id = ?", (new_id,)).fetchone() is None:
                return None
            cursor = conn.execute(
                "UPDATE memories SET superseded_by = ?, updated_at = ? WHERE id = ?",
                (new_id, time.time(), old_id),
            )
            conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get(old_id)

    def update_embedding(self, memory_id: str, embedding: Optional[Embedding]) -> bool:
        with self.locked() as conn:
            cursor = conn.execute(
                "UPDATE memories SET embedding = ?, updated_at = ? WHERE id = ?",
                (self._dump_embedding(embedding), time.time(), memory_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def record_access(self, memory_id: str) -> None:
        with self.locked() as conn:
            conn.execute(
                "UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
                (time.time(), memory_id),
            )
            conn.commit()

    def record_access_batch(self, memory_ids: List[str]) -> None:
        """Update access metrics for multiple memories in a single transaction."""
        if not memory_ids:
            return
        now = time.time()
        with self.locked() as conn:
            for i in range(0, len(memory_ids), self._SQLITE_MAX_VARS):
                chunk = memory_ids[i : i + self._SQLITE_MAX_VARS]
                placeholders = ",".join("?" for _ in chunk)
                conn.execute(
                    f"UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? "
                    f"WHERE id IN ({placeholders})",
                    [now] + chunk,
                )
            conn.commit()

    # --- Query Operations (active only) ---

    # Stay below SQLite's default 999 bound-variable limit.
    _SQLITE_MAX_VARS = 900

    def _select_active(self, where: str = "", params: Iterable[Any] = (), order: str = "", limit: Optional[int] = None) -> List[Memory]:
        conditions = [active_filter()]
        all_params: List[Any] = [time.time()]
        if where:
            conditions.append(where)
            all_params.extend(params)
        query = f"SELECT * FROM memories WHERE {' AND '.join(conditions)}"
        if order:
            query += f" ORDER BY {order}"
        if limit is not None:
            query += " LIMIT ?"
            all_params.append(int(limit))
        with self.locked() as conn:
            rows = conn.execute(query, all_params).fetchall()
        return self._rows_to_memories(rows)

    def get_active(self, limit: int = 50) -> List[Memory]:
        return self._select_active(
            order=f"{importance_order()} DESC, confidence DESC, created_at DESC", limit=limit
        )

    def get_by_type(self, memory_type: Union[MemoryType, str], limit: int = 50) -> List[Memory]:
        memory_type = _coerce_enum(MemoryType, memory_type, "type")
        return self._select_active(
            "type = ?", [memory_type.value],
            order=f"{importance_order()} DESC, created_at DESC", limit=limit,
        )

    def get_by_importance(self, importance: Union[Importance, str], limit: int = 50) -> List[Memory]:
        importance = _coerce_enum(Importance, importance, "importance")
        return self._select_active(
            "importance = ?", [importance.value], order="created_at DESC", limit=limit
        )

    def get_by_source_outcome(self, outcome_id: str, limit: int = 50) -> List[Memory]:
        return self._select_active(
            "source_outcome_id = ?", [outcome_id], order="created_at DESC", limit=limit
        )

    def get_recently_accessed(self, limit: int = 20) -> List[Memory]:
        return self._select_active(
            "last_accessed_at IS NOT NULL", order="last_accessed_at DESC", limit=limit
        )

    def get_most_accessed(self, limit: int = 20) -> List[Memory]:
        return self._select_active(
            "access_count > 0", order="access_count DESC, last_accessed_at DESC", limit=limit
        )

    def get_with_embeddings(self) -> List[Memory]:
        """All active memories carrying an embedding (input to the linear vector scan)."""
        return self._select_active("embedding IS NOT NULL", order="created_at ASC")

    def get_without_embedding(self, limit: int = 1000) -> List[Memory]:
        return self._select_active("embedding IS NULL", order="created_at ASC", limit=limit)

    def get_expired(self) -> List[Memory]:
        """Memories whose expiry has passed (these are never active)."""
        with self.locked() as conn:
            rows = conn.execute(
                "SELECT * FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ? "
                "ORDER BY expires_at ASC",
                (time.time(),),
            ).fetchall()
        return self._rows_to_memories(rows)

    def search_content(self, query: str, limit: int = 20) -> List[Memory]:
        """Substring search over active memory content.

        LIKE metacharacters % and _ in the caller-supplied query are escaped so
        they are treated as literals rather than wildcards.
        """
        safe_query = query.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")
        return self._select_active(
            r"content LIKE ? ESCAPE '\'", [f"%{safe_query}%"],
            order=f"{importance_order()} DESC, created_at DESC", limit=limit,
        )

    # --- Tags ---

    def _get_or_create_tag(self, conn: sqlite3.Connection, name: str) -> Tuple[str, bool]:
        row = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
        if row is not None:
            return row["id"], False
        tag_id = new_id("tag")
        conn.execute(
            "INSERT INTO tags (id, name, memory_count, created_at) VALUES (?, ?, 0, ?)",
            (tag_id, name, time.time()),
        )
        return tag_id, True

    def _link_tags(self, conn: sqlite3.Connection, memory_id: str, names: List[str]) -> int:
        """Link already-normalized tags; only new links bump the usage counter."""
        linked = 0
        for name in names:
            tag_id, _ = self._get_or_create_tag(conn, name)
            cursor = conn.execute(
                "INSERT OR IGNORE INTO memory_tags (memory_id, tag_id) VALUES (?, ?)",
                (memory_id, tag_id),
            )
            if cursor.rowcount > 0:
                conn.execute("UPDATE tags SET memory_count = memory_count + 1 WHERE id = ?", (tag_id,))
                linked += 1
        return linked

    def _unlink_tags(self, conn: sqlite3.Connection, memory_id: str, names: List[str]) -> None:
        for name in names:
            row = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
            if row is None:
                continue
            cursor = conn.execute(
                "DELETE FROM memory_tags WHERE memory_id = ? AND tag_id = ?", (memory_id, row["id"])
            )
            if cursor.rowcount > 0:
                conn.execute(
                    "UPDATE tags SET memory_count = MAX(memory_count - 1, 0) WHERE id = ?", (row["id"],)
                )

    def _release_tag_counts(self, conn: sqlite3.Connection, memory_ids: List[str]) -> None:
        """Decrement usage counters for every tag linked to memories about to be deleted."""
        for memory_id in memory_ids:
            conn.execute(
                """
                UPDATE tags SET memory_count = MAX(memory_count - 1, 0)
                WHERE id IN (SELECT tag_id FROM memory_tags WHERE memory_id = ?)
                """,
                (memory_id,),
            )

    def get_or_create_tag(self, name: str) -> Tag:
        normalized = normalize_tag(name)
        if not normalized:
            raise InvalidInputError("tag name is empty after normalization", field="tag")
        with self.locked() as conn:
            self._get_or_create_tag(conn, normalized)
            conn.commit()
        return self.get_tag(normalized)

    def get_tag(self, name: str) -> Optional[Tag]:
        with self.locked() as conn:
            row = conn.execute("SELECT * FROM tags WHERE name = ?", (normalize_tag(name),)).fetchone()
        return Tag(**dict(row)) if row is not None else None

    def get_all_tags(self) -> List[Tag]:
        with self.locked() as conn:
            rows = conn.execute("SELECT * FROM tags ORDER BY memory_count DESC, name ASC").fetchall()
        return [Tag(**dict(row)) for row in rows]

    def add_tags(self, memory_id: str, tags: Iterable[str]) -> Optional[Memory]:
        names = normalize_tags(tags)
        with self.locked() as conn:
            row = conn.execute("SELECT tags FROM memories WHERE id = ?", (memory_id,)).fetchone()
            if row is None:
                return None
            current = parse_tags(row["tags"], memory_id)
            self._link_tags(conn, memory_id, names)
            merged = current + [n for n in names if n not in current]
            if merged != current:
                conn.execute(
                    "UPDATE memories SET tags = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(merged), time.time(), memory_id),
                )
            conn.commit()
        return self.get(memory_id)

    def get_by_tag(self, tag: str, limit: int = 50) -> List[Memory]:
        return self.get_by_tags([tag], limit=limit)

    def get_by_tags(self, tags: Iterable[str], limit: int = 50) -> List[Memory]:
        """Active memories carrying *all* of the given tags."""
        names = normalize_tags(tags)
        if not names:
            return []
        placeholders = ",".join("?" for _ in names)
        params: List[Any] = list(names) + [len(names), time.time(), int(limit)]
        query = f"""
            SELECT m.* FROM memories m
            WHERE m.id IN (
                SELECT mt.memory_id FROM memory_tags mt
                JOIN tags t ON t.id = mt.tag_id
                WHERE t.name IN ({placeholders})
                GROUP BY mt.memory_id
                HAVING COUNT(DISTINCT t.name) = ?
            )
            AND {active_filter('m')}
            ORDER BY {importance_order('m')} DESC, m.created_at DESC
            LIMIT ?
        """
        with self.locked() as conn:
            rows = conn.execute(query, params).fetchall()
        return self._rows_to_memories(rows)

    # --- Maintenance ---

    def delete_expired(self) -> int:
        now = time.time()
        with self.locked() as conn:
            ids = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
                ).fetchall()
            ]
            if not ids:
                return 0
            self._release_tag_counts(conn, ids)
            deleted = 0
            for i in range(0, len(ids), self._SQLITE_MAX_VARS):
                chunk = ids[i : i + self._SQLITE_MAX_VARS]
                placeholders = ",".join("?" for _ in chunk)
                cursor = conn.execute(f"DELETE FROM memories WHERE id IN ({placeholders})", chunk)
                deleted += cursor.rowcount
            conn.commit()
        logger.info("Deleted %d expired memories", deleted)
        return deleted

    def count(self, active_only: bool = False) -> int:
        with self.locked() as conn:
            if active_only:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM memories WHERE {active_filter()}", (time.time(),)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM memories").fetchone()
        return row[0] if row else 0

    def stats(self) -> MemorySystemStats:
        now = time.time()
        with self.locked() as conn:
            total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            active = conn.execute(
                f"SELECT COUNT(*) FROM memories WHERE {active_filter()}", (now,)
            ).fetchone()[0]
            superseded = conn.execute(
                "SELECT COUNT(*) FROM memories WHERE superseded_by IS NOT NULL"
            ).fetchone()[0]
            expired = conn.execute(
                "SELECT COUNT(*) FROM memories WHERE expires_at IS NOT NULL AND expires_at <= ?", (now,)
            ).fetchone()[0]
            tags = conn.execute("SELECT COUNT(*) FROM tags").fetchone()[0]
            associations = conn.execute("SELECT COUNT(*) FROM memory_associations").fetchone()[0]
            retrievals = conn.execute("SELECT COUNT(*) FROM memory_retrievals").fetchone()[0]
            by_type = {
                row[0]: row[1]
                for row in conn.execute(
                    f"SELECT type, COUNT(*) FROM memories WHERE {active_filter()} GROUP BY type", (now,)
                ).fetchall()
            }
            by_importance = {
                row[0]: row[1]
                for row in conn.execute(
                    f"SELECT importance, COUNT(*) FROM memories WHERE {active_filter()} GROUP BY importance",
                    (now,),
                ).fetchall()
            }
        return MemorySystemStats(
            total=total,
            active=active,
            superseded=superseded,
            expired=expired,
            tags=tags,
            associations=associations,
            retrievals=retrievals,
            by_type=by_type,
            by_importance=by_importance,
        )

    def close(self):
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
