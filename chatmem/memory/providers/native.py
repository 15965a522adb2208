"""
Native Persistence Provider

SQLite-backed storage for both memory tiers. One table per tier with flat,
indexed columns for everything the store filters or sorts on; candidate
details ride in a JSON metadata column. A third table, memory_errors, holds
the error ledger.

Uniqueness on (owner_id, scope_id, content_hash) is a table constraint, so a
concurrent duplicate insert fails atomically and surfaces as
DuplicateMemoryError.

Features:
- Zero external dependencies (stdlib sqlite3)
- Works with a file path or ":memory:"
- Timestamps stored as fixed-width UTC ISO strings so they sort lexically

Dependencies:
    - sqlite3 (stdlib)
    - json (stdlib)
"""

from __future__ import annotations

import json
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chatmem import PROJECT_ROOT
from chatmem.logging_config import get_logger
from chatmem.memory.models import (
    ErrorSeverity,
    FactType,
    MemoryErrorRecord,
    MemoryOperation,
    MemoryTier,
    StoredMemory,
    Temporality,
    parse_datetime,
)

from .base import (
    DuplicateMemoryError,
    ErrorFilter,
    HealthStatus,
    MemoryFilter,
    OrderBy,
    PersistenceError,
    PersistenceProvider,
    check_changes,
    check_delete_filter,
)

logger = get_logger(__name__)

DEFAULT_DB_PATH = "data/chat_memory.db"

TABLES = {
    MemoryTier.CONVERSATION: "conversation_memories",
    MemoryTier.USER: "user_memories",
}

# User-tier rows have no scope; stored as '' so the unique index applies
_NO_SCOPE = ""

_COLUMNS = (
    "id, owner_id, scope_id, content, fact_type, importance, confidence, salience, "
    "content_hash, temporality, expires_at, metadata, language_code, created_at, last_accessed_at"
)

_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        scope_id TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL,
        fact_type TEXT NOT NULL,
        importance INTEGER NOT NULL CHECK(importance BETWEEN 1 AND 10),
        confidence REAL NOT NULL CHECK(confidence BETWEEN 0 AND 1),
        salience REAL NOT NULL CHECK(salience BETWEEN 0 AND 1),
        content_hash TEXT NOT NULL,
        temporality TEXT NOT NULL,
        expires_at TEXT,
        metadata TEXT NOT NULL DEFAULT '{{}}',
        language_code TEXT,
        created_at TEXT NOT NULL,
        last_accessed_at TEXT,
        UNIQUE(owner_id, scope_id, content_hash)
    )
"""

ERRORS_TABLE = "memory_errors"

_ERROR_COLUMNS = (
    "id, operation, severity, message, component, error_type, conversation_id, user_id, "
    "metadata, created_at, resolved, resolved_at"
)

_ERRORS_DDL = f"""
    CREATE TABLE IF NOT EXISTS {ERRORS_TABLE} (
        id TEXT PRIMARY KEY,
        operation TEXT NOT NULL,
        severity TEXT NOT NULL,
        message TEXT NOT NULL,
        component TEXT,
        error_type TEXT,
        conversation_id TEXT,
        user_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{{}}',
        created_at TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TEXT
    )
"""


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_memory(row: sqlite3.Row, tier: MemoryTier) -> StoredMemory:
    return StoredMemory(
        id=row["id"],
        tier=tier,
        owner_id=row["owner_id"],
        scope_id=row["scope_id"] or None,
        content=row["content"],
        fact_type=FactType(row["fact_type"]),
        importance=row["importance"],
        confidence=row["confidence"],
        salience=row["salience"],
        content_hash=row["content_hash"],
        temporality=Temporality(row["temporality"]),
        expires_at=parse_datetime(row["expires_at"]),
        metadata=json.loads(row["metadata"] or "{}"),
        language_code=row["language_code"],
        created_at=parse_datetime(row["created_at"]),
        last_accessed_at=parse_datetime(row["last_accessed_at"]),
    )


def _where(filters: MemoryFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []

    if filters.owner_id is not None:
        clauses.append("owner_id = ?")
        params.append(filters.owner_id)
    if filters.scope_id is not None:
        clauses.append("scope_id = ?")
        params.append(filters.scope_id)
    if filters.content_hash is not None:
        clauses.append("content_hash = ?")
        params.append(filters.content_hash)
    if filters.ids is not None:
        if not filters.ids:
            clauses.append("0")
        else:
            clauses.append(f"id IN ({', '.join('?' for _ in filters.ids)})")
            params.extend(filters.ids)
    if filters.temporality is not None:
        clauses.append("temporality = ?")
        params.append(Temporality(filters.temporality).value)
    if filters.expires_before is not None:
        clauses.append("expires_at IS NOT NULL AND expires_at < ?")
        params.append(_to_db(filters.expires_before))
    if filters.created_before is not None:
        clauses.append("created_at < ?")
        params.append(_to_db(filters.created_before))

    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _row_to_error(row: sqlite3.Row) -> MemoryErrorRecord:
    return MemoryErrorRecord(
        id=row["id"],
        operation=MemoryOperation(row["operation"]),
        severity=ErrorSeverity(row["severity"]),
        message=row["message"],
        component=row["component"],
        error_type=row["error_type"],
        conversation_id=row["conversation_id"],
        user_id=row["user_id"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=parse_datetime(row["created_at"]),
        resolved=bool(row["resolved"]),
        resolved_at=parse_datetime(row["resolved_at"]),
    )


def _error_where(filters: ErrorFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []

    if filters.ids is not None:
        if not filters.ids:
            clauses.append("0")
        else:
            clauses.append(f"id IN ({', '.join('?' for _ in filters.ids)})")
            params.extend(filters.ids)
    if filters.user_id is not None:
        clauses.append("user_id = ?")
        params.append(filters.user_id)
    if filters.conversation_id is not None:
        clauses.append("conversation_id = ?")
        params.append(filters.conversation_id)
    if filters.resolved is not None:
        clauses.append("resolved = ?")
        params.append(int(filters.resolved))
    if filters.created_after is not None:
        clauses.append("created_at >= ?")
        params.append(_to_db(filters.created_after))
    if filters.created_before is not None:
        clauses.append("created_at < ?")
        params.append(_to_db(filters.created_before))

    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _order(order_by: list[OrderBy] | None) -> str:
    terms = [
        f"{o.field} {'DESC' if o.descending else 'ASC'} {'NULLS FIRST' if o.nulls_first else 'NULLS LAST'}"
        for o in order_by or []
    ]
    # Insertion order breaks remaining ties
    terms.append("rowid ASC")
    return " ORDER BY " + ", ".join(terms)


class NativeProvider(PersistenceProvider):
    """
    SQLite persistence for both memory tiers.

    Config:
        database_path: file path (relative paths resolve from the project root)
                       or ":memory:"
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}
        database_path = str(config.get("database_path") or DEFAULT_DB_PATH)
        if database_path == ":memory:":
            self.db_path: Path | None = None
        else:
            path = Path(database_path)
            self.db_path = path if path.is_absolute() else PROJECT_ROOT / path
        self._conn: sqlite3.Connection | None = None

    @property
    def name(self) -> str:
        return "native"

    def get_connection(self) -> sqlite3.Connection:
        """Shared connection, creating tables on first use."""
        if self._conn is None:
            if self.db_path is None:
                conn = sqlite3.connect(":memory:")
            else:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            self._create_schema(conn)
            self._conn = conn
        return self._conn

    @staticmethod
    def _create_schema(conn: sqlite3.Connection) -> None:
        cursor = conn.cursor()
        for tier, table in TABLES.items():
            cursor.execute(_TABLE_DDL.format(table=table))
            cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table}(owner_id, scope_id)")
            cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_salience ON {table}(owner_id, salience)")
            cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_created ON {table}(owner_id, created_at)")
            cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_expires ON {table}(expires_at)")
        cursor.execute(_ERRORS_DDL)
        cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{ERRORS_TABLE}_created ON {ERRORS_TABLE}(created_at)")
        cursor.execute(f"CREATE INDEX IF NOT EXISTS idx_{ERRORS_TABLE}_user ON {ERRORS_TABLE}(user_id)")
        conn.commit()

    async def initialize(self) -> None:
        try:
            self.get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open memory database: {e}") from e

    async def teardown(self) -> bool:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        return True

    async def health_check(self) -> HealthStatus:
        start = time.time()
        try:
            conn = self.get_connection()
            counts = {
                tier.value: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for tier, table in TABLES.items()
            }
            return HealthStatus(
                healthy=True,
                provider=self.name,
                latency_ms=(time.time() - start) * 1000,
                details={"database": str(self.db_path or ":memory:"), "counts": counts},
            )
        except Exception as e:
            return HealthStatus(
                healthy=False,
                provider=self.name,
                latency_ms=(time.time() - start) * 1000,
                details={"error": str(e)},
            )

    async def insert(self, tier: MemoryTier, record: StoredMemory) -> StoredMemory:
        table = TABLES[tier]
        scope = record.scope_id if tier == MemoryTier.CONVERSATION and record.scope_id else _NO_SCOPE
        conn = self.get_connection()
        try:
            conn.execute(
                f"INSERT INTO {table} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.owner_id,
                    scope,
                    record.content,
                    record.fact_type.value,
                    record.importance,
                    record.confidence,
                    record.salience,
                    record.content_hash,
                    record.temporality.value,
                    _to_db(record.expires_at),
                    json.dumps(record.metadata, ensure_ascii=False, default=str),
                    record.language_code,
                    _to_db(record.created_at),
                    _to_db(record.last_accessed_at),
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if "content_hash" in str(e):
                raise DuplicateMemoryError(tier, record.owner_id, record.content_hash, scope or None) from e
            raise PersistenceError(f"Insert into {table} failed: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Insert into {table} failed: {e}") from e
        return record

    async def find_many(
        self,
        tier: MemoryTier,
        filters: MemoryFilter,
        order_by: list[OrderBy] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[StoredMemory]:
        where, params = _where(filters)
        sql = f"SELECT {_COLUMNS} FROM {TABLES[tier]}{where}{_order(order_by)}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([max(0, limit), max(0, offset)])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)

        try:
            rows = self.get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Query on {TABLES[tier]} failed: {e}") from e
        return [_row_to_memory(row, tier) for row in rows]

    async def update(self, tier: MemoryTier, ids: list[str], changes: dict[str, Any]) -> int:
        check_changes(changes)
        if not ids or not changes:
            return 0

        assignments = []
        params: list[Any] = []
        for column, value in changes.items():
            if column == "metadata":
                value = json.dumps(value or {}, ensure_ascii=False, default=str)
            elif column == "last_accessed_at":
                value = _to_db(value)
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend(ids)

        conn = self.get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE {TABLES[tier]} SET {', '.join(assignments)} WHERE id IN ({', '.join('?' for _ in ids)})",
                params,
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Update on {TABLES[tier]} failed: {e}") from e
        return cursor.rowcount

    async def delete(self, tier: MemoryTier, filters: MemoryFilter) -> int:
        check_delete_filter(filters)
        where, params = _where(filters)
        conn = self.get_connection()
        try:
            cursor = conn.execute(f"DELETE FROM {TABLES[tier]}{where}", params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Delete on {TABLES[tier]} failed: {e}") from e
        return cursor.rowcount

    async def count(self, tier: MemoryTier, filters: MemoryFilter) -> int:
        where, params = _where(filters)
        try:
            row = self.get_connection().execute(f"SELECT COUNT(*) FROM {TABLES[tier]}{where}", params).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Count on {TABLES[tier]} failed: {e}") from e
        return row[0]

    # =========================================================================
    # Error ledger
    # =========================================================================

    async def insert_error(self, record: MemoryErrorRecord) -> MemoryErrorRecord:
        conn = self.get_connection()
        try:
            conn.execute(
                f"INSERT INTO {ERRORS_TABLE} ({_ERROR_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.operation.value,
                    record.severity.value,
                    record.message,
                    record.component,
                    record.error_type,
                    record.conversation_id,
                    record.user_id,
                    json.dumps(record.metadata, ensure_ascii=False, default=str),
                    _to_db(record.created_at),
                    int(record.resolved),
                    _to_db(record.resolved_at),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Insert into {ERRORS_TABLE} failed: {e}") from e
        return record

    async def find_errors(self, filters: ErrorFilter, limit: int | None = None) -> list[MemoryErrorRecord]:
        where, params = _error_where(filters)
        sql = f"SELECT {_ERROR_COLUMNS} FROM {ERRORS_TABLE}{where} ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, limit))
        try:
            rows = self.get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Query on {ERRORS_TABLE} failed: {e}") from e
        return [_row_to_error(row) for row in rows]

    async def resolve_errors(self, ids: list[str], resolved_at: datetime) -> int:
        if not ids:
            return 0
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE {ERRORS_TABLE} SET resolved = 1, resolved_at = ? "
                f"WHERE resolved = 0 AND id IN ({', '.join('?' for _ in ids)})",
                [_to_db(resolved_at), *ids],
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Update on {ERRORS_TABLE} failed: {e}") from e
        return cursor.rowcount

    async def delete_errors(self, filters: ErrorFilter) -> int:
        where, params = _error_where(filters)
        conn = self.get_connection()
        try:
            cursor = conn.execute(f"DELETE FROM {ERRORS_TABLE}{where}", params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Delete on {ERRORS_TABLE} failed: {e}") from e
        return cursor.rowcount
