"""
Persistence Provider Base Classes

Abstract interface the memory store persists through, plus the filter/order
structures and the two errors providers raise. Every backend (SQLite, in-process,
or anything else) implements this interface with the same semantics.

Design Principles:
- Async-first so network-backed stores fit without changes to the store
- Two tiers (conversation, user) with the same record shape
- An error ledger beside the tiers, queried with ErrorFilter
- Uniqueness on (owner, scope, content_hash) is enforced by the provider and
  surfaced as DuplicateMemoryError; the store treats it as success
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chatmem.memory.models import MemoryErrorRecord, MemoryTier, StoredMemory, Temporality


class PersistenceError(Exception):
    """A provider could not complete a storage operation."""


class DuplicateMemoryError(PersistenceError):
    """A live record with the same (owner, scope, content_hash) already exists."""

    def __init__(self, tier: MemoryTier, owner_id: str, content_hash: str, scope_id: str | None = None):
        self.tier = tier
        self.owner_id = owner_id
        self.scope_id = scope_id
        self.content_hash = content_hash
        super().__init__(f"Duplicate {tier.value} memory {content_hash} for owner {owner_id}")


# Columns find_many() may order by
SORTABLE_FIELDS = frozenset({
    "importance", "confidence", "salience", "created_at", "last_accessed_at", "expires_at",
})

# Columns update() may change; everything else is immutable after insert
MUTABLE_FIELDS = frozenset({
    "importance", "confidence", "salience", "last_accessed_at", "metadata",
})


@dataclass
class MemoryFilter:
    """
    Conjunctive filter over flat columns. Unset fields do not constrain.

    expires_before matches records with a non-null expires_at earlier than it;
    created_before matches records created earlier than it.
    """

    owner_id: str | None = None
    scope_id: str | None = None
    content_hash: str | None = None
    ids: list[str] | None = None
    temporality: Temporality | None = None
    expires_before: datetime | None = None
    created_before: datetime | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.owner_id, self.scope_id, self.content_hash, self.ids,
                self.temporality, self.expires_before, self.created_before,
            )
        )

    def matches(self, record: StoredMemory) -> bool:
        if self.owner_id is not None and record.owner_id != self.owner_id:
            return False
        if self.scope_id is not None and record.scope_id != self.scope_id:
            return False
        if self.content_hash is not None and record.content_hash != self.content_hash:
            return False
        if self.ids is not None and record.id not in self.ids:
            return False
        if self.temporality is not None and record.temporality != self.temporality:
            return False
        if self.expires_before is not None and (
            record.expires_at is None or record.expires_at >= self.expires_before
        ):
            return False
        if self.created_before is not None and record.created_at >= self.created_before:
            return False
        return True


@dataclass
class OrderBy:
    field: str
    descending: bool = False
    nulls_first: bool = False

    def __post_init__(self) -> None:
        if self.field not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot order by {self.field!r}. Sortable: {sorted(SORTABLE_FIELDS)}")


@dataclass
class ErrorFilter:
    """Conjunctive filter over error-ledger entries. Unset fields do not constrain."""

    ids: list[str] | None = None
    user_id: str | None = None
    conversation_id: str | None = None
    resolved: bool | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None

    def matches(self, record: MemoryErrorRecord) -> bool:
        if self.ids is not None and record.id not in self.ids:
            return False
        if self.user_id is not None and record.user_id != self.user_id:
            return False
        if self.conversation_id is not None and record.conversation_id != self.conversation_id:
            return False
        if self.resolved is not None and record.resolved != self.resolved:
            return False
        if self.created_after is not None and record.created_at < self.created_after:
            return False
        if self.created_before is not None and record.created_at >= self.created_before:
            return False
        return True


@dataclass
class HealthStatus:
    """Provider health check result."""

    healthy: bool
    provider: str
    latency_ms: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "provider": self.provider,
            "latency_ms": self.latency_ms,
            "details": self.details,
        }


def check_changes(changes: dict[str, Any]) -> None:
    illegal = set(changes) - MUTABLE_FIELDS
    if illegal:
        raise ValueError(f"Cannot update immutable fields: {sorted(illegal)}")


def check_delete_filter(filters: MemoryFilter) -> None:
    if filters.is_empty():
        raise ValueError("Refusing to delete with an empty filter")


class PersistenceProvider(ABC):
    """
    Abstract base class for memory persistence.

    All operations are tier-addressed. Implementations must make insert()
    atomic with respect to the uniqueness constraint so concurrent turns never
    produce two live records with the same content hash.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., 'native', 'ephemeral')."""
        pass

    async def initialize(self) -> None:
        """Prepare storage (create tables, connect). Safe to call repeatedly."""

    async def teardown(self) -> bool:
        """Release resources. Called during shutdown."""
        return True

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        pass

    @abstractmethod
    async def insert(self, tier: MemoryTier, record: StoredMemory) -> StoredMemory:
        """
        Persist a new record.

        Raises:
            DuplicateMemoryError: same (owner, scope, content_hash) already stored
            PersistenceError: storage failure
        """
        pass

    @abstractmethod
    async def find_many(
        self,
        tier: MemoryTier,
        filters: MemoryFilter,
        order_by: list[OrderBy] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[StoredMemory]:
        pass

    @abstractmethod
    async def update(self, tier: MemoryTier, ids: list[str], changes: dict[str, Any]) -> int:
        """
        Change mutable fields (MUTABLE_FIELDS) on the given records.

        Returns:
            Number of records updated
        """
        pass

    @abstractmethod
    async def delete(self, tier: MemoryTier, filters: MemoryFilter) -> int:
        """
        Delete matching records. An empty filter raises ValueError.

        Returns:
            Number of records deleted
        """
        pass

    @abstractmethod
    async def count(self, tier: MemoryTier, filters: MemoryFilter) -> int:
        pass

    async def find_first(
        self,
        tier: MemoryTier,
        filters: MemoryFilter,
        order_by: list[OrderBy] | None = None,
    ) -> StoredMemory | None:
        records = await self.find_many(tier, filters, order_by=order_by, limit=1)
        return records[0] if records else None

    # -------------------------------------------------------------------------
    # Error ledger
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_error(self, record: MemoryErrorRecord) -> MemoryErrorRecord:
        pass

    @abstractmethod
    async def find_errors(self, filters: ErrorFilter, limit: int | None = None) -> list[MemoryErrorRecord]:
        """Matching ledger entries, newest first."""
        pass

    @abstractmethod
    async def resolve_errors(self, ids: list[str], resolved_at: datetime) -> int:
        """
        Mark unresolved entries as resolved.

        Returns:
            Number of entries changed
        """
        pass

    @abstractmethod
    async def delete_errors(self, filters: ErrorFilter) -> int:
        pass


__all__ = [
    "DuplicateMemoryError",
    "ErrorFilter",
    "HealthStatus",
    "MUTABLE_FIELDS",
    "MemoryFilter",
    "OrderBy",
    "PersistenceError",
    "PersistenceProvider",
    "SORTABLE_FIELDS",
]
