"""
Ephemeral Persistence Provider

In-process storage for both memory tiers, with the same uniqueness, filter
and ordering semantics as the native provider. Nothing survives the process;
meant for tests and single-process deployments that don't need durability.
"""

from __future__ import annotations

import copy
import dataclasses
import time
from datetime import datetime
from typing import Any

from chatmem.memory.models import MemoryErrorRecord, MemoryTier, StoredMemory

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


def _copy(record: StoredMemory) -> StoredMemory:
    return dataclasses.replace(record, metadata=copy.deepcopy(record.metadata))


def _sort(records: list[StoredMemory], order_by: list[OrderBy]) -> list[StoredMemory]:
    # Stable sorts from least to most significant key; insertion order breaks remaining ties
    for order in reversed(order_by):
        present = [r for r in records if getattr(r, order.field) is not None]
        missing = [r for r in records if getattr(r, order.field) is None]
        present.sort(key=lambda r: getattr(r, order.field), reverse=order.descending)
        records = missing + present if order.nulls_first else present + missing
    return records


class EphemeralProvider(PersistenceProvider):
    def __init__(self, config: dict[str, Any] | None = None):
        self.config = config or {}
        self._records: dict[MemoryTier, dict[str, StoredMemory]] = {tier: {} for tier in MemoryTier}
        self._errors: list[MemoryErrorRecord] = []

    @property
    def name(self) -> str:
        return "ephemeral"

    async def teardown(self) -> bool:
        self._errors.clear()
        for records in self._records.values():
            records.clear()
        return True

    async def health_check(self) -> HealthStatus:
        start = time.time()
        return HealthStatus(
            healthy=True,
            provider=self.name,
            latency_ms=(time.time() - start) * 1000,
            details={"counts": {tier.value: len(records) for tier, records in self._records.items()}},
        )

    async def insert(self, tier: MemoryTier, record: StoredMemory) -> StoredMemory:
        scope = record.scope_id if tier == MemoryTier.CONVERSATION else None
        for existing in self._records[tier].values():
            if (
                existing.owner_id == record.owner_id
                and existing.scope_id == scope
                and existing.content_hash == record.content_hash
            ):
                raise DuplicateMemoryError(tier, record.owner_id, record.content_hash, scope)
        if record.id in self._records[tier]:
            raise ValueError(f"Record id {record.id} already exists in {tier.value} tier")

        stored = dataclasses.replace(_copy(record), tier=tier, scope_id=scope)
        self._records[tier][record.id] = stored
        return _copy(stored)

    async def find_many(
        self,
        tier: MemoryTier,
        filters: MemoryFilter,
        order_by: list[OrderBy] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[StoredMemory]:
        matches = [r for r in self._records[tier].values() if filters.matches(r)]
        matches = _sort(matches, order_by or [])
        end = None if limit is None else offset + max(0, limit)
        return [_copy(r) for r in matches[offset:end]]

    async def update(self, tier: MemoryTier, ids: list[str], changes: dict[str, Any]) -> int:
        check_changes(changes)
        updated = 0
        for record_id in ids:
            record = self._records[tier].get(record_id)
            if record is None:
                continue
            # Rebuild through the dataclass so clamping and UTC normalization apply
            self._records[tier][record_id] = dataclasses.replace(record, **copy.deepcopy(changes))
            updated += 1
        return updated

    async def delete(self, tier: MemoryTier, filters: MemoryFilter) -> int:
        check_delete_filter(filters)
        doomed = [record_id for record_id, r in self._records[tier].items() if filters.matches(r)]
        for record_id in doomed:
            del self._records[tier][record_id]
        return len(doomed)

    async def count(self, tier: MemoryTier, filters: MemoryFilter) -> int:
        return sum(1 for r in self._records[tier].values() if filters.matches(r))

    async def insert_error(self, record: MemoryErrorRecord) -> MemoryErrorRecord:
        if any(e.id == record.id for e in self._errors):
            raise PersistenceError(f"Error entry {record.id} already exists")
        self._errors.append(dataclasses.replace(record, metadata=copy.deepcopy(record.metadata)))
        return record

    async def find_errors(self, filters: ErrorFilter, limit: int | None = None) -> list[MemoryErrorRecord]:
        matches = [e for e in reversed(self._errors) if filters.matches(e)]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        if limit is not None:
            matches = matches[: max(0, limit)]
        return [dataclasses.replace(e, metadata=copy.deepcopy(e.metadata)) for e in matches]

    async def resolve_errors(self, ids: list[str], resolved_at: datetime) -> int:
        resolved = 0
        for i, entry in enumerate(self._errors):
            if entry.id in ids and not entry.resolved:
                self._errors[i] = dataclasses.replace(entry, resolved=True, resolved_at=resolved_at)
                resolved += 1
        return resolved

    async def delete_errors(self, filters: ErrorFilter) -> int:
        kept = [e for e in self._errors if not filters.matches(e)]
        deleted = len(self._errors) - len(kept)
        self._errors = kept
        return deleted
