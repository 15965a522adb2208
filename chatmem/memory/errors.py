"""
Memory Error Ledger

Persisted record of memory-pipeline failures. The store degrades instead of
raising on the chat path, so a failed extraction or write would otherwise
leave nothing behind but a log line; the ledger keeps each failure with its
operation, severity and owner so it can be counted, listed and resolved.

Entries live in the active PersistenceProvider beside the memory tiers.

Usage:
    from chatmem.memory.errors import MemoryErrorLog

    errors = MemoryErrorLog(provider)
    await errors.log_error(MemoryOperation.EXTRACTION, "timed out", user_id="alice")
    stats = await errors.get_error_stats()

    async with errors.capture(MemoryOperation.STORAGE, "cleanup", user_id="alice"):
        ...  # failures are recorded, then re-raised
"""

from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from chatmem.logging_config import get_logger
from chatmem.memory.models import (
    ErrorSeverity,
    MemoryErrorRecord,
    MemoryErrorStats,
    MemoryOperation,
    utcnow,
)
from chatmem.memory.providers.base import ErrorFilter, PersistenceProvider

logger = get_logger(__name__)

# Entries returned in the recent/unresolved lists of get_error_stats()
STATS_SAMPLE_LIMIT = 50

_LOG_LEVELS = {
    ErrorSeverity.DEBUG: "debug",
    ErrorSeverity.INFO: "info",
    ErrorSeverity.WARN: "warning",
    ErrorSeverity.ERROR: "error",
    ErrorSeverity.FATAL: "critical",
}


def _new_error_id() -> str:
    return f"err_{uuid.uuid4().hex[:12]}"


class MemoryErrorLog:
    """Write and query side of the error ledger for one provider."""

    def __init__(self, provider: PersistenceProvider):
        self.provider = provider

    async def log_error(
        self,
        operation: MemoryOperation | str,
        message: str,
        severity: ErrorSeverity | str = ErrorSeverity.ERROR,
        *,
        component: str | None = None,
        conversation_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        exc: BaseException | None = None,
    ) -> str:
        """
        Record one failure and emit it as a structured log event.

        Never raises. If the provider cannot store the entry, the failure is
        logged and the generated id is still returned.

        Returns:
            The entry id
        """
        record = MemoryErrorRecord(
            id=_new_error_id(),
            operation=operation,
            message=message,
            severity=severity,
            component=component,
            error_type=type(exc).__name__ if exc is not None else None,
            conversation_id=conversation_id,
            user_id=user_id,
            metadata=dict(metadata or {}),
        )
        log = getattr(logger, _LOG_LEVELS[record.severity])
        log(
            "memory_error",
            error_id=record.id,
            operation=record.operation.value,
            component=component,
            error=message,
        )
        try:
            await self.provider.insert_error(record)
        except Exception as e:
            logger.warning("error_ledger_write_failed", error_id=record.id, error=str(e))
        return record.id

    async def get_error_stats(self, window: timedelta = timedelta(hours=24)) -> MemoryErrorStats:
        """Counts by operation and severity over the last window, plus open entries."""
        recent = await self.provider.find_errors(ErrorFilter(created_after=utcnow() - window))
        unresolved = await self.provider.find_errors(ErrorFilter(resolved=False), limit=STATS_SAMPLE_LIMIT)
        return MemoryErrorStats(
            total=len(recent),
            by_operation=dict(Counter(e.operation.value for e in recent)),
            by_severity=dict(Counter(e.severity.value for e in recent)),
            recent=recent[:STATS_SAMPLE_LIMIT],
            unresolved=unresolved,
        )

    async def resolve_error(self, error_id: str) -> bool:
        """Mark an entry resolved. False when it is unknown or already resolved."""
        return await self.provider.resolve_errors([error_id], utcnow()) > 0

    async def get_conversation_errors(self, conversation_id: str, limit: int | None = None) -> list[MemoryErrorRecord]:
        return await self.provider.find_errors(ErrorFilter(conversation_id=conversation_id), limit=limit)

    async def get_user_errors(self, user_id: str, limit: int | None = None) -> list[MemoryErrorRecord]:
        return await self.provider.find_errors(ErrorFilter(user_id=user_id), limit=limit)

    async def count_unresolved(self, user_id: str | None = None) -> int:
        return len(await self.provider.find_errors(ErrorFilter(user_id=user_id, resolved=False)))

    async def clear_old_errors(self, older_than: timedelta = timedelta(days=7)) -> int:
        """Delete entries created before now - older_than, resolved or not."""
        deleted = await self.provider.delete_errors(ErrorFilter(created_before=utcnow() - older_than))
        if deleted:
            logger.info("memory_errors_cleared", deleted=deleted)
        return deleted

    @asynccontextmanager
    async def capture(
        self,
        operation: MemoryOperation | str,
        component: str,
        *,
        conversation_id: str | None = None,
        user_id: str | None = None,
        severity: ErrorSeverity | str = ErrorSeverity.ERROR,
    ) -> AsyncIterator[None]:
        """Record any exception raised in the block, then re-raise it."""
        try:
            yield
        except Exception as e:
            await self.log_error(
                operation,
                str(e) or type(e).__name__,
                severity,
                component=component,
                conversation_id=conversation_id,
                user_id=user_id,
                exc=e,
            )
            raise


__all__ = ["MemoryErrorLog", "STATS_SAMPLE_LIMIT"]
