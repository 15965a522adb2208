"""
Unit tests for the memory error ledger.

Covers logging, stats aggregation, resolution, per-owner queries, cleanup and
the capture() context manager.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from chatmem.memory.errors import MemoryErrorLog
from chatmem.memory.models import ErrorSeverity, MemoryErrorRecord, MemoryOperation, utcnow
from chatmem.memory.providers import ErrorFilter, PersistenceError


@pytest.fixture
def error_log(ephemeral_provider) -> MemoryErrorLog:
    return MemoryErrorLog(ephemeral_provider)


class TestLogError:
    """Tests for log_error()."""

    @pytest.mark.asyncio
    async def test_records_entry(self, error_log, mock_user_id, mock_conversation_id):
        error_id = await error_log.log_error(
            MemoryOperation.STORAGE,
            "disk full",
            component="MemoryStore.insert",
            conversation_id=mock_conversation_id,
            user_id=mock_user_id,
            metadata={"tier": "user"},
            exc=PersistenceError("disk full"),
        )

        [entry] = await error_log.get_user_errors(mock_user_id)
        assert entry.id == error_id
        assert error_id.startswith("err_")
        assert entry.severity == ErrorSeverity.ERROR
        assert entry.error_type == "PersistenceError"
        assert entry.component == "MemoryStore.insert"
        assert entry.metadata == {"tier": "user"}
        assert entry.resolved is False

    @pytest.mark.asyncio
    async def test_accepts_plain_strings(self, error_log):
        await error_log.log_error("gate", "timed out", "warn")

        [entry] = await error_log.provider.find_errors(ErrorFilter())
        assert entry.operation == MemoryOperation.GATE
        assert entry.severity == ErrorSeverity.WARN

    @pytest.mark.asyncio
    async def test_provider_failure_does_not_raise(self, error_log):
        error_log.provider.insert_error = AsyncMock(side_effect=PersistenceError("read-only"))

        error_id = await error_log.log_error(MemoryOperation.EXTRACTION, "rate limited")

        assert error_id.startswith("err_")


class TestQueries:
    """Tests for stats, resolution and per-owner lookups."""

    @pytest.mark.asyncio
    async def test_error_stats(self, error_log):
        await error_log.log_error(MemoryOperation.EXTRACTION, "rate limited")
        await error_log.log_error(MemoryOperation.EXTRACTION, "timed out after 10s", ErrorSeverity.WARN)
        resolved_id = await error_log.log_error(MemoryOperation.STORAGE, "disk full")
        await error_log.provider.insert_error(
            MemoryErrorRecord(
                id="err_old",
                operation=MemoryOperation.GATE,
                message="old failure",
                created_at=utcnow() - timedelta(days=3),
            )
        )
        await error_log.resolve_error(resolved_id)

        stats = await error_log.get_error_stats()

        assert stats.total == 3
        assert stats.by_operation == {"extraction": 2, "storage": 1}
        assert stats.by_severity == {"error": 2, "warn": 1}
        assert len(stats.recent) == 3
        assert resolved_id not in {e.id for e in stats.unresolved}
        assert "err_old" in {e.id for e in stats.unresolved}
        assert stats.to_dict()["by_operation"]["extraction"] == 2

    @pytest.mark.asyncio
    async def test_resolve_error(self, error_log):
        error_id = await error_log.log_error(MemoryOperation.INJECTION, "down")

        assert await error_log.resolve_error(error_id) is True
        assert await error_log.resolve_error(error_id) is False
        assert await error_log.resolve_error("err_unknown") is False

    @pytest.mark.asyncio
    async def test_conversation_and_user_errors(self, error_log):
        await error_log.log_error(MemoryOperation.EXTRACTION, "a", conversation_id="c1", user_id="u1")
        await error_log.log_error(MemoryOperation.EXTRACTION, "b", conversation_id="c2", user_id="u1")
        await error_log.log_error(MemoryOperation.EXTRACTION, "c", conversation_id="c1", user_id="u2")

        assert [e.message for e in await error_log.get_conversation_errors("c1")] == ["c", "a"]
        assert [e.message for e in await error_log.get_user_errors("u1")] == ["b", "a"]
        assert [e.message for e in await error_log.get_user_errors("u1", limit=1)] == ["b"]
        assert await error_log.count_unresolved("u2") == 1

    @pytest.mark.asyncio
    async def test_clear_old_errors(self, error_log):
        await error_log.provider.insert_error(
            MemoryErrorRecord(
                id="err_old",
                operation=MemoryOperation.STORAGE,
                message="stale",
                created_at=utcnow() - timedelta(days=8),
            )
        )
        await error_log.log_error(MemoryOperation.STORAGE, "fresh")

        assert await error_log.clear_old_errors() == 1
        assert [e.message for e in await error_log.provider.find_errors(ErrorFilter())] == ["fresh"]


class TestCapture:
    """Tests for the capture() context manager."""

    @pytest.mark.asyncio
    async def test_records_and_reraises(self, error_log):
        with pytest.raises(PersistenceError):
            async with error_log.capture(MemoryOperation.STORAGE, "cleanup", user_id="u1"):
                raise PersistenceError("read-only")

        [entry] = await error_log.get_user_errors("u1")
        assert entry.component == "cleanup"
        assert entry.message == "read-only"
        assert entry.error_type == "PersistenceError"

    @pytest.mark.asyncio
    async def test_success_records_nothing(self, error_log):
        async with error_log.capture(MemoryOperation.STORAGE, "cleanup", user_id="u1"):
            pass

        assert await error_log.get_user_errors("u1") == []
