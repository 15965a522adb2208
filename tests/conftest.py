"""Shared test fixtures for chatmem tests.

This module provides common fixtures used across all test modules:
- Database isolation with temporary files
- Standard test user/conversation ids
- Fake classifier and extraction providers (AsyncMock based)
- Store factory wired to the in-process provider

Usage:
    async def test_something(make_store, extraction_provider):
        store = make_store(extraction_provider=extraction_provider)
        ...
"""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatmem.memory.config import GateConfig, StoreConfig
from chatmem.memory.extraction.classifier import ClassificationResult
from chatmem.memory.extraction.extractor import StructuredExtractor
from chatmem.memory.extraction.gate import MemoryGate
from chatmem.memory.providers import EphemeralProvider, NativeProvider
from chatmem.memory.store import MemoryStore


# ─────────────────────────────────────────────────────────────────────────────
# Path Constants
# ─────────────────────────────────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).parent.parent
PACKAGE_DIR = PROJECT_ROOT / "chatmem"


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_db() -> Generator[Path, None, None]:
    """Create a temporary database file for testing.

    The database file is automatically deleted after the test completes.

    Yields:
        Path to the temporary database file
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup
    if db_path.exists():
        os.unlink(db_path)


@pytest.fixture
def native_provider(temp_db: Path) -> Generator[NativeProvider, None, None]:
    """NativeProvider on a temporary SQLite file."""
    provider = NativeProvider({"database_path": str(temp_db)})

    yield provider

    if provider._conn is not None:
        provider._conn.close()


@pytest.fixture
def ephemeral_provider() -> EphemeralProvider:
    return EphemeralProvider()


# ─────────────────────────────────────────────────────────────────────────────
# Id Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def mock_user_id() -> str:
    """Standard test user ID."""
    return "test_user_123"


@pytest.fixture
def mock_conversation_id() -> str:
    """Standard test conversation ID."""
    return "conversation_abc456"


# ─────────────────────────────────────────────────────────────────────────────
# Fake Providers
# ─────────────────────────────────────────────────────────────────────────────


def make_classifier(decision: bool = True, reason: str = "User shared a stable fact") -> MagicMock:
    """Classifier whose classify() is an AsyncMock returning a fixed verdict."""
    classifier = MagicMock()
    classifier.classify = AsyncMock(return_value=ClassificationResult(decision=decision, reason=reason))
    return classifier


def make_extraction_provider(payload: dict | None = None) -> MagicMock:
    """ExtractionProvider whose extract_structured() returns payload."""
    provider = MagicMock()
    provider.extract_structured = AsyncMock(return_value=payload)
    return provider


def memory_item(content: str, importance: int = 5, **fields) -> dict:
    """One memory in the camelCase wire format the extraction provider returns."""
    item = {
        "factType": fields.pop("fact_type", "other"),
        "content": content,
        "importance": importance,
        "confidence": fields.pop("confidence", 0.9),
        "temporality": fields.pop("temporality", "permanent"),
    }
    item.update(fields)
    return item


@pytest.fixture
def classifier() -> MagicMock:
    """Classifier that says 'remember'."""
    return make_classifier(decision=True)


@pytest.fixture
def sample_payload() -> dict:
    """Extraction payload with two memories and turn-level fields."""
    return {
        "memories": [
            memory_item("User prefers dark mode in every editor", importance=6, fact_type="preference"),
            memory_item(
                "User works at Acme Corp as a data engineer",
                importance=8,
                fact_type="work_info",
                subject="user",
                entities=["Acme Corp"],
            ),
        ],
        "conversationSummary": "User described their job and editor setup",
        "userIntent": "Set up a new laptop",
        "nextActions": ["Suggest editor themes"],
        "emotionalTone": "positive",
    }


# ─────────────────────────────────────────────────────────────────────────────
# Store Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def make_store(ephemeral_provider: EphemeralProvider):
    """Factory for a MemoryStore on the ephemeral provider.

    The gate defaults to llm mode with a classifier that always says remember,
    so tests decide what gets through via the extraction payload.
    """

    def _make(
        payload: dict | None = None,
        classifier=None,
        gate_config: GateConfig | None = None,
        store_config: StoreConfig | None = None,
        extraction_provider=None,
        provider=None,
    ) -> MemoryStore:
        extraction_provider = extraction_provider or make_extraction_provider(payload)
        gate = MemoryGate(
            gate_config or GateConfig(mode="llm"),
            classifier=classifier if classifier is not None else make_classifier(decision=True),
        )
        return MemoryStore(
            provider or ephemeral_provider,
            gate=gate,
            extractor=StructuredExtractor(extraction_provider, timeout_seconds=5),
            config=store_config or StoreConfig(),
        )

    return _make
