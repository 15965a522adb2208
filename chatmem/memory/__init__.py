"""
Conversational Memory

Two-tier (conversation, user) memory for chat assistants: artifact detection,
an admission gate, structured extraction, and a deduplicating, self-pruning
store with relevance-ranked retrieval.

Usage:
    from chatmem.memory import MemoryStore, MemoryContextBuilder

    store = MemoryStore.from_config()
    await store.initialize()
    await store.process_turn("conv-1", "alice", messages, language="en")
    memories = await store.get_relevant("conv-1", "alice", "where do I work?")
    prompt_block = MemoryContextBuilder().build_context(memories, language="en")
"""

from .artifacts import ArtifactDetectionResult, ArtifactSpan, ArtifactType, detect, detect_tool_output
from .config import MemoryConfig, load_config
from .context_builder import MemoryContextBuilder
from .errors import MemoryErrorLog
from .models import (
    EmotionalTone,
    ErrorSeverity,
    ExtractionResult,
    FactType,
    MemoryCandidate,
    MemoryErrorRecord,
    MemoryOperation,
    MemoryStats,
    MemoryTier,
    StoredMemory,
    Temporality,
    TurnResult,
    content_hash,
)
from .store import MemoryStore

__all__ = [
    "ArtifactDetectionResult",
    "ArtifactSpan",
    "ArtifactType",
    "EmotionalTone",
    "ErrorSeverity",
    "ExtractionResult",
    "FactType",
    "MemoryCandidate",
    "MemoryConfig",
    "MemoryContextBuilder",
    "MemoryErrorLog",
    "MemoryErrorRecord",
    "MemoryOperation",
    "MemoryStats",
    "MemoryStore",
    "MemoryTier",
    "StoredMemory",
    "Temporality",
    "TurnResult",
    "content_hash",
    "detect",
    "detect_tool_output",
    "load_config",
]
