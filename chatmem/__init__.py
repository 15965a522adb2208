"""
chatmem

Multilingual conversational memory for chat assistants.

Components:
- memory/artifacts.py: deterministic high-value token detection
- memory/extraction/: admission gate and structured fact extraction
- memory/providers/: pluggable persistence backends
- memory/store.py: two-tier memory store (dedup, promotion, pruning, retrieval)
- memory/context_builder.py: prompt-ready formatting of retrieved memories

Usage:
    from chatmem.memory import MemoryStore, load_config

    store = MemoryStore.from_config(load_config())
    result = await store.process_turn("conv-1", "alice", messages)
"""

from pathlib import Path

# Path constants
PROJECT_ROOT = Path(__file__).parent.parent
PACKAGE_ROOT = Path(__file__).parent
DATA_DIR = PROJECT_ROOT / "data"
ARGS_DIR = PROJECT_ROOT / "args"
CONFIG_PATH = ARGS_DIR / "memory.yaml"

__all__ = [
    "ARGS_DIR",
    "CONFIG_PATH",
    "DATA_DIR",
    "PACKAGE_ROOT",
    "PROJECT_ROOT",
]
