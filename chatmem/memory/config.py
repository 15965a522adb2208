"""
Memory Configuration (args/memory.yaml)

Pydantic models for every tunable of the memory pipeline, plus the YAML loader.
String values of the form ${ENV_VAR} are expanded from the environment before
validation. A missing file or a file that fails validation falls back to the
defaults below with a warning, so a bad config never takes chat down.

Usage:
    from chatmem.memory.config import load_config

    config = load_config()
    config.store.max_user_memories  # 500
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatmem import CONFIG_PATH
from chatmem.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5-20251001"


# =============================================================================
# Sections
# =============================================================================

class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    active: str = Field(default="native")
    native: dict[str, Any] = Field(default_factory=lambda: {"database_path": "data/chat_memory.db"})
    ephemeral: dict[str, Any] = Field(default_factory=dict)

    def settings_for(self, name: str | None = None) -> dict[str, Any]:
        name = name or self.active
        settings = getattr(self, name, None)
        if settings is None and self.model_extra:
            settings = self.model_extra.get(name)
        return dict(settings or {})


class GateConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    mode: Literal["llm", "embedding"] = Field(default="embedding")
    threshold: float = Field(default=0.3, ge=0.0)
    similarity_threshold: float = Field(default=0.78, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_summary_chars: int = Field(default=1000, ge=0)
    min_message_chars: int = Field(default=10, ge=0)
    model: str = Field(default=DEFAULT_MODEL)
    max_tokens: int = Field(default=120, ge=1)


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    model: str = Field(default=DEFAULT_MODEL)
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_tokens: int = Field(default=2000, ge=1)
    max_messages: int = Field(default=20, ge=1)
    max_chars_per_message: int = Field(default=4000, ge=1)


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_conversation_memories: int = Field(default=100, ge=1)
    max_user_memories: int = Field(default=500, ge=1)
    min_importance_threshold: int = Field(default=3, ge=1, le=10)
    promotion_threshold: int = Field(default=7, ge=1, le=10)
    ttl_days: int = Field(default=90, ge=1)
    dedup_context_limit: int = Field(default=50, ge=0)
    conversation_share: float = Field(default=0.6, ge=0.0, le=1.0)
    default_max_results: int = Field(default=15, ge=1)
    identity_capture: bool = Field(default=True)


class ContextConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_tokens: int = Field(default=500, ge=1)
    format: Literal["structured", "narrative", "minimal"] = Field(default="structured")
    include_metadata: bool = Field(default=False)
    group_by_type: bool = Field(default=True)


class MemoryConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)


# =============================================================================
# Loading
# =============================================================================

def _expand_env_vars(value: Any) -> Any:
    """Recursively expand ${ENV_VAR} values."""
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}"):
            return os.getenv(value[2:-1], "")
        return value
    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_expand_env_vars(item) for item in value]
    return value


def load_config(config_path: Path | str | None = None) -> MemoryConfig:
    """Load args/memory.yaml (or config_path) into a validated MemoryConfig."""
    path = Path(config_path) if config_path else CONFIG_PATH
    if not path.exists():
        logger.warning("memory_config_not_found", path=str(path))
        return MemoryConfig()

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.warning("memory_config_invalid", path=str(path), error=str(e))
        return MemoryConfig()

    try:
        return MemoryConfig.model_validate(_expand_env_vars(raw))
    except ValidationError as e:
        logger.warning("memory_config_invalid", path=str(path), error=str(e))
        return MemoryConfig()


__all__ = [
    "ContextConfig",
    "ExtractionConfig",
    "GateConfig",
    "MemoryConfig",
    "ProviderConfig",
    "StoreConfig",
    "load_config",
]
