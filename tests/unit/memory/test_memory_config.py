"""
Unit tests for memory configuration loading.
"""

import pytest
import yaml
from pydantic import ValidationError

from chatmem.memory.config import GateConfig, MemoryConfig, StoreConfig, load_config


class TestDefaults:
    """Tests for model defaults and validation."""

    def test_defaults(self):
        config = MemoryConfig()

        assert config.provider.active == "native"
        assert config.gate.mode == "embedding"
        assert config.gate.threshold == 0.3
        assert config.store.max_conversation_memories == 100
        assert config.store.max_user_memories == 500
        assert config.store.min_importance_threshold == 3
        assert config.store.promotion_threshold == 7
        assert config.store.ttl_days == 90
        assert config.context.format == "structured"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            StoreConfig(max_user_memories=0)
        with pytest.raises(ValidationError):
            GateConfig(mode="telepathy")

    def test_provider_settings(self):
        config = MemoryConfig.model_validate(
            {"provider": {"active": "native", "native": {"database_path": ":memory:"}}}
        )

        assert config.provider.settings_for() == {"database_path": ":memory:"}
        assert config.provider.settings_for("ephemeral") == {}


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file_returns_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config == MemoryConfig()

    def test_overrides(self, tmp_path):
        path = tmp_path / "memory.yaml"
        path.write_text(yaml.safe_dump({"store": {"max_user_memories": 50}, "gate": {"mode": "llm"}}))

        config = load_config(path)

        assert config.store.max_user_memories == 50
        assert config.store.max_conversation_memories == 100
        assert config.gate.mode == "llm"

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CHATMEM_TEST_DB", "/tmp/chatmem-test.db")
        path = tmp_path / "memory.yaml"
        path.write_text("provider:\n  native:\n    database_path: ${CHATMEM_TEST_DB}\n")

        config = load_config(path)

        assert config.provider.native["database_path"] == "/tmp/chatmem-test.db"

    def test_invalid_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "memory.yaml"
        path.write_text("store:\n  max_user_memories: 0\n")

        assert load_config(path) == MemoryConfig()

    def test_malformed_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "memory.yaml"
        path.write_text("store: [unclosed\n  max_user_memories: 5\n")

        assert load_config(path) == MemoryConfig()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "memory.yaml"
        path.write_text("")

        assert load_config(path) == MemoryConfig()

    def test_shipped_config_loads(self):
        config = load_config()

        assert config.gate.model.startswith("claude-")
        assert config.store.conversation_share == pytest.approx(0.6)
