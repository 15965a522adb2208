"""
Unit tests for the chatmem command line interface.
"""

import asyncio
import json
import logging

import pytest
import structlog

from chatmem import cli
from chatmem.logging_config import setup_logging
from chatmem.memory.config import load_config
from chatmem.memory.models import MemoryOperation
from chatmem.memory.store import MemoryStore


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Send logs to stderr at WARNING so stdout holds only the JSON payload."""
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    monkeypatch.setattr(cli, "setup_logging", lambda: setup_logging(level="WARNING"))

    yield

    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    structlog.reset_defaults()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "memory.yaml"
    path.write_text("provider:\n  active: ephemeral\ngate:\n  mode: embedding\n")
    return str(path)


def run(capsys, argv):
    code = cli.main(argv)
    return code, json.loads(capsys.readouterr().out)


class TestParser:
    """Tests for argument parsing."""

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "chatmem" in capsys.readouterr().out

    def test_recall_requires_message(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["recall", "--user", "u1", "--conversation", "c1"])

    def test_prune_defaults_to_user_tier(self):
        args = cli.build_parser().parse_args(["prune", "--user", "u1"])

        assert args.conversation is None
        assert args.func is cli.cmd_prune


class TestCommands:
    """Tests for each subcommand against an in-process store."""

    def test_detect(self, capsys):
        code, output = run(capsys, ["detect", "mail ada@example.com today"])

        assert code == 0
        assert output["has_artifacts"] is True
        assert output["by_type"]["email"][0]["normalized_value"] == "ada@example.com"

    def test_detect_plain_text(self, capsys):
        code, output = run(capsys, ["detect", "nothing to see here"])

        assert code == 0
        assert output["has_artifacts"] is False

    def test_stats(self, capsys, config_file):
        code, output = run(capsys, ["--config", config_file, "stats", "--user", "u1"])

        assert code == 0
        assert output["total"] == 0
        assert output["tier_counts"] == {"conversation": 0, "user": 0}

    def test_recall_empty(self, capsys, config_file):
        code, output = run(
            capsys,
            ["--config", config_file, "recall", "--user", "u1", "--conversation", "c1", "--message", "hi"],
        )

        assert code == 0
        assert output == {"count": 0, "memories": [], "context": ""}

    def test_clear(self, capsys, config_file):
        code, output = run(capsys, ["--config", config_file, "clear", "--user", "u1"])

        assert code == 0
        assert output == {"user_id": "u1", "deleted": {"conversation": 0, "user": 0}}

    @pytest.mark.parametrize(
        "extra,tier",
        [([], "user"), (["--conversation", "c1"], "conversation")],
    )
    def test_prune(self, capsys, config_file, extra, tier):
        code, output = run(capsys, ["--config", config_file, "prune", "--user", "u1", *extra])

        assert code == 0
        assert output == {"tier": tier, "user_id": "u1", "deleted": 0}


class TestErrorsCommand:
    """Tests for the error ledger subcommand on a file-backed store."""

    @pytest.fixture
    def native_config(self, tmp_path):
        path = tmp_path / "memory.yaml"
        path.write_text(
            "provider:\n"
            "  active: native\n"
            "  native:\n"
            f"    database_path: {tmp_path / 'memory.db'}\n"
            "gate:\n"
            "  mode: embedding\n"
        )
        return str(path)

    @pytest.fixture
    def seeded_error(self, native_config):
        async def seed():
            setup_logging(level="WARNING")
            store = MemoryStore.from_config(load_config(native_config))
            await store.initialize()
            try:
                return await store.errors.log_error(
                    MemoryOperation.EXTRACTION, "rate limited", conversation_id="c1", user_id="u1"
                )
            finally:
                await store.close()

        return asyncio.run(seed())

    def test_stats_when_empty(self, capsys, config_file):
        code, output = run(capsys, ["--config", config_file, "errors"])

        assert code == 0
        assert output["total"] == 0
        assert output["unresolved"] == []

    def test_list_user_errors(self, capsys, native_config, seeded_error):
        code, output = run(capsys, ["--config", native_config, "errors", "--user", "u1"])

        assert code == 0
        assert output["count"] == 1
        assert output["errors"][0]["id"] == seeded_error
        assert output["errors"][0]["operation"] == "extraction"

    def test_stats_count_by_operation(self, capsys, native_config, seeded_error):
        code, output = run(capsys, ["--config", native_config, "errors"])

        assert code == 0
        assert output["by_operation"] == {"extraction": 1}
        assert [e["id"] for e in output["unresolved"]] == [seeded_error]

    def test_resolve(self, capsys, native_config, seeded_error):
        code, output = run(capsys, ["--config", native_config, "errors", "--resolve", seeded_error])
        assert (code, output["resolved"]) == (0, True)

        code, output = run(capsys, ["--config", native_config, "errors", "--resolve", seeded_error])
        assert (code, output["resolved"]) == (1, False)

    def test_clear_keeps_recent_errors(self, capsys, native_config, seeded_error):
        code, output = run(capsys, ["--config", native_config, "errors", "--clear-older-than", "7"])

        assert code == 0
        assert output == {"deleted": 0}

    def test_user_and_resolve_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["errors", "--user", "u1", "--resolve", "err_1"])
