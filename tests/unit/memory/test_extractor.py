"""
Unit tests for the structured extractor and salience scoring.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatmem.memory.extraction.extractor import (
    AnthropicExtractionProvider,
    ExtractionContext,
    StructuredExtractor,
    _tool_name,
    build_system_prompt,
    calculate_salience,
    format_conversation,
    rank_by_relevance,
    rank_by_salience,
)
from chatmem.memory.models import (
    EmotionalTone,
    ExtractionPayload,
    FactType,
    MemoryCandidate,
    MemoryTier,
    StoredMemory,
    Temporality,
)
from tests.conftest import make_extraction_provider, memory_item


MESSAGES = [
    {"role": "user", "content": "I work at Acme Corp and I prefer dark mode."},
    {"role": "assistant", "content": "Got it!"},
]


@pytest.fixture
def ctx(mock_user_id, mock_conversation_id) -> ExtractionContext:
    return ExtractionContext(user_id=mock_user_id, conversation_id=mock_conversation_id, language="en")


# ============================================================================
# Salience & ranking
# ============================================================================


class TestSalience:
    """Tests for calculate_salience."""

    def test_high_value_fact(self):
        candidate = MemoryCandidate(
            fact_type=FactType.PERSONAL_INFO,
            content="User name is Ada",
            importance=10,
            confidence=1.0,
            temporality=Temporality.PERMANENT,
        )

        assert calculate_salience(candidate) == pytest.approx(0.9)

    def test_defaults(self):
        candidate = MemoryCandidate(content="Something happened")

        # 0.4 * 0.5 + 0.2 * 0.8
        assert calculate_salience(candidate) == pytest.approx(0.36)

    def test_capped_at_one(self):
        candidate = MemoryCandidate(
            fact_type=FactType.PERSONAL_INFO,
            content="User is Ada Lovelace",
            importance=10,
            confidence=1.0,
            temporality=Temporality.PERMANENT,
            entities=[f"e{i}" for i in range(10)],
        )

        salience = calculate_salience(candidate)
        assert salience <= 1.0
        assert salience == pytest.approx(1.0)

    def test_is_deterministic(self):
        candidate = MemoryCandidate(content="Prefers tea", fact_type="preference", importance=6, entities=["tea"])

        assert calculate_salience(candidate) == calculate_salience(candidate.model_copy())

    def test_rank_by_salience(self):
        low = MemoryCandidate(content="low", importance=2)
        high = MemoryCandidate(content="high", importance=9)

        assert rank_by_salience([low, high]) == [high, low]


class TestRankByRelevance:
    """Tests for rank_by_relevance."""

    def test_keyword_match_wins(self):
        db = MemoryCandidate(content="Uses PostgreSQL for the orders database", importance=4)
        hiking = MemoryCandidate(content="Likes hiking", importance=6)

        ranked = rank_by_relevance([hiking, db], "which database do we use", 2)

        assert ranked[0] is db

    def test_stored_memories_use_persisted_salience(self):
        a = StoredMemory(id="a", tier=MemoryTier.USER, owner_id="u", content="alpha", salience=0.2)
        b = StoredMemory(id="b", tier=MemoryTier.USER, owner_id="u", content="beta", salience=0.8)

        assert rank_by_relevance([a, b], "", 1) == [b]

    def test_ties_keep_pool_order(self):
        a = StoredMemory(id="a", tier=MemoryTier.USER, owner_id="u", content="alpha", salience=0.5)
        b = StoredMemory(id="b", tier=MemoryTier.USER, owner_id="u", content="beta", salience=0.5)

        assert [m.id for m in rank_by_relevance([a, b], "gamma", 2)] == ["a", "b"]

    def test_zero_max_count(self):
        assert rank_by_relevance([MemoryCandidate(content="x")], "x", 0) == []


# ============================================================================
# Prompt helpers
# ============================================================================


class TestPrompts:
    """Tests for prompt construction."""

    def test_language_instruction(self):
        assert "The conversation is in tr." in build_system_prompt("tr")
        assert "language used in the conversation" in build_system_prompt()

    def test_format_conversation_keeps_newest(self):
        messages = [{"role": "user", "content": f"message {i}"} for i in range(5)]

        text = format_conversation(messages, max_messages=2)

        assert text == "USER: message 3\n\nUSER: message 4"

    def test_format_conversation_truncates_and_serializes(self):
        messages = [{"role": "tool", "content": {"id": 1}}, {"role": "user", "content": "x" * 50}]

        text = format_conversation(messages, max_chars_per_message=10)

        assert text.startswith('TOOL: {"id": 1}')
        assert text.endswith("USER: " + "x" * 10)

    def test_tool_name(self):
        assert _tool_name({"title": "ExtractionPayload"}) == "record_extraction_payload"


# ============================================================================
# StructuredExtractor
# ============================================================================


class TestExtract:
    """Tests for StructuredExtractor.extract."""

    @pytest.mark.asyncio
    async def test_valid_payload(self, ctx, sample_payload):
        provider = make_extraction_provider(sample_payload)

        result = await StructuredExtractor(provider).extract(MESSAGES, ctx)

        assert [m.fact_type for m in result.memories] == [FactType.PREFERENCE, FactType.WORK_INFO]
        assert result.memories[1].entities == ["Acme Corp"]
        assert result.conversation_summary == "User described their job and editor setup"
        assert result.user_intent == "Set up a new laptop"
        assert result.next_actions == ["Suggest editor themes"]
        assert result.emotional_tone == EmotionalTone.POSITIVE
        assert result.duplicates == []

        prompt, schema = provider.extract_structured.await_args.args
        assert prompt[0]["role"] == "system"
        assert "USER: I work at Acme Corp" in prompt[1]["content"]
        assert schema == ExtractionPayload.json_schema()

    @pytest.mark.asyncio
    async def test_bad_items_are_dropped_individually(self, ctx):
        payload = {
            "memories": [
                memory_item("User prefers dark mode", importance=6, fact_type="preference"),
                memory_item("User works at Acme", importance=15, fact_type="bogus"),
                {"content": ""},
                "not a memory",
            ]
        }

        result = await StructuredExtractor(make_extraction_provider(payload)).extract(MESSAGES, ctx)

        assert len(result.memories) == 2
        coerced = result.memories[1]
        assert coerced.fact_type == FactType.OTHER
        assert coerced.importance == 10

    @pytest.mark.asyncio
    async def test_batch_duplicates_are_collapsed(self, ctx):
        payload = {
            "memories": [
                memory_item("User prefers dark mode"),
                memory_item("  user PREFERS   dark mode "),
            ]
        }

        result = await StructuredExtractor(make_extraction_provider(payload)).extract(MESSAGES, ctx)

        assert len(result.memories) == 1
        assert result.duplicates == []

    @pytest.mark.asyncio
    async def test_known_hashes_become_duplicates(self, mock_user_id, mock_conversation_id):
        ctx = ExtractionContext(
            user_id=mock_user_id,
            conversation_id=mock_conversation_id,
            existing_memories=[{"content": "User prefers dark mode"}],
        )
        payload = {"memories": [memory_item("User prefers dark mode"), memory_item("User drinks tea")]}

        result = await StructuredExtractor(make_extraction_provider(payload)).extract(MESSAGES, ctx)

        assert [m.content for m in result.memories] == ["User drinks tea"]
        assert [m.content for m in result.duplicates] == ["User prefers dark mode"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, "nonsense", {"memories": "nope"}, {"memories": []}])
    async def test_unusable_payload_is_empty(self, ctx, payload):
        result = await StructuredExtractor(make_extraction_provider(payload)).extract(MESSAGES, ctx)

        assert result.is_empty

    @pytest.mark.asyncio
    async def test_provider_error_is_empty(self, ctx):
        provider = MagicMock()
        provider.extract_structured = AsyncMock(side_effect=RuntimeError("rate limited"))

        result = await StructuredExtractor(provider).extract(MESSAGES, ctx)

        assert result.is_empty
        assert result.error == "rate limited"

    @pytest.mark.asyncio
    async def test_timeout_is_empty(self, ctx):
        async def slow(messages, schema):
            await asyncio.sleep(1)
            return {"memories": [memory_item("late")]}

        provider = MagicMock()
        provider.extract_structured = AsyncMock(side_effect=slow)

        result = await StructuredExtractor(provider, timeout_seconds=0.05).extract(MESSAGES, ctx)

        assert result.is_empty
        assert result.error == "timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_no_messages_skips_provider(self, ctx):
        provider = make_extraction_provider({"memories": [memory_item("x")]})

        result = await StructuredExtractor(provider).extract([], ctx)

        assert result.is_empty
        assert result.error is None
        provider.extract_structured.assert_not_awaited()


class TestExtractSingle:
    """Tests for StructuredExtractor.extract_single."""

    @pytest.mark.asyncio
    async def test_important_fact(self, ctx):
        provider = make_extraction_provider(memory_item("Deadline is Friday", importance=8, fact_type="event"))

        candidate = await StructuredExtractor(provider).extract_single("The deadline is Friday", ctx)

        assert candidate.content == "Deadline is Friday"
        assert candidate.fact_type == FactType.EVENT

    @pytest.mark.asyncio
    async def test_unimportant_fact(self, ctx):
        provider = make_extraction_provider(memory_item("Said hello", importance=1))

        assert await StructuredExtractor(provider).extract_single("hello", ctx) is None

    @pytest.mark.asyncio
    async def test_invalid_payload(self, ctx):
        provider = make_extraction_provider({"content": ""})

        assert await StructuredExtractor(provider).extract_single("hello there", ctx) is None


class TestAnthropicExtractionProvider:
    """Tests for forced tool use against a mocked client."""

    @pytest.mark.asyncio
    async def test_returns_tool_input(self):
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="Recording."),
                    SimpleNamespace(type="tool_use", input={"memories": []}),
                ]
            )
        )
        provider = AnthropicExtractionProvider(model="claude-test", client=client)
        schema = ExtractionPayload.json_schema()

        payload = await provider.extract_structured(
            [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}], schema
        )

        assert payload == {"memories": []}
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["tool_choice"] == {"type": "tool", "name": "record_extraction_payload"}
        assert kwargs["tools"][0]["input_schema"] == schema

    @pytest.mark.asyncio
    async def test_no_tool_call(self):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[]))

        payload = await AnthropicExtractionProvider(client=client).extract_structured(
            [{"role": "user", "content": "hi"}], {"title": "X"}
        )

        assert payload is None
