"""
Structured Extractor

Turns a conversation into typed, scored memory candidates. The model call is
delegated to an ExtractionProvider that returns a dict conforming to the
ExtractionPayload JSON schema (AnthropicExtractionProvider uses forced tool
use for this). Everything the provider returns is validated here: bad items
are dropped one by one, a bad payload yields nothing, and any provider error or
timeout is recovered as "nothing extracted".

Also home to the deterministic scoring used across the pipeline:
calculate_salience() and rank_by_relevance().

Usage:
    from chatmem.memory.extraction.extractor import ExtractionContext, StructuredExtractor

    extractor = StructuredExtractor(AnthropicExtractionProvider())
    result = await extractor.extract(messages, ExtractionContext(user_id="alice", conversation_id="c1"))
    for candidate in result.memories:
        salience = calculate_salience(candidate)
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import anthropic
from pydantic import ValidationError

from chatmem.logging_config import get_logger
from chatmem.memory.models import (
    EmotionalTone,
    ExtractionPayload,
    ExtractionResult,
    FactType,
    MemoryCandidate,
    StoredMemory,
    Temporality,
    content_hash,
)

logger = get_logger(__name__)

# Default model for extraction, cheapest available
DEFAULT_EXTRACTION_MODEL = "claude-haiku-4-5-20251001"

# extract_single() discards anything less important than this
SINGLE_MEMORY_MIN_IMPORTANCE = 3


# =============================================================================
# Salience
# =============================================================================

TEMPORALITY_BONUS: dict[Temporality, float] = {
    Temporality.PERMANENT: 0.2,
    Temporality.SEASONAL: 0.1,
    Temporality.TEMPORARY: 0.05,
    Temporality.UNKNOWN: 0.0,
}

FACT_TYPE_BONUS: dict[FactType, float] = {
    FactType.PERSONAL_INFO: 0.1,
    FactType.PREFERENCE: 0.08,
    FactType.GOAL: 0.08,
    FactType.PROBLEM: 0.07,
    FactType.WORK_INFO: 0.06,
    FactType.RELATIONSHIP: 0.06,
    FactType.TECHNICAL_DETAIL: 0.05,
    FactType.SOLUTION: 0.05,
    FactType.EVENT: 0.03,
    FactType.CONTEXT: 0.02,
    FactType.OTHER: 0.0,
}

if set(TEMPORALITY_BONUS) != set(Temporality) or set(FACT_TYPE_BONUS) != set(FactType):
    raise RuntimeError("Salience bonus tables must cover every Temporality and FactType")


def calculate_salience(candidate: MemoryCandidate) -> float:
    """
    Salience in [0, 1].

    0.4 x importance/10 + 0.2 x confidence + temporality bonus
    + min(0.02 x entity count, 0.1) + fact type bonus, capped at 1.0.
    """
    score = (candidate.importance / 10) * 0.4
    score += candidate.confidence * 0.2
    score += TEMPORALITY_BONUS[candidate.temporality]
    score += min(len(candidate.entities) * 0.02, 0.1)
    score += FACT_TYPE_BONUS[candidate.fact_type]
    return min(score, 1.0)


def _salience_of(item: MemoryCandidate | StoredMemory) -> float:
    if isinstance(item, StoredMemory):
        return item.salience
    return calculate_salience(item)


def rank_by_salience(candidates: Sequence[MemoryCandidate]) -> list[MemoryCandidate]:
    return sorted(candidates, key=calculate_salience, reverse=True)


def keyword_overlap(item: MemoryCandidate | StoredMemory, topic_words: Sequence[str]) -> float:
    """
    Keyword relevance of one memory to a topic.

    +1 per topic word found in the content, +2 per related topic containing
    any topic word, +1.5 per entity containing any topic word.
    """
    if not topic_words:
        return 0.0
    content = item.content.lower()
    score = float(sum(1 for word in topic_words if word in content))
    for topic in item.related_topics:
        if any(word in topic.lower() for word in topic_words):
            score += 2
    for entity in item.entities:
        if any(word in entity.lower() for word in topic_words):
            score += 1.5
    return score


def rank_by_relevance(pool, current_topic: str, max_count: int) -> list:
    """
    Top max_count memories by 0.6 x keyword overlap + 0.4 x salience.

    Works on MemoryCandidate (salience computed) and StoredMemory (persisted
    salience). Ties keep pool order.
    """
    if max_count <= 0:
        return []
    topic_words = re.findall(r"\w+", (current_topic or "").lower())
    scored = [(0.6 * keyword_overlap(item, topic_words) + 0.4 * _salience_of(item), item) for item in pool]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in scored[:max_count]]


# =============================================================================
# Provider protocol
# =============================================================================


@runtime_checkable
class ExtractionProvider(Protocol):
    """Returns a dict conforming to schema, or None when there is nothing to report."""

    async def extract_structured(self, messages: list[dict[str, str]], schema: dict[str, Any]) -> dict[str, Any] | None: ...


def _tool_name(schema: dict[str, Any]) -> str:
    title = schema.get("title") or "extraction"
    return "record_" + re.sub(r"(?<!^)(?=[A-Z])", "_", re.sub(r"\W", "", title)).lower()


class AnthropicExtractionProvider:
    """
    ExtractionProvider using forced tool use on the Anthropic Messages API.

    The schema becomes the input schema of a single tool the model must call,
    so the tool input is the structured payload.
    """

    def __init__(
        self,
        model: str = DEFAULT_EXTRACTION_MODEL,
        max_tokens: int = 2000,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
        return self._client

    async def extract_structured(self, messages: list[dict[str, str]], schema: dict[str, Any]) -> dict[str, Any] | None:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
        name = _tool_name(schema)

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0,
            system=system,
            messages=turns,
            tools=[{
                "name": name,
                "description": schema.get("description") or "Record the extracted information",
                "input_schema": schema,
            }],
            tool_choice={"type": "tool", "name": name},
        )
        for block in response.content:
            if getattr(block, "type", "") == "tool_use":
                return dict(block.input)
        logger.warning("extraction_no_tool_call", model=self.model)
        return None


# =============================================================================
# Prompts
# =============================================================================


SINGLE_MEMORY_SYSTEM_PROMPT = "You are a memory extraction system. Extract only valuable, specific information."

SINGLE_MEMORY_PROMPT = """Extract the most important fact or information from this message. If there's nothing worth remembering, return a memory with importance 1.

Message: "{message}"

Consider:
- Is this information about the user, their preferences, or their situation?
- Is this technical information that might be referenced later?
- Is this a commitment, plan, or goal?
- Is this a problem that needs solving?"""


def build_system_prompt(language: str | None = None) -> str:
    if language:
        language_instruction = f"The conversation is in {language}. Extract memories in the same language."
    else:
        language_instruction = "Extract memories in the language used in the conversation."

    return f"""You are an intelligent memory extraction system for a conversational AI assistant.
Your task is to identify and extract important information that should be remembered for future conversations.

{language_instruction}

Focus on extracting:
1. Personal information about users (name, role, preferences, situation)
2. Technical details, configurations, or specifications mentioned
3. Goals, plans, or commitments made
4. Problems or challenges discussed
5. Relationships and connections between people or concepts
6. Preferences and opinions expressed
7. Important events or deadlines mentioned

Guidelines:
- Only extract concrete, specific facts (not vague statements)
- Assign realistic importance scores (most things are 3-7, reserve 8-10 for critical info)
- Be confident only when information is clearly stated
- Identify the subject of each memory (who or what it's about)
- Extract entities (names, organizations, places) when mentioned
- Consider how long information will remain relevant
- Don't extract memories about the AI assistant itself unless specifically requested

Quality over quantity: Extract only information that would be valuable to remember in future conversations."""


def format_conversation(
    messages: Sequence[dict[str, Any]],
    max_messages: int = 20,
    max_chars_per_message: int = 4000,
) -> str:
    """ROLE: content blocks separated by blank lines, newest max_messages only."""
    lines = []
    for msg in list(messages)[-max_messages:]:
        content = msg.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, default=str)
        lines.append(f"{str(msg.get('role', 'user')).upper()}: {content[:max_chars_per_message]}")
    return "\n\n".join(lines)


# =============================================================================
# Extractor
# =============================================================================


@dataclass
class ExtractionContext:
    user_id: str
    conversation_id: str
    language: str | None = None
    # Known memories as {"content": ..., "hash": ...}; hash is recomputed when missing
    existing_memories: list[dict[str, str]] = field(default_factory=list)

    def existing_hashes(self) -> set[str]:
        return {m.get("hash") or content_hash(m.get("content", "")) for m in self.existing_memories}


class StructuredExtractor:
    def __init__(
        self,
        provider: ExtractionProvider,
        timeout_seconds: float = 30.0,
        max_messages: int = 20,
        max_chars_per_message: int = 4000,
    ):
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.max_messages = max_messages
        self.max_chars_per_message = max_chars_per_message

    async def extract(self, messages: Sequence[dict[str, Any]], ctx: ExtractionContext) -> ExtractionResult:
        """
        Extract memory candidates from a conversation.

        Candidates whose content hash matches ctx.existing_memories (or an
        earlier candidate in the same batch) move to result.duplicates.

        Returns:
            ExtractionResult, empty on any provider failure or bad payload
        """
        if not messages:
            return ExtractionResult.empty()

        prompt = [
            {"role": "system", "content": build_system_prompt(ctx.language)},
            {"role": "user", "content": format_conversation(messages, self.max_messages, self.max_chars_per_message)},
        ]

        try:
            payload = await asyncio.wait_for(
                self.provider.extract_structured(prompt, ExtractionPayload.json_schema()),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout_seconds}s"
            logger.warning("extraction_failed", error=error)
            return ExtractionResult.empty(error=error)
        except Exception as e:
            logger.warning("extraction_failed", error=str(e))
            return ExtractionResult.empty(error=str(e) or type(e).__name__)

        return self._build_result(payload, ctx)

    def _build_result(self, payload: Any, ctx: ExtractionContext) -> ExtractionResult:
        if payload is None:
            return ExtractionResult.empty()
        if not isinstance(payload, dict) or not isinstance(payload.get("memories", []), list):
            logger.warning("extraction_payload_invalid", payload_type=type(payload).__name__)
            return ExtractionResult.empty()

        known = ctx.existing_hashes()
        seen: set[str] = set()
        memories: list[MemoryCandidate] = []
        duplicates: list[MemoryCandidate] = []
        dropped = 0

        for item in payload.get("memories") or []:
            try:
                candidate = MemoryCandidate.model_validate(item)
            except ValidationError:
                dropped += 1
                continue

            key = candidate.content_hash
            if key in seen:
                continue
            seen.add(key)
            if key in known:
                duplicates.append(candidate)
            else:
                memories.append(candidate)

        if dropped:
            logger.info("extraction_items_dropped", dropped=dropped)

        tone = payload.get("emotionalTone")
        try:
            emotional_tone = EmotionalTone(tone) if tone else None
        except ValueError:
            emotional_tone = None

        next_actions = payload.get("nextActions") or []
        return ExtractionResult(
            memories=memories,
            duplicates=duplicates,
            conversation_summary=_optional_str(payload.get("conversationSummary")),
            user_intent=_optional_str(payload.get("userIntent")),
            next_actions=[str(a) for a in next_actions] if isinstance(next_actions, list) else [],
            emotional_tone=emotional_tone,
        )

    async def extract_single(self, message: str, ctx: ExtractionContext) -> MemoryCandidate | None:
        """Most important single fact in message, or None if nothing rates importance 3+."""
        if not message or not message.strip():
            return None

        prompt = [
            {"role": "system", "content": SINGLE_MEMORY_SYSTEM_PROMPT},
            {"role": "user", "content": SINGLE_MEMORY_PROMPT.format(message=message[: self.max_chars_per_message])},
        ]
        schema = MemoryCandidate.model_json_schema(by_alias=True)

        try:
            payload = await asyncio.wait_for(
                self.provider.extract_structured(prompt, schema),
                timeout=self.timeout_seconds,
            )
            if not payload:
                return None
            candidate = MemoryCandidate.model_validate(payload)
        except asyncio.TimeoutError:
            logger.warning("single_extraction_failed", error=f"timed out after {self.timeout_seconds}s")
            return None
        except ValidationError as e:
            logger.debug("single_extraction_invalid", error=str(e))
            return None
        except Exception as e:
            logger.warning("single_extraction_failed", error=str(e))
            return None

        if candidate.importance < SINGLE_MEMORY_MIN_IMPORTANCE:
            return None
        return candidate


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "AnthropicExtractionProvider",
    "ExtractionContext",
    "ExtractionProvider",
    "FACT_TYPE_BONUS",
    "StructuredExtractor",
    "TEMPORALITY_BONUS",
    "build_system_prompt",
    "calculate_salience",
    "format_conversation",
    "keyword_overlap",
    "rank_by_relevance",
    "rank_by_salience",
]
