"""
Memory Gate: Should This Turn Be Remembered?

Runs on every conversation turn before extraction so the expensive extractor
only sees turns that carry something worth keeping. "ok", "thanks", "got it"
have zero memory value.

Two modes:
    llm        Delegates a yes/no prompt to a ClassificationProvider
               (default: AnthropicClassifier), bounded by a timeout.
    embedding  Local, no model call. With an Embedder, compares the turn to a
               fixed set of memory prototypes by cosine similarity; without
               one, scores regex signals (commitments, preferences, facts,
               strong indicators such as "decided" or "deadline").

Turns that carry artifacts (emails, IDs, URLs...) or tool output never reach
either mode: should_skip_gate() is checked first and the turn is remembered.

The gate never raises. A classifier or embedder failure, including a timeout,
becomes remember=False with the error text as the reason.

Usage:
    from chatmem.memory.extraction.gate import GateContext, MemoryGate

    gate = MemoryGate(config.gate, classifier=AnthropicClassifier())
    decision = await gate.evaluate(GateContext(user_message=text))
    if decision.remember:
        ...
"""

from __future__ import annotations

import asyncio
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from chatmem.logging_config import get_logger
from chatmem.memory.artifacts import detect_emails
from chatmem.memory.config import GateConfig
from chatmem.memory.extraction.classifier import ClassificationProvider

logger = get_logger(__name__)

# At least one strong signal or two weak ones
DEFAULT_GATE_THRESHOLD = 0.3

BYPASS_REASON = "contains artifacts or tool output"


class GateMode(StrEnum):
    LLM = "llm"
    EMBEDDING = "embedding"
    BYPASSED = "bypassed"


@dataclass
class GateContext:
    """What the gate sees of a turn."""
    user_message: str = ""
    assistant_message: str | None = None
    conversation_summary: str = ""
    existing_memories: list[str] = field(default_factory=list)


@dataclass
class GateDecision:
    """Result of one gate evaluation. Transient, one per turn."""
    remember: bool
    reason: str
    mode: GateMode
    confidence: float = 0.0
    score: float | None = None
    signals: dict[str, float] = field(default_factory=dict)
    # Set when the classifier or embedder failed or timed out
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "remember": self.remember,
            "reason": self.reason,
            "mode": self.mode.value,
            "confidence": self.confidence,
            "score": self.score,
            "signals": self.signals,
            "error": self.error,
        }


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


# =============================================================================
# Signal Detection Patterns
# =============================================================================

# Commitment language: "I'll", "I promise", "remind me to", "don't forget"
_COMMITMENT_PATTERNS = [
    re.compile(r"\bi(?:'ll|'m going to| will)\b.*\b(?:send|do|finish|call|email|write|submit|review|check|prepare|schedule|book|pay)\b", re.I),
    re.compile(r"\b(?:remind me|don't forget|need to remember)\b", re.I),
    re.compile(r"\bi promise\b", re.I),
    re.compile(r"\b(?:by|before|until)\s+(?:tomorrow|monday|tuesday|wednesday|thursday|friday|saturday|sunday|next week|end of (?:day|week))\b", re.I),
]

# Preference statements: "I prefer", "I like", "always use"
_PREFERENCE_PATTERNS = [
    re.compile(r"\bi (?:prefer|like|love|hate|dislike|always|never|usually|tend to)\b", re.I),
    re.compile(r"\bmy (?:favorite|favourite|preferred|usual|default)\b", re.I),
    re.compile(r"\b(?:please )?(?:always|never) (?:use|reply|answer|respond|call me)\b", re.I),
    re.compile(r"\bdon't (?:like|want|need|use)\b", re.I),
]

# Temporal references: "tomorrow", "next week", "at 3pm"
_TEMPORAL_PATTERNS = [
    re.compile(r"\b(?:tomorrow|yesterday|next (?:week|month|year)|last (?:week|month|year))\b", re.I),
    re.compile(r"\b(?:at|by|before|after|around)\s+\d{1,2}(?::\d{2})?\s*(?:am|pm)?\b", re.I),
    re.compile(r"\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", re.I),
    re.compile(r"\b(?:january|february|march|april|may|june|july|august|september|october|november|december)\b", re.I),
]

# Factual assertions: "I am", "I work at", "I live in"
_FACTUAL_PATTERNS = [
    re.compile(r"\bi (?:am|work (?:at|for|as)|live (?:in|at)|have (?:a|an)|own|manage|run|lead)\b", re.I),
    re.compile(r"\bmy (?:name|job|title|role|team|company|wife|husband|partner|kid|child|dog|cat|address|birthday|language)\b", re.I),
    re.compile(r"\bi(?:'m| am)\s+(?:a|an|the)\s+\w+", re.I),
    re.compile(r"\bmy (?:phone|email|address|birthday) (?:is|number)\b", re.I),
]

_EMOTIONAL_PATTERNS = [
    re.compile(r"\bi(?:'m| am)\s+(?:worried|anxious|stressed|excited|happy|frustrated|overwhelmed|struggling)\b", re.I),
    re.compile(r"\bthis (?:is|feels) (?:important|critical|urgent)\b", re.I),
]

# Named entity indicators (lightweight, full NER is too expensive for a gate)
_ENTITY_PATTERNS = [
    re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+\b"),  # Multi-word proper nouns
    re.compile(r"\b(?:Dr|Mr|Mrs|Ms|Prof)\.\s+[A-Z]\w+\b"),  # Titles
    re.compile(r"(?:^|\s)@\w+"),  # Mentions
]

# Words that on their own mark a turn as worth remembering
STRONG_INDICATORS = (
    "@", "http", "ticket", "reference", "code", "number", "decided", "decision",
    "completed", "result", "name is", "email is", "phone", "deadline", "schedule",
    "port", "host", "database", "endpoint", "configured", "setting", "preference",
)

# Phrases whose embeddings mark memorable content; embeddings carry the match across languages
MEMORY_PROTOTYPES = (
    "my name is",
    "my email is",
    "my phone number is",
    "i prefer to use",
    "please use this by default",
    "we have decided to",
    "the final decision is",
    "task completed successfully",
    "here is the result",
    "the ticket number is",
    "the reference code is",
    "schedule this for",
    "the deadline is",
    "my address is",
    "i am located in",
    "my language preference is",
    "connect to this service",
    "use this API endpoint",
    "the file is saved at",
    "the database host is",
)

_NAME_IS = re.compile(r"\bname is\s+([^\W\d_][\w'-]*(?:\s+[^\W\d_][\w'-]*)?)", re.I)


def has_commitment_language(text: str) -> bool:
    """Check if text contains commitment/promise language."""
    return any(p.search(text) for p in _COMMITMENT_PATTERNS)


def has_preference_statement(text: str) -> bool:
    return any(p.search(text) for p in _PREFERENCE_PATTERNS)


def has_temporal_reference(text: str) -> bool:
    return any(p.search(text) for p in _TEMPORAL_PATTERNS)


def has_factual_assertion(text: str) -> bool:
    """Check if text contains factual assertions about the user."""
    return any(p.search(text) for p in _FACTUAL_PATTERNS)


def has_emotional_significance(text: str) -> bool:
    return any(p.search(text) for p in _EMOTIONAL_PATTERNS)


def has_named_entities(text: str) -> bool:
    return any(p.search(text) for p in _ENTITY_PATTERNS)


def has_strong_indicator(text: str) -> bool:
    lowered = text.lower()
    return any(indicator in lowered for indicator in STRONG_INDICATORS)


def calculate_entity_novelty(message: str, recent_context: Sequence[str]) -> float:
    """
    Share of capitalized entities in message that recent context does not mention.

    Returns 0.0-1.0; 1.0 means every entity is new (or there is no context).
    """
    if not recent_context:
        return 1.0

    def extract_caps(text: str) -> set[str]:
        return set(re.findall(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b", text))

    msg_entities = extract_caps(message)
    if not msg_entities:
        return 0.0

    ctx_entities = extract_caps(" ".join(recent_context[-5:]))
    novel = msg_entities - ctx_entities
    return len(novel) / len(msg_entities)


def score_signals(text: str, recent_context: Sequence[str] | None = None) -> tuple[float, dict[str, float]]:
    """
    Weighted regex signal score for text.

    Returns (score, signals) where signals maps each fired signal to its weight.
    """
    signals: dict[str, float] = {}

    if has_commitment_language(text):
        signals["commitment"] = 0.4
    if has_preference_statement(text):
        signals["preference"] = 0.3
    if has_strong_indicator(text):
        signals["indicator"] = 0.3
    if has_temporal_reference(text):
        signals["temporal"] = 0.2
    if has_named_entities(text):
        signals["entities"] = 0.2
    if has_factual_assertion(text):
        signals["factual"] = 0.2
    if has_emotional_significance(text):
        signals["emotional"] = 0.1

    score = sum(signals.values())

    # Entity novelty only matters once something else fired
    if score >= 0.2 and recent_context:
        novelty_score = calculate_entity_novelty(text, recent_context) * 0.3
        if novelty_score > 0:
            signals["novelty"] = round(novelty_score, 3)
            score += novelty_score

    return round(score, 3), signals


def extract_key_values(text: str) -> list[str]:
    """Identity values (emails, "name is X") used to spot already-remembered facts."""
    values = [span.normalized_value for span in detect_emails(text)]
    values.extend(m.group(1).lower() for m in _NAME_IS.finditer(text))
    return values


def is_likely_duplicate(text: str, existing_memories: Sequence[str]) -> bool:
    """True when every identity value in text already appears in an existing memory."""
    if not existing_memories:
        return False
    values = extract_key_values(text)
    if not values:
        return False
    known = " ".join(existing_memories).lower()
    return all(value in known for value in values)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between a and b; 0.0 when either has zero norm."""
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def should_skip_gate(has_artifacts: bool, is_tool_output: bool) -> bool:
    return has_artifacts or is_tool_output


def bypass_decision() -> GateDecision:
    return GateDecision(remember=True, reason=BYPASS_REASON, mode=GateMode.BYPASSED, confidence=1.0)


def build_classification_prompt(ctx: GateContext, max_summary_chars: int = 1000) -> str:
    """User prompt for llm mode: context, already-remembered items, then the exchange."""
    prompt = ""
    if ctx.conversation_summary:
        prompt += f"Context: {ctx.conversation_summary[:max_summary_chars]}\n\n"
    if ctx.existing_memories:
        prompt += f"Already remembered: {', '.join(ctx.existing_memories[:5])}\n\n"
    prompt += f"User: {ctx.user_message[:500]}\n"
    if ctx.assistant_message:
        prompt += f"Assistant: {ctx.assistant_message[:500]}"
    return prompt


# =============================================================================
# Gate
# =============================================================================


class MemoryGate:
    """
    Admission gate for memory extraction.

    Holds the configuration and injected capabilities; the only state is the
    cache of prototype embeddings, which lives on the instance.
    """

    def __init__(
        self,
        config: GateConfig | None = None,
        classifier: ClassificationProvider | None = None,
        embedder: Embedder | None = None,
    ):
        self.config = config or GateConfig()
        self.classifier = classifier
        self.embedder = embedder
        self._prototype_vectors: list[list[float]] | None = None

    @property
    def mode(self) -> GateMode:
        return GateMode(self.config.mode)

    async def evaluate(self, ctx: GateContext) -> GateDecision:
        message = (ctx.user_message or "").strip()
        if not message:
            return GateDecision(remember=False, reason="No user message", mode=self.mode)
        if len(message) < self.config.min_message_chars:
            return GateDecision(remember=False, reason="Message too short", mode=self.mode)

        try:
            if self.mode == GateMode.LLM:
                return await self._evaluate_llm(ctx)
            return await self._evaluate_embedding(ctx)
        except asyncio.TimeoutError:
            reason = f"Gate timed out after {self.config.timeout_seconds}s"
            logger.warning("gate_failed", mode=self.mode.value, error=reason)
            return GateDecision(remember=False, reason=reason, mode=self.mode, error=reason)
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning("gate_failed", mode=self.mode.value, error=reason)
            return GateDecision(remember=False, reason=reason, mode=self.mode, error=reason)

    async def _evaluate_llm(self, ctx: GateContext) -> GateDecision:
        if self.classifier is None:
            return GateDecision(remember=False, reason="No classifier configured", mode=GateMode.LLM)

        prompt = build_classification_prompt(ctx, self.config.max_summary_chars)
        result = await asyncio.wait_for(self.classifier.classify(prompt), timeout=self.config.timeout_seconds)
        return GateDecision(
            remember=bool(result.decision),
            reason=result.reason,
            mode=GateMode.LLM,
            confidence=0.9 if result.decision else 0.1,
        )

    async def _evaluate_embedding(self, ctx: GateContext) -> GateDecision:
        text = f"{ctx.user_message} {ctx.assistant_message or ''}".strip()

        if self.embedder is not None:
            similarity = await asyncio.wait_for(self._prototype_similarity(text), timeout=self.config.timeout_seconds)
            remember = similarity >= self.config.similarity_threshold
            return GateDecision(
                remember=remember,
                reason=f"Prototype similarity {similarity:.2f}",
                mode=GateMode.EMBEDDING,
                confidence=round(similarity, 3),
                score=round(similarity, 3),
            )

        recent = [ctx.conversation_summary] if ctx.conversation_summary else []
        score, signals = score_signals(text, recent)

        if "indicator" in signals and is_likely_duplicate(text, ctx.existing_memories):
            return GateDecision(
                remember=False,
                reason="Likely duplicate of existing memory",
                mode=GateMode.EMBEDDING,
                confidence=0.3,
                score=score,
                signals=signals,
            )

        remember = score >= self.config.threshold
        return GateDecision(
            remember=remember,
            reason="Contains memory indicators" if remember else "No memory indicators found",
            mode=GateMode.EMBEDDING,
            confidence=min(1.0, score) if remember else 0.2,
            score=score,
            signals=signals,
        )

    async def _prototype_similarity(self, text: str) -> float:
        if self._prototype_vectors is None:
            self._prototype_vectors = await self.embedder.embed(list(MEMORY_PROTOTYPES))
        [vector] = await self.embedder.embed([text])
        return max((cosine_similarity(vector, p) for p in self._prototype_vectors), default=0.0)


async def gate(
    ctx: GateContext,
    config: GateConfig | None = None,
    classifier: ClassificationProvider | None = None,
    embedder: Embedder | None = None,
) -> GateDecision:
    """One-shot gate evaluation without keeping a MemoryGate around."""
    return await MemoryGate(config, classifier=classifier, embedder=embedder).evaluate(ctx)


__all__ = [
    "BYPASS_REASON",
    "DEFAULT_GATE_THRESHOLD",
    "Embedder",
    "GateContext",
    "GateDecision",
    "GateMode",
    "MEMORY_PROTOTYPES",
    "MemoryGate",
    "bypass_decision",
    "build_classification_prompt",
    "calculate_entity_novelty",
    "cosine_similarity",
    "gate",
    "score_signals",
    "should_skip_gate",
]
