"""
Remember/Skip Classifier

Binary classification used by the gate in llm mode: given the latest exchange,
should anything be remembered? The gate only depends on the
ClassificationProvider protocol; AnthropicClassifier is the default adapter and
uses a cheap model (Haiku) with a strict JSON-only system prompt.

Usage:
    from chatmem.memory.extraction.classifier import AnthropicClassifier

    classifier = AnthropicClassifier()
    result = await classifier.classify(prompt)
    if result.decision:
        ...
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import anthropic

from chatmem.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_CLASSIFICATION_MODEL = "claude-haiku-4-5-20251001"


GATE_SYSTEM_PROMPT = """You are a strict memory filter for a conversation system.
Your job is to decide if the latest exchange contains NEW, VALUABLE information worth remembering.

Memory types that should be remembered:
- User identity (name, email, phone, location)
- Stable preferences and settings
- Important decisions made
- Task outcomes and results
- IDs, ticket numbers, reference codes
- File paths, URLs, API endpoints
- Scheduled events or deadlines

Do NOT remember:
- Small talk or greetings
- Questions without answers
- Temporary states or in-progress work
- Information already in existing memories
- Generic confirmations or acknowledgments

The conversation may be in any language; judge the content, not the language.

Output JSON only: {"remember": true|false, "reason": "brief explanation"}"""


@dataclass
class ClassificationResult:
    decision: bool
    reason: str = ""


@runtime_checkable
class ClassificationProvider(Protocol):
    """Anything that can answer a remember/skip prompt."""

    async def classify(self, prompt: str) -> ClassificationResult: ...


class AnthropicClassifier:
    """ClassificationProvider backed by the Anthropic Messages API."""

    def __init__(
        self,
        model: str = DEFAULT_CLASSIFICATION_MODEL,
        max_tokens: int = 120,
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

    async def classify(self, prompt: str) -> ClassificationResult:
        """
        Ask the model for a remember/skip verdict.

        API errors propagate; the gate converts them into a negative decision.
        Unparseable output is a negative decision with reason "Parse error".
        """
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0,
            system=GATE_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        if not text:
            return ClassificationResult(decision=False, reason="No text response")
        return parse_classification_output(text)


def parse_classification_output(raw_output: str) -> ClassificationResult:
    """Parse {"remember": bool, "reason": str}, tolerating code fences and prose around it."""
    text = raw_output.strip()

    # Strip markdown code blocks
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        text = "\n".join(lines).strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1:
        logger.warning("classification_parse_failed", output=raw_output[:200])
        return ClassificationResult(decision=False, reason="Parse error")

    try:
        data: Any = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        logger.warning("classification_parse_failed", output=raw_output[:200])
        return ClassificationResult(decision=False, reason="Parse error")

    if not isinstance(data, dict):
        return ClassificationResult(decision=False, reason="Parse error")

    return ClassificationResult(
        decision=bool(data.get("remember", False)),
        reason=str(data.get("reason") or ""),
    )


__all__ = [
    "AnthropicClassifier",
    "ClassificationProvider",
    "ClassificationResult",
    "GATE_SYSTEM_PROMPT",
    "parse_classification_output",
]
