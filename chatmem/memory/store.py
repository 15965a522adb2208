"""
Memory Store

Two-tier conversational memory. Per turn it detects artifacts, gates,
extracts, deduplicates, persists at the conversation tier, promotes important
facts to the user tier, and prunes both tiers back under their caps. Later it
serves a relevance-ranked slice of both tiers for prompt injection.

Neither process_turn() nor get_relevant() ever raises: memory is an add-on to
the chat response path and must not break it. clear_owner() is the exception,
because an erasure request has to know when it failed.

Pipeline (process_turn):
    1. Artifact detection on the latest message (cheap, local)
    2. Recent {content, hash} pairs as dedup context (fetched concurrently
       with 1, awaited before the gate, which reads them)
    3. Gate, unless artifacts or tool output bypass it
    4. Identity capture ("my name is ...") for admitted turns, then
       user-tier pruning if it wrote
    5. Structured extraction
    6. Salience scoring and the importance floor
    7. Conversation-tier writes (a duplicate insert counts as success)
    8. Conversation-tier pruning
    9. Promotion of importance >= 7 facts to the user tier (merge or insert)
    10. User-tier pruning

Failures that are absorbed on the way are also recorded in the error ledger
(see chatmem.memory.errors).

Usage:
    from chatmem.memory.store import MemoryStore

    store = MemoryStore.from_config()
    await store.initialize()
    result = await store.process_turn("conv-1", "alice", messages, language="en")
    memories = await store.get_relevant("conv-1", "alice", "what's my email?")
"""

from __future__ import annotations

import asyncio
import dataclasses
import math
import re
import uuid
from collections import Counter, defaultdict
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from chatmem.logging_config import get_logger, turn_context
from chatmem.memory.artifacts import ArtifactDetectionResult, detect, detect_tool_output
from chatmem.memory.config import MemoryConfig, StoreConfig, load_config
from chatmem.memory.errors import MemoryErrorLog
from chatmem.memory.extraction.classifier import AnthropicClassifier
from chatmem.memory.extraction.extractor import (
    AnthropicExtractionProvider,
    ExtractionContext,
    StructuredExtractor,
    calculate_salience,
    rank_by_relevance,
)
from chatmem.memory.extraction.gate import (
    GateContext,
    GateDecision,
    MemoryGate,
    bypass_decision,
    should_skip_gate,
)
from chatmem.memory.models import (
    ErrorSeverity,
    ExtractionResult,
    FactType,
    MemoryCandidate,
    MemoryOperation,
    MemoryStats,
    MemoryTier,
    StoredMemory,
    Temporality,
    TurnResult,
    utcnow,
)
from chatmem.memory.providers import (
    DuplicateMemoryError,
    MemoryFilter,
    OrderBy,
    PersistenceProvider,
    get_provider,
)

logger = get_logger(__name__)

# Eviction order: least salient first, then never/least recently accessed, then oldest
EVICTION_ORDER = [
    OrderBy("salience"),
    OrderBy("last_accessed_at", nulls_first=True),
    OrderBy("created_at"),
]

_NAME_PATTERN = re.compile(r"\bmy\s+name\s+is\s+([^.,!?;:\n]{1,60})", re.IGNORECASE)


def _new_id() -> str:
    return str(uuid.uuid4())


def _latest(messages: Sequence[dict[str, Any]], role: str) -> tuple[int, str | None]:
    for index in range(len(messages) - 1, -1, -1):
        msg = messages[index]
        if msg.get("role") == role and isinstance(msg.get("content"), str):
            return index, msg["content"]
    return -1, None


def _summarize(messages: Sequence[dict[str, Any]], max_chars: int) -> str:
    """Plain-text tail of the earlier conversation, at most max_chars long."""
    if max_chars <= 0 or not messages:
        return ""
    text = "\n".join(
        f"{msg.get('role', 'user')}: {msg.get('content')}"
        for msg in messages
        if isinstance(msg.get("content"), str)
    )
    return text[-max_chars:]


class MemoryStore:
    """
    Facade over the memory pipeline and a PersistenceProvider.

    All state lives in the provider; the only thing held here is the set of
    in-flight background access-refresh tasks (see drain()).
    """

    def __init__(
        self,
        provider: PersistenceProvider,
        gate: MemoryGate | None = None,
        extractor: StructuredExtractor | None = None,
        config: StoreConfig | None = None,
    ):
        self.provider = provider
        self.gate = gate or MemoryGate()
        self.extractor = extractor
        self.config = config or StoreConfig()
        self._background: set[asyncio.Task] = set()
        self.errors = MemoryErrorLog(provider)

    @classmethod
    def from_config(cls, config: MemoryConfig | None = None) -> MemoryStore:
        """Build a store with the configured provider and the Anthropic-backed gate/extractor."""
        config = config or load_config()
        provider = get_provider(config.provider.active, config.provider.settings_for())
        classifier = None
        if config.gate.mode == "llm":
            classifier = AnthropicClassifier(model=config.gate.model, max_tokens=config.gate.max_tokens)
        extractor = StructuredExtractor(
            AnthropicExtractionProvider(model=config.extraction.model, max_tokens=config.extraction.max_tokens),
            timeout_seconds=config.extraction.timeout_seconds,
            max_messages=config.extraction.max_messages,
            max_chars_per_message=config.extraction.max_chars_per_message,
        )
        return cls(provider, MemoryGate(config.gate, classifier=classifier), extractor, config.store)

    async def initialize(self) -> None:
        await self.provider.initialize()

    async def close(self) -> None:
        await self.drain()
        await self.provider.teardown()

    def _cap(self, tier: MemoryTier) -> int:
        if tier == MemoryTier.CONVERSATION:
            return self.config.max_conversation_memories
        return self.config.max_user_memories

    @staticmethod
    def _owner_filter(tier: MemoryTier, owner_id: str, scope_id: str | None = None) -> MemoryFilter:
        return MemoryFilter(owner_id=owner_id, scope_id=scope_id if tier == MemoryTier.CONVERSATION else None)

    # =========================================================================
    # Turn processing
    # =========================================================================

    async def process_turn(
        self,
        conversation_id: str,
        user_id: str,
        messages: Sequence[dict[str, Any]],
        language: str | None = None,
        *,
        is_tool_output: bool = False,
    ) -> TurnResult:
        """
        Run the memory pipeline for one conversation turn.

        Args:
            conversation_id: Conversation scope for conversation-tier records
            user_id: Owner of every record written
            messages: Conversation so far as {"role", "content"} dicts, latest last
            language: Optional language hint passed to the extractor
            is_tool_output: Treat the latest message as tool output (bypasses the gate)

        Returns:
            TurnResult with write counts; error is set instead of raising
        """
        with turn_context(conversation_id, user_id):
            try:
                return await self._process_turn(conversation_id, user_id, list(messages or []), language, is_tool_output)
            except Exception as e:
                logger.error("process_turn_failed", error=str(e), exc_info=True)
                error = str(e) or type(e).__name__
                await self.errors.log_error(
                    MemoryOperation.GENERAL,
                    error,
                    component="MemoryStore.process_turn",
                    conversation_id=conversation_id,
                    user_id=user_id,
                    exc=e,
                )
                return TurnResult(error=error)

    async def _process_turn(
        self,
        conversation_id: str,
        user_id: str,
        messages: list[dict[str, Any]],
        language: str | None,
        is_tool_output: bool,
    ) -> TurnResult:
        result = TurnResult()
        if not messages:
            return result

        latest = messages[-1]
        latest_content = latest.get("content")
        tool_output = is_tool_output or latest.get("role") == "tool" or not isinstance(latest_content, str)

        recent_task = asyncio.create_task(
            self.get_recent_memories(conversation_id, user_id, self.config.dedup_context_limit)
        )
        try:
            detection: ArtifactDetectionResult = (
                detect_tool_output(latest_content) if tool_output else detect(latest_content)
            )
            recent = await recent_task
        finally:
            if not recent_task.done():
                recent_task.cancel()

        # Gate
        if should_skip_gate(detection.has_artifacts, tool_output):
            decision = bypass_decision()
        else:
            decision = await self._run_gate(messages, recent)
        result.gate = decision
        if decision.error:
            await self.errors.log_error(
                MemoryOperation.GATE,
                decision.error,
                ErrorSeverity.WARN,
                component="MemoryGate",
                conversation_id=conversation_id,
                user_id=user_id,
                metadata={"mode": decision.mode.value},
            )
        if not decision.remember:
            logger.debug("turn_gated", reason=decision.reason, mode=decision.mode.value)
            return result

        if self.config.identity_capture and await self._capture_identity(user_id, messages, language):
            result.user_memories_written += 1
            await self.prune(MemoryTier.USER, user_id)

        # Extraction
        extracted = await self._extract(messages, conversation_id, user_id, language, recent)
        result.extracted = extracted
        if extracted.error:
            await self.errors.log_error(
                MemoryOperation.EXTRACTION,
                extracted.error,
                component="StructuredExtractor",
                conversation_id=conversation_id,
                user_id=user_id,
            )
        if extracted.is_empty:
            return result

        # Score and filter
        survivors = [
            (candidate, calculate_salience(candidate))
            for candidate in extracted.memories
            if candidate.importance >= self.config.min_importance_threshold
        ]

        # Conversation tier
        turn_metadata = {
            "conversation_summary": extracted.conversation_summary,
            "user_intent": extracted.user_intent,
            "emotional_tone": extracted.emotional_tone.value if extracted.emotional_tone else None,
        }
        for candidate, salience in survivors:
            record = StoredMemory.from_candidate(
                candidate,
                id=_new_id(),
                tier=MemoryTier.CONVERSATION,
                owner_id=user_id,
                scope_id=conversation_id,
                salience=salience,
                language_code=language,
                extra_metadata=turn_metadata,
            )
            if await self._insert(MemoryTier.CONVERSATION, record):
                result.conversation_memories_written += 1
        if survivors:
            await self.prune(MemoryTier.CONVERSATION, user_id, conversation_id)

        # User tier
        promotable = [
            (candidate, salience)
            for candidate, salience in survivors
            if candidate.importance >= self.config.promotion_threshold
        ]
        promotable.extend(
            (candidate, calculate_salience(candidate))
            for candidate in extracted.duplicates
            if candidate.importance >= self.config.promotion_threshold
        )
        for candidate, salience in promotable:
            if await self._promote(user_id, candidate, salience, language):
                result.user_memories_written += 1
        if promotable:
            await self.prune(MemoryTier.USER, user_id)

        logger.info(
            "turn_processed",
            gate_mode=decision.mode.value,
            extracted=len(extracted.memories),
            duplicates=len(extracted.duplicates),
            conversation_written=result.conversation_memories_written,
            user_written=result.user_memories_written,
        )
        return result

    async def _run_gate(self, messages: list[dict[str, Any]], recent: list[dict[str, str]]) -> GateDecision:
        user_index, user_message = _latest(messages, "user")
        _, assistant_message = _latest(messages, "assistant")
        earlier = messages[:user_index] if user_index > 0 else []
        ctx = GateContext(
            user_message=user_message or "",
            assistant_message=assistant_message,
            conversation_summary=_summarize(earlier, self.gate.config.max_summary_chars),
            existing_memories=[m["content"] for m in recent],
        )
        return await self.gate.evaluate(ctx)

    async def _extract(
        self,
        messages: list[dict[str, Any]],
        conversation_id: str,
        user_id: str,
        language: str | None,
        recent: list[dict[str, str]],
    ) -> ExtractionResult:
        if self.extractor is None:
            logger.debug("extraction_skipped", reason="no extractor configured")
            return ExtractionResult.empty()
        ctx = ExtractionContext(
            user_id=user_id,
            conversation_id=conversation_id,
            language=language,
            existing_memories=recent,
        )
        return await self.extractor.extract(messages, ctx)

    async def _insert(self, tier: MemoryTier, record: StoredMemory) -> bool:
        """Insert one record. False when it already existed or could not be written."""
        try:
            await self.provider.insert(tier, record)
            return True
        except DuplicateMemoryError:
            logger.debug("duplicate_memory_skipped", tier=tier.value, content_hash=record.content_hash)
        except Exception as e:
            logger.warning("memory_write_failed", tier=tier.value, content_hash=record.content_hash, error=str(e))
            await self.errors.log_error(
                MemoryOperation.STORAGE,
                str(e) or type(e).__name__,
                component="MemoryStore.insert",
                conversation_id=record.scope_id,
                user_id=record.owner_id,
                metadata={"tier": tier.value},
                exc=e,
            )
        return False

    async def _promote(self, user_id: str, candidate: MemoryCandidate, salience: float, language: str | None) -> bool:
        """
        Merge candidate into the user tier by content hash, or insert it.

        A merge keeps the max of importance, confidence and salience and
        refreshes last_accessed_at. Returns True only for a new record.
        """
        try:
            key = candidate.content_hash
            existing = await self.provider.find_first(
                MemoryTier.USER, MemoryFilter(owner_id=user_id, content_hash=key)
            )
            if existing is None:
                record = StoredMemory.from_candidate(
                    candidate,
                    id=_new_id(),
                    tier=MemoryTier.USER,
                    owner_id=user_id,
                    salience=salience,
                    language_code=language,
                )
                try:
                    await self.provider.insert(MemoryTier.USER, record)
                    return True
                except DuplicateMemoryError:
                    # A concurrent turn promoted the same fact first
                    existing = await self.provider.find_first(
                        MemoryTier.USER, MemoryFilter(owner_id=user_id, content_hash=key)
                    )
                    if existing is None:
                        return False

            await self.provider.update(
                MemoryTier.USER,
                [existing.id],
                {
                    "importance": max(existing.importance, candidate.importance),
                    "confidence": max(existing.confidence, candidate.confidence),
                    "salience": max(existing.salience, salience),
                    "last_accessed_at": utcnow(),
                },
            )
        except Exception as e:
            logger.warning("memory_promotion_failed", content_hash=candidate.content_hash, error=str(e))
            await self.errors.log_error(
                MemoryOperation.STORAGE,
                str(e) or type(e).__name__,
                component="MemoryStore.promote",
                user_id=user_id,
                exc=e,
            )
        return False

    async def _capture_identity(self, user_id: str, messages: list[dict[str, Any]], language: str | None) -> int:
        """Store "User name is X" at the user tier when the user states their name."""
        _, user_message = _latest(messages, "user")
        match = _NAME_PATTERN.search(user_message or "")
        if not match or not match.group(1).strip():
            return 0

        name = match.group(1).strip()
        candidate = MemoryCandidate(
            fact_type=FactType.PERSONAL_INFO,
            content=f"User name is {name}",
            subject="identity",
            importance=9,
            confidence=0.95,
            temporality=Temporality.PERMANENT,
            entities=[name],
            related_topics=["name"],
        )
        record = StoredMemory.from_candidate(
            candidate,
            id=_new_id(),
            tier=MemoryTier.USER,
            owner_id=user_id,
            salience=calculate_salience(candidate),
            language_code=language,
            extra_metadata={"source": "identity_capture"},
        )
        try:
            existing = await self.provider.find_first(
                MemoryTier.USER, MemoryFilter(owner_id=user_id, content_hash=record.content_hash)
            )
            if existing is not None:
                return 0
            await self.provider.insert(MemoryTier.USER, record)
            return 1
        except Exception as e:
            logger.debug("identity_capture_skipped", error=str(e))
            return 0

    # =========================================================================
    # Pruning
    # =========================================================================

    async def prune(self, tier: MemoryTier, owner_id: str, scope_id: str | None = None) -> int:
        """
        Delete expired records, then the lowest-value records above the tier cap.

        Expired means expires_at has passed, or a temporary record older than
        ttl_days. Over-cap eviction follows EVICTION_ORDER. Failures are
        logged and left for the next write batch.

        Returns:
            Number of records deleted
        """
        base = self._owner_filter(tier, owner_id, scope_id)
        now = utcnow()
        try:
            deleted = await self.provider.delete(tier, dataclasses.replace(base, expires_before=now))
            deleted += await self.provider.delete(
                tier,
                dataclasses.replace(
                    base,
                    temporality=Temporality.TEMPORARY,
                    created_before=now - timedelta(days=self.config.ttl_days),
                ),
            )

            excess = await self.provider.count(tier, base) - self._cap(tier)
            if excess > 0:
                victims = await self.provider.find_many(tier, base, order_by=EVICTION_ORDER, limit=excess)
                deleted += await self.provider.delete(
                    tier, MemoryFilter(owner_id=owner_id, ids=[v.id for v in victims])
                )
        except Exception as e:
            logger.warning("prune_failed", tier=tier.value, error=str(e))
            await self.errors.log_error(
                MemoryOperation.STORAGE,
                str(e) or type(e).__name__,
                ErrorSeverity.WARN,
                component="MemoryStore.prune",
                conversation_id=scope_id,
                user_id=owner_id,
                metadata={"tier": tier.value},
                exc=e,
            )
            return 0

        if deleted:
            logger.debug("memories_pruned", tier=tier.value, deleted=deleted)
        return deleted

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def get_recent_memories(self, conversation_id: str, user_id: str, limit: int = 50) -> list[dict[str, str]]:
        """
        Newest {content, hash} pairs, half from each tier, used as dedup context.

        Returns [] on failure.
        """
        if limit <= 0:
            return []
        conversation_limit = max(1, limit // 2)
        newest_first = [OrderBy("created_at", descending=True)]
        try:
            conversation, user = await asyncio.gather(
                self.provider.find_many(
                    MemoryTier.CONVERSATION,
                    MemoryFilter(owner_id=user_id, scope_id=conversation_id),
                    order_by=newest_first,
                    limit=conversation_limit,
                ),
                self.provider.find_many(
                    MemoryTier.USER,
                    MemoryFilter(owner_id=user_id),
                    order_by=newest_first,
                    limit=max(1, limit - conversation_limit),
                ),
            )
        except Exception as e:
            logger.warning("recent_memories_failed", error=str(e))
            return []
        return [{"content": m.content, "hash": m.content_hash} for m in [*conversation, *user]]

    async def get_relevant(
        self,
        conversation_id: str,
        user_id: str,
        current_message: str,
        max_count: int | None = None,
    ) -> list[StoredMemory]:
        """
        Memories most relevant to current_message across both tiers.

        Pulls the most salient records from each tier (conversation_share of
        max_count from the conversation tier, the rest from the user tier),
        ranks them by keyword relevance blended with salience, and refreshes
        their access time in the background.

        Returns:
            Up to max_count StoredMemory, [] on failure
        """
        if max_count is None:
            max_count = self.config.default_max_results
        if max_count <= 0:
            return []

        conversation_count = max(1, math.floor(self.config.conversation_share * max_count))
        user_count = max(1, max_count - conversation_count)
        by_salience = [OrderBy("salience", descending=True)]

        with turn_context(conversation_id, user_id):
            try:
                conversation, user = await asyncio.gather(
                    self.provider.find_many(
                        MemoryTier.CONVERSATION,
                        MemoryFilter(owner_id=user_id, scope_id=conversation_id),
                        order_by=by_salience,
                        limit=conversation_count,
                    ),
                    self.provider.find_many(
                        MemoryTier.USER,
                        MemoryFilter(owner_id=user_id),
                        order_by=by_salience,
                        limit=user_count,
                    ),
                )
            except Exception as e:
                logger.warning("get_relevant_failed", error=str(e))
                await self.errors.log_error(
                    MemoryOperation.INJECTION,
                    str(e) or type(e).__name__,
                    component="MemoryStore.get_relevant",
                    conversation_id=conversation_id,
                    user_id=user_id,
                    exc=e,
                )
                return []

            now = utcnow()
            pool: dict[tuple[MemoryTier, str], StoredMemory] = {}
            for memory in [*conversation, *user]:
                if not memory.is_expired(now, ttl_days=self.config.ttl_days):
                    pool.setdefault((memory.tier, memory.id), memory)

            ranked = rank_by_relevance(list(pool.values()), current_message, max_count)
            if ranked:
                self._schedule_access_refresh(ranked)
            return ranked

    def _schedule_access_refresh(self, memories: Sequence[StoredMemory]) -> None:
        ids_by_tier: dict[MemoryTier, list[str]] = defaultdict(list)
        for memory in memories:
            ids_by_tier[memory.tier].append(memory.id)
        task = asyncio.create_task(self._refresh_access(dict(ids_by_tier)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_access(self, ids_by_tier: dict[MemoryTier, list[str]]) -> None:
        now = utcnow()
        for tier, ids in ids_by_tier.items():
            try:
                await self.provider.update(tier, ids, {"last_accessed_at": now})
            except Exception as e:
                logger.warning("access_refresh_failed", tier=tier.value, error=str(e))

    async def drain(self) -> None:
        """Wait for pending background access refreshes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Owner operations
    # =========================================================================

    async def clear_owner(self, user_id: str) -> dict[MemoryTier, int]:
        """
        Delete every record of user_id at both tiers.

        Each tier is deleted atomically on its own; errors propagate.

        Returns:
            Deleted count per tier
        """
        if not user_id:
            raise ValueError("user_id is required")
        await self.drain()
        deleted = {}
        async with self.errors.capture(MemoryOperation.STORAGE, "MemoryStore.clear_owner", user_id=user_id):
            for tier in (MemoryTier.CONVERSATION, MemoryTier.USER):
                deleted[tier] = await self.provider.delete(tier, MemoryFilter(owner_id=user_id))
        logger.info("owner_cleared", user_id=user_id, deleted={t.value: n for t, n in deleted.items()})
        return deleted

    async def get_stats(self, user_id: str) -> MemoryStats:
        """Per-owner summary. Zeroed stats on failure."""
        try:
            owner = MemoryFilter(owner_id=user_id)
            conversation_count, user_count = await asyncio.gather(
                self.provider.count(MemoryTier.CONVERSATION, owner),
                self.provider.count(MemoryTier.USER, owner),
            )
            user_memories = await self.provider.find_many(MemoryTier.USER, owner)
            unresolved_errors = await self.errors.count_unresolved(user_id)
        except Exception as e:
            logger.warning("get_stats_failed", user_id=user_id, error=str(e))
            return MemoryStats()

        stats = MemoryStats(
            tier_counts={MemoryTier.CONVERSATION: conversation_count, MemoryTier.USER: user_count},
            unresolved_errors=unresolved_errors,
        )
        if not user_memories:
            return stats

        stats.top_fact_types = Counter(m.fact_type for m in user_memories).most_common(5)
        stats.average_importance = sum(m.importance for m in user_memories) / len(user_memories)
        stats.oldest_record_age = utcnow() - min(m.created_at for m in user_memories)

        accessed = [m for m in user_memories if m.last_accessed_at is not None]
        if accessed:
            stats.most_accessed_content = max(accessed, key=lambda m: m.last_accessed_at).content
        return stats


__all__ = ["EVICTION_ORDER", "MemoryStore"]
