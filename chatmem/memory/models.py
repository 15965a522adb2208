"""
Memory Data Model

Shared types for the memory pipeline: the closed fact/temporality vocabularies,
the extraction schema (MemoryCandidate), the persisted record (StoredMemory),
the per-call results returned by the store, and the error-ledger records.

MemoryCandidate and ExtractionPayload are pydantic models because they validate
untrusted model output; their camelCase aliases are the wire format the
extraction provider is asked to produce. Numeric fields are clamped rather than
rejected so a slightly out-of-range score never costs a whole fact.

Usage:
    from chatmem.memory.models import MemoryCandidate, content_hash

    candidate = MemoryCandidate.model_validate({"factType": "preference", "content": "Prefers tea"})
    key = content_hash(candidate.content)
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FactType(StrEnum):
    """Kind of fact a memory records."""

    PERSONAL_INFO = "personal_info"
    PREFERENCE = "preference"
    RELATIONSHIP = "relationship"
    WORK_INFO = "work_info"
    TECHNICAL_DETAIL = "technical_detail"
    EVENT = "event"
    GOAL = "goal"
    PROBLEM = "problem"
    SOLUTION = "solution"
    CONTEXT = "context"
    OTHER = "other"


class Temporality(StrEnum):
    """How long a fact is expected to stay true."""

    PERMANENT = "permanent"
    TEMPORARY = "temporary"
    SEASONAL = "seasonal"
    UNKNOWN = "unknown"


class EmotionalTone(StrEnum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    MIXED = "mixed"


class MemoryTier(StrEnum):
    """
    Storage tier.

    CONVERSATION records are scoped to one conversation; USER records follow the
    owner across conversations and only hold promoted, high-importance facts.
    """

    CONVERSATION = "conversation"
    USER = "user"


class MemoryOperation(StrEnum):
    """Pipeline stage an error-ledger entry belongs to."""

    EXTRACTION = "extraction"
    STORAGE = "storage"
    INJECTION = "injection"
    GATE = "gate"
    CONTEXT_BUILDER = "context_builder"
    ARTIFACT_DETECTION = "artifact_detection"
    GENERAL = "general"


class ErrorSeverity(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so comparisons never mix aware and naive."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_content(content: str) -> str:
    """Lowercase, trim and collapse whitespace runs."""
    return _WHITESPACE_RUN.sub(" ", content.strip().lower())


def content_hash(content: str) -> str:
    """Dedup key: first 16 hex chars of SHA-256 over the normalized content."""
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()[:16]


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# =============================================================================
# Extraction schema
# =============================================================================


class MemoryCandidate(BaseModel):
    """A fact proposed by the extractor, not yet persisted."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fact_type: FactType = Field(default=FactType.OTHER, alias="factType")
    content: str = Field(min_length=1)
    subject: str | None = None
    importance: int = Field(default=5, ge=1, le=10)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    temporality: Temporality = Temporality.UNKNOWN
    entities: list[str] = Field(default_factory=list)
    related_topics: list[str] = Field(default_factory=list, alias="relatedTopics")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    source_context: str | None = Field(default=None, alias="sourceContext")

    @field_validator("fact_type", mode="before")
    @classmethod
    def _coerce_fact_type(cls, value: Any) -> FactType:
        try:
            return FactType(str(value).strip().lower())
        except ValueError:
            return FactType.OTHER

    @field_validator("temporality", mode="before")
    @classmethod
    def _coerce_temporality(cls, value: Any) -> Temporality:
        try:
            return Temporality(str(value).strip().lower())
        except ValueError:
            return Temporality.UNKNOWN

    @field_validator("content", mode="before")
    @classmethod
    def _strip_content(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> int:
        if value is None:
            return 5
        return int(clamp(round(float(value)), 1, 10))

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        if value is None:
            return 0.8
        return clamp(float(value), 0.0, 1.0)

    @field_validator("entities", "related_topics", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(v).strip() for v in value if v is not None and str(v).strip()]

    @field_validator("expires_at", mode="before")
    @classmethod
    def _parse_expiry(cls, value: Any) -> datetime | None:
        return parse_datetime(value)

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ExtractionPayload(BaseModel):
    """Shape the extraction provider is asked to return (JSON schema source)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    memories: list[MemoryCandidate] = Field(default_factory=list)
    conversation_summary: str | None = Field(default=None, alias="conversationSummary")
    user_intent: str | None = Field(default=None, alias="userIntent")
    next_actions: list[str] = Field(default_factory=list, alias="nextActions")
    emotional_tone: EmotionalTone | None = Field(default=None, alias="emotionalTone")

    @classmethod
    def json_schema(cls) -> dict[str, Any]:
        return cls.model_json_schema(by_alias=True)


class ExtractionResult(BaseModel):
    """Validated extractor output for one turn."""

    model_config = ConfigDict(populate_by_name=True)

    memories: list[MemoryCandidate] = Field(default_factory=list)
    # Candidates dropped because they matched an already-known content hash
    duplicates: list[MemoryCandidate] = Field(default_factory=list)
    conversation_summary: str | None = None
    user_intent: str | None = None
    next_actions: list[str] = Field(default_factory=list)
    emotional_tone: EmotionalTone | None = None
    # Set when the provider failed or timed out; the result is then empty
    error: str | None = None

    @classmethod
    def empty(cls, error: str | None = None) -> ExtractionResult:
        return cls(error=error)

    @property
    def is_empty(self) -> bool:
        return not self.memories and not self.duplicates


# =============================================================================
# Persisted record
# =============================================================================


@dataclass
class StoredMemory:
    """
    A persisted memory at either tier.

    Flat columns carry everything the store filters or sorts on; the rest of the
    candidate (subject, entities, topics, turn summary) rides in metadata.
    """

    id: str
    tier: MemoryTier
    owner_id: str
    content: str
    fact_type: FactType = FactType.OTHER
    importance: int = 5
    confidence: float = 1.0
    salience: float = 0.0
    content_hash: str = ""
    temporality: Temporality = Temporality.UNKNOWN
    scope_id: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    language_code: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.tier = MemoryTier(self.tier)
        self.fact_type = FactType(self.fact_type)
        self.temporality = Temporality(self.temporality)
        self.importance = int(clamp(self.importance, 1, 10))
        self.confidence = clamp(float(self.confidence), 0.0, 1.0)
        self.salience = clamp(float(self.salience), 0.0, 1.0)
        self.created_at = ensure_utc(self.created_at)
        self.expires_at = ensure_utc(self.expires_at)
        self.last_accessed_at = ensure_utc(self.last_accessed_at)
        if not self.content_hash:
            self.content_hash = content_hash(self.content)

    @property
    def subject(self) -> str | None:
        return self.metadata.get("subject")

    @property
    def entities(self) -> list[str]:
        return list(self.metadata.get("entities") or [])

    @property
    def related_topics(self) -> list[str]:
        return list(self.metadata.get("related_topics") or [])

    def is_expired(self, now: datetime | None = None, ttl_days: int | None = None) -> bool:
        now = now or utcnow()
        if self.expires_at is not None and self.expires_at < now:
            return True
        if ttl_days is not None and self.temporality == Temporality.TEMPORARY:
            return self.created_at < now - timedelta(days=ttl_days)
        return False

    @classmethod
    def from_candidate(
        cls,
        candidate: MemoryCandidate,
        *,
        id: str,
        tier: MemoryTier,
        owner_id: str,
        salience: float,
        scope_id: str | None = None,
        language_code: str | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> StoredMemory:
        metadata: dict[str, Any] = {
            "subject": candidate.subject,
            "entities": candidate.entities,
            "related_topics": candidate.related_topics,
            "source_context": candidate.source_context,
        }
        metadata.update(extra_metadata or {})
        return cls(
            id=id,
            tier=tier,
            owner_id=owner_id,
            scope_id=scope_id if tier == MemoryTier.CONVERSATION else None,
            content=candidate.content,
            fact_type=candidate.fact_type,
            importance=candidate.importance,
            confidence=candidate.confidence,
            salience=salience,
            content_hash=candidate.content_hash,
            temporality=candidate.temporality,
            expires_at=candidate.expires_at,
            metadata={k: v for k, v in metadata.items() if v not in (None, [], "")},
            language_code=language_code,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier.value,
            "owner_id": self.owner_id,
            "scope_id": self.scope_id,
            "content": self.content,
            "fact_type": self.fact_type.value,
            "importance": self.importance,
            "confidence": self.confidence,
            "salience": self.salience,
            "content_hash": self.content_hash,
            "temporality": self.temporality.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "metadata": self.metadata,
            "language_code": self.language_code,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat() if self.last_accessed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredMemory:
        return cls(
            id=data["id"],
            tier=MemoryTier(data["tier"]),
            owner_id=data["owner_id"],
            scope_id=data.get("scope_id"),
            content=data["content"],
            fact_type=FactType(data.get("fact_type", FactType.OTHER)),
            importance=data.get("importance", 5),
            confidence=data.get("confidence", 1.0),
            salience=data.get("salience", 0.0),
            content_hash=data.get("content_hash", ""),
            temporality=Temporality(data.get("temporality", Temporality.UNKNOWN)),
            expires_at=parse_datetime(data.get("expires_at")),
            metadata=data.get("metadata") or {},
            language_code=data.get("language_code"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            last_accessed_at=parse_datetime(data.get("last_accessed_at")),
        )


# =============================================================================
# Call results
# =============================================================================


@dataclass
class TurnResult:
    """Outcome of MemoryStore.process_turn."""

    conversation_memories_written: int = 0
    user_memories_written: int = 0
    extracted: ExtractionResult = field(default_factory=ExtractionResult)
    gate: Any = None  # GateDecision, None when the gate never ran
    error: str | None = None

    @property
    def total_written(self) -> int:
        return self.conversation_memories_written + self.user_memories_written

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_memories_written": self.conversation_memories_written,
            "user_memories_written": self.user_memories_written,
            "extracted": [m.to_dict() for m in self.extracted.memories],
            "gate": self.gate.to_dict() if self.gate is not None else None,
            "error": self.error,
        }


@dataclass
class MemoryStats:
    """Per-owner summary returned by MemoryStore.get_stats."""

    tier_counts: dict[MemoryTier, int] = field(
        default_factory=lambda: {MemoryTier.CONVERSATION: 0, MemoryTier.USER: 0}
    )
    top_fact_types: list[tuple[FactType, int]] = field(default_factory=list)
    average_importance: float = 0.0
    oldest_record_age: timedelta | None = None
    most_accessed_content: str | None = None
    unresolved_errors: int = 0

    @property
    def total(self) -> int:
        return sum(self.tier_counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier_counts": {tier.value: n for tier, n in self.tier_counts.items()},
            "total": self.total,
            "top_fact_types": [{"fact_type": ft.value, "count": n} for ft, n in self.top_fact_types],
            "average_importance": round(self.average_importance, 2),
            "oldest_record_age_days": (
                round(self.oldest_record_age.total_seconds() / 86400, 2)
                if self.oldest_record_age is not None
                else None
            ),
            "most_accessed_content": self.most_accessed_content,
            "unresolved_errors": self.unresolved_errors,
        }


# =============================================================================
# Error ledger
# =============================================================================


@dataclass
class MemoryErrorRecord:
    """One persisted failure of a memory operation."""

    id: str
    operation: MemoryOperation
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    component: str | None = None
    error_type: str | None = None
    conversation_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: datetime | None = None

    def __post_init__(self) -> None:
        self.operation = MemoryOperation(self.operation)
        self.severity = ErrorSeverity(self.severity)
        self.created_at = ensure_utc(self.created_at)
        self.resolved_at = ensure_utc(self.resolved_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation.value,
            "severity": self.severity.value,
            "message": self.message,
            "component": self.component,
            "error_type": self.error_type,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class MemoryErrorStats:
    """Aggregate view of the error ledger over a time window."""

    total: int = 0
    by_operation: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)
    recent: list[MemoryErrorRecord] = field(default_factory=list)
    unresolved: list[MemoryErrorRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_operation": self.by_operation,
            "by_severity": self.by_severity,
            "recent": [e.to_dict() for e in self.recent],
            "unresolved": [e.to_dict() for e in self.unresolved],
        }
