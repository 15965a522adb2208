"""
Memory Context Builder

Renders retrieved memories as a prompt block, localized for the conversation
language (en, tr, zh, ja, hi, nl; anything else falls back to English).

Formats:
    structured  Header, then memories grouped under fact-type labels with
                importance markers (default)
    narrative   Sentences grouped by subject ("About the user: ...")
    minimal     One line per memory with an importance prefix

Output is capped at max_tokens using a 4-characters-per-token estimate,
cutting at a sentence or line boundary when one is close to the limit.

Usage:
    from chatmem.memory.context_builder import MemoryContextBuilder

    builder = MemoryContextBuilder(max_tokens=400, format="structured")
    block = builder.build_compact_context(memories, language="tr")
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from chatmem.memory.config import ContextConfig
from chatmem.memory.models import FactType, StoredMemory

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "\n[... context truncated]"
DEFAULT_LANGUAGE = "en"

CONTEXT_HEADERS = {
    "en": "📚 CONVERSATION CONTEXT & MEMORIES",
    "tr": "📚 KONUŞMA BAĞLAMI VE ANILAR",
    "zh": "📚 对话背景和记忆",
    "ja": "📚 会話のコンテキストとメモリー",
    "hi": "📚 बातचीत का संदर्भ और यादें",
    "nl": "📚 GESPREKSCONTEXT EN HERINNERINGEN",
}

FACT_TYPE_LABELS: dict[FactType, dict[str, str]] = {
    FactType.PERSONAL_INFO: {
        "en": "👤 Personal Information",
        "tr": "👤 Kişisel Bilgiler",
        "zh": "👤 个人信息",
        "ja": "👤 個人情報",
        "hi": "👤 व्यक्तिगत जानकारी",
        "nl": "👤 Persoonlijke Informatie",
    },
    FactType.PREFERENCE: {
        "en": "⭐ Preferences",
        "tr": "⭐ Tercihler",
        "zh": "⭐ 偏好",
        "ja": "⭐ 好み",
        "hi": "⭐ प्राथमिकताएं",
        "nl": "⭐ Voorkeuren",
    },
    FactType.WORK_INFO: {
        "en": "💼 Work Information",
        "tr": "💼 İş Bilgileri",
        "zh": "💼 工作信息",
        "ja": "💼 仕事情報",
        "hi": "💼 कार्य जानकारी",
        "nl": "💼 Werkinformatie",
    },
    FactType.TECHNICAL_DETAIL: {
        "en": "🔧 Technical Details",
        "tr": "🔧 Teknik Detaylar",
        "zh": "🔧 技术细节",
        "ja": "🔧 技術的な詳細",
        "hi": "🔧 तकनीकी विवरण",
        "nl": "🔧 Technische Details",
    },
    FactType.GOAL: {
        "en": "🎯 Goals & Plans",
        "tr": "🎯 Hedefler ve Planlar",
        "zh": "🎯 目标与计划",
        "ja": "🎯 目標と計画",
        "hi": "🎯 लक्ष्य और योजनाएं",
        "nl": "🎯 Doelen & Plannen",
    },
    FactType.PROBLEM: {
        "en": "⚠️ Problems & Challenges",
        "tr": "⚠️ Sorunlar ve Zorluklar",
        "zh": "⚠️ 问题与挑战",
        "ja": "⚠️ 問題と課題",
        "hi": "⚠️ समस्याएं और चुनौतियां",
        "nl": "⚠️ Problemen & Uitdagingen",
    },
    FactType.RELATIONSHIP: {
        "en": "🤝 Relationships",
        "tr": "🤝 İlişkiler",
        "zh": "🤝 关系",
        "ja": "🤝 関係",
        "hi": "🤝 संबंध",
        "nl": "🤝 Relaties",
    },
    FactType.EVENT: {
        "en": "📅 Events",
        "tr": "📅 Etkinlikler",
        "zh": "📅 事件",
        "ja": "📅 イベント",
        "hi": "📅 घटनाएं",
        "nl": "📅 Gebeurtenissen",
    },
    FactType.SOLUTION: {
        "en": "✅ Solutions",
        "tr": "✅ Çözümler",
        "zh": "✅ 解决方案",
        "ja": "✅ ソリューション",
        "hi": "✅ समाधान",
        "nl": "✅ Oplossingen",
    },
    FactType.CONTEXT: {
        "en": "📋 Context",
        "tr": "📋 Bağlam",
        "zh": "📋 背景",
        "ja": "📋 コンテキスト",
        "hi": "📋 संदर्भ",
        "nl": "📋 Context",
    },
    FactType.OTHER: {
        "en": "📌 Other Information",
        "tr": "📌 Diğer Bilgiler",
        "zh": "📌 其他信息",
        "ja": "📌 その他の情報",
        "hi": "📌 अन्य जानकारी",
        "nl": "📌 Overige Informatie",
    },
}

USER_INTROS = {
    "en": "About the user: ",
    "tr": "Kullanıcı hakkında: ",
    "zh": "关于用户：",
    "ja": "ユーザーについて：",
    "hi": "उपयोगकर्ता के बारे में: ",
    "nl": "Over de gebruiker: ",
}

SUBJECT_INTROS = {
    "en": "Regarding {subject}: ",
    "tr": "{subject} hakkında: ",
    "zh": "关于{subject}：",
    "ja": "{subject}について：",
    "hi": "{subject} के बारे में: ",
    "nl": "Betreffende {subject}: ",
}

GENERAL_INTROS = {
    "en": "Additional context: ",
    "tr": "Ek bağlam: ",
    "zh": "其他背景：",
    "ja": "追加のコンテキスト：",
    "hi": "अतिरिक्त संदर्भ: ",
    "nl": "Aanvullende context: ",
}


def _lang(language: str | None) -> str:
    """Primary subtag of a language tag: "en-US" -> "en"."""
    if not language:
        return DEFAULT_LANGUAGE
    return language.replace("_", "-").split("-")[0].lower()


def _localized(table: dict[str, str], language: str | None) -> str:
    return table.get(_lang(language), table[DEFAULT_LANGUAGE])


def importance_marker(importance: int) -> str:
    if importance >= 9:
        return "❗️"
    if importance >= 7:
        return "•"
    if importance >= 5:
        return "◦"
    return "·"


def importance_prefix(importance: int) -> str:
    if importance >= 9:
        return "[!] "
    if importance >= 7:
        return "[*] "
    if importance >= 5:
        return "[-] "
    return ""


def fact_type_label(fact_type: FactType, language: str | None = None) -> str:
    return _localized(FACT_TYPE_LABELS.get(fact_type, FACT_TYPE_LABELS[FactType.OTHER]), language)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class MemoryContextBuilder:
    def __init__(
        self,
        max_tokens: int = 500,
        format: str = "structured",
        include_metadata: bool = False,
        group_by_type: bool = True,
    ):
        if format not in ("structured", "narrative", "minimal"):
            raise ValueError(f"Unknown context format: {format}")
        self.max_tokens = max_tokens
        self.format = format
        self.include_metadata = include_metadata
        self.group_by_type = group_by_type

    @classmethod
    def from_config(cls, config: ContextConfig) -> MemoryContextBuilder:
        return cls(
            max_tokens=config.max_tokens,
            format=config.format,
            include_metadata=config.include_metadata,
            group_by_type=config.group_by_type,
        )

    def build_context(self, memories: Sequence[StoredMemory], language: str | None = None) -> str:
        """Render memories in the configured format; "" when there are none."""
        if not memories:
            return ""
        if self.format == "narrative":
            return self._narrative(memories, language)
        if self.format == "minimal":
            return "\n".join(f"{importance_prefix(m.importance)}{m.content}" for m in memories)
        return self._structured(memories, language)

    def _structured(self, memories: Sequence[StoredMemory], language: str | None) -> str:
        parts = [_localized(CONTEXT_HEADERS, language), ""]

        if self.group_by_type:
            grouped: dict[FactType, list[StoredMemory]] = {}
            for memory in memories:
                grouped.setdefault(memory.fact_type, []).append(memory)
            for fact_type, group in grouped.items():
                parts.append(f"{fact_type_label(fact_type, language)}:")
                parts.extend(self._format_memory(m) for m in sorted(group, key=lambda m: -m.importance))
                parts.append("")
        else:
            parts.extend(self._format_memory(m) for m in memories)

        return "\n".join(parts).strip()

    def _format_memory(self, memory: StoredMemory) -> str:
        line = f"{importance_marker(memory.importance)} {memory.content}"
        if not self.include_metadata:
            return line

        details = []
        if memory.confidence < 0.7:
            details.append(f"confidence: {round(memory.confidence * 100)}%")
        if memory.expires_at is not None:
            details.append(f"expires: {memory.expires_at.date().isoformat()}")
        if memory.subject and memory.subject != "user":
            details.append(f"about: {memory.subject}")
        if details:
            line += f" ({', '.join(details)})"
        return line

    def _narrative(self, memories: Sequence[StoredMemory], language: str | None) -> str:
        by_subject: dict[str, list[StoredMemory]] = {}
        for memory in memories:
            by_subject.setdefault(memory.subject or "unknown", []).append(memory)

        paragraphs = [_localized(CONTEXT_HEADERS, language)]
        for subject, group in by_subject.items():
            if subject == "user":
                intro = _localized(USER_INTROS, language)
            elif subject == "unknown":
                intro = _localized(GENERAL_INTROS, language)
            else:
                intro = _localized(SUBJECT_INTROS, language).format(subject=subject)
            facts = ". ".join(m.content.rstrip(".") for m in group)
            paragraphs.append(f"{intro}{facts}.")
        return "\n\n".join(paragraphs)

    def truncate_to_token_limit(self, context: str) -> str:
        """
        Cut context to roughly max_tokens.

        Keeps 95% of the proportional length and, when a sentence end or
        newline falls in the last 20% of that, cuts there.
        """
        estimated = estimate_tokens(context)
        if estimated <= self.max_tokens:
            return context

        target = math.floor(len(context) * (self.max_tokens / estimated) * 0.95)
        truncated = context[:target]
        cut = max(truncated.rfind("."), truncated.rfind("\n"))
        if cut > target * 0.8:
            truncated = truncated[: cut + 1]
        return truncated + TRUNCATION_MARKER

    def build_compact_context(
        self,
        memories: Sequence[StoredMemory],
        language: str | None = None,
        additional_context: str | None = None,
    ) -> str:
        context = self.build_context(memories, language)
        if additional_context:
            context = f"{context}\n\n{additional_context}" if context else additional_context
        if not context:
            return ""
        return self.truncate_to_token_limit(context)


__all__ = [
    "MemoryContextBuilder",
    "estimate_tokens",
    "fact_type_label",
    "importance_marker",
    "importance_prefix",
]
