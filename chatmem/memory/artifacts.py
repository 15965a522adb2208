"""
Artifact Detector: Deterministic High-Value Token Recognition

Finds concrete, language-independent tokens in a message: emails, URLs, UUIDs,
IP addresses, dates, money amounts, JSON blocks, file paths, IBANs and phone
numbers. A turn that carries any of these is worth remembering regardless of
what a classifier thinks, so the store uses detection to bypass the gate.

Detection is pure and total: every recognizer is a compiled regex (plus a small
scanner for JSON), Unicode-aware so non-Latin local parts and domains work, and
a failure in one recognizer never hides the others.

Usage:
    from chatmem.memory.artifacts import detect, most_valuable

    result = detect("Ping me at jane@example.com about ticket 550e8400-e29b-41d4-a716-446655440000")
    if result.has_artifacts:
        best = most_valuable(result.by_type)
"""

from __future__ import annotations

import ipaddress
import json
import re
import sys
import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from chatmem.logging_config import get_logger

logger = get_logger(__name__)


class ArtifactType(StrEnum):
    EMAIL = "email"
    URL = "url"
    UUID = "uuid"
    IPV4 = "ipv4"
    IPV6 = "ipv6"
    DATE = "date"
    MONEY = "money"
    JSON = "json"
    FILE_PATH = "file_path"
    IBAN = "iban"
    PHONE = "phone"


# Priority used by most_valuable(): earlier types identify things more precisely
ARTIFACT_PRIORITY: tuple[ArtifactType, ...] = (
    ArtifactType.EMAIL,
    ArtifactType.UUID,
    ArtifactType.URL,
    ArtifactType.IBAN,
    ArtifactType.PHONE,
    ArtifactType.IPV4,
    ArtifactType.IPV6,
    ArtifactType.DATE,
    ArtifactType.MONEY,
    ArtifactType.JSON,
    ArtifactType.FILE_PATH,
)

PII_TYPES = frozenset({ArtifactType.EMAIL, ArtifactType.PHONE})

# Fields of a structured tool result that usually hold identifiers
TOOL_OUTPUT_FIELDS = (
    "id", "uuid", "url", "email", "uri", "path", "file",
    "ticket", "event_id", "channel", "host", "address",
)


@dataclass(frozen=True)
class ArtifactSpan:
    """One detected token. Transient: never persisted."""

    type: ArtifactType
    raw_value: str
    normalized_value: str
    confidence: float
    start: int = 0
    end: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "raw_value": self.raw_value,
            "normalized_value": self.normalized_value,
            "confidence": self.confidence,
            "start": self.start,
            "end": self.end,
        }


@dataclass
class ArtifactDetectionResult:
    has_artifacts: bool = False
    by_type: dict[ArtifactType, list[ArtifactSpan]] = field(default_factory=dict)
    all_raw_values: set[str] = field(default_factory=set)

    @property
    def types(self) -> list[ArtifactType]:
        return list(self.by_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_artifacts": self.has_artifacts,
            "by_type": {t.value: [s.to_dict() for s in spans] for t, spans in self.by_type.items()},
            "all_raw_values": sorted(self.all_raw_values),
        }


# =============================================================================
# Recognizer Patterns
# =============================================================================

# Every Unicode currency symbol in the BMP (category Sc): $, €, £, ¥, ₺, ₹, ₽, ...
_CURRENCY_SYMBOLS = "".join(
    chr(cp) for cp in range(min(sys.maxunicode, 0xFFFF) + 1) if unicodedata.category(chr(cp)) == "Sc"
)
_SYM = f"[{re.escape(_CURRENCY_SYMBOLS)}]"
_CURRENCY_CODES = ("USD", "EUR", "GBP", "JPY", "CNY", "TRY", "INR")

# Domain label: letters/digits in any script, inner hyphens allowed
_LABEL = r"[^\W_](?:[\w-]*[^\W_])?"
_TLD = r"[^\W\d_]{2,}"

_EMAIL = re.compile(rf"(?<![\w.+%-])[\w.+%-]+@(?:{_LABEL}\.)+{_TLD}(?![\w-])")

_SCHEME_URL = re.compile(r"\b(?:https?|ftp)://[^\s<>\"'`]+", re.IGNORECASE)

_BARE_URL = re.compile(
    rf"(?<![\w@./:\\-])(?:www\.)?(?:{_LABEL}\.)+{_TLD}(?::\d{{2,5}})?(?![\w@-])(?:/[^\s<>\"'`]*)?"
)

_UUID_V4 = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)

_OCTET = r"(?:25[0-5]|2[0-4]\d|[01]?\d\d?)"
_IPV4 = re.compile(rf"(?<![\d.]){_OCTET}(?:\.{_OCTET}){{3}}(?!\.?\d)")

_HEX = r"[0-9a-fA-F]{1,4}"
_IPV6_FULL = re.compile(rf"(?<![:\w])(?:{_HEX}:){{7}}{_HEX}(?![:\w])")
_IPV6_COMPRESSED = re.compile(rf"(?<![:\w])(?:{_HEX}(?::{_HEX})*)?::(?:{_HEX}(?::{_HEX})*)?(?![:\w])")

_ISO_DATE = re.compile(
    r"\b\d{4}-(?:0[1-9]|1[0-2])-(?:0[1-9]|[12]\d|3[01])"
    r"(?:T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?(?![\w:])"
)
_COMMON_DATE = re.compile(
    r"(?<![\w./-])(?:\d{1,2}[/.-]\d{1,2}[/.-](?:\d{4}|\d{2})|\d{4}[/.-]\d{1,2}[/.-]\d{1,2})(?![\w/-]|\.\d)"
)

_AMOUNT = r"\d{1,3}(?:[.,]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?"
_MONEY = re.compile(
    rf"(?P<sym_pre>{_SYM})[ \u00a0]?(?P<amt_pre>{_AMOUNT})(?![\d.,]?\d)"
    rf"|(?<![\w.,])(?P<amt_post>{_AMOUNT})[ \u00a0]?(?P<sym_post>{_SYM})"
    rf"|\b(?P<code>{'|'.join(_CURRENCY_CODES)})[ \u00a0]?(?P<amt_code>{_AMOUNT})(?![\d.,]?\d)"
)

_POSIX_PATH = re.compile(r"(?<![\w:/.~\\])(?:~|\.{1,2})?(?:/[\w.-]+)+/?")
_WINDOWS_PATH = re.compile(r"\b[A-Za-z]:\\(?:[^\\/:*?\"<>|\r\n]+\\)*[^\\/:*?\"<>|\s]*")

_IBAN = re.compile(
    r"\b[A-Z]{2}\d{2}(?:[A-Z0-9]{4,30}|(?: [A-Z0-9]{4}){2,7}(?: [A-Z0-9]{1,4})?)\b"
)

_PHONE = re.compile(r"(?<![\w+])(?:\+\d{1,3}[\s-]?)?\(?\d{1,4}\)?[\s-]?\d{1,4}[\s-]?\d{1,4}[\s-]?\d{0,4}\b")

_URL_TRAILING = ".,;:!?'\")]}>"


# =============================================================================
# Recognizers
# =============================================================================


def _trim_url(url: str) -> str:
    """Drop sentence punctuation glued to the end of a URL, keeping balanced parens."""
    while url and url[-1] in _URL_TRAILING:
        if url[-1] == ")" and url.count("(") >= url.count(")"):
            break
        url = url[:-1]
    return url


def _overlaps(start: int, end: int, spans: list[ArtifactSpan]) -> bool:
    return any(start < s.end and s.start < end for s in spans)


def _within(start: int, end: int, spans: list[ArtifactSpan]) -> bool:
    return any(s.start <= start and end <= s.end for s in spans)


def detect_emails(text: str) -> list[ArtifactSpan]:
    return [
        ArtifactSpan(ArtifactType.EMAIL, m.group(), m.group().lower(), 0.95, m.start(), m.end())
        for m in _EMAIL.finditer(text)
    ]


def detect_urls(text: str, emails: list[ArtifactSpan] | None = None) -> list[ArtifactSpan]:
    spans: list[ArtifactSpan] = []
    for m in _SCHEME_URL.finditer(text):
        url = _trim_url(m.group())
        if "://" in url and len(url.split("://", 1)[1]) > 0:
            spans.append(ArtifactSpan(ArtifactType.URL, url, url, 0.95, m.start(), m.start() + len(url)))

    taken = spans + list(emails or [])
    for m in _BARE_URL.finditer(text):
        url = _trim_url(m.group())
        end = m.start() + len(url)
        if _overlaps(m.start(), end, taken):
            continue
        spans.append(ArtifactSpan(ArtifactType.URL, url, f"https://{url}", 0.8, m.start(), end))
    return spans


def detect_uuids(text: str) -> list[ArtifactSpan]:
    return [
        ArtifactSpan(ArtifactType.UUID, m.group(), m.group().lower(), 1.0, m.start(), m.end())
        for m in _UUID_V4.finditer(text)
    ]


def detect_ipv4(text: str) -> list[ArtifactSpan]:
    return [
        ArtifactSpan(ArtifactType.IPV4, m.group(), m.group(), 0.95, m.start(), m.end())
        for m in _IPV4.finditer(text)
    ]


def detect_ipv6(text: str) -> list[ArtifactSpan]:
    spans: list[ArtifactSpan] = []
    for pattern in (_IPV6_FULL, _IPV6_COMPRESSED):
        for m in pattern.finditer(text):
            raw = m.group()
            if not any(c.isalnum() for c in raw) or _overlaps(m.start(), m.end(), spans):
                continue
            try:
                ipaddress.IPv6Address(raw)
            except ValueError:
                continue
            spans.append(ArtifactSpan(ArtifactType.IPV6, raw, raw.lower(), 0.9, m.start(), m.end()))
    return spans


def detect_dates(text: str) -> list[ArtifactSpan]:
    spans = [
        ArtifactSpan(ArtifactType.DATE, m.group(), m.group(), 1.0, m.start(), m.end())
        for m in _ISO_DATE.finditer(text)
    ]
    iso = list(spans)
    for m in _COMMON_DATE.finditer(text):
        if not _overlaps(m.start(), m.end(), iso):
            spans.append(ArtifactSpan(ArtifactType.DATE, m.group(), m.group(), 0.8, m.start(), m.end()))
    return spans


def normalize_amount(amount: str) -> str:
    """
    Canonical decimal form of an amount.

    The last separator is the decimal mark when 1-2 digits follow it; every
    other separator is a thousands separator. "1.234,56" -> "1234.56",
    "1,234" -> "1234", "12,5" -> "12.5".
    """
    separators = [i for i, ch in enumerate(amount) if ch in ".,"]
    if not separators:
        return amount
    last = separators[-1]
    if 1 <= len(amount) - last - 1 <= 2:
        integer = re.sub(r"[.,]", "", amount[:last])
        return f"{integer}.{amount[last + 1:]}"
    return re.sub(r"[.,]", "", amount)


def detect_money(text: str) -> list[ArtifactSpan]:
    spans: list[ArtifactSpan] = []
    for m in _MONEY.finditer(text):
        raw = m.group()
        amount = m.group("amt_pre") or m.group("amt_post") or m.group("amt_code")
        normalized = re.sub(r"\s+", " ", raw.replace(amount, normalize_amount(amount), 1)).strip()
        spans.append(ArtifactSpan(ArtifactType.MONEY, raw, normalized, 0.85, m.start(), m.end()))
    return spans


# Total characters handed to json.loads per scan, as a multiple of the text length
JSON_PARSE_BUDGET = 4


def _balanced_spans(text: str) -> list[tuple[int, int]]:
    """
    (start, end) of every balanced {...} or [...] region, in one pass.

    Quotes only count inside brackets. A raw newline inside a string, or a
    closer that does not match, abandons every open bracket.
    """
    closers = {"{": "}", "[": "]"}
    spans: list[tuple[int, int]] = []
    stack: list[tuple[int, str]] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                in_string = False
                stack.clear()
        elif ch in closers:
            stack.append((i, closers[ch]))
        elif not stack:
            continue
        elif ch == '"':
            in_string = True
        elif ch in "}]":
            start, expected = stack.pop()
            if ch == expected:
                spans.append((start, i + 1))
            else:
                stack.clear()
    return spans


def _is_meaningful_json(value: Any) -> bool:
    # Footnote markers like "[1]" or "[2, 3]" parse as JSON but identify nothing
    if isinstance(value, dict):
        return True
    if isinstance(value, list):
        return bool(value) and not all(isinstance(v, (int, float)) for v in value)
    return False


def detect_json(text: str) -> list[ArtifactSpan]:
    """
    Outermost balanced regions that parse as a JSON object or non-numeric list.

    Runs in linear time: brackets are matched in a single pass, and the
    characters parsed are capped at JSON_PARSE_BUDGET times the text length.
    """
    spans: list[ArtifactSpan] = []
    budget = JSON_PARSE_BUDGET * len(text)
    covered_until = 0
    for start, end in sorted(_balanced_spans(text), key=lambda s: (s[0], -s[1])):
        if start < covered_until or end - start > budget:
            continue
        budget -= end - start
        raw = text[start:end]
        try:
            parsed = json.loads(raw)
        except (ValueError, RecursionError):
            continue
        if _is_meaningful_json(parsed):
            normalized = json.dumps(parsed, separators=(",", ":"), ensure_ascii=False)
            spans.append(ArtifactSpan(ArtifactType.JSON, raw, normalized, 1.0, start, end))
            covered_until = end
    return spans


def detect_file_paths(text: str) -> list[ArtifactSpan]:
    spans: list[ArtifactSpan] = []
    for pattern in (_POSIX_PATH, _WINDOWS_PATH):
        for m in pattern.finditer(text):
            path = m.group().rstrip(".,;:!?")
            if len(path) > 5 and ("/" in path or "\\" in path):
                spans.append(
                    ArtifactSpan(ArtifactType.FILE_PATH, path, path, 0.7, m.start(), m.start() + len(path))
                )
    return spans


def detect_ibans(text: str) -> list[ArtifactSpan]:
    return [
        ArtifactSpan(ArtifactType.IBAN, m.group(), re.sub(r"\s+", "", m.group()), 0.85, m.start(), m.end())
        for m in _IBAN.finditer(text)
    ]


def detect_phones(text: str, exclude: list[ArtifactSpan] | None = None) -> list[ArtifactSpan]:
    """
    Phone numbers in international or local formatting.

    A match needs 7-15 digits and at least one of '+', '(', '-' or a space.
    Eight-digit runs starting with 19 or 20 read as compact dates, and a match
    that sits inside an already detected date, amount, address or identifier
    belongs to that artifact instead.
    """
    exclude = exclude or []
    spans: list[ArtifactSpan] = []
    for m in _PHONE.finditer(text):
        raw = m.group().rstrip()
        start, end = m.start(), m.start() + len(raw)
        digits = re.sub(r"\D", "", raw)
        if not 7 <= len(digits) <= 15:
            continue
        if len(digits) == 8 and digits.startswith(("19", "20")):
            continue
        if not any(sep in raw for sep in ("+", "(", "-", " ")):
            continue
        if _within(start, end, exclude):
            continue
        spans.append(ArtifactSpan(ArtifactType.PHONE, raw, digits, 0.7, start, end))
    return spans


# =============================================================================
# Public API
# =============================================================================


def _dedupe(spans: list[ArtifactSpan]) -> list[ArtifactSpan]:
    seen: set[str] = set()
    unique = []
    for span in spans:
        if span.normalized_value in seen:
            continue
        seen.add(span.normalized_value)
        unique.append(span)
    return unique


def detect(text: Any) -> ArtifactDetectionResult:
    """
    Run every recognizer over text and union the results.

    Never raises: non-string or empty input yields an empty result, and a
    recognizer that fails unexpectedly is logged and skipped.
    """
    result = ArtifactDetectionResult()
    if not isinstance(text, str) or not text.strip():
        return result

    found: dict[ArtifactType, list[ArtifactSpan]] = {}

    def run(artifact_type: ArtifactType, fn, *args) -> list[ArtifactSpan]:
        try:
            spans = fn(text, *args)
        except Exception as e:
            logger.warning("artifact_recognizer_failed", artifact_type=artifact_type.value, error=str(e))
            spans = []
        found[artifact_type] = spans
        return spans

    emails = run(ArtifactType.EMAIL, detect_emails)
    run(ArtifactType.URL, detect_urls, emails)
    uuids = run(ArtifactType.UUID, detect_uuids)
    ipv4 = run(ArtifactType.IPV4, detect_ipv4)
    ipv6 = run(ArtifactType.IPV6, detect_ipv6)
    dates = run(ArtifactType.DATE, detect_dates)
    money = run(ArtifactType.MONEY, detect_money)
    run(ArtifactType.JSON, detect_json)
    run(ArtifactType.FILE_PATH, detect_file_paths)
    ibans = run(ArtifactType.IBAN, detect_ibans)
    run(ArtifactType.PHONE, detect_phones, dates + money + ipv4 + ipv6 + uuids + ibans)

    for artifact_type in ArtifactType:
        spans = _dedupe(found.get(artifact_type, []))
        if spans:
            result.by_type[artifact_type] = spans
            result.all_raw_values.update(s.raw_value for s in spans)

    result.has_artifacts = bool(result.by_type)
    return result


def detect_tool_output(value: Any) -> ArtifactDetectionResult:
    """
    Detect artifacts in a tool result.

    Strings are scanned directly. Mappings contribute their identifier-like
    fields (TOOL_OUTPUT_FIELDS) plus the whole value serialized as JSON, so
    nested identifiers are still found. Anything else is scanned via str().
    """
    if value is None:
        return ArtifactDetectionResult()
    if isinstance(value, str):
        return detect(value)

    if isinstance(value, Mapping):
        parts = [str(value[k]) for k in TOOL_OUTPUT_FIELDS if value.get(k) not in (None, "")]
        try:
            parts.append(json.dumps(value, ensure_ascii=False, default=str))
        except (TypeError, ValueError):
            parts.append(str(value))
        return detect("\n".join(parts))

    if isinstance(value, (list, tuple)):
        try:
            return detect(json.dumps(value, ensure_ascii=False, default=str))
        except (TypeError, ValueError):
            pass
    return detect(str(value))


def is_pii(by_type: Mapping[ArtifactType, list[ArtifactSpan]]) -> bool:
    """True when an email or phone number was detected."""
    return any(by_type.get(t) for t in PII_TYPES)


def most_valuable(by_type: Mapping[ArtifactType, list[ArtifactSpan]]) -> ArtifactSpan | None:
    """
    Highest-priority artifact: the first present type in ARTIFACT_PRIORITY,
    then the highest-confidence span of that type (first one on ties).
    """
    for artifact_type in ARTIFACT_PRIORITY:
        spans = by_type.get(artifact_type)
        if spans:
            best = spans[0]
            for span in spans[1:]:
                if span.confidence > best.confidence:
                    best = span
            return best
    return None
