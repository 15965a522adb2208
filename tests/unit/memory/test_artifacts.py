"""
Unit tests for the artifact detector.

Covers each recognizer, the phone/date disambiguation, tool output handling,
and the priority helpers.
"""

import time

import pytest

from chatmem.memory.artifacts import (
    ArtifactSpan,
    ArtifactType,
    detect,
    detect_json,
    detect_money,
    detect_phones,
    detect_tool_output,
    is_pii,
    most_valuable,
    normalize_amount,
)


# ============================================================================
# detect()
# ============================================================================


class TestDetect:
    """Tests for the top-level detect() union."""

    @pytest.mark.parametrize("text", ["ok thanks", "Hello, how are you?", "", "   "])
    def test_small_talk_has_no_artifacts(self, text):
        result = detect(text)

        assert result.has_artifacts is False
        assert result.by_type == {}
        assert result.all_raw_values == set()

    @pytest.mark.parametrize("value", [None, 42, ["a@b.co"]])
    def test_non_string_input_is_empty(self, value):
        assert detect(value).has_artifacts is False

    def test_email_only(self):
        result = detect("Contact me at Jane.Doe@Example.com please")

        assert result.has_artifacts is True
        assert list(result.by_type) == [ArtifactType.EMAIL]
        span = result.by_type[ArtifactType.EMAIL][0]
        assert span.raw_value == "Jane.Doe@Example.com"
        assert span.normalized_value == "jane.doe@example.com"
        assert "Jane.Doe@Example.com" in result.all_raw_values

    def test_unicode_email(self):
        """Non-Latin local parts and domains are recognized."""
        result = detect("e-postam ayşe@örnek.com.tr olarak kayıtlı")

        emails = result.by_type[ArtifactType.EMAIL]
        assert emails[0].normalized_value == "ayşe@örnek.com.tr"

    def test_repeated_value_is_deduplicated(self):
        result = detect("a@example.com and again A@EXAMPLE.COM")

        assert len(result.by_type[ArtifactType.EMAIL]) == 1

    def test_is_deterministic(self):
        text = "Ticket 550e8400-e29b-41d4-a716-446655440000 at https://example.com/t/1 on 2024-03-15"

        assert detect(text).to_dict() == detect(text).to_dict()

    def test_to_dict_is_json_friendly(self):
        data = detect("mail jane@example.com").to_dict()

        assert data["has_artifacts"] is True
        assert data["by_type"]["email"][0]["normalized_value"] == "jane@example.com"
        assert data["all_raw_values"] == ["jane@example.com"]


# ============================================================================
# Individual recognizers
# ============================================================================


class TestRecognizers:
    """Tests for each artifact type via detect()."""

    def test_scheme_url_trims_trailing_punctuation(self):
        result = detect("See https://example.com/docs.")

        urls = result.by_type[ArtifactType.URL]
        assert [u.raw_value for u in urls] == ["https://example.com/docs"]
        assert urls[0].confidence == 0.95

    def test_bare_url_gets_scheme(self):
        result = detect("visit www.example.org today")

        url = result.by_type[ArtifactType.URL][0]
        assert url.raw_value == "www.example.org"
        assert url.normalized_value == "https://www.example.org"
        assert url.confidence == 0.8

    def test_uuid_v4(self):
        result = detect("Your order id is 550E8400-E29B-41D4-A716-446655440000")

        uuid_span = result.by_type[ArtifactType.UUID][0]
        assert uuid_span.normalized_value == "550e8400-e29b-41d4-a716-446655440000"
        assert ArtifactType.PHONE not in result.by_type

    def test_ipv4(self):
        result = detect("server at 192.168.1.10 is down")

        assert result.by_type[ArtifactType.IPV4][0].raw_value == "192.168.1.10"

    def test_invalid_ipv4_octets_are_ignored(self):
        assert ArtifactType.IPV4 not in detect("version 999.1.1.1").by_type

    def test_ipv6_compressed(self):
        result = detect("bind to 2001:DB8::1 instead")

        assert result.by_type[ArtifactType.IPV6][0].normalized_value == "2001:db8::1"

    def test_iso_date(self):
        result = detect("Deadline is 2024-03-15")

        assert result.by_type[ArtifactType.DATE][0].raw_value == "2024-03-15"
        assert ArtifactType.PHONE not in result.by_type

    def test_money_prefix_symbol(self):
        result = detect("It costs $1,234.56 in total")

        money = result.by_type[ArtifactType.MONEY][0]
        assert money.raw_value == "$1,234.56"
        assert money.normalized_value == "$1234.56"

    def test_money_currency_code(self):
        result = detect("Budget: EUR 50 per person")

        assert result.by_type[ArtifactType.MONEY][0].raw_value == "EUR 50"

    def test_money_lira_symbol(self):
        assert detect_money("Fiyatı ₺250")[0].normalized_value == "₺250"

    def test_json_object(self):
        result = detect('Result: {"id": 42, "status": "ok"}')

        assert result.by_type[ArtifactType.JSON][0].normalized_value == '{"id":42,"status":"ok"}'

    def test_numeric_list_is_not_json(self):
        assert detect_json("as shown in [1] and [2, 3]") == []

    def test_json_after_unclosed_bracket(self):
        spans = detect_json('see [draft here {"id": 7, "ok": true}')

        assert [s.normalized_value for s in spans] == ['{"id":7,"ok":true}']

    def test_nested_json_reports_outermost(self):
        [span] = detect_json('payload {"user": {"id": 1}, "tags": ["a"]} end')

        assert span.raw_value == '{"user": {"id": 1}, "tags": ["a"]}'

    def test_long_unbalanced_input_is_fast(self):
        start = time.perf_counter()
        result = detect("{ " * 6000 + "x")

        assert time.perf_counter() - start < 1.0
        assert ArtifactType.JSON not in result.by_type

    def test_deeply_nested_input_does_not_raise(self):
        text = "[1," * 3000 + "x" + "]" * 3000

        assert detect_json(text) == []
        assert isinstance(detect_json("[" * 50000 + "]" * 50000), list)

    def test_posix_path(self):
        result = detect("Saved to /var/log/app.log")

        assert result.by_type[ArtifactType.FILE_PATH][0].raw_value == "/var/log/app.log"

    def test_windows_path(self):
        result = detect(r"Open C:\Users\ada\report.docx")

        assert result.by_type[ArtifactType.FILE_PATH][0].raw_value == r"C:\Users\ada\report.docx"

    def test_spaced_iban(self):
        result = detect("IBAN: DE89 3704 0044 0532 0130 00")

        iban = result.by_type[ArtifactType.IBAN][0]
        assert iban.normalized_value == "DE89370400440532013000"
        assert ArtifactType.PHONE not in result.by_type

    def test_compact_iban(self):
        result = detect("pay to GB82WEST12345698765432")

        assert result.by_type[ArtifactType.IBAN][0].raw_value == "GB82WEST12345698765432"


# ============================================================================
# Phones
# ============================================================================


class TestPhones:
    """Tests for phone detection and its disambiguation rules."""

    def test_international_number(self):
        spans = detect_phones("Call me at +1 (555) 123-4567")

        assert spans[0].raw_value == "+1 (555) 123-4567"
        assert spans[0].normalized_value == "15551234567"

    def test_local_spaced_number(self):
        spans = detect_phones("Numaram 0532 123 45 67")

        assert spans[0].normalized_value == "05321234567"

    def test_too_few_digits(self):
        assert detect_phones("room 12-34") == []

    def test_compact_date_is_not_a_phone(self):
        assert detect_phones("born 1990 0101") == []

    def test_unseparated_digits_are_not_a_phone(self):
        assert detect_phones("order 5551234567") == []

    def test_span_inside_excluded_artifact(self):
        date = ArtifactSpan(ArtifactType.DATE, "x", "x", 1.0, 0, 40)

        assert detect_phones("+1 (555) 123-4567", exclude=[date]) == []


# ============================================================================
# Tool output & helpers
# ============================================================================


class TestToolOutput:
    """Tests for detect_tool_output()."""

    def test_mapping_fields_are_scanned(self):
        result = detect_tool_output({"id": "evt_1", "url": "https://cal.example.com/e/1", "status": "created"})

        assert result.has_artifacts is True
        assert "https://cal.example.com/e/1" in result.all_raw_values

    def test_nested_identifiers_are_found(self):
        result = detect_tool_output({"result": {"owner": {"email": "ops@example.com"}}})

        assert ArtifactType.EMAIL in result.by_type

    def test_none_is_empty(self):
        assert detect_tool_output(None).has_artifacts is False

    def test_string_is_scanned_directly(self):
        assert detect_tool_output("created 550e8400-e29b-41d4-a716-446655440000").has_artifacts is True


class TestHelpers:
    """Tests for normalize_amount, is_pii and most_valuable."""

    @pytest.mark.parametrize(
        "amount,expected",
        [("1.234,56", "1234.56"), ("1,234", "1234"), ("12,5", "12.5"), ("99", "99")],
    )
    def test_normalize_amount(self, amount, expected):
        assert normalize_amount(amount) == expected

    def test_is_pii(self):
        assert is_pii(detect("write to jane@example.com").by_type) is True
        assert is_pii(detect("see https://example.com").by_type) is False

    def test_most_valuable_prefers_email(self):
        result = detect("https://example.com or jane@example.com")

        assert most_valuable(result.by_type).type == ArtifactType.EMAIL

    def test_most_valuable_ipv6(self):
        result = detect("bind to 2001:DB8::1 instead")

        assert most_valuable(result.by_type).type == ArtifactType.IPV6

    def test_most_valuable_empty(self):
        assert most_valuable({}) is None
