"""Tests for observability utilities."""

import json
import logging

from sindiboleto.observability.correlation import correlation_scope, get_correlation_id
from sindiboleto.observability.logging import JsonFormatter
from sindiboleto.observability.redaction import (
    hash_identifier,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_phone_number(self):
        result = redact_string("Call me at +55 11 99999-8888")
        assert "99999" not in result
        assert "[REDACTED]" in result

    def test_redact_email(self):
        result = redact_string("Email: financeiro@padaria.com.br")
        assert "padaria" not in result
        assert "[REDACTED]" in result

    def test_redact_cnpj_formatted_and_digits(self):
        result = redact_string("CNPJ 12.345.678/0001-99 ou 12345678000199")
        assert "345" not in result
        assert result.count("[REDACTED]") == 2

    def test_plain_text_untouched(self):
        assert redact_string("competencia 08/2025") == "competencia 08/2025"

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"cnpj": "12345678000199", "name": "Padaria"})
        assert "Padaria" not in result
        assert "cnpj" in result

    def test_redact_value_list_only_len(self):
        result = redact_value(["a", "b", "c"])
        assert "len=3" in result

    def test_safe_log_context(self):
        ctx = safe_log_context(phone="+5511999998888", count=42, ok=True, missing=None)
        assert "[REDACTED]" in ctx["phone"]
        assert ctx == {**ctx, "count": "42", "ok": "true", "missing": "null"}


class TestHashIdentifier:
    def test_stable_and_short(self):
        assert hash_identifier("5511999990000") == hash_identifier("5511999990000")
        assert len(hash_identifier("5511999990000")) == 12

    def test_does_not_leak_input(self):
        assert "99999" not in hash_identifier("5511999990000")

    def test_differs_per_input(self):
        assert hash_identifier("a") != hash_identifier("b")


class TestJsonFormatter:
    def make_record(self, **extra):
        record = logging.LogRecord("sindiboleto.test", logging.INFO, __file__, 1, "turn handled", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        payload = json.loads(JsonFormatter().format(self.make_record()))

        assert payload["level"] == "INFO"
        assert payload["service"] == "sindiboleto"
        assert payload["message"] == "turn handled"
        assert "correlationId" not in payload

    def test_includes_correlation_and_extra_fields(self):
        with correlation_scope("cid-123"):
            record = self.make_record(extra_fields=safe_log_context(state="WAITING_CNPJ"))
            payload = json.loads(JsonFormatter().format(record))

        assert payload["correlationId"] == "cid-123"
        assert payload["state"] == "WAITING_CNPJ"


class TestCorrelationScope:
    def test_generates_and_resets(self):
        assert get_correlation_id() == ""
        with correlation_scope() as cid:
            assert cid
            assert get_correlation_id() == cid
        assert get_correlation_id() == ""

    def test_nested_scopes_restore_outer(self):
        with correlation_scope("outer"):
            with correlation_scope("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
