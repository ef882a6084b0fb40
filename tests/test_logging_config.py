"""Tests for logging configuration module.

Verifies that logging configuration:
1. Filters out tokens and session identifiers (BLOCKED_FIELDS)
2. Normalizes high-cardinality fields (URLs to endpoints)
3. Produces valid JSON output
"""

from __future__ import annotations

import io
import json
import logging
import sys

import pytest

from nyxcord.logging_config import (
    BLOCKED_FIELDS,
    JsonFormatter,
    SimpleFormatter,
    _filter_log_record,
    _normalize_url,
    _sanitize_text,
    get_logger,
    setup_logging,
)

BOT_TOKEN = "MTIzNDU2Nzg5MDEyMzQ1Njc4.GaBcDe.abcdefghijklmnopqrstuvwxyz01234"


def make_record(msg: str, level: int = logging.INFO, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="nyxcord.test",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestBlockedFields:
    """Test that sensitive fields are properly blocked."""

    def test_blocked_fields_cover_credentials(self) -> None:
        assert "token" in BLOCKED_FIELDS
        assert "authorization" in BLOCKED_FIELDS
        assert "session_id" in BLOCKED_FIELDS

    def test_filter_removes_token(self) -> None:
        filtered = _filter_log_record({"token": BOT_TOKEN, "route": "/channels/:id"})
        assert "token" not in filtered
        assert filtered["route"] == "/channels/:id"

    def test_filter_removes_partial_matches(self) -> None:
        """Fields containing blocked words should be removed."""
        record = {
            "bot_token": "value",
            "Authorization": "Bot value",
            "resume_session_id": "value",
            "status": 200,
        }
        filtered = _filter_log_record(record)
        assert filtered == {"status": 200}

    def test_audit_log_reason_removed(self) -> None:
        filtered = _filter_log_record({"X-Audit-Log-Reason": "banned for spam"})
        assert filtered == {}


class TestSanitizeText:
    """Test free-form text sanitization."""

    def test_bot_token_redacted(self) -> None:
        result = _sanitize_text(f"Identify failed for {BOT_TOKEN}")
        assert result == "Identify failed for [BOT_TOKEN]"

    def test_authorization_redacted(self) -> None:
        result = _sanitize_text("header authorization: Bot abcdef")
        assert result == "header [AUTH]"

    def test_token_assignment_redacted(self) -> None:
        assert _sanitize_text("token=abc.def-123 rejected") == "[TOKEN] rejected"

    def test_webhook_url_reduced(self) -> None:
        text = "POST https://discord.com/api/v10/webhooks/123/abcDEF-tok?wait=true failed"
        result = _sanitize_text(text)
        assert result == "POST /api/v10/webhooks/123/[WEBHOOK_TOKEN] failed"

    def test_gateway_url_query_dropped(self) -> None:
        result = _sanitize_text("connecting to wss://gateway.discord.gg/?v=10&encoding=json")
        assert result == "connecting to [URL]"

    def test_empty_string_unchanged(self) -> None:
        assert _sanitize_text("") == ""

    def test_safe_text_unchanged(self) -> None:
        text = "[Gateway:Heartbeat] High latency detected: 250ms"
        assert _sanitize_text(text) == text


class TestHighCardinalityFields:
    """Test that high-cardinality fields are normalized."""

    def test_url_normalized_to_endpoint(self) -> None:
        filtered = _filter_log_record(
            {"url": "https://discord.com/api/v10/channels/1/messages?limit=50"}
        )
        assert "url" not in filtered
        assert filtered["endpoint"] == "/api/v10/channels/1/messages"

    def test_normalize_url_redacts_webhook(self) -> None:
        assert _normalize_url("https://discord.com/api/webhooks/9/secret") == (
            "/api/webhooks/9/[WEBHOOK_TOKEN]"
        )

    def test_normalize_url_root(self) -> None:
        assert _normalize_url("wss://gateway.discord.gg") == "/"

    def test_payload_and_body_redacted(self) -> None:
        filtered = _filter_log_record({"payload": {"op": 2}, "body": "{}", "data": [1]})
        assert filtered == {"payload": "[PAYLOAD]", "body": "[BODY]", "data": "[DATA]"}


class TestFilterLogRecord:
    """Test the record filter."""

    def test_list_capped_at_10(self) -> None:
        filtered = _filter_log_record({"ids": list(range(11))})
        assert filtered["ids"] == "[list:11 items]"

    def test_small_list_preserved(self) -> None:
        filtered = _filter_log_record({"codes": (4000, 4009)})
        assert filtered["codes"] == [4000, 4009]

    def test_nested_dict_filtered(self) -> None:
        record = {"shard": {"id": 0, "token": "x", "session_id": "abc"}}
        assert _filter_log_record(record) == {"shard": {"id": 0}}

    def test_depth_limit(self) -> None:
        record = {"a": {"b": {"c": {"d": {"e": {"f": 1}}}}}}
        filtered = _filter_log_record(record)
        assert filtered["a"]["b"]["c"]["d"] == {"_truncated": "max depth exceeded"}


class TestJsonFormatter:
    """Test the JSON log formatter."""

    def test_contains_required_fields(self) -> None:
        parsed = json.loads(JsonFormatter().format(make_record("hello world")))
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "nyxcord.test"
        assert parsed["msg"] == "hello world"
        assert "ts" in parsed
        assert "file" not in parsed

    def test_warning_includes_location(self) -> None:
        parsed = json.loads(JsonFormatter().format(make_record("slow", logging.WARNING)))
        assert parsed["file"] == "test.py"
        assert parsed["line"] == 10

    def test_extra_fields_filtered(self) -> None:
        record = make_record("Request finished", status=429, token=BOT_TOKEN, retry_after_ms=1500)
        output = JsonFormatter().format(record)

        parsed = json.loads(output)
        assert parsed["status"] == 429
        assert parsed["retry_after_ms"] == 1500
        assert "token" not in parsed
        assert BOT_TOKEN not in output

    def test_exception_sanitized(self) -> None:
        try:
            raise RuntimeError(f"rejected {BOT_TOKEN}")
        except RuntimeError:
            record = make_record("boom", logging.ERROR)
            record.exc_info = sys.exc_info()

        output = JsonFormatter().format(record)
        assert BOT_TOKEN not in output
        assert "[BOT_TOKEN]" in json.loads(output)["exc"]


class TestSimpleFormatter:
    """Test the human-readable formatter."""

    def test_basic_format(self) -> None:
        output = SimpleFormatter().format(make_record("connected"))
        assert output == "INFO     nyxcord.test: connected"

    def test_extra_fields_appended(self) -> None:
        output = SimpleFormatter().format(make_record("closed", code=4000, session_id="abc"))
        assert output == "INFO     nyxcord.test: closed | code=4000"


class TestSetupLogging:
    """Test the setup_logging function."""

    def test_setup_logging_json(self) -> None:
        stream = io.StringIO()
        setup_logging(json_format=True, stream=stream)

        get_logger("test_json").info("test message", extra={"shard_id": 0})

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["msg"] == "test message"
        assert parsed["shard_id"] == 0

    def test_setup_logging_simple(self) -> None:
        stream = io.StringIO()
        setup_logging(json_format=False, stream=stream)

        get_logger("test_simple").info("simple test")

        output = stream.getvalue()
        assert "simple test" in output
        with pytest.raises(json.JSONDecodeError):
            json.loads(output.strip())

    def test_setup_logging_level(self) -> None:
        stream = io.StringIO()
        setup_logging(level=logging.WARNING, json_format=False, stream=stream)

        logger = get_logger("test_level")
        logger.info("info message")
        logger.warning("warning message")

        output = stream.getvalue()
        assert "info message" not in output
        assert "warning message" in output

    def test_no_token_in_output(self) -> None:
        """Tokens never reach the stream, whether in msg or extra."""
        stream = io.StringIO()
        setup_logging(json_format=True, stream=stream)

        get_logger("security_test").info(
            f"Identify with {BOT_TOKEN}",
            extra={"authorization": f"Bot {BOT_TOKEN}", "url": "https://discord.com/api/v10/users/@me"},
        )

        output = stream.getvalue()
        assert BOT_TOKEN not in output
        assert json.loads(output.strip())["endpoint"] == "/api/v10/users/@me"
