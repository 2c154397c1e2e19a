"""Tests for log redaction and correlation ids."""

from taskkeeper.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    redact_email,
    set_correlation_id,
)


class TestRedaction:
    def test_sensitive_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "Password123!",
                "session_token": "abcdef0123456789",
                "user_id": "users:abc",
            },
        )

        assert event["password"] == "Pa***3!"
        assert event["session_token"] == "ab***89"
        assert event["user_id"] == "users:abc"

    def test_email_keys_keep_domain(self):
        event = _redact_pii(None, "info", {"to_email": "ada@example.com", "retries": 3})

        assert event["to_email"] == "ad***@example.com"
        assert event["retries"] == 3

    def test_short_values_are_left_alone(self):
        assert _redact_pii(None, "info", {"token": "abc"})["token"] == "abc"

    def test_redact_email(self):
        assert redact_email("ada@example.com") == "ad***@example.com"
        assert redact_email("not-an-address") == "redacted"


class TestCorrelationId:
    def test_generated_when_missing(self):
        cid = set_correlation_id()

        assert cid
        assert get_correlation_id() == cid

    def test_added_to_events(self):
        set_correlation_id("req-42")

        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"
