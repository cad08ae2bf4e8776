"""
Tests for log formatting and secret redaction
"""

import json
import logging

from reviewflow.core.logging import REDACTED, JsonFormatter, SecretRedactingFilter, redact


def make_record(msg, args=None, **extra):
    record = logging.LogRecord("reviewflow.test", logging.WARNING, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedact:

    def test_bearer_header(self):
        assert redact("Authorization: Bearer ya29.a0AfH6SMB") == f"Authorization: {REDACTED}"

    def test_google_tokens(self):
        text = redact("refresh 1//0gLzQ9x8Yk7rTCgYIARAAGBASNwF access ya29.a0AfH6SMBx secret GOCSPX-abc123")

        assert "1//0g" not in text
        assert "ya29." not in text
        assert "GOCSPX" not in text

    def test_ciphertext_formats(self):
        legacy = "a" * 24 + ":" + "b" * 32 + ":" + "c0ffee"

        assert redact("stored enc:v1:prod:gAAAAABl_x-Y=") == f"stored {REDACTED}"
        assert redact(f"stored {legacy}") == f"stored {REDACTED}"

    def test_ordinary_text_untouched(self):
        message = "Posted reply for review 6b1f2c7e-2f1d-4a3b-9c55-0d2e1f3a4b5c"

        assert redact(message) == message


class TestSecretRedactingFilter:

    def test_scrubs_interpolated_args(self):
        record = make_record("Refreshed token %s for %s", ("ya29.fresh-token", "biz-1"))

        assert SecretRedactingFilter().filter(record) is True
        assert record.getMessage() == f"Refreshed token {REDACTED} for biz-1"

    def test_leaves_clean_records_alone(self):
        record = make_record("Review %s approved", ("r-1",))

        SecretRedactingFilter().filter(record)

        assert record.args == ("r-1",)


class TestJsonFormatter:

    def test_context_fields_included(self):
        record = make_record("Publish failed", review_id="r-1", error_kind="API_UNAVAILABLE")

        entry = json.loads(JsonFormatter().format(record))

        assert entry["message"] == "Publish failed"
        assert entry["level"] == "WARNING"
        assert entry["review_id"] == "r-1"
        assert entry["error_kind"] == "API_UNAVAILABLE"
        assert "business_id" not in entry
