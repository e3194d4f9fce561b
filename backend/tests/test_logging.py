from __future__ import annotations

import logging

from companion_memory.core.logging import RedactionFilter
from companion_memory.core.security import redact_secrets, sanitize_text


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord("companion_memory.test", logging.INFO, __file__, 1, msg, args, None)


def test_redact_secrets_masks_keys_and_bearer_tokens() -> None:
    text = "key=sk-abcdef123456 header=Bearer abc.def-ghi_123"
    redacted = redact_secrets(text)
    assert "sk-abcdef123456" not in redacted
    assert "abc.def-ghi_123" not in redacted
    assert "sk-***" in redacted
    assert "Bearer ***" in redacted


def test_filter_redacts_message_and_string_args() -> None:
    record = _record("calling with %s after %.2fs (attempt %d)", "sk-secretvalue99", 1.5, 2)

    assert RedactionFilter().filter(record)
    assert record.getMessage() == "calling with sk-*** after 1.50s (attempt 2)"


def test_sanitize_text_trims_and_clamps() -> None:
    assert sanitize_text("  hello  ", 10) == "hello"
    assert sanitize_text("x" * 20, 5) == "xxxxx"
