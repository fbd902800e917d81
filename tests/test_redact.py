from __future__ import annotations

import threading

from pycollate._redact import redact_headers, redact_observation


def test_redact_observation_masks_sensitive_keys() -> None:
    assert redact_observation("screen", "1920x1080") == "1920x1080"
    assert redact_observation("Cookie", "session=abc") == "<redacted>"
    assert redact_observation(" Authorization ", "Bearer xyz") == "<redacted>"


def test_redact_observation_truncates_long_values() -> None:
    redacted = redact_observation("value", "x" * 600, max_string=10)

    assert redacted.startswith("x" * 10)
    assert "<truncated>" in redacted


def test_redact_observation_reprs_non_strings() -> None:
    assert redact_observation("redirect", ["abc", 308]) == "['abc', 308]"
    assert redact_observation("conn", threading.Lock()).startswith("<unlocked _thread.lock")


def test_redact_headers_keeps_order_and_names() -> None:
    headers = [("Accept", "*/*"), ("set-cookie", "a=1"), ("Accept", "text/html")]

    assert redact_headers(headers) == [
        ("Accept", "*/*"),
        ("set-cookie", "<redacted>"),
        ("Accept", "text/html"),
    ]
    assert redact_headers(None) == []
