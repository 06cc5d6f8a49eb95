from datetime import datetime, timezone

import pytest

from leadsms.runtime import normalize_e164, parse_iso, retry, storage_phone, to_iso


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+13135551212", "+13135551212"),
        ("whatsapp:+13135551212", "+13135551212"),
        ("(313) 555-1212", "+13135551212"),
        ("313.555.1212", "+13135551212"),
        ("13135551212", "+13135551212"),
        ("+447911123456", "+447911123456"),
        ("", ""),
        (None, ""),
        ("no digits", ""),
    ],
)
def test_normalize_e164(raw, expected):
    assert normalize_e164(raw) == expected


def test_owner_and_sender_formats_compare_equal():
    assert normalize_e164("3135550000") == normalize_e164("+1 (313) 555-0000")


def test_storage_phone_drops_plus():
    assert storage_phone("(313) 555-1212") == "13135551212"


def test_iso_roundtrip_is_utc_with_z_suffix():
    ts = datetime(2026, 3, 4, 5, 6, 7, 123000, tzinfo=timezone.utc)
    text = to_iso(ts)
    assert text == "2026-03-04T05:06:07.123Z"
    assert parse_iso(text) == ts
    assert parse_iso("garbage") is None


def test_retry_recovers_after_transient_errors(monkeypatch):
    monkeypatch.setattr("leadsms.runtime.time.sleep", lambda _s: None)
    attempts = {"n": 0}

    def flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("blip")
        return "ok"

    assert retry(flaky, retries=3, exceptions=(ConnectionError,)) == "ok"
    assert attempts["n"] == 3


def test_retry_gives_up(monkeypatch):
    monkeypatch.setattr("leadsms.runtime.time.sleep", lambda _s: None)

    def always_fails():
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        retry(always_fails, retries=1, exceptions=(ConnectionError,))
