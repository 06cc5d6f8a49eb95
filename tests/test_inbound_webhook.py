import re

from twilio.request_validator import RequestValidator

from conftest import CUSTOMER, ENGINE_NUMBER, OWNER
from leadsms.config import settings
from leadsms.datastore import REPOSITORY
from leadsms.inbound_webhook import parse_inbound
from leadsms.schema import Channel, Direction, Stage

PHOTO_FORM = {
    "From": CUSTOMER,
    "To": ENGINE_NUMBER,
    "Body": "",
    "MessageSid": "SM-PHOTO-1",
    "NumMedia": "1",
    "MediaUrl0": "https://api.twilio.example/Media/ME1",
}


def _outbound(lead_id):
    return [m for m in REPOSITORY.messages_for_lead(lead_id) if m.direction == Direction.OUTBOUND]


def test_parse_inbound_reads_declared_media_only():
    event = parse_inbound(
        {
            "From": "whatsapp:+13135551212",
            "To": "8005550100",
            "Body": "  hi ",
            "SmsMessageSid": "SM1",
            "NumMedia": "2",
            "MediaUrl0": "https://m/0",
            "MediaUrl1": "https://m/1",
            "MediaUrl2": "https://m/2",
        }
    )
    assert event.from_number == "+13135551212"
    assert event.to_number == "+18005550100"
    assert event.body == "hi"
    assert event.message_sid == "SM1"
    assert event.media_urls == ["https://m/0", "https://m/1"]


def test_parse_inbound_bad_num_media():
    assert parse_inbound({"From": CUSTOMER, "NumMedia": "lots", "MediaUrl0": "x"}).media_urls == []


def test_photo_event_end_to_end(client, messenger, storage):
    resp = client.post("/inbound", data=PHOTO_FORM)

    assert resp.status_code == 200
    data = resp.json()
    assert data["ok"] is True
    assert data["intent"] == "ack_photos"
    assert data["stage"] == "awaiting_owner_quote"

    lead = REPOSITORY.find_lead_by_phone(CUSTOMER)
    assert lead.stage == Stage.AWAITING_OWNER_QUOTE
    assert lead.last_intent == "ack_photos"

    inbound = [m for m in REPOSITORY.messages_for_lead(lead.id) if m.direction == Direction.INBOUND]
    assert len(inbound) == 1
    assert inbound[0].channel == Channel.MMS
    assert inbound[0].provider_sid == "SM-PHOTO-1"
    assert len(inbound[0].media_paths) == 1
    assert re.fullmatch(r"13135551212/\d{4}-\d{2}-\d{2}/\d+_0\.jpg", inbound[0].media_paths[0])
    assert inbound[0].media_paths[0] in storage.objects

    owner_alert = messenger.to(OWNER)
    assert len(owner_alert) == 1
    assert "1 photo(s) from +13135551212" in owner_alert[0]["body"]
    assert "?token=" in owner_alert[0]["body"]


def test_exactly_one_reply_per_event(client, messenger):
    client.post("/inbound", data=PHOTO_FORM)
    client.post("/inbound", data={"From": CUSTOMER, "To": ENGINE_NUMBER, "Body": "how much?", "MessageSid": "SM-2"})

    lead = REPOSITORY.find_lead_by_phone(CUSTOMER)
    outbound = _outbound(lead.id)
    assert len(outbound) == 2
    assert len(messenger.to(CUSTOMER)) == 2
    assert outbound[-1].body == messenger.to(CUSTOMER)[-1]["body"]
    assert messenger.to(CUSTOMER)[-1]["from"] == ENGINE_NUMBER


def test_text_on_cold_lead_moves_to_qualifying(client, messenger):
    data = client.post(
        "/inbound", data={"From": CUSTOMER, "To": ENGINE_NUMBER, "Body": "Can I get a quote?", "MessageSid": "SM-3"}
    ).json()

    assert data["intent"] == "estimate"
    assert data["stage"] == "qualifying"
    assert messenger.to(CUSTOMER)[0]["body"].startswith("Got it. A couple photos")
    assert "New SMS from +13135551212 (qualifying): Can I get a quote?" in messenger.to(OWNER)[0]["body"]


def test_photos_after_quote_do_not_downgrade(client):
    client.post("/inbound", data=PHOTO_FORM)
    lead = REPOSITORY.find_lead_by_phone(CUSTOMER)
    REPOSITORY.update_lead(lead.id, {"Stage": "quote_sent"})

    again = dict(PHOTO_FORM, MessageSid="SM-PHOTO-2")
    data = client.post("/inbound", data=again).json()

    assert data["stage"] == "quote_sent"
    assert REPOSITORY.get_lead(lead.id).stage == Stage.QUOTE_SENT


def test_duplicate_sid_has_no_side_effects(client, messenger):
    first = client.post("/inbound", data=PHOTO_FORM).json()
    sent_before = len(messenger.sent)

    second = client.post("/inbound", data=PHOTO_FORM).json()

    assert first["ok"] is True and "duplicate" not in first
    assert second == {"ok": True, "duplicate": True, "sid": "SM-PHOTO-1"}
    assert len(messenger.sent) == sent_before
    lead = REPOSITORY.find_lead_by_phone(CUSTOMER)
    assert len(REPOSITORY.messages_for_lead(lead.id)) == 2


def test_failed_attachment_is_skipped(client):
    form = dict(PHOTO_FORM, NumMedia="2", MediaUrl1="https://m/broken.jpg")
    data = client.post("/inbound", data=form).json()

    assert data["ok"] is True
    assert data["media"] == 1


def test_missing_from_is_ok_false(client, messenger):
    resp = client.post("/inbound", data={"Body": "hi", "MessageSid": "SM-X"})
    assert resp.status_code == 200
    assert resp.json()["ok"] is False
    assert messenger.sent == []


def test_reply_send_failure_logs_no_outbound(client, messenger):
    messenger.fail_to.add(CUSTOMER)
    data = client.post("/inbound", data=dict(PHOTO_FORM, MessageSid="SM-F")).json()

    assert data["ok"] is False
    lead = REPOSITORY.find_lead_by_phone(CUSTOMER)
    assert _outbound(lead.id) == []
    assert lead.stage == Stage.AWAITING_OWNER_QUOTE


def test_get_is_method_not_allowed(client):
    assert client.get("/inbound").status_code == 405


def test_signature_required_when_secret_configured(client, monkeypatch, messenger):
    monkeypatch.setenv("WEBHOOK_SIGNING_SECRET", "shh")
    monkeypatch.setenv("PUBLIC_INBOUND_URL", "https://engine.example/inbound")
    settings.cache_clear()

    unsigned = client.post("/inbound", data=PHOTO_FORM)
    forged = client.post("/inbound", data=PHOTO_FORM, headers={"X-Twilio-Signature": "bogus"})

    assert unsigned.status_code == 403
    assert forged.status_code == 403
    assert messenger.sent == []
    assert REPOSITORY.find_lead_by_phone(CUSTOMER) is None

    signature = RequestValidator("shh").compute_signature("https://engine.example/inbound", PHOTO_FORM)
    signed = client.post("/inbound", data=PHOTO_FORM, headers={"X-Twilio-Signature": signature})
    assert signed.status_code == 200
    assert signed.json()["ok"] is True
