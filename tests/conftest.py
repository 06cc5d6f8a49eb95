import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from leadsms.config import settings
from leadsms.datastore import REPOSITORY, reset_state
from leadsms.errors import ProviderError
from leadsms.idempotency import IdempotencyStore
from leadsms.media import InMemoryMediaStorage
from leadsms.message_processor import MessageProcessor, get_processor

OWNER = "+13135550000"
CUSTOMER = "+13135551212"
ENGINE_NUMBER = "+18005550100"

_ISOLATED_ENV = [
    "AIRTABLE_API_KEY",
    "AIRTABLE_BASE_ID",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "WEBHOOK_SIGNING_SECRET",
    "PUBLIC_INBOUND_URL",
    "OWNER_PHONE",
    "OWNER_CELL",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "OPENAI_API_KEY",
    "OPENAI_ASSISTANT_ID",
    "REDIS_URL",
    "REPLY_API_TOKEN",
    "MESSAGING_DRY_RUN",
]


@pytest.fixture(autouse=True)
def _reset_datastore(monkeypatch):
    for key in _ISOLATED_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LEADSMS_FORCE_IN_MEMORY", "1")
    settings.cache_clear()
    get_processor.cache_clear()
    reset_state()
    yield
    settings.cache_clear()
    get_processor.cache_clear()


class FakeMessenger:
    """Records sends; URLs containing 'broken' fail to download."""

    def __init__(self, fail_to=()):
        self.sent = []
        self.fail_to = set(fail_to)
        self._count = 0

    def send(self, to, body, from_number=None):
        if to in self.fail_to:
            raise ProviderError(f"send to {to} rejected", provider="fake", status_code=400)
        self._count += 1
        sid = f"SMFAKE{self._count}"
        self.sent.append({"to": to, "body": body, "from": from_number, "sid": sid})
        return sid

    def fetch_media(self, url):
        if "broken" in url:
            raise ProviderError(f"fetch {url} failed", provider="fake", status_code=404)
        if url.endswith(".png"):
            return b"\x89PNG", "image/png"
        return b"\xff\xd8\xff", "image/jpeg"

    def to(self, phone):
        return [m for m in self.sent if m["to"] == phone]


class FakeNLU:
    def __init__(self, label="unknown", error=None):
        self.label = label
        self.error = error
        self.calls = []

    def classify(self, text, stage=None):
        self.calls.append((text, stage))
        if self.error:
            raise self.error
        return self.label


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def storage():
    return InMemoryMediaStorage()


@pytest.fixture
def processor(messenger, storage):
    return MessageProcessor(
        messenger,
        storage,
        REPOSITORY,
        owner_phone=OWNER,
        nlu=FakeNLU(),
        idempotency=IdempotencyStore(None),
    )


@pytest.fixture
def client(processor):
    from fastapi.testclient import TestClient

    from leadsms.main import app

    app.dependency_overrides[get_processor] = lambda: processor
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
