import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from conftest import FakeMessenger
from leadsms.datastore import REPOSITORY
from leadsms.errors import ProviderError
from leadsms.media import (
    GalleryService,
    InMemoryMediaStorage,
    SupabaseMediaStorage,
    extension_for,
    ingest_media,
    object_key,
)

NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)


@pytest.mark.parametrize(
    "content_type, ext",
    [
        ("image/jpeg", "jpg"),
        ("image/png", "png"),
        ("IMAGE/GIF", "gif"),
        ("image/webp", "webp"),
        ("image/heic", "heic"),
        ("video/mp4", "mp4"),
        ("video/3gpp", "3gp"),
        ("application/pdf", "pdf"),
        ("image/jpeg; charset=binary", "jpg"),
        ("application/x-weird", "bin"),
        (None, "bin"),
    ],
)
def test_extension_for(content_type, ext):
    assert extension_for(content_type) == ext


def test_object_key_layout():
    assert object_key("+13135551212", 2, "image/png", NOW) == f"13135551212/2026-03-04/{NOW_MS}_2.png"


def test_ingest_stores_each_attachment():
    storage = InMemoryMediaStorage()
    keys = ingest_media(
        FakeMessenger(), storage, "+13135551212", ["https://m/1.jpg", "https://m/2.png"], now=NOW
    )

    assert keys == [f"13135551212/2026-03-04/{NOW_MS}_0.jpg", f"13135551212/2026-03-04/{NOW_MS}_1.png"]
    assert storage.objects[keys[1]] == (b"\x89PNG", "image/png")


def test_ingest_skips_failed_attachments():
    storage = InMemoryMediaStorage()
    keys = ingest_media(
        FakeMessenger(),
        storage,
        "+13135551212",
        ["https://m/broken.jpg", "https://m/ok.jpg", "https://m/broken2.jpg"],
        now=NOW,
    )

    assert keys == [f"13135551212/2026-03-04/{NOW_MS}_1.jpg"]
    assert list(storage.objects) == keys


def test_ingest_respects_limit():
    keys = ingest_media(FakeMessenger(), InMemoryMediaStorage(), "+1313", [f"https://m/{i}.jpg" for i in range(5)], limit=2)
    assert len(keys) == 2


def test_gallery_token_reused_within_window():
    lead = REPOSITORY.upsert_lead("+13135551212")
    gallery = GalleryService(REPOSITORY, ttl_days=7)

    first = gallery.issue(lead.id, now=NOW)
    second = gallery.issue(lead.id, now=NOW + timedelta(days=3))

    assert re.fullmatch(r"[0-9a-f]{32}", first.token)
    assert second.token == first.token
    assert first.expires_at == NOW + timedelta(days=7)


def test_gallery_token_reminted_after_expiry():
    lead = REPOSITORY.upsert_lead("+13135551212")
    gallery = GalleryService(REPOSITORY, ttl_days=7)

    first = gallery.issue(lead.id, now=NOW)
    later = gallery.issue(lead.id, now=NOW + timedelta(days=8))

    assert later.token != first.token
    assert later.expires_at == NOW + timedelta(days=15)


def test_gallery_tokens_are_per_lead():
    a = REPOSITORY.upsert_lead("+13135550001")
    b = REPOSITORY.upsert_lead("+13135550002")
    gallery = GalleryService(REPOSITORY)

    assert gallery.issue(a.id, now=NOW).token != gallery.issue(b.id, now=NOW).token


def test_viewer_url(monkeypatch):
    from leadsms.config import settings

    monkeypatch.setenv("GALLERY_BASE_URL", "https://garage.example/g")
    settings.cache_clear()
    lead = REPOSITORY.upsert_lead("+13135551212")
    url = GalleryService(REPOSITORY).link_for(lead.id, now=NOW)
    assert re.fullmatch(r"https://garage\.example/g\?token=[0-9a-f]{32}", url)


class FakeBucket:
    def __init__(self, error=None, signed=None):
        self.error = error
        self.signed = signed or {"signedURL": "https://cdn.example/sig"}
        self.uploads = []

    def upload(self, path, file, file_options=None):
        if self.error:
            raise self.error
        self.uploads.append((path, file, file_options))

    def create_signed_url(self, path, expires_in):
        if self.error:
            raise self.error
        return self.signed


def _supabase(bucket):
    buckets = []

    def from_(name):
        buckets.append(name)
        return bucket

    return SupabaseMediaStorage(SimpleNamespace(storage=SimpleNamespace(from_=from_)), "inbound"), buckets


def test_supabase_upload_arguments():
    bucket = FakeBucket()
    storage, buckets = _supabase(bucket)

    assert storage.put("3135551212/2026-03-04/1_0.jpg", b"img", "image/jpeg") == "3135551212/2026-03-04/1_0.jpg"
    assert buckets == ["inbound"]
    assert bucket.uploads == [
        ("3135551212/2026-03-04/1_0.jpg", b"img", {"content-type": "image/jpeg", "upsert": "false"})
    ]


@pytest.mark.parametrize("signed", [{"signedURL": "https://cdn.example/a"}, {"signedUrl": "https://cdn.example/a"}])
def test_supabase_signed_url(signed):
    storage, _ = _supabase(FakeBucket(signed=signed))
    assert storage.signed_url("k.jpg", 3600) == "https://cdn.example/a"


def test_supabase_errors_become_provider_errors():
    storage, _ = _supabase(FakeBucket(error=RuntimeError("bucket not found")))

    with pytest.raises(ProviderError) as err:
        storage.put("k.jpg", b"img", "image/jpeg")
    assert err.value.provider == "supabase"
    with pytest.raises(ProviderError):
        storage.signed_url("k.jpg", 60)


def test_supabase_upload_failure_skips_attachment():
    storage, _ = _supabase(FakeBucket(error=RuntimeError("quota")))
    keys = ingest_media(FakeMessenger(), storage, "+13135551212", ["https://m/1.jpg"], now=NOW)
    assert keys == []
