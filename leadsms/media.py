"""
Inbound MMS ingestion and gallery tokens.

Attachments are copied from the provider into object storage under
``{phone}/{YYYY-MM-DD}/{epoch_ms}_{index}.{ext}``. A failed attachment is
logged and skipped; the rest of the event carries on. Gallery tokens give the
owner a time-limited viewer link for a lead's photos.
"""

from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from supabase import Client, create_client

from leadsms.config import settings
from leadsms.datastore import REPOSITORY, Repository
from leadsms.errors import PersistenceError, ProviderError
from leadsms.messaging import Messenger
from leadsms.runtime import get_logger, storage_phone, utc_now
from leadsms.schema import GalleryToken

logger = get_logger(__name__)

EXTENSIONS: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heic",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
}


def extension_for(content_type: Optional[str]) -> str:
    ct = (content_type or "").split(";")[0].strip().lower()
    return EXTENSIONS.get(ct, "bin")


def object_key(phone: str, index: int, content_type: Optional[str], now: Optional[datetime] = None) -> str:
    ts = now or utc_now()
    epoch_ms = int(ts.timestamp() * 1000)
    return f"{storage_phone(phone)}/{ts.strftime('%Y-%m-%d')}/{epoch_ms}_{index}.{extension_for(content_type)}"


# ============================================================
# STORAGE
# ============================================================


class MediaStorage(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str:
        ...

    def signed_url(self, key: str, ttl_seconds: int) -> Optional[str]:
        ...


class SupabaseMediaStorage:
    """Supabase Storage bucket adapter."""

    def __init__(self, client: Client, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.client.storage.from_(self.bucket).upload(
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "false"},
            )
        except Exception as exc:
            raise ProviderError(f"Upload of {key} failed: {exc}", provider="supabase") from exc
        return key

    def signed_url(self, key: str, ttl_seconds: int) -> Optional[str]:
        try:
            res = self.client.storage.from_(self.bucket).create_signed_url(key, ttl_seconds)
        except Exception as exc:
            raise ProviderError(f"Signing {key} failed: {exc}", provider="supabase") from exc
        return res.get("signedURL") or res.get("signedUrl")


class InMemoryMediaStorage:
    """Bucket stand-in used for local runs and tests."""

    def __init__(self) -> None:
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self.objects[key] = (data, content_type)
        return key

    def signed_url(self, key: str, ttl_seconds: int) -> Optional[str]:
        return f"memory://{key}?ttl={ttl_seconds}" if key in self.objects else None


def build_storage() -> MediaStorage:
    s = settings()
    if s.SUPABASE_URL and s.SUPABASE_SERVICE_ROLE_KEY and not s.FORCE_IN_MEMORY:
        return SupabaseMediaStorage(create_client(s.SUPABASE_URL, s.SUPABASE_SERVICE_ROLE_KEY), s.INBOUND_BUCKET)
    logger.info("Supabase not configured, keeping inbound media in memory")
    return InMemoryMediaStorage()


# ============================================================
# INGESTION
# ============================================================


def ingest_media(
    messenger: Messenger,
    storage: MediaStorage,
    phone: str,
    media_urls: Sequence[str],
    *,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[str]:
    """Copy each attachment into storage and return the keys that made it."""
    ts = now or utc_now()
    cap = settings().MAX_MEDIA_PER_MESSAGE if limit is None else limit
    keys: List[str] = []
    for index, url in enumerate(list(media_urls)[:cap]):
        try:
            data, content_type = messenger.fetch_media(url)
            keys.append(storage.put(object_key(phone, index, content_type, ts), data, content_type))
        except ProviderError as exc:
            logger.warning("Skipping attachment %s for %s: %s", index, phone, exc)
    if media_urls:
        logger.info("Stored %s/%s attachments for %s", len(keys), len(media_urls), phone)
    return keys


# ============================================================
# GALLERY TOKENS
# ============================================================


class GalleryService:
    def __init__(self, repository: Repository = REPOSITORY, *, ttl_days: Optional[int] = None) -> None:
        self.repository = repository
        self.ttl_days = settings().GALLERY_TOKEN_DAYS if ttl_days is None else ttl_days

    def issue(self, lead_id: str, now: Optional[datetime] = None) -> GalleryToken:
        """Reuse the lead's unexpired token, otherwise mint a new one."""
        ts = now or utc_now()
        existing = self.repository.valid_gallery_token(lead_id, ts)
        if existing:
            return existing
        token = self.repository.insert_gallery_token(
            token=secrets.token_hex(16),
            lead_id=lead_id,
            expires_at=ts + timedelta(days=self.ttl_days),
        )
        logger.info("Issued gallery token for lead %s (expires %s)", lead_id, token.expires_at.isoformat())
        return token

    @staticmethod
    def viewer_url(token: GalleryToken) -> str:
        return f"{settings().GALLERY_BASE_URL}?token={token.token}"

    def link_for(self, lead_id: str, now: Optional[datetime] = None) -> Optional[str]:
        try:
            return self.viewer_url(self.issue(lead_id, now))
        except PersistenceError as exc:
            logger.warning("Gallery token for lead %s unavailable: %s", lead_id, exc)
            return None
