"""
Twilio transport for outbound SMS and inbound media downloads.

- send() returns the provider message sid
- fetch_media() downloads an MMS attachment with account basic auth
- MESSAGING_DRY_RUN logs instead of sending
"""

from __future__ import annotations

import uuid
from typing import Optional, Protocol, Tuple

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from leadsms.config import settings
from leadsms.errors import ProviderError
from leadsms.runtime import get_logger

logger = get_logger(__name__)


class Messenger(Protocol):
    def send(self, to: str, body: str, from_number: Optional[str] = None) -> str:
        ...

    def fetch_media(self, url: str) -> Tuple[bytes, str]:
        ...


class TwilioMessenger:
    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        *,
        dry_run: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> None:
        s = settings()
        self.account_sid = account_sid or s.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or s.TWILIO_AUTH_TOKEN
        self.from_number = from_number or s.TWILIO_FROM_NUMBER
        self.dry_run = s.MESSAGING_DRY_RUN if dry_run is None else dry_run
        self.timeout = timeout or s.HTTP_TIMEOUT_SECONDS
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self.account_sid or not self.auth_token:
                raise ProviderError(
                    "Twilio credentials missing (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)", provider="twilio"
                )
            self._client = Client(
                self.account_sid, self.auth_token, http_client=TwilioHttpClient(timeout=self.timeout)
            )
        return self._client

    def send(self, to: str, body: str, from_number: Optional[str] = None) -> str:
        sender = from_number or self.from_number
        if not to:
            raise ProviderError("Missing recipient", provider="twilio")

        if self.dry_run:
            sid = f"DRY-{uuid.uuid4().hex[:12]}"
            logger.info("[DRY RUN] SMS to %s from %s: %s", to, sender, body[:120])
            return sid

        if not sender:
            raise ProviderError("TWILIO_FROM_NUMBER is missing", provider="twilio")

        try:
            message = self.client.messages.create(from_=sender, to=to, body=body)
        except TwilioRestException as exc:
            raise ProviderError(
                f"Twilio send to {to} failed: {exc.msg}",
                provider="twilio",
                status_code=exc.status,
                body=exc.code,
            ) from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Twilio send to {to} failed: {exc}", provider="twilio") from exc
        logger.info("Sent SMS to %s sid=%s", to, message.sid)
        return message.sid

    def fetch_media(self, url: str) -> Tuple[bytes, str]:
        auth = (self.account_sid, self.auth_token) if self.account_sid and self.auth_token else None
        try:
            resp = requests.get(url, auth=auth, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"Media fetch failed: {exc}", provider="twilio") from exc
        if resp.status_code >= 400:
            raise ProviderError(
                f"Media fetch failed with HTTP {resp.status_code}",
                provider="twilio",
                status_code=resp.status_code,
                body=resp.text[:200],
            )
        content_type = (resp.headers.get("Content-Type") or "application/octet-stream").split(";")[0].strip()
        return resp.content, content_type


def build_messenger() -> TwilioMessenger:
    return TwilioMessenger()
