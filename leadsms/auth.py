"""Webhook signature and bearer-token checks for the inbound and reply routes."""

from __future__ import annotations

from typing import Mapping, Optional

from fastapi import HTTPException, Request
from twilio.request_validator import RequestValidator

from leadsms.config import settings
from leadsms.errors import AuthError
from leadsms.runtime import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Twilio-Signature"


def _token_from_authorization(header: str | None) -> str | None:
    if not header:
        return None
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def verify_signature(
    *,
    secret: Optional[str],
    url: str,
    params: Mapping[str, str],
    signature: Optional[str],
) -> None:
    """
    Validate a provider delivery signature.

    With no secret configured the check is skipped ("open" mode for local
    development). Otherwise a missing or mismatched signature raises AuthError.
    """
    if not secret:
        return
    if not signature:
        raise AuthError("Missing webhook signature")
    if not RequestValidator(secret).validate(url, dict(params), signature):
        raise AuthError("Webhook signature mismatch")


def callback_url(request: Request) -> str:
    """Public URL the provider signed; behind a proxy this must come from config."""
    return settings().PUBLIC_INBOUND_URL or str(request.url)


async def require_reply_token(request: Request) -> None:
    """Guard the manual reply route with a bearer token when one is configured."""
    expected = settings().REPLY_API_TOKEN
    if not expected:
        return

    provided = _token_from_authorization(request.headers.get("Authorization"))
    provided = provided or request.headers.get("x-api-token")

    if provided != expected:
        logger.warning("Rejected reply call from %s", request.client.host if request.client else "unknown")
        raise HTTPException(status_code=401, detail="Invalid API token")
