from __future__ import annotations

from typing import Any, Dict, Mapping

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from leadsms.auth import SIGNATURE_HEADER, callback_url, verify_signature
from leadsms.config import settings
from leadsms.errors import AuthError, ValidationError
from leadsms.message_processor import MessageProcessor, get_processor
from leadsms.runtime import get_logger, normalize_e164
from leadsms.schema import InboundEvent

logger = get_logger(__name__)

router = APIRouter()


# === BODY PARSING ===
async def _parse_form(request: Request) -> Dict[str, str]:
    try:
        form = await request.form()
    except Exception as exc:
        logger.warning("Failed to parse inbound form: %s", exc)
        raise HTTPException(status_code=422, detail="Invalid payload")
    return {k: (v if isinstance(v, str) else str(v)) for k, v in form.items()}


def _num_media(params: Mapping[str, Any]) -> int:
    try:
        return max(int(params.get("NumMedia") or 0), 0)
    except (TypeError, ValueError):
        return 0


def parse_inbound(params: Mapping[str, Any]) -> InboundEvent:
    """Canonical event from a provider form payload."""
    from_number = normalize_e164(params.get("From"))
    if not from_number:
        raise ValidationError("Missing From number")

    media_urls = []
    for i in range(_num_media(params)):
        url = (params.get(f"MediaUrl{i}") or "").strip()
        if url:
            media_urls.append(url)

    return InboundEvent(
        from_number=from_number,
        to_number=normalize_e164(params.get("To")),
        body=(params.get("Body") or "").strip(),
        message_sid=params.get("MessageSid") or params.get("SmsMessageSid") or None,
        media_urls=media_urls,
    )


# === ROUTES ===
@router.post("/inbound")
async def inbound_handler(request: Request, processor: MessageProcessor = Depends(get_processor)):
    params = await _parse_form(request)

    try:
        verify_signature(
            secret=settings().WEBHOOK_SIGNING_SECRET,
            url=callback_url(request),
            params=params,
            signature=request.headers.get(SIGNATURE_HEADER),
        )
    except AuthError as exc:
        logger.warning("Rejected inbound webhook: %s", exc)
        raise HTTPException(status_code=403, detail=str(exc))

    try:
        event = parse_inbound(params)
    except ValidationError as exc:
        logger.warning("Invalid inbound payload: %s", exc)
        return {"ok": False, "error": str(exc)}

    return await run_in_threadpool(processor.process, event)
