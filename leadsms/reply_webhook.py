"""Manual reply endpoint: a human texts a lead through the engine's number."""

from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from leadsms.auth import require_reply_token
from leadsms.errors import PersistenceError, ProviderError
from leadsms.followup_flow import schedule_quote_followup
from leadsms.message_processor import MessageProcessor, get_processor
from leadsms.runtime import get_logger, normalize_e164
from leadsms.schema import Channel, Direction, Stage

logger = get_logger(__name__)

router = APIRouter()

_HOURS_RANGE = re.compile(r"\b([2-8])\s*(?:-|to\s*)?[2-8]?\s*(?:h|hr|hrs|hour|hours)\b")
_HOURS_APPROX = re.compile(r"[~≈]\s*([2-8])\b")
_HOUR_WORD = re.compile(r"\bh(?:r|rs)?\b|hour")


class ReplyRequest(BaseModel):
    to: Optional[str] = None
    body: Optional[str] = None


def detect_quoted_hours(text: str) -> Optional[int]:
    """Hours (2-8) quoted in a free-text message, e.g. "about 4 hours" or "~5 hrs"."""
    t = (text or "").lower()
    m = _HOURS_RANGE.search(t)
    if m:
        return int(m.group(1))
    m = _HOURS_APPROX.search(t)
    if m and _HOUR_WORD.search(t):
        return int(m.group(1))
    return None


def send_manual_reply(processor: MessageProcessor, to: str, body: str) -> dict:
    lead = processor.stages.upsert_lead(to)

    try:
        sid = processor.messenger.send(to, body)
    except ProviderError as exc:
        logger.error("Manual reply to %s failed: %s", to, exc)
        return {"ok": False, "lead_id": lead.id, "error": str(exc)}

    try:
        processor.repository.insert_message(
            lead_id=lead.id, direction=Direction.OUTBOUND, body=body, channel=Channel.SMS, provider_sid=sid
        )
    except PersistenceError as exc:
        logger.error("Manual reply to %s sent (sid=%s) but not logged: %s", to, sid, exc)

    hours = detect_quoted_hours(body)
    candidate = Stage.QUOTE_SENT if hours else Stage.QUALIFYING
    try:
        lead = processor.stages.advance(lead, candidate)
    except PersistenceError as exc:
        logger.warning("Stage update after manual reply failed for lead %s: %s", lead.id, exc)
    if hours:
        schedule_quote_followup(lead.id, repository=processor.repository)

    return {"ok": True, "sid": sid, "lead_id": lead.id, "stage": lead.stage.value, "quoted_hours": hours}


@router.post("/reply", dependencies=[Depends(require_reply_token)])
async def reply_handler(payload: ReplyRequest, processor: MessageProcessor = Depends(get_processor)):
    to = normalize_e164(payload.to)
    body = (payload.body or "").strip()
    if not to or not body:
        return JSONResponse(status_code=400, content={"ok": False, "error": 'Missing "to" or "body"'})

    try:
        return await run_in_threadpool(send_manual_reply, processor, to, body)
    except PersistenceError as exc:
        logger.error("Manual reply to %s failed: %s", to, exc)
        return {"ok": False, "error": str(exc)}
