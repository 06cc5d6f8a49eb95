"""
Lead SMS Engine: FastAPI app
- POST /inbound  provider webhook (form-encoded, signed)
- POST /reply    manual reply by a human operator (bearer token)
- GET  /health, /ping
"""

from __future__ import annotations

from fastapi import FastAPI

from leadsms import __version__
from leadsms.config import settings
from leadsms.inbound_webhook import router as inbound_router
from leadsms.reply_webhook import router as reply_router
from leadsms.runtime import configure_logging, get_logger, iso_now

configure_logging()
logger = get_logger("main")

app = FastAPI(title="Lead SMS Engine", version=__version__)
app.include_router(inbound_router)  # → /inbound
app.include_router(reply_router)  # → /reply


# ─────────────────────────── Startup checks ─────────────────────────
@app.on_event("startup")
async def startup_checks():
    s = settings()
    missing = [
        name
        for name, value in (
            ("TWILIO_ACCOUNT_SID", s.TWILIO_ACCOUNT_SID),
            ("TWILIO_FROM_NUMBER", s.TWILIO_FROM_NUMBER),
            ("OWNER_PHONE", s.OWNER_PHONE),
            ("AIRTABLE_API_KEY", s.AIRTABLE_API_KEY),
            ("AIRTABLE_BASE_ID", s.AIRTABLE_BASE_ID),
        )
        if not value
    ]
    if missing:
        logger.warning("🚨 Missing env vars → %s", ", ".join(missing))
    if not s.WEBHOOK_SIGNING_SECRET:
        logger.warning("Webhook signature checks are OFF (no signing secret configured)")
    logger.info("✅ Startup checks done")


# ─────────────────────────── Health ────────────────────────────────
@app.get("/ping")
async def ping():
    return {"ok": True, "pong": True, "time": iso_now()}


@app.get("/health")
async def health():
    s = settings()
    return {
        "ok": True,
        "timestamp": iso_now(),
        "version": __version__,
        "datastore": "memory" if s.FORCE_IN_MEMORY or not (s.AIRTABLE_API_KEY and s.AIRTABLE_BASE_ID) else "airtable",
        "owner_channel": bool(s.OWNER_PHONE),
        "signing": bool(s.WEBHOOK_SIGNING_SECRET),
    }
