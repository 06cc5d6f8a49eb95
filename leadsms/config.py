from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# -----------------------------
# .env Loader
# -----------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if (v and str(v).strip() != "") else default


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    # Messaging provider
    TWILIO_ACCOUNT_SID: Optional[str]
    TWILIO_AUTH_TOKEN: Optional[str]
    TWILIO_FROM_NUMBER: Optional[str]
    WEBHOOK_SIGNING_SECRET: Optional[str]
    PUBLIC_INBOUND_URL: Optional[str]
    MESSAGING_DRY_RUN: bool
    OWNER_PHONE: Optional[str]

    # Airtable
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    LEADS_TABLE: str
    MESSAGES_TABLE: str
    FOLLOWUPS_TABLE: str
    GALLERY_TOKENS_TABLE: str
    FORCE_IN_MEMORY: bool

    # Object storage
    SUPABASE_URL: Optional[str]
    SUPABASE_SERVICE_ROLE_KEY: Optional[str]
    INBOUND_BUCKET: str
    GALLERY_BASE_URL: str
    GALLERY_TOKEN_DAYS: int
    MAX_MEDIA_PER_MESSAGE: int

    # AI collaborators
    OPENAI_API_KEY: Optional[str]
    OPENAI_ASSISTANT_ID: Optional[str]
    OPENAI_CLASSIFIER_MODEL: str
    OPENAI_TIMEOUT: float
    ASSISTANT_DEADLINE_SECONDS: float
    ASSISTANT_POLL_INTERVAL: float

    # Business rules
    QUOTE_HOURLY_RATE: int
    QUOTE_FIXED_FEE: int
    FOLLOWUP_DELAY_HOURS: int

    # Infra
    REDIS_URL: Optional[str]
    REPLY_API_TOKEN: Optional[str]
    HTTP_TIMEOUT_SECONDS: float


@lru_cache(maxsize=1)
def settings() -> Settings:
    auth_token = env_str("TWILIO_AUTH_TOKEN")
    return Settings(
        TWILIO_ACCOUNT_SID=env_str("TWILIO_ACCOUNT_SID"),
        TWILIO_AUTH_TOKEN=auth_token,
        TWILIO_FROM_NUMBER=env_str("TWILIO_FROM_NUMBER"),
        WEBHOOK_SIGNING_SECRET=env_str("WEBHOOK_SIGNING_SECRET") or auth_token,
        PUBLIC_INBOUND_URL=env_str("PUBLIC_INBOUND_URL"),
        MESSAGING_DRY_RUN=env_bool("MESSAGING_DRY_RUN"),
        OWNER_PHONE=env_str("OWNER_PHONE") or env_str("OWNER_CELL"),
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        LEADS_TABLE=env_str("LEADS_TABLE", "Leads"),
        MESSAGES_TABLE=env_str("MESSAGES_TABLE", "Messages"),
        FOLLOWUPS_TABLE=env_str("FOLLOWUPS_TABLE", "Followups"),
        GALLERY_TOKENS_TABLE=env_str("GALLERY_TOKENS_TABLE", "Gallery Tokens"),
        FORCE_IN_MEMORY=env_bool("LEADSMS_FORCE_IN_MEMORY"),
        SUPABASE_URL=env_str("SUPABASE_URL"),
        SUPABASE_SERVICE_ROLE_KEY=env_str("SUPABASE_SERVICE_ROLE_KEY"),
        INBOUND_BUCKET=env_str("INBOUND_BUCKET", "inbound-mms"),
        GALLERY_BASE_URL=env_str("GALLERY_BASE_URL", "https://example.com/gallery"),
        GALLERY_TOKEN_DAYS=env_int("GALLERY_TOKEN_DAYS", 7),
        MAX_MEDIA_PER_MESSAGE=env_int("MAX_MEDIA_PER_MESSAGE", 10),
        OPENAI_API_KEY=env_str("OPENAI_API_KEY"),
        OPENAI_ASSISTANT_ID=env_str("OPENAI_ASSISTANT_ID"),
        OPENAI_CLASSIFIER_MODEL=env_str("OPENAI_CLASSIFIER_MODEL", "gpt-4o-mini"),
        OPENAI_TIMEOUT=env_float("OPENAI_TIMEOUT", 10.0),
        ASSISTANT_DEADLINE_SECONDS=env_float("ASSISTANT_DEADLINE_SECONDS", 12.0),
        ASSISTANT_POLL_INTERVAL=env_float("ASSISTANT_POLL_INTERVAL", 1.0),
        QUOTE_HOURLY_RATE=env_int("QUOTE_HOURLY_RATE", 150),
        QUOTE_FIXED_FEE=env_int("QUOTE_FIXED_FEE", 95),
        FOLLOWUP_DELAY_HOURS=env_int("FOLLOWUP_DELAY_HOURS", 24),
        REDIS_URL=env_str("REDIS_URL"),
        REPLY_API_TOKEN=env_str("REPLY_API_TOKEN"),
        HTTP_TIMEOUT_SECONDS=env_float("HTTP_TIMEOUT_SECONDS", 15.0),
    )
