"""
Runtime Core
------------
Centralized utilities for logging, retries, time handling and
phone normalization shared by every leadsms module.
"""

from __future__ import annotations

import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

# Internal state flags
_LOGGING_CONFIGURED = False
_CORE_ENV_LOGGED = False
_DIGIT_PATTERN = re.compile(r"\d+")
_CHANNEL_PREFIX = re.compile(r"^[a-z]+:", re.IGNORECASE)


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def _mask_env_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    """Normalize string or int log level."""
    if value is None:
        env_level = os.getenv("LEADSMS_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True
    _log_core_env()


def get_logger(name: str = "leadsms") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


def _log_core_env() -> None:
    """Logs masked environment variables for observability."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    logger = logging.getLogger("env")
    logger.info(
        "Core env summary:\n"
        "• Twilio SID=%s | Signing=%s | Owner=%s\n"
        "• Airtable Key=%s | Base=%s | InMemory=%s\n"
        "• Supabase=%s | OpenAI Key=%s | Assistant=%s | Redis=%s",
        _mask_env_value(os.getenv("TWILIO_ACCOUNT_SID")),
        bool(os.getenv("WEBHOOK_SIGNING_SECRET") or os.getenv("TWILIO_AUTH_TOKEN")),
        _mask_env_value(os.getenv("OWNER_PHONE")),
        _mask_env_value(os.getenv("AIRTABLE_API_KEY")),
        os.getenv("AIRTABLE_BASE_ID") or "<missing>",
        os.getenv("LEADSMS_FORCE_IN_MEMORY", "false"),
        bool(os.getenv("SUPABASE_URL")),
        _mask_env_value(os.getenv("OPENAI_API_KEY")),
        bool(os.getenv("OPENAI_ASSISTANT_ID")),
        bool(os.getenv("REDIS_URL")),
    )
    _CORE_ENV_LOGGED = True


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Return ISO8601 UTC timestamp (Z suffix)."""
    return to_iso(utc_now())


def to_iso(value: datetime) -> str:
    ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> Optional[datetime]:
    """Parse an ISO8601 timestamp (Airtable or our own) into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ────────────────────────────────────────────────
# PHONE UTILITIES
# ────────────────────────────────────────────────
def only_digits(value: str | None) -> str:
    """Extract all digits from a string."""
    if value is None:
        return ""
    return "".join(_DIGIT_PATTERN.findall(str(value)))


def normalize_e164(value: str | None) -> str:
    """
    Normalize a provider address to E.164.

    Strips channel prefixes such as ``whatsapp:``, promotes 10-digit US
    numbers to ``+1XXXXXXXXXX`` and keeps 11-digit numbers that already carry
    the country code. Returns "" when there are no digits at all.
    """
    if not value:
        return ""
    raw = _CHANNEL_PREFIX.sub("", str(value).strip())
    digits = only_digits(raw)
    if not digits:
        return ""
    if len(digits) == 10:
        digits = "1" + digits
    return f"+{digits}"


def storage_phone(value: str | None) -> str:
    """E.164 phone without the leading plus (used in object keys)."""
    return normalize_e164(value).lstrip("+")


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry a callable with exponential backoff."""
    log = logger or get_logger(__name__)
    caught = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return func()
        except caught as exc:
            if attempt >= retries:
                log.error("Retry exhausted after %s attempts: %s", attempt + 1, exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable error (%s/%s): %s; sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            time.sleep(delay)
            attempt += 1
