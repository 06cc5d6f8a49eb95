"""
Authoritative Schema
--------------------
Central source of truth for table field names, stage order, intents and
the record types that flow between the webhook, the processor and the
datastore. Field names can be overridden through the environment so the
engine can point at an existing Airtable base.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


def _env(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if not v or not str(v).strip() else str(v)


# ---------------------------------------------------------------------------
# Field definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LeadFields:
    phone: str = _env("LEAD_PHONE_FIELD", "Phone")
    name: str = _env("LEAD_NAME_FIELD", "Name")
    stage: str = _env("LEAD_STAGE_FIELD", "Stage")
    thread_id: str = _env("LEAD_THREAD_FIELD", "Thread ID")
    last_intent: str = _env("LEAD_INTENT_FIELD", "Last Intent")
    created_at: str = _env("LEAD_CREATED_FIELD", "Created At")
    updated_at: str = _env("LEAD_UPDATED_FIELD", "Updated At")


@dataclass(frozen=True)
class MessageFields:
    lead_id: str = "Lead ID"
    direction: str = "Direction"
    body: str = "Body"
    channel: str = "Channel"
    provider_sid: str = "Provider SID"
    media_paths: str = "Media Paths"
    created_at: str = "Created At"


@dataclass(frozen=True)
class FollowupFields:
    lead_id: str = "Lead ID"
    kind: str = "Kind"
    due_at: str = "Due At"
    sent_at: str = "Sent At"
    created_at: str = "Created At"


@dataclass(frozen=True)
class GalleryTokenFields:
    token: str = "Token"
    lead_id: str = "Lead ID"
    expires_at: str = "Expires At"
    created_at: str = "Created At"


LEAD_FIELDS = LeadFields()
MESSAGE_FIELDS = MessageFields()
FOLLOWUP_FIELDS = FollowupFields()
TOKEN_FIELDS = GalleryTokenFields()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    COLD = "cold"
    QUALIFYING = "qualifying"
    AWAITING_OWNER_QUOTE = "awaiting_owner_quote"
    QUOTE_SENT = "quote_sent"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Channel(str, Enum):
    SMS = "sms"
    MMS = "mms"
    OWNER = "owner"


class FollowupKind(str, Enum):
    QUOTE_D1 = "quote_d1"


# Funnel rank; both closed stages share the terminal rank.
STAGE_RANK: Dict[Stage, int] = {
    Stage.COLD: 0,
    Stage.QUALIFYING: 1,
    Stage.AWAITING_OWNER_QUOTE: 2,
    Stage.QUOTE_SENT: 3,
    Stage.CLOSED_WON: 4,
    Stage.CLOSED_LOST: 4,
}
CLOSED_STAGES = frozenset({Stage.CLOSED_WON, Stage.CLOSED_LOST})

# Closed set returned by the NLU collaborator.
NLU_INTENTS = (
    "ask_photos",
    "ack_photos",
    "options",
    "price_question",
    "epoxy",
    "thanks",
    "smalltalk",
    "unsubscribe",
    "unknown",
)

UNKNOWN_INTENT = "unknown"


def coerce_stage(value: Optional[str]) -> Stage:
    """Map a stored stage value to the enum; unset or unrecognised reads as cold."""
    try:
        return Stage((value or "").strip().lower())
    except ValueError:
        return Stage.COLD


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Lead:
    id: str
    phone: str
    stage: Stage = Stage.COLD
    name: Optional[str] = None
    thread_id: Optional[str] = None
    last_intent: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Message:
    id: str
    lead_id: Optional[str]
    direction: Direction
    body: str
    channel: Channel = Channel.SMS
    provider_sid: Optional[str] = None
    media_paths: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None


@dataclass
class Followup:
    id: str
    lead_id: str
    kind: FollowupKind
    due_at: datetime
    sent_at: Optional[datetime] = None


@dataclass
class GalleryToken:
    token: str
    lead_id: str
    expires_at: datetime


@dataclass
class InboundEvent:
    """Canonical form of one provider webhook delivery."""

    from_number: str
    to_number: str
    body: str = ""
    message_sid: Optional[str] = None
    media_urls: List[str] = field(default_factory=list)

    @property
    def has_media(self) -> bool:
        return bool(self.media_urls)
