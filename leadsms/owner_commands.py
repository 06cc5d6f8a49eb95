"""
Owner control channel.

Texts from the owner's phone are commands, not conversation:

    "4"                  quote 4 hours to the newest lead awaiting a quote
    "5 (313) 555-1212"   quote 5 hours to that lead
    "won +13135551212"   close the lead as won
    "lost 3135551212"    close the lead as lost

Anything else gets the usage hint back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

from leadsms.datastore import REPOSITORY, Repository
from leadsms.errors import PersistenceError, ProviderError
from leadsms.followup_flow import schedule_quote_followup
from leadsms.messaging import Messenger
from leadsms.runtime import get_logger, normalize_e164
from leadsms.schema import Channel, Direction, Lead, Stage
from leadsms.stages import StageMachine
from leadsms.templates import compose_owner, compose_quote, quote_breakdown

logger = get_logger(__name__)

MIN_HOURS = 2
MAX_HOURS = 8

PHONE_PATTERN = re.compile(r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}")
HOURS_PATTERN = re.compile(r"(?<!\d)(\d)(?!\d)")
CLOSE_PATTERN = re.compile(r"^\s*(won|lost)\b", re.IGNORECASE)


@dataclass
class OwnerCommand:
    action: str  # quote | won | lost | invalid
    phone: Optional[str] = None
    hours: Optional[int] = None


@dataclass
class OwnerOutcome:
    reply: str
    action: str
    lead_id: Optional[str] = None
    details: Dict[str, object] = field(default_factory=dict)


def parse_owner_command(text: str) -> OwnerCommand:
    body = text or ""
    phone_match = PHONE_PATTERN.search(body)
    phone = normalize_e164(phone_match.group(0)) if phone_match else None

    close = CLOSE_PATTERN.match(body)
    if close:
        return OwnerCommand(action=close.group(1).lower(), phone=phone)

    remainder = body[: phone_match.start()] + " " + body[phone_match.end():] if phone_match else body
    hours_match = HOURS_PATTERN.search(remainder)
    if not hours_match:
        return OwnerCommand(action="invalid", phone=phone)
    hours = int(hours_match.group(1))
    if hours < MIN_HOURS or hours > MAX_HOURS:
        return OwnerCommand(action="invalid", phone=phone, hours=hours)
    return OwnerCommand(action="quote", phone=phone, hours=hours)


class OwnerCommandHandler:
    def __init__(
        self,
        messenger: Messenger,
        repository: Repository = REPOSITORY,
        stages: Optional[StageMachine] = None,
    ) -> None:
        self.messenger = messenger
        self.repository = repository
        self.stages = stages or StageMachine(repository)

    def _resolve_lead(self, command: OwnerCommand) -> Optional[Lead]:
        if command.phone:
            return self.repository.find_lead_by_phone(command.phone)
        if command.action == "quote":
            return self.repository.latest_lead_in_stage(Stage.AWAITING_OWNER_QUOTE)
        return None

    def handle(self, text: str) -> OwnerOutcome:
        command = parse_owner_command(text)
        if command.action == "invalid":
            return OwnerOutcome(reply=compose_owner("usage"), action="invalid")
        if command.action in ("won", "lost") and not command.phone:
            return OwnerOutcome(reply=compose_owner("usage"), action="invalid")

        lead = self._resolve_lead(command)
        if lead is None:
            target = f"for {command.phone}" if command.phone else "awaiting a quote"
            return OwnerOutcome(reply=compose_owner("no_lead", {"target": target}), action="no_lead")

        if command.action in ("won", "lost"):
            closed = self.stages.close(lead, won=command.action == "won")
            return OwnerOutcome(
                reply=compose_owner("closed", {"phone": lead.phone, "stage": closed.stage.value}),
                action=command.action,
                lead_id=lead.id,
            )
        return self._send_quote(lead, command.hours or 0)

    def _send_quote(self, lead: Lead, hours: int) -> OwnerOutcome:
        body = compose_quote(hours)
        try:
            sid = self.messenger.send(lead.phone, body)
        except ProviderError as exc:
            logger.error("Quote send to %s failed: %s", lead.phone, exc)
            return OwnerOutcome(reply=compose_owner("send_failed", {"phone": lead.phone}), action="send_failed", lead_id=lead.id)

        try:
            self.repository.insert_message(
                lead_id=lead.id, direction=Direction.OUTBOUND, body=body, channel=Channel.SMS, provider_sid=sid
            )
        except PersistenceError as exc:
            logger.error("Quote to %s sent (sid=%s) but not logged: %s", lead.phone, sid, exc)

        try:
            self.stages.advance(lead, Stage.QUOTE_SENT)
        except PersistenceError as exc:
            logger.warning("Stage update after quote failed for lead %s: %s", lead.id, exc)

        schedule_quote_followup(lead.id, repository=self.repository)

        breakdown = quote_breakdown(hours)
        return OwnerOutcome(
            reply=compose_owner("quote_confirm", {"phone": lead.phone, "hours": hours, "total": breakdown["total"]}),
            action="quote",
            lead_id=lead.id,
            details={"sid": sid, **breakdown},
        )
