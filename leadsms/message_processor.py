"""
Inbound Message Processor
-------------------------
One provider delivery in, at most one customer reply out.

Responsible for:
 - routing owner commands away from the customer flow
 - lead upsert, media ingestion and the inbound audit row
 - stage advance, intent tagging, assistant thread attachment (best-effort)
 - the single outbound reply and its audit row
 - owner alerts (best-effort)

Every call returns a uniform envelope: {"ok": bool, ...}. Business failures
never raise out of process().
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Optional

from leadsms.ai.assistant import AssistantResponder, build_assistant
from leadsms.ai.nlu import OpenAIIntentClassifier
from leadsms.config import settings
from leadsms.datastore import REPOSITORY, Repository
from leadsms.errors import PersistenceError, ProviderError, ValidationError
from leadsms.idempotency import IdempotencyStore, build_idempotency_store
from leadsms.intent import IntentClassifier, classify_intent
from leadsms.media import GalleryService, MediaStorage, build_storage, ingest_media
from leadsms.messaging import Messenger, build_messenger
from leadsms.owner_commands import OwnerCommandHandler
from leadsms.runtime import get_logger, normalize_e164
from leadsms.schema import LEAD_FIELDS, UNKNOWN_INTENT, Channel, Direction, InboundEvent, Lead
from leadsms.stages import StageMachine, propose_stage
from leadsms.templates import compose, compose_owner, lint_copy

logger = get_logger(__name__)


class MessageProcessor:
    def __init__(
        self,
        messenger: Messenger,
        storage: MediaStorage,
        repository: Repository = REPOSITORY,
        *,
        owner_phone: Optional[str] = None,
        nlu: Optional[IntentClassifier] = None,
        assistant: Optional[AssistantResponder] = None,
        idempotency: Optional[IdempotencyStore] = None,
        gallery: Optional[GalleryService] = None,
    ) -> None:
        self.messenger = messenger
        self.storage = storage
        self.repository = repository
        self.owner_phone = normalize_e164(owner_phone) if owner_phone else ""
        self.nlu = nlu
        self.assistant = assistant
        self.idempotency = idempotency
        self.gallery = gallery or GalleryService(repository)
        self.stages = StageMachine(repository)
        self.owner_commands = OwnerCommandHandler(messenger, repository, self.stages)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def process(self, event: InboundEvent) -> Dict[str, Any]:
        phone = normalize_e164(event.from_number)
        if not phone:
            return {"ok": False, "error": str(ValidationError("Missing sender"))}

        if self.idempotency is not None and self.idempotency.seen(event.message_sid):
            logger.info("Duplicate delivery %s from %s ignored", event.message_sid, phone)
            return {"ok": True, "duplicate": True, "sid": event.message_sid}

        try:
            if self.owner_phone and phone == self.owner_phone:
                return self._handle_owner(event)
            return self._handle_customer(phone, event)
        except Exception as exc:
            logger.exception("Inbound processing failed for %s", phone)
            return {"ok": False, "error": str(exc)}

    # ------------------------------------------------------------------
    # Owner channel
    # ------------------------------------------------------------------
    def _log_owner(self, direction: Direction, body: str, sid: Optional[str] = None) -> None:
        try:
            self.repository.insert_message(
                lead_id=None, direction=direction, body=body, channel=Channel.OWNER, provider_sid=sid
            )
        except PersistenceError as exc:
            logger.warning("Owner-channel %s message not logged: %s", direction.value, exc)

    def _send_owner(self, body: str) -> Optional[str]:
        try:
            sid = self.messenger.send(self.owner_phone, body)
        except ProviderError as exc:
            logger.warning("Owner message failed: %s", exc)
            return None
        self._log_owner(Direction.OUTBOUND, body, sid)
        return sid

    def _handle_owner(self, event: InboundEvent) -> Dict[str, Any]:
        self._log_owner(Direction.INBOUND, event.body, event.message_sid)
        outcome = self.owner_commands.handle(event.body)
        sid = self._send_owner(outcome.reply)
        logger.info("Owner command '%s' -> %s", event.body, outcome.action)
        return {
            "ok": True,
            "owner": True,
            "action": outcome.action,
            "lead_id": outcome.lead_id,
            "reply": outcome.reply,
            "sid": sid,
            "details": outcome.details,
        }

    # ------------------------------------------------------------------
    # Customer flow
    # ------------------------------------------------------------------
    def _handle_customer(self, phone: str, event: InboundEvent) -> Dict[str, Any]:
        try:
            lead = self.stages.upsert_lead(phone)
        except PersistenceError as exc:
            logger.error("Lead upsert failed for %s: %s", phone, exc)
            return {"ok": False, "error": str(exc)}

        media_keys: List[str] = []
        if event.has_media:
            media_keys = ingest_media(self.messenger, self.storage, phone, event.media_urls)

        try:
            self.repository.insert_message(
                lead_id=lead.id,
                direction=Direction.INBOUND,
                body=event.body,
                channel=Channel.MMS if event.has_media else Channel.SMS,
                provider_sid=event.message_sid,
                media_paths=media_keys,
            )
        except PersistenceError as exc:
            logger.error("Inbound message for %s not logged: %s", phone, exc)
            return {"ok": False, "lead_id": lead.id, "error": str(exc)}

        lead = self._advance(lead, event.has_media)
        intent = classify_intent(event.body, has_media=event.has_media, stage=lead.stage, nlu=self.nlu)
        self._tag_intent(lead, intent)

        reply = self._compose_reply(lead, intent, event.body)
        try:
            sid = self.messenger.send(phone, reply, from_number=event.to_number or None)
        except ProviderError as exc:
            logger.error("Reply to %s failed: %s", phone, exc)
            self._alert_owner(lead, event, media_keys)
            return {"ok": False, "lead_id": lead.id, "intent": intent, "error": str(exc)}

        try:
            self.repository.insert_message(
                lead_id=lead.id, direction=Direction.OUTBOUND, body=reply, channel=Channel.SMS, provider_sid=sid
            )
        except PersistenceError as exc:
            logger.error("Reply to %s sent (sid=%s) but not logged: %s", phone, sid, exc)

        self._alert_owner(lead, event, media_keys)
        return {
            "ok": True,
            "lead_id": lead.id,
            "stage": lead.stage.value,
            "intent": intent,
            "reply": reply,
            "sid": sid,
            "media": len(media_keys),
        }

    def _advance(self, lead: Lead, has_media: bool) -> Lead:
        try:
            return self.stages.advance(lead, propose_stage(lead, has_media))
        except PersistenceError as exc:
            logger.warning("Stage update failed for lead %s: %s", lead.id, exc)
            return lead

    def _tag_intent(self, lead: Lead, intent: str) -> None:
        try:
            self.repository.update_lead(lead.id, {LEAD_FIELDS.last_intent: intent})
            lead.last_intent = intent
        except PersistenceError as exc:
            logger.warning("Intent tag failed for lead %s: %s", lead.id, exc)

    def _compose_reply(self, lead: Lead, intent: str, body: str) -> str:
        if intent != UNKNOWN_INTENT or self.assistant is None:
            return compose(lead.stage, intent)

        outcome = self.assistant.reply(body, lead.phone, lead.thread_id)
        if outcome.thread_id and outcome.thread_id != lead.thread_id:
            try:
                self.repository.update_lead(lead.id, {LEAD_FIELDS.thread_id: outcome.thread_id})
                lead.thread_id = outcome.thread_id
            except PersistenceError as exc:
                logger.warning("Thread id not saved for lead %s: %s", lead.id, exc)

        text = lint_copy(outcome.reply or "")
        return text or compose(lead.stage, "fallback")

    def _alert_owner(self, lead: Lead, event: InboundEvent, media_keys: List[str]) -> None:
        if not self.owner_phone:
            return
        if event.has_media:
            gallery_url = self.gallery.link_for(lead.id) if media_keys else None
            body = compose_owner(
                "photo_alert",
                {"count": len(media_keys), "phone": lead.phone, "gallery_url": gallery_url or "unavailable"},
            )
        else:
            body = compose_owner("alert", {"phone": lead.phone, "stage": lead.stage.value, "body": event.body})
        self._send_owner(body)


def build_processor() -> MessageProcessor:
    return MessageProcessor(
        build_messenger(),
        build_storage(),
        REPOSITORY,
        owner_phone=settings().OWNER_PHONE,
        nlu=OpenAIIntentClassifier(),
        assistant=build_assistant(),
        idempotency=build_idempotency_store(),
    )


@lru_cache(maxsize=1)
def get_processor() -> MessageProcessor:
    """FastAPI dependency; tests swap it through app.dependency_overrides."""
    return build_processor()
