"""Airtable datastore for leads, messages, follow-ups and gallery tokens, with an in-memory fallback."""

from __future__ import annotations

import itertools
import json
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests
from pyairtable import Api

from leadsms.config import settings
from leadsms.errors import PersistenceError
from leadsms.runtime import get_logger, iso_now, parse_iso, retry, to_iso, utc_now
from leadsms.schema import (
    FOLLOWUP_FIELDS,
    LEAD_FIELDS,
    MESSAGE_FIELDS,
    TOKEN_FIELDS,
    Channel,
    Direction,
    Followup,
    FollowupKind,
    GalleryToken,
    Lead,
    Message,
    Stage,
    coerce_stage,
)

logger = get_logger(__name__)

_FORMULA_TERM = re.compile(r"\{([^}]+)\}\s*=\s*'((?:[^'\\]|\\.)*)'")


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def _new_record(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        record_id = f"rec_{next(self._sequence)}"
        record = {"id": record_id, "createdTime": iso_now(), "fields": dict(fields)}
        self._records[record_id] = record
        return record

    def create(self, fields: Dict[str, Any]):
        with self._lock:
            return self._copy(self._new_record(fields))

    def update(self, record_id: str, fields: Dict[str, Any]):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            self._records[record_id]["fields"].update(fields)
            return self._copy(self._records[record_id])

    def get(self, record_id: str):
        record = self._records.get(record_id)
        return self._copy(record) if record else None

    def all(self, **kwargs):
        records = list(self._records.values())
        formula = kwargs.get("formula")
        max_records = kwargs.get("max_records")
        if formula:
            records = [rec for rec in records if _formula_match(rec, formula)]
        if max_records is not None:
            records = records[: int(max_records)]
        return [self._copy(r) for r in records]

    def batch_upsert(self, records: List[Dict[str, Any]], key_fields: List[str], **_kwargs):
        created: List[str] = []
        updated: List[str] = []
        out: List[Dict[str, Any]] = []
        with self._lock:
            for item in records:
                fields = dict(item.get("fields") or {})
                match = next(
                    (
                        rec
                        for rec in self._records.values()
                        if all(rec["fields"].get(k) == fields.get(k) for k in key_fields)
                    ),
                    None,
                )
                if match:
                    match["fields"].update(fields)
                    updated.append(match["id"])
                    out.append(self._copy(match))
                else:
                    rec = self._new_record(fields)
                    created.append(rec["id"])
                    out.append(self._copy(rec))
        return {"createdRecords": created, "updatedRecords": updated, "records": out}

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        return {**record, "fields": dict(record["fields"])}


def _formula_match(record: Dict[str, Any], formula: str) -> bool:
    matches = _FORMULA_TERM.findall(formula)
    if not matches:
        return False
    fields = record.get("fields", {})
    for field_name, expected in matches:
        if str(fields.get(field_name)) != expected.replace("\\'", "'"):
            return False
    return True


def eq_formula(**terms: str) -> str:
    """Build an Airtable equality formula (AND-ed when several terms are given)."""
    parts = []
    for field_name, value in terms.items():
        escaped = str(value).replace("'", "\\'")
        parts.append(f"{{{field_name}}}='{escaped}'")
    return parts[0] if len(parts) == 1 else "AND(" + ",".join(parts) + ")"


@dataclass
class TableHandle:
    table: Any
    in_memory: bool
    base_id: Optional[str]
    table_name: str
    last_error: Optional[Dict[str, Any]] = None


# ============================================================
# CONNECTOR
# ============================================================


class DataConnector:
    """Lazy pyairtable connector with in-memory fallback."""

    def __init__(self) -> None:
        self._tables: Dict[Tuple[str, str], TableHandle] = {}
        self._lock = threading.Lock()

    def _table(self, table_name: str) -> TableHandle:
        s = settings()
        key = (s.AIRTABLE_BASE_ID or "memory", table_name)
        with self._lock:
            if key in self._tables:
                return self._tables[key]

            if not s.FORCE_IN_MEMORY and s.AIRTABLE_API_KEY and s.AIRTABLE_BASE_ID:
                table = Api(s.AIRTABLE_API_KEY).table(s.AIRTABLE_BASE_ID, table_name)
                handle = TableHandle(table, False, s.AIRTABLE_BASE_ID, table_name)
            else:
                handle = TableHandle(InMemoryTable(table_name), True, None, table_name)
            self._tables[key] = handle
            return handle

    def leads(self) -> TableHandle:
        return self._table(settings().LEADS_TABLE)

    def messages(self) -> TableHandle:
        return self._table(settings().MESSAGES_TABLE)

    def followups(self) -> TableHandle:
        return self._table(settings().FOLLOWUPS_TABLE)

    def gallery_tokens(self) -> TableHandle:
        return self._table(settings().GALLERY_TOKENS_TABLE)

    def reset(self) -> None:
        with self._lock:
            self._tables.clear()


CONNECTOR = DataConnector()


# ============================================================
# LOW LEVEL HELPERS
# ============================================================


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in (payload or {}).items() if v not in (None, "", [], {}, ())}


def _log_airtable_exception(handle: TableHandle, exc: Exception, action: str) -> None:
    response = getattr(exc, "response", None)
    payload: Dict[str, Any] = {"action": action, "error": str(exc), "timestamp": iso_now()}
    if response is not None:
        status = getattr(response, "status_code", "unknown")
        payload.update({"status": status, "body": getattr(response, "text", "")})
        logger.error("Airtable %s failed [%s] status=%s body=%s", action, handle.table_name, status, payload["body"])
    else:
        logger.error("Airtable %s failed [%s]: %s", action, handle.table_name, exc)
    handle.last_error = payload


def _call(handle: TableHandle, action: str, func):
    """Run one table call, retrying dropped connections; any failure surfaces as PersistenceError."""
    try:
        return retry(
            func,
            retries=2,
            base_delay=0.5,
            exceptions=(requests.exceptions.ConnectionError,),
            logger=logger,
        )
    except Exception as exc:
        _log_airtable_exception(handle, exc, action)
        raise PersistenceError(f"{handle.table_name} {action} failed: {exc}") from exc


def _all(handle: TableHandle, **kwargs) -> List[Dict[str, Any]]:
    return list(_call(handle, "all", lambda: handle.table.all(**kwargs)))


def _get(handle: TableHandle, record_id: str) -> Optional[Dict[str, Any]]:
    if not record_id:
        return None
    if handle.in_memory:
        return handle.table.get(record_id)
    try:
        return handle.table.get(record_id)
    except requests.exceptions.HTTPError as exc:
        if getattr(exc.response, "status_code", None) == 404:
            return None
        _log_airtable_exception(handle, exc, "get")
        raise PersistenceError(f"{handle.table_name} get failed: {exc}") from exc
    except Exception as exc:
        _log_airtable_exception(handle, exc, "get")
        raise PersistenceError(f"{handle.table_name} get failed: {exc}") from exc


def _create(handle: TableHandle, fields: Dict[str, Any]) -> Dict[str, Any]:
    body = _compact(fields)
    return _call(handle, "create", lambda: handle.table.create(body))


def _update(handle: TableHandle, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    return _call(handle, "update", lambda: handle.table.update(record_id, fields))


# ============================================================
# RECORD MAPPING
# ============================================================


def _ts(value: Any) -> Optional[datetime]:
    return parse_iso(value) if value else None


def _lead_from_record(record: Dict[str, Any]) -> Lead:
    f = record.get("fields", {}) or {}
    return Lead(
        id=record["id"],
        phone=f.get(LEAD_FIELDS.phone, ""),
        stage=coerce_stage(f.get(LEAD_FIELDS.stage)),
        name=f.get(LEAD_FIELDS.name),
        thread_id=f.get(LEAD_FIELDS.thread_id),
        last_intent=f.get(LEAD_FIELDS.last_intent),
        created_at=_ts(f.get(LEAD_FIELDS.created_at) or record.get("createdTime")),
        updated_at=_ts(f.get(LEAD_FIELDS.updated_at) or f.get(LEAD_FIELDS.created_at) or record.get("createdTime")),
    )


def _message_from_record(record: Dict[str, Any]) -> Message:
    f = record.get("fields", {}) or {}
    raw_paths = f.get(MESSAGE_FIELDS.media_paths)
    try:
        paths = json.loads(raw_paths) if raw_paths else []
    except (TypeError, ValueError):
        paths = []
    return Message(
        id=record["id"],
        lead_id=f.get(MESSAGE_FIELDS.lead_id),
        direction=Direction(f.get(MESSAGE_FIELDS.direction, Direction.INBOUND.value)),
        body=f.get(MESSAGE_FIELDS.body, ""),
        channel=Channel(f.get(MESSAGE_FIELDS.channel, Channel.SMS.value)),
        provider_sid=f.get(MESSAGE_FIELDS.provider_sid),
        media_paths=list(paths),
        created_at=_ts(f.get(MESSAGE_FIELDS.created_at) or record.get("createdTime")),
    )


def _followup_from_record(record: Dict[str, Any]) -> Followup:
    f = record.get("fields", {}) or {}
    return Followup(
        id=record["id"],
        lead_id=f.get(FOLLOWUP_FIELDS.lead_id, ""),
        kind=FollowupKind(f.get(FOLLOWUP_FIELDS.kind, FollowupKind.QUOTE_D1.value)),
        due_at=_ts(f.get(FOLLOWUP_FIELDS.due_at)) or utc_now(),
        sent_at=_ts(f.get(FOLLOWUP_FIELDS.sent_at)),
    )


# ============================================================
# REPOSITORY
# ============================================================


class Repository:
    """Lead / Message / Followup / GalleryToken store on top of the connector."""

    def __init__(self, connector: DataConnector = CONNECTOR) -> None:
        self.connector = connector

    # Leads
    def upsert_lead(self, phone: str) -> Lead:
        """Get-or-create by phone. An existing lead comes back untouched."""
        if not phone:
            raise PersistenceError("Cannot upsert a lead without a phone")
        h = self.connector.leads()
        result = _call(
            h,
            "upsert",
            lambda: h.table.batch_upsert([{"fields": {LEAD_FIELDS.phone: phone}}], key_fields=[LEAD_FIELDS.phone]),
        )
        records = result.get("records") or []
        if not records:
            raise PersistenceError(f"Lead upsert for {phone} returned no record")
        record = records[0]
        if record["id"] in (result.get("createdRecords") or []):
            now = iso_now()
            record = _update(
                h,
                record["id"],
                {
                    LEAD_FIELDS.stage: Stage.COLD.value,
                    LEAD_FIELDS.created_at: now,
                    LEAD_FIELDS.updated_at: now,
                },
            )
            logger.info("Created lead %s for %s", record["id"], phone)
        return _lead_from_record(record)

    def get_lead(self, lead_id: str) -> Optional[Lead]:
        record = _get(self.connector.leads(), lead_id)
        return _lead_from_record(record) if record else None

    def find_lead_by_phone(self, phone: str) -> Optional[Lead]:
        if not phone:
            return None
        records = _all(self.connector.leads(), formula=eq_formula(**{LEAD_FIELDS.phone: phone}), max_records=1)
        return _lead_from_record(records[0]) if records else None

    def latest_lead_in_stage(self, stage: Stage) -> Optional[Lead]:
        """Most recently updated lead currently in ``stage``."""
        records = _all(self.connector.leads(), formula=eq_formula(**{LEAD_FIELDS.stage: stage.value}))
        leads = [_lead_from_record(r) for r in records]
        if not leads:
            return None
        return max(leads, key=lambda lead: lead.updated_at or datetime.min.replace(tzinfo=timezone.utc))

    def update_lead(self, lead_id: str, fields: Dict[str, Any]) -> Lead:
        payload = dict(fields)
        payload[LEAD_FIELDS.updated_at] = iso_now()
        return _lead_from_record(_update(self.connector.leads(), lead_id, payload))

    # Messages (append-only)
    def insert_message(
        self,
        *,
        lead_id: Optional[str],
        direction: Direction,
        body: str,
        channel: Channel = Channel.SMS,
        provider_sid: Optional[str] = None,
        media_paths: Optional[List[str]] = None,
    ) -> Message:
        fields = {
            MESSAGE_FIELDS.lead_id: lead_id,
            MESSAGE_FIELDS.direction: direction.value,
            MESSAGE_FIELDS.body: body,
            MESSAGE_FIELDS.channel: channel.value,
            MESSAGE_FIELDS.provider_sid: provider_sid,
            MESSAGE_FIELDS.media_paths: json.dumps(media_paths) if media_paths else None,
            MESSAGE_FIELDS.created_at: iso_now(),
        }
        return _message_from_record(_create(self.connector.messages(), fields))

    def messages_for_lead(self, lead_id: str) -> List[Message]:
        records = _all(self.connector.messages(), formula=eq_formula(**{MESSAGE_FIELDS.lead_id: lead_id}))
        messages = [_message_from_record(r) for r in records]
        return sorted(messages, key=lambda m: m.created_at or utc_now())

    def owner_messages(self) -> List[Message]:
        records = _all(self.connector.messages(), formula=eq_formula(**{MESSAGE_FIELDS.channel: Channel.OWNER.value}))
        return [_message_from_record(r) for r in records]

    # Followups
    def insert_followup(self, *, lead_id: str, kind: FollowupKind, due_at: datetime) -> Followup:
        fields = {
            FOLLOWUP_FIELDS.lead_id: lead_id,
            FOLLOWUP_FIELDS.kind: kind.value,
            FOLLOWUP_FIELDS.due_at: to_iso(due_at),
            FOLLOWUP_FIELDS.created_at: iso_now(),
        }
        return _followup_from_record(_create(self.connector.followups(), fields))

    def followups_for_lead(self, lead_id: str) -> List[Followup]:
        records = _all(self.connector.followups(), formula=eq_formula(**{FOLLOWUP_FIELDS.lead_id: lead_id}))
        return [_followup_from_record(r) for r in records]

    # Gallery tokens
    def valid_gallery_token(self, lead_id: str, now: datetime) -> Optional[GalleryToken]:
        """Unexpired token with the latest expiry for the lead, if any."""
        records = _all(self.connector.gallery_tokens(), formula=eq_formula(**{TOKEN_FIELDS.lead_id: lead_id}))
        tokens = []
        for r in records:
            f = r.get("fields", {}) or {}
            expires = _ts(f.get(TOKEN_FIELDS.expires_at))
            if expires and expires > now and f.get(TOKEN_FIELDS.token):
                tokens.append(GalleryToken(token=f[TOKEN_FIELDS.token], lead_id=lead_id, expires_at=expires))
        return max(tokens, key=lambda t: t.expires_at) if tokens else None

    def insert_gallery_token(self, *, token: str, lead_id: str, expires_at: datetime) -> GalleryToken:
        _create(
            self.connector.gallery_tokens(),
            {
                TOKEN_FIELDS.token: token,
                TOKEN_FIELDS.lead_id: lead_id,
                TOKEN_FIELDS.expires_at: to_iso(expires_at),
                TOKEN_FIELDS.created_at: iso_now(),
            },
        )
        return GalleryToken(token=token, lead_id=lead_id, expires_at=expires_at)


REPOSITORY = Repository()


def reset_state() -> None:
    CONNECTOR.reset()
    logger.info("Datastore state and caches cleared.")
