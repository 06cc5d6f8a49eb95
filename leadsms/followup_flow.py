"""
Follow-Up Flow
--------------
Schedules the day-after nudge once a quote goes out. Sending is the
dispatcher's job; this module only writes the Followups row.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from leadsms.config import settings
from leadsms.datastore import REPOSITORY, Repository
from leadsms.errors import PersistenceError
from leadsms.runtime import get_logger, utc_now
from leadsms.schema import Followup, FollowupKind

logger = get_logger(__name__)


def quote_followup_due(now: Optional[datetime] = None, delay_hours: Optional[int] = None) -> datetime:
    hours = settings().FOLLOWUP_DELAY_HOURS if delay_hours is None else delay_hours
    return (now or utc_now()) + timedelta(hours=hours)


def schedule_quote_followup(
    lead_id: str,
    *,
    repository: Repository = REPOSITORY,
    now: Optional[datetime] = None,
) -> Optional[Followup]:
    """Best-effort: a failed insert is logged and returns None."""
    due = quote_followup_due(now)
    try:
        followup = repository.insert_followup(lead_id=lead_id, kind=FollowupKind.QUOTE_D1, due_at=due)
    except PersistenceError as exc:
        logger.warning("Could not schedule quote follow-up for lead %s: %s", lead_id, exc)
        return None
    logger.info("⏳ Scheduled %s for lead %s at %s", FollowupKind.QUOTE_D1.value, lead_id, due.isoformat())
    return followup
