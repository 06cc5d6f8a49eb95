"""
Lead stage machine.

Automated transitions only move a lead forward in the funnel and never into
a closed stage. Closing is an explicit owner action (close()).
"""

from __future__ import annotations

from typing import Optional

from leadsms.datastore import REPOSITORY, Repository
from leadsms.runtime import get_logger
from leadsms.schema import CLOSED_STAGES, LEAD_FIELDS, STAGE_RANK, Lead, Stage

logger = get_logger(__name__)


def outranks(candidate: Stage, current: Stage) -> bool:
    return STAGE_RANK[candidate] > STAGE_RANK[current]


def propose_stage(lead: Lead, has_media: bool) -> Optional[Stage]:
    """Stage the customer flow would like to move to for one inbound message."""
    if has_media:
        return Stage.AWAITING_OWNER_QUOTE
    if lead.stage == Stage.COLD:
        return Stage.QUALIFYING
    return None


class StageMachine:
    def __init__(self, repository: Repository = REPOSITORY) -> None:
        self.repository = repository

    def upsert_lead(self, phone: str) -> Lead:
        return self.repository.upsert_lead(phone)

    def advance(self, lead: Lead, candidate: Optional[Stage]) -> Lead:
        """
        Move ``lead`` to ``candidate`` if that is strictly forward.

        The stored stage is re-read right before the write so a concurrent
        delivery that already moved the lead further is not undone.
        """
        if candidate is None or candidate in CLOSED_STAGES:
            return lead
        if not outranks(candidate, lead.stage):
            return lead

        fresh = self.repository.get_lead(lead.id) or lead
        if not outranks(candidate, fresh.stage):
            logger.info("Lead %s already at %s; skipping %s", lead.id, fresh.stage.value, candidate.value)
            return fresh

        updated = self.repository.update_lead(lead.id, {LEAD_FIELDS.stage: candidate.value})
        logger.info("Lead %s stage %s -> %s", lead.id, fresh.stage.value, candidate.value)
        return updated

    def close(self, lead: Lead, won: bool) -> Lead:
        stage = Stage.CLOSED_WON if won else Stage.CLOSED_LOST
        updated = self.repository.update_lead(lead.id, {LEAD_FIELDS.stage: stage.value})
        logger.info("Lead %s closed as %s", lead.id, stage.value)
        return updated
