import pytest

from leadsms.datastore import REPOSITORY, InMemoryTable, eq_formula
from leadsms.schema import LEAD_FIELDS, Lead, Stage
from leadsms.stages import StageMachine, outranks, propose_stage

PHONE = "+13135551212"


@pytest.fixture
def machine():
    return StageMachine(REPOSITORY)


def test_upsert_lead_is_idempotent(machine):
    first = machine.upsert_lead(PHONE)
    second = machine.upsert_lead(PHONE)

    assert first.id == second.id
    assert first.stage == Stage.COLD
    assert len(REPOSITORY.connector.leads().table.all()) == 1


def test_upsert_keeps_existing_stage(machine):
    lead = machine.upsert_lead(PHONE)
    machine.advance(lead, Stage.AWAITING_OWNER_QUOTE)

    again = machine.upsert_lead(PHONE)
    assert again.id == lead.id
    assert again.stage == Stage.AWAITING_OWNER_QUOTE


def test_advance_moves_forward(machine):
    lead = machine.upsert_lead(PHONE)
    lead = machine.advance(lead, Stage.QUALIFYING)
    assert lead.stage == Stage.QUALIFYING
    lead = machine.advance(lead, Stage.QUOTE_SENT)
    assert REPOSITORY.get_lead(lead.id).stage == Stage.QUOTE_SENT


@pytest.mark.parametrize("candidate", [Stage.COLD, Stage.QUALIFYING, Stage.AWAITING_OWNER_QUOTE, Stage.QUOTE_SENT])
def test_never_downgrades_from_quote_sent(machine, candidate):
    lead = machine.advance(machine.upsert_lead(PHONE), Stage.QUOTE_SENT)
    result = machine.advance(lead, candidate)
    assert result.stage == Stage.QUOTE_SENT
    assert REPOSITORY.get_lead(lead.id).stage == Stage.QUOTE_SENT


@pytest.mark.parametrize("closed", [Stage.CLOSED_WON, Stage.CLOSED_LOST])
def test_automated_advance_never_closes(machine, closed):
    lead = machine.upsert_lead(PHONE)
    assert machine.advance(lead, closed).stage == Stage.COLD
    assert REPOSITORY.get_lead(lead.id).stage == Stage.COLD


def test_close_is_explicit_and_sticks(machine):
    lead = machine.upsert_lead(PHONE)
    closed = machine.close(lead, won=False)
    assert closed.stage == Stage.CLOSED_LOST
    assert machine.advance(closed, Stage.AWAITING_OWNER_QUOTE).stage == Stage.CLOSED_LOST


def test_stale_copy_does_not_undo_newer_stage(machine):
    stale = machine.upsert_lead(PHONE)
    machine.advance(stale, Stage.QUOTE_SENT)

    # stale still says cold; the store says quote_sent
    result = machine.advance(stale, Stage.AWAITING_OWNER_QUOTE)
    assert result.stage == Stage.QUOTE_SENT
    assert REPOSITORY.get_lead(stale.id).stage == Stage.QUOTE_SENT


def test_propose_stage():
    cold = Lead(id="rec1", phone=PHONE, stage=Stage.COLD)
    qualifying = Lead(id="rec2", phone=PHONE, stage=Stage.QUALIFYING)

    assert propose_stage(cold, has_media=True) == Stage.AWAITING_OWNER_QUOTE
    assert propose_stage(cold, has_media=False) == Stage.QUALIFYING
    assert propose_stage(qualifying, has_media=False) is None
    assert outranks(Stage.AWAITING_OWNER_QUOTE, Stage.QUALIFYING)
    assert not outranks(Stage.CLOSED_WON, Stage.CLOSED_LOST)


def test_latest_lead_in_stage_uses_updated_at(machine):
    older = machine.advance(machine.upsert_lead("+13135550001"), Stage.AWAITING_OWNER_QUOTE)
    newer = machine.advance(machine.upsert_lead("+13135550002"), Stage.AWAITING_OWNER_QUOTE)
    table = REPOSITORY.connector.leads().table
    table.update(older.id, {LEAD_FIELDS.updated_at: "2026-01-01T00:00:00.000Z"})
    table.update(newer.id, {LEAD_FIELDS.updated_at: "2026-01-02T00:00:00.000Z"})

    assert REPOSITORY.latest_lead_in_stage(Stage.AWAITING_OWNER_QUOTE).id == newer.id
    assert REPOSITORY.latest_lead_in_stage(Stage.QUOTE_SENT) is None


def test_in_memory_formula_and_upsert():
    table = InMemoryTable("Leads")
    table.create({"Phone": "+1", "Stage": "cold"})
    table.create({"Phone": "+2", "Stage": "qualifying"})

    assert len(table.all(formula=eq_formula(Stage="cold"))) == 1
    assert len(table.all(formula=eq_formula(Phone="+2", Stage="qualifying"))) == 1
    assert table.all(formula=eq_formula(Phone="+2", Stage="cold")) == []

    result = table.batch_upsert([{"fields": {"Phone": "+1", "Name": "Sam"}}], key_fields=["Phone"])
    assert result["createdRecords"] == []
    assert result["records"][0]["fields"]["Name"] == "Sam"
