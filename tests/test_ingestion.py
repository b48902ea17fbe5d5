import pytest
from unittest.mock import AsyncMock, patch

from models.enrollment import ContactState
from models.run import RunStatus
from models.settings import BusinessAutomationSettings

from conftest import BUSINESS_ID, pending_jobs


@pytest.fixture
def simple_workflow(make_workflow):
    def _make(**fields):
        return make_workflow(nodes=[("t", "trigger"), ("a", "action", "create_task")], edges=[("t", "a")], **fields)
    return _make


# --- Scenario B: duplicate webhook delivery ---

@pytest.mark.asyncio
async def test_duplicate_lead_inside_window_is_dropped(engine, store, clock, dispatcher):
    engine.install_recipe_pack(BUSINESS_ID, "contractor", "contractor_basic")

    first = await engine.submit_event(BUSINESS_ID, "lead.capture", {"source": "form"},
                                      dedupe_key="lead-42", contact_id="c-1")
    clock.advance(minutes=5)
    second = await engine.submit_event(BUSINESS_ID, "lead.capture", {"source": "form"},
                                       dedupe_key="lead-42", contact_id="c-1")

    assert len(first.run_ids) == 1
    assert not first.duplicate
    assert second.duplicate
    assert second.duplicate_of == first.event_id
    assert second.run_ids == []
    assert store.get_event(second.event_id).processed
    assert dispatcher.execute.call_count == 1
    assert store.get_enrollment("c-1", store.get_run(first.run_ids[0]).workflow_id).enrollment_count == 1


@pytest.mark.asyncio
async def test_same_key_outside_window_is_a_new_event(engine, clock, simple_workflow):
    simple_workflow()

    first = await engine.submit_event(BUSINESS_ID, "booking.create", dedupe_key="k-1")
    clock.advance(minutes=61)
    second = await engine.submit_event(BUSINESS_ID, "booking.create", dedupe_key="k-1")

    assert not second.duplicate
    assert len(first.run_ids) == len(second.run_ids) == 1


@pytest.mark.asyncio
async def test_business_dedupe_window_overrides_default(engine, store, clock, simple_workflow):
    store.save_settings(BusinessAutomationSettings(business_id=BUSINESS_ID, dedupe_window_minutes=10))
    simple_workflow()

    await engine.submit_event(BUSINESS_ID, "booking.create", dedupe_key="k-1")
    clock.advance(minutes=11)
    second = await engine.submit_event(BUSINESS_ID, "booking.create", dedupe_key="k-1")

    assert not second.duplicate


@pytest.mark.asyncio
async def test_dedupe_key_is_derived_when_missing(engine, store, simple_workflow):
    simple_workflow()

    first = await engine.submit_event(BUSINESS_ID, "booking.create", {"booking_id": 7})
    second = await engine.submit_event(BUSINESS_ID, "booking.create", {"booking_id": 7})
    third = await engine.submit_event(BUSINESS_ID, "booking.create", {"booking_id": 8})

    assert store.get_event(first.event_id).dedupe_key.startswith(f"{BUSINESS_ID}:booking.create:")
    assert second.duplicate
    assert not third.duplicate


@pytest.mark.asyncio
async def test_disabled_automations_record_event_without_runs(engine, store, dispatcher, simple_workflow):
    store.save_settings(BusinessAutomationSettings(business_id=BUSINESS_ID, automations_enabled=False))
    simple_workflow()

    result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1")

    assert result.run_ids == []
    assert store.get_event(result.event_id).processed
    dispatcher.execute.assert_not_called()


@pytest.mark.asyncio
async def test_event_without_matching_workflow_is_processed(engine, store, simple_workflow):
    simple_workflow(intents=("order.created",))
    simple_workflow(active=False)

    result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1")

    assert result.run_ids == []
    assert store.get_event(result.event_id).processed


@pytest.mark.asyncio
async def test_contact_id_can_come_from_payload(engine, store, simple_workflow):
    simple_workflow()
    result = await engine.submit_event(BUSINESS_ID, "booking.create", {"contactId": "c-2"})
    assert store.get_run(result.run_ids[0]).contact_id == "c-2"


# --- Enrollment rules ---

@pytest.mark.asyncio
async def test_suppression_tag_blocks_enrollment(engine, contacts, simple_workflow):
    contacts.upsert(ContactState(id="c-2", business_id=BUSINESS_ID, tags=["do_not_contact"]))
    simple_workflow(suppression_tags=["do_not_contact"])

    blocked = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-2")
    allowed = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1")

    assert blocked.run_ids == []
    assert len(allowed.run_ids) == 1


@pytest.mark.asyncio
async def test_suppression_stage_blocks_enrollment(engine, contacts, simple_workflow):
    contacts.upsert(ContactState(id="c-2", business_id=BUSINESS_ID, stage="customer"))
    simple_workflow(suppression_stages=["customer"])

    result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-2")

    assert result.run_ids == []


@pytest.mark.asyncio
async def test_contact_enrolls_once_by_default(engine, simple_workflow):
    simple_workflow()

    first = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 1}, contact_id="c-1")
    second = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 2}, contact_id="c-1")
    other = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 3}, contact_id="c-2")

    assert len(first.run_ids) == 1
    assert second.run_ids == []
    assert len(other.run_ids) == 1


@pytest.mark.asyncio
async def test_max_enrollments_per_contact(engine, store, clock, simple_workflow):
    simple_workflow(id="wf-max", max_enrollments_per_contact=2, reenroll_after_days=0)

    results = []
    for n in range(3):
        results.append(await engine.submit_event(BUSINESS_ID, "booking.create", {"n": n}, contact_id="c-1"))
        clock.advance(minutes=1)

    assert [len(r.run_ids) for r in results] == [1, 1, 0]
    assert store.get_enrollment("c-1", "wf-max").enrollment_count == 2


@pytest.mark.asyncio
async def test_reenrollment_waits_for_cooldown(engine, clock, simple_workflow):
    simple_workflow(max_enrollments_per_contact=None, reenroll_after_days=7)

    first = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 1}, contact_id="c-1")
    clock.advance(days=1)
    too_soon = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 2}, contact_id="c-1")
    clock.advance(days=7)
    later = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 3}, contact_id="c-1")

    assert len(first.run_ids) == 1
    assert too_soon.run_ids == []
    assert len(later.run_ids) == 1


@pytest.mark.asyncio
async def test_anonymous_events_skip_enrollment_limits(engine, store, simple_workflow):
    simple_workflow()

    first = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 1})
    second = await engine.submit_event(BUSINESS_ID, "booking.create", {"n": 2})

    assert len(first.run_ids) == len(second.run_ids) == 1
    assert store.get_run(first.run_ids[0]).idempotency_key.endswith(f":anonymous:{first.event_id}")


@pytest.mark.asyncio
async def test_matching_workflows_enroll_in_priority_order(engine, store, simple_workflow):
    simple_workflow(id="wf-low", priority=90)
    simple_workflow(id="wf-high", priority=10)

    result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1", drive=False)

    assert [store.get_run(r).workflow_id for r in result.run_ids] == ["wf-high", "wf-low"]
    assert all(store.get_run(r).status == RunStatus.PENDING for r in result.run_ids)


@pytest.mark.asyncio
async def test_broken_workflow_is_skipped_at_enrollment(engine, make_workflow, simple_workflow, store):
    make_workflow(nodes=[("a", "action", "create_task")], edges=[], id="wf-broken")
    simple_workflow(id="wf-ok")

    result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1")

    assert [store.get_run(r).workflow_id for r in result.run_ids] == ["wf-ok"]


@pytest.mark.asyncio
async def test_enrolling_same_event_twice_creates_no_new_run(engine, store, simple_workflow):
    simple_workflow(id="wf-again", max_enrollments_per_contact=None, reenroll_after_days=0)
    result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1")
    event = store.get_event(result.event_id)

    assert engine.intake.matcher.enroll(event) == []
    assert store.get_enrollment("c-1", "wf-again").enrollment_count == 1


@pytest.mark.asyncio
async def test_failed_inline_drive_is_finished_by_a_later_poll(engine, store, clock, dispatcher, simple_workflow):
    simple_workflow()

    with patch.object(engine.executor, "drive", AsyncMock(side_effect=RuntimeError("boom"))):
        result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1")

    assert len(result.run_ids) == 1
    run_id = result.run_ids[0]
    assert store.get_run(run_id).status == RunStatus.PENDING
    assert store.get_event(result.event_id).processed
    trigger_job = pending_jobs(store, run_id)[0]
    assert trigger_job.node_id == "t"
    assert trigger_job.attempts == 1

    clock.advance(minutes=1)
    stats = await engine.poll()

    assert stats["completed"] == 1
    assert store.get_run(run_id).status == RunStatus.COMPLETED
    assert dispatcher.execute.call_count == 1


@pytest.mark.asyncio
async def test_undriven_run_is_picked_up_by_workers(engine, store, dispatcher, simple_workflow):
    simple_workflow()

    result = await engine.submit_event(BUSINESS_ID, "booking.create", contact_id="c-1", drive=False)
    run_id = result.run_ids[0]
    assert [j.node_id for j in pending_jobs(store, run_id)] == ["t"]

    stats = await engine.poll()

    assert stats["claimed"] == 1
    assert store.get_run(run_id).status == RunStatus.COMPLETED
    assert pending_jobs(store, run_id) == []
