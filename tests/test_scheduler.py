import asyncio
from datetime import timedelta

import pytest

from app.db import InMemoryKeyValueStore
from services.reminders.gateway import GatewayError, InMemoryNotificationGateway, reminder_id
from services.reminders.scheduler import ReminderScheduler
from services.treatments.store import TreatmentStore
from shared.contracts.enums import InjectionSite
from shared.contracts.frequency import FrequencyRule
from shared.contracts.models import TreatmentDraft, TreatmentPatch


class SlowGateway(InMemoryNotificationGateway):
    async def is_authorized(self) -> bool:
        await asyncio.sleep(1)
        return True


class BrokenListingGateway(InMemoryNotificationGateway):
    async def list_pending(self):
        raise GatewayError("notifier down")


def _setup(clock, gateway=None, count=10, timeout_seconds=5.0):
    store = TreatmentStore(InMemoryKeyValueStore(), clock=clock)
    gateway = gateway or InMemoryNotificationGateway(authorized=True)
    scheduler = ReminderScheduler(
        gateway,
        store.get_treatment,
        count=count,
        timeout_seconds=timeout_seconds,
        clock=clock,
    )
    return store, gateway, scheduler


def _add(store, frequency=None, name="Semaglutide"):
    return store.add_treatment(
        TreatmentDraft(
            name=name,
            dosage="0.5 mg",
            injection_site=InjectionSite.SUBCUTANEOUS,
            frequency=frequency or FrequencyRule.weekly(),
        )
    )


def test_count_must_be_positive(clock):
    with pytest.raises(ValueError):
        ReminderScheduler(InMemoryNotificationGateway(), lambda _: None, count=0, clock=clock)


def test_plan_for_new_treatment_starts_one_day_out(clock):
    store, _, scheduler = _setup(clock)
    treatment = _add(store, FrequencyRule.daily())

    planned = scheduler.plan(treatment)

    assert len(planned) == 10
    assert planned[0].fire_at == clock.now + timedelta(days=1)
    assert planned[-1].fire_at == clock.now + timedelta(days=10)
    assert [p.reminder_id for p in planned][:2] == [
        f"treatment-{treatment.id}-0",
        f"treatment-{treatment.id}-1",
    ]


def test_plan_anchors_on_last_administration(clock):
    store, _, scheduler = _setup(clock)
    treatment = _add(store)
    store.record_administration(treatment.id)

    planned = scheduler.plan(store.get_treatment(treatment.id))

    assert [p.fire_at - clock.now for p in planned] == [timedelta(days=7 * (i + 1)) for i in range(10)]


def test_plan_skips_instants_not_in_the_future(clock):
    store, _, scheduler = _setup(clock)
    treatment = _add(store, FrequencyRule.daily())
    store.record_administration(treatment.id, timestamp=clock.now - timedelta(days=3))

    planned = scheduler.plan(store.get_treatment(treatment.id))

    assert [p.sequence_index for p in planned] == list(range(3, 10))
    assert all(p.fire_at > clock.now for p in planned)


def test_plan_is_empty_for_inactive_and_as_needed(clock):
    store, _, scheduler = _setup(clock)
    inactive = store.set_active(_add(store).id, False)
    as_needed = _add(store, FrequencyRule.as_needed())

    assert scheduler.plan(inactive) == []
    assert scheduler.plan(as_needed) == []


def test_reconcile_schedules_the_batch_and_is_idempotent(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store)

    async def run():
        first = await scheduler.reconcile(treatment.id)
        second = await scheduler.reconcile(treatment.id)
        return first, second

    first, second = asyncio.run(run())

    assert first == second
    assert len(gateway.pending) == 10
    assert set(gateway.pending) == {reminder_id(treatment.id, i) for i in range(10)}
    payload = gateway.pending[reminder_id(treatment.id, 0)].payload
    assert payload.title == "Injection Reminder"
    assert payload.body == "Time for your Semaglutide injection (0.5 mg)"
    assert scheduler.cached(treatment.id) == first


def test_deactivation_cancels_all_pending(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store)

    async def run():
        await scheduler.reconcile(treatment.id)
        before = await scheduler.pending_count(treatment.id)
        store.set_active(treatment.id, False)
        await scheduler.reconcile(treatment.id)
        return before, await scheduler.pending_count(treatment.id)

    before, after = asyncio.run(run())

    assert before == 10
    assert after == 0
    assert scheduler.cached(treatment.id) == []


def test_frequency_change_replaces_reminders(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store)

    async def run():
        await scheduler.reconcile(treatment.id)
        store.update_treatment(treatment.id, TreatmentPatch(frequency=FrequencyRule.as_needed()))
        await scheduler.reconcile(treatment.id)

    asyncio.run(run())
    assert gateway.pending == {}


def test_unauthorized_gateway_schedules_nothing(clock):
    store, gateway, scheduler = _setup(clock, gateway=InMemoryNotificationGateway(authorized=False))
    treatment = _add(store)

    assert asyncio.run(scheduler.reconcile(treatment.id)) == []
    assert gateway.pending == {}


def test_gateway_timeout_degrades_to_not_authorized(clock):
    store, gateway, scheduler = _setup(clock, gateway=SlowGateway(authorized=True), timeout_seconds=0.01)
    treatment = _add(store)

    assert asyncio.run(scheduler.reconcile(treatment.id)) == []
    assert gateway.pending == {}


def test_gateway_errors_do_not_propagate(clock):
    store, gateway, scheduler = _setup(clock, gateway=BrokenListingGateway(authorized=True))
    treatment = _add(store)

    scheduled = asyncio.run(scheduler.reconcile(treatment.id))

    assert len(scheduled) == 10
    assert asyncio.run(scheduler.pending_count(treatment.id)) == 0


def test_reconcile_unknown_treatment_cancels_leftovers(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store)

    async def run():
        await scheduler.reconcile(treatment.id)
        store.delete_treatment(treatment.id)
        return await scheduler.reconcile(treatment.id)

    assert asyncio.run(run()) == []
    assert gateway.pending == {}


def test_schedule_next_replaces_batch_with_single_reminder(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store)
    store.record_administration(treatment.id)

    async def run():
        await scheduler.reconcile(treatment.id)
        return await scheduler.schedule_next(treatment.id)

    single = asyncio.run(run())

    assert single.reminder_id == f"treatment-{treatment.id}"
    assert single.fire_at == clock.now + timedelta(days=7)
    assert set(gateway.pending) == {single.reminder_id}


def test_schedule_next_skips_overdue_treatments(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store, FrequencyRule.daily())
    store.record_administration(treatment.id, timestamp=clock.now - timedelta(days=2))

    assert asyncio.run(scheduler.schedule_next(treatment.id)) is None
    assert gateway.pending == {}


def test_prune_orphans_leaves_known_treatments_alone(clock):
    store, gateway, scheduler = _setup(clock)
    kept = _add(store, name="Kept")
    gone = _add(store, name="Gone")

    async def run():
        await scheduler.reconcile_all([kept.id, gone.id])
        store.delete_treatment(gone.id)
        return await scheduler.prune_orphans(t.id for t in store.treatments)

    orphans = asyncio.run(run())

    assert orphans == {reminder_id(gone.id, i) for i in range(10)}
    assert all(rid.startswith(f"treatment-{kept.id}") for rid in gateway.pending)
    assert len(gateway.pending) == 10


def test_concurrent_reconciles_of_one_treatment_do_not_duplicate(clock):
    store, gateway, scheduler = _setup(clock, count=3)
    treatment = _add(store)

    async def run():
        await asyncio.gather(*(scheduler.reconcile(treatment.id) for _ in range(5)))
        return await scheduler.pending_count(treatment.id)

    assert asyncio.run(run()) == 3


def test_cancel_all_clears_gateway_and_cache(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store)

    async def run():
        await scheduler.reconcile(treatment.id)
        await scheduler.cancel_all()

    asyncio.run(run())
    assert gateway.pending == {}
    assert scheduler.cached(treatment.id) == []


def test_locks_are_released_once_idle(clock):
    store, gateway, scheduler = _setup(clock)
    treatment = _add(store)

    async def run():
        await asyncio.gather(*(scheduler.reconcile(treatment.id) for _ in range(3)))
        store.delete_treatment(treatment.id)
        await scheduler.reconcile(treatment.id)

    asyncio.run(run())

    assert treatment.id not in scheduler._locks
    assert gateway.pending == {}
