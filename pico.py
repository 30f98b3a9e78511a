from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from app.db import InMemoryKeyValueStore, KeyValueStore, SqlKeyValueStore
from services.reminders.gateway import (
    GatewayError,
    HttpNotificationGateway,
    InMemoryNotificationGateway,
    NotificationGateway,
)
from services.reminders.scheduler import PendingReminder, ReminderScheduler
from services.treatments.store import TreatmentStore
from shared.clock import Clock, utc_now
from shared.contracts.enums import InjectionSite
from shared.contracts.models import (
    AdministrationPatch,
    AdministrationRecord,
    ReminderPayload,
    Treatment,
    TreatmentDraft,
    TreatmentPatch,
)
from shared.settings import Settings

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DueStatus:
    treatment_id: str
    next_due_at: Optional[datetime]
    is_overdue: bool


class TreatmentFlow:
    """Command facade: mutate the store, then reconcile the affected reminders.

    Store calls run in a worker thread; with a SQL key/value store they block
    on disk I/O and must stay off the event loop.
    """

    def __init__(
        self,
        store: TreatmentStore,
        scheduler: ReminderScheduler,
        authorization_timeout_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.authorization_timeout_seconds = authorization_timeout_seconds

    # Treatments
    async def add_treatment(self, draft: TreatmentDraft) -> Treatment:
        treatment = await asyncio.to_thread(self.store.add_treatment, draft)
        await self.scheduler.reconcile(treatment.id)
        return treatment

    async def update_treatment(self, treatment_id: str, patch: TreatmentPatch) -> Optional[Treatment]:
        treatment = await asyncio.to_thread(self.store.update_treatment, treatment_id, patch)
        if treatment is not None:
            await self.scheduler.reconcile(treatment_id)
        return treatment

    async def set_active(self, treatment_id: str, active: bool) -> Optional[Treatment]:
        treatment = await asyncio.to_thread(self.store.set_active, treatment_id, active)
        if treatment is not None:
            await self.scheduler.reconcile(treatment_id)
        return treatment

    async def toggle_active(self, treatment_id: str) -> Optional[Treatment]:
        treatment = await asyncio.to_thread(self.store.toggle_active, treatment_id)
        if treatment is not None:
            await self.scheduler.reconcile(treatment_id)
        return treatment

    async def delete_treatment(self, treatment_id: str) -> bool:
        deleted = await asyncio.to_thread(self.store.delete_treatment, treatment_id)
        # Cancels even when the store had nothing, in case reminders outlived the treatment.
        await self.scheduler.reconcile(treatment_id)
        return deleted

    # Administrations
    async def record_administration(
        self,
        treatment_id: str,
        site: Optional[InjectionSite] = None,
        notes: str = "",
        timestamp: Optional[datetime] = None,
    ) -> Optional[AdministrationRecord]:
        record = await asyncio.to_thread(
            self.store.record_administration, treatment_id, site=site, notes=notes, timestamp=timestamp
        )
        if record is not None:
            await self.scheduler.reconcile(treatment_id)
        return record

    async def update_administration(
        self, record_id: str, patch: AdministrationPatch
    ) -> Optional[AdministrationRecord]:
        record = await asyncio.to_thread(self.store.update_administration, record_id, patch)
        if record is not None:
            await self.scheduler.reconcile(record.treatment_id)
        return record

    async def delete_administration(self, record_id: str) -> bool:
        record = await asyncio.to_thread(self.store.get_administration, record_id)
        if record is None:
            return False
        deleted = await asyncio.to_thread(self.store.delete_administration, record_id)
        if deleted:
            await self.scheduler.reconcile(record.treatment_id)
        return deleted

    # Notifications
    async def request_authorization(self) -> bool:
        try:
            granted = await asyncio.wait_for(
                self.scheduler.gateway.request_authorization(),
                timeout=self.authorization_timeout_seconds,
            )
        except asyncio.TimeoutError:
            _LOGGER.warning("Authorization request timed out; treating as denied")
            return False
        except GatewayError as exc:
            _LOGGER.warning("Authorization request failed: %s", exc)
            return False
        if granted:
            await self.resync()
        return granted

    async def resync(self) -> None:
        """Reconcile every treatment and drop reminders for deleted ones."""
        treatments = await asyncio.to_thread(lambda: self.store.treatments)
        await self.scheduler.prune_orphans(t.id for t in treatments)
        await self.scheduler.reconcile_all(t.id for t in treatments)

    async def reminders_enabled(self) -> bool:
        return await self.scheduler.is_authorized()

    async def pending_reminders(self, treatment_id: str) -> int:
        return await self.scheduler.pending_count(treatment_id)

    def handle_delivery(self, payload: ReminderPayload) -> Optional[Treatment]:
        treatment = self.store.get_treatment(payload.treatment_id)
        if treatment is None:
            _LOGGER.info("Reminder delivered for deleted treatment %s", payload.treatment_id)
        return treatment

    # Queries
    def due_status(self, treatment_id: str) -> Optional[DueStatus]:
        treatment = self.store.get_treatment(treatment_id)
        if treatment is None:
            return None
        return DueStatus(
            treatment_id=treatment.id,
            next_due_at=self.store.next_due_date(treatment),
            is_overdue=self.store.is_overdue(treatment),
        )

    def overdue_treatments(self) -> List[Treatment]:
        return [t for t in self.store.active_treatments if self.store.is_overdue(t)]

    def planned_reminders(self, treatment_id: str) -> List[PendingReminder]:
        treatment = self.store.get_treatment(treatment_id)
        return self.scheduler.plan(treatment) if treatment is not None else []


def build_kv_store(settings: Settings) -> KeyValueStore:
    if settings.database_url:
        return SqlKeyValueStore.from_url(settings.database_url)
    return InMemoryKeyValueStore()


def build_gateway(settings: Settings) -> NotificationGateway:
    if settings.notifier_url:
        return HttpNotificationGateway(settings.notifier_url, timeout=settings.gateway_timeout_seconds)
    return InMemoryNotificationGateway()


def build_flow(
    settings: Settings,
    kv: Optional[KeyValueStore] = None,
    gateway: Optional[NotificationGateway] = None,
    clock: Clock = utc_now,
) -> TreatmentFlow:
    store = TreatmentStore(kv if kv is not None else build_kv_store(settings), clock=clock)
    scheduler = ReminderScheduler(
        gateway if gateway is not None else build_gateway(settings),
        store.get_treatment,
        count=settings.reminder_count,
        timeout_seconds=settings.gateway_timeout_seconds,
        clock=clock,
    )
    return TreatmentFlow(store, scheduler, authorization_timeout_seconds=settings.authorization_timeout_seconds)
