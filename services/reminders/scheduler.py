from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

from shared.clock import Clock, ensure_utc, utc_now
from shared.contracts.frequency import interval_days
from shared.contracts.models import ReminderPayload, Treatment

from .gateway import GatewayError, NotificationGateway, REMINDER_ID_PREFIX, belongs_to, reminder_id

_LOGGER = logging.getLogger(__name__)

DEFAULT_REMINDER_COUNT = 10
FIRST_USE_DELAY = timedelta(days=1)

T = TypeVar("T")
TreatmentLookup = Callable[[str], Optional[Treatment]]


@dataclass(frozen=True)
class PendingReminder:
    reminder_id: str
    treatment_id: str
    sequence_index: Optional[int]
    fire_at: datetime


class ReminderScheduler:
    """Keeps the gateway's pending reminders in line with treatment state.

    ``lookup`` reads the current treatment snapshot; the scheduler holds no
    state of its own beyond a cache of what it last scheduled. At most one
    operation per treatment is in flight; different treatments run
    concurrently.
    """

    def __init__(
        self,
        gateway: NotificationGateway,
        lookup: TreatmentLookup,
        count: int = DEFAULT_REMINDER_COUNT,
        timeout_seconds: float = 5.0,
        clock: Clock = utc_now,
    ) -> None:
        if count < 1:
            raise ValueError("count must be >= 1")
        self.gateway = gateway
        self._lookup = lookup
        self.count = count
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._cache: Dict[str, Dict[Optional[int], PendingReminder]] = {}

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    @asynccontextmanager
    async def _serialized(self, treatment_id: str) -> AsyncIterator[None]:
        # A lock lives only while some operation on the treatment holds or awaits it.
        lock = self._locks.setdefault(treatment_id, asyncio.Lock())
        self._lock_users[treatment_id] = self._lock_users.get(treatment_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[treatment_id] -= 1
            if not self._lock_users[treatment_id]:
                del self._lock_users[treatment_id]
                del self._locks[treatment_id]

    async def _call(self, operation: Awaitable[T], default: T, what: str) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            _LOGGER.warning("Notification gateway timed out during %s", what)
        except GatewayError as exc:
            _LOGGER.warning("Notification gateway failed during %s: %s", what, exc)
        return default

    async def is_authorized(self) -> bool:
        return await self._call(self.gateway.is_authorized(), False, "authorization check")

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def anchor(self, treatment: Treatment) -> Optional[datetime]:
        interval = interval_days(treatment.frequency)
        if interval is None:
            return None
        if treatment.last_administration_at is None:
            return self._now() + FIRST_USE_DELAY
        return treatment.last_administration_at + timedelta(days=interval)

    def plan(self, treatment: Treatment) -> List[PendingReminder]:
        """Future reminders the treatment should have, without touching the gateway."""
        interval = interval_days(treatment.frequency)
        start = self.anchor(treatment)
        if not treatment.is_active or interval is None or start is None:
            return []
        now = self._now()
        planned = []
        for index in range(self.count):
            fire_at = start + timedelta(days=interval * index)
            if fire_at <= now:
                continue
            planned.append(PendingReminder(reminder_id(treatment.id, index), treatment.id, index, fire_at))
        return planned

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def reconcile(self, treatment_id: str) -> List[PendingReminder]:
        async with self._serialized(treatment_id):
            await self._cancel_locked(treatment_id)
            treatment = await asyncio.to_thread(self._lookup, treatment_id)
            if treatment is None:
                return []
            planned = self.plan(treatment)
            if not planned:
                return []
            if not await self.is_authorized():
                _LOGGER.debug("Notifications not authorized; skipping %s", treatment_id)
                return []
            scheduled = await self._schedule_locked(treatment, planned)
            _LOGGER.info("Scheduled %d reminders for %s", len(scheduled), treatment.name)
            return scheduled

    async def reconcile_all(self, treatment_ids: Iterable[str]) -> Dict[str, List[PendingReminder]]:
        ids = list(dict.fromkeys(treatment_ids))
        results = await asyncio.gather(*(self.reconcile(tid) for tid in ids))
        return dict(zip(ids, results))

    async def schedule_next(self, treatment_id: str) -> Optional[PendingReminder]:
        """Replace the treatment's reminders with a single next-due reminder."""
        async with self._serialized(treatment_id):
            await self._cancel_locked(treatment_id)
            treatment = await asyncio.to_thread(self._lookup, treatment_id)
            if treatment is None or not treatment.is_active:
                return None
            fire_at = self.anchor(treatment)
            if fire_at is None or fire_at <= self._now():
                return None
            if not await self.is_authorized():
                return None
            planned = PendingReminder(reminder_id(treatment.id), treatment.id, None, fire_at)
            scheduled = await self._schedule_locked(treatment, [planned])
            return scheduled[0] if scheduled else None

    async def cancel(self, treatment_id: str) -> None:
        async with self._serialized(treatment_id):
            await self._cancel_locked(treatment_id)

    async def cancel_all(self) -> None:
        await self._call(self.gateway.cancel_all(), None, "cancel all")
        self._cache.clear()

    async def prune_orphans(self, known_ids: Iterable[str]) -> Set[str]:
        """Cancel pending reminders whose treatment no longer exists."""
        known = set(known_ids)
        pending = await self._call(self.gateway.list_pending(), set(), "pending listing")
        orphans = {
            rid
            for rid in pending
            if rid.startswith(REMINDER_ID_PREFIX) and not any(belongs_to(rid, tid) for tid in known)
        }
        if orphans:
            await self._call(self.gateway.cancel(orphans), None, "orphan cancel")
            _LOGGER.info("Cancelled %d orphan reminders", len(orphans))
        for treatment_id in [tid for tid in self._cache if tid not in known]:
            del self._cache[treatment_id]
        return orphans

    async def pending_count(self, treatment_id: str) -> int:
        pending = await self._call(self.gateway.list_pending(), set(), "pending listing")
        return sum(1 for rid in pending if belongs_to(rid, treatment_id))

    def cached(self, treatment_id: str) -> List[PendingReminder]:
        reminders = self._cache.get(treatment_id, {}).values()
        return sorted(reminders, key=lambda r: r.fire_at)

    async def _cancel_locked(self, treatment_id: str) -> None:
        ids = {reminder_id(treatment_id)}
        ids.update(reminder_id(treatment_id, index) for index in range(self.count))
        ids.update(r.reminder_id for r in self._cache.pop(treatment_id, {}).values())
        pending = await self._call(self.gateway.list_pending(), set(), "pending listing")
        ids.update(rid for rid in pending if belongs_to(rid, treatment_id))
        await self._call(self.gateway.cancel(ids), None, "cancel")

    async def _schedule_locked(
        self, treatment: Treatment, planned: List[PendingReminder]
    ) -> List[PendingReminder]:
        scheduled = []
        for reminder in planned:
            payload = ReminderPayload.for_treatment(treatment, reminder.sequence_index)
            ok = await self._call(
                self.gateway.schedule(reminder.reminder_id, reminder.fire_at, payload),
                False,
                f"schedule {reminder.reminder_id}",
            )
            if ok:
                scheduled.append(reminder)
            else:
                _LOGGER.warning("Reminder %s was not scheduled", reminder.reminder_id)
        self._cache[treatment.id] = {r.sequence_index: r for r in scheduled}
        return scheduled
