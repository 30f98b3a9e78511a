from __future__ import annotations

import logging
import threading
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.db import KeyValueStore
from shared.clock import Clock, ensure_utc, utc_now
from shared.contracts.enums import ChangeKind, InjectionSite
from shared.contracts.frequency import interval_days
from shared.contracts.models import (
    AdministrationPatch,
    AdministrationRecord,
    Treatment,
    TreatmentDraft,
    TreatmentPatch,
)

_LOGGER = logging.getLogger(__name__)

TREATMENTS_KEY = "pico.treatments"
ADMINISTRATIONS_KEY = "pico.administrations"

_TREATMENTS_ADAPTER = TypeAdapter(List[Treatment])
_RECORDS_ADAPTER = TypeAdapter(List[AdministrationRecord])


class PersistenceWarning(UserWarning):
    """A key/value write failed; the in-memory change was kept."""


@dataclass(frozen=True)
class StoreChange:
    kind: ChangeKind
    treatment_id: str
    record_id: Optional[str] = None


Listener = Callable[[StoreChange], None]


class TreatmentStore:
    """Canonical owner of treatments and their administration records.

    Every operation runs under one re-entrant lock, so derived fields are
    never computed from a half-updated collection. Writes go through to the
    key/value store after each mutation; a failed write keeps the in-memory
    state and is reported as a ``PersistenceWarning``.

    Entities returned by the store are copies.
    """

    def __init__(self, kv: KeyValueStore, clock: Clock = utc_now) -> None:
        self._kv = kv
        self._clock = clock
        self._lock = threading.RLock()
        self._treatments: List[Treatment] = []
        self._records: List[AdministrationRecord] = []
        self._listeners: List[Listener] = []
        self.last_persistence_error: Optional[Exception] = None
        self._load()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: StoreChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                _LOGGER.exception("Store listener failed for %s", change.kind.value)

    # ------------------------------------------------------------------
    # Treatments
    # ------------------------------------------------------------------
    def add_treatment(self, draft: TreatmentDraft) -> Treatment:
        with self._lock:
            treatment = Treatment(
                name=draft.name,
                dosage=draft.dosage,
                injection_site=draft.injection_site,
                frequency=draft.frequency,
                notes=draft.notes,
                is_active=True,
                created_at=self._now(),
                last_administration_at=None,
            )
            self._treatments.append(treatment)
            self._flush(treatments=True)
            result = treatment.model_copy()
        self._notify(StoreChange(ChangeKind.TREATMENT_ADDED, result.id))
        return result

    def update_treatment(self, treatment_id: str, patch: TreatmentPatch) -> Optional[Treatment]:
        changes = patch.changes()
        with self._lock:
            index = self._treatment_index(treatment_id)
            if index is None:
                return None
            if not changes:
                return self._treatments[index].model_copy()
            updated = self._treatments[index].model_copy(update=changes)
            self._treatments[index] = updated
            self._flush(treatments=True)
            result = updated.model_copy()
        self._notify(StoreChange(ChangeKind.TREATMENT_UPDATED, treatment_id))
        return result

    def set_active(self, treatment_id: str, active: bool) -> Optional[Treatment]:
        return self.update_treatment(treatment_id, TreatmentPatch(is_active=active))

    def toggle_active(self, treatment_id: str) -> Optional[Treatment]:
        with self._lock:
            index = self._treatment_index(treatment_id)
            if index is None:
                return None
            current = self._treatments[index]
            updated = current.model_copy(update={"is_active": not current.is_active})
            self._treatments[index] = updated
            self._flush(treatments=True)
            result = updated.model_copy()
        self._notify(StoreChange(ChangeKind.TREATMENT_UPDATED, treatment_id))
        return result

    def delete_treatment(self, treatment_id: str) -> bool:
        with self._lock:
            index = self._treatment_index(treatment_id)
            if index is None:
                return False
            del self._treatments[index]
            removed = [r for r in self._records if r.treatment_id == treatment_id]
            self._records = [r for r in self._records if r.treatment_id != treatment_id]
            # Two independent writes; orphans left by a crash in between are dropped on load.
            self._flush(treatments=True, records=True)
        _LOGGER.info("Deleted treatment %s and %d administration records", treatment_id, len(removed))
        self._notify(StoreChange(ChangeKind.TREATMENT_DELETED, treatment_id))
        return True

    def get_treatment(self, treatment_id: str) -> Optional[Treatment]:
        with self._lock:
            index = self._treatment_index(treatment_id)
            return self._treatments[index].model_copy() if index is not None else None

    @property
    def treatments(self) -> List[Treatment]:
        with self._lock:
            return [t.model_copy() for t in self._treatments]

    @property
    def active_treatments(self) -> List[Treatment]:
        with self._lock:
            return [t.model_copy() for t in self._treatments if t.is_active]

    @property
    def inactive_treatments(self) -> List[Treatment]:
        with self._lock:
            return [t.model_copy() for t in self._treatments if not t.is_active]

    # ------------------------------------------------------------------
    # Administration records
    # ------------------------------------------------------------------
    def record_administration(
        self,
        treatment_id: str,
        site: Optional[InjectionSite] = None,
        notes: str = "",
        timestamp: Optional[datetime] = None,
    ) -> Optional[AdministrationRecord]:
        with self._lock:
            index = self._treatment_index(treatment_id)
            if index is None:
                return None
            now = self._now()
            when = ensure_utc(timestamp) if timestamp is not None else now
            if when > now:
                _LOGGER.info("Rejected administration for %s dated in the future", treatment_id)
                return None
            treatment = self._treatments[index]
            record = AdministrationRecord(
                treatment_id=treatment.id,
                medication_name=treatment.name,
                dosage=treatment.dosage,
                injection_site=site or treatment.injection_site,
                timestamp=when,
                notes=notes,
            )
            self._records.append(record)
            self._recompute_last_administration(treatment_id)
            self._flush(treatments=True, records=True)
            result = record.model_copy()
        self._notify(StoreChange(ChangeKind.ADMINISTRATION_RECORDED, treatment_id, result.id))
        return result

    def update_administration(
        self, record_id: str, patch: AdministrationPatch
    ) -> Optional[AdministrationRecord]:
        changes = patch.changes()
        with self._lock:
            index = self._record_index(record_id)
            if index is None:
                return None
            if "timestamp" in changes and changes["timestamp"] > self._now():
                _LOGGER.info("Rejected future timestamp for administration %s", record_id)
                return None
            if not changes:
                return self._records[index].model_copy()
            updated = self._records[index].model_copy(update=changes)
            self._records[index] = updated
            self._recompute_last_administration(updated.treatment_id)
            self._flush(treatments=True, records=True)
            result = updated.model_copy()
        self._notify(StoreChange(ChangeKind.ADMINISTRATION_UPDATED, result.treatment_id, record_id))
        return result

    def delete_administration(self, record_id: str) -> bool:
        with self._lock:
            index = self._record_index(record_id)
            if index is None:
                return False
            record = self._records.pop(index)
            self._recompute_last_administration(record.treatment_id)
            self._flush(treatments=True, records=True)
        self._notify(StoreChange(ChangeKind.ADMINISTRATION_DELETED, record.treatment_id, record_id))
        return True

    def get_administration(self, record_id: str) -> Optional[AdministrationRecord]:
        with self._lock:
            index = self._record_index(record_id)
            return self._records[index].model_copy() if index is not None else None

    def administrations_for(self, treatment_id: str) -> List[AdministrationRecord]:
        """Records of one treatment, newest first."""
        with self._lock:
            records = [r.model_copy() for r in self._records if r.treatment_id == treatment_id]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    @property
    def records(self) -> List[AdministrationRecord]:
        with self._lock:
            return [r.model_copy() for r in self._records]

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    def next_due_date(self, treatment: Treatment) -> Optional[datetime]:
        interval = interval_days(treatment.frequency)
        if treatment.last_administration_at is None or interval is None:
            return None
        return treatment.last_administration_at + timedelta(days=interval)

    def is_overdue(self, treatment: Treatment) -> bool:
        due = self.next_due_date(treatment)
        return due is not None and due < self._now()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _treatment_index(self, treatment_id: str) -> Optional[int]:
        for index, treatment in enumerate(self._treatments):
            if treatment.id == treatment_id:
                return index
        return None

    def _record_index(self, record_id: str) -> Optional[int]:
        for index, record in enumerate(self._records):
            if record.id == record_id:
                return index
        return None

    def _recompute_last_administration(self, treatment_id: str) -> None:
        index = self._treatment_index(treatment_id)
        if index is None:
            return
        timestamps = [r.timestamp for r in self._records if r.treatment_id == treatment_id]
        latest = max(timestamps) if timestamps else None
        self._treatments[index] = self._treatments[index].model_copy(
            update={"last_administration_at": latest}
        )

    def _load(self) -> None:
        self._treatments = self._decode(TREATMENTS_KEY, _TREATMENTS_ADAPTER)
        records = self._decode(ADMINISTRATIONS_KEY, _RECORDS_ADAPTER)
        known = {t.id for t in self._treatments}
        self._records = [r for r in records if r.treatment_id in known]
        if len(self._records) != len(records):
            _LOGGER.warning("Dropped %d orphan administration records", len(records) - len(self._records))
        for treatment_id in known:
            self._recompute_last_administration(treatment_id)
        _LOGGER.debug(
            "Loaded %d treatments and %d administration records",
            len(self._treatments),
            len(self._records),
        )

    def _decode(self, key: str, adapter: TypeAdapter) -> list:
        raw = self._kv.get(key)
        if raw is None:
            return []
        try:
            return adapter.validate_json(raw)
        except ValidationError as exc:
            _LOGGER.warning("Ignoring unreadable data under %s: %s", key, exc)
            return []

    def _flush(self, treatments: bool = False, records: bool = False) -> bool:
        failure: Optional[Exception] = None
        if treatments:
            failure = self._write(TREATMENTS_KEY, _TREATMENTS_ADAPTER.dump_json(self._treatments))
        if records:
            failure = self._write(ADMINISTRATIONS_KEY, _RECORDS_ADAPTER.dump_json(self._records)) or failure
        self.last_persistence_error = failure
        return failure is None

    def _write(self, key: str, payload: bytes) -> Optional[Exception]:
        try:
            self._kv.set(key, payload)
        except (SQLAlchemyError, OSError) as exc:
            _LOGGER.warning("Could not persist %s: %s", key, exc)
            warnings.warn(f"could not persist {key}: {exc}", PersistenceWarning, stacklevel=5)
            return exc
        return None
