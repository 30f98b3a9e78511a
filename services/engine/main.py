import asyncio
import logging
from datetime import datetime

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pico import TreatmentFlow, build_flow
from shared.clock import ensure_utc, utc_now
from shared.contracts.enums import InjectionSite
from shared.contracts.frequency import FrequencyRule, display_name
from shared.contracts.models import (
    AdministrationPatch,
    AdministrationRecord,
    Treatment,
    TreatmentDraft,
    TreatmentPatch,
)
from shared.settings import Settings, get_settings

_LOGGER = logging.getLogger(__name__)


def _not_in_future(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    value = ensure_utc(value)
    if value > utc_now():
        raise ValueError("timestamp cannot be in the future")
    return value


class TreatmentCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(min_length=1)
    dosage: str = Field(min_length=1)
    injection_site: InjectionSite = InjectionSite.SUBCUTANEOUS
    frequency: FrequencyRule = Field(default_factory=FrequencyRule.daily)
    notes: str = ""


class TreatmentUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1)
    dosage: str | None = Field(default=None, min_length=1)
    injection_site: InjectionSite | None = None
    frequency: FrequencyRule | None = None
    notes: str | None = None
    is_active: bool | None = None


class ActiveRequest(BaseModel):
    is_active: bool


class AdministrationCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    injection_site: InjectionSite | None = None
    notes: str = ""
    timestamp: datetime | None = None

    check_timestamp = field_validator("timestamp")(_not_in_future)


class AdministrationUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    injection_site: InjectionSite | None = None
    notes: str | None = None
    timestamp: datetime | None = None

    check_timestamp = field_validator("timestamp")(_not_in_future)


class TreatmentDTO(BaseModel):
    id: str
    name: str
    dosage: str
    injection_site: InjectionSite
    frequency: FrequencyRule
    frequency_label: str
    notes: str
    is_active: bool
    created_at: datetime
    last_administration_at: datetime | None = None
    next_due_at: datetime | None = None
    is_overdue: bool


class ReminderStatusDTO(BaseModel):
    treatment_id: str
    pending: int


class NotificationStatusDTO(BaseModel):
    reminders_enabled: bool


def create_app(flow: TreatmentFlow | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)
    flow = flow or build_flow(settings)

    app = FastAPI(title="pico-engine")
    app.state.flow = flow

    def _treatment_to_dto(treatment: Treatment) -> TreatmentDTO:
        return TreatmentDTO(
            id=treatment.id,
            name=treatment.name,
            dosage=treatment.dosage,
            injection_site=treatment.injection_site,
            frequency=treatment.frequency,
            frequency_label=display_name(treatment.frequency),
            notes=treatment.notes,
            is_active=treatment.is_active,
            created_at=treatment.created_at,
            last_administration_at=treatment.last_administration_at,
            next_due_at=flow.store.next_due_date(treatment),
            is_overdue=flow.store.is_overdue(treatment),
        )

    def _require(treatment: Treatment | None) -> Treatment:
        if treatment is None:
            raise HTTPException(status_code=404, detail="treatment not found")
        return treatment

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/treatments", response_model=TreatmentDTO, status_code=201)
    async def create_treatment(payload: TreatmentCreateRequest) -> TreatmentDTO:
        treatment = await flow.add_treatment(TreatmentDraft(**payload.model_dump()))
        return _treatment_to_dto(treatment)

    @app.get("/treatments", response_model=list[TreatmentDTO])
    def list_treatments(active: bool | None = None) -> list[TreatmentDTO]:
        if active is None:
            treatments = flow.store.treatments
        elif active:
            treatments = flow.store.active_treatments
        else:
            treatments = flow.store.inactive_treatments
        return [_treatment_to_dto(t) for t in treatments]

    @app.get("/treatments/{treatment_id}", response_model=TreatmentDTO)
    def get_treatment(treatment_id: str) -> TreatmentDTO:
        return _treatment_to_dto(_require(flow.store.get_treatment(treatment_id)))

    @app.patch("/treatments/{treatment_id}", response_model=TreatmentDTO)
    async def update_treatment(treatment_id: str, payload: TreatmentUpdateRequest) -> TreatmentDTO:
        patch = TreatmentPatch(**payload.model_dump(exclude_unset=True))
        return _treatment_to_dto(_require(await flow.update_treatment(treatment_id, patch)))

    @app.put("/treatments/{treatment_id}/active", response_model=TreatmentDTO)
    async def set_active(treatment_id: str, payload: ActiveRequest) -> TreatmentDTO:
        return _treatment_to_dto(_require(await flow.set_active(treatment_id, payload.is_active)))

    @app.post("/treatments/{treatment_id}/toggle", response_model=TreatmentDTO)
    async def toggle_active(treatment_id: str) -> TreatmentDTO:
        return _treatment_to_dto(_require(await flow.toggle_active(treatment_id)))

    @app.delete("/treatments/{treatment_id}", status_code=204)
    async def delete_treatment(treatment_id: str) -> Response:
        await flow.delete_treatment(treatment_id)
        return Response(status_code=204)

    @app.post(
        "/treatments/{treatment_id}/administrations",
        response_model=AdministrationRecord,
        status_code=201,
    )
    async def record_administration(
        treatment_id: str, payload: AdministrationCreateRequest
    ) -> AdministrationRecord:
        record = await flow.record_administration(
            treatment_id,
            site=payload.injection_site,
            notes=payload.notes,
            timestamp=payload.timestamp,
        )
        if record is None:
            raise HTTPException(status_code=404, detail="treatment not found")
        return record

    @app.get("/treatments/{treatment_id}/administrations", response_model=list[AdministrationRecord])
    def list_administrations(treatment_id: str) -> list[AdministrationRecord]:
        _require(flow.store.get_treatment(treatment_id))
        return flow.store.administrations_for(treatment_id)

    @app.patch("/administrations/{record_id}", response_model=AdministrationRecord)
    async def update_administration(record_id: str, payload: AdministrationUpdateRequest) -> AdministrationRecord:
        patch = AdministrationPatch(**payload.model_dump(exclude_unset=True))
        record = await flow.update_administration(record_id, patch)
        if record is None:
            raise HTTPException(status_code=404, detail="administration not found")
        return record

    @app.delete("/administrations/{record_id}", status_code=204)
    async def delete_administration(record_id: str) -> Response:
        await flow.delete_administration(record_id)
        return Response(status_code=204)

    @app.get("/treatments/{treatment_id}/reminders", response_model=ReminderStatusDTO)
    async def reminder_status(treatment_id: str) -> ReminderStatusDTO:
        _require(await asyncio.to_thread(flow.store.get_treatment, treatment_id))
        return ReminderStatusDTO(treatment_id=treatment_id, pending=await flow.pending_reminders(treatment_id))

    @app.post("/notifications/authorize", response_model=NotificationStatusDTO)
    async def authorize_notifications() -> NotificationStatusDTO:
        granted = await flow.request_authorization()
        _LOGGER.info("Notification authorization %s", "granted" if granted else "denied")
        return NotificationStatusDTO(reminders_enabled=granted)

    @app.get("/notifications/status", response_model=NotificationStatusDTO)
    async def notification_status() -> NotificationStatusDTO:
        return NotificationStatusDTO(reminders_enabled=await flow.reminders_enabled())

    return app


app = create_app()
