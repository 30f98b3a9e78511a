from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.clock import ensure_utc, utc_now

from .enums import InjectionSite
from .frequency import FrequencyRule


REMINDER_TITLE = "Injection Reminder"


def new_id() -> str:
    return str(uuid4())


class Treatment(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(default_factory=new_id, frozen=True)
    name: str
    dosage: str
    injection_site: InjectionSite = InjectionSite.SUBCUTANEOUS
    frequency: FrequencyRule = Field(default_factory=FrequencyRule.daily)
    notes: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now, frozen=True)
    last_administration_at: datetime | None = None

    @field_validator("created_at", "last_administration_at")
    @classmethod
    def normalize_instants(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class TreatmentDraft(BaseModel):
    """Fields supplied by the caller when a treatment is created."""

    model_config = ConfigDict(extra="forbid")

    name: str
    dosage: str
    injection_site: InjectionSite = InjectionSite.SUBCUTANEOUS
    frequency: FrequencyRule = Field(default_factory=FrequencyRule.daily)
    notes: str = ""


class TreatmentPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    dosage: str | None = None
    injection_site: InjectionSite | None = None
    frequency: FrequencyRule | None = None
    notes: str | None = None
    is_active: bool | None = None

    def changes(self) -> dict[str, Any]:
        values = {name: getattr(self, name) for name in self.model_fields_set}
        return {name: value for name, value in values.items() if value is not None}


class AdministrationRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str = Field(default_factory=new_id, frozen=True)
    treatment_id: str = Field(frozen=True)
    # Snapshot taken at recording time; later renames do not touch history.
    medication_name: str
    dosage: str
    injection_site: InjectionSite
    timestamp: datetime = Field(default_factory=utc_now)
    notes: str = ""

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class AdministrationPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    injection_site: InjectionSite | None = None
    notes: str | None = None
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def changes(self) -> dict[str, Any]:
        values = {name: getattr(self, name) for name in self.model_fields_set}
        return {name: value for name, value in values.items() if value is not None}


class ReminderPayload(BaseModel):
    """Context carried by a scheduled reminder for the delivery handler."""

    model_config = ConfigDict(frozen=True)

    treatment_id: str
    treatment_name: str
    dosage: str
    sequence_index: int | None = None
    title: str = REMINDER_TITLE
    body: str

    @classmethod
    def for_treatment(cls, treatment: Treatment, sequence_index: int | None = None) -> "ReminderPayload":
        return cls(
            treatment_id=treatment.id,
            treatment_name=treatment.name,
            dosage=treatment.dosage,
            sequence_index=sequence_index,
            body=f"Time for your {treatment.name} injection ({treatment.dosage})",
        )
