from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import FrequencyKind


# twice_daily shares the daily interval; there is no sub-day scheduling.
FIXED_INTERVAL_DAYS = {
    FrequencyKind.DAILY: 1,
    FrequencyKind.TWICE_DAILY: 1,
    FrequencyKind.WEEKLY: 7,
    FrequencyKind.BIWEEKLY: 14,
    FrequencyKind.MONTHLY: 30,
}
PARAMETERIZED_KINDS = {FrequencyKind.EVERY_N_DAYS, FrequencyKind.EVERY_N_WEEKS}

_FIXED_LABELS = {
    FrequencyKind.DAILY: "Daily",
    FrequencyKind.TWICE_DAILY: "Twice Daily",
    FrequencyKind.WEEKLY: "Weekly",
    FrequencyKind.BIWEEKLY: "Bi-weekly",
    FrequencyKind.MONTHLY: "Monthly",
    FrequencyKind.AS_NEEDED: "As Needed",
}


class FrequencyRule(BaseModel):
    """Recurrence policy of a treatment.

    ``every`` carries N for the parameterized variants and must be absent
    for the fixed ones.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: FrequencyKind
    every: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_every(self) -> "FrequencyRule":
        if self.kind in PARAMETERIZED_KINDS and self.every is None:
            raise ValueError(f"every is required for frequency '{self.kind.value}'")
        if self.kind not in PARAMETERIZED_KINDS and self.every is not None:
            raise ValueError(f"every is not allowed for frequency '{self.kind.value}'")
        return self

    @classmethod
    def daily(cls) -> "FrequencyRule":
        return cls(kind=FrequencyKind.DAILY)

    @classmethod
    def twice_daily(cls) -> "FrequencyRule":
        return cls(kind=FrequencyKind.TWICE_DAILY)

    @classmethod
    def weekly(cls) -> "FrequencyRule":
        return cls(kind=FrequencyKind.WEEKLY)

    @classmethod
    def biweekly(cls) -> "FrequencyRule":
        return cls(kind=FrequencyKind.BIWEEKLY)

    @classmethod
    def monthly(cls) -> "FrequencyRule":
        return cls(kind=FrequencyKind.MONTHLY)

    @classmethod
    def as_needed(cls) -> "FrequencyRule":
        return cls(kind=FrequencyKind.AS_NEEDED)

    @classmethod
    def every_n_days(cls, days: int) -> "FrequencyRule":
        return cls(kind=FrequencyKind.EVERY_N_DAYS, every=days)

    @classmethod
    def every_n_weeks(cls, weeks: int) -> "FrequencyRule":
        return cls(kind=FrequencyKind.EVERY_N_WEEKS, every=weeks)

    @property
    def is_custom(self) -> bool:
        return self.kind in PARAMETERIZED_KINDS


PREDEFINED_FREQUENCIES = [
    FrequencyRule.daily(),
    FrequencyRule.twice_daily(),
    FrequencyRule.weekly(),
    FrequencyRule.biweekly(),
    FrequencyRule.monthly(),
    FrequencyRule.as_needed(),
]


def interval_days(rule: FrequencyRule) -> Optional[int]:
    """Days between expected doses, or None for as-needed treatments."""
    if rule.kind == FrequencyKind.AS_NEEDED:
        return None
    if rule.kind == FrequencyKind.EVERY_N_DAYS:
        return rule.every
    if rule.kind == FrequencyKind.EVERY_N_WEEKS:
        return rule.every * 7
    return FIXED_INTERVAL_DAYS[rule.kind]


def display_name(rule: FrequencyRule) -> str:
    if rule.kind == FrequencyKind.EVERY_N_DAYS:
        return f"Every {rule.every} day{'' if rule.every == 1 else 's'}"
    if rule.kind == FrequencyKind.EVERY_N_WEEKS:
        return f"Every {rule.every} week{'' if rule.every == 1 else 's'}"
    return _FIXED_LABELS[rule.kind]
