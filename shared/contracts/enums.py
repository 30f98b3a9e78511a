from enum import Enum


class InjectionSite(str, Enum):
    SUBCUTANEOUS = "subcutaneous"
    INTRAMUSCULAR = "intramuscular"
    INTRAVENOUS = "intravenous"
    INTRADERMAL = "intradermal"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class FrequencyKind(str, Enum):
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    AS_NEEDED = "as_needed"
    EVERY_N_DAYS = "every_n_days"
    EVERY_N_WEEKS = "every_n_weeks"


class ChangeKind(str, Enum):
    TREATMENT_ADDED = "treatment_added"
    TREATMENT_UPDATED = "treatment_updated"
    TREATMENT_DELETED = "treatment_deleted"
    ADMINISTRATION_RECORDED = "administration_recorded"
    ADMINISTRATION_UPDATED = "administration_updated"
    ADMINISTRATION_DELETED = "administration_deleted"
