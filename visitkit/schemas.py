import math
from datetime import date
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Dict, List, Optional, Literal

# ----- Scheduling -----

TimingUnit = Literal["days", "weeks", "months"]
VisitStatus = Literal["scheduled", "due", "overdue", "completed", "early", "late"]
StudyStatus = Literal["enrolling", "active", "closed_to_enrollment", "completed"]

class CalculatedVisitDate(BaseModel):
    scheduled_date: date
    window_start: date
    window_end: date
    days_from_baseline: int

class VisitScheduleInfo(BaseModel):
    visit_name: str
    visit_number: Optional[str] = None
    timing_value: int
    timing_unit: TimingUnit = "days"
    window_before: int = Field(default=7, ge=0)
    window_after: int = Field(default=7, ge=0)

class ScheduledTemplateVisit(VisitScheduleInfo):
    scheduled_date: date
    window_start: date
    window_end: date
    days_from_baseline: int

class SubjectVisitView(BaseModel):
    visit_id: str
    visit_name: Optional[str] = None
    visit_schedule_id: Optional[str] = None
    subject_section_id: Optional[str] = None
    visit_date: Optional[date] = None          # stored scheduled date
    projected_date: Optional[date] = None      # recomputed from the current anchor
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    actual_date: Optional[date] = None
    status: Optional[VisitStatus] = None


# ----- Compliance -----

ComplianceBand = Literal["excellent", "good", "acceptable", "poor"]

class CycleCompliance(BaseModel):
    days_elapsed: Optional[int] = None
    expected_taken: Optional[float] = None
    actual_taken: int = 0
    compliance_percentage: Optional[int] = None
    expected_return_date: Optional[date] = None
    is_compliant: Optional[bool] = None
    flags: List[str] = Field(default_factory=list)

class ComplianceAssessment(BaseModel):
    """Percentage with its band and any protocol deviations found."""
    percentage: float = 0.0
    status: ComplianceBand = "poor"
    deviations: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)

class VisitComplianceGroup(BaseModel):
    visit_id: str                              # "unlinked" for orphaned cycles
    visit_date: Optional[date] = None
    visit_name: Optional[str] = None
    items: List[Dict[str, Any]] = Field(default_factory=list)
    avg_compliance: Optional[float] = None


# ----- Engine -----

class EngineSettings(BaseModel):
    """Configuration injected into the recompute engine at construction."""
    model_config = ConfigDict(frozen=True)

    default_days_ahead: int = 60
    max_days_ahead: int = 180
    default_study_statuses: List[str] = Field(default_factory=lambda: ["enrolling", "active"])
    default_compliance_threshold: float = 80.0

ForecastStatus = Literal["ok", "warning", "critical"]
ReasonType = Literal["deficit", "buffer"]

class KitDemand(BaseModel):
    kit_type: str
    visits_scheduled: int = 0
    kits_required: int = 0
    kits_available: int = 0
    kits_expiring_soon: int = 0
    pending_order_quantity: int = 0
    buffer_kits: int = 0                       # target buffer kept on top of demand
    per_day_demand: float = 0.0
    deficit: int = 0                           # shortfall against demand plus buffer days
    quantity_needed: int = 0
    optional: bool = False
    status: ForecastStatus = "ok"
    reason_type: ReasonType = "deficit"
    confidence: float = 0.9
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    latest_order_date: Optional[date] = None
    min_on_hand: int = 0
    buffer_days: int = 0
    lead_time_days: int = 0

class InventoryForecast(BaseModel):
    study_id: str = Field(serialization_alias="studyId")
    days_ahead: int = Field(serialization_alias="daysAhead")
    items: List[KitDemand] = Field(default_factory=list)   # most severe first
    total_visits_scheduled: int = Field(default=0, serialization_alias="totalVisitsScheduled")
    critical_issues: int = Field(default=0, serialization_alias="criticalIssues")
    warnings: int = 0

class RecomputeResult(BaseModel):
    study_id: str = Field(serialization_alias="studyId")
    created: int = 0
    updated: int = 0
    expired: int = 0
    superseded: int = 0
    recommendations: List[Dict[str, Any]] = Field(default_factory=list)

class StudyRecomputeOutcome(BaseModel):
    study_id: str = Field(serialization_alias="studyId")
    status: Literal["ok", "error"]
    created: Optional[int] = None
    updated: Optional[int] = None
    expired: Optional[int] = None
    error: Optional[str] = None

class RecomputeTotals(BaseModel):
    created: int = 0
    updated: int = 0
    expired: int = 0

class BatchRecomputeResult(BaseModel):
    processed: int = 0
    failures: int = 0
    totals: RecomputeTotals = Field(default_factory=RecomputeTotals)
    results: List[StudyRecomputeOutcome] = Field(default_factory=list)


# ----- Request bodies (aliases collapse to one canonical field) -----

def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _coerce_days_ahead(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValueError("daysAhead must be a number")
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise ValueError("daysAhead must be a number")
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError("daysAhead must be a number")
    if value < 1:
        raise ValueError("daysAhead must be at least 1")
    return int(value)


class RecomputeRequest(BaseModel):
    study_id: str = Field(min_length=1)
    days_ahead: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _collapse_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("Request body must be an object.")
        study_id = _first_present(data, "studyId", "study_id")
        return {
            "study_id": study_id if isinstance(study_id, str) else "",
            "days_ahead": _first_present(data, "daysAhead", "days_ahead", "days"),
        }

    @field_validator("days_ahead", mode="before")
    @classmethod
    def _parse_days_ahead(cls, value: Any) -> Optional[int]:
        return _coerce_days_ahead(value)


class BatchRecomputeRequest(BaseModel):
    days_ahead: Optional[int] = None
    study_statuses: Optional[List[str]] = None

    @model_validator(mode="before")
    @classmethod
    def _collapse_aliases(cls, data: Any) -> Any:
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Request body must be an object.")
        return {
            "days_ahead": _first_present(data, "daysAhead", "days_ahead", "days"),
            "study_statuses": _first_present(data, "studyStatuses", "study_statuses", "status"),
        }

    @field_validator("days_ahead", mode="before")
    @classmethod
    def _parse_days_ahead(cls, value: Any) -> Optional[int]:
        return _coerce_days_ahead(value)

    @field_validator("study_statuses", mode="before")
    @classmethod
    def _parse_statuses(cls, value: Any) -> Optional[List[str]]:
        if value is None:
            return None
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(",") if part.strip()]
        elif isinstance(value, list):
            parts = [item.strip() for item in value if isinstance(item, str) and item.strip()]
        else:
            raise ValueError("studyStatuses must be a list or comma-separated string")
        return parts or None


class ReanchorRequest(BaseModel):
    subject_section_id: str = Field(
        min_length=1, validation_alias=AliasChoices("subjectSectionId", "subject_section_id")
    )
    anchor_date: date = Field(validation_alias=AliasChoices("anchorDate", "anchor_date"))


# ----- Caller (resolved upstream) -----

class Caller(BaseModel):
    user_id: str
    study_access: List[str] = Field(default_factory=list)

    def can_access(self, study_id: str) -> bool:
        return "*" in self.study_access or study_id in self.study_access
