"""
Drug compliance calculator.

Turns dispensed/returned tablet counts into expected and actual intake, a
compliance percentage and an expected return date. Elapsed days are counted
inclusively: a cycle dispensed and last dosed on the same day covers one
dosing day.
"""

import math
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from visitkit.dates import add_days, parse_date_utc, today_utc
from visitkit.schemas import ComplianceAssessment, ComplianceBand, CycleCompliance, VisitComplianceGroup
from visitkit.visit_calculator import get_days_from_scheduled

UNLINKED_VISIT_KEY = "unlinked"

# Anomaly markers attached to CycleCompliance.flags
FLAG_RETURNED_EXCEEDS_DISPENSED = "returned_exceeds_dispensed"
FLAG_MISSING_DOSE_PER_DAY = "missing_dose_per_day"
FLAG_MISSING_DISPENSING_DATE = "missing_dispensing_date"
FLAG_NOTHING_DISPENSED = "nothing_dispensed"

DOSES_PER_DAY_BY_FREQUENCY = {
    "QD": 1.0,
    "BID": 2.0,
    "TID": 3.0,
    "QID": 4.0,
    "WEEKLY": 1.0 / 7.0,
}

# Default compliance bands (percentage at or above each band)
DEFAULT_THRESHOLDS = {
    "excellent": 95.0,
    "good": 85.0,
    "acceptable": 75.0,
}

# Drug intake weighs more than visit timing in the overall score
DEFAULT_OVERALL_WEIGHTS = {"drug": 0.7, "visit": 0.3}


def _positive(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or number <= 0:
        return None
    return number


def round_half_up(value: float, places: int = 0) -> float:
    """Round halves away from zero (12.5 -> 13), unlike the built-in round."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def dose_per_day_for_frequency(frequency: Optional[str]) -> Optional[float]:
    """Map a study dosing frequency code (QD, BID, ...) to doses per day."""
    if not frequency or not isinstance(frequency, str):
        return None
    return DOSES_PER_DAY_BY_FREQUENCY.get(frequency.strip().upper())


def calculate_days_elapsed(dispensing_date: date, end_date: date) -> int:
    """Inclusive dosing days from dispensing to end date, never negative."""
    return max(0, (end_date - dispensing_date).days + 1)


def calculate_expected_return_date(
    dispensing_date: Optional[date],
    tablets_dispensed: int,
    dose_per_day: Optional[float],
) -> Optional[date]:
    """Date the dispensed supply runs out if taken as prescribed."""
    dose = _positive(dose_per_day)
    if dispensing_date is None or dose is None or tablets_dispensed <= 0:
        return None
    return add_days(dispensing_date, math.ceil(tablets_dispensed / dose) - 1)


def calculate_cycle_compliance(
    dispensing_date: Optional[date],
    tablets_dispensed: int,
    tablets_returned: int,
    dose_per_day: Optional[float],
    last_dose_date: Optional[date] = None,
    evaluation_date: Optional[date] = None,
    compliance_threshold: Optional[float] = None,
) -> CycleCompliance:
    """
    Compute derived compliance values for one dispensing record.

    Args:
        dispensing_date: Date the bottle was dispensed
        tablets_dispensed: Tablets handed out
        tablets_returned: Tablets brought back (0 while the cycle is open)
        dose_per_day: Prescribed tablets per day
        last_dose_date: Last dose taken; None while the cycle is open
        evaluation_date: "Today" for open cycles (defaults to the UTC date)
        compliance_threshold: Percentage required for is_compliant

    Returns:
        CycleCompliance. Incomplete inputs yield None values and flags,
        never an exception.
    """
    dispensed = int(tablets_dispensed or 0)
    returned = int(tablets_returned or 0)
    dose = _positive(dose_per_day)
    flags: List[str] = []

    raw_taken = dispensed - returned
    if raw_taken < 0:
        flags.append(FLAG_RETURNED_EXCEEDS_DISPENSED)
    actual_taken = max(0, raw_taken)

    if dose is None:
        flags.append(FLAG_MISSING_DOSE_PER_DAY)
    if dispensing_date is None:
        flags.append(FLAG_MISSING_DISPENSING_DATE)
    if dispensed <= 0:
        flags.append(FLAG_NOTHING_DISPENSED)

    days_elapsed = None
    expected_taken = None
    if dispensing_date is not None:
        end_date = evaluation_date or today_utc()
        if last_dose_date is not None and last_dose_date < end_date:
            end_date = last_dose_date
        days_elapsed = calculate_days_elapsed(dispensing_date, end_date)
        if dose is not None:
            expected_taken = dose * days_elapsed

    compliance_percentage = None
    if expected_taken is not None and expected_taken > 0:
        compliance_percentage = int(round_half_up(100 * actual_taken / expected_taken))

    is_compliant = None
    if compliance_percentage is not None and compliance_threshold is not None:
        is_compliant = compliance_percentage >= compliance_threshold

    return CycleCompliance(
        days_elapsed=days_elapsed,
        expected_taken=expected_taken,
        actual_taken=actual_taken,
        compliance_percentage=compliance_percentage,
        expected_return_date=calculate_expected_return_date(dispensing_date, dispensed, dose),
        is_compliant=is_compliant,
        flags=flags,
    )


def classify_compliance(
    percentage: Optional[float],
    thresholds: Optional[Dict[str, float]] = None,
) -> Optional[ComplianceBand]:
    if percentage is None:
        return None
    bands = thresholds or DEFAULT_THRESHOLDS
    if percentage >= bands["excellent"]:
        return "excellent"
    if percentage >= bands["good"]:
        return "good"
    if percentage >= bands["acceptable"]:
        return "acceptable"
    return "poor"


def average_compliance(values: Iterable[Optional[float]]) -> Optional[float]:
    """Mean of the known percentages; None when none are known."""
    known = [float(v) for v in values if v is not None and not pd.isna(v)]
    if not known:
        return None
    return float(np.mean(known))


def assess_cycle_compliance(
    cycle: CycleCompliance,
    thresholds: Optional[Dict[str, float]] = None,
) -> ComplianceAssessment:
    """Band a cycle's compliance and list the accountability deviations behind it."""
    bands = thresholds or DEFAULT_THRESHOLDS
    percentage = min(100.0, max(0.0, float(cycle.compliance_percentage or 0)))
    deviations: List[str] = []
    recommendations: List[str] = []

    if cycle.expected_taken is not None and cycle.actual_taken > cycle.expected_taken:
        deviations.append(
            f"Over-compliance: {cycle.actual_taken} doses taken vs {cycle.expected_taken:g} expected"
        )
        recommendations.append("Reinforce proper dosing instructions with subject")
    if cycle.compliance_percentage is not None and percentage < bands["acceptable"]:
        deviations.append(f"Poor compliance: {percentage:.1f}% (below {bands['acceptable']:g}% threshold)")
        recommendations.append("Schedule additional subject counseling session")
        recommendations.append("Consider IP counting and compliance aids")
    if FLAG_RETURNED_EXCEEDS_DISPENSED in cycle.flags:
        deviations.append("More tablets returned than dispensed - data entry error")
        recommendations.append("Verify IP accountability data with site staff")
    if FLAG_NOTHING_DISPENSED in cycle.flags:
        deviations.append("No IP dispensed recorded")
        recommendations.append("Verify dispensing records")

    return ComplianceAssessment(
        percentage=round_half_up(percentage, 2),
        status=classify_compliance(percentage, bands),
        deviations=deviations,
        recommendations=recommendations,
    )


def calculate_visit_compliance(
    scheduled_date: date,
    actual_date: Optional[date] = None,
    window_before: int = 7,
    window_after: int = 7,
    today: Optional[date] = None,
    thresholds: Optional[Dict[str, float]] = None,
) -> ComplianceAssessment:
    """
    Score how closely a visit kept to its scheduled date.

    Inside the window the score drops from 100 to 95 at the window edge.
    Outside it starts at 75 and loses 10 points per day beyond the window.
    A visit not yet performed scores 0 and is reported once it is past its
    window.
    """
    bands = thresholds or DEFAULT_THRESHOLDS
    deviations: List[str] = []
    recommendations: List[str] = []

    if actual_date is None:
        days_past_due = get_days_from_scheduled(today or today_utc(), scheduled_date)
        if days_past_due > window_after:
            deviations.append(f"Visit overdue by {days_past_due - window_after} days")
            recommendations.append("Contact subject immediately to reschedule")
            recommendations.append("Document reason for visit delay")
        return ComplianceAssessment(
            percentage=0.0, status="poor", deviations=deviations, recommendations=recommendations
        )

    offset = get_days_from_scheduled(actual_date, scheduled_date)
    window = window_before if offset < 0 else window_after
    difference = abs(offset)

    if difference <= window:
        percentage = 100.0 - (difference / window) * 5 if window > 0 else 100.0
        status: ComplianceBand = "excellent" if percentage >= bands["excellent"] else "good"
    else:
        excess = difference - window
        percentage = max(0.0, 75.0 - excess * 10)
        status = "acceptable" if percentage >= bands["acceptable"] else "poor"
        timing = "early" if offset < 0 else "late"
        deviations.append(f"Visit completed {excess} days outside protocol window ({timing})")
        recommendations.append("Document protocol deviation")
        if excess > 7:
            recommendations.append("Report significant protocol deviation to sponsor")

    return ComplianceAssessment(
        percentage=round_half_up(percentage, 2),
        status=status,
        deviations=deviations,
        recommendations=recommendations,
    )


def calculate_overall_compliance(
    drug_compliances: Iterable[ComplianceAssessment],
    visit_compliances: Iterable[ComplianceAssessment],
    weights: Optional[Dict[str, float]] = None,
) -> ComplianceAssessment:
    """
    Weighted drug and visit compliance for a subject.

    When one side has nothing assessed the other carries the whole weight.
    Deviations and recommendations are merged without duplicates.
    """
    weights = weights or DEFAULT_OVERALL_WEIGHTS
    drug_compliances = list(drug_compliances)
    visit_compliances = list(visit_compliances)

    parts = []
    drug_average = average_compliance(c.percentage for c in drug_compliances)
    if drug_average is not None:
        parts.append((drug_average, weights["drug"]))
    visit_average = average_compliance(c.percentage for c in visit_compliances)
    if visit_average is not None:
        parts.append((visit_average, weights["visit"]))
    if not parts:
        return ComplianceAssessment()

    total_weight = sum(weight for _, weight in parts)
    overall = sum(value * weight for value, weight in parts) / total_weight
    status = classify_compliance(overall)

    assessed = drug_compliances + visit_compliances
    deviations = list(dict.fromkeys(d for c in assessed for d in c.deviations))
    recommendations = list(dict.fromkeys(r for c in assessed for r in c.recommendations))
    if status == "poor":
        recommendations.append("Consider subject for enhanced monitoring")
        recommendations.append("Review study protocol adherence with subject")

    return ComplianceAssessment(
        percentage=round_half_up(overall, 2),
        status=status,
        deviations=deviations,
        recommendations=list(dict.fromkeys(recommendations)),
    )


def group_cycles_by_visit(
    cycles: pd.DataFrame,
    evaluation_date: Optional[date] = None,
    compliance_threshold: Optional[float] = None,
) -> Dict[str, VisitComplianceGroup]:
    """
    Group drug cycles by visit and average their compliance.

    Args:
        cycles: DataFrame with columns id, visit_id, drug_id, dispensing_date,
                last_dose_date, tablets_dispensed, tablets_returned,
                dose_per_day and optionally visit_date / visit_name
        evaluation_date: Date used for open cycles
        compliance_threshold: Percentage required for is_compliant

    Returns:
        Mapping of visit id (or "unlinked") to its group
    """
    groups: Dict[str, VisitComplianceGroup] = {}
    if cycles.empty:
        return groups

    frame = cycles.copy()
    frame["visit_key"] = frame["visit_id"].where(frame["visit_id"].notna(), UNLINKED_VISIT_KEY)
    frame["visit_key"] = frame["visit_key"].astype(str).replace("", UNLINKED_VISIT_KEY)

    for visit_key, group in frame.groupby("visit_key", sort=False):
        first = group.iloc[0]
        items = []
        for _, row in group.iterrows():
            result = calculate_cycle_compliance(
                dispensing_date=parse_date_utc(row.get("dispensing_date")),
                tablets_dispensed=_count(row.get("tablets_dispensed")),
                tablets_returned=_count(row.get("tablets_returned")),
                dose_per_day=row.get("dose_per_day"),
                last_dose_date=parse_date_utc(row.get("last_dose_date")),
                evaluation_date=evaluation_date,
                compliance_threshold=compliance_threshold,
            )
            items.append({
                "id": str(row.get("id")),
                "drug_id": None if pd.isna(row.get("drug_id")) else str(row.get("drug_id")),
                "dispensing_date": parse_date_utc(row.get("dispensing_date")),
                "last_dose_date": parse_date_utc(row.get("last_dose_date")),
                "tablets_dispensed": _count(row.get("tablets_dispensed")),
                "tablets_returned": _count(row.get("tablets_returned")),
                **result.model_dump(),
            })

        is_linked = visit_key != UNLINKED_VISIT_KEY
        groups[visit_key] = VisitComplianceGroup(
            visit_id=visit_key,
            visit_date=parse_date_utc(first.get("visit_date")) if is_linked else None,
            visit_name=_text(first.get("visit_name")) if is_linked else None,
            items=items,
            avg_compliance=average_compliance(item["compliance_percentage"] for item in items),
        )

    return groups


def _count(value: Any) -> int:
    if value is None or pd.isna(value):
        return 0
    return int(value)


def _text(value: Any) -> Optional[str]:
    if value is None or pd.isna(value):
        return None
    return str(value)
