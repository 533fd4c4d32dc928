"""Subject-level views: visit schedule, section re-anchoring and compliance."""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from visitkit.compliance import (
    _positive,
    assess_cycle_compliance,
    calculate_overall_compliance,
    calculate_visit_compliance,
    dose_per_day_for_frequency,
    group_cycles_by_visit,
)
from visitkit.dates import add_days, parse_date_utc, today_utc
from visitkit.forecast import _as_int, _by_id, study_anchor_day, subject_baseline
from visitkit.schemas import CycleCompliance, SubjectVisitView, VisitComplianceGroup
from visitkit.store import TrialStore
from visitkit.visit_calculator import calculate_visit_date, get_visit_status

logger = logging.getLogger(__name__)


def _template_window(template: Optional[Dict[str, Any]]) -> tuple:
    if not template:
        return 0, 0
    return (
        _as_int(template.get("window_before"), "visit_schedules", template["id"], "window_before", 0),
        _as_int(template.get("window_after"), "visit_schedules", template["id"], "window_after", 0),
    )


def _project(
    template: Dict[str, Any],
    baseline: date,
    anchor_day: int,
) -> date:
    before, after = _template_window(template)
    return calculate_visit_date(
        baseline,
        _as_int(template.get("timing_value"), "visit_schedules", template["id"], "timing_value"),
        template.get("timing_unit") or "days",
        anchor_day,
        before,
        after,
    ).scheduled_date


def subject_schedule(
    store: TrialStore,
    subject_id: str,
    today: Optional[date] = None,
) -> List[SubjectVisitView]:
    """
    List a subject's visits with projected dates, windows and derived status.

    Status is computed from the stored visit date when present, otherwise
    from the date projected off the current anchor.
    """
    subject = store.get_subject(subject_id)
    study = store.get_study(subject["study_id"])
    anchor_day = study_anchor_day(study)
    today = today or today_utc()

    visits = store.subject_visits(subject_id=subject_id)
    templates = _by_id(store.visit_schedules(study["id"], active_only=False))
    sections = _by_id(store.sections_by_ids(visits["subject_section_id"].dropna().unique()))
    baseline = subject_baseline(subject)

    views = []
    for visit in visits.astype(object).where(visits.notna(), None).to_dict(orient="records"):
        template = templates.get(visit.get("visit_schedule_id"))
        section = sections.get(visit.get("subject_section_id"))
        anchor = parse_date_utc(section.get("anchor_date")) if section else baseline

        projected = None
        if template is not None and anchor is not None:
            projected = _project(template, anchor, anchor_day)

        scheduled = parse_date_utc(visit.get("visit_date")) or projected
        actual = parse_date_utc(visit.get("actual_date"))
        before, after = _template_window(template)

        views.append(SubjectVisitView(
            visit_id=visit["id"],
            visit_name=visit.get("visit_name") or (template or {}).get("visit_name"),
            visit_schedule_id=visit.get("visit_schedule_id"),
            subject_section_id=visit.get("subject_section_id"),
            visit_date=parse_date_utc(visit.get("visit_date")),
            projected_date=projected,
            window_start=add_days(scheduled, -before) if scheduled else None,
            window_end=add_days(scheduled, after) if scheduled else None,
            actual_date=actual,
            status=get_visit_status(scheduled, actual, before, after, today) if scheduled else None,
        ))

    return sorted(views, key=lambda v: (v.visit_date or v.projected_date or date.max, v.visit_id))


def reanchor_section(
    store: TrialStore,
    subject_section_id: str,
    anchor_date: date,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Move a subject section's anchor date and reschedule its pending visits.

    Only visits still in 'scheduled' status move; visits already due,
    overdue or performed keep their dates. Both writes share one transaction.

    Returns:
        Dictionary with subject_section_id, anchor_date and visits_updated
    """
    today = today or today_utc()
    section = store.get_section(subject_section_id)
    subject = store.get_subject(section["subject_id"])
    study = store.get_study(subject["study_id"])
    anchor_day = study_anchor_day(study)

    templates = _by_id(store.visit_schedules(study["id"], active_only=False))
    visits = store.subject_visits(subject_id=subject["id"])
    visits = visits[visits["subject_section_id"] == subject_section_id]

    new_dates: Dict[str, date] = {}
    for visit in visits.astype(object).where(visits.notna(), None).to_dict(orient="records"):
        template = templates.get(visit.get("visit_schedule_id"))
        if template is None:
            continue
        before, after = _template_window(template)
        stored = parse_date_utc(visit.get("visit_date"))
        actual = parse_date_utc(visit.get("actual_date"))
        if stored is not None and get_visit_status(stored, actual, before, after, today) != "scheduled":
            continue
        if stored is None and actual is not None:
            continue
        new_dates[visit["id"]] = _project(template, anchor_date, anchor_day)

    with store.transaction(f"section {subject_section_id}"):
        store.update_section_anchor(subject_section_id, anchor_date)
        updated = store.update_visit_dates(new_dates)

    logger.info(
        f"Re-anchored section {subject_section_id} to {anchor_date.isoformat()}; "
        f"rescheduled {updated} visits"
    )
    return {
        "subject_section_id": subject_section_id,
        "anchor_date": anchor_date,
        "visits_updated": updated,
    }


def subject_drug_compliance(
    store: TrialStore,
    subject_id: str,
    evaluation_date: Optional[date] = None,
    compliance_threshold: Optional[float] = None,
) -> Dict[str, VisitComplianceGroup]:
    """
    Per-visit drug compliance for a subject.

    Cycles not linked to a visit are grouped under "unlinked". The study's
    compliance threshold wins over the one passed in.
    """
    subject = store.get_subject(subject_id)
    study = store.get_study(subject["study_id"])
    threshold = _positive(study.get("compliance_threshold")) or compliance_threshold

    cycles = store.drug_cycles([subject_id])
    if cycles.empty:
        return {}

    drugs = store.study_drugs(study["id"])[["id", "dose_per_day"]].rename(columns={"id": "drug_id"})
    cycles = cycles.merge(drugs, on="drug_id", how="left")
    fallback_dose = dose_per_day_for_frequency(study.get("dosing_frequency"))
    if fallback_dose is not None:
        cycles["dose_per_day"] = cycles["dose_per_day"].map(lambda d: _positive(d) or fallback_dose)

    visits = store.subject_visits(subject_id=subject_id)[["id", "visit_date", "actual_date", "visit_name"]]
    visits = visits.assign(visit_date=visits["actual_date"].where(visits["actual_date"].notna(), visits["visit_date"]))
    cycles = cycles.merge(
        visits.drop(columns="actual_date").rename(columns={"id": "visit_id"}),
        on="visit_id",
        how="left",
    )

    return group_cycles_by_visit(cycles, evaluation_date or today_utc(), threshold)


def subject_compliance_summary(
    store: TrialStore,
    subject_id: str,
    today: Optional[date] = None,
    compliance_threshold: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Drug, visit-timing and overall compliance for a subject.

    Drug scores come from cycles with a computable percentage. Visit scores
    cover visits already performed and visits past their window.

    Returns:
        Dictionary with subject_id, drug, visits and overall
    """
    today = today or today_utc()
    groups = subject_drug_compliance(store, subject_id, today, compliance_threshold)

    drug, drug_assessments = [], []
    for group in groups.values():
        for item in group.items:
            if item.get("compliance_percentage") is None:
                continue
            assessment = assess_cycle_compliance(CycleCompliance.model_validate(item))
            drug_assessments.append(assessment)
            drug.append({"cycle_id": item["id"], "visit_id": group.visit_id, **assessment.model_dump()})

    visits, visit_assessments = [], []
    for view in subject_schedule(store, subject_id, today):
        scheduled = view.visit_date or view.projected_date
        if scheduled is None or (view.actual_date is None and view.status != "overdue"):
            continue
        assessment = calculate_visit_compliance(
            scheduled,
            view.actual_date,
            window_before=(scheduled - view.window_start).days,
            window_after=(view.window_end - scheduled).days,
            today=today,
        )
        visit_assessments.append(assessment)
        visits.append({"visit_id": view.visit_id, "visit_name": view.visit_name, **assessment.model_dump()})

    overall = calculate_overall_compliance(drug_assessments, visit_assessments)
    return {
        "subject_id": subject_id,
        "drug": drug,
        "visits": visits,
        "overall": overall.model_dump(),
    }
