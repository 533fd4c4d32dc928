import logging
import math
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from visitkit.compliance import _positive, calculate_expected_return_date, dose_per_day_for_frequency
from visitkit.dates import add_days, parse_date_utc
from visitkit.errors import MalformedRowError
from visitkit.schemas import ForecastStatus, KitDemand
from visitkit.store import KIT_SUPPLY_STATUSES, TrialStore
from visitkit.visit_calculator import calculate_visit_date

logger = logging.getLogger(__name__)

PROJECTED_VISIT_COLUMNS = [
    "visit_id", "subject_id", "visit_schedule_id", "visit_name", "projected_date", "source",
]

# Upper bounds for lab_kit_settings values
SETTING_LIMITS = {"min_on_hand": 500, "buffer_days": 180, "lead_time_days": 120}

# Available kits expiring within this many days (capped by the horizon) are flagged
EXPIRY_WINDOW_DAYS = 30

# Spare kits after demand at or below which a kit type is a warning
LOW_SLACK_KITS = 2

CONFIDENCE_BY_REASON = {"deficit": 0.9, "buffer": 0.65}


def normalize_kit_type(value: Any) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    text = str(value).strip().lower()
    return text or None


def _as_int(value: Any, table: str, row_id: Any, field: str, default: Optional[int] = None) -> int:
    if value is None or (not isinstance(value, str) and pd.isna(value)) or value == "":
        if default is not None:
            return default
        raise MalformedRowError(table, row_id, f"missing {field}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedRowError(table, row_id, f"{field} is not a number: {value!r}")
    if math.isnan(number):
        if default is not None:
            return default
        raise MalformedRowError(table, row_id, f"missing {field}")
    return int(number)


def study_anchor_day(study: Dict[str, Any]) -> int:
    anchor_day = _as_int(study.get("anchor_day"), "studies", study.get("id"), "anchor_day")
    if anchor_day not in (0, 1):
        raise MalformedRowError("studies", study.get("id"), f"anchor_day must be 0 or 1, got {anchor_day}")
    return anchor_day


def subject_baseline(subject: Optional[Dict[str, Any]]) -> Optional[date]:
    """Randomization date, falling back to enrollment date."""
    if not subject:
        return None
    return parse_date_utc(subject.get("randomization_date")) or parse_date_utc(subject.get("enrollment_date"))


def _by_id(frame: pd.DataFrame) -> Dict[str, Dict[str, Any]]:
    clean = frame.astype(object).where(frame.notna(), None)
    return {row["id"]: row for row in clean.to_dict(orient="records") if row.get("id")}


def _template_dose(
    template: Dict[str, Any],
    drugs: Dict[str, Dict[str, Any]],
    study: Dict[str, Any],
) -> float:
    drug = drugs.get(template["drug_id"])
    if drug is None:
        raise MalformedRowError(
            "visit_schedules", template["id"], f"references unknown drug {template['drug_id']}"
        )
    dose = _positive(drug.get("dose_per_day")) or dose_per_day_for_frequency(study.get("dosing_frequency"))
    if dose is None:
        raise MalformedRowError(
            "visit_schedules", template["id"], f"drug {template['drug_id']} has no dose_per_day"
        )
    return dose


def _latest_open_cycles(cycles: pd.DataFrame) -> Dict[tuple, Dict[str, Any]]:
    """Most recent open (no last dose) cycle per (subject, drug)."""
    if cycles.empty:
        return {}
    open_cycles = cycles[cycles["last_dose_date"].isna() & cycles["dispensing_date"].notna()]
    open_cycles = open_cycles.sort_values("dispensing_date", ascending=False)
    latest: Dict[tuple, Dict[str, Any]] = {}
    for row in open_cycles.astype(object).where(open_cycles.notna(), None).to_dict(orient="records"):
        key = (row["subject_id"], row["drug_id"])
        if key not in latest:
            latest[key] = row
    return latest


def project_pending_visits(store: TrialStore, study: Dict[str, Any]) -> pd.DataFrame:
    """
    Project the scheduled date of every pending (not yet performed) visit.

    Dates are recomputed from the current anchor: the subject section's
    anchor date when the visit belongs to a section, otherwise the subject's
    baseline. Drug-return templates follow the subject's open drug cycle.
    Visits without a template keep their stored date.

    Returns:
        DataFrame with visit_id, subject_id, visit_schedule_id, visit_name,
        projected_date and source ('template', 'drug_cycle' or 'stored')
    """
    study_id = study["id"]
    anchor_day = study_anchor_day(study)

    visits = store.subject_visits(study_id=study_id)
    pending = visits[visits["actual_date"].isna()]
    if pending.empty:
        return pd.DataFrame(columns=PROJECTED_VISIT_COLUMNS)

    templates = _by_id(store.visit_schedules(study_id))
    all_template_ids = set(store.visit_schedules(study_id, active_only=False)["id"])
    subjects = _by_id(store.subjects_by_ids(pending["subject_id"].dropna().unique()))
    sections = _by_id(store.sections_by_ids(pending["subject_section_id"].dropna().unique()))

    drug_templates = [t for t in templates.values() if t.get("drug_id")]
    drugs = _by_id(store.study_drugs(study_id)) if drug_templates else {}
    open_cycles = (
        _latest_open_cycles(store.drug_cycles(pending["subject_id"].dropna().unique()))
        if drug_templates else {}
    )

    projected: List[Dict[str, Any]] = []
    for visit in pending.astype(object).where(pending.notna(), None).to_dict(orient="records"):
        schedule_id = visit.get("visit_schedule_id")
        template = templates.get(schedule_id) if schedule_id else None
        source = "stored"
        projected_date = parse_date_utc(visit.get("visit_date"))

        if schedule_id and template is None:
            if schedule_id not in all_template_ids:
                logger.warning(f"Visit {visit['id']} references unknown template {schedule_id}")
            continue  # inactive or missing template

        if template is not None:
            section = sections.get(visit.get("subject_section_id")) if visit.get("subject_section_id") else None
            baseline = (
                parse_date_utc(section.get("anchor_date")) if section
                else subject_baseline(subjects.get(visit.get("subject_id")))
            )
            if baseline is not None:
                try:
                    calculated = calculate_visit_date(
                        baseline,
                        _as_int(template.get("timing_value"), "visit_schedules", template["id"], "timing_value"),
                        template.get("timing_unit") or "days",
                        anchor_day,
                        _as_int(template.get("window_before"), "visit_schedules", template["id"], "window_before", 0),
                        _as_int(template.get("window_after"), "visit_schedules", template["id"], "window_after", 0),
                    )
                except ValueError as e:
                    raise MalformedRowError("visit_schedules", template["id"], str(e)) from e
                projected_date = calculated.scheduled_date
                source = "template"

            if template.get("drug_id"):
                dose = _template_dose(template, drugs, study)
                cycle = open_cycles.get((visit.get("subject_id"), template["drug_id"]))
                if cycle is not None:
                    return_date = calculate_expected_return_date(
                        parse_date_utc(cycle.get("dispensing_date")),
                        _as_int(cycle.get("tablets_dispensed"), "drug_cycles", cycle["id"], "tablets_dispensed", 0),
                        dose,
                    )
                    if return_date is not None:
                        projected_date = return_date
                        source = "drug_cycle"

        if projected_date is None:
            logger.warning(f"Visit {visit['id']} has no baseline or stored date; skipped from forecast")
            continue

        projected.append({
            "visit_id": visit["id"],
            "subject_id": visit.get("subject_id"),
            "visit_schedule_id": schedule_id,
            "visit_name": visit.get("visit_name") or (template or {}).get("visit_name"),
            "projected_date": projected_date,
            "source": source,
        })

    return pd.DataFrame(projected, columns=PROJECTED_VISIT_COLUMNS)


def _count_by_kit_type(frame: pd.DataFrame, quantity_column: Optional[str] = None) -> Dict[str, int]:
    if frame.empty:
        return {}
    keyed = frame.assign(kit_key=frame["kit_type"].map(normalize_kit_type)).dropna(subset=["kit_key"])
    if quantity_column is None:
        return keyed.groupby("kit_key").size().astype(int).to_dict()
    quantities = pd.to_numeric(keyed[quantity_column], errors="coerce").fillna(0)
    return quantities.groupby(keyed["kit_key"]).sum().astype(int).to_dict()


def _truthy(value: Any) -> bool:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return False
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y")
    return bool(value)


def _bounded(value: Any, fallback: int, upper: int) -> int:
    """Numeric setting clamped to [0, upper]; fallback when missing or non-numeric."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return int(min(max(number, 0), upper))


def resolve_kit_settings(
    study: Dict[str, Any],
    settings: pd.DataFrame,
) -> Tuple[Dict[str, int], Dict[str, Dict[str, int]]]:
    """
    Study-wide kit settings and per-kit-type overrides.

    The row without a kit type holds the defaults; missing default buffer
    days fall back to the study's inventory_buffer_days. An override only
    replaces the values it sets.

    Returns:
        (defaults, overrides keyed by normalized kit type)
    """
    rows = settings.astype(object).where(settings.notna(), None).to_dict(orient="records")
    default_row = next((row for row in rows if normalize_kit_type(row.get("kit_type")) is None), {})

    study_buffer_days = _bounded(study.get("inventory_buffer_days"), 0, SETTING_LIMITS["buffer_days"])
    defaults = {
        "min_on_hand": _bounded(default_row.get("min_on_hand"), 0, SETTING_LIMITS["min_on_hand"]),
        "buffer_days": _bounded(default_row.get("buffer_days"), study_buffer_days, SETTING_LIMITS["buffer_days"]),
        "lead_time_days": _bounded(default_row.get("lead_time_days"), 0, SETTING_LIMITS["lead_time_days"]),
    }

    overrides: Dict[str, Dict[str, int]] = {}
    for row in rows:
        kit_key = normalize_kit_type(row.get("kit_type"))
        if kit_key is None:
            continue
        overrides[kit_key] = {
            name: _bounded(row.get(name), defaults[name], upper) for name, upper in SETTING_LIMITS.items()
        }
    return defaults, overrides


def latest_order_date(first_visit: Optional[date], lead_time_days: int, today: date) -> Optional[date]:
    """Last day an order can go out and still arrive before the first visit, never before today."""
    if first_visit is None:
        return None
    return max(today, add_days(first_visit, -max(0, lead_time_days)))


def forecast_status(
    deficit: int,
    deficit_before_orders: int,
    slack: int,
    pending_quantity: int,
    kits_expiring_soon: int,
    optional: bool,
) -> ForecastStatus:
    """critical / warning / ok for one kit type."""
    if deficit > 0:
        return "warning" if optional else "critical"
    if deficit_before_orders > 0 and pending_quantity > 0:
        return "warning"
    if slack <= LOW_SLACK_KITS or kits_expiring_soon > 0:
        return "warning"
    return "ok"


def forecast_kit_demand(
    store: TrialStore,
    study: Dict[str, Any],
    today: date,
    days_ahead: int,
) -> List[KitDemand]:
    """
    Forecast per-kit-type demand for visits projected into the horizon.

    Supply is kits on hand plus pending orders. The buffer kept on top of
    visit demand is the largest of the kit type's buffer days of demand,
    its minimum on hand and the study's inventory_buffer_kits.

    Args:
        store: Store to read from
        study: Study row
        today: First day of the horizon
        days_ahead: Horizon length; visits up to today + days_ahead count

    Returns:
        One KitDemand per kit type with demand, sorted by kit type
    """
    study_id = study["id"]
    horizon_end = add_days(today, days_ahead)

    projected = project_pending_visits(store, study)
    if projected.empty:
        return []
    in_horizon = projected[projected["projected_date"].map(lambda d: today <= d <= horizon_end)]
    if in_horizon.empty:
        return []

    requirements = store.kit_requirements(study_id)
    if requirements.empty:
        return []
    requirements = requirements.assign(
        kit_key=requirements["kit_type"].map(normalize_kit_type),
        quantity_per_visit=pd.to_numeric(requirements["quantity"], errors="coerce").fillna(1).clip(lower=1).astype(int),
        optional=requirements["is_optional"].map(_truthy).astype(bool),
    ).dropna(subset=["kit_key"])

    demand = in_horizon.merge(
        requirements[["visit_schedule_id", "kit_type", "kit_key", "quantity_per_visit", "optional"]],
        on="visit_schedule_id",
        how="inner",
    )
    if demand.empty:
        return []

    available = _count_by_kit_type(store.lab_kits(study_id, KIT_SUPPLY_STATUSES))
    pending_orders = _count_by_kit_type(store.pending_orders(study_id), "quantity")

    expiry_cutoff = add_days(today, max(1, min(days_ahead, EXPIRY_WINDOW_DAYS)))
    on_hand = store.lab_kits(study_id, ["available"])
    expiring_soon: Dict[str, int] = {}
    if not on_hand.empty:
        within = on_hand["expiration_date"].map(lambda d: d is not None and today <= d <= expiry_cutoff)
        expiring_soon = _count_by_kit_type(on_hand[within.astype(bool)])

    buffer_kits = _as_int(study.get("inventory_buffer_kits"), "studies", study_id, "inventory_buffer_kits", 0)
    buffer_kits = min(max(0, buffer_kits), SETTING_LIMITS["min_on_hand"])
    defaults, overrides = resolve_kit_settings(study, store.kit_settings(study_id))

    forecast: List[KitDemand] = []
    for kit_key, group in demand.groupby("kit_key"):
        settings = overrides.get(kit_key, defaults)
        kits_required = int(group["quantity_per_visit"].sum())
        kits_available = available.get(kit_key, 0)
        pending_quantity = pending_orders.get(kit_key, 0)
        kits_expiring_soon = expiring_soon.get(kit_key, 0)
        optional = bool(group["optional"].all())
        supply = kits_available + pending_quantity

        per_day = kits_required / max(1, days_ahead)
        buffer_from_days = math.ceil(per_day * settings["buffer_days"])
        target_buffer = max(buffer_from_days, settings["min_on_hand"], buffer_kits)

        quantity_needed = max(0, kits_required + target_buffer - supply)
        deficit = max(0, kits_required + buffer_from_days - supply)
        deficit_before_orders = max(0, kits_required + buffer_from_days - kits_available)
        reason_type = "deficit" if deficit > 0 else "buffer"
        window_start = min(group["projected_date"])

        forecast.append(KitDemand(
            kit_type=str(group["kit_type"].iloc[0]).strip(),
            visits_scheduled=int(group["visit_id"].nunique()),
            kits_required=kits_required,
            kits_available=kits_available,
            kits_expiring_soon=kits_expiring_soon,
            pending_order_quantity=pending_quantity,
            buffer_kits=target_buffer,
            per_day_demand=per_day,
            deficit=deficit,
            quantity_needed=quantity_needed,
            optional=optional,
            status=forecast_status(
                deficit,
                deficit_before_orders,
                supply - (kits_required + buffer_from_days),
                pending_quantity,
                kits_expiring_soon,
                optional,
            ),
            reason_type=reason_type,
            confidence=CONFIDENCE_BY_REASON[reason_type],
            window_start=window_start,
            window_end=max(group["projected_date"]),
            latest_order_date=latest_order_date(window_start, settings["lead_time_days"], today),
            min_on_hand=settings["min_on_hand"],
            buffer_days=settings["buffer_days"],
            lead_time_days=settings["lead_time_days"],
        ))

    logger.info(
        f"Forecast for study {study_id}: {len(in_horizon)} visits in horizon, "
        f"{len(forecast)} kit types with demand"
    )
    return sorted(forecast, key=lambda item: normalize_kit_type(item.kit_type))
