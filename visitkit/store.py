"""
Tabular store for studies, schedules, visits, drug cycles and lab kits.

Every table is a pandas DataFrame. Reads return copies; writes go through the
methods below so that a per-study transaction can snapshot and restore the
mutable tables.
"""

import logging
import os
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pandas as pd

from visitkit.dates import parse_date_utc
from visitkit.errors import RecordNotFoundError, StoreError, StudyNotFoundError

logger = logging.getLogger(__name__)


TABLE_COLUMNS: Dict[str, List[str]] = {
    "studies": [
        "id", "name", "status", "anchor_day", "dosing_frequency",
        "compliance_threshold", "inventory_buffer_kits", "inventory_buffer_days",
    ],
    "visit_schedules": [
        "id", "study_id", "visit_name", "visit_number", "timing_value", "timing_unit",
        "window_before", "window_after", "section_id", "drug_id", "is_active",
    ],
    "visit_kit_requirements": [
        "id", "study_id", "visit_schedule_id", "kit_type", "quantity", "is_optional",
    ],
    "study_drugs": ["id", "study_id", "code", "name", "dose_per_day"],
    "subjects": [
        "id", "study_id", "subject_number", "enrollment_date", "randomization_date", "status",
    ],
    "subject_sections": ["id", "subject_id", "study_section_id", "anchor_date"],
    "subject_visits": [
        "id", "study_id", "subject_id", "visit_schedule_id", "subject_section_id",
        "visit_name", "visit_date", "actual_date",
    ],
    "drug_cycles": [
        "id", "subject_id", "visit_id", "drug_id", "dispensing_date", "last_dose_date",
        "tablets_dispensed", "tablets_returned",
    ],
    "lab_kits": ["id", "study_id", "kit_type", "accession_number", "status", "expiration_date"],
    "lab_kit_orders": ["id", "study_id", "kit_type", "quantity", "status"],
    # A row without kit_type holds the study-wide defaults
    "lab_kit_settings": ["id", "study_id", "kit_type", "min_on_hand", "buffer_days", "lead_time_days"],
    "lab_kit_recommendations": [
        "id", "study_id", "kit_type", "quantity_needed", "horizon_end_date", "status",
        "reason", "reason_type", "confidence", "window_start", "window_end",
        "latest_order_date", "created_at", "updated_at",
    ],
}

DATE_COLUMNS: Dict[str, List[str]] = {
    "subjects": ["enrollment_date", "randomization_date"],
    "subject_sections": ["anchor_date"],
    "subject_visits": ["visit_date", "actual_date"],
    "drug_cycles": ["dispensing_date", "last_dose_date"],
    "lab_kits": ["expiration_date"],
    "lab_kit_recommendations": ["horizon_end_date", "window_start", "window_end", "latest_order_date"],
}

ID_COLUMNS = {
    "id", "study_id", "subject_id", "visit_schedule_id", "subject_section_id",
    "section_id", "study_section_id", "drug_id", "visit_id",
}

# Tables the service writes to; snapshotted by transaction()
MUTABLE_TABLES = ["lab_kits", "lab_kit_recommendations", "subject_sections", "subject_visits"]

KIT_SUPPLY_STATUSES = ["available", "assigned", "pending_shipment"]
KIT_EXPIRABLE_STATUSES = ["available", "assigned", "used", "pending_shipment"]


def _normalize_id(value: Any) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]  # ids read back from CSV as floats
    return text or None


def normalize_table(name: str, frame: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Ensure a table has its known columns, string ids and date-only values."""
    columns = TABLE_COLUMNS[name]
    if frame is None:
        return pd.DataFrame({column: pd.Series(dtype=object) for column in columns})

    normalized = frame.copy()
    for column in columns:
        if column not in normalized.columns:
            normalized[column] = None
    for column in normalized.columns:
        if column in ID_COLUMNS:
            normalized[column] = normalized[column].map(_normalize_id).astype(object)
    for column in DATE_COLUMNS.get(name, []):
        normalized[column] = normalized[column].map(parse_date_utc).astype(object)
    return normalized.reset_index(drop=True)


def _records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    rows = frame.astype(object).where(frame.notna(), None).to_dict(orient="records")
    return rows


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TrialStore:
    """Query interface over the service's tables."""

    def __init__(
        self,
        tables: Optional[Dict[str, pd.DataFrame]] = None,
        data_dir: Optional[Path] = None,
    ):
        tables = tables or {}
        unknown = set(tables) - set(TABLE_COLUMNS)
        if unknown:
            raise StoreError(f"Unknown tables: {', '.join(sorted(unknown))}")
        self.tables: Dict[str, pd.DataFrame] = {
            name: normalize_table(name, tables.get(name)) for name in TABLE_COLUMNS
        }
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self._lock = threading.RLock()

    # ----- reads -----

    def _table(self, name: str) -> pd.DataFrame:
        return self.tables[name]

    def get_study(self, study_id: str) -> Dict[str, Any]:
        studies = self._table("studies")
        match = studies[studies["id"] == study_id]
        if match.empty:
            raise StudyNotFoundError(f"Study not found: {study_id}")
        return _records(match.head(1))[0]

    def list_studies(self, statuses: Optional[Iterable[str]] = None) -> pd.DataFrame:
        studies = self._table("studies")
        if statuses is not None:
            studies = studies[studies["status"].isin(list(statuses))]
        return studies[studies["id"].notna()].copy()

    def visit_schedules(self, study_id: str, active_only: bool = True) -> pd.DataFrame:
        schedules = self._table("visit_schedules")
        schedules = schedules[schedules["study_id"] == study_id]
        if active_only:
            active = schedules["is_active"].map(_truthy_default_true).astype(bool)
            schedules = schedules[active]
        return schedules.copy()

    def kit_requirements(self, study_id: str) -> pd.DataFrame:
        requirements = self._table("visit_kit_requirements")
        return requirements[requirements["study_id"] == study_id].copy()

    def study_drugs(self, study_id: str) -> pd.DataFrame:
        drugs = self._table("study_drugs")
        return drugs[drugs["study_id"] == study_id].copy()

    def subject_visits(
        self,
        study_id: Optional[str] = None,
        subject_id: Optional[str] = None,
    ) -> pd.DataFrame:
        visits = self._table("subject_visits")
        if study_id is not None:
            visits = visits[visits["study_id"] == study_id]
        if subject_id is not None:
            visits = visits[visits["subject_id"] == subject_id]
        return visits.copy()

    def get_subject(self, subject_id: str) -> Dict[str, Any]:
        subjects = self._table("subjects")
        match = subjects[subjects["id"] == subject_id]
        if match.empty:
            raise RecordNotFoundError(f"Subject not found: {subject_id}")
        return _records(match.head(1))[0]

    def subjects_by_ids(self, subject_ids: Iterable[str]) -> pd.DataFrame:
        subjects = self._table("subjects")
        return subjects[subjects["id"].isin(set(subject_ids))].copy()

    def get_section(self, subject_section_id: str) -> Dict[str, Any]:
        sections = self._table("subject_sections")
        match = sections[sections["id"] == subject_section_id]
        if match.empty:
            raise RecordNotFoundError(f"Subject section not found: {subject_section_id}")
        return _records(match.head(1))[0]

    def sections_by_ids(self, section_ids: Iterable[str]) -> pd.DataFrame:
        sections = self._table("subject_sections")
        return sections[sections["id"].isin(set(section_ids))].copy()

    def drug_cycles(self, subject_ids: Iterable[str]) -> pd.DataFrame:
        cycles = self._table("drug_cycles")
        return cycles[cycles["subject_id"].isin(set(subject_ids))].copy()

    def lab_kits(self, study_id: str, statuses: Optional[Iterable[str]] = None) -> pd.DataFrame:
        kits = self._table("lab_kits")
        kits = kits[kits["study_id"] == study_id]
        if statuses is not None:
            kits = kits[kits["status"].isin(list(statuses))]
        return kits.copy()

    def pending_orders(self, study_id: str) -> pd.DataFrame:
        orders = self._table("lab_kit_orders")
        return orders[(orders["study_id"] == study_id) & (orders["status"] == "pending")].copy()

    def kit_settings(self, study_id: str) -> pd.DataFrame:
        settings = self._table("lab_kit_settings")
        return settings[settings["study_id"] == study_id].copy()

    def recommendations(self, study_id: str, statuses: Optional[Iterable[str]] = None) -> pd.DataFrame:
        rows = self._table("lab_kit_recommendations")
        rows = rows[rows["study_id"] == study_id]
        if statuses is not None:
            rows = rows[rows["status"].isin(list(statuses))]
        return rows.copy()

    # ----- writes -----

    def insert_recommendation(self, row: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            now = _now()
            record = {column: row.get(column) for column in TABLE_COLUMNS["lab_kit_recommendations"]}
            record["id"] = record["id"] or str(uuid.uuid4())
            record["created_at"] = now
            record["updated_at"] = now
            table = self.tables["lab_kit_recommendations"]
            self.tables["lab_kit_recommendations"] = pd.concat(
                [table, pd.DataFrame([record], dtype=object)], ignore_index=True
            )
            return record

    def update_recommendation(self, recommendation_id: str, changes: Dict[str, Any]) -> None:
        with self._lock:
            table = self.tables["lab_kit_recommendations"]
            mask = table["id"] == recommendation_id
            if not mask.any():
                raise StoreError(f"Recommendation not found: {recommendation_id}")
            for column, value in {**changes, "updated_at": _now()}.items():
                table.loc[mask, column] = value

    def set_recommendation_status(self, recommendation_ids: Iterable[str], status: str) -> int:
        ids = set(recommendation_ids)
        if not ids:
            return 0
        with self._lock:
            table = self.tables["lab_kit_recommendations"]
            mask = table["id"].isin(ids)
            table.loc[mask, "status"] = status
            table.loc[mask, "updated_at"] = _now()
            return int(mask.sum())

    def expire_lab_kits(self, study_id: str, today: date) -> int:
        """
        Move kits past their expiration date to 'expired'.

        Shipped and destroyed kits are terminal and left alone.
        """
        with self._lock:
            kits = self.tables["lab_kits"]
            past_expiry = kits["expiration_date"].map(lambda d: d is not None and d < today)
            mask = (
                (kits["study_id"] == study_id)
                & kits["status"].isin(KIT_EXPIRABLE_STATUSES)
                & past_expiry.astype(bool)
            )
            count = int(mask.sum())
            if count:
                kits.loc[mask, "status"] = "expired"
                logger.info(f"Expired {count} lab kits for study {study_id} (before {today.isoformat()})")
            return count

    def update_section_anchor(self, subject_section_id: str, anchor_date: date) -> None:
        with self._lock:
            sections = self.tables["subject_sections"]
            mask = sections["id"] == subject_section_id
            if not mask.any():
                raise RecordNotFoundError(f"Subject section not found: {subject_section_id}")
            sections.loc[mask, "anchor_date"] = anchor_date

    def update_visit_dates(self, visit_dates: Dict[str, date]) -> int:
        if not visit_dates:
            return 0
        with self._lock:
            visits = self.tables["subject_visits"]
            updated = 0
            for visit_id, visit_date in visit_dates.items():
                mask = visits["id"] == visit_id
                visits.loc[mask, "visit_date"] = visit_date
                updated += int(mask.sum())
            return updated

    # ----- transactions / persistence -----

    @contextmanager
    def transaction(self, scope: str) -> Iterator["TrialStore"]:
        """
        Apply every write inside the block or none of them.

        On error the mutable tables are restored to their state at entry and
        the exception propagates. On success the tables are persisted when the
        store is backed by a data directory; a failed save rolls back too.
        """
        with self._lock:
            snapshot = {name: self.tables[name].copy(deep=True) for name in MUTABLE_TABLES}
            try:
                yield self
                if self.data_dir is not None:
                    self.save()
            except Exception:
                self.tables.update(snapshot)
                logger.warning(f"Rolled back store changes for {scope}")
                raise

    def save(self, data_dir: Optional[Path] = None) -> None:
        target = Path(data_dir) if data_dir is not None else self.data_dir
        if target is None:
            raise StoreError("No data directory configured for this store")
        target.mkdir(parents=True, exist_ok=True)
        # Every table is written to a temp file first, then swapped in
        staged = {name: target / f".{name}.csv.tmp" for name in MUTABLE_TABLES}
        try:
            for name, tmp_path in staged.items():
                self.tables[name].to_csv(tmp_path, index=False)
            for name, tmp_path in staged.items():
                os.replace(tmp_path, target / f"{name}.csv")
        except OSError as e:
            for tmp_path in staged.values():
                tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to persist tables to {target}: {e}") from e


def _truthy_default_true(value: Any) -> bool:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return True
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "n", "")
    return bool(value)
