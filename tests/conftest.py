from datetime import date

import pandas as pd
import pytest

from visitkit.store import TrialStore

TODAY = date(2024, 3, 1)


def study_tables(study_id="STUDY-1", status="active", anchor_day=0, buffer_kits=0):
    """
    One study with two kit-bearing templates and two subjects.

    Relative to TODAY (2024-03-01) the Week 2 visits project to 2024-03-05 and
    2024-03-10, inside a 60 day horizon; the Week 12 visit projects to
    2024-05-14, outside it.
    """
    p = study_id  # prefix keeps ids unique when several studies share a store
    return {
        "studies": pd.DataFrame([{
            "id": study_id, "name": f"{study_id} name", "status": status, "anchor_day": anchor_day,
            "dosing_frequency": "QD", "compliance_threshold": 80, "inventory_buffer_kits": buffer_kits,
        }]),
        "visit_schedules": pd.DataFrame([
            {"id": f"{p}-VS-1", "study_id": study_id, "visit_name": "Week 2", "timing_value": 14,
             "timing_unit": "days", "window_before": 3, "window_after": 3, "is_active": True},
            {"id": f"{p}-VS-2", "study_id": study_id, "visit_name": "Week 12", "timing_value": 12,
             "timing_unit": "weeks", "window_before": 7, "window_after": 7, "is_active": True},
        ]),
        "visit_kit_requirements": pd.DataFrame([
            {"id": f"{p}-REQ-1", "study_id": study_id, "visit_schedule_id": f"{p}-VS-1",
             "kit_type": "Chemistry", "quantity": 2, "is_optional": False},
            {"id": f"{p}-REQ-2", "study_id": study_id, "visit_schedule_id": f"{p}-VS-2",
             "kit_type": "PK", "quantity": 1, "is_optional": False},
        ]),
        "subjects": pd.DataFrame([
            {"id": f"{p}-SUBJ-1", "study_id": study_id, "subject_number": "001",
             "enrollment_date": "2024-02-10", "randomization_date": "2024-02-20", "status": "active"},
            {"id": f"{p}-SUBJ-2", "study_id": study_id, "subject_number": "002",
             "enrollment_date": "2024-02-25", "randomization_date": None, "status": "active"},
        ]),
        "subject_visits": pd.DataFrame([
            {"id": f"{p}-V-1", "study_id": study_id, "subject_id": f"{p}-SUBJ-1",
             "visit_schedule_id": f"{p}-VS-1", "visit_name": "Week 2", "visit_date": "2024-03-05"},
            {"id": f"{p}-V-2", "study_id": study_id, "subject_id": f"{p}-SUBJ-2",
             "visit_schedule_id": f"{p}-VS-1", "visit_name": "Week 2", "visit_date": "2024-03-10"},
            {"id": f"{p}-V-3", "study_id": study_id, "subject_id": f"{p}-SUBJ-1",
             "visit_schedule_id": f"{p}-VS-2", "visit_name": "Week 12", "visit_date": "2024-05-14"},
        ]),
        "lab_kits": pd.DataFrame([
            {"id": f"{p}-KIT-1", "study_id": study_id, "kit_type": "Chemistry",
             "accession_number": f"{p}-A1", "status": "available", "expiration_date": "2025-01-01"},
            {"id": f"{p}-KIT-2", "study_id": study_id, "kit_type": "Chemistry",
             "accession_number": f"{p}-A2", "status": "available", "expiration_date": "2024-02-15"},
            {"id": f"{p}-KIT-3", "study_id": study_id, "kit_type": "Chemistry",
             "accession_number": f"{p}-A3", "status": "shipped", "expiration_date": "2024-01-01"},
        ]),
    }


def merge_tables(*table_sets):
    """Concatenate several table dicts table by table."""
    merged = {}
    for tables in table_sets:
        for name, frame in tables.items():
            merged[name] = pd.concat([merged[name], frame], ignore_index=True) if name in merged else frame
    return merged


@pytest.fixture
def tables():
    return study_tables()


@pytest.fixture
def store(tables):
    return TrialStore(tables=tables)
