from datetime import date
from pathlib import Path

import chardet
import pandas as pd
import pytest

from visitkit.data_loader import detect_encoding, load_store, read_table_csv, validate_tables
from visitkit.errors import DataValidationError, StoreError
from visitkit.recommendation_engine import RecommendationEngine
from visitkit.store import TrialStore

SAMPLE_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


def _write_minimal_tables(data_dir: Path):
    pd.DataFrame([
        {"id": "S1", "name": "Study", "status": "active", "anchor_day": 1, "inventory_buffer_kits": 0},
    ]).to_csv(data_dir / "studies.csv", index=False)
    pd.DataFrame([
        {"id": "VS1", "study_id": "S1", "visit_name": "Day 8", "timing_value": 8, "timing_unit": "days",
         "window_before": 1, "window_after": 1, "is_active": "true"},
    ]).to_csv(data_dir / "visit_schedules.csv", index=False)
    pd.DataFrame([
        {"id": "R1", "study_id": "S1", "visit_schedule_id": "VS1", "kit_type": "Safety", "quantity": 2},
    ]).to_csv(data_dir / "visit_kit_requirements.csv", index=False)
    pd.DataFrame([
        {"id": "P1", "study_id": "S1", "randomization_date": "2024-03-01"},
    ]).to_csv(data_dir / "subjects.csv", index=False)
    pd.DataFrame([
        {"id": "V1", "study_id": "S1", "subject_id": "P1", "visit_schedule_id": "VS1", "visit_name": "Day 8"},
    ]).to_csv(data_dir / "subject_visits.csv", index=False)


def test_load_store_reads_csv_tables(tmp_path):
    """Loaded values are normalized: string ids and date-only dates."""
    _write_minimal_tables(tmp_path)

    store = load_store(tmp_path)

    study = store.get_study("S1")
    assert study["anchor_day"] == "1"
    visits = store.subject_visits(study_id="S1")
    assert list(visits["id"]) == ["V1"]
    assert store.get_subject("P1")["randomization_date"] == date(2024, 3, 1)
    assert store.lab_kits("S1").empty


def test_recompute_persists_to_data_dir(tmp_path):
    """A committed recompute writes the mutable tables back as CSV."""
    _write_minimal_tables(tmp_path)
    store = load_store(tmp_path)

    result = RecommendationEngine(store).recompute("S1", days_ahead=30, today=date(2024, 3, 1))

    assert result.created == 1
    saved = pd.read_csv(tmp_path / "lab_kit_recommendations.csv")
    assert list(saved["kit_type"]) == ["Safety"]
    assert list(saved["quantity_needed"]) == [2]
    assert list(saved["horizon_end_date"]) == ["2024-03-31"]

    # Reloading and recomputing is a no-op
    again = RecommendationEngine(load_store(tmp_path)).recompute("S1", days_ahead=30, today=date(2024, 3, 1))
    assert (again.created, again.updated, again.expired) == (0, 0, 0)


def _write_expired_kit(data_dir: Path):
    pd.DataFrame([
        {"id": "K1", "study_id": "S1", "kit_type": "Safety", "accession_number": "A1",
         "status": "available", "expiration_date": "2024-01-01"},
    ]).to_csv(data_dir / "lab_kits.csv", index=False)


def test_failed_save_rolls_back_memory(tmp_path, monkeypatch):
    """When persisting fails the in-memory tables match the files again."""
    _write_minimal_tables(tmp_path)
    _write_expired_kit(tmp_path)
    store = load_store(tmp_path)

    def disk_full(self, data_dir=None):
        raise StoreError("disk full")

    monkeypatch.setattr(TrialStore, "save", disk_full)

    with pytest.raises(StoreError, match="disk full"):
        RecommendationEngine(store).recompute("S1", days_ahead=30, today=date(2024, 3, 1))

    assert store.recommendations("S1").empty
    assert store.lab_kits("S1").set_index("id")["status"]["K1"] == "available"


def test_failed_replace_keeps_previous_files(tmp_path, monkeypatch):
    """A failing swap leaves the old CSVs and no temp files behind."""
    _write_minimal_tables(tmp_path)
    _write_expired_kit(tmp_path)
    store = load_store(tmp_path)

    def refuse(src, dst):
        raise OSError("read-only file system")

    monkeypatch.setattr("visitkit.store.os.replace", refuse)

    with pytest.raises(StoreError, match="read-only file system"):
        RecommendationEngine(store).recompute("S1", days_ahead=30, today=date(2024, 3, 1))

    assert not (tmp_path / "lab_kit_recommendations.csv").exists()
    assert list(pd.read_csv(tmp_path / "lab_kits.csv")["status"]) == ["available"]
    assert list(tmp_path.glob(".*.tmp")) == []
    assert store.lab_kits("S1").set_index("id")["status"]["K1"] == "available"


def test_missing_data_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_store(tmp_path / "missing")


def test_missing_required_columns():
    tables = {"lab_kits": pd.DataFrame([{"id": "K1", "study_id": "S1"}])}
    with pytest.raises(DataValidationError, match="lab_kits.csv is missing required columns"):
        validate_tables(tables)


def test_duplicate_accession_numbers():
    """Accession numbers are unique within a study, not across studies."""
    kits = pd.DataFrame([
        {"id": "K1", "study_id": "S1", "kit_type": "A", "accession_number": "X-1", "status": "available"},
        {"id": "K2", "study_id": "S2", "kit_type": "A", "accession_number": "X-1", "status": "available"},
    ])
    validate_tables({"lab_kits": kits})

    duplicated = pd.concat([kits, kits.assign(id="K3", study_id="S1")], ignore_index=True)
    with pytest.raises(DataValidationError, match="X-1"):
        validate_tables({"lab_kits": duplicated})


def _detects(monkeypatch, encoding, confidence):
    monkeypatch.setattr(chardet, "detect", lambda raw: {"encoding": encoding, "confidence": confidence})


def test_read_table_csv_falls_back_when_detection_is_unsure(tmp_path, monkeypatch):
    """Below the confidence bar the fixed list is tried: utf-8 fails, cp1252 decodes."""
    _detects(monkeypatch, "ISO-8859-2", 0.3)
    path = tmp_path / "studies.csv"
    path.write_bytes("id,name,status,anchor_day\nS1,Étude,active,0\n".encode("latin-1"))

    frame = read_table_csv(path)

    assert frame.loc[0, "name"] == "Étude"


def test_read_table_csv_uses_detected_encoding_first(tmp_path, monkeypatch):
    """A UTF-16 file would decode as cp1252 garbage; the detected codec wins."""
    _detects(monkeypatch, "UTF-16", 1.0)
    path = tmp_path / "studies.csv"
    path.write_bytes("id,name,status,anchor_day\nS1,Étude,active,0\n".encode("utf-16"))

    frame = read_table_csv(path)

    assert list(frame.columns) == ["id", "name", "status", "anchor_day"]
    assert frame.loc[0, "name"] == "Étude"


def test_detect_encoding_maps_chardet_names(tmp_path, monkeypatch):
    path = tmp_path / "studies.csv"
    path.write_bytes(b"id,name\nS1,Study\n")

    _detects(monkeypatch, "ISO-8859-1", 0.9)
    assert detect_encoding(path) == "latin-1"
    _detects(monkeypatch, "ascii", 1.0)
    assert detect_encoding(path) == "utf-8-sig"
    _detects(monkeypatch, "Windows-1252", 0.75)
    assert detect_encoding(path) == "cp1252"


def test_detect_encoding_unsure_or_empty(tmp_path, monkeypatch):
    path = tmp_path / "studies.csv"
    path.write_bytes(b"id,name\nS1,Study\n")
    _detects(monkeypatch, "ascii", 0.7)
    assert detect_encoding(path) is None
    _detects(monkeypatch, None, 0.0)
    assert detect_encoding(path) is None

    empty = tmp_path / "empty.csv"
    empty.write_bytes(b"")
    assert detect_encoding(empty) is None


def test_sample_data_loads():
    """The bundled sample tables load and recompute without errors."""
    store = load_store(SAMPLE_DATA_DIR)
    store.data_dir = None  # keep the sample files untouched

    batch = RecommendationEngine(store).recompute_all(today=date(2026, 10, 17))

    assert batch.processed == 2
    assert batch.failures == 0


if __name__ == "__main__":
    pytest.main([__file__])
