import logging
from pathlib import Path
from typing import Dict, List, Optional

import chardet
import pandas as pd

from visitkit.config import Config
from visitkit.errors import DataValidationError
from visitkit.store import TABLE_COLUMNS, TrialStore

logger = logging.getLogger(__name__)

# Columns that must be present when a table file exists
REQUIRED_COLUMNS: Dict[str, List[str]] = {
    "studies": ["id", "status", "anchor_day"],
    "visit_schedules": ["id", "study_id", "timing_value", "timing_unit"],
    "visit_kit_requirements": ["visit_schedule_id", "kit_type"],
    "study_drugs": ["id", "study_id", "dose_per_day"],
    "subjects": ["id", "study_id"],
    "subject_sections": ["id", "subject_id", "anchor_date"],
    "subject_visits": ["id", "study_id", "subject_id"],
    "drug_cycles": ["id", "subject_id", "tablets_dispensed"],
    "lab_kits": ["id", "study_id", "kit_type", "accession_number", "status"],
    "lab_kit_orders": ["study_id", "kit_type", "quantity", "status"],
    "lab_kit_settings": ["study_id", "kit_type"],
    "lab_kit_recommendations": ["id", "study_id", "kit_type", "quantity_needed", "status"],
}

# Tried after a confident detection; latin-1 decodes any byte
ENCODINGS = ["utf-8-sig", "cp1252", "latin-1"]

# chardet names mapped to Python codec names
ENCODING_ALIASES = {
    "utf-8": "utf-8-sig",
    "utf8": "utf-8-sig",
    "ascii": "utf-8-sig",
    "windows-1252": "cp1252",
    "iso-8859-1": "latin-1",
    "latin1": "latin-1",
}

DETECTION_SAMPLE_BYTES = 10000
MIN_DETECTION_CONFIDENCE = 0.7


def detect_encoding(file_path: Path) -> Optional[str]:
    """
    Guess a file's encoding with chardet.

    Returns:
        Codec name, or None when the file is empty or chardet isn't confident
    """
    with open(file_path, "rb") as f:
        raw_data = f.read(DETECTION_SAMPLE_BYTES)
    if not raw_data:
        return None

    result = chardet.detect(raw_data)
    encoding = result.get("encoding")
    confidence = result.get("confidence") or 0.0
    if not encoding or confidence <= MIN_DETECTION_CONFIDENCE:
        return None
    encoding = encoding.lower()
    logger.debug(f"chardet detected {encoding} for {file_path.name} (confidence: {confidence:.2f})")
    return ENCODING_ALIASES.get(encoding, encoding)


def read_table_csv(file_path: Path) -> pd.DataFrame:
    """
    Read a table CSV with the chardet-detected encoding, then common ones.

    Raises:
        DataValidationError: If the file cannot be decoded or parsed
    """
    encodings_to_try = []
    detected = detect_encoding(file_path)
    if detected:
        encodings_to_try.append(detected)
    encodings_to_try += [e for e in ENCODINGS if e not in encodings_to_try]

    last_error: Optional[Exception] = None
    for encoding in encodings_to_try:
        try:
            return pd.read_csv(
                file_path,
                encoding=encoding,
                dtype=object,
                skipinitialspace=True,
                skip_blank_lines=True,
            )
        except (UnicodeDecodeError, LookupError) as e:
            last_error = e
            continue
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except pd.errors.ParserError as e:
            raise DataValidationError(f"Could not parse {file_path.name}: {e}") from e
    raise DataValidationError(f"Could not decode {file_path.name}: {last_error}")


def validate_tables(tables: Dict[str, pd.DataFrame]) -> None:
    """
    Check required columns and per-study accession number uniqueness.

    Raises:
        DataValidationError: On the first failing table
    """
    for name, frame in tables.items():
        missing = [c for c in REQUIRED_COLUMNS.get(name, []) if c not in frame.columns]
        if missing:
            raise DataValidationError(
                f"{name}.csv is missing required columns: {', '.join(missing)}"
            )

    kits = tables.get("lab_kits")
    if kits is not None and not kits.empty:
        duplicated = kits[kits.duplicated(subset=["study_id", "accession_number"], keep=False)]
        if not duplicated.empty:
            numbers = sorted(set(duplicated["accession_number"].astype(str)))
            raise DataValidationError(
                f"Duplicate accession numbers within a study: {', '.join(numbers)}"
            )


def load_store(data_dir: Optional[Path] = None) -> TrialStore:
    """
    Load CSV tables into a store backed by the data directory.

    Args:
        data_dir: Directory containing <table>.csv files. If None, uses
                  Config.DATA_DIR. Missing table files load as empty tables.

    Returns:
        TrialStore persisting its writes back to the same directory

    Raises:
        FileNotFoundError: If the data directory doesn't exist
        DataValidationError: If a table is unreadable or invalid
    """
    data_dir = Path(data_dir) if data_dir is not None else Config.DATA_DIR
    if not data_dir.exists():
        raise FileNotFoundError(
            f"Data directory not found: {data_dir}. "
            f"Create it and add the table CSV files, or set DATA_DIR in your .env file."
        )

    tables: Dict[str, pd.DataFrame] = {}
    for name in TABLE_COLUMNS:
        path = data_dir / f"{name}.csv"
        if not path.exists():
            continue
        tables[name] = read_table_csv(path)
        logger.info(f"Loaded {name}.csv ({len(tables[name])} rows)")

    validate_tables(tables)
    return TrialStore(tables=tables, data_dir=data_dir)
