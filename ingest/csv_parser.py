# ingest/csv_parser.py
from collections import OrderedDict
from io import StringIO
from typing import Dict, List, Tuple

import pandas as pd

from errors import ValidationFailed

REQUIRED_COLUMNS = ("visit_id", "patient_id", "test_name")
OPTIONAL_COLUMNS = ("result", "reference_range", "status")

# Header spellings used by exported order sheets
COLUMN_ALIASES = {
    "visitid": "visit_id",
    "visit": "visit_id",
    "patientid": "patient_id",
    "patient": "patient_id",
    "mrn": "patient_id",
    "testname": "test_name",
    "test": "test_name",
    "name": "test_name",
    "referencerange": "reference_range",
}


def _canonical_column(col: str) -> str:
    key = str(col).strip().lower().replace(" ", "_")
    return COLUMN_ALIASES.get(key.replace("_", ""), key)


def parse_lab_orders(content: str) -> List[Dict]:
    """
    Read a CSV of lab orders into canonical row dicts.
    Blank test names are skipped; missing required columns are an error.
    """
    try:
        df = pd.read_csv(StringIO(content), dtype=str, keep_default_na=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ValidationFailed(f"Failed to parse CSV: {e}")

    df.columns = [_canonical_column(c) for c in df.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationFailed(f"CSV is missing required columns: {', '.join(missing)}")

    rows = []
    for _, row in df.iterrows():
        test_name = row["test_name"].strip()
        if not test_name:
            continue
        record = {
            "visit_id": row["visit_id"].strip(),
            "patient_id": row["patient_id"].strip(),
            "test_name": test_name,
        }
        for col in OPTIONAL_COLUMNS:
            if col in df.columns and row[col].strip():
                record[col] = row[col].strip()
        rows.append(record)
    return rows


def group_orders(rows: List[Dict]) -> "OrderedDict[Tuple[str, str], List[Dict]]":
    """Group rows by (visit_id, patient_id), keeping first-seen order"""
    groups: "OrderedDict[Tuple[str, str], List[Dict]]" = OrderedDict()
    for row in rows:
        groups.setdefault((row["visit_id"], row["patient_id"]), []).append(row)
    return groups
