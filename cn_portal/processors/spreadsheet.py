# cn_portal/processors/spreadsheet.py
"""
Spreadsheet intake: turn an uploaded workbook/CSV into clarification row dicts.

Functions:
- read_upload(content, filename) -> (rows, sheet_name)
- map_headers(headers) -> {header: field}
- parse_date(value) -> ISO string (or the original text when unparseable)

Workbooks must contain a sheet named "clarification" (case-insensitive).
Header matching is exact first, then by substring patterns, so "S No",
"Scenario" or "Assigned" still land on the right fields.
"""

import io
import datetime
from typing import List, Dict, Any, Tuple, Optional

import pandas as pd

from cn_portal.schemas import coerce_text, parse_s_no

REQUIRED_SHEET = "clarification"

# Error codes used by callers
E_BAD_FILE = "E_BAD_FILE"
E_MISSING_SHEET = "E_MISSING_SHEET"
E_EMPTY_SHEET = "E_EMPTY_SHEET"

COLUMN_MAPPING: Dict[str, str] = {
    "S.no": "s_no",
    "Module": "module",
    "Scenario/Steps to be Reproduce": "scenario_steps",
    "Status": "status",
    "Offshore Comments": "offshore_comments",
    "Onsite Comments": "onsite_comments",
    "Date": "date",
    "Tester": "tester",
    "teater": "tester",
    "Offshore Reviewer": "offshore_reviewer",
    "Open": "open",
    "Addressed by": "addressed_by",
    "Defect should be raised": "defect_should_be_raised",
    "Drop Name": "drop_name",
    "Priority": "priority",
    "Assigned To": "assigned_to",
    "Reason": "reason",
}

# substring fallbacks, checked in order
FUZZY_HEADER_PATTERNS: List[Tuple[str, str]] = [
    ("sno", "s_no"),
    ("s no", "s_no"),
    ("serial", "s_no"),
    ("scenario/steps", "scenario_steps"),
    ("scenario", "scenario_steps"),
    ("steps", "scenario_steps"),
    ("offshore comment", "offshore_comments"),
    ("onsite comment", "onsite_comments"),
    ("assignedto", "assigned_to"),
    ("assigned", "assigned_to"),
    ("offshore review", "offshore_reviewer"),
    ("defect", "defect_should_be_raised"),
    ("addressed", "addressed_by"),
    ("drop", "drop_name"),
]

DISPLAY_LABELS: Dict[str, str] = {
    "s_no": "S.No",
    "module": "Module",
    "scenario_steps": "Scenario/Steps to be Reproduce",
    "status": "Status",
    "offshore_comments": "Offshore Comments",
    "onsite_comments": "Onsite Comments",
    "date": "Date",
    "tester": "Tester",
    "offshore_reviewer": "Offshore Reviewer",
    "open": "Open",
    "addressed_by": "Addressed by",
    "defect_should_be_raised": "Defect should be raised",
    "drop_name": "Drop Name",
    "priority": "Priority",
    "assigned_to": "Assigned To",
    "reason": "Reason",
    "keywords": "Keywords",
}


class SpreadsheetError(ValueError):
    def __init__(self, message: str, code: str = E_BAD_FILE, available_sheets: Optional[List[str]] = None):
        super().__init__(message)
        self.code = code
        self.available_sheets = available_sheets or []


def find_matching_column(header: Any) -> Optional[str]:
    normalized = coerce_text(header).strip().lower()
    if not normalized:
        return None
    for excel_header, field in COLUMN_MAPPING.items():
        if excel_header.lower() == normalized:
            return field
    for pattern, field in FUZZY_HEADER_PATTERNS:
        if pattern in normalized:
            return field
    return None


def map_headers(headers) -> Dict[Any, str]:
    """First header wins when two columns map to the same field."""
    mapping: Dict[Any, str] = {}
    taken = set()
    for h in headers:
        field = find_matching_column(h)
        if field and field not in taken:
            mapping[h] = field
            taken.add(field)
    return mapping


def parse_date(value: Any) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    if isinstance(value, (pd.Timestamp, datetime.datetime, datetime.date)):
        if pd.isna(value):
            return ""
        return pd.Timestamp(value).isoformat()
    text = coerce_text(value).strip()
    if not text:
        return ""
    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        return text
    return parsed.isoformat()


def _parse_s_no(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    return parse_s_no(value)


def _cell(value: Any) -> Any:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def dataframe_to_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Map a raw sheet DataFrame to field-named row dicts; fully blank rows are dropped."""
    mapping = map_headers(df.columns)
    rows: List[Dict[str, Any]] = []
    for record in df.to_dict(orient="records"):
        row: Dict[str, Any] = {}
        for header, field in mapping.items():
            value = _cell(record.get(header))
            if field == "s_no":
                row[field] = _parse_s_no(value)
            elif field == "date":
                row[field] = parse_date(value)
            else:
                row[field] = coerce_text(value)
        if any(v not in (None, "") for v in row.values()):
            rows.append(row)
    return rows


def _read_workbook(content: bytes) -> Tuple[pd.DataFrame, str]:
    try:
        sheets = pd.read_excel(io.BytesIO(content), sheet_name=None, dtype=object)
    except Exception as e:
        raise SpreadsheetError(f"Could not read workbook: {e}") from e
    names = list(sheets.keys())
    for name in names:
        if str(name).strip().lower() == REQUIRED_SHEET:
            return sheets[name], str(name)
    raise SpreadsheetError(
        f'Sheet "{REQUIRED_SHEET}" not found.', code=E_MISSING_SHEET,
        available_sheets=[str(n) for n in names],
    )


def _read_csv(content: bytes) -> pd.DataFrame:
    try:
        return pd.read_csv(io.BytesIO(content), dtype=object, encoding="utf-8-sig", keep_default_na=False)
    except Exception as e:
        raise SpreadsheetError(f"Could not read CSV: {e}") from e


def read_upload(content: bytes, filename: str) -> Tuple[List[Dict[str, Any]], str]:
    """
    Parse an uploaded file into row dicts.

    Returns:
      (rows, sheet_name); sheet_name is "" for CSV uploads.

    Raises:
      SpreadsheetError on unreadable files, a missing sheet, or no data rows.
    """
    if not content:
        raise SpreadsheetError("Uploaded file is empty.")
    name = (filename or "").lower()
    if name.endswith(".csv"):
        df, sheet_name = _read_csv(content), ""
    elif name.endswith((".xlsx", ".xlsm", ".xls")):
        df, sheet_name = _read_workbook(content)
    else:
        raise SpreadsheetError(f"Unsupported file type: {filename}")

    rows = dataframe_to_rows(df)
    if not rows:
        raise SpreadsheetError("No data found in the clarification sheet.", code=E_EMPTY_SHEET)
    return rows, sheet_name
