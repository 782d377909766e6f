# cn_portal/reports.py
"""
Aggregates and exports over stored clarifications.

Functions:
- compute_stats(records, uploads) -> dashboard counts
- build_snapshot(records, uploads) -> plain-text data snapshot for the assistant
- format_display_date(value) -> "DD-Mon-YYYY" (input returned unchanged when unparseable)
- export_csv(records) -> UTF-8 (BOM) CSV bytes with display headers
"""

import io
from typing import List, Dict, Any, Sequence

import pandas as pd

from cn_portal.processors.spreadsheet import DISPLAY_LABELS

RECENT_UPLOADS = 5
SNAPSHOT_TOP_MODULES = 10

RESOLVED_STATUSES = frozenset({"closed", "resolved", "done", "fixed", "completed"})

# blank values are reported under these labels in the snapshot
_SNAPSHOT_FILL = {
    "status": "Unknown",
    "priority": "Unset",
    "module": "Unknown",
    "assigned_to": "Unassigned",
    "drop_name": "Unknown",
}

EXPORT_COLUMNS = (
    "s_no", "module", "scenario_steps", "status", "offshore_comments",
    "onsite_comments", "date", "tester", "offshore_reviewer", "open",
    "addressed_by", "defect_should_be_raised", "drop_name", "priority",
    "assigned_to", "reason",
)


def _frame(records: Sequence[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(list(records))
    for col in set(_SNAPSHOT_FILL) | {"s_no"}:
        if col not in df.columns:
            df[col] = None
    return df


def _counts(series: pd.Series) -> Dict[str, int]:
    """Value counts of non-blank entries, most frequent first."""
    s = series.fillna("").astype(str).str.strip()
    s = s[s != ""]
    return {str(k): int(v) for k, v in s.value_counts().items()}


def compute_stats(records: Sequence[Dict[str, Any]], uploads: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    df = _frame(records)
    status = df["status"].fillna("").astype(str).str.strip().str.lower()
    resolved = status.isin(RESOLVED_STATUSES)
    return {
        "total": int(len(df)),
        "byStatus": _counts(df["status"]),
        "byPriority": _counts(df["priority"]),
        "byModule": _counts(df["module"]),
        "byAssignee": _counts(df["assigned_to"]),
        "openCount": int(((status != "") & ~resolved).sum()),
        "resolvedCount": int(resolved.sum()),
        "recentUploads": list(uploads)[:RECENT_UPLOADS],
    }


def _filled(df: pd.DataFrame, col: str) -> pd.Series:
    s = df[col].fillna("").astype(str).str.strip()
    return s.where(s != "", _SNAPSHOT_FILL[col])


def build_snapshot(records: Sequence[Dict[str, Any]], uploads: Sequence[Dict[str, Any]]) -> str:
    """
    Render totals and breakdowns as the text block the assistant reads.
    Breakdowns are sorted by count descending; status lines carry a percentage.
    """
    df = _frame(records)
    total = len(df)
    lines = [f"Total Records: {total}", ""]
    if total == 0:
        lines.append("No clarifications have been uploaded yet.")
    else:
        status = _filled(df, "status")
        lines.append("Status Breakdown:")
        for name, count in status.value_counts().items():
            lines.append(f"  - {name}: {count} ({count / total * 100:.1f}%)")

        for title, col in (("Priority", "priority"), ("Module", "module"),
                           ("Assignee", "assigned_to"), ("Drop/Release", "drop_name")):
            lines.append("")
            lines.append(f"{title} Breakdown:")
            for name, count in _filled(df, col).value_counts().items():
                lines.append(f"  - {name}: {count}")

        modules = _filled(df, "module")
        top = list(modules.value_counts().index[:SNAPSHOT_TOP_MODULES])
        lines.append("")
        lines.append(f"Status by Module (Top {len(top)}):")
        for mod in top:
            per = status[modules == mod].value_counts(sort=False)
            parts = ", ".join(f"{s}: {c}" for s, c in per.items())
            lines.append(f"  - {mod}: {parts}")

    recent = list(uploads)[:RECENT_UPLOADS]
    if recent:
        lines.append("")
        lines.append("Recent Uploads:")
        for u in recent:
            lines.append(
                f"  - {u.get('filename')} ({u.get('uploaded_at')}): "
                f"{u.get('added_count', 0)} added, {u.get('duplicates_skipped', 0)} duplicates"
            )
    return "\n".join(lines) + "\n"


def format_display_date(value: Any) -> str:
    if value is None or value == "":
        return ""
    ts = pd.to_datetime(value, errors="coerce")
    if pd.isna(ts):
        return str(value)
    return ts.strftime("%d-%b-%Y")


def export_csv(records: Sequence[Dict[str, Any]]) -> bytes:
    rows: List[Dict[str, Any]] = []
    for r in records:
        row = {col: r.get(col) for col in EXPORT_COLUMNS}
        row["date"] = format_display_date(row["date"])
        rows.append(row)
    df = pd.DataFrame(rows, columns=list(EXPORT_COLUMNS))
    df["s_no"] = df["s_no"].astype("Int64")
    df = df.rename(columns=DISPLAY_LABELS)
    buf = io.StringIO()
    df.to_csv(buf, index=False, lineterminator="\n")
    return buf.getvalue().encode("utf-8-sig")
