# cn_portal/processors/hashing.py
"""
Content fingerprints used as dedupe keys.

- normalize_value(value) -> str
- canonical_tuple(record) -> tuple of normalized canonical fields
- compute_row_hash(record) -> 64-char lowercase hex SHA-256
- compute_scenario_hash(record) -> same digest over scenario_steps only

The row hash is order-sensitive: the canonical fields are joined in the
order of CANONICAL_FIELDS with HASH_DELIMITER, so swapping two values
changes the hash. Formatting noise (case, surrounding or repeated
whitespace) does not.
"""

import hashlib
import re
from typing import Any, Tuple

from cn_portal.schemas import coerce_text

CANONICAL_FIELDS = (
    "s_no",
    "module",
    "scenario_steps",
    "status",
    "date",
    "assigned_to",
    "priority",
    "reason",
)

HASH_DELIMITER = "|"

_WS_RE = re.compile(r"\s+")


def normalize_value(value: Any) -> str:
    """Stringify, trim, collapse whitespace runs, lowercase. None -> ""."""
    text = coerce_text(value)
    return _WS_RE.sub(" ", text.strip()).lower()


def _field(record: Any, name: str) -> Any:
    if record is None:
        return None
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def canonical_tuple(record: Any) -> Tuple[str, ...]:
    return tuple(normalize_value(_field(record, f)) for f in CANONICAL_FIELDS)


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_row_hash(record: Any) -> str:
    return _sha256_hex(HASH_DELIMITER.join(canonical_tuple(record)))


def compute_scenario_hash(record: Any) -> str:
    return _sha256_hex(normalize_value(_field(record, "scenario_steps")))
