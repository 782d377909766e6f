# cn_portal/schemas.py
import math
from typing import List, Optional, Any, Dict
from pydantic import BaseModel, Field, field_validator, ConfigDict

# Text columns of a clarification row, in spreadsheet order
TEXT_FIELDS = (
    "module", "scenario_steps", "status", "offshore_comments", "onsite_comments", "date",
    "tester", "offshore_reviewer", "open", "addressed_by", "defect_should_be_raised",
    "drop_name", "priority", "assigned_to", "reason",
)


def coerce_text(v: Any) -> str:
    """None/NaN -> "", integral floats without ".0", everything else str()."""
    if v is None:
        return ""
    if isinstance(v, float):
        if math.isnan(v):
            return ""
        if v.is_integer():
            return str(int(v))
    if hasattr(v, "isoformat") and not isinstance(v, str):
        return v.isoformat()
    return str(v)


# s_no is stored as a signed 64-bit integer
S_NO_MAX = 2 ** 63 - 1


def parse_s_no(v: Any) -> Optional[int]:
    """Spreadsheet serial number to int; blanks, junk and out-of-range values become None."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        n = v
    else:
        text = coerce_text(v).strip()
        if not text:
            return None
        try:
            n = int(float(text))
        except (ValueError, OverflowError):
            return None
    return n if -S_NO_MAX <= n <= S_NO_MAX else None


class ClarificationIn(BaseModel):
    """
    Closed shape of a clarification row at the ingestion boundary.
    Unknown keys are dropped; values are coerced rather than rejected.
    """
    model_config = ConfigDict(extra="ignore")

    s_no: Optional[int] = None
    module: str = ""
    scenario_steps: str = ""
    status: str = ""
    offshore_comments: str = ""
    onsite_comments: str = ""
    date: str = ""
    tester: str = ""
    offshore_reviewer: str = ""
    open: str = ""
    addressed_by: str = ""
    defect_should_be_raised: str = ""
    drop_name: str = ""
    priority: str = ""
    assigned_to: str = ""
    reason: str = ""

    @field_validator("s_no", mode="before")
    @classmethod
    def s_no_to_int(cls, v):
        return parse_s_no(v)

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def text_to_str(cls, v):
        return coerce_text(v)


class ClarificationBatch(BaseModel):
    rows: List[Dict[str, Any]]
    filename: str = "api-batch"
    sheet_name: str = ""
    upload_id: Optional[str] = None


class SearchRequest(BaseModel):
    query: str = ""
    topK: int = Field(default=20, ge=1, le=200)


class ChatMessage(BaseModel):
    role: str
    content: str

    @field_validator("role")
    @classmethod
    def role_known(cls, v):
        if v not in ("user", "assistant", "system"):
            raise ValueError("role must be user, assistant or system")
        return v


class ChatRequest(BaseModel):
    messages: List[ChatMessage]
    stream: bool = True
