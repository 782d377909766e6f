# cn_portal/processors/keywords.py
"""
Keyword extraction for the keywords column.

- extract_keywords(text) -> list[str]
- extract_keywords_from_row(record, fields=None) -> "kw1, kw2, ..."

Words: unicode letter runs (digits dropped), lowercased, stopwords and
tokens shorter than MIN_KEYWORD_LENGTH removed, first-seen order kept.
Ticket identifiers (BUG-123, DEFECT_45, #10234, ...) are kept uppercased
and are not subject to the length or stopword rules. At most MAX_KEYWORDS
are returned, identifiers first.

Env vars:
- KEYWORD_SOURCE_FIELDS (default: scenario_steps): comma-separated row fields fed to extraction
"""

import os
import re
from typing import Any, Iterable, List, Optional, Sequence

from cn_portal import monitoring
from cn_portal.schemas import coerce_text

MAX_KEYWORDS = 20
MIN_KEYWORD_LENGTH = 3

KEYWORD_SOURCE_FIELDS = tuple(
    f.strip() for f in os.getenv("KEYWORD_SOURCE_FIELDS", "scenario_steps").split(",") if f.strip()
)

TICKET_ID_RE = re.compile(
    r"(?<![\w#])(?:(?:BUG|DEFECT|DEF|ISSUE|TICKET|INC|CR)[-_]?\d+|#\d{4,})\b",
    re.IGNORECASE,
)

_WORD_RE = re.compile(r"[^\W\d_]+(?:'[^\W\d_]+)?", re.UNICODE)

STOPWORDS = frozenset("""
a about above after again against all almost also although always am among an and another any
anybody anyone anything anywhere are aren't around as at be became because become been before
being below between both but by can can't cannot could couldn't did didn't do does doesn't doing
don't done down during each either else enough etc even ever every everyone everything except
few for from further get gets getting give given go goes going gone got had hadn't has hasn't
have haven't having he her here hers herself him himself his how however i if in into is isn't
it it's its itself just least less let like likely made make many may maybe me might mine more
most mostly much must my myself neither never no nobody none nor not nothing now of off often
on once one only onto or other others otherwise our ours ourselves out over own per perhaps
please put quite rather really same see seem seemed seems several shall she should shouldn't
since so some somebody someone something sometimes still such than that that's the their theirs
them themselves then there there's these they they're this those though through thus to too
toward towards under until up upon us use used using very via was wasn't we well were weren't
what whatever when whenever where whereas wherever whether which while who whoever whole whom
whose why will with within without won't would wouldn't yes yet you your yours yourself
yourselves
""".split())


def extract_ticket_ids(text: str) -> List[str]:
    out: List[str] = []
    seen = set()
    for m in TICKET_ID_RE.finditer(text):
        token = m.group(0).upper()
        if token not in seen:
            seen.add(token)
            out.append(token)
    return out


def _words(text: str) -> Iterable[str]:
    for m in _WORD_RE.finditer(text):
        yield m.group(0).lower()


def extract_keywords(text: Any, limit: int = MAX_KEYWORDS) -> List[str]:
    """Salient, unique tokens of text. Never raises; bad input yields []."""
    if text is None:
        return []
    try:
        text = coerce_text(text)
        if not text.strip():
            return []

        keywords = extract_ticket_ids(text)
        seen = {k.lower() for k in keywords}
        # the identifier text itself ("bug" in BUG-12) is not a keyword
        plain = TICKET_ID_RE.sub(" ", text)
        for word in _words(plain):
            if len(word) < MIN_KEYWORD_LENGTH or word in STOPWORDS or word in seen:
                continue
            seen.add(word)
            keywords.append(word)
        return keywords[:limit]
    except Exception:
        monitoring.logger.exception("Keyword extraction failed")
        return []


def extract_keywords_from_row(record: Any, fields: Optional[Sequence[str]] = None) -> str:
    """Comma-and-space joined keywords drawn from the configured text fields."""
    fields = tuple(fields) if fields else KEYWORD_SOURCE_FIELDS
    parts = []
    for f in fields:
        value = record.get(f) if isinstance(record, dict) else getattr(record, f, None)
        text = coerce_text(value)
        if text.strip():
            parts.append(text)
    return ", ".join(extract_keywords("\n".join(parts)))
