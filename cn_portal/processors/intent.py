# cn_portal/processors/intent.py
"""
Decides whether a chat message should pull specific records into the assistant's context.

The classifier is a seam: anything with `wants_search(message) -> bool` can be
handed to CNAssistant. The default is a cheap regex check over domain words,
ticket ids and "assigned to <name>" phrasing.
"""

import re
from typing import List, Protocol

from cn_portal.processors.keywords import TICKET_ID_RE

MAX_SEARCH_TERMS = 5

DOMAIN_TERMS_RE = re.compile(
    r"defect|retest|open|closed|offshore|module|assigned|priority|p1|p2|bug|drop|scenario",
    re.IGNORECASE,
)
NAME_RE = re.compile(r"\b(?:assigned to|tester|reviewer)\s+\w+", re.IGNORECASE)

_PUNCT_RE = re.compile(r"[?.,!;:()]")

# conversational filler, on top of the usual function words
SEARCH_STOPWORDS = frozenset("""
i me my we our you your it its the a an is are was were be been being have has had
do does did will would could should can may might shall to of in for on with at by
from as into about that this these those what which who whom how many much more most
some any all each every both few no not only very just also than too so and but or if
then because while where when why out up down them they their there here now still
already show tell give find search get list display count total number records having
status please help want need know like
""".split())


class SearchIntentClassifier(Protocol):
    def wants_search(self, message: str) -> bool:
        ...


class RegexSearchIntentClassifier:
    def wants_search(self, message: str) -> bool:
        if not message:
            return False
        return bool(
            DOMAIN_TERMS_RE.search(message)
            or TICKET_ID_RE.search(message)
            or NAME_RE.search(message)
        )


def extract_search_terms(message: str, limit: int = MAX_SEARCH_TERMS) -> List[str]:
    """Words of two or more characters that are not stopwords, in message order."""
    words = _PUNCT_RE.sub(" ", message or "").split()
    terms = [w for w in words if len(w) > 1 and w.lower() not in SEARCH_STOPWORDS]
    return terms[:limit]
