# cn_portal/assistant.py
"""
CN Bot: a chat assistant that answers questions from a live data snapshot.

Every turn the latest user message is extended with a snapshot of the store
(counts and breakdowns) and, when the intent classifier asks for it, the
fuzzy-search hits for that message. The completion service is treated as an
opaque text stream.
"""

from typing import Any, Dict, Iterator, List, Optional, Sequence

# Import modules (not bare functions) so monkeypatching in tests works correctly
import cn_portal.llm_wrapper as _llm
from cn_portal.processors.intent import (
    SearchIntentClassifier,
    RegexSearchIntentClassifier,
    extract_search_terms,
)
from cn_portal.reports import build_snapshot
from cn_portal.search.engine import FuzzySearchEngine, get_engine
from cn_portal import monitoring

SYSTEM_PROMPT = """You are CN Bot, the assistant for the CN (Clarification) Portal. You answer questions about the portal's clarification records.

Every message carries a DATA SNAPSHOT with:
- Total record counts and breakdowns by status, priority, module, assignee and drop
- SEARCH RESULTS when the user asks about specific records

What you do:
1. Answer data questions: counts, filters by status/priority/module, percentages, module comparisons.
2. Find specific clarifications by keyword, module, status or assignee.
3. Explain scenarios and their current status.
4. Summarize long scenario steps or comments.
5. Draft offshore/onsite comments and closure notes.

Rules:
- Answer from the DATA SNAPSHOT. It is your view of the database.
- For counts and aggregations, calculate from the snapshot.
- For specific records, use the SEARCH RESULTS section when present.
- If the snapshot lacks the detail needed, ask the user to refine the question.
- Keep answers short and structured; use bullet points.

Format search hits as:
**CN #[number]** | [Module] | Status: [status]
- Steps: [brief summary]
- Assigned to: [name]
- Priority: [P1/P2]"""

SEARCH_RESULT_LIMIT = 20
STEPS_PREVIEW = 200
COMMENT_PREVIEW = 150


def _preview(text: Any, n: int) -> str:
    text = text or ""
    return text[:n] + ("..." if len(text) > n else "")


def format_search_results(records: Sequence[Dict[str, Any]]) -> str:
    out = [f"Found {len(records)} matching record(s):", ""]
    for r in records:
        out.append(
            f"CN #{r.get('s_no') or 'N/A'} | {r.get('module')} | Status: {r.get('status')} | "
            f"Priority: {r.get('priority') or 'N/A'}"
        )
        out.append(f"  - Steps: {_preview(r.get('scenario_steps'), STEPS_PREVIEW)}")
        out.append(f"  - Assigned: {r.get('assigned_to') or 'Unassigned'} | Tester: {r.get('tester') or 'N/A'}")
        out.append(f"  - Drop: {r.get('drop_name') or 'N/A'} | Defect: {r.get('defect_should_be_raised') or 'N/A'}")
        out.append(f"  - Offshore: {_preview(r.get('offshore_comments'), COMMENT_PREVIEW)}")
        out.append(f"  - Onsite: {_preview(r.get('onsite_comments'), COMMENT_PREVIEW)}")
        out.append("")
    return "\n".join(out)


class CNAssistant:
    def __init__(self, classifier: Optional[SearchIntentClassifier] = None,
                 engine: Optional[FuzzySearchEngine] = None,
                 model: Optional[str] = None):
        self.classifier = classifier or RegexSearchIntentClassifier()
        self.engine = engine or get_engine()
        self.model = model

    def find_records(self, message: str, records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Fuzzy hits for the message's search terms; empty when the classifier declines."""
        if not self.classifier.wants_search(message):
            return []
        terms = extract_search_terms(message)
        if not terms:
            return []
        resp = self.engine.search(" ".join(terms), records, top_k=SEARCH_RESULT_LIMIT)
        return [r["record"] for r in resp["results"]]

    def build_messages(self, messages: Sequence[Dict[str, str]],
                       records: Sequence[Dict[str, Any]],
                       uploads: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
        """System prompt + conversation, with the data context appended to the last user turn."""
        convo = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
        latest_user = next((m["content"] for m in reversed(convo) if m["role"] == "user"), "")

        context = "\n\n[DATA SNAPSHOT - Live Portal Data]\n" + build_snapshot(records, uploads)
        hits = self.find_records(latest_user, records)
        if hits:
            context += "\n\n[SEARCH RESULTS]\n" + format_search_results(hits)
        context += "\n[END OF DATA]\n\nUse the above data to answer the user's question accurately."

        if convo and convo[-1]["role"] == "user":
            convo[-1] = {"role": "user", "content": convo[-1]["content"] + context}

        monitoring.logger.info("Assistant context built", extra={
            "turns": len(convo), "records": len(records), "search_hits": len(hits),
        })
        return [{"role": "system", "content": SYSTEM_PROMPT}] + convo

    def stream_reply(self, messages: Sequence[Dict[str, str]],
                     records: Sequence[Dict[str, Any]],
                     uploads: Sequence[Dict[str, Any]]) -> Iterator[str]:
        prompt = self.build_messages(messages, records, uploads)
        yield from _llm.stream_llm(prompt, model=self.model)

    def reply(self, messages: Sequence[Dict[str, str]],
              records: Sequence[Dict[str, Any]],
              uploads: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Blocking variant; returns the wrapper's {text, model, response_id, raw}."""
        prompt = self.build_messages(messages, records, uploads)
        return _llm.call_llm(prompt, model=self.model)
