# tests/test_end_to_end.py
"""
Weekly workflow through the HTTP API: upload a workbook, re-upload a later
version with overlap, find a record with a sloppy query, fix it, ask the bot.
"""
import io
import json

import pandas as pd
import pytest
from fastapi.testclient import TestClient

from cn_portal.app import app
from cn_portal import app as app_module
from cn_portal import auth as authmod
import cn_portal.llm_wrapper as llm
from cn_portal import db as dbmod
from cn_portal.ingestion import ClarificationIngestor, DEDUPE_ROW_HASH
from cn_portal.search.engine import get_engine


def workbook(rows):
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        pd.DataFrame(rows).to_excel(writer, sheet_name="Clarification", index=False)
    return buf.getvalue()


def sheet_row(n, module, scenario, status="Open", priority="P2"):
    return {"S.no": n, "Module": module, "Scenario/Steps to be Reproduce": scenario,
            "Status": status, "Priority": priority, "Assigned To": "Ravi", "Date": "2024-03-01"}


WEEK1 = [
    sheet_row(1, "Dispatch", "Signal request rejected when authority conflicts with warrant", priority="P1"),
    sheet_row(2, "Crew", "Crew login fails after password reset"),
    sheet_row(3, "Onboard", "Speed restriction displayed instead of expected limit"),
]
# one unchanged, one formatting-only change, one new
WEEK2 = [
    WEEK1[0],
    dict(WEEK1[1], Module="  CREW  "),
    sheet_row(4, "Bulletins", "Bulletin not delivered to crew at terminal"),
]


@pytest.fixture(autouse=True)
def setup(store, monkeypatch):
    monkeypatch.setattr(authmod, "MOCK_AUTH", True)
    monkeypatch.setattr(llm, "MOCK_LLM", True)
    app_module.search_cache.clear()
    app_module.count_cache.clear()
    yield


def test_weekly_workflow():
    client = TestClient(app)

    def upload(name, rows):
        r = client.post("/api/clarifications/upload", files={"file": (name, workbook(rows), "application/octet-stream")})
        assert r.status_code == 200, r.text
        return r.json()

    w1 = upload("week1.xlsx", WEEK1)
    assert (w1["added_count"], w1["duplicates_skipped"]) == (3, 0)

    w2 = upload("week2.xlsx", WEEK2)
    assert (w2["added_count"], w2["duplicates_skipped"]) == (1, 2)
    assert w2["total_rows_now_in_store"] == 4

    found = client.post("/api/search", json={"query": "athority conflct", "topK": 3}).json()
    top = found["results"][0]
    assert top["record"]["s_no"] == 1
    assert "<mark>" in top["highlights"]["scenario_steps"]

    fix = client.put(f"/api/clarifications/{top['id']}", json={"status": "Closed"})
    assert fix.json()["success"] is True

    stats = client.get("/api/stats").json()
    assert stats["total"] == 4
    assert stats["byStatus"] == {"Open": 3, "Closed": 1}

    # the same week-1 file uploaded again now adds the original row back as new content
    w1_again = upload("week1-again.xlsx", WEEK1)
    assert (w1_again["added_count"], w1_again["duplicates_skipped"]) == (1, 2)

    chat = client.post("/api/chat", json={"messages": [{"role": "user", "content": "How many are open?"}]})
    events = [line[6:] for line in chat.text.split("\n") if line.startswith("data: ")]
    assert events[-1] == "[DONE]"
    reply = "".join(json.loads(e)["delta"] for e in events[:-1])
    assert reply.endswith("How many are open?")

    uploads = client.get("/api/uploads").json()["items"]
    assert len(uploads) == 3


def test_noisy_reingest_is_skipped_and_typo_search_highlights():
    ingestor = ClarificationIngestor(dedupe_policy=DEDUPE_ROW_HASH)
    row = {"s_no": 12, "module": "Signals", "scenario_steps": "Train halts at signal 12", "status": "Open"}
    first = ingestor.ingest_batch([row], filename="week1.xlsx")
    assert (first["added_count"], first["duplicates_skipped"]) == (1, 0)

    noisy = dict(row, module="  SIGNALS ", scenario_steps="  train HALTS   at Signal 12", status="open ")
    again = ingestor.ingest_batch([noisy], filename="week2.xlsx")
    assert (again["added_count"], again["duplicates_skipped"]) == (0, 1)

    resp = get_engine().search("train halt signl", dbmod.list_clarifications())
    top = resp["results"][0]
    assert top["record"]["s_no"] == 12
    hl = top["highlights"]["scenario_steps"]
    assert "<mark>Train</mark>" in hl and "<mark>signal</mark>" in hl
