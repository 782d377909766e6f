# tests/conftest.py
import pytest

from cn_portal import db as dbmod


def make_row(**overrides):
    row = {
        "s_no": 1,
        "module": "Dispatch",
        "scenario_steps": "Signal request rejected when authority conflicts with track warrant",
        "status": "Open",
        "offshore_comments": "",
        "onsite_comments": "",
        "date": "2024-03-01",
        "priority": "P1",
        "assigned_to": "Ravi",
        "reason": "",
    }
    row.update(overrides)
    return row


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store per test."""
    dbmod.reconfigure(f"sqlite:///{tmp_path / 'cn_portal_test.db'}")
    dbmod.init_db()
    yield dbmod
