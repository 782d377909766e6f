# tests/test_auth_rate_limit.py
"""
x-api-key enforcement and the fixed-window throttles. Auth is switched on per
test; the rest of the suite runs with MOCK_AUTH.
"""
import pytest
from fastapi.testclient import TestClient

from cn_portal.app import app
from cn_portal import auth as authmod
from cn_portal.auth import InMemoryFixedWindowLimiter

KEY = {"x-api-key": "portal-key"}


class Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(1_000_000.0)


@pytest.fixture
def client(store, monkeypatch, clock):
    monkeypatch.setattr(authmod, "MOCK_AUTH", False)
    monkeypatch.setattr(authmod, "API_KEYS", {"portal-key"})
    monkeypatch.setattr(authmod, "_rate_limiter", InMemoryFixedWindowLimiter(3, 60, clock=clock))
    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize("headers", [{}, {"x-api-key": "someone-else"}])
def test_unknown_callers_get_401(client, headers):
    r = client.get("/api/stats", headers=headers)
    assert r.status_code == 401


def test_known_key_reaches_endpoint(client):
    r = client.get("/api/stats", headers=KEY)
    assert r.status_code == 200
    assert r.json()["total"] == 0


def test_quota_exhausted_returns_429_until_next_window(client, clock):
    for _ in range(3):
        assert client.get("/api/stats", headers=KEY).status_code == 200

    blocked = client.get("/api/stats", headers=KEY)
    assert blocked.status_code == 429
    assert blocked.json()["error_code"] == "E_RATE_LIMIT"
    assert blocked.headers["Retry-After"] == str(authmod.RATE_LIMIT_WINDOW_SECONDS)

    clock.now += 60
    assert client.get("/api/stats", headers=KEY).status_code == 200


@pytest.mark.parametrize("path", ["/health", "/metrics"])
def test_operational_routes_skip_auth(client, path):
    assert client.get(path).status_code in (200, 404)


def test_limiter_counts_callers_separately(clock):
    limiter = InMemoryFixedWindowLimiter(limit=2, window_seconds=5, clock=clock)
    assert limiter.allow_request("alice") == (True, 1)
    assert limiter.allow_request("alice") == (True, 0)
    assert limiter.allow_request("alice") == (False, 0)
    assert limiter.allow_request("bob") == (True, 1)

    limiter.reset()
    assert limiter.allow_request("alice") == (True, 1)


def test_bot_search_throttle_applies_with_mock_auth(monkeypatch, clock):
    monkeypatch.setattr(authmod, "MOCK_AUTH", True)
    monkeypatch.setattr(authmod, "_bot_search_limiter", InMemoryFixedWindowLimiter(1, 5, clock=clock))
    assert authmod.check_bot_search_limit(None) is True
    assert authmod.check_bot_search_limit("") is False
    assert authmod.check_bot_search_limit("k1") is True


def test_caller_identity():
    assert authmod.caller_identity(None) == authmod.ANONYMOUS == "anonymous"
    assert authmod.caller_identity("k1") == "k1"


def test_api_key_file_parsing(tmp_path):
    path = tmp_path / "keys.txt"
    path.write_text("alpha\n\n# retired: gamma\nbeta  # ops team\n", encoding="utf-8")
    assert authmod.parse_api_keys(" delta, ,epsilon", str(path)) == {"alpha", "beta", "delta", "epsilon"}
    assert authmod.parse_api_keys("", str(tmp_path / "missing.txt")) == set()
