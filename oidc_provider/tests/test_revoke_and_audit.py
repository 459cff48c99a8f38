"""
Pytest tests for login, token revocation, audit logging and rate limiting.
"""
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from conftest import ASSERTION_TYPE, authorize_code, make_client_assertion
from oidc_provider.main import create_app
from oidc_provider.rate_limit import SlidingWindowLimiter


def _token(client, session):
    code = authorize_code(client, session)
    r = client.post("/token", data={"grant_type": "authorization_code", "code": code, "client_id": "c1"})
    return r.json()["access_token"]


# Login


def test_login_sets_session_cookie(client, subject):
    r = client.post("/login", data={"username": "u1user", "password": "u1pass"})
    assert r.status_code == 200
    assert r.json()["expires_in"] == 3600
    assert r.cookies.get("oidc_session") == r.json()["session"]


def test_login_wrong_password(client, subject):
    r = client.post("/login", data={"username": "u1user", "password": "nope"})
    assert r.status_code == 401
    assert r.json()["error"] == "access_denied"


def test_login_missing_field_is_invalid_request(client):
    r = client.post("/login", data={"username": "u1user"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_session_cookie_is_enough_for_authorize(client, session):
    r = client.get(
        "/authorize",
        params={"client_id": "c1", "redirect_uri": "https://app/cb", "response_type": "code"},
        follow_redirects=False,
    )
    assert r.status_code == 302


# Revocation


def test_revoke_access_token(client, session):
    token = _token(client, session)
    r = client.post("/revoke", data={"token": token, "client_id": "c1"})
    assert r.status_code == 200
    assert r.json() == {}
    assert client.get("/userinfo", headers={"Authorization": f"Bearer {token}"}).status_code == 401


def test_revoke_unknown_token_is_silent(client):
    r = client.post("/revoke", data={"token": "unknown", "client_id": "c1"})
    assert r.status_code == 200


def test_revoke_requires_token(client):
    r = client.post("/revoke", data={"client_id": "c1"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_client_cannot_revoke_another_clients_token(client, session):
    token = _token(client, session)
    r = client.post("/revoke", data={"token": token, "client_id": "c3"})
    assert r.status_code == 200
    assert client.get("/userinfo", headers={"Authorization": f"Bearer {token}"}).status_code == 200


def test_revoke_with_client_assertion_is_single_use(client, client_jwk):
    data = {
        "token": "unknown",
        "client_id": "c2",
        "client_assertion": make_client_assertion(client_jwk),
        "client_assertion_type": ASSERTION_TYPE,
    }
    assert client.post("/revoke", data=data).status_code == 200
    replay = client.post("/revoke", data=data)
    assert replay.status_code == 401
    assert replay.json()["error"] == "invalid_client"


def test_revoke_by_unknown_client(client, session):
    r = client.post("/revoke", data={"token": "x", "client_id": "nope"})
    assert r.status_code == 401
    assert r.json()["error"] == "invalid_client"


# Audit


def test_audit_records_flow_without_secrets(client, session):
    token = _token(client, session)
    client.post("/token", data={"grant_type": "authorization_code", "code": "bad", "client_id": "c1"})
    events = client.get("/audit").json()
    kinds = [e["event_type"] for e in events]
    for expected in ("login_ok", "code_issued", "token_issued", "token_failed"):
        assert expected in kinds
    assert all(token not in str(e) for e in events)


def test_audit_filters(client, subject):
    client.post("/login", data={"username": "u1user", "password": "wrong"})
    client.post("/login", data={"username": "u1user", "password": "u1pass"})
    failed = client.get("/audit", params={"outcome": "fail"}).json()
    assert [e["event_type"] for e in failed] == ["login_fail"]
    ok = client.get("/audit", params={"event_type": "login_ok"}).json()
    assert ok[0]["subject_id"] == "u1"


# Rate limiting


def test_token_endpoint_rate_limited(config):
    with TestClient(create_app(replace(config, rate_limit_token_per_minute=2))) as c:
        for _ in range(2):
            assert c.post("/token", data={"grant_type": "password"}).status_code == 400
        r = c.post("/token", data={"grant_type": "password"})
        assert r.status_code == 429
        assert r.json()["error"] == "temporarily_unavailable"
        assert int(r.headers["retry-after"]) >= 1


def test_login_rate_limited(config):
    with TestClient(create_app(replace(config, rate_limit_login_per_minute=1))) as c:
        assert c.post("/login", data={"username": "a", "password": "b"}).status_code == 401
        assert c.post("/login", data={"username": "a", "password": "b"}).status_code == 429


def test_sliding_window_frees_slots():
    now = [0.0]
    limiter = SlidingWindowLimiter(2, window_seconds=60, clock=lambda: now[0])
    assert limiter.check_and_consume("ip")[0]
    assert limiter.check_and_consume("ip")[0]
    allowed, retry_after = limiter.check_and_consume("ip")
    assert not allowed
    assert retry_after == 60
    assert limiter.check_and_consume("other")[0]
    now[0] = 61.0
    assert limiter.check_and_consume("ip")[0]


@pytest.mark.parametrize("limit", [0, -1])
def test_non_positive_limit_disables_limiter(limit):
    limiter = SlidingWindowLimiter(limit)
    assert all(limiter.check_and_consume("ip")[0] for _ in range(100))


def test_idle_keys_are_pruned():
    now = [0.0]
    limiter = SlidingWindowLimiter(5, window_seconds=60, clock=lambda: now[0])
    for i in range(10):
        limiter.check_and_consume(f"10.0.0.{i}")
    assert limiter.tracked_keys == 10
    now[0] = 30.0
    limiter.check_and_consume("10.0.0.0")
    now[0] = 70.0
    assert limiter.prune() == 9
    assert limiter.tracked_keys == 1


def test_key_table_is_swept_when_it_grows(monkeypatch):
    monkeypatch.setattr("oidc_provider.rate_limit._PRUNE_AT", 4)
    now = [0.0]
    limiter = SlidingWindowLimiter(5, window_seconds=60, clock=lambda: now[0])
    for i in range(4):
        limiter.check_and_consume(f"old-{i}")
    now[0] = 120.0
    limiter.check_and_consume("new")
    assert limiter.tracked_keys == 1
