"""
Pytest tests for discovery and JWKS endpoints.
"""
import pytest

from conftest import ISSUER


@pytest.mark.parametrize("path", ["/.well-known/openid_configuration", "/.well-known/openid-configuration"])
def test_discovery_document(client, path):
    r = client.get(path)
    assert r.status_code == 200
    doc = r.json()
    assert doc["issuer"] == ISSUER
    assert doc["authorization_endpoint"] == f"{ISSUER}/authorize"
    assert doc["token_endpoint"] == f"{ISSUER}/token"
    assert doc["userinfo_endpoint"] == f"{ISSUER}/userinfo"
    assert doc["jwks_uri"] == f"{ISSUER}/jwks"
    assert doc["response_types_supported"] == ["code"]
    assert doc["subject_types_supported"] == ["public"]
    assert doc["id_token_signing_alg_values_supported"] == ["RS256"]
    assert set(doc["scopes_supported"]) == {"openid", "profile", "resident-service", "basic"}
    assert "private_key_jwt" in doc["token_endpoint_auth_methods_supported"]
    assert "nationality" in doc["claims_supported"]


def test_discovery_is_stable(client):
    a = client.get("/.well-known/openid_configuration").json()
    b = client.get("/.well-known/openid-configuration").json()
    assert a == b


def test_jwks_publishes_single_public_key(client, provider_jwk):
    r = client.get("/jwks")
    assert r.status_code == 200
    keys = r.json()["keys"]
    assert len(keys) == 1
    key = keys[0]
    assert key["kid"] == "test-provider-key"
    assert key["kty"] == "RSA"
    assert key["alg"] == "RS256"
    assert key["use"] == "sig"
    assert key["n"] == provider_jwk["n"]
    assert key["e"] == provider_jwk["e"]
    for private in ("d", "p", "q", "dp", "dq", "qi"):
        assert private not in key


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
