"""
Pytest configuration for oidc_provider. Each test gets an app on its own in-memory SQLite database,
a pre-generated provider key, and a small client registry.
"""
import os
import time
import uuid
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from fastapi.testclient import TestClient

# Avoid seed_from_env creating subjects from the developer's environment during tests
for _var in ("OIDC_SEED_USER", "OIDC_SEED_PASSWORD", "OIDC_SEED_PROFILE"):
    os.environ.pop(_var, None)

from oidc_provider.config import CLIENT_ASSERTION_TYPE_JWT_BEARER, ProviderConfig, RegisteredClient
from oidc_provider.keys import generate_jwk, public_descriptor
from oidc_provider.main import create_app
from oidc_provider.subjects import create_subject

ISSUER = "http://provider.test"
C1_REDIRECT = "https://app/cb"
C2_REDIRECT = "https://c2.example/cb"
C3_REDIRECT = "https://resident.example/cb"


@pytest.fixture(scope="session")
def provider_jwk():
    return generate_jwk("test-provider-key")


@pytest.fixture(scope="session")
def client_jwk():
    """Private key held by client c2 for private_key_jwt assertions."""
    return generate_jwk("c2-key")


@pytest.fixture
def config(provider_jwk, client_jwk):
    clients = {
        "c1": RegisteredClient(
            client_id="c1",
            redirect_uris=frozenset({C1_REDIRECT}),
            scopes=frozenset({"openid", "profile"}),
        ),
        "c2": RegisteredClient(
            client_id="c2",
            redirect_uris=frozenset({C2_REDIRECT}),
            scopes=frozenset({"openid", "profile"}),
            jwks=(public_descriptor(client_jwk),),
            token_endpoint_auth_method="private_key_jwt",
        ),
        "c3": RegisteredClient(
            client_id="c3",
            redirect_uris=frozenset({C3_REDIRECT}),
            scopes=frozenset({"openid", "profile", "resident-service"}),
        ),
    }
    return ProviderConfig(
        issuer=ISSUER,
        database_url="sqlite:///:memory:",
        signing_key_path=None,
        signing_jwk=provider_jwk,
        clients=clients,
        purge_interval_seconds=0,
        rate_limit_token_per_minute=0,
        rate_limit_login_per_minute=0,
    )


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as c:
        yield c


@pytest.fixture
def ctx(client):
    return client.app.state.provider


@pytest.fixture
def subject(ctx):
    db = ctx.session_factory()
    try:
        return create_subject(
            db,
            "u1user",
            "u1pass",
            subject_id="u1",
            given_name="Ada",
            family_name="Perera",
            name="Ada Perera",
            email="ada@example.com",
            email_verified=True,
            phone_number="+94110000000",
            phone_number_verified=False,
            address="12 Galle Road, Colombo",
            birthdate="1990-12-10",
            country="LK",
            nationality="Sri Lankan",
        )
    finally:
        db.close()


@pytest.fixture
def session(client, subject):
    """Log u1 in; returns the session value (the TestClient also keeps the cookie)."""
    r = client.post("/login", data={"username": "u1user", "password": "u1pass"})
    assert r.status_code == 200
    return r.json()["session"]


def authorize_code(client, session, *, client_id="c1", redirect_uri=C1_REDIRECT, scope="openid profile", state="xyz", **extra):
    """Run GET /authorize and return the issued code."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scope,
        "state": state,
        **extra,
    }
    r = client.get(
        "/authorize",
        params=params,
        headers={"Authorization": f"Bearer {session}"},
        follow_redirects=False,
    )
    assert r.status_code == 302, r.text
    query = parse_qs(urlparse(r.headers["location"]).query)
    return query["code"][0]


def make_client_assertion(jwk: dict, *, iss="c2", sub="c2", aud=f"{ISSUER}/token", lifetime=300, kid=None, **claims):
    """Signed client assertion; extra keyword claims override the defaults, None drops a claim."""
    from oidc_provider.keys import to_signing_form

    now = int(time.time())
    payload = {"iss": iss, "sub": sub, "aud": aud, "iat": now, "exp": now + lifetime, "jti": uuid.uuid4().hex}
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(
        payload,
        to_signing_form(jwk),
        algorithm="RS256",
        headers={"kid": kid or jwk["kid"]},
    )


ASSERTION_TYPE = CLIENT_ASSERTION_TYPE_JWT_BEARER
