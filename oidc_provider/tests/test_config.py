"""Tests for building ProviderConfig from environment variables."""
import json

import pytest

from oidc_provider.config import DEV_CLIENT_ID, RegisteredClient, load_config
from oidc_provider.errors import KeyFormatError


def test_defaults_include_dev_client():
    config = load_config({})
    assert config.issuer == "http://127.0.0.1:9000"
    assert config.code_ttl_seconds == 600
    assert list(config.clients) == [DEV_CLIENT_ID]


def test_env_overrides():
    clients = [
        {"client_id": "web", "redirect_uris": ["https://web/cb"], "scopes": ["openid"]},
        {
            "client_id": "svc",
            "redirect_uris": ["https://svc/cb"],
            "scopes": ["openid", "resident-service"],
            "jwks": {"keys": [{"kty": "RSA", "kid": "k", "n": "AQAB", "e": "AQAB"}]},
        },
    ]
    config = load_config({
        "OIDC_ISSUER": "https://id.example/",
        "OIDC_CLIENTS": json.dumps(clients),
        "OIDC_SIGNING_KEY_PATH": "",
        "OIDC_RATE_LIMIT_TOKEN_PER_MINUTE": "0",
    })
    assert config.issuer == "https://id.example"
    assert config.token_endpoint == "https://id.example/token"
    assert config.signing_key_path is None
    assert config.rate_limit_token_per_minute == 0
    assert config.get_client("web").token_endpoint_auth_method == "none"
    svc = config.get_client("svc")
    assert svc.token_endpoint_auth_method == "private_key_jwt"
    assert svc.jwks[0]["kid"] == "k"
    assert config.get_client(DEV_CLIENT_ID) is None


def test_clients_from_file(tmp_path):
    path = tmp_path / "clients.json"
    path.write_text(json.dumps([{"client_id": "f", "redirect_uris": ["https://f/cb"], "scopes": ["openid"]}]))
    config = load_config({"OIDC_CLIENTS_PATH": str(path)})
    assert config.get_client("f").redirect_uri_allowed("https://f/cb")
    assert not config.get_client("f").redirect_uri_allowed("https://f/cb/")


def test_client_entry_requires_id():
    with pytest.raises(ValueError):
        RegisteredClient.from_dict({"redirect_uris": ["https://x/cb"]})


def test_get_client_with_empty_id():
    assert load_config({}).get_client(None) is None


@pytest.mark.parametrize("raw", ["{not json", "[]", "42"])
def test_malformed_inline_signing_key_is_key_format_error(raw):
    with pytest.raises(KeyFormatError):
        load_config({"OIDC_SIGNING_JWK": raw})


def test_inline_signing_key_is_parsed():
    config = load_config({"OIDC_SIGNING_JWK": json.dumps({"kty": "RSA", "kid": "inline"})})
    assert config.signing_jwk == {"kty": "RSA", "kid": "inline"}


def test_client_redirect_uri_with_fragment_is_rejected():
    with pytest.raises(ValueError):
        RegisteredClient.from_dict({"client_id": "x", "redirect_uris": ["https://x/cb#frag"]})
