"""
Provider configuration. Built once at startup and passed to create_app(); nothing reads the
environment at request time. No secrets in this file; key material comes from env or a key file.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from oidc_provider.errors import KeyFormatError

# Public identifier of this provider (iss claim, discovery base)
DEFAULT_ISSUER = "http://127.0.0.1:9000"

DEFAULT_DATABASE_URL = "sqlite:///./oidc_provider.db"

# Private JWK written here when no key is configured
DEFAULT_SIGNING_KEY_PATH = ".oidc_signing_key.json"
DEFAULT_SIGNING_KID = "oidc-provider-key-1"

SUPPORTED_SCOPES = ("openid", "profile", "resident-service", "basic")
SIGNING_ALG = "RS256"

CODE_TTL_SECONDS = 600
ACCESS_TOKEN_TTL_SECONDS = 3600
ID_TOKEN_TTL_SECONDS = 3600
CLIENT_ASSERTION_MAX_AGE_SECONDS = 300

CLIENT_ASSERTION_TYPE_JWT_BEARER = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

# Development fallback so a fresh checkout can run the flow end to end
DEV_CLIENT_ID = "test-client"
DEV_REDIRECT_URI = "http://127.0.0.1:8000/callback"


@dataclass(frozen=True)
class RegisteredClient:
    client_id: str
    redirect_uris: frozenset[str]
    scopes: frozenset[str]
    # Public JWKs held by the client; used to verify its client assertions
    jwks: tuple[dict, ...] = ()
    token_endpoint_auth_method: str = "none"

    def redirect_uri_allowed(self, uri: str) -> bool:
        return uri in self.redirect_uris

    @classmethod
    def from_dict(cls, data: dict) -> "RegisteredClient":
        client_id = data.get("client_id")
        if not client_id:
            raise ValueError("client entry without client_id")
        jwks = data.get("jwks") or ()
        if isinstance(jwks, dict):
            jwks = jwks.get("keys", ())
        method = data.get("token_endpoint_auth_method") or ("private_key_jwt" if jwks else "none")
        redirect_uris = frozenset(data.get("redirect_uris") or ())
        for uri in redirect_uris:
            if "#" in uri:
                raise ValueError(f"redirect_uri of client {client_id} must not contain a fragment: {uri}")
        return cls(
            client_id=client_id,
            redirect_uris=redirect_uris,
            scopes=frozenset(data.get("scopes") or ()),
            jwks=tuple(jwks),
            token_endpoint_auth_method=method,
        )


@dataclass(frozen=True)
class ProviderConfig:
    issuer: str = DEFAULT_ISSUER
    database_url: str = DEFAULT_DATABASE_URL
    signing_key_path: str | None = DEFAULT_SIGNING_KEY_PATH
    signing_jwk: dict | None = None
    signing_kid: str = DEFAULT_SIGNING_KID
    supported_scopes: tuple[str, ...] = SUPPORTED_SCOPES
    clients: dict[str, RegisteredClient] = field(default_factory=dict)
    code_ttl_seconds: int = CODE_TTL_SECONDS
    access_token_ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS
    id_token_ttl_seconds: int = ID_TOKEN_TTL_SECONDS
    session_ttl_seconds: int = 3600
    client_assertion_max_age_seconds: int = CLIENT_ASSERTION_MAX_AGE_SECONDS
    purge_interval_seconds: int = 300
    rate_limit_token_per_minute: int = 10
    rate_limit_login_per_minute: int = 20
    callback_base: str | None = None

    @property
    def token_endpoint(self) -> str:
        return f"{self.issuer}/token"

    def get_client(self, client_id: str | None) -> RegisteredClient | None:
        if not client_id:
            return None
        return self.clients.get(client_id)


def _load_clients(raw: str | None, path: str | None) -> dict[str, RegisteredClient]:
    entries: list = []
    if raw:
        entries = json.loads(raw)
    elif path and Path(path).exists():
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
    clients = {}
    for entry in entries:
        client = RegisteredClient.from_dict(entry)
        clients[client.client_id] = client
    if not clients:
        clients[DEV_CLIENT_ID] = RegisteredClient(
            client_id=DEV_CLIENT_ID,
            redirect_uris=frozenset({DEV_REDIRECT_URI}),
            scopes=frozenset({"openid", "profile"}),
        )
    return clients


def _parse_signing_jwk(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        descriptor = json.loads(raw)
    except ValueError as e:
        raise KeyFormatError("OIDC_SIGNING_JWK is not valid JSON") from e
    if not isinstance(descriptor, dict):
        raise KeyFormatError("OIDC_SIGNING_JWK must be a JSON object")
    return descriptor


def load_config(env: dict | None = None) -> ProviderConfig:
    """Build ProviderConfig from environment variables (or the given mapping)."""
    env = os.environ if env is None else env
    return ProviderConfig(
        issuer=env.get("OIDC_ISSUER", DEFAULT_ISSUER).rstrip("/"),
        database_url=env.get("OIDC_DATABASE_URL", DEFAULT_DATABASE_URL),
        signing_key_path=env.get("OIDC_SIGNING_KEY_PATH", DEFAULT_SIGNING_KEY_PATH).strip() or None,
        signing_jwk=_parse_signing_jwk(env.get("OIDC_SIGNING_JWK")),
        signing_kid=env.get("OIDC_SIGNING_KID", DEFAULT_SIGNING_KID),
        clients=_load_clients(env.get("OIDC_CLIENTS"), env.get("OIDC_CLIENTS_PATH")),
        session_ttl_seconds=int(env.get("OIDC_SESSION_TTL", "3600")),
        purge_interval_seconds=int(env.get("OIDC_PURGE_INTERVAL", "300")),
        rate_limit_token_per_minute=int(env.get("OIDC_RATE_LIMIT_TOKEN_PER_MINUTE", "10")),
        rate_limit_login_per_minute=int(env.get("OIDC_RATE_LIMIT_LOGIN_PER_MINUTE", "20")),
        callback_base=env.get("OIDC_CALLBACK_BASE") or None,
    )
