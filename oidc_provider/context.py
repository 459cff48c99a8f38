"""
Process-wide provider state: configuration, key material, credential store, DB sessions.
Built once in the application lifespan and reached from handlers through request.app.state.
"""
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from oidc_provider.config import ProviderConfig
from oidc_provider.credentials import CredentialStore
from oidc_provider.database import create_session_factory, init_db
from oidc_provider.keys import KeyMaterial, load_key_material
from oidc_provider.rate_limit import SlidingWindowLimiter


@dataclass
class ProviderContext:
    config: ProviderConfig
    engine: Engine
    session_factory: sessionmaker
    store: CredentialStore
    keys: KeyMaterial
    token_limiter: SlidingWindowLimiter
    login_limiter: SlidingWindowLimiter


def build_context(config: ProviderConfig) -> ProviderContext:
    """Load the signing key (KeyFormatError is fatal here), create tables and the store."""
    keys = load_key_material(config)
    engine, session_factory = create_session_factory(config.database_url)
    init_db(engine)
    return ProviderContext(
        config=config,
        engine=engine,
        session_factory=session_factory,
        store=CredentialStore(session_factory),
        keys=keys,
        token_limiter=SlidingWindowLimiter(config.rate_limit_token_per_minute),
        login_limiter=SlidingWindowLimiter(config.rate_limit_login_per_minute),
    )


def get_context(request: Request) -> ProviderContext:
    return request.app.state.provider


def get_db(request: Request):
    """Dependency: yield a DB session."""
    db: Session = get_context(request).session_factory()
    try:
        yield db
    finally:
        db.close()
