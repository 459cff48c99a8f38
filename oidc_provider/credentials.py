"""
Credential store: keyed, TTL-expiring, single-use-capable storage for opaque credentials
(authorization codes, access tokens, ID token references, login sessions).

A credential is valid iff not revoked and now < expires_at. Expired rows are treated as absent
whether or not purge_expired() has physically removed them.
"""
import enum
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from oidc_provider.errors import (
    AlreadyConsumedError,
    DuplicateValueError,
    NotFoundError,
    StoreUnavailableError,
)
from oidc_provider.models import CredentialRecord

logger = logging.getLogger(__name__)


class CredentialKind(str, enum.Enum):
    AUTHORIZATION_CODE = "authorization_code"
    ACCESS_TOKEN = "access_token"
    ID_TOKEN_OPAQUE_REF = "id_token_opaque_ref"
    SESSION = "session"
    CLIENT_ASSERTION = "client_assertion"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def new_value() -> str:
    """Unguessable opaque credential value."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class Credential:
    subject_id: str
    value: str
    kind: CredentialKind
    scope: tuple[str, ...]
    client_id: str | None
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    metadata: dict = field(default_factory=dict)

    @classmethod
    def issue(
        cls,
        kind: CredentialKind,
        subject_id: str,
        ttl_seconds: int,
        *,
        client_id: str | None = None,
        scope=(),
        metadata: dict | None = None,
        value: str | None = None,
        now: datetime | None = None,
    ) -> "Credential":
        if client_id is None and kind is not CredentialKind.SESSION:
            raise ValueError(f"{kind.value} credentials must be bound to a client")
        now = now or utc_now()
        return cls(
            subject_id=subject_id,
            value=value or new_value(),
            kind=kind,
            scope=tuple(scope),
            client_id=client_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            metadata=dict(metadata or {}),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return not self.revoked and not self.is_expired(now)

    def expires_in(self, now: datetime | None = None) -> int:
        return max(0, int((self.expires_at - (now or utc_now())).total_seconds()))

    @property
    def scope_string(self) -> str:
        return " ".join(self.scope)

    @classmethod
    def from_record(cls, row: CredentialRecord) -> "Credential":
        return cls(
            subject_id=row.subject_id,
            value=row.value,
            kind=CredentialKind(row.kind),
            scope=tuple(row.scope or ()),
            client_id=row.client_id,
            issued_at=_aware(row.issued_at),
            expires_at=_aware(row.expires_at),
            revoked=row.revoked,
            metadata=dict(row.extra or {}),
        )

    def to_record(self) -> CredentialRecord:
        return CredentialRecord(
            value=self.value,
            subject_id=self.subject_id,
            kind=self.kind.value,
            client_id=self.client_id,
            scope=list(self.scope),
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            revoked=self.revoked,
            extra=dict(self.metadata),
        )


class CredentialStore:
    """
    SQL-backed credential store. consume() is one conditional UPDATE, so two redemptions of the
    same value cannot both succeed; the in-process lock additionally serialises access to a
    shared SQLite connection.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = threading.RLock()

    def _session(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _find(db: Session, value: str) -> CredentialRecord | None:
        return db.execute(select(CredentialRecord).where(CredentialRecord.value == value)).scalar_one_or_none()

    def put(self, credential: Credential, now: datetime | None = None) -> Credential:
        """Store a new credential. Raises DuplicateValueError if the value belongs to a live credential."""
        now = now or utc_now()
        with self._lock:
            db = self._session()
            try:
                existing = self._find(db, credential.value)
                if existing is not None:
                    if _aware(existing.expires_at) > now:
                        raise DuplicateValueError("Credential value already in use")
                    # Expired but not yet purged: the value is free again
                    db.delete(existing)
                    db.flush()
                db.add(credential.to_record())
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise DuplicateValueError("Credential value already in use") from e
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Credential store put failed")
                raise StoreUnavailableError("Credential store unavailable") from e
            finally:
                db.close()
        logger.debug("Stored %s credential %s...", credential.kind.value, credential.value[:6])
        return credential

    def get(
        self,
        value: str,
        kind: CredentialKind | None = None,
        now: datetime | None = None,
    ) -> Credential:
        """
        Return the credential for value. Expired or kind-mismatched entries raise NotFoundError.
        Revoked entries are returned; callers check is_valid().
        """
        now = now or utc_now()
        with self._lock:
            db = self._session()
            try:
                row = self._find(db, value)
                credential = Credential.from_record(row) if row is not None else None
            except SQLAlchemyError as e:
                logger.exception("Credential store get failed")
                raise StoreUnavailableError("Credential store unavailable") from e
            finally:
                db.close()
        if credential is None or credential.is_expired(now):
            raise NotFoundError("Credential not found")
        if kind is not None and credential.kind is not kind:
            raise NotFoundError("Credential not found")
        return credential

    def consume(
        self,
        value: str,
        kind: CredentialKind | None = None,
        now: datetime | None = None,
    ) -> Credential:
        """
        Check validity and flip revoked in one step. Exactly one caller wins per value;
        others get AlreadyConsumedError (or NotFoundError once the value is gone or expired).
        """
        now = now or utc_now()
        conditions = [
            CredentialRecord.value == value,
            CredentialRecord.revoked.is_(False),
            CredentialRecord.expires_at > now,
        ]
        if kind is not None:
            conditions.append(CredentialRecord.kind == kind.value)
        with self._lock:
            db = self._session()
            try:
                result = db.execute(
                    update(CredentialRecord)
                    .where(*conditions)
                    .values(revoked=True, revoked_at=now)
                    .execution_options(synchronize_session=False)
                )
                won = result.rowcount == 1
                db.commit()
                row = self._find(db, value)
                credential = Credential.from_record(row) if row is not None else None
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Credential store consume failed")
                raise StoreUnavailableError("Credential store unavailable") from e
            finally:
                db.close()
        if won:
            return credential
        if credential is None or credential.is_expired(now):
            raise NotFoundError("Credential not found")
        if kind is not None and credential.kind is not kind:
            raise NotFoundError("Credential not found")
        raise AlreadyConsumedError("Credential already consumed")

    def revoke(self, value: str, now: datetime | None = None) -> bool:
        """Explicit revocation. Returns True if a live credential was revoked by this call."""
        now = now or utc_now()
        with self._lock:
            db = self._session()
            try:
                result = db.execute(
                    update(CredentialRecord)
                    .where(
                        CredentialRecord.value == value,
                        CredentialRecord.revoked.is_(False),
                        CredentialRecord.expires_at > now,
                    )
                    .values(revoked=True, revoked_at=now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                return result.rowcount == 1
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Credential store revoke failed")
                raise StoreUnavailableError("Credential store unavailable") from e
            finally:
                db.close()

    def purge_expired(self, now: datetime | None = None) -> int:
        """Physically delete expired rows. Returns the number removed."""
        now = now or utc_now()
        with self._lock:
            db = self._session()
            try:
                result = db.execute(
                    delete(CredentialRecord)
                    .where(CredentialRecord.expires_at <= now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Credential store purge failed")
                raise StoreUnavailableError("Credential store unavailable") from e
            finally:
                db.close()
        if result.rowcount:
            logger.info("Purged %d expired credentials", result.rowcount)
        return result.rowcount
