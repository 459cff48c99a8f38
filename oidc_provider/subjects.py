"""
Subject (identity record) lookups and seeding. No hardcoded credentials.
Optional: set OIDC_SEED_USER + OIDC_SEED_PASSWORD, and OIDC_SEED_PROFILE (JSON) for profile fields.
"""
import json
import logging
import os
import uuid
from datetime import date, datetime, timezone

import bcrypt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oidc_provider.errors import StoreUnavailableError
from oidc_provider.models import Subject

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = (
    "given_name",
    "family_name",
    "name",
    "email",
    "email_verified",
    "phone_number",
    "phone_number_verified",
    "locale",
    "zoneinfo",
    "address",
    "country",
    "nationality",
)


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")[:72]
    return bcrypt.checkpw(raw, hashed.encode("utf-8"))


def get_subject(db: Session, subject_id: str) -> Subject | None:
    try:
        return db.query(Subject).filter(Subject.subject_id == subject_id).first()
    except SQLAlchemyError as e:
        raise StoreUnavailableError("Subject store unavailable") from e


def authenticate(db: Session, username: str, password: str) -> Subject | None:
    """Return the subject if username/password match, else None. Records last_login on success."""
    try:
        subject = db.query(Subject).filter(Subject.username == username).first()
        if subject is None or not verify_password(password, subject.password_hash):
            return None
        subject.last_login = datetime.now(timezone.utc)
        db.commit()
        return subject
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreUnavailableError("Subject store unavailable") from e


def create_subject(db: Session, username: str, password: str, **profile) -> Subject:
    birthdate = profile.pop("birthdate", None)
    if isinstance(birthdate, str):
        birthdate = date.fromisoformat(birthdate)
    subject = Subject(
        subject_id=profile.pop("subject_id", None) or str(uuid.uuid4()),
        username=username,
        password_hash=hash_password(password),
        birthdate=birthdate,
        **{k: v for k, v in profile.items() if k in _PROFILE_FIELDS},
    )
    db.add(subject)
    db.commit()
    return subject


def seed_from_env(db: Session) -> None:
    """Create one subject from env if set."""
    seed_user = os.environ.get("OIDC_SEED_USER")
    seed_password = os.environ.get("OIDC_SEED_PASSWORD")
    if not (seed_user and seed_password):
        return
    if db.query(Subject).filter(Subject.username == seed_user).first() is not None:
        logger.debug("Subject already exists: %s", seed_user)
        return
    profile = json.loads(os.environ.get("OIDC_SEED_PROFILE") or "{}")
    subject = create_subject(db, seed_user, seed_password, **profile)
    logger.info("Seeded subject: %s (sub=%s)", seed_user, subject.subject_id)
