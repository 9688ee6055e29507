from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from credlife.database import SessionLocal, session_scope
from credlife.models.attempt import AttemptEntry
from credlife.models.credential import CredentialEntry
from credlife.schemas.credentials import AttemptKind, Credential, Purpose
from credlife.schemas.errors import PersistenceError

LOGGER = logging.getLogger(__name__)


class ConflictError(PersistenceError):
    pass


class NotFound(LookupError):
    pass


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_record(entry: CredentialEntry) -> Credential:
    return Credential(
        id=entry.id,
        identity_id=entry.identity_id,
        purpose=Purpose(entry.purpose),
        created_at=_aware(entry.created_at),
        expires_at=_aware(entry.expires_at),
        used_at=_aware(entry.used_at),
        metadata=dict(entry.meta or {}),
    )


class CredentialStore:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def _scope(self):
        return session_scope(self._session_factory)

    def insert(
        self,
        identity_id: int,
        purpose: Purpose,
        secret_hash: str,
        created_at: datetime,
        expires_at: Optional[datetime],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Credential:
        try:
            with self._scope() as session:
                entry = CredentialEntry(
                    identity_id=identity_id,
                    purpose=purpose.value,
                    secret_hash=secret_hash,
                    created_at=created_at,
                    expires_at=expires_at,
                    used_at=None,
                    meta=metadata or None,
                )
                session.add(entry)
                session.flush()
                return _to_record(entry)
        except IntegrityError as exc:
            raise ConflictError("Credential hash already exists") from exc
        except SQLAlchemyError as exc:
            LOGGER.error("Credential insert failed purpose=%s: %s", purpose.value, exc)
            raise PersistenceError("Failed to store credential") from exc

    def find_by_hash(self, purpose: Purpose, secret_hash: str) -> Credential:
        try:
            with self._scope() as session:
                entry = session.execute(
                    select(CredentialEntry).where(
                        CredentialEntry.purpose == purpose.value,
                        CredentialEntry.secret_hash == secret_hash,
                    )
                ).scalar_one_or_none()
                if entry is None:
                    raise NotFound("Credential not found")
                return _to_record(entry)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to look up credential") from exc

    def get(self, credential_id: int) -> Credential:
        try:
            with self._scope() as session:
                entry = session.get(CredentialEntry, credential_id)
                if entry is None:
                    raise NotFound("Credential not found")
                return _to_record(entry)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to load credential") from exc

    def find_for_identity(
        self, identity_id: int, purpose: Purpose
    ) -> list[tuple[Credential, str]]:
        """All credentials of one identity and purpose with their stored hashes."""
        try:
            with self._scope() as session:
                entries = session.execute(
                    select(CredentialEntry)
                    .where(
                        CredentialEntry.identity_id == identity_id,
                        CredentialEntry.purpose == purpose.value,
                    )
                    .order_by(CredentialEntry.id)
                ).scalars().all()
                return [(_to_record(entry), entry.secret_hash) for entry in entries]
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to list credentials") from exc

    def mark_used(self, credential_id: int, used_at: datetime) -> bool:
        """Conditional update; only one concurrent caller can flip used_at."""
        try:
            with self._scope() as session:
                result = session.execute(
                    update(CredentialEntry)
                    .where(
                        CredentialEntry.id == credential_id,
                        CredentialEntry.used_at.is_(None),
                        or_(
                            CredentialEntry.expires_at.is_(None),
                            CredentialEntry.expires_at > used_at,
                        ),
                    )
                    .values(used_at=used_at)
                )
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to consume credential") from exc

    def supersede(self, identity_id: int, purpose: Purpose, now: datetime) -> int:
        """Cut the expiry of outstanding credentials to now."""
        try:
            with self._scope() as session:
                result = session.execute(
                    update(CredentialEntry)
                    .where(
                        CredentialEntry.identity_id == identity_id,
                        CredentialEntry.purpose == purpose.value,
                        CredentialEntry.used_at.is_(None),
                        or_(
                            CredentialEntry.expires_at.is_(None),
                            CredentialEntry.expires_at > now,
                        ),
                    )
                    .values(expires_at=now)
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to supersede credentials") from exc

    def _attempt_conditions(
        self,
        identity_id: int,
        purpose: Purpose,
        kind: AttemptKind,
        since: datetime,
        failures_only: bool,
    ):
        conditions = [
            AttemptEntry.identity_id == identity_id,
            AttemptEntry.purpose == purpose.value,
            AttemptEntry.kind == kind.value,
            AttemptEntry.created_at >= since,
        ]
        if failures_only:
            conditions.append(AttemptEntry.success.is_(False))
        return and_(*conditions)

    def count_attempts(
        self,
        identity_id: int,
        purpose: Purpose,
        kind: AttemptKind,
        since: datetime,
        failures_only: bool = False,
    ) -> int:
        try:
            with self._scope() as session:
                return session.execute(
                    select(func.count(AttemptEntry.id)).where(
                        self._attempt_conditions(
                            identity_id, purpose, kind, since, failures_only
                        )
                    )
                ).scalar_one()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to count attempts") from exc

    def oldest_attempt(
        self,
        identity_id: int,
        purpose: Purpose,
        kind: AttemptKind,
        since: datetime,
        failures_only: bool = False,
    ) -> Optional[datetime]:
        try:
            with self._scope() as session:
                value = session.execute(
                    select(func.min(AttemptEntry.created_at)).where(
                        self._attempt_conditions(
                            identity_id, purpose, kind, since, failures_only
                        )
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to read attempts") from exc
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return _aware(value)

    def insert_attempt(
        self,
        identity_id: int,
        purpose: Purpose,
        kind: AttemptKind,
        success: bool,
        timestamp: datetime,
    ) -> None:
        try:
            with self._scope() as session:
                session.add(
                    AttemptEntry(
                        identity_id=identity_id,
                        purpose=purpose.value,
                        kind=kind.value,
                        success=success,
                        created_at=timestamp,
                    )
                )
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to record attempt") from exc


credential_store = CredentialStore()
