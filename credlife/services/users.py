from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from credlife.database import SessionLocal, session_scope
from credlife.models.user import UserEntry
from credlife.schemas.errors import PersistenceError
from credlife.services.hashing import hash_password, verify_password


@dataclass(frozen=True)
class UserRecord:
    id: int
    email: str
    full_name: Optional[str]
    email_verified: bool
    created_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _to_record(entry: UserEntry) -> UserRecord:
    return UserRecord(
        id=entry.id,
        email=entry.email,
        full_name=entry.full_name,
        email_verified=entry.email_verified_at is not None,
        created_at=entry.created_at,
    )


class UserStore:
    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        clock: Callable[[], datetime] = _utcnow,
        password_rounds: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._clock = clock
        self._password_rounds = password_rounds

    def create_user(
        self, email: str, password: str, full_name: Optional[str] = None
    ) -> UserRecord:
        key = _normalize_email(email)
        now = self._clock()
        with session_scope(self._session_factory) as session:
            existing = session.execute(
                select(UserEntry).where(UserEntry.email == key)
            ).scalar_one_or_none()
            if existing:
                raise ValueError("Email already in use")
            entry = UserEntry(
                email=key,
                full_name=full_name,
                password_hash=hash_password(password, rounds=self._password_rounds),
                email_verified_at=None,
                created_at=now,
                updated_at=now,
            )
            session.add(entry)
            session.flush()
            return _to_record(entry)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with session_scope(self._session_factory) as session:
            entry = session.get(UserEntry, user_id)
            return _to_record(entry) if entry else None

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        key = _normalize_email(email)
        if not key:
            return None
        with session_scope(self._session_factory) as session:
            entry = session.execute(
                select(UserEntry).where(UserEntry.email == key)
            ).scalar_one_or_none()
            return _to_record(entry) if entry else None

    def authenticate(self, email: str, password: str) -> Optional[UserRecord]:
        key = _normalize_email(email)
        with session_scope(self._session_factory) as session:
            entry = session.execute(
                select(UserEntry).where(UserEntry.email == key)
            ).scalar_one_or_none()
            if entry is None or not verify_password(password, entry.password_hash):
                return None
            return _to_record(entry)

    def check_password(self, user_id: int, password: str) -> bool:
        with session_scope(self._session_factory) as session:
            entry = session.get(UserEntry, user_id)
            return bool(entry) and verify_password(password, entry.password_hash)

    def set_password(self, user_id: int, password: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                entry = session.get(UserEntry, user_id)
                if entry is None:
                    raise PersistenceError(f"User {user_id} not found")
                entry.password_hash = hash_password(password, rounds=self._password_rounds)
                entry.updated_at = self._clock()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update password") from exc

    def change_password(self, user_id: int, current: str, new: str) -> bool:
        """Returns False when the current password does not match."""
        try:
            with session_scope(self._session_factory) as session:
                entry = session.get(UserEntry, user_id)
                if entry is None or not verify_password(current, entry.password_hash):
                    return False
                entry.password_hash = hash_password(new, rounds=self._password_rounds)
                entry.updated_at = self._clock()
                return True
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to update password") from exc

    def mark_email_verified(self, user_id: int) -> bool:
        """Returns False when the address was already verified."""
        with session_scope(self._session_factory) as session:
            entry = session.get(UserEntry, user_id)
            if entry is None:
                raise ValueError("User not found")
            if entry.email_verified_at is not None:
                return False
            now = self._clock()
            entry.email_verified_at = now
            entry.updated_at = now
            return True


user_store = UserStore()
