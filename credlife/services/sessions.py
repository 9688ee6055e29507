from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import secrets
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import sessionmaker

from credlife.config import settings
from credlife.database import SessionLocal, session_scope
from credlife.models.session import SessionEntry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionRecord:
    id: int
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str]
    user_agent: Optional[str]
    current: bool = False


class SessionStore:
    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        clock: Callable[[], datetime] = _utcnow,
        ttl_seconds: int = settings.session_ttl_seconds,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._clock = clock
        self._ttl_seconds = ttl_seconds

    def create_session(
        self,
        user_id: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        now = self._clock()
        token = secrets.token_urlsafe(32)
        expires_at = now + timedelta(seconds=self._ttl_seconds)
        with session_scope(self._session_factory) as session:
            session.execute(delete(SessionEntry).where(SessionEntry.expires_at <= now))
            session.add(
                SessionEntry(
                    token=token,
                    user_id=user_id,
                    created_at=now,
                    expires_at=expires_at,
                    revoked_at=None,
                    ip_address=ip_address,
                    user_agent=(user_agent or "")[:255] or None,
                )
            )
        return token

    def revoke_session(self, token: str) -> bool:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(SessionEntry)
                .where(SessionEntry.token == token, SessionEntry.revoked_at.is_(None))
                .values(revoked_at=now)
            )
            return result.rowcount > 0

    def revoke_all(self, user_id: int, keep_token: str | None = None) -> int:
        now = self._clock()
        conditions = [SessionEntry.user_id == user_id, SessionEntry.revoked_at.is_(None)]
        if keep_token:
            conditions.append(SessionEntry.token != keep_token)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(SessionEntry).where(*conditions).values(revoked_at=now)
            )
            return result.rowcount

    def list_sessions(self, user_id: int, current_token: str | None = None) -> list[SessionRecord]:
        """Active sessions, newest first."""
        now = self._clock()
        with session_scope(self._session_factory) as session:
            entries = session.execute(
                select(SessionEntry)
                .where(
                    SessionEntry.user_id == user_id,
                    SessionEntry.revoked_at.is_(None),
                    SessionEntry.expires_at > now,
                )
                .order_by(SessionEntry.created_at.desc(), SessionEntry.id.desc())
            ).scalars().all()
            return [
                SessionRecord(
                    id=entry.id,
                    created_at=entry.created_at,
                    expires_at=entry.expires_at,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    current=current_token is not None and entry.token == current_token,
                )
                for entry in entries
            ]

    def revoke_by_id(self, user_id: int, session_id: int) -> bool:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(SessionEntry)
                .where(
                    SessionEntry.id == session_id,
                    SessionEntry.user_id == user_id,
                    SessionEntry.revoked_at.is_(None),
                    SessionEntry.expires_at > now,
                )
                .values(revoked_at=now)
            )
            return result.rowcount > 0

    def get_user_id(self, token: str) -> int | None:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            result = session.execute(
                select(SessionEntry).where(
                    SessionEntry.token == token,
                    SessionEntry.revoked_at.is_(None),
                    SessionEntry.expires_at > now,
                )
            )
            entry = result.scalar_one_or_none()
            if entry is None:
                return None
            return entry.user_id


session_store = SessionStore()
