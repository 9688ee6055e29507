from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from credlife.database import SessionLocal, session_scope
from credlife.models.audit import AuditLogEntry
from credlife.schemas.errors import PersistenceError

LOGGER = logging.getLogger(__name__)

TWO_FA_ACTIONS = (
    "2fa_enrolled",
    "2fa_disabled",
    "2fa_recovery_codes_regenerated",
    "2fa_recovery_code_used",
)


@dataclass(frozen=True)
class AuditEvent:
    id: int
    user_id: int
    action: str
    details: dict[str, Any]
    created_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._clock = clock

    def record(
        self, user_id: int, action: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        clean = {key: value for key, value in (details or {}).items() if value is not None}
        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    AuditLogEntry(
                        user_id=user_id,
                        action=action,
                        details=clean or None,
                        created_at=self._clock(),
                    )
                )
        except SQLAlchemyError as exc:
            LOGGER.error("Audit write failed user=%s action=%s: %s", user_id, action, exc)
            raise PersistenceError("Failed to write audit log") from exc
        LOGGER.info("Audit user=%s action=%s", user_id, action)

    def list_events(
        self,
        user_id: int,
        actions: Optional[Iterable[str]] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[AuditEvent]:
        stmt = select(AuditLogEntry).where(AuditLogEntry.user_id == user_id)
        if actions is not None:
            stmt = stmt.where(AuditLogEntry.action.in_(list(actions)))
        stmt = (
            stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with session_scope(self._session_factory) as session:
            entries = session.execute(stmt).scalars().all()
            return [
                AuditEvent(
                    id=entry.id,
                    user_id=entry.user_id,
                    action=entry.action,
                    details=dict(entry.details or {}),
                    created_at=entry.created_at,
                )
                for entry in entries
            ]


audit_log = AuditLog()
