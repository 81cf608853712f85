from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from free2free.logging import get_logger
from free2free.storage.models import Session, User

logger = get_logger(__name__)

DEFAULT_SESSION_TTL_MINUTES = 60 * 24


class SessionRecords(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(
        self, session_id: str, *, expires_at: datetime, data: Optional[Dict] = None
    ) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


class SessionStore:
    """Server-side sessions with sliding expiry.

    An expired row is indistinguishable from a missing one at every read:
    ``get``, ``touch``, ``update`` and ``resolve_user`` all return None.
    """

    def __init__(
        self, records: SessionRecords, *, default_ttl_minutes: int = DEFAULT_SESSION_TTL_MINUTES
    ) -> None:
        self.records = records
        self.default_ttl_minutes = default_ttl_minutes

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _expiry(self, ttl_minutes: Optional[int]) -> datetime:
        minutes = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        return self._now() + timedelta(minutes=minutes)

    def create(
        self, user_id: str, data: Optional[Dict] = None, ttl_minutes: Optional[int] = None
    ) -> Session:
        minutes = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        session = self.records.insert_session(Session.new(user_id, minutes, data))
        logger.info("session_created", user_id=user_id, expires_at=session.expires_at.isoformat())
        return session

    def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        session = self.records.get_session(session_id)
        if session is None or session.is_expired(self._now()):
            return None
        return session

    def touch(self, session_id: str, ttl_minutes: Optional[int] = None) -> Optional[Session]:
        """Push expiry to now + TTL; an already expired session stays dead."""
        if self.get(session_id) is None:
            return None
        return self.records.update_session(session_id, expires_at=self._expiry(ttl_minutes))

    refresh = touch

    def update(
        self, session_id: str, data: Dict, ttl_minutes: Optional[int] = None
    ) -> Optional[Session]:
        if self.get(session_id) is None:
            return None
        return self.records.update_session(
            session_id, expires_at=self._expiry(ttl_minutes), data=dict(data)
        )

    def delete(self, session_id: str) -> bool:
        return self.records.delete_session(session_id)

    def delete_all_for_user(self, user_id: str) -> int:
        removed = self.records.delete_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed

    def sweep_expired(self) -> int:
        removed = self.records.delete_expired_sessions(self._now())
        if removed:
            logger.info("sessions_swept", count=removed)
        return removed

    def resolve_user(self, session_id: str) -> Optional[User]:
        session = self.get(session_id)
        if session is None:
            return None
        return self.records.get_user(session.user_id)
