from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from free2free.logging import get_logger
from free2free.storage.errors import ConstraintViolation, DisallowedFieldError
from free2free.storage.models import (
    SUPPORTED_PROVIDERS,
    USER_MUTABLE_FIELDS,
    OAuthState,
    RefreshToken,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    All reads and writes go through one re-entrant lock so compound
    operations (delete-and-return, check-then-insert) are atomic with respect
    to concurrent request threads. When ``fs_root`` is given the state is
    mirrored to JSON and reloaded on startup.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}  # token_hash -> row
        self.sessions: Dict[str, Session] = {}
        self.oauth_states: Dict[str, OAuthState] = {}
        # RLock so helpers can re-enter while a caller already holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
    def _identity_taken(self, provider: str, external_id: str) -> bool:
        return any(
            u.external_provider == provider and u.external_id == external_id
            for u in self.users.values()
        )

    def create_user(
        self,
        external_id: str,
        external_provider: str,
        display_name: str,
        *,
        email: str = "",
        avatar_url: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        if external_provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"unsupported provider: {external_provider}")
        with self._data_lock:
            if self._identity_taken(external_provider, external_id):
                raise ConstraintViolation(
                    "external identity already exists",
                    {"external_provider": external_provider, "external_id": external_id},
                    constraint="user_identity",
                )
            user = User.new(
                external_id,
                external_provider,
                display_name,
                email=email,
                avatar_url=avatar_url,
                is_admin=is_admin,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_external(self, provider: str, external_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.external_provider == provider and u.external_id == external_id
                ),
                None,
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        disallowed = set(fields) - USER_MUTABLE_FIELDS
        if disallowed:
            raise DisallowedFieldError("user", disallowed)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not fields:
                return user
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_admin = is_admin
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            # Cascade like the Postgres foreign keys
            self.refresh_tokens = {
                h: row for h, row in self.refresh_tokens.items() if row.user_id != user_id
            }
            self.sessions = {
                sid: sess for sid, sess in self.sessions.items() if sess.user_id != user_id
            }
            self._persist_state()
            return True

    # refresh tokens
    def insert_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": user_id}, constraint="refresh_token_user"
                )
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already stored", constraint="refresh_token_hash"
                )
            row = RefreshToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_tokens[token_hash] = row
            self._persist_state()
            return row

    def take_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.pop(token_hash, None)
            if row is not None:
                self._persist_state()
            return row

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [h for h, row in self.refresh_tokens.items() if row.user_id == user_id]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [h for h, row in self.refresh_tokens.items() if row.expires_at <= now]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"user_id": session.user_id},
                    constraint="session_user",
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", constraint="session_id")
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def update_session(
        self, session_id: str, *, expires_at: datetime, data: Optional[Dict] = None
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.expires_at = expires_at
            if data is not None:
                sess.data = dict(data)
            self._persist_state()
            return sess

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # oauth state
    def put_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        with self._data_lock:
            self.oauth_states[state] = OAuthState(
                state=state, provider=provider, expires_at=expires_at
            )
            # Expired states never get consumed; drop them opportunistically
            now = utcnow()
            for key in [k for k, v in self.oauth_states.items() if v.expires_at <= now]:
                self.oauth_states.pop(key, None)

    def take_oauth_state(self, state: str) -> Optional[OAuthState]:
        with self._data_lock:
            return self.oauth_states.pop(state, None)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "external_id": user.external_id,
            "external_provider": user.external_provider,
            "display_name": user.display_name,
            "email": user.email,
            "avatar_url": user.avatar_url,
            "is_admin": user.is_admin,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            external_id=data["external_id"],
            external_provider=data["external_provider"],
            display_name=data.get("display_name", ""),
            email=data.get("email", ""),
            avatar_url=data.get("avatar_url"),
            is_admin=bool(data.get("is_admin", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_refresh_token(self, row: RefreshToken) -> dict:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "token_hash": row.token_hash,
            "expires_at": self._serialize_datetime(row.expires_at),
            "created_at": self._serialize_datetime(row.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "data": session.data,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            data=data.get("data") or {},
        )
