from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = ("app_user", "refresh_token", "auth_session", "oauth_state")


def _constraint_name(exc: errors.IntegrityError) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None) if diag is not None else None


def _is_uuid(value: Any) -> bool:
    """User ids are UUID columns; anything else cannot match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for users, refresh tokens, sessions and OAuth state."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            external_id=row["external_id"],
            external_provider=row["external_provider"],
            display_name=row["display_name"],
            email=row.get("email") or "",
            avatar_url=row.get("avatar_url"),
            is_admin=bool(row.get("is_admin")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        data = row.get("data")
        if isinstance(data, str):
            data = json.loads(data)
        return Session(
            id=row["id"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            data=data or {},
        )

    # users
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
        user = User.new(
            external_id,
            external_provider,
            display_name,
            email=email,
            avatar_url=avatar_url,
            is_admin=is_admin,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, external_id, external_provider, display_name, email, avatar_url, is_admin, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.external_id,
                        user.external_provider,
                        user.display_name,
                        user.email,
                        user.avatar_url,
                        user.is_admin,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "external identity already exists",
                {"external_provider": external_provider, "external_id": external_id},
                constraint=_constraint_name(exc) or "user_identity",
            ) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_external(self, provider: str, external_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE external_provider = %s AND external_id = %s",
                (provider, external_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        disallowed = set(fields) - USER_MUTABLE_FIELDS
        if disallowed:
            raise DisallowedFieldError("user", disallowed)
        if not _is_uuid(user_id):
            return None
        if not fields:
            return self.get_user(user_id)
        names = sorted(fields)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in names
        )
        query = sql.SQL(
            "UPDATE app_user SET {}, updated_at = %s WHERE id = %s RETURNING *"
        ).format(assignments)
        params = [fields[name] for name in names] + [utcnow(), user_id]
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_admin = %s, updated_at = %s WHERE id = %s RETURNING *",
                (is_admin, utcnow(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        # refresh_token and auth_session rows go with it via ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # refresh tokens
    def insert_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        row = RefreshToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=utcnow(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (row.id, row.user_id, row.token_hash, row.expires_at, row.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already stored",
                constraint=_constraint_name(exc) or "refresh_token_hash",
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": user_id}, constraint="refresh_token_user"
            ) from exc
        return row

    def take_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        # DELETE ... RETURNING lets exactly one concurrent caller see the row
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s RETURNING *",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return result.rowcount

    # sessions
    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, data, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        json.dumps(session.data or {}),
                        session.expires_at,
                        session.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": session.user_id}, constraint="session_user"
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session id collision", constraint="session_id") from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(
        self, session_id: str, *, expires_at: datetime, data: Optional[Dict] = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            if data is None:
                row = conn.execute(
                    "UPDATE auth_session SET expires_at = %s WHERE id = %s RETURNING *",
                    (expires_at, session_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "UPDATE auth_session SET expires_at = %s, data = %s WHERE id = %s RETURNING *",
                    (expires_at, json.dumps(data), session_id),
                ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return result.rowcount

    # oauth state
    def put_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM oauth_state WHERE expires_at <= %s", (utcnow(),))
            conn.execute(
                "INSERT INTO oauth_state (state, provider, expires_at) VALUES (%s, %s, %s)",
                (state, provider, expires_at),
            )

    def take_oauth_state(self, state: str) -> Optional[OAuthState]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM oauth_state WHERE state = %s RETURNING *", (state,)
            ).fetchone()
        if not row:
            return None
        return OAuthState(
            state=row["state"], provider=row["provider"], expires_at=row["expires_at"]
        )
