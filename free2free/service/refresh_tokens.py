from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional, Protocol

from free2free.logging import get_logger
from free2free.service.tokens import InvalidTokenError
from free2free.storage.models import RefreshToken

logger = get_logger(__name__)


class RefreshTokenRecords(Protocol):
    def insert_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def take_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RefreshTokenStore:
    """Rotation ledger: a refresh token is live only while its row exists.

    Rows are keyed by the SHA-256 digest of the token so a leaked table does
    not hand out usable credentials.
    """

    def __init__(self, records: RefreshTokenRecords) -> None:
        self.records = records

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(self, user_id: str, token: str, expires_at: datetime) -> RefreshToken:
        row = self.records.insert_refresh_token(user_id, hash_refresh_token(token), expires_at)
        logger.info("refresh_token_issued", user_id=user_id, expires_at=expires_at.isoformat())
        return row

    def redeem(self, token: str) -> str:
        """Consume ``token`` and return its owner's id.

        The row is deleted before the expiry check so that a racing second
        redemption of the same string finds nothing.
        """
        row = self.records.take_refresh_token(hash_refresh_token(token))
        if row is None:
            logger.warning("refresh_token_unknown")
            raise InvalidTokenError("refresh token not recognized")
        if row.is_expired(self._now()):
            logger.warning("refresh_token_expired", user_id=row.user_id)
            raise InvalidTokenError("refresh token expired")
        logger.info("refresh_token_redeemed", user_id=row.user_id)
        return row.user_id

    def revoke(self, token: str) -> bool:
        return self.records.take_refresh_token(hash_refresh_token(token)) is not None

    def revoke_all(self, user_id: str) -> int:
        removed = self.records.delete_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed

    def sweep_expired(self) -> int:
        removed = self.records.delete_expired_refresh_tokens(self._now())
        if removed:
            logger.info("refresh_tokens_swept", count=removed)
        return removed
