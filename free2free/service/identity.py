from __future__ import annotations

from typing import Optional, Protocol

from free2free.logging import get_logger
from free2free.service.errors import ConflictError, ValidationError
from free2free.service.oauth import ExternalProfile
from free2free.storage.errors import ConstraintViolation
from free2free.storage.models import SUPPORTED_PROVIDERS, User

logger = get_logger(__name__)


class IdentityRecords(Protocol):
    def get_user_by_external(self, provider: str, external_id: str) -> Optional[User]: ...

    def create_user(
        self,
        external_id: str,
        external_provider: str,
        display_name: str,
        *,
        email: str = "",
        avatar_url: Optional[str] = None,
        is_admin: bool = False,
    ) -> User: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...


class IdentityResolver:
    """Maps a provider profile onto a local user, creating it on first login."""

    def __init__(self, records: IdentityRecords) -> None:
        self.records = records

    def _sync_profile(self, user: User, profile: ExternalProfile) -> User:
        changes = {}
        if profile.name and profile.name != user.display_name:
            changes["display_name"] = profile.name
        if profile.email and profile.email != user.email:
            changes["email"] = profile.email
        if profile.avatar_url and profile.avatar_url != user.avatar_url:
            changes["avatar_url"] = profile.avatar_url
        if not changes:
            return user
        updated = self.records.update_user(user.id, **changes)
        logger.info("user_profile_synced", user_id=user.id, fields=sorted(changes))
        return updated or user

    def resolve(self, provider: str, profile: ExternalProfile) -> User:
        """Return the user for ``(profile.external_id, provider)``.

        Raises ``ConflictError`` when another request created the same
        identity between our lookup and insert; the caller should look it up
        again rather than create a second row.
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"unsupported provider: {provider}")
        if not profile.external_id:
            raise ValidationError("provider profile has no id")

        existing = self.records.get_user_by_external(provider, profile.external_id)
        if existing:
            return self._sync_profile(existing, profile)

        try:
            user = self.records.create_user(
                profile.external_id,
                provider,
                profile.name or profile.external_id,
                email=profile.email or "",
                avatar_url=profile.avatar_url or None,
            )
        except ConstraintViolation as exc:
            logger.warning(
                "user_identity_conflict", provider=provider, constraint=exc.constraint
            )
            raise ConflictError(
                "user identity created concurrently",
                detail={"provider": provider},
            ) from exc
        logger.info("user_created", user_id=user.id, provider=provider)
        return user

    def lookup(self, provider: str, external_id: str) -> Optional[User]:
        return self.records.get_user_by_external(provider, external_id)
