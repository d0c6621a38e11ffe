"""Lifecycle of the single AniList credential."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from anifunnel.sync.anilist import AnilistAuthError

if TYPE_CHECKING:
    from anifunnel.storage.database import Database
    from anifunnel.storage.models import Credential
    from anifunnel.sync.anilist import RemoteService
    from anifunnel.sync.cache import TrackedListCache

log = structlog.get_logger(__name__)


class TokenParseError(AnilistAuthError):
    """Raised when a token is not a JWT carrying an ``exp`` claim."""


def token_expiry(token: str) -> datetime:
    """Return the expiry encoded in an AniList JWT.

    AniList tokens are JWTs; only the payload's ``exp`` claim is read, the
    signature is AniList's business.
    """
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        raise TokenParseError("No payload in token")

    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError) as exc:
        raise TokenParseError(f"Could not decode token payload: {exc}") from exc

    exp = claims.get("exp") if isinstance(claims, dict) else None
    if isinstance(exp, bool) or not isinstance(exp, int | float):
        raise TokenParseError("Token payload has no expiry")
    return datetime.fromtimestamp(exp, UTC)


class CredentialManager:
    """Owns the in-memory active credential, backed by the database.

    ``login`` and ``logout`` are the only mutations. Both invalidate the
    tracked-list cache since a different owner means a different list.
    """

    def __init__(
        self,
        db: Database,
        remote: RemoteService,
        cache: TrackedListCache | None = None,
    ) -> None:
        self._db = db
        self._remote = remote
        self._cache = cache
        self._active: Credential | None = None
        self._lock = asyncio.Lock()

    async def load(self) -> Credential | None:
        """Purge expired credentials and load the remaining one, if any."""
        purged = await self._db.purge_expired_credentials()
        if purged:
            log.info("expired_credentials_removed", count=purged)
        self._active = await self._db.get_active_credential()
        if self._active is None:
            log.warning("no_active_credential", hint="authenticate through the admin API")
        else:
            log.info(
                "credential_loaded",
                owner_id=self._active.owner_id,
                owner_name=self._active.owner_name,
                expiry=self._active.expiry.isoformat(),
            )
        return self._active

    def active(self) -> Credential | None:
        """Return the credential if one is set and has not expired."""
        credential = self._active
        if credential is None:
            return None
        if credential.is_expired():
            log.warning("credential_expired", owner_name=credential.owner_name)
            return None
        return credential

    def remaining_validity(self) -> timedelta | None:
        credential = self.active()
        return credential.remaining() if credential else None

    async def login(self, token: str) -> Credential:
        """Validate *token* with AniList and make it the active credential."""
        token = token.strip()
        expiry = token_expiry(token)
        if expiry <= datetime.now(UTC):
            raise AnilistAuthError("Token has already expired")

        owner = await self._remote.validate(token)

        async with self._lock:
            credential = await self._db.set_credential(
                token=token,
                owner_id=owner.id,
                owner_name=owner.name,
                expiry=expiry,
            )
            self._active = credential
            if self._cache is not None:
                self._cache.invalidate()

        log.info(
            "authenticated",
            owner_id=owner.id,
            owner_name=owner.name,
            expiry=expiry.isoformat(),
        )
        return credential

    async def logout(self) -> bool:
        async with self._lock:
            removed = await self._db.clear_credential()
            self._active = None
            if self._cache is not None:
                self._cache.invalidate()
        log.info("logged_out", removed=removed)
        return removed
