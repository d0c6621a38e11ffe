"""Pydantic models for the anifunnel storage layer."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field, SecretStr


class Override(BaseModel):
    """User-defined matching rule pinned to one tracked series."""

    media_id: int
    title_override: str | None = None
    episode_offset: int | None = None
    updated_at: datetime | None = None

    @property
    def offset(self) -> int:
        return self.episode_offset or 0

    def is_empty(self) -> bool:
        return not self.title_override and not self.episode_offset


class Credential(BaseModel):
    """The single active AniList authentication."""

    token: SecretStr
    owner_id: int
    owner_name: str
    issued_at: datetime
    expiry: datetime = Field(description="Absolute UTC expiry taken from the token")

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expiry

    def remaining(self, now: datetime | None = None) -> timedelta:
        """Return how long the credential stays valid (never negative)."""
        delta = self.expiry - (now or datetime.now(UTC))
        return max(delta, timedelta(0))
