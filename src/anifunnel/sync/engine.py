"""Update decision engine: from a scrobble event to an AniList progress write."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict, Field

from anifunnel.storage.database import StorageError
from anifunnel.sync.anilist import AnilistAuthError, AnilistError
from anifunnel.sync.matcher import DEFAULT_THRESHOLD, match_title

if TYPE_CHECKING:
    from anifunnel.storage.database import Database
    from anifunnel.storage.models import Override
    from anifunnel.sync.anilist import RemoteService
    from anifunnel.sync.auth import CredentialManager
    from anifunnel.sync.cache import TrackedEntry, TrackedListCache

log = structlog.get_logger(__name__)


class IncomingEvent(BaseModel):
    """A validated playback-completion notification."""

    model_config = ConfigDict(frozen=True)

    raw_title: str
    episode_number: int = Field(gt=0)
    season_number: int | None = None  # informational, every season is matched
    account_identifier: str | None = None


class Decision(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    FILTERED = "filtered"
    UNMATCHED = "unmatched"
    AMBIGUOUS = "ambiguous"
    NO_ADVANCE = "no_advance"
    GAP = "gap"
    ADVANCE = "advance"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class MatchResult:
    """Terminal outcome of processing one event."""

    decision: Decision
    entry: TrackedEntry | None = None
    resolved_episode: int | None = None
    score: float | None = None


def resolve_episode(episode_number: int, override: Override | None = None) -> int:
    """Apply the override's episode offset. Zero or negative results are allowed."""
    return episode_number + (override.offset if override else 0)


def decide(progress: int, resolved_episode: int) -> Decision:
    """Only the strictly next episode advances progress."""
    if resolved_episode <= progress:
        return Decision.NO_ADVANCE
    if resolved_episode == progress + 1:
        return Decision.ADVANCE
    return Decision.GAP


class UpdateEngine:
    """Processes scrobble events against the tracked list."""

    def __init__(
        self,
        db: Database,
        remote: RemoteService,
        cache: TrackedListCache,
        credentials: CredentialManager,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        plex_user: str | None = None,
    ) -> None:
        self._db = db
        self._remote = remote
        self._cache = cache
        self._credentials = credentials
        self._threshold = threshold
        self._plex_user = plex_user or None

    async def _load_overrides(self) -> dict[int, Override]:
        try:
            overrides = await self._db.list_overrides()
        except StorageError as exc:
            log.warning("overrides_unavailable", error=str(exc))
            return {}
        return {o.media_id: o for o in overrides}

    async def handle_event(self, event: IncomingEvent) -> MatchResult:
        """Run one event through matching and the decision state machine.

        Never raises for remote or storage failures; the outcome is logged and
        returned.
        """
        bound = log.bind(raw_title=event.raw_title, episode=event.episode_number)

        if self._plex_user and event.account_identifier != self._plex_user:
            bound.info("event_filtered", account=event.account_identifier)
            return MatchResult(Decision.FILTERED)

        credential = self._credentials.active()
        if credential is None:
            bound.warning("event_unauthenticated", hint="set an AniList token to enable updates")
            return MatchResult(Decision.UNAUTHENTICATED)

        try:
            entries = await self._cache.ensure_fresh(credential)
        except AnilistError as exc:
            if not self._cache.loaded:
                bound.error("tracked_list_unavailable", error=str(exc))
                return MatchResult(Decision.ABANDONED)
            bound.warning("tracked_list_refresh_failed", error=str(exc), using="stale snapshot")
            entries = self._cache.snapshot()

        overrides = await self._load_overrides()
        match = match_title(event.raw_title, entries.values(), overrides, threshold=self._threshold)

        if match.ambiguous:
            bound.warning(
                "event_ambiguous",
                score=round(match.score, 2),
                candidates=[f"{e.display_title} ({e.media_id})" for e in match.candidates],
                hint="add a title override to pick one",
            )
            return MatchResult(Decision.AMBIGUOUS, score=match.score)
        if match.entry is None:
            bound.info(
                "event_unmatched",
                score=round(match.score, 2),
                nearest=match.nearest.display_title if match.nearest else None,
            )
            return MatchResult(Decision.UNMATCHED, score=match.score)

        resolved = resolve_episode(event.episode_number, overrides.get(match.entry.media_id))
        bound = bound.bind(
            media_id=match.entry.media_id,
            title=match.entry.display_title,
            resolved_episode=resolved,
            score=round(match.score, 2),
            via_override=match.via_override,
        )

        entry, claimed = await self._cache.reserve(match.entry.media_id, resolved)
        if entry is None:
            bound.info("event_unmatched", reason="entry left the tracked list")
            return MatchResult(Decision.UNMATCHED, score=match.score)

        decision = decide(entry.progress, resolved)
        if not claimed:
            if decision is Decision.GAP:
                bound.info("event_gap", progress=entry.progress)
            else:
                bound.info("event_no_advance", progress=entry.progress)
            return MatchResult(decision, entry, resolved, match.score)

        committed: int | None = None
        try:
            await self._remote.advance_progress(credential, entry.media_id, resolved)
            committed = resolved
        except AnilistAuthError as exc:
            bound.error("progress_update_rejected", error=str(exc), hint="re-authenticate")
            return MatchResult(Decision.ABANDONED, entry, resolved, match.score)
        except AnilistError as exc:
            bound.error("progress_update_failed", error=str(exc))
            return MatchResult(Decision.ABANDONED, entry, resolved, match.score)
        finally:
            await self._cache.commit(entry.media_id, committed)

        bound.info("progress_advanced", progress=resolved)
        return MatchResult(Decision.ADVANCE, self._cache.get(entry.media_id) or entry, resolved, match.score)
