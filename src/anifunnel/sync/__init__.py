"""Sync module: title matching, decision engine, tracked-list cache and AniList client."""

from anifunnel.sync.cache import TrackedEntry, TrackedListCache
from anifunnel.sync.engine import Decision, IncomingEvent, MatchResult, UpdateEngine

__all__ = [
    "Decision",
    "IncomingEvent",
    "MatchResult",
    "TrackedEntry",
    "TrackedListCache",
    "UpdateEngine",
]
