"""Fuzzy matching of incoming Plex titles against the tracked AniList list."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import structlog
from rapidfuzz import fuzz

from anifunnel.storage.models import Override
from anifunnel.sync.cache import TrackedEntry
from anifunnel.sync.titles import canonical_title, normalize_title

log = structlog.get_logger(__name__)

MAX_SCORE = 100.0
DEFAULT_THRESHOLD = 80.0
_REORDER_DISCOUNT = 0.95
# Subtracted when only the marker-stripped forms line up.
STRIPPED_PENALTY = 5.0


@dataclass(frozen=True)
class TitleMatch:
    """Outcome of matching one incoming title."""

    entry: TrackedEntry | None
    score: float
    via_override: bool = False
    candidates: tuple[TrackedEntry, ...] = ()
    nearest: TrackedEntry | None = None

    @property
    def ambiguous(self) -> bool:
        return self.entry is None and len(self.candidates) > 1


def similarity(a: str, b: str) -> float:
    """Score two normalized titles from 0 to 100.

    Plain edit similarity, or a slightly discounted token-sorted similarity
    when the words only differ in order.
    """
    if not a or not b:
        return 0.0
    return max(
        fuzz.ratio(a, b),
        fuzz.token_sort_ratio(a, b) * _REORDER_DISCOUNT,
    )


def best_score(canonical: str, stripped: str, entry: TrackedEntry) -> float:
    """Return the entry's best score across all of its alternate titles.

    Each alternate is scored on the full canonical form, and again on the
    marker-stripped form less :data:`STRIPPED_PENALTY`. An exact title
    therefore beats a sibling season that differs only by "2" or "S2".
    """
    return max(
        (
            max(similarity(canonical, full), similarity(stripped, bare) - STRIPPED_PENALTY)
            for full, bare in entry.title_forms
        ),
        default=0.0,
    )


def _override_match(
    raw_title: str,
    canonical: str,
    entries: Mapping[int, TrackedEntry],
    overrides: Mapping[int, Override],
) -> TitleMatch | None:
    hits = [
        o.media_id
        for o in overrides.values()
        if o.title_override and canonical_title(o.title_override) == canonical
    ]
    if not hits:
        return None

    tracked = [entries[media_id] for media_id in hits if media_id in entries]
    if len(tracked) == 1:
        log.info(
            "override_title_match",
            raw_title=raw_title,
            media_id=tracked[0].media_id,
            title=tracked[0].display_title,
        )
        return TitleMatch(entry=tracked[0], score=MAX_SCORE, via_override=True)
    if len(tracked) > 1:
        log.warning(
            "override_title_ambiguous",
            raw_title=raw_title,
            media_ids=[e.media_id for e in tracked],
        )
        return TitleMatch(entry=None, score=MAX_SCORE, via_override=True, candidates=tuple(tracked))

    log.info("override_target_not_tracked", raw_title=raw_title, media_ids=hits)
    return TitleMatch(entry=None, score=MAX_SCORE, via_override=True)


def match_title(
    raw_title: str,
    entries: Iterable[TrackedEntry],
    overrides: Mapping[int, Override] | None = None,
    *,
    threshold: float = DEFAULT_THRESHOLD,
) -> TitleMatch:
    """Find the tracked entry an incoming title refers to.

    Matching tiers (in order):
    1. Override title: an override whose canonical title equals that of
       *raw_title* wins outright, no scoring. Season markers count here, so
       "Mushoku Tensei S2" never pins plain "Mushoku Tensei".
    2. Fuzzy: every entry without an override title is scored on its best
       alternate title; the top score must reach *threshold*.

    Entries that carry an override title are only reachable through tier 1.
    Equal top scores across different entries are ambiguous and match nothing.
    """
    overrides = overrides or {}
    by_id = {e.media_id: e for e in entries}
    canonical = canonical_title(raw_title)
    if not canonical:
        log.info("empty_title", raw_title=raw_title)
        return TitleMatch(entry=None, score=0.0)

    pinned = _override_match(raw_title, canonical, by_id, overrides)
    if pinned is not None:
        return pinned

    stripped = normalize_title(raw_title)
    excluded = {o.media_id for o in overrides.values() if o.title_override}
    scored = [
        (best_score(canonical, stripped, entry), entry)
        for entry in by_id.values()
        if entry.media_id not in excluded
    ]
    if not scored:
        return TitleMatch(entry=None, score=0.0)

    top = max(score for score, _ in scored)
    leaders = tuple(entry for score, entry in scored if score == top)
    log.debug(
        "fuzzy_scores",
        raw_title=raw_title,
        canonical=canonical,
        top_score=round(top, 2),
        leaders=[e.display_title for e in leaders],
    )

    if top < threshold:
        return TitleMatch(entry=None, score=top, nearest=leaders[0])
    if len(leaders) > 1:
        return TitleMatch(entry=None, score=top, candidates=leaders)
    return TitleMatch(entry=leaders[0], score=top)
