"""In-process snapshot of the user's tracked AniList entries."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from enum import StrEnum
from functools import cached_property
from types import MappingProxyType
from typing import TYPE_CHECKING

import structlog

from anifunnel.sync.titles import canonical_title, normalize_title

if TYPE_CHECKING:
    from anifunnel.storage.models import Credential

log = structlog.get_logger(__name__)


class ListStatus(StrEnum):
    CURRENT = "CURRENT"
    REPEATING = "REPEATING"


TRACKED_STATUSES = frozenset(ListStatus)


@dataclass(frozen=True)
class TrackedEntry:
    """One entry of the remote "watching" list."""

    media_id: int  # AniList media ID, key for overrides and progress writes
    titles: tuple[str, ...]  # preferred title first, then alternates and synonyms
    progress: int = 0  # episodes acknowledged as watched
    list_status: ListStatus = ListStatus.CURRENT
    entry_id: int | None = None  # AniList list-entry ID, informational

    @property
    def display_title(self) -> str:
        return self.titles[0] if self.titles else f"#{self.media_id}"

    @cached_property
    def title_forms(self) -> tuple[tuple[str, str], ...]:
        """(canonical, marker-stripped) pair per distinct alternate title."""
        forms = ((canonical_title(t), normalize_title(t)) for t in self.titles)
        return tuple(dict.fromkeys(f for f in forms if f[0]))


FetchTrackedList = Callable[["Credential"], Awaitable[Iterable[TrackedEntry]]]


class TrackedListCache:
    """Shared snapshot of tracked entries with swap-on-success refreshes.

    Readers get an immutable mapping; every change (refresh or committed
    progress write) replaces the whole mapping. Progress writes go through
    :meth:`reserve` / :meth:`commit`, which serialize writers per media ID
    without holding the cache lock across the remote call.
    """

    def __init__(
        self,
        fetch: FetchTrackedList,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Mapping[int, TrackedEntry] = MappingProxyType({})
        self._loaded_at: float | None = None
        self._epoch = 0
        self._cond = asyncio.Condition()
        self._in_flight: set[int] = set()
        self._write_seq = 0
        self._written: dict[int, int] = {}
        self._refresh_task: asyncio.Task | None = None
        self._refresh_epoch = -1

    # -- reads ------------------------------------------------------------------

    @property
    def loaded(self) -> bool:
        return self._loaded_at is not None

    def is_stale(self) -> bool:
        return self._loaded_at is None or self._clock() - self._loaded_at >= self._ttl

    def snapshot(self) -> Mapping[int, TrackedEntry]:
        return self._entries

    def entries(self) -> list[TrackedEntry]:
        return list(self._entries.values())

    def get(self, media_id: int) -> TrackedEntry | None:
        return self._entries.get(media_id)

    # -- lifecycle --------------------------------------------------------------

    def invalidate(self) -> None:
        """Drop the snapshot; in-flight refreshes for the old epoch are discarded."""
        self._epoch += 1
        self._entries = MappingProxyType({})
        self._loaded_at = None
        self._written.clear()
        log.info("tracked_list_invalidated")

    async def refresh(self, credential: Credential) -> Mapping[int, TrackedEntry]:
        """Re-fetch the list and swap it in. Concurrent callers share one fetch."""
        task = self._refresh_task
        if task is None or task.done() or self._refresh_epoch != self._epoch:
            task = asyncio.create_task(self._do_refresh(credential, self._epoch))
            self._refresh_task = task
            self._refresh_epoch = self._epoch
        return await asyncio.shield(task)

    async def ensure_fresh(self, credential: Credential) -> Mapping[int, TrackedEntry]:
        """Refresh when the snapshot is older than the TTL (or missing)."""
        if self.is_stale():
            return await self.refresh(credential)
        return self._entries

    async def _do_refresh(self, credential: Credential, epoch: int) -> Mapping[int, TrackedEntry]:
        started_seq = self._write_seq
        fetched = await self._fetch(credential)

        async with self._cond:
            if epoch != self._epoch:
                log.info("tracked_list_refresh_discarded", reason="credential_changed")
                return self._entries

            current = self._entries
            merged: dict[int, TrackedEntry] = {}
            for entry in fetched:
                if entry.list_status not in TRACKED_STATUSES:
                    continue
                cached = current.get(entry.media_id)
                # A write committed while we were fetching is newer than the fetch.
                if (
                    cached is not None
                    and self._written.get(entry.media_id, -1) > started_seq
                    and cached.progress > entry.progress
                ):
                    entry = replace(entry, progress=cached.progress)
                merged[entry.media_id] = entry

            self._entries = MappingProxyType(merged)
            self._loaded_at = self._clock()
            self._written = {k: v for k, v in self._written.items() if v > started_seq}

        log.info("tracked_list_refreshed", entries=len(merged))
        return self._entries

    # -- progress writes --------------------------------------------------------

    async def reserve(self, media_id: int, target_progress: int) -> tuple[TrackedEntry | None, bool]:
        """Look up *media_id* and claim it for a write to *target_progress*.

        Waits while another write for the same media ID is in flight. The claim
        is taken only when *target_progress* is exactly one past the cached
        progress. Returns the entry as observed and whether it was claimed.
        """
        async with self._cond:
            await self._cond.wait_for(lambda: media_id not in self._in_flight)
            entry = self._entries.get(media_id)
            if entry is None or target_progress != entry.progress + 1:
                return entry, False
            self._in_flight.add(media_id)
            return entry, True

    async def commit(self, media_id: int, progress: int | None = None) -> None:
        """Release a claim, storing *progress* if the remote write succeeded."""
        async with self._cond:
            self._in_flight.discard(media_id)
            if progress is not None:
                self._write_seq += 1
                self._written[media_id] = self._write_seq
                entry = self._entries.get(media_id)
                if entry is not None and progress > entry.progress:
                    updated = dict(self._entries)
                    updated[media_id] = replace(entry, progress=progress)
                    self._entries = MappingProxyType(updated)
            self._cond.notify_all()
