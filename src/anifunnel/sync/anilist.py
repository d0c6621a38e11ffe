"""Async AniList GraphQL client using httpx.

Operations:
- Viewer (validate a token, resolve the owner)
- MediaListCollection (CURRENT + REPEATING anime of the owner)
- SaveMediaListEntry (set progress for one media)

No call is retried; a failure surfaces to the caller as an ``AnilistError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog

from anifunnel.sync.cache import TRACKED_STATUSES, ListStatus, TrackedEntry

if TYPE_CHECKING:
    from anifunnel.config import AnilistConfig
    from anifunnel.storage.models import Credential

log = structlog.get_logger(__name__)

VIEWER_QUERY = """
query {
    Viewer {
        id
        name
    }
}
"""

MEDIALIST_QUERY = """
query MediaListCollection($user_id: Int) {
    MediaListCollection(userId: $user_id, status_in: [CURRENT, REPEATING], type: ANIME) {
        lists {
            entries {
                id
                progress
                status
                media {
                    id
                    title {
                        romaji
                        english
                        native
                        userPreferred
                    }
                    synonyms
                }
            }
        }
    }
}
"""

PROGRESS_MUTATION = """
mutation ($media_id: Int, $progress: Int) {
    SaveMediaListEntry(mediaId: $media_id, progress: $progress) {
        progress
    }
}
"""


class AnilistError(Exception):
    """Base class for failures talking to AniList."""


class AnilistAuthError(AnilistError):
    """Raised when the token is missing, expired or rejected."""


class AnilistNetworkError(AnilistError):
    """Raised when AniList could not be reached."""


class AnilistNotFoundError(AnilistError):
    """Raised when the requested media or list entry does not exist."""


class AnilistAPIError(AnilistError):
    """Raised for any other unusable AniList response."""


@dataclass(frozen=True)
class OwnerInfo:
    id: int
    name: str


class RemoteService(Protocol):
    """What the matching engine needs from the list-tracking service."""

    async def fetch_tracked_list(self, credential: Credential) -> list[TrackedEntry]: ...

    async def validate(self, token: str | Credential) -> OwnerInfo: ...

    async def advance_progress(self, credential: Credential, media_id: int, new_progress: int) -> None: ...


def _token_value(token: str | Credential) -> str:
    if isinstance(token, str):
        return token
    return token.token.get_secret_value()


def _entry_titles(media: dict[str, Any]) -> tuple[str, ...]:
    title = media.get("title") or {}
    candidates = [
        title.get("userPreferred"),
        title.get("romaji"),
        title.get("english"),
        title.get("native"),
        *(media.get("synonyms") or []),
    ]
    return tuple(dict.fromkeys(t for t in candidates if isinstance(t, str) and t.strip()))


def parse_tracked_list(data: dict[str, Any]) -> list[TrackedEntry]:
    """Flatten a ``MediaListCollection`` response into tracked entries."""
    try:
        lists = data["MediaListCollection"]["lists"] or []
        entries: dict[int, TrackedEntry] = {}
        for group in lists:
            for raw in group.get("entries") or []:
                status = raw.get("status") or ListStatus.CURRENT
                if status not in TRACKED_STATUSES:
                    continue
                media = raw["media"]
                entry = TrackedEntry(
                    media_id=int(media["id"]),
                    titles=_entry_titles(media),
                    progress=int(raw.get("progress") or 0),
                    list_status=ListStatus(status),
                    entry_id=raw.get("id"),
                )
                entries[entry.media_id] = entry
    except (KeyError, TypeError, ValueError) as exc:
        raise AnilistAPIError(f"Unexpected MediaListCollection payload: {exc}") from exc
    return list(entries.values())


class AnilistClient:
    """Async AniList GraphQL client."""

    def __init__(
        self,
        config: AnilistConfig,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> AnilistClient:
        kw: dict = {"timeout": self._config.timeout_seconds}
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -- request helper --

    async def _query(self, token: str, query: str, variables: dict | None = None) -> dict[str, Any]:
        assert self._client is not None  # noqa: S101

        try:
            resp = await self._client.post(
                self._config.api_url,
                json={"query": query, "variables": variables},
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            log.warning("anilist_network_error", error=str(exc))
            raise AnilistNetworkError(f"AniList request failed: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        errors = [e for e in body.get("errors") or [] if isinstance(e, dict)]
        messages = [str(e.get("message", "")) for e in errors]
        statuses = {e.get("status") for e in errors}

        if resp.status_code == 401 or 401 in statuses or "Invalid token" in messages:
            raise AnilistAuthError("AniList rejected the token")
        if resp.status_code == 404 or 404 in statuses:
            raise AnilistNotFoundError("; ".join(messages) or "Not found")
        if resp.status_code >= 400 or errors:
            detail = "; ".join(messages) or resp.text
            raise AnilistAPIError(f"AniList API error: {resp.status_code} {detail}")

        data = body.get("data")
        if not isinstance(data, dict):
            log.debug("anilist_unparsable_response", body=resp.text)
            raise AnilistAPIError("AniList response did not contain data")
        return data

    # -- public API --

    async def validate(self, token: str | Credential) -> OwnerInfo:
        """Resolve the owner of *token*; raises ``AnilistAuthError`` if rejected."""
        data = await self._query(_token_value(token), VIEWER_QUERY)
        try:
            viewer = data["Viewer"]
            owner = OwnerInfo(id=int(viewer["id"]), name=str(viewer["name"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise AnilistAPIError(f"Unexpected Viewer payload: {exc}") from exc
        log.debug("anilist_viewer", owner_id=owner.id, owner_name=owner.name)
        return owner

    async def fetch_tracked_list(self, credential: Credential) -> list[TrackedEntry]:
        """Fetch the owner's CURRENT and REPEATING anime."""
        data = await self._query(
            _token_value(credential),
            MEDIALIST_QUERY,
            {"user_id": credential.owner_id},
        )
        entries = parse_tracked_list(data)
        log.debug("anilist_tracked_list", owner_id=credential.owner_id, entries=len(entries))
        return entries

    async def advance_progress(self, credential: Credential, media_id: int, new_progress: int) -> None:
        """Set progress for *media_id*; raises unless AniList confirms the value."""
        data = await self._query(
            _token_value(credential),
            PROGRESS_MUTATION,
            {"media_id": media_id, "progress": new_progress},
        )
        saved = (data.get("SaveMediaListEntry") or {}).get("progress")
        if saved is None:
            raise AnilistNotFoundError(f"No list entry saved for media {media_id}")
        if saved != new_progress:
            raise AnilistAPIError(
                f"AniList stored progress {saved} for media {media_id}, expected {new_progress}"
            )
