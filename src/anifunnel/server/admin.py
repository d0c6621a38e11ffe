"""Admin JSON API: tracked list with overrides, override edits, authentication."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from anifunnel.storage.database import OverrideConflictError, StorageError
from anifunnel.sync.anilist import AnilistAuthError, AnilistError

if TYPE_CHECKING:
    from anifunnel.server.app import AppState
    from anifunnel.storage.models import Credential

log = structlog.get_logger(__name__)


class OverrideEdit(BaseModel):
    """Body of ``POST /api/anime/{media_id}/edit``; empty title or 0 offset unset a field."""

    title: str | None = None
    episode_offset: int | None = None


class LoginRequest(BaseModel):
    token: str


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _user_payload(credential: Credential | None) -> dict | None:
    if credential is None:
        return None
    return {
        "id": credential.owner_id,
        "name": credential.owner_name,
        "expiry": credential.expiry.isoformat(),
        "remaining_seconds": int(credential.remaining().total_seconds()),
    }


def create_admin_router(state: AppState) -> APIRouter:
    """Build the ``/api`` router."""
    router = APIRouter(prefix="/api")

    # -- anime ------------------------------------------------------------------

    @router.get("/anime")
    async def list_anime():  # noqa: ANN202
        credential = state.credentials.active()
        if credential is None:
            return _error("Not authenticated with AniList")
        try:
            entries = await state.cache.ensure_fresh(credential)
        except AnilistError as exc:
            if not state.cache.loaded:
                log.warning("admin_list_failed", error=str(exc))
                return _error(f"Could not fetch the AniList list: {exc}")
            log.warning("admin_list_refresh_failed", error=str(exc), using="stale snapshot")
            entries = state.cache.snapshot()
        try:
            overrides = {o.media_id: o for o in await state.db.list_overrides()}
        except StorageError as exc:
            return _error(str(exc), status_code=500)

        items = []
        for entry in sorted(entries.values(), key=lambda e: e.display_title.casefold()):
            override = overrides.get(entry.media_id)
            items.append(
                {
                    "id": entry.entry_id,
                    "media_id": entry.media_id,
                    "title": entry.display_title,
                    "progress": entry.progress,
                    "status": str(entry.list_status),
                    "title_override": override.title_override if override else None,
                    "episode_offset": override.episode_offset if override else None,
                }
            )
        return items

    @router.post("/anime/{media_id}/edit")
    async def edit_anime(media_id: int, body: OverrideEdit):  # noqa: ANN202
        try:
            override = await state.db.upsert_override(
                media_id,
                title_override=body.title,
                episode_offset=body.episode_offset,
            )
        except OverrideConflictError:
            return _error(f"Title {body.title!r} is already overridden for another series")
        except StorageError as exc:
            return _error(str(exc), status_code=500)
        return {
            "media_id": media_id,
            "title_override": override.title_override if override else None,
            "episode_offset": override.episode_offset if override else None,
        }

    # -- user -------------------------------------------------------------------

    @router.get("/user")
    async def get_user() -> dict | None:
        return _user_payload(state.credentials.active())

    @router.post("/user")
    async def login(body: LoginRequest):  # noqa: ANN202
        try:
            credential = await state.credentials.login(body.token)
        except AnilistAuthError as exc:
            log.warning("admin_login_rejected", error=str(exc))
            return _error(str(exc))
        except AnilistError as exc:
            log.warning("admin_login_failed", error=str(exc))
            return _error(str(exc), status_code=502)
        except StorageError as exc:
            return _error(str(exc), status_code=500)
        return _user_payload(credential)

    @router.delete("/user")
    async def logout():  # noqa: ANN202
        try:
            removed = await state.credentials.logout()
        except StorageError as exc:
            return _error(str(exc), status_code=500)
        return {"removed": removed}

    return router
