"""Plex webhook endpoint: turns scrobble notifications into engine events."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, Form
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from anifunnel.sync.engine import IncomingEvent

if TYPE_CHECKING:
    from anifunnel.server.app import AppState

log = structlog.get_logger(__name__)

SCROBBLE_EVENT = "media.scrobble"
EPISODE_TYPE = "episode"

RESPONSE_OK = "OK"
RESPONSE_NO_OP = "NO OP"
RESPONSE_ERROR = "ERROR"


class EventValidationError(ValueError):
    """Raised for webhook payloads that cannot be turned into an event."""


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class PlexAccount(BaseModel):
    title: str


class PlexMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    grandparent_title: str | None = Field(default=None, alias="grandparentTitle")
    parent_index: int | None = Field(default=None, alias="parentIndex")
    index: int | None = None


class PlexWebhook(BaseModel):
    """The subset of Plex's webhook JSON that matters for scrobbling."""

    model_config = ConfigDict(populate_by_name=True)

    event: str
    account: PlexAccount | None = Field(default=None, alias="Account")
    metadata: PlexMetadata | None = Field(default=None, alias="Metadata")

    def is_actionable(self) -> bool:
        """Completed episodes of a regular season (specials are season 0)."""
        return (
            self.event == SCROBBLE_EVENT
            and self.metadata is not None
            and self.metadata.type == EPISODE_TYPE
            and (self.metadata.parent_index or 0) >= 1
        )


def parse_webhook(payload: str) -> PlexWebhook:
    try:
        return PlexWebhook.model_validate_json(payload)
    except ValidationError as exc:
        raise EventValidationError(f"Invalid webhook payload: {exc.error_count()} error(s)") from exc


def to_incoming_event(webhook: PlexWebhook) -> IncomingEvent:
    """Convert an actionable webhook into an :class:`IncomingEvent`."""
    metadata = webhook.metadata
    if metadata is None or not (metadata.grandparent_title or "").strip():
        raise EventValidationError("Episode has no series title")
    try:
        return IncomingEvent(
            raw_title=metadata.grandparent_title,
            episode_number=metadata.index,
            season_number=metadata.parent_index,
            account_identifier=webhook.account.title if webhook.account else None,
        )
    except ValidationError as exc:
        raise EventValidationError(f"Invalid episode metadata: {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def create_webhook_router(state: AppState) -> APIRouter:
    """Build the router serving ``POST /``.

    Plex retries on non-2xx answers, so every outcome is a 200 whose body
    tells what happened.
    """
    router = APIRouter()

    @router.post("/", response_class=PlainTextResponse)
    async def scrobble(payload: str | None = Form(default=None)) -> str:
        if payload is None:
            log.warning("webhook_rejected", reason="missing payload field")
            return RESPONSE_ERROR
        try:
            webhook = parse_webhook(payload)
            if not webhook.is_actionable():
                log.debug("webhook_ignored", plex_event=webhook.event)
                return RESPONSE_NO_OP
            event = to_incoming_event(webhook)
        except EventValidationError as exc:
            log.warning("webhook_rejected", reason=str(exc))
            return RESPONSE_ERROR

        result = await state.engine.handle_event(event)
        log.debug("webhook_processed", decision=str(result.decision))
        return RESPONSE_OK

    return router
