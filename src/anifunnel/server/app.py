"""FastAPI application hosting the Plex webhook and the admin API."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI

from anifunnel.server.admin import create_admin_router
from anifunnel.server.webhook import create_webhook_router

if TYPE_CHECKING:
    from anifunnel.storage.database import Database
    from anifunnel.sync.auth import CredentialManager
    from anifunnel.sync.cache import TrackedListCache
    from anifunnel.sync.engine import UpdateEngine

log = structlog.get_logger(__name__)


class AppState:
    """Runtime components shared by the HTTP handlers."""

    def __init__(
        self,
        *,
        db: Database,
        cache: TrackedListCache,
        credentials: CredentialManager,
        engine: UpdateEngine,
    ) -> None:
        self.started_at: datetime = datetime.now(UTC)
        self.shutdown_event: asyncio.Event = asyncio.Event()
        self.db = db
        self.cache = cache
        self.credentials = credentials
        self.engine = engine

    def get_status(self) -> dict:
        """Return a snapshot of the server status."""
        uptime = (datetime.now(UTC) - self.started_at).total_seconds()
        remaining = self.credentials.remaining_validity()
        return {
            "uptime_seconds": round(uptime, 2),
            "started_at": self.started_at.isoformat(),
            "authenticated": remaining is not None,
            "token_remaining_seconds": int(remaining.total_seconds()) if remaining else None,
            "tracked_entries": len(self.cache.snapshot()),
        }

    def request_shutdown(self) -> None:
        log.info("shutdown_requested")
        self.shutdown_event.set()


def create_app(state: AppState) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(title="anifunnel", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> dict:
        return state.get_status()

    app.include_router(create_admin_router(state))
    app.include_router(create_webhook_router(state))
    return app
