"""Foreground server process.

Wires storage, the AniList client, the tracked-list cache and the update
engine together and serves the FastAPI app with uvicorn until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import signal

import structlog
import uvicorn

from anifunnel.config import AppConfig

log = structlog.get_logger(__name__)


class Server:
    """Manages the lifecycle of the anifunnel server."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config

    def run(self) -> None:
        """Block until the server shuts down.

        Raises :class:`~anifunnel.storage.StorageError` if the database cannot
        be opened.
        """
        asyncio.run(self._async_main())

    async def _async_main(self) -> None:
        from anifunnel.server.app import AppState, create_app
        from anifunnel.storage import Database
        from anifunnel.sync.anilist import AnilistClient
        from anifunnel.sync.auth import CredentialManager
        from anifunnel.sync.cache import TrackedListCache
        from anifunnel.sync.engine import UpdateEngine

        cfg = self.config

        db = Database(cfg.database_path)
        await db.connect()
        log.info("database_ready", path=str(cfg.database_path))

        try:
            async with AnilistClient(cfg.anilist) as client:
                cache = TrackedListCache(
                    client.fetch_tracked_list,
                    ttl_seconds=cfg.matching.cache_ttl_seconds,
                )
                credentials = CredentialManager(db, client, cache)
                await credentials.load()

                engine = UpdateEngine(
                    db,
                    client,
                    cache,
                    credentials,
                    threshold=cfg.matching.threshold,
                    plex_user=cfg.matching.plex_user,
                )
                state = AppState(db=db, cache=cache, credentials=credentials, engine=engine)

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(sig, state.request_shutdown)

                server = uvicorn.Server(
                    uvicorn.Config(
                        create_app(state),
                        host=cfg.server.bind_address,
                        port=cfg.server.port,
                        log_level=cfg.server.log_level,
                        log_config=None,  # keep the structlog handlers from setup_logging
                        loop="asyncio",
                    )
                )
                log.info(
                    "server_starting",
                    address=cfg.server.bind_address,
                    port=cfg.server.port,
                    plex_user=cfg.matching.plex_user or None,
                )

                serve_task = asyncio.create_task(server.serve())
                shutdown_task = asyncio.create_task(state.shutdown_event.wait())

                # uvicorn may exit on its own (bind failure, its own signal handling).
                await asyncio.wait({serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

                log.info("initiating graceful shutdown")
                server.should_exit = True
                shutdown_task.cancel()
                await serve_task
        finally:
            await db.close()

        log.info("server shut down cleanly")
