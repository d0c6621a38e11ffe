"""Shared fixtures for anifunnel tests."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from anifunnel.server.app import AppState, create_app
from anifunnel.storage import Credential, Database
from anifunnel.sync.anilist import AnilistNotFoundError, OwnerInfo
from anifunnel.sync.auth import CredentialManager
from anifunnel.sync.cache import TrackedEntry, TrackedListCache
from anifunnel.sync.engine import UpdateEngine


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all anifunnel runtime files to a temporary directory.

    Patches ``anifunnel.config.get_base_dir`` (and the re-imported reference
    in ``anifunnel.cli``) so that nothing touches the real ``~/.anifunnel/``.
    """
    fake_base = tmp_path / ".anifunnel"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("anifunnel.config.get_base_dir", lambda: fake_base)
    monkeypatch.setattr("anifunnel.cli.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    database = Database(tmp_path / "test.sqlite")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture()
def credential() -> Credential:
    now = datetime.now(UTC)
    return Credential(
        token="header.payload.signature",
        owner_id=42,
        owner_name="tester",
        issued_at=now,
        expiry=now + timedelta(days=30),
    )


class FakeRemote:
    """In-memory stand-in for the AniList client.

    ``write_gate`` (when set) blocks every progress write until released, so
    tests can interleave concurrent events deterministically.
    """

    def __init__(self, entries: list[TrackedEntry] | None = None) -> None:
        self.entries: dict[int, TrackedEntry] = {e.media_id: e for e in entries or []}
        self.owner = OwnerInfo(id=42, name="tester")
        self.fetch_calls = 0
        self.validated: list[str] = []
        self.writes: list[tuple[int, int]] = []
        self.fetch_error: Exception | None = None
        self.write_error: Exception | None = None
        self.validate_error: Exception | None = None
        self.write_gate: asyncio.Event | None = None
        self.fetch_gate: asyncio.Event | None = None

    def track(self, *entries: TrackedEntry) -> None:
        for entry in entries:
            self.entries[entry.media_id] = entry

    async def fetch_tracked_list(self, credential: Credential) -> list[TrackedEntry]:
        self.fetch_calls += 1
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.entries.values())

    async def validate(self, token) -> OwnerInfo:  # noqa: ANN001
        if self.validate_error is not None:
            raise self.validate_error
        self.validated.append(token if isinstance(token, str) else token.token.get_secret_value())
        return self.owner

    async def advance_progress(self, credential: Credential, media_id: int, new_progress: int) -> None:
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.write_error is not None:
            raise self.write_error
        if media_id not in self.entries:
            raise AnilistNotFoundError(f"No list entry saved for media {media_id}")
        self.writes.append((media_id, new_progress))
        self.entries[media_id] = replace(self.entries[media_id], progress=new_progress)


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote()


@pytest_asyncio.fixture()
async def app_state(db: Database, remote: FakeRemote) -> AppState:
    cache = TrackedListCache(remote.fetch_tracked_list)
    credentials = CredentialManager(db, remote, cache)
    engine = UpdateEngine(db, remote, cache, credentials)
    return AppState(db=db, cache=cache, credentials=credentials, engine=engine)


@pytest_asyncio.fixture()
async def authenticated(app_state: AppState) -> Credential:
    """Store a valid credential and make it active."""
    await app_state.db.set_credential(
        token="header.payload.signature",
        owner_id=42,
        owner_name="tester",
        expiry=datetime.now(UTC) + timedelta(days=30),
    )
    return await app_state.credentials.load()


@pytest_asyncio.fixture()
async def api_client(app_state: AppState):
    transport = httpx.ASGITransport(app=create_app(app_state))
    async with httpx.AsyncClient(transport=transport, base_url="http://anifunnel.test") as client:
        yield client
