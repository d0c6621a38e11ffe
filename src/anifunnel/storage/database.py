"""Async SQLite database for overrides and the active AniList credential."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import structlog

from anifunnel.storage.models import Credential, Override

log = structlog.get_logger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS overrides (
    media_id INTEGER PRIMARY KEY,
    title_override TEXT UNIQUE,
    episode_offset INTEGER,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS authentication (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    token TEXT NOT NULL,
    owner_id INTEGER NOT NULL,
    owner_name TEXT NOT NULL,
    issued_at TEXT NOT NULL,
    expiry TEXT NOT NULL
);
"""


class StorageError(Exception):
    """Raised when local persistence is unavailable or a write is rejected."""


class OverrideConflictError(StorageError):
    """Raised when an override title is already pinned to another series."""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError as exc:
        if "title_override" in str(exc):
            raise OverrideConflictError(f"{action}: override title is already in use") from exc
        raise StorageError(f"{action}: {exc}") from exc
    except (sqlite3.Error, ValueError) as exc:
        raise StorageError(f"{action}: {exc}") from exc


class Database:
    """Async SQLite database wrapper for anifunnel."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise StorageError(msg)
        return self._conn

    async def connect(self) -> None:
        with _storage_errors("connect"):
            self._conn = await aiosqlite.connect(self.path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # -- overrides ------------------------------------------------------------

    async def get_override(self, media_id: int) -> Override | None:
        with _storage_errors("get override"):
            cur = await self.conn.execute(
                "SELECT * FROM overrides WHERE media_id = ?", (media_id,)
            )
            row = await cur.fetchone()
        return self._row_to_override(row) if row else None

    async def list_overrides(self) -> list[Override]:
        with _storage_errors("list overrides"):
            cur = await self.conn.execute("SELECT * FROM overrides ORDER BY media_id")
            rows = await cur.fetchall()
        return [self._row_to_override(r) for r in rows]

    async def upsert_override(
        self,
        media_id: int,
        *,
        title_override: str | None = None,
        episode_offset: int | None = None,
    ) -> Override | None:
        """Replace the override for *media_id*.

        Blank titles and zero offsets count as unset. When both fields end up
        unset the row is removed and ``None`` is returned.
        """
        title_override = (title_override or "").strip() or None
        episode_offset = episode_offset or None
        with _storage_errors("upsert override"):
            try:
                cur = await self.conn.execute(
                    """
                    INSERT INTO overrides (media_id, title_override, episode_offset, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (media_id) DO UPDATE SET
                        title_override = excluded.title_override,
                        episode_offset = excluded.episode_offset,
                        updated_at = excluded.updated_at
                    RETURNING *
                    """,
                    (media_id, title_override, episode_offset, _now_iso()),
                )
                row = await cur.fetchone()
                await self._delete_empty(media_id)
                await self.conn.commit()
            except BaseException:
                await self.conn.rollback()
                raise
        result = self._row_to_override(row)
        if result.is_empty():
            log.info("override_removed", media_id=media_id)
            return None
        log.info(
            "override_saved",
            media_id=media_id,
            title_override=result.title_override,
            episode_offset=result.episode_offset,
        )
        return result

    async def delete_override_if_empty(self, media_id: int) -> bool:
        """Remove the override for *media_id* if neither field is set."""
        with _storage_errors("delete empty override"):
            deleted = await self._delete_empty(media_id)
            await self.conn.commit()
        return deleted

    async def delete_override(self, media_id: int) -> bool:
        with _storage_errors("delete override"):
            cur = await self.conn.execute(
                "DELETE FROM overrides WHERE media_id = ?", (media_id,)
            )
            await self.conn.commit()
        return cur.rowcount > 0

    async def _delete_empty(self, media_id: int) -> bool:
        cur = await self.conn.execute(
            """
            DELETE FROM overrides
            WHERE media_id = ?
              AND (title_override IS NULL OR title_override = '')
              AND (episode_offset IS NULL OR episode_offset = 0)
            """,
            (media_id,),
        )
        return cur.rowcount > 0

    # -- authentication -------------------------------------------------------

    async def get_active_credential(self) -> Credential | None:
        """Return the stored credential if it has not expired yet."""
        with _storage_errors("get credential"):
            cur = await self.conn.execute("SELECT * FROM authentication WHERE id = 1")
            row = await cur.fetchone()
            if row is None:
                return None
            credential = self._row_to_credential(row)
        if credential.is_expired():
            return None
        return credential

    async def set_credential(
        self,
        *,
        token: str,
        owner_id: int,
        owner_name: str,
        expiry: datetime,
        issued_at: datetime | None = None,
    ) -> Credential:
        """Store a credential, atomically superseding any previous one."""
        with _storage_errors("set credential"):
            cur = await self.conn.execute(
                """
                INSERT OR REPLACE INTO authentication (id, token, owner_id, owner_name, issued_at, expiry)
                VALUES (1, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    token,
                    owner_id,
                    owner_name,
                    _as_utc(issued_at or datetime.now(UTC)).isoformat(),
                    _as_utc(expiry).isoformat(),
                ),
            )
            row = await cur.fetchone()
            await self.conn.commit()
            return self._row_to_credential(row)

    async def clear_credential(self) -> bool:
        with _storage_errors("clear credential"):
            cur = await self.conn.execute("DELETE FROM authentication")
            await self.conn.commit()
        return cur.rowcount > 0

    async def purge_expired_credentials(self) -> int:
        """Delete credentials whose expiry has passed. Returns rows removed."""
        with _storage_errors("purge credentials"):
            cur = await self.conn.execute("SELECT expiry FROM authentication")
            rows = await cur.fetchall()
            now = datetime.now(UTC)
            expired = [r for r in rows if _as_utc(datetime.fromisoformat(r["expiry"])) <= now]
            if not expired:
                return 0
            cur = await self.conn.execute("DELETE FROM authentication")
            await self.conn.commit()
        return cur.rowcount

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_override(row: aiosqlite.Row) -> Override:
        return Override(
            media_id=row["media_id"],
            title_override=row["title_override"],
            episode_offset=row["episode_offset"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_credential(row: aiosqlite.Row) -> Credential:
        return Credential(
            token=row["token"],
            owner_id=row["owner_id"],
            owner_name=row["owner_name"],
            issued_at=_as_utc(datetime.fromisoformat(row["issued_at"])),
            expiry=_as_utc(datetime.fromisoformat(row["expiry"])),
        )
