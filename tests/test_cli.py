"""Tests for anifunnel.cli module."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from typer.testing import CliRunner

from anifunnel.cli import app
from anifunnel.config import load_config
from anifunnel.storage import StorageError
from anifunnel.sync.anilist import OwnerInfo

runner = CliRunner()


def _valid_token(days: int = 30) -> str:
    exp = int((datetime.now(UTC) + timedelta(days=days)).timestamp())
    payload = base64.urlsafe_b64encode(json.dumps({"exp": exp}).encode()).decode().rstrip("=")
    return f"header.{payload}.signature"


class _FakeAnilistClient:
    def __init__(self, config) -> None:  # noqa: ANN001
        self.config = config

    async def __aenter__(self) -> _FakeAnilistClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def validate(self, token) -> OwnerInfo:  # noqa: ANN001
        return OwnerInfo(id=42, name="tester")


@pytest.fixture()
def offline(monkeypatch: pytest.MonkeyPatch) -> None:
    """No server is listening."""

    def _refuse(url: str, **kwargs: object) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx, "get", _refuse)


# ---------------------------------------------------------------------------
# --help
# ---------------------------------------------------------------------------


def test_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "anilist" in result.output.lower()


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


def test_serve_applies_flags_and_env(base_dir: Path, monkeypatch: pytest.MonkeyPatch):
    captured: dict = {}

    class _FakeServer:
        def __init__(self, config) -> None:  # noqa: ANN001
            captured["config"] = config

        def run(self) -> None:
            captured["ran"] = True

    monkeypatch.setattr("anifunnel.daemon.Server", _FakeServer)
    monkeypatch.setattr("anifunnel.logging.setup_logging", lambda *a, **kw: None)

    result = runner.invoke(
        app,
        ["serve", "--address", "127.0.0.1"],
        env={"ANIFUNNEL_PORT": "9123", "ANILIST_PLEX_USER": "alice"},
    )

    assert result.exit_code == 0, result.output
    assert captured["ran"]
    cfg = captured["config"]
    assert cfg.server.bind_address == "127.0.0.1"
    assert cfg.server.port == 9123
    assert cfg.matching.plex_user == "alice"


def test_serve_exits_when_storage_unavailable(base_dir: Path, monkeypatch: pytest.MonkeyPatch):
    def _fail(self) -> None:  # noqa: ANN001
        raise StorageError("connect: unable to open database file")

    monkeypatch.setattr("anifunnel.daemon.Server.run", _fail)
    monkeypatch.setattr("anifunnel.logging.setup_logging", lambda *a, **kw: None)

    result = runner.invoke(app, ["serve"])

    assert result.exit_code == 1
    assert "database" in result.output.lower()


# ---------------------------------------------------------------------------
# status / login / logout
# ---------------------------------------------------------------------------


def test_status_without_server_or_credential(base_dir: Path, offline: None):
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "not reachable" in result.output
    assert "not authenticated" in result.output
    assert "0 stored" in result.output


def test_login_then_status(base_dir: Path, offline: None, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("anifunnel.sync.anilist.AnilistClient", _FakeAnilistClient)

    result = runner.invoke(app, ["login", _valid_token()])
    assert result.exit_code == 0, result.output
    assert "tester" in result.output

    result = runner.invoke(app, ["status"])
    assert "tester (#42)" in result.output


def test_login_rejects_malformed_token(base_dir: Path):
    result = runner.invoke(app, ["login", "thisis.notjwt"])
    assert result.exit_code == 1
    assert "rejected" in result.output.lower()


def test_logout(base_dir: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("anifunnel.sync.anilist.AnilistClient", _FakeAnilistClient)

    result = runner.invoke(app, ["logout"])
    assert "No credential stored" in result.output

    runner.invoke(app, ["login", _valid_token()])
    result = runner.invoke(app, ["logout"])
    assert result.exit_code == 0
    assert "Credential removed" in result.output


# ---------------------------------------------------------------------------
# overrides
# ---------------------------------------------------------------------------


def test_overrides_set_list_clear(base_dir: Path):
    result = runner.invoke(app, ["overrides", "set", "154587", "--title", "Frieren", "--offset", "-28"])
    assert result.exit_code == 0, result.output
    assert "Saved" in result.output

    result = runner.invoke(app, ["overrides", "list"])
    assert "154587" in result.output
    assert "Frieren" in result.output
    assert "-28" in result.output

    result = runner.invoke(app, ["overrides", "clear", "154587"])
    assert "removed" in result.output

    result = runner.invoke(app, ["overrides", "list"])
    assert "No overrides" in result.output


def test_overrides_set_keeps_unspecified_fields(base_dir: Path):
    runner.invoke(app, ["overrides", "set", "1", "--title", "Frieren"])
    runner.invoke(app, ["overrides", "set", "1", "--offset", "-12"])

    result = runner.invoke(app, ["overrides", "list"])
    assert "Frieren" in result.output
    assert "-12" in result.output


def test_overrides_set_requires_a_field(base_dir: Path):
    result = runner.invoke(app, ["overrides", "set", "1"])
    assert result.exit_code == 1


def test_overrides_set_conflicting_title(base_dir: Path):
    runner.invoke(app, ["overrides", "set", "1", "--title", "Frieren"])
    result = runner.invoke(app, ["overrides", "set", "2", "--title", "Frieren"])
    assert result.exit_code == 1
    assert "Conflict" in result.output


def test_overrides_clear_missing(base_dir: Path):
    result = runner.invoke(app, ["overrides", "clear", "99"])
    assert result.exit_code == 0
    assert "No override stored" in result.output


# ---------------------------------------------------------------------------
# logs
# ---------------------------------------------------------------------------


def test_logs_no_log_file(base_dir: Path):
    result = runner.invoke(app, ["logs"])
    assert result.exit_code == 1
    assert "not found" in result.output.lower()


def test_logs_tail(base_dir: Path):
    lines = [f"2026-01-01 [info     ] line_{i}" for i in range(10)]
    (base_dir / "logs" / "anifunnel.log").write_text("\n".join(lines) + "\n")

    result = runner.invoke(app, ["logs", "-n", "3"])

    assert result.exit_code == 0
    assert "line_9" in result.output
    assert "line_7" in result.output
    assert "line_6" not in result.output


def test_logs_scrobble(base_dir: Path):
    (base_dir / "logs" / "scrobble.log").write_text('{"event": "progress_advanced", "level": "info"}\n')
    result = runner.invoke(app, ["logs", "--scrobble"])
    assert result.exit_code == 0
    assert "progress_advanced" in result.output


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


def test_config_show(base_dir: Path):
    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0
    assert "[server]" in result.output
    assert "threshold = 80.0" in result.output


def test_config_show_notes_missing_file(base_dir: Path):
    assert "showing defaults" in runner.invoke(app, ["config", "show"]).output

    runner.invoke(app, ["config", "set", "server.port", "9000"])
    result = runner.invoke(app, ["config", "show"])
    assert "showing defaults" not in result.output
    assert "port = 9000" in result.output


def test_config_set_float(base_dir: Path):
    result = runner.invoke(app, ["config", "set", "matching.threshold", "85.5"])
    assert result.exit_code == 0, result.output
    assert load_config().matching.threshold == 85.5


def test_config_set_int(base_dir: Path):
    result = runner.invoke(app, ["config", "set", "server.port", "9000"])
    assert result.exit_code == 0
    assert load_config().server.port == 9000


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("threshold", "85"),
        ("nosuch.field", "1"),
        ("matching.nosuch", "1"),
        ("server.port", "not-a-number"),
        ("server.port", "70000"),
    ],
)
def test_config_set_rejects_bad_input(base_dir: Path, key: str, value: str):
    result = runner.invoke(app, ["config", "set", key, value])
    assert result.exit_code == 1
