"""Settings for the anifunnel server, stored as TOML under the data directory."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR_ENV = "ANIFUNNEL_DATA_DIR"

_SETTINGS_NAME = "config.toml"
_DATABASE_NAME = "anifunnel.sqlite"
_LOGS_NAME = "logs"


def get_base_dir() -> Path:
    """Directory holding settings, the database and logs.

    ``$ANIFUNNEL_DATA_DIR`` wins over ``~/.anifunnel`` so containers can
    point it at a volume.
    """
    if configured := os.environ.get(DATA_DIR_ENV):
        return Path(configured)
    return Path.home() / ".anifunnel"


class ServerConfig(BaseModel):
    """Webhook and admin HTTP listener."""

    bind_address: str = Field(default="0.0.0.0", description="Listen address")  # noqa: S104
    port: int = Field(default=8000, ge=1, le=65535, description="Listen port")
    log_level: str = Field(default="info", description="Minimum level written to the logs")


class MatchingConfig(BaseModel):
    """Title matching and event filtering."""

    threshold: float = Field(default=80.0, ge=0.0, le=100.0, description="Minimum similarity score, 0-100")
    plex_user: str = Field(default="", description="Ignore events from other Plex accounts when set")
    cache_ttl_seconds: int = Field(default=60, ge=0, description="Refetch the tracked list after this many seconds")


class AnilistConfig(BaseModel):
    api_url: str = Field(default="https://graphql.anilist.co/", description="GraphQL endpoint")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")


class AppConfig(BaseModel):
    """Everything persisted in ``config.toml``."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    anilist: AnilistConfig = Field(default_factory=AnilistConfig)

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def database_path(self) -> Path:
        return self.base_dir / _DATABASE_NAME

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOGS_NAME


class ConfigKeyError(KeyError):
    """A dotted settings key does not name a known section and field."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


def ensure_dirs() -> None:
    """Create the data and log directories (owner-only) if missing."""
    logs = get_base_dir() / _LOGS_NAME
    logs.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    logs.mkdir(mode=0o700, exist_ok=True)


def config_exists() -> bool:
    return (get_base_dir() / _SETTINGS_NAME).is_file()


def load_config() -> AppConfig:
    """Read ``config.toml``; missing sections and fields take their defaults."""
    path = get_base_dir() / _SETTINGS_NAME
    if not path.is_file():
        return AppConfig()
    return AppConfig.model_validate(tomllib.loads(path.read_text(encoding="utf-8")))


def update_setting(config: AppConfig, key: str, raw: str) -> AppConfig:
    """Return a copy of *config* with ``section.field`` set from the string *raw*.

    The string is validated in pydantic's lax mode, so ``"9000"`` becomes an
    int and ``"true"`` a bool. Raises :class:`ConfigKeyError` for unknown keys
    and :class:`pydantic.ValidationError` for values the field rejects.
    """
    section_name, _, field_name = key.partition(".")
    if section_name not in AppConfig.model_fields:
        raise ConfigKeyError(f"unknown section {section_name!r}, expected one of: {', '.join(AppConfig.model_fields)}")

    section = getattr(config, section_name)
    if field_name not in type(section).model_fields:
        raise ConfigKeyError(f"unknown field {key!r}, expected one of: {', '.join(type(section).model_fields)}")

    updated = type(section).model_validate({**section.model_dump(), field_name: raw})
    return config.model_copy(update={section_name: updated})


def _format_toml_value(value: object) -> str:
    """Render a scalar as a TOML literal."""
    match value:
        case bool():
            return str(value).lower()
        case int() | float():
            return repr(value)
        case str():
            return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    raise TypeError(f"cannot write {type(value).__name__} to config.toml")


def _dump_toml(config: AppConfig) -> str:
    # Sections only ever hold scalars, so one table per section is enough.
    chunks = []
    for section_name, fields in config.model_dump().items():
        body = "".join(f"{key} = {_format_toml_value(value)}\n" for key, value in fields.items())
        chunks.append(f"[{section_name}]\n{body}")
    return "\n".join(chunks)


def save_config(config: AppConfig) -> None:
    """Write ``config.toml``, readable by the owner only."""
    ensure_dirs()
    path = get_base_dir() / _SETTINGS_NAME
    path.write_text(_dump_toml(config), encoding="utf-8")
    path.chmod(0o600)
