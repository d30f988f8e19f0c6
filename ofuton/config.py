"""Application configuration loaded from a TOML file layered over built-in defaults."""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = "./config.toml"

DEFAULT_CONFIG_TOML = """\
[server]
host = "127.0.0.1"
port = 3000

[database]
# One of: "sqlite", "sqlite_memory", "postgres"
provider = "sqlite"

[database.sqlite]
path = "./ofuton.sqlite"

[database.postgres]
user = "ofuton"
password = ""
host = "localhost"
port = 5432
database = "ofuton"

[bucket]
path = "./bucket"
max_upload_size_mb = 100
request_expiration_seconds = 3600

[account]
access_key = ""
secret_key = ""

[sentry]
dsn = ""

[debug]
# log_level = "debug"
"""


class ConfigCreatedError(Exception):
    """Raised when no configuration file existed and a default one was written."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(
            f"Created configuration file at {path}. "
            "Please check it before running the application."
        )


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if not isinstance(value, Mapping):
        raise ValueError(f"missing configuration section: {key}")
    return value


def _str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"configuration field {key!r} must be a string")
    return value


def _int(data: Mapping[str, Any], key: str, low: int | None = None, high: int | None = None) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"configuration field {key!r} must be an integer")
    if (low is not None and value < low) or (high is not None and value > high):
        raise ValueError(f"configuration field {key!r} is out of range: {value}")
    return value


def _port(data: Mapping[str, Any], key: str = "port") -> int:
    return _int(data, key, 0, 65535)


@dataclass(frozen=True)
class ServerConfig:
    host: str
    port: int


@dataclass(frozen=True)
class SQLiteConfig:
    path: str


@dataclass(frozen=True)
class PostgresConfig:
    user: str
    password: str
    host: str
    port: int
    database: str


@dataclass(frozen=True)
class DatabaseConfig:
    provider: str
    sqlite: SQLiteConfig
    postgres: PostgresConfig


@dataclass(frozen=True)
class BucketConfig:
    path: str
    max_upload_size_mb: int
    request_expiration_seconds: int


@dataclass(frozen=True)
class AccountConfig:
    access_key: str
    secret_key: str


@dataclass(frozen=True)
class SentryConfig:
    dsn: str


@dataclass(frozen=True)
class DebugConfig:
    log_level: str | None = None


def _postgres(section: Mapping[str, Any]) -> PostgresConfig:
    values = {
        field.name: _port(section, field.name) if field.name == "port" else _str(section, field.name)
        for field in fields(PostgresConfig)
    }
    return PostgresConfig(**values)


def _account(section: Mapping[str, Any]) -> AccountConfig:
    return AccountConfig(**{field.name: _str(section, field.name) for field in fields(AccountConfig)})


@dataclass(frozen=True)
class AppConfig:
    server: ServerConfig
    database: DatabaseConfig
    bucket: BucketConfig
    account: AccountConfig
    sentry: SentryConfig
    debug: DebugConfig | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AppConfig:
        """Build a configuration from parsed TOML data, validating every field."""
        server = _section(data, "server")
        database = _section(data, "database")
        sqlite = _section(database, "sqlite")
        postgres = _section(database, "postgres")
        bucket = _section(data, "bucket")
        account = _section(data, "account")
        sentry = _section(data, "sentry")

        debug: DebugConfig | None = None
        raw_debug = data.get("debug")
        if raw_debug is not None:
            if not isinstance(raw_debug, Mapping):
                raise ValueError("configuration section 'debug' must be a table")
            level = raw_debug.get("log_level")
            if level is not None and not isinstance(level, str):
                raise ValueError("configuration field 'log_level' must be a string")
            debug = DebugConfig(log_level=level)

        return cls(
            server=ServerConfig(host=_str(server, "host"), port=_port(server)),
            database=DatabaseConfig(
                provider=_str(database, "provider"),
                sqlite=SQLiteConfig(path=_str(sqlite, "path")),
                postgres=_postgres(postgres),
            ),
            bucket=BucketConfig(
                path=_str(bucket, "path"),
                max_upload_size_mb=_int(bucket, "max_upload_size_mb", 0),
                request_expiration_seconds=_int(bucket, "request_expiration_seconds"),
            ),
            account=_account(account),
            sentry=SentryConfig(dsn=_str(sentry, "dsn")),
            debug=debug,
        )


def merge_settings(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new mapping with ``override`` merged recursively over ``base``."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_settings(current, value)
        else:
            merged[key] = value
    return merged


def load_config(path: str | Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    """Load the configuration file, writing a default one first if it is missing.

    Raises ConfigCreatedError after writing a new default file.
    """
    config_path = Path(path)
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TOML, encoding="utf-8")
        raise ConfigCreatedError(config_path)

    defaults = tomllib.loads(DEFAULT_CONFIG_TOML)
    with config_path.open("rb") as handle:
        user = tomllib.load(handle)
    return AppConfig.from_mapping(merge_settings(defaults, user))