"""Object metadata storage in SQLite, with the schema migrations it needs."""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from ofuton.config import AppConfig

log = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails."""


@dataclass
class ObjectRecord:
    """Metadata of one stored object."""

    path: str
    content_size: int
    mime_type: str
    internal_filename: str
    encoded_filename: str | None = None
    filename: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class _Migration:
    name: str
    statements: tuple[str, ...]


_MIGRATIONS: tuple[_Migration, ...] = (
    _Migration(
        "m20250702_134901_create_objects_table",
        (
            "CREATE TABLE IF NOT EXISTS object ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "path TEXT NOT NULL UNIQUE, "
            "filename TEXT NOT NULL, "
            "content_size BIGINT NOT NULL, "
            "mime_type TEXT NOT NULL)",
            "CREATE UNIQUE INDEX idx_object_path ON object (path)",
            "CREATE INDEX idx_object_id ON object (id)",
        ),
    ),
    _Migration(
        "m20250705_083629_add_internal_filename_column_to_object_table",
        ("ALTER TABLE object ADD COLUMN internal_filename TEXT NOT NULL DEFAULT ''",),
    ),
    _Migration(
        "m20250712_185118_add_encoded_filename_column_to_object_table",
        ("ALTER TABLE object ADD COLUMN encoded_filename TEXT NULL",),
    ),
    _Migration(
        "m20250811_061518_drop_filename_column",
        ("ALTER TABLE object DROP COLUMN filename",),
    ),
    _Migration(
        "m20250811_064437_add_nullable_filename_column",
        ("ALTER TABLE object ADD COLUMN filename TEXT NULL",),
    ),
)

_COLUMNS = "id, path, content_size, mime_type, internal_filename, encoded_filename, filename"


def _row_to_record(row: tuple) -> ObjectRecord:
    id_, path, size, mime, internal, encoded, filename = row
    return ObjectRecord(
        id=id_,
        path=path,
        content_size=size,
        mime_type=mime,
        internal_filename=internal,
        encoded_filename=encoded,
        filename=filename,
    )


def database_location(config: AppConfig) -> str:
    """Return the SQLite location for the configured database provider."""
    provider = config.database.provider
    if provider == "sqlite":
        return config.database.sqlite.path
    if provider == "sqlite_memory":
        return ":memory:"
    if provider == "postgres":
        raise DatabaseError("the postgres provider is not available in this build")
    raise ValueError(f"Unsupported database provider: {provider}")


def open_database(config: AppConfig) -> Database:
    """Connect to the configured database and apply pending migrations."""
    database = Database(database_location(config))
    try:
        database.migrate()
    except DatabaseError:
        database.close()
        raise
    return database


class Database:
    """A connection to the object metadata database."""

    def __init__(self, location: str | Path) -> None:
        try:
            self._conn = sqlite3.connect(
                str(location), isolation_level=None, check_same_thread=False
            )
        except sqlite3.Error as exc:
            log.error("Failed to connect to the database: %s", exc)
            raise DatabaseError(f"failed to connect to the database: {exc}") from exc
        self._in_transaction = False

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            log.error("Failed to %s: %s", action, exc)
            raise DatabaseError(f"failed to {action}: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """Run the enclosed operations atomically; nested use joins the outer one."""
        if self._in_transaction:
            yield self
            return
        with self._errors("begin transaction"):
            self._conn.execute("BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                log.error("Failed to rollback transaction: %s", exc)
            raise
        self._in_transaction = False
        with self._errors("commit transaction"):
            self._conn.execute("COMMIT")

    def migrate(self) -> list[str]:
        """Apply pending migrations in order and return the names applied."""
        with self._errors("apply migrations"):
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS seaql_migrations ("
                "version TEXT PRIMARY KEY, applied_at INTEGER NOT NULL)"
            )
        done = set(self.applied_migrations())
        applied: list[str] = []
        for migration in _MIGRATIONS:
            if migration.name in done:
                continue
            with self.transaction(), self._errors("apply migrations"):
                for statement in migration.statements:
                    self._conn.execute(statement)
                self._conn.execute(
                    "INSERT INTO seaql_migrations (version, applied_at) VALUES (?, ?)",
                    (migration.name, int(time.time())),
                )
            applied.append(migration.name)
        return applied

    def applied_migrations(self) -> list[str]:
        """Names of the migrations already applied, in order."""
        with self._errors("read migrations"):
            exists = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'seaql_migrations'"
            ).fetchone()
            if not exists:
                return []
            rows = self._conn.execute("SELECT version FROM seaql_migrations").fetchall()
        names = {name for (name,) in rows}
        return [m.name for m in _MIGRATIONS if m.name in names]

    def close(self) -> None:
        self._conn.close()

    def get_by_path(self, path: str) -> ObjectRecord | None:
        """Look up an object by its path; failures are logged and give None."""
        try:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM object WHERE path = ?", (path,)
            ).fetchone()
        except sqlite3.Error as exc:
            log.error("Failed to fetch object metadata for path '%s': %s", path, exc)
            return None
        return _row_to_record(row) if row else None

    def _insert(self, record: ObjectRecord) -> ObjectRecord:
        cursor = self._conn.execute(
            "INSERT INTO object (path, content_size, mime_type, internal_filename, "
            "encoded_filename, filename) VALUES (?, ?, ?, ?, ?, ?)",
            (
                record.path,
                record.content_size,
                record.mime_type,
                record.internal_filename,
                record.encoded_filename,
                record.filename,
            ),
        )
        return replace(record, id=cursor.lastrowid)

    def create(self, record: ObjectRecord) -> ObjectRecord:
        """Insert a record and return it with its assigned id."""
        with self._errors("create object metadata"):
            return self._insert(record)

    def create_many(self, records: Iterable[ObjectRecord]) -> list[ObjectRecord]:
        """Insert several records atomically; an empty input does nothing."""
        pending = list(records)
        if not pending:
            return []
        with self.transaction(), self._errors("create multiple object metadata"):
            return [self._insert(record) for record in pending]

    def delete(self, record: ObjectRecord) -> None:
        """Delete the given record."""
        with self._errors("delete object metadata"):
            cursor = self._conn.execute(
                "DELETE FROM object WHERE id = ?", (record.id,)
            )
        if cursor.rowcount == 0:
            raise DatabaseError(f"object metadata not found: {record.path}")

    def update_filename_if_unset(
        self,
        path: str,
        filename: str,
        encoded_filename: str | None,
        mime_type: str,
    ) -> int:
        """Set filename details for an object whose filename is still unset.

        Returns the number of rows changed.
        """
        with self._errors("update object metadata"):
            cursor = self._conn.execute(
                "UPDATE object SET filename = ?, encoded_filename = ?, mime_type = ? "
                "WHERE filename IS NULL AND path = ?",
                (filename, encoded_filename, mime_type, path),
            )
        return cursor.rowcount