"""Command line entry point: run the server or a maintenance command."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from ofuton.commands import run_import, run_migrate
from ofuton.config import AppConfig, ConfigCreatedError, load_config
from ofuton.database import DatabaseError, open_database
from ofuton.files import FileStore, StorageError
from ofuton.handlers import VERSION
from ofuton.server import run_server
from ofuton.storage import Storage, initialize_bucket

log = logging.getLogger(__name__)

_OFF = logging.CRITICAL + 10
_LEVELS = {
    "off": _OFF,
    "0": _OFF,
    "": logging.ERROR,
    "error": logging.ERROR,
    "1": logging.ERROR,
    "warn": logging.WARNING,
    "2": logging.WARNING,
    "info": logging.INFO,
    "3": logging.INFO,
    "debug": logging.DEBUG,
    "4": logging.DEBUG,
    "trace": logging.DEBUG,
    "5": logging.DEBUG,
}


def build_parser() -> argparse.ArgumentParser:
    """The argument parser; without a subcommand the server is started."""
    parser = argparse.ArgumentParser(prog="ofuton", description="A small S3-compatible object server.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    commands = parser.add_subparsers(dest="command")
    migrate = commands.add_parser("migrate", help="Migrate the objects from ofuton v1")
    migrate.add_argument(
        "old_dir", metavar="OLD_DIR_PATH", help="Path to the old ofuton v1 objects root directory"
    )
    importer = commands.add_parser("import", help="Import object metadata from a TSV file")
    importer.add_argument(
        "metadata_path", metavar="METADATA_TSV_PATH", help="Path to the metadata TSV file"
    )
    return parser


def resolve_log_level(config: AppConfig) -> int:
    """The logging level named in the configuration, or INFO."""
    name = config.debug.log_level if config.debug is not None else None
    if name is None:
        return logging.INFO
    return _LEVELS.get(name.strip().lower() if name.strip() else "", logging.INFO)


async def run(config: AppConfig, command: argparse.Namespace | None = None) -> None:
    """Open the database and bucket, then run the command or serve."""
    database = open_database(config)
    try:
        initialize_bucket(config.bucket.path)
        name = getattr(command, "command", None)
        if name == "migrate":
            run_migrate(command.old_dir, config.bucket.path, database)
        elif name == "import":
            run_import(command.metadata_path, database)
        else:
            storage = Storage(
                database, FileStore(config.bucket.path), config.bucket.request_expiration_seconds
            )
            await run_server(config, storage)
    finally:
        database.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, load configuration and run; return the exit status."""
    args = build_parser().parse_args(argv)
    try:
        config = load_config()
    except ConfigCreatedError as exc:
        print(exc)
        return 0
    except (OSError, ValueError) as exc:
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=resolve_log_level(config),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run(config, args))
    except (DatabaseError, StorageError, ValueError) as exc:
        log.error("Failed to start: %s", exc)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0