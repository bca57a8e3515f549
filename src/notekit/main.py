#!/usr/bin/env python
"""Command line entry point for notekit."""
import argparse
import asyncio
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Optional

from notekit import __version__
from notekit.config import NotesConfig, config, load_config
from notekit.exceptions import (
    ConfigurationError,
    InvalidDataError,
    NoteNotFoundError,
    NotesError,
)
from notekit.models.schema import Note
from notekit.observability import configure_logging, metrics
from notekit.storage.records import FileRecordDatabase
from notekit.switchboard import RepositorySwitchboard

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog="notekit", description="Local and synced notes")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEKIT_DATABASE_PATH")
    )
    parser.add_argument(
        "--remote",
        help="Use the synced record store instead of the local database",
        action="store_true",
        default=config.use_remote_sync,
    )
    parser.add_argument(
        "--zone-name",
        help="Zone holding remote note records",
        type=str,
        default=None
    )
    parser.add_argument(
        "--network-timeout",
        help="Seconds to wait for a remote operation",
        type=float,
        default=None
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEKIT_LOG_LEVEL", "WARNING")
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", help="List notes, most recently updated first")

    add = commands.add_parser("add", help="Create a note")
    add.add_argument("title")
    add.add_argument("content", nargs="?", default="")

    edit = commands.add_parser("edit", help="Replace a note's title and content")
    edit.add_argument("id")
    edit.add_argument("title")
    edit.add_argument("content", nargs="?", default="")

    delete = commands.add_parser("delete", help="Delete a note")
    delete.add_argument("id")

    search = commands.add_parser("search", help="Search titles and content")
    search.add_argument("query")

    commands.add_parser("stats", help="Show note statistics")
    commands.add_parser("reset", help="Delete every note in the local database")
    commands.add_parser("status", help="Show which store is active")
    return parser.parse_args(argv)


def update_config(args, cfg: NotesConfig) -> NotesConfig:
    """Return `cfg` with the command line overrides applied and validated."""
    overrides = {"use_remote_sync": args.remote}
    if args.database_path:
        overrides["database_path"] = Path(args.database_path)
    if args.zone_name is not None:
        overrides["zone_name"] = args.zone_name
    if args.network_timeout is not None:
        overrides["network_timeout"] = args.network_timeout
    return load_config(cfg, **overrides)


def _parse_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise InvalidDataError("Not a valid note id", field="id", value=value) from None


def _format_note(note: Note) -> str:
    stamp = note.updated_at.strftime("%Y-%m-%d %H:%M")
    line = f"{note.id}  {stamp}  {note.title}"
    if note.content:
        preview = note.content.replace("\n", " ")
        if len(preview) > 60:
            preview = preview[:57] + "..."
        line += f"  | {preview}"
    return line


async def _require_note(switchboard: RepositorySwitchboard, value: str) -> Note:
    note_id = _parse_id(value)
    note = await switchboard.service.get_note(note_id)
    if note is None:
        raise NoteNotFoundError(note_id)
    return note


async def run_command(args, cfg: NotesConfig) -> int:
    """Execute the parsed command. Returns the process exit code."""
    switchboard = RepositorySwitchboard.from_config(cfg)
    database: Optional[FileRecordDatabase] = None
    try:
        if cfg.use_remote_sync:
            database = FileRecordDatabase(cfg.get_remote_dir())
            await switchboard.switch_to_remote(database)

        service = switchboard.service
        if args.command == "list":
            for note in await service.get_all_notes():
                print(_format_note(note))
        elif args.command == "add":
            note = await service.create_note(args.title, args.content)
            print(note.id)
        elif args.command == "edit":
            note = await _require_note(switchboard, args.id)
            updated = await service.update_note(note, args.title, args.content)
            print(_format_note(updated))
        elif args.command == "delete":
            note = await _require_note(switchboard, args.id)
            await service.delete_note(note)
            print(f"Deleted {note.id}")
        elif args.command == "search":
            for note in await service.search_notes(args.query):
                print(_format_note(note))
        elif args.command == "stats":
            if not cfg.enable_statistics:
                print("Statistics are disabled (NOTEKIT_ENABLE_STATISTICS)")
                return 0
            stats = await service.get_note_statistics()
            for key, value in stats.to_dict().items():
                if isinstance(value, float):
                    value = f"{value:.1f}"
                print(f"{key}: {value}")
        elif args.command == "reset":
            removed = await switchboard.local_store.reset()
            print(f"Removed {removed} notes from the local database")
        elif args.command == "status":
            print(f"mode: {switchboard.mode.value}")
            print(f"local database: {switchboard.local_store.engine.url}")
            print(f"local notes: {await switchboard.local_store.count()}")
            if database is not None:
                print(f"remote store: {database.root}")
                print(f"remote container: {cfg.container_identifier}")
                print(f"remote zone: {cfg.zone_name}")
                status = await switchboard.check_remote_availability(database)
                print(f"remote account: {status.value}")
        return 0
    finally:
        switchboard.close()
        switchboard.local_store.close()
        if database is not None:
            database.close()


def main(argv=None) -> int:
    """Run the notekit command line."""
    args = parse_args(argv)
    try:
        cfg = update_config(args, config)
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 1

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(log_dir=cfg.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    try:
        code = asyncio.run(run_command(args, cfg))
    except NotesError as e:
        logger.debug(f"Command {args.command} failed: {e.to_dict()}")
        print(str(e), file=sys.stderr)
        code = 1
    logger.debug(f"Operation summary: {metrics.get_summary()}")
    return code


if __name__ == "__main__":
    sys.exit(main())
