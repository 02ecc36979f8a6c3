#!/usr/bin/env python
"""Command-line entry point for NoteVault."""
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from notevault import __version__
from notevault.config import config
from notevault.exceptions import NoteVaultError
from notevault.observability import configure_logging
from notevault.services.vault_service import VaultService


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="notevault", description="Inspect a NoteVault repository"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--root",
        help="Repository root directory",
        type=str,
        default=os.environ.get("NOTEVAULT_ROOT_DIR"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEVAULT_LOG_LEVEL", "WARNING"),
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("folders", help="List folders")

    notes = commands.add_parser("notes", help="List the notes of a folder")
    notes.add_argument("folder")

    search = commands.add_parser("search", help="Fuzzy search titles and bodies")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=20)

    backlinks = commands.add_parser("backlinks", help="Show links to and from a note")
    backlinks.add_argument("folder")
    backlinks.add_argument("title")

    versions = commands.add_parser("versions", help="List the versions of a note")
    versions.add_argument("folder")
    versions.add_argument("title")

    commands.add_parser("stats", help="Print repository statistics as JSON")

    export = commands.add_parser("export", help="Copy the repository to a snapshot")
    export.add_argument("destination", nargs="?")

    return parser.parse_args(argv)


def update_config(args: argparse.Namespace) -> None:
    """Update the global config with command line arguments."""
    if args.root:
        config.root_dir = Path(args.root)
    config.log_level = args.log_level


def _flags(note) -> str:
    flags = []
    if note.favorite:
        flags.append("favorite")
    if note.encrypted:
        flags.append("encrypted")
    if note.damaged:
        flags.append("damaged")
    return f" [{', '.join(flags)}]" if flags else ""


def run_command(service: VaultService, args: argparse.Namespace) -> int:
    """Execute one subcommand against an open service."""
    if args.command == "folders":
        for folder in service.list_folders():
            print(f"{folder.id}\t{folder.name}\t{len(folder.notes)} notes")

    elif args.command == "notes":
        folder = service.get_folder_by_name(args.folder)
        for note in folder.notes.values():
            print(f"{note.id}\t{note.title}{_flags(note)}")

    elif args.command == "search":
        for hit in service.search(args.query, limit=args.limit):
            folder = service.index.get_folder(hit.note_id.folder)
            print(f"{hit.score}\t{folder.name}/{hit.title}")

    elif args.command == "backlinks":
        folder = service.get_folder_by_name(args.folder)
        note = service.get_note_by_title(folder.id, args.title)
        for source_id in service.backlinks(note.id):
            source = service.get_note(source_id)
            print(f"<- {source.title} ({source_id})")
        for title, target in service.outgoing_links(note.id).items():
            print(f"-> {title} ({target if target else 'unresolved'})")

    elif args.command == "versions":
        folder = service.get_folder_by_name(args.folder)
        note = service.get_note_by_title(folder.id, args.title)
        for version in service.list_versions(note.id):
            lock = " (encrypted)" if version.encrypted else ""
            print(
                f"{version.seq}\t{version.timestamp.isoformat()}\t"
                f"{version.size} bytes{lock}\t{version.message or ''}"
            )

    elif args.command == "stats":
        print(json.dumps(service.statistics().to_dict(), indent=2))

    elif args.command == "export":
        destination = Path(args.destination) if args.destination else None
        print(service.export_snapshot(destination))

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line interface."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=False)
    except OSError as e:
        # Fall back to console logging if the log directory is not writable
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)
    service = None
    try:
        service = VaultService(root_dir=config.root_dir)
        return run_command(service, args)
    except NoteVaultError as e:
        logger.error(f"Command {args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        if service is not None:
            service.close()


if __name__ == "__main__":
    sys.exit(main())
