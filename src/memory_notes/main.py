#!/usr/bin/env python
"""Command line entry point for inspecting and maintaining a learning-notes store."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from memory_notes import __version__, observability
from memory_notes.config import config
from memory_notes.exceptions import MemoryNotesError, NoteNotFoundError
from memory_notes.models.db_models import init_db
from memory_notes.models.schema import Confidence, NoteLink
from memory_notes.observability import configure_logging
from memory_notes.services.learning_service import LearningService

logger = logging.getLogger(__name__)


def _parse_link(value: str) -> NoteLink:
    """Parse ``LABEL=URL`` or a bare ``URL`` into a link."""
    label, sep, url = value.partition("=")
    if sep and "://" not in label:
        return NoteLink.coerce((label, url))
    return NoteLink.coerce((None, value))


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per store operation."""
    parser = argparse.ArgumentParser(
        prog="memory-notes", description="Learning-notes store"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("MEMORY_NOTES_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=config.log_level.upper()
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the schema if missing")

    add = sub.add_parser("add", help="Record a learning note")
    add.add_argument("--repo", required=True, help="Repository key")
    add.add_argument("--title", required=True)
    add.add_argument("--problem", required=True)
    add.add_argument("--solution", required=True)
    add.add_argument("--root-cause")
    add.add_argument("--applies-when")
    add.add_argument("--confidence", choices=[c.value for c in Confidence])
    add.add_argument("--tag", action="append", default=[], help="Repeatable")
    add.add_argument(
        "--link", action="append", default=[], type=_parse_link,
        help="LABEL=URL or URL (repeatable)",
    )

    search = sub.add_parser("search", help="Full-text search (FTS5 syntax)")
    search.add_argument("query")
    search.add_argument("--repo", help="Restrict to one repository")
    search.add_argument("--limit", type=int)

    for name, help_text in (
        ("get", "Show a note"),
        ("meta", "Show a note's tags and links"),
        ("delete", "Delete a note"),
        ("verify", "Mark a note as re-verified now"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("note_id", type=int)

    count = sub.add_parser("count", help="Count notes")
    count.add_argument("--repo", help="Restrict to one repository")

    listing = sub.add_parser("list", help="List a repository's notes, newest first")
    listing.add_argument("repo")
    listing.add_argument("--limit", type=int)

    tags = sub.add_parser("tags", help="Show tags with usage counts")
    tags.add_argument("--prune", action="store_true", help="Delete unused tags first")

    sub.add_parser("rebuild-index", help="Rebuild the full-text index")
    sub.add_parser("health", help="Check database and index health")

    return parser


def update_config(args: argparse.Namespace) -> None:
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    config.log_level = args.log_level


def _save_metrics_on_exit():
    """Save metrics to disk on exit."""
    if observability.metrics.save_metrics():
        logger.debug("Metrics saved to disk on exit")


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def run_command(args: argparse.Namespace, service: LearningService) -> int:
    """Execute one parsed subcommand. Returns the exit status."""
    command = args.command

    if command == "add":
        note_id = service.add_note(
            repo_key=args.repo,
            title=args.title,
            problem=args.problem,
            solution=args.solution,
            root_cause=args.root_cause,
            applies_when=args.applies_when,
            confidence=args.confidence,
            tags=args.tag,
            links=args.link,
        )
        _emit({"id": note_id})
    elif command == "search":
        notes = service.search(args.query, repo_key=args.repo, limit=args.limit)
        _emit([n.model_dump(mode="json") for n in notes])
    elif command == "get":
        note = service.get_by_id(args.note_id)
        if note is None:
            raise NoteNotFoundError(args.note_id)
        _emit(note.model_dump(mode="json"))
    elif command == "meta":
        _emit(service.get_meta(args.note_id).model_dump(mode="json"))
    elif command == "delete":
        _emit({"deleted": service.delete_by_id(args.note_id)})
    elif command == "verify":
        _emit(service.verify_note(args.note_id).model_dump(mode="json"))
    elif command == "count":
        _emit({"count": service.count(args.repo)})
    elif command == "list":
        notes = service.list_by_repo(args.repo, limit=args.limit)
        _emit([n.model_dump(mode="json") for n in notes])
    elif command == "tags":
        removed = service.delete_unused_tags() if args.prune else 0
        _emit({"tags": service.get_tags_with_counts(), "removed": removed})
    elif command == "rebuild-index":
        _emit({"indexed": service.rebuild_index()})
    elif command == "health":
        report = service.check_health()
        _emit(report)
        if not report["healthy"]:
            return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the memory-notes command line."""
    args = build_parser().parse_args(argv)
    update_config(args)

    # Console output goes to stderr; stdout carries the JSON result
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(level=log_level, console=True)
    except OSError as e:
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    atexit.register(_save_metrics_on_exit)

    try:
        if args.command == "init":
            engine = init_db(config.database_path)
            engine.dispose()
            _emit({"database": str(config.get_absolute_path(config.database_path))})
            return 0

        service = LearningService(database_path=config.database_path)
        try:
            return run_command(args, service)
        finally:
            service.repository.engine.dispose()
    except MemoryNotesError as e:
        logger.debug(f"{args.command} failed: {e}")
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
