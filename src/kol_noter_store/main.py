#!/usr/bin/env python
"""Command line entry point for the Kol Noter storage layer."""
import argparse
import json
import logging
import sys
import threading
from pathlib import Path

from kol_noter_store import __version__
from kol_noter_store.config import config
from kol_noter_store.exceptions import KolNoterError
from kol_noter_store.models.schema import ItemType
from kol_noter_store.observability import configure_logging
from kol_noter_store.services.migration_exporter import (
    MigrationExporter,
    MigrationOptions,
    MigrationProgress,
)
from kol_noter_store.services.search_index import SearchOptions
from kol_noter_store.services.vault_service import VaultService
from kol_noter_store.storage.embedded_adapter import EmbeddedAdapter
from kol_noter_store.storage.vault_adapter import VaultAdapter

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="kol-noter-store", description="Kol Noter vault storage and indexing"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=config.log_level.upper(),
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for the rotating log file",
        type=Path,
        default=config.log_dir,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    init = commands.add_parser("init", help="Create an empty vault")
    init.add_argument("vault", type=Path)

    reindex = commands.add_parser("reindex", help="Rebuild the relational and search indexes")
    reindex.add_argument("vault", type=Path)

    search = commands.add_parser("search", help="Search a vault")
    search.add_argument("vault", type=Path)
    search.add_argument("query")
    search.add_argument(
        "--type",
        choices=[t.value for t in ItemType],
        action="append",
        dest="types",
        help="Restrict to a document type (repeatable)",
    )
    search.add_argument("--limit", type=int, default=config.search_limit)

    validate = commands.add_parser("validate", help="Validate an embedded-store JSON dump")
    validate.add_argument("dump", type=Path)

    export = commands.add_parser("export", help="Export an embedded-store JSON dump into a vault")
    export.add_argument("dump", type=Path)
    export.add_argument("vault", type=Path)
    export.add_argument(
        "--clear-source",
        action="store_true",
        help="Empty the dump file when every item was exported",
    )
    export.add_argument("--skip-attachments", action="store_true")

    watch = commands.add_parser("watch", help="Print external changes made to a vault")
    watch.add_argument("vault", type=Path)

    return parser.parse_args(argv)


def _service(watch: bool = False) -> VaultService:
    return VaultService(config.model_copy(update={"watch_enabled": watch}))


def _load_dump(path: Path) -> EmbeddedAdapter:
    adapter = EmbeddedAdapter(store={})
    adapter.load_json(json.loads(path.read_text(encoding="utf-8")))
    return adapter


def cmd_init(args) -> int:
    adapter = VaultAdapter.create(args.vault)
    print(f"Vault ready at {adapter.vault_path}")
    return 0


def cmd_reindex(args) -> int:
    service = _service()
    try:
        service.open_vault(args.vault)
        service.rebuild_index()
        for table, count in service.index.count_rows().items():
            print(f"{table:12} {count}")
    finally:
        service.close()
    return 0


def cmd_search(args) -> int:
    service = _service()
    try:
        service.open_vault(args.vault)
        options = SearchOptions(
            types=[ItemType(t) for t in args.types] if args.types else None,
            limit=args.limit,
            fuzzy=config.search_fuzzy,
        )
        for hit in service.search(args.query, options):
            print(f"{hit.score:8.3f}  {hit.type.value:8} {hit.title}  [{hit.id}]")
    finally:
        service.close()
    return 0


def cmd_validate(args) -> int:
    exporter = MigrationExporter(_load_dump(args.dump))
    if not exporter.has_source_data():
        print("Nothing to export")
        return 0
    report = exporter.validate()
    print(
        f"systems={report.systems} projects={report.projects} "
        f"notes={report.notes} attachments={report.attachments} "
        f"size={exporter.source_size()}"
    )
    for error in report.errors:
        print(f"  {error}")
    return 0 if report.valid else 1


def _print_progress(progress: MigrationProgress) -> None:
    item = f" {progress.current_item}" if progress.current_item else ""
    print(f"[{progress.phase.value}] {progress.current}/{progress.total}{item}")


def cmd_export(args) -> int:
    source = _load_dump(args.dump)
    result = MigrationExporter(source).export_to_vault(
        args.vault,
        MigrationOptions(
            clear_source=args.clear_source,
            skip_attachments=args.skip_attachments,
            on_progress=_print_progress,
        ),
    )
    if args.clear_source and result.success:
        args.dump.write_text(json.dumps(source.dump_json(), indent=2), encoding="utf-8")
    print(f"Exported {result.counts} in {result.duration_ms} ms")
    for error in result.errors:
        print(f"  {error}")
    return 0 if result.success else 1


def cmd_watch(args) -> int:
    service = _service(watch=True)
    try:
        service.open_vault(args.vault)
        service.subscribe_to_external_changes(
            lambda event: print(f"{event.timestamp} {event.kind} {event.path}", flush=True)
        )
        print(f"Watching {args.vault} (Ctrl+C to stop)")
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        service.close()
    return 0


COMMANDS = {
    "init": cmd_init,
    "reindex": cmd_reindex,
    "search": cmd_search,
    "validate": cmd_validate,
    "export": cmd_export,
    "watch": cmd_watch,
}


def main(argv=None) -> int:
    """Run one ``kol-noter-store`` command."""
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_file = configure_logging(level=log_level, log_dir=args.log_dir, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")
        log_file = None
    if log_file:
        logger.info(f"Persistent logging enabled: {log_file}")

    try:
        return COMMANDS[args.command](args)
    except KolNoterError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 2
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
