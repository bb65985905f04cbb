#!/usr/bin/env python
"""Command-line entry point for inspecting and moving notestore data."""
import argparse
import asyncio
import atexit
import json
import logging
import os
import sys
from pathlib import Path

from notestore import __version__
from notestore.config import config
from notestore.exceptions import NoteStoreError
from notestore.observability import configure_logging, metrics
from notestore.store import NoteStore


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="notestore", description="Notestore persistence tools"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--data-dir",
        help="Host data directory (notes/, backups/, *.json)",
        type=str,
        default=os.environ.get("NOTESTORE_DATA_DIR")
    )
    parser.add_argument(
        "--kv-database-path",
        help="SQLite file backing the key-value store",
        type=str,
        default=os.environ.get("NOTESTORE_KV_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTESTORE_LOG_LEVEL", "WARNING")
    )
    parser.add_argument(
        "--host",
        dest="host_enabled",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Use the host file service when available (default: from config)"
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("info", help="Show backend, counts and directories")
    export = sub.add_parser("export", help="Write a JSON snapshot of all data")
    export.add_argument("--output", "-o", type=str, help="File to write (default: stdout)")
    imp = sub.add_parser("import", help="Replace data with a JSON snapshot")
    imp.add_argument("file", type=str, help="Snapshot file to read")
    sub.add_parser("migrate", help="Move legacy key-value data to the host")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.data_dir:
        config.data_dir = Path(args.data_dir)
    if args.kv_database_path:
        config.kv_database_path = Path(args.kv_database_path)
    if args.host_enabled is not None:
        config.host_enabled = args.host_enabled


def _save_metrics_on_exit():
    """Save metrics to disk on exit."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on exit")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on exit: {e}")


async def run_command(args) -> int:
    """Run one subcommand against a freshly initialized store."""
    async with NoteStore() as store:
        if args.command == "info":
            print(json.dumps(await store.storage_stats(), indent=2))
        elif args.command == "export":
            snapshot = await store.export_snapshot()
            if args.output:
                Path(args.output).write_text(snapshot, encoding="utf-8")
            else:
                print(snapshot)
        elif args.command == "import":
            blob = Path(args.file).read_text(encoding="utf-8")
            counts = await store.import_snapshot(blob)
            print(json.dumps(counts, indent=2))
        elif args.command == "migrate":
            state = store.migration.state.value
            print(json.dumps({
                "state": state,
                "runs": store.migration.runs,
                "copied_documents": store.migration.copied_documents,
                "backend": store.backend.name,
            }, indent=2))
            if store.migration_error is not None:
                print(store.migration_error.message, file=sys.stderr)
                return 1
    return 0


def main(argv=None):
    """Run the notestore CLI."""
    args = parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        metrics.set_metrics_file(log_dir / "metrics.json")
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    try:
        return asyncio.run(run_command(args))
    except NoteStoreError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1
    except OSError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
