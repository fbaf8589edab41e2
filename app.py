# =============================================================================
# app.py
# Kiosk Offline Core - Command Runner
# =============================================================================
"""
Command-line entry point for the kiosk's offline cache.

Usage:
    python app.py sync --once
    python app.py sync --interval 10
    python app.py stats
    python app.py audit
    python app.py autofix
    python app.py sync-missing pins --max 500
    python app.py clear
    python app.py tiles prefetch chicago --zoom 10 11 12
    python app.py tiles status global
    python app.py tiles stats
    python app.py tiles clear
"""

from __future__ import annotations
import argparse
import json
import sys
import threading
from contextlib import contextmanager
from typing import Any, List, Optional

from kiosk_core.config import KioskConfig, load_config
from kiosk_core.data.supabase_client import SupabaseService, get_supabase_client
from kiosk_core.errors import KioskCacheError
from kiosk_core.logging import get_logger, setup_logging
from kiosk_core.offline import DatabaseAudit, LocalDatabase, SyncEngine, TileCache

logger = get_logger("kiosk_core.app")


def _print(result: Any) -> None:
    print(json.dumps(result, indent=2, default=str))


def _build_remote(config: KioskConfig) -> Optional[SupabaseService]:
    client = get_supabase_client(config.supabase)
    return SupabaseService(client) if client is not None else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kiosk",
        description="Offline cache, sync and audit for the kiosk",
    )
    parser.add_argument("--config", help="Path to secrets.toml")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--no-log-file", action="store_true", help="Log to stdout only")

    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Sync the local mirror from Supabase")
    sync.add_argument("--once", action="store_true", help="Run a single pass and exit")
    sync.add_argument("--interval", type=float, help="Minutes between passes")

    commands.add_parser("stats", help="Show sync status and row counts")
    commands.add_parser("audit", help="Compare the local mirror with the schema and Supabase")
    commands.add_parser("autofix", help="Audit, repair schema, backfill missing rows, re-audit")

    missing = commands.add_parser("sync-missing", help="Copy remote rows missing locally")
    missing.add_argument("table")
    missing.add_argument("--max", type=int, default=DatabaseAudit.DEFAULT_MAX_RECORDS, dest="max_records")

    commands.add_parser("clear", help="Delete all rows from the local mirror")

    tiles = commands.add_parser("tiles", help="Map tile cache")
    tile_commands = tiles.add_subparsers(dest="tile_command", required=True)

    for name, help_text in (
        ("prefetch", "Download a region's tiles"),
        ("status", "Show how much of a region is cached"),
    ):
        tile_parser = tile_commands.add_parser(name, help=help_text)
        tile_parser.add_argument("region", help="chicago, global or metro")
        tile_parser.add_argument("--zoom", type=int, nargs="+", help="Zoom levels")
        if name == "prefetch":
            tile_parser.add_argument("--max-concurrent", type=int)

    tile_commands.add_parser("stats", help="Show tile cache statistics")
    tile_commands.add_parser("clear", help="Remove every cached tile")

    return parser


# =============================================================================
# COMMANDS
# =============================================================================

def run_sync(args, config: KioskConfig, store: LocalDatabase) -> int:
    engine = SyncEngine.from_settings(store, _build_remote(config), config.sync)
    engine.on_sync(lambda result: logger.info(
        f"Pass finished in {result['duration']}s with {len(result['errors'])} error(s)"
    ))

    if args.once:
        result = engine.sync_all()
        if result is None:
            _print({"success": False, "error": "Sync not possible (local database or Supabase unavailable)"})
            return 1
        _print(result)
        return 0 if not result["errors"] else 2

    if not engine.start(args.interval):
        return 1

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping sync engine")
    finally:
        engine.stop()
    return 0


def run_stats(args, config: KioskConfig, store: LocalDatabase) -> int:
    engine = SyncEngine.from_settings(store, None, config.sync)
    stats = engine.get_sync_stats()
    if stats is None:
        _print({"success": False, "storage_backend": store.storage_backend})
        return 1
    _print(stats)
    return 0


@contextmanager
def _audit(config: KioskConfig, store: LocalDatabase):
    audit = DatabaseAudit(store, _build_remote(config), remote_timeout=config.sync.fetch_timeout)
    try:
        yield audit
    finally:
        audit.close()


def run_audit(args, config: KioskConfig, store: LocalDatabase) -> int:
    with _audit(config, store) as audit:
        report = audit.audit_database()
    _print(report)
    return 0 if report.get("success") else 1


def run_autofix(args, config: KioskConfig, store: LocalDatabase) -> int:
    with _audit(config, store) as audit:
        result = audit.auto_fix_database()
    _print(result)
    return 0 if result.get("success") else 1


def run_sync_missing(args, config: KioskConfig, store: LocalDatabase) -> int:
    with _audit(config, store) as audit:
        result = audit.sync_missing_data(args.table, max_records=args.max_records)
    _print(result)
    return 0 if result.get("success") else 1


def run_clear(args, config: KioskConfig, store: LocalDatabase) -> int:
    cleared = store.clear_all()
    _print({"success": cleared, "storage_backend": store.storage_backend})
    return 0 if cleared else 1


def run_tiles(args, config: KioskConfig, store: LocalDatabase) -> int:
    cache = TileCache.from_settings(config.tiles)
    try:
        if args.tile_command == "prefetch":
            def progress(completed: int, total: int) -> None:
                if completed == total or completed % 100 == 0:
                    logger.info(f"Tiles: {completed}/{total}")

            result = cache.prefetch_region(
                args.region,
                zoom_levels=args.zoom,
                max_concurrent=args.max_concurrent,
                on_progress=progress,
            )
        elif args.tile_command == "status":
            result = cache.is_region_complete(args.region, zoom_levels=args.zoom)
        elif args.tile_command == "clear":
            cache.clear_all()
            result = {"success": True}
        else:
            result = cache.get_stats()
    finally:
        cache.close()

    _print(result)
    return 0


COMMANDS = {
    "sync": run_sync,
    "stats": run_stats,
    "audit": run_audit,
    "autofix": run_autofix,
    "sync-missing": run_sync_missing,
    "clear": run_clear,
    "tiles": run_tiles,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except KioskCacheError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(
        level=args.log_level or config.log_level,
        log_to_file=not args.no_log_file,
    )

    store = LocalDatabase.from_settings(config.local_database)
    try:
        if args.command != "tiles":
            store.initialize()
        return COMMANDS[args.command](args, config, store)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
