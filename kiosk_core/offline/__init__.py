# =============================================================================
# kiosk_core/offline/__init__.py
# Offline-First Cache for the Kiosk
# =============================================================================
"""
Offline-First Cache Module

The kiosk keeps working when the network drops: reads come from a local
SQLite mirror of the Supabase tables and map tiles come from a local tile
cache.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                     OFFLINE-FIRST CACHE                          │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────┐   pull (every 5 min)   ┌──────────────────┐  │
│   │   Supabase   │ ─────────────────────► │  LocalDatabase   │  │
│   │   (Remote)   │ ◄───────────────────── │    (SQLite)      │  │
│   └──────────────┘   learning sessions    └──────────────────┘  │
│          ▲                  ▲                      ▲             │
│          │                  │                      │             │
│          │           ┌──────────────┐      ┌──────────────┐     │
│          └───────────│  SyncEngine  │      │DatabaseAudit │     │
│                      └──────────────┘      └──────────────┘     │
│                                                                  │
│   ┌──────────────┐    prefetch regions    ┌──────────────────┐  │
│   │  Tile server │ ─────────────────────► │    TileCache     │  │
│   └──────────────┘                        └──────────────────┘  │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from kiosk_core.offline import LocalDatabase, SyncEngine, DatabaseAudit

store = LocalDatabase("data/kiosk_local.db")
store.initialize()

engine = SyncEngine(store, remote)
engine.start()

report = DatabaseAudit(store, remote).audit_database()
print(report["summary"]["headline"])
"""

from kiosk_core.offline.schema_catalog import (
    ColumnSpec,
    TableSchema,
    SCHEMA_CATALOG,
    get_table_schema,
)

from kiosk_core.offline.local_database import LocalDatabase

from kiosk_core.offline.sync_engine import (
    SyncEngine,
    SyncState,
    TableSync,
    SYNC_PLAN,
)

from kiosk_core.offline.database_audit import DatabaseAudit

from kiosk_core.offline.tile_regions import (
    Bounds,
    TileCoord,
    TileRegion,
    REGIONS,
    resolve_region,
    viewport_region,
)

from kiosk_core.offline.tile_cache import (
    TileCache,
    FileSystemTileStorage,
    MemoryTileStorage,
)

__all__ = [
    # Schema
    "ColumnSpec",
    "TableSchema",
    "SCHEMA_CATALOG",
    "get_table_schema",
    # Local Database
    "LocalDatabase",
    # Sync Engine
    "SyncEngine",
    "SyncState",
    "TableSync",
    "SYNC_PLAN",
    # Audit
    "DatabaseAudit",
    # Tiles
    "Bounds",
    "TileCoord",
    "TileRegion",
    "REGIONS",
    "resolve_region",
    "viewport_region",
    "TileCache",
    "FileSystemTileStorage",
    "MemoryTileStorage",
]
