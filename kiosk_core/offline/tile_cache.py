# =============================================================================
# kiosk_core/offline/tile_cache.py
# Map Tile Cache with Region Prefetch
# =============================================================================
"""
TileCache - byte cache for slippy-map tiles, separate from the SQLite mirror.

Features:
- Persistent filesystem backend (<root>/z/x/y.png, atomic writes)
- Transient in-memory backend with optional LRU bound
- Batch-parallel region prefetch that skips tiles already cached
- Region completeness derived live from cache membership
"""

from __future__ import annotations
import os
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union
import logging

import requests

from kiosk_core.errors import TileFetchError, safe_execute
from kiosk_core.offline.tile_regions import RegionLike, TileCoord, region_tiles, resolve_region

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

OSM_TILE_URL = "https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png"
SUBDOMAINS = ("a", "b", "c")


# =============================================================================
# STORAGE BACKENDS
# =============================================================================

class TileStorage(ABC):
    """Where tile bytes live."""

    name: str = "unknown"
    persistent: bool = False

    @abstractmethod
    def has(self, tile: TileCoord) -> bool:
        ...

    @abstractmethod
    def get(self, tile: TileCoord) -> Optional[bytes]:
        ...

    @abstractmethod
    def put(self, tile: TileCoord, data: bytes) -> None:
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    def stats(self) -> Dict[str, Any]:
        return {}

    def close(self) -> None:
        pass


class FileSystemTileStorage(TileStorage):
    """
    Tiles as files under a cache directory.

    Directory Structure:
    -------------------
    data/tiles/
    └── {z}/
        └── {x}/
            └── {y}.png
    """

    name = "Native Filesystem"
    persistent = True

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, tile: TileCoord) -> Path:
        return self.root / str(tile.z) / str(tile.x) / f"{tile.y}.png"

    def has(self, tile: TileCoord) -> bool:
        return self._path(tile).is_file()

    def get(self, tile: TileCoord) -> Optional[bytes]:
        path = self._path(tile)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, tile: TileCoord, data: bytes) -> None:
        path = self._path(tile)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Temp file + rename: readers never see a partial tile
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise

    def count(self) -> int:
        return sum(1 for _ in self.root.rglob("*.png"))

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def stats(self) -> Dict[str, Any]:
        return {
            "location": str(self.root),
            "size_bytes": sum(path.stat().st_size for path in self.root.rglob("*.png")),
        }


class MemoryTileStorage(TileStorage):
    """Tiles in process memory, lost on restart. Optionally LRU-bounded."""

    name = "Transient Memory Cache"
    persistent = False

    def __init__(self, max_tiles: Optional[int] = None):
        self.max_tiles = max_tiles
        self._tiles: OrderedDict = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def has(self, tile: TileCoord) -> bool:
        with self._lock:
            return tile in self._tiles

    def get(self, tile: TileCoord) -> Optional[bytes]:
        with self._lock:
            data = self._tiles.get(tile)
            if data is None:
                self.misses += 1
                return None
            self._tiles.move_to_end(tile)
            self.hits += 1
            return data

    def put(self, tile: TileCoord, data: bytes) -> None:
        with self._lock:
            self._tiles[tile] = data
            self._tiles.move_to_end(tile)
            if self.max_tiles:
                while len(self._tiles) > self.max_tiles:
                    self._tiles.popitem(last=False)

    def count(self) -> int:
        with self._lock:
            return len(self._tiles)

    def clear(self) -> None:
        with self._lock:
            self._tiles.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "max_tiles": self.max_tiles,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
            }


# =============================================================================
# TILE CACHE
# =============================================================================

class TileCache:
    """
    Map tile cache with region prefetch and completeness tracking.

    Usage:
        cache = TileCache(FileSystemTileStorage("data/tiles"))
        cache.prefetch_region("chicago", zoom_levels=[10, 11], on_progress=print)
        cache.is_region_complete("chicago", zoom_levels=[10, 11])
    """

    DEFAULT_TIMEOUT = 10
    DEFAULT_MAX_CONCURRENT = 4
    DEFAULT_USER_AGENT = "kiosk-core/1.0"

    def __init__(
        self,
        storage: TileStorage,
        url_template: str = OSM_TILE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ):
        """
        Args:
            storage: Tile storage backend
            url_template: Tile URL with {s}, {z}, {x}, {y} placeholders
            session: HTTP session (a new requests.Session if None)
            timeout: Seconds per tile request
            user_agent: User-Agent header (required by tile usage policies)
            max_concurrent: Default prefetch batch size
        """
        self.storage = storage
        self.url_template = url_template
        self.timeout = timeout
        self.max_concurrent = max(1, int(max_concurrent))

        self._owns_session = session is None
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    @classmethod
    def from_settings(cls, settings) -> TileCache:
        """Build from a TileSettings instance."""
        storage: TileStorage
        if settings.persistent:
            try:
                storage = FileSystemTileStorage(settings.cache_dir)
            except OSError as e:
                logger.warning(f"Tile directory unavailable ({e}); using in-memory tile cache")
                storage = MemoryTileStorage(settings.memory_tiles)
        else:
            storage = MemoryTileStorage(settings.memory_tiles)

        return cls(
            storage,
            url_template=settings.url_template,
            timeout=settings.timeout,
            user_agent=settings.user_agent,
            max_concurrent=settings.max_concurrent,
        )

    # =========================================================================
    # SINGLE TILES
    # =========================================================================

    def tile_url(self, tile: TileCoord) -> str:
        subdomain = SUBDOMAINS[(tile.x + tile.y) % len(SUBDOMAINS)]
        return self.url_template.format(s=subdomain, z=tile.z, x=tile.x, y=tile.y)

    def get_tile(self, tile: TileCoord) -> Optional[bytes]:
        """Cached bytes of a tile, or None (never touches the network)."""
        return self.storage.get(tile)

    def fetch_tile(self, tile: TileCoord) -> bytes:
        """
        Download a tile.

        Raises:
            TileFetchError: Network failure, non-2xx status or empty body
        """
        url = self.tile_url(tile)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            raise TileFetchError(
                f"Failed to download tile {tile.key}: {e}",
                tile=tile.key,
                url=url,
                status_code=status,
            ) from e

        if not response.content:
            raise TileFetchError(f"Empty tile {tile.key}", tile=tile.key, url=url)
        return response.content

    def get_or_fetch_tile(self, tile: TileCoord) -> bytes:
        """Cached bytes, falling back to the network (and caching the result)."""
        data = self.storage.get(tile)
        if data is not None:
            return data
        data = self.fetch_tile(tile)
        self.storage.put(tile, data)
        return data

    # =========================================================================
    # REGIONS
    # =========================================================================

    def _prefetch_one(self, tile: TileCoord) -> str:
        if self.storage.has(tile):
            return "skipped"
        try:
            self.storage.put(tile, self.fetch_tile(tile))
            return "cached"
        except (TileFetchError, OSError) as e:
            logger.warning(str(e))
            return "failed"

    def prefetch_region(
        self,
        region: RegionLike,
        zoom_levels: Optional[Iterable[int]] = None,
        max_concurrent: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, int]:
        """
        Download every tile of a region that is not cached yet.

        Tiles are processed in batches of max_concurrent, each batch fully
        parallel and finished before the next starts. A failed tile is
        counted and skipped.

        Args:
            region: Region name, TileRegion, Bounds or list of Bounds
            zoom_levels: Override the region's zoom range
            max_concurrent: Tiles in flight at a time
            on_progress: Called with (completed, total) after every tile

        Returns:
            {"total", "cached", "skipped", "failed", "completed"}
        """
        resolved = resolve_region(region, zoom_levels)
        tiles = region_tiles(resolved.bounds, resolved.zoom_levels)
        batch_size = max(1, int(max_concurrent or self.max_concurrent))

        stats = {"total": len(tiles), "cached": 0, "skipped": 0, "failed": 0, "completed": 0}
        logger.info(
            f"Prefetching {len(tiles)} tiles for {resolved.name} "
            f"(zoom {list(resolved.zoom_levels)}, {batch_size} at a time)"
        )

        for start in range(0, len(tiles), batch_size):
            batch = tiles[start:start + batch_size]
            with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="TilePrefetch") as pool:
                futures = [pool.submit(self._prefetch_one, tile) for tile in batch]
                for future in as_completed(futures):
                    stats[future.result()] += 1
                    stats["completed"] += 1
                    if on_progress is not None:
                        try:
                            on_progress(stats["completed"], stats["total"])
                        except Exception as e:
                            logger.error(f"Error in prefetch progress callback: {e}")

        logger.info(
            f"Prefetch of {resolved.name} complete: {stats['cached']} new, "
            f"{stats['skipped']} already cached, {stats['failed']} failed"
        )
        return stats

    def is_region_complete(
        self,
        region: RegionLike,
        zoom_levels: Optional[Iterable[int]] = None,
    ) -> Dict[str, Any]:
        """
        Check cache membership of every tile of a region.

        Returns:
            {"complete", "completed", "total", "percent_cached"}
        """
        resolved = resolve_region(region, zoom_levels)
        tiles = region_tiles(resolved.bounds, resolved.zoom_levels)
        completed = sum(1 for tile in tiles if self.storage.has(tile))
        total = len(tiles)
        return {
            "complete": total > 0 and completed == total,
            "completed": completed,
            "total": total,
            "percent_cached": round(completed / total * 100, 1) if total else 0.0,
        }

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def clear_all(self) -> None:
        """Remove every cached tile."""
        self.storage.clear()
        logger.info("Tile cache cleared")

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        details = safe_execute(
            self.storage.stats,
            default={},
            error_message="Failed to read tile storage details",
        )
        return {
            "storage": self.storage.name,
            "persistent": self.storage.persistent,
            "tile_count": self.storage.count(),
            **details,
        }

    def close(self) -> None:
        self.storage.close()
        if self._owns_session:
            self.session.close()
