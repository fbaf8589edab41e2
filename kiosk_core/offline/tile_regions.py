# =============================================================================
# kiosk_core/offline/tile_regions.py
# Slippy-Map Tile Math and Built-in Prefetch Regions
# =============================================================================

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

# Web Mercator latitude limit
MAX_LATITUDE = 85.05112878

# Deepest zoom served by the tile source
MAX_ZOOM = 18


class TileCoord(NamedTuple):
    """One map tile at zoom z."""
    z: int
    x: int
    y: int

    @property
    def key(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


@dataclass(frozen=True)
class Bounds:
    """Geographic bounding box in degrees."""
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self):
        if self.north < self.south:
            raise ValueError(f"north ({self.north}) must be >= south ({self.south})")
        if self.east < self.west:
            raise ValueError(f"east ({self.east}) must be >= west ({self.west})")

    @classmethod
    def around(cls, lat: float, lng: float, radius_deg: float) -> Bounds:
        """Square box centred on a point."""
        return cls(
            north=lat + radius_deg,
            south=lat - radius_deg,
            east=lng + radius_deg,
            west=lng - radius_deg,
        )


@dataclass(frozen=True)
class TileRegion:
    """Named set of bounding boxes with a default zoom range."""
    name: str
    bounds: Tuple[Bounds, ...]
    zoom_levels: Tuple[int, ...]


def lat_lng_to_tile(lat: float, lng: float, zoom: int) -> Tuple[int, int]:
    """
    Convert a coordinate to slippy-map tile indices.

    Indices are clamped to [0, 2**zoom - 1], so lng = 180 and the Mercator
    latitude limits map onto the last valid tile.
    """
    n = 2 ** zoom
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))
    lat_rad = math.radians(lat)

    x = int(math.floor((lng + 180.0) / 360.0 * n))
    y = int(math.floor((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n))

    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def tiles_for_bounds(bounds: Bounds, zoom: int) -> List[TileCoord]:
    """All tiles covering a bounding box at one zoom level."""
    min_x, min_y = lat_lng_to_tile(bounds.north, bounds.west, zoom)
    max_x, max_y = lat_lng_to_tile(bounds.south, bounds.east, zoom)
    return [
        TileCoord(zoom, x, y)
        for x in range(min_x, max_x + 1)
        for y in range(min_y, max_y + 1)
    ]


def region_tiles(
    bounds: Iterable[Bounds],
    zoom_levels: Iterable[int],
) -> List[TileCoord]:
    """
    Expected tile set of a region: every box at every zoom, deduplicated,
    in first-seen order.
    """
    bounds = list(bounds)
    seen = set()
    tiles = []
    for zoom in zoom_levels:
        for box in bounds:
            for tile in tiles_for_bounds(box, zoom):
                if tile not in seen:
                    seen.add(tile)
                    tiles.append(tile)
    return tiles


# =============================================================================
# BUILT-IN REGIONS
# =============================================================================

CHICAGO_BOUNDS = Bounds(north=42.0231, south=41.6445, east=-87.5237, west=-87.9401)
GLOBAL_BOUNDS = Bounds(north=85.0, south=-85.0, east=180.0, west=-180.0)

# (name, lat, lng) of the metros cached for the global map's drill-down
MAJOR_METROS = (
    ("new_york", 40.7128, -74.0060),
    ("los_angeles", 34.0522, -118.2437),
    ("chicago", 41.8781, -87.6298),
    ("houston", 29.7604, -95.3698),
    ("phoenix", 33.4484, -112.0740),
    ("philadelphia", 39.9526, -75.1652),
    ("san_antonio", 29.4241, -98.4936),
    ("san_diego", 32.7157, -117.1611),
    ("dallas", 32.7767, -96.7970),
    ("san_francisco", 37.7749, -122.4194),
    ("seattle", 47.6062, -122.3321),
    ("denver", 39.7392, -104.9903),
    ("boston", 42.3601, -71.0589),
    ("atlanta", 33.7490, -84.3880),
    ("miami", 25.7617, -80.1918),
    ("detroit", 42.3314, -83.0458),
    ("minneapolis", 44.9778, -93.2650),
    ("toronto", 43.6532, -79.3832),
    ("london", 51.5074, -0.1278),
    ("mexico_city", 19.4326, -99.1332),
)
METRO_RADIUS_DEG = 0.25

REGIONS = {
    "chicago": TileRegion(
        name="chicago",
        bounds=(CHICAGO_BOUNDS,),
        zoom_levels=tuple(range(10, 18)),
    ),
    "global": TileRegion(
        name="global",
        bounds=(GLOBAL_BOUNDS,),
        zoom_levels=(3, 4, 5),
    ),
    "metro": TileRegion(
        name="metro",
        bounds=tuple(Bounds.around(lat, lng, METRO_RADIUS_DEG) for _, lat, lng in MAJOR_METROS),
        zoom_levels=(10, 11, 12),
    ),
}

RegionLike = Union[str, TileRegion, Bounds, Sequence[Bounds]]


def resolve_region(region: RegionLike, zoom_levels: Optional[Iterable[int]] = None) -> TileRegion:
    """
    Normalize a region name, TileRegion, Bounds or list of Bounds.

    Args:
        region: What to resolve
        zoom_levels: Override the zoom range (required for raw bounds)

    Raises:
        ValueError: Unknown region name, or raw bounds without zoom levels
    """
    if isinstance(region, str):
        try:
            resolved = REGIONS[region.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown region '{region}'. Available: {', '.join(sorted(REGIONS))}"
            )
    elif isinstance(region, TileRegion):
        resolved = region
    else:
        boxes = (region,) if isinstance(region, Bounds) else tuple(region)
        if not boxes or not all(isinstance(box, Bounds) for box in boxes):
            raise ValueError("Region bounds must be Bounds instances")
        if zoom_levels is None:
            raise ValueError("zoom_levels are required for custom bounds")
        return TileRegion(name="custom", bounds=boxes, zoom_levels=tuple(zoom_levels))

    if zoom_levels is not None:
        return TileRegion(name=resolved.name, bounds=resolved.bounds, zoom_levels=tuple(zoom_levels))
    return resolved


def viewport_region(bounds: Bounds, zoom: int, buffer: int = 1) -> TileRegion:
    """
    Region covering what the map currently shows, plus nearby zoom levels.

    Args:
        bounds: Visible map bounds
        zoom: Current map zoom
        buffer: Zoom levels to include above and below the current one

    Returns:
        TileRegion named "viewport" spanning [zoom - buffer, zoom + buffer],
        clipped to [0, MAX_ZOOM]
    """
    if buffer < 0:
        raise ValueError("buffer must be >= 0")
    low = max(0, zoom - buffer)
    high = min(MAX_ZOOM, zoom + buffer)
    return TileRegion(name="viewport", bounds=(bounds,), zoom_levels=tuple(range(low, high + 1)))
