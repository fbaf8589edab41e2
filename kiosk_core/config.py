"""
Kiosk Configuration
Loads settings for the local store, sync engine, remote source and tile cache

Expected secrets.toml format:
    log_level = "INFO"

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your_anon_key"
    timeout = 15

    [local_database]
    path = "data/kiosk_local.db"
    enabled = true
    in_memory = false
    chunk_size = 100

    [sync]
    interval_minutes = 5
    fetch_timeout = 30
    upload_batch_size = 50
    upload_batch_delay = 0.1

    [tiles]
    cache_dir = "data/tiles"
    persistent = true
    url_template = "https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png"
    max_concurrent = 4
    timeout = 10
    user_agent = "kiosk-core/1.0"
    memory_tiles = 2000
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml
from dotenv import load_dotenv

from kiosk_core.errors import ConfigurationError
from kiosk_core.logging import get_logger
from kiosk_core.offline.tile_cache import OSM_TILE_URL

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(".kiosk") / "secrets.toml"

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "SUPABASE_URL": ("supabase", "url"),
    "SUPABASE_KEY": ("supabase", "key"),
    "KIOSK_DB_PATH": ("local_database", "path"),
    "KIOSK_DB_ENABLED": ("local_database", "enabled"),
    "KIOSK_SYNC_INTERVAL_MINUTES": ("sync", "interval_minutes"),
    "KIOSK_TILE_DIR": ("tiles", "cache_dir"),
    "KIOSK_LOG_LEVEL": (None, "log_level"),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class SupabaseSettings:
    """Remote source credentials"""
    url: Optional[str] = None
    key: Optional[str] = None
    timeout: float = 15.0

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)


@dataclass
class LocalDatabaseSettings:
    """Local SQLite mirror"""
    path: str = "data/kiosk_local.db"
    enabled: bool = True
    in_memory: bool = False
    chunk_size: int = 100


@dataclass
class SyncSettings:
    """Sync cadence and remote call limits"""
    interval_minutes: float = 5.0
    fetch_timeout: float = 30.0
    upload_batch_size: int = 50
    upload_batch_delay: float = 0.1  # seconds between upload batches


@dataclass
class TileSettings:
    """Map tile cache"""
    cache_dir: str = "data/tiles"
    persistent: bool = True
    url_template: str = OSM_TILE_URL
    max_concurrent: int = 4
    timeout: float = 10.0
    user_agent: str = "kiosk-core/1.0"
    memory_tiles: Optional[int] = None  # LRU bound for the memory backend


@dataclass
class KioskConfig:
    """Top-level configuration"""
    supabase: SupabaseSettings = field(default_factory=SupabaseSettings)
    local_database: LocalDatabaseSettings = field(default_factory=LocalDatabaseSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    tiles: TileSettings = field(default_factory=TileSettings)
    log_level: str = "INFO"


def _coerce(section: str, key: str, value: Any, expected: Any) -> Any:
    """Coerce a raw TOML/env value to the type of the dataclass default"""
    config_key = f"{section}.{key}" if section else key

    if value is None:
        return None

    if isinstance(expected, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(
            f"Invalid boolean for {config_key}: {value!r}",
            config_key=config_key,
            expected_type="bool",
        )

    if isinstance(expected, (int, float)):
        try:
            number = int(value) if isinstance(expected, int) else float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid number for {config_key}: {value!r}",
                config_key=config_key,
                expected_type=type(expected).__name__,
            )
        if number < 0:
            raise ConfigurationError(
                f"{config_key} must not be negative (got {number})",
                config_key=config_key,
            )
        return number

    return str(value)


def _build_section(cls, section: str, raw: Dict[str, Any]):
    defaults = cls()
    values = {}
    for key, value in raw.items():
        if not hasattr(defaults, key):
            logger.warning(f"Ignoring unknown config key {section}.{key}")
            continue
        expected = getattr(defaults, key)
        if expected is None:
            # Optional[int] fields
            values[key] = _coerce(section, key, value, 0)
        else:
            values[key] = _coerce(section, key, value, expected)
    return cls(**values)


def _read_secrets(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.info(f"No config file at {path}, using defaults")
        return {}
    try:
        return toml.load(path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ConfigurationError(
            f"Could not read config file {path}: {e}",
            config_key=str(path),
        )


def load_config(path: Optional[Union[str, Path]] = None) -> KioskConfig:
    """
    Load configuration from TOML, .env and environment.

    Precedence (highest first): environment variables, the TOML file
    (path argument, $KIOSK_CONFIG, or .kiosk/secrets.toml), defaults.

    Args:
        path: Optional explicit path to the TOML file

    Returns:
        KioskConfig

    Raises:
        ConfigurationError: If a value has the wrong type or is negative
    """
    load_dotenv()

    config_path = Path(path or os.getenv("KIOSK_CONFIG") or DEFAULT_CONFIG_PATH)
    raw = _read_secrets(config_path)

    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        if section is None:
            raw[key] = value
        else:
            raw.setdefault(section, {})[key] = value

    config = KioskConfig(
        supabase=_build_section(SupabaseSettings, "supabase", raw.get("supabase", {})),
        local_database=_build_section(
            LocalDatabaseSettings, "local_database", raw.get("local_database", {})
        ),
        sync=_build_section(SyncSettings, "sync", raw.get("sync", {})),
        tiles=_build_section(TileSettings, "tiles", raw.get("tiles", {})),
        log_level=str(raw.get("log_level", "INFO")).upper(),
    )

    if config.local_database.chunk_size < 1:
        raise ConfigurationError(
            "local_database.chunk_size must be at least 1",
            config_key="local_database.chunk_size",
        )
    if config.sync.interval_minutes <= 0:
        raise ConfigurationError(
            "sync.interval_minutes must be positive",
            config_key="sync.interval_minutes",
        )
    if config.tiles.max_concurrent < 1:
        raise ConfigurationError(
            "tiles.max_concurrent must be at least 1",
            config_key="tiles.max_concurrent",
        )

    if not config.supabase.is_configured:
        logger.warning("Supabase credentials not configured; remote commands are disabled")

    return config
