# =============================================================================
# kiosk_core/offline/sync_engine.py
# Automatic Synchronization Engine
# =============================================================================
"""
SyncEngine - Periodic pull replication from Supabase into the local mirror.

Features:
- Background sync thread on a fixed cadence
- Upload of local-first learning sessions before each pull
- Per-table failure isolation, recorded in sync_metadata
- Per-call remote timeouts
- Non-overlapping passes (a concurrent request is dropped, not queued)
- Listener callbacks with the pass result
"""

from __future__ import annotations
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from kiosk_core.data.supabase_client import RemoteCaller, RemoteSource
from kiosk_core.errors import KioskCacheError
from kiosk_core.logging import LogContext
from kiosk_core.offline.local_database import LocalDatabase
from kiosk_core.offline.schema_catalog import get_table_schema

logger = logging.getLogger(__name__)

SyncListener = Callable[[Dict[str, Any]], None]

UPLOAD_TABLE = "proximity_learning_sessions"
UPLOADED_KEY = f"{UPLOAD_TABLE}_uploaded"


@dataclass(frozen=True)
class TableSync:
    """One pull step: fetch the most recent rows of a remote table."""
    table: str
    limit: int
    order_by: Optional[str] = None  # defaults to the catalog's recency column
    since_hours: Optional[float] = None


SYNC_PLAN: Tuple[TableSync, ...] = (
    TableSync("pins", limit=1000),
    TableSync("trivia_questions", limit=500),
    TableSync("jukebox_songs", limit=1000),
    TableSync("nav_settings", limit=100),
    TableSync("admin_settings", limit=100),
    TableSync("proximity_learning_sessions", limit=500, since_hours=24),
    TableSync("autonomous_tasks", limit=200),
)


@dataclass
class SyncState:
    """Current sync state."""
    is_syncing: bool = False
    last_sync: Optional[datetime] = None
    last_result: Optional[Dict[str, Any]] = None
    completed_passes: int = 0
    skipped_passes: int = 0


def _error_message(error: Exception) -> str:
    if isinstance(error, KioskCacheError):
        return error.message
    return str(error) or error.__class__.__name__


class SyncEngine:
    """
    Synchronization engine between Supabase and the local SQLite mirror.

    Usage:
        engine = SyncEngine(store, remote)
        engine.on_sync(lambda result: print(result["errors"]))
        engine.start()        # immediate pass, then every 5 minutes
        engine.force_sync()   # pass outside the cadence
        engine.stop()
    """

    # Configuration
    DEFAULT_INTERVAL_MINUTES = 5
    DEFAULT_FETCH_TIMEOUT = 30       # Seconds per remote call
    UPLOAD_BATCH_SIZE = 50           # Learning sessions per upload request
    UPLOAD_BATCH_DELAY = 0.1         # Seconds between upload requests
    UPLOAD_LIMIT = 1000              # Most recent local sessions considered
    STOP_JOIN_TIMEOUT = 10           # Seconds stop() waits for the loop thread

    def __init__(
        self,
        store: LocalDatabase,
        remote: Optional[RemoteSource],
        interval_minutes: float = DEFAULT_INTERVAL_MINUTES,
        fetch_timeout: Optional[float] = DEFAULT_FETCH_TIMEOUT,
        upload_batch_size: int = UPLOAD_BATCH_SIZE,
        upload_batch_delay: float = UPLOAD_BATCH_DELAY,
        plan: Tuple[TableSync, ...] = SYNC_PLAN,
    ):
        """
        Args:
            store: Initialized LocalDatabase
            remote: Remote source (None disables syncing)
            interval_minutes: Minutes between background passes
            fetch_timeout: Upper bound in seconds for each remote call
            upload_batch_size: Learning sessions per upload request
            upload_batch_delay: Pause between upload requests
            plan: Ordered pull steps
        """
        self.store = store
        self.remote = remote
        self.interval_minutes = interval_minutes
        self.fetch_timeout = fetch_timeout
        self.upload_batch_size = max(1, int(upload_batch_size))
        self.upload_batch_delay = upload_batch_delay
        self.plan = plan

        self._state = SyncState()
        self._sync_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._sync_thread: Optional[threading.Thread] = None
        self._stop_sync = threading.Event()
        self._caller = RemoteCaller(thread_name_prefix="SyncRemote")
        self._listeners: List[SyncListener] = []
        self._listeners_lock = threading.Lock()

    @classmethod
    def from_settings(cls, store: LocalDatabase, remote: Optional[RemoteSource], settings) -> SyncEngine:
        """Build from a SyncSettings instance."""
        return cls(
            store,
            remote,
            interval_minutes=settings.interval_minutes,
            fetch_timeout=settings.fetch_timeout,
            upload_batch_size=settings.upload_batch_size,
            upload_batch_delay=settings.upload_batch_delay,
        )

    @property
    def state(self) -> SyncState:
        """Get current sync state."""
        return self._state

    @property
    def is_syncing(self) -> bool:
        """Check if a pass is in progress."""
        return self._state.is_syncing

    @property
    def is_running(self) -> bool:
        """Check if the background timer is armed."""
        return self._sync_thread is not None and self._sync_thread.is_alive()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, interval_minutes: Optional[float] = None) -> bool:
        """
        Run one immediate pass, then start the background timer.

        Each start arms a fresh stop event owned by its own loop thread, so a
        loop left behind by an earlier stop() still exits once its pass ends.

        Args:
            interval_minutes: Override the cadence

        Returns:
            True if the timer is running, False if syncing is not possible
        """
        with self._lifecycle_lock:
            if self.is_running:
                logger.debug("Sync engine already running")
                return True

            if not self.store.is_available():
                logger.warning("Local database unavailable; periodic sync not started")
                return False

            if self.remote is None:
                logger.warning("No remote source configured; periodic sync not started")
                return False

            if interval_minutes:
                self.interval_minutes = interval_minutes

            stop_event = threading.Event()
            self._stop_sync = stop_event

        self.sync_all()

        with self._lifecycle_lock:
            if stop_event.is_set() or self.is_running:
                return self.is_running
            self._sync_thread = threading.Thread(
                target=self._sync_loop,
                args=(stop_event,),
                daemon=True,
                name="SyncEngine"
            )
            self._sync_thread.start()

        logger.info(f"Sync engine started (every {self.interval_minutes} min)")
        return True

    def stop(self) -> None:
        """Disarm the background timer. An in-flight pass completes."""
        self._stop_sync.set()
        thread = self._sync_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.STOP_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Sync loop still finishing a pass; it will exit afterwards")
        self._sync_thread = None
        self._caller.shutdown()
        logger.info("Sync engine stopped")

    def update_interval(self, minutes: float) -> bool:
        """
        Change the cadence, restarting the timer if it was running.

        Returns:
            Whether the timer is running afterwards
        """
        if minutes <= 0:
            raise ValueError("Sync interval must be positive")

        was_running = self.is_running
        self.stop()
        self.interval_minutes = minutes
        logger.info(f"Sync interval set to {minutes} min")

        if was_running:
            return self.start(minutes)
        return False

    def _sync_loop(self, stop_event: threading.Event) -> None:
        """Background sync loop."""
        while not stop_event.is_set():
            # Wait for interval or stop signal
            if stop_event.wait(timeout=self.interval_minutes * 60):
                break

            try:
                self.sync_all()
            except Exception as e:
                logger.error(f"Sync error: {e}", exc_info=True)

    # =========================================================================
    # SYNC PASS
    # =========================================================================

    def force_sync(self) -> Optional[Dict[str, Any]]:
        """Run a pass outside the cadence."""
        logger.info("Forced sync requested")
        return self.sync_all()

    def sync_all(self) -> Optional[Dict[str, Any]]:
        """
        Perform one full pass: upload learning sessions, then pull every table.

        Returns:
            Pass result, or None if the pass was skipped (another pass in
            progress, store unavailable or no remote source)
        """
        if not self.store.is_available() or self.remote is None:
            logger.debug("Sync skipped: local database or remote source unavailable")
            return None

        if not self._sync_lock.acquire(blocking=False):
            self._state.skipped_passes += 1
            logger.debug("Sync already in progress, skipping")
            return None

        try:
            self._state.is_syncing = True
            with LogContext(logger, "Sync pass"):
                result = self._perform_sync()
            self._state.last_sync = datetime.now(timezone.utc)
            self._state.last_result = result
            self._state.completed_passes += 1
        finally:
            self._state.is_syncing = False
            self._sync_lock.release()

        if result["errors"]:
            logger.warning(
                f"Sync completed with {len(result['errors'])} error(s): "
                + ", ".join(err["table"] for err in result["errors"])
            )

        self._notify_listeners(result)
        return result

    def _perform_sync(self) -> Dict[str, Any]:
        started = time.monotonic()
        result: Dict[str, Any] = {step.table: 0 for step in self.plan}
        errors: List[Dict[str, str]] = []

        # Phase 1: local-first learning sessions up to the remote
        uploaded, upload_errors = self._upload_learning_sessions()
        result[UPLOADED_KEY] = uploaded
        errors.extend(upload_errors)

        # Phase 2: remote down to the local mirror, one table at a time
        for step in self.plan:
            try:
                result[step.table] = self._sync_table(step)
            except Exception as e:
                logger.error(f"Failed to sync {step.table}: {e}")
                errors.append({"table": step.table, "error": _error_message(e)})

        result["errors"] = errors
        result["duration"] = round(time.monotonic() - started, 3)
        result["timestamp"] = datetime.now(timezone.utc).isoformat()
        return result

    def _sync_table(self, step: TableSync) -> int:
        """
        Fetch the most recent rows of one table and upsert them locally.

        sync_metadata is updated on success and on failure.
        """
        schema = get_table_schema(step.table)
        order_by = step.order_by or schema.order_column
        since = None
        if step.since_hours:
            since = (datetime.now(timezone.utc) - timedelta(hours=step.since_hours)).isoformat()

        try:
            rows = self._caller.call(
                self.remote.fetch_rows,
                self.fetch_timeout,
                step.table,
                order_by=order_by,
                descending=True,
                limit=step.limit,
                since=since,
            )
            written = self.store.bulk_upsert(step.table, rows)
        except Exception as e:
            self.store.update_sync_metadata(step.table, error=_error_message(e))
            raise

        self.store.update_sync_metadata(step.table)
        logger.info(f"Synced {written} rows into {step.table}")
        return written

    def _upload_learning_sessions(self) -> Tuple[int, List[Dict[str, str]]]:
        """
        Upload recent local learning sessions in batches.

        Duplicates are ignored remotely. A failed batch is recorded and the
        remaining batches still go out.

        Returns:
            (sessions uploaded, error entries)
        """
        try:
            sessions = self.store.get_all(UPLOAD_TABLE, limit=self.UPLOAD_LIMIT)
        except Exception as e:
            logger.error(f"Could not read local learning sessions: {e}")
            return 0, [{"table": f"{UPLOAD_TABLE}_upload", "error": _error_message(e)}]

        if not sessions:
            logger.debug("No local learning sessions to upload")
            return 0, []

        payload = [
            {key: value for key, value in session.items() if key != "synced_at"}
            for session in sessions
        ]

        uploaded = 0
        errors = []
        for start in range(0, len(payload), self.upload_batch_size):
            if start and self.upload_batch_delay:
                time.sleep(self.upload_batch_delay)
            batch = payload[start:start + self.upload_batch_size]
            batch_number = start // self.upload_batch_size + 1
            try:
                self._caller.call(
                    self.remote.upsert_rows,
                    self.fetch_timeout,
                    UPLOAD_TABLE,
                    batch,
                    on_conflict="id",
                    ignore_duplicates=True,
                )
                uploaded += len(batch)
            except Exception as e:
                logger.error(f"Failed to upload learning session batch {batch_number}: {e}")
                errors.append({
                    "table": f"{UPLOAD_TABLE}_upload",
                    "error": f"batch {batch_number}: {_error_message(e)}",
                })

        logger.info(f"Uploaded {uploaded}/{len(payload)} learning sessions")
        return uploaded, errors

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def on_sync(self, callback: SyncListener) -> Callable[[], None]:
        """
        Register a listener called with each pass result.

        Returns:
            A function that removes the listener
        """
        with self._listeners_lock:
            if callback not in self._listeners:
                self._listeners.append(callback)
        return lambda: self.remove_listener(callback)

    def remove_listener(self, callback: SyncListener) -> None:
        """Remove a registered listener."""
        with self._listeners_lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _notify_listeners(self, result: Dict[str, Any]) -> None:
        """Notify listeners in registration order; failures are isolated."""
        with self._listeners_lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Error in sync listener: {e}")

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_sync_stats(self) -> Optional[Dict[str, Any]]:
        """
        Sync status for status displays.

        Returns:
            Status dict, or None when the local database is unavailable
        """
        if not self.store.is_available():
            return None

        tables = {
            row["table_name"]: {
                "last_sync": row["last_sync"],
                "sync_count": row["sync_count"],
                "last_error": row["last_error"],
            }
            for row in self.store.get_sync_metadata()
        }
        return {
            "last_sync": self._state.last_sync.isoformat() if self._state.last_sync else None,
            "is_syncing": self._state.is_syncing,
            "is_running": self.is_running,
            "interval_minutes": self.interval_minutes,
            "storage_backend": self.store.storage_backend,
            "completed_passes": self._state.completed_passes,
            "skipped_passes": self._state.skipped_passes,
            "tables": tables,
            "row_counts": self.store.get_table_counts(),
        }
