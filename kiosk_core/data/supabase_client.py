# =============================================================================
# kiosk_core/data/supabase_client.py
# Supabase Client Configuration for the Kiosk Offline Core
# Remote source interface and its Supabase implementation
# =============================================================================

from __future__ import annotations
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Optional, TypeVar
import logging

from supabase import create_client, Client, ClientOptions

from kiosk_core.errors import RemoteFetchError, RemoteTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_supabase_client(settings) -> Optional[Client]:
    """
    Initialize and return a Supabase client.

    Expects credentials in .kiosk/secrets.toml (or SUPABASE_URL / SUPABASE_KEY):
        [supabase]
        url = "https://your-project.supabase.co"
        key = "your-anon-key"
        timeout = 15

    The timeout bounds every PostgREST request made by the client.

    Args:
        settings: SupabaseSettings

    Returns:
        Supabase client instance or None if not configured
    """
    if not settings.is_configured:
        logger.warning("Supabase credentials not found; remote source disabled")
        return None

    try:
        options = ClientOptions(postgrest_client_timeout=settings.timeout)
        return create_client(settings.url, settings.key, options=options)
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {e}")
        return None


class RemoteCaller:
    """
    Runs remote calls on a small shared worker pool with a per-call deadline.

    A call that misses its deadline raises RemoteTimeoutError; its worker
    stays busy until the underlying request returns, so the number of
    threads never exceeds max_workers. Queued calls that time out are
    cancelled before they start.

    Usage:
        caller = RemoteCaller()
        rows = caller.call(remote.fetch_rows, 30, "pins", limit=1000)
        caller.shutdown()
    """

    DEFAULT_MAX_WORKERS = 4

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS, thread_name_prefix: str = "RemoteCall"):
        self.max_workers = max(1, int(max_workers))
        self.thread_name_prefix = thread_name_prefix
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix=self.thread_name_prefix,
                )
            return self._executor

    def call(self, func: Callable[..., T], timeout: Optional[float], *args, **kwargs) -> T:
        """
        Run a remote call with an upper bound on its duration.

        Args:
            func: Callable to run
            timeout: Seconds to wait (None or <= 0 runs the call inline)

        Returns:
            The callable's result

        Raises:
            RemoteTimeoutError: If the call does not finish in time
        """
        if not timeout or timeout <= 0:
            return func(*args, **kwargs)

        future = self._pool().submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            name = getattr(func, "__name__", "remote call")
            raise RemoteTimeoutError(
                f"{name} timed out after {timeout}s",
                timeout=timeout,
                operation=name,
            )

    def shutdown(self) -> None:
        """Release the pool without waiting for busy workers. Safe to call twice."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)


class RemoteSource(ABC):
    """
    Remote source of truth consumed by the SyncEngine and DatabaseAudit.

    Implementations raise RemoteFetchError on failure.
    """

    @abstractmethod
    def fetch_rows(
        self,
        table: str,
        columns: str = "*",
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
        since: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch rows, most recent first.

        Args:
            table: Remote table name
            columns: Column selection
            order_by: Ordering column
            descending: Sort direction
            limit: Maximum number of rows
            since: ISO timestamp; only rows with order_by >= since
            filters: Equality filters
        """

    @abstractmethod
    def count_rows(self, table: str) -> int:
        """Exact row count of a remote table."""

    @abstractmethod
    def fetch_ids(
        self,
        table: str,
        id_column: str = "id",
        order_by: Optional[str] = "created_at",
        limit: Optional[int] = None,
    ) -> List[Any]:
        """Primary keys of the most recent rows."""

    @abstractmethod
    def insert_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        """Insert rows; returns the number sent."""

    @abstractmethod
    def upsert_rows(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str = "id",
        ignore_duplicates: bool = False,
    ) -> int:
        """Insert-or-update rows; returns the number sent."""

    @abstractmethod
    def update_rows(self, table: str, filters: Dict[str, Any], data: Dict[str, Any]) -> None:
        """Update rows matching equality filters."""

    @abstractmethod
    def delete_rows(self, table: str, filters: Dict[str, Any]) -> None:
        """Delete rows matching equality filters."""

    @abstractmethod
    def delete_ids(self, table: str, ids: List[Any], id_column: str = "id") -> None:
        """Delete rows by primary key."""


class SupabaseService(RemoteSource):
    """
    RemoteSource over supabase-py.
    """

    def __init__(self, client: Client):
        """
        Args:
            client: Supabase client (see get_supabase_client)
        """
        self.client = client

    def is_connected(self) -> bool:
        """Check if Supabase client is available."""
        return self.client is not None

    def _fail(self, table: str, operation: str, error: Exception) -> RemoteFetchError:
        logger.error(f"Supabase {operation} on {table} failed: {error}")
        return RemoteFetchError(
            f"Supabase {operation} on {table} failed: {error}",
            table=table,
            operation=operation,
        )

    def fetch_rows(
        self,
        table: str,
        columns: str = "*",
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
        since: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        try:
            query = self.client.table(table).select(columns)

            for col, val in (filters or {}).items():
                query = query.eq(col, val)

            if since and order_by:
                query = query.gte(order_by, since)

            if order_by:
                query = query.order(order_by, desc=descending)

            if limit is not None:
                query = query.limit(limit)

            response = query.execute()
            return response.data or []

        except Exception as e:
            raise self._fail(table, "select", e) from e

    def count_rows(self, table: str) -> int:
        try:
            response = (
                self.client.table(table)
                .select("*", count="exact", head=True)
                .execute()
            )
            return int(response.count or 0)
        except Exception as e:
            raise self._fail(table, "count", e) from e

    def fetch_ids(
        self,
        table: str,
        id_column: str = "id",
        order_by: Optional[str] = "created_at",
        limit: Optional[int] = None,
    ) -> List[Any]:
        rows = self.fetch_rows(table, columns=id_column, order_by=order_by, limit=limit)
        return [row[id_column] for row in rows if id_column in row]

    def insert_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        try:
            self.client.table(table).insert(rows).execute()
            return len(rows)
        except Exception as e:
            raise self._fail(table, "insert", e) from e

    def upsert_rows(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        on_conflict: str = "id",
        ignore_duplicates: bool = False,
    ) -> int:
        if not rows:
            return 0
        try:
            (
                self.client.table(table)
                .upsert(rows, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates)
                .execute()
            )
            return len(rows)
        except Exception as e:
            raise self._fail(table, "upsert", e) from e

    def update_rows(self, table: str, filters: Dict[str, Any], data: Dict[str, Any]) -> None:
        try:
            query = self.client.table(table).update(data)

            for col, val in filters.items():
                query = query.eq(col, val)

            query.execute()
        except Exception as e:
            raise self._fail(table, "update", e) from e

    def delete_rows(self, table: str, filters: Dict[str, Any]) -> None:
        if not filters:
            raise RemoteFetchError(
                f"Refusing unfiltered delete on {table}",
                table=table,
                operation="delete",
            )
        try:
            query = self.client.table(table).delete()

            for col, val in filters.items():
                query = query.eq(col, val)

            query.execute()
        except Exception as e:
            raise self._fail(table, "delete", e) from e

    def delete_ids(self, table: str, ids: List[Any], id_column: str = "id") -> None:
        if not ids:
            return
        try:
            self.client.table(table).delete().in_(id_column, list(ids)).execute()
        except Exception as e:
            raise self._fail(table, "delete", e) from e
