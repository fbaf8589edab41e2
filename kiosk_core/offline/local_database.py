# =============================================================================
# kiosk_core/offline/local_database.py
# Local SQLite Mirror for Offline Operations
# =============================================================================
"""
LocalDatabase - SQLite-based local storage that mirrors the Supabase tables.

Features:
- Schema creation from the SchemaCatalog (missing tables only)
- Insert-or-replace upserts (last writer wins)
- All-or-nothing bulk writes with a cooperative yield between chunks
- Sync bookkeeping (sync_metadata)
- DataFrame view (pandas) for debugging tools
- Thread-safe: one connection guarded by a re-entrant lock
- Graceful degradation: when the store cannot be opened every method
  becomes a no-op returning an empty result
"""

from __future__ import annotations
import json
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
import logging

import pandas as pd

from kiosk_core.errors import LocalStoreError, LocalWriteError, UnknownTableError
from kiosk_core.offline.schema_catalog import (
    KEY_VALUE_TABLES,
    SCHEMA_CATALOG,
    TableSchema,
    get_table_schema,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def utc_now() -> str:
    """ISO-8601 UTC timestamp used for synced_at / last_sync."""
    return datetime.now(timezone.utc).isoformat()


class LocalDatabase:
    """
    Local SQLite database mirroring a subset of the remote tables.

    Construct once per process, call initialize(), inject into the
    SyncEngine and DatabaseAudit, and close() on shutdown.
    """

    DEFAULT_DB_PATH = Path("data") / "kiosk_local.db"
    DEFAULT_CHUNK_SIZE = 100

    BACKEND_FILE = "native-file"
    BACKEND_MEMORY = "transient-memory"
    BACKEND_UNAVAILABLE = "unavailable"

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        enabled: bool = True,
        in_memory: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        catalog: Optional[Dict[str, TableSchema]] = None,
    ):
        """
        Args:
            db_path: Path to the SQLite file (ignored when in_memory)
            enabled: False puts the store straight into the unavailable state
            in_memory: Use a transient in-memory database
            chunk_size: Rows per chunk inside bulk_upsert
            catalog: Expected tables (defaults to SCHEMA_CATALOG)
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self.enabled = enabled
        self.in_memory = in_memory
        self.chunk_size = max(1, int(chunk_size))
        self.catalog = catalog if catalog is not None else SCHEMA_CATALOG

        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._initialized = False
        self._available = False

    @classmethod
    def from_settings(cls, settings) -> LocalDatabase:
        """Build from a LocalDatabaseSettings instance."""
        return cls(
            db_path=settings.path,
            enabled=settings.enabled,
            in_memory=settings.in_memory,
            chunk_size=settings.chunk_size,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def initialize(self) -> bool:
        """
        Open the database and create any missing catalog tables.

        Idempotent. Never raises: on failure the store is marked unavailable
        for the rest of the process lifetime and is not retried.

        Returns:
            True if the store is available
        """
        with self._lock:
            if self._initialized:
                return self._available
            self._initialized = True

            if not self.enabled:
                logger.warning("Local database disabled by configuration; running without offline cache")
                return False

            try:
                self._conn = self._open_connection()
                existing = self._existing_tables()

                created = []
                for name, schema in self.catalog.items():
                    if name in existing:
                        continue
                    self._conn.execute(schema.create_table_sql())
                    for index_sql in schema.indexes:
                        self._conn.execute(index_sql)
                    created.append(name)
                self._conn.commit()

                self._available = True
                if created:
                    logger.info(f"Created local tables: {', '.join(created)}")
                logger.info(f"Local database initialized ({self.storage_backend}) at: {self.location}")

            except (sqlite3.Error, OSError) as e:
                logger.warning(f"Local database unavailable, continuing without offline cache: {e}")
                self._discard_connection()
                self._available = False

            return self._available

    def _open_connection(self) -> sqlite3.Connection:
        if self.in_memory:
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode = WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _discard_connection(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                pass
            self._conn = None

    def _existing_tables(self) -> set:
        rows = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
        return {row["name"] for row in rows}

    def is_available(self) -> bool:
        """Whether initialize() succeeded and the store is still open."""
        return self._available and self._conn is not None

    @property
    def storage_backend(self) -> str:
        if not self.is_available():
            return self.BACKEND_UNAVAILABLE
        return self.BACKEND_MEMORY if self.in_memory else self.BACKEND_FILE

    @property
    def location(self) -> str:
        return ":memory:" if self.in_memory else str(self.db_path)

    def close(self) -> None:
        """Release the connection. Safe to call when never opened."""
        with self._lock:
            if self._conn is not None:
                self._discard_connection()
                logger.info("Local database closed")
            self._available = False

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        with self._lock:
            conn = self._conn
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # =========================================================================
    # ENCODING
    # =========================================================================

    def _schema(self, table: str) -> TableSchema:
        if table in self.catalog:
            return self.catalog[table]
        return get_table_schema(table)

    @staticmethod
    def _encode_value(value: Any, json_column: bool) -> Any:
        if value is None:
            return None
        if json_column or isinstance(value, (dict, list, tuple)):
            return json.dumps(value, default=str)
        return value

    def _encode_record(self, schema: TableSchema, record: Dict[str, Any], stamp: str) -> List[Any]:
        """Map a record onto the catalog columns (unknown fields dropped)."""
        json_columns = set(schema.json_columns)
        values = []
        for column in schema.column_names:
            if column == "synced_at":
                values.append(stamp)
                continue
            values.append(self._encode_value(record.get(column), column in json_columns))
        return values

    @staticmethod
    def _decode_row(schema: Optional[TableSchema], row: sqlite3.Row) -> Dict[str, Any]:
        record = dict(row)
        if schema is None:
            return record
        for column in schema.json_columns:
            value = record.get(column)
            if isinstance(value, str):
                try:
                    record[column] = json.loads(value)
                except json.JSONDecodeError:
                    pass
        return record

    def _upsert_sql(self, schema: TableSchema) -> str:
        columns = schema.column_names
        placeholders = ", ".join("?" for _ in columns)
        return (
            f"INSERT OR REPLACE INTO {schema.name} ({', '.join(columns)}) "
            f"VALUES ({placeholders})"
        )

    # =========================================================================
    # READS
    # =========================================================================

    def _select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        schema = self._schema(table)
        query = f"SELECT * FROM {schema.name}"
        params: List[Any] = []

        if filters:
            clauses = []
            for column, value in filters.items():
                if column not in schema.columns:
                    raise ValueError(f"Unknown column {table}.{column}")
                if value is None:
                    clauses.append(f"{column} IS NULL")
                else:
                    clauses.append(f"{column} = ?")
                    params.append(self._encode_value(value, column in schema.json_columns))
            query += " WHERE " + " AND ".join(clauses)

        order_by = order_by or schema.order_column
        if order_by:
            if order_by not in schema.columns:
                raise ValueError(f"Unknown column {table}.{order_by}")
            query += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"

        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            try:
                rows = self._conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise LocalStoreError(f"Read from {table} failed: {e}", table=table) from e
        return [self._decode_row(schema, row) for row in rows]

    def get_all(
        self,
        table: str,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Get all records from a table, most recent first by default.

        Args:
            table: Catalog table name
            order_by: Column to order by (defaults to the table's recency column)
            descending: Sort direction
            limit: Maximum number of rows

        Returns:
            List of records with JSON columns decoded ([] when unavailable)
        """
        if not self.is_available():
            return []
        return self._select(table, order_by=order_by, descending=descending, limit=limit)

    def get_by_filter(
        self,
        table: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Get records matching equality filters on catalog columns."""
        if not self.is_available():
            return []
        return self._select(table, filters, order_by, descending, limit)

    def get_by_id(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Get a record by primary key."""
        if not self.is_available():
            return None
        schema = self._schema(table)
        rows = self._select(table, {schema.primary_key: record_id}, limit=1)
        return rows[0] if rows else None

    def count(self, table: str) -> int:
        """Number of rows in a table."""
        if not self.is_available():
            return 0
        schema = self._schema(table)
        with self._lock:
            try:
                row = self._conn.execute(f"SELECT COUNT(*) AS n FROM {schema.name}").fetchone()
            except sqlite3.Error as e:
                raise LocalStoreError(f"Count of {table} failed: {e}", table=table) from e
        return int(row["n"])

    def get_ids(self, table: str, limit: Optional[int] = None) -> List[Any]:
        """Primary key values of a table."""
        if not self.is_available():
            return []
        schema = self._schema(table)
        query = f"SELECT {schema.primary_key} AS id FROM {schema.name}"
        params: List[Any] = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            try:
                rows = self._conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise LocalStoreError(f"Reading ids of {table} failed: {e}", table=table) from e
        return [row["id"] for row in rows]

    def table_exists(self, table: str) -> bool:
        if not self.is_available():
            return False
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                [table],
            ).fetchone()
        return row is not None

    def get_table_info(self, table: str) -> Optional[Dict[str, Dict[str, Any]]]:
        """
        Column metadata of an existing table.

        Returns:
            {column: {"type", "nullable", "primary_key"}} or None if the
            table does not exist (or the store is unavailable)
        """
        if not self.is_available() or not _IDENTIFIER.match(table):
            return None
        with self._lock:
            rows = self._conn.execute(f"PRAGMA table_info({table})").fetchall()
        if not rows:
            return None
        return {
            row["name"]: {
                "type": row["type"],
                "nullable": not row["notnull"],
                "primary_key": bool(row["pk"]),
            }
            for row in rows
        }

    def get_table_counts(self) -> Dict[str, int]:
        """Row counts of every catalog table that exists locally."""
        if not self.is_available():
            return {}
        return {
            name: self.count(name)
            for name in self.catalog
            if self.table_exists(name)
        }

    def query(self, sql: str, params: Optional[Iterable] = None) -> List[Dict[str, Any]]:
        """Execute a raw read-only SQL query."""
        if not self.is_available():
            return []
        with self._lock:
            try:
                rows = self._conn.execute(sql, list(params or [])).fetchall()
            except sqlite3.Error as e:
                raise LocalStoreError(f"Query failed: {e}") from e
        return [dict(row) for row in rows]

    # =========================================================================
    # WRITES
    # =========================================================================

    def execute(self, sql: str, params: Optional[Iterable] = None) -> int:
        """
        Execute a raw SQL statement (DDL / repair) in its own transaction.

        Returns:
            Affected row count (0 when unavailable)
        """
        if not self.is_available():
            return 0
        try:
            with self.transaction() as conn:
                cursor = conn.execute(sql, list(params or []))
                return cursor.rowcount
        except sqlite3.Error as e:
            raise LocalStoreError(f"Statement failed: {e}") from e

    def create_table(self, schema: TableSchema) -> bool:
        """Create a table and its indexes if missing."""
        if not self.is_available():
            return False
        try:
            with self.transaction() as conn:
                conn.execute(schema.create_table_sql())
                for index_sql in schema.indexes:
                    conn.execute(index_sql)
        except sqlite3.Error as e:
            raise LocalStoreError(f"Create table {schema.name} failed: {e}", table=schema.name) from e
        logger.info(f"Created table: {schema.name}")
        return True

    def upsert(self, table: str, record: Dict[str, Any]) -> bool:
        """
        Insert or replace a single record.

        Storage errors are logged and reported as False.
        """
        if not self.is_available():
            return False
        schema = self._schema(table)
        values = self._encode_record(schema, record, utc_now())
        try:
            with self.transaction() as conn:
                conn.execute(self._upsert_sql(schema), values)
            return True
        except sqlite3.Error as e:
            logger.error(f"Upsert into {table} failed for id={record.get(schema.primary_key)}: {e}")
            return False

    def bulk_upsert(self, table: str, records: List[Dict[str, Any]]) -> int:
        """
        Insert or replace many records in one transaction.

        Records are applied in input order, in chunks, yielding the thread
        between chunks. Any failure rolls back the whole call.

        The store lock and the transaction stay held across every chunk, so
        other readers and writers of this store wait for the whole batch;
        the yield only lets threads that do not touch the store run.

        Returns:
            Number of records written (0 when unavailable)

        Raises:
            LocalWriteError: If any row fails; the table is left unchanged
        """
        if not self.is_available() or not records:
            return 0
        schema = self._schema(table)
        sql = self._upsert_sql(schema)
        stamp = utc_now()

        try:
            with self.transaction() as conn:
                for start in range(0, len(records), self.chunk_size):
                    if start:
                        time.sleep(0)
                    chunk = records[start:start + self.chunk_size]
                    conn.executemany(
                        sql,
                        [self._encode_record(schema, record, stamp) for record in chunk],
                    )
        except sqlite3.Error as e:
            logger.error(f"Bulk upsert into {table} rolled back ({len(records)} records): {e}")
            raise LocalWriteError(
                f"Bulk upsert into {table} failed: {e}",
                table=table,
                record_count=len(records),
            ) from e

        logger.debug(f"Upserted {len(records)} records into {table}")
        return len(records)

    # =========================================================================
    # KEY-VALUE SETTINGS
    # =========================================================================

    def save_key_value(
        self,
        table: str,
        key: str,
        value: Any,
        updated_at: Optional[str] = None,
    ) -> bool:
        """Insert or replace one setting; value is JSON-encoded."""
        if table not in KEY_VALUE_TABLES:
            raise UnknownTableError(f"{table} is not a key-value table", table=table)
        return self.upsert(
            table,
            {"key": key, "value": value, "updated_at": updated_at or utc_now()},
        )

    def get_key_values(self, table: str) -> Dict[str, Any]:
        """All settings of a key-value table as {key: decoded value}."""
        if table not in KEY_VALUE_TABLES:
            raise UnknownTableError(f"{table} is not a key-value table", table=table)
        return {row["key"]: row["value"] for row in self.get_all(table)}

    # =========================================================================
    # SYNC METADATA
    # =========================================================================

    def update_sync_metadata(self, table_name: str, error: Optional[str] = None) -> bool:
        """
        Record a sync attempt for a table.

        Increments sync_count from its prior value, refreshes last_sync and
        records (or clears) last_error in a single statement.
        """
        if not self.is_available():
            return False
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO sync_metadata (table_name, last_sync, sync_count, last_error)
                    VALUES (
                        ?,
                        ?,
                        COALESCE((SELECT sync_count FROM sync_metadata WHERE table_name = ?), 0) + 1,
                        ?
                    )
                    """,
                    [table_name, utc_now(), table_name, error],
                )
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to update sync metadata for {table_name}: {e}")
            return False

    def get_sync_metadata(self) -> List[Dict[str, Any]]:
        """All sync_metadata rows."""
        if not self.is_available():
            return []
        return self.query("SELECT * FROM sync_metadata ORDER BY table_name")

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def to_dataframe(self, table: str) -> pd.DataFrame:
        """
        Load a table into a pandas DataFrame (read-only debugging view).

        Returns:
            DataFrame with table data (empty when unavailable)
        """
        if not self.is_available():
            return pd.DataFrame()
        schema = self._schema(table)
        with self._lock:
            return pd.read_sql_query(f"SELECT * FROM {schema.name}", self._conn)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def clear_all(self) -> bool:
        """Delete all rows from every existing catalog table. Tables are kept."""
        if not self.is_available():
            return False
        try:
            with self.transaction() as conn:
                existing = self._existing_tables()
                for name in self.catalog:
                    if name in existing:
                        conn.execute(f"DELETE FROM {name}")
        except sqlite3.Error as e:
            logger.error(f"Failed to clear local database: {e}")
            return False
        logger.info("Local database cleared")
        return True
