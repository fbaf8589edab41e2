# =============================================================================
# kiosk_core/offline/database_audit.py
# Audit and Repair of the Local Mirror
# =============================================================================
"""
DatabaseAudit - compares the local SQLite mirror with the SchemaCatalog and
the remote source, and repairs schema and data drift on request.

Diagnosis (audit_database) is read-only. Repairs (fix_schema_issues,
sync_missing_data, auto_fix_database) only run when called explicitly.
Every public method returns a plain, JSON-serializable dict; unexpected
exceptions become {"success": False, "error", "code"}.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from kiosk_core.data.supabase_client import RemoteCaller, RemoteSource
from kiosk_core.errors import (
    ErrorContext,
    KioskCacheError,
    LocalStoreError,
    SchemaRepairError,
    error_boundary,
    failure_result,
)
from kiosk_core.logging import LogContext
from kiosk_core.offline.local_database import LocalDatabase
from kiosk_core.offline.schema_catalog import SCHEMA_CATALOG, TableSchema, get_table_schema

logger = logging.getLogger(__name__)

# Issue types
MISSING_TABLE = "MISSING_TABLE"
MISSING_COLUMN = "MISSING_COLUMN"
TYPE_MISMATCH = "TYPE_MISMATCH"
EXTRA_COLUMN = "EXTRA_COLUMN"

# Data sync status
SYNCED = "synced"
LOCAL_BEHIND = "local_behind"
LOCAL_AHEAD = "local_ahead"
SUPABASE_ERROR = "supabase_error"
UNKNOWN = "unknown"

STORE_UNAVAILABLE = "Local database not available"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _message(error: Exception) -> str:
    if isinstance(error, KioskCacheError):
        return error.message
    return str(error)


def compare_schema(local_columns: Optional[Dict[str, Dict[str, Any]]], schema: TableSchema) -> List[Dict[str, Any]]:
    """
    Diff the columns of an existing table against the catalog.

    Args:
        local_columns: Output of LocalDatabase.get_table_info (None if absent)
        schema: Expected table

    Returns:
        List of issue dicts
    """
    if local_columns is None:
        return [{"type": MISSING_TABLE, "severity": "critical"}]

    issues = []
    for name, spec in schema.columns.items():
        local = local_columns.get(name)
        if local is None:
            issues.append({
                "type": MISSING_COLUMN,
                "column": name,
                "expected": spec.type,
                "nullable": spec.nullable,
                "severity": "high",
            })
        elif (local["type"] or "").upper() != spec.type.upper():
            # SQLite is flexible with types, so only warn
            issues.append({
                "type": TYPE_MISMATCH,
                "column": name,
                "expected": spec.type,
                "actual": local["type"],
                "severity": "low",
            })

    for name in local_columns:
        if name not in schema.columns:
            issues.append({"type": EXTRA_COLUMN, "column": name, "severity": "low"})

    return issues


class DatabaseAudit:
    """
    Audit and repair of the local mirror.

    Usage:
        audit = DatabaseAudit(store, remote)
        report = audit.audit_database()
        if report["summary"]["total_issues"]:
            audit.fix_schema_issues(report)
    """

    SAMPLE_SIZE = 10
    LOCAL_ID_SCAN_LIMIT = 10000
    DEFAULT_MAX_RECORDS = 1000

    def __init__(
        self,
        store: LocalDatabase,
        remote: Optional[RemoteSource],
        catalog: Optional[Dict[str, TableSchema]] = None,
        sample_size: int = SAMPLE_SIZE,
        remote_timeout: Optional[float] = 30,
    ):
        self.store = store
        self.remote = remote
        self.catalog = catalog if catalog is not None else SCHEMA_CATALOG
        self.sample_size = sample_size
        self.remote_timeout = remote_timeout
        self._caller = RemoteCaller(thread_name_prefix="AuditRemote")

    def close(self) -> None:
        """Release the remote worker pool."""
        self._caller.shutdown()

    def _unavailable(self) -> Dict[str, Any]:
        return {"success": False, "error": STORE_UNAVAILABLE, "timestamp": _now()}

    # =========================================================================
    # DIAGNOSIS
    # =========================================================================

    @error_boundary(default_return=failure_result, error_message="Database audit failed")
    def audit_database(self) -> Dict[str, Any]:
        """
        Compare every catalog table against the local store and the remote.

        Returns:
            {"success", "timestamp", "storage_backend", "tables", "summary"}
        """
        if not self.store.is_available():
            return self._unavailable()

        report = {
            "success": True,
            "timestamp": _now(),
            "storage_backend": self.store.storage_backend,
            "tables": {},
            "summary": {
                "total_issues": 0,
                "critical": 0,
                "high": 0,
                "low": 0,
                "tables_out_of_sync": 0,
            },
        }
        summary = report["summary"]

        with LogContext(logger, "Database audit"):
            for name, schema in self.catalog.items():
                table_audit = self._audit_table(schema)
                for issue in table_audit["schema_issues"]:
                    summary["total_issues"] += 1
                    summary[issue["severity"]] += 1
                if table_audit["data_sync_status"] in (LOCAL_BEHIND, LOCAL_AHEAD):
                    summary["tables_out_of_sync"] += 1
                report["tables"][name] = table_audit

        problems = summary["total_issues"] + summary["tables_out_of_sync"]
        summary["headline"] = (
            "All synced" if problems == 0
            else f"{problems} issue{'s' if problems != 1 else ''}"
        )
        logger.info(f"Audit summary: {summary}")
        return report

    def _audit_table(self, schema: TableSchema) -> Dict[str, Any]:
        table_audit: Dict[str, Any] = {
            "exists": False,
            "schema_issues": [],
            "row_counts": {},
            "data_sync_status": UNKNOWN,
        }

        try:
            local_columns = self.store.get_table_info(schema.name)
            table_audit["exists"] = local_columns is not None
            table_audit["schema_issues"] = compare_schema(local_columns, schema)
            if local_columns is None:
                return table_audit

            counts = self._row_counts(schema)
            table_audit["row_counts"] = counts

            if not schema.remote:
                return table_audit

            if counts["remote_count"] is None:
                table_audit["data_sync_status"] = SUPABASE_ERROR
            elif counts["diff"] == 0:
                table_audit["data_sync_status"] = SYNCED
            elif counts["diff"] < 0:
                table_audit["data_sync_status"] = LOCAL_BEHIND
                table_audit["missing_count"] = abs(counts["diff"])
                table_audit["sample_missing_ids"] = self._sample_missing_ids(schema)
            else:
                table_audit["data_sync_status"] = LOCAL_AHEAD
                table_audit["extra_count"] = counts["diff"]

        except Exception as e:
            logger.error(f"Audit of {schema.name} failed: {e}")
            table_audit["error"] = _message(e)

        return table_audit

    def _row_counts(self, schema: TableSchema) -> Dict[str, Any]:
        local_count = self.store.count(schema.name)
        counts: Dict[str, Any] = {"local_count": local_count, "remote_count": None, "diff": None}

        if not schema.remote:
            return counts

        if self.remote is None:
            counts["error"] = "Remote source not configured"
            return counts

        try:
            remote_count = self._caller.call(self.remote.count_rows, self.remote_timeout, schema.name)
        except Exception as e:
            logger.error(f"Remote count error for {schema.name}: {e}")
            counts["error"] = _message(e)
            return counts

        counts["remote_count"] = remote_count
        counts["diff"] = local_count - remote_count
        return counts

    def _sample_missing_ids(self, schema: TableSchema) -> List[Any]:
        """Recent remote ids absent locally. Best-effort: [] on failure."""
        try:
            local_ids = set(self.store.get_ids(schema.name, limit=self.LOCAL_ID_SCAN_LIMIT))
            remote_ids = self._caller.call(
                self.remote.fetch_ids,
                self.remote_timeout,
                schema.name,
                id_column=schema.primary_key,
                order_by=schema.order_column,
                limit=self.sample_size,
            )
        except Exception as e:
            logger.warning(f"Could not sample missing ids for {schema.name}: {e}")
            return []
        return [record_id for record_id in remote_ids if record_id not in local_ids]

    # =========================================================================
    # REPAIR
    # =========================================================================

    @error_boundary(default_return=failure_result, error_message="Schema repair failed")
    def fix_schema_issues(self, report: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create missing tables and add missing columns found by an audit.

        Type mismatches and extra columns are never repaired. Each fix is
        independent; failures are collected in "errors".
        """
        if not self.store.is_available():
            return self._unavailable()
        if not report or not report.get("success"):
            return {"success": False, "error": "No successful audit to repair", "timestamp": _now()}

        fixes = {
            "success": True,
            "timestamp": _now(),
            "applied_fixes": [],
            "errors": [],
        }

        with LogContext(logger, "Schema repair"):
            for name, table_audit in report.get("tables", {}).items():
                schema = self.catalog.get(name)
                if schema is None:
                    continue

                if not table_audit.get("exists"):
                    self._apply_fix(fixes, schema, "CREATE_TABLE")
                    continue

                for issue in table_audit.get("schema_issues", []):
                    if issue["type"] == MISSING_COLUMN and issue["column"] in schema.columns:
                        self._apply_fix(fixes, schema, "ADD_COLUMN", issue["column"])

        fixes["success"] = not fixes["errors"]
        logger.info(
            f"Applied {len(fixes['applied_fixes'])} fixes, {len(fixes['errors'])} errors"
        )
        return fixes

    def _apply_fix(
        self,
        fixes: Dict[str, Any],
        schema: TableSchema,
        fix: str,
        column: Optional[str] = None,
    ) -> None:
        entry = {"table": schema.name, "fix": fix}
        if column:
            entry["column"] = column

        operation = f"{fix} {schema.name}" + (f".{column}" if column else "")
        with ErrorContext(operation) as ctx:
            try:
                if fix == "CREATE_TABLE":
                    self.store.create_table(schema)
                else:
                    self.store.execute(schema.add_column_sql(column))
            except LocalStoreError as e:
                raise SchemaRepairError(
                    f"{operation} failed: {e.message}",
                    table=schema.name,
                    fix=fix,
                    column=column,
                ) from e

        if ctx.error is not None:
            fixes["errors"].append({**entry, "error": _message(ctx.error)})
        else:
            fixes["applied_fixes"].append({**entry, "success": True})

    @error_boundary(default_return=failure_result, error_message="Missing data sync failed")
    def sync_missing_data(self, table: str, max_records: int = DEFAULT_MAX_RECORDS) -> Dict[str, Any]:
        """
        Copy remote rows that are absent locally.

        Only the max_records most recent remote rows are considered. Rows
        already present locally are left untouched.

        Returns:
            {"success", "table", "synced", "total"}; synced == total == 0
            means the table was already in sync
        """
        if not self.store.is_available():
            return self._unavailable()

        schema = get_table_schema(table)
        if not schema.remote:
            return {"success": False, "error": f"{table} is a local-only table", "timestamp": _now()}
        if self.remote is None:
            return {"success": False, "error": "Remote source not configured", "timestamp": _now()}

        with LogContext(logger, f"Missing data sync for {table}"):
            try:
                local_ids = set(self.store.get_ids(table))
                rows = self._caller.call(
                    self.remote.fetch_rows,
                    self.remote_timeout,
                    table,
                    order_by=schema.order_column,
                    descending=True,
                    limit=max_records,
                )
            except Exception as e:
                self.store.update_sync_metadata(table, error=_message(e))
                raise

            missing = [row for row in rows if row.get(schema.primary_key) not in local_ids]
            if not missing:
                logger.info(f"No missing records found for {table}")
                return {
                    "success": True,
                    "table": table,
                    "synced": 0,
                    "total": 0,
                    "message": "Already in sync",
                }

            logger.info(f"Found {len(missing)} missing records in {table}")
            synced = sum(1 for record in missing if self.store.upsert(table, record))

            failed = len(missing) - synced
            self.store.update_sync_metadata(
                table,
                error=f"{failed} records failed to insert" if failed else None,
            )

        return {"success": True, "table": table, "synced": synced, "total": len(missing)}

    @error_boundary(default_return=failure_result, error_message="Auto-fix failed")
    def auto_fix_database(self) -> Dict[str, Any]:
        """
        Audit, repair the schema, backfill tables that are behind, re-audit.

        Returns:
            {"success", "timestamp", "before_audit", "schema_fixes",
             "data_syncs", "after_audit"}
        """
        with LogContext(logger, "Auto-fix database"):
            before = self.audit_database()
            if not before.get("success"):
                return {
                    "success": False,
                    "error": before.get("error"),
                    "timestamp": _now(),
                    "before_audit": before,
                }

            schema_fixes = self.fix_schema_issues(before)

            data_syncs = {}
            for name, table_audit in before["tables"].items():
                if table_audit["data_sync_status"] == LOCAL_BEHIND:
                    data_syncs[name] = self.sync_missing_data(name)

            after = self.audit_database()

        return {
            "success": bool(after.get("success")),
            "timestamp": _now(),
            "before_audit": before,
            "schema_fixes": schema_fixes,
            "data_syncs": data_syncs,
            "after_audit": after,
        }
