# =============================================================================
# kiosk_core/offline/schema_catalog.py
# Authoritative Description of the Local Mirror Tables
# =============================================================================
"""
SchemaCatalog - the expected shape of every table the kiosk mirrors.

The catalog is consumed by LocalDatabase.initialize (table creation) and by
DatabaseAudit (drift detection and repair). A new remote field has to be
added here first, otherwise every audit reports it as an extra column.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kiosk_core.errors import UnknownTableError


@dataclass(frozen=True)
class ColumnSpec:
    """One expected column."""
    type: str
    nullable: bool = True
    primary_key: bool = False
    json: bool = False  # stored as JSON-encoded TEXT

    def column_sql(self) -> str:
        if self.primary_key:
            return f"{self.type} PRIMARY KEY NOT NULL"
        if not self.nullable:
            return f"{self.type} NOT NULL"
        return self.type

    @property
    def default_literal(self) -> str:
        """Default used when a NOT NULL column is added to an existing table"""
        declared = self.type.upper()
        if declared == "INTEGER":
            return "0"
        if declared == "REAL":
            return "0.0"
        return "''"


@dataclass
class TableSchema:
    """Expected columns, indexes and sync properties of one table."""
    name: str
    columns: Dict[str, ColumnSpec]
    indexes: List[str] = field(default_factory=list)
    order_column: Optional[str] = "created_at"
    remote: bool = True

    @property
    def primary_key(self) -> str:
        for name, spec in self.columns.items():
            if spec.primary_key:
                return name
        raise ValueError(f"Table {self.name} has no primary key")

    @property
    def json_columns(self) -> List[str]:
        return [name for name, spec in self.columns.items() if spec.json]

    @property
    def column_names(self) -> List[str]:
        return list(self.columns)

    def create_table_sql(self) -> str:
        columns = ", ".join(
            f"{name} {spec.column_sql()}" for name, spec in self.columns.items()
        )
        return f"CREATE TABLE IF NOT EXISTS {self.name} ({columns})"

    def add_column_sql(self, column: str) -> str:
        spec = self.columns[column]
        if spec.nullable or spec.primary_key:
            return f"ALTER TABLE {self.name} ADD COLUMN {column} {spec.type}"
        return (
            f"ALTER TABLE {self.name} ADD COLUMN {column} {spec.type} "
            f"NOT NULL DEFAULT {spec.default_literal}"
        )


def _id() -> ColumnSpec:
    return ColumnSpec("TEXT", nullable=False, primary_key=True)


def _text(nullable: bool = True) -> ColumnSpec:
    return ColumnSpec("TEXT", nullable=nullable)


def _json(nullable: bool = True) -> ColumnSpec:
    return ColumnSpec("TEXT", nullable=nullable, json=True)


INTEGER = ColumnSpec("INTEGER")
REAL = ColumnSpec("REAL")
TEXT = ColumnSpec("TEXT")


def _key_value_table(name: str) -> TableSchema:
    return TableSchema(
        name=name,
        columns={
            "key": ColumnSpec("TEXT", nullable=False, primary_key=True),
            "value": _json(),
            "updated_at": TEXT,
            "synced_at": TEXT,
        },
        order_column="updated_at",
    )


# =============================================================================
# TABLE DEFINITIONS
# =============================================================================

PINS = TableSchema(
    name="pins",
    columns={
        "id": _id(),
        "user_id": TEXT,
        "lat": ColumnSpec("REAL", nullable=False),
        "lng": ColumnSpec("REAL", nullable=False),
        "team": TEXT,
        "name": TEXT,
        "neighborhood": TEXT,
        "hotdog": TEXT,
        "note": TEXT,
        "photo": TEXT,
        "continent": TEXT,
        "created_at": TEXT,
        "updated_at": TEXT,
        "synced_at": TEXT,
    },
    indexes=[
        "CREATE INDEX IF NOT EXISTS idx_pins_created ON pins(created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_pins_location ON pins(lat, lng)",
        "CREATE INDEX IF NOT EXISTS idx_pins_continent ON pins(continent)",
    ],
)

TRIVIA_QUESTIONS = TableSchema(
    name="trivia_questions",
    columns={
        "id": _id(),
        "question": _text(nullable=False),
        "correct_answer": _text(nullable=False),
        "incorrect_answers": _json(nullable=False),
        "category": TEXT,
        "difficulty": TEXT,
        "created_at": TEXT,
        "synced_at": TEXT,
    },
    indexes=[
        "CREATE INDEX IF NOT EXISTS idx_trivia_category ON trivia_questions(category)",
    ],
)

JUKEBOX_SONGS = TableSchema(
    name="jukebox_songs",
    columns={
        "id": _id(),
        "title": _text(nullable=False),
        "artist": TEXT,
        "album": TEXT,
        "duration": INTEGER,
        "url": TEXT,
        "cover_art": TEXT,
        "genre": TEXT,
        "created_at": TEXT,
        "synced_at": TEXT,
    },
    indexes=[
        "CREATE INDEX IF NOT EXISTS idx_songs_artist ON jukebox_songs(artist)",
    ],
)

NAV_SETTINGS = _key_value_table("nav_settings")
ADMIN_SETTINGS = _key_value_table("admin_settings")

PROXIMITY_LEARNING_SESSIONS = TableSchema(
    name="proximity_learning_sessions",
    columns={
        "id": _id(),
        "person_id": TEXT,
        "tenant_id": TEXT,
        "proximity_level": TEXT,
        "intent": TEXT,
        "confidence": REAL,
        "baseline": REAL,
        "threshold": REAL,
        "hour_of_day": INTEGER,
        "day_of_week": INTEGER,
        "triggered_action": TEXT,
        "outcome": TEXT,
        "engaged_duration_ms": INTEGER,
        "converted": INTEGER,
        "total_duration_ms": INTEGER,
        "feedback_was_correct": INTEGER,
        "started_at": TEXT,
        "created_at": TEXT,
        "is_looking_at_kiosk": INTEGER,
        "head_pose_yaw": REAL,
        "head_pose_pitch": REAL,
        "head_pose_roll": REAL,
        "distance_score": REAL,
        "trajectory_data": _json(),
        "velocity_x": REAL,
        "velocity_y": REAL,
        "synced_at": TEXT,
    },
    indexes=[
        "CREATE INDEX IF NOT EXISTS idx_learning_created ON proximity_learning_sessions(created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_learning_person ON proximity_learning_sessions(person_id)",
    ],
)

AUTONOMOUS_TASKS = TableSchema(
    name="autonomous_tasks",
    columns={
        "id": _id(),
        "request_text": _text(nullable=False),
        "request_source": TEXT,
        "requester_phone": TEXT,
        "requester_name": TEXT,
        "task_type": TEXT,
        "estimated_complexity": TEXT,
        "affected_files": _json(),
        "status": _text(nullable=False),
        "ai_provider": TEXT,
        "ai_model": TEXT,
        "ai_plan": TEXT,
        "ai_confidence": INTEGER,
        "requires_confirmation": INTEGER,
        "code_changes": _json(),
        "git_branch": TEXT,
        "git_commits": _json(),
        "deployment_url": TEXT,
        "success": INTEGER,
        "error_message": TEXT,
        "tenant_id": TEXT,
        "created_at": TEXT,
        "started_at": TEXT,
        "completed_at": TEXT,
        "duration_seconds": INTEGER,
        "synced_at": TEXT,
    },
    indexes=[
        "CREATE INDEX IF NOT EXISTS idx_autonomous_tasks_status ON autonomous_tasks(status)",
        "CREATE INDEX IF NOT EXISTS idx_autonomous_tasks_created ON autonomous_tasks(created_at DESC)",
    ],
)

SYNC_METADATA = TableSchema(
    name="sync_metadata",
    columns={
        "table_name": ColumnSpec("TEXT", nullable=False, primary_key=True),
        "last_sync": TEXT,
        "sync_count": INTEGER,
        "last_error": TEXT,
    },
    order_column="last_sync",
    remote=False,
)


SCHEMA_CATALOG: Dict[str, TableSchema] = {
    schema.name: schema
    for schema in (
        PINS,
        TRIVIA_QUESTIONS,
        JUKEBOX_SONGS,
        NAV_SETTINGS,
        ADMIN_SETTINGS,
        PROXIMITY_LEARNING_SESSIONS,
        AUTONOMOUS_TASKS,
        SYNC_METADATA,
    )
}

KEY_VALUE_TABLES = ("nav_settings", "admin_settings")


def get_table_schema(name: str) -> TableSchema:
    """
    Look up a table in the catalog.

    Raises:
        UnknownTableError: If the table is not part of the catalog
    """
    try:
        return SCHEMA_CATALOG[name]
    except KeyError:
        raise UnknownTableError(f"Unknown table: {name}", table=name)
