# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import requests

from kiosk_core.data.supabase_client import RemoteSource
from kiosk_core.errors import RemoteFetchError
from kiosk_core.offline.local_database import LocalDatabase


BASE_TIME = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

def _stamp(minutes: int) -> str:
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat()


@pytest.fixture
def make_pin():
    """Factory for remote pin rows"""
    def _make(i: int, **overrides) -> Dict[str, Any]:
        row = {
            "id": f"pin-{i}",
            "lat": 41.88 + i * 0.001,
            "lng": -87.63 - i * 0.001,
            "team": "cubs" if i % 2 else "sox",
            "name": f"Visitor {i}",
            "neighborhood": "Loop",
            "note": f"note {i}",
            "continent": "north_america",
            "created_at": _stamp(i),
            "updated_at": _stamp(i),
            "slug": f"visitor-{i}",  # remote-only field
        }
        row.update(overrides)
        return row
    return _make


@pytest.fixture
def make_song():
    """Factory for remote jukebox rows"""
    def _make(i: int, **overrides) -> Dict[str, Any]:
        row = {
            "id": f"song-{i}",
            "title": f"Song {i}",
            "artist": "Band",
            "duration": 180 + i,
            "created_at": _stamp(i),
        }
        row.update(overrides)
        return row
    return _make


@pytest.fixture
def make_trivia():
    """Factory for remote trivia rows"""
    def _make(i: int, **overrides) -> Dict[str, Any]:
        row = {
            "id": f"q-{i}",
            "question": f"Question {i}?",
            "correct_answer": "A",
            "incorrect_answers": ["B", "C", "D"],
            "category": "chicago",
            "difficulty": "easy",
            "created_at": _stamp(i),
        }
        row.update(overrides)
        return row
    return _make


@pytest.fixture
def make_session():
    """Factory for learning session rows (created now, inside the 24h window)"""
    def _make(i: int, **overrides) -> Dict[str, Any]:
        now = datetime.now(timezone.utc) - timedelta(minutes=i)
        row = {
            "id": f"session-{i}",
            "person_id": f"person-{i}",
            "tenant_id": "chicago-mikes",
            "proximity_level": "near",
            "intent": "engaged",
            "confidence": 0.8,
            "hour_of_day": 14,
            "day_of_week": 3,
            "outcome": "converted",
            "converted": True,
            "trajectory_data": [{"x": 1, "y": 2}],
            "started_at": now.isoformat(),
            "created_at": now.isoformat(),
        }
        row.update(overrides)
        return row
    return _make


# =============================================================================
# FAKE REMOTE SOURCE
# =============================================================================

class FakeRemote(RemoteSource):
    """In-memory RemoteSource with injectable failures and hangs"""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.failing: Dict[str, Exception] = {}
        self.blocking: Dict[str, threading.Event] = {}
        self.entered = threading.Event()
        self.counts: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.upserts: List[tuple] = []

    def _enter(self, table: str, operation: str) -> None:
        self.calls.append((operation, table))
        if table in self.blocking:
            self.entered.set()
            self.blocking[table].wait(timeout=5)
        if table in self.failing:
            raise self.failing[table]

    def fetch_rows(self, table, columns="*", order_by=None, descending=True,
                   limit=None, since=None, filters=None):
        self._enter(table, "select")
        rows = [dict(row) for row in self.tables.get(table, [])]
        for col, val in (filters or {}).items():
            rows = [row for row in rows if row.get(col) == val]
        if since and order_by:
            rows = [row for row in rows if (row.get(order_by) or "") >= since]
        if order_by:
            rows.sort(key=lambda row: row.get(order_by) or "", reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            rows = [{c: row.get(c) for c in wanted} for row in rows]
        return rows

    def count_rows(self, table):
        self._enter(table, "count")
        if table in self.counts:
            return self.counts[table]
        return len(self.tables.get(table, []))

    def fetch_ids(self, table, id_column="id", order_by="created_at", limit=None):
        rows = self.fetch_rows(table, columns=id_column, order_by=order_by, limit=limit)
        return [row[id_column] for row in rows]

    def insert_rows(self, table, rows):
        self._enter(table, "insert")
        self.tables.setdefault(table, []).extend(dict(row) for row in rows)
        return len(rows)

    def upsert_rows(self, table, rows, on_conflict="id", ignore_duplicates=False):
        self._enter(table, "upsert")
        self.upserts.append((table, list(rows), {"on_conflict": on_conflict,
                                                 "ignore_duplicates": ignore_duplicates}))
        existing = {row.get(on_conflict): i for i, row in enumerate(self.tables.setdefault(table, []))}
        for row in rows:
            key = row.get(on_conflict)
            if key in existing:
                if not ignore_duplicates:
                    self.tables[table][existing[key]] = dict(row)
            else:
                existing[key] = len(self.tables[table])
                self.tables[table].append(dict(row))
        return len(rows)

    def update_rows(self, table, filters, data):
        self._enter(table, "update")
        for row in self.tables.get(table, []):
            if all(row.get(k) == v for k, v in filters.items()):
                row.update(data)

    def delete_rows(self, table, filters):
        self._enter(table, "delete")
        self.tables[table] = [
            row for row in self.tables.get(table, [])
            if not all(row.get(k) == v for k, v in filters.items())
        ]

    def delete_ids(self, table, ids, id_column="id"):
        self._enter(table, "delete")
        ids = set(ids)
        self.tables[table] = [row for row in self.tables.get(table, []) if row.get(id_column) not in ids]


@pytest.fixture
def fake_remote(make_pin, make_song, make_trivia):
    """Remote with a few rows in the main tables"""
    return FakeRemote({
        "pins": [make_pin(i) for i in range(5)],
        "jukebox_songs": [make_song(i) for i in range(3)],
        "trivia_questions": [make_trivia(i) for i in range(4)],
        "nav_settings": [
            {"key": "games_enabled", "value": True, "updated_at": _stamp(0)},
            {"key": "home_tab", "value": "map", "updated_at": _stamp(1)},
        ],
    })


@pytest.fixture
def empty_remote():
    """Remote with no rows"""
    return FakeRemote()


@pytest.fixture
def remote_error():
    """A failure as raised by SupabaseService"""
    return RemoteFetchError("Supabase select failed: connection reset", operation="select")


# =============================================================================
# LOCAL DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def temp_db(tmp_path):
    """File-backed store in a temp directory"""
    db = LocalDatabase(tmp_path / "kiosk_local.db")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def memory_db():
    """Transient in-memory store"""
    db = LocalDatabase(in_memory=True)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def unavailable_db(tmp_path):
    """Store whose location cannot be created (parent is a regular file)"""
    blocker = tmp_path / "not_a_directory"
    blocker.write_text("x")
    db = LocalDatabase(blocker / "nested" / "kiosk_local.db")
    db.initialize()
    yield db
    db.close()


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    mock_client.table.return_value.select.return_value.execute.return_value.data = []
    mock_client.table.return_value.insert.return_value.execute.return_value = MagicMock()
    return mock_client


class FakeResponse:
    """Minimal requests.Response stand-in"""

    def __init__(self, url: str, status_code: int = 200, content: bytes = b""):
        self.url = url
        self.status_code = status_code
        self.content = content

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} for {self.url}", response=self)


class FakeTileSession:
    """HTTP session serving fake PNG bytes; URLs containing a failing key get 404"""

    def __init__(self, failing: Optional[List[str]] = None, raise_on: Optional[List[str]] = None):
        self.headers: Dict[str, str] = {}
        self.failing = failing or []
        self.raise_on = raise_on or []
        self.requested: List[str] = []
        self._lock = threading.Lock()
        self.closed = False

    def get(self, url, timeout=None):
        with self._lock:
            self.requested.append(url)
        if any(key in url for key in self.raise_on):
            raise requests.ConnectionError(f"connection refused: {url}")
        if any(key in url for key in self.failing):
            return FakeResponse(url, status_code=404)
        return FakeResponse(url, content=b"\x89PNG" + url.encode())

    def close(self):
        self.closed = True


@pytest.fixture
def tile_session():
    """Fake tile server session"""
    return FakeTileSession()


@pytest.fixture
def tile_session_factory():
    """Build fake sessions with failing tiles"""
    return FakeTileSession


@pytest.fixture
def remote_factory():
    """Build FakeRemote instances"""
    return FakeRemote
