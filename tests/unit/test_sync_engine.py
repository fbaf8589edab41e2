# =============================================================================
# tests/unit/test_sync_engine.py
# Unit Tests for SyncEngine
# =============================================================================

import threading
import time

import pytest


def _engine(store, remote, **kwargs):
    from kiosk_core.offline.sync_engine import SyncEngine

    kwargs.setdefault("upload_batch_delay", 0)
    kwargs.setdefault("fetch_timeout", 2)
    return SyncEngine(store, remote, **kwargs)


class TestSyncPass:
    """Test a full pass"""

    def test_pulls_every_table(self, temp_db, fake_remote):
        """Rows from each remote table land locally"""
        result = _engine(temp_db, fake_remote).sync_all()

        assert result["pins"] == 5
        assert result["jukebox_songs"] == 3
        assert result["trivia_questions"] == 4
        assert result["nav_settings"] == 2
        assert result["errors"] == []
        assert temp_db.count("pins") == 5
        assert temp_db.get_key_values("nav_settings") == {"games_enabled": True, "home_tab": "map"}

    def test_result_shape(self, temp_db, fake_remote):
        """Result carries duration, timestamp and the upload count"""
        result = _engine(temp_db, fake_remote).sync_all()

        assert result["duration"] >= 0
        assert "T" in result["timestamp"]
        assert result["proximity_learning_sessions_uploaded"] == 0

    def test_sync_metadata_updated_per_table(self, temp_db, fake_remote):
        """Every table step records an attempt"""
        _engine(temp_db, fake_remote).sync_all()

        rows = {row["table_name"]: row for row in temp_db.get_sync_metadata()}

        assert rows["pins"]["sync_count"] == 1
        assert rows["pins"]["last_error"] is None
        assert rows["autonomous_tasks"]["sync_count"] == 1

    def test_fetch_is_bounded_and_recent_first(self, temp_db, remote_factory, make_pin):
        """Only the N most recent rows are fetched"""
        from kiosk_core.offline.sync_engine import TableSync

        remote = remote_factory({"pins": [make_pin(i) for i in range(10)]})
        engine = _engine(temp_db, remote, plan=(TableSync("pins", limit=3),))

        result = engine.sync_all()

        assert result["pins"] == 3
        assert set(temp_db.get_ids("pins")) == {"pin-9", "pin-8", "pin-7"}

    def test_older_local_rows_are_not_pruned(self, temp_db, fake_remote, make_pin):
        """Rows outside the fetch window stay"""
        temp_db.upsert("pins", make_pin(99, created_at="2001-01-01T00:00:00+00:00"))

        _engine(temp_db, fake_remote).sync_all()

        assert temp_db.get_by_id("pins", "pin-99") is not None

    def test_learning_sessions_windowed_to_24_hours(self, temp_db, remote_factory, make_session):
        """Sessions older than a day are not pulled"""
        recent = make_session(1)
        stale = make_session(2, id="old", created_at="2020-01-01T00:00:00+00:00")
        remote = remote_factory({"proximity_learning_sessions": [recent, stale]})

        _engine(temp_db, remote).sync_all()

        assert temp_db.get_ids("proximity_learning_sessions") == ["session-1"]


class TestFailureIsolation:
    """Test that one table's failure does not affect others"""

    def test_fetch_error_recorded_and_siblings_continue(self, temp_db, fake_remote, remote_error):
        """A failing table lands in errors and in sync_metadata"""
        fake_remote.failing["trivia_questions"] = remote_error

        result = _engine(temp_db, fake_remote).sync_all()

        assert result["errors"] == [{
            "table": "trivia_questions",
            "error": "Supabase select failed: connection reset",
        }]
        assert result["trivia_questions"] == 0
        assert result["pins"] == 5
        assert result["jukebox_songs"] == 3

        meta = {row["table_name"]: row for row in temp_db.get_sync_metadata()}
        assert meta["trivia_questions"]["last_error"] == "Supabase select failed: connection reset"
        assert meta["trivia_questions"]["sync_count"] == 1

    def test_hanging_fetch_times_out(self, temp_db, fake_remote):
        """A hung call becomes a per-table timeout error"""
        release = threading.Event()
        fake_remote.blocking["jukebox_songs"] = release

        try:
            result = _engine(temp_db, fake_remote, fetch_timeout=0.2).sync_all()
        finally:
            release.set()

        errors = {err["table"]: err["error"] for err in result["errors"]}
        assert "timed out" in errors["jukebox_songs"]
        assert result["pins"] == 5

    def test_local_write_error_recorded(self, temp_db, remote_factory, make_pin):
        """A rolled-back bulk write is a per-table error"""
        remote = remote_factory({"pins": [make_pin(1), make_pin(2, lat=None)]})

        result = _engine(temp_db, remote).sync_all()

        assert [err["table"] for err in result["errors"]] == ["pins"]
        assert temp_db.count("pins") == 0
        meta = {row["table_name"]: row for row in temp_db.get_sync_metadata()}
        assert "Bulk upsert into pins failed" in meta["pins"]["last_error"]


class TestUpload:
    """Test the learning session upload phase"""

    def test_uploads_in_batches_ignoring_duplicates(self, temp_db, empty_remote, make_session):
        """Local sessions go up in batches of the configured size"""
        temp_db.bulk_upsert("proximity_learning_sessions", [make_session(i) for i in range(7)])

        result = _engine(temp_db, empty_remote, upload_batch_size=3).sync_all()

        assert result["proximity_learning_sessions_uploaded"] == 7
        batches = [rows for table, rows, _ in empty_remote.upserts]
        assert [len(rows) for rows in batches] == [3, 3, 1]
        assert all(kw == {"on_conflict": "id", "ignore_duplicates": True}
                   for _, _, kw in empty_remote.upserts)
        assert all("synced_at" not in row for row in batches[0])

    def test_failed_upload_is_recorded(self, temp_db, empty_remote, make_session, remote_error):
        """Upload failure does not stop the pull phase"""
        temp_db.upsert("proximity_learning_sessions", make_session(1))
        empty_remote.failing["proximity_learning_sessions"] = remote_error

        result = _engine(temp_db, empty_remote).sync_all()

        tables = [err["table"] for err in result["errors"]]
        assert "proximity_learning_sessions_upload" in tables
        assert result["proximity_learning_sessions_uploaded"] == 0


class TestOverlap:
    """Test the in-progress guard"""

    def test_concurrent_pass_is_dropped(self, temp_db, fake_remote):
        """A second pass while one runs returns None and is not queued"""
        release = threading.Event()
        fake_remote.blocking["pins"] = release
        engine = _engine(temp_db, fake_remote, fetch_timeout=5)
        results = []

        worker = threading.Thread(target=lambda: results.append(engine.sync_all()))
        worker.start()
        assert fake_remote.entered.wait(timeout=5)

        assert engine.is_syncing is True
        assert engine.sync_all() is None

        release.set()
        worker.join(timeout=10)

        assert results[0]["pins"] == 5
        assert engine.state.skipped_passes == 1
        meta = {row["table_name"]: row for row in temp_db.get_sync_metadata()}
        assert meta["pins"]["sync_count"] == 1


class TestLifecycle:
    """Test start / stop / interval changes"""

    def test_start_refused_when_store_unavailable(self, unavailable_db, fake_remote):
        """No timer without a store"""
        engine = _engine(unavailable_db, fake_remote)

        assert engine.start() is False
        assert engine.is_running is False
        assert fake_remote.calls == []

    def test_start_refused_without_remote(self, temp_db):
        """No timer without a remote source"""
        engine = _engine(temp_db, None)

        assert engine.start() is False
        assert engine.sync_all() is None

    def test_start_runs_immediately_and_repeats(self, temp_db, fake_remote):
        """One pass on start, then more on the cadence"""
        engine = _engine(temp_db, fake_remote, interval_minutes=0.001)
        passes = []
        engine.on_sync(passes.append)

        try:
            assert engine.start() is True
            assert len(passes) >= 1
            deadline = time.time() + 5
            while len(passes) < 3 and time.time() < deadline:
                time.sleep(0.02)
        finally:
            engine.stop()

        assert len(passes) >= 3
        assert engine.is_running is False

    def test_double_start_is_guarded(self, temp_db, fake_remote):
        """A second start does not run another immediate pass"""
        engine = _engine(temp_db, fake_remote, interval_minutes=60)
        passes = []
        engine.on_sync(passes.append)

        try:
            engine.start()
            engine.start()
        finally:
            engine.stop()

        assert len(passes) == 1

    def test_stop_is_idempotent(self, temp_db, fake_remote):
        """stop() twice is harmless"""
        engine = _engine(temp_db, fake_remote)

        engine.stop()
        engine.stop()

        assert engine.is_running is False

    def test_update_interval_restarts_running_timer(self, temp_db, fake_remote):
        """Changing cadence keeps the timer running"""
        engine = _engine(temp_db, fake_remote, interval_minutes=60)

        try:
            engine.start()
            assert engine.update_interval(30) is True
            assert engine.interval_minutes == 30
            assert engine.is_running
        finally:
            engine.stop()

    def test_update_interval_rejects_non_positive(self, temp_db, fake_remote):
        """Interval must be positive"""
        with pytest.raises(ValueError):
            _engine(temp_db, fake_remote).update_interval(0)

    def test_restart_during_blocked_pass_retires_old_loop(self, temp_db, fake_remote):
        """A loop still mid-pass when restarted exits on its own stop event"""
        release = threading.Event()
        engine = _engine(temp_db, fake_remote, interval_minutes=0.001, fetch_timeout=5)

        try:
            assert engine.start() is True
            fake_remote.entered.clear()
            fake_remote.blocking["pins"] = release
            assert fake_remote.entered.wait(timeout=5)

            old = engine._sync_thread
            engine.STOP_JOIN_TIMEOUT = 0.05
            assert engine.update_interval(60) is True

            release.set()
            old.join(timeout=5)

            assert not old.is_alive()
            assert engine.is_running
            assert engine._sync_thread is not old
        finally:
            release.set()
            engine.stop()

    def test_repeated_timeouts_keep_thread_count_bounded(self, temp_db, fake_remote):
        """Hung fetches across passes never exceed the remote worker pool"""
        release = threading.Event()
        fake_remote.blocking["jukebox_songs"] = release
        engine = _engine(temp_db, fake_remote, fetch_timeout=0.05)

        try:
            for _ in range(5):
                result = engine.sync_all()
                assert any(err["table"] == "jukebox_songs" for err in result["errors"])
            workers = [t for t in threading.enumerate() if t.name.startswith("SyncRemote")]
            assert len(workers) <= engine._caller.max_workers
        finally:
            release.set()
            engine.stop()


class TestListeners:
    """Test sync listeners"""

    def test_listeners_called_in_order_despite_failures(self, temp_db, fake_remote):
        """A failing listener does not stop the next one"""
        engine = _engine(temp_db, fake_remote)
        calls = []

        def broken(result):
            calls.append("broken")
            raise RuntimeError("listener bug")

        engine.on_sync(broken)
        engine.on_sync(lambda result: calls.append("second"))

        engine.sync_all()

        assert calls == ["broken", "second"]

    def test_unsubscribe(self, temp_db, fake_remote):
        """Removed listeners are not called"""
        engine = _engine(temp_db, fake_remote)
        calls = []
        unsubscribe = engine.on_sync(calls.append)

        unsubscribe()
        engine.force_sync()

        assert calls == []


class TestStats:
    """Test status reporting"""

    def test_stats_after_sync(self, temp_db, fake_remote):
        """Stats expose metadata, counts and backend"""
        engine = _engine(temp_db, fake_remote)
        engine.sync_all()

        stats = engine.get_sync_stats()

        assert stats["storage_backend"] == "native-file"
        assert stats["is_syncing"] is False
        assert stats["last_sync"] is not None
        assert stats["tables"]["pins"]["sync_count"] == 1
        assert stats["row_counts"]["pins"] == 5

    def test_stats_none_when_unavailable(self, unavailable_db, fake_remote):
        """No stats without a store"""
        assert _engine(unavailable_db, fake_remote).get_sync_stats() is None
