"""
Schema migration tests.

Each test builds a database at a specific schema version with raw SQL or a
truncated migration list, then opens it via SqliteStore and checks the result.
"""

import sqlite3
from pathlib import Path

import pytest

from kindling.migrations import (
    LATEST_VERSION,
    MIGRATIONS,
    EngineRuntime,
    apply_migrations,
    current_version,
    get_migration_status,
    init_runtime,
    shutdown_runtime,
)
from kindling.store import SqliteStore
from kindling.types import Observation, ScopeIds


def _connect(path: Path) -> sqlite3.Connection:
    return sqlite3.connect(str(path), isolation_level=None)


def _create_db_at(path: Path, version: int) -> None:
    """Apply migrations up to and including `version`."""
    conn = _connect(path)
    apply_migrations(conn, migrations=tuple(m for m in MIGRATIONS if m.version <= version))
    conn.close()


def _indexes(conn, table: str) -> set[str]:
    return {r[1] for r in conn.execute(f"PRAGMA index_list({table})").fetchall()}


class TestFreshDatabase:
    """A new database is migrated to the latest version."""

    def test_all_migrations_applied(self, store):
        status = store.migration_status()
        assert status.current_version == LATEST_VERSION
        assert status.pending == []
        assert [m["version"] for m in status.applied] == [m.version for m in MIGRATIONS]
        assert status.up_to_date

    def test_applied_at_recorded(self, store):
        status = store.migration_status()
        assert all(m["appliedAt"] > 0 for m in status.applied)

    def test_user_version_mirrors_schema(self, file_store):
        version = file_store._conn.execute("PRAGMA user_version").fetchone()[0]
        assert version == LATEST_VERSION

    def test_status_dict(self, store):
        d = store.migration_status().to_dict()
        assert d["currentVersion"] == LATEST_VERSION
        assert d["latestVersion"] == LATEST_VERSION
        assert [m["name"] for m in d["applied"]][0] == "001_init"


class TestRerun:
    """Applying migrations again is a no-op."""

    def test_second_run_applies_nothing(self, tmp_path):
        path = tmp_path / "k.db"
        conn = _connect(path)
        assert apply_migrations(conn) == [m.version for m in MIGRATIONS]
        assert apply_migrations(conn) == []
        assert current_version(conn) == LATEST_VERSION
        conn.close()

    def test_reopen_store(self, tmp_path):
        path = tmp_path / "k.db"
        SqliteStore(path).close()
        with SqliteStore(path) as s:
            assert len(s.migration_status().applied) == len(MIGRATIONS)


class TestUpgrade:
    """Older databases are brought forward, keeping their data."""

    def test_empty_database_reports_all_pending(self, tmp_path):
        conn = _connect(tmp_path / "k.db")
        status = get_migration_status(conn)
        assert status.current_version == 0
        assert [m["version"] for m in status.pending] == [m.version for m in MIGRATIONS]
        assert not status.up_to_date
        conn.close()

    def test_v1_database_upgraded(self, tmp_path):
        path = tmp_path / "k.db"
        _create_db_at(path, 1)
        conn = _connect(path)
        conn.execute(
            "INSERT INTO observations (id, kind, content, ts) "
            "VALUES ('o1', 'message', 'legacy deploy failure', 1000)"
        )
        conn.close()

        with SqliteStore(path) as s:
            assert s.migration_status().current_version == LATEST_VERSION
            assert s.get_observation("o1").content == "legacy deploy failure"
            # Rows written before the index existed are searchable after backfill
            hits = s.search_observations("deploy")
            assert [o.id for o, _ in hits] == ["o1"]

    def test_v3_database_gets_open_session_guard(self, tmp_path):
        path = tmp_path / "k.db"
        _create_db_at(path, 3)
        conn = _connect(path)
        assert "idx_capsules_one_open_session" not in _indexes(conn, "capsules")
        conn.close()

        with SqliteStore(path) as s:
            assert "idx_capsules_one_open_session" in _indexes(s._conn, "capsules")

    def test_redacted_rows_not_backfilled(self, tmp_path):
        path = tmp_path / "k.db"
        _create_db_at(path, 1)
        conn = _connect(path)
        conn.execute(
            "INSERT INTO observations (id, kind, content, ts, redacted) "
            "VALUES ('o1', 'message', '[redacted]', 1000, 1)"
        )
        conn.close()

        with SqliteStore(path) as s:
            assert s.search_observations("redacted") == []


class TestSchemaConstraints:
    """CHECK constraints reject values validators would reject."""

    def test_invalid_kind_rejected_by_schema(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            store._conn.execute(
                "INSERT INTO observations (id, kind, content, ts) "
                "VALUES ('o1', 'bogus', 'x', 1)"
            )

    def test_confidence_range_enforced(self, store):
        store._conn.execute(
            "INSERT INTO capsules (id, type, intent, opened_at) VALUES ('c1', 'custom', 'x', 1)"
        )
        with pytest.raises(sqlite3.IntegrityError):
            store._conn.execute(
                "INSERT INTO summaries (id, capsule_id, content, confidence, created_at) "
                "VALUES ('s1', 'c1', 'x', 2.0, 1)"
            )


class TestRuntime:
    """Process-wide engine runtime."""

    def test_init_is_idempotent(self):
        assert init_runtime() is init_runtime()

    def test_shutdown_forces_reprobe(self):
        first = init_runtime()
        shutdown_runtime()
        second = init_runtime()
        assert second is not first
        assert second.fts5 == first.fts5

    def test_probe_reports_version(self):
        runtime = EngineRuntime.probe()
        assert runtime.sqlite_version == sqlite3.sqlite_version

    def test_without_fts5_store_still_works(self, tmp_path):
        path = tmp_path / "k.db"
        conn = _connect(path)
        apply_migrations(conn, runtime=EngineRuntime(sqlite3.sqlite_version, fts5=False))
        conn.close()

        with SqliteStore(path) as s:
            assert s.fts_enabled is False
            assert s.migration_status().up_to_date
            s.insert_observation(Observation("o1", "message", "npm test failed", 1, ScopeIds()))
            hits = s.search_observations("test")
            assert [(o.id, rank) for o, rank in hits] == [("o1", 0.0)]
