"""
Tests for SqliteStore: writes, reads, scope filtering, search and redaction.
"""

import sqlite3

import pytest

from kindling.errors import (
    AlreadyClosed,
    Conflict,
    DuplicateOpenCapsule,
    MalformedQuery,
    NotFound,
    StorageFailure,
)
from kindling.store import SqliteStore, is_query_syntax_error
from kindling.types import REDACTED_CONTENT, Capsule, Observation, Pin, ScopeIds, Summary


def _obs(id, content, ts=1000, kind="message", **scope) -> Observation:
    return Observation(id=id, kind=kind, content=content, ts=ts, scope_ids=ScopeIds(**scope))


def _capsule(id, type="session", opened_at=1000, **scope) -> Capsule:
    return Capsule(id=id, type=type, intent="work", opened_at=opened_at, scope_ids=ScopeIds(**scope))


class TestObservations:
    """Observation writes and reads."""

    def test_insert_and_get(self, store):
        obs = _obs("o1", "npm test failed", session_id="s1", repo_id="/repo")
        store.insert_observation(obs)
        loaded = store.get_observation("o1")
        assert loaded == obs

    def test_get_missing_returns_none(self, store):
        assert store.get_observation("nope") is None

    def test_duplicate_id_rejected(self, store):
        store.insert_observation(_obs("o1", "first"))
        with pytest.raises(Conflict, match="o1"):
            store.insert_observation(_obs("o1", "second"))
        assert store.get_observation("o1").content == "first"

    def test_engine_error_is_storage_failure(self):
        s = SqliteStore.in_memory()
        s._conn.close()
        with pytest.raises(StorageFailure):
            s.insert_observation(_obs("o1", "first"))

    def test_query_is_newest_first_and_scoped(self, store):
        store.insert_observation(_obs("a", "one", ts=1, session_id="s1"))
        store.insert_observation(_obs("b", "two", ts=2, session_id="s1"))
        store.insert_observation(_obs("c", "three", ts=3, session_id="s2"))
        result = store.query_observations(ScopeIds(session_id="s1"))
        assert [o.id for o in result] == ["b", "a"]

    def test_absent_scope_dimension_matches_all(self, store):
        store.insert_observation(_obs("a", "one", session_id="s1", repo_id="/r"))
        store.insert_observation(_obs("b", "two", session_id="s2", repo_id="/r"))
        result = store.query_observations(ScopeIds(repo_id="/r"))
        assert {o.id for o in result} == {"a", "b"}

    def test_query_time_window_and_kind(self, store):
        store.insert_observation(_obs("a", "one", ts=10, kind="command"))
        store.insert_observation(_obs("b", "two", ts=20, kind="error"))
        store.insert_observation(_obs("c", "three", ts=30, kind="command"))
        assert [o.id for o in store.query_observations(since=15, until=30)] == ["c", "b"]
        assert [o.id for o in store.query_observations(kind="command")] == ["c", "a"]

    def test_evidence_snippets_in_requested_order(self, store):
        store.insert_observation(_obs("a", "x" * 300))
        store.insert_observation(_obs("b", "short"))
        snippets = store.get_evidence_snippets(["b", "missing", "a"], max_chars=50)
        assert [s["observationId"] for s in snippets] == ["b", "a"]
        assert snippets[1]["snippet"] == "x" * 50 + "..."


class TestRedaction:
    """Redaction blanks content and removes it from search."""

    def test_redact_replaces_content(self, store):
        store.insert_observation(_obs("o1", "secret token abc123"))
        store.redact_observation("o1")
        obs = store.get_observation("o1")
        assert obs.redacted is True
        assert obs.content == REDACTED_CONTENT

    def test_redacted_not_searchable(self, store):
        store.insert_observation(_obs("o1", "secret token abc123"))
        assert len(store.search_observations("secret")) == 1
        store.redact_observation("o1")
        assert store.search_observations("secret") == []

    def test_redacted_hidden_from_queries_by_default(self, store):
        store.insert_observation(_obs("o1", "hello"))
        store.redact_observation("o1")
        assert store.query_observations() == []
        assert len(store.query_observations(include_redacted=True)) == 1

    def test_redact_twice_is_noop(self, store):
        store.insert_observation(_obs("o1", "hello"))
        store.redact_observation("o1")
        store.redact_observation("o1")
        assert store.counts()["redacted"] == 1

    def test_redact_missing(self, store):
        with pytest.raises(NotFound):
            store.redact_observation("nope")


class TestCapsules:
    """Capsule lifecycle at the storage level."""

    def test_create_and_get(self, store):
        store.create_capsule(_capsule("c1", session_id="s1"))
        capsule = store.get_capsule("c1")
        assert capsule.status == "open"
        assert capsule.observation_ids == []
        assert capsule.summary_id is None

    def test_one_open_session_capsule(self, store):
        store.create_capsule(_capsule("c1", session_id="s1"))
        with pytest.raises(DuplicateOpenCapsule) as exc_info:
            store.create_capsule(_capsule("c2", session_id="s1"))
        assert exc_info.value.existing_id == "c1"
        assert store.get_capsule("c2") is None

    def test_custom_capsules_may_share_session(self, store):
        store.create_capsule(_capsule("c1", session_id="s1"))
        store.create_capsule(_capsule("c2", type="custom", session_id="s1"))
        assert store.get_capsule("c2") is not None

    def test_new_session_capsule_after_close(self, store):
        store.create_capsule(_capsule("c1", session_id="s1"))
        store.close_capsule("c1", closed_at=2000)
        store.create_capsule(_capsule("c2", opened_at=3000, session_id="s1"))
        assert store.get_open_capsule_for_session("s1").id == "c2"

    def test_close_sets_status_and_time(self, store):
        store.create_capsule(_capsule("c1"))
        store.close_capsule("c1", closed_at=5000)
        capsule = store.get_capsule("c1")
        assert capsule.status == "closed"
        assert capsule.closed_at == 5000

    def test_close_twice(self, store):
        store.create_capsule(_capsule("c1"))
        store.close_capsule("c1")
        with pytest.raises(AlreadyClosed):
            store.close_capsule("c1")

    def test_close_missing(self, store):
        with pytest.raises(NotFound):
            store.close_capsule("nope")

    def test_attach_preserves_order(self, store):
        store.create_capsule(_capsule("c1"))
        for i in range(3):
            store.insert_observation(_obs(f"o{i}", f"event {i}"))
        seqs = [store.attach_observation_to_capsule("c1", f"o{i}") for i in (2, 0, 1)]
        assert seqs == [0, 1, 2]
        assert store.get_capsule("c1").observation_ids == ["o2", "o0", "o1"]

    def test_attach_missing_entities(self, store):
        store.create_capsule(_capsule("c1"))
        store.insert_observation(_obs("o1", "x"))
        with pytest.raises(NotFound):
            store.attach_observation_to_capsule("nope", "o1")
        with pytest.raises(NotFound):
            store.attach_observation_to_capsule("c1", "nope")

    def test_list_capsules_by_status(self, store):
        store.create_capsule(_capsule("c1", opened_at=1, session_id="s1"))
        store.create_capsule(_capsule("c2", opened_at=2, session_id="s2"))
        store.close_capsule("c1")
        assert [c.id for c in store.list_capsules(status="open")] == ["c2"]
        assert [c.id for c in store.list_capsules()] == ["c2", "c1"]


class TestSummariesAndPins:
    """Summaries and pins."""

    def test_summary_links_to_capsule(self, store):
        store.create_capsule(_capsule("c1"))
        store.insert_summary(Summary("s1", "c1", "done", 0.9, 2000, ["o1"]))
        assert store.get_capsule("c1").summary_id == "s1"
        assert store.get_latest_summary_for_capsule("c1").content == "done"

    def test_summary_for_missing_capsule(self, store):
        with pytest.raises(NotFound):
            store.insert_summary(Summary("s1", "nope", "done", 0.9, 2000, []))

    def test_second_summary_for_capsule_conflicts(self, store):
        store.create_capsule(_capsule("c1"))
        store.insert_summary(Summary("s1", "c1", "first", 0.9, 2000, []))
        with pytest.raises(Conflict):
            store.insert_summary(Summary("s2", "c1", "second", 0.9, 3000, []))
        assert store.get_latest_summary_for_capsule("c1").id == "s1"

    def test_duplicate_pin_id_conflicts(self, store):
        store.insert_pin(Pin("p1", "observation", "o1", created_at=1))
        with pytest.raises(Conflict):
            store.insert_pin(Pin("p1", "observation", "o2", created_at=2))
        assert store.get_pin("p1").target_id == "o1"

    def test_active_pins_exclude_expired(self, store):
        store.insert_pin(Pin("p1", "observation", "o1", created_at=1, expires_at=None))
        store.insert_pin(Pin("p2", "observation", "o2", created_at=2, expires_at=100))
        store.insert_pin(Pin("p3", "observation", "o3", created_at=3, expires_at=1000))
        active = store.list_active_pins(now=100)
        assert [p.id for p in active] == ["p3", "p1"]
        assert len(store.list_pins()) == 3

    def test_delete_pin(self, store):
        store.insert_pin(Pin("p1", "observation", "o1", created_at=1))
        store.delete_pin("p1")
        assert store.get_pin("p1") is None
        with pytest.raises(NotFound):
            store.delete_pin("p1")


class TestSearch:
    """Full-text search over observations and summaries."""

    def test_stemmed_match(self, store):
        store.insert_observation(_obs("o1", "npm test failed with 3 errors"))
        store.insert_observation(_obs("o2", "refactored the parser"))
        hits = store.search_observations("failing")
        if store.fts_enabled:
            assert [o.id for o, _ in hits] == ["o1"]

    def test_search_respects_scope(self, store):
        store.insert_observation(_obs("o1", "build broke", session_id="s1"))
        store.insert_observation(_obs("o2", "build broke again", session_id="s2"))
        hits = store.search_observations("build", ScopeIds(session_id="s2"))
        assert [o.id for o, _ in hits] == ["o2"]

    def test_summary_search_scoped_through_capsule(self, store):
        store.create_capsule(_capsule("c1", repo_id="/a"))
        store.create_capsule(_capsule("c2", type="custom", repo_id="/b"))
        store.insert_summary(Summary("s1", "c1", "fixed flaky login test", 0.9, 1, []))
        store.insert_summary(Summary("s2", "c2", "fixed login redirect", 0.9, 2, []))
        hits = store.search_summaries("login", ScopeIds(repo_id="/b"))
        assert [s.id for s, _ in hits] == ["s2"]

    def test_malformed_query_raises(self, store):
        if not store.fts_enabled:
            pytest.skip("requires FTS5")
        store.insert_observation(_obs("o1", "anything"))
        with pytest.raises(MalformedQuery):
            store.search_observations('"unterminated')

    def test_unknown_column_filter_is_malformed(self, store):
        if not store.fts_enabled:
            pytest.skip("requires FTS5")
        store.insert_observation(_obs("o1", "login failed"))
        with pytest.raises(MalformedQuery):
            store.search_observations("nosuch:login")

    def test_schema_column_error_is_not_query_syntax(self):
        schema_error = sqlite3.OperationalError("no such column: o.redacted")
        assert not is_query_syntax_error(schema_error, "login")
        unrelated = sqlite3.OperationalError("no such column: session_key")
        assert not is_query_syntax_error(unrelated, "login")
        from_query = sqlite3.OperationalError("no such column: nosuch")
        assert is_query_syntax_error(from_query, "nosuch:login")


class TestCounts:
    def test_counts(self, store):
        store.insert_observation(_obs("o1", "x", session_id="s1"))
        store.insert_observation(_obs("o2", "y", session_id="s2"))
        store.create_capsule(_capsule("c1", session_id="s1"))
        store.insert_summary(Summary("s1", "c1", "done", 0.5, 1, []))
        counts = store.counts(ScopeIds(session_id="s1"))
        assert counts["observations"] == 1
        assert counts["capsules"] == 1
        assert counts["open_capsules"] == 1
        assert counts["summaries"] == 1
        assert counts["pins"] == 0


class TestTransactions:
    """transaction() atomicity."""

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert_observation(_obs("o1", "x"))
                raise RuntimeError("abort")
        assert store.get_observation("o1") is None

    def test_nested_failure_only_undoes_inner(self, store):
        with store.transaction():
            store.insert_observation(_obs("o1", "outer"))
            with pytest.raises(RuntimeError):
                with store.transaction():
                    store.insert_observation(_obs("o2", "inner"))
                    raise RuntimeError("abort inner")
        assert store.get_observation("o1") is not None
        assert store.get_observation("o2") is None


class TestBackends:
    """File-backed and in-memory backends behave the same."""

    def test_file_store_persists(self, tmp_path):
        path = tmp_path / "kindling.db"
        with SqliteStore(path) as s:
            s.insert_observation(_obs("o1", "persisted"))
        with SqliteStore(path) as s:
            assert s.get_observation("o1").content == "persisted"

    def test_file_store_uses_wal(self, file_store):
        mode = file_store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_in_memory_snapshot(self, store):
        store.insert_observation(_obs("o1", "snapshot me"))
        data = store.to_bytes()
        with SqliteStore.in_memory(data) as copy:
            assert copy.get_observation("o1").content == "snapshot me"
            assert copy.migration_status().up_to_date

    def test_snapshot_requires_memory_backend(self, tmp_path):
        with pytest.raises(ValueError):
            SqliteStore(tmp_path / "x.db", snapshot=b"")
