"""
Tests for CapsuleManager: open, close, session lookup and caching.
"""

import pytest

from kindling.capsules import DEFAULT_SUMMARY_CONFIDENCE, CapsuleManager, CloseSignals
from kindling.errors import (
    AlreadyClosed,
    Conflict,
    DuplicateOpenCapsule,
    NotFound,
    ValidationFailure,
)
from kindling.types import Observation, Summary


@pytest.fixture
def manager(store):
    return CapsuleManager(store)


class TestOpen:
    """Opening capsules."""

    def test_open_session_capsule(self, manager, store):
        capsule = manager.open("session", "fix tests", {"sessionId": "s1"})
        assert capsule.is_open
        assert store.get_capsule(capsule.id).intent == "fix tests"
        assert manager.cache_size == 1

    def test_explicit_id(self, manager):
        capsule = manager.open("custom", "x", {}, id="cap-1")
        assert capsule.id == "cap-1"

    def test_invalid_input(self, manager):
        with pytest.raises(ValidationFailure) as exc_info:
            manager.open("meeting", "", {})
        assert {e.field for e in exc_info.value.errors} == {"type", "intent"}

    def test_second_open_for_session_conflicts(self, manager):
        first = manager.open("session", "one", {"sessionId": "s1"})
        with pytest.raises(DuplicateOpenCapsule) as exc_info:
            manager.open("session", "two", {"sessionId": "s1"})
        assert isinstance(exc_info.value, Conflict)
        assert exc_info.value.existing_id == first.id
        assert first.id in str(exc_info.value)


class TestClose:
    """Closing capsules."""

    def test_close_without_summary(self, manager):
        capsule = manager.open("session", "x", {"sessionId": "s1"})
        closed = manager.close(capsule.id)
        assert closed.status == "closed"
        assert closed.closed_at is not None
        assert closed.summary_id is None
        assert manager.cache_size == 0

    def test_close_with_summary(self, manager, store):
        capsule = manager.open("session", "x", {"sessionId": "s1"})
        closed = manager.close(capsule.id, CloseSignals(
            reason="done",
            summary_content="Fixed the flaky login test",
            evidence_refs=["o1"],
        ))
        summary = store.get_summary(closed.summary_id)
        assert summary.content == "Fixed the flaky login test"
        assert summary.confidence == DEFAULT_SUMMARY_CONFIDENCE
        assert summary.evidence_refs == ["o1"]
        assert summary.created_at == closed.closed_at

    def test_close_twice(self, manager):
        capsule = manager.open("custom", "x", {})
        manager.close(capsule.id)
        with pytest.raises(AlreadyClosed):
            manager.close(capsule.id)

    def test_close_missing(self, manager):
        with pytest.raises(NotFound):
            manager.close("nope")

    def test_invalid_summary_leaves_capsule_open(self, manager, store):
        capsule = manager.open("custom", "x", {})
        with pytest.raises(ValidationFailure):
            manager.close(capsule.id, CloseSignals(
                summary_content="done", summary_confidence=3.0,
            ))
        assert store.get_capsule(capsule.id).is_open

    def test_existing_summary_keeps_capsule_open(self, manager, store):
        capsule = manager.open("session", "x", {"sessionId": "s1"})
        store.insert_summary(Summary("interim", capsule.id, "halfway", 0.5, 1, []))
        with pytest.raises(Conflict):
            manager.close(capsule.id, CloseSignals(summary_content="final summary"))
        assert store.get_capsule(capsule.id).is_open
        assert store.get_latest_summary_for_capsule(capsule.id).id == "interim"

        closed = manager.close(capsule.id)
        assert closed.status == "closed"
        assert closed.summary_id == "interim"

    def test_close_then_reopen_session(self, manager):
        first = manager.open("session", "one", {"sessionId": "s1"})
        manager.close(first.id)
        second = manager.open("session", "two", {"sessionId": "s1"})
        assert second.id != first.id


class TestLookup:
    """get, get_open and get_or_create_session."""

    def test_get_falls_back_to_store(self, manager, store):
        capsule = manager.open("custom", "x", {})
        manager.clear_cache()
        assert manager.get(capsule.id).id == capsule.id
        assert manager.get("nope") is None

    def test_get_open_requires_session(self, manager):
        with pytest.raises(ValueError):
            manager.get_open({"repoId": "/repo"})

    def test_get_open_checks_other_dimensions(self, manager):
        capsule = manager.open("session", "x", {"sessionId": "s1", "repoId": "/a"})
        assert manager.get_open({"sessionId": "s1"}).id == capsule.id
        assert manager.get_open({"sessionId": "s1", "repoId": "/a"}).id == capsule.id
        assert manager.get_open({"sessionId": "s1", "repoId": "/b"}) is None
        assert manager.get_open({"sessionId": "s2"}) is None

    def test_get_or_create_session(self, manager):
        created = manager.get_or_create_session("s1", "work", {"repoId": "/a"})
        assert created.scope_ids.session_id == "s1"
        assert created.scope_ids.repo_id == "/a"
        again = manager.get_or_create_session("s1", "other intent")
        assert again.id == created.id

    def test_invalidate_refreshes_membership(self, manager, store):
        capsule = manager.open("custom", "x", {})
        store.insert_observation(Observation("o1", "message", "step", 1))
        store.attach_observation_to_capsule(capsule.id, "o1")
        manager.invalidate(capsule.id)
        assert manager.get(capsule.id).observation_ids == ["o1"]
        assert manager.cache_size == 0
