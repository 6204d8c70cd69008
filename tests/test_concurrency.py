"""
Concurrency tests for SqliteStore.

Verifies that multiple processes can safely write the same database file,
and that the one-open-capsule-per-session rule holds under contention.

Uses multiprocessing (not threading) to simulate separate writer processes.
"""

import multiprocessing
import threading
from pathlib import Path

import pytest

from kindling.errors import DuplicateOpenCapsule
from kindling.store import SqliteStore
from kindling.types import Capsule, Observation, ScopeIds


# Worker functions must be top-level for multiprocessing spawn compatibility


def _worker_insert_observations(db_path: str, worker_id: int, count: int):
    """Worker that inserts uniquely-identified observations."""
    from kindling.store import SqliteStore
    from kindling.types import Observation, ScopeIds
    with SqliteStore(Path(db_path)) as store:
        for i in range(count):
            store.insert_observation(Observation(
                id=f"w{worker_id}-o{i}",
                kind="message",
                content=f"event {i} from worker {worker_id}",
                ts=i,
                scope_ids=ScopeIds(agent_id=f"worker{worker_id}"),
            ))


def _worker_open_session(db_path: str, worker_id: int, results):
    """Worker that tries to open the same session's capsule."""
    from kindling.errors import DuplicateOpenCapsule
    from kindling.store import SqliteStore
    from kindling.types import Capsule, ScopeIds
    with SqliteStore(Path(db_path)) as store:
        try:
            store.create_capsule(Capsule(
                id=f"cap-{worker_id}", type="session", intent="race",
                opened_at=worker_id, scope_ids=ScopeIds(session_id="shared"),
            ))
            results.put(("opened", worker_id))
        except DuplicateOpenCapsule as e:
            results.put(("conflict", e.existing_id))


def _run_all(ctx, target, args_list, timeout=60):
    processes = [ctx.Process(target=target, args=args) for args in args_list]
    for p in processes:
        p.start()
    for p in processes:
        p.join(timeout=timeout)
    return processes


class TestConcurrentWrites:
    """Multiple processes writing to one store file."""

    @pytest.mark.slow
    def test_parallel_inserts_no_data_loss(self, tmp_path):
        """4 workers each write unique observations; all must be present after."""
        db_path = str(tmp_path / "kindling.db")
        num_workers, per_worker = 4, 25

        # Pre-create the database so migrations don't race with writes
        SqliteStore(Path(db_path)).close()

        ctx = multiprocessing.get_context("spawn")
        processes = _run_all(
            ctx, _worker_insert_observations,
            [(db_path, w, per_worker) for w in range(num_workers)],
        )
        assert all(p.exitcode == 0 for p in processes)

        with SqliteStore(Path(db_path)) as store:
            assert store.counts()["observations"] == num_workers * per_worker
            for w in range(num_workers):
                assert len(store.query_observations(ScopeIds(agent_id=f"worker{w}"))) == per_worker

    @pytest.mark.slow
    def test_single_open_session_capsule_across_processes(self, tmp_path):
        """Racing openers: exactly one succeeds, the rest see its id."""
        db_path = str(tmp_path / "kindling.db")
        SqliteStore(Path(db_path)).close()

        ctx = multiprocessing.get_context("spawn")
        results = ctx.Queue()
        num_workers = 4
        processes = _run_all(
            ctx, _worker_open_session,
            [(db_path, w, results) for w in range(num_workers)],
        )
        assert all(p.exitcode == 0 for p in processes)

        outcomes = [results.get(timeout=5) for _ in range(num_workers)]
        opened = [v for kind, v in outcomes if kind == "opened"]
        conflicts = [v for kind, v in outcomes if kind == "conflict"]
        assert len(opened) == 1
        assert conflicts == [f"cap-{opened[0]}"] * (num_workers - 1)

        with SqliteStore(Path(db_path)) as store:
            assert store.counts()["open_capsules"] == 1


class TestThreadedWrites:
    """One store shared by threads in a single process."""

    def test_threads_share_connection(self, file_store):
        errors = []

        def writer(n):
            try:
                for i in range(20):
                    file_store.insert_observation(Observation(
                        id=f"t{n}-{i}", kind="message", content="x", ts=i, scope_ids=ScopeIds(),
                    ))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert file_store.counts()["observations"] == 80

    def test_threads_race_for_session(self, file_store):
        outcomes = []
        lock = threading.Lock()

        def opener(n):
            try:
                file_store.create_capsule(Capsule(
                    id=f"c{n}", type="session", intent="race", opened_at=n,
                    scope_ids=ScopeIds(session_id="s1"),
                ))
                result = "opened"
            except DuplicateOpenCapsule:
                result = "conflict"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=opener, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(outcomes) == ["conflict"] * 5 + ["opened"]

    def test_reads_alongside_writes(self, file_store):
        errors = []
        done = threading.Event()

        def writer():
            try:
                for i in range(50):
                    file_store.insert_observation(Observation(
                        id=f"w-{i}", kind="message", content=f"write {i}", ts=i,
                        scope_ids=ScopeIds(session_id="s1"),
                    ))
            except Exception as e:
                errors.append(e)
            finally:
                done.set()

        def reader():
            try:
                while not done.is_set():
                    file_store.get_observation("w-0")
                    file_store.query_observations(ScopeIds(session_id="s1"))
                    file_store.list_pins()
                    file_store.counts()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer)] + [
            threading.Thread(target=reader) for _ in range(3)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert file_store.counts()["observations"] == 50
