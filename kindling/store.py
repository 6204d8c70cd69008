"""
SQLite store for observations, capsules, summaries and pins.

The store is the source of truth for every entity. Other components may
hold copies (the capsule cache), but all writes go through here first.

Two backends share this class, the schema and the migration sequence:
- file-backed: `SqliteStore(path)`, WAL journal, 5 second busy timeout
- in-memory: `SqliteStore.in_memory(snapshot)`, portable via `to_bytes()`

One connection serializes all writers. Multi-step writes use
`transaction()`, which begins IMMEDIATE so the write lock is taken up front
and a competing writer waits (up to busy_timeout) instead of deadlocking.
"""

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from .errors import (
    AlreadyClosed,
    Conflict,
    DuplicateOpenCapsule,
    MalformedQuery,
    NotFound,
    StorageFailure,
)
from .migrations import (
    MigrationStatus,
    apply_migrations,
    get_migration_status,
    init_runtime,
)
from .types import (
    REDACTED_CONTENT,
    Capsule,
    Observation,
    Pin,
    ScopeIds,
    Summary,
    now_ms,
)
from .validation import (
    validate_capsule,
    validate_observation,
    validate_pin,
    validate_summary,
)

logger = logging.getLogger(__name__)

DATASET_VERSION = "1.0"
DEFAULT_BUSY_TIMEOUT_MS = 5000

# Fragments of sqlite3.OperationalError messages caused by bad MATCH syntax
_QUERY_SYNTAX_MARKERS = (
    "fts5",
    "syntax error",
    "unterminated string",
    "malformed match",
    "unknown special query",
)


@dataclass
class ImportResult:
    """Per-collection counts of rows actually inserted, plus row errors."""
    observations: int = 0
    capsules: int = 0
    summaries: int = 0
    pins: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total(self) -> int:
        return self.observations + self.capsules + self.summaries + self.pins

    def to_dict(self) -> dict[str, Any]:
        return {
            "observations": self.observations,
            "capsules": self.capsules,
            "summaries": self.summaries,
            "pins": self.pins,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "dryRun": self.dry_run,
        }


def _scope_where(
    scope: Optional[ScopeIds], alias: str = "", conditions: Optional[list] = None,
    params: Optional[list] = None,
) -> tuple[list[str], list[Any]]:
    """Append filters for the scope dimensions that are present."""
    conditions = [] if conditions is None else conditions
    params = [] if params is None else params
    if scope is None:
        return conditions, params
    prefix = f"{alias}." if alias else ""
    for column, value in scope.items():
        conditions.append(f"{prefix}{column} = ?")
        params.append(value)
    return conditions, params


def _where(conditions: list[str]) -> str:
    return ("WHERE " + " AND ".join(conditions)) if conditions else ""


def _scope_values(scope: ScopeIds) -> tuple:
    return (
        json.dumps(scope.to_dict()),
        scope.session_id,
        scope.repo_id,
        scope.agent_id,
        scope.user_id,
    )


def is_query_syntax_error(exc: sqlite3.Error, query: str = "") -> bool:
    """
    True if the error came from unparseable full-text query syntax.

    FTS5 reports an unknown column filter such as `foo:bar` as "no such
    column: foo". That only counts when the name is an unqualified term of
    the query itself; otherwise it is a schema error.
    """
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    if any(marker in message for marker in _QUERY_SYNTAX_MARKERS):
        return True
    prefix = "no such column: "
    if message.startswith(prefix):
        column = message[len(prefix):].strip()
        terms = re.findall(r"\w+", query.lower())
        return bool(column) and "." not in column and column in terms
    return False


def _like_terms(query: str) -> list[str]:
    """Split a query into LIKE patterns for engines without FTS5."""
    terms = []
    for token in query.split():
        token = token.strip('"\'()*')
        if token and token.upper() not in ("AND", "OR", "NOT", "NEAR"):
            escaped = token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            terms.append(f"%{escaped}%")
    return terms


class SqliteStore:
    """
    SQLite-backed store for all kindling entities.

    Scope filters only constrain the dimensions present in the caller's
    ScopeIds; absent dimensions match everything.
    """

    def __init__(
        self,
        path: Union[Path, str],
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        snapshot: Optional[bytes] = None,
    ):
        """
        Args:
            path: Database file, or ":memory:" for the in-memory backend
            busy_timeout_ms: How long a writer waits for the lock
            snapshot: Serialized database to load (in-memory backend only)
        """
        self._path = str(path)
        self._in_memory = self._path == ":memory:"
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._savepoint_seq = 0
        self._runtime = init_runtime()
        self._init_db(snapshot)

    @classmethod
    def in_memory(cls, snapshot: Optional[bytes] = None, **kwargs) -> "SqliteStore":
        """Open the portable in-memory backend, optionally from `to_bytes()` output."""
        return cls(":memory:", snapshot=snapshot, **kwargs)

    def _init_db(self, snapshot: Optional[bytes]) -> None:
        """Open the connection, configure pragmas and run migrations."""
        if snapshot is not None and not self._in_memory:
            raise ValueError("snapshot is only supported for in-memory stores")
        if not self._in_memory:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        # isolation_level=None gives manual transaction control (BEGIN IMMEDIATE)
        self._conn = sqlite3.connect(
            self._path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if snapshot is not None:
            self._conn.deserialize(snapshot)

        if not self._in_memory:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        self._conn.execute("PRAGMA foreign_keys=ON")

        applied = apply_migrations(self._conn, self._runtime)
        if applied:
            logger.debug("Store %s migrated to version %d", self._path, applied[-1])
        self._fts_enabled = self._table_exists("observations_fts")

    def _fetchall(self, sql: str, params: Any = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _table_exists(self, name: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE name = ?", (name,)
        ).fetchone()
        return row is not None

    @property
    def path(self) -> str:
        return self._path

    @property
    def fts_enabled(self) -> bool:
        """Whether full-text index tables exist in this database."""
        return self._fts_enabled

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        The outermost call begins an IMMEDIATE transaction; nested calls use
        savepoints so an inner failure only undoes the inner block.
        """
        with self._lock:
            conn = self._conn
            if conn.in_transaction:
                self._savepoint_seq += 1
                name = f"sp_{self._savepoint_seq}"
                conn.execute(f"SAVEPOINT {name}")
                try:
                    yield conn
                except BaseException:
                    conn.execute(f"ROLLBACK TO {name}")
                    conn.execute(f"RELEASE {name}")
                    raise
                conn.execute(f"RELEASE {name}")
            else:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    @contextmanager
    def _write_errors(self, entity: str, entity_id: str) -> Iterator[None]:
        """Map engine errors from a single-row write to kindling errors."""
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise Conflict(f"Cannot store {entity} {entity_id}: {e}") from e
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot store {entity} {entity_id}: {e}") from e

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_observation(row: sqlite3.Row) -> Observation:
        return Observation(
            id=row["id"],
            kind=row["kind"],
            content=row["content"],
            ts=row["ts"],
            scope_ids=ScopeIds.from_dict(json.loads(row["scope_ids"])),
            provenance=json.loads(row["provenance"]),
            redacted=bool(row["redacted"]),
        )

    def _row_to_capsule(self, row: sqlite3.Row) -> Capsule:
        obs_ids = [
            r["observation_id"] for r in self._conn.execute(
                "SELECT observation_id FROM capsule_observations "
                "WHERE capsule_id = ? ORDER BY seq ASC",
                (row["id"],),
            )
        ]
        summary = self._conn.execute(
            "SELECT id FROM summaries WHERE capsule_id = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (row["id"],),
        ).fetchone()
        return Capsule(
            id=row["id"],
            type=row["type"],
            intent=row["intent"],
            status=row["status"],
            opened_at=row["opened_at"],
            closed_at=row["closed_at"],
            scope_ids=ScopeIds.from_dict(json.loads(row["scope_ids"])),
            observation_ids=obs_ids,
            summary_id=summary["id"] if summary else None,
        )

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> Summary:
        return Summary(
            id=row["id"],
            capsule_id=row["capsule_id"],
            content=row["content"],
            confidence=row["confidence"],
            created_at=row["created_at"],
            evidence_refs=json.loads(row["evidence_refs"]),
        )

    @staticmethod
    def _row_to_pin(row: sqlite3.Row) -> Pin:
        return Pin(
            id=row["id"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            created_at=row["created_at"],
            scope_ids=ScopeIds.from_dict(json.loads(row["scope_ids"])),
            reason=row["reason"],
            expires_at=row["expires_at"],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def insert_observation(self, obs: Observation) -> Observation:
        """
        Persist a validated observation.

        Raises:
            Conflict: An observation with this id already exists
            StorageFailure: Any other engine error
        """
        with self._write_errors("observation", obs.id), self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO observations
                    (id, kind, content, provenance, ts,
                     scope_ids, session_id, repo_id, agent_id, user_id, redacted)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (obs.id, obs.kind, obs.content, json.dumps(obs.provenance), obs.ts,
                 *_scope_values(obs.scope_ids), 1 if obs.redacted else 0),
            )
        return obs

    def create_capsule(self, capsule: Capsule) -> Capsule:
        """
        Persist a new capsule.

        Open session capsules go through the same one-per-session check as
        `create_session_capsule`.
        """
        if capsule.type == "session" and capsule.is_open and capsule.scope_ids.session_id:
            return self.create_session_capsule(capsule)
        with self.transaction() as conn:
            self._insert_capsule_row(conn, capsule)
        return capsule

    def create_session_capsule(self, capsule: Capsule) -> Capsule:
        """
        Check for an open capsule in the session and insert, atomically.

        Raises:
            DuplicateOpenCapsule: The session already has an open capsule
        """
        session_id = capsule.scope_ids.session_id
        try:
            with self.transaction() as conn:
                existing = conn.execute(
                    "SELECT id FROM capsules WHERE session_id = ? AND status = 'open' "
                    "AND type = 'session' ORDER BY opened_at DESC LIMIT 1",
                    (session_id,),
                ).fetchone()
                if existing is not None:
                    raise DuplicateOpenCapsule(session_id, existing["id"])
                self._insert_capsule_row(conn, capsule)
        except sqlite3.IntegrityError as e:
            # Unique open-session index caught a concurrent insert
            existing = self.get_open_capsule_for_session(session_id)
            if existing is None or existing.id == capsule.id:
                raise
            raise DuplicateOpenCapsule(session_id, existing.id) from e
        return capsule

    def _insert_capsule_row(self, conn: sqlite3.Connection, capsule: Capsule) -> None:
        conn.execute(
            """
            INSERT INTO capsules
                (id, type, intent, status, opened_at, closed_at,
                 scope_ids, session_id, repo_id, agent_id, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (capsule.id, capsule.type, capsule.intent, capsule.status,
             capsule.opened_at, capsule.closed_at, *_scope_values(capsule.scope_ids)),
        )
        for obs_id in capsule.observation_ids:
            self._attach(conn, capsule.id, obs_id)

    def close_capsule(self, capsule_id: str, closed_at: Optional[int] = None) -> None:
        """
        Transition an open capsule to closed.

        Raises:
            NotFound: No such capsule
            AlreadyClosed: The capsule was already closed
        """
        closed_at = now_ms() if closed_at is None else closed_at
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE capsules SET status = 'closed', closed_at = ? "
                "WHERE id = ? AND status = 'open'",
                (closed_at, capsule_id),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT status FROM capsules WHERE id = ?", (capsule_id,)
                ).fetchone()
                if row is None:
                    raise NotFound("capsule", capsule_id)
                raise AlreadyClosed(capsule_id)

    def attach_observation_to_capsule(self, capsule_id: str, observation_id: str) -> int:
        """
        Append an observation to a capsule's ordered membership.

        Returns:
            The sequence number assigned (0-based)

        Raises:
            NotFound: The capsule or the observation does not exist
        """
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM capsules WHERE id = ?", (capsule_id,)).fetchone() is None:
                raise NotFound("capsule", capsule_id)
            if conn.execute("SELECT 1 FROM observations WHERE id = ?", (observation_id,)).fetchone() is None:
                raise NotFound("observation", observation_id)
            return self._attach(conn, capsule_id, observation_id)

    def _attach(self, conn: sqlite3.Connection, capsule_id: str, observation_id: str) -> int:
        seq = conn.execute(
            "SELECT COALESCE(MAX(seq), -1) + 1 FROM capsule_observations WHERE capsule_id = ?",
            (capsule_id,),
        ).fetchone()[0]
        conn.execute(
            "INSERT OR IGNORE INTO capsule_observations (capsule_id, observation_id, seq) "
            "VALUES (?, ?, ?)",
            (capsule_id, observation_id, seq),
        )
        return seq

    def insert_summary(self, summary: Summary) -> Summary:
        """
        Persist a summary for an existing capsule.

        Raises:
            NotFound: The capsule does not exist
            Conflict: The id is taken or the capsule already has a summary
            StorageFailure: Any other engine error
        """
        with self._write_errors("summary", summary.id), self.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM capsules WHERE id = ?", (summary.capsule_id,)
            ).fetchone() is None:
                raise NotFound("capsule", summary.capsule_id)
            conn.execute(
                """
                INSERT INTO summaries
                    (id, capsule_id, content, confidence, created_at, evidence_refs)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (summary.id, summary.capsule_id, summary.content, summary.confidence,
                 summary.created_at, json.dumps(summary.evidence_refs)),
            )
        return summary

    def insert_pin(self, pin: Pin) -> Pin:
        """Raises Conflict if a pin with this id already exists."""
        with self._write_errors("pin", pin.id), self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO pins
                    (id, target_type, target_id, reason, created_at, expires_at,
                     scope_ids, session_id, repo_id, agent_id, user_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (pin.id, pin.target_type, pin.target_id, pin.reason, pin.created_at,
                 pin.expires_at, *_scope_values(pin.scope_ids)),
            )
        return pin

    def delete_pin(self, pin_id: str) -> None:
        """Raises NotFound if the pin does not exist."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM pins WHERE id = ?", (pin_id,))
            if cursor.rowcount == 0:
                raise NotFound("pin", pin_id)

    def redact_observation(self, observation_id: str) -> None:
        """
        Blank an observation's content and drop it from the full-text index.

        Redaction is one-way. Redacting twice is a no-op.

        Raises:
            NotFound: No such observation
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT redacted FROM observations WHERE id = ?", (observation_id,)
            ).fetchone()
            if row is None:
                raise NotFound("observation", observation_id)
            if row["redacted"]:
                return
            conn.execute(
                "UPDATE observations SET content = ?, redacted = 1 WHERE id = ?",
                (REDACTED_CONTENT, observation_id),
            )

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get_observation(self, observation_id: str) -> Optional[Observation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM observations WHERE id = ?", (observation_id,)
            ).fetchone()
        return self._row_to_observation(row) if row else None

    def get_capsule(self, capsule_id: str) -> Optional[Capsule]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM capsules WHERE id = ?", (capsule_id,)
            ).fetchone()
            return self._row_to_capsule(row) if row else None

    def get_summary(self, summary_id: str) -> Optional[Summary]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM summaries WHERE id = ?", (summary_id,)
            ).fetchone()
        return self._row_to_summary(row) if row else None

    def get_pin(self, pin_id: str) -> Optional[Pin]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM pins WHERE id = ?", (pin_id,)).fetchone()
        return self._row_to_pin(row) if row else None

    def get_open_capsule_for_session(self, session_id: str) -> Optional[Capsule]:
        """Most recently opened open capsule carrying this sessionId."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM capsules WHERE session_id = ? AND status = 'open' "
                "ORDER BY opened_at DESC LIMIT 1",
                (session_id,),
            ).fetchone()
            return self._row_to_capsule(row) if row else None

    def get_latest_summary_for_capsule(self, capsule_id: str) -> Optional[Summary]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM summaries WHERE capsule_id = ? "
                "ORDER BY created_at DESC LIMIT 1",
                (capsule_id,),
            ).fetchone()
        return self._row_to_summary(row) if row else None

    def list_active_pins(
        self, scope: Optional[ScopeIds] = None, now: Optional[int] = None,
    ) -> list[Pin]:
        """Pins with no expiry or expiring after `now`, newest first."""
        now = now_ms() if now is None else now
        conditions, params = _scope_where(
            scope, conditions=["(expires_at IS NULL OR expires_at > ?)"], params=[now],
        )
        rows = self._fetchall(
            f"SELECT * FROM pins {_where(conditions)} ORDER BY created_at DESC, id ASC",
            params,
        )
        return [self._row_to_pin(r) for r in rows]

    def list_pins(self, scope: Optional[ScopeIds] = None) -> list[Pin]:
        """All pins, including expired ones, newest first."""
        conditions, params = _scope_where(scope)
        rows = self._fetchall(
            f"SELECT * FROM pins {_where(conditions)} ORDER BY created_at DESC, id ASC",
            params,
        )
        return [self._row_to_pin(r) for r in rows]

    def query_observations(
        self,
        scope: Optional[ScopeIds] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
        limit: int = 100,
        include_redacted: bool = False,
        kind: Optional[str] = None,
    ) -> list[Observation]:
        """Scope-filtered observations, newest first."""
        conditions, params = _scope_where(scope)
        if since is not None:
            conditions.append("ts >= ?")
            params.append(since)
        if until is not None:
            conditions.append("ts <= ?")
            params.append(until)
        if not include_redacted:
            conditions.append("redacted = 0")
        if kind is not None:
            conditions.append("kind = ?")
            params.append(kind)
        params.append(limit)
        rows = self._fetchall(
            f"SELECT * FROM observations {_where(conditions)} "
            "ORDER BY ts DESC, id ASC LIMIT ?",
            params,
        )
        return [self._row_to_observation(r) for r in rows]

    def list_capsules(
        self,
        scope: Optional[ScopeIds] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Capsule]:
        """Scope-filtered capsules, most recently opened first."""
        conditions, params = _scope_where(scope)
        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        params.append(limit)
        with self._lock:
            rows = self._fetchall(
                f"SELECT * FROM capsules {_where(conditions)} "
                "ORDER BY opened_at DESC, id ASC LIMIT ?",
                params,
            )
            return [self._row_to_capsule(r) for r in rows]

    def list_summaries(self, scope: Optional[ScopeIds] = None, limit: int = 100) -> list[Summary]:
        """Summaries whose capsule matches the scope, newest first."""
        conditions, params = _scope_where(scope, alias="c")
        params.append(limit)
        rows = self._fetchall(
            f"SELECT s.* FROM summaries s JOIN capsules c ON c.id = s.capsule_id "
            f"{_where(conditions)} ORDER BY s.created_at DESC, s.id ASC LIMIT ?",
            params,
        )
        return [self._row_to_summary(r) for r in rows]

    def get_evidence_snippets(
        self, observation_ids: list[str], max_chars: int = 200,
    ) -> list[dict[str, Any]]:
        """
        Short previews of the given observations, in the order requested.

        Missing ids are skipped. Redacted observations yield their
        placeholder content.
        """
        snippets = []
        for obs_id in observation_ids:
            obs = self.get_observation(obs_id)
            if obs is None:
                continue
            text = obs.content
            if len(text) > max_chars:
                text = text[:max_chars] + "..."
            snippets.append({
                "observationId": obs.id,
                "kind": obs.kind,
                "snippet": text,
                "ts": obs.ts,
            })
        return snippets

    def counts(self, scope: Optional[ScopeIds] = None) -> dict[str, int]:
        """Entity counts, optionally scope-filtered."""
        with self._lock:
            result = {}
            for table in ("observations", "capsules", "pins"):
                conditions, params = _scope_where(scope)
                result[table] = self._conn.execute(
                    f"SELECT COUNT(*) FROM {table} {_where(conditions)}", params
                ).fetchone()[0]
            conditions, params = _scope_where(scope, alias="c")
            result["summaries"] = self._conn.execute(
                f"SELECT COUNT(*) FROM summaries s JOIN capsules c ON c.id = s.capsule_id "
                f"{_where(conditions)}",
                params,
            ).fetchone()[0]
            conditions, params = _scope_where(scope, conditions=["status = 'open'"])
            result["open_capsules"] = self._conn.execute(
                f"SELECT COUNT(*) FROM capsules {_where(conditions)}", params
            ).fetchone()[0]
            conditions, params = _scope_where(scope, conditions=["redacted = 1"])
            result["redacted"] = self._conn.execute(
                f"SELECT COUNT(*) FROM observations {_where(conditions)}", params
            ).fetchone()[0]
        return result

    # -------------------------------------------------------------------------
    # Full-text search
    # -------------------------------------------------------------------------

    def search_observations(
        self,
        query: str,
        scope: Optional[ScopeIds] = None,
        include_redacted: bool = False,
    ) -> list[tuple[Observation, float]]:
        """
        Observations matching a full-text query, with raw engine rank.

        Lower rank is a better match. Redacted observations are never in the
        index; with include_redacted they can still match via LIKE fallback.

        Raises:
            MalformedQuery: The query syntax could not be parsed
            StorageFailure: Any other engine error
        """
        if not self._fts_enabled:
            return self._like_search("observations", "o", query, scope, include_redacted)
        conditions, params = _scope_where(scope, alias="o", conditions=["observations_fts MATCH ?"],
                                          params=[query])
        if not include_redacted:
            conditions.append("o.redacted = 0")
        sql = (
            "SELECT o.*, observations_fts.rank AS fts_rank FROM observations_fts "
            "JOIN observations o ON o.rowid = observations_fts.rowid "
            f"{_where(conditions)} ORDER BY fts_rank"
        )
        rows = self._run_search(sql, params, query)
        return [(self._row_to_observation(r), r["fts_rank"]) for r in rows]

    def search_summaries(
        self, query: str, scope: Optional[ScopeIds] = None,
    ) -> list[tuple[Summary, float]]:
        """
        Summaries matching a full-text query, scoped through their capsule.

        Raises:
            MalformedQuery: The query syntax could not be parsed
            StorageFailure: Any other engine error
        """
        if not self._fts_enabled:
            return self._like_search("summaries", "s", query, scope, True)
        conditions, params = _scope_where(scope, alias="c", conditions=["summaries_fts MATCH ?"],
                                          params=[query])
        sql = (
            "SELECT s.*, summaries_fts.rank AS fts_rank FROM summaries_fts "
            "JOIN summaries s ON s.rowid = summaries_fts.rowid "
            "JOIN capsules c ON c.id = s.capsule_id "
            f"{_where(conditions)} ORDER BY fts_rank"
        )
        rows = self._run_search(sql, params, query)
        return [(self._row_to_summary(r), r["fts_rank"]) for r in rows]

    def _run_search(self, sql: str, params: list, query: str) -> list[sqlite3.Row]:
        try:
            return self._fetchall(sql, params)
        except sqlite3.Error as e:
            if is_query_syntax_error(e, query):
                raise MalformedQuery(f"Cannot parse query {query!r}: {e}") from e
            raise StorageFailure(str(e)) from e

    def _like_search(
        self, table: str, alias: str, query: str, scope: Optional[ScopeIds],
        include_redacted: bool,
    ) -> list:
        terms = _like_terms(query)
        if not terms:
            return []
        conditions = [f"{alias}.content LIKE ? ESCAPE '\\'" for _ in terms]
        params: list[Any] = list(terms)
        if table == "observations":
            _scope_where(scope, alias=alias, conditions=conditions, params=params)
            if not include_redacted:
                conditions.append(f"{alias}.redacted = 0")
            sql = f"SELECT {alias}.* FROM observations {alias} {_where(conditions)}"
            convert = self._row_to_observation
        else:
            _scope_where(scope, alias="c", conditions=conditions, params=params)
            sql = (
                f"SELECT {alias}.* FROM summaries {alias} "
                f"JOIN capsules c ON c.id = {alias}.capsule_id {_where(conditions)}"
            )
            convert = self._row_to_summary
        try:
            rows = self._fetchall(sql, params)
        except sqlite3.Error as e:
            raise StorageFailure(str(e)) from e
        # Without an index every match ranks equally
        return [(convert(r), 0.0) for r in rows]

    # -------------------------------------------------------------------------
    # Export / Import
    # -------------------------------------------------------------------------

    def export_dataset(
        self,
        scope: Optional[ScopeIds] = None,
        include_redacted: bool = False,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Snapshot entities as a JSON-serializable dataset.

        Observations are ordered by (ts, id), capsules by (opened_at, id),
        summaries and pins by (created_at, id). `limit` caps observations.
        """
        conditions, params = _scope_where(scope)
        obs_conditions = list(conditions)
        if not include_redacted:
            obs_conditions.append("redacted = 0")
        limit_clause = f"LIMIT {int(limit)}" if limit else ""

        with self._lock:
            observations = [
                self._row_to_observation(r).to_dict() for r in self._conn.execute(
                    f"SELECT * FROM observations {_where(obs_conditions)} "
                    f"ORDER BY ts ASC, id ASC {limit_clause}",
                    params,
                )
            ]
            capsules = []
            for row in self._conn.execute(
                f"SELECT * FROM capsules {_where(conditions)} ORDER BY opened_at ASC, id ASC",
                params,
            ).fetchall():
                d = self._row_to_capsule(row).to_dict()
                d.pop("summaryId", None)
                capsules.append(d)
            c_conditions, c_params = _scope_where(scope, alias="c")
            summaries = [
                self._row_to_summary(r).to_dict() for r in self._conn.execute(
                    "SELECT s.* FROM summaries s JOIN capsules c ON c.id = s.capsule_id "
                    f"{_where(c_conditions)} ORDER BY s.created_at ASC, s.id ASC",
                    c_params,
                )
            ]
            pins = [
                self._row_to_pin(r).to_dict() for r in self._conn.execute(
                    f"SELECT * FROM pins {_where(conditions)} ORDER BY created_at ASC, id ASC",
                    params,
                )
            ]

        dataset = {
            "version": DATASET_VERSION,
            "exportedAt": now_ms(),
            "observations": observations,
            "capsules": capsules,
            "summaries": summaries,
            "pins": pins,
        }
        if scope is not None and not scope.is_empty():
            dataset["scope"] = scope.to_dict()
        logger.info(
            "Exported %d observations, %d capsules, %d summaries, %d pins",
            len(observations), len(capsules), len(summaries), len(pins),
        )
        return dataset

    def import_dataset(self, dataset: dict[str, Any]) -> ImportResult:
        """
        Insert dataset rows that are not already present.

        Existing ids are skipped (never overwritten) and counted in
        `skipped`. Each row is validated and inserted under its own
        savepoint: a bad row is reported in `errors` and does not undo
        rows imported before it.
        """
        result = ImportResult()
        version = dataset.get("version")
        if version != DATASET_VERSION:
            result.errors.append(f"Unsupported schema version: {version}")
            return result

        steps = (
            ("observations", "observation", validate_observation, self._import_observation),
            ("capsules", "capsule", validate_capsule, self._import_capsule),
            ("summaries", "summary", validate_summary, self._import_summary),
            ("pins", "pin", validate_pin, self._import_pin),
        )
        with self.transaction():
            for collection, label, validate, insert in steps:
                for raw in dataset.get(collection) or []:
                    row_id = raw.get("id") if isinstance(raw, dict) else None
                    if not row_id:
                        result.errors.append(f"Failed to import {label}: missing id")
                        continue
                    checked = validate(raw)
                    if not checked.ok:
                        detail = "; ".join(f"{e.field}: {e.message}" for e in checked.errors)
                        result.errors.append(f"Failed to import {label} {row_id}: {detail}")
                        continue
                    try:
                        with self.transaction() as conn:
                            inserted = insert(conn, checked.value)
                    except sqlite3.Error as e:
                        result.errors.append(f"Failed to import {label} {row_id}: {e}")
                        continue
                    if inserted:
                        setattr(result, collection, getattr(result, collection) + 1)
                    else:
                        result.skipped += 1

        if result.errors:
            logger.warning("Import finished with %d row errors", len(result.errors))
        logger.info(
            "Imported %d observations, %d capsules, %d summaries, %d pins (%d skipped)",
            result.observations, result.capsules, result.summaries, result.pins, result.skipped,
        )
        return result

    def _import_observation(self, conn: sqlite3.Connection, obs: Observation) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO observations
                (id, kind, content, provenance, ts,
                 scope_ids, session_id, repo_id, agent_id, user_id, redacted)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (obs.id, obs.kind, obs.content, json.dumps(obs.provenance), obs.ts,
             *_scope_values(obs.scope_ids), 1 if obs.redacted else 0),
        )
        return cursor.rowcount > 0

    def _import_capsule(self, conn: sqlite3.Connection, capsule: Capsule) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO capsules
                (id, type, intent, status, opened_at, closed_at,
                 scope_ids, session_id, repo_id, agent_id, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (capsule.id, capsule.type, capsule.intent, capsule.status,
             capsule.opened_at, capsule.closed_at, *_scope_values(capsule.scope_ids)),
        )
        if cursor.rowcount == 0:
            return False
        # Membership rows only for observations present in this store
        for seq, obs_id in enumerate(capsule.observation_ids):
            conn.execute(
                "INSERT OR IGNORE INTO capsule_observations (capsule_id, observation_id, seq) "
                "SELECT ?, ?, ? WHERE EXISTS (SELECT 1 FROM observations WHERE id = ?)",
                (capsule.id, obs_id, seq, obs_id),
            )
        return True

    def _import_summary(self, conn: sqlite3.Connection, summary: Summary) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO summaries
                (id, capsule_id, content, confidence, created_at, evidence_refs)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (summary.id, summary.capsule_id, summary.content, summary.confidence,
             summary.created_at, json.dumps(summary.evidence_refs)),
        )
        return cursor.rowcount > 0

    def _import_pin(self, conn: sqlite3.Connection, pin: Pin) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO pins
                (id, target_type, target_id, reason, created_at, expires_at,
                 scope_ids, session_id, repo_id, agent_id, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (pin.id, pin.target_type, pin.target_id, pin.reason, pin.created_at,
             pin.expires_at, *_scope_values(pin.scope_ids)),
        )
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def migration_status(self) -> MigrationStatus:
        with self._lock:
            return get_migration_status(self._conn)

    def to_bytes(self) -> bytes:
        """Serialize the whole database (in-memory backend snapshot)."""
        with self._lock:
            return self._conn.serialize()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
