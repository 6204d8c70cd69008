"""
Schema migrations for the kindling store.

Migrations are numbered from 1 and strictly additive. Each one is a list of
guarded statements (CREATE ... IF NOT EXISTS, INSERT OR IGNORE) so applying
it twice is harmless. Pending migrations (version greater than the highest
recorded one) run in ascending order, each inside its own transaction, and
are recorded in `schema_migrations` with an epoch-ms timestamp. The current
version is mirrored in PRAGMA user_version.

Both store backends (file-backed and in-memory) run this same sequence, so
their schemas and exported bundles are interchangeable.

FTS5 support is probed once per process through `init_runtime()`. Engines
built without FTS5 still record migration 2 but create no index tables;
the store then answers searches with LIKE matching.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .types import OBSERVATION_KINDS

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Engine runtime (process-wide, initialized once)
# -----------------------------------------------------------------------------

class EngineRuntime:
    """
    Capabilities of the linked SQLite library.

    Lifecycle: `init_runtime()` probes the engine on first call and returns
    the same instance afterwards; `shutdown_runtime()` discards it so the
    next `init_runtime()` probes again. Stores call `init_runtime()` when
    they open.
    """

    def __init__(self, sqlite_version: str, fts5: bool):
        self.sqlite_version = sqlite_version
        self.fts5 = fts5

    @classmethod
    def probe(cls) -> "EngineRuntime":
        conn = sqlite3.connect(":memory:")
        try:
            conn.execute("CREATE VIRTUAL TABLE probe USING fts5(content)")
            fts5 = True
        except sqlite3.OperationalError:
            fts5 = False
        finally:
            conn.close()
        return cls(sqlite3.sqlite_version, fts5)

    def __repr__(self) -> str:
        return f"EngineRuntime(sqlite={self.sqlite_version}, fts5={self.fts5})"


_runtime: Optional[EngineRuntime] = None
_runtime_lock = threading.Lock()


def init_runtime() -> EngineRuntime:
    """Probe engine capabilities once and return the shared runtime."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = EngineRuntime.probe()
            logger.debug("Initialized %r", _runtime)
        return _runtime


def shutdown_runtime() -> None:
    """Forget the probed runtime; the next init_runtime() probes again."""
    global _runtime
    with _runtime_lock:
        _runtime = None


# -----------------------------------------------------------------------------
# Migration definitions
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Migration:
    """One numbered schema step."""
    version: int
    name: str
    statements: tuple[str, ...]
    requires_fts5: bool = False


_KIND_LIST = ", ".join(f"'{k}'" for k in OBSERVATION_KINDS)

_SCOPE_COLUMNS = """
    scope_ids TEXT NOT NULL DEFAULT '{}',
    session_id TEXT,
    repo_id TEXT,
    agent_id TEXT,
    user_id TEXT"""

MIGRATION_001_INIT = Migration(1, "001_init", (
    """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        applied_at INTEGER NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS observations (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK(kind IN ({_KIND_LIST})),
        content TEXT NOT NULL,
        provenance TEXT NOT NULL DEFAULT '{{}}',
        ts INTEGER NOT NULL,{_SCOPE_COLUMNS},
        redacted INTEGER NOT NULL DEFAULT 0 CHECK(redacted IN (0, 1))
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS capsules (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK(type IN ('session', 'pocketflow_node', 'custom')),
        intent TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open' CHECK(status IN ('open', 'closed')),
        opened_at INTEGER NOT NULL,
        closed_at INTEGER,{_SCOPE_COLUMNS}
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS capsule_observations (
        capsule_id TEXT NOT NULL,
        observation_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        PRIMARY KEY (capsule_id, observation_id),
        FOREIGN KEY (capsule_id) REFERENCES capsules(id) ON DELETE CASCADE,
        FOREIGN KEY (observation_id) REFERENCES observations(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS summaries (
        id TEXT PRIMARY KEY,
        capsule_id TEXT NOT NULL UNIQUE,
        content TEXT NOT NULL,
        confidence REAL NOT NULL CHECK(confidence >= 0.0 AND confidence <= 1.0),
        created_at INTEGER NOT NULL,
        evidence_refs TEXT NOT NULL DEFAULT '[]',
        FOREIGN KEY (capsule_id) REFERENCES capsules(id) ON DELETE CASCADE
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS pins (
        id TEXT PRIMARY KEY,
        target_type TEXT NOT NULL CHECK(target_type IN ('observation', 'summary')),
        target_id TEXT NOT NULL,
        reason TEXT,
        created_at INTEGER NOT NULL,
        expires_at INTEGER,{_SCOPE_COLUMNS}
    )
    """,
))

MIGRATION_002_FTS = Migration(2, "002_fts", (
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
        content,
        content='observations',
        content_rowid='rowid',
        tokenize='porter unicode61'
    )
    """,
    # Rebuild from the content table, then drop redacted rows from the index
    "INSERT INTO observations_fts(observations_fts) VALUES('rebuild')",
    """
    INSERT INTO observations_fts(observations_fts, rowid, content)
    SELECT 'delete', rowid, content FROM observations WHERE redacted = 1
    """,
    """
    CREATE TRIGGER IF NOT EXISTS observations_fts_insert
    AFTER INSERT ON observations
    WHEN NEW.redacted = 0
    BEGIN
        INSERT INTO observations_fts(rowid, content) VALUES (NEW.rowid, NEW.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS observations_fts_update
    AFTER UPDATE OF content, redacted ON observations
    BEGIN
        INSERT INTO observations_fts(observations_fts, rowid, content)
        SELECT 'delete', OLD.rowid, OLD.content WHERE OLD.redacted = 0;
        INSERT INTO observations_fts(rowid, content)
        SELECT NEW.rowid, NEW.content WHERE NEW.redacted = 0;
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS observations_fts_delete
    AFTER DELETE ON observations
    WHEN OLD.redacted = 0
    BEGIN
        INSERT INTO observations_fts(observations_fts, rowid, content)
        VALUES ('delete', OLD.rowid, OLD.content);
    END
    """,
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS summaries_fts USING fts5(
        content,
        content='summaries',
        content_rowid='rowid',
        tokenize='porter unicode61'
    )
    """,
    "INSERT INTO summaries_fts(summaries_fts) VALUES('rebuild')",
    """
    CREATE TRIGGER IF NOT EXISTS summaries_fts_insert
    AFTER INSERT ON summaries
    BEGIN
        INSERT INTO summaries_fts(rowid, content) VALUES (NEW.rowid, NEW.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS summaries_fts_update
    AFTER UPDATE OF content ON summaries
    BEGIN
        INSERT INTO summaries_fts(summaries_fts, rowid, content)
        VALUES ('delete', OLD.rowid, OLD.content);
        INSERT INTO summaries_fts(rowid, content) VALUES (NEW.rowid, NEW.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS summaries_fts_delete
    AFTER DELETE ON summaries
    BEGIN
        INSERT INTO summaries_fts(summaries_fts, rowid, content)
        VALUES ('delete', OLD.rowid, OLD.content);
    END
    """,
), requires_fts5=True)

MIGRATION_003_INDEXES = Migration(3, "003_indexes", (
    "CREATE INDEX IF NOT EXISTS idx_observations_ts ON observations(ts DESC)",
    """
    CREATE INDEX IF NOT EXISTS idx_observations_session_ts
    ON observations(session_id, ts DESC) WHERE session_id IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_observations_repo_ts
    ON observations(repo_id, ts DESC) WHERE repo_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_observations_kind ON observations(kind)",
    """
    CREATE INDEX IF NOT EXISTS idx_capsules_status_session
    ON capsules(status, session_id) WHERE session_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_capsules_opened_at ON capsules(opened_at DESC)",
    """
    CREATE INDEX IF NOT EXISTS idx_capsules_repo
    ON capsules(repo_id) WHERE repo_id IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_capsule_observations_capsule
    ON capsule_observations(capsule_id, seq)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_capsule_observations_observation
    ON capsule_observations(observation_id)
    """,
    "CREATE INDEX IF NOT EXISTS idx_summaries_created_at ON summaries(created_at DESC)",
    """
    CREATE INDEX IF NOT EXISTS idx_pins_expires_at
    ON pins(expires_at) WHERE expires_at IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_pins_target ON pins(target_type, target_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_pins_session
    ON pins(session_id) WHERE session_id IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_pins_repo
    ON pins(repo_id) WHERE repo_id IS NOT NULL
    """,
))

# A second open session capsule for the same session violates this index,
# which the store reports as DuplicateOpenCapsule.
MIGRATION_004_OPEN_SESSION_GUARD = Migration(4, "004_open_session_guard", (
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_capsules_one_open_session
    ON capsules(session_id)
    WHERE status = 'open' AND type = 'session' AND session_id IS NOT NULL
    """,
))

MIGRATIONS: tuple[Migration, ...] = (
    MIGRATION_001_INIT,
    MIGRATION_002_FTS,
    MIGRATION_003_INDEXES,
    MIGRATION_004_OPEN_SESSION_GUARD,
)

LATEST_VERSION = MIGRATIONS[-1].version


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------

@dataclass
class MigrationStatus:
    """Applied and pending migrations for one database."""
    current_version: int
    latest_version: int
    applied: list[dict] = field(default_factory=list)
    pending: list[dict] = field(default_factory=list)

    @property
    def up_to_date(self) -> bool:
        return self.current_version >= self.latest_version

    def to_dict(self) -> dict:
        return {
            "currentVersion": self.current_version,
            "latestVersion": self.latest_version,
            "applied": list(self.applied),
            "pending": list(self.pending),
        }


def _has_migrations_table(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_migrations'"
    ).fetchone()
    return row is not None


def current_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version, 0 for a new database."""
    if not _has_migrations_table(conn):
        return 0
    row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return row[0] or 0


def apply_migrations(
    conn: sqlite3.Connection,
    runtime: Optional[EngineRuntime] = None,
    migrations: tuple[Migration, ...] = MIGRATIONS,
) -> list[int]:
    """
    Apply every pending migration, each in its own transaction.

    The connection must be in autocommit mode (isolation_level=None).
    A failing migration is rolled back and re-raised; earlier ones stay
    applied.

    Returns:
        Versions applied by this call, in order
    """
    runtime = runtime or init_runtime()
    version = current_version(conn)
    applied = []

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= version:
            continue
        conn.execute("BEGIN IMMEDIATE")
        try:
            if migration.requires_fts5 and not runtime.fts5:
                logger.warning(
                    "FTS5 unavailable; migration %s recorded without index tables",
                    migration.name,
                )
            else:
                for statement in migration.statements:
                    conn.execute(statement)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, name, applied_at) "
                "VALUES (?, ?, ?)",
                (migration.version, migration.name, int(time.time() * 1000)),
            )
            conn.execute(f"PRAGMA user_version = {int(migration.version)}")
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            logger.error("Migration %s failed", migration.name)
            raise
        applied.append(migration.version)
        logger.info("Applied migration %s", migration.name)

    return applied


def get_migration_status(
    conn: sqlite3.Connection,
    migrations: tuple[Migration, ...] = MIGRATIONS,
) -> MigrationStatus:
    """Report applied and pending migrations."""
    applied = []
    if _has_migrations_table(conn):
        for row in conn.execute(
            "SELECT version, name, applied_at FROM schema_migrations ORDER BY version"
        ):
            applied.append({"version": row[0], "name": row[1], "appliedAt": row[2]})
    version = max((a["version"] for a in applied), default=0)
    latest = max(m.version for m in migrations)
    pending = [
        {"version": m.version, "name": m.name}
        for m in sorted(migrations, key=lambda m: m.version)
        if m.version > version
    ]
    return MigrationStatus(
        current_version=version,
        latest_version=latest,
        applied=applied,
        pending=pending,
    )
