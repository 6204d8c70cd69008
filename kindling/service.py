"""
Kindling service: the single owning handle on a memory store.

Every transport (CLI, HTTP server, session adapters) goes through one
Kindling instance per store file. It owns the only write-capable engine
connection and serializes writes through a lock; other processes should
send requests to the owning process rather than opening their own handle.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Optional, Union

from .bundle import create_bundle, restore_bundle
from .capsules import CapsuleManager, CloseSignals
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .errors import AlreadyClosed, NotFound
from .protocol import RetrievalProvider, StoreProtocol
from .provider import LocalFtsProvider
from .retrieval import Retriever
from .store import ImportResult, SqliteStore
from .types import (
    Capsule,
    Observation,
    Pin,
    RetrieveResult,
    ScopeIds,
    Summary,
    is_pin_active,
    now_ms,
)
from .validation import validate_observation, validate_pin, validate_summary

logger = logging.getLogger(__name__)


class Kindling:
    """
    Local memory engine for coding-assistant sessions.

    Example:
        with Kindling("~/.kindling") as kn:
            capsule = kn.open_capsule("session", "fix tests", {"sessionId": "s1"})
            kn.append_observation({"kind": "command", "content": "npm test failed",
                                   "scopeIds": {"sessionId": "s1"}})
            result = kn.retrieve("test", {"sessionId": "s1"})
    """

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        store: Optional[StoreProtocol] = None,
        provider: Optional[RetrievalProvider] = None,
        ops_log: bool = True,
    ) -> None:
        """
        Open (creating if needed) a store.

        Args:
            store_path: Store directory. Defaults to KINDLING_STORE_PATH or ~/.kindling.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            store: Injected store (skips opening the configured database).
            provider: Injected ranking provider (default LocalFtsProvider).
            ops_log: Write the persistent operations log in the store directory.
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)

        self._ops_log_handler = None
        if ops_log and store is None:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._config.path)

        if store is None:
            store = SqliteStore(
                self._config.database_path,
                busy_timeout_ms=self._config.busy_timeout_ms,
            )
        self._store = store
        self._lock = threading.RLock()
        self._capsules = CapsuleManager(store)
        self._retriever = Retriever(store, provider or LocalFtsProvider(store))
        logger.debug("Opened kindling store at %s", self._config.path)

    @classmethod
    def in_memory(cls, snapshot: Optional[bytes] = None, **kwargs) -> "Kindling":
        """Service over the portable in-memory backend."""
        return cls(
            config=StoreConfig(path=Path(".")),
            store=SqliteStore.in_memory(snapshot),
            ops_log=False,
            **kwargs,
        )

    @property
    def store(self) -> StoreProtocol:
        return self._store

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def capsules(self) -> CapsuleManager:
        return self._capsules

    # -------------------------------------------------------------------------
    # Observations
    # -------------------------------------------------------------------------

    def append_observation(
        self,
        data: Union[dict[str, Any], Observation],
        capsule_id: Optional[str] = None,
        auto_attach: bool = True,
    ) -> Observation:
        """
        Validate, persist and attach an observation.

        With `capsule_id` the observation joins that capsule. Otherwise, if
        `auto_attach` is set and the observation has a sessionId, it joins
        the session's open capsule when there is one. Insert and attach
        commit together.

        Raises:
            ValidationFailure: Invalid observation
            NotFound: capsule_id does not exist
            AlreadyClosed: capsule_id refers to a closed capsule
            Conflict: An observation with this id already exists
        """
        obs = validate_observation(data).unwrap("observation")
        with self._lock:
            target = None
            if capsule_id is not None:
                target = self._store.get_capsule(capsule_id)
                if target is None:
                    raise NotFound("capsule", capsule_id)
                if not target.is_open:
                    raise AlreadyClosed(capsule_id)
            elif auto_attach and obs.scope_ids.session_id:
                target = self._store.get_open_capsule_for_session(obs.scope_ids.session_id)

            with self._store.transaction():
                self._store.insert_observation(obs)
                if target is not None:
                    self._store.attach_observation_to_capsule(target.id, obs.id)
            if target is not None:
                self._capsules.invalidate(target.id)

        logger.debug(
            "Appended %s observation %s%s",
            obs.kind, obs.id, f" to capsule {target.id}" if target else "",
        )
        return obs

    def get_observation(self, observation_id: str) -> Optional[Observation]:
        return self._store.get_observation(observation_id)

    def forget(self, observation_id: str) -> None:
        """
        Redact an observation: blank its content and drop it from search.

        Raises:
            NotFound: No such observation
        """
        with self._lock:
            self._store.redact_observation(observation_id)
        logger.info("Redacted observation %s", observation_id)

    # -------------------------------------------------------------------------
    # Capsules
    # -------------------------------------------------------------------------

    def open_capsule(
        self,
        type: str,
        intent: str,
        scope_ids: Union[ScopeIds, dict],
        id: Optional[str] = None,
    ) -> Capsule:
        with self._lock:
            return self._capsules.open(type, intent, scope_ids, id=id)

    def close_capsule(
        self,
        capsule_id: str,
        summary_content: Optional[str] = None,
        confidence: Optional[float] = None,
        evidence_refs: Optional[list[str]] = None,
        reason: Optional[str] = None,
    ) -> Capsule:
        """Close a capsule; a summary is recorded only if content is given."""
        signals = CloseSignals(
            reason=reason,
            summary_content=summary_content,
            summary_confidence=confidence,
            evidence_refs=list(evidence_refs or []),
        )
        with self._lock:
            return self._capsules.close(capsule_id, signals)

    def get_capsule(self, capsule_id: str) -> Optional[Capsule]:
        return self._capsules.get(capsule_id)

    def get_open_capsule(self, session_id: str) -> Optional[Capsule]:
        return self._capsules.get_open({"sessionId": session_id})

    def get_or_create_session_capsule(
        self,
        session_id: str,
        intent: str,
        scope_ids: Union[ScopeIds, dict, None] = None,
    ) -> Capsule:
        with self._lock:
            return self._capsules.get_or_create_session(session_id, intent, scope_ids)

    def list_capsules(
        self,
        scope_ids: Union[ScopeIds, dict, None] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> list[Capsule]:
        return self._store.list_capsules(ScopeIds.from_dict(scope_ids), status, limit)

    # -------------------------------------------------------------------------
    # Summaries
    # -------------------------------------------------------------------------

    def insert_summary(self, data: Union[dict[str, Any], Summary]) -> Summary:
        summary = validate_summary(data).unwrap("summary")
        with self._lock:
            self._store.insert_summary(summary)
            self._capsules.invalidate(summary.capsule_id)
        return summary

    def get_latest_summary(self, capsule_id: str) -> Optional[Summary]:
        return self._store.get_latest_summary_for_capsule(capsule_id)

    # -------------------------------------------------------------------------
    # Pins
    # -------------------------------------------------------------------------

    def pin(
        self,
        target_type: str,
        target_id: str,
        scope_ids: Union[ScopeIds, dict, None] = None,
        reason: Optional[str] = None,
        expires_at: Optional[int] = None,
        ttl_ms: Optional[int] = None,
    ) -> Pin:
        """
        Pin an observation or summary.

        Scope defaults to the target's own scope (a summary's capsule).
        `ttl_ms` is a convenience for `expires_at = now + ttl_ms`.

        Raises:
            ValidationFailure: Invalid pin fields
            NotFound: Target does not exist
        """
        now = now_ms()
        if ttl_ms is not None:
            expires_at = now + ttl_ms
        data: dict[str, Any] = {
            "targetType": target_type,
            "targetId": target_id,
            "createdAt": now,
            "scopeIds": ScopeIds.from_dict(scope_ids) if scope_ids is not None else {},
        }
        if reason is not None:
            data["reason"] = reason
        if expires_at is not None:
            data["expiresAt"] = expires_at
        pin = validate_pin(data).unwrap("pin")

        with self._lock:
            if scope_ids is None:
                pin.scope_ids = self._target_scope(pin.target_type, pin.target_id)
            elif self._resolve_target(pin.target_type, pin.target_id) is None:
                raise NotFound(pin.target_type, pin.target_id)
            self._store.insert_pin(pin)
        logger.info("Pinned %s %s as %s", pin.target_type, pin.target_id, pin.id)
        return pin

    def unpin(self, pin_id: str) -> None:
        """Raises NotFound if the pin does not exist."""
        with self._lock:
            self._store.delete_pin(pin_id)
        logger.info("Unpinned %s", pin_id)

    def list_pins(
        self,
        scope_ids: Union[ScopeIds, dict, None] = None,
        include_expired: bool = False,
    ) -> list[Pin]:
        scope = ScopeIds.from_dict(scope_ids)
        if include_expired:
            return self._store.list_pins(scope)
        return self._store.list_active_pins(scope, now_ms())

    def _resolve_target(self, target_type: str, target_id: str):
        if target_type == "observation":
            return self._store.get_observation(target_id)
        return self._store.get_summary(target_id)

    def _target_scope(self, target_type: str, target_id: str) -> ScopeIds:
        target = self._resolve_target(target_type, target_id)
        if target is None:
            raise NotFound(target_type, target_id)
        if isinstance(target, Summary):
            capsule = self._store.get_capsule(target.capsule_id)
            return capsule.scope_ids if capsule else ScopeIds()
        return target.scope_ids

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    def retrieve(
        self,
        query: str,
        scope_ids: Union[ScopeIds, dict, None] = None,
        token_budget: Optional[int] = None,
        max_candidates: Optional[int] = None,
        include_redacted: bool = False,
    ) -> RetrieveResult:
        """Pins, current session summary and ranked candidates for a query."""
        defaults = self._config.retrieval
        return self._retriever.retrieve(
            query,
            scope_ids,
            token_budget=token_budget if token_budget is not None else defaults.token_budget,
            max_candidates=max_candidates if max_candidates is not None else defaults.max_candidates,
            include_redacted=include_redacted,
        )

    # -------------------------------------------------------------------------
    # Export / Import
    # -------------------------------------------------------------------------

    def export(
        self,
        scope_ids: Union[ScopeIds, dict, None] = None,
        include_redacted: bool = False,
        limit: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Bundle of the store's contents (optionally one scope)."""
        with self._lock:
            return create_bundle(
                self._store, scope_ids,
                include_redacted=include_redacted, limit=limit, metadata=metadata,
            )

    def import_bundle(
        self,
        bundle: dict[str, Any],
        dry_run: bool = False,
        skip_validation: bool = False,
    ) -> ImportResult:
        """Restore a bundle; existing ids are skipped, row errors collected."""
        with self._lock:
            result = restore_bundle(
                self._store, bundle, skip_validation=skip_validation, dry_run=dry_run,
            )
        self._capsules.clear_cache()
        return result

    # -------------------------------------------------------------------------
    # Status & lifecycle
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Store location, entity counts, active pins and schema state."""
        migrations = self._store.migration_status()
        pins = self._store.list_pins()
        now = now_ms()
        return {
            "storePath": str(self._config.path),
            "database": self._store.path,
            "fullTextIndex": self._store.fts_enabled,
            "counts": self._store.counts(),
            "activePins": sum(1 for p in pins if is_pin_active(p, now)),
            "schemaVersion": migrations.current_version,
            "latestSchemaVersion": migrations.latest_version,
            "provider": self._retriever.provider.name,
        }

    def close(self) -> None:
        """Close the store and detach the operations log."""
        if getattr(self, "_store", None) is not None:
            self._store.close()
            self._store = None
        if getattr(self, "_ops_log_handler", None) is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False

    def __del__(self):
        """Cleanup on deletion."""
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
