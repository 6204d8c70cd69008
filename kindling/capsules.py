"""
Capsule lifecycle management.

A capsule is created open and closed exactly once. For session capsules,
at most one may be open per sessionId; the store enforces this atomically
(check and insert in one IMMEDIATE transaction, backed by a unique partial
index), and a violation surfaces as DuplicateOpenCapsule.

The manager keeps an advisory cache of capsules it opened. The cache is a
hint only: reads fall back to the store on a miss, every write goes to the
store before the cache is touched, and writers that change a capsule behind
the manager (membership, summaries) call `invalidate`.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from .errors import AlreadyClosed, NotFound
from .protocol import StoreProtocol
from .types import Capsule, ScopeIds, now_ms
from .validation import validate_capsule, validate_summary

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_CONFIDENCE = 0.8


@dataclass
class CloseSignals:
    """Optional information supplied when closing a capsule."""
    reason: Optional[str] = None
    summary_content: Optional[str] = None
    summary_confidence: Optional[float] = None
    evidence_refs: list[str] = field(default_factory=list)


class CapsuleManager:
    """Opens, closes and looks up capsules over a store."""

    def __init__(self, store: StoreProtocol):
        self._store = store
        self._cache: dict[str, Capsule] = {}

    def open(
        self,
        type: str,
        intent: str,
        scope_ids: Union[ScopeIds, dict],
        id: Optional[str] = None,
    ) -> Capsule:
        """
        Validate and persist a new open capsule.

        Raises:
            ValidationFailure: Invalid type, intent or scope
            DuplicateOpenCapsule: Session already has an open capsule
        """
        data = {"type": type, "intent": intent, "scopeIds": scope_ids}
        if id is not None:
            data["id"] = id
        capsule = validate_capsule(data).unwrap("capsule")

        self._store.create_capsule(capsule)
        self._cache[capsule.id] = capsule
        logger.info("Opened %s capsule %s (%s)", capsule.type, capsule.id, capsule.intent)
        return capsule

    def close(self, capsule_id: str, signals: Optional[CloseSignals] = None) -> Capsule:
        """
        Close an open capsule, optionally recording a summary.

        The close and the summary insert commit together. A capsule holds
        at most one summary: if one was recorded while it was open, closing
        with summary content fails with Conflict and the capsule stays open.

        Raises:
            NotFound: No such capsule
            AlreadyClosed: Capsule was already closed
            ValidationFailure: Summary signals are invalid
            Conflict: The capsule already has a summary
        """
        capsule = self.get(capsule_id)
        if capsule is None:
            raise NotFound("capsule", capsule_id)
        if not capsule.is_open:
            self._cache.pop(capsule_id, None)
            raise AlreadyClosed(capsule_id)

        signals = signals or CloseSignals()
        closed_at = now_ms()
        summary = None
        if signals.summary_content:
            confidence = signals.summary_confidence
            summary = validate_summary({
                "capsuleId": capsule_id,
                "content": signals.summary_content,
                "confidence": DEFAULT_SUMMARY_CONFIDENCE if confidence is None else confidence,
                "evidenceRefs": list(signals.evidence_refs),
                "createdAt": closed_at,
            }).unwrap("summary")

        try:
            with self._store.transaction():
                self._store.close_capsule(capsule_id, closed_at)
                if summary is not None:
                    self._store.insert_summary(summary)
        finally:
            # Stale or not, the cached copy is no longer trustworthy
            self._cache.pop(capsule_id, None)

        logger.info(
            "Closed capsule %s%s",
            capsule_id, f" ({signals.reason})" if signals.reason else "",
        )
        closed = self._store.get_capsule(capsule_id)
        if closed is None:
            raise NotFound("capsule", capsule_id)
        return closed

    def get(self, capsule_id: str) -> Optional[Capsule]:
        """Cached copy if present, otherwise the store's."""
        cached = self._cache.get(capsule_id)
        if cached is not None:
            return cached
        return self._store.get_capsule(capsule_id)

    def get_open(self, scope_ids: Union[ScopeIds, dict]) -> Optional[Capsule]:
        """
        The open capsule for a session.

        Only sessionId lookup is supported. Other scope dimensions, when
        given, must match the capsule found or None is returned.

        Raises:
            ValueError: scope_ids has no sessionId
        """
        scope = ScopeIds.from_dict(scope_ids)
        if not scope.session_id:
            raise ValueError("get_open only supports sessionId lookup")
        capsule = self._store.get_open_capsule_for_session(scope.session_id)
        if capsule is None:
            return None
        for column, value in scope.items():
            if dict(capsule.scope_ids.items()).get(column) != value:
                return None
        return capsule

    def get_or_create_session(
        self, session_id: str, intent: str, scope_ids: Union[ScopeIds, dict, None] = None,
    ) -> Capsule:
        """Return the session's open capsule, opening one if there is none."""
        scope = replace(ScopeIds.from_dict(scope_ids), session_id=session_id)
        existing = self._store.get_open_capsule_for_session(session_id)
        if existing is not None:
            return existing
        return self.open("session", intent, scope)

    def invalidate(self, capsule_id: str) -> None:
        """Drop a cached capsule after its stored membership or summary changed."""
        self._cache.pop(capsule_id, None)

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
