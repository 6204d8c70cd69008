"""
Session event processing for assistant adapters.

An adapter supplies a mapper that turns its tool-specific events into
neutral observation payloads. The SessionManager owns the session side:
one open capsule per session, every mapped event stored and attached to
it in order, and the capsule closed (optionally with a summary) on stop.

Mapper contract:

    mapper(event) -> MappedEvent

with exactly one of `observation` (a payload for validate_observation),
`error` (a message) or `skip=True` set.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import ValidationFailure
from .types import Capsule, Observation, now_ms

logger = logging.getLogger(__name__)

DEFAULT_SESSION_INTENT = "Assistant session"


@dataclass
class MappedEvent:
    """Result of mapping one adapter event."""
    observation: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    skip: bool = False


@dataclass
class EventResult:
    """Outcome of processing one event."""
    observation: Optional[Observation] = None
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class SessionContext:
    session_id: str
    cwd: str
    capsule_id: str
    started_at: int
    event_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    intent: str = DEFAULT_SESSION_INTENT


def _event_field(event: Any, *names: str) -> Any:
    for name in names:
        if isinstance(event, dict):
            if name in event:
                return event[name]
        elif hasattr(event, name):
            return getattr(event, name)
    return None


class SessionManager:
    """Tracks live sessions and routes their events into capsules."""

    def __init__(self, service, mapper: Callable[[Any], MappedEvent]):
        """
        Args:
            service: The owning Kindling service
            mapper: Adapter mapping function (see module docstring)
        """
        self._service = service
        self._mapper = mapper
        self._sessions: dict[str, SessionContext] = {}

    def on_session_start(
        self, session_id: str, cwd: str, intent: str = DEFAULT_SESSION_INTENT,
    ) -> SessionContext:
        """
        Begin (or resume) a session.

        Reuses the tracked context, else the store's open capsule for the
        session, else opens a new capsule scoped to {sessionId, repoId: cwd}.
        """
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing

        capsule = self._service.get_or_create_session_capsule(
            session_id, intent, {"sessionId": session_id, "repoId": cwd},
        )
        context = SessionContext(
            session_id=session_id,
            cwd=cwd,
            capsule_id=capsule.id,
            started_at=capsule.opened_at,
            event_count=len(capsule.observation_ids),
            intent=capsule.intent,
        )
        self._sessions[session_id] = context
        logger.info("Session %s started (capsule %s)", session_id, capsule.id)
        return context

    def on_event(self, event: Any) -> EventResult:
        """
        Map, store and attach one event.

        Unknown sessions, mapper errors and invalid payloads are reported in
        the result rather than raised.
        """
        session_id = _event_field(event, "session_id", "sessionId")
        context = self._sessions.get(session_id) if session_id else None
        if context is None:
            return EventResult(error=f"No active session found for sessionId: {session_id}")

        mapped = self._mapper(event)
        if mapped.skip:
            context.skipped_count += 1
            return EventResult(skipped=True)
        if mapped.error:
            context.error_count += 1
            return EventResult(error=mapped.error)
        if not mapped.observation:
            context.error_count += 1
            return EventResult(error="Mapping produced no observation")

        payload = dict(mapped.observation)
        payload.setdefault("scopeIds", {"sessionId": context.session_id, "repoId": context.cwd})
        timestamp = _event_field(event, "timestamp", "ts")
        if "ts" not in payload and timestamp is not None:
            payload["ts"] = timestamp

        try:
            obs = self._service.append_observation(payload, capsule_id=context.capsule_id)
        except ValidationFailure as e:
            context.error_count += 1
            logger.warning("Dropped invalid event in session %s: %s", session_id, e)
            return EventResult(error=str(e))

        context.event_count += 1
        return EventResult(observation=obs)

    def on_stop(
        self,
        session_id: str,
        summary_content: Optional[str] = None,
        confidence: Optional[float] = None,
        evidence_refs: Optional[list[str]] = None,
        reason: Optional[str] = None,
    ) -> Capsule:
        """
        Close the session's capsule and stop tracking it.

        Raises:
            KeyError: The session is not active
        """
        context = self._sessions.get(session_id)
        if context is None:
            raise KeyError(f"No active session found for sessionId: {session_id}")
        capsule = self._service.close_capsule(
            context.capsule_id,
            summary_content=summary_content,
            confidence=confidence,
            evidence_refs=evidence_refs,
            reason=reason,
        )
        del self._sessions[session_id]
        logger.info(
            "Session %s stopped after %d events (%d errors)",
            session_id, context.event_count, context.error_count,
        )
        return capsule

    def get_session(self, session_id: str) -> Optional[SessionContext]:
        return self._sessions.get(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._sessions

    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    def session_stats(self, session_id: str) -> Optional[dict[str, int]]:
        context = self._sessions.get(session_id)
        if context is None:
            return None
        return {
            "eventCount": context.event_count,
            "errorCount": context.error_count,
            "skippedCount": context.skipped_count,
            "durationMs": now_ms() - context.started_at,
        }
