"""
Data types for the memory engine.

Entities are plain dataclasses with snake_case attributes. Their portable
(bundle / JSON) form uses camelCase keys; `to_dict()` and `from_dict()`
convert between the two.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union


OBSERVATION_KINDS = (
    "tool_call",
    "command",
    "file_diff",
    "error",
    "message",
    "node_start",
    "node_end",
    "node_output",
    "node_error",
)

CAPSULE_TYPES = ("session", "pocketflow_node", "custom")
CAPSULE_STATUSES = ("open", "closed")
PIN_TARGET_TYPES = ("observation", "summary")

# Content stored in place of a redacted observation's text
REDACTED_CONTENT = "[redacted]"

# Scope dimensions: (attribute, portable key, column)
SCOPE_DIMENSIONS = (
    ("session_id", "sessionId", "session_id"),
    ("repo_id", "repoId", "repo_id"),
    ("agent_id", "agentId", "agent_id"),
    ("user_id", "userId", "user_id"),
)


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Generate a new opaque entity id."""
    return str(uuid.uuid4())


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first present key from data (camelCase or snake_case)."""
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass
class ScopeIds:
    """
    Partial isolation key shared by every entity.

    Absent dimensions mean "don't filter on this dimension", never
    "match null".
    """
    session_id: Optional[str] = None
    repo_id: Optional[str] = None
    agent_id: Optional[str] = None
    user_id: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(getattr(self, attr) for attr, _, _ in SCOPE_DIMENSIONS)

    def items(self) -> list[tuple[str, str]]:
        """(column, value) pairs for the dimensions that are present."""
        return [
            (column, getattr(self, attr))
            for attr, _, column in SCOPE_DIMENSIONS
            if getattr(self, attr)
        ]

    def to_dict(self) -> dict[str, str]:
        return {
            key: getattr(self, attr)
            for attr, key, _ in SCOPE_DIMENSIONS
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: Union["ScopeIds", dict, None]) -> "ScopeIds":
        if isinstance(data, ScopeIds):
            return data
        if not data:
            return cls()
        return cls(**{
            attr: _pick(data, key, attr)
            for attr, key, _ in SCOPE_DIMENSIONS
        })


@dataclass
class Observation:
    """An atomic record of a development event."""
    id: str
    kind: str
    content: str
    ts: int
    scope_ids: ScopeIds = field(default_factory=ScopeIds)
    provenance: dict[str, Any] = field(default_factory=dict)
    redacted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "content": self.content,
            "provenance": dict(self.provenance),
            "ts": self.ts,
            "scopeIds": self.scope_ids.to_dict(),
            "redacted": self.redacted,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Observation":
        return cls(
            id=data["id"],
            kind=data["kind"],
            content=data["content"],
            ts=data["ts"],
            scope_ids=ScopeIds.from_dict(_pick(data, "scopeIds", "scope_ids")),
            provenance=dict(data.get("provenance") or {}),
            redacted=bool(data.get("redacted", False)),
        )


@dataclass
class Capsule:
    """
    A bounded unit of work grouping observations.

    Created open; transitions once to closed and never back.
    """
    id: str
    type: str
    intent: str
    opened_at: int
    status: str = "open"
    scope_ids: ScopeIds = field(default_factory=ScopeIds)
    closed_at: Optional[int] = None
    observation_ids: list[str] = field(default_factory=list)
    summary_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def to_dict(self) -> dict[str, Any]:
        d = {
            "id": self.id,
            "type": self.type,
            "intent": self.intent,
            "status": self.status,
            "openedAt": self.opened_at,
            "closedAt": self.closed_at,
            "scopeIds": self.scope_ids.to_dict(),
            "observationIds": list(self.observation_ids),
        }
        if self.summary_id is not None:
            d["summaryId"] = self.summary_id
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Capsule":
        return cls(
            id=data["id"],
            type=data["type"],
            intent=data["intent"],
            status=data.get("status", "open"),
            opened_at=_pick(data, "openedAt", "opened_at"),
            closed_at=_pick(data, "closedAt", "closed_at"),
            scope_ids=ScopeIds.from_dict(_pick(data, "scopeIds", "scope_ids")),
            observation_ids=list(_pick(data, "observationIds", "observation_ids", default=[]) or []),
            summary_id=_pick(data, "summaryId", "summary_id"),
        )


@dataclass
class Summary:
    """Annotation of a capsule; the most recent one per capsule wins."""
    id: str
    capsule_id: str
    content: str
    confidence: float
    created_at: int
    evidence_refs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "capsuleId": self.capsule_id,
            "content": self.content,
            "confidence": self.confidence,
            "createdAt": self.created_at,
            "evidenceRefs": list(self.evidence_refs),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Summary":
        return cls(
            id=data["id"],
            capsule_id=_pick(data, "capsuleId", "capsule_id"),
            content=data["content"],
            confidence=float(data["confidence"]),
            created_at=_pick(data, "createdAt", "created_at"),
            evidence_refs=list(_pick(data, "evidenceRefs", "evidence_refs", default=[]) or []),
        )


@dataclass
class Pin:
    """A marker raising an observation or summary to non-evictable priority."""
    id: str
    target_type: str
    target_id: str
    created_at: int
    scope_ids: ScopeIds = field(default_factory=ScopeIds)
    reason: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "id": self.id,
            "targetType": self.target_type,
            "targetId": self.target_id,
            "createdAt": self.created_at,
            "scopeIds": self.scope_ids.to_dict(),
        }
        if self.reason is not None:
            d["reason"] = self.reason
        if self.expires_at is not None:
            d["expiresAt"] = self.expires_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Pin":
        return cls(
            id=data["id"],
            target_type=_pick(data, "targetType", "target_type"),
            target_id=_pick(data, "targetId", "target_id"),
            created_at=_pick(data, "createdAt", "created_at"),
            scope_ids=ScopeIds.from_dict(_pick(data, "scopeIds", "scope_ids")),
            reason=data.get("reason"),
            expires_at=_pick(data, "expiresAt", "expires_at"),
        )


def is_pin_active(pin: Pin, now: int) -> bool:
    """A pin is active iff it has no expiry or expires strictly after now."""
    return pin.expires_at is None or pin.expires_at > now


# -----------------------------------------------------------------------------
# Retrieval results
# -----------------------------------------------------------------------------

@dataclass
class RankedHit:
    """A scored search candidate from a ranking provider."""
    entity_type: str  # "observation" or "summary"
    entity: Union[Observation, Summary]
    score: float
    match_context: str

    @property
    def id(self) -> str:
        return self.entity.id

    @property
    def content(self) -> str:
        return self.entity.content

    @property
    def ts(self) -> int:
        if isinstance(self.entity, Summary):
            return self.entity.created_at
        return self.entity.ts

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.entity_type,
            "entity": self.entity.to_dict(),
            "score": self.score,
            "matchContext": self.match_context,
        }


@dataclass
class PinnedItem:
    """An active pin together with its resolved target."""
    pin: Pin
    target: Union[Observation, Summary]

    def to_dict(self) -> dict[str, Any]:
        return {"pin": self.pin.to_dict(), "target": self.target.to_dict()}


@dataclass
class Provenance:
    """How a retrieval result was produced."""
    query: str
    scope_ids: ScopeIds
    total_candidates: int
    returned_candidates: int
    truncated_due_to_token_budget: bool
    provider_used: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "scopeIds": self.scope_ids.to_dict(),
            "totalCandidates": self.total_candidates,
            "returnedCandidates": self.returned_candidates,
            "truncatedDueToTokenBudget": self.truncated_due_to_token_budget,
            "providerUsed": self.provider_used,
        }


@dataclass
class RetrieveResult:
    """Tier-0 context (pins, current summary) plus ranked tier-1 candidates."""
    pins: list[PinnedItem]
    current_summary: Optional[Summary]
    candidates: list[RankedHit]
    provenance: Provenance
    tier0_exceeds_budget: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "pins": [p.to_dict() for p in self.pins],
            "currentSummary": self.current_summary.to_dict() if self.current_summary else None,
            "candidates": [c.to_dict() for c in self.candidates],
            "provenance": self.provenance.to_dict(),
            "tier0ExceedsBudget": self.tier0_exceeds_budget,
        }
