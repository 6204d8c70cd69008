"""
Protocol definitions for kindling's pluggable seams.

- StoreProtocol: the storage engine contract (SqliteStore implements it for
  both the file-backed and in-memory backends)
- RetrievalProvider: ranked candidate search (LocalFtsProvider)
- EventMapper: adapter hook turning a tool-specific event into an
  observation, an error, or a skip
"""

from typing import Any, ContextManager, Optional, Protocol, runtime_checkable

from .types import Capsule, Observation, Pin, RankedHit, ScopeIds, Summary


@runtime_checkable
class StoreProtocol(Protocol):
    """
    Storage engine operations used by the core.

    The first six methods are the adapter-facing subset.
    """

    def insert_observation(self, obs: Observation) -> Observation: ...

    def attach_observation_to_capsule(self, capsule_id: str, observation_id: str) -> int: ...

    def create_capsule(self, capsule: Capsule) -> Capsule: ...

    def close_capsule(self, capsule_id: str, closed_at: Optional[int] = None) -> None: ...

    def get_open_capsule_for_session(self, session_id: str) -> Optional[Capsule]: ...

    def insert_summary(self, summary: Summary) -> Summary: ...

    # -- Remaining writes --

    def insert_pin(self, pin: Pin) -> Pin: ...

    def delete_pin(self, pin_id: str) -> None: ...

    def redact_observation(self, observation_id: str) -> None: ...

    # -- Reads --

    def get_observation(self, observation_id: str) -> Optional[Observation]: ...

    def get_capsule(self, capsule_id: str) -> Optional[Capsule]: ...

    def get_summary(self, summary_id: str) -> Optional[Summary]: ...

    def get_latest_summary_for_capsule(self, capsule_id: str) -> Optional[Summary]: ...

    def list_active_pins(
        self, scope: Optional[ScopeIds] = None, now: Optional[int] = None,
    ) -> list[Pin]: ...

    def search_observations(
        self, query: str, scope: Optional[ScopeIds] = None, include_redacted: bool = False,
    ) -> list[tuple[Observation, float]]: ...

    def search_summaries(
        self, query: str, scope: Optional[ScopeIds] = None,
    ) -> list[tuple[Summary, float]]: ...

    def list_pins(self, scope: Optional[ScopeIds] = None) -> list[Pin]: ...

    def list_capsules(
        self, scope: Optional[ScopeIds] = None, status: Optional[str] = None, limit: int = 100,
    ) -> list[Capsule]: ...

    def counts(self, scope: Optional[ScopeIds] = None) -> dict[str, int]: ...

    def transaction(self) -> ContextManager[Any]: ...

    def migration_status(self) -> Any: ...

    # -- Export / import --

    def export_dataset(
        self, scope: Optional[ScopeIds] = None, include_redacted: bool = False,
        limit: Optional[int] = None,
    ) -> dict[str, Any]: ...

    def import_dataset(self, dataset: dict[str, Any]) -> Any: ...

    def close(self) -> None: ...


@runtime_checkable
class RetrievalProvider(Protocol):
    """Ranked candidate search over observations and summaries."""

    name: str

    def search(
        self,
        query: str,
        scope_ids: Optional[ScopeIds] = None,
        exclude_ids: Optional[set[str]] = None,
        include_redacted: bool = False,
        max_results: Optional[int] = 50,
        now: Optional[int] = None,
    ) -> list[RankedHit]: ...


@runtime_checkable
class EventMapper(Protocol):
    """
    Translate one inbound adapter event.

    Returns a MappedEvent (see session.py) holding exactly one of an
    observation payload, an error message, or skip=True.
    """

    def __call__(self, event: Any) -> Any: ...
