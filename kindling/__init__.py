"""
kindling: durable local memory for coding-assistant sessions.

Observations are captured into capsules, summarized on close, pinned when
they matter, and retrieved as tiered, budgeted context.
"""

from .bundle import (
    compare_bundles,
    create_bundle,
    merge_bundles,
    read_bundle,
    restore_bundle,
    validate_bundle,
    write_bundle,
)
from .errors import (
    AlreadyClosed,
    BundleInvalid,
    Conflict,
    DuplicateOpenCapsule,
    KindlingError,
    MalformedQuery,
    NotFound,
    StorageFailure,
    ValidationFailure,
)
from .provider import LocalFtsProvider
from .service import Kindling
from .session import MappedEvent, SessionManager
from .store import SqliteStore
from .types import Capsule, Observation, Pin, RetrieveResult, ScopeIds, Summary

__version__ = "0.1.0"

__all__ = [
    "Kindling",
    "SqliteStore",
    "LocalFtsProvider",
    "SessionManager",
    "MappedEvent",
    "Observation",
    "Capsule",
    "Summary",
    "Pin",
    "ScopeIds",
    "RetrieveResult",
    "KindlingError",
    "ValidationFailure",
    "NotFound",
    "Conflict",
    "DuplicateOpenCapsule",
    "AlreadyClosed",
    "MalformedQuery",
    "StorageFailure",
    "BundleInvalid",
    "create_bundle",
    "validate_bundle",
    "restore_bundle",
    "merge_bundles",
    "compare_bundles",
    "read_bundle",
    "write_bundle",
]
