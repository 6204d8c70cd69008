"""
Validators for untrusted entity input.

Each validator accepts a mapping (camelCase keys as in bundles and API
payloads; snake_case also accepted) or an already-built entity, and returns
a ValidationResult. Validators never raise for malformed input. Every check
runs before any default is assigned, so the error list is complete.

Defaults assigned on success: id (uuid4), timestamps (now), redacted=False,
empty provenance / evidence lists, capsule status "open".
"""

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from .types import (
    CAPSULE_STATUSES,
    CAPSULE_TYPES,
    OBSERVATION_KINDS,
    PIN_TARGET_TYPES,
    Capsule,
    Observation,
    Pin,
    ScopeIds,
    Summary,
    new_id,
    now_ms,
)

T = TypeVar("T")

_MISSING = object()


@dataclass
class FieldError:
    """A single field-level validation error."""
    field: str
    message: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        d = {"field": self.field, "message": self.message}
        if self.value is not None:
            d["value"] = self.value
        return d


@dataclass
class ValidationResult(Generic[T]):
    """Either a normalized entity (`value`) or a list of field errors."""
    value: Optional[T] = None
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def unwrap(self, entity: str = "input") -> T:
        """Return the value or raise ValidationFailure with all errors."""
        if self.errors:
            from .errors import ValidationFailure
            raise ValidationFailure(self.errors, entity)
        return self.value


def _as_mapping(data: Any) -> Optional[dict]:
    if hasattr(data, "to_dict") and not isinstance(data, dict):
        return data.to_dict()
    if isinstance(data, dict):
        return data
    return None


def _get(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return _MISSING


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_required_text(errors: list, data: dict, name: str, *keys: str) -> Any:
    value = _get(data, name, *keys)
    if value is _MISSING or value is None or value == "":
        errors.append(FieldError(name, f"{name} is required"))
    elif not isinstance(value, str):
        errors.append(FieldError(name, f"{name} must be a string", type(value).__name__))
    elif not value.strip():
        errors.append(FieldError(name, f"{name} cannot be empty"))
    return value


def _check_scope(errors: list, data: dict) -> Any:
    value = _get(data, "scopeIds", "scope_ids")
    if value is _MISSING or value is None:
        errors.append(FieldError("scopeIds", "scopeIds is required"))
    elif not isinstance(value, (dict, ScopeIds)):
        errors.append(FieldError("scopeIds", "scopeIds must be an object"))
    else:
        scope = value.to_dict() if isinstance(value, ScopeIds) else value
        for key, dim in scope.items():
            if dim is not None and not isinstance(dim, str):
                errors.append(FieldError(f"scopeIds.{key}", f"{key} must be a string", dim))
    return value


def _check_timestamp(errors: list, data: dict, name: str, *keys: str, nullable: bool = False) -> Any:
    value = _get(data, name, *keys)
    if value is _MISSING or (value is None and nullable):
        return value
    if not _is_number(value):
        errors.append(FieldError(name, f"{name} must be a number", type(value).__name__))
    elif value < 0:
        errors.append(FieldError(name, f"{name} must be non-negative", value))
    return value


def _check_string_list(errors: list, data: dict, name: str, *keys: str, required: bool = False) -> Any:
    value = _get(data, name, *keys)
    if value is _MISSING or value is None:
        if required:
            errors.append(FieldError(name, f"{name} is required"))
        return value
    if not isinstance(value, (list, tuple)):
        errors.append(FieldError(name, f"{name} must be an array"))
    elif not all(isinstance(v, str) for v in value):
        errors.append(FieldError(name, f"{name} must contain only strings"))
    return value


def _check_optional_id(errors: list, data: dict) -> Any:
    value = _get(data, "id")
    if value is not _MISSING and value is not None and not isinstance(value, str):
        errors.append(FieldError("id", "id must be a string", type(value).__name__))
    return value


def _not_a_mapping() -> ValidationResult:
    return ValidationResult(errors=[FieldError("input", "Input must be an object")])


def _or_default(value: Any, default: Any) -> Any:
    return default if value is _MISSING or value is None else value


# -----------------------------------------------------------------------------
# Entity validators
# -----------------------------------------------------------------------------

def validate_observation(data: Any) -> ValidationResult[Observation]:
    """Validate and normalize an observation."""
    data = _as_mapping(data)
    if data is None:
        return _not_a_mapping()
    errors: list[FieldError] = []

    id = _check_optional_id(errors, data)
    kind = _get(data, "kind")
    if kind is _MISSING or not kind:
        errors.append(FieldError("kind", "kind is required"))
    elif kind not in OBSERVATION_KINDS:
        errors.append(FieldError("kind", f"Invalid observation kind: {kind}", kind))
    content = _check_required_text(errors, data, "content")
    scope = _check_scope(errors, data)

    provenance = _get(data, "provenance")
    if provenance is not _MISSING and provenance is not None and not isinstance(provenance, dict):
        errors.append(FieldError("provenance", "provenance must be an object"))

    ts = _check_timestamp(errors, data, "ts")

    redacted = _get(data, "redacted")
    if redacted is not _MISSING and not isinstance(redacted, bool):
        errors.append(FieldError("redacted", "redacted must be a boolean", type(redacted).__name__))

    if errors:
        return ValidationResult(errors=errors)

    return ValidationResult(Observation(
        id=_or_default(id, None) or new_id(),
        kind=kind,
        content=content,
        ts=now_ms() if ts is _MISSING else ts,
        scope_ids=ScopeIds.from_dict(scope),
        provenance=dict(_or_default(provenance, {})),
        redacted=_or_default(redacted, False),
    ))


def validate_capsule(data: Any) -> ValidationResult[Capsule]:
    """Validate and normalize a capsule."""
    data = _as_mapping(data)
    if data is None:
        return _not_a_mapping()
    errors: list[FieldError] = []

    id = _check_optional_id(errors, data)
    type_ = _get(data, "type")
    if type_ is _MISSING or not type_:
        errors.append(FieldError("type", "type is required"))
    elif type_ not in CAPSULE_TYPES:
        errors.append(FieldError("type", f"Invalid capsule type: {type_}", type_))
    intent = _check_required_text(errors, data, "intent")
    scope = _check_scope(errors, data)

    status = _get(data, "status")
    if status is not _MISSING and status not in CAPSULE_STATUSES:
        errors.append(FieldError("status", f"Invalid capsule status: {status}", status))

    opened_at = _check_timestamp(errors, data, "openedAt", "opened_at")
    closed_at = _check_timestamp(errors, data, "closedAt", "closed_at", nullable=True)
    observation_ids = _check_string_list(errors, data, "observationIds", "observation_ids")

    summary_id = _get(data, "summaryId", "summary_id")
    if summary_id is not _MISSING and summary_id is not None and not isinstance(summary_id, str):
        errors.append(FieldError("summaryId", "summaryId must be a string", type(summary_id).__name__))

    if errors:
        return ValidationResult(errors=errors)

    return ValidationResult(Capsule(
        id=_or_default(id, None) or new_id(),
        type=type_,
        intent=intent,
        status=_or_default(status, "open"),
        opened_at=now_ms() if opened_at is _MISSING else opened_at,
        closed_at=_or_default(closed_at, None),
        scope_ids=ScopeIds.from_dict(scope),
        observation_ids=list(_or_default(observation_ids, [])),
        summary_id=_or_default(summary_id, None),
    ))


def validate_summary(data: Any) -> ValidationResult[Summary]:
    """Validate and normalize a summary."""
    data = _as_mapping(data)
    if data is None:
        return _not_a_mapping()
    errors: list[FieldError] = []

    id = _check_optional_id(errors, data)
    capsule_id = _check_required_text(errors, data, "capsuleId", "capsule_id")
    content = _check_required_text(errors, data, "content")

    confidence = _get(data, "confidence")
    if confidence is _MISSING or confidence is None:
        errors.append(FieldError("confidence", "confidence is required"))
    elif not _is_number(confidence):
        errors.append(FieldError("confidence", "confidence must be a number", type(confidence).__name__))
    elif not 0.0 <= confidence <= 1.0:
        errors.append(FieldError("confidence", "confidence must be between 0 and 1", confidence))

    evidence_refs = _check_string_list(errors, data, "evidenceRefs", "evidence_refs", required=True)
    created_at = _check_timestamp(errors, data, "createdAt", "created_at")

    if errors:
        return ValidationResult(errors=errors)

    return ValidationResult(Summary(
        id=_or_default(id, None) or new_id(),
        capsule_id=capsule_id,
        content=content,
        confidence=float(confidence),
        created_at=now_ms() if created_at is _MISSING else created_at,
        evidence_refs=list(evidence_refs),
    ))


def validate_pin(data: Any) -> ValidationResult[Pin]:
    """Validate and normalize a pin."""
    data = _as_mapping(data)
    if data is None:
        return _not_a_mapping()
    errors: list[FieldError] = []

    id = _check_optional_id(errors, data)
    target_type = _get(data, "targetType", "target_type")
    if target_type is _MISSING or not target_type:
        errors.append(FieldError("targetType", "targetType is required"))
    elif target_type not in PIN_TARGET_TYPES:
        errors.append(FieldError("targetType", f"Invalid target type: {target_type}", target_type))
    target_id = _check_required_text(errors, data, "targetId", "target_id")
    scope = _check_scope(errors, data)

    reason = _get(data, "reason")
    if reason is not _MISSING and reason is not None and not isinstance(reason, str):
        errors.append(FieldError("reason", "reason must be a string", type(reason).__name__))

    created_at = _check_timestamp(errors, data, "createdAt", "created_at")
    expires_at = _check_timestamp(errors, data, "expiresAt", "expires_at", nullable=True)

    if errors:
        return ValidationResult(errors=errors)

    return ValidationResult(Pin(
        id=_or_default(id, None) or new_id(),
        target_type=target_type,
        target_id=target_id,
        created_at=now_ms() if created_at is _MISSING else created_at,
        scope_ids=ScopeIds.from_dict(scope),
        reason=_or_default(reason, None),
        expires_at=_or_default(expires_at, None),
    ))
