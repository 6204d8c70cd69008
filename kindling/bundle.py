"""
Export bundles: portable JSON snapshots of a store.

Bundle format:

    {
      "bundleVersion": "1.0",
      "exportedAt": <epoch ms>,
      "metadata": {"description": ..., "tags": [...], ...},   # optional
      "dataset": {
        "version": "1.0",
        "scope": {...},                                      # optional
        "observations": [...], "capsules": [...],
        "summaries": [...], "pins": [...]
      }
    }

Bundles are plain dicts so they round-trip through json unchanged.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

from .errors import BundleInvalid
from .protocol import StoreProtocol
from .store import DATASET_VERSION, ImportResult
from .types import ScopeIds, now_ms

logger = logging.getLogger(__name__)

BUNDLE_VERSION = "1.0"
COLLECTIONS = ("observations", "capsules", "summaries", "pins")


def create_bundle(
    store: StoreProtocol,
    scope: Union[ScopeIds, dict, None] = None,
    include_redacted: bool = False,
    limit: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Snapshot the store (optionally one scope) into a bundle."""
    dataset = store.export_dataset(
        scope=ScopeIds.from_dict(scope) if scope is not None else None,
        include_redacted=include_redacted,
        limit=limit,
    )
    bundle = {
        "bundleVersion": BUNDLE_VERSION,
        "exportedAt": now_ms(),
        "dataset": dataset,
    }
    if metadata:
        bundle["metadata"] = dict(metadata)
    return bundle


def validate_bundle(bundle: Any) -> tuple[bool, list[str]]:
    """
    Structural check of a bundle.

    Returns:
        (valid, errors) where errors lists every problem found
    """
    if not isinstance(bundle, dict):
        return False, ["Bundle must be an object"]
    errors = []

    version = bundle.get("bundleVersion")
    if not version or not isinstance(version, str):
        errors.append("Missing or invalid bundleVersion")
    elif version != BUNDLE_VERSION:
        errors.append(f"Unsupported bundle version: {version}")

    exported_at = bundle.get("exportedAt")
    if isinstance(exported_at, bool) or not isinstance(exported_at, (int, float)) or exported_at < 0:
        errors.append("Missing or invalid exportedAt")

    dataset = bundle.get("dataset")
    if not isinstance(dataset, dict):
        errors.append("Missing or invalid dataset")
    else:
        if not dataset.get("version") or not isinstance(dataset.get("version"), str):
            errors.append("Missing or invalid dataset.version")
        for name in COLLECTIONS:
            if not isinstance(dataset.get(name), list):
                errors.append(f"dataset.{name} must be an array")

    return not errors, errors


def ensure_valid(bundle: Any) -> dict[str, Any]:
    """Return the bundle or raise BundleInvalid with every error."""
    valid, errors = validate_bundle(bundle)
    if not valid:
        raise BundleInvalid(errors)
    return bundle


def bundle_stats(bundle: dict[str, Any]) -> dict[str, int]:
    """Per-collection counts and the serialized size in characters."""
    dataset = bundle["dataset"]
    stats = {name: len(dataset.get(name) or []) for name in COLLECTIONS}
    stats["totalSize"] = len(serialize_bundle(bundle))
    return stats


def serialize_bundle(bundle: dict[str, Any], pretty: bool = False) -> str:
    return json.dumps(bundle, indent=2 if pretty else None, ensure_ascii=False)


def deserialize_bundle(text: str) -> dict[str, Any]:
    """
    Parse and validate a serialized bundle.

    Raises:
        BundleInvalid: Not JSON, or structurally invalid
    """
    try:
        bundle = json.loads(text)
    except json.JSONDecodeError as e:
        raise BundleInvalid([f"Invalid JSON: {e}"]) from e
    return ensure_valid(bundle)


def write_bundle(bundle: dict[str, Any], path: Union[Path, str], pretty: bool = True) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(serialize_bundle(bundle, pretty=pretty), encoding="utf-8")
    return path


def read_bundle(path: Union[Path, str]) -> dict[str, Any]:
    return deserialize_bundle(Path(path).read_text(encoding="utf-8"))


def restore_bundle(
    store: StoreProtocol,
    bundle: dict[str, Any],
    skip_validation: bool = False,
    dry_run: bool = False,
) -> ImportResult:
    """
    Import a bundle into a store.

    Structural errors are returned in the result rather than raised. A
    dry run reports the bundle's counts and leaves the store untouched.
    Row-level failures are collected; rows imported before a failure stay.
    """
    if not skip_validation:
        valid, errors = validate_bundle(bundle)
        if not valid:
            logger.warning("Refusing to restore invalid bundle: %s", "; ".join(errors))
            return ImportResult(errors=errors, dry_run=dry_run)

    dataset = bundle["dataset"]
    if dry_run:
        return ImportResult(
            observations=len(dataset["observations"]),
            capsules=len(dataset["capsules"]),
            summaries=len(dataset["summaries"]),
            pins=len(dataset["pins"]),
            dry_run=True,
        )
    return store.import_dataset(dataset)


def _dedupe_first_wins(entities: list[dict]) -> list[dict]:
    seen = set()
    result = []
    for entity in entities:
        entity_id = entity.get("id") if isinstance(entity, dict) else None
        if not entity_id or entity_id in seen:
            continue
        seen.add(entity_id)
        result.append(entity)
    return result


def merge_bundles(
    bundles: list[dict[str, Any]],
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Combine bundles into one, deduplicating each collection by id.

    The first occurrence of an id wins, so pass bundles in priority order
    (for successive snapshots of one store, newest first). Entities
    without an id are dropped.

    Raises:
        ValueError: No bundles given
        BundleInvalid: Any input bundle is structurally invalid
    """
    if not bundles:
        raise ValueError("At least one bundle required for merge")
    for bundle in bundles:
        ensure_valid(bundle)

    dataset: dict[str, Any] = {"version": DATASET_VERSION, "exportedAt": now_ms()}
    for name in COLLECTIONS:
        combined = [e for b in bundles for e in b["dataset"][name]]
        dataset[name] = _dedupe_first_wins(combined)

    return {
        "bundleVersion": BUNDLE_VERSION,
        "exportedAt": now_ms(),
        "metadata": metadata or {"description": f"Merged from {len(bundles)} bundles"},
        "dataset": dataset,
    }


def compare_bundles(a: dict[str, Any], b: dict[str, Any]) -> dict[str, dict[str, int]]:
    """
    Id-level difference from bundle `a` to bundle `b`.

    For each collection: `added` ids only in b, `removed` ids only in a,
    `common` ids in both. Content is not compared.

    Raises:
        BundleInvalid: Either bundle is structurally invalid
    """
    ensure_valid(a)
    ensure_valid(b)
    result = {}
    for name in COLLECTIONS:
        ids_a = {e.get("id") for e in a["dataset"][name] if e.get("id")}
        ids_b = {e.get("id") for e in b["dataset"][name] if e.get("id")}
        common = ids_a & ids_b
        result[name] = {
            "added": len(ids_b - common),
            "removed": len(ids_a - common),
            "common": len(common),
        }
    return result
