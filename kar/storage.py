"""Storage semantics and per-replica claim lifecycle.

- ephemeral: emptyDir, nothing to manage.
- persistent-claim: one claim per replica from the workload set's claim
  template. Type, size and class are fixed once the workload set exists.
  Claims are deleted on scale-down or assembly deletion only when the
  *current* delete-claim flag is true.
- local: pre-provisioned volumes bound through the claim template. Those
  claims are never deleted here.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from .errors import ImmutableFieldViolation
from .model import StorageConfig, StorageType
from .names import ANNOTATION_STORAGE, VOLUME_NAME, claim_name


def storage_from_workload_set(ss: dict[str, Any]) -> StorageConfig | None:
    """Recover the storage a live workload set was created with."""
    annotations = (ss.get("metadata") or {}).get("annotations") or {}
    raw = annotations.get(ANNOTATION_STORAGE)
    if raw:
        try:
            return StorageConfig.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            pass

    spec = ss.get("spec") or {}
    for tpl in spec.get("volumeClaimTemplates") or []:
        if (tpl.get("metadata") or {}).get("name") != VOLUME_NAME:
            continue
        tpl_spec = tpl.get("spec") or {}
        size = ((tpl_spec.get("resources") or {}).get("requests") or {}).get("storage")
        return StorageConfig(
            type=StorageType.PERSISTENT_CLAIM,
            size=size or "0",
            storage_class=tpl_spec.get("storageClassName"),
        )
    volumes = ((spec.get("template") or {}).get("spec") or {}).get("volumes") or []
    if any(v.get("name") == VOLUME_NAME and "emptyDir" in v for v in volumes):
        return StorageConfig(type=StorageType.EPHEMERAL)
    return None


def effective_storage(
    component: str, requested: StorageConfig, live_ss: dict[str, Any] | None
) -> tuple[StorageConfig, list[ImmutableFieldViolation]]:
    """Merge the requested storage with what the live workload set already uses.

    Returns the storage to build manifests from and any ignored changes.
    delete-claim always comes from the request.
    """
    if live_ss is None:
        return requested, []
    live = storage_from_workload_set(live_ss)
    if live is None:
        return requested, []

    violations: list[ImmutableFieldViolation] = []
    for field, alias in (("type", "type"), ("storage_class", "class"), ("size", "size")):
        want, have = getattr(requested, field), getattr(live, field)
        if want != have:
            violations.append(
                ImmutableFieldViolation(
                    component=component,
                    field=f"storage.{alias}",
                    requested=want.value if isinstance(want, StorageType) else want,
                    effective=have.value if isinstance(have, StorageType) else have,
                )
            )
    return live.model_copy(update={"delete_claim": requested.delete_claim}), violations


def owned_claims(set_name: str, storage: StorageConfig, replicas: int) -> list[str]:
    if not storage.owns_claims:
        return []
    return [claim_name(set_name, i) for i in range(max(0, replicas))]


def scale_down_claims(set_name: str, storage: StorageConfig, old_replicas: int, new_replicas: int) -> list[str]:
    """Claims of the removed replicas that should be deleted."""
    if not (storage.owns_claims and storage.delete_claim) or new_replicas >= old_replicas:
        return []
    return [claim_name(set_name, i) for i in range(new_replicas, old_replicas)]


def deletion_claims(set_name: str, storage: StorageConfig, replicas: int) -> list[str]:
    """Claims to delete when the whole assembly goes away."""
    if not storage.delete_claim:
        return []
    return owned_claims(set_name, storage, replicas)
