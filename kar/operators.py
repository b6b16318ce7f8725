from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from . import db
from .errors import PlatformError, ResourceOperationError
from .kube_ops import (
    CONFIG_MAP,
    DEPLOYMENT,
    PERSISTENT_VOLUME_CLAIM,
    SERVICE,
    STATEFUL_SET,
    PlatformClient,
)
from .manifests import Path, WorkloadModel
from .names import LABEL_CLUSTER

CREATED = "created"
PATCHED = "patched"
DELETED = "deleted"
UNCHANGED = "unchanged"
ABSENT = "absent"
FAILED = "failed"

MUTATIONS = frozenset({CREATED, PATCHED, DELETED})

_MISSING = object()


@dataclass(frozen=True)
class OperationResult:
    kind: str
    namespace: str
    name: str
    outcome: str
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def mutated(self) -> bool:
        return self.outcome in MUTATIONS

    def __str__(self) -> str:
        s = f"{self.kind} {self.namespace}/{self.name}: {self.outcome}"
        return f"{s} ({self.error})" if self.error else s


@dataclass(frozen=True)
class KindRules:
    """Which fields of a kind may be patched after creation.

    Anything not listed is immutable: a live value is kept even when the
    desired manifest differs.
    """

    kind: str
    mutable_fields: tuple[Path, ...]


_LABELS: Path = ("metadata", "labels")

CONFIG_MAP_RULES = KindRules(CONFIG_MAP, (_LABELS, ("data",)))
SERVICE_RULES = KindRules(SERVICE, (_LABELS, ("spec", "ports"), ("spec", "selector")))
DEPLOYMENT_RULES = KindRules(
    DEPLOYMENT, (_LABELS, ("spec", "replicas"), ("spec", "template"), ("spec", "strategy"))
)
CLAIM_RULES = KindRules(PERSISTENT_VOLUME_CLAIM, (_LABELS,))


def workload_set_rules(model: WorkloadModel) -> KindRules:
    return KindRules(STATEFUL_SET, model.mutable_fields)


def _get_path(obj: Any, path: Path) -> Any:
    cur = obj
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return _MISSING
        cur = cur[key]
    return cur


def _set_path(obj: dict[str, Any], path: Path, value: Any) -> None:
    cur = obj
    for key in path[:-1]:
        cur = cur.setdefault(key, {})
    cur[path[-1]] = copy.deepcopy(value)


def covers(want: Any, have: Any) -> bool:
    """True if `have` already satisfies `want`.

    Dicts only need the desired keys (the server adds defaults), lists must
    match element by element.
    """
    if isinstance(want, dict):
        if not isinstance(have, dict):
            return False
        return all(covers(v, have.get(k, _MISSING)) for k, v in want.items())
    if isinstance(want, list):
        if not isinstance(have, list) or len(want) != len(have):
            return False
        return all(covers(w, h) for w, h in zip(want, have))
    return want == have


def mutable_patch(rules: KindRules, live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Patch body carrying only the mutable fields that differ. Empty if none do."""
    patch: dict[str, Any] = {}
    for path in rules.mutable_fields:
        want = _get_path(desired, path)
        if want is _MISSING:
            continue
        if not covers(want, _get_path(live, path)):
            _set_path(patch, path, want)
    return patch


def _assembly_of(obj: dict[str, Any] | None) -> str | None:
    if not obj:
        return None
    return ((obj.get("metadata") or {}).get("labels") or {}).get(LABEL_CLUSTER)


class ResourceOperator:
    """Drives one resource to a desired state (a manifest) or to absence.

    Platform errors come back as a FAILED OperationResult; nothing is retried
    here, the next reconcile does that.
    """

    def __init__(self, platform: PlatformClient, rules: KindRules):
        self.platform = platform
        self.rules = rules

    @property
    def kind(self) -> str:
        return self.rules.kind

    def reconcile(self, namespace: str, name: str, desired: dict[str, Any] | None) -> OperationResult:
        action = "read"
        try:
            live = self.platform.get(self.kind, namespace, name)
            if desired is None:
                if live is None:
                    return self._result(namespace, name, ABSENT)
                action = "delete"
                self.platform.delete(self.kind, namespace, name)
                db.log_event("INFO", f"Deleted {self.kind} {name}", namespace=namespace, assembly=_assembly_of(live))
                return self._result(namespace, name, DELETED)

            if live is None:
                action = "create"
                self.platform.create(self.kind, namespace, desired)
                db.log_event("INFO", f"Created {self.kind} {name}", namespace=namespace, assembly=_assembly_of(desired))
                return self._result(namespace, name, CREATED)

            patch = mutable_patch(self.rules, live, desired)
            if not patch:
                return self._result(namespace, name, UNCHANGED)
            action = "patch"
            self.platform.patch(self.kind, namespace, name, patch)
            db.log_event(
                "INFO",
                f"Patched {self.kind} {name} ({', '.join(_paths(patch))})",
                namespace=namespace,
                assembly=_assembly_of(desired),
            )
            return self._result(namespace, name, PATCHED)
        except PlatformError as e:
            err = ResourceOperationError(action, self.kind, namespace, name, e)
            db.log_event("ERROR", str(err), namespace=namespace, assembly=_assembly_of(desired))
            return self._result(namespace, name, FAILED, err)

    def delete(self, namespace: str, name: str) -> OperationResult:
        return self.reconcile(namespace, name, None)

    def _result(self, namespace: str, name: str, outcome: str, error: Exception | None = None) -> OperationResult:
        return OperationResult(self.kind, namespace, name, outcome, error)


def _paths(patch: dict[str, Any], prefix: str = "") -> list[str]:
    out: list[str] = []
    for k, v in patch.items():
        key = f"{prefix}.{k}" if prefix else k
        if isinstance(v, dict) and v and k in {"metadata", "spec"}:
            out.extend(_paths(v, key))
        else:
            out.append(key)
    return out
