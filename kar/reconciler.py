from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from . import db
from .errors import ImmutableFieldViolation, PlatformError, ReconcileFailed, ResourceOperationError, SpecParseError
from .kube_ops import CONFIG_MAP, STATEFUL_SET, PlatformClient
from .manifests import (
    WORKLOAD_MODELS,
    WorkloadModel,
    client_service,
    headless_service,
    metrics_config_map,
    topic_controller_deployment,
    workload_set,
)
from .model import AssemblySpec, StorageConfig
from .names import AssemblyRef, topic_controller_name
from .operators import (
    CLAIM_RULES,
    CONFIG_MAP_RULES,
    DEPLOYMENT_RULES,
    FAILED,
    SERVICE_RULES,
    OperationResult,
    ResourceOperator,
    workload_set_rules,
)
from .settings import settings
from .storage import deletion_claims, effective_storage, scale_down_claims, storage_from_workload_set

PRESENT = "present"
ABSENT = "absent"
UNKNOWN = "unknown"

_Step = tuple[list[OperationResult], list[ImmutableFieldViolation]]


@dataclass
class ReconcileResult:
    """Aggregate of one reconcile pass. Failed steps are not rolled back."""

    ref: AssemblyRef
    branch: str
    operations: list[OperationResult] = field(default_factory=list)
    warnings: list[ImmutableFieldViolation] = field(default_factory=list)
    spec: AssemblySpec | None = None
    parse_error: SpecParseError | None = None

    @property
    def errors(self) -> list[Exception]:
        errs: list[Exception] = [self.parse_error] if self.parse_error else []
        errs.extend(op.error for op in self.operations if op.error is not None)
        return errs

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def error(self) -> Exception | None:
        errs = self.errors
        return errs[0] if errs else None

    @property
    def mutations(self) -> int:
        return sum(1 for op in self.operations if op.mutated)

    def raise_for_error(self) -> None:
        if not self.ok:
            raise ReconcileFailed(self.ref, self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.ref.namespace,
            "name": self.ref.name,
            "branch": self.branch,
            "ok": self.ok,
            "mutations": self.mutations,
            "errors": [str(e) for e in self.errors],
            "warnings": [str(w) for w in self.warnings],
            "operations": [
                {"kind": op.kind, "name": op.name, "outcome": op.outcome, "error": str(op.error) if op.error else None}
                for op in self.operations
            ],
        }


class AssemblyReconciler:
    """Converges the derived resources of one assembly with its spec source.

    Sub-operations for independent kinds run on a bounded worker pool and are
    joined before reconcile_assembly() returns. Callers must not run two
    reconciles for the same assembly at once.
    """

    def __init__(self, platform: PlatformClient, workers: int | None = None):
        self.platform = platform
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, workers or settings.operation_workers), thread_name_prefix="kar-op"
        )
        self.config_maps = ResourceOperator(platform, CONFIG_MAP_RULES)
        self.services = ResourceOperator(platform, SERVICE_RULES)
        self.deployments = ResourceOperator(platform, DEPLOYMENT_RULES)
        self.claims = ResourceOperator(platform, CLAIM_RULES)
        self.workload_sets = {m.component: ResourceOperator(platform, workload_set_rules(m)) for m in WORKLOAD_MODELS}

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def __enter__(self) -> "AssemblyReconciler":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def reconcile_assembly(
        self, ref: AssemblyRef, last_known: AssemblySpec | None = None, trigger: str = "manual"
    ) -> ReconcileResult:
        """Run one convergence pass.

        `last_known` is the caller's latest snapshot of the spec. It is only
        consulted when the spec source is gone, to decide which claims to
        delete.
        """
        db.log_event("INFO", f"Reconciliation started ({trigger})", namespace=ref.namespace, assembly=ref.name)
        try:
            source = self.platform.get(CONFIG_MAP, ref.namespace, ref.name)
        except PlatformError as e:
            err = ResourceOperationError("read", CONFIG_MAP, ref.namespace, ref.name, e)
            result = ReconcileResult(ref, UNKNOWN, [OperationResult(CONFIG_MAP, ref.namespace, ref.name, FAILED, err)])
            self._log_outcome(result)
            return result

        if source is None:
            result = self._delete(ref, last_known)
        else:
            result = self._create_or_update(ref, source)
        self._log_outcome(result)
        return result

    def _log_outcome(self, result: ReconcileResult) -> None:
        ref = result.ref
        if result.ok:
            db.log_event(
                "INFO",
                f"Reconciliation succeeded ({result.branch}, {result.mutations} changes)",
                namespace=ref.namespace,
                assembly=ref.name,
            )
        else:
            db.log_event(
                "ERROR",
                f"Reconciliation failed ({result.branch}): {result.error}",
                namespace=ref.namespace,
                assembly=ref.name,
            )

    def _run(self, ref: AssemblyRef, result: ReconcileResult, steps: list[tuple[str, str, Callable[[], _Step]]]) -> None:
        """Fan out the steps, then join and aggregate in submission order."""
        futures: list[tuple[str, str, Future[_Step]]] = [
            (kind, name, self._pool.submit(fn)) for kind, name, fn in steps
        ]
        for kind, name, fut in futures:
            try:
                ops, warnings = fut.result()
            except Exception as e:
                db.log_event("ERROR", f"{kind} {name}: {type(e).__name__}: {e}", namespace=ref.namespace, assembly=ref.name)
                ops, warnings = [OperationResult(kind, ref.namespace, name, FAILED, e)], []
            result.operations.extend(ops)
            result.warnings.extend(warnings)

    @staticmethod
    def _single(
        op: ResourceOperator, namespace: str, name: str, desired: dict[str, Any] | None
    ) -> tuple[str, str, Callable[[], _Step]]:
        return op.kind, name, lambda: ([op.reconcile(namespace, name, desired)], [])

    # Present branch

    def _create_or_update(self, ref: AssemblyRef, source: dict[str, Any]) -> ReconcileResult:
        try:
            spec = AssemblySpec.from_data(ref.namespace, ref.name, source.get("data"))
        except SpecParseError as e:
            db.log_event("ERROR", f"Invalid spec: {e}", namespace=ref.namespace, assembly=ref.name)
            return ReconcileResult(ref, PRESENT, parse_error=e)

        ns = ref.namespace
        steps: list[tuple[str, str, Callable[[], _Step]]] = []
        for model in WORKLOAD_MODELS:
            steps.append(self._single(self.config_maps, ns, model.metrics_name(ref.name), metrics_config_map(spec, model)))
            steps.append(self._single(self.services, ns, model.set_name(ref.name), client_service(spec, model)))
            steps.append(self._single(self.services, ns, model.headless_name(ref.name), headless_service(spec, model)))
            steps.append((STATEFUL_SET, model.set_name(ref.name), self._workload_set_step(spec, model)))
        steps.append(self._single(self.deployments, ns, topic_controller_name(ref.name), topic_controller_deployment(spec)))

        result = ReconcileResult(ref, PRESENT, spec=spec)
        self._run(ref, result, steps)
        return result

    def _workload_set_step(self, spec: AssemblySpec, model: WorkloadModel) -> Callable[[], _Step]:
        def step() -> _Step:
            ns, name = spec.namespace, model.set_name(spec.name)
            c = spec.component(model.component)
            try:
                live = self.platform.get(STATEFUL_SET, ns, name)
            except PlatformError as e:
                err = ResourceOperationError("read", STATEFUL_SET, ns, name, e)
                return [OperationResult(STATEFUL_SET, ns, name, FAILED, err)], []

            storage, violations = effective_storage(model.component, c.storage, live)
            for v in violations:
                db.log_event("WARN", str(v), namespace=ns, assembly=spec.name)

            ops = [self.workload_sets[model.component].reconcile(ns, name, workload_set(spec, model, storage))]
            if live is None or not ops[0].ok:
                return ops, violations

            old_replicas = int((live.get("spec") or {}).get("replicas") or 0)
            if c.replicas < old_replicas:
                db.log_event(
                    "INFO",
                    f"Scaled down {name} from {old_replicas} to {c.replicas}",
                    namespace=ns,
                    assembly=spec.name,
                )
            for claim in scale_down_claims(name, storage, old_replicas, c.replicas):
                ops.append(self.claims.delete(ns, claim))
            return ops, violations

        return step

    # Absent branch

    def _delete(self, ref: AssemblyRef, last_known: AssemblySpec | None) -> ReconcileResult:
        ns = ref.namespace
        steps: list[tuple[str, str, Callable[[], _Step]]] = []
        for model in WORKLOAD_MODELS:
            steps.append(self._single(self.config_maps, ns, model.metrics_name(ref.name), None))
            steps.append(self._single(self.services, ns, model.set_name(ref.name), None))
            steps.append(self._single(self.services, ns, model.headless_name(ref.name), None))
            steps.append((STATEFUL_SET, model.set_name(ref.name), self._delete_workload_set_step(ref, model, last_known)))
        steps.append(self._single(self.deployments, ns, topic_controller_name(ref.name), None))

        result = ReconcileResult(ref, ABSENT, spec=last_known)
        self._run(ref, result, steps)
        return result

    def _delete_workload_set_step(
        self, ref: AssemblyRef, model: WorkloadModel, last_known: AssemblySpec | None
    ) -> Callable[[], _Step]:
        def step() -> _Step:
            ns, name = ref.namespace, model.set_name(ref.name)
            try:
                live = self.platform.get(STATEFUL_SET, ns, name)
            except PlatformError as e:
                err = ResourceOperationError("read", STATEFUL_SET, ns, name, e)
                return [OperationResult(STATEFUL_SET, ns, name, FAILED, err)], []

            storage, replicas = self._last_known_storage(model, last_known, live)
            ops = [self.workload_sets[model.component].delete(ns, name)]
            if storage is None or not ops[0].ok:
                return ops, []
            for claim in deletion_claims(name, storage, replicas):
                ops.append(self.claims.delete(ns, claim))
            return ops, []

        return step

    @staticmethod
    def _last_known_storage(
        model: WorkloadModel, last_known: AssemblySpec | None, live: dict[str, Any] | None
    ) -> tuple[StorageConfig | None, int]:
        """Storage policy and replica count to apply on deletion.

        The caller's snapshot decides delete-claim. Without one, the policy
        recorded on the live workload set is used. Without either, no claim
        is touched.
        """
        live_replicas = int(((live or {}).get("spec") or {}).get("replicas") or 0)
        if last_known is None:
            storage = storage_from_workload_set(live) if live else None
            return storage, live_replicas
        c = last_known.component(model.component)
        storage, _ = effective_storage(model.component, c.storage, live)
        return storage, max(c.replicas, live_replicas)
