from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import nullcontext
from threading import Event, Thread
from typing import Any, Callable, ContextManager, Mapping

from pydantic import ValidationError

from . import db
from .errors import PlatformError
from .kube_ops import CONFIG_MAP, DEPLOYMENT, SERVICE, STATEFUL_SET, PlatformClient, Selector
from .model import AssemblySpec
from .names import LABEL_CLUSTER, AssemblyRef, derived_selector, spec_selector
from .operators import FAILED, OperationResult
from .reconciler import ABSENT, PRESENT, UNKNOWN, AssemblyReconciler, ReconcileResult
from .runtime import RuntimeState
from .settings import settings

DERIVED_KINDS = (STATEFUL_SET, DEPLOYMENT, SERVICE, CONFIG_MAP)


def scope(namespace: str | None) -> str | None:
    """None means cluster-wide."""
    if not namespace or namespace == "*":
        return None
    return namespace


class AssemblyIndex:
    """The only index of managed assemblies: label queries against the platform."""

    def __init__(self, platform: PlatformClient, selector: Selector | None = None):
        self.platform = platform
        self.selector = selector or spec_selector()

    def specs(self, namespace: str | None = None, selector: Selector | None = None) -> dict[AssemblyRef, dict[str, Any]]:
        """Spec sources matching the selector.

        Extra selector terms narrow the default one; they cannot widen it to
        config maps that are not spec sources.
        """
        out: dict[AssemblyRef, dict[str, Any]] = {}
        for cm in self.platform.list(CONFIG_MAP, scope(namespace), {**self.selector, **(selector or {})}):
            meta = cm.get("metadata") or {}
            out[AssemblyRef(meta.get("namespace", ""), meta.get("name", ""))] = cm
        return out

    def derived(self, namespace: str | None = None) -> set[AssemblyRef]:
        """Assemblies that still own at least one derived object."""
        refs: set[AssemblyRef] = set()
        for kind in DERIVED_KINDS:
            for obj in self.platform.list(kind, scope(namespace), derived_selector()):
                meta = obj.get("metadata") or {}
                assembly = (meta.get("labels") or {}).get(LABEL_CLUSTER)
                if assembly:
                    refs.add(AssemblyRef(meta.get("namespace", ""), assembly))
        return refs


class ReconcileAllScheduler:
    """Fans reconcile_assembly() out over every assembly in scope.

    The known-assemblies mapping (ref -> last-known spec or None) comes from
    the caller on each call; this class keeps no memory between sweeps.
    """

    def __init__(
        self,
        reconciler: AssemblyReconciler,
        index: AssemblyIndex | None = None,
        workers: int | None = None,
        guard: Callable[[AssemblyRef], ContextManager[Any]] | None = None,
    ):
        self.reconciler = reconciler
        self.index = index or AssemblyIndex(reconciler.platform)
        self.guard = guard
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, workers or settings.assembly_workers), thread_name_prefix="kar-assembly"
        )

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def submit(
        self, ref: AssemblyRef, last_known: AssemblySpec | None = None, trigger: str = "manual"
    ) -> Future[ReconcileResult]:
        return self._pool.submit(self._reconcile_one, ref, last_known, trigger)

    def _reconcile_one(self, ref: AssemblyRef, last_known: AssemblySpec | None, trigger: str) -> ReconcileResult:
        with self.guard(ref) if self.guard else nullcontext():
            return self.reconciler.reconcile_assembly(ref, last_known, trigger)

    def reconcile_all(
        self,
        namespace: str | None = None,
        known: Mapping[AssemblyRef, AssemblySpec | None] | None = None,
        selector: Selector | None = None,
        trigger: str = "timer",
    ) -> dict[AssemblyRef, ReconcileResult]:
        ns = scope(namespace)
        where = ns or "all namespaces"
        try:
            present = set(self.index.specs(ns, selector))
            derived = self.index.derived(ns)
        except PlatformError as e:
            db.log_event("ERROR", f"Listing assemblies in {where} failed: {e}", namespace=ns)
            raise

        known = {ref: snap for ref, snap in (known or {}).items() if ns is None or ref.namespace == ns}
        refs = sorted(present | set(known) | derived)
        gone = [r for r in refs if r not in present]
        db.log_event(
            "INFO",
            f"Reconciling {len(refs)} assemblies in {where} ({len(gone)} without a spec)",
            namespace=ns,
        )

        futures = {ref: self.submit(ref, known.get(ref), trigger) for ref in refs}
        results: dict[AssemblyRef, ReconcileResult] = {}
        for ref, fut in futures.items():
            try:
                results[ref] = fut.result()
            except Exception as e:
                db.log_event("ERROR", f"{type(e).__name__}: {e}", namespace=ref.namespace, assembly=ref.name)
                results[ref] = ReconcileResult(
                    ref, UNKNOWN, [OperationResult(CONFIG_MAP, ref.namespace, ref.name, FAILED, e)]
                )
        return results


def _snapshot(row: db.AssemblyRow) -> AssemblySpec | None:
    if not row.spec_json:
        return None
    try:
        return AssemblySpec.model_validate_json(row.spec_json)
    except ValidationError:
        db.log_event("WARN", "Ignoring unreadable spec snapshot", namespace=row.namespace, assembly=row.name)
        return None


class ReconcileLoop:
    """Periodic driver that keeps the known-assemblies set across sweeps.

    Snapshots live in the local sqlite db, so only one loop may manage a
    given set of assemblies.
    """

    def __init__(
        self,
        scheduler: ReconcileAllScheduler,
        runtime: RuntimeState,
        namespace: str | None = None,
        interval_s: int | None = None,
    ):
        self.scheduler = scheduler
        self.runtime = runtime
        self.namespace = scope(namespace if namespace is not None else settings.namespace)
        self.interval_s = max(1, interval_s or settings.reconcile_interval_s)
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconcile loop started", namespace=self.namespace)
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception as e:
                db.log_event("ERROR", f"Reconcile sweep failed: {type(e).__name__}: {e}", namespace=self.namespace)
            self._stop.wait(self.interval_s)

    def _scope(self, namespace: str | None) -> str | None:
        """None means the loop's own scope; '*' means every namespace."""
        return self.namespace if namespace is None else scope(namespace)

    def known(self, namespace: str | None = None) -> dict[AssemblyRef, AssemblySpec | None]:
        ns = self._scope(namespace)
        return {AssemblyRef(r.namespace, r.name): _snapshot(r) for r in db.list_assemblies(ns)}

    def sweep(
        self, trigger: str = "timer", namespace: str | None = None, selector: Selector | None = None
    ) -> dict[AssemblyRef, ReconcileResult]:
        ns = self._scope(namespace)
        results = self.scheduler.reconcile_all(ns, self.known("*" if ns is None else ns), selector, trigger)
        for result in results.values():
            self.record(result)
        return results

    def reconcile_one(self, ref: AssemblyRef, trigger: str = "api") -> ReconcileResult:
        snapshot = self.known(ref.namespace).get(ref)
        result = self.scheduler.submit(ref, snapshot, trigger).result()
        self.record(result)
        return result

    def record(self, result: ReconcileResult) -> None:
        self.runtime.set_result(result)
        ref = result.ref
        if result.branch == PRESENT:
            db.upsert_assembly(ref.namespace, ref.name, result.spec.model_dump_json() if result.spec else None)
        elif result.branch == ABSENT and result.ok:
            db.forget_assembly(ref.namespace, ref.name)
