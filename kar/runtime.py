from __future__ import annotations

from threading import Lock
from typing import TYPE_CHECKING

from .names import AssemblyRef

if TYPE_CHECKING:
    from .reconciler import ReconcileResult


class RuntimeState:
    """In-memory state shared by the reconcile loop and the API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.results: dict[AssemblyRef, ReconcileResult] = {}  # ref -> last result
        self._ref_locks: dict[AssemblyRef, Lock] = {}

    def lock_for(self, ref: AssemblyRef) -> Lock:
        """Per-assembly lock: one reconcile per assembly at a time."""
        with self.lock:
            lk = self._ref_locks.get(ref)
            if lk is None:
                lk = self._ref_locks[ref] = Lock()
            return lk

    def set_result(self, result: ReconcileResult) -> None:
        with self.lock:
            self.results[result.ref] = result

    def get_result(self, ref: AssemblyRef) -> ReconcileResult | None:
        with self.lock:
            return self.results.get(ref)

    def list_results(self) -> list[ReconcileResult]:
        with self.lock:
            return [self.results[k] for k in sorted(self.results)]
