from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class KarError(Exception):
    """Base class for reconciler errors."""


class SpecParseError(KarError):
    """The spec source could not be turned into an AssemblySpec."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(f"{key}: {message}" if key else message)
        self.key = key


class PlatformError(KarError):
    """A platform API call failed with something other than 'not found'."""

    def __init__(self, status: int | None, reason: str):
        super().__init__(f"HTTP {status}: {reason}" if status else reason)
        self.status = status
        self.reason = reason


class ResourceOperationError(KarError):
    """A create/patch/delete of one resource failed."""

    def __init__(self, action: str, kind: str, namespace: str, name: str, cause: Exception):
        super().__init__(f"Failed to {action} {kind} {namespace}/{name}: {cause}")
        self.action = action
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.cause = cause


class ReconcileFailed(KarError):
    def __init__(self, ref: Any, errors: list[Exception]):
        first = errors[0] if errors else None
        more = f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""
        super().__init__(f"Reconciliation of {ref} failed: {first}{more}")
        self.ref = ref
        self.errors = errors


@dataclass(frozen=True)
class ImmutableFieldViolation:
    """A requested change to a field that is fixed after creation.

    Not an exception: the reconcile keeps the effective value and reports
    this as a warning.
    """

    component: str
    field: str
    requested: Any
    effective: Any

    def __str__(self) -> str:
        return (
            f"{self.component}: '{self.field}' cannot change after creation "
            f"(requested {self.requested!r}, keeping {self.effective!r})"
        )
