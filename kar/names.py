"""Deterministic names and labels.

Names are the only link between an assembly spec and the objects derived
from it: nothing else records ownership.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

ASSEMBLY_TYPE = "kafka"

LABEL_KIND = "kar.io/kind"
LABEL_TYPE = "kar.io/type"
LABEL_CLUSTER = "kar.io/cluster"
LABEL_NAME = "kar.io/name"
ANNOTATION_STORAGE = "kar.io/storage"

VOLUME_NAME = "data"

# 63 minus the longest suffix we append ("-zookeeper-metrics-config").
ASSEMBLY_NAME_RE = re.compile(r"^[a-z]([a-z0-9\-]{0,38}[a-z0-9])?$")

KAFKA = "kafka"
ZOOKEEPER = "zookeeper"
TOPIC_CONTROLLER = "topic-controller"


@dataclass(frozen=True, order=True)
class AssemblyRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{ASSEMBLY_TYPE}({self.namespace}/{self.name})"


def validate_assembly_name(name: str) -> None:
    if not ASSEMBLY_NAME_RE.match(name):
        raise ValueError(
            "Invalid assembly name. Use lowercase letters/numbers and hyphen, starting with a letter (max 40 chars)."
        )


def cluster_name(assembly: str, component: str) -> str:
    """Workload set (and client service) name of a sub-component."""
    return f"{assembly}-{component}"


def headless_name(assembly: str, component: str) -> str:
    return f"{assembly}-{component}-headless"


def metrics_config_name(assembly: str, component: str) -> str:
    return f"{assembly}-{component}-metrics-config"


def topic_controller_name(assembly: str) -> str:
    return f"{assembly}-{TOPIC_CONTROLLER}"


def pod_name(set_name: str, index: int) -> str:
    return f"{set_name}-{index}"


def claim_name(set_name: str, index: int) -> str:
    """Claim provisioned from the workload set's `data` template for replica `index`."""
    return f"{VOLUME_NAME}-{set_name}-{index}"


def spec_selector() -> dict[str, str]:
    """Labels identifying a spec source."""
    return {LABEL_KIND: "cluster", LABEL_TYPE: ASSEMBLY_TYPE}


def derived_selector(assembly: str | None = None) -> dict[str, str | None]:
    """Selector for derived objects; `None` values mean 'label exists'."""
    return {LABEL_TYPE: ASSEMBLY_TYPE, LABEL_CLUSTER: assembly}


def labels(assembly: str, name: str) -> dict[str, str]:
    return {LABEL_CLUSTER: assembly, LABEL_TYPE: ASSEMBLY_TYPE, LABEL_NAME: name}


def selector_string(selector: dict[str, str | None]) -> str:
    return ",".join(k if v is None else f"{k}={v}" for k, v in sorted(selector.items()))


def parse_selector(text: str) -> dict[str, str | None]:
    """Inverse of selector_string: 'a=b,c' -> {'a': 'b', 'c': None}."""
    out: dict[str, str | None] = {}
    for term in text.split(","):
        term = term.strip()
        if not term:
            continue
        key, sep, value = term.partition("=")
        if not key.strip():
            raise ValueError(f"Invalid selector term '{term}'.")
        out[key.strip()] = value.strip() if sep else None
    return out


def matches(obj_labels: dict[str, str] | None, selector: dict[str, str | None]) -> bool:
    obj_labels = obj_labels or {}
    for k, v in selector.items():
        if k not in obj_labels:
            return False
        if v is not None and obj_labels[k] != v:
            return False
    return True
