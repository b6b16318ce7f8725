"""Desired manifests derived from an AssemblySpec.

Everything here is a pure function of the spec (plus, for workload sets, the
effective storage). Manifests are plain dicts in API shape.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

from . import names
from .model import AssemblySpec, ComponentSpec, StorageConfig, StorageType
from .names import KAFKA, VOLUME_NAME, ZOOKEEPER
from .settings import settings

METRICS_PORT = 9404
METRICS_CONFIG_KEY = "metrics-config.json"
METRICS_VOLUME = "metrics-config"

Path = tuple[str, ...]


@dataclass(frozen=True)
class Port:
    name: str
    port: int


@dataclass(frozen=True)
class WorkloadModel:
    """Per sub-component capability used by the generic workload-set operator."""

    component: str
    client_ports: tuple[Port, ...]
    headless_ports: tuple[Port, ...]
    data_mount_path: str
    image: Callable[[ComponentSpec], str]
    env: Callable[[AssemblySpec, ComponentSpec], list[dict[str, str]]]
    mutable_fields: tuple[Path, ...] = field(
        default=(
            ("metadata", "labels"),
            ("metadata", "annotations"),
            ("spec", "replicas"),
            ("spec", "template"),
            ("spec", "updateStrategy"),
        )
    )

    def set_name(self, assembly: str) -> str:
        return names.cluster_name(assembly, self.component)

    def headless_name(self, assembly: str) -> str:
        return names.headless_name(assembly, self.component)

    def metrics_name(self, assembly: str) -> str:
        return names.metrics_config_name(assembly, self.component)


def _kafka_env(spec: AssemblySpec, c: ComponentSpec) -> list[dict[str, str]]:
    zk = names.cluster_name(spec.name, ZOOKEEPER)
    return [
        {"name": "KAFKA_ZOOKEEPER_CONNECT", "value": f"{zk}:2181"},
        {"name": "KAFKA_HEADLESS_SERVICE", "value": names.headless_name(spec.name, KAFKA)},
        {"name": "KAFKA_METRICS_ENABLED", "value": str(c.metrics_enabled).lower()},
    ]


def _zookeeper_env(spec: AssemblySpec, c: ComponentSpec) -> list[dict[str, str]]:
    return [
        {"name": "ZOOKEEPER_NODE_COUNT", "value": str(c.replicas)},
        {"name": "ZOOKEEPER_METRICS_ENABLED", "value": str(c.metrics_enabled).lower()},
    ]


KAFKA_MODEL = WorkloadModel(
    component=KAFKA,
    client_ports=(Port("clients", 9092),),
    headless_ports=(Port("clients", 9092), Port("replication", 9091)),
    data_mount_path="/var/lib/kafka",
    image=lambda c: c.image or settings.kafka_image,
    env=_kafka_env,
)

ZOOKEEPER_MODEL = WorkloadModel(
    component=ZOOKEEPER,
    client_ports=(Port("clients", 2181),),
    headless_ports=(Port("clients", 2181), Port("clustering", 2888), Port("leader-election", 3888)),
    data_mount_path="/var/lib/zookeeper",
    image=lambda c: c.image or settings.zookeeper_image,
    env=_zookeeper_env,
)

WORKLOAD_MODELS: tuple[WorkloadModel, ...] = (ZOOKEEPER_MODEL, KAFKA_MODEL)


def _meta(spec: AssemblySpec, name: str, role: str) -> dict[str, Any]:
    return {"name": name, "namespace": spec.namespace, "labels": names.labels(spec.name, role)}


def _ports(ports: tuple[Port, ...]) -> list[dict[str, Any]]:
    return [{"name": p.name, "port": p.port, "protocol": "TCP"} for p in ports]


def metrics_config_map(spec: AssemblySpec, model: WorkloadModel) -> dict[str, Any]:
    c = spec.component(model.component)
    blob = c.metrics_config if c.metrics_config is not None else {}
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _meta(spec, model.metrics_name(spec.name), model.set_name(spec.name)),
        "data": {METRICS_CONFIG_KEY: json.dumps(blob, sort_keys=True)},
    }


def client_service(spec: AssemblySpec, model: WorkloadModel) -> dict[str, Any]:
    c = spec.component(model.component)
    ports = model.client_ports + ((Port("metrics", METRICS_PORT),) if c.metrics_enabled else ())
    set_name = model.set_name(spec.name)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _meta(spec, set_name, set_name),
        "spec": {
            "type": "ClusterIP",
            "selector": names.labels(spec.name, set_name),
            "ports": _ports(ports),
        },
    }


def headless_service(spec: AssemblySpec, model: WorkloadModel) -> dict[str, Any]:
    set_name = model.set_name(spec.name)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _meta(spec, model.headless_name(spec.name), set_name),
        "spec": {
            "type": "ClusterIP",
            "clusterIP": "None",
            "selector": names.labels(spec.name, set_name),
            "ports": _ports(model.headless_ports),
        },
    }


def claim_template(spec: AssemblySpec, set_name: str, storage: StorageConfig) -> dict[str, Any]:
    tpl_spec: dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": storage.size}},
    }
    if storage.storage_class:
        tpl_spec["storageClassName"] = storage.storage_class
    return {
        "metadata": {"name": VOLUME_NAME, "labels": names.labels(spec.name, set_name)},
        "spec": tpl_spec,
    }


def workload_set(spec: AssemblySpec, model: WorkloadModel, storage: StorageConfig) -> dict[str, Any]:
    """StatefulSet for one sub-component, built from the *effective* storage."""
    c = spec.component(model.component)
    set_name = model.set_name(spec.name)
    pod_labels = names.labels(spec.name, set_name)

    container_ports = [{"name": p.name, "containerPort": p.port, "protocol": "TCP"} for p in model.headless_ports]
    if c.metrics_enabled:
        container_ports.append({"name": "metrics", "containerPort": METRICS_PORT, "protocol": "TCP"})

    volumes: list[dict[str, Any]] = [
        {"name": METRICS_VOLUME, "configMap": {"name": model.metrics_name(spec.name)}},
    ]
    if storage.type == StorageType.EPHEMERAL:
        volumes.append({"name": VOLUME_NAME, "emptyDir": {}})

    client_port = model.client_ports[0].port
    container = {
        "name": model.component,
        "image": model.image(c),
        "env": model.env(spec, c),
        "ports": container_ports,
        "volumeMounts": [
            {"name": VOLUME_NAME, "mountPath": model.data_mount_path},
            {"name": METRICS_VOLUME, "mountPath": "/opt/prometheus/config"},
        ],
        "livenessProbe": {"tcpSocket": {"port": client_port}, "initialDelaySeconds": 15, "timeoutSeconds": 5},
        "readinessProbe": {"tcpSocket": {"port": client_port}, "initialDelaySeconds": 15, "timeoutSeconds": 5},
    }

    ss_spec: dict[str, Any] = {
        "replicas": c.replicas,
        "serviceName": model.headless_name(spec.name),
        "podManagementPolicy": "Parallel",
        "updateStrategy": {"type": "OnDelete"},
        "selector": {"matchLabels": pod_labels},
        "template": {
            "metadata": {"labels": pod_labels},
            "spec": {"containers": [container], "volumes": volumes},
        },
    }
    if storage.uses_claim_template:
        ss_spec["volumeClaimTemplates"] = [claim_template(spec, set_name, storage)]

    meta = _meta(spec, set_name, set_name)
    meta["annotations"] = {names.ANNOTATION_STORAGE: storage.to_json()}
    return {"apiVersion": "apps/v1", "kind": "StatefulSet", "metadata": meta, "spec": ss_spec}


def topic_controller_deployment(spec: AssemblySpec) -> dict[str, Any] | None:
    """The companion deployment, or None when the spec does not ask for one."""
    if spec.topic_controller_config is None:
        return None
    name = names.topic_controller_name(spec.name)
    pod_labels = names.labels(spec.name, name)
    env = [
        {"name": "TC_KAFKA_BOOTSTRAP_SERVERS", "value": f"{names.cluster_name(spec.name, KAFKA)}:9092"},
        {"name": "TC_ZOOKEEPER_CONNECT", "value": f"{names.cluster_name(spec.name, ZOOKEEPER)}:2181"},
        {"name": "TC_NAMESPACE", "value": spec.namespace},
        {"name": "TC_CONFIG", "value": json.dumps(spec.topic_controller_config, sort_keys=True)},
    ]
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _meta(spec, name, name),
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": pod_labels},
            "strategy": {"type": "Recreate"},
            "template": {
                "metadata": {"labels": pod_labels},
                "spec": {
                    "containers": [
                        {"name": names.TOPIC_CONTROLLER, "image": settings.topic_controller_image, "env": env}
                    ]
                },
            },
        },
    }
