import copy
import itertools
import json
import sys
import threading
from collections import defaultdict

import pytest

# Ensure project root is importable (so `import main` / `import kar` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from kar import db  # noqa: E402
from kar.errors import PlatformError  # noqa: E402
from kar.kube_ops import PERSISTENT_VOLUME_CLAIM, POD, SERVICE, STATEFUL_SET  # noqa: E402
from kar.names import matches, spec_selector  # noqa: E402
from kar.settings import Settings  # noqa: E402

NAMESPACE = "my-namespace"
CLUSTER_NAME = "my-cluster"

_SS_MUTABLE_SPEC = {"replicas", "template", "updateStrategy", "minReadySeconds", "persistentVolumeClaimRetentionPolicy"}


def _merge(target, patch):
    """JSON merge patch (RFC 7386): lists are replaced, None removes a key.

    KubePlatform sends application/merge-patch+json, so this is what the
    server does with our patches.
    """
    for k, v in patch.items():
        if v is None:
            target.pop(k, None)
        elif isinstance(v, dict) and isinstance(target.get(k), dict):
            _merge(target[k], v)
        else:
            target[k] = copy.deepcopy(v)


class MockKube:
    """In-memory platform.

    Stateful sets get pods and template claims the way the real controller
    would. Only create/patch/delete calls made through the client are
    recorded in `writes`.
    """

    def __init__(self):
        self.objects = defaultdict(dict)  # kind -> (namespace, name) -> obj
        self.writes = []  # (verb, kind, namespace, name)
        self._failures = {}  # (verb, kind, name or None) -> status
        self._uids = itertools.count(1)
        self._lock = threading.RLock()

    # test helpers

    def add(self, kind, obj):
        with self._lock:
            obj = copy.deepcopy(obj)
            meta = obj.setdefault("metadata", {})
            meta.setdefault("uid", f"uid-{next(self._uids)}")
            self.objects[kind][(meta["namespace"], meta["name"])] = obj
            if kind == STATEFUL_SET:
                self._sync_set(obj)
            return obj

    def remove(self, kind, namespace, name):
        """Out-of-band delete (not journaled)."""
        with self._lock:
            obj = self.objects[kind].pop((namespace, name), None)
            if kind == STATEFUL_SET and obj is not None:
                self._remove_pods(namespace, name, 0)

    def fail(self, verb, kind, name=None, status=500):
        self._failures[(verb, kind, name)] = status

    def names(self, kind, namespace=NAMESPACE):
        with self._lock:
            return {name for (ns, name) in self.objects[kind] if ns == namespace}

    def mutations(self, verb=None, kind=None):
        return [w for w in self.writes if (verb is None or w[0] == verb) and (kind is None or w[1] == kind)]

    # PlatformClient

    def _check(self, verb, kind, name):
        status = self._failures.get((verb, kind, name)) or self._failures.get((verb, kind, None))
        if status:
            raise PlatformError(status, f"injected {verb} failure")

    def get(self, kind, namespace, name):
        self._check("get", kind, name)
        with self._lock:
            obj = self.objects[kind].get((namespace, name))
            return copy.deepcopy(obj) if obj is not None else None

    def list(self, kind, namespace, selector=None):
        self._check("list", kind, None)
        with self._lock:
            out = []
            for (ns, _), obj in sorted(self.objects[kind].items()):
                if namespace and ns != namespace:
                    continue
                if selector and not matches(obj["metadata"].get("labels"), selector):
                    continue
                out.append(copy.deepcopy(obj))
            return out

    def create(self, kind, namespace, body):
        name = body["metadata"]["name"]
        self._check("create", kind, name)
        with self._lock:
            if (namespace, name) in self.objects[kind]:
                raise PlatformError(409, "AlreadyExists")
            obj = copy.deepcopy(body)
            obj["metadata"]["namespace"] = namespace
            obj["metadata"]["uid"] = f"uid-{next(self._uids)}"
            if kind == SERVICE:
                obj["spec"].setdefault("clusterIP", f"10.0.0.{next(self._uids)}")
                obj["spec"].setdefault("sessionAffinity", "None")
            self.objects[kind][(namespace, name)] = obj
            self.writes.append(("create", kind, namespace, name))
            if kind == STATEFUL_SET:
                self._sync_set(obj)
            return copy.deepcopy(obj)

    def patch(self, kind, namespace, name, body):
        self._check("patch", kind, name)
        with self._lock:
            obj = self.objects[kind].get((namespace, name))
            if obj is None:
                raise PlatformError(404, "NotFound")
            spec_patch = body.get("spec") or {}
            if kind == STATEFUL_SET and set(spec_patch) - _SS_MUTABLE_SPEC:
                raise PlatformError(422, "Forbidden: updates to statefulset spec for fields other than "
                                         "'replicas', 'template' and 'updateStrategy' are forbidden")
            if kind == SERVICE and "clusterIP" in spec_patch and spec_patch["clusterIP"] != obj["spec"].get("clusterIP"):
                raise PlatformError(422, "spec.clusterIP: Invalid value: field is immutable")
            _merge(obj, body)
            self.writes.append(("patch", kind, namespace, name))
            if kind == STATEFUL_SET:
                self._sync_set(obj)
            return copy.deepcopy(obj)

    def delete(self, kind, namespace, name):
        self._check("delete", kind, name)
        with self._lock:
            obj = self.objects[kind].pop((namespace, name), None)
            if obj is None:
                return False
            self.writes.append(("delete", kind, namespace, name))
            if kind == STATEFUL_SET:
                self._remove_pods(namespace, name, 0)
            return True

    # stateful set controller

    def _sync_set(self, ss):
        ns, name = ss["metadata"]["namespace"], ss["metadata"]["name"]
        replicas = ss["spec"].get("replicas", 1)
        labels = ss["spec"]["template"]["metadata"].get("labels", {})
        for i in range(replicas):
            pod = f"{name}-{i}"
            if (ns, pod) not in self.objects[POD]:
                self.objects[POD][(ns, pod)] = {
                    "metadata": {"name": pod, "namespace": ns, "labels": dict(labels), "uid": f"uid-{next(self._uids)}"},
                }
            for tpl in ss["spec"].get("volumeClaimTemplates") or []:
                claim = f"{tpl['metadata']['name']}-{name}-{i}"
                if (ns, claim) not in self.objects[PERSISTENT_VOLUME_CLAIM]:
                    self.objects[PERSISTENT_VOLUME_CLAIM][(ns, claim)] = {
                        "metadata": {
                            "name": claim,
                            "namespace": ns,
                            "labels": dict(tpl["metadata"].get("labels") or {}),
                            "uid": f"uid-{next(self._uids)}",
                        },
                        "spec": copy.deepcopy(tpl.get("spec") or {}),
                    }
        self._remove_pods(ns, name, replicas)

    def _remove_pods(self, ns, set_name, keep):
        for (pns, pod) in list(self.objects[POD]):
            prefix, _, idx = pod.rpartition("-")
            if pns == ns and prefix == set_name and idx.isdigit() and int(idx) >= keep:
                del self.objects[POD][(pns, pod)]


def spec_config_map(
    namespace=NAMESPACE,
    name=CLUSTER_NAME,
    kafka_replicas=3,
    kafka_storage=None,
    zk_replicas=1,
    zk_storage=None,
    metrics=True,
    topic_controller=True,
):
    data = {
        "kafka-nodes": str(kafka_replicas),
        "kafka-storage": json.dumps(kafka_storage or {"type": "ephemeral"}),
        "zookeeper-nodes": str(zk_replicas),
        "zookeeper-storage": json.dumps(zk_storage or {"type": "ephemeral"}),
    }
    if metrics:
        data["kafka-metrics-config"] = "{}"
        data["zookeeper-metrics-config"] = "{}"
    if topic_controller:
        data["topic-controller-config"] = "{}"
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace, "labels": spec_selector()},
        "data": data,
    }


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point the event journal at a throwaway sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "kar.db")))
    db.init_db()


@pytest.fixture
def kube():
    return MockKube()


@pytest.fixture
def make_spec():
    return spec_config_map


@pytest.fixture
def reconciler(kube):
    from kar.reconciler import AssemblyReconciler

    r = AssemblyReconciler(kube, workers=4)
    yield r
    r.close()
