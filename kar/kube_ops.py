from __future__ import annotations

from threading import Lock
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import PlatformError
from .names import selector_string

CONFIG_MAP = "ConfigMap"
SERVICE = "Service"
STATEFUL_SET = "StatefulSet"
DEPLOYMENT = "Deployment"
PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
POD = "Pod"

MERGE_PATCH = "application/merge-patch+json"

Selector = dict[str, "str | None"]


class PlatformClient(Protocol):
    """The slice of the cluster API the reconciler needs.

    get() returns None and delete() returns False when the object does not
    exist. Every other failure raises PlatformError.
    """

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None: ...

    def list(self, kind: str, namespace: str | None, selector: Selector | None = None) -> list[dict[str, Any]]: ...

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def patch(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, kind: str, namespace: str, name: str) -> bool: ...


# kind -> (api group, method suffix)
_KINDS: dict[str, tuple[str, str]] = {
    CONFIG_MAP: ("core", "config_map"),
    SERVICE: ("core", "service"),
    PERSISTENT_VOLUME_CLAIM: ("core", "persistent_volume_claim"),
    POD: ("core", "pod"),
    STATEFUL_SET: ("apps", "stateful_set"),
    DEPLOYMENT: ("apps", "deployment"),
}

_config_lock = Lock()
_config_loaded = False


def _ensure_config() -> None:
    """Load cluster credentials once: in-cluster first, then kubeconfig."""
    global _config_loaded
    with _config_lock:
        if _config_loaded:
            return
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
        _config_loaded = True


def _platform_error(e: ApiException) -> PlatformError:
    return PlatformError(e.status, e.reason or str(e))


class KubePlatform:
    """PlatformClient backed by the official kubernetes client."""

    def __init__(self, api_client: client.ApiClient | None = None):
        if api_client is None:
            _ensure_config()
            api_client = client.ApiClient()
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._apps = client.AppsV1Api(api_client)

    def _method(self, kind: str, verb: str, suffix: str = "") -> Any:
        try:
            group, name = _KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported kind '{kind}'.") from None
        api = self._core if group == "core" else self._apps
        return getattr(api, f"{verb}_{name}{suffix}")

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return self._to_dict(self._method(kind, "read_namespaced")(name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise _platform_error(e) from e

    def list(self, kind: str, namespace: str | None, selector: Selector | None = None) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if selector:
            kwargs["label_selector"] = selector_string(selector)
        try:
            if namespace:
                result = self._method(kind, "list_namespaced")(namespace, **kwargs)
            else:
                result = self._method(kind, "list", "_for_all_namespaces")(**kwargs)
        except ApiException as e:
            raise _platform_error(e) from e
        return [self._to_dict(item) for item in result.items]

    def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._to_dict(self._method(kind, "create_namespaced")(namespace, body))
        except ApiException as e:
            raise _platform_error(e) from e

    def patch(self, kind: str, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        # Merge patch replaces lists; a strategic merge would keep dropped ports, env and volumes.
        try:
            return self._to_dict(
                self._method(kind, "patch_namespaced")(name, namespace, body, _content_type=MERGE_PATCH)
            )
        except ApiException as e:
            raise _platform_error(e) from e

    def delete(self, kind: str, namespace: str, name: str) -> bool:
        try:
            self._method(kind, "delete_namespaced")(
                name, namespace, body=client.V1DeleteOptions(propagation_policy="Background")
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise _platform_error(e) from e
