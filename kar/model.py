"""Typed model of an assembly spec source."""
from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import SpecParseError
from .names import KAFKA, ZOOKEEPER, AssemblyRef, validate_assembly_name

KEY_NODES = "nodes"
KEY_STORAGE = "storage"
KEY_METRICS_CONFIG = "metrics-config"
KEY_IMAGE = "image"
KEY_TOPIC_CONTROLLER_CONFIG = "topic-controller-config"

DEFAULT_REPLICAS = 3


class StorageType(str, Enum):
    EPHEMERAL = "ephemeral"
    PERSISTENT_CLAIM = "persistent-claim"
    LOCAL = "local"


class StorageConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: StorageType = StorageType.EPHEMERAL
    size: str | None = None
    storage_class: str | None = Field(None, alias="class")
    delete_claim: bool = Field(False, alias="delete-claim")

    @field_validator("size", mode="before")
    @classmethod
    def _size_as_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @model_validator(mode="after")
    def _size_required_for_claims(self) -> "StorageConfig":
        if self.uses_claim_template and not self.size:
            raise ValueError(f"size is required for {self.type.value} storage")
        return self

    @property
    def uses_claim_template(self) -> bool:
        return self.type in {StorageType.PERSISTENT_CLAIM, StorageType.LOCAL}

    @property
    def owns_claims(self) -> bool:
        """Only persistent-claim storage has its claims deleted by us."""
        return self.type == StorageType.PERSISTENT_CLAIM

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True, exclude_none=True), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str, key: str | None = None) -> "StorageConfig":
        data = _load_json(raw, key)
        if not isinstance(data, dict):
            raise SpecParseError("storage must be a JSON object", key)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise SpecParseError(_first_error(e), key) from e


class ComponentSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    replicas: int = Field(DEFAULT_REPLICAS, ge=1)
    storage: StorageConfig = StorageConfig()
    metrics_config: Any | None = None
    image: str | None = None

    @property
    def metrics_enabled(self) -> bool:
        return self.metrics_config is not None


class AssemblySpec(BaseModel):
    """Everything one reconcile pass needs to know about an assembly."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str
    kafka: ComponentSpec = ComponentSpec()
    zookeeper: ComponentSpec = ComponentSpec()
    topic_controller_config: Any | None = None

    @property
    def ref(self) -> AssemblyRef:
        return AssemblyRef(self.namespace, self.name)

    def component(self, component: str) -> ComponentSpec:
        if component == KAFKA:
            return self.kafka
        if component == ZOOKEEPER:
            return self.zookeeper
        raise KeyError(component)

    def to_data(self) -> dict[str, str]:
        """Serialise back to spec-source key/value form."""
        data: dict[str, str] = {}
        for component in (KAFKA, ZOOKEEPER):
            c = self.component(component)
            data[f"{component}-{KEY_NODES}"] = str(c.replicas)
            data[f"{component}-{KEY_STORAGE}"] = c.storage.to_json()
            if c.metrics_config is not None:
                data[f"{component}-{KEY_METRICS_CONFIG}"] = json.dumps(c.metrics_config, sort_keys=True)
            if c.image:
                data[f"{component}-{KEY_IMAGE}"] = c.image
        if self.topic_controller_config is not None:
            data[KEY_TOPIC_CONTROLLER_CONFIG] = json.dumps(self.topic_controller_config, sort_keys=True)
        return data

    @classmethod
    def from_data(cls, namespace: str, name: str, data: dict[str, str] | None) -> "AssemblySpec":
        try:
            validate_assembly_name(name)
        except ValueError as e:
            raise SpecParseError(str(e), "metadata.name") from e
        data = data or {}
        components = {component: _parse_component(component, data) for component in (KAFKA, ZOOKEEPER)}
        tc_raw = data.get(KEY_TOPIC_CONTROLLER_CONFIG)
        tc_config = _load_json(tc_raw, KEY_TOPIC_CONTROLLER_CONFIG) if tc_raw is not None else None
        return cls(namespace=namespace, name=name, topic_controller_config=tc_config, **components)

    @classmethod
    def from_config_map(cls, cm: dict[str, Any]) -> "AssemblySpec":
        meta = cm.get("metadata") or {}
        return cls.from_data(meta.get("namespace", ""), meta.get("name", ""), cm.get("data"))


def _parse_component(component: str, data: dict[str, str]) -> ComponentSpec:
    fields: dict[str, Any] = {}

    key = f"{component}-{KEY_NODES}"
    if key in data:
        try:
            fields["replicas"] = int(str(data[key]).strip())
        except ValueError as e:
            raise SpecParseError(f"expected an integer, got {data[key]!r}", key) from e

    key = f"{component}-{KEY_STORAGE}"
    if key in data:
        fields["storage"] = StorageConfig.from_json(data[key], key)

    key = f"{component}-{KEY_METRICS_CONFIG}"
    if key in data:
        fields["metrics_config"] = _load_json(data[key], key)

    key = f"{component}-{KEY_IMAGE}"
    if data.get(key):
        fields["image"] = data[key]

    try:
        return ComponentSpec(**fields)
    except ValidationError as e:
        raise SpecParseError(_first_error(e), f"{component}-{KEY_NODES}") from e


def _load_json(raw: str, key: str | None) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise SpecParseError(f"invalid JSON: {e}", key) from e


def _first_error(e: ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return str(e)
    loc = ".".join(str(p) for p in errs[0].get("loc", ()))
    msg = errs[0].get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg
