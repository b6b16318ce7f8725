import json

import pytest

from kar.errors import SpecParseError
from kar.model import AssemblySpec, StorageConfig, StorageType
from kar.names import (
    AssemblyRef,
    claim_name,
    derived_selector,
    headless_name,
    matches,
    parse_selector,
    selector_string,
    validate_assembly_name,
)


def test_defaults_when_keys_missing():
    spec = AssemblySpec.from_data("ns", "my-cluster", {})
    assert spec.kafka.replicas == 3
    assert spec.zookeeper.replicas == 3
    assert spec.kafka.storage.type == StorageType.EPHEMERAL
    assert spec.kafka.metrics_enabled is False
    assert spec.topic_controller_config is None
    assert spec.ref == AssemblyRef("ns", "my-cluster")


def test_parses_components_and_storage():
    data = {
        "kafka-nodes": "5",
        "kafka-storage": json.dumps({"type": "persistent-claim", "size": 123, "class": "foo", "delete-claim": True}),
        "kafka-metrics-config": '{"lowercaseOutputName": true}',
        "kafka-image": "my/kafka:1",
        "zookeeper-nodes": "1",
        "topic-controller-config": "{}",
    }
    spec = AssemblySpec.from_data("ns", "c", data)

    assert spec.kafka.replicas == 5
    assert spec.kafka.storage == StorageConfig(
        type=StorageType.PERSISTENT_CLAIM, size="123", storage_class="foo", delete_claim=True
    )
    assert spec.kafka.metrics_config == {"lowercaseOutputName": True}
    assert spec.kafka.image == "my/kafka:1"
    assert spec.zookeeper.replicas == 1
    assert spec.topic_controller_config == {}


def test_to_data_parses_back_to_same_spec():
    spec = AssemblySpec.from_data(
        "ns",
        "c",
        {
            "kafka-nodes": "2",
            "kafka-storage": '{"type": "local", "size": "10Gi"}',
            "zookeeper-metrics-config": "{}",
        },
    )
    assert AssemblySpec.from_data("ns", "c", spec.to_data()) == spec


def test_snapshot_json_round_trip():
    spec = AssemblySpec.from_data("ns", "c", {"kafka-storage": '{"type": "persistent-claim", "size": "1Gi"}'})
    assert AssemblySpec.model_validate_json(spec.model_dump_json()) == spec


@pytest.mark.parametrize(
    "data,key",
    [
        ({"kafka-nodes": "three"}, "kafka-nodes"),
        ({"zookeeper-nodes": "0"}, "zookeeper-nodes"),
        ({"kafka-storage": "{not json"}, "kafka-storage"),
        ({"kafka-storage": '["ephemeral"]'}, "kafka-storage"),
        ({"kafka-storage": '{"type": "nfs"}'}, "kafka-storage"),
        ({"kafka-storage": '{"type": "persistent-claim"}'}, "kafka-storage"),
        ({"zookeeper-metrics-config": "nope"}, "zookeeper-metrics-config"),
        ({"topic-controller-config": "{"}, "topic-controller-config"),
    ],
)
def test_invalid_values_raise_spec_parse_error(data, key):
    with pytest.raises(SpecParseError) as exc:
        AssemblySpec.from_data("ns", "c", data)
    assert exc.value.key == key


def test_from_config_map_uses_metadata():
    cm = {"metadata": {"namespace": "team-a", "name": "orders"}, "data": {"kafka-nodes": "1"}}
    spec = AssemblySpec.from_config_map(cm)
    assert spec.ref == AssemblyRef("team-a", "orders")
    assert spec.kafka.replicas == 1


def test_storage_json_uses_wire_keys():
    s = StorageConfig(type=StorageType.PERSISTENT_CLAIM, size="1Gi", storage_class="fast", delete_claim=True)
    assert json.loads(s.to_json()) == {"type": "persistent-claim", "size": "1Gi", "class": "fast", "delete-claim": True}
    assert StorageConfig.from_json(s.to_json()) == s


def test_local_storage_is_not_owned():
    s = StorageConfig(type=StorageType.LOCAL, size="1Gi", delete_claim=True)
    assert s.uses_claim_template is True
    assert s.owns_claims is False


@pytest.mark.parametrize("name", ["a", "my-cluster", "c1", "x" * 40])
def test_valid_assembly_names(name):
    validate_assembly_name(name)


@pytest.mark.parametrize("name", ["", "My-Cluster", "1abc", "abc-", "a_b", "x" * 41])
def test_invalid_assembly_names(name):
    with pytest.raises(ValueError):
        validate_assembly_name(name)


def test_invalid_name_is_a_parse_error():
    with pytest.raises(SpecParseError):
        AssemblySpec.from_data("ns", "Bad_Name", {})


def test_names_and_selectors():
    assert claim_name("my-cluster-kafka", 2) == "data-my-cluster-kafka-2"
    assert headless_name("my-cluster", "zookeeper") == "my-cluster-zookeeper-headless"
    assert str(AssemblyRef("ns", "c")) == "kafka(ns/c)"

    sel = derived_selector()
    assert selector_string(sel) == "kar.io/cluster,kar.io/type=kafka"
    assert matches({"kar.io/cluster": "x", "kar.io/type": "kafka"}, sel)
    assert not matches({"kar.io/type": "kafka"}, sel)
    assert not matches({"kar.io/cluster": "x", "kar.io/type": "kafka"}, derived_selector("y"))


def test_parse_selector_inverts_selector_string():
    sel = {"kar.io/cluster": None, "kar.io/type": "kafka"}
    assert parse_selector(selector_string(sel)) == sel
    assert parse_selector("") == {}
    with pytest.raises(ValueError):
        parse_selector("=x")
