"""Tests for the strimzikafkaoperator.builder module."""

from __future__ import annotations

import copy
from typing import Any

import pytest

from strimzikafkaoperator.builder import (
    KafkaBuilder,
    PlatformDefaults,
    ZookeeperBuilder,
    build,
)
from strimzikafkaoperator.certprocessor import ClusterCredentials
from strimzikafkaoperator.errors import InvalidSpec
from strimzikafkaoperator.model import parse_cluster_spec
from strimzikafkaoperator.objects import ObjectKey

CREDENTIALS = ClusterCredentials(
    blobs=(("cluster-ca.crt", "Y2x1c3Rlcg=="), ("clients-ca.crt", "Y2xpZW50cw=="))
)


def build_objects(
    body: dict[str, Any], defaults: PlatformDefaults, credentials=CREDENTIALS
) -> dict[ObjectKey, Any]:
    spec = parse_cluster_spec(body)
    return {obj.key: obj for obj in build(spec, defaults, credentials)}


def get_env_value(env: list[dict[str, str]], name: str) -> str | None:
    for item in env:
        if item["name"] == name:
            return item["value"]
    return None


def kafka_container(objects: dict[ObjectKey, Any]) -> dict[str, Any]:
    statefulset = objects[ObjectKey("StatefulSet", "events-kafka")]
    return statefulset.body["spec"]["template"]["spec"]["containers"][0]


def test_object_names(kafka_body: dict[str, Any], defaults: PlatformDefaults) -> None:
    objects = build_objects(kafka_body, defaults)

    assert sorted(str(key) for key in objects) == [
        "ConfigMap/events-kafka-config",
        "ConfigMap/events-zookeeper-config",
        "Secret/events-kafka-trusted-certs",
        "Service/events-kafka-bootstrap",
        "Service/events-kafka-brokers",
        "Service/events-zookeeper-client",
        "Service/events-zookeeper-nodes",
        "StatefulSet/events-kafka",
        "StatefulSet/events-zookeeper",
    ]
    assert objects[ObjectKey("Secret", "events-kafka-trusted-certs")].role == "shared"
    assert objects[ObjectKey("StatefulSet", "events-kafka")].role == "kafka"
    assert objects[ObjectKey("StatefulSet", "events-zookeeper")].role == "zookeeper"


def test_build_is_deterministic(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    first = build_objects(copy.deepcopy(kafka_body), defaults)
    second = build_objects(kafka_body, defaults)

    assert {k: o.fingerprint for k, o in first.items()} == {
        k: o.fingerprint for k, o in second.items()
    }
    assert {k: o.disruptive_fingerprint for k, o in first.items()} == {
        k: o.disruptive_fingerprint for k, o in second.items()
    }


def test_owner_references(kafka_body: dict[str, Any], defaults: PlatformDefaults) -> None:
    objects = build_objects(kafka_body, defaults)

    for obj in objects.values():
        (owner,) = obj.body["metadata"]["ownerReferences"]
        assert owner["kind"] == "Kafka"
        assert owner["name"] == "events"
        assert owner["uid"] == kafka_body["metadata"]["uid"]
        assert obj.body["metadata"]["namespace"] == "kafka"


def test_fingerprint_annotations(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    objects = build_objects(kafka_body, defaults)
    statefulset = objects[ObjectKey("StatefulSet", "events-kafka")]

    annotations = statefulset.body["metadata"]["annotations"]
    assert annotations["strimzi.io/fingerprint"] == statefulset.fingerprint
    assert annotations["strimzi.io/disruptive-fingerprint"] == (
        statefulset.disruptive_fingerprint
    )
    template = statefulset.body["spec"]["template"]["metadata"]["annotations"]
    assert template["strimzi.io/disruptive-fingerprint"] == (
        statefulset.disruptive_fingerprint
    )
    config = objects[ObjectKey("ConfigMap", "events-kafka-config")]
    assert template["strimzi.io/config-hash"] == config.fingerprint
    assert template["strimzi.io/credentials-hash"] == CREDENTIALS.fingerprint


def test_kafka_dynamic_heap(kafka_body: dict[str, Any], defaults: PlatformDefaults) -> None:
    kafka_body["spec"]["kafka"]["resources"] = {"limits": {"memory": "16G"}}
    env = kafka_container(build_objects(kafka_body, defaults))["env"]

    assert get_env_value(env, "DYNAMIC_HEAP_FRACTION") == "0.5"
    assert get_env_value(env, "DYNAMIC_HEAP_MAX") == "5368709120"
    assert get_env_value(env, "KAFKA_HEAP_OPTS") is None


def test_kafka_explicit_heap(kafka_body: dict[str, Any], defaults: PlatformDefaults) -> None:
    kafka_body["spec"]["kafka"]["resources"] = {"limits": {"memory": "16G"}}
    kafka_body["spec"]["kafka"]["jvmOptions"] = {"-Xms": "4", "-Xmx": "4"}
    env = kafka_container(build_objects(kafka_body, defaults))["env"]

    assert get_env_value(env, "KAFKA_HEAP_OPTS") == "-Xms4 -Xmx4"
    assert get_env_value(env, "DYNAMIC_HEAP_FRACTION") is None


def test_zookeeper_dynamic_heap(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    kafka_body["spec"]["zookeeper"]["resources"] = {"limits": {"memory": "4Gi"}}
    objects = build_objects(kafka_body, defaults)
    statefulset = objects[ObjectKey("StatefulSet", "events-zookeeper")]
    env = statefulset.body["spec"]["template"]["spec"]["containers"][0]["env"]

    assert get_env_value(env, "DYNAMIC_HEAP_FRACTION") == "0.75"
    assert get_env_value(env, "DYNAMIC_HEAP_MAX") == str(2 * 1024**3)
    assert get_env_value(env, "ZOOKEEPER_NODE_COUNT") == "3"


def test_default_image(kafka_body: dict[str, Any], defaults: PlatformDefaults) -> None:
    container = kafka_container(build_objects(kafka_body, defaults))
    assert container["image"] == defaults.kafka_image
    assert container["imagePullPolicy"] == "IfNotPresent"

    kafka_body["spec"]["kafka"]["image"] = "example/kafka:latest"
    container = kafka_container(build_objects(kafka_body, defaults))
    assert container["image"] == "example/kafka:latest"
    assert container["imagePullPolicy"] == "Always"


def test_kafka_server_config(kafka_body: dict[str, Any]) -> None:
    kafka_body["spec"]["kafka"]["authorization"] = {
        "type": "simple",
        "superUsers": ["CN=admin"],
    }
    config = KafkaBuilder.render_config(parse_cluster_spec(kafka_body))
    lines = config.splitlines()

    assert "broker.id=${STRIMZI_BROKER_ID}" in lines
    assert "zookeeper.connect=events-zookeeper-client:2181" in lines
    assert (
        "listeners=REPLICATION://0.0.0.0:9091,PLAIN_9092://0.0.0.0:9092,"
        "TLS_9093://0.0.0.0:9093"
    ) in lines
    assert (
        "listener.security.protocol.map=REPLICATION:SSL,PLAIN_9092:PLAINTEXT,"
        "TLS_9093:SSL"
    ) in lines
    assert "listener.name.tls_9093.ssl.client.auth=required" in lines
    assert "authorizer.class.name=kafka.security.auth.SimpleAclAuthorizer" in lines
    assert "super.users=User:CN=events-kafka,O=io.strimzi;User:CN=admin" in lines
    assert "offsets.topic.replication.factor=3" in lines


def test_zookeeper_config(kafka_body: dict[str, Any]) -> None:
    config = ZookeeperBuilder.render_config(parse_cluster_spec(kafka_body))
    lines = config.splitlines()

    assert (
        "server.1=events-zookeeper-0.events-zookeeper-nodes.kafka.svc:2888:3888"
        in lines
    )
    assert (
        "server.3=events-zookeeper-2.events-zookeeper-nodes.kafka.svc:2888:3888"
        in lines
    )


def test_external_listener_services(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    kafka_body["spec"]["kafka"]["listeners"] = [
        {"name": "plain", "port": 9092},
        {"name": "nodes", "port": 9094, "type": "nodeport", "tls": True},
        {"name": "lb", "port": 9095, "type": "loadbalancer", "tls": True},
        {"name": "route", "port": 9096, "type": "route", "tls": True},
    ]
    objects = build_objects(kafka_body, defaults)

    def service_type(name: str) -> str:
        return objects[ObjectKey("Service", name)].body["spec"]["type"]

    assert service_type("events-kafka-nodes-bootstrap") == "NodePort"
    assert service_type("events-kafka-lb-bootstrap") == "LoadBalancer"
    assert service_type("events-kafka-route-bootstrap") == "ClusterIP"
    bootstrap = objects[ObjectKey("Service", "events-kafka-bootstrap")]
    assert [p["port"] for p in bootstrap.body["spec"]["ports"]] == [9091, 9092]


def test_tls_authentication_requires_tls(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    kafka_body["spec"]["kafka"]["listeners"] = [
        {"name": "plain", "port": 9092, "authentication": {"type": "tls"}},
    ]
    with pytest.raises(InvalidSpec, match="tls"):
        build_objects(kafka_body, defaults)


def test_credentials_secret(kafka_body: dict[str, Any], defaults: PlatformDefaults) -> None:
    objects = build_objects(kafka_body, defaults)
    secret = objects[ObjectKey("Secret", "events-kafka-trusted-certs")]
    assert secret.body["data"] == CREDENTIALS.as_data()


def test_config_change_is_disruptive(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    before = build_objects(copy.deepcopy(kafka_body), defaults)
    kafka_body["spec"]["kafka"]["config"]["num.partitions"] = 12
    after = build_objects(kafka_body, defaults)

    key = ObjectKey("StatefulSet", "events-kafka")
    assert before[key].disruptive_fingerprint != after[key].disruptive_fingerprint
    zookeeper = ObjectKey("StatefulSet", "events-zookeeper")
    assert before[zookeeper].fingerprint == after[zookeeper].fingerprint


def test_kafka_scaling_is_not_disruptive(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    before = build_objects(copy.deepcopy(kafka_body), defaults)
    kafka_body["spec"]["kafka"]["replicas"] = 5
    after = build_objects(kafka_body, defaults)

    key = ObjectKey("StatefulSet", "events-kafka")
    assert before[key].fingerprint != after[key].fingerprint
    assert before[key].disruptive_fingerprint == after[key].disruptive_fingerprint


def test_certificate_rotation_is_disruptive(
    kafka_body: dict[str, Any], defaults: PlatformDefaults
) -> None:
    before = build_objects(kafka_body, defaults)
    rotated = ClusterCredentials(
        blobs=(("cluster-ca.crt", "bmV3"), ("clients-ca.crt", "Y2xpZW50cw=="))
    )
    after = build_objects(kafka_body, defaults, credentials=rotated)

    key = ObjectKey("StatefulSet", "events-kafka")
    assert before[key].disruptive_fingerprint != after[key].disruptive_fingerprint


def test_platform_defaults_from_state(monkeypatch: pytest.MonkeyPatch) -> None:
    from strimzikafkaoperator import state

    monkeypatch.setattr(state, "kafka_image", "example/kafka:1")
    monkeypatch.setattr(state, "image_pull_policy", "Always")
    defaults = PlatformDefaults.from_state()
    assert defaults.kafka_image == "example/kafka:1"
    assert defaults.image_pull_policy == "Always"
    assert defaults.kafka_policy.dynamic_heap_fraction == 0.5
    assert defaults.zookeeper_policy.dynamic_heap_max == 2 * 1024**3
