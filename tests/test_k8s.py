"""Tests for the k8s module, against a fake Kubernetes client."""

from __future__ import annotations

import json
from typing import Any

import pytest
import urllib3
from kubernetes.client.rest import ApiException

from strimzikafkaoperator.errors import (
    ConflictError,
    InvalidSpec,
    PermissionDeniedError,
    TransientPlatformError,
    TransientReadError,
)
from strimzikafkaoperator.k8s import (
    KubernetesPlatform,
    _member_from_pod,
    translate_api_exception,
)
from strimzikafkaoperator.model import ClusterIdentity

IDENTITY = ClusterIdentity("kafka", "events")


class Response:
    def __init__(self, payload: Any) -> None:
        self.data = json.dumps(payload).encode() if payload is not None else b""


class FakeApi:
    def __init__(self, client: FakeClient) -> None:
        self._client = client

    def __getattr__(self, name: str) -> Any:
        def method(*args: Any, **kwargs: Any) -> Response:
            kwargs.pop("_preload_content", None)
            self._client.calls.append((name, args, kwargs))
            result = self._client.responses.get(name)
            if isinstance(result, Exception):
                raise result
            return Response(result)

        return method


class FakeClient:
    """Stands in for the ``kubernetes.client`` module."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.responses: dict[str, Any] = {}

    def CoreV1Api(self) -> FakeApi:
        return FakeApi(self)

    AppsV1Api = CoreV1Api
    CustomObjectsApi = CoreV1Api

    def called(self, name: str) -> list[tuple[tuple, dict]]:
        return [(args, kwargs) for n, args, kwargs in self.calls if n == name]


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


def api_error(status: int, message: str = "") -> ApiException:
    err = ApiException(status=status, reason="Error")
    err.body = json.dumps({"message": message})
    return err


def pod(name: str, ready: bool, revision: str = "r1", **metadata: Any) -> dict:
    return {
        "metadata": {
            "name": name,
            "annotations": {"strimzi.io/disruptive-fingerprint": revision},
            **metadata,
        },
        "status": {
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}]
        },
    }


@pytest.mark.parametrize(
    "status,read,expected",
    [
        (409, False, ConflictError),
        (404, False, ConflictError),
        (403, False, PermissionDeniedError),
        (401, True, PermissionDeniedError),
        (422, False, InvalidSpec),
        (500, False, TransientPlatformError),
        (503, True, TransientReadError),
    ],
)
def test_translate_api_exception(status: int, read: bool, expected: type) -> None:
    error = translate_api_exception(api_error(status), action="test", read=read)
    assert type(error) is expected


def test_invalid_includes_api_message() -> None:
    error = translate_api_exception(
        api_error(422, "spec.replicas: Invalid value"), action="create"
    )
    assert "spec.replicas: Invalid value" in str(error)
    assert error.retryable is False


def test_member_from_pod() -> None:
    member = _member_from_pod(pod("events-kafka-2", True, "abc"))
    assert member.index == 2
    assert member.revision == "abc"
    assert member.ready is True

    terminating = _member_from_pod(
        pod("events-kafka-0", True, deletionTimestamp="2019-10-01T00:00:00Z")
    )
    assert terminating.ready is False


@pytest.mark.asyncio
async def test_get_cluster(client: FakeClient) -> None:
    client.responses["get_namespaced_custom_object"] = {
        "kind": "Kafka",
        "metadata": {"name": "events"},
    }
    platform = KubernetesPlatform(client)

    body = await platform.get_cluster(IDENTITY)

    assert body["kind"] == "Kafka"
    ((_, kwargs),) = client.called("get_namespaced_custom_object")
    assert kwargs["group"] == "kafka.strimzi.io"
    assert kwargs["plural"] == "kafkas"


@pytest.mark.asyncio
async def test_deleted_cluster_is_none(client: FakeClient) -> None:
    client.responses["get_namespaced_custom_object"] = api_error(404)
    assert await KubernetesPlatform(client).get_cluster(IDENTITY) is None


@pytest.mark.asyncio
async def test_list_objects(client: FakeClient) -> None:
    client.responses["list_namespaced_stateful_set"] = {
        "items": [{"metadata": {"name": "events-kafka"}}]
    }
    for suffix in ("service", "config_map", "secret"):
        client.responses[f"list_namespaced_{suffix}"] = {"items": []}

    objects = await KubernetesPlatform(client).list_objects(IDENTITY)

    assert objects == [{"kind": "StatefulSet", "metadata": {"name": "events-kafka"}}]
    ((args, kwargs),) = client.called("list_namespaced_secret")
    assert args == ("kafka",)
    assert kwargs["label_selector"] == (
        "strimzi.io/cluster=events,"
        "app.kubernetes.io/managed-by=strimzi-kafka-operator"
    )


@pytest.mark.asyncio
async def test_network_errors_are_transient(client: FakeClient) -> None:
    client.responses["list_namespaced_pod"] = urllib3.exceptions.ProtocolError(
        "connection reset"
    )
    with pytest.raises(TransientReadError):
        await KubernetesPlatform(client).list_members(IDENTITY, "events-kafka")


@pytest.mark.asyncio
async def test_list_members(client: FakeClient) -> None:
    client.responses["list_namespaced_pod"] = {
        "items": [pod("events-kafka-1", False), pod("events-kafka-0", True)]
    }

    members = await KubernetesPlatform(client).list_members(IDENTITY, "events-kafka")

    assert [(m.index, m.ready) for m in members] == [(0, True), (1, False)]
    ((_, kwargs),) = client.called("list_namespaced_pod")
    assert kwargs["label_selector"] == (
        "strimzi.io/cluster=events,strimzi.io/name=events-kafka"
    )


@pytest.mark.asyncio
async def test_read_missing_member(client: FakeClient) -> None:
    client.responses["read_namespaced_pod"] = api_error(404)

    member = await KubernetesPlatform(client).read_member(IDENTITY, "events-kafka", 1)

    assert member.revision is None
    assert member.ready is False


def statefulset(revision: str, size: str = "100Gi") -> dict[str, Any]:
    return {
        "kind": "StatefulSet",
        "metadata": {
            "name": "events-kafka",
            "namespace": "kafka",
            "resourceVersion": revision,
        },
        "spec": {
            "replicas": 2,
            "volumeClaimTemplates": [
                {
                    "metadata": {"name": "data"},
                    "spec": {"resources": {"requests": {"storage": size}}},
                }
            ],
        },
    }


@pytest.mark.asyncio
async def test_update_checks_revision(client: FakeClient) -> None:
    client.responses["read_namespaced_stateful_set"] = statefulset("5")

    with pytest.raises(ConflictError):
        await KubernetesPlatform(client).update(
            statefulset("4"), expected_revision="4"
        )
    assert client.called("replace_namespaced_stateful_set") == []


@pytest.mark.asyncio
async def test_update_replaces(client: FakeClient) -> None:
    client.responses["read_namespaced_stateful_set"] = statefulset("4")
    client.responses["replace_namespaced_stateful_set"] = statefulset("5")

    result = await KubernetesPlatform(client).update(
        statefulset("4"), expected_revision="4"
    )

    assert result["metadata"]["resourceVersion"] == "5"
    ((args, _),) = client.called("replace_namespaced_stateful_set")
    assert args[:2] == ("events-kafka", "kafka")
    assert args[2]["metadata"]["resourceVersion"] == "4"


@pytest.mark.asyncio
async def test_storage_growth_recreates_statefulset(client: FakeClient) -> None:
    client.responses["read_namespaced_stateful_set"] = statefulset("4")
    client.responses["create_namespaced_stateful_set"] = statefulset("6", "200Gi")

    await KubernetesPlatform(client).update(
        statefulset("4", "200Gi"), expected_revision="4"
    )

    claims = [args[0] for args, _ in client.called("patch_namespaced_persistent_volume_claim")]
    assert claims == ["data-events-kafka-0", "data-events-kafka-1"]
    ((_, kwargs),) = client.called("delete_namespaced_stateful_set")
    assert kwargs["body"] == {"propagationPolicy": "Orphan"}
    ((args, _),) = client.called("create_namespaced_stateful_set")
    assert "resourceVersion" not in args[1]["metadata"]


def service(revision: str, ports: list[dict[str, Any]], **spec: Any) -> dict:
    return {
        "kind": "Service",
        "metadata": {
            "name": "events-kafka-external-bootstrap",
            "namespace": "kafka",
            "resourceVersion": revision,
        },
        "spec": {"type": "NodePort", "ports": ports, **spec},
    }


@pytest.mark.asyncio
async def test_service_update_keeps_allocated_fields(client: FakeClient) -> None:
    client.responses["read_namespaced_service"] = service(
        "4",
        [
            {"name": "replication", "port": 9091, "nodePort": 31091},
            {"name": "tcp-plain", "port": 9092, "nodePort": 31092},
        ],
        clusterIP="10.96.0.12",
        clusterIPs=["10.96.0.12"],
    )
    client.responses["replace_namespaced_service"] = service("5", [])

    await KubernetesPlatform(client).update(
        service("4", [{"name": "replication", "port": 9091}]),
        expected_revision="4",
    )

    assert client.called("patch_namespaced_service") == []
    ((args, _),) = client.called("replace_namespaced_service")
    spec = args[2]["spec"]
    assert spec["ports"] == [{"name": "replication", "port": 9091, "nodePort": 31091}]
    assert spec["clusterIP"] == "10.96.0.12"
    assert spec["clusterIPs"] == ["10.96.0.12"]
    assert args[2]["metadata"]["resourceVersion"] == "4"


@pytest.mark.asyncio
async def test_service_update_checks_revision(client: FakeClient) -> None:
    client.responses["read_namespaced_service"] = service("5", [])

    with pytest.raises(ConflictError):
        await KubernetesPlatform(client).update(service("4", []), expected_revision="4")
    assert client.called("replace_namespaced_service") == []


@pytest.mark.asyncio
async def test_delete_statefulset_with_claims(client: FakeClient) -> None:
    live = statefulset("4")
    live["metadata"]["annotations"] = {"strimzi.io/delete-claim": "true"}
    client.responses["read_namespaced_stateful_set"] = live

    await KubernetesPlatform(client).delete("StatefulSet", "events-kafka", "kafka")

    assert len(client.called("delete_namespaced_stateful_set")) == 1
    ((_, kwargs),) = client.called(
        "delete_collection_namespaced_persistent_volume_claim"
    )
    assert kwargs["label_selector"] == "strimzi.io/name=events-kafka"


@pytest.mark.asyncio
async def test_restart_member_deletes_pod(client: FakeClient) -> None:
    await KubernetesPlatform(client).restart_member(IDENTITY, "events-kafka", 2)

    ((args, _),) = client.called("delete_namespaced_pod")
    assert args == ("events-kafka-2", "kafka")


@pytest.mark.asyncio
async def test_patch_cluster_status(client: FakeClient) -> None:
    await KubernetesPlatform(client).patch_cluster_status(
        IDENTITY, {"observedGeneration": 2}
    )

    ((args, _),) = client.called("patch_namespaced_custom_object_status")
    assert args[-1] == {"status": {"observedGeneration": 2}}
