"""Shared fixtures: Kafka manifests and an in-memory platform."""

from __future__ import annotations

import copy
from typing import Any

import pytest
import yaml

from strimzikafkaoperator.builder import PlatformDefaults
from strimzikafkaoperator.errors import ConflictError
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.objects import (
    CLUSTER_LABEL,
    DISRUPTIVE_ANNOTATION,
    MANAGED_BY,
    MANAGED_BY_LABEL,
)
from strimzikafkaoperator.platform import MemberState

KAFKA_MANIFEST = """
apiVersion: kafka.strimzi.io/v1beta1
kind: Kafka
metadata:
  name: events
  namespace: kafka
  uid: 6f1d2c5e-8b5a-4c1e-9d57-0f3c2b7a9e11
  generation: 1
spec:
  kafka:
    replicas: 3
    listeners:
      plain: {}
      tls:
        authentication:
          type: tls
    config:
      offsets.topic.replication.factor: 3
      transaction.state.log.replication.factor: 3
      log.message.format.version: "2.3"
    storage:
      type: persistent-claim
      size: 100Gi
      deleteClaim: false
  zookeeper:
    replicas: 3
    storage:
      type: persistent-claim
      size: 10Gi
"""


def load_kafka(manifest: str = KAFKA_MANIFEST) -> dict[str, Any]:
    return yaml.safe_load(manifest)


@pytest.fixture
def kafka_body() -> dict[str, Any]:
    return load_kafka()


@pytest.fixture
def identity() -> ClusterIdentity:
    return ClusterIdentity("kafka", "events")


@pytest.fixture
def defaults() -> PlatformDefaults:
    return PlatformDefaults(
        kafka_image="strimzi/kafka:0.14.0-kafka-2.3.0",
        zookeeper_image="strimzi/kafka:0.14.0-kafka-2.3.0",
    )


class EventLog:
    """Collects the events posted by an EventRecorder."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def __call__(self, body: Any, *, type: str, reason: str, message: str) -> None:
        self.events.append({"type": type, "reason": reason, "message": message})

    def reasons(self, type: str | None = None) -> list[str]:
        return [e["reason"] for e in self.events if type in (None, e["type"])]


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


def _merge(target: dict[str, Any], patch: dict[str, Any]) -> None:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakePlatform:
    """An in-memory orchestration platform.

    StatefulSets behave like ``OnDelete`` StatefulSets: creating one starts
    ready pods from its template, and pods only pick up a new template when
    they are restarted. Services are assigned a cluster IP that survives
    updates.
    """

    def __init__(self) -> None:
        self.clusters: dict[ClusterIdentity, dict[str, Any]] = {}
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.pods: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.statuses: list[dict[str, Any]] = []
        self.failures: dict[tuple[str, str, str], Exception] = {}
        self.never_ready: set[str] = set()
        self.probe_errors: dict[str, list[Exception]] = {}
        self.max_not_ready: dict[str, int] = {}
        self._revision = 0

    # Test helpers

    def add_cluster(self, body: dict[str, Any]) -> ClusterIdentity:
        metadata = body["metadata"]
        identity = ClusterIdentity(metadata["namespace"], metadata["name"])
        self.clusters[identity] = copy.deepcopy(body)
        return identity

    def add_ca_secrets(self, identity: ClusterIdentity, version: str = "v0") -> None:
        for prefix in ("cluster", "clients"):
            name = f"{identity.name}-{prefix}-ca-cert"
            self.objects[("Secret", identity.namespace, name)] = {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {
                    "name": name,
                    "namespace": identity.namespace,
                    "labels": {CLUSTER_LABEL: identity.name},
                    "resourceVersion": self._next_revision(),
                },
                "data": {"ca.crt": f"{prefix}-certificate-{version}"},
            }

    def get(self, kind: str, name: str, namespace: str = "kafka") -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def mutations(self) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete", "restart")]

    def members_of(self, workload: str) -> dict[int, dict[str, Any]]:
        return {
            index: pod for (name, index), pod in self.pods.items() if name == workload
        }

    def _next_revision(self) -> str:
        self._revision += 1
        return str(self._revision)

    def _check_failure(self, verb: str, kind: str, name: str) -> None:
        error = self.failures.get((verb, kind, name))
        if error is not None:
            raise error

    def _track_readiness(self, workload: str) -> None:
        not_ready = sum(1 for pod in self.members_of(workload).values() if not pod["ready"])
        self.max_not_ready[workload] = max(self.max_not_ready.get(workload, 0), not_ready)

    def _sync_pods(self, body: dict[str, Any]) -> None:
        name = body["metadata"]["name"]
        revision = body["spec"]["template"]["metadata"]["annotations"][DISRUPTIVE_ANNOTATION]
        replicas = body["spec"]["replicas"]
        for index in range(replicas):
            self.pods.setdefault((name, index), {"revision": revision, "ready": True})
        for workload, index in list(self.pods):
            if workload == name and index >= replicas:
                del self.pods[(workload, index)]

    # Platform protocol

    async def get_cluster(self, identity: ClusterIdentity) -> dict[str, Any] | None:
        self.calls.append(("get_cluster", str(identity)))
        body = self.clusters.get(identity)
        return copy.deepcopy(body) if body is not None else None

    async def list_objects(self, identity: ClusterIdentity) -> list[dict[str, Any]]:
        self.calls.append(("list", str(identity)))
        self._check_failure("list", "*", identity.name)
        return [
            copy.deepcopy(body)
            for (_, namespace, _), body in sorted(self.objects.items())
            if namespace == identity.namespace
            and body["metadata"].get("labels", {}).get(CLUSTER_LABEL) == identity.name
            and body["metadata"].get("labels", {}).get(MANAGED_BY_LABEL) == MANAGED_BY
        ]

    async def read_secret(self, namespace: str, name: str) -> dict[str, Any] | None:
        body = self.objects.get(("Secret", namespace, name))
        return copy.deepcopy(body) if body is not None else None

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        kind = body["kind"]
        metadata = body["metadata"]
        key = (kind, metadata["namespace"], metadata["name"])
        self.calls.append(("create", kind, metadata["name"]))
        self._check_failure("create", kind, metadata["name"])
        if key in self.objects:
            raise ConflictError(f"{kind}/{metadata['name']} already exists")
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = self._next_revision()
        if kind == "Service":
            stored["spec"].setdefault("clusterIP", f"10.96.0.{self._revision}")
        self.objects[key] = stored
        if kind == "StatefulSet":
            self._sync_pods(stored)
        return copy.deepcopy(stored)

    async def update(
        self, body: dict[str, Any], expected_revision: str
    ) -> dict[str, Any]:
        kind = body["kind"]
        metadata = body["metadata"]
        key = (kind, metadata["namespace"], metadata["name"])
        self.calls.append(("update", kind, metadata["name"]))
        self._check_failure("update", kind, metadata["name"])
        current = self.objects.get(key)
        if current is None:
            raise ConflictError(f"{kind}/{metadata['name']} does not exist")
        if current["metadata"]["resourceVersion"] != expected_revision:
            raise ConflictError(f"{kind}/{metadata['name']} changed")
        stored = copy.deepcopy(body)
        if kind == "Service":
            stored["spec"].setdefault("clusterIP", current["spec"]["clusterIP"])
        stored["metadata"]["resourceVersion"] = self._next_revision()
        self.objects[key] = stored
        if kind == "StatefulSet":
            self._sync_pods(stored)
        return copy.deepcopy(stored)

    async def delete(self, kind: str, name: str, namespace: str) -> None:
        self.calls.append(("delete", kind, name))
        self._check_failure("delete", kind, name)
        self.objects.pop((kind, namespace, name), None)

    async def list_members(
        self, identity: ClusterIdentity, workload: str
    ) -> list[MemberState]:
        return [
            MemberState(index, f"{workload}-{index}", pod["revision"], pod["ready"])
            for index, pod in sorted(self.members_of(workload).items())
        ]

    async def read_member(
        self, identity: ClusterIdentity, workload: str, index: int
    ) -> MemberState:
        errors = self.probe_errors.get(f"{workload}-{index}")
        if errors:
            raise errors.pop(0)
        pod = self.pods.get((workload, index))
        if pod is None:
            return MemberState(index, f"{workload}-{index}", None, False)
        if not pod["ready"] and f"{workload}-{index}" not in self.never_ready:
            pod["ready"] = True
        self._track_readiness(workload)
        return MemberState(index, f"{workload}-{index}", pod["revision"], pod["ready"])

    async def restart_member(
        self, identity: ClusterIdentity, workload: str, index: int
    ) -> None:
        self.calls.append(("restart", workload, str(index)))
        statefulset = self.objects[("StatefulSet", identity.namespace, workload)]
        template = statefulset["spec"]["template"]["metadata"]["annotations"]
        self.pods[(workload, index)] = {
            "revision": template[DISRUPTIVE_ANNOTATION],
            "ready": False,
        }
        self._track_readiness(workload)

    async def patch_cluster_status(
        self, identity: ClusterIdentity, status: dict[str, Any]
    ) -> None:
        self.calls.append(("status", str(identity)))
        body = self.clusters.get(identity)
        if body is None:
            return
        current = body.setdefault("status", {})
        _merge(current, status)
        self.statuses.append(copy.deepcopy(status))


@pytest.fixture
def platform(kafka_body: dict[str, Any]) -> FakePlatform:
    platform = FakePlatform()
    identity = platform.add_cluster(kafka_body)
    platform.add_ca_secrets(identity)
    return platform
