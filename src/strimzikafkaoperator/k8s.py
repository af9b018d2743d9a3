"""Helpers for interacting with Kubernetes APIs, and the Kubernetes
implementation of `strimzikafkaoperator.platform.Platform`.
"""

from __future__ import annotations

__all__ = (
    "KubernetesPlatform",
    "create_k8sclient",
    "get_kafka",
    "get_secret",
    "translate_api_exception",
)

import asyncio
import copy
import json
from collections.abc import Callable
from typing import Any

import kubernetes
import structlog
import urllib3
from kubernetes.client.rest import ApiException

from strimzikafkaoperator.errors import (
    ConflictError,
    InvalidSpec,
    OperatorError,
    PermissionDeniedError,
    TransientPlatformError,
    TransientReadError,
)
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.objects import (
    CLUSTER_LABEL,
    DISRUPTIVE_ANNOTATION,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    NAME_LABEL,
)
from strimzikafkaoperator.platform import MemberState
from strimzikafkaoperator.workloads import DELETE_CLAIM_ANNOTATION

KAFKA_GROUP = "kafka.strimzi.io"
KAFKA_VERSION = "v1beta1"
KAFKA_PLURAL = "kafkas"

# Kind -> (API class, method suffix) of the objects the engine manages.
KINDS = {
    "StatefulSet": ("AppsV1Api", "stateful_set"),
    "Service": ("CoreV1Api", "service"),
    "ConfigMap": ("CoreV1Api", "config_map"),
    "Secret": ("CoreV1Api", "secret"),
}


def create_k8sclient() -> kubernetes.client:
    """Get a Kubernetes client configured with available cluster
    authentication.

    If in-cluster authentication is available, that is used. Otherwise
    this function falls-back to using a kubectl config file, which is
    appropriate for development.
    """
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()
    return kubernetes.client


def translate_api_exception(
    err: ApiException, *, action: str, read: bool = False
) -> OperatorError:
    """Map a Kubernetes API error onto the engine's error taxonomy.

    Parameters
    ----------
    err : `kubernetes.client.rest.ApiException`
        The error raised by the client.
    action : `str`
        What was attempted, for the message.
    read : `bool`
        Whether the call only read state; retryable failures of reads are
        reported as `TransientReadError`.
    """
    message = f"Failed to {action}: {err.status} {err.reason}"
    if err.status == 409:
        return ConflictError(message)
    if err.status == 404:
        # A write raced with a deletion; re-plan from a fresh read.
        return ConflictError(message)
    if err.status in (401, 403):
        return PermissionDeniedError(message)
    if err.status in (400, 422):
        return InvalidSpec(f"{message}: {_api_message(err)}")
    if read:
        return TransientReadError(message)
    return TransientPlatformError(message)


def _api_message(err: ApiException) -> str:
    try:
        return json.loads(err.body)["message"]
    except (TypeError, ValueError, KeyError):
        return str(err.body)


def get_kafka(
    *,
    namespace: str,
    name: str,
    k8s_client: Any,
) -> dict[str, Any]:
    """Get a Kafka resource as a raw manifest.

    Parameters
    ----------
    namespace : `str`
        The Kubernetes namespace of the Kafka resource.
    name : `str`
        The name of the Kafka resource.
    k8s_client
        A Kubernetes client (see `create_k8sclient`).
    """
    api = k8s_client.CustomObjectsApi()
    result = api.get_namespaced_custom_object(
        group=KAFKA_GROUP,
        version=KAFKA_VERSION,
        namespace=namespace,
        plural=KAFKA_PLURAL,
        name=name,
        _preload_content=False,
    )
    return json.loads(result.data)


def get_secret(
    *,
    namespace: str,
    name: str,
    k8s_client: Any,
) -> dict[str, Any]:
    """Get a Secret resource as a raw manifest."""
    api = k8s_client.CoreV1Api()
    result = api.read_namespaced_secret(
        name=name, namespace=namespace, _preload_content=False
    )
    return json.loads(result.data)


def list_kind(
    *, kind: str, namespace: str, label_selector: str, k8s_client: Any
) -> list[dict[str, Any]]:
    """List the objects of a managed kind matching a label selector.

    List responses omit ``kind`` on their items; it is restored here.
    """
    api_name, suffix = KINDS[kind]
    api = getattr(k8s_client, api_name)()
    result = getattr(api, f"list_namespaced_{suffix}")(
        namespace, label_selector=label_selector, _preload_content=False
    )
    items = json.loads(result.data)["items"]
    for item in items:
        item["kind"] = kind
    return items


def _call_raw(method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    result = method(*args, _preload_content=False, **kwargs)
    data = result.data
    return json.loads(data) if data else None


def _member_from_pod(pod: dict[str, Any]) -> MemberState:
    metadata = pod["metadata"]
    name = metadata["name"]
    conditions = (pod.get("status") or {}).get("conditions") or []
    ready = any(
        c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
    )
    if metadata.get("deletionTimestamp"):
        ready = False
    return MemberState(
        index=int(name.rsplit("-", 1)[1]),
        name=name,
        revision=(metadata.get("annotations") or {}).get(DISRUPTIVE_ANNOTATION),
        ready=ready,
    )


def _claim_templates(body: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
    templates = {}
    for template in body.get("spec", {}).get("volumeClaimTemplates") or []:
        spec = template.get("spec") or {}
        templates[template["metadata"]["name"]] = (
            spec.get("storageClassName"),
            ((spec.get("resources") or {}).get("requests") or {}).get("storage"),
        )
    return templates


def _keep_allocated_service_fields(
    live: dict[str, Any], body: dict[str, Any]
) -> dict[str, Any]:
    """Copy the cluster IPs and node ports of ``live`` into ``body``.

    The API server assigns these when the Service is created and rejects a
    replace that changes the cluster IP. Node ports are matched by port
    number, so a port that is removed from ``body`` is dropped with its node
    port.
    """
    body = copy.deepcopy(body)
    live_spec = live.get("spec") or {}
    spec = body.setdefault("spec", {})
    for field_name in ("clusterIP", "clusterIPs"):
        if field_name in live_spec and field_name not in spec:
            spec[field_name] = copy.deepcopy(live_spec[field_name])
    node_ports = {
        port.get("port"): port["nodePort"]
        for port in live_spec.get("ports") or []
        if port.get("nodePort")
    }
    for port in spec.get("ports") or []:
        if "nodePort" not in port and port.get("port") in node_ports:
            port["nodePort"] = node_ports[port["port"]]
    return body


class KubernetesPlatform:
    """The orchestration platform backed by the Kubernetes API.

    Calls to the synchronous client run in worker threads.

    Parameters
    ----------
    k8s_client
        A Kubernetes client (see `create_k8sclient`).
    """

    def __init__(self, k8s_client: Any = None, logger: Any | None = None) -> None:
        self._k8s_client = k8s_client or create_k8sclient()
        self._logger = logger or structlog.get_logger(__name__)

    async def _call(
        self,
        func: Callable[..., Any],
        *args: Any,
        action: str,
        read: bool = False,
        allow_missing: bool = False,
        **kwargs: Any,
    ) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ApiException as err:
            if allow_missing and err.status == 404:
                return None
            raise translate_api_exception(err, action=action, read=read) from err
        except urllib3.exceptions.HTTPError as err:
            error_class = TransientReadError if read else TransientPlatformError
            raise error_class(f"Failed to {action}: {err}") from err

    def _method(self, kind: str, verb: str) -> Callable[..., Any]:
        try:
            api_name, suffix = KINDS[kind]
        except KeyError as err:
            raise InvalidSpec(f"Unsupported kind {kind}") from err
        api = getattr(self._k8s_client, api_name)()
        return getattr(api, f"{verb}_namespaced_{suffix}")

    async def get_cluster(self, identity: ClusterIdentity) -> dict[str, Any] | None:
        return await self._call(
            get_kafka,
            namespace=identity.namespace,
            name=identity.name,
            k8s_client=self._k8s_client,
            action=f"read Kafka {identity}",
            read=True,
            allow_missing=True,
        )

    async def list_objects(self, identity: ClusterIdentity) -> list[dict[str, Any]]:
        selector = f"{CLUSTER_LABEL}={identity.name},{MANAGED_BY_LABEL}={MANAGED_BY}"
        objects = []
        for kind in KINDS:
            objects.extend(
                await self._call(
                    list_kind,
                    kind=kind,
                    namespace=identity.namespace,
                    label_selector=selector,
                    k8s_client=self._k8s_client,
                    action=f"list {kind} objects of {identity}",
                    read=True,
                )
            )
        return objects

    async def read_secret(self, namespace: str, name: str) -> dict[str, Any] | None:
        return await self._call(
            get_secret,
            namespace=namespace,
            name=name,
            k8s_client=self._k8s_client,
            action=f"read Secret {namespace}/{name}",
            read=True,
            allow_missing=True,
        )

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        kind = body["kind"]
        metadata = body["metadata"]
        return await self._call(
            _call_raw,
            self._method(kind, "create"),
            metadata["namespace"],
            body,
            action=f"create {kind}/{metadata['name']}",
        )

    async def update(
        self, body: dict[str, Any], expected_revision: str
    ) -> dict[str, Any]:
        kind = body["kind"]
        metadata = body["metadata"]
        name = metadata["name"]
        namespace = metadata["namespace"]
        action = f"update {kind}/{name}"

        if kind in ("StatefulSet", "Service"):
            live = await self._call(
                _call_raw,
                self._method(kind, "read"),
                name,
                namespace,
                action=f"read {kind}/{name}",
                read=True,
                allow_missing=True,
            )
            if live is None:
                raise ConflictError(f"{kind}/{name} no longer exists")
            if live["metadata"]["resourceVersion"] != expected_revision:
                raise ConflictError(f"{kind}/{name} changed since it was read")
            if kind == "Service":
                body = _keep_allocated_service_fields(live, body)
            elif _claim_templates(live) != _claim_templates(body):
                return await self._recreate_statefulset(live, body)

        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = expected_revision
        return await self._call(
            _call_raw,
            self._method(kind, "replace"),
            name,
            namespace,
            body,
            action=action,
        )

    async def _recreate_statefulset(
        self, live: dict[str, Any], body: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace a StatefulSet whose volume claim templates changed.

        Claim templates are immutable, so the StatefulSet is deleted without
        its pods and created again; existing claims are expanded in place.
        """
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        logger = self._logger.bind(statefulset=f"{namespace}/{name}")
        core = self._k8s_client.CoreV1Api()
        for template, (_, size) in _claim_templates(body).items():
            if size is None:
                continue
            for index in range(live["spec"].get("replicas") or 0):
                claim = f"{template}-{name}-{index}"
                logger.info("Resizing persistent volume claim", claim=claim, size=size)
                await self._call(
                    _call_raw,
                    core.patch_namespaced_persistent_volume_claim,
                    claim,
                    namespace,
                    {"spec": {"resources": {"requests": {"storage": size}}}},
                    action=f"resize PersistentVolumeClaim/{claim}",
                    allow_missing=True,
                )
        logger.info("Recreating StatefulSet, keeping its pods")
        await self._call(
            _call_raw,
            self._method("StatefulSet", "delete"),
            name,
            namespace,
            body={"propagationPolicy": "Orphan"},
            action=f"delete StatefulSet/{name}",
            allow_missing=True,
        )
        body = copy.deepcopy(body)
        body["metadata"].pop("resourceVersion", None)
        return await self.create(body)

    async def delete(self, kind: str, name: str, namespace: str) -> None:
        delete_claims = False
        if kind == "StatefulSet":
            live = await self._call(
                _call_raw,
                self._method(kind, "read"),
                name,
                namespace,
                action=f"read {kind}/{name}",
                read=True,
                allow_missing=True,
            )
            annotations = (live or {}).get("metadata", {}).get("annotations") or {}
            delete_claims = annotations.get(DELETE_CLAIM_ANNOTATION) == "true"
        await self._call(
            _call_raw,
            self._method(kind, "delete"),
            name,
            namespace,
            action=f"delete {kind}/{name}",
            allow_missing=True,
        )
        if delete_claims:
            core = self._k8s_client.CoreV1Api()
            await self._call(
                _call_raw,
                core.delete_collection_namespaced_persistent_volume_claim,
                namespace,
                label_selector=f"{NAME_LABEL}={name}",
                action=f"delete claims of StatefulSet/{name}",
                allow_missing=True,
            )

    async def list_members(
        self, identity: ClusterIdentity, workload: str
    ) -> list[MemberState]:
        core = self._k8s_client.CoreV1Api()
        pods = await self._call(
            _call_raw,
            core.list_namespaced_pod,
            identity.namespace,
            label_selector=f"{CLUSTER_LABEL}={identity.name},{NAME_LABEL}={workload}",
            action=f"list pods of {workload}",
            read=True,
        )
        return sorted(
            (_member_from_pod(pod) for pod in pods["items"]),
            key=lambda member: member.index,
        )

    async def read_member(
        self, identity: ClusterIdentity, workload: str, index: int
    ) -> MemberState:
        core = self._k8s_client.CoreV1Api()
        name = f"{workload}-{index}"
        pod = await self._call(
            _call_raw,
            core.read_namespaced_pod,
            name,
            identity.namespace,
            action=f"read pod {name}",
            read=True,
            allow_missing=True,
        )
        if pod is None:
            return MemberState(index=index, name=name, revision=None, ready=False)
        return _member_from_pod(pod)

    async def restart_member(
        self, identity: ClusterIdentity, workload: str, index: int
    ) -> None:
        core = self._k8s_client.CoreV1Api()
        name = f"{workload}-{index}"
        await self._call(
            _call_raw,
            core.delete_namespaced_pod,
            name,
            identity.namespace,
            action=f"delete pod {name}",
            allow_missing=True,
        )

    async def patch_cluster_status(
        self, identity: ClusterIdentity, status: dict[str, Any]
    ) -> None:
        api = self._k8s_client.CustomObjectsApi()
        await self._call(
            _call_raw,
            api.patch_namespaced_custom_object_status,
            KAFKA_GROUP,
            KAFKA_VERSION,
            identity.namespace,
            KAFKA_PLURAL,
            identity.name,
            {"status": status},
            action=f"update status of Kafka {identity}",
            allow_missing=True,
        )
