"""Utilities for creating workloads and related resource bodies."""

from __future__ import annotations

__all__ = (
    "create_config_map",
    "create_container_spec",
    "create_headless_service",
    "create_service",
    "create_statefulset",
    "determine_image_pull_policy",
    "heap_options",
    "jvm_performance_options",
    "resource_labels",
)

from typing import Any

from strimzikafkaoperator.model import JvmOptions, ResourceSpec, StorageSpec
from strimzikafkaoperator.objects import (
    CLUSTER_LABEL,
    COMPONENT_LABEL,
    KIND_LABEL,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    NAME_LABEL,
    STORAGE_ANNOTATION,
)

ENV_VAR_KAFKA_HEAP_OPTS = "KAFKA_HEAP_OPTS"
ENV_VAR_KAFKA_JVM_PERFORMANCE_OPTS = "KAFKA_JVM_PERFORMANCE_OPTS"
ENV_VAR_DYNAMIC_HEAP_FRACTION = "DYNAMIC_HEAP_FRACTION"
ENV_VAR_DYNAMIC_HEAP_MAX = "DYNAMIC_HEAP_MAX"

DEFAULT_JVM_XMS = "128M"
"""Initial heap used when neither a heap size nor a memory limit is set."""

CONFIG_HASH_ANNOTATION = "strimzi.io/config-hash"
CREDENTIALS_HASH_ANNOTATION = "strimzi.io/credentials-hash"
DELETE_CLAIM_ANNOTATION = "strimzi.io/delete-claim"


def resource_labels(
    *, cluster: str, name: str, component: str
) -> dict[str, str]:
    """Labels shared by every object the operator manages.

    Parameters
    ----------
    cluster : `str`
        Name of the ``Kafka`` resource.
    name : `str`
        Name of the labelled object's workload (or the object itself).
    component : `str`
        ``kafka`` or ``zookeeper``.
    """
    return {
        CLUSTER_LABEL: cluster,
        NAME_LABEL: name,
        KIND_LABEL: "Kafka",
        MANAGED_BY_LABEL: MANAGED_BY,
        "app.kubernetes.io/instance": cluster,
        COMPONENT_LABEL: component,
        "app.kubernetes.io/part-of": f"strimzi-{cluster}",
    }


def heap_options(
    jvm: JvmOptions,
    resources: ResourceSpec,
    *,
    dynamic_fraction: float,
    dynamic_max: int,
) -> list[dict[str, str]]:
    """Compute the heap environment variables of a JVM container.

    Explicit ``-Xms``/``-Xmx`` values are emitted verbatim in
    ``KAFKA_HEAP_OPTS``. Without ``-Xmx``, a memory limit lets the container
    size its heap dynamically from ``DYNAMIC_HEAP_FRACTION`` and
    ``DYNAMIC_HEAP_MAX``. Without ``-Xms``, ``-Xmx`` or a limit, a default
    initial heap is set.

    Parameters
    ----------
    jvm : `strimzikafkaoperator.model.JvmOptions`
        The role's JVM options.
    resources : `strimzikafkaoperator.model.ResourceSpec`
        The role's resource requests and limits.
    dynamic_fraction : `float`
        Fraction of the memory limit to use as heap.
    dynamic_max : `int`
        Ceiling, in bytes, of the dynamically sized heap.

    Returns
    -------
    env : `list` of `dict`
        Container ``env`` entries.
    """
    env = []
    heap_opts = []
    if jvm.xms is not None:
        heap_opts.append(f"-Xms{jvm.xms}")
    if jvm.xmx is not None:
        heap_opts.append(f"-Xmx{jvm.xmx}")
    else:
        limit = resources.memory_limit_bytes
        if limit is not None:
            env.append(
                {
                    "name": ENV_VAR_DYNAMIC_HEAP_FRACTION,
                    "value": str(dynamic_fraction),
                }
            )
            env.append({"name": ENV_VAR_DYNAMIC_HEAP_MAX, "value": str(dynamic_max)})
        elif jvm.xms is None:
            heap_opts.append(f"-Xms{DEFAULT_JVM_XMS}")

    if heap_opts:
        env.insert(0, {"name": ENV_VAR_KAFKA_HEAP_OPTS, "value": " ".join(heap_opts)})
    return env


def jvm_performance_options(jvm: JvmOptions) -> list[dict[str, str]]:
    """Compute ``KAFKA_JVM_PERFORMANCE_OPTS`` from ``-server`` and ``-XX``."""
    options = []
    if jvm.server:
        options.append("-server")
    for key, value in jvm.xx:
        if value == "true":
            options.append(f"-XX:+{key}")
        elif value == "false":
            options.append(f"-XX:-{key}")
        else:
            options.append(f"-XX:{key}={value}")
    if not options:
        return []
    return [{"name": ENV_VAR_KAFKA_JVM_PERFORMANCE_OPTS, "value": " ".join(options)}]


def determine_image_pull_policy(configured: str | None, image: str) -> str:
    """Choose the pull policy for an image.

    A configured policy always wins; otherwise ``:latest`` images are always
    pulled and anything else only when missing.
    """
    if configured:
        return configured
    if image.endswith(":latest"):
        return "Always"
    return "IfNotPresent"


def create_resources_spec(resources: ResourceSpec) -> dict[str, Any]:
    resource_spec: dict[str, Any] = {}
    if resources.cpu_limit or resources.memory_limit:
        limit_spec: dict[str, str] = {}
        if resources.cpu_limit:
            limit_spec["cpu"] = resources.cpu_limit
        if resources.memory_limit:
            limit_spec["memory"] = resources.memory_limit
        resource_spec["limits"] = limit_spec
    if resources.cpu_request or resources.memory_request:
        request_spec: dict[str, str] = {}
        if resources.cpu_request:
            request_spec["cpu"] = resources.cpu_request
        if resources.memory_request:
            request_spec["memory"] = resources.memory_request
        resource_spec["requests"] = request_spec
    return resource_spec


def create_container_spec(
    *,
    name: str,
    image: str,
    image_pull_policy: str | None,
    command: str,
    ports: list[dict[str, Any]],
    env: list[dict[str, Any]],
    resources: ResourceSpec,
    readiness_command: str,
) -> dict[str, Any]:
    """Create the container spec of a cluster member.

    Parameters
    ----------
    name : `str`
        Container name (``kafka`` or ``zookeeper``).
    image : `str`
        The container image.
    image_pull_policy : `str` or `None`
        Forced pull policy; see `determine_image_pull_policy`.
    command : `str`
        The entry point script in the image.
    ports : `list`
        Container port definitions.
    env : `list`
        Environment variables, already including heap settings.
    resources : `strimzikafkaoperator.model.ResourceSpec`
        Requests and limits. Empty resources omit the ``resources`` key.
    readiness_command : `str`
        Script the readiness probe runs inside the container.
    """
    container: dict[str, Any] = {
        "name": name,
        "image": image,
        "imagePullPolicy": determine_image_pull_policy(image_pull_policy, image),
        "command": [command],
        "ports": ports,
        "env": env,
        "volumeMounts": [
            {"name": "data", "mountPath": "/var/lib/data"},
            {"name": "config", "mountPath": "/opt/kafka/custom-config"},
            {
                "name": "trusted-certs",
                "mountPath": "/opt/kafka/trusted-certs",
                "readOnly": True,
            },
        ],
        "readinessProbe": {
            "exec": {"command": [readiness_command]},
            "initialDelaySeconds": 15,
            "timeoutSeconds": 5,
        },
    }
    resource_spec = create_resources_spec(resources)
    if resource_spec:
        container["resources"] = resource_spec
    return container


def create_statefulset(
    *,
    name: str,
    labels: dict[str, str],
    replicas: int,
    container: dict[str, Any],
    storage: StorageSpec,
    config_map_name: str,
    config_hash: str,
    credentials_secret_name: str,
    credentials_hash: str,
    headless_service: str,
) -> dict[str, Any]:
    """Create the StatefulSet body running one role of the cluster.

    The ``OnDelete`` update strategy leaves member restarts to the
    rolling-update coordinator.

    Parameters
    ----------
    name : `str`
        Name of the StatefulSet, ``<cluster>-kafka`` or ``<cluster>-zookeeper``.
    labels : `dict`
        Labels from `resource_labels`.
    replicas : `int`
        Number of members.
    container : `dict`
        The member container from `create_container_spec`.
    storage : `strimzikafkaoperator.model.StorageSpec`
        Ephemeral storage becomes an ``emptyDir``; persistent storage a
        volume claim template.
    config_map_name : `str`
        ConfigMap mounted as the member configuration.
    config_hash : `str`
        Fingerprint of that ConfigMap, stamped on the pod template.
    credentials_secret_name : `str`
        Secret holding the trusted CA certificates.
    credentials_hash : `str`
        Fingerprint of that Secret, stamped on the pod template.
    headless_service : `str`
        The governing headless Service.
    """
    volumes: list[dict[str, Any]] = [
        {"name": "config", "configMap": {"name": config_map_name}},
        {
            "name": "trusted-certs",
            "secret": {"secretName": credentials_secret_name},
        },
    ]
    spec: dict[str, Any] = {
        "replicas": replicas,
        "serviceName": headless_service,
        "podManagementPolicy": "Parallel",
        "updateStrategy": {"type": "OnDelete"},
        "selector": {
            "matchLabels": {
                CLUSTER_LABEL: labels[CLUSTER_LABEL],
                NAME_LABEL: name,
            }
        },
    }
    annotations = {STORAGE_ANNOTATION: storage.as_annotation()}

    if storage.type == "ephemeral":
        empty_dir: dict[str, Any] = {}
        if storage.size:
            empty_dir["sizeLimit"] = storage.size
        volumes.insert(0, {"name": "data", "emptyDir": empty_dir})
    else:
        claim_spec: dict[str, Any] = {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": storage.size}},
        }
        if storage.storage_class:
            claim_spec["storageClassName"] = storage.storage_class
        spec["volumeClaimTemplates"] = [
            {"metadata": {"name": "data", "labels": dict(labels)}, "spec": claim_spec}
        ]
        annotations[DELETE_CLAIM_ANNOTATION] = str(storage.delete_claim).lower()

    spec["template"] = {
        "metadata": {
            "labels": dict(labels),
            "annotations": {
                CONFIG_HASH_ANNOTATION: config_hash,
                CREDENTIALS_HASH_ANNOTATION: credentials_hash,
            },
        },
        "spec": {
            "containers": [container],
            "volumes": volumes,
            "terminationGracePeriodSeconds": 60,
        },
    }

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {"name": name, "labels": labels, "annotations": annotations},
        "spec": spec,
    }


def create_service(
    *,
    name: str,
    labels: dict[str, str],
    selector_name: str,
    ports: list[dict[str, Any]],
    service_type: str = "ClusterIP",
) -> dict[str, Any]:
    """Create a Service routing to the members of a workload.

    Parameters
    ----------
    name : `str`
        Name of the Service.
    labels : `dict`
        Labels from `resource_labels`.
    selector_name : `str`
        Name of the StatefulSet whose pods back the Service.
    ports : `list`
        Service port definitions.
    service_type : `str`
        The Kubernetes service type: ClusterIP, NodePort or LoadBalancer.
    """
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "labels": labels},
        "spec": {
            "type": service_type,
            "ports": ports,
            "selector": {
                CLUSTER_LABEL: labels[CLUSTER_LABEL],
                NAME_LABEL: selector_name,
            },
        },
    }


def create_headless_service(
    *,
    name: str,
    labels: dict[str, str],
    selector_name: str,
    ports: list[dict[str, Any]],
) -> dict[str, Any]:
    """Create the headless Service giving each member a stable DNS name."""
    service = create_service(
        name=name, labels=labels, selector_name=selector_name, ports=ports
    )
    service["spec"]["clusterIP"] = "None"
    service["spec"]["publishNotReadyAddresses"] = True
    return service


def create_config_map(
    *, name: str, labels: dict[str, str], data: dict[str, str]
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "labels": labels},
        "data": data,
    }
