"""The validated, immutable model of a ``Kafka`` custom resource."""

from __future__ import annotations

__all__ = (
    "AuthorizationSpec",
    "ClusterIdentity",
    "ClusterSpec",
    "JvmOptions",
    "ListenerSpec",
    "ResourceSpec",
    "RoleSpec",
    "StorageSpec",
    "check_storage_change",
    "parse_cluster_spec",
    "parse_quantity_bytes",
)

import json
from dataclasses import dataclass, field
from typing import Any, NamedTuple

import structlog
from kubernetes.utils import parse_quantity

from strimzikafkaoperator.errors import InvalidSpec

PAUSE_ANNOTATION = "strimzi.io/pause-reconciliation"

LISTENER_TYPES = ("internal", "nodeport", "loadbalancer", "route", "ingress")

AUTHENTICATION_TYPES = ("tls", "scram-sha-512", "oauth")

# Ports used by the brokers themselves for replication and control.
RESERVED_PORTS = (9090, 9091)

# Broker options the operator owns; user-supplied values are ignored.
FORBIDDEN_CONFIG_PREFIXES = (
    "listeners",
    "advertised.",
    "broker.",
    "listener.",
    "host.name",
    "port",
    "inter.broker.listener.name",
    "sasl.",
    "ssl.",
    "security.",
    "password.",
    "principal.builder.class",
    "log.dir",
    "zookeeper.connect",
    "zookeeper.set.acl",
    "authorizer.",
    "super.user",
)


class ClusterIdentity(NamedTuple):
    """The namespace and name of a ``Kafka`` resource."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class StorageSpec:
    type: str
    size: str | None = None
    size_bytes: int | None = None
    storage_class: str | None = None
    delete_claim: bool = False

    def as_annotation(self) -> str:
        """Serialize the storage for the ``strimzi.io/storage`` annotation."""
        data: dict[str, Any] = {"type": self.type}
        if self.size:
            data["size"] = self.size
        if self.storage_class:
            data["class"] = self.storage_class
        if self.type == "persistent-claim":
            data["deleteClaim"] = self.delete_claim
        return json.dumps(data, sort_keys=True)


@dataclass(frozen=True)
class ResourceSpec:
    cpu_request: str | None = None
    cpu_limit: str | None = None
    memory_request: str | None = None
    memory_limit: str | None = None

    @property
    def memory_limit_bytes(self) -> int | None:
        if self.memory_limit is None:
            return None
        return parse_quantity_bytes(self.memory_limit, "resources.limits.memory")


@dataclass(frozen=True)
class JvmOptions:
    xms: str | None = None
    xmx: str | None = None
    server: bool = False
    xx: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ListenerSpec:
    name: str
    port: int
    type: str = "internal"
    tls: bool = False
    authentication: str | None = None

    @property
    def external(self) -> bool:
        return self.type != "internal"


@dataclass(frozen=True)
class AuthorizationSpec:
    type: str
    super_users: tuple[str, ...] = ()


@dataclass(frozen=True)
class RoleSpec:
    replicas: int
    image: str | None
    storage: StorageSpec
    resources: ResourceSpec = field(default_factory=ResourceSpec)
    jvm: JvmOptions = field(default_factory=JvmOptions)
    config: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ClusterSpec:
    """A validated ``Kafka`` resource.

    ``owner`` is the raw resource body and is only used to build owner
    references; it takes no part in equality.
    """

    identity: ClusterIdentity
    generation: int
    kafka: RoleSpec
    zookeeper: RoleSpec
    listeners: tuple[ListenerSpec, ...]
    authorization: AuthorizationSpec | None = None
    paused: bool = False
    owner: dict[str, Any] = field(
        default_factory=dict, compare=False, hash=False, repr=False
    )


def parse_quantity_bytes(value: Any, field_name: str) -> int:
    """Parse a Kubernetes quantity (``16Gi``, ``4G``, ``1000``) to bytes.

    Raises
    ------
    strimzikafkaoperator.errors.InvalidSpec
        Raised if the quantity cannot be parsed or is not positive.
    """
    try:
        amount = parse_quantity(value)
    except (ValueError, TypeError) as err:
        raise InvalidSpec(f"{value!r} is not a quantity", field=field_name) from err
    if amount <= 0:
        raise InvalidSpec(f"{value!r} must be positive", field=field_name)
    return int(amount)


def parse_cluster_spec(
    body: dict[str, Any], logger: Any | None = None
) -> ClusterSpec:
    """Parse the body of a ``Kafka`` resource into a `ClusterSpec`.

    Parameters
    ----------
    body : `dict`
        The full ``Kafka`` resource, including ``metadata``.
    logger : optional
        Logger for warnings about ignored settings.

    Returns
    -------
    ClusterSpec
        The validated specification.

    Raises
    ------
    strimzikafkaoperator.errors.InvalidSpec
        Raised if the resource violates any of the model's invariants.
    """
    if logger is None:
        logger = structlog.get_logger(__name__)

    metadata = body.get("metadata", {})
    identity = ClusterIdentity(metadata["namespace"], metadata["name"])
    spec = body.get("spec") or {}
    annotations = metadata.get("annotations") or {}

    if "kafka" not in spec:
        raise InvalidSpec("missing section", field="spec.kafka")
    if "zookeeper" not in spec:
        raise InvalidSpec("missing section", field="spec.zookeeper")

    kafka_spec = spec["kafka"]
    zookeeper = _parse_role(spec["zookeeper"], "spec.zookeeper", logger)
    if zookeeper.replicas % 2 == 0:
        logger.warning(
            "ZooKeeper has an even number of replicas; an odd number is "
            "recommended for quorum",
            cluster=str(identity),
            replicas=zookeeper.replicas,
        )

    return ClusterSpec(
        identity=identity,
        generation=int(metadata.get("generation", 0)),
        kafka=_parse_role(kafka_spec, "spec.kafka", logger),
        zookeeper=zookeeper,
        listeners=_parse_listeners(kafka_spec.get("listeners") or {}),
        authorization=_parse_authorization(kafka_spec.get("authorization")),
        paused=annotations.get(PAUSE_ANNOTATION) == "true",
        owner=body,
    )


def _parse_role(role: dict[str, Any], path: str, logger: Any) -> RoleSpec:
    replicas = role.get("replicas")
    if not isinstance(replicas, int) or isinstance(replicas, bool):
        raise InvalidSpec("must be an integer", field=f"{path}.replicas")
    if replicas < 1:
        raise InvalidSpec("must be at least 1", field=f"{path}.replicas")

    if "storage" not in role:
        raise InvalidSpec("missing section", field=f"{path}.storage")

    config = []
    for key, value in sorted((role.get("config") or {}).items()):
        if key.startswith(FORBIDDEN_CONFIG_PREFIXES):
            logger.warning(
                "Ignoring configuration option managed by the operator",
                option=key,
                section=path,
            )
            continue
        if isinstance(value, bool):
            value = str(value).lower()
        config.append((key, str(value)))

    return RoleSpec(
        replicas=replicas,
        image=role.get("image") or None,
        storage=_parse_storage(role["storage"], f"{path}.storage"),
        resources=_parse_resources(role.get("resources") or {}, path),
        jvm=_parse_jvm_options(role.get("jvmOptions") or {}),
        config=tuple(config),
    )


def _parse_storage(storage: dict[str, Any], path: str) -> StorageSpec:
    storage_type = storage.get("type")
    size = storage.get("size") or storage.get("sizeLimit") or None
    if storage_type == "ephemeral":
        size_bytes = parse_quantity_bytes(size, path) if size else None
        return StorageSpec(type="ephemeral", size=size, size_bytes=size_bytes)
    if storage_type == "persistent-claim":
        if not size:
            raise InvalidSpec("required for persistent-claim", field=f"{path}.size")
        return StorageSpec(
            type="persistent-claim",
            size=size,
            size_bytes=parse_quantity_bytes(size, f"{path}.size"),
            storage_class=storage.get("class") or None,
            delete_claim=bool(storage.get("deleteClaim", False)),
        )
    raise InvalidSpec(
        f"unsupported storage type {storage_type!r}", field=f"{path}.type"
    )


def _parse_resources(role: dict[str, Any], path: str) -> ResourceSpec:
    requests = role.get("requests") or {}
    limits = role.get("limits") or {}
    resources = ResourceSpec(
        cpu_request=_nullable(requests, "cpu"),
        cpu_limit=_nullable(limits, "cpu"),
        memory_request=_nullable(requests, "memory"),
        memory_limit=_nullable(limits, "memory"),
    )
    for name, value in (
        ("requests.cpu", resources.cpu_request),
        ("limits.cpu", resources.cpu_limit),
        ("requests.memory", resources.memory_request),
        ("limits.memory", resources.memory_limit),
    ):
        if value is not None:
            parse_quantity_bytes(value, f"{path}.resources.{name}")
    return resources


def _parse_jvm_options(jvm: dict[str, Any]) -> JvmOptions:
    xx = []
    for key, value in sorted((jvm.get("-XX") or {}).items()):
        if isinstance(value, bool):
            value = str(value).lower()
        xx.append((key, str(value)))
    return JvmOptions(
        xms=_nullable(jvm, "-Xms"),
        xmx=_nullable(jvm, "-Xmx"),
        server=str(jvm.get("-server", False)).lower() == "true",
        xx=tuple(xx),
    )


def _parse_listeners(listeners: Any) -> tuple[ListenerSpec, ...]:
    # The v1beta1 form is a mapping of plain/tls/external; later versions
    # use a list of named listeners.
    if isinstance(listeners, dict):
        parsed = _parse_v1beta1_listeners(listeners)
    elif isinstance(listeners, list):
        parsed = [_parse_listener(item) for item in listeners]
    else:
        raise InvalidSpec("must be a mapping or a list", field="spec.kafka.listeners")

    names = [listener.name for listener in parsed]
    ports = [listener.port for listener in parsed]
    if len(set(names)) != len(names):
        raise InvalidSpec("listener names must be unique", field="spec.kafka.listeners")
    if len(set(ports)) != len(ports):
        raise InvalidSpec("listener ports must be unique", field="spec.kafka.listeners")
    return tuple(sorted(parsed, key=lambda listener: listener.port))


def _parse_v1beta1_listeners(listeners: dict[str, Any]) -> list[ListenerSpec]:
    parsed = []
    if "plain" in listeners:
        plain = listeners["plain"] or {}
        parsed.append(
            ListenerSpec(
                name="plain",
                port=9092,
                authentication=_authentication(plain, "plain"),
            )
        )
    if "tls" in listeners:
        tls = listeners["tls"] or {}
        parsed.append(
            ListenerSpec(
                name="tls",
                port=9093,
                tls=True,
                authentication=_authentication(tls, "tls"),
            )
        )
    if "external" in listeners:
        external = listeners["external"] or {}
        parsed.append(
            ListenerSpec(
                name="external",
                port=9094,
                type=_listener_type(external.get("type"), "external"),
                tls=bool(external.get("tls", True)),
                authentication=_authentication(external, "external"),
            )
        )
    return parsed


def _parse_listener(item: dict[str, Any]) -> ListenerSpec:
    name = item.get("name")
    if not name:
        raise InvalidSpec("listener without a name", field="spec.kafka.listeners")
    port = item.get("port")
    if not isinstance(port, int) or not 1 <= port <= 65535:
        raise InvalidSpec(f"invalid port {port!r}", field=f"listeners.{name}.port")
    if port in RESERVED_PORTS:
        raise InvalidSpec(f"port {port} is reserved", field=f"listeners.{name}.port")
    return ListenerSpec(
        name=name,
        port=port,
        type=_listener_type(item.get("type", "internal"), name),
        tls=bool(item.get("tls", False)),
        authentication=_authentication(item, name),
    )


def _listener_type(value: Any, name: str) -> str:
    if value not in LISTENER_TYPES:
        raise InvalidSpec(
            f"unsupported listener type {value!r}", field=f"listeners.{name}.type"
        )
    return value


def _authentication(listener: dict[str, Any], name: str) -> str | None:
    authentication = listener.get("authentication")
    if not authentication:
        return None
    auth_type = authentication.get("type")
    if auth_type not in AUTHENTICATION_TYPES:
        raise InvalidSpec(
            f"unsupported authentication {auth_type!r}",
            field=f"listeners.{name}.authentication.type",
        )
    return auth_type


def _parse_authorization(authorization: Any) -> AuthorizationSpec | None:
    if not authorization:
        return None
    if authorization.get("type") != "simple":
        raise InvalidSpec(
            f"unsupported authorization {authorization.get('type')!r}",
            field="spec.kafka.authorization.type",
        )
    return AuthorizationSpec(
        type="simple",
        super_users=tuple(authorization.get("superUsers") or ()),
    )


def _nullable(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    return None if value in (None, "") else str(value)


def check_storage_change(
    recorded: str | None, desired: StorageSpec, role: str
) -> None:
    """Reject a storage change that existing volumes cannot follow.

    Parameters
    ----------
    recorded : `str` or `None`
        The ``strimzi.io/storage`` annotation of the live workload, or `None`
        if the workload does not exist yet.
    desired : `StorageSpec`
        The storage in the current spec.
    role : `str`
        The role name, for the error message.

    Raises
    ------
    strimzikafkaoperator.errors.InvalidSpec
        Raised if the desired size is smaller than the recorded size, or the
        storage type or storage class changes.
    """
    if not recorded:
        return
    try:
        previous = json.loads(recorded)
    except ValueError:
        return
    field_name = f"spec.{role}.storage"
    if previous.get("type") != desired.type:
        raise InvalidSpec(
            f"changing storage type from {previous.get('type')} to "
            f"{desired.type} is not supported",
            field=field_name,
        )
    if previous.get("class") != desired.storage_class:
        raise InvalidSpec(
            f"changing storage class from {previous.get('class')} to "
            f"{desired.storage_class} is not supported",
            field=f"{field_name}.class",
        )
    if previous.get("size") and desired.size_bytes is not None:
        previous_bytes = parse_quantity_bytes(previous["size"], field_name)
        if desired.size_bytes < previous_bytes:
            raise InvalidSpec(
                f"size cannot shrink from {previous['size']} to {desired.size}",
                field=f"{field_name}.size",
            )
