"""The Desired-State Builder: from a `ClusterSpec` to the complete set of
objects the cluster needs.

Each role contributes its objects through a small `RoleBuilder`
capability; `build` composes them.
"""

from __future__ import annotations

__all__ = (
    "CredentialsBuilder",
    "KafkaBuilder",
    "ListenerBuilder",
    "PlatformDefaults",
    "RoleBuilder",
    "RolePolicy",
    "ZookeeperBuilder",
    "build",
    "QUORUM_ROLES",
    "SHARED_ROLE",
)

from dataclasses import dataclass, field
from typing import Protocol

import kopf

from strimzikafkaoperator import state
from strimzikafkaoperator.certprocessor import (
    ClusterCredentials,
    create_credentials_secret,
)
from strimzikafkaoperator.errors import InvalidSpec
from strimzikafkaoperator.model import ClusterSpec, ListenerSpec
from strimzikafkaoperator.objects import DesiredObject, make_desired
from strimzikafkaoperator.workloads import (
    create_config_map,
    create_container_spec,
    create_headless_service,
    create_service,
    create_statefulset,
    heap_options,
    jvm_performance_options,
    resource_labels,
)

GIB = 1024 * 1024 * 1024

REPLICATION_PORT = 9091
ZOOKEEPER_CLIENT_PORT = 2181
ZOOKEEPER_CLUSTER_PORT = 2888
ZOOKEEPER_ELECTION_PORT = 3888

# Roles whose members must be restarted one at a time, in this order.
QUORUM_ROLES = ("zookeeper", "kafka")

# Role of objects that the members of every quorum role depend on.
SHARED_ROLE = "shared"

SERVICE_TYPES = {
    "nodeport": "NodePort",
    "loadbalancer": "LoadBalancer",
    "route": "ClusterIP",
    "ingress": "ClusterIP",
}


@dataclass(frozen=True)
class RolePolicy:
    """Heap sizing policy of a role."""

    dynamic_heap_fraction: float
    dynamic_heap_max: int


@dataclass(frozen=True)
class PlatformDefaults:
    """External inputs to the builder that do not come from the Kafka resource."""

    kafka_image: str
    zookeeper_image: str
    image_pull_policy: str | None = None
    kafka_policy: RolePolicy = field(
        default_factory=lambda: RolePolicy(0.5, 5 * GIB)
    )
    zookeeper_policy: RolePolicy = field(
        default_factory=lambda: RolePolicy(0.75, 2 * GIB)
    )

    @classmethod
    def from_state(cls) -> PlatformDefaults:
        """Collect the defaults configured through the environment."""
        return cls(
            kafka_image=state.kafka_image,
            zookeeper_image=state.zookeeper_image,
            image_pull_policy=state.image_pull_policy,
        )


class RoleBuilder(Protocol):
    def build(
        self,
        spec: ClusterSpec,
        defaults: PlatformDefaults,
        credentials: ClusterCredentials,
    ) -> list[DesiredObject]: ...


def build(
    spec: ClusterSpec,
    defaults: PlatformDefaults,
    credentials: ClusterCredentials,
    builders: tuple[RoleBuilder, ...] | None = None,
) -> tuple[DesiredObject, ...]:
    """Compute every object the cluster described by ``spec`` needs.

    The result is deterministic: unchanged inputs always produce the same
    objects and fingerprints.

    Parameters
    ----------
    spec : `strimzikafkaoperator.model.ClusterSpec`
        The validated cluster.
    defaults : `PlatformDefaults`
        Images and heap policies.
    credentials : `strimzikafkaoperator.certprocessor.ClusterCredentials`
        CA certificates to distribute to the members.
    builders : `tuple`, optional
        Role builders to compose; defaults to all of them.

    Returns
    -------
    objects : `tuple` of `strimzikafkaoperator.objects.DesiredObject`
        Sorted by kind and name.

    Raises
    ------
    strimzikafkaoperator.errors.InvalidSpec
        Raised if a derived value violates a platform constraint.
    """
    if builders is None:
        builders = (
            CredentialsBuilder(),
            ZookeeperBuilder(),
            KafkaBuilder(),
            ListenerBuilder(),
        )
    objects: dict[tuple[str, str], DesiredObject] = {}
    for builder in builders:
        for obj in builder.build(spec, defaults, credentials):
            if obj.key in objects:
                raise InvalidSpec(f"{obj.key} would be created twice")
            objects[obj.key] = obj
    return tuple(objects[key] for key in sorted(objects))


def _adopt(body: dict, spec: ClusterSpec) -> dict:
    body["metadata"]["namespace"] = spec.identity.namespace
    if spec.owner:
        kopf.adopt(body, owner=spec.owner)
    return body


def _credentials_secret_name(spec: ClusterSpec) -> str:
    return f"{spec.identity.name}-kafka-trusted-certs"


class CredentialsBuilder:
    """Build the Secret of trusted CA certificates shared by all members."""

    def build(
        self,
        spec: ClusterSpec,
        defaults: PlatformDefaults,
        credentials: ClusterCredentials,
    ) -> list[DesiredObject]:
        name = _credentials_secret_name(spec)
        labels = resource_labels(
            cluster=spec.identity.name, name=name, component="kafka"
        )
        body = create_credentials_secret(
            name=name, labels=labels, credentials=credentials
        )
        return [make_desired(_adopt(body, spec), role=SHARED_ROLE)]


class ZookeeperBuilder:
    """Build the ZooKeeper ensemble: config, services and StatefulSet."""

    def build(
        self,
        spec: ClusterSpec,
        defaults: PlatformDefaults,
        credentials: ClusterCredentials,
    ) -> list[DesiredObject]:
        cluster = spec.identity.name
        role = spec.zookeeper
        name = f"{cluster}-zookeeper"
        labels = resource_labels(cluster=cluster, name=name, component="zookeeper")
        nodes_service = f"{cluster}-zookeeper-nodes"

        config = make_desired(
            _adopt(
                create_config_map(
                    name=f"{cluster}-zookeeper-config",
                    labels=labels,
                    data={
                        "zookeeper.properties": self.render_config(spec),
                        "zookeeper.node-count": str(role.replicas),
                    },
                ),
                spec,
            ),
            role="zookeeper",
        )

        ports = [
            {"name": "clients", "containerPort": ZOOKEEPER_CLIENT_PORT},
            {"name": "clustering", "containerPort": ZOOKEEPER_CLUSTER_PORT},
            {"name": "leader-election", "containerPort": ZOOKEEPER_ELECTION_PORT},
        ]
        env = heap_options(
            role.jvm,
            role.resources,
            dynamic_fraction=defaults.zookeeper_policy.dynamic_heap_fraction,
            dynamic_max=defaults.zookeeper_policy.dynamic_heap_max,
        )
        env += jvm_performance_options(role.jvm)
        env.append({"name": "ZOOKEEPER_NODE_COUNT", "value": str(role.replicas)})
        container = create_container_spec(
            name="zookeeper",
            image=role.image or defaults.zookeeper_image,
            image_pull_policy=defaults.image_pull_policy,
            command="/opt/kafka/zookeeper_run.sh",
            ports=ports,
            env=env,
            resources=role.resources,
            readiness_command="/opt/kafka/zookeeper_healthcheck.sh",
        )
        statefulset = create_statefulset(
            name=name,
            labels=labels,
            replicas=role.replicas,
            container=container,
            storage=role.storage,
            config_map_name=config.name,
            config_hash=config.fingerprint,
            credentials_secret_name=_credentials_secret_name(spec),
            credentials_hash=credentials.fingerprint,
            headless_service=nodes_service,
        )
        client_service = create_service(
            name=f"{cluster}-zookeeper-client",
            labels=labels,
            selector_name=name,
            ports=[{"name": "clients", "port": ZOOKEEPER_CLIENT_PORT}],
        )
        nodes = create_headless_service(
            name=nodes_service,
            labels=labels,
            selector_name=name,
            ports=[
                {"name": "clients", "port": ZOOKEEPER_CLIENT_PORT},
                {"name": "clustering", "port": ZOOKEEPER_CLUSTER_PORT},
                {"name": "leader-election", "port": ZOOKEEPER_ELECTION_PORT},
            ],
        )
        return [
            config,
            make_desired(_adopt(statefulset, spec), role="zookeeper"),
            make_desired(_adopt(client_service, spec), role="zookeeper"),
            make_desired(_adopt(nodes, spec), role="zookeeper"),
        ]

    @staticmethod
    def render_config(spec: ClusterSpec) -> str:
        cluster = spec.identity.name
        namespace = spec.identity.namespace
        lines = [
            "tickTime=2000",
            "initLimit=5",
            "syncLimit=2",
            f"clientPort={ZOOKEEPER_CLIENT_PORT}",
            "dataDir=/var/lib/data/zookeeper",
            "autopurge.purgeInterval=1",
        ]
        for index in range(spec.zookeeper.replicas):
            host = (
                f"{cluster}-zookeeper-{index}.{cluster}-zookeeper-nodes."
                f"{namespace}.svc"
            )
            lines.append(
                f"server.{index + 1}={host}:{ZOOKEEPER_CLUSTER_PORT}:"
                f"{ZOOKEEPER_ELECTION_PORT}"
            )
        lines.extend(f"{key}={value}" for key, value in spec.zookeeper.config)
        return "\n".join(lines) + "\n"


class KafkaBuilder:
    """Build the broker pool: config, internal services and StatefulSet."""

    def build(
        self,
        spec: ClusterSpec,
        defaults: PlatformDefaults,
        credentials: ClusterCredentials,
    ) -> list[DesiredObject]:
        cluster = spec.identity.name
        role = spec.kafka
        name = f"{cluster}-kafka"
        labels = resource_labels(cluster=cluster, name=name, component="kafka")
        brokers_service = f"{cluster}-kafka-brokers"

        config = make_desired(
            _adopt(
                create_config_map(
                    name=f"{cluster}-kafka-config",
                    labels=labels,
                    data={"server.config": self.render_config(spec)},
                ),
                spec,
            ),
            role="kafka",
        )

        ports = [{"name": "replication", "containerPort": REPLICATION_PORT}]
        ports += [
            {"name": _port_name(listener), "containerPort": listener.port}
            for listener in spec.listeners
        ]
        env = heap_options(
            role.jvm,
            role.resources,
            dynamic_fraction=defaults.kafka_policy.dynamic_heap_fraction,
            dynamic_max=defaults.kafka_policy.dynamic_heap_max,
        )
        env += jvm_performance_options(role.jvm)
        env.append(
            {
                "name": "KAFKA_ZOOKEEPER_CONNECT",
                "value": f"{cluster}-zookeeper-client:{ZOOKEEPER_CLIENT_PORT}",
            }
        )
        container = create_container_spec(
            name="kafka",
            image=role.image or defaults.kafka_image,
            image_pull_policy=defaults.image_pull_policy,
            command="/opt/kafka/kafka_run.sh",
            ports=ports,
            env=env,
            resources=role.resources,
            readiness_command="/opt/kafka/kafka_readiness.sh",
        )
        statefulset = create_statefulset(
            name=name,
            labels=labels,
            replicas=role.replicas,
            container=container,
            storage=role.storage,
            config_map_name=config.name,
            config_hash=config.fingerprint,
            credentials_secret_name=_credentials_secret_name(spec),
            credentials_hash=credentials.fingerprint,
            headless_service=brokers_service,
        )

        internal_ports = [{"name": "replication", "port": REPLICATION_PORT}]
        internal_ports += [
            {"name": _port_name(listener), "port": listener.port}
            for listener in spec.listeners
            if not listener.external
        ]
        bootstrap = create_service(
            name=f"{cluster}-kafka-bootstrap",
            labels=labels,
            selector_name=name,
            ports=internal_ports,
        )
        brokers = create_headless_service(
            name=brokers_service,
            labels=labels,
            selector_name=name,
            ports=internal_ports,
        )
        return [
            config,
            make_desired(_adopt(statefulset, spec), role="kafka"),
            make_desired(_adopt(bootstrap, spec), role="kafka"),
            make_desired(_adopt(brokers, spec), role="kafka"),
        ]

    @staticmethod
    def render_config(spec: ClusterSpec) -> str:
        """Render ``server.config`` for the brokers."""
        cluster = spec.identity.name
        namespace = spec.identity.namespace
        host = f"${{HOSTNAME}}.{cluster}-kafka-brokers.{namespace}.svc"

        listener_names = ["REPLICATION"]
        bind = [f"REPLICATION://0.0.0.0:{REPLICATION_PORT}"]
        advertised = [f"REPLICATION://{host}:{REPLICATION_PORT}"]
        protocols = ["REPLICATION:SSL"]
        extra = []
        for listener in spec.listeners:
            listener_name = _listener_name(listener)
            listener_names.append(listener_name)
            bind.append(f"{listener_name}://0.0.0.0:{listener.port}")
            advertised.append(f"{listener_name}://{host}:{listener.port}")
            protocols.append(f"{listener_name}:{_security_protocol(listener)}")
            prefix = f"listener.name.{listener_name.lower()}"
            if listener.authentication == "tls":
                extra.append(f"{prefix}.ssl.client.auth=required")
            elif listener.authentication == "scram-sha-512":
                extra.append(f"{prefix}.sasl.enabled.mechanisms=SCRAM-SHA-512")
            elif listener.authentication == "oauth":
                extra.append(f"{prefix}.sasl.enabled.mechanisms=OAUTHBEARER")

        lines = [
            "broker.id=${STRIMZI_BROKER_ID}",
            f"zookeeper.connect={cluster}-zookeeper-client:{ZOOKEEPER_CLIENT_PORT}",
            "log.dirs=/var/lib/data/kafka-log${STRIMZI_BROKER_ID}",
            f"listeners={','.join(bind)}",
            f"advertised.listeners={','.join(advertised)}",
            f"listener.security.protocol.map={','.join(protocols)}",
            "inter.broker.listener.name=REPLICATION",
            "ssl.truststore.location=/opt/kafka/trusted-certs/cluster-ca.crt",
        ]
        lines.extend(extra)
        if spec.authorization is not None:
            super_users = [f"User:CN={cluster}-kafka,O=io.strimzi"]
            super_users += [f"User:{user}" for user in spec.authorization.super_users]
            lines.append("authorizer.class.name=kafka.security.auth.SimpleAclAuthorizer")
            lines.append(f"super.users={';'.join(super_users)}")
        lines.extend(f"{key}={value}" for key, value in spec.kafka.config)
        return "\n".join(lines) + "\n"


class ListenerBuilder:
    """Build one bootstrap Service per external listener."""

    def build(
        self,
        spec: ClusterSpec,
        defaults: PlatformDefaults,
        credentials: ClusterCredentials,
    ) -> list[DesiredObject]:
        cluster = spec.identity.name
        workload = f"{cluster}-kafka"
        objects = []
        for listener in spec.listeners:
            if not listener.external:
                continue
            name = f"{cluster}-kafka-{listener.name}-bootstrap"
            labels = resource_labels(cluster=cluster, name=workload, component="kafka")
            service = create_service(
                name=name,
                labels=labels,
                selector_name=workload,
                ports=[{"name": _port_name(listener), "port": listener.port}],
                service_type=SERVICE_TYPES[listener.type],
            )
            objects.append(make_desired(_adopt(service, spec), role="kafka"))
        return objects


def _listener_name(listener: ListenerSpec) -> str:
    return f"{listener.name.upper().replace('-', '_')}_{listener.port}"


def _port_name(listener: ListenerSpec) -> str:
    return f"tcp-{listener.name}"[:15]


def _security_protocol(listener: ListenerSpec) -> str:
    if listener.authentication == "tls" and not listener.tls:
        raise InvalidSpec(
            "TLS client authentication requires tls: true",
            field=f"listeners.{listener.name}.authentication",
        )
    sasl = listener.authentication in ("scram-sha-512", "oauth")
    if listener.tls:
        return "SASL_SSL" if sasl else "SSL"
    return "SASL_PLAINTEXT" if sasl else "PLAINTEXT"
