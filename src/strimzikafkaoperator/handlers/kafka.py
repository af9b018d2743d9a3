"""Kopf handlers turning watch events into reconciliation triggers."""

__all__ = ("handle_kafka_event", "handle_statefulset_event")

from typing import Any

import kopf

from strimzikafkaoperator import state
from strimzikafkaoperator.k8s import KAFKA_GROUP, KAFKA_PLURAL, KAFKA_VERSION
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.objects import CLUSTER_LABEL, MANAGED_BY, MANAGED_BY_LABEL


@kopf.on.event(KAFKA_GROUP, KAFKA_VERSION, KAFKA_PLURAL)  # type: ignore[arg-type]
async def handle_kafka_event(
    *,
    event: dict[str, Any],
    namespace: str,
    name: str,
    logger: Any,
    **kwargs: Any,
) -> None:
    """Trigger a reconciliation when a Kafka resource changes, and stop
    reconciling it once it is deleted.

    Parameters
    ----------
    event : `dict`
        The watch event; its ``type`` is ``ADDED``, ``MODIFIED`` or
        ``DELETED``, or `None` for the initial listing.
    namespace : `str`
        The Kubernetes namespace of the Kafka resource.
    name : `str`
        The name of the Kafka resource.
    logger : `Any`
        The kopf logger.
    kwargs : `Any`
        Additional keyword arguments provided by kopf.
    """
    driver = state.driver
    if driver is None:
        # The startup handler queues every existing cluster.
        logger.warning("Ignoring event received before start-up")
        return

    identity = ClusterIdentity(namespace, name)
    if event["type"] == "DELETED":
        logger.info(f"Kafka {identity} deleted")
        await driver.evict(identity)
        return
    driver.trigger(identity, f"kafka {event['type'] or 'listed'}")


@kopf.on.event(  # type: ignore[arg-type]
    "apps", "v1", "statefulsets", labels={MANAGED_BY_LABEL: MANAGED_BY}
)
async def handle_statefulset_event(
    *,
    meta: dict[str, Any],
    namespace: str,
    name: str,
    event: dict[str, Any],
    logger: Any,
    **kwargs: Any,
) -> None:
    """Trigger a reconciliation of the owning cluster when one of its
    StatefulSets changes, so that drift such as manual scaling is
    corrected.
    """
    driver = state.driver
    cluster = (meta.get("labels") or {}).get(CLUSTER_LABEL)
    if driver is None or not cluster:
        return
    driver.trigger(
        ClusterIdentity(namespace, cluster),
        f"statefulset {name} {event['type'] or 'listed'}",
        supersedes=False,
    )
