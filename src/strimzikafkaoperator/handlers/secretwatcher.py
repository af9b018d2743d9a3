"""Kopf handler to react to changes to the cluster and clients CA
certificate secrets of a Kafka cluster.
"""

__all__ = ("handle_ca_secret_change", "is_ca_secret")

from typing import Any

import kopf

from strimzikafkaoperator import state
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.objects import CLUSTER_LABEL


def is_ca_secret(name: str, cluster: str) -> bool:
    return name in (f"{cluster}-cluster-ca-cert", f"{cluster}-clients-ca-cert")


@kopf.on.event("", "v1", "secrets", labels={CLUSTER_LABEL: kopf.PRESENT})  # type: ignore[arg-type]
async def handle_ca_secret_change(
    *,
    meta: dict[str, Any],
    namespace: str,
    name: str,
    event: dict[str, Any],
    logger: Any,
    **kwargs: Any,
) -> None:
    """Handle changes in the CA certificate secrets of a Kafka cluster.

    The members mount the certificates through a Secret of their own, so a
    rotated CA certificate rolls the cluster.

    Parameters
    ----------
    meta : `dict`
        The metadata of the Secret, including labels.
    namespace : `str`
        The Kubernetes namespace where the Secret is located.
    name : `str`
        The name of the Secret.
    event : `dict`
        The event type, such as "ADDED", "MODIFIED", or "DELETED".
    logger : `Any`
        A logger instance for logging messages.
    kwargs : `Any`
        Additional keyword arguments, if any.
    """
    # Act only on Secrets that have been created or updated
    if event["type"] not in ("ADDED", "MODIFIED"):
        return

    cluster = meta["labels"][CLUSTER_LABEL]
    if not is_ca_secret(name, cluster) or state.driver is None:
        return

    logger.info(f"CA certificate {name} changed")
    state.driver.trigger(ClusterIdentity(namespace, cluster), f"secret {name}")
