"""Code intended to run on start-up, before running any handlers."""

__all__ = ("configure_logging", "start_operator", "stop_operator")

import logging
from typing import Any

import structlog
from kubernetes.client.rest import ApiException

from strimzikafkaoperator import state
from strimzikafkaoperator.builder import PlatformDefaults
from strimzikafkaoperator.driver import LoopDriver
from strimzikafkaoperator.k8s import (
    KAFKA_GROUP,
    KAFKA_PLURAL,
    KAFKA_VERSION,
    KubernetesPlatform,
    create_k8sclient,
)
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.reconciler import Reconciler


def configure_logging() -> None:
    """Configure structlog for the engine loggers."""
    level = logging.getLevelName(state.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    renderer: Any
    if state.log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def start_operator(logger: Any = None) -> LoopDriver:
    """Start up the operator: build the loop driver and queue a
    reconciliation of every existing Kafka resource.

    Must run inside the operator's event loop.
    """
    if logger is None:
        logger = structlog.get_logger(__name__)

    k8s_client = create_k8sclient()
    platform = KubernetesPlatform(k8s_client)
    reconciler = Reconciler(platform, PlatformDefaults.from_state())
    driver = LoopDriver(
        reconciler,
        resync_interval=state.resync_interval,
        backoff_base=state.backoff_base,
        backoff_max=state.backoff_max,
        conflict_retries=state.conflict_retries,
        lock_max_hold=state.lock_max_hold,
        max_clusters=state.max_clusters,
    )
    state.driver = driver

    api = k8s_client.CustomObjectsApi()
    try:
        response = api.list_namespaced_custom_object(
            KAFKA_GROUP,
            KAFKA_VERSION,
            state.namespace,
            KAFKA_PLURAL,
            timeout_seconds=60,
        )
    except ApiException:
        logger.exception(
            "Exception when calling CustomObjectsApi->"
            "list_namespaced_custom_object"
        )
        return driver

    for kafka in response["items"]:
        identity = ClusterIdentity(state.namespace, kafka["metadata"]["name"])
        driver.trigger(identity, "startup")
    return driver


async def stop_operator() -> None:
    """Cancel every cluster worker."""
    if state.driver is not None:
        await state.driver.shutdown()
        state.driver = None
