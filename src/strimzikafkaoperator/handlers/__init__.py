"""Kopf handlers for the strimzi-kafka-operator."""

__all__ = (
    "handle_ca_secret_change",
    "handle_kafka_event",
    "handle_statefulset_event",
    "shutdown",
    "startup",
)

from typing import Any

import kopf

from strimzikafkaoperator.handlers.kafka import (
    handle_kafka_event,
    handle_statefulset_event,
)
from strimzikafkaoperator.handlers.secretwatcher import handle_ca_secret_change
from strimzikafkaoperator.startup import (
    configure_logging,
    start_operator,
    stop_operator,
)


@kopf.on.startup()
async def startup(logger: Any, **kwargs: Any) -> None:
    configure_logging()
    start_operator()
    logger.info("Started the reconciliation loop driver")


@kopf.on.cleanup()
async def shutdown(logger: Any, **kwargs: Any) -> None:
    await stop_operator()
    logger.info("Stopped the reconciliation loop driver")
