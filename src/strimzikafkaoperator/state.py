"""Constructed (cached) state as module-level attributes."""

import os

namespace = os.environ.get("SKO_NAMESPACE", "kafka")
"""The name of the Kubernetes namespace monitored by this operator."""

resync_interval = float(os.environ.get("SKO_RESYNC_INTERVAL", "120"))
"""Seconds between periodic resyncs of every known cluster."""

backoff_base = float(os.environ.get("SKO_BACKOFF_BASE", "5"))
"""Delay in seconds before the first retry of a failed reconciliation."""

backoff_max = float(os.environ.get("SKO_BACKOFF_MAX", "300"))
"""Ceiling in seconds of the exponential retry backoff."""

conflict_retries = int(os.environ.get("SKO_CONFLICT_RETRIES", "3"))
"""Immediate re-runs allowed after an optimistic-concurrency conflict."""

lock_max_hold = float(os.environ.get("SKO_LOCK_MAX_HOLD", "1800"))
"""Seconds after which a held reconciliation lock is considered expired."""

max_clusters = int(os.environ.get("SKO_MAX_CLUSTERS", "256"))
"""Upper bound of the per-cluster lock and worker registry."""

health_timeout = float(os.environ.get("SKO_HEALTH_TIMEOUT", "300"))
"""Seconds to wait for a restarted member to report ready."""

health_poll_interval = float(os.environ.get("SKO_HEALTH_POLL_INTERVAL", "5"))
"""Seconds between readiness polls of a restarted member."""

health_max_probe_failures = int(
    os.environ.get("SKO_HEALTH_MAX_PROBE_FAILURES", "3")
)
"""Consecutive readiness-probe API errors tolerated during a rolling step."""

kafka_image = os.environ.get(
    "SKO_KAFKA_IMAGE", "strimzi/kafka:0.14.0-kafka-2.3.0"
)
"""Broker image used when a Kafka resource does not name one."""

zookeeper_image = os.environ.get(
    "SKO_ZOOKEEPER_IMAGE", "strimzi/kafka:0.14.0-kafka-2.3.0"
)
"""ZooKeeper image used when a Kafka resource does not name one."""

image_pull_policy = os.environ.get("SKO_IMAGE_PULL_POLICY") or None
"""Image pull policy forced onto every container, if set."""

log_level = os.environ.get("SKO_LOG_LEVEL", "INFO")
"""Log level of the structlog-configured engine loggers."""

log_json = os.environ.get("SKO_LOG_JSON", "false").lower() in ("1", "true")
"""Render engine logs as JSON rather than key/value text."""

driver = None
"""The process-wide `strimzikafkaoperator.driver.LoopDriver`.

Set by `strimzikafkaoperator.startup.start_operator` and read by the kopf
handlers.
"""
