"""A Kubernetes operator that reconciles Strimzi Kafka and ZooKeeper
clusters toward their declared ``Kafka`` resources.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("strimzi-kafka-operator")
except PackageNotFoundError:
    # Not installed, e.g. running from a source checkout.
    __version__ = "0.0.0"
