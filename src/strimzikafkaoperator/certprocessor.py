"""Access to the certificate material issued for a cluster.

Certificates are created by the certificate authority capability, not by
this engine. The engine only copies the CA certificates into the Secret
mounted by the members, and fingerprints them to detect rotation.
"""

from __future__ import annotations

__all__ = ("ClusterCredentials", "CredentialProvider", "create_credentials_secret")

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from strimzikafkaoperator.errors import TransientPlatformError
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.objects import fingerprint

SecretReader = Callable[[str, str], Awaitable[dict[str, Any] | None]]


@dataclass(frozen=True)
class ClusterCredentials:
    """Opaque, base64-encoded certificate blobs keyed by Secret data key."""

    blobs: tuple[tuple[str, str], ...] = ()

    @property
    def fingerprint(self) -> str:
        return fingerprint(list(self.blobs))

    def as_data(self) -> dict[str, str]:
        return dict(self.blobs)


class CredentialProvider:
    """Read the CA certificates of a cluster from their Secrets.

    Parameters
    ----------
    read_secret : callable
        Coroutine function ``(namespace, name) -> body or None``; see
        `strimzikafkaoperator.k8s.KubernetesPlatform.read_secret`.
    """

    def __init__(self, read_secret: SecretReader, logger: Any | None = None):
        self._read_secret = read_secret
        self._logger = logger or structlog.get_logger(__name__)

    async def fetch(self, identity: ClusterIdentity) -> ClusterCredentials:
        """Fetch the cluster and clients CA certificates.

        Raises
        ------
        strimzikafkaoperator.errors.TransientPlatformError
            Raised if a CA Secret does not exist yet.
        """
        blobs = []
        for secret_name, source_key, target_key in (
            (f"{identity.name}-cluster-ca-cert", "ca.crt", "cluster-ca.crt"),
            (f"{identity.name}-clients-ca-cert", "ca.crt", "clients-ca.crt"),
        ):
            secret = await self._read_secret(identity.namespace, secret_name)
            if secret is None:
                raise TransientPlatformError(
                    f"Secret {secret_name} has not been issued yet", delay=30
                )
            try:
                blobs.append((target_key, secret["data"][source_key]))
            except KeyError as err:
                raise TransientPlatformError(
                    f"Secret {secret_name} has no {source_key} entry"
                ) from err
            self._logger.debug(
                "Read CA certificate",
                cluster=str(identity),
                secret=secret_name,
                version=secret["metadata"].get("resourceVersion"),
            )
        return ClusterCredentials(blobs=tuple(blobs))


def create_credentials_secret(
    *, name: str, labels: dict[str, str], credentials: ClusterCredentials
) -> dict[str, Any]:
    """Create the Secret body holding the trusted CA certificates."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": {"name": name, "labels": labels},
        "data": credentials.as_data(),
    }
