"""The orchestration platform interface consumed by the engine."""

from __future__ import annotations

__all__ = ("MemberState", "Platform")

from dataclasses import dataclass
from typing import Any, Protocol

from strimzikafkaoperator.model import ClusterIdentity


@dataclass(frozen=True)
class MemberState:
    """One member (pod) of a workload.

    ``revision`` is the disruptive fingerprint the member was started from,
    or `None` if the member does not exist.
    """

    index: int
    name: str
    revision: str | None
    ready: bool


class Platform(Protocol):
    """Operations the engine needs from the orchestration platform.

    Implementations raise the errors of `strimzikafkaoperator.errors`:
    `TransientPlatformError` for retryable failures,
    `PermissionDeniedError` for authorization failures, and
    `ConflictError` when an expected revision is stale.
    """

    async def get_cluster(self, identity: ClusterIdentity) -> dict[str, Any] | None:
        """Return the ``Kafka`` resource, or `None` if it was deleted."""

    async def list_objects(self, identity: ClusterIdentity) -> list[dict[str, Any]]:
        """List all objects carrying the cluster's ownership selector."""

    async def create(self, body: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
        self, body: dict[str, Any], expected_revision: str
    ) -> dict[str, Any]:
        """Replace an object.

        Fails with `ConflictError` if the live revision differs from
        ``expected_revision``. Fields the platform allocates, such as a
        Service's cluster IP and node ports, are kept.
        """

    async def delete(self, kind: str, name: str, namespace: str) -> None: ...

    async def read_secret(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Return a Secret body, or `None` if it does not exist."""

    async def list_members(
        self, identity: ClusterIdentity, workload: str
    ) -> list[MemberState]: ...

    async def read_member(
        self, identity: ClusterIdentity, workload: str, index: int
    ) -> MemberState: ...

    async def restart_member(
        self, identity: ClusterIdentity, workload: str, index: int
    ) -> None: ...

    async def patch_cluster_status(
        self, identity: ClusterIdentity, status: dict[str, Any]
    ) -> None: ...
