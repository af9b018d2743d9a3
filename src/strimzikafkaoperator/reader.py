"""The Live-State Reader."""

from __future__ import annotations

__all__ = ("read_live", "read_members")

from strimzikafkaoperator.errors import TransientPlatformError, TransientReadError
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.objects import LiveObject, ObjectKey
from strimzikafkaoperator.platform import MemberState, Platform


async def read_live(
    platform: Platform, identity: ClusterIdentity
) -> dict[ObjectKey, LiveObject]:
    """List the objects owned by a cluster, keyed by kind and name.

    Objects created earlier may not be listed yet; callers must not assume
    read-after-write consistency.

    Raises
    ------
    strimzikafkaoperator.errors.TransientReadError
        Raised if the platform is unavailable.
    strimzikafkaoperator.errors.PermissionDeniedError
        Raised if the operator may not list the objects.
    """
    try:
        bodies = await platform.list_objects(identity)
    except TransientReadError:
        raise
    except TransientPlatformError as err:
        raise TransientReadError(str(err), delay=err.delay) from err
    live = {}
    for body in bodies:
        obj = LiveObject.from_body(body)
        live[obj.key] = obj
    return live


async def read_members(
    platform: Platform, identity: ClusterIdentity, workload: str, replicas: int
) -> list[MemberState]:
    """Read the members ``0 .. replicas - 1`` of a workload.

    Members the platform does not report are returned as not ready with no
    revision.
    """
    try:
        listed = await platform.list_members(identity, workload)
    except TransientReadError:
        raise
    except TransientPlatformError as err:
        raise TransientReadError(str(err), delay=err.delay) from err
    by_index = {member.index: member for member in listed}
    return [
        by_index.get(
            index,
            MemberState(
                index=index, name=f"{workload}-{index}", revision=None, ready=False
            ),
        )
        for index in range(replicas)
    ]
