"""Compare desired and live objects, and apply the resulting plan."""

from __future__ import annotations

__all__ = (
    "Applier",
    "ApplyResult",
    "Change",
    "ChangePlan",
    "RollingUpdatePlan",
    "is_owned",
    "plan_changes",
)

import asyncio
import copy
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from strimzikafkaoperator.builder import QUORUM_ROLES
from strimzikafkaoperator.errors import ApplyFailed, OperatorError
from strimzikafkaoperator.events import EventRecorder
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.objects import (
    CLUSTER_LABEL,
    COMPONENT_LABEL,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    DesiredObject,
    LiveObject,
    ObjectKey,
)
from strimzikafkaoperator.platform import MemberState, Platform

if TYPE_CHECKING:
    from strimzikafkaoperator.rolling import RollingUpdateCoordinator

CREATE = "create"
UPDATE = "update"
DELETE = "delete"
NOOP = "noop"


@dataclass(frozen=True)
class Change:
    """One planned action on one object."""

    key: ObjectKey
    action: str
    disruptive: bool = False
    desired: DesiredObject | None = None
    live: LiveObject | None = None

    @property
    def role(self) -> str | None:
        if self.desired is not None:
            return self.desired.role
        return self.live.labels.get(COMPONENT_LABEL)


@dataclass(frozen=True)
class RollingUpdatePlan:
    """The members of one role to restart, in ascending index order.

    ``workload_change`` is the disruptive update of the workload object, or
    `None` when the workload is already current but some members still run
    an older revision.
    """

    role: str
    workload: str
    members: tuple[int, ...]
    target_revision: str
    replicas: int
    workload_change: Change | None = None

    @staticmethod
    def precondition(index: int, members: Iterable[MemberState]) -> bool:
        """Whether member ``index`` may be restarted: all others are ready."""
        return all(m.ready for m in members if m.index != index)


@dataclass(frozen=True)
class ChangePlan:
    identity: ClusterIdentity
    changes: tuple[Change, ...] = ()
    rolling: tuple[RollingUpdatePlan, ...] = ()

    @property
    def is_noop(self) -> bool:
        return not self.rolling and all(c.action == NOOP for c in self.changes)

    def actions(self, action: str) -> list[Change]:
        return [c for c in self.changes if c.action == action]

    @property
    def eager(self) -> list[Change]:
        """Changes applied directly, outside of any rolling update."""
        rolled = {
            p.workload_change.key for p in self.rolling if p.workload_change
        }
        return [
            c for c in self.changes if c.action != NOOP and c.key not in rolled
        ]


def is_owned(live: LiveObject, identity: ClusterIdentity) -> bool:
    """Whether the engine created ``live`` and may delete it."""
    if live.labels.get(MANAGED_BY_LABEL) != MANAGED_BY:
        return False
    if live.labels.get(CLUSTER_LABEL) != identity.name:
        return False
    pattern = rf"{re.escape(identity.name)}-(kafka|zookeeper)(-[a-z0-9-]+)?"
    return re.fullmatch(pattern, live.name) is not None


def plan_changes(
    identity: ClusterIdentity,
    desired: Iterable[DesiredObject],
    live: Mapping[ObjectKey, LiveObject],
    members: Mapping[str, list[MemberState]] | None = None,
) -> ChangePlan:
    """Compute the changes that bring ``live`` to ``desired``.

    Parameters
    ----------
    identity : `strimzikafkaoperator.model.ClusterIdentity`
        The cluster being reconciled.
    desired : iterable of `strimzikafkaoperator.objects.DesiredObject`
        Output of `strimzikafkaoperator.builder.build`.
    live : `dict`
        Output of `strimzikafkaoperator.reader.read_live`.
    members : `dict`, optional
        Members of each existing workload, keyed by workload name.

    Returns
    -------
    plan : `ChangePlan`
        Changes sorted by object key, and one `RollingUpdatePlan` per
        quorum role with stale members, ordered as `QUORUM_ROLES`.
    """
    members = members or {}
    desired_by_key = {obj.key: obj for obj in desired}
    changes = []
    for key in sorted(set(desired_by_key) | set(live)):
        wanted = desired_by_key.get(key)
        current = live.get(key)
        if wanted is None:
            if is_owned(current, identity):
                changes.append(Change(key, DELETE, live=current))
            continue
        if current is None:
            changes.append(Change(key, CREATE, desired=wanted))
        elif (
            current.fingerprint != wanted.fingerprint
            or current.replicas != wanted.replicas
        ):
            disruptive = (
                current.disruptive_fingerprint != wanted.disruptive_fingerprint
            )
            changes.append(
                Change(key, UPDATE, disruptive, desired=wanted, live=current)
            )
        else:
            changes.append(Change(key, NOOP, desired=wanted, live=current))

    rolling = []
    for role in QUORUM_ROLES:
        for change in changes:
            wanted = change.desired
            if (
                wanted is None
                or change.action == CREATE
                or wanted.kind != "StatefulSet"
                or wanted.role != role
            ):
                continue
            stale = tuple(
                m.index
                for m in members.get(wanted.name, ())
                if m.revision is not None
                and m.revision != wanted.disruptive_fingerprint
                and m.index < wanted.replicas
            )
            if not (change.disruptive or stale):
                continue
            rolling.append(
                RollingUpdatePlan(
                    role=role,
                    workload=wanted.name,
                    members=tuple(sorted(stale)),
                    target_revision=wanted.disruptive_fingerprint,
                    replicas=wanted.replicas,
                    workload_change=change if change.disruptive else None,
                )
            )
    return ChangePlan(identity, tuple(changes), tuple(rolling))


@dataclass
class ApplyResult:
    """What one apply pass did."""

    applied: list[Change] = field(default_factory=list)
    restarted: dict[str, list[int]] = field(default_factory=dict)
    abandoned: dict[str, tuple[int, ...]] = field(default_factory=dict)


class Applier:
    """Apply a `ChangePlan` to the platform.

    Creates, non-disruptive updates and deletes run concurrently, and the
    failure of one never prevents the others. Rolling updates then run one
    role at a time. A role's rolling update is skipped if one of that
    role's own changes failed, and every rolling update is skipped if a
    change to an object shared by all roles failed.

    Parameters
    ----------
    platform : `strimzikafkaoperator.platform.Platform`
        The orchestration platform.
    coordinator : `strimzikafkaoperator.rolling.RollingUpdateCoordinator`
        Restarts the members of disruptively updated workloads.
    events : `strimzikafkaoperator.events.EventRecorder`
        Receives an event per applied object.
    """

    def __init__(
        self,
        platform: Platform,
        coordinator: RollingUpdateCoordinator,
        events: EventRecorder,
        logger: Any | None = None,
    ) -> None:
        self._platform = platform
        self._coordinator = coordinator
        self._events = events
        self._logger = logger or structlog.get_logger(__name__)

    async def apply(
        self,
        plan: ChangePlan,
        superseded: Callable[[], bool] = lambda: False,
    ) -> ApplyResult:
        """Apply ``plan``.

        Raises
        ------
        strimzikafkaoperator.errors.ApplyFailed
            Raised after every change was attempted if any failed.
        strimzikafkaoperator.errors.RollingUpdateStalled
            Raised if a rolling update could not complete.
        """
        result = ApplyResult()
        eager = plan.eager
        outcomes = await asyncio.gather(
            *(self._apply_change(change) for change in eager)
        )
        failures = {}
        failed_roles = set()
        for change, error in zip(eager, outcomes):
            if error is None:
                result.applied.append(change)
            else:
                failures[str(change.key)] = error
                failed_roles.add(change.role)
        if failed_roles - set(QUORUM_ROLES):
            failed_roles.update(QUORUM_ROLES)

        for index, rolling in enumerate(plan.rolling):
            if index and superseded():
                for later in plan.rolling[index:]:
                    result.abandoned[later.role] = later.members
                break
            if rolling.role in failed_roles:
                self._logger.warning(
                    "Skipping rolling update after apply failures",
                    cluster=str(plan.identity),
                    role=rolling.role,
                    failed=sorted(failures),
                )
                continue
            if rolling.workload_change is not None:
                error = await self._apply_change(rolling.workload_change)
                if error is not None:
                    failures[str(rolling.workload_change.key)] = error
                    continue
                result.applied.append(rolling.workload_change)
            outcome = await self._coordinator.roll(
                plan.identity, rolling, superseded
            )
            result.restarted[rolling.role] = list(outcome.restarted)
            if outcome.abandoned:
                result.abandoned[rolling.role] = outcome.abandoned
                for later in plan.rolling[index + 1 :]:
                    result.abandoned[later.role] = later.members
                break

        if failures:
            raise ApplyFailed(failures)
        return result

    async def _apply_change(self, change: Change) -> Exception | None:
        try:
            if change.action == CREATE:
                await self._platform.create(change.desired.body)
                self._events.info("Created", f"Created {change.key}")
            elif change.action == UPDATE:
                body = copy.deepcopy(change.desired.body)
                body["metadata"]["resourceVersion"] = change.live.revision
                await self._platform.update(
                    body, expected_revision=change.live.revision
                )
                self._events.info("Updated", f"Updated {change.key}")
            elif change.action == DELETE:
                await self._platform.delete(
                    change.key.kind,
                    change.key.name,
                    change.live.body["metadata"]["namespace"],
                )
                self._events.info("Deleted", f"Deleted {change.key}")
        except OperatorError as err:
            self._events.warning(
                "ApplyFailed", f"Failed to {change.action} {change.key}: {err}"
            )
            return err
        except Exception as err:
            self._logger.exception(
                "Unexpected error applying change",
                object=str(change.key),
                action=change.action,
            )
            return err
        return None
