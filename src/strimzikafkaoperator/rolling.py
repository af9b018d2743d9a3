"""Health-gated, one-at-a-time restarts of the members of a role."""

from __future__ import annotations

__all__ = (
    "LeaderFinder",
    "NoLeaderFinder",
    "RollOutcome",
    "RollState",
    "RollingUpdateCoordinator",
)

import asyncio
import enum
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from strimzikafkaoperator.differ import RollingUpdatePlan
from strimzikafkaoperator.errors import (
    QuorumAtRisk,
    RollingUpdateStalled,
    TransientPlatformError,
)
from strimzikafkaoperator.events import EventRecorder
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.platform import MemberState, Platform
from strimzikafkaoperator.reader import read_members


class RollState(enum.Enum):
    IDLE = "Idle"
    PLANNING = "Planning"
    RESTARTING_MEMBER = "RestartingMember"
    VERIFYING_HEALTH = "VerifyingHealth"
    ABORTED = "Aborted"


class LeaderFinder(Protocol):
    """Tell which member currently leads a role (Kafka controller, ZooKeeper
    leader), so that it can be restarted last.
    """

    async def find_leader(
        self,
        identity: ClusterIdentity,
        workload: str,
        members: Sequence[MemberState],
    ) -> int | None: ...


class NoLeaderFinder:
    """A `LeaderFinder` that never knows the leader."""

    async def find_leader(
        self,
        identity: ClusterIdentity,
        workload: str,
        members: Sequence[MemberState],
    ) -> int | None:
        return None


@dataclass(frozen=True)
class RollOutcome:
    role: str
    restarted: tuple[int, ...] = ()
    abandoned: tuple[int, ...] = ()


class RollingUpdateCoordinator:
    """Restart stale members one at a time, never more than one not ready.

    Parameters
    ----------
    platform : `strimzikafkaoperator.platform.Platform`
        The orchestration platform.
    events : `strimzikafkaoperator.events.EventRecorder`
        Receives an event for every step.
    timeout : `float`
        Seconds a restarted member has to become ready on the target
        revision.
    poll_interval : `float`
        Seconds between readiness polls.
    max_probe_failures : `int`
        Consecutive readiness-probe errors tolerated before giving up.
    leader_finder : `LeaderFinder`, optional
        Defaults to `NoLeaderFinder`.
    """

    def __init__(
        self,
        platform: Platform,
        events: EventRecorder,
        *,
        timeout: float,
        poll_interval: float,
        max_probe_failures: int,
        leader_finder: LeaderFinder | None = None,
        logger: Any | None = None,
    ) -> None:
        self._platform = platform
        self._events = events
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._max_probe_failures = max_probe_failures
        self._leader_finder = leader_finder or NoLeaderFinder()
        self._logger = logger or structlog.get_logger(__name__)
        self.states: dict[str, RollState] = {}
        self.current_member: dict[str, int | None] = {}

    async def roll(
        self,
        identity: ClusterIdentity,
        plan: RollingUpdatePlan,
        superseded: Callable[[], bool] = lambda: False,
    ) -> RollOutcome:
        """Restart the members of ``plan`` in order.

        After each completed step, ``superseded`` is consulted. If it
        returns `True`, the remaining members are abandoned, to be
        re-planned by the next cycle.

        Raises
        ------
        strimzikafkaoperator.errors.QuorumAtRisk
            Raised, before restarting it, if a member other than the next
            one to restart is not ready.
        strimzikafkaoperator.errors.RollingUpdateStalled
            Raised if a restarted member does not become healthy in time.
        """
        logger = self._logger.bind(cluster=str(identity), role=plan.role)
        self._set_state(plan.role, RollState.PLANNING)
        members = await read_members(
            self._platform, identity, plan.workload, plan.replicas
        )
        order = await self._order(identity, plan, members)
        logger.info("Planned rolling update", members=order)

        restarted: list[int] = []
        for position, index in enumerate(order):
            if position and superseded():
                remaining = tuple(order[position:])
                self._events.info(
                    "RollingUpdateSuperseded",
                    f"Rolling update of {plan.workload} superseded; members "
                    f"{list(remaining)} will be re-planned",
                )
                self._set_state(plan.role, RollState.IDLE)
                return RollOutcome(plan.role, tuple(restarted), remaining)

            if position:
                members = await read_members(
                    self._platform, identity, plan.workload, plan.replicas
                )
            if not plan.precondition(index, members):
                not_ready = [m.name for m in members if not m.ready]
                self._set_state(plan.role, RollState.ABORTED)
                self._events.warning(
                    "QuorumAtRisk",
                    f"Not restarting {plan.workload}-{index}: {not_ready} not ready",
                )
                raise QuorumAtRisk(
                    f"Members {not_ready} of {plan.workload} are not ready",
                    role=plan.role,
                    member=index,
                    remaining=order[position:],
                )

            self._set_state(plan.role, RollState.RESTARTING_MEMBER, index)
            self._events.info(
                "RestartingMember", f"Restarting {plan.workload}-{index}"
            )
            try:
                await self._platform.restart_member(identity, plan.workload, index)
                self._set_state(plan.role, RollState.VERIFYING_HEALTH, index)
                await self._verify_health(identity, plan, index, order[position + 1 :])
            except BaseException:
                self._set_state(plan.role, RollState.ABORTED, index)
                raise
            restarted.append(index)
            self._events.info(
                "MemberRestarted", f"{plan.workload}-{index} is ready"
            )

        self._set_state(plan.role, RollState.IDLE)
        return RollOutcome(plan.role, tuple(restarted))

    async def _order(
        self,
        identity: ClusterIdentity,
        plan: RollingUpdatePlan,
        members: Sequence[MemberState],
    ) -> list[int]:
        order = sorted(plan.members)
        leader = await self._leader_finder.find_leader(
            identity, plan.workload, members
        )
        if leader in order:
            order.remove(leader)
            order.append(leader)
        return order

    async def _verify_health(
        self,
        identity: ClusterIdentity,
        plan: RollingUpdatePlan,
        index: int,
        remaining: Sequence[int],
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        probe_failures = 0
        while True:
            try:
                member = await self._platform.read_member(
                    identity, plan.workload, index
                )
            except TransientPlatformError as err:
                probe_failures += 1
                if probe_failures > self._max_probe_failures:
                    self._stalled(plan, index, remaining, f"probe failed: {err}")
            else:
                probe_failures = 0
                if member.ready and member.revision == plan.target_revision:
                    return
            if loop.time() >= deadline:
                self._stalled(
                    plan,
                    index,
                    remaining,
                    f"not ready after {self._timeout:g} seconds",
                )
            await asyncio.sleep(self._poll_interval)

    def _stalled(
        self,
        plan: RollingUpdatePlan,
        index: int,
        remaining: Sequence[int],
        detail: str,
    ) -> None:
        message = f"{plan.workload}-{index} {detail}"
        self._events.warning("RollingUpdateStalled", message)
        raise RollingUpdateStalled(
            message, role=plan.role, member=index, remaining=remaining
        )

    def _set_state(
        self, role: str, state: RollState, member: int | None = None
    ) -> None:
        self.states[role] = state
        self.current_member[role] = member
