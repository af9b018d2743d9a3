"""One reconciliation cycle: build, read, diff, apply, report."""

from __future__ import annotations

__all__ = ("Outcome", "Reconciler")

from collections.abc import Callable
from typing import Any

import structlog

from strimzikafkaoperator import state
from strimzikafkaoperator.builder import PlatformDefaults, build
from strimzikafkaoperator.certprocessor import CredentialProvider
from strimzikafkaoperator.differ import Applier, plan_changes
from strimzikafkaoperator.errors import OperatorError
from strimzikafkaoperator.events import EventRecorder
from strimzikafkaoperator.model import (
    ClusterIdentity,
    ClusterSpec,
    check_storage_change,
    parse_cluster_spec,
)
from strimzikafkaoperator.objects import STORAGE_ANNOTATION, LiveObject, ObjectKey
from strimzikafkaoperator.platform import MemberState, Platform
from strimzikafkaoperator.reader import read_live, read_members
from strimzikafkaoperator.rolling import LeaderFinder, RollingUpdateCoordinator
from strimzikafkaoperator.status import Outcome, StatusReporter


class Reconciler:
    """Run reconciliation cycles for any cluster.

    A `Reconciler` holds no per-cycle state; the loop driver guarantees
    that at most one cycle per cluster runs at a time.

    Parameters
    ----------
    platform : `strimzikafkaoperator.platform.Platform`
        The orchestration platform.
    defaults : `strimzikafkaoperator.builder.PlatformDefaults`
        Images and heap policies for the builder.
    reporter : `strimzikafkaoperator.status.StatusReporter`, optional
        Status writer; one is created for ``platform`` if not given.
    credentials : `strimzikafkaoperator.certprocessor.CredentialProvider`, optional
        Source of the CA certificates; reads Secrets through ``platform``
        if not given.
    leader_finder : `strimzikafkaoperator.rolling.LeaderFinder`, optional
        Tells the coordinator which member to restart last.
    post_event : callable, optional
        Event poster with the signature of `kopf.event`.
    """

    def __init__(
        self,
        platform: Platform,
        defaults: PlatformDefaults,
        *,
        reporter: StatusReporter | None = None,
        credentials: CredentialProvider | None = None,
        leader_finder: LeaderFinder | None = None,
        post_event: Callable[..., None] | None = None,
        health_timeout: float | None = None,
        health_poll_interval: float | None = None,
        health_max_probe_failures: int | None = None,
        logger: Any | None = None,
    ) -> None:
        self._platform = platform
        self._defaults = defaults
        self.reporter = reporter or StatusReporter(platform)
        self._credentials = credentials or CredentialProvider(platform.read_secret)
        self._leader_finder = leader_finder
        self._post_event = post_event
        self._health_timeout = (
            state.health_timeout if health_timeout is None else health_timeout
        )
        self._health_poll_interval = (
            state.health_poll_interval
            if health_poll_interval is None
            else health_poll_interval
        )
        self._health_max_probe_failures = (
            state.health_max_probe_failures
            if health_max_probe_failures is None
            else health_max_probe_failures
        )
        self._logger = logger or structlog.get_logger(__name__)

    async def reconcile(
        self,
        identity: ClusterIdentity,
        superseded: Callable[[], bool] = lambda: False,
        blocked_generation: int | None = None,
    ) -> Outcome:
        """Run one cycle for ``identity`` and report its outcome.

        Never raises for a failure of the cycle; the failure is returned in
        the `Outcome`.

        Parameters
        ----------
        identity : `strimzikafkaoperator.model.ClusterIdentity`
            The cluster to reconcile.
        superseded : callable
            Returns `True` once a newer trigger is waiting; lets a rolling
            update stop between members.
        blocked_generation : `int`, optional
            A generation that failed with a non-retryable error. The cycle
            is skipped unless the resource has a newer generation.
        """
        logger = self._logger.bind(cluster=str(identity))
        try:
            body = await self._platform.get_cluster(identity)
        except OperatorError as err:
            logger.warning("Could not read the Kafka resource", error=str(err))
            return Outcome(identity, 0, succeeded=False, error=err)
        if body is None:
            logger.info("Kafka resource is gone")
            self.reporter.forget(identity)
            return Outcome(identity, 0, succeeded=True, deleted=True)

        generation = int(body["metadata"].get("generation", 0))
        observed_status = body.get("status") or {}
        logger = logger.bind(generation=generation)
        if blocked_generation is not None and generation <= blocked_generation:
            logger.debug("Skipping a generation that cannot succeed")
            return Outcome(identity, generation, succeeded=False, blocked=True)
        events = EventRecorder(body, post=self._post_event)
        try:
            outcome = await self._cycle(identity, body, events, superseded, logger)
        except OperatorError as err:
            logger.warning(
                "Reconciliation failed",
                reason=err.reason,
                error=str(err),
                retryable=err.retryable,
            )
            events.warning(err.reason, str(err))
            outcome = Outcome(identity, generation, succeeded=False, error=err)
        except Exception as err:
            logger.exception("Unexpected error during reconciliation")
            events.warning("ReconciliationFailed", str(err))
            outcome = Outcome(identity, generation, succeeded=False, error=err)

        outcome = Outcome(
            identity=outcome.identity,
            generation=generation,
            succeeded=outcome.succeeded,
            error=outcome.error,
            paused=outcome.paused,
            in_progress=outcome.in_progress,
            observed_status=observed_status,
        )
        try:
            await self.reporter.report(outcome)
        except OperatorError as err:
            logger.warning("Could not write status", error=str(err))
        return outcome

    async def _cycle(
        self,
        identity: ClusterIdentity,
        body: dict[str, Any],
        events: EventRecorder,
        superseded: Callable[[], bool],
        logger: Any,
    ) -> Outcome:
        spec = parse_cluster_spec(body, logger=logger)
        if spec.paused:
            logger.info("Reconciliation is paused")
            return Outcome(identity, spec.generation, succeeded=False, paused=True)

        credentials = await self._credentials.fetch(identity)
        desired = build(spec, self._defaults, credentials)
        live = await read_live(self._platform, identity)
        self._check_storage(spec, live)
        members = await self._read_members(identity, desired, live)

        plan = plan_changes(identity, desired, live, members)
        if plan.is_noop:
            logger.debug("Cluster is up to date")
            return Outcome(identity, spec.generation, succeeded=True)

        logger.info(
            "Applying changes",
            changes=[f"{c.action} {c.key}" for c in plan.changes if c.action != "noop"],
            rolling=[p.role for p in plan.rolling],
        )
        coordinator = RollingUpdateCoordinator(
            self._platform,
            events,
            timeout=self._health_timeout,
            poll_interval=self._health_poll_interval,
            max_probe_failures=self._health_max_probe_failures,
            leader_finder=self._leader_finder,
            logger=logger,
        )
        applier = Applier(self._platform, coordinator, events, logger=logger)
        result = await applier.apply(plan, superseded)
        if result.abandoned:
            logger.info("Rolling update superseded", abandoned=result.abandoned)
            return Outcome(
                identity, spec.generation, succeeded=False, in_progress=True
            )
        return Outcome(identity, spec.generation, succeeded=True)

    @staticmethod
    def _check_storage(
        spec: ClusterSpec, live: dict[ObjectKey, LiveObject]
    ) -> None:
        for role, role_spec in (("kafka", spec.kafka), ("zookeeper", spec.zookeeper)):
            workload = live.get(
                ObjectKey("StatefulSet", f"{spec.identity.name}-{role}")
            )
            if workload is None:
                continue
            check_storage_change(
                workload.annotations.get(STORAGE_ANNOTATION), role_spec.storage, role
            )

    async def _read_members(
        self,
        identity: ClusterIdentity,
        desired: tuple,
        live: dict[ObjectKey, LiveObject],
    ) -> dict[str, list[MemberState]]:
        members = {}
        for obj in desired:
            if obj.kind != "StatefulSet" or obj.key not in live:
                continue
            members[obj.name] = await read_members(
                self._platform, identity, obj.name, obj.replicas
            )
        return members
