"""Report the outcome of reconciliation cycles on the ``Kafka`` resource."""

from __future__ import annotations

__all__ = ("Outcome", "StatusReporter")

import datetime
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from strimzikafkaoperator.errors import ConflictError, OperatorError
from strimzikafkaoperator.model import ClusterIdentity
from strimzikafkaoperator.platform import Platform


@dataclass(frozen=True)
class Outcome:
    """The result of one reconciliation cycle.

    Parameters
    ----------
    identity : `strimzikafkaoperator.model.ClusterIdentity`
        The cluster.
    generation : `int`
        The ``metadata.generation`` the cycle reconciled.
    succeeded : `bool`
        Whether the live state now matches the desired state.
    error : `Exception`, optional
        The error that failed the cycle.
    paused : `bool`
        Whether reconciliation is paused by annotation.
    in_progress : `bool`
        Whether a rolling update was superseded before it completed.
    deleted : `bool`
        Whether the ``Kafka`` resource no longer exists.
    blocked : `bool`
        Whether the cycle was skipped because the generation already failed
        with a non-retryable error.
    observed_status : `dict`
        The resource's ``status`` when the cycle started.
    """

    identity: ClusterIdentity
    generation: int
    succeeded: bool
    error: Exception | None = None
    paused: bool = False
    in_progress: bool = False
    deleted: bool = False
    blocked: bool = False
    observed_status: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def retryable(self) -> bool:
        if self.error is None:
            return True
        return getattr(self.error, "retryable", True)

    @property
    def conflict(self) -> bool:
        if isinstance(self.error, ConflictError):
            return True
        return bool(getattr(self.error, "conflict_only", False))


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )


class StatusReporter:
    """Write `Outcome`s to the resource status, never regressing.

    The reporter remembers the highest ``lastSuccessfulGeneration`` written
    for each cluster and drops outcomes for older generations, so a stale
    cycle that completes late cannot overwrite newer status.
    """

    def __init__(
        self,
        platform: Platform,
        clock: Callable[[], str] = _now,
        logger: Any | None = None,
    ) -> None:
        self._platform = platform
        self._clock = clock
        self._logger = logger or structlog.get_logger(__name__)
        self._fences: dict[ClusterIdentity, int] = {}

    def fence(self, identity: ClusterIdentity) -> int:
        return self._fences.get(identity, 0)

    def forget(self, identity: ClusterIdentity) -> None:
        self._fences.pop(identity, None)

    async def report(self, outcome: Outcome) -> dict[str, Any] | None:
        """Write the status for ``outcome``.

        Returns
        -------
        status : `dict` or `None`
            The status written, or `None` if the outcome was fenced off or
            the cluster no longer exists.
        """
        if outcome.deleted or outcome.blocked:
            return None
        logger = self._logger.bind(
            cluster=str(outcome.identity), generation=outcome.generation
        )
        previous = outcome.observed_status or {}
        fence = max(
            self.fence(outcome.identity),
            int(previous.get("lastSuccessfulGeneration") or 0),
        )
        if outcome.generation < fence:
            logger.info("Dropping status of a stale cycle", fence=fence)
            self._fences[outcome.identity] = fence
            return None

        if outcome.succeeded:
            fence = outcome.generation
        status = {
            "observedGeneration": outcome.generation,
            "conditions": self._conditions(outcome, previous),
            "lastError": None,
        }
        if fence:
            status["lastSuccessfulGeneration"] = fence
        if outcome.error is not None:
            status["lastError"] = str(outcome.error)

        await self._platform.patch_cluster_status(outcome.identity, status)
        self._fences[outcome.identity] = fence
        logger.debug("Wrote status", succeeded=outcome.succeeded)
        return status

    def _conditions(
        self, outcome: Outcome, previous: dict[str, Any]
    ) -> list[dict[str, Any]]:
        if outcome.paused:
            ready = ("False", "ReconciliationPaused", "Reconciliation is paused")
        elif outcome.succeeded:
            ready = ("True", "Reconciled", "The cluster matches its specification")
        elif outcome.in_progress:
            ready = (
                "False",
                "RollingUpdateInProgress",
                "A rolling update was superseded by a newer change",
            )
        else:
            ready = ("False", _reason(outcome.error), str(outcome.error))

        if outcome.error is not None:
            error = ("True", _reason(outcome.error), str(outcome.error))
        else:
            error = ("False", "NoError", "")

        paused = (
            ("True", "ReconciliationPaused", "Reconciliation is paused")
            if outcome.paused
            else ("False", "Active", "")
        )

        previous_conditions = {
            c.get("type"): c for c in previous.get("conditions") or []
        }
        now = self._clock()
        conditions = []
        for condition_type, (value, reason, message) in (
            ("Ready", ready),
            ("ReconciliationPaused", paused),
            ("Error", error),
        ):
            before = previous_conditions.get(condition_type, {})
            if before.get("status") == value and before.get("lastTransitionTime"):
                transition = before["lastTransitionTime"]
            else:
                transition = now
            conditions.append(
                {
                    "type": condition_type,
                    "status": value,
                    "reason": reason,
                    "message": message,
                    "lastTransitionTime": transition,
                }
            )
        return conditions


def _reason(error: Exception | None) -> str:
    if isinstance(error, OperatorError):
        return error.reason
    return "ReconciliationFailed"
