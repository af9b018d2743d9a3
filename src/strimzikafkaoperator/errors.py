"""Error taxonomy of the reconciliation engine.

Every error carries whether a later attempt can succeed without a change
to the ``Kafka`` resource (``retryable``), and converts to the matching
kopf exception for code that runs directly inside a kopf handler.
"""

from __future__ import annotations

__all__ = (
    "ApplyFailed",
    "ConflictError",
    "InvalidSpec",
    "OperatorError",
    "PermissionDeniedError",
    "QuorumAtRisk",
    "RollingUpdateStalled",
    "TransientPlatformError",
    "TransientReadError",
)

from collections.abc import Sequence

import kopf


class OperatorError(Exception):
    """Base class of all engine errors.

    Parameters
    ----------
    message : `str`
        Human-readable description, surfaced in the resource status.
    retryable : `bool`
        Whether the loop driver should retry without a new spec generation.
    delay : `int`
        Suggested retry delay in seconds for kopf.
    """

    reason = "ReconciliationFailed"

    def __init__(
        self, message: str, *, retryable: bool = True, delay: int = 30
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.delay = delay

    def as_kopf_error(self) -> kopf.TemporaryError | kopf.PermanentError:
        """Convert to the appropriate kopf exception type."""
        if self.retryable:
            return kopf.TemporaryError(str(self), delay=self.delay)
        return kopf.PermanentError(str(self))


class InvalidSpec(OperatorError):
    """The cluster specification, or a value derived from it, is invalid.

    Requires a user correction; never retried.
    """

    reason = "InvalidSpec"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        if field:
            message = f"Invalid value for {field}: {message}"
        super().__init__(message, retryable=False)
        self.field = field


class TransientPlatformError(OperatorError):
    """The platform API is temporarily unavailable."""

    reason = "TransientPlatformError"

    def __init__(self, message: str, *, delay: int = 10) -> None:
        super().__init__(message, retryable=True, delay=delay)


class TransientReadError(TransientPlatformError):
    """Listing live state failed for a retryable reason."""

    reason = "TransientReadError"


class PermissionDeniedError(OperatorError):
    """The operator's service account may not perform an operation."""

    reason = "PermissionDenied"

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class ConflictError(OperatorError):
    """An optimistic-concurrency check failed.

    The cycle is re-run immediately from a fresh read.
    """

    reason = "Conflict"

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True, delay=1)


class RollingUpdateStalled(OperatorError):
    """A restarted member did not become healthy within its bounds.

    Members after the stalled one are left untouched.
    """

    reason = "RollingUpdateStalled"

    def __init__(
        self,
        message: str,
        *,
        role: str,
        member: int,
        remaining: Sequence[int] = (),
    ) -> None:
        super().__init__(message, retryable=True, delay=60)
        self.role = role
        self.member = member
        self.remaining = tuple(remaining)


class QuorumAtRisk(RollingUpdateStalled):
    """Restarting the next member would leave two members not ready."""

    reason = "QuorumAtRisk"


class ApplyFailed(OperatorError):
    """One or more objects could not be applied in a cycle.

    Parameters
    ----------
    failures : `dict`
        Mapping of ``"Kind/name"`` to the error raised applying it.
    """

    reason = "ApplyFailed"

    def __init__(self, failures: dict[str, Exception]) -> None:
        names = ", ".join(sorted(failures))
        retryable = all(
            getattr(err, "retryable", True) for err in failures.values()
        )
        super().__init__(
            f"Failed to apply {len(failures)} object(s): {names}",
            retryable=retryable,
        )
        self.failures = failures

    @property
    def conflict_only(self) -> bool:
        """Whether every failure was an optimistic-concurrency conflict."""
        return all(isinstance(e, ConflictError) for e in self.failures.values())
