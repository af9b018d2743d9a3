"""Operational events posted on the ``Kafka`` resource."""

from __future__ import annotations

__all__ = ("EventRecorder",)

from collections.abc import Callable
from typing import Any

import kopf
import structlog


class EventRecorder:
    """Post Kubernetes events about one cluster and mirror them to the log.

    Parameters
    ----------
    body : `dict`
        The ``Kafka`` resource the events are attached to.
    post : callable, optional
        Event poster with the signature of `kopf.event`.
    """

    def __init__(
        self,
        body: dict[str, Any],
        post: Callable[..., None] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._body = body
        self._post = post or kopf.event
        metadata = body.get("metadata", {})
        self._logger = (logger or structlog.get_logger(__name__)).bind(
            cluster=f"{metadata.get('namespace')}/{metadata.get('name')}"
        )

    def info(self, reason: str, message: str) -> None:
        self._logger.info(message, reason=reason)
        self._post(self._body, type="Normal", reason=reason, message=message)

    def warning(self, reason: str, message: str) -> None:
        self._logger.warning(message, reason=reason)
        self._post(self._body, type="Warning", reason=reason, message=message)
