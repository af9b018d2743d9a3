"""Desired and live object representations, and content fingerprints."""

from __future__ import annotations

__all__ = (
    "DesiredObject",
    "LiveObject",
    "ObjectKey",
    "fingerprint",
    "make_desired",
)

import copy
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, NamedTuple

KEY_PREFIX = "strimzi.io"
FINGERPRINT_ANNOTATION = f"{KEY_PREFIX}/fingerprint"
DISRUPTIVE_ANNOTATION = f"{KEY_PREFIX}/disruptive-fingerprint"
STORAGE_ANNOTATION = f"{KEY_PREFIX}/storage"
CLUSTER_LABEL = f"{KEY_PREFIX}/cluster"
NAME_LABEL = f"{KEY_PREFIX}/name"
KIND_LABEL = f"{KEY_PREFIX}/kind"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "strimzi-kafka-operator"
COMPONENT_LABEL = "app.kubernetes.io/name"

# Fields whose change requires restarting the members running a workload.
DISRUPTIVE_PATHS = {
    "StatefulSet": (("spec", "template"), ("spec", "volumeClaimTemplates")),
}


class ObjectKey(NamedTuple):
    """The stable identity of a managed object within a namespace."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class DesiredObject:
    """An object the engine wants to exist, with its fingerprints.

    ``body`` must not be mutated after construction; use `make_desired`.
    """

    kind: str
    name: str
    role: str
    body: dict[str, Any] = field(compare=False, repr=False)
    fingerprint: str = ""
    disruptive_fingerprint: str = ""

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.name)

    @property
    def replicas(self) -> int | None:
        return self.body.get("spec", {}).get("replicas")


@dataclass(frozen=True)
class LiveObject:
    """An object as read back from the platform."""

    kind: str
    name: str
    revision: str
    body: dict[str, Any] = field(compare=False, repr=False)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> LiveObject:
        metadata = body["metadata"]
        return cls(
            kind=body["kind"],
            name=metadata["name"],
            revision=str(metadata.get("resourceVersion", "")),
            body=body,
        )

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.name)

    @property
    def labels(self) -> dict[str, str]:
        return self.body["metadata"].get("labels") or {}

    @property
    def annotations(self) -> dict[str, str]:
        return self.body["metadata"].get("annotations") or {}

    @property
    def fingerprint(self) -> str | None:
        return self.annotations.get(FINGERPRINT_ANNOTATION)

    @property
    def disruptive_fingerprint(self) -> str | None:
        return self.annotations.get(DISRUPTIVE_ANNOTATION)

    @property
    def replicas(self) -> int | None:
        return (self.body.get("spec") or {}).get("replicas")


def fingerprint(data: Any) -> str:
    """Hash a JSON-compatible value independently of key order."""
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:32]


def make_desired(body: dict[str, Any], *, role: str) -> DesiredObject:
    """Fingerprint an object body and wrap it as a `DesiredObject`.

    The disruptive fingerprint covers only the fields in `DISRUPTIVE_PATHS`
    for the object's kind. Workloads also stamp it onto their pod template
    so that each member records the revision it was started from.
    """
    body = copy.deepcopy(body)
    kind = body["kind"]
    metadata = body["metadata"]

    disruptive = {
        ".".join(path): _lookup(body, path)
        for path in DISRUPTIVE_PATHS.get(kind, ())
    }
    disruptive_fingerprint = fingerprint(disruptive) if disruptive else ""
    if kind == "StatefulSet":
        template_meta = body["spec"]["template"].setdefault("metadata", {})
        template_meta.setdefault("annotations", {})[DISRUPTIVE_ANNOTATION] = (
            disruptive_fingerprint
        )

    annotations = metadata.setdefault("annotations", {})
    annotations.pop(FINGERPRINT_ANNOTATION, None)
    annotations.pop(DISRUPTIVE_ANNOTATION, None)
    content_fingerprint = fingerprint(body)
    annotations[FINGERPRINT_ANNOTATION] = content_fingerprint
    if disruptive_fingerprint:
        annotations[DISRUPTIVE_ANNOTATION] = disruptive_fingerprint

    return DesiredObject(
        kind=kind,
        name=metadata["name"],
        role=role,
        body=body,
        fingerprint=content_fingerprint,
        disruptive_fingerprint=disruptive_fingerprint,
    )


def _lookup(body: dict[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = body
    for part in path:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value
