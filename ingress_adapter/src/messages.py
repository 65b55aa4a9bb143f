from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class WatchedKind:
    """Identifies one resource kind the controller lists and watches."""

    kind: str
    api_version: str
    plural: str

    def matches(self, resource: dict[str, Any]) -> bool:
        return (
            resource.get("kind") == self.kind
            and resource.get("apiVersion") == self.api_version
        )


INGRESS_CLASS_KIND = WatchedKind(
    kind="IngressClass", api_version="networking.k8s.io/v1", plural="ingressclasses"
)
INGRESS_KIND = WatchedKind(kind="Ingress", api_version="networking.k8s.io/v1", plural="ingresses")


@dataclass(frozen=True)
class ResourceEvent:
    """A single watch event forwarded by the observer of ``kind``."""

    kind: WatchedKind
    type: str
    resource: dict[str, Any]


@dataclass(frozen=True)
class ResetSignal:
    """The observer of ``kind`` lost its watch cursor; the kind must be re-listed."""

    kind: WatchedKind


@dataclass(frozen=True)
class StopSignal:
    """Requests an orderly exit of the consumption loop."""


@dataclass(frozen=True)
class ObserverFailure:
    """The observer of ``kind`` gave up after exhausting its retry policy."""

    kind: WatchedKind
    error: BaseException


Message = Union[ResourceEvent, ResetSignal, StopSignal, ObserverFailure]


def resource_uid(resource: dict[str, Any]) -> str | None:
    return (resource.get("metadata") or {}).get("uid")


def resource_version(resource: dict[str, Any]) -> str | None:
    return (resource.get("metadata") or {}).get("resourceVersion")
