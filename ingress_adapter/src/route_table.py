from __future__ import annotations

import re
from typing import Any

ROUTE_TABLE_API_VERSION = "gateway.solo.io/v1"
ROUTE_TABLE_KIND = "RouteTable"
INGRESS_API_VERSION = "networking.k8s.io/v1"
INGRESS_KIND = "Ingress"
PROTOCOL_LABEL = "ingress.caperwhite.com/protocol"

_HOST_PATTERN = re.compile(
    r"\A(?P<star>\*\.)?(?P<host>(?:[-a-z0-9]+\.)*[-a-z0-9]+)\Z",
    re.IGNORECASE,
)
_PATH_MATCHERS = {
    "exact": "exact",
    "prefix": "prefix",
    "implementationspecific": "prefix",
}


class TranslationError(ValueError):
    """Raised when an Ingress cannot be expressed as a RouteTable."""


def build_route_table(ingress: dict[str, Any]) -> dict[str, Any]:
    """Translate an Ingress into the RouteTable that serves its rules.

    The result is a complete manifest suitable for server-side apply.  It
    shares the Ingress's name and namespace and carries an owner reference
    to the Ingress uid, so the RouteTable can later be told apart from one
    created by somebody else under the same name.

    Pure function: the same input always yields an equal output.
    """
    metadata = ingress.get("metadata") or {}
    spec = ingress.get("spec") or {}
    name = metadata.get("name")
    namespace = metadata.get("namespace")

    return {
        "apiVersion": ROUTE_TABLE_API_VERSION,
        "kind": ROUTE_TABLE_KIND,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {PROTOCOL_LABEL: "https" if spec.get("tls") else "http"},
            "ownerReferences": [
                {
                    "apiVersion": ingress.get("apiVersion") or INGRESS_API_VERSION,
                    "kind": ingress.get("kind") or INGRESS_KIND,
                    "name": name,
                    "uid": metadata.get("uid"),
                }
            ],
        },
        "spec": {"routes": _build_routes(spec, namespace)},
    }


def _build_routes(spec: dict[str, Any], namespace: str | None) -> list[dict[str, Any]]:
    routes: list[dict[str, Any]] = []
    for rule in spec.get("rules") or []:
        http = rule.get("http") or {}
        for path in http.get("paths") or []:
            routes.append(_build_route(rule, path, namespace))
    return routes


def _build_route(
    rule: dict[str, Any], path: dict[str, Any], namespace: str | None
) -> dict[str, Any]:
    matcher: dict[str, Any] = {}
    headers = host_matcher(rule.get("host"))
    if headers is not None:
        matcher["headers"] = headers
    matcher_type = path_matcher_type(path.get("pathType"))
    if path.get("path") is not None:
        matcher[matcher_type] = path["path"]

    service = (path.get("backend") or {}).get("service")
    if not service:
        raise TranslationError("Ingress path has no service backend")

    port = service.get("port") or {}
    return {
        "matchers": [matcher],
        "routeAction": {
            "single": {
                "kube": {
                    "ref": {
                        "name": service.get("name"),
                        "namespace": service.get("namespace") or namespace,
                    },
                    "port": port.get("number") or port.get("name"),
                }
            }
        },
    }


def host_matcher(host: str | None) -> list[dict[str, Any]] | None:
    """Return the ``Host`` header matcher list for a rule host, or ``None``.

    ``*.example.com`` becomes a regex matching exactly one label in front of
    the literal suffix.  Anything that is not a plain DNS name with at most a
    single leading wildcard label is rejected.
    """
    if host is None:
        return None

    match = _HOST_PATTERN.match(host)
    if match is None:
        raise TranslationError(f"Illegal host name '{host}'")

    suffix = match.group("host")
    if match.group("star"):
        escaped = suffix.replace(".", "\\.")
        return [{"name": "Host", "regex": True, "value": f"^[^.]+\\.{escaped}$"}]
    return [{"name": "Host", "value": suffix}]


def path_matcher_type(path_type: str | None) -> str:
    """Map an Ingress ``pathType`` onto the matcher key (``exact`` or ``prefix``)."""
    matcher = _PATH_MATCHERS.get((path_type or "").lower())
    if matcher is None:
        raise TranslationError(f"Unknown path type '{path_type}'")
    return matcher
