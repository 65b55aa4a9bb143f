from __future__ import annotations

import json
import logging
import os
import queue
import threading
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi, NetworkingV1Api
from urllib3.exceptions import HTTPError

from ingress_adapter.src.kube import RouteTableClient, is_owned_by
from ingress_adapter.src.messages import (
    INGRESS_CLASS_KIND,
    INGRESS_KIND,
    Message,
    ObserverFailure,
    ResetSignal,
    ResourceEvent,
    StopSignal,
    WatchedKind,
    resource_uid,
)
from ingress_adapter.src.metrics import METRICS
from ingress_adapter.src.observer import ResourceObserver
from ingress_adapter.src.retry import RetryPolicy
from ingress_adapter.src.route_table import TranslationError, build_route_table

CONTROLLER_NAME = "caperwhite.com/gloo-ingress-adapter"
FIELD_MANAGER = "gloo-ingress-adapter"

_RESOURCE_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


class ProtocolError(RuntimeError):
    """Raised when the event stream breaks its contract (error events, foreign kinds, unknown messages)."""


class ObserverError(RuntimeError):
    """Raised when one of the resource observers gave up."""


def _name(resource: dict[str, Any]) -> str | None:
    return (resource.get("metadata") or {}).get("name")


def _namespace(resource: dict[str, Any]) -> str | None:
    return (resource.get("metadata") or {}).get("namespace")


def _ingress_class_name(ingress: dict[str, Any]) -> str | None:
    return (ingress.get("spec") or {}).get("ingressClassName")


class IngressController:
    """Reconciles Ingresses of delegated IngressClasses into Gloo RouteTables.

    Two :class:`ResourceObserver` threads feed one queue; this object is its
    only consumer, so the caches and the set of active classes are mutated
    from a single thread and need no locking.

    Key internal state:
        ``_ingress_classes`` / ``_ingresses``
            Last seen copy of every resource, keyed by uid.
        ``_active_classes``
            Names of the IngressClasses whose ``spec.controller`` equals
            ``controller_name``.  An Ingress gets a RouteTable iff its
            ``ingressClassName`` is in this set.

    The activation decision is recomputed from the caches on every event,
    so class and Ingress events may arrive in any relative order and still
    converge on the same RouteTables.
    """

    def __init__(
        self,
        route_tables: RouteTableClient,
        ingress_class_observer: ResourceObserver,
        ingress_observer: ResourceObserver,
        events: queue.Queue[Message],
        controller_name: str = CONTROLLER_NAME,
        translate: Callable[[dict[str, Any]], dict[str, Any]] = build_route_table,
        logger: logging.Logger | None = None,
    ) -> None:
        self.route_tables = route_tables
        self.events = events
        self.controller_name = controller_name
        self.translate = translate
        self.logger = logger or logging.getLogger(__name__)
        self._observers: dict[WatchedKind, ResourceObserver] = {
            INGRESS_CLASS_KIND: ingress_class_observer,
            INGRESS_KIND: ingress_observer,
        }
        self._ingress_classes: dict[str, dict[str, Any]] = {}
        self._ingresses: dict[str, dict[str, Any]] = {}
        self._active_classes: frozenset[str] = frozenset()
        self._stop_requested = threading.Event()
        self.ready = threading.Event()

    @property
    def active_classes(self) -> frozenset[str]:
        return self._active_classes

    def stop(self) -> None:
        """Ask the consumption loop to exit.  Never blocks; callable from any thread.

        Messages still queued behind the one in progress are dropped.
        """
        self._stop_requested.set()
        # wakes a loop blocked on an empty queue
        self.events.put_nowait(StopSignal())

    def run(self) -> None:
        """Resync, start both observers, then consume events until stopped.

        Fatal conditions (protocol violations, observer failures, a resync
        that could not list) propagate to the caller.  Both observers are
        stopped on the way out regardless of how the loop ended.
        """
        self.logger.info("Running ingress adapter as %s", self.controller_name)
        try:
            if not self.resync(INGRESS_CLASS_KIND, INGRESS_KIND):
                return
            for observer in self._observers.values():
                observer.start()
            self.ready.set()

            while True:
                message = self.events.get()
                if self._stop_requested.is_set():
                    self.logger.info("Stop requested")
                    break
                if not self.handle_message(message):
                    break
        finally:
            self.ready.clear()
            self._stop_observers()
        self.logger.info("Ingress adapter stopped")

    def _stop_observers(self) -> None:
        for kind, observer in self._observers.items():
            try:
                observer.stop()
            except Exception:
                self.logger.exception("Failed to stop %s observer", kind.kind)

    def handle_message(self, message: Message) -> bool:
        """Process one queue message.  Returns False when the loop should exit."""
        if isinstance(message, ResourceEvent):
            self.handle_event(message)
        elif isinstance(message, ResetSignal):
            self.logger.info("Resyncing %s after watch cursor expiry", message.kind.plural)
            self.resync(message.kind)
        elif isinstance(message, StopSignal):
            self.logger.info("Stop requested")
            return False
        elif isinstance(message, ObserverFailure):
            raise ObserverError(
                f"Observer for {message.kind.plural} failed: {message.error}"
            ) from message.error
        else:
            raise ProtocolError(f"Unexpected message on event queue: {message!r}")
        return True

    def handle_event(self, event: ResourceEvent) -> None:
        resource = event.resource
        if event.type == "ERROR":
            raise ProtocolError(
                f"Received error event on the {event.kind.kind} stream: {json.dumps(resource)}"
            )
        if event.type not in _RESOURCE_EVENT_TYPES:
            raise ProtocolError(f"Unknown event type '{event.type}' on the {event.kind.kind} stream")
        if not event.kind.matches(resource):
            raise ProtocolError(
                f"Received {resource.get('apiVersion')} {resource.get('kind')} "
                f"on the {event.kind.api_version} {event.kind.kind} stream"
            )

        self.logger.info(
            "Handling event: %s %s %s", event.kind.kind, _name(resource), event.type.lower()
        )
        METRICS.events_total.labels(kind=event.kind.kind, type=event.type).inc()

        if event.kind == INGRESS_CLASS_KIND:
            self._handle_ingress_class_event(event.type, resource)
        else:
            self._handle_ingress_event(event.type, resource)

    def _handle_ingress_class_event(self, event_type: str, ingress_class: dict[str, Any]) -> None:
        uid = resource_uid(ingress_class)
        if event_type == "DELETED":
            self._ingress_classes.pop(uid, None)
        else:
            self._ingress_classes[uid] = ingress_class

        previous = self._active_classes
        self._recompute_active_classes()
        changed = previous ^ self._active_classes
        if not changed:
            return

        for ingress in list(self._ingresses.values()):
            if _ingress_class_name(ingress) in changed:
                self.reconcile_ingress(ingress)

    def _handle_ingress_event(self, event_type: str, ingress: dict[str, Any]) -> None:
        uid = resource_uid(ingress)
        if event_type == "DELETED":
            self._ingresses.pop(uid, None)
            self.logger.info(
                "Removed ingress %s (namespace: %s)", _name(ingress), _namespace(ingress)
            )
            self.reconcile_ingress(ingress, present=False)
        else:
            self._ingresses[uid] = ingress
            self.reconcile_ingress(ingress)

    def _recompute_active_classes(self) -> None:
        active = frozenset(
            _name(ingress_class)
            for ingress_class in self._ingress_classes.values()
            if (ingress_class.get("spec") or {}).get("controller") == self.controller_name
        )
        if active != self._active_classes:
            if active:
                self.logger.info("Now handling ingress classes %s", ", ".join(sorted(active)))
            else:
                self.logger.warning("Now handling no ingress classes")
        self._active_classes = active
        METRICS.active_ingress_classes.set(len(active))

    def resync(self, *kinds: WatchedKind) -> bool:
        """Rebuild the caches of ``kinds`` from fresh listings and reconcile every Ingress.

        Ingresses that vanished from a fresh listing are deactivated, since
        their DELETED events may have been lost with the expired cursor.
        Returns False when a stop request cut a failing listing short.
        """
        for kind in kinds:
            try:
                items, _ = self._observers[kind].list(interrupt=self._stop_requested)
            except Exception:
                if not self._stop_requested.is_set():
                    raise
                self.logger.info("Listing %s abandoned on stop request", kind.plural)
                return False
            METRICS.resyncs_total.labels(kind=kind.kind).inc()
            snapshot = {resource_uid(item): item for item in items}
            if kind == INGRESS_CLASS_KIND:
                self._ingress_classes = snapshot
                self._recompute_active_classes()
            else:
                vanished = [
                    ingress for uid, ingress in self._ingresses.items() if uid not in snapshot
                ]
                self._ingresses = snapshot
                for ingress in vanished:
                    self.reconcile_ingress(ingress, present=False)

        for ingress in list(self._ingresses.values()):
            self.reconcile_ingress(ingress)
        return True

    def reconcile_ingress(self, ingress: dict[str, Any], *, present: bool = True) -> None:
        """Create, update or delete the RouteTable of one Ingress.

        Translation and API write failures are logged and counted; the
        Ingress keeps whatever RouteTable it had until a later event or
        resync tries again.
        """
        name = _name(ingress)
        namespace = _namespace(ingress)
        class_name = _ingress_class_name(ingress)
        try:
            if present and class_name in self._active_classes:
                self._activate(ingress)
            else:
                if present:
                    self.logger.info(
                        "Ignoring ingress %s (namespace: %s, ingressClass: %s)",
                        name,
                        namespace,
                        class_name or "(none)",
                    )
                self._deactivate(ingress)
        except TranslationError as exc:
            METRICS.reconcile_errors_total.labels(reason="translation").inc()
            self.logger.error(
                "Cannot translate ingress %s (namespace: %s): %s", name, namespace, exc
            )
        except (ApiException, HTTPError):
            METRICS.reconcile_errors_total.labels(reason="api").inc()
            self.logger.exception(
                "Failed to reconcile route table for ingress %s (namespace: %s)", name, namespace
            )

    def _activate(self, ingress: dict[str, Any]) -> None:
        route_table = self.translate(ingress)
        self.logger.info(
            "Updating route table for ingress '%s' (namespace: '%s')",
            _name(ingress),
            _namespace(ingress),
        )
        self.logger.debug("Route table: %s", json.dumps(route_table, sort_keys=True))
        self.route_tables.apply(route_table)
        METRICS.route_table_applies_total.inc()

    def _deactivate(self, ingress: dict[str, Any]) -> None:
        name = _name(ingress)
        namespace = _namespace(ingress)
        existing = self.route_tables.get(name, namespace)
        if existing is None:
            return
        if not is_owned_by(existing, resource_uid(ingress)):
            self.logger.warning(
                "Route table %s (namespace: %s) is not owned by ingress uid %s; leaving it alone",
                name,
                namespace,
                resource_uid(ingress),
            )
            return
        if self.route_tables.delete(name, namespace):
            METRICS.route_table_deletes_total.inc()
            self.logger.info("Deleted route table %s (namespace: %s)", name, namespace)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def build_controller_from_env(
    networking_api: NetworkingV1Api, custom_api: CustomObjectsApi
) -> IngressController:
    """Construct an :class:`IngressController` and its observers from environment variables.

    Environment variables (with defaults):
        ``CONTROLLER_NAME``: IngressClass controller identity (``caperwhite.com/gloo-ingress-adapter``).
        ``FIELD_MANAGER``: Server-side apply field manager (``gloo-ingress-adapter``).
        ``WATCH_TIMEOUT_SECONDS``: Server-side timeout of each watch request (``60``).
        ``WATCH_RETRY_ATTEMPTS``: Attempts before an observer gives up (``5``).
        ``WATCH_RETRY_BASE_DELAY_SECONDS``: First backoff delay, doubled per attempt (``1``).
    """
    controller_name = os.getenv("CONTROLLER_NAME", CONTROLLER_NAME).strip()
    if not controller_name:
        raise ValueError("CONTROLLER_NAME must be a non-empty string")

    field_manager = os.getenv("FIELD_MANAGER", FIELD_MANAGER).strip()
    if not field_manager:
        raise ValueError("FIELD_MANAGER must be a non-empty string")

    watch_timeout_seconds = env_int("WATCH_TIMEOUT_SECONDS", 60, minimum=1)
    retry_policy = RetryPolicy(
        max_attempts=env_int("WATCH_RETRY_ATTEMPTS", 5, minimum=1),
        base_delay=env_float("WATCH_RETRY_BASE_DELAY_SECONDS", 1.0, minimum=0.0),
    )

    events: queue.Queue[Message] = queue.Queue()
    return IngressController(
        route_tables=RouteTableClient(custom_api=custom_api, field_manager=field_manager),
        ingress_class_observer=ResourceObserver(
            kind=INGRESS_CLASS_KIND,
            list_func=networking_api.list_ingress_class,
            sink=events,
            retry_policy=retry_policy,
            watch_timeout_seconds=watch_timeout_seconds,
        ),
        ingress_observer=ResourceObserver(
            kind=INGRESS_KIND,
            list_func=networking_api.list_ingress_for_all_namespaces,
            sink=events,
            retry_policy=retry_policy,
            watch_timeout_seconds=watch_timeout_seconds,
        ),
        events=events,
        controller_name=controller_name,
    )
