from __future__ import annotations

import functools
import json
import logging
import queue
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from ingress_adapter.src.messages import (
    Message,
    ObserverFailure,
    ResetSignal,
    ResourceEvent,
    WatchedKind,
    resource_version,
)
from ingress_adapter.src.metrics import METRICS
from ingress_adapter.src.retry import RetryExhaustedError, RetryPolicy, call_with_retry

LOGGER = logging.getLogger(__name__)

HTTP_GONE = 410


class LifecycleError(RuntimeError):
    """Raised when an observer is started while it is already running."""


class _ObserverState:
    """Watch cursor, stop flag and live ``Watch`` handle behind a single lock.

    Every ``start()`` opens a new generation; the watch thread of an older
    generation sees itself as inactive even if the observer was restarted
    before that thread noticed the stop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._cursor: str | None = None
        self._stopped = True
        self._generation = 0
        self._watcher: watch.Watch | None = None

    def begin(self) -> int:
        with self._lock:
            if not self._stopped:
                raise LifecycleError("Observer is already running")
            self._stopped = False
            self._generation += 1
            return self._generation

    def end(self) -> watch.Watch | None:
        with self._lock:
            self._stopped = True
            watcher, self._watcher = self._watcher, None
            self._changed.notify_all()
            return watcher

    def _active(self, generation: int) -> bool:
        return not self._stopped and self._generation == generation

    def is_active(self, generation: int) -> bool:
        with self._lock:
            return self._active(generation)

    @property
    def cursor(self) -> str | None:
        with self._lock:
            return self._cursor

    def set_cursor(self, cursor: str | None) -> None:
        with self._lock:
            self._cursor = cursor
            self._changed.notify_all()

    def expire_cursor(self, cursor: str) -> bool:
        """Forget ``cursor``.  Returns False if it was already replaced."""
        with self._lock:
            if self._cursor != cursor:
                return False
            self._cursor = None
            return True

    def wait_for_cursor(self, generation: int) -> str | None:
        """Block until a cursor is available; ``None`` once the generation ended."""
        with self._lock:
            self._changed.wait_for(
                lambda: not self._active(generation) or self._cursor is not None
            )
            return self._cursor if self._active(generation) else None

    def wait_stopped(self, generation: int, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if stopped meanwhile."""
        with self._lock:
            return self._changed.wait_for(lambda: not self._active(generation), timeout)

    def attach(self, generation: int, watcher: watch.Watch) -> bool:
        with self._lock:
            if not self._active(generation):
                return False
            self._watcher = watcher
            return True

    def detach(self, watcher: watch.Watch) -> None:
        with self._lock:
            if self._watcher is watcher:
                self._watcher = None


class ResourceObserver:
    """Turns the list/watch API of one resource kind into a resumable event stream.

    ``list()`` fetches a snapshot and installs its resourceVersion as the
    watch cursor.  ``start()`` launches a daemon thread which watches from
    that cursor and forwards every event to ``sink`` as a
    :class:`ResourceEvent`, advancing the cursor as it goes.

    Failure handling inside the watch thread:

    * A stream that ends without a stop request is reopened at the cursor.
    * ``410 Gone`` clears the cursor and enqueues a single
      :class:`ResetSignal`; the thread then waits for the consumer to call
      ``list()`` again before resuming.
    * Any other ``ERROR`` event delivered by the stream is forwarded as a
      ``ResourceEvent`` of type ``ERROR`` and the thread exits; the consumer
      treats it as fatal.
    * Failures to open or read the stream are retried according to
      ``retry_policy``.  Once the policy is exhausted an
      :class:`ObserverFailure` is enqueued and the thread exits.
    """

    def __init__(
        self,
        kind: WatchedKind,
        list_func: Callable[..., Any],
        sink: queue.Queue[Message],
        retry_policy: RetryPolicy | None = None,
        watch_timeout_seconds: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_func = list_func
        self.sink = sink
        self.retry_policy = retry_policy or RetryPolicy()
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or LOGGER
        self._state = _ObserverState()
        self._thread: threading.Thread | None = None

    @property
    def cursor(self) -> str | None:
        return self._state.cursor

    def list(
        self, interrupt: threading.Event | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List every resource of this kind and reset the watch cursor to the snapshot.

        Backoff between failed attempts ends early once ``interrupt`` is set;
        the last error is then re-raised.
        """
        items, cursor = call_with_retry(
            self._list_once,
            self.retry_policy,
            description=f"Listing {self.kind.plural}",
            sleep=interrupt.wait if interrupt is not None else _sleep,
            on_retry=self._count_error,
        )
        self._state.set_cursor(cursor)
        self.logger.info(
            "Listed %d %s at resourceVersion %s", len(items), self.kind.plural, cursor
        )
        return items, cursor

    def _list_once(self) -> tuple[list[dict[str, Any]], str | None]:
        response = self.list_func(_preload_content=False)
        payload = json.loads(response.data)
        items = [self._stamp(item) for item in payload.get("items") or []]
        return items, (payload.get("metadata") or {}).get("resourceVersion")

    def _stamp(self, item: dict[str, Any]) -> dict[str, Any]:
        # list responses omit kind/apiVersion on their items
        item.setdefault("apiVersion", self.kind.api_version)
        item.setdefault("kind", self.kind.kind)
        return item

    def start(self) -> None:
        generation = self._state.begin()
        self._thread = threading.Thread(
            target=self._run,
            args=(generation,),
            name=f"observer-{self.kind.plural}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the watch thread and close its stream.  Safe to call repeatedly."""
        watcher = self._state.end()
        if watcher is not None:
            watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self, generation: int) -> None:
        self.logger.info("Watching %s", self.kind.plural)
        try:
            while self._state.wait_for_cursor(generation) is not None:
                resume = call_with_retry(
                    lambda: self._watch_once(generation),
                    self.retry_policy,
                    description=f"Watching {self.kind.plural}",
                    sleep=lambda delay: self._state.wait_stopped(generation, delay),
                    on_retry=self._count_error,
                )
                if not resume:
                    break
        except RetryExhaustedError as exc:
            self.sink.put(ObserverFailure(kind=self.kind, error=exc))
        except Exception as exc:
            if self._state.is_active(generation):
                self.logger.exception("Observer for %s failed", self.kind.plural)
                self.sink.put(ObserverFailure(kind=self.kind, error=exc))
            else:
                self.logger.debug("Observer for %s interrupted by stop: %s", self.kind.plural, exc)
        finally:
            self.logger.info("Stopped watching %s", self.kind.plural)

    def _watch_once(self, generation: int) -> bool:
        """Run one watch session from the current cursor until it ends.

        Returns False once the stream delivered an ``ERROR`` event, after
        which the observer stops watching.
        """
        cursor = self._state.cursor
        if cursor is None:
            return True

        watcher = watch.Watch()
        if not self._state.attach(generation, watcher):
            return True
        connected = threading.Event()
        try:
            stream = watcher.stream(
                self._watch_request(connected),
                resource_version=cursor,
                timeout_seconds=self.watch_timeout_seconds,
            )
            for event in stream:
                if not self._state.is_active(generation):
                    return True
                if event.get("type") == "ERROR":
                    return self._handle_error_status(_error_status(event))
                self._forward(event)
        except ApiException as exc:
            if exc.status == HTTP_GONE:
                self._expire()
                return True
            if not connected.is_set():
                raise
            # the client raises ERROR events of an established stream
            return self._handle_error_status(
                {"apiVersion": "v1", "kind": "Status", "code": exc.status, "message": exc.reason}
            )
        finally:
            watcher.stop()
            self._state.detach(watcher)

        if self._state.is_active(generation):
            self.logger.debug(
                "Watch stream for %s ended at resourceVersion %s; reconnecting",
                self.kind.plural,
                self._state.cursor,
            )
            METRICS.watch_reconnects_total.labels(kind=self.kind.kind).inc()
        return True

    def _watch_request(self, connected: threading.Event) -> Callable[..., Any]:
        """Wrap ``list_func`` to record when the watch request got a 2xx response."""

        @functools.wraps(self.list_func)
        def request(*args: Any, **kwargs: Any) -> Any:
            response = self.list_func(*args, **kwargs)
            status = getattr(response, "status", None)
            if not isinstance(status, int) or 200 <= status <= 299:
                connected.set()
            return response

        return request

    def _handle_error_status(self, status: dict[str, Any]) -> bool:
        if status.get("code") == HTTP_GONE:
            self._expire()
            return True
        self.logger.error(
            "Watch stream for %s reported an error: %s", self.kind.plural, json.dumps(status)
        )
        self.sink.put(ResourceEvent(kind=self.kind, type="ERROR", resource=status))
        return False

    def _forward(self, event: dict[str, Any]) -> None:
        event_type = str(event.get("type", ""))
        resource = event.get("raw_object")
        if resource is None:
            obj = event.get("object")
            resource = obj if isinstance(obj, dict) else {}

        self.sink.put(ResourceEvent(kind=self.kind, type=event_type, resource=resource))

        version = resource_version(resource)
        if version:
            self._state.set_cursor(version)

    def _expire(self) -> None:
        cursor = self._state.cursor
        if cursor is None or not self._state.expire_cursor(cursor):
            return
        self.logger.info(
            "Watch cursor %s for %s expired; requesting resync", cursor, self.kind.plural
        )
        self.sink.put(ResetSignal(kind=self.kind))

    def _count_error(self, attempt: int, exc: Exception) -> None:
        METRICS.watch_errors_total.labels(kind=self.kind.kind).inc()


def _error_status(event: dict[str, Any]) -> dict[str, Any]:
    status = event.get("raw_object") or event.get("object")
    return status if isinstance(status, dict) else {}


def _sleep(delay: float) -> bool:
    time.sleep(delay)
    return False
