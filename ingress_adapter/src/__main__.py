from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from ingress_adapter.src.controller import build_controller_from_env, env_int
from ingress_adapter.src.health import start_health_server
from ingress_adapter.src.kube import build_clients, load_kube_configuration
from ingress_adapter.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> int:
    """Adapter entrypoint: configure logging, wire clients and run the controller.

    Returns the process exit status: ``0`` after an orderly stop, ``1`` when
    the controller terminated on a fatal error.
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    networking_api, custom_api = build_clients()

    controller = build_controller_from_env(networking_api=networking_api, custom_api=custom_api)

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    shutdown_timeout_seconds = env_int("SHUTDOWN_TIMEOUT_SECONDS", 30, minimum=1)
    health_server = start_health_server(
        ready=controller.ready,
        port=health_port,
        active_classes=lambda: controller.active_classes,
    )

    shutdown_event = threading.Event()
    failed = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    def _run_controller() -> None:
        try:
            controller.run()
        except Exception:
            LOGGER.exception("Ingress adapter terminated on a fatal error")
            failed.set()
        finally:
            shutdown_event.set()

    controller_thread = threading.Thread(target=_run_controller, name="controller", daemon=True)
    controller_thread.start()

    shutdown_event.wait()
    controller.stop()
    controller_thread.join(timeout=shutdown_timeout_seconds)
    if controller_thread.is_alive():
        LOGGER.error("Controller did not stop in time; exiting anyway")
        failed.set()

    health_server.shutdown()
    LOGGER.info("Ingress adapter process exiting")
    return 1 if failed.is_set() else 0


if __name__ == "__main__":
    sys.exit(main())
