from __future__ import annotations

import json
import threading
import time
import urllib.error
import urllib.request

import pytest

from ingress_adapter.src import health
from ingress_adapter.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str, str]:
    """GET ``url`` and return (status_code, content_type, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.headers["Content-Type"], response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.headers["Content-Type"], exc.read().decode()


class TestHealthServer:
    """Tests for the liveness, readiness and metrics endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.classes: frozenset[str] = frozenset()
        self.server = start_health_server(
            ready=self.ready, port=0, active_classes=lambda: self.classes
        )
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, _, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_before_startup_resync(self) -> None:
        status, content_type, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert content_type == "application/json"
        assert json.loads(body) == {"ready": False, "ingressClasses": []}

    def test_readyz_reports_served_ingress_classes(self) -> None:
        self.ready.set()
        self.classes = frozenset({"gloo-internal", "gloo"})

        status, _, body = _get(f"{self.base_url}/readyz")

        assert status == 200
        assert json.loads(body) == {"ready": True, "ingressClasses": ["gloo", "gloo-internal"]}

    def test_readyz_returns_503_after_controller_stopped(self) -> None:
        self.ready.set()
        status, _, _ = _get(f"{self.base_url}/readyz")
        assert status == 200

        self.ready.clear()
        status, _, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert json.loads(body)["ready"] is False

    def test_query_string_is_ignored_when_routing(self) -> None:
        status, _, body = _get(f"{self.base_url}/healthz?verbose=1")
        assert status == 200
        assert body == "ok"

    def test_metrics_exposes_adapter_metrics(self) -> None:
        status, content_type, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert content_type.startswith("text/plain")
        assert "ingress_adapter_route_table_applies_total" in body
        assert "ingress_adapter_active_ingress_classes" in body

    def test_404_for_unknown_path(self) -> None:
        status, _, _ = _get(f"{self.base_url}/unknown")
        assert status == 404

    def test_healthz_stays_responsive_during_slow_metrics_scrape(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        original_generate_latest = health.generate_latest
        metrics_started = threading.Event()

        def slow_generate_latest() -> bytes:
            metrics_started.set()
            time.sleep(1.2)
            return original_generate_latest()

        monkeypatch.setattr(health, "generate_latest", slow_generate_latest)

        metrics_result: dict[str, object] = {}

        def _scrape_metrics() -> None:
            try:
                status, _, _ = _get(f"{self.base_url}/metrics", timeout=3)
                metrics_result["status"] = status
            except Exception as exc:
                metrics_result["error"] = exc

        metrics_thread = threading.Thread(target=_scrape_metrics)
        metrics_thread.start()

        assert metrics_started.wait(timeout=1)
        status, _, body = _get(f"{self.base_url}/healthz", timeout=1)

        metrics_thread.join(timeout=4)
        assert not metrics_thread.is_alive()
        assert "error" not in metrics_result
        assert metrics_result.get("status") == 200
        assert status == 200
        assert body == "ok"


def test_readiness_defaults_to_no_classes() -> None:
    ready = threading.Event()
    ready.set()
    server = start_health_server(ready=ready, port=0)
    try:
        status, _, body = _get(f"http://127.0.0.1:{server.server_address[1]}/readyz")
    finally:
        server.shutdown()

    assert status == 200
    assert json.loads(body) == {"ready": True, "ingressClasses": []}
