from __future__ import annotations

import threading
import time
import urllib.error
import urllib.request

import pytest

from drain_controller.src import health
from drain_controller.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServerWithLeadership:
    """Readiness needs a synced pod watch and the leader lease."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.leader = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0, leader=self.leader)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        assert _get(f"{self.base_url}/healthz") == (200, "ok")

    def test_readyz_returns_503_before_initial_sync(self) -> None:
        self.leader.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "synced=false" in body

    def test_readyz_returns_503_when_synced_but_not_leader(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "leader=false" in body

    def test_readyz_follows_leadership(self) -> None:
        self.ready.set()
        self.leader.set()
        assert _get(f"{self.base_url}/readyz") == (200, "synced=true leader=true")

        self.leader.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_leadz(self) -> None:
        assert _get(f"{self.base_url}/leadz") == (503, "not leader")
        self.leader.set()
        assert _get(f"{self.base_url}/leadz") == (200, "ok")

    def test_metrics_exposes_controller_series(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "vpa_drain_reconciles_total" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
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
                status, _ = _get(f"{self.base_url}/metrics", timeout=3)
                metrics_result["status"] = status
            except Exception as exc:
                metrics_result["error"] = exc

        metrics_thread = threading.Thread(target=_scrape_metrics)
        metrics_thread.start()

        assert metrics_started.wait(timeout=1)
        status, body = _get(f"{self.base_url}/healthz", timeout=1)

        metrics_thread.join(timeout=4)
        assert not metrics_thread.is_alive()
        assert metrics_result.get("status") == 200
        assert (status, body) == (200, "ok")


class TestHealthServerWithoutLeaderElection:
    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0, leader=None)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_readyz_depends_only_on_sync(self) -> None:
        assert _get(f"{self.base_url}/readyz")[0] == 503
        self.ready.set()
        assert _get(f"{self.base_url}/readyz") == (200, "synced=true leader=true")
