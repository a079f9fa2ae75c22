from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from drain_controller.src.health import start_health_server
from drain_controller.src.kube import build_core_client, load_kube_configuration
from drain_controller.src.metrics import METRICS
from drain_controller.src.reconciler import PodDrainReconciler, build_reconciler_from_env, env_int

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"), r"\1[REDACTED]"),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with credentials scrubbed from text fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.root.setLevel(getattr(logging, level, logging.INFO))


class LeaderScopedRunner:
    """Runs the reconciler in a thread only while this replica holds the lease.

    A new leadership term refuses to start while the previous term's thread
    is still alive, so two watch loops never remove finalizers concurrently.
    A thread that does not stop within ``stop_timeout_seconds``, or that
    exits on its own, triggers process shutdown.
    """

    def __init__(
        self,
        reconciler: PodDrainReconciler,
        shutdown_event: threading.Event,
        leader_ready: threading.Event,
        stop_timeout_seconds: int,
    ) -> None:
        self.reconciler = reconciler
        self.shutdown_event = shutdown_event
        self.leader_ready = leader_ready
        self.stop_timeout_seconds = stop_timeout_seconds
        self._thread: threading.Thread | None = None
        self._term_stop = threading.Event()
        self._lock = threading.Lock()

    def _run_term(self, term_stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            self.reconciler.run_forever(shutdown_event=term_stop)
            unexpected_exit = not term_stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Reconciler exited without a stop signal; terminating process")
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Reconciler thread crashed")
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error(
                    "Refusing to start a new pod watch while the previous one is still running"
                )
                self.shutdown_event.set()
                return

            self._term_stop = threading.Event()
            self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run_term, args=(self._term_stop,), daemon=True
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            self.leader_ready.clear()
            self.reconciler.request_stop()
            self._term_stop.set()
            if self._thread is None:
                return

            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Reconciler did not stop within %ss after losing leadership; "
                    "forcing process shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def main() -> None:
    """Entry point: logging, kube client, health server, leader election, pod watch."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api = build_core_client()
    reconciler = build_reconciler_from_env(core_api=core_api)

    leader_election_enabled = _parse_bool_env("LEADER_ELECTION_ENABLED", default=True)
    leader_ready = threading.Event() if leader_election_enabled else None
    health_port = env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535)
    health_server = start_health_server(
        ready=reconciler.ready,
        port=health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_ready is not None:
        from kubernetes.client import CoordinationV1Api

        from drain_controller.src.leader import LeaseLeaderElector, LeaseTimings, default_identity

        timings = LeaseTimings(
            lease_duration_seconds=env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1),
            renew_deadline_seconds=env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1),
            retry_period_seconds=env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1),
        )
        elector = LeaseLeaderElector(
            coordination_api=CoordinationV1Api(),
            namespace=os.getenv(
                "LEADER_ELECTION_NAMESPACE", os.getenv("CONFIG_MAP_NAMESPACE", "kube-system")
            ),
            lease_name=os.getenv(
                "LEADER_ELECTION_LEASE_NAME", "vpa-graceful-drain-controller-leader"
            ),
            identity=os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
            timings=timings,
            request_timeout_seconds=reconciler.request_timeout_seconds,
        )
        # Must exceed the 30s watch timeout plus one API request timeout.
        runner = LeaderScopedRunner(
            reconciler=reconciler,
            shutdown_event=shutdown_event,
            leader_ready=leader_ready,
            stop_timeout_seconds=env_int(
                "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1
            ),
        )
        elector.run(
            on_started_leading=runner.on_started_leading,
            on_stopped_leading=runner.on_stopped_leading,
            stop_event=shutdown_event,
        )
        runner.on_stopped_leading()
    else:
        reconciler.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Drain controller stopped")


if __name__ == "__main__":
    main()
