from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from drain_controller.src.config import DrainConfig
from drain_controller.src.traffic import TrafficProbe, is_pod_ready

LOGGER = logging.getLogger(__name__)

DEFAULT_RECHECK_INTERVAL_SECONDS = 10.0
MIN_REQUEUE_SECONDS = 1.0

COMPLETED_PHASES = frozenset({"Succeeded", "Failed"})

REASON_NOT_TERMINATING = "not-terminating"
REASON_GRACE_PERIOD = "grace-period"
REASON_DRAIN_TIMEOUT = "drain-timeout"
REASON_POD_COMPLETED = "pod-completed"
REASON_POD_NOT_READY = "pod-not-ready"
REASON_NO_ACTIVE_TRAFFIC = "no-active-traffic"
REASON_ACTIVE_TRAFFIC = "active-traffic"


@dataclass(frozen=True)
class DrainDecision:
    """Outcome of one drain evaluation.

    ``requeue_after_seconds`` is only set on hold decisions and tells the
    caller when the pod must be looked at again.
    """

    release: bool
    reason: str
    elapsed_seconds: float = 0.0
    requeue_after_seconds: float | None = None


def utc_now() -> datetime:
    return datetime.now(UTC)


def _as_aware(timestamp: datetime) -> datetime:
    return timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=UTC)


class DrainDecisionEngine:
    """Decides whether a terminating pod may lose its guard finalizer.

    The policy is a fixed list of gates evaluated in order; the first gate
    that applies decides:

    1. No deletion timestamp: release.
    2. Inside the grace period: hold, whatever the pod is doing.
    3. Past the drain timeout: release, whatever the pod is doing.
    4. Phase Succeeded or Failed: release.
    5. Not Ready: release.
    6. Otherwise ask the :class:`TrafficProbe`; release only when it reports
       no active connections. Probe errors propagate to the caller, which
       must keep holding the pod.

    Time is re-evaluated on every call; hold decisions carry a requeue delay
    bounded by ``recheck_interval_seconds`` and by the time left until the
    next threshold, so elapsed-time gates are observed without new events.
    """

    def __init__(
        self,
        probe: TrafficProbe,
        recheck_interval_seconds: float = DEFAULT_RECHECK_INTERVAL_SECONDS,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.probe = probe
        self.recheck_interval_seconds = recheck_interval_seconds
        self.now_fn = now_fn

    def _hold(self, reason: str, elapsed: float, until_threshold: float) -> DrainDecision:
        delay = min(self.recheck_interval_seconds, until_threshold)
        return DrainDecision(
            release=False,
            reason=reason,
            elapsed_seconds=elapsed,
            requeue_after_seconds=max(MIN_REQUEUE_SECONDS, delay),
        )

    def decide(self, pod: Any, config: DrainConfig, now: datetime | None = None) -> DrainDecision:
        metadata = getattr(pod, "metadata", None)
        name = getattr(metadata, "name", None) or "<unknown>"
        deletion_timestamp = getattr(metadata, "deletion_timestamp", None)

        if deletion_timestamp is None:
            LOGGER.debug("Pod %s has no deletion timestamp, nothing to drain", name)
            return DrainDecision(release=True, reason=REASON_NOT_TERMINATING)

        current = _as_aware(now or self.now_fn())
        elapsed = (current - _as_aware(deletion_timestamp)).total_seconds()

        if elapsed < config.grace_period_seconds:
            LOGGER.info(
                "Pod %s inside grace period (elapsed=%.1fs grace=%ss)",
                name,
                elapsed,
                config.grace_period_seconds,
            )
            return self._hold(
                REASON_GRACE_PERIOD, elapsed, config.grace_period_seconds - elapsed
            )

        if elapsed > config.drain_timeout_seconds:
            LOGGER.info(
                "Drain timeout exceeded for pod %s (elapsed=%.1fs timeout=%ss)",
                name,
                elapsed,
                config.drain_timeout_seconds,
            )
            return DrainDecision(
                release=True, reason=REASON_DRAIN_TIMEOUT, elapsed_seconds=elapsed
            )

        phase = getattr(getattr(pod, "status", None), "phase", None)
        if phase in COMPLETED_PHASES:
            LOGGER.info("Pod %s has completed (phase=%s)", name, phase)
            return DrainDecision(
                release=True, reason=REASON_POD_COMPLETED, elapsed_seconds=elapsed
            )

        if not is_pod_ready(pod):
            LOGGER.info("Pod %s is not ready", name)
            return DrainDecision(
                release=True, reason=REASON_POD_NOT_READY, elapsed_seconds=elapsed
            )

        if not self.probe.has_active_connections(pod):
            LOGGER.info("No active traffic detected for pod %s", name)
            return DrainDecision(
                release=True, reason=REASON_NO_ACTIVE_TRAFFIC, elapsed_seconds=elapsed
            )

        LOGGER.info("Pod %s still serving traffic, continuing drain", name)
        return self._hold(
            REASON_ACTIVE_TRAFFIC, elapsed, config.drain_timeout_seconds - elapsed
        )
