from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest

from drain_controller.src.config import DrainConfig
from drain_controller.src.drain import (
    REASON_ACTIVE_TRAFFIC,
    REASON_DRAIN_TIMEOUT,
    REASON_GRACE_PERIOD,
    REASON_NO_ACTIVE_TRAFFIC,
    REASON_NOT_TERMINATING,
    REASON_POD_COMPLETED,
    REASON_POD_NOT_READY,
    DrainDecisionEngine,
)
from drain_controller.src.traffic import TrafficProbe, TrafficProbeError

CONFIG = DrainConfig(grace_period_seconds=30, drain_timeout_seconds=300)


def _engine(now: datetime, active: bool | Exception = True) -> tuple[DrainDecisionEngine, MagicMock]:
    probe = MagicMock(spec=TrafficProbe)
    if isinstance(active, Exception):
        probe.has_active_connections.side_effect = active
    else:
        probe.has_active_connections.return_value = active
    return DrainDecisionEngine(probe=probe, now_fn=lambda: now), probe


def test_pod_without_deletion_timestamp_is_released(make_pod, now) -> None:
    engine, probe = _engine(now)

    decision = engine.decide(make_pod(), CONFIG)

    assert decision.release is True
    assert decision.reason == REASON_NOT_TERMINATING
    probe.has_active_connections.assert_not_called()


def test_serving_pod_inside_grace_period_is_held_and_requeued(make_pod, now) -> None:
    engine, _ = _engine(now, active=True)

    decision = engine.decide(make_pod(deleted_seconds_ago=10), CONFIG)

    assert decision.release is False
    assert decision.reason == REASON_GRACE_PERIOD
    assert decision.requeue_after_seconds == pytest.approx(10.0)


@pytest.mark.parametrize(
    "overrides",
    [
        {"phase": "Succeeded"},
        {"phase": "Failed"},
        {"ready": "False"},
        {"ready": None},
        {"ports": False},
    ],
)
def test_grace_period_holds_regardless_of_pod_state(make_pod, now, overrides) -> None:
    engine, probe = _engine(now, active=False)

    decision = engine.decide(make_pod(deleted_seconds_ago=29.9, **overrides), CONFIG)

    assert decision.release is False
    assert decision.reason == REASON_GRACE_PERIOD
    probe.has_active_connections.assert_not_called()


def test_grace_hold_requeues_no_later_than_grace_expiry(make_pod, now) -> None:
    engine, _ = _engine(now)

    decision = engine.decide(make_pod(deleted_seconds_ago=27), CONFIG)

    assert decision.requeue_after_seconds == pytest.approx(3.0)


@pytest.mark.parametrize("active", [True, False, TrafficProbeError("default", "web", "boom")])
def test_past_drain_timeout_always_releases(make_pod, now, active) -> None:
    engine, probe = _engine(now, active=active)

    decision = engine.decide(make_pod(deleted_seconds_ago=400), CONFIG)

    assert decision.release is True
    assert decision.reason == REASON_DRAIN_TIMEOUT
    assert decision.elapsed_seconds == pytest.approx(400)
    probe.has_active_connections.assert_not_called()


def test_exactly_at_timeout_still_consults_policy(make_pod, now) -> None:
    engine, _ = _engine(now, active=True)

    decision = engine.decide(make_pod(deleted_seconds_ago=300), CONFIG)

    assert decision.release is False
    assert decision.reason == REASON_ACTIVE_TRAFFIC
    assert decision.requeue_after_seconds == pytest.approx(1.0)


@pytest.mark.parametrize("phase", ["Succeeded", "Failed"])
def test_completed_pod_is_released(make_pod, now, phase: str) -> None:
    engine, probe = _engine(now, active=True)

    decision = engine.decide(make_pod(deleted_seconds_ago=60, phase=phase), CONFIG)

    assert decision.release is True
    assert decision.reason == REASON_POD_COMPLETED
    probe.has_active_connections.assert_not_called()


@pytest.mark.parametrize("ready", ["False", "Unknown", None])
def test_not_ready_pod_is_released(make_pod, now, ready: str | None) -> None:
    engine, probe = _engine(now, active=True)

    decision = engine.decide(make_pod(deleted_seconds_ago=60, ready=ready), CONFIG)

    assert decision.release is True
    assert decision.reason == REASON_POD_NOT_READY
    probe.has_active_connections.assert_not_called()


def test_ready_pod_without_traffic_is_released(make_pod, now) -> None:
    engine, _ = _engine(now, active=False)

    decision = engine.decide(make_pod(deleted_seconds_ago=60), CONFIG)

    assert decision.release is True
    assert decision.reason == REASON_NO_ACTIVE_TRAFFIC


def test_ready_pod_with_traffic_is_held(make_pod, now) -> None:
    engine, _ = _engine(now, active=True)

    decision = engine.decide(make_pod(deleted_seconds_ago=60), CONFIG)

    assert decision.release is False
    assert decision.reason == REASON_ACTIVE_TRAFFIC
    assert decision.requeue_after_seconds == pytest.approx(10.0)


def test_probe_errors_propagate(make_pod, now) -> None:
    engine, _ = _engine(now, active=TrafficProbeError("default", "web-abc12", "boom"))

    with pytest.raises(TrafficProbeError):
        engine.decide(make_pod(deleted_seconds_ago=60), CONFIG)


def test_zero_grace_period_goes_straight_to_policy(make_pod, now) -> None:
    engine, _ = _engine(now, active=False)
    config = DrainConfig(grace_period_seconds=0, drain_timeout_seconds=60)

    decision = engine.decide(make_pod(deleted_seconds_ago=0), config)

    assert decision.release is True
    assert decision.reason == REASON_NO_ACTIVE_TRAFFIC


def test_explicit_now_overrides_clock(make_pod, now) -> None:
    engine, _ = _engine(now)
    pod = make_pod(deleted_seconds_ago=10)

    later = now.replace(minute=now.minute + 10)
    decision = engine.decide(pod, CONFIG, now=later)

    assert decision.reason == REASON_DRAIN_TIMEOUT


def test_naive_deletion_timestamp_is_treated_as_utc(make_pod, now) -> None:
    engine, _ = _engine(now)
    pod = make_pod(deleted_seconds_ago=10)
    pod.metadata.deletion_timestamp = pod.metadata.deletion_timestamp.replace(tzinfo=None)

    decision = engine.decide(pod, CONFIG)

    assert decision.reason == REASON_GRACE_PERIOD
    assert decision.elapsed_seconds == pytest.approx(10)
