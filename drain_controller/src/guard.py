from __future__ import annotations

import enum
import logging
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from drain_controller.src.drain import DrainDecision
from drain_controller.src.kube import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    is_conflict,
    is_not_found,
    read_pod,
    replace_pod_finalizers,
)
from drain_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

GUARD_FINALIZER = "vpa-graceful-drain.cho.github.io/finalizer"


class GuardState(enum.Enum):
    UNGUARDED = "unguarded"
    GUARDED = "guarded"
    DRAINING = "draining"
    RELEASED = "released"


class GuardEvent(enum.Enum):
    ATTACH = "attach"
    DELETION_OBSERVED = "deletion-observed"
    HOLD = "hold"
    RELEASE = "release"


TRANSITIONS: dict[tuple[GuardState, GuardEvent], GuardState] = {
    (GuardState.UNGUARDED, GuardEvent.ATTACH): GuardState.GUARDED,
    (GuardState.GUARDED, GuardEvent.DELETION_OBSERVED): GuardState.DRAINING,
    (GuardState.DRAINING, GuardEvent.HOLD): GuardState.DRAINING,
    (GuardState.DRAINING, GuardEvent.RELEASE): GuardState.RELEASED,
}


class InvalidTransitionError(RuntimeError):
    def __init__(self, state: GuardState, event: GuardEvent) -> None:
        self.state = state
        self.event = event
        super().__init__(f"no guard transition from {state.value} on {event.value}")


class GuardOutcome(enum.Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    GONE = "gone"


def next_state(state: GuardState, event: GuardEvent) -> GuardState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None


def has_guard(pod: Any) -> bool:
    finalizers = getattr(getattr(pod, "metadata", None), "finalizers", None) or []
    return GUARD_FINALIZER in finalizers


def is_terminating(pod: Any) -> bool:
    return getattr(getattr(pod, "metadata", None), "deletion_timestamp", None) is not None


def observe_state(pod: Any) -> GuardState:
    """Derive the guard state from the marker and the deletion timestamp.

    A terminating pod without the marker reads as RELEASED: either we let it
    go already, or it was never ours, and in both cases there is nothing
    left to hold.
    """
    if has_guard(pod):
        return GuardState.DRAINING if is_terminating(pod) else GuardState.GUARDED
    return GuardState.RELEASED if is_terminating(pod) else GuardState.UNGUARDED


class LifecycleGuard:
    """Adds and removes the drain finalizer with optimistic concurrency.

    Each transition re-reads the pod from the API server, computes the new
    finalizer list from that fresh copy, and writes it back in one update
    that carries the fresh ``resourceVersion``. A ``409 Conflict`` means the
    pod changed in between; it is reported as :attr:`GuardOutcome.CONFLICT`
    so the caller can requeue shortly and recompute from fresh state.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.request_timeout_seconds = request_timeout_seconds

    def attach(self, namespace: str, name: str) -> GuardOutcome:
        """Move an alive, eligible pod from UNGUARDED to GUARDED."""
        return self._transition(namespace, name, GuardEvent.ATTACH)

    def release(self, namespace: str, name: str, decision: DrainDecision) -> GuardOutcome:
        """Move a draining pod to RELEASED; only a release decision may do so."""
        if not decision.release:
            raise ValueError(
                f"refusing to release pod {namespace}/{name} on a hold decision "
                f"({decision.reason})"
            )
        return self._transition(namespace, name, GuardEvent.RELEASE)

    def _transition(self, namespace: str, name: str, event: GuardEvent) -> GuardOutcome:
        try:
            pod = read_pod(self.core_api, namespace, name, self.request_timeout_seconds)
        except ApiException as exc:
            if is_not_found(exc):
                return GuardOutcome.GONE
            raise

        current = observe_state(pod)
        if event is GuardEvent.ATTACH and current is not GuardState.UNGUARDED:
            LOGGER.debug("Pod %s/%s is %s, nothing to attach", namespace, name, current.value)
            return GuardOutcome.UNCHANGED
        if event is GuardEvent.RELEASE and current is GuardState.RELEASED:
            return GuardOutcome.UNCHANGED
        target = next_state(current, event)

        finalizers = list(pod.metadata.finalizers or [])
        if target is GuardState.GUARDED:
            finalizers.append(GUARD_FINALIZER)
        else:
            finalizers = [item for item in finalizers if item != GUARD_FINALIZER]

        try:
            replace_pod_finalizers(self.core_api, pod, finalizers, self.request_timeout_seconds)
        except ApiException as exc:
            if is_conflict(exc):
                METRICS.write_conflicts_total.inc()
                LOGGER.debug("Conflict updating pod %s/%s, will retry", namespace, name)
                return GuardOutcome.CONFLICT
            if is_not_found(exc):
                return GuardOutcome.GONE
            raise

        LOGGER.info(
            "Pod %s/%s guard %s -> %s", namespace, name, current.value, target.value
        )
        return GuardOutcome.APPLIED
