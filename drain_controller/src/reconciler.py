from __future__ import annotations

import logging
import math
import os
import random
import threading
import time
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from drain_controller.src.config import ConfigResolver, DrainConfig, namespace_matches
from drain_controller.src.drain import DEFAULT_RECHECK_INTERVAL_SECONDS, DrainDecisionEngine
from drain_controller.src.eligibility import is_managed
from drain_controller.src.guard import (
    GuardEvent,
    GuardOutcome,
    LifecycleGuard,
    has_guard,
    is_terminating,
    next_state,
    observe_state,
)
from drain_controller.src.kube import (
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    is_access_denied,
    is_not_found,
    pod_key,
    read_pod,
)
from drain_controller.src.metrics import METRICS
from drain_controller.src.traffic import TrafficProbe, TrafficProbeError

CONFLICT_REQUEUE_SECONDS = 0.1
DEFAULT_ERROR_REQUEUE_SECONDS = 30.0
MAX_WATCH_TIMEOUT_SECONDS = 30

PodKey = tuple[str, str]


@dataclass(frozen=True)
class ReconcileResult:
    """What one reconcile pass did and when the pod must be seen again.

    ``requeue_after`` is None when nothing further is needed until the next
    watch event.
    """

    outcome: str
    requeue_after: float | None = None


def should_enqueue(pod: Any) -> bool:
    """Watch-event filter: pods we hold, or live pods we may need to guard."""
    if has_guard(pod):
        return True
    return not is_terminating(pod) and is_managed(pod)


class PodDrainReconciler:
    """Level-triggered reconciler that holds VPA-evicted pods until drained.

    Every pass re-reads the pod and the drain configuration, then:

    - attaches the guard finalizer to live pods that are eligible
      (classified as VPA-managed and inside the namespace selector);
    - for terminating pods that carry the finalizer, asks the
      :class:`DrainDecisionEngine` and removes the finalizer on release.

    Pods that already carry the finalizer are always driven to release, even
    if they stopped being eligible in the meantime, so a configuration edit
    can never strand a pod in Terminating.

    Scheduling state lives in ``_pending_requeues``, mapping ``(namespace,
    name)`` to a ``time.monotonic()`` due-at timestamp. Watch events enqueue
    with no delay; hold decisions, conflicts and errors enqueue with a
    delay. The watch timeout is shortened so the loop wakes up in time to
    process the nearest due entry.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        config_resolver: ConfigResolver,
        engine: DrainDecisionEngine,
        guard: LifecycleGuard,
        watch_namespace: str | None = None,
        error_requeue_seconds: float = DEFAULT_ERROR_REQUEUE_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.config_resolver = config_resolver
        self.engine = engine
        self.guard = guard
        self.watch_namespace = watch_namespace or None
        self.error_requeue_seconds = error_requeue_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._pending_requeues: dict[PodKey, float] = {}
        METRICS.pending_requeues.set(0)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def is_eligible(self, pod: Any, config: DrainConfig) -> bool:
        if not is_managed(pod):
            return False
        return namespace_matches(pod.metadata.namespace, config.namespace_selector)

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one reconcile pass for a pod; never raises for API or probe failures."""
        result = self._reconcile(namespace, name)
        METRICS.reconciles_total.labels(result=result.outcome).inc()
        return result

    def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            pod = read_pod(self.core_api, namespace, name, self.request_timeout_seconds)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.debug("Pod %s/%s not found; ignoring", namespace, name)
                return ReconcileResult(outcome="not-found")
            self.logger.warning(
                "Failed to read pod %s/%s: %s", namespace, name, exc.reason
            )
            return ReconcileResult(outcome="error", requeue_after=self.error_requeue_seconds)
        except Exception:
            self.logger.exception("Unexpected error reading pod %s/%s", namespace, name)
            return ReconcileResult(outcome="error", requeue_after=self.error_requeue_seconds)

        try:
            config = self.config_resolver.resolve()
        except Exception:
            self.logger.exception(
                "Failed to resolve drain configuration for pod %s/%s", namespace, name
            )
            return ReconcileResult(outcome="error", requeue_after=self.error_requeue_seconds)

        if is_terminating(pod):
            return self._handle_termination(pod, config)

        if has_guard(pod):
            return ReconcileResult(outcome="guarded")

        if not self.is_eligible(pod, config):
            self.logger.debug("Pod %s/%s is not managed by the drain controller", namespace, name)
            return ReconcileResult(outcome="ignored")

        self.logger.info("Adding drain finalizer to pod %s/%s", namespace, name)
        try:
            outcome = self.guard.attach(namespace, name)
        except Exception:
            self.logger.exception("Failed to add drain finalizer to pod %s/%s", namespace, name)
            return ReconcileResult(outcome="error", requeue_after=self.error_requeue_seconds)

        if outcome is GuardOutcome.CONFLICT:
            return ReconcileResult(outcome="conflict", requeue_after=CONFLICT_REQUEUE_SECONDS)
        if outcome is GuardOutcome.APPLIED:
            METRICS.finalizers_added_total.inc()
            return ReconcileResult(outcome="guarded")
        return ReconcileResult(outcome=outcome.value)

    def _handle_termination(self, pod: Any, config: DrainConfig) -> ReconcileResult:
        namespace = pod.metadata.namespace
        name = pod.metadata.name

        if not has_guard(pod):
            self.logger.debug("Terminating pod %s/%s has no drain finalizer", namespace, name)
            return ReconcileResult(outcome="released")

        try:
            decision = self.engine.decide(pod, config)
        except TrafficProbeError as exc:
            self.logger.warning("%s; holding pod and retrying", exc)
            return ReconcileResult(outcome="probe-error", requeue_after=self.error_requeue_seconds)
        except Exception:
            self.logger.exception("Drain decision failed for pod %s/%s", namespace, name)
            return ReconcileResult(outcome="error", requeue_after=self.error_requeue_seconds)

        METRICS.drain_decisions_total.labels(
            decision="release" if decision.release else "hold",
            reason=decision.reason,
        ).inc()

        if not decision.release:
            state = next_state(observe_state(pod), GuardEvent.HOLD)
            self.logger.info(
                "Pod %s/%s stays %s (%s); rechecking in %.1fs",
                namespace,
                name,
                state.value,
                decision.reason,
                decision.requeue_after_seconds,
            )
            return ReconcileResult(outcome="holding", requeue_after=decision.requeue_after_seconds)

        self.logger.info(
            "Releasing pod %s/%s after %.1fs (%s)",
            namespace,
            name,
            decision.elapsed_seconds,
            decision.reason,
        )
        try:
            outcome = self.guard.release(namespace, name, decision)
        except Exception:
            self.logger.exception("Failed to remove drain finalizer from pod %s/%s", namespace, name)
            return ReconcileResult(outcome="error", requeue_after=self.error_requeue_seconds)

        if outcome is GuardOutcome.CONFLICT:
            return ReconcileResult(outcome="conflict", requeue_after=CONFLICT_REQUEUE_SECONDS)
        if outcome is GuardOutcome.APPLIED:
            METRICS.finalizers_removed_total.labels(reason=decision.reason).inc()
            METRICS.drain_duration_seconds.observe(max(0.0, decision.elapsed_seconds))
        return ReconcileResult(outcome="released")

    # ------------------------------------------------------------------
    # Requeue scheduling
    # ------------------------------------------------------------------

    def enqueue(self, key: PodKey, delay_seconds: float, now_monotonic: float) -> None:
        """Schedule *key*; an earlier existing due-at timestamp is kept."""
        due_at = now_monotonic + max(0.0, delay_seconds)
        existing_due = self._pending_requeues.get(key)
        if existing_due is None or due_at < existing_due:
            self._pending_requeues[key] = due_at
            METRICS.pending_requeues.set(len(self._pending_requeues))

    def forget(self, key: PodKey) -> None:
        if self._pending_requeues.pop(key, None) is not None:
            METRICS.pending_requeues.set(len(self._pending_requeues))

    def _process_due_requeues(self, now_monotonic: float) -> None:
        """Reconcile every pod whose due-at timestamp is at or before *now_monotonic*."""
        due = sorted(
            (due_at, key)
            for key, due_at in self._pending_requeues.items()
            if due_at <= now_monotonic
        )
        for _, key in due:
            self._pending_requeues.pop(key, None)
            namespace, name = key
            result = self.reconcile(namespace, name)
            if result.requeue_after is not None:
                self.enqueue(key, result.requeue_after, now_monotonic=time.monotonic())
        METRICS.pending_requeues.set(len(self._pending_requeues))

    def _requeue_due_before(self, deadline_monotonic: float) -> bool:
        if not self._pending_requeues:
            return False
        return min(self._pending_requeues.values()) < deadline_monotonic

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout, clamped so due requeues are not late."""
        if not self._pending_requeues:
            return MAX_WATCH_TIMEOUT_SECONDS

        nearest_due = min(self._pending_requeues.values())
        remaining = max(1.0, nearest_due - now_monotonic)
        return min(MAX_WATCH_TIMEOUT_SECONDS, max(1, math.ceil(remaining)))

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    def handle_pod_event(self, event_type: str, pod: Any) -> bool:
        """Turn one watch event into a requeue; return True when the pod was enqueued."""
        key = pod_key(pod)
        if key is None:
            return False

        if event_type == "DELETED":
            self.forget(key)
            return False
        if event_type not in {"ADDED", "MODIFIED"}:
            return False
        if not should_enqueue(pod):
            return False

        self.enqueue(key, 0.0, now_monotonic=time.monotonic())
        return True

    def _enqueue_from_list(self, pods: Any) -> None:
        now_monotonic = time.monotonic()
        for pod in getattr(pods, "items", None) or []:
            key = pod_key(pod)
            if key is not None and should_enqueue(pod):
                self.enqueue(key, 0.0, now_monotonic=now_monotonic)

    def _list_pods(self, **kwargs: Any) -> Any:
        if self.watch_namespace:
            return self.core_api.list_namespaced_pod(namespace=self.watch_namespace, **kwargs)
        return self.core_api.list_pod_for_all_namespaces(**kwargs)

    def _list_pods_function(self) -> Any:
        if self.watch_namespace:
            return self.core_api.list_namespaced_pod
        return self.core_api.list_pod_for_all_namespaces

    def _watch_kwargs(self) -> dict[str, Any]:
        if self.watch_namespace:
            return {"namespace": self.watch_namespace}
        return {}

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch pods and reconcile them until shutdown.

        1. Retries the initial pod list with jittered exponential backoff and
           enqueues every candidate pod, so pods held by a previous leader
           are picked up again.
        2. Watches from the list's ``resourceVersion``, enqueueing pods on
           ADDED/MODIFIED and forgetting them on DELETED.
        3. Processes due requeues after every event and whenever the watch
           times out; the timeout is shortened to the nearest due entry, and
           a stream is reopened early when an event schedules an entry due
           before that stream would time out.
        4. On ``410 Gone`` re-lists and re-enqueues everything.
        5. On ``401``/``403`` stops with a clear RBAC error and clears
           readiness; any other error backs off (capped at 30 s).

        Pending requeues are dropped on shutdown: finalizers stay on the
        pods, and the next leader re-discovers them from its initial list.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list_pods(_request_timeout=self.request_timeout_seconds)
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._enqueue_from_list(initial)
                self.ready.set()
                self.logger.info(
                    "Starting pod watch from resourceVersion %s with %d pod(s) queued",
                    resource_version,
                    len(self._pending_requeues),
                )
                break
            except ApiException as exc:
                if is_access_denied(exc):
                    self.logger.error(
                        "Kubernetes API access denied during initial pod list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial Kubernetes pod list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial pod list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._process_due_requeues(now_monotonic=time.monotonic())
            if self._should_stop(stop):
                break
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                opened_at = time.monotonic()
                timeout_seconds = self._next_watch_timeout_seconds(now_monotonic=opened_at)
                stream_deadline = opened_at + timeout_seconds
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_pods_function(),
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                    **self._watch_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    event_type = str(event.get("type", ""))
                    self.handle_pod_event(event_type=event_type, pod=obj)
                    self._process_due_requeues(now_monotonic=time.monotonic())
                    if self._requeue_due_before(stream_deadline):
                        # Reopen with a timeout that wakes us for the earlier entry.
                        break

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away. Re-list
                # and resume from the fresh snapshot.
                if exc.status == 410:
                    self.logger.warning("Pod watch resource version expired, re-listing")
                    try:
                        fresh = self._list_pods(_request_timeout=self.request_timeout_seconds)
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._enqueue_from_list(fresh)
                    except ApiException as relist_exc:
                        if is_access_denied(relist_exc):
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list pods after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if is_access_denied(exc):
                    self.logger.error(
                        "Kubernetes API pod watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API pod watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected pod watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        if self._pending_requeues:
            self.logger.info(
                "Dropping %d pending requeue(s) on shutdown", len(self._pending_requeues)
            )
        self._pending_requeues.clear()
        METRICS.pending_requeues.set(0)
        self.ready.clear()


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


def build_reconciler_from_env(core_api: CoreV1Api) -> PodDrainReconciler:
    """Wire a :class:`PodDrainReconciler` from environment variables.

    Environment variables (with defaults):
        ``CONFIG_MAP_NAME``           Drain ConfigMap name (``vpa-graceful-drain-config``).
        ``CONFIG_MAP_NAMESPACE``      Drain ConfigMap namespace (``kube-system``).
        ``WATCH_NAMESPACE``           Only watch pods in this namespace (all).
        ``REQUEST_TIMEOUT_SECONDS``   Per-call API timeout (``10``).
        ``RECHECK_INTERVAL_SECONDS``  Longest hold before re-evaluating (``10``).
        ``ERROR_REQUEUE_SECONDS``     Retry delay after failures (``30``).
    """
    config_map_name = os.getenv("CONFIG_MAP_NAME", "vpa-graceful-drain-config").strip()
    if not config_map_name:
        raise ValueError("CONFIG_MAP_NAME must be a non-empty string")
    config_map_namespace = os.getenv("CONFIG_MAP_NAMESPACE", "kube-system").strip()
    if not config_map_namespace:
        raise ValueError("CONFIG_MAP_NAMESPACE must be a non-empty string")

    watch_namespace = os.getenv("WATCH_NAMESPACE", "").strip() or None
    request_timeout = env_int(
        "REQUEST_TIMEOUT_SECONDS", int(DEFAULT_REQUEST_TIMEOUT_SECONDS), minimum=1, maximum=300
    )
    recheck_interval = env_int(
        "RECHECK_INTERVAL_SECONDS", int(DEFAULT_RECHECK_INTERVAL_SECONDS), minimum=1, maximum=300
    )
    error_requeue = env_int(
        "ERROR_REQUEUE_SECONDS", int(DEFAULT_ERROR_REQUEUE_SECONDS), minimum=1, maximum=600
    )

    resolver = ConfigResolver(
        core_api=core_api,
        name=config_map_name,
        namespace=config_map_namespace,
        request_timeout_seconds=request_timeout,
    )
    engine = DrainDecisionEngine(
        probe=TrafficProbe(core_api, request_timeout_seconds=request_timeout),
        recheck_interval_seconds=recheck_interval,
    )
    return PodDrainReconciler(
        core_api=core_api,
        config_resolver=resolver,
        engine=engine,
        guard=LifecycleGuard(core_api, request_timeout_seconds=request_timeout),
        watch_namespace=watch_namespace,
        error_requeue_seconds=error_requeue,
        request_timeout_seconds=request_timeout,
    )
