from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from drain_controller.src.kube import DEFAULT_REQUEST_TIMEOUT_SECONDS
from drain_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseTimings:
    """Lease duration, renew deadline and retry period, in seconds.

    Each value must be strictly smaller than the one before it: a replica
    retries several times before its renew deadline, and gives up leading
    before another replica may consider the lease expired.
    """

    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2

    def __post_init__(self) -> None:
        if self.lease_duration_seconds < 1:
            raise ValueError("lease duration must be >= 1s")
        if self.renew_deadline_seconds < 1:
            raise ValueError("renew deadline must be >= 1s")
        if self.retry_period_seconds < 0:
            raise ValueError("retry period must be >= 0s")
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ValueError(
                f"renew deadline ({self.renew_deadline_seconds}s) must be shorter than "
                f"lease duration ({self.lease_duration_seconds}s)"
            )
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ValueError(
                f"retry period ({self.retry_period_seconds}s) must be shorter than "
                f"renew deadline ({self.renew_deadline_seconds}s)"
            )


def _lease_expired(spec: V1LeaseSpec, now: datetime, default_duration: int) -> bool:
    """True when the holder recorded in *spec* has not renewed within its duration."""
    if spec.renew_time is None:
        return True
    renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
    duration = spec.lease_duration_seconds or default_duration
    return (now - renewed).total_seconds() >= duration


class LeaseLeaderElector:
    """Single-active-replica election on a ``coordination.k8s.io/v1`` Lease.

    Finalizer removal must not race between replicas, so only the lease
    holder runs the pod watch. Each cycle reads the Lease and then:

    - creates it when missing (we lead);
    - renews it when we hold it or nobody does;
    - takes it over once the holder's ``renewTime`` is older than its
      ``leaseDurationSeconds``, bumping ``leaseTransitions``;
    - otherwise waits. A ``409 Conflict`` on create/replace loses the cycle.

    A leader that fails to renew keeps leading for the renew deadline before
    ``on_stopped_leading`` fires. On shutdown the lease is released so a
    standby can take over without waiting for expiry.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        timings: LeaseTimings | None = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.timings = timings or LeaseTimings()
        self.request_timeout_seconds = request_timeout_seconds
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _read(self) -> V1Lease:
        return self.coordination_api.read_namespaced_lease(
            name=self.lease_name,
            namespace=self.namespace,
            _request_timeout=self.request_timeout_seconds,
        )

    def _try_acquire_or_renew(self) -> bool:
        now = self._now_utc()
        try:
            lease = self._read()
        except ApiException as exc:
            if exc.status == 404:
                return self._claim(None, now)
            LOGGER.warning("Reading lease %s failed: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity not in (None, self.identity):
            if not _lease_expired(spec, now, self.timings.lease_duration_seconds):
                return False
            LOGGER.info(
                "Lease %s of %s expired; taking over", self.lease_name, spec.holder_identity
            )
        return self._claim(lease, now)

    def _claim(self, lease: V1Lease | None, now: datetime) -> bool:
        """Create *lease* (when None) or rewrite it with us as the holder."""
        creating = lease is None
        if lease is None:
            lease = V1Lease(
                metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                spec=V1LeaseSpec(acquire_time=now, lease_transitions=0),
            )
        spec = lease.spec = lease.spec or V1LeaseSpec()
        previous_holder = spec.holder_identity
        if previous_holder != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        if previous_holder not in (None, self.identity):
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.timings.lease_duration_seconds

        try:
            if creating:
                self.coordination_api.create_namespaced_lease(
                    namespace=self.namespace,
                    body=lease,
                    _request_timeout=self.request_timeout_seconds,
                )
                LOGGER.info("Created lease %s/%s", self.namespace, self.lease_name)
            else:
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name,
                    namespace=self.namespace,
                    body=lease,
                    _request_timeout=self.request_timeout_seconds,
                )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Writing lease %s failed: %s", self.lease_name, exc.reason)
            return False
        return True

    def _release_lease(self) -> None:
        try:
            lease = self._read()
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
                _request_timeout=self.request_timeout_seconds,
            )
            LOGGER.info("Released lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Could not release lease %s", self.lease_name, exc_info=True)

    def _set_leading(self, leading: bool) -> None:
        self._is_leader = leading
        METRICS.leader_state.set(1 if leading else 0)
        METRICS.leader_transitions_total.labels(
            transition="acquired" if leading else "lost"
        ).inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the lease until *stop_event* is set, invoking the callbacks on change."""
        LOGGER.info(
            "Campaigning for lease %s/%s as %s", self.namespace, self.lease_name, self.identity
        )
        METRICS.leader_state.set(0)
        campaign_started = time.monotonic()
        last_renewal = campaign_started

        while not stop_event.is_set():
            try:
                renewed = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Leader election cycle failed")
                renewed = False

            if renewed:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    LOGGER.info("Now leading as %s", self.identity)
                    self._set_leading(True)
                    METRICS.leader_acquire_latency_seconds.observe(last_renewal - campaign_started)
                    on_started_leading()
            elif self._is_leader:
                stale_for = time.monotonic() - last_renewal
                if stale_for >= self.timings.renew_deadline_seconds:
                    LOGGER.warning("Lease not renewed for %.2fs; stepping down", stale_for)
                    self._set_leading(False)
                    campaign_started = time.monotonic()
                    on_stopped_leading()
                else:
                    LOGGER.warning(
                        "Lease renewal failed %.2fs after the last success (deadline %ss)",
                        stale_for,
                        self.timings.renew_deadline_seconds,
                    )
            stop_event.wait(timeout=self.timings.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._set_leading(False)
            on_stopped_leading()


def default_identity() -> str:
    """Return this replica's lease identity: the pod name from ``HOSTNAME``."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
