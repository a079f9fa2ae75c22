from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from drain_controller.src.kube import DEFAULT_REQUEST_TIMEOUT_SECONDS, is_not_found
from drain_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

POD_RUNNING = "Running"
POD_READY = "Ready"


class TrafficProbeError(RuntimeError):
    """Service or endpoint state could not be read for a pod.

    The provisional answer is always "traffic present": callers must hold
    the pod rather than release it on this error.
    """

    assume_active = True

    def __init__(self, namespace: str, name: str, detail: str) -> None:
        self.namespace = namespace
        self.name = name
        super().__init__(f"traffic probe failed for pod {namespace}/{name}: {detail}")


def ready_condition_status(pod: Any) -> str | None:
    """Return the status string of the pod's Ready condition, or None if absent."""
    conditions = getattr(getattr(pod, "status", None), "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == POD_READY:
            return getattr(condition, "status", None)
    return None


def is_pod_ready(pod: Any) -> bool:
    return ready_condition_status(pod) == "True"


def _has_container_ports(pod: Any) -> bool:
    containers = getattr(getattr(pod, "spec", None), "containers", None) or []
    return any(getattr(container, "ports", None) for container in containers)


def selector_matches(selector: dict[str, str] | None, labels: dict[str, str]) -> bool:
    """Equality-based service selector match; an empty selector matches nothing."""
    if not selector:
        return False
    return all(labels.get(key) == value for key, value in selector.items())


class TrafficProbe:
    """Infers whether a pod still receives traffic from service endpoint membership.

    A pod counts as serving when it is Running, exposes at least one
    container port, is not reporting Ready=False, and its IP is listed as a
    ready address in the Endpoints of some service in its namespace whose
    selector matches the pod's labels. This proves membership in a traffic
    target set, not that a connection is actually open.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.request_timeout_seconds = request_timeout_seconds

    def has_active_connections(self, pod: Any) -> bool:
        metadata = getattr(pod, "metadata", None)
        name = getattr(metadata, "name", None) or "<unknown>"
        status = getattr(pod, "status", None)
        phase = getattr(status, "phase", None)

        if phase != POD_RUNNING:
            LOGGER.debug("Pod %s is %s, no active connections", name, phase)
            return False

        containers = getattr(getattr(pod, "spec", None), "containers", None) or []
        if not containers:
            return False

        if not _has_container_ports(pod):
            LOGGER.debug("Pod %s exposes no ports, assuming no active connections", name)
            return False

        ready = ready_condition_status(pod)
        if ready is not None and ready != "True":
            LOGGER.debug("Pod %s is not ready, assuming no active connections", name)
            return False

        return self._is_service_endpoint(pod)

    def _is_service_endpoint(self, pod: Any) -> bool:
        metadata = pod.metadata
        namespace = metadata.namespace
        name = metadata.name

        try:
            services = self.core_api.list_namespaced_service(
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as exc:
            METRICS.probe_errors_total.inc()
            raise TrafficProbeError(namespace, name, f"listing services: {exc}") from exc

        pod_ip = getattr(getattr(pod, "status", None), "pod_ip", None)
        if not pod_ip:
            LOGGER.debug("Pod %s has no IP address", name)
            return False

        labels = metadata.labels or {}
        for service in getattr(services, "items", None) or []:
            selector = getattr(getattr(service, "spec", None), "selector", None)
            if not selector_matches(selector, labels):
                continue

            service_name = service.metadata.name
            try:
                endpoints = self.core_api.read_namespaced_endpoints(
                    name=service_name,
                    namespace=namespace,
                    _request_timeout=self.request_timeout_seconds,
                )
            except ApiException as exc:
                if is_not_found(exc):
                    continue
                METRICS.probe_errors_total.inc()
                raise TrafficProbeError(
                    namespace, name, f"reading endpoints {service_name}: {exc.reason}"
                ) from exc
            except Exception as exc:
                METRICS.probe_errors_total.inc()
                raise TrafficProbeError(
                    namespace, name, f"reading endpoints {service_name}: {exc}"
                ) from exc

            for subset in getattr(endpoints, "subsets", None) or []:
                for address in getattr(subset, "addresses", None) or []:
                    if getattr(address, "ip", None) == pod_ip:
                        LOGGER.debug(
                            "Pod %s (%s) found in endpoints of service %s",
                            name,
                            pod_ip,
                            service_name,
                        )
                        return True

        LOGGER.debug("Pod %s not found in any service endpoints", name)
        return False
