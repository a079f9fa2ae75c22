from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, V1Pod
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


def is_access_denied(exc: ApiException) -> bool:
    return exc.status in {401, 403}


def read_pod(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> V1Pod:
    """Fetch the latest copy of a pod straight from the API server."""
    return core_api.read_namespaced_pod(
        name=name,
        namespace=namespace,
        _request_timeout=timeout_seconds,
    )


def replace_pod_finalizers(
    core_api: CoreV1Api,
    pod: V1Pod,
    finalizers: list[str],
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> V1Pod:
    """Write *finalizers* onto *pod* in a single update.

    The pod's ``metadata.resourceVersion`` is sent unchanged, so the API
    server rejects the write with ``409 Conflict`` if the object changed
    since it was read.
    """
    pod.metadata.finalizers = finalizers
    return core_api.replace_namespaced_pod(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        body=pod,
        _request_timeout=timeout_seconds,
    )


def pod_key(pod: Any) -> tuple[str, str] | None:
    """Return ``(namespace, name)`` for a pod object, or None when incomplete."""
    metadata = getattr(pod, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        return None
    return namespace, name
