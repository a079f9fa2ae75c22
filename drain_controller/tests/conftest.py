from __future__ import annotations

import copy
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from kubernetes.client import (
    ApiException,
    V1ConfigMap,
    V1Container,
    V1ContainerPort,
    V1EndpointAddress,
    V1Endpoints,
    V1EndpointSubset,
    V1ListMeta,
    V1ObjectMeta,
    V1OwnerReference,
    V1Pod,
    V1PodCondition,
    V1PodList,
    V1PodSpec,
    V1PodStatus,
    V1ResourceRequirements,
    V1Service,
    V1ServiceList,
    V1ServiceSpec,
)

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeCoreApi:
    """In-memory stand-in for the CoreV1Api calls the controller makes.

    Pods carry a ``resource_version`` that is bumped on every successful
    replace; a replace with a stale version fails with 409 like the API
    server does.
    """

    def __init__(self) -> None:
        self.pods: dict[tuple[str, str], V1Pod] = {}
        self.services: dict[str, list[V1Service]] = {}
        self.endpoints: dict[tuple[str, str], V1Endpoints] = {}
        self.config_maps: dict[tuple[str, str], V1ConfigMap] = {}
        self.read_pod_errors: list[ApiException] = []
        self.replace_errors: list[ApiException] = []
        self.list_service_error: Exception | None = None
        self.endpoint_errors: dict[str, ApiException] = {}
        self.config_map_error: Exception | None = None
        self.replace_calls: list[tuple[str, str, list[str]]] = []
        self.request_timeouts: list[Any] = []

    def add_pod(self, pod: V1Pod) -> V1Pod:
        if pod.metadata.resource_version is None:
            pod.metadata.resource_version = "1"
        self.pods[(pod.metadata.namespace, pod.metadata.name)] = pod
        return pod

    def stored_finalizers(self, namespace: str, name: str) -> list[str]:
        return list(self.pods[(namespace, name)].metadata.finalizers or [])

    def read_namespaced_pod(self, name: str, namespace: str, _request_timeout: Any = None) -> V1Pod:
        self.request_timeouts.append(_request_timeout)
        if self.read_pod_errors:
            raise self.read_pod_errors.pop(0)
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(pod)

    def replace_namespaced_pod(
        self, name: str, namespace: str, body: V1Pod, _request_timeout: Any = None
    ) -> V1Pod:
        self.request_timeouts.append(_request_timeout)
        if self.replace_errors:
            raise self.replace_errors.pop(0)
        stored = self.pods.get((namespace, name))
        if stored is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != stored.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        updated = copy.deepcopy(body)
        updated.metadata.resource_version = str(int(stored.metadata.resource_version) + 1)
        self.pods[(namespace, name)] = updated
        self.replace_calls.append((namespace, name, list(updated.metadata.finalizers or [])))
        return copy.deepcopy(updated)

    def list_namespaced_service(self, namespace: str, _request_timeout: Any = None) -> V1ServiceList:
        if self.list_service_error is not None:
            raise self.list_service_error
        return V1ServiceList(items=list(self.services.get(namespace, [])))

    def read_namespaced_endpoints(
        self, name: str, namespace: str, _request_timeout: Any = None
    ) -> V1Endpoints:
        if name in self.endpoint_errors:
            raise self.endpoint_errors[name]
        endpoints = self.endpoints.get((namespace, name))
        if endpoints is None:
            raise ApiException(status=404, reason="Not Found")
        return endpoints

    def read_namespaced_config_map(
        self, name: str, namespace: str, _request_timeout: Any = None
    ) -> V1ConfigMap:
        if self.config_map_error is not None:
            raise self.config_map_error
        config_map = self.config_maps.get((namespace, name))
        if config_map is None:
            raise ApiException(status=404, reason="Not Found")
        return config_map

    def set_config(self, data: dict[str, str] | None, namespace: str = "kube-system") -> None:
        self.config_maps[(namespace, "vpa-graceful-drain-config")] = V1ConfigMap(
            metadata=V1ObjectMeta(name="vpa-graceful-drain-config", namespace=namespace),
            data=data,
        )

    def add_service(
        self,
        namespace: str,
        name: str,
        selector: dict[str, str] | None,
        addresses: list[str] | None = None,
    ) -> None:
        self.services.setdefault(namespace, []).append(
            V1Service(
                metadata=V1ObjectMeta(name=name, namespace=namespace),
                spec=V1ServiceSpec(selector=selector),
            )
        )
        if addresses is not None:
            self.endpoints[(namespace, name)] = V1Endpoints(
                metadata=V1ObjectMeta(name=name, namespace=namespace),
                subsets=[
                    V1EndpointSubset(addresses=[V1EndpointAddress(ip=ip) for ip in addresses])
                ],
            )

    def list_pod_for_all_namespaces(self, **kwargs: Any) -> V1PodList:
        return V1PodList(
            items=[copy.deepcopy(pod) for pod in self.pods.values()],
            metadata=V1ListMeta(resource_version="100"),
        )


def build_pod(
    name: str = "web-abc12",
    namespace: str = "default",
    annotations: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    owned: bool = True,
    deleted_seconds_ago: float | None = None,
    finalizers: list[str] | None = None,
    phase: str = "Running",
    ready: str | None = "True",
    pod_ip: str | None = "10.0.0.5",
    ports: bool = True,
    containers: bool = True,
    requests: dict[str, str] | None = None,
    limits: dict[str, str] | None = None,
) -> V1Pod:
    owner_references = (
        [V1OwnerReference(api_version="apps/v1", kind="ReplicaSet", name="web-rs", uid="uid-1")]
        if owned
        else None
    )
    deletion_timestamp = (
        NOW - timedelta(seconds=deleted_seconds_ago) if deleted_seconds_ago is not None else None
    )
    container_list = []
    if containers:
        container_list.append(
            V1Container(
                name="app",
                image="example/web:1.0",
                ports=[V1ContainerPort(container_port=8080)] if ports else None,
                resources=V1ResourceRequirements(requests=requests, limits=limits),
            )
        )
    conditions = [V1PodCondition(type="Ready", status=ready)] if ready is not None else None
    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations,
            labels=labels if labels is not None else {"app": "web"},
            owner_references=owner_references,
            deletion_timestamp=deletion_timestamp,
            finalizers=finalizers,
            resource_version="1",
        ),
        spec=V1PodSpec(containers=container_list),
        status=V1PodStatus(phase=phase, pod_ip=pod_ip, conditions=conditions),
    )


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def make_pod() -> Callable[..., V1Pod]:
    return build_pod


@pytest.fixture
def now() -> datetime:
    return NOW
