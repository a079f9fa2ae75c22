from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from decimal import ROUND_CEILING, Decimal
from typing import Any

from kubernetes.utils import parse_quantity

LOGGER = logging.getLogger(__name__)

VPA_MANAGED_ANNOTATION = "vpa-managed"
VPA_UPDATER_ANNOTATION = "vpa-updater.client.k8s.io/last-updated"
VPA_RESOURCE_NAME_ANNOTATION = "vpa.k8s.io/resource-name"
VPA_MANAGED_LABEL = "vpa.k8s.io/managed"

MEBIBYTE = 1024 * 1024


class Verdict(enum.Enum):
    MANAGED = "managed"
    UNMANAGED = "unmanaged"
    NO_OPINION = "no-opinion"


Rule = Callable[[Any], Verdict]


def _annotations(pod: Any) -> dict[str, str]:
    return getattr(getattr(pod, "metadata", None), "annotations", None) or {}


def _labels(pod: Any) -> dict[str, str]:
    return getattr(getattr(pod, "metadata", None), "labels", None) or {}


def explicit_annotation_rule(pod: Any) -> Verdict:
    """``vpa-managed`` decides outright when present: only ``"true"`` opts in."""
    annotations = _annotations(pod)
    if VPA_MANAGED_ANNOTATION not in annotations:
        return Verdict.NO_OPINION
    if annotations[VPA_MANAGED_ANNOTATION] == "true":
        return Verdict.MANAGED
    return Verdict.UNMANAGED


def vpa_updater_annotation_rule(pod: Any) -> Verdict:
    if VPA_UPDATER_ANNOTATION in _annotations(pod):
        return Verdict.MANAGED
    return Verdict.NO_OPINION


def vpa_resource_name_rule(pod: Any) -> Verdict:
    if _annotations(pod).get(VPA_RESOURCE_NAME_ANNOTATION):
        return Verdict.MANAGED
    return Verdict.NO_OPINION


def vpa_label_rule(pod: Any) -> Verdict:
    if VPA_MANAGED_LABEL in _labels(pod):
        return Verdict.MANAGED
    return Verdict.NO_OPINION


def _quantity(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        quantity = parse_quantity(raw)
    except (ValueError, TypeError):
        return None
    if not quantity.is_finite():
        return None
    return quantity


def _is_non_round_cpu(raw: Any) -> bool:
    quantity = _quantity(raw)
    if quantity is None:
        return False
    millis = int((quantity * 1000).to_integral_value(rounding=ROUND_CEILING))
    return millis > 0 and millis % 100 != 0 and millis % 50 != 0


def _is_non_round_memory(raw: Any) -> bool:
    quantity = _quantity(raw)
    if quantity is None:
        return False
    value = int(quantity.to_integral_value(rounding=ROUND_CEILING))
    return value > 0 and value % MEBIBYTE != 0


def _resource_maps(container: Any) -> Iterable[dict[str, Any]]:
    resources = getattr(container, "resources", None)
    for attr in ("requests", "limits"):
        values = getattr(resources, attr, None)
        if values:
            yield values


def recommended_resources_rule(pod: Any) -> Verdict:
    """Guess VPA involvement from precise, non-hand-picked resource values.

    Only applies to owned pods. A CPU value in millicores that is not a
    multiple of 50 or 100, or a memory value that is not a whole number of
    MiB, looks computed rather than authored. Round recommendations are
    missed; unparseable quantities are ignored.
    """
    metadata = getattr(pod, "metadata", None)
    if not getattr(metadata, "owner_references", None):
        return Verdict.NO_OPINION

    containers = getattr(getattr(pod, "spec", None), "containers", None) or []
    for container in containers:
        for values in _resource_maps(container):
            if _is_non_round_cpu(values.get("cpu")):
                return Verdict.MANAGED
            if _is_non_round_memory(values.get("memory")):
                return Verdict.MANAGED
    return Verdict.NO_OPINION


RULES: tuple[tuple[str, Rule], ...] = (
    ("explicit-annotation", explicit_annotation_rule),
    ("vpa-updater-annotation", vpa_updater_annotation_rule),
    ("vpa-resource-name-annotation", vpa_resource_name_rule),
    ("vpa-managed-label", vpa_label_rule),
    ("recommended-resources", recommended_resources_rule),
)


def classify(
    pod: Any,
    rules: tuple[tuple[str, Rule], ...] = RULES,
) -> tuple[str, Verdict]:
    """Return ``(rule_name, verdict)`` from the first rule with an opinion."""
    for name, rule in rules:
        verdict = rule(pod)
        if verdict is not Verdict.NO_OPINION:
            return name, verdict
    return "default", Verdict.UNMANAGED


def is_managed(pod: Any) -> bool:
    """Return True when the pod is subject to drain protection."""
    rule_name, verdict = classify(pod)
    LOGGER.debug(
        "Pod %s classified %s by rule %s",
        getattr(getattr(pod, "metadata", None), "name", "<unknown>"),
        verdict.value,
        rule_name,
    )
    return verdict is Verdict.MANAGED
