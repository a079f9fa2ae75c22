from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from drain_controller.src.kube import DEFAULT_REQUEST_TIMEOUT_SECONDS, is_not_found
from drain_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

GRACE_PERIOD_KEY = "gracePeriodSeconds"
DRAIN_TIMEOUT_KEY = "drainTimeoutSeconds"
NAMESPACE_SELECTOR_KEY = "namespaceSelector"

DEFAULT_GRACE_PERIOD_SECONDS = 30
DEFAULT_DRAIN_TIMEOUT_SECONDS = 300
MAX_GRACE_PERIOD_SECONDS = 3600
MAX_DRAIN_TIMEOUT_SECONDS = 7200

_INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")


class ConfigError(RuntimeError):
    """Raised when a drain configuration key fails validation.

    ``key`` names the offending ConfigMap key and ``rule`` the check it
    violated, so operators can fix the ConfigMap from the log line alone.
    """

    def __init__(self, key: str, rule: str, value: object = None) -> None:
        self.key = key
        self.rule = rule
        self.value = value
        super().__init__(f"invalid {key}: {rule} (got: {value!r})")


@dataclass(frozen=True)
class NamespaceSelector:
    """Include/exclude namespace lists.

    ``include=None`` means the key was absent. An explicitly empty
    ``include`` list is kept as ``()`` and matches no namespace at all.
    """

    include: tuple[str, ...] | None = None
    exclude: tuple[str, ...] = ()

    def matches(self, namespace: str) -> bool:
        if self.include is not None:
            return namespace in self.include
        return namespace not in self.exclude


def namespace_matches(namespace: str, selector: NamespaceSelector | None) -> bool:
    """Return True when *namespace* is in scope for *selector* (None matches all)."""
    if selector is None:
        return True
    return selector.matches(namespace)


@dataclass(frozen=True)
class DrainConfig:
    """Immutable drain configuration resolved once per reconcile."""

    grace_period_seconds: int = DEFAULT_GRACE_PERIOD_SECONDS
    drain_timeout_seconds: int = DEFAULT_DRAIN_TIMEOUT_SECONDS
    namespace_selector: NamespaceSelector | None = None

    def __post_init__(self) -> None:
        if self.drain_timeout_seconds < self.grace_period_seconds:
            raise ConfigError(
                DRAIN_TIMEOUT_KEY,
                f"must be >= {GRACE_PERIOD_KEY} ({self.grace_period_seconds})",
                self.drain_timeout_seconds,
            )

    @property
    def grace_period(self) -> timedelta:
        return timedelta(seconds=self.grace_period_seconds)

    @property
    def drain_timeout(self) -> timedelta:
        return timedelta(seconds=self.drain_timeout_seconds)


DEFAULT_CONFIG = DrainConfig()


def _parse_int(key: str, raw: str) -> int:
    if not isinstance(raw, str) or not _INTEGER_PATTERN.fullmatch(raw):
        raise ConfigError(key, "must be an integer number of seconds", raw)
    return int(raw)


def _parse_name_list(field_name: str, raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigError(
            NAMESPACE_SELECTOR_KEY,
            f"{field_name!r} must be a list of namespace names",
            raw,
        )
    return tuple(raw)


def parse_namespace_selector(raw: str) -> NamespaceSelector:
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(NAMESPACE_SELECTOR_KEY, f"malformed JSON: {exc}", raw) from exc

    if not isinstance(decoded, dict):
        raise ConfigError(
            NAMESPACE_SELECTOR_KEY,
            'must be a JSON object like {"include": [...], "exclude": [...]}',
            raw,
        )

    include_raw = decoded.get("include")
    exclude_raw = decoded.get("exclude")
    include = None if include_raw is None else _parse_name_list("include", include_raw)
    exclude = () if exclude_raw is None else _parse_name_list("exclude", exclude_raw)
    return NamespaceSelector(include=include, exclude=exclude)


def parse_config(data: Mapping[str, str] | None) -> DrainConfig:
    """Validate raw ConfigMap data into a :class:`DrainConfig`.

    Missing data or missing keys fall back to the defaults (30 s grace,
    300 s timeout, no namespace selector). The grace period is resolved
    before the drain timeout so the ``timeout >= grace`` rule compares
    against the final grace value. The first invalid key aborts the whole
    parse with a :class:`ConfigError`; unknown keys are ignored.
    """
    if not data:
        return DEFAULT_CONFIG

    grace_period = DEFAULT_GRACE_PERIOD_SECONDS
    if GRACE_PERIOD_KEY in data:
        grace_period = _parse_int(GRACE_PERIOD_KEY, data[GRACE_PERIOD_KEY])
        if grace_period < 0:
            raise ConfigError(GRACE_PERIOD_KEY, "must be non-negative", grace_period)
        if grace_period > MAX_GRACE_PERIOD_SECONDS:
            raise ConfigError(
                GRACE_PERIOD_KEY,
                f"must be <= {MAX_GRACE_PERIOD_SECONDS} (1 hour)",
                grace_period,
            )

    drain_timeout = DEFAULT_DRAIN_TIMEOUT_SECONDS
    if DRAIN_TIMEOUT_KEY in data:
        drain_timeout = _parse_int(DRAIN_TIMEOUT_KEY, data[DRAIN_TIMEOUT_KEY])
        if drain_timeout <= 0:
            raise ConfigError(DRAIN_TIMEOUT_KEY, "must be positive", drain_timeout)
        if drain_timeout > MAX_DRAIN_TIMEOUT_SECONDS:
            raise ConfigError(
                DRAIN_TIMEOUT_KEY,
                f"must be <= {MAX_DRAIN_TIMEOUT_SECONDS} (2 hours)",
                drain_timeout,
            )
    if drain_timeout < grace_period:
        raise ConfigError(
            DRAIN_TIMEOUT_KEY,
            f"must be >= {GRACE_PERIOD_KEY} ({grace_period})",
            drain_timeout,
        )

    selector = None
    if NAMESPACE_SELECTOR_KEY in data:
        selector = parse_namespace_selector(data[NAMESPACE_SELECTOR_KEY])

    return DrainConfig(
        grace_period_seconds=grace_period,
        drain_timeout_seconds=drain_timeout,
        namespace_selector=selector,
    )


class ConfigResolver:
    """Fetches and validates the drain ConfigMap on every call to :meth:`resolve`.

    Nothing is cached between reconciles except the last configuration that
    validated, which is the fallback when an operator saves a bad edit:

    - ConfigMap absent (404): defaults.
    - ConfigMap invalid: the error is logged with its key and rule, and the
      last valid configuration (or the defaults) stays in force.
    - Any other API failure: the :class:`ApiException` propagates so the
      caller can retry later.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        name: str,
        namespace: str,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.name = name
        self.namespace = namespace
        self.request_timeout_seconds = request_timeout_seconds
        self._last_valid: DrainConfig | None = None

    def resolve(self) -> DrainConfig:
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=self.name,
                namespace=self.namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if is_not_found(exc):
                LOGGER.debug(
                    "ConfigMap %s/%s not found; using defaults", self.namespace, self.name
                )
                self._last_valid = DEFAULT_CONFIG
                return DEFAULT_CONFIG
            raise

        try:
            resolved = parse_config(getattr(config_map, "data", None))
        except ConfigError as exc:
            METRICS.config_errors_total.labels(key=exc.key).inc()
            fallback = self._last_valid or DEFAULT_CONFIG
            LOGGER.error(
                "Rejected ConfigMap %s/%s: %s; keeping grace=%ss timeout=%ss",
                self.namespace,
                self.name,
                exc,
                fallback.grace_period_seconds,
                fallback.drain_timeout_seconds,
            )
            return fallback

        self._last_valid = resolved
        return resolved
