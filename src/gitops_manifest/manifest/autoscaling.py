# ABOUTME: Autoscaling helpers for merged chart values
# ABOUTME: Derives the live HPA target, clamps replica counts and handles custom chart scaling keys

"""
Autoscaling helpers.

Built-in charts declare autoscaling in one of two blocks:

    kedaAutoscaling: {enabled, minReplicaCount, maxReplicaCount}
        -> HPA "keda-hpa-<release>-keda"
    autoscaling:     {enabled, MinReplicas, MaxReplicas}
        -> HPA "<release>-hpa"

where ``<release>`` is ``fullnameOverride`` if set, else
``<app>-<nameOverride>`` if set, else the app name.

Custom charts instead name their own paths through four top-level keys
(``autoscalingEnabledPath``, ``replicaCountPath``, ``minReplicaCountPath``,
``maxReplicaCountPath``).
"""

from __future__ import annotations

from typing import Any

from gitops_manifest.errors import ApiError, PathNotFoundError
from gitops_manifest.models import DeploymentType, HpaResourceRequest
from gitops_manifest.utils.jsonpatch import ValuesDocument

AUTOSCALING_ENABLED_PATH_KEY = "autoscalingEnabledPath"
REPLICA_COUNT_PATH_KEY = "replicaCountPath"
MIN_REPLICA_COUNT_PATH_KEY = "minReplicaCountPath"
MAX_REPLICA_COUNT_PATH_KEY = "maxReplicaCountPath"

KEY_NOT_FOUND = "key not found"


def json_number(value: float) -> int | float:
    """Integral floats are written back as JSON integers."""
    return int(value) if float(value).is_integer() else value


def fetch_required_replica_count(current: float, max_replicas: float, min_replicas: float) -> float:
    """Clamp ``current`` into ``[min_replicas, max_replicas]``."""
    if current > max_replicas:
        return max_replicas
    if current < min_replicas:
        return min_replicas
    return current


def _release_name(values: ValuesDocument, app_name: str) -> str:
    fullname = values.get_or("fullnameOverride", "")
    if isinstance(fullname, str) and fullname:
        return fullname
    name = values.get_or("nameOverride", "")
    if isinstance(name, str) and name:
        return f"{app_name}-{name}"
    return app_name


def _bound(values: ValuesDocument, path: str) -> float:
    try:
        return values.get_number(path)
    except PathNotFoundError as e:
        raise ApiError.precondition_failed(f"empty value for key [{path}]", KEY_NOT_FOUND) from e


def get_autoscaling_request(values: ValuesDocument, app_name: str) -> HpaResourceRequest:
    """
    Work out which HPA (if any) governs the release described by ``values``.

    Raises:
        ApiError: Autoscaling is enabled but a replica bound is missing (412).
    """
    release = _release_name(values, app_name)
    request = HpaResourceRequest()

    if values.get_or("kedaAutoscaling.enabled") is True:
        request.is_enable = True
        request.req_max_replicas = _bound(values, "kedaAutoscaling.maxReplicaCount")
        request.req_min_replicas = _bound(values, "kedaAutoscaling.minReplicaCount")
        request.resource_name = f"keda-hpa-{release}-keda"
        return request

    if values.get_or("autoscaling.enabled") is True:
        request.is_enable = True
        request.req_max_replicas = _bound(values, "autoscaling.MaxReplicas")
        request.req_min_replicas = _bound(values, "autoscaling.MinReplicas")
        request.resource_name = f"{release}-hpa"
    return request


# =============================================================================
# CUSTOM CHART SCALING KEYS
# =============================================================================


def _custom_path(values: ValuesDocument, key: str) -> str:
    path = values.get_or(key)
    if not isinstance(path, str) or not path:
        raise ApiError.precondition_failed(f"empty value for key [{key}]", KEY_NOT_FOUND)
    return path


def _custom_value(values: ValuesDocument, key: str) -> float:
    try:
        return values.get_number(_custom_path(values, key))
    except PathNotFoundError as e:
        raise ApiError.precondition_failed(f"empty value for key [{key}]", KEY_NOT_FOUND) from e


def _set_custom(values: ValuesDocument, key: str, value: Any) -> None:
    values.set(_custom_path(values, key), value)


def custom_chart_replica_count(values: ValuesDocument) -> float:
    """Configured replica count of a custom chart, clamped into its own bounds."""
    min_replicas = _custom_value(values, MIN_REPLICA_COUNT_PATH_KEY)
    max_replicas = _custom_value(values, MAX_REPLICA_COUNT_PATH_KEY)
    replicas = _custom_value(values, REPLICA_COUNT_PATH_KEY)
    return fetch_required_replica_count(replicas, max_replicas, min_replicas)


def apply_custom_chart_scaling(values: ValuesDocument, deployment_type: DeploymentType) -> None:
    """
    Adjust custom chart scaling keys in place.

    STOP disables autoscaling and zeroes replica count, min and max. Any
    other deployment type clamps the replica count when autoscaling is
    enabled at the chart's own path.

    Raises:
        ApiError: A referenced path has no value (412).
    """
    if not values.has(AUTOSCALING_ENABLED_PATH_KEY):
        return

    if deployment_type == DeploymentType.STOP:
        _set_custom(values, AUTOSCALING_ENABLED_PATH_KEY, False)
        _set_custom(values, REPLICA_COUNT_PATH_KEY, 0)
        _set_custom(values, MIN_REPLICA_COUNT_PATH_KEY, 0)
        _set_custom(values, MAX_REPLICA_COUNT_PATH_KEY, 0)
        return

    enabled_path = _custom_path(values, AUTOSCALING_ENABLED_PATH_KEY)
    if values.get_or(enabled_path) is True:
        replicas = custom_chart_replica_count(values)
        _set_custom(values, REPLICA_COUNT_PATH_KEY, json_number(replicas))
