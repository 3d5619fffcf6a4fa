# ABOUTME: Live cluster corrections applied to merged values before deployment
# ABOUTME: External config/secret hash stamping and HPA replica count preservation

"""
Live-state adjustments.

=============================================================================
WHY LOOK AT THE CLUSTER?
=============================================================================

Merged values describe what SHOULD run, but two facts only the cluster knows:

1. EXTERNAL CONFIG: config maps and secrets marked ``external`` are managed
   outside the platform. When their data changes nothing in the values
   changes, so pods would never restart. A SHA-256 of their live data is
   stamped into the values; a changed hash changes the pod template.

2. AUTOSCALER DECISIONS: an HPA may have scaled the release to 7 replicas.
   Redeploying with the chart's ``replicaCount: 2`` would undo that. The
   live ``currentReplicas`` is written back, clamped into the chart's
   [min, max] bounds.

Virtual environments have no cluster behind them and skip both checks.

=============================================================================
FAILURE POLICY
=============================================================================

    hash stamping      any failure logged, never aborts the trigger
    STOP               live HPA not consulted
    preferred version  any failure -> 412
    HPA lookup         not found   -> no-op (hibernated app)
                       bad request -> 412
                       timeout     -> 408
                       otherwise   -> propagated
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from typing import TYPE_CHECKING, Any

import structlog

from gitops_manifest.errors import ApiError, KubernetesError
from gitops_manifest.manifest.autoscaling import (
    apply_custom_chart_scaling,
    fetch_required_replica_count,
    get_autoscaling_request,
    json_number,
)
from gitops_manifest.models import DeploymentType
from gitops_manifest.utils.jsonpatch import ValuesDocument, parse_number

if TYPE_CHECKING:
    from gitops_manifest.interfaces import KubernetesService
    from gitops_manifest.models import Environment, HpaResourceRequest

logger = structlog.get_logger(__name__)

CONFIG_HASH_PATH = "devtronInternal.containerSpecs.ConfigHash"
SECRET_HASH_PATH = "devtronInternal.containerSpecs.SecretHash"

PREFERRED_VERSION_MESSAGE = "unable to find preferred version for hpa resource"
TIMEOUT_MESSAGE = "taking longer than expected, please try again later"


def data_hash(data: dict[str, Any]) -> str:
    """SHA-256 (hex) of the canonical JSON encoding of ``data``."""
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()


class LiveStateAdjuster:
    """Applies live cluster state to merged values."""

    def __init__(self, kubernetes: KubernetesService, timeout: float = 30.0) -> None:
        self._kubernetes = kubernetes
        self._timeout = timeout

    async def adjust(
        self,
        merged: bytes,
        *,
        environment: Environment,
        cluster_id: int,
        namespace: str,
        app_name: str,
        deployment_type: DeploymentType,
        external_cm_list: list[str],
        external_cs_list: list[str],
        pipeline_id: int = 0,
    ) -> bytes:
        """
        Stamp external hashes and preserve autoscaling state.

        Raises:
            ApiError: HPA lookup or custom chart scaling keys failed.
            KubernetesError: Unclassified cluster failure during HPA lookup.
        """
        if environment.is_virtual:
            return merged

        values = ValuesDocument.loads(merged)
        log = logger.bind(pipeline_id=pipeline_id, cluster_id=cluster_id, namespace=namespace)

        try:
            await self.stamp_external_hashes(
                values, cluster_id, namespace, external_cm_list, external_cs_list
            )
        except Exception as e:
            error = e.to_api_error() if isinstance(e, KubernetesError) else e
            log.warning("Failed to update external config map / secret hash", error=str(error))

        await self.preserve_autoscaling(values, cluster_id, namespace, app_name, deployment_type)
        return values.dumps()

    # =========================================================================
    # EXTERNAL HASH STAMPING
    # =========================================================================

    async def stamp_external_hashes(
        self,
        values: ValuesDocument,
        cluster_id: int,
        namespace: str,
        external_cm_list: list[str],
        external_cs_list: list[str],
    ) -> None:
        if external_cm_list:
            async with asyncio.timeout(self._timeout):
                config_maps = await self._kubernetes.get_config_maps(
                    cluster_id, namespace, external_cm_list
                )
            if config_maps:
                values.set(CONFIG_HASH_PATH, data_hash(config_maps))

        if external_cs_list:
            async with asyncio.timeout(self._timeout):
                secrets = await self._kubernetes.get_secrets(
                    cluster_id, namespace, external_cs_list
                )
            if secrets:
                values.set(SECRET_HASH_PATH, data_hash(secrets))

    # =========================================================================
    # AUTOSCALING PRESERVATION
    # =========================================================================

    async def preserve_autoscaling(
        self,
        values: ValuesDocument,
        cluster_id: int,
        namespace: str,
        app_name: str,
        deployment_type: DeploymentType,
    ) -> None:
        request = get_autoscaling_request(values, app_name)
        log = logger.bind(cluster_id=cluster_id, namespace=namespace, hpa=request.resource_name)

        if request.is_enable and deployment_type != DeploymentType.STOP:
            manifest = await self.get_hpa_manifest(cluster_id, namespace, request)
            current = (manifest.get("status") or {}).get("currentReplicas")
            # currentReplicas is absent while the HPA is still computing
            if current is not None:
                replicas = fetch_required_replica_count(
                    parse_number(current), request.req_max_replicas, request.req_min_replicas
                )
                log.info("Preserving live replica count", current=current, replica_count=replicas)
                values.set("replicaCount", json_number(replicas))
        elif request.is_enable:
            log.debug("Stopped release, live replica count not preserved")
        else:
            log.debug("Autoscaling is not enabled")

        apply_custom_chart_scaling(values, deployment_type)

    async def get_hpa_manifest(
        self, cluster_id: int, namespace: str, request: HpaResourceRequest
    ) -> dict[str, Any]:
        """Live HPA manifest, or an empty dict if the HPA does not exist."""
        log = logger.bind(cluster_id=cluster_id, hpa=request.resource_name)

        try:
            async with asyncio.timeout(self._timeout):
                version = await self._kubernetes.get_preferred_version(cluster_id, request.group)
        except KubernetesError as e:
            internal = PREFERRED_VERSION_MESSAGE if e.is_not_found else str(e)
            raise ApiError.precondition_failed(PREFERRED_VERSION_MESSAGE, internal) from e
        except TimeoutError as e:
            raise ApiError.precondition_failed(
                PREFERRED_VERSION_MESSAGE, "request timed out"
            ) from e
        request.version = version

        try:
            async with asyncio.timeout(self._timeout):
                return await self._kubernetes.get_resource(
                    cluster_id,
                    namespace,
                    request.group,
                    version,
                    request.kind,
                    request.resource_name,
                )
        except TimeoutError as e:
            log.error("Targeted HPA resource could not be served in time")
            raise ApiError.request_timeout(TIMEOUT_MESSAGE, "request timed out") from e
        except KubernetesError as e:
            if e.is_not_found:
                return {}
            if e.is_bad_request:
                log.error("Bad request while fetching HPA resource", error=str(e))
                raise ApiError.precondition_failed(e.message, str(e)) from e
            if e.is_server_timeout:
                log.error("Targeted HPA resource could not be served", error=str(e))
                raise ApiError.request_timeout(TIMEOUT_MESSAGE, str(e)) from e
            log.error("Failed to fetch HPA resource", error=str(e))
            raise
