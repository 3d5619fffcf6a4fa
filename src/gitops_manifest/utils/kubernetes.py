# ABOUTME: Kubernetes API client wrapper with retry logic and error handling
# ABOUTME: Provides async access to HPAs, config maps and secrets across clusters

"""
Kubernetes API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The manifest pipeline needs a handful of LIVE reads from the target cluster
before it hands values to the chart renderer:

1. HPA STATE: current replica count of the release's autoscaler, so a
   redeploy does not reset what the autoscaler decided
2. API DISCOVERY: the preferred version of the autoscaling API group
3. EXTERNAL CONFIG: data of config maps and secrets the platform does not
   own, so pods restart when that data changes (hash stamping)

This module provides:

- KubernetesClient: one async HTTP client per API server
- ClusterRegistry: all configured clusters, addressed by cluster id

=============================================================================
KUBERNETES REST PATHS
=============================================================================

    GET /apis/{group}                                       - API group discovery
    GET /api/v1/namespaces/{ns}/configmaps/{name}           - core resources
    GET /apis/{group}/{version}/namespaces/{ns}/{plural}/{name}

Authentication is via Bearer token in the Authorization header:
    Authorization: Bearer <service-account-token>

Errors come back as a Status object:
    {"kind": "Status", "message": "...", "reason": "NotFound", "code": 404}
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_manifest.errors import KubernetesError

if TYPE_CHECKING:
    from gitops_manifest.config import ClusterConnection

logger = structlog.get_logger(__name__)

# =============================================================================
# SECRET MASKING
# =============================================================================
# Responses are logged at debug level. Secret payloads (and anything that
# looks like a credential) are masked in the LOGGED copy only; callers always
# receive the real data, because hash stamping needs it.

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]

SENSITIVE_KEYS = frozenset(
    [
        "token",
        "password",
        "secret",
        "api_key",
        "apikey",
        "authorization",
        "credentials",
        "data",
        "stringdata",
        "binarydata",
    ]
)


def mask_sensitive(data: Any) -> Any:
    """Return a copy of ``data`` with sensitive values replaced by a marker."""
    if isinstance(data, str):
        masked = data
        for pattern, replacement in SECRET_PATTERNS:
            masked = pattern.sub(replacement, masked)
        return masked
    if isinstance(data, dict):
        return {
            k: "***MASKED***" if k.lower() in SENSITIVE_KEYS else mask_sensitive(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    return data


# Kinds whose plural is not simply "<kind>s".
_IRREGULAR_PLURALS = {
    "ingress": "ingresses",
    "networkpolicy": "networkpolicies",
    "podsecuritypolicy": "podsecuritypolicies",
}


def resource_plural(kind: str) -> str:
    lowered = kind.lower()
    return _IRREGULAR_PLURALS.get(lowered, f"{lowered}s")


def resource_path(namespace: str, group: str, version: str, kind: str, name: str) -> str:
    prefix = f"/api/{version}" if not group else f"/apis/{group}/{version}"
    return f"{prefix}/namespaces/{namespace}/{resource_plural(kind)}/{name}"


# =============================================================================
# CLIENT
# =============================================================================


class KubernetesClient:
    """
    Async Kubernetes API client with retry logic.

    LIFECYCLE:
    ----------
        async with KubernetesClient(cluster) as client:
            hpa = await client.get_resource("prod", "autoscaling", "v2",
                                            "HorizontalPodAutoscaler", "web-hpa")

    RETRY LOGIC:
    ------------
    Timeouts are retried with exponential backoff (3 attempts). A request that
    still times out becomes a KubernetesError with reason "Timeout" so callers
    can classify it like any other API failure.
    """

    def __init__(
        self,
        cluster: ClusterConnection,
        timeout: float = 30.0,
        mask_secrets: bool = True,
    ) -> None:
        self._cluster = cluster
        self._timeout = timeout
        self._mask_secrets = mask_secrets
        self._client: httpx.AsyncClient | None = None

    @property
    def cluster(self) -> ClusterConnection:
        return self._cluster

    async def __aenter__(self) -> KubernetesClient:
        self._client = httpx.AsyncClient(
            base_url=self._cluster.url,
            headers={
                "Authorization": f"Bearer {self._cluster.token.get_secret_value()}",
                "Accept": "application/json",
            },
            timeout=self._timeout,
            verify=not self._cluster.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str) -> dict[str, Any]:
        """
        Make HTTP request to the API server.

        Raises:
            KubernetesError: On API error (4xx, 5xx)
            httpx.TimeoutException: On request timeout (after retries)
            RuntimeError: If client not initialized (forgot async with)
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, cluster=self._cluster.name)
        log.debug("Making Kubernetes API request")

        response = await self._client.request(method, path)

        if response.status_code >= 400:
            error_body = response.text
            log.warning("Kubernetes API error", status=response.status_code, body=error_body[:200])

            message = f"HTTP {response.status_code}"
            reason = None
            details = None
            try:
                error_json = response.json()
                message = error_json.get("message", message)
                reason = error_json.get("reason")
                details = (error_json.get("details") or {}).get("name")
            except ValueError:
                details = error_body[:200] if error_body else None

            raise KubernetesError(
                code=response.status_code,
                message=message,
                reason=reason,
                details=details,
            )

        result = response.json() if response.content else {}
        log.debug(
            "Kubernetes API response",
            body=mask_sensitive(result) if self._mask_secrets else result,
        )
        return result if isinstance(result, dict) else {}

    async def _get(self, path: str) -> dict[str, Any]:
        try:
            return await self._request("GET", path)
        except httpx.TimeoutException as e:
            raise KubernetesError(
                code=504,
                message="request to the Kubernetes API server timed out",
                reason="Timeout",
                details=str(e) or None,
            ) from e

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get_preferred_version(self, group: str) -> str:
        """
        Preferred served version of an API group.

        Kubernetes API: GET /apis/{group}
        """
        data = await self._get(f"/apis/{group}")
        version = (data.get("preferredVersion") or {}).get("version", "")
        if not version:
            raise KubernetesError(
                code=404,
                message=f"no preferred version served for API group {group}",
                reason="NotFound",
            )
        return version

    async def get_resource(
        self, namespace: str, group: str, version: str, kind: str, name: str
    ) -> dict[str, Any]:
        """Full manifest of a namespaced resource."""
        return await self._get(resource_path(namespace, group, version, kind, name))

    async def get_config_maps(self, namespace: str, names: list[str]) -> dict[str, dict[str, Any]]:
        """
        Data of the named config maps.

        Returns:
            {name: {"data": {...}, "binaryData": {...}}} with empty sections omitted.
        """
        result: dict[str, dict[str, Any]] = {}
        for name in names:
            manifest = await self._get(f"/api/v1/namespaces/{namespace}/configmaps/{name}")
            result[name] = _pick(manifest, "data", "binaryData")
        return result

    async def get_secrets(self, namespace: str, names: list[str]) -> dict[str, dict[str, Any]]:
        """
        Data of the named secrets.

        Returns:
            {name: {"data": {...}, "stringData": {...}}} with empty sections omitted.
        """
        result: dict[str, dict[str, Any]] = {}
        for name in names:
            manifest = await self._get(f"/api/v1/namespaces/{namespace}/secrets/{name}")
            result[name] = _pick(manifest, "data", "stringData")
        return result


def _pick(manifest: dict[str, Any], *keys: str) -> dict[str, Any]:
    return {key: manifest[key] for key in keys if manifest.get(key)}


# =============================================================================
# CLUSTER REGISTRY
# =============================================================================


class ClusterRegistry:
    """
    All configured clusters, addressed by cluster id.

    Implements the KubernetesService contract used by the live-state checks.
    Open it once (``async with``) and share it between triggers; every client
    is closed on exit.
    """

    def __init__(
        self,
        clusters: list[ClusterConnection],
        timeout: float = 30.0,
        mask_secrets: bool = True,
    ) -> None:
        self._clients = {
            cluster.id: KubernetesClient(cluster, timeout=timeout, mask_secrets=mask_secrets)
            for cluster in clusters
        }

    async def __aenter__(self) -> ClusterRegistry:
        for client in self._clients.values():
            await client.__aenter__()
            logger.info(
                "Connected to cluster", cluster_id=client.cluster.id, url=client.cluster.url
            )
        return self

    async def __aexit__(self, *args: object) -> None:
        for cluster_id, client in self._clients.items():
            await client.__aexit__(None, None, None)
            logger.info("Disconnected from cluster", cluster_id=cluster_id)

    def get_client(self, cluster_id: int) -> KubernetesClient:
        if cluster_id not in self._clients:
            available = sorted(self._clients)
            raise ValueError(f"Unknown cluster '{cluster_id}'. Available: {available}")
        return self._clients[cluster_id]

    async def get_preferred_version(self, cluster_id: int, group: str) -> str:
        return await self.get_client(cluster_id).get_preferred_version(group)

    async def get_resource(
        self,
        cluster_id: int,
        namespace: str,
        group: str,
        version: str,
        kind: str,
        name: str,
    ) -> dict[str, Any]:
        return await self.get_client(cluster_id).get_resource(namespace, group, version, kind, name)

    async def get_config_maps(
        self, cluster_id: int, namespace: str, names: list[str]
    ) -> dict[str, dict[str, Any]]:
        return await self.get_client(cluster_id).get_config_maps(namespace, names)

    async def get_secrets(
        self, cluster_id: int, namespace: str, names: list[str]
    ) -> dict[str, dict[str, Any]]:
        return await self.get_client(cluster_id).get_secrets(namespace, names)
