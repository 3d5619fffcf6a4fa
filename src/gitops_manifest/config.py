# ABOUTME: Configuration management for the manifest service
# ABOUTME: Handles environment variables, cluster connections and pipeline tunables

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the manifest service. It:

1. READS environment variables (like KUBE_API_URL, MANIFEST_LIVE_STATE_TIMEOUT)
2. VALIDATES them (URLs get a scheme, log levels are real levels, etc.)
3. PROVIDES typed access to settings throughout the application

=============================================================================
ARCHITECTURE: THREE CONFIGURATION CLASSES
=============================================================================

1. ClusterConnection: Configuration for ONE Kubernetes API server
   - Cluster id (as referenced by environments), URL, token, TLS settings
   - Used when the service talks to several target clusters

2. ManifestSettings: Tunables of the manifest pipeline (MANIFEST_* prefix)
   - Release counter repair attempts, live-state timeout, secret masking,
     audit log location

3. ServerSettings: Main configuration container
   - Primary cluster from environment
   - Additional clusters
   - Log level and log format
   - Contains ManifestSettings as nested object

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Primary cluster:
    KUBE_API_URL        -> API server URL
    KUBE_API_TOKEN      -> Bearer token (service account token)
    KUBE_INSECURE       -> Skip TLS certificate verification
    KUBE_CLUSTER_ID     -> Cluster id used by environments (default: 1)

Pipeline settings (MANIFEST_ prefix):
    MANIFEST_DUPLICATE_VERIFICATION_ATTEMPTS -> Release counter repair bound (default: 5)
    MANIFEST_LIVE_STATE_TIMEOUT              -> Seconds allowed per cluster lookup
    MANIFEST_CLUSTER_REQUEST_TIMEOUT         -> HTTP timeout of the cluster client
    MANIFEST_MASK_SECRETS                    -> Mask secret values in logged responses
    MANIFEST_AUDIT_LOG                       -> Path to audit log file
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# CLUSTER CONNECTION
# =============================================================================


class ClusterConnection(BaseModel):
    """
    Configuration for a single Kubernetes API server.

    Environments reference clusters by numeric id; the live-state checks
    (HPA replica counts, external config map hashes) look the connection up
    by that id.

    USAGE EXAMPLE:
    --------------
        cluster = ClusterConnection(
            id=2,
            name="prod-eu",
            url="https://10.0.0.1:6443",
            token=SecretStr("service-account-token"),
        )
    """

    model_config = {"extra": "ignore"}

    id: int = Field(description="Cluster id as referenced by environments")
    url: str = Field(description="Kubernetes API server URL")
    token: SecretStr = Field(description="Bearer token for the API server")
    name: str = Field(default="default", description="Cluster name used in logs")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure URL has a scheme (https by default) and no trailing slash."""
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# MANIFEST PIPELINE SETTINGS
# =============================================================================


class ManifestSettings(BaseSettings):
    """Tunables of the manifest pipeline."""

    model_config = SettingsConfigDict(env_prefix="MANIFEST_")

    duplicate_verification_attempts: int = Field(
        default=5,
        ge=1,
        description="Maximum verify-and-repair rounds for a new release counter",
    )
    # Concurrent triggers of the same pipeline may both read the same
    # "current max" counter. Each round re-checks the row and, if another
    # row holds the same counter with a lower id, moves to max + 1.

    live_state_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds allowed for each live cluster lookup",
    )
    # A slow or unreachable cluster must not hang a deployment trigger.

    cluster_request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout of the Kubernetes API client",
    )

    mask_secrets: bool = Field(
        default=True,
        description="Mask sensitive values in logged cluster responses",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # If set, one JSON line per trigger is appended to this file.
    # When None (default), audit entries go to stdout through structlog.


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Main configuration container.

    USAGE:
    ------
        settings = load_settings()
        cluster = settings.get_cluster(2)
        print(settings.manifest.duplicate_verification_attempts)
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_MANIFEST_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # PRIMARY CLUSTER (from environment)
    # -------------------------------------------------------------------------

    kube_api_url: str = Field(
        default="",
        validation_alias="KUBE_API_URL",
        description="Primary Kubernetes API server URL",
    )

    kube_api_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBE_API_TOKEN",
        description="Primary Kubernetes API token",
    )

    kube_insecure: bool = Field(
        default=False,
        validation_alias="KUBE_INSECURE",
        description="Skip TLS verification for primary cluster",
    )

    kube_cluster_id: int = Field(
        default=1,
        validation_alias="KUBE_CLUSTER_ID",
        description="Cluster id of the primary cluster",
    )

    # -------------------------------------------------------------------------
    # MULTI-CLUSTER SUPPORT
    # -------------------------------------------------------------------------

    additional_clusters: list[ClusterConnection] = Field(
        default_factory=list,
        description="Additional target clusters",
    )
    # Configured as a JSON array in GITOPS_MANIFEST_ADDITIONAL_CLUSTERS.

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON lines instead of console output",
    )

    manifest: ManifestSettings = Field(default_factory=ManifestSettings)

    @property
    def primary_cluster(self) -> ClusterConnection | None:
        """Primary cluster from KUBE_* variables, or None if KUBE_API_URL is unset."""
        if not self.kube_api_url:
            return None
        return ClusterConnection(
            id=self.kube_cluster_id,
            url=self.kube_api_url,
            token=self.kube_api_token,
            name="primary",
            insecure=self.kube_insecure,
        )

    @property
    def all_clusters(self) -> list[ClusterConnection]:
        clusters = []
        if self.primary_cluster:
            clusters.append(self.primary_cluster)
        clusters.extend(self.additional_clusters)
        return clusters

    def get_cluster(self, cluster_id: int) -> ClusterConnection | None:
        """
        Get cluster connection by id.

        Args:
            cluster_id: Cluster id as stored on the environment.

        Returns:
            ClusterConnection if configured, None otherwise.
        """
        for cluster in self.all_clusters:
            if cluster.id == cluster_id:
                return cluster
        return None


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ServerSettings:
    """
    Load settings from environment with validation.

    If GITOPS_MANIFEST_ENV_FILE is set, additional variables are read from
    that file (useful for local development).

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(
        _env_file=os.environ.get("GITOPS_MANIFEST_ENV_FILE"),
    )
