# ABOUTME: Domain records read and written by the manifest pipeline
# ABOUTME: Pipelines, charts, overrides, strategies, artifacts and config/secret documents

"""
Domain records for the manifest pipeline.

=============================================================================
WHAT IS IN HERE?
=============================================================================

Plain dataclasses for the rows the pipeline reads (Pipeline, Chart,
EnvConfigOverride, PipelineStrategy, CiArtifact, history rows) and writes
(PipelineOverride, lazily created EnvConfigOverride), plus the request and
response objects exchanged with the deployment trigger workflow.

Config map / secret documents are pydantic models instead of dataclasses:
they come in as user-authored JSON with many optional keys (mountPath,
subPath, esoSecretData, ...) that must survive a merge untouched, which
``extra="allow"`` gives for free.

=============================================================================
JSON SHAPES
=============================================================================

App-level and env-level documents are stored per kind:

    config maps: {"enabled": true, "maps": [{"name": "app-cm", ...}]}
    secrets:     {"enabled": true, "secrets": [{"name": "db", ...}]}

and wrapped under a root key when they take part in the values merge:

    {"ConfigMaps": {...}}       {"ConfigSecrets": {...}}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# ENUMS
# =============================================================================


class DeploymentConfigType(str, Enum):
    """Which configuration a trigger deploys with."""

    LAST_SAVED = "LAST_SAVED_CONFIG"
    SPECIFIC_TRIGGER = "SPECIFIC_TRIGGER_CONFIG"


class DeploymentType(str, Enum):
    UNKNOWN = "UNKNOWN"
    DEPLOY = "DEPLOY"
    ROLLBACK = "ROLLBACK"
    STOP = "STOP"
    START = "START"
    PRE = "PRE"
    POST = "POST"


class DeploymentStrategy(str, Enum):
    ROLLING = "ROLLING"
    BLUE_GREEN = "BLUE-GREEN"
    CANARY = "CANARY"
    RECREATE = "RECREATE"


class DeploymentAppType(str, Enum):
    HELM = "helm"
    ARGO_CD = "argo_cd"


class OverrideStatus(str, Enum):
    NEW = "NEW"
    SUCCESS = "SUCCESS"


class ConfigHistoryType(str, Enum):
    CONFIGMAP = "CONFIGMAP"
    SECRET = "SECRET"


# Only natively managed external secrets take part in hash stamping.
KUBERNETES_SECRET = "KubernetesSecret"


def _now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# STORE RECORDS
# =============================================================================


@dataclass
class Environment:
    id: int
    name: str
    cluster_id: int
    namespace: str
    is_virtual: bool = False


@dataclass
class Pipeline:
    """A configured (app, environment) deployment target."""

    id: int
    app_id: int
    environment_id: int
    name: str
    deployment_app_name: str
    cluster_id: int
    namespace: str
    deployment_app_type: DeploymentAppType = DeploymentAppType.HELM
    ci_pipeline_id: int = 0


@dataclass
class ChartRef:
    id: int
    name: str
    version: str


@dataclass
class Chart:
    """App-level chart values (the global defaults)."""

    id: int
    app_id: int
    chart_ref_id: int
    global_override: str
    image_descriptor_template: str
    resolved_global_override: str = ""
    latest: bool = True


@dataclass
class EnvConfigOverride:
    """
    Environment-scoped chart values override.

    ``is_override`` False means the environment has no values of its own and
    the chart's global values apply.
    """

    id: int
    chart_id: int
    target_environment: int
    namespace: str
    is_override: bool = False
    active: bool = True
    latest: bool = False
    manual_reviewed: bool = True
    status: str = "Success"
    env_override_values: str = "{}"
    resolved_env_override_values: str = ""
    created_by: int = 0
    created_on: datetime = field(default_factory=_now)
    chart: Chart | None = None
    environment: Environment | None = None
    variable_snapshot: dict[str, str] = field(default_factory=dict)
    variable_snapshot_for_cm: dict[str, str] = field(default_factory=dict)
    variable_snapshot_for_cs: dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineStrategy:
    id: int
    pipeline_id: int
    strategy: DeploymentStrategy
    config: str = ""
    default: bool = False
    deleted: bool = False


@dataclass
class StrategyHistory:
    id: int
    pipeline_id: int
    strategy: DeploymentStrategy
    config: str = ""


@dataclass
class DeploymentTemplateHistory:
    """Deployment template exactly as it was deployed by a past workflow run."""

    id: int
    pipeline_id: int
    app_id: int
    target_environment: int
    template: str
    template_name: str
    template_version: str
    image_descriptor_template: str = ""
    is_app_metrics_enabled: bool = False


@dataclass
class CiArtifact:
    """Immutable record of a built image."""

    id: int
    image: str
    image_digest: str = ""
    data_source: str = "CI-RUNNER"
    material_info: str = ""
    registry_id: str = ""


@dataclass
class PipelineOverride:
    """One row per triggered deployment."""

    id: int
    pipeline_id: int
    env_config_override_id: int
    ci_artifact_id: int
    pipeline_release_counter: int
    deployment_type: DeploymentType = DeploymentType.DEPLOY
    status: OverrideStatus = OverrideStatus.NEW
    pipeline_merged_values: str = ""
    cd_workflow_id: int = 0
    created_by: int = 0
    created_on: datetime = field(default_factory=_now)
    updated_by: int = 0
    updated_on: datetime = field(default_factory=_now)
    pipeline: Pipeline | None = None
    ci_artifact: CiArtifact | None = None


@dataclass
class ConfigMapRecord:
    """App-level (``environment_id`` None) or env-level config map/secret row."""

    id: int
    app_id: int
    config_map_data: str = ""
    secret_data: str = ""
    environment_id: int | None = None


@dataclass
class ConfigHistory:
    """Pre-merged (app + env) config map or secret document of a past deployment."""

    id: int
    pipeline_id: int
    config_type: ConfigHistoryType
    data: str = ""


@dataclass
class DeploymentConfig:
    app_id: int
    environment_id: int
    deployment_app_type: DeploymentAppType = DeploymentAppType.HELM
    release_mode: str = "create"


# =============================================================================
# CONFIG MAP / SECRET DOCUMENTS
# =============================================================================


class ConfigSecretEntry(BaseModel):
    """
    A single config map or secret entry.

    Only the keys the pipeline reasons about are declared; everything else
    the user wrote is carried through as an extra field.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    type: str = ""
    external: bool = False
    external_type: str = Field(default="", alias="externalType")


class ConfigMapDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    maps: list[ConfigSecretEntry] = Field(default_factory=list)


class SecretDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = False
    secrets: list[ConfigSecretEntry] = Field(default_factory=list)


@dataclass
class MergedConfigSecret:
    """Output of config/secret resolution."""

    merged_json: bytes | None = None
    external_cm_list: list[str] = field(default_factory=list)
    external_cs_list: list[str] = field(default_factory=list)


# =============================================================================
# AUTOSCALING
# =============================================================================


@dataclass
class HpaResourceRequest:
    """Where to find the live autoscaler for a release, and its configured bounds."""

    is_enable: bool = False
    req_max_replicas: float = 0
    req_min_replicas: float = 0
    resource_name: str = ""
    group: str = "autoscaling"
    version: str = ""
    kind: str = "HorizontalPodAutoscaler"


# =============================================================================
# TRIGGER REQUEST / RESPONSE
# =============================================================================


@dataclass
class ValuesOverrideRequest:
    """Everything the deployment trigger workflow knows about one trigger."""

    pipeline_id: int
    app_id: int
    env_id: int
    ci_artifact_id: int
    app_name: str = ""
    env_name: str = ""
    pipeline_name: str = ""
    cluster_id: int = 0
    pipeline_override_id: int = 0
    cd_workflow_id: int = 0
    deployment_with_config: DeploymentConfigType = DeploymentConfigType.LAST_SAVED
    wfr_id_for_deployment_with_specific_trigger: int = 0
    deployment_template: str = ""
    force_trigger: bool = False
    deployment_type: DeploymentType = DeploymentType.UNKNOWN
    additional_override: dict[str, Any] | None = None
    user_id: int = 0
    image: str = ""


@dataclass
class ValuesOverrideResponse:
    pipeline: Pipeline | None = None
    artifact: CiArtifact | None = None
    pipeline_strategy: PipelineStrategy | None = None
    env_override: EnvConfigOverride | None = None
    pipeline_override: PipelineOverride | None = None
    release_override_json: str = ""
    merged_values: str = ""
    deployment_config: DeploymentConfig | None = None
