# ABOUTME: Collaborator contracts consumed by the manifest pipeline
# ABOUTME: Store, repository, cluster, variable, registry and chart-builder protocols

"""
Collaborator contracts.

The manifest pipeline owns no storage, no cluster connection and no chart
renderer. It talks to each of them through one of the small protocols below,
and every component receives exactly the protocols it needs through its
constructor. ``gitops_manifest.store.memory`` and
``gitops_manifest.utils.kubernetes`` provide concrete implementations.

Every lookup that can legitimately come back empty raises
``gitops_manifest.errors.NotFoundError``; any other exception is a storage or
transport failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from gitops_manifest.models import (
        CiArtifact,
        Chart,
        ChartRef,
        ConfigHistory,
        ConfigHistoryType,
        ConfigMapRecord,
        DeploymentConfig,
        DeploymentConfigType,
        DeploymentStrategy,
        DeploymentTemplateHistory,
        EnvConfigOverride,
        Environment,
        Pipeline,
        PipelineOverride,
        PipelineStrategy,
        StrategyHistory,
    )


class DeploymentConfigStore(Protocol):
    """Read access to pipelines, charts, environment overrides and strategies."""

    async def find_pipeline_by_id(self, pipeline_id: int) -> Pipeline: ...

    async def find_artifact_by_id(self, artifact_id: int) -> CiArtifact: ...

    async def find_environment_by_id(self, env_id: int) -> Environment: ...

    async def get_active_env_override(self, app_id: int, env_id: int) -> EnvConfigOverride: ...

    async def get_env_override_by_id(self, override_id: int) -> EnvConfigOverride:
        """Fetch by id, including inactive (superseded) rows."""
        ...

    async def get_env_override_by_chart_ref(
        self, app_id: int, env_id: int, chart_ref_id: int
    ) -> EnvConfigOverride: ...

    async def save_env_override(self, env_override: EnvConfigOverride) -> EnvConfigOverride: ...

    async def get_historical_env_override(
        self, pipeline_id: int, wfr_id: int
    ) -> DeploymentTemplateHistory: ...

    async def get_default_or_named_strategy(
        self, pipeline_id: int, strategy: DeploymentStrategy | None = None
    ) -> PipelineStrategy: ...

    async def get_strategy_history(self, pipeline_id: int, wfr_id: int) -> StrategyHistory: ...

    async def get_latest_chart(self, app_id: int) -> Chart: ...

    async def get_app_metrics_flag(self, app_id: int, env_id: int) -> bool: ...


class PipelineOverrideRepository(Protocol):
    async def get_current_release_counter(self, pipeline_id: int) -> int: ...

    async def save(self, override: PipelineOverride) -> PipelineOverride: ...

    async def update(self, override: PipelineOverride) -> None: ...

    async def find_by_id(self, override_id: int) -> PipelineOverride: ...

    async def find_by_pipeline_and_release_counter(
        self, pipeline_id: int, release_counter: int
    ) -> list[PipelineOverride]:
        """All rows sharing the counter, ordered by insertion (id ascending)."""
        ...

    async def update_merged_values(
        self, override_id: int, merged_values: str, user_id: int
    ) -> None: ...


class ConfigMapStore(Protocol):
    async def get_app_level(self, app_id: int) -> ConfigMapRecord: ...

    async def get_env_level(self, app_id: int, env_id: int) -> ConfigMapRecord: ...

    async def get_history(
        self, pipeline_id: int, wfr_id: int, config_type: ConfigHistoryType
    ) -> ConfigHistory: ...


class ChartRefService(Protocol):
    async def find_by_version_and_name(self, version: str, name: str) -> ChartRef: ...


class ChartBuilder(Protocol):
    """External chart renderer: packages the chart with the merged values."""

    async def build_chart_and_get_path(
        self,
        app_name: str,
        env_override: EnvConfigOverride,
        deployment_config: DeploymentConfig | None,
    ) -> str: ...


class KubernetesService(Protocol):
    """Live cluster reads, addressed by cluster id."""

    async def get_preferred_version(self, cluster_id: int, group: str) -> str: ...

    async def get_resource(
        self,
        cluster_id: int,
        namespace: str,
        group: str,
        version: str,
        kind: str,
        name: str,
    ) -> dict[str, Any]: ...

    async def get_config_maps(
        self, cluster_id: int, namespace: str, names: list[str]
    ) -> dict[str, dict[str, Any]]: ...

    async def get_secrets(
        self, cluster_id: int, namespace: str, names: list[str]
    ) -> dict[str, dict[str, Any]]: ...


@dataclass
class VariableScope:
    app_id: int
    env_id: int
    cluster_id: int


@dataclass
class VariableEntity:
    """Which record a resolved template belongs to (for usage mapping)."""

    entity_id: int
    entity_type: str


@dataclass
class HistoryReference:
    history_id: int
    history_type: str


@dataclass
class ResolvedConfigSecret:
    config_maps: str
    secrets: str
    config_map_snapshot: dict[str, str]
    secret_snapshot: dict[str, str]


class ScopedVariableManager(Protocol):
    async def get_mapped_variables_and_resolve_template(
        self, template: str, scope: VariableScope, entity: VariableEntity
    ) -> tuple[str, dict[str, str]]: ...

    async def get_variable_snapshot_and_resolve_template(
        self, template: str, reference: HistoryReference
    ) -> tuple[dict[str, str], str]: ...

    async def resolve_cmcs_trigger(
        self,
        config_type: DeploymentConfigType,
        scope: VariableScope,
        config_maps_json: str,
        secrets_json: str,
        app_level_id: int,
        env_level_id: int,
        config_map_history_id: int,
        secret_history_id: int,
    ) -> ResolvedConfigSecret: ...


class DigestPolicy(Protocol):
    def use_digest_for_trigger(self) -> bool: ...


class ImageDigestPolicyService(Protocol):
    async def get_digest_policy_configurations(self, pipeline_id: int) -> DigestPolicy: ...


class AppLabelService(Protocol):
    async def get_app_labels_for_deployment(
        self, app_id: int, app_name: str, env_name: str
    ) -> bytes | None: ...


class ImagePullSecretHandler(Protocol):
    async def handle_image_pull_secret(
        self,
        environment: Environment,
        artifact: CiArtifact,
        ci_pipeline_id: int,
        merged_values: bytes,
    ) -> bytes: ...
