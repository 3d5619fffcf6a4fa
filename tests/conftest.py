# ABOUTME: Pytest fixtures and configuration for manifest service tests
# ABOUTME: Provides a seeded in-memory deployment world and mocked cluster collaborators

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from pydantic import SecretStr

from gitops_manifest.config import ClusterConnection, ManifestSettings
from gitops_manifest.manifest.pullsecret import RegistryPullSecretHandler
from gitops_manifest.manifest.service import ManifestCreationService
from gitops_manifest.models import (
    Chart,
    ChartRef,
    CiArtifact,
    ConfigMapRecord,
    DeploymentStrategy,
    EnvConfigOverride,
    Environment,
    Pipeline,
    PipelineOverride,
    PipelineStrategy,
    ValuesOverrideRequest,
)
from gitops_manifest.store.memory import (
    InMemoryChartRefService,
    InMemoryConfigMapStore,
    InMemoryDeploymentConfigStore,
    InMemoryPipelineOverrideRepository,
    StaticAppLabelService,
    StaticDigestPolicyService,
)
from gitops_manifest.utils.logging import AuditLogger
from gitops_manifest.variables import ScopedVariable, ScopeLevel, StaticScopedVariableManager

APP_ID = 1
ENV_ID = 2
PIPELINE_ID = 10
CLUSTER_ID = 1
ARTIFACT_ID = 30
CHART_ID = 100
CHART_REF_ID = 7
ENV_OVERRIDE_ID = 50

IMAGE_DESCRIPTOR_TEMPLATE = (
    '{"server":{"deployment":{"image_tag":"{{.Tag}}","image":"{{.Name}}"}},'
    '"pipelineName":"{{.PipelineName}}","releaseVersion":"{{.ReleaseVersion}}",'
    '"deploymentType":"{{.DeploymentType}}","app":"{{.App}}","env":"{{.Env}}",'
    '"appMetrics":{{.AppMetrics}}}'
)

GLOBAL_VALUES = (
    '{"replicaCount": 1, "rolling": {"maxSurge": "25%", "maxUnavailable": 1},'
    ' "server": {"deployment": {"image": "", "image_tag": ""}},'
    ' "autoscaling": {"enabled": false, "MinReplicas": 1, "MaxReplicas": 2}}'
)

ENV_VALUES = (
    '{"replicaCount": 2, "rolling": {"maxSurge": "25%", "maxUnavailable": 1},'
    ' "server": {"deployment": {"image": "", "image_tag": ""}},'
    ' "dbConfig": {"host": "@{{db-host}}"}}'
)


@pytest.fixture
def cluster_connection() -> ClusterConnection:
    """Create a cluster connection for respx-based tests."""
    return ClusterConnection(
        id=CLUSTER_ID,
        url="https://k8s.example.com",
        token=SecretStr("test-token"),
        name="test",
        insecure=True,
    )


@pytest.fixture
def manifest_settings() -> ManifestSettings:
    """Create manifest settings for testing."""
    return ManifestSettings(
        duplicate_verification_attempts=5,
        live_state_timeout=5.0,
        cluster_request_timeout=5.0,
        mask_secrets=True,
        audit_log=None,
    )


@pytest.fixture
def environment() -> Environment:
    return Environment(id=ENV_ID, name="staging", cluster_id=CLUSTER_ID, namespace="staging")


@pytest.fixture
def pipeline() -> Pipeline:
    return Pipeline(
        id=PIPELINE_ID,
        app_id=APP_ID,
        environment_id=ENV_ID,
        name="cd-staging",
        deployment_app_name="web-staging",
        cluster_id=CLUSTER_ID,
        namespace="staging",
        ci_pipeline_id=5,
    )


@pytest.fixture
def chart() -> Chart:
    return Chart(
        id=CHART_ID,
        app_id=APP_ID,
        chart_ref_id=CHART_REF_ID,
        global_override=GLOBAL_VALUES,
        image_descriptor_template=IMAGE_DESCRIPTOR_TEMPLATE,
    )


@pytest.fixture
def artifact() -> CiArtifact:
    return CiArtifact(
        id=ARTIFACT_ID,
        image="repo/app:v1",
        image_digest="sha256:deadbeef",
        registry_id="docker-hub",
    )


@pytest.fixture
def env_override() -> EnvConfigOverride:
    return EnvConfigOverride(
        id=ENV_OVERRIDE_ID,
        chart_id=CHART_ID,
        target_environment=ENV_ID,
        namespace="staging",
        is_override=True,
        active=True,
        latest=True,
        env_override_values=ENV_VALUES,
    )


@pytest.fixture
def config_store(
    environment: Environment,
    pipeline: Pipeline,
    chart: Chart,
    artifact: CiArtifact,
    env_override: EnvConfigOverride,
) -> InMemoryDeploymentConfigStore:
    """Create a store seeded with one app deployed to one environment."""
    store = InMemoryDeploymentConfigStore()
    store.add_environment(environment)
    store.add_pipeline(pipeline)
    store.add_chart(chart)
    store.add_artifact(artifact)
    store.add_env_override(env_override)
    store.add_strategy(
        PipelineStrategy(
            id=1,
            pipeline_id=PIPELINE_ID,
            strategy=DeploymentStrategy.ROLLING,
            config='{"rolling":{"maxSurge":1}}',
            default=True,
        )
    )
    store.add_strategy(
        PipelineStrategy(
            id=2,
            pipeline_id=PIPELINE_ID,
            strategy=DeploymentStrategy.CANARY,
            config='{"canary":{"steps":[{"setWeight":20}]}}',
        )
    )
    store.set_app_metrics(APP_ID, ENV_ID, True)
    return store


@pytest.fixture
def override_repository() -> InMemoryPipelineOverrideRepository:
    """Create an override repository holding three earlier releases of the pipeline."""
    repository = InMemoryPipelineOverrideRepository()
    for counter in (1, 2, 3):
        repository.add(
            PipelineOverride(
                id=counter,
                pipeline_id=PIPELINE_ID,
                env_config_override_id=ENV_OVERRIDE_ID,
                ci_artifact_id=ARTIFACT_ID,
                pipeline_release_counter=counter,
                pipeline_merged_values=f'{{"release": {counter}}}',
            )
        )
    return repository


@pytest.fixture
def config_map_store() -> InMemoryConfigMapStore:
    store = InMemoryConfigMapStore()
    store.add(
        ConfigMapRecord(
            id=11,
            app_id=APP_ID,
            config_map_data='{"enabled": true, "maps": [{"name": "app-cm", "type": "environment", "data": {"LEVEL": "app"}}]}',
            secret_data='{"enabled": true, "secrets": [{"name": "db-creds", "type": "environment", "data": {"PASSWORD": "c2VjcmV0"}}]}',
        )
    )
    store.add(
        ConfigMapRecord(
            id=12,
            app_id=APP_ID,
            environment_id=ENV_ID,
            config_map_data='{"enabled": true, "maps": [{"name": "app-cm", "type": "environment", "data": {"LEVEL": "env"}}]}',
            secret_data="",
        )
    )
    return store


@pytest.fixture
def chart_ref_service() -> InMemoryChartRefService:
    return InMemoryChartRefService(
        [ChartRef(id=CHART_REF_ID, name="Deployment", version="4.18.0")]
    )


@pytest.fixture
def variables() -> StaticScopedVariableManager:
    return StaticScopedVariableManager(
        [
            ScopedVariable(name="db-host", value="db.global"),
            ScopedVariable(
                name="db-host",
                value="db.staging",
                level=ScopeLevel.ENVIRONMENT,
                env_id=ENV_ID,
            ),
        ]
    )


@pytest.fixture
def mock_kubernetes() -> AsyncMock:
    """Create a mock cluster service with no HPA and no external resources."""
    kubernetes = AsyncMock()
    kubernetes.get_preferred_version.return_value = "v2"
    kubernetes.get_resource.return_value = {}
    kubernetes.get_config_maps.return_value = {}
    kubernetes.get_secrets.return_value = {}
    return kubernetes


@pytest.fixture
def mock_chart_builder() -> AsyncMock:
    builder = AsyncMock()
    builder.build_chart_and_get_path.return_value = "/tmp/charts/web-staging"
    return builder


@pytest.fixture
def audit_log_path(tmp_path: Path) -> Path:
    return tmp_path / "audit.log"


@pytest.fixture
def service_factory(
    config_store: InMemoryDeploymentConfigStore,
    override_repository: InMemoryPipelineOverrideRepository,
    config_map_store: InMemoryConfigMapStore,
    chart_ref_service: InMemoryChartRefService,
    variables: StaticScopedVariableManager,
    mock_kubernetes: AsyncMock,
    mock_chart_builder: AsyncMock,
    manifest_settings: ManifestSettings,
    audit_log_path: Path,
) -> Callable[..., ManifestCreationService]:
    """Create a factory for manifest services wired to the in-memory world.

    Keyword arguments replace individual collaborators.
    """

    def build(**overrides: Any) -> ManifestCreationService:
        collaborators: dict[str, Any] = {
            "config_store": config_store,
            "override_repository": override_repository,
            "config_map_store": config_map_store,
            "chart_ref_service": chart_ref_service,
            "chart_builder": mock_chart_builder,
            "variables": variables,
            "digest_policy_service": StaticDigestPolicyService(),
            "kubernetes": mock_kubernetes,
            "app_labels": StaticAppLabelService({APP_ID: {"team": "payments"}}),
            "pull_secrets": RegistryPullSecretHandler(),
            "settings": manifest_settings,
            "audit": AuditLogger(audit_log_path),
        }
        collaborators.update(overrides)
        return ManifestCreationService(**collaborators)

    return build


@pytest.fixture
def manifest_service(
    service_factory: Callable[..., ManifestCreationService],
) -> ManifestCreationService:
    """Create a manifest service with the default collaborators."""
    return service_factory()


@pytest.fixture
def trigger_request() -> ValuesOverrideRequest:
    """Create a last-saved-config trigger for pipeline 10."""
    return ValuesOverrideRequest(
        pipeline_id=PIPELINE_ID,
        app_id=APP_ID,
        env_id=ENV_ID,
        ci_artifact_id=ARTIFACT_ID,
        app_name="web",
        env_name="staging",
        pipeline_name="cd-staging",
        cluster_id=CLUSTER_ID,
        cd_workflow_id=900,
        user_id=2,
    )
