# ABOUTME: Unit tests for the service context
# ABOUTME: Tests open/close lifecycle and wiring of the manifest service

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import SecretStr

from gitops_manifest.config import ManifestSettings, ServerSettings
from gitops_manifest.context import ManifestContext
from gitops_manifest.manifest.pullsecret import RegistryPullSecretHandler
from gitops_manifest.manifest.service import ManifestCreationService
from gitops_manifest.store.memory import (
    InMemoryChartRefService,
    InMemoryConfigMapStore,
    InMemoryDeploymentConfigStore,
    InMemoryPipelineOverrideRepository,
    StaticAppLabelService,
    StaticDigestPolicyService,
)
from gitops_manifest.variables import StaticScopedVariableManager


@pytest.fixture
def settings(tmp_path: Path) -> ServerSettings:
    return ServerSettings(
        kube_api_url="https://k8s.example.com",
        kube_api_token=SecretStr("test-token"),
        manifest=ManifestSettings(duplicate_verification_attempts=3, audit_log=tmp_path / "audit.log"),
    )


def collaborators() -> dict:
    return {
        "config_store": InMemoryDeploymentConfigStore(),
        "override_repository": InMemoryPipelineOverrideRepository(),
        "config_map_store": InMemoryConfigMapStore(),
        "chart_ref_service": InMemoryChartRefService(),
        "chart_builder": AsyncMock(),
        "variables": StaticScopedVariableManager(),
        "digest_policy_service": StaticDigestPolicyService(),
        "app_labels": StaticAppLabelService(),
    }


@pytest.mark.unit
class TestManifestContext:
    """Tests for ManifestContext."""

    def test_create_service_requires_open_context(self, settings: ServerSettings):
        """Test that services cannot be created before the context is opened."""
        context = ManifestContext(settings, configure_logs=False)

        with pytest.raises(RuntimeError, match="Context not opened"):
            context.create_service(**collaborators())

    async def test_create_service(self, settings: ServerSettings):
        """Test that the service shares the context's clusters and audit log."""
        async with ManifestContext(settings, configure_logs=False) as context:
            service = context.create_service(**collaborators())

            assert isinstance(service, ManifestCreationService)
            assert service._audit is context.audit
            assert service.live_state._kubernetes is context.clusters
            assert service.allocator._max_attempts == 3
            assert isinstance(service._pull_secrets, RegistryPullSecretHandler)
            assert context.clusters.get_client(1).cluster.url == "https://k8s.example.com"

    async def test_closed_after_exit(self, settings: ServerSettings):
        """Test that the context refuses new services after closing."""
        context = ManifestContext(settings, configure_logs=False)
        async with context:
            pass

        with pytest.raises(RuntimeError):
            context.create_service(**collaborators())

    async def test_configures_logging(self, settings: ServerSettings):
        """Test that opening the context configures logging from settings."""
        with patch("gitops_manifest.context.configure_logging") as mock_configure:
            async with ManifestContext(settings):
                pass

        mock_configure.assert_called_once_with("INFO", False)
