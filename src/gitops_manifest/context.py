# ABOUTME: Explicitly constructed service context for the manifest pipeline
# ABOUTME: Owns settings, cluster connections and the audit logger with a defined open/close lifecycle

"""
Service context.

Everything long-lived that the manifest pipeline needs (settings, one HTTP
client per cluster, the audit logger) lives on a ManifestContext instead of
in module globals. The context is opened once and closed on shutdown:

    settings = load_settings()
    async with ManifestContext(settings) as ctx:
        service = ctx.create_service(
            config_store=store,
            override_repository=overrides,
            config_map_store=config_maps,
            chart_ref_service=chart_refs,
            chart_builder=builder,
            variables=variables,
            digest_policy_service=digest_policies,
            app_labels=labels,
        )
        response, chart_path = await service.build_manifest_for_trigger(request)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from gitops_manifest.manifest.pullsecret import RegistryPullSecretHandler
from gitops_manifest.manifest.service import ManifestCreationService
from gitops_manifest.utils.kubernetes import ClusterRegistry
from gitops_manifest.utils.logging import AuditLogger, configure_logging

if TYPE_CHECKING:
    from gitops_manifest.config import ServerSettings
    from gitops_manifest.interfaces import (
        AppLabelService,
        ChartBuilder,
        ChartRefService,
        ConfigMapStore,
        DeploymentConfigStore,
        ImageDigestPolicyService,
        ImagePullSecretHandler,
        PipelineOverrideRepository,
        ScopedVariableManager,
    )

logger = structlog.get_logger(__name__)


class ManifestContext:
    """Settings, cluster registry and audit logger shared by all triggers."""

    def __init__(self, settings: ServerSettings, configure_logs: bool = True) -> None:
        self.settings = settings
        self._configure_logs = configure_logs
        self.clusters = ClusterRegistry(
            settings.all_clusters,
            timeout=settings.manifest.cluster_request_timeout,
            mask_secrets=settings.manifest.mask_secrets,
        )
        self.audit = AuditLogger(settings.manifest.audit_log)
        self._open = False

    async def __aenter__(self) -> ManifestContext:
        if self._configure_logs:
            configure_logging(self.settings.log_level, self.settings.json_logs)
        await self.clusters.__aenter__()
        self._open = True
        logger.info("Manifest context opened", clusters=len(self.settings.all_clusters))
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.clusters.__aexit__(None, None, None)
        self._open = False
        logger.info("Manifest context closed")

    def create_service(
        self,
        *,
        config_store: DeploymentConfigStore,
        override_repository: PipelineOverrideRepository,
        config_map_store: ConfigMapStore,
        chart_ref_service: ChartRefService,
        chart_builder: ChartBuilder,
        variables: ScopedVariableManager,
        digest_policy_service: ImageDigestPolicyService,
        app_labels: AppLabelService,
        pull_secrets: ImagePullSecretHandler | None = None,
    ) -> ManifestCreationService:
        """
        Wire a ManifestCreationService to this context's clusters and audit log.

        Raises:
            RuntimeError: The context has not been opened.
        """
        if not self._open:
            raise RuntimeError("Context not opened. Use 'async with' context manager.")
        return ManifestCreationService(
            config_store=config_store,
            override_repository=override_repository,
            config_map_store=config_map_store,
            chart_ref_service=chart_ref_service,
            chart_builder=chart_builder,
            variables=variables,
            digest_policy_service=digest_policy_service,
            kubernetes=self.clusters,
            app_labels=app_labels,
            pull_secrets=pull_secrets or RegistryPullSecretHandler(),
            settings=self.settings.manifest,
            audit=self.audit,
        )
