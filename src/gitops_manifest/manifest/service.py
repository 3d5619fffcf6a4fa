# ABOUTME: Manifest creation service, the per-trigger orchestrator of the manifest pipeline
# ABOUTME: Resolves strategy, env override, release override, config and live state into merged values

"""
Manifest creation service.

=============================================================================
WHAT HAPPENS ON A TRIGGER?
=============================================================================

    ResolveStrategy
      -> ResolveEnvOverride            (or load it from an existing override)
      -> CreateOverride                (new release counter; skipped on replay)
      -> ResolveAppMetrics
      -> RenderReleaseOverride
      -> ResolveConfigSecrets          \
      -> MergeValues                    |  only for a newly created override;
      -> AdjustForLiveState             |  a replay returns the stored merged
      -> HandleImagePullSecret          |  values verbatim
      -> PersistMergedValues           /

Every step is awaited in order. Later merge steps depend on earlier output
and there is no fan-out.

=============================================================================
TWO BRANCHES
=============================================================================

The request's ``deployment_with_config`` picks the branch for EVERY
resolution step of the trigger:

    step             LAST_SAVED_CONFIG                SPECIFIC_TRIGGER_CONFIG
    ---------------  -------------------------------  ------------------------------
    strategy         default or requested strategy    strategy history of the run
    env override     active override (lazily created) override of the run's chart ref,
                                                      values from template history
    variables        current scoped variables         snapshot stored with history
    app metrics      current metrics flag             flag stored with history
    config/secrets   app + env documents              config history of the run

=============================================================================
FAILURE POLICY
=============================================================================

    config/secret fetch or merge    logged, trigger continues without them
    config/secret variables         abort
    app labels                      logged, trigger continues without them
    external hash stamping          logged, trigger continues
    everything else                 abort

A PipelineOverride row created before a failure stays in place with
status NEW.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gitops_manifest.config import ManifestSettings
from gitops_manifest.errors import NotFoundError, VariableResolutionError
from gitops_manifest.interfaces import HistoryReference, VariableEntity, VariableScope
from gitops_manifest.manifest.allocator import PipelineOverrideAllocator
from gitops_manifest.manifest.configsecret import ConfigSecretResolver
from gitops_manifest.manifest.livestate import LiveStateAdjuster
from gitops_manifest.manifest.merge import ValueMergeEngine
from gitops_manifest.manifest.release import ReleaseOverrideRenderer
from gitops_manifest.models import (
    DeploymentConfigType,
    DeploymentStrategy,
    DeploymentType,
    EnvConfigOverride,
    MergedConfigSecret,
    PipelineStrategy,
    ValuesOverrideResponse,
)
from gitops_manifest.utils.logging import AuditLogger, set_correlation_id
from gitops_manifest.variables import (
    ENTITY_DEPLOYMENT_TEMPLATE_APP_LEVEL,
    ENTITY_DEPLOYMENT_TEMPLATE_ENV_LEVEL,
    HISTORY_DEPLOYMENT_TEMPLATE,
)

if TYPE_CHECKING:
    from gitops_manifest.interfaces import (
        AppLabelService,
        ChartBuilder,
        ChartRefService,
        ConfigMapStore,
        DeploymentConfigStore,
        ImageDigestPolicyService,
        ImagePullSecretHandler,
        KubernetesService,
        PipelineOverrideRepository,
        ScopedVariableManager,
    )
    from gitops_manifest.models import DeploymentConfig, ValuesOverrideRequest

logger = structlog.get_logger(__name__)


def resolve_deployment_type(request: ValuesOverrideRequest) -> None:
    """An unspecified deployment type is a plain deploy."""
    if request.deployment_type == DeploymentType.UNKNOWN:
        request.deployment_type = DeploymentType.DEPLOY


def requested_strategy(request: ValuesOverrideRequest) -> DeploymentStrategy | None:
    if not request.deployment_template:
        return None
    return DeploymentStrategy(request.deployment_template)


class ManifestCreationService:
    """
    Turns a deployment trigger into merged chart values.

    USAGE:
    ------
        service = ManifestCreationService(
            config_store=store,
            override_repository=overrides,
            config_map_store=config_maps,
            chart_ref_service=chart_refs,
            chart_builder=builder,
            variables=variables,
            digest_policy_service=digest_policies,
            kubernetes=clusters,
            app_labels=labels,
            pull_secrets=pull_secrets,
        )
        response = await service.get_values_override_for_trigger(request)
    """

    def __init__(
        self,
        *,
        config_store: DeploymentConfigStore,
        override_repository: PipelineOverrideRepository,
        config_map_store: ConfigMapStore,
        chart_ref_service: ChartRefService,
        chart_builder: ChartBuilder,
        variables: ScopedVariableManager,
        digest_policy_service: ImageDigestPolicyService,
        kubernetes: KubernetesService,
        app_labels: AppLabelService,
        pull_secrets: ImagePullSecretHandler,
        settings: ManifestSettings | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        settings = settings or ManifestSettings()
        self._store = config_store
        self._overrides = override_repository
        self._chart_refs = chart_ref_service
        self._chart_builder = chart_builder
        self._variables = variables
        self._app_labels = app_labels
        self._pull_secrets = pull_secrets
        self._audit = audit or AuditLogger(settings.audit_log)

        self.release_renderer = ReleaseOverrideRenderer(digest_policy_service)
        self.config_secrets = ConfigSecretResolver(config_map_store, variables)
        self.merge_engine = ValueMergeEngine()
        self.live_state = LiveStateAdjuster(kubernetes, timeout=settings.live_state_timeout)
        self.allocator = PipelineOverrideAllocator(
            override_repository, max_attempts=settings.duplicate_verification_attempts
        )

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def build_manifest_for_trigger(
        self,
        request: ValuesOverrideRequest,
        deployment_config: DeploymentConfig | None = None,
        triggered_at: datetime | None = None,
    ) -> tuple[ValuesOverrideResponse, str]:
        """
        Resolve merged values and build the chart with them.

        Returns:
            (response, path of the built chart)
        """
        response = await self.get_values_override_for_trigger(
            request, deployment_config, triggered_at
        )
        response.deployment_config = deployment_config
        try:
            chart_path = await self._chart_builder.build_chart_and_get_path(
                request.app_name, response.env_override, deployment_config
            )
        except Exception:
            logger.error("Failed to build chart", pipeline_id=request.pipeline_id)
            raise
        return response, chart_path

    async def get_values_override_for_trigger(
        self,
        request: ValuesOverrideRequest,
        deployment_config: DeploymentConfig | None = None,
        triggered_at: datetime | None = None,
    ) -> ValuesOverrideResponse:
        """
        Resolve the merged values of one trigger.

        With ``request.pipeline_override_id`` set, the existing override is
        replayed: its stored merged values are returned and no new release
        counter is allocated.

        Raises:
            NotFoundError: Pipeline, artifact or a required record is missing.
            ApiError: Template rendering or live-state checks failed.
            VariableResolutionError: Scoped variables could not be resolved.
            DuplicateReleaseCounterError: Release counter repair gave up.
        """
        if request.cd_workflow_id:
            set_correlation_id(f"wf-{request.cd_workflow_id}")
        else:
            set_correlation_id("")
        resolve_deployment_type(request)
        triggered_at = triggered_at or datetime.now(UTC)
        replay = request.pipeline_override_id > 0

        try:
            response = await self._run_trigger(request, deployment_config, triggered_at)
        except Exception as e:
            self._audit.log_error(request.pipeline_id, str(e))
            raise

        override = response.pipeline_override
        if override is not None:
            if replay:
                self._audit.log_replayed(request.pipeline_id, override.id)
            else:
                self._audit.log_built(
                    request.pipeline_id, override.id, override.pipeline_release_counter
                )
        return response

    # =========================================================================
    # TRIGGER STATE MACHINE
    # =========================================================================

    async def _run_trigger(
        self,
        request: ValuesOverrideRequest,
        deployment_config: DeploymentConfig | None,
        triggered_at: datetime,
    ) -> ValuesOverrideResponse:
        log = logger.bind(
            pipeline_id=request.pipeline_id,
            app_id=request.app_id,
            env_id=request.env_id,
            config_type=request.deployment_with_config.value,
        )
        response = ValuesOverrideResponse(deployment_config=deployment_config)
        replay = request.pipeline_override_id > 0

        pipeline = await self._store.find_pipeline_by_id(request.pipeline_id)
        response.pipeline = pipeline
        artifact = await self._store.find_artifact_by_id(request.ci_artifact_id)
        response.artifact = artifact
        request.image = artifact.image

        strategy = await self.get_strategy(request)
        response.pipeline_strategy = strategy

        if replay:
            pipeline_override = await self._overrides.find_by_id(request.pipeline_override_id)
            env_override = await self._store.get_env_override_by_id(
                pipeline_override.env_config_override_id
            )
            await self._attach_environment(env_override)
        else:
            env_override = await self.get_env_override(request, triggered_at)
        response.env_override = env_override

        if not replay:
            pipeline_override = await self.allocator.allocate(
                pipeline_id=request.pipeline_id,
                env_config_override_id=env_override.id,
                ci_artifact_id=request.ci_artifact_id,
                cd_workflow_id=request.cd_workflow_id,
                deployment_type=request.deployment_type,
                user_id=request.user_id,
                triggered_at=triggered_at,
            )
            request.pipeline_override_id = pipeline_override.id
            pipeline_override.pipeline = pipeline
            pipeline_override.ci_artifact = artifact
        response.pipeline_override = pipeline_override
        log = log.bind(
            pipeline_override_id=pipeline_override.id,
            release_counter=pipeline_override.pipeline_release_counter,
        )

        app_metrics = await self.get_app_metrics(request)

        if env_override.chart is None:
            raise NotFoundError("chart", env_override_id=env_override.id)
        response.release_override_json = await self.release_renderer.render(
            image_descriptor_template=env_override.chart.image_descriptor_template,
            artifact=artifact,
            pipeline_id=request.pipeline_id,
            pipeline_name=request.pipeline_name,
            app_id=request.app_id,
            env_id=request.env_id,
            release_counter=pipeline_override.pipeline_release_counter,
            strategy=strategy,
            app_metrics=app_metrics,
            additional_override=request.additional_override,
        )

        if replay:
            log.info("Replaying stored merged values")
            response.merged_values = pipeline_override.pipeline_merged_values
            return response

        config_secret = await self._resolve_config_secrets(request, env_override)
        app_labels = await self._fetch_app_labels(request)

        merged = self.merge_engine.merge(
            env_override,
            response.release_override_json,
            config_secret.merged_json,
            app_labels,
            strategy,
        )

        environment = env_override.environment
        if environment is None:
            raise NotFoundError("environment", id=env_override.target_environment)
        merged = await self.live_state.adjust(
            merged,
            environment=environment,
            cluster_id=request.cluster_id or environment.cluster_id,
            namespace=env_override.namespace,
            app_name=pipeline.deployment_app_name,
            deployment_type=request.deployment_type,
            external_cm_list=config_secret.external_cm_list,
            external_cs_list=config_secret.external_cs_list,
            pipeline_id=request.pipeline_id,
        )

        merged = await self._pull_secrets.handle_image_pull_secret(
            environment, artifact, pipeline.ci_pipeline_id, merged
        )

        merged_values = merged.decode()
        response.merged_values = merged_values
        await self._overrides.update_merged_values(
            pipeline_override.id, merged_values, request.user_id
        )
        pipeline_override.pipeline_merged_values = merged_values
        log.info("Merged values persisted")
        return response

    async def _resolve_config_secrets(
        self, request: ValuesOverrideRequest, env_override: EnvConfigOverride
    ) -> MergedConfigSecret:
        try:
            return await self.config_secrets.resolve(
                config_type=request.deployment_with_config,
                app_id=request.app_id,
                env_id=request.env_id,
                pipeline_id=request.pipeline_id,
                wfr_id=request.wfr_id_for_deployment_with_specific_trigger,
                scope=self._scope(request, env_override),
                env_override=env_override,
            )
        except VariableResolutionError:
            logger.error(
                "Failed to resolve config map / secret variables", pipeline_id=request.pipeline_id
            )
            raise
        except Exception as e:
            logger.error(
                "Failed to fetch config maps and secrets, continuing without them",
                pipeline_id=request.pipeline_id,
                error=str(e),
            )
            return MergedConfigSecret()

    async def _fetch_app_labels(self, request: ValuesOverrideRequest) -> bytes | None:
        try:
            return await self._app_labels.get_app_labels_for_deployment(
                request.app_id, request.app_name, request.env_name
            )
        except Exception as e:
            logger.error("Failed to fetch app labels", app_id=request.app_id, error=str(e))
            return None

    # =========================================================================
    # STRATEGY
    # =========================================================================

    async def get_strategy(self, request: ValuesOverrideRequest) -> PipelineStrategy | None:
        """Deployment strategy for the trigger, or None if the pipeline has none."""
        if request.deployment_with_config == DeploymentConfigType.SPECIFIC_TRIGGER:
            try:
                history = await self._store.get_strategy_history(
                    request.pipeline_id, request.wfr_id_for_deployment_with_specific_trigger
                )
            except NotFoundError:
                return None
            return PipelineStrategy(
                id=0,
                pipeline_id=request.pipeline_id,
                strategy=history.strategy,
                config=history.config,
            )

        strategy = requested_strategy(request)
        try:
            if request.force_trigger or strategy is None:
                return await self._store.get_default_or_named_strategy(request.pipeline_id)
            return await self._store.get_default_or_named_strategy(request.pipeline_id, strategy)
        except NotFoundError:
            return None

    # =========================================================================
    # ENV OVERRIDE
    # =========================================================================

    async def get_env_override(
        self, request: ValuesOverrideRequest, triggered_at: datetime
    ) -> EnvConfigOverride:
        if request.deployment_with_config == DeploymentConfigType.SPECIFIC_TRIGGER:
            return await self._env_override_for_specific_trigger(request)
        return await self._env_override_for_last_saved(request, triggered_at)

    async def _env_override_for_specific_trigger(
        self, request: ValuesOverrideRequest
    ) -> EnvConfigOverride:
        wfr_id = request.wfr_id_for_deployment_with_specific_trigger
        history = await self._store.get_historical_env_override(request.pipeline_id, wfr_id)
        chart_ref = await self._chart_refs.find_by_version_and_name(
            history.template_version, history.template_name
        )
        env_override = await self._store.get_env_override_by_chart_ref(
            request.app_id, request.env_id, chart_ref.id
        )
        await self._attach_environment(env_override)

        env_override.is_override = True
        env_override.env_override_values = history.template
        snapshot, resolved = await self._variables.get_variable_snapshot_and_resolve_template(
            history.template, HistoryReference(history.id, HISTORY_DEPLOYMENT_TEMPLATE)
        )
        env_override.resolved_env_override_values = resolved
        env_override.variable_snapshot = snapshot
        return env_override

    async def _env_override_for_last_saved(
        self, request: ValuesOverrideRequest, triggered_at: datetime
    ) -> EnvConfigOverride:
        log = logger.bind(app_id=request.app_id, env_id=request.env_id)
        try:
            env_override = await self._store.get_active_env_override(request.app_id, request.env_id)
        except NotFoundError:
            chart = await self._store.get_latest_chart(request.app_id)
            try:
                env_override = await self._store.get_env_override_by_chart_ref(
                    request.app_id, request.env_id, chart.chart_ref_id
                )
            except NotFoundError:
                environment = await self._store.find_environment_by_id(request.env_id)
                env_override = await self._store.save_env_override(
                    EnvConfigOverride(
                        id=0,
                        chart_id=chart.id,
                        target_environment=request.env_id,
                        namespace=environment.namespace,
                        is_override=False,
                        active=True,
                        latest=False,
                        manual_reviewed=True,
                        status="Success",
                        env_override_values="{}",
                        created_by=request.user_id,
                        created_on=triggered_at,
                    )
                )
                log.info("Created env override", env_override_id=env_override.id)
            env_override.chart = chart
        else:
            if not env_override.is_override:
                env_override.chart = await self._store.get_latest_chart(request.app_id)

        await self._attach_environment(env_override)
        scope = self._scope(request, env_override)

        if env_override.is_override:
            resolved, snapshot = await self._variables.get_mapped_variables_and_resolve_template(
                env_override.env_override_values,
                scope,
                VariableEntity(env_override.id, ENTITY_DEPLOYMENT_TEMPLATE_ENV_LEVEL),
            )
            env_override.resolved_env_override_values = resolved
        else:
            chart = env_override.chart
            if chart is None:
                raise NotFoundError("chart", app_id=request.app_id)
            resolved, snapshot = await self._variables.get_mapped_variables_and_resolve_template(
                chart.global_override,
                scope,
                VariableEntity(chart.id, ENTITY_DEPLOYMENT_TEMPLATE_APP_LEVEL),
            )
            chart.resolved_global_override = resolved
        env_override.variable_snapshot = snapshot
        return env_override

    async def _attach_environment(self, env_override: EnvConfigOverride) -> None:
        env_override.environment = await self._store.find_environment_by_id(
            env_override.target_environment
        )

    # =========================================================================
    # APP METRICS
    # =========================================================================

    async def get_app_metrics(self, request: ValuesOverrideRequest) -> bool:
        if request.deployment_with_config == DeploymentConfigType.SPECIFIC_TRIGGER:
            history = await self._store.get_historical_env_override(
                request.pipeline_id, request.wfr_id_for_deployment_with_specific_trigger
            )
            return history.is_app_metrics_enabled
        return await self._store.get_app_metrics_flag(request.app_id, request.env_id)

    @staticmethod
    def _scope(request: ValuesOverrideRequest, env_override: EnvConfigOverride) -> VariableScope:
        environment = env_override.environment
        cluster_id = environment.cluster_id if environment else request.cluster_id
        return VariableScope(app_id=request.app_id, env_id=request.env_id, cluster_id=cluster_id)
