# ABOUTME: In-memory implementations of the persistence contracts
# ABOUTME: Pipelines, charts, overrides, strategies, config documents and history for local wiring and tests

"""
In-memory stores.

Every method yields to the event loop once before touching state, so
concurrent triggers interleave the way they would against a database:
each read or write is atomic, but nothing spans two calls. Ids are
assigned in insertion order, starting at 1.

    store = InMemoryDeploymentConfigStore()
    store.add_pipeline(Pipeline(id=10, app_id=1, environment_id=2, ...))
    overrides = InMemoryPipelineOverrideRepository()
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime

from gitops_manifest.errors import NotFoundError
from gitops_manifest.models import (
    Chart,
    ChartRef,
    CiArtifact,
    ConfigHistory,
    ConfigHistoryType,
    ConfigMapRecord,
    DeploymentStrategy,
    DeploymentTemplateHistory,
    EnvConfigOverride,
    Environment,
    Pipeline,
    PipelineOverride,
    PipelineStrategy,
    StrategyHistory,
)


async def _yield() -> None:
    await asyncio.sleep(0)


class InMemoryDeploymentConfigStore:
    """Pipelines, environments, artifacts, charts, env overrides and strategies."""

    def __init__(self) -> None:
        self.pipelines: dict[int, Pipeline] = {}
        self.environments: dict[int, Environment] = {}
        self.artifacts: dict[int, CiArtifact] = {}
        self.charts: dict[int, Chart] = {}
        self.env_overrides: dict[int, EnvConfigOverride] = {}
        self.strategies: list[PipelineStrategy] = []
        self.strategy_history: dict[tuple[int, int], StrategyHistory] = {}
        self.template_history: dict[tuple[int, int], DeploymentTemplateHistory] = {}
        self.app_metrics: dict[tuple[int, int], bool] = {}
        self._override_ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # SEEDING
    # -------------------------------------------------------------------------

    def add_pipeline(self, pipeline: Pipeline) -> None:
        self.pipelines[pipeline.id] = pipeline

    def add_environment(self, environment: Environment) -> None:
        self.environments[environment.id] = environment

    def add_artifact(self, artifact: CiArtifact) -> None:
        self.artifacts[artifact.id] = artifact

    def add_chart(self, chart: Chart) -> None:
        self.charts[chart.id] = chart

    def add_env_override(self, env_override: EnvConfigOverride) -> None:
        self.env_overrides[env_override.id] = env_override
        self._override_ids = itertools.count(max(self.env_overrides) + 1)

    def add_strategy(self, strategy: PipelineStrategy) -> None:
        self.strategies.append(strategy)

    def add_strategy_history(self, wfr_id: int, history: StrategyHistory) -> None:
        self.strategy_history[(history.pipeline_id, wfr_id)] = history

    def add_template_history(self, wfr_id: int, history: DeploymentTemplateHistory) -> None:
        self.template_history[(history.pipeline_id, wfr_id)] = history

    def set_app_metrics(self, app_id: int, env_id: int, enabled: bool) -> None:
        self.app_metrics[(app_id, env_id)] = enabled

    # -------------------------------------------------------------------------
    # DeploymentConfigStore
    # -------------------------------------------------------------------------

    async def find_pipeline_by_id(self, pipeline_id: int) -> Pipeline:
        await _yield()
        if pipeline_id not in self.pipelines:
            raise NotFoundError("pipeline", id=pipeline_id)
        return self.pipelines[pipeline_id]

    async def find_artifact_by_id(self, artifact_id: int) -> CiArtifact:
        await _yield()
        if artifact_id not in self.artifacts:
            raise NotFoundError("ci artifact", id=artifact_id)
        return self.artifacts[artifact_id]

    async def find_environment_by_id(self, env_id: int) -> Environment:
        await _yield()
        if env_id not in self.environments:
            raise NotFoundError("environment", id=env_id)
        return self.environments[env_id]

    def _chart_ids(self, app_id: int) -> set[int]:
        return {chart.id for chart in self.charts.values() if chart.app_id == app_id}

    def _with_chart(self, env_override: EnvConfigOverride) -> EnvConfigOverride:
        # Returned rows are copies; callers mutate them freely during a trigger.
        row = copy.copy(env_override)
        row.chart = self.charts.get(row.chart_id)
        return row

    async def get_active_env_override(self, app_id: int, env_id: int) -> EnvConfigOverride:
        await _yield()
        chart_ids = self._chart_ids(app_id)
        for row in self.env_overrides.values():
            if row.active and row.target_environment == env_id and row.chart_id in chart_ids:
                chart = self.charts[row.chart_id]
                if chart.latest:
                    return self._with_chart(row)
        raise NotFoundError("active env override", app_id=app_id, env_id=env_id)

    async def get_env_override_by_id(self, override_id: int) -> EnvConfigOverride:
        await _yield()
        if override_id not in self.env_overrides:
            raise NotFoundError("env override", id=override_id)
        return self._with_chart(self.env_overrides[override_id])

    async def get_env_override_by_chart_ref(
        self, app_id: int, env_id: int, chart_ref_id: int
    ) -> EnvConfigOverride:
        await _yield()
        # Active rows first; a replayed chart version may only have inactive rows left.
        rows = sorted(self.env_overrides.values(), key=lambda r: not r.active)
        for row in rows:
            chart = self.charts.get(row.chart_id)
            if (
                chart is not None
                and chart.app_id == app_id
                and chart.chart_ref_id == chart_ref_id
                and row.target_environment == env_id
            ):
                return self._with_chart(row)
        raise NotFoundError(
            "env override", app_id=app_id, env_id=env_id, chart_ref_id=chart_ref_id
        )

    async def save_env_override(self, env_override: EnvConfigOverride) -> EnvConfigOverride:
        await _yield()
        if not env_override.id:
            env_override.id = next(self._override_ids)
        stored = copy.copy(env_override)
        stored.chart = None
        stored.environment = None
        self.env_overrides[env_override.id] = stored
        return env_override

    async def get_historical_env_override(
        self, pipeline_id: int, wfr_id: int
    ) -> DeploymentTemplateHistory:
        await _yield()
        if (pipeline_id, wfr_id) not in self.template_history:
            raise NotFoundError(
                "deployment template history", pipeline_id=pipeline_id, wfr_id=wfr_id
            )
        return self.template_history[(pipeline_id, wfr_id)]

    async def get_default_or_named_strategy(
        self, pipeline_id: int, strategy: DeploymentStrategy | None = None
    ) -> PipelineStrategy:
        await _yield()
        for row in self.strategies:
            if row.pipeline_id != pipeline_id or row.deleted:
                continue
            if strategy is None and row.default:
                return row
            if strategy is not None and row.strategy == strategy:
                return row
        raise NotFoundError("pipeline strategy", pipeline_id=pipeline_id, strategy=strategy)

    async def get_strategy_history(self, pipeline_id: int, wfr_id: int) -> StrategyHistory:
        await _yield()
        if (pipeline_id, wfr_id) not in self.strategy_history:
            raise NotFoundError("strategy history", pipeline_id=pipeline_id, wfr_id=wfr_id)
        return self.strategy_history[(pipeline_id, wfr_id)]

    async def get_latest_chart(self, app_id: int) -> Chart:
        await _yield()
        for chart in self.charts.values():
            if chart.app_id == app_id and chart.latest:
                return chart
        raise NotFoundError("chart", app_id=app_id)

    async def get_app_metrics_flag(self, app_id: int, env_id: int) -> bool:
        await _yield()
        return self.app_metrics.get((app_id, env_id), False)


class InMemoryPipelineOverrideRepository:
    """PipelineOverride rows; ``saved`` counts inserts."""

    def __init__(self) -> None:
        self.rows: dict[int, PipelineOverride] = {}
        self.saved = 0
        self._ids = itertools.count(1)

    def add(self, override: PipelineOverride) -> None:
        """Seed an existing row; later inserts get ids above it."""
        self.rows[override.id] = override
        self._ids = itertools.count(max(self.rows) + 1)

    async def get_current_release_counter(self, pipeline_id: int) -> int:
        await _yield()
        counters = [
            row.pipeline_release_counter
            for row in self.rows.values()
            if row.pipeline_id == pipeline_id
        ]
        return max(counters, default=0)

    async def save(self, override: PipelineOverride) -> PipelineOverride:
        await _yield()
        override.id = next(self._ids)
        self.rows[override.id] = copy.copy(override)
        self.saved += 1
        return override

    async def update(self, override: PipelineOverride) -> None:
        await _yield()
        if override.id not in self.rows:
            raise NotFoundError("pipeline override", id=override.id)
        override.updated_on = datetime.now(UTC)
        self.rows[override.id] = copy.copy(override)

    async def find_by_id(self, override_id: int) -> PipelineOverride:
        await _yield()
        if override_id not in self.rows:
            raise NotFoundError("pipeline override", id=override_id)
        return copy.copy(self.rows[override_id])

    async def find_by_pipeline_and_release_counter(
        self, pipeline_id: int, release_counter: int
    ) -> list[PipelineOverride]:
        await _yield()
        return [
            copy.copy(row)
            for row in sorted(self.rows.values(), key=lambda r: r.id)
            if row.pipeline_id == pipeline_id and row.pipeline_release_counter == release_counter
        ]

    async def update_merged_values(
        self, override_id: int, merged_values: str, user_id: int
    ) -> None:
        await _yield()
        if override_id not in self.rows:
            raise NotFoundError("pipeline override", id=override_id)
        row = self.rows[override_id]
        row.pipeline_merged_values = merged_values
        row.updated_by = user_id
        row.updated_on = datetime.now(UTC)


class InMemoryConfigMapStore:
    """App-level and env-level config map / secret rows plus their history."""

    def __init__(self) -> None:
        self.app_level: dict[int, ConfigMapRecord] = {}
        self.env_level: dict[tuple[int, int], ConfigMapRecord] = {}
        self.history: dict[tuple[int, int, ConfigHistoryType], ConfigHistory] = {}

    def add(self, record: ConfigMapRecord) -> None:
        if record.environment_id is None:
            self.app_level[record.app_id] = record
        else:
            self.env_level[(record.app_id, record.environment_id)] = record

    def add_history(self, wfr_id: int, history: ConfigHistory) -> None:
        self.history[(history.pipeline_id, wfr_id, history.config_type)] = history

    async def get_app_level(self, app_id: int) -> ConfigMapRecord:
        await _yield()
        if app_id not in self.app_level:
            raise NotFoundError("app level config", app_id=app_id)
        return self.app_level[app_id]

    async def get_env_level(self, app_id: int, env_id: int) -> ConfigMapRecord:
        await _yield()
        if (app_id, env_id) not in self.env_level:
            raise NotFoundError("env level config", app_id=app_id, env_id=env_id)
        return self.env_level[(app_id, env_id)]

    async def get_history(
        self, pipeline_id: int, wfr_id: int, config_type: ConfigHistoryType
    ) -> ConfigHistory:
        await _yield()
        key = (pipeline_id, wfr_id, config_type)
        if key not in self.history:
            raise NotFoundError(
                "config history", pipeline_id=pipeline_id, wfr_id=wfr_id, type=config_type.value
            )
        return self.history[key]


class InMemoryChartRefService:
    def __init__(self, chart_refs: list[ChartRef] | None = None) -> None:
        self.chart_refs = list(chart_refs or [])

    async def find_by_version_and_name(self, version: str, name: str) -> ChartRef:
        await _yield()
        for ref in self.chart_refs:
            if ref.version == version and ref.name == name:
                return ref
        raise NotFoundError("chart ref", version=version, name=name)


# =============================================================================
# STATIC COLLABORATORS
# =============================================================================


@dataclass
class StaticDigestPolicy:
    use_digest: bool = False

    def use_digest_for_trigger(self) -> bool:
        return self.use_digest


@dataclass
class StaticDigestPolicyService:
    """Digest pinning per pipeline id."""

    pinned_pipelines: set[int] = field(default_factory=set)

    async def get_digest_policy_configurations(self, pipeline_id: int) -> StaticDigestPolicy:
        return StaticDigestPolicy(pipeline_id in self.pinned_pipelines)


@dataclass
class StaticAppLabelService:
    """App labels per app id, rendered as ``{"appLabels": {...}}``."""

    labels: dict[int, dict[str, str]] = field(default_factory=dict)

    async def get_app_labels_for_deployment(
        self, app_id: int, app_name: str, env_name: str
    ) -> bytes | None:
        if app_id not in self.labels:
            return None
        return json.dumps({"appLabels": self.labels[app_id]}).encode()
