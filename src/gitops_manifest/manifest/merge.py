# ABOUTME: Ordered JSON merge patch chain producing the merged chart values
# ABOUTME: chart values < strategy < release override < config/secrets < app labels

"""
Value merge engine.

The merged values of a trigger are built by patching, in a FIXED order,
onto an empty object:

    1. {}
    2. chart values      env override values if is_override, else global values
    3. strategy config   only if a strategy with non-empty config is present
    4. release override  image, tag, release counter, ...
    5. config/secrets    {"ConfigMaps": ..., "ConfigSecrets": ...}, if present
    6. app labels        if present

Later steps win on conflicting keys. Any step failing aborts the merge.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from gitops_manifest.errors import MergeError
from gitops_manifest.utils.jsonpatch import EMPTY_JSON, merge_patch

if TYPE_CHECKING:
    from gitops_manifest.models import EnvConfigOverride, PipelineStrategy

logger = structlog.get_logger(__name__)


def chart_values(env_override: EnvConfigOverride) -> str:
    """Resolved values of the env override, or the chart's global values."""
    if env_override.is_override:
        return env_override.resolved_env_override_values
    if env_override.chart is None:
        raise MergeError(f"env override {env_override.id} has no chart attached")
    return env_override.chart.resolved_global_override


def apply_steps(steps: list[tuple[str, bytes | str]]) -> bytes:
    """Patch each step onto ``{}`` in order."""
    merged = EMPTY_JSON
    for name, patch in steps:
        try:
            merged = merge_patch(merged, patch)
        except MergeError:
            logger.error("Failed to merge values", step=name)
            raise
    return merged


class ValueMergeEngine:
    """Builds merged chart values from the documents of one trigger."""

    def steps(
        self,
        env_override: EnvConfigOverride,
        release_override_json: str,
        config_secret_json: bytes | None,
        app_label_json: bytes | None,
        strategy: PipelineStrategy | None,
    ) -> list[tuple[str, bytes | str]]:
        steps: list[tuple[str, bytes | str]] = [("chart", chart_values(env_override))]
        if strategy is not None and strategy.config:
            steps.append(("strategy", strategy.config))
        steps.append(("release", release_override_json))
        if config_secret_json is not None:
            steps.append(("config_secret", config_secret_json))
        if app_label_json is not None:
            steps.append(("app_labels", app_label_json))
        return steps

    def merge(
        self,
        env_override: EnvConfigOverride,
        release_override_json: str,
        config_secret_json: bytes | None = None,
        app_label_json: bytes | None = None,
        strategy: PipelineStrategy | None = None,
    ) -> bytes:
        """
        Merge every document of the trigger.

        Raises:
            MergeError: A document was not valid JSON.
        """
        return apply_steps(
            self.steps(
                env_override, release_override_json, config_secret_json, app_label_json, strategy
            )
        )
