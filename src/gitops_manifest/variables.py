# ABOUTME: Scoped variable resolution for deployment templates and config documents
# ABOUTME: Resolves @{{name}} placeholders by scope priority and replays stored snapshots

"""
Scoped variables.

=============================================================================
WHAT IS A SCOPED VARIABLE?
=============================================================================

A named value that can be defined at several scopes; the most specific
definition wins for a given (app, env, cluster):

    GLOBAL  <  CLUSTER  <  ENVIRONMENT  <  APP + ENVIRONMENT

Templates reference variables as ``@{{name}}``, inside JSON strings:

    {"env": {"DB_HOST": "@{{db-host}}"}}

Resolution returns the resolved template plus a SNAPSHOT (name -> value)
of everything that was used. Snapshots are stored with deployment history
so a later "deploy this exact trigger again" resolves to identical values
even if the variables changed since.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import IntEnum

import structlog

from gitops_manifest.errors import VariableResolutionError
from gitops_manifest.interfaces import (
    HistoryReference,
    ResolvedConfigSecret,
    VariableEntity,
    VariableScope,
)
from gitops_manifest.models import DeploymentConfigType

logger = structlog.get_logger(__name__)

PLACEHOLDER = re.compile(r"@\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

# Entity types under which variable usage is recorded.
ENTITY_DEPLOYMENT_TEMPLATE_APP_LEVEL = "DeploymentTemplateAppLevel"
ENTITY_DEPLOYMENT_TEMPLATE_ENV_LEVEL = "DeploymentTemplateEnvLevel"
ENTITY_CONFIG_MAP_APP_LEVEL = "ConfigMapAppLevel"
ENTITY_CONFIG_MAP_ENV_LEVEL = "ConfigMapEnvLevel"
ENTITY_SECRET_APP_LEVEL = "SecretAppLevel"
ENTITY_SECRET_ENV_LEVEL = "SecretEnvLevel"

# History types snapshots are stored under.
HISTORY_DEPLOYMENT_TEMPLATE = "DeploymentTemplate"
HISTORY_CONFIG_MAP = "ConfigMap"
HISTORY_SECRET = "Secret"


class ScopeLevel(IntEnum):
    GLOBAL = 0
    CLUSTER = 1
    ENVIRONMENT = 2
    APP_ENVIRONMENT = 3


@dataclass
class ScopedVariable:
    name: str
    value: str
    level: ScopeLevel = ScopeLevel.GLOBAL
    app_id: int | None = None
    env_id: int | None = None
    cluster_id: int | None = None

    def applies_to(self, scope: VariableScope) -> bool:
        if self.level == ScopeLevel.GLOBAL:
            return True
        if self.level == ScopeLevel.CLUSTER:
            return self.cluster_id == scope.cluster_id
        if self.level == ScopeLevel.ENVIRONMENT:
            return self.env_id == scope.env_id
        return self.app_id == scope.app_id and self.env_id == scope.env_id


def variable_names(template: str) -> list[str]:
    """Placeholder names in ``template``, in order of first use."""
    return list(dict.fromkeys(PLACEHOLDER.findall(template)))


def substitute(template: str, values: dict[str, str]) -> str:
    """
    Replace every placeholder with its value, escaped for a JSON string.

    Raises:
        VariableResolutionError: A placeholder has no value.
    """
    missing = [name for name in variable_names(template) if name not in values]
    if missing:
        raise VariableResolutionError(f"unknown variables: {', '.join(missing)}")
    return PLACEHOLDER.sub(lambda m: json.dumps(str(values[m.group(1)]))[1:-1], template)


class StaticScopedVariableManager:
    """
    Scoped variable manager over a fixed set of variable definitions.

    Snapshots recorded with ``record_snapshot`` are what
    ``get_variable_snapshot_and_resolve_template`` replays.
    """

    def __init__(self, variables: list[ScopedVariable] | None = None) -> None:
        self._variables = list(variables or [])
        self._snapshots: dict[tuple[int, str], dict[str, str]] = {}
        self._usage: dict[tuple[int, str], list[str]] = {}

    def record_snapshot(self, reference: HistoryReference, snapshot: dict[str, str]) -> None:
        self._snapshots[(reference.history_id, reference.history_type)] = dict(snapshot)

    def mapped_variables(self, entity: VariableEntity) -> list[str]:
        """Variable names last used by ``entity``."""
        return list(self._usage.get((entity.entity_id, entity.entity_type), []))

    def values_for(self, scope: VariableScope) -> dict[str, str]:
        """Effective variable values for ``scope`` (most specific definition wins)."""
        chosen: dict[str, ScopedVariable] = {}
        for variable in self._variables:
            if not variable.applies_to(scope):
                continue
            current = chosen.get(variable.name)
            if current is None or variable.level > current.level:
                chosen[variable.name] = variable
        return {name: variable.value for name, variable in chosen.items()}

    def _resolve(self, template: str, scope: VariableScope) -> tuple[str, dict[str, str]]:
        names = variable_names(template)
        if not names:
            return template, {}
        values = self.values_for(scope)
        resolved = substitute(template, values)
        return resolved, {name: values[name] for name in names}

    async def get_mapped_variables_and_resolve_template(
        self, template: str, scope: VariableScope, entity: VariableEntity
    ) -> tuple[str, dict[str, str]]:
        resolved, snapshot = self._resolve(template, scope)
        self._usage[(entity.entity_id, entity.entity_type)] = list(snapshot)
        logger.debug(
            "Resolved template variables",
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            variables=sorted(snapshot),
        )
        return resolved, snapshot

    async def get_variable_snapshot_and_resolve_template(
        self, template: str, reference: HistoryReference
    ) -> tuple[dict[str, str], str]:
        snapshot = self._snapshots.get((reference.history_id, reference.history_type), {})
        return dict(snapshot), substitute(template, snapshot)

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
    ) -> ResolvedConfigSecret:
        """
        Resolve config map and secret documents of a trigger.

        Both documents are attempted; if either fails, one error naming
        every failure is raised.
        """
        env_level = bool(env_level_id)
        entity_id = env_level_id if env_level else app_level_id
        documents = {
            "config maps": (
                config_maps_json,
                ENTITY_CONFIG_MAP_ENV_LEVEL if env_level else ENTITY_CONFIG_MAP_APP_LEVEL,
                HistoryReference(config_map_history_id, HISTORY_CONFIG_MAP),
            ),
            "secrets": (
                secrets_json,
                ENTITY_SECRET_ENV_LEVEL if env_level else ENTITY_SECRET_APP_LEVEL,
                HistoryReference(secret_history_id, HISTORY_SECRET),
            ),
        }

        results: dict[str, tuple[str, dict[str, str]]] = {}
        failures: list[str] = []
        for label, (document, entity_type, reference) in documents.items():
            try:
                if config_type == DeploymentConfigType.SPECIFIC_TRIGGER:
                    snapshot, resolved = await self.get_variable_snapshot_and_resolve_template(
                        document, reference
                    )
                else:
                    resolved, snapshot = await self.get_mapped_variables_and_resolve_template(
                        document, scope, VariableEntity(entity_id, entity_type)
                    )
            except VariableResolutionError as e:
                failures.append(f"{label}: {e}")
                continue
            results[label] = (resolved, snapshot)

        if failures:
            raise VariableResolutionError("; ".join(failures))

        config_maps, config_map_snapshot = results["config maps"]
        secrets, secret_snapshot = results["secrets"]
        return ResolvedConfigSecret(
            config_maps=config_maps,
            secrets=secrets,
            config_map_snapshot=config_map_snapshot,
            secret_snapshot=secret_snapshot,
        )
