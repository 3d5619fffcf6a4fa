# ABOUTME: Config map and secret resolution for deployment triggers
# ABOUTME: Merges app/env documents, resolves scoped variables and lists external resources

"""
Config map / secret resolution.

=============================================================================
TWO SOURCES, ONE OUTPUT
=============================================================================

LAST_SAVED_CONFIG:
    app-level document  +  env-level document  ->  merged by entry name
    (either may be missing; a missing document counts as empty)

SPECIFIC_TRIGGER_CONFIG:
    the config map and secret history of the past workflow run. Those rows
    already hold the app + env merge of that time, so they are used as the
    env-level document with an empty app level.

Both paths then go through scoped variable resolution and produce:

    merged_json       {"ConfigMaps": {...}} patched by {"ConfigSecrets": {...}}
    external_cm_list  names of external config maps
    external_cs_list  names of external secrets of type KubernetesSecret

=============================================================================
MERGE BY NAME
=============================================================================

    app:  maps = [A(v1), B]
    env:  maps = [A(v2), C]
    out:  maps = [A(v2), C, B]      env entries first, then app-only entries

Entries are carried through as written (``external``, ``externalType`` and
any other key untouched). ``enabled`` is true if either side has entries.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog

from gitops_manifest.errors import MergeError, NotFoundError
from gitops_manifest.models import (
    KUBERNETES_SECRET,
    ConfigHistoryType,
    ConfigMapDocument,
    ConfigSecretEntry,
    DeploymentConfigType,
    MergedConfigSecret,
    SecretDocument,
)
from gitops_manifest.utils.jsonpatch import merge_patch

if TYPE_CHECKING:
    from gitops_manifest.interfaces import ConfigMapStore, ScopedVariableManager, VariableScope
    from gitops_manifest.models import ConfigMapRecord, EnvConfigOverride

logger = structlog.get_logger(__name__)

CONFIG_MAP_ROOT = "ConfigMaps"
SECRET_ROOT = "ConfigSecrets"


def _parse(model: type[Any], raw: str) -> Any:
    if not raw:
        return model()
    try:
        return model.model_validate_json(raw)
    except ValueError as e:
        raise MergeError(f"invalid {model.__name__}: {e}") from e


def _merge_entries(
    app_entries: list[ConfigSecretEntry], env_entries: list[ConfigSecretEntry]
) -> list[ConfigSecretEntry]:
    env_names = {entry.name for entry in env_entries}
    return [*env_entries, *(entry for entry in app_entries if entry.name not in env_names)]


def merge_config_maps(app_json: str, env_json: str) -> ConfigMapDocument:
    """Merge app-level and env-level config map documents; env wins by name."""
    app = _parse(ConfigMapDocument, app_json)
    env = _parse(ConfigMapDocument, env_json)
    maps = _merge_entries(app.maps, env.maps)
    return ConfigMapDocument(enabled=bool(app.maps or env.maps), maps=maps)


def merge_secrets(app_json: str, env_json: str) -> SecretDocument:
    """Merge app-level and env-level secret documents; env wins by name."""
    app = _parse(SecretDocument, app_json)
    env = _parse(SecretDocument, env_json)
    secrets = _merge_entries(app.secrets, env.secrets)
    return SecretDocument(enabled=bool(app.secrets or env.secrets), secrets=secrets)


def external_names(
    config_maps: ConfigMapDocument, secrets: SecretDocument
) -> tuple[list[str], list[str]]:
    """
    Names of external resources eligible for hash stamping.

    Only natively managed secrets (``externalType == "KubernetesSecret"``)
    are listed; other external secret kinds are not hashed.
    """
    external_cms: list[str] = []
    external_css: list[str] = []
    if config_maps.enabled:
        external_cms = [cm.name for cm in config_maps.maps if cm.external]
    if secrets.enabled:
        external_css = [
            cs.name
            for cs in secrets.secrets
            if cs.external and cs.external_type == KUBERNETES_SECRET
        ]
    return external_cms, external_css


def _root_json(root: str, document: ConfigMapDocument | SecretDocument) -> str:
    return json.dumps({root: document.model_dump(by_alias=True, exclude_unset=True)})


class ConfigSecretResolver:
    """Resolves the config map / secret JSON of one trigger."""

    def __init__(self, store: ConfigMapStore, variables: ScopedVariableManager) -> None:
        self._store = store
        self._variables = variables

    async def _app_level(self, app_id: int) -> ConfigMapRecord | None:
        try:
            return await self._store.get_app_level(app_id)
        except NotFoundError:
            return None

    async def _env_level(self, app_id: int, env_id: int) -> ConfigMapRecord | None:
        try:
            return await self._store.get_env_level(app_id, env_id)
        except NotFoundError:
            return None

    async def resolve(
        self,
        *,
        config_type: DeploymentConfigType,
        app_id: int,
        env_id: int,
        pipeline_id: int,
        wfr_id: int,
        scope: VariableScope,
        env_override: EnvConfigOverride,
    ) -> MergedConfigSecret:
        """
        Fetch, merge and resolve config maps and secrets.

        Variable snapshots are recorded on ``env_override``.

        Raises:
            VariableResolutionError: Placeholders could not be resolved.
            MergeError: A stored document was not valid JSON.
            NotFoundError: History rows of a specific trigger are missing.
        """
        log = logger.bind(pipeline_id=pipeline_id, app_id=app_id, env_id=env_id)

        cm_app = cs_app = cm_env = cs_env = ""
        app_level_id = env_level_id = 0
        cm_history_id = cs_history_id = 0

        if config_type == DeploymentConfigType.LAST_SAVED:
            app_level = await self._app_level(app_id)
            if app_level is not None:
                app_level_id = app_level.id
                cm_app, cs_app = app_level.config_map_data, app_level.secret_data
            env_level = await self._env_level(app_id, env_id)
            if env_level is not None:
                env_level_id = env_level.id
                cm_env, cs_env = env_level.config_map_data, env_level.secret_data
        else:
            try:
                cm_history = await self._store.get_history(
                    pipeline_id, wfr_id, ConfigHistoryType.CONFIGMAP
                )
                cs_history = await self._store.get_history(
                    pipeline_id, wfr_id, ConfigHistoryType.SECRET
                )
            except Exception:
                log.error("Failed to fetch config map / secret history", wfr_id=wfr_id)
                raise
            cm_history_id, cm_env = cm_history.id, cm_history.data
            cs_history_id, cs_env = cs_history.id, cs_history.data

        config_maps = merge_config_maps(cm_app, cm_env)
        secrets = merge_secrets(cs_app, cs_env)

        resolved = await self._variables.resolve_cmcs_trigger(
            config_type,
            scope,
            _root_json(CONFIG_MAP_ROOT, config_maps),
            _root_json(SECRET_ROOT, secrets),
            app_level_id,
            env_level_id,
            cm_history_id,
            cs_history_id,
        )
        env_override.variable_snapshot_for_cm = resolved.config_map_snapshot
        env_override.variable_snapshot_for_cs = resolved.secret_snapshot

        external_cms, external_css = external_names(config_maps, secrets)
        log.debug(
            "Resolved config maps and secrets",
            external_config_maps=external_cms,
            external_secrets=external_css,
        )
        return MergedConfigSecret(
            merged_json=merge_patch(resolved.config_maps, resolved.secrets),
            external_cm_list=external_cms,
            external_cs_list=external_css,
        )
