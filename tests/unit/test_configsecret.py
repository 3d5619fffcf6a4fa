# ABOUTME: Unit tests for config map and secret resolution
# ABOUTME: Tests merge by name, external resource lists, history replay and variable snapshots

import json

import pytest

from gitops_manifest.errors import MergeError, NotFoundError, VariableResolutionError
from gitops_manifest.interfaces import HistoryReference, VariableScope
from gitops_manifest.manifest.configsecret import (
    ConfigSecretResolver,
    external_names,
    merge_config_maps,
    merge_secrets,
)
from gitops_manifest.models import (
    ConfigHistory,
    ConfigHistoryType,
    ConfigMapRecord,
    DeploymentConfigType,
    EnvConfigOverride,
)
from gitops_manifest.store.memory import InMemoryConfigMapStore
from gitops_manifest.variables import HISTORY_CONFIG_MAP, ScopedVariable, StaticScopedVariableManager

SCOPE = VariableScope(app_id=1, env_id=2, cluster_id=1)


def cm_document(*entries: dict) -> str:
    return json.dumps({"enabled": True, "maps": list(entries)})


def cs_document(*entries: dict) -> str:
    return json.dumps({"enabled": True, "secrets": list(entries)})


def env_override() -> EnvConfigOverride:
    return EnvConfigOverride(id=50, chart_id=100, target_environment=2, namespace="staging")


async def resolve(resolver: ConfigSecretResolver, override: EnvConfigOverride | None = None, **kwargs):
    options = {
        "config_type": DeploymentConfigType.LAST_SAVED,
        "app_id": 1,
        "env_id": 2,
        "pipeline_id": 10,
        "wfr_id": 0,
        "scope": SCOPE,
        "env_override": override or env_override(),
    }
    options.update(kwargs)
    return await resolver.resolve(**options)


@pytest.mark.unit
class TestMergeDocuments:
    """Tests for merging app-level and env-level documents."""

    def test_env_wins_by_name(self):
        """Test that the env entry replaces the app entry of the same name."""
        merged = merge_config_maps(
            cm_document({"name": "a", "data": {"v": "app"}}, {"name": "b", "data": {}}),
            cm_document({"name": "a", "data": {"v": "env"}}, {"name": "c", "data": {}}),
        )

        assert [m.name for m in merged.maps] == ["a", "c", "b"]
        assert merged.maps[0].model_dump()["data"] == {"v": "env"}
        assert merged.enabled is True

    def test_missing_documents(self):
        """Test that missing documents merge to a disabled, empty document."""
        merged = merge_secrets("", "")
        assert merged.enabled is False
        assert merged.secrets == []

    def test_app_only(self):
        merged = merge_secrets(cs_document({"name": "db"}), "")
        assert [s.name for s in merged.secrets] == ["db"]
        assert merged.enabled is True

    def test_invalid_document(self):
        """Test that an unparsable document raises MergeError."""
        with pytest.raises(MergeError):
            merge_config_maps("{broken", "")

    def test_unknown_keys_preserved(self):
        """Test that keys the pipeline does not model are carried through."""
        merged = merge_config_maps(
            cm_document({"name": "a", "mountPath": "/etc/app", "subPath": True}), ""
        )
        dumped = merged.maps[0].model_dump(by_alias=True, exclude_unset=True)
        assert dumped == {"name": "a", "mountPath": "/etc/app", "subPath": True}


@pytest.mark.unit
class TestExternalNames:
    """Tests for external resource listing."""

    def test_external_config_maps(self):
        """Test that external config maps are listed."""
        cms = merge_config_maps(cm_document({"name": "a", "external": True}, {"name": "b"}), "")
        secrets = merge_secrets("", "")

        assert external_names(cms, secrets) == (["a"], [])

    def test_only_kubernetes_secrets(self):
        """Test that only external secrets of type KubernetesSecret are listed."""
        cms = merge_config_maps("", "")
        secrets = merge_secrets(
            cs_document(
                {"name": "native", "external": True, "externalType": "KubernetesSecret"},
                {"name": "vault", "external": True, "externalType": "HashiCorpVault"},
                {"name": "inline", "external": False, "externalType": "KubernetesSecret"},
            ),
            "",
        )

        assert external_names(cms, secrets) == ([], ["native"])


@pytest.mark.unit
class TestConfigSecretResolver:
    """Tests for ConfigSecretResolver."""

    async def test_last_saved(self, config_map_store: InMemoryConfigMapStore):
        """Test merging app and env documents into the ConfigMaps/ConfigSecrets roots."""
        resolver = ConfigSecretResolver(config_map_store, StaticScopedVariableManager())

        result = await resolve(resolver)

        merged = json.loads(result.merged_json)
        assert merged["ConfigMaps"]["maps"][0]["data"] == {"LEVEL": "env"}
        assert [m["name"] for m in merged["ConfigMaps"]["maps"]] == ["app-cm"]
        assert merged["ConfigSecrets"]["secrets"][0]["name"] == "db-creds"
        assert result.external_cm_list == []
        assert result.external_cs_list == []

    async def test_no_documents(self):
        """Test that an app without any config resolves to empty roots."""
        resolver = ConfigSecretResolver(InMemoryConfigMapStore(), StaticScopedVariableManager())

        result = await resolve(resolver)

        assert json.loads(result.merged_json) == {
            "ConfigMaps": {"enabled": False, "maps": []},
            "ConfigSecrets": {"enabled": False, "secrets": []},
        }

    async def test_variables_resolved_and_snapshotted(self):
        """Test that placeholders resolve and snapshots land on the env override."""
        store = InMemoryConfigMapStore()
        store.add(
            ConfigMapRecord(
                id=11,
                app_id=1,
                config_map_data=cm_document({"name": "app-cm", "data": {"HOST": "@{{db-host}}"}}),
            )
        )
        variables = StaticScopedVariableManager([ScopedVariable(name="db-host", value="db.internal")])
        override = env_override()

        result = await resolve(ConfigSecretResolver(store, variables), override)

        merged = json.loads(result.merged_json)
        assert merged["ConfigMaps"]["maps"][0]["data"] == {"HOST": "db.internal"}
        assert override.variable_snapshot_for_cm == {"db-host": "db.internal"}
        assert override.variable_snapshot_for_cs == {}

    async def test_unknown_variable_aborts(self):
        """Test that an unresolvable placeholder raises VariableResolutionError."""
        store = InMemoryConfigMapStore()
        store.add(
            ConfigMapRecord(
                id=11,
                app_id=1,
                secret_data=cs_document({"name": "db", "data": {"PASS": "@{{missing}}"}}),
            )
        )

        with pytest.raises(VariableResolutionError, match="secrets"):
            await resolve(ConfigSecretResolver(store, StaticScopedVariableManager()))

    async def test_specific_trigger_uses_history(self):
        """Test that a specific trigger reads config history of the run."""
        store = InMemoryConfigMapStore()
        store.add_history(
            77,
            ConfigHistory(
                id=5,
                pipeline_id=10,
                config_type=ConfigHistoryType.CONFIGMAP,
                data=cm_document(
                    {"name": "old-cm", "external": True, "data": {"HOST": "@{{db-host}}"}}
                ),
            ),
        )
        store.add_history(
            77, ConfigHistory(id=6, pipeline_id=10, config_type=ConfigHistoryType.SECRET, data="")
        )
        variables = StaticScopedVariableManager([ScopedVariable(name="db-host", value="db.new")])
        variables.record_snapshot(HistoryReference(5, HISTORY_CONFIG_MAP), {"db-host": "db.old"})

        result = await resolve(
            ConfigSecretResolver(store, variables),
            config_type=DeploymentConfigType.SPECIFIC_TRIGGER,
            wfr_id=77,
        )

        merged = json.loads(result.merged_json)
        assert merged["ConfigMaps"]["maps"][0]["data"] == {"HOST": "db.old"}
        assert result.external_cm_list == ["old-cm"]

    async def test_specific_trigger_missing_history(self):
        """Test that missing history of a specific trigger is an error."""
        resolver = ConfigSecretResolver(InMemoryConfigMapStore(), StaticScopedVariableManager())

        with pytest.raises(NotFoundError):
            await resolve(
                resolver, config_type=DeploymentConfigType.SPECIFIC_TRIGGER, wfr_id=77
            )
