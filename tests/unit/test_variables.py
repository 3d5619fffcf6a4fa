# ABOUTME: Unit tests for scoped variable resolution
# ABOUTME: Tests scope priority, placeholder substitution, snapshots and usage mapping

import pytest

from gitops_manifest.errors import VariableResolutionError
from gitops_manifest.interfaces import HistoryReference, VariableEntity, VariableScope
from gitops_manifest.models import DeploymentConfigType
from gitops_manifest.variables import (
    ENTITY_CONFIG_MAP_ENV_LEVEL,
    ENTITY_SECRET_APP_LEVEL,
    HISTORY_DEPLOYMENT_TEMPLATE,
    HISTORY_SECRET,
    ScopedVariable,
    ScopeLevel,
    StaticScopedVariableManager,
    substitute,
    variable_names,
)

SCOPE = VariableScope(app_id=1, env_id=2, cluster_id=1)


@pytest.mark.unit
class TestPlaceholders:
    """Tests for placeholder parsing and substitution."""

    def test_variable_names_in_order(self):
        template = '{"a": "@{{one}}", "b": "@{{ two }}", "c": "@{{one}}"}'
        assert variable_names(template) == ["one", "two"]

    def test_substitute_escapes_for_json(self):
        """Test that values are escaped to stay inside the JSON string."""
        result = substitute('{"motd": "@{{msg}}"}', {"msg": 'say "hi"\n'})
        assert result == '{"motd": "say \\"hi\\"\\n"}'

    def test_substitute_unknown(self):
        """Test that unknown placeholders fail."""
        with pytest.raises(VariableResolutionError, match="unknown variables: nope"):
            substitute('{"a": "@{{nope}}"}', {})


@pytest.mark.unit
class TestScopePriority:
    """Tests for choosing the most specific definition."""

    def test_most_specific_wins(self):
        manager = StaticScopedVariableManager(
            [
                ScopedVariable(name="host", value="global"),
                ScopedVariable(name="host", value="cluster", level=ScopeLevel.CLUSTER, cluster_id=1),
                ScopedVariable(name="host", value="env", level=ScopeLevel.ENVIRONMENT, env_id=2),
                ScopedVariable(
                    name="host", value="app-env", level=ScopeLevel.APP_ENVIRONMENT, app_id=1, env_id=2
                ),
            ]
        )
        assert manager.values_for(SCOPE) == {"host": "app-env"}

    def test_other_scopes_ignored(self):
        """Test that definitions for other environments do not apply."""
        manager = StaticScopedVariableManager(
            [
                ScopedVariable(name="host", value="global"),
                ScopedVariable(name="host", value="prod", level=ScopeLevel.ENVIRONMENT, env_id=9),
            ]
        )
        assert manager.values_for(SCOPE) == {"host": "global"}


@pytest.mark.unit
class TestStaticScopedVariableManager:
    """Tests for template resolution and snapshots."""

    async def test_resolve_and_record_usage(self):
        """Test that resolution returns a snapshot and records usage by entity."""
        manager = StaticScopedVariableManager([ScopedVariable(name="host", value="db")])
        entity = VariableEntity(50, "DeploymentTemplateEnvLevel")

        resolved, snapshot = await manager.get_mapped_variables_and_resolve_template(
            '{"host": "@{{host}}"}', SCOPE, entity
        )

        assert resolved == '{"host": "db"}'
        assert snapshot == {"host": "db"}
        assert manager.mapped_variables(entity) == ["host"]

    async def test_template_without_placeholders(self):
        manager = StaticScopedVariableManager()
        resolved, snapshot = await manager.get_mapped_variables_and_resolve_template(
            '{"a": 1}', SCOPE, VariableEntity(1, "DeploymentTemplateAppLevel")
        )
        assert (resolved, snapshot) == ('{"a": 1}', {})

    async def test_replay_snapshot(self):
        """Test that a stored snapshot wins over current definitions."""
        manager = StaticScopedVariableManager([ScopedVariable(name="host", value="new")])
        reference = HistoryReference(3, HISTORY_DEPLOYMENT_TEMPLATE)
        manager.record_snapshot(reference, {"host": "old"})

        snapshot, resolved = await manager.get_variable_snapshot_and_resolve_template(
            '{"host": "@{{host}}"}', reference
        )

        assert snapshot == {"host": "old"}
        assert resolved == '{"host": "old"}'

    async def test_replay_without_snapshot(self):
        """Test that a placeholder missing from the snapshot fails."""
        manager = StaticScopedVariableManager([ScopedVariable(name="host", value="new")])

        with pytest.raises(VariableResolutionError):
            await manager.get_variable_snapshot_and_resolve_template(
                '{"host": "@{{host}}"}', HistoryReference(3, HISTORY_DEPLOYMENT_TEMPLATE)
            )

    async def test_cmcs_last_saved_entity_levels(self):
        """Test that usage is mapped at env level when an env document exists."""
        manager = StaticScopedVariableManager([ScopedVariable(name="host", value="db")])

        result = await manager.resolve_cmcs_trigger(
            DeploymentConfigType.LAST_SAVED,
            SCOPE,
            '{"ConfigMaps": {"maps": [{"data": {"H": "@{{host}}"}}]}}',
            '{"ConfigSecrets": {}}',
            11,
            12,
            0,
            0,
        )

        assert result.config_map_snapshot == {"host": "db"}
        assert result.secret_snapshot == {}
        assert manager.mapped_variables(VariableEntity(12, ENTITY_CONFIG_MAP_ENV_LEVEL)) == ["host"]

    async def test_cmcs_app_level_only(self):
        manager = StaticScopedVariableManager([ScopedVariable(name="pw", value="x")])

        await manager.resolve_cmcs_trigger(
            DeploymentConfigType.LAST_SAVED, SCOPE, "{}", '{"s": "@{{pw}}"}', 11, 0, 0, 0
        )

        assert manager.mapped_variables(VariableEntity(11, ENTITY_SECRET_APP_LEVEL)) == ["pw"]

    async def test_cmcs_specific_trigger(self):
        """Test that a specific trigger replays the stored config snapshots."""
        manager = StaticScopedVariableManager([ScopedVariable(name="pw", value="new")])
        manager.record_snapshot(HistoryReference(6, HISTORY_SECRET), {"pw": "old"})

        result = await manager.resolve_cmcs_trigger(
            DeploymentConfigType.SPECIFIC_TRIGGER, SCOPE, "{}", '{"s": "@{{pw}}"}', 0, 0, 5, 6
        )

        assert result.secrets == '{"s": "old"}'
        assert result.secret_snapshot == {"pw": "old"}

    async def test_cmcs_reports_every_failure(self):
        """Test that failures of both documents are reported together."""
        manager = StaticScopedVariableManager()

        with pytest.raises(VariableResolutionError) as exc_info:
            await manager.resolve_cmcs_trigger(
                DeploymentConfigType.LAST_SAVED, SCOPE, '{"a": "@{{x}}"}', '{"b": "@{{y}}"}', 1, 0, 0, 0
            )

        message = str(exc_info.value)
        assert "config maps: unknown variables: x" in message
        assert "secrets: unknown variables: y" in message
