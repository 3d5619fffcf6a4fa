# ABOUTME: Image pull secret injection for private container registries
# ABOUTME: Adds the registry's pull secret to merged values when the target cluster is granted access

"""
Image pull secrets.

A container registry can grant its pull secret to no cluster, to all
clusters, or to a selected set. When the artifact's registry grants access
to the environment's cluster, the secret name is added to the merged
values:

    {"imagePullSecrets": [{"name": "regcred-ecr-prod"}]}

Names already present are kept and never duplicated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from gitops_manifest.utils.jsonpatch import ValuesDocument

if TYPE_CHECKING:
    from gitops_manifest.models import CiArtifact, Environment

logger = structlog.get_logger(__name__)

IMAGE_PULL_SECRETS_KEY = "imagePullSecrets"


class PullSecretAccess(str, Enum):
    NONE = "NONE"
    ALL_CLUSTERS = "ALL_CLUSTERS"
    SELECTED_CLUSTERS = "SELECTED_CLUSTERS"


@dataclass
class RegistryPullSecret:
    registry_id: str
    secret_name: str
    access: PullSecretAccess = PullSecretAccess.NONE
    cluster_ids: set[int] = field(default_factory=set)

    def grants(self, cluster_id: int) -> bool:
        if self.access == PullSecretAccess.ALL_CLUSTERS:
            return True
        return self.access == PullSecretAccess.SELECTED_CLUSTERS and cluster_id in self.cluster_ids


class RegistryPullSecretHandler:
    """Adds registry pull secrets to merged values."""

    def __init__(self, registries: list[RegistryPullSecret] | None = None) -> None:
        self._registries = {registry.registry_id: registry for registry in registries or []}

    async def handle_image_pull_secret(
        self,
        environment: Environment,
        artifact: CiArtifact,
        ci_pipeline_id: int,
        merged_values: bytes,
    ) -> bytes:
        registry = self._registries.get(artifact.registry_id)
        if registry is None or not registry.grants(environment.cluster_id):
            return merged_values

        values = ValuesDocument.loads(merged_values)
        secrets = values.get_or(IMAGE_PULL_SECRETS_KEY) or []
        if not isinstance(secrets, list):
            secrets = []
        if any(isinstance(s, dict) and s.get("name") == registry.secret_name for s in secrets):
            return merged_values

        values.data[IMAGE_PULL_SECRETS_KEY] = [*secrets, {"name": registry.secret_name}]
        logger.info(
            "Added image pull secret",
            registry_id=registry.registry_id,
            secret=registry.secret_name,
            cluster_id=environment.cluster_id,
            ci_pipeline_id=ci_pipeline_id,
        )
        return values.dumps()
