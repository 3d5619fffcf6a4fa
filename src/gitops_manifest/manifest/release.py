# ABOUTME: Release override rendering for deployment triggers
# ABOUTME: Splits the artifact image, applies digest pinning and renders the image descriptor template

"""
Release override rendering.

=============================================================================
WHAT IS A RELEASE OVERRIDE?
=============================================================================

Every chart carries an "image descriptor template": a small JSON document
with placeholders for facts that are only known at trigger time.

    {"server": {"deployment": {"image": "{{.Name}}", "image_tag": "{{.Tag}}"}},
     "pipelineName": "{{.PipelineName}}", "releaseVersion": "{{.ReleaseVersion}}",
     "deploymentType": "{{.DeploymentType}}", "app": "{{.App}}", "env": "{{.Env}}",
     "appMetrics": {{.AppMetrics}}}

Templates are stored with dot-prefixed ``{{.Field}}`` references. They are
normalised to ``{{ Field }}`` and rendered with jinja2, so both spellings
work. Booleans render as JSON ``true``/``false``.

=============================================================================
IMAGE SPLITTING
=============================================================================

    "registry:5000/team/app:abc123"
        name = "registry:5000/team/app"   (everything before the LAST ':')
        tag  = "abc123"

With a digest policy in force the tag becomes ``abc123@sha256:...``.

=============================================================================
USER OVERRIDE ORDERING
=============================================================================

An additional override supplied with the trigger is the BASE of the merge;
the rendered fragment is patched on top. Users can add keys, but never
replace the image or tag chosen for the release.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError

from gitops_manifest.errors import TemplateRenderError
from gitops_manifest.utils.jsonpatch import merge_patch

if TYPE_CHECKING:
    from gitops_manifest.interfaces import ImageDigestPolicyService
    from gitops_manifest.models import CiArtifact, PipelineStrategy

logger = structlog.get_logger(__name__)

_DOT_FIELD = re.compile(r"\{\{-?\s*\.(\w+)\s*-?\}\}")


def _finalize(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return value


_environment = Environment(
    loader=BaseLoader(),
    undefined=StrictUndefined,
    finalize=_finalize,
    autoescape=False,
)


def split_image(image: str) -> tuple[str, str]:
    """Split ``image`` at its last ':' into (name, tag)."""
    if ":" not in image:
        return "", image
    name, _, tag = image.rpartition(":")
    return name, tag


@dataclass
class ReleaseAttributes:
    """Values available to the image descriptor template."""

    name: str
    tag: str
    pipeline_name: str
    release_version: int
    deployment_type: str
    app: int
    env: int
    app_metrics: bool | None

    def template_context(self) -> dict[str, Any]:
        return {
            "Name": self.name,
            "Tag": self.tag,
            "PipelineName": self.pipeline_name,
            "ReleaseVersion": str(self.release_version),
            "DeploymentType": self.deployment_type,
            "App": str(self.app),
            "Env": str(self.env),
            "AppMetrics": self.app_metrics,
        }

    def render_json(self, template: str) -> str:
        """
        Render ``template`` and check the result is a JSON document.

        Raises:
            TemplateRenderError: Template syntax error, unknown field, or
                output that is not valid JSON.
        """
        source = _DOT_FIELD.sub(r"{{ \1 }}", template)
        try:
            rendered = _environment.from_string(source).render(**self.template_context())
        except TemplateError as e:
            raise TemplateRenderError(str(e)) from e
        try:
            json.loads(rendered)
        except ValueError as e:
            raise TemplateRenderError(f"rendered template is not valid JSON: {e}") from e
        return rendered


class ReleaseOverrideRenderer:
    """Produces the per-release JSON fragment of a trigger."""

    def __init__(self, digest_policy_service: ImageDigestPolicyService) -> None:
        self._digest_policy_service = digest_policy_service

    async def render(
        self,
        *,
        image_descriptor_template: str,
        artifact: CiArtifact | None,
        pipeline_id: int,
        pipeline_name: str,
        app_id: int,
        env_id: int,
        release_counter: int,
        strategy: PipelineStrategy | None,
        app_metrics: bool | None,
        additional_override: dict[str, Any] | None = None,
    ) -> str:
        """
        Render the release override JSON.

        Raises:
            TemplateRenderError: The image descriptor template did not render.
            Exception: Digest policy lookup failures propagate unchanged.
        """
        log = logger.bind(pipeline_id=pipeline_id, app_id=app_id, env_id=env_id)

        name, tag = "", ""
        if artifact is not None:
            name, tag = split_image(artifact.image)
            try:
                policy = await self._digest_policy_service.get_digest_policy_configurations(
                    pipeline_id
                )
            except Exception:
                log.error("Failed to fetch image digest policy")
                raise
            if policy.use_digest_for_trigger():
                tag = f"{tag}@{artifact.image_digest}"

        attributes = ReleaseAttributes(
            name=name,
            tag=tag,
            pipeline_name=pipeline_name,
            release_version=release_counter,
            deployment_type=strategy.strategy.value if strategy else "",
            app=app_id,
            env=env_id,
            app_metrics=app_metrics,
        )
        override = attributes.render_json(image_descriptor_template)

        if additional_override is not None:
            override = merge_patch(json.dumps(additional_override), override).decode()
        return override
