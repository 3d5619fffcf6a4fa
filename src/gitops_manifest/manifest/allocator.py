# ABOUTME: Release counter allocation for pipeline overrides
# ABOUTME: Optimistic allocate-then-verify with bounded repair via tenacity

"""
Pipeline override allocation.

=============================================================================
THE PROBLEM
=============================================================================

Every trigger gets a PipelineOverride row with a release counter that is
unique and increasing per pipeline. The counter is ``current max + 1``, but
two triggers of the same pipeline can read the same max concurrently:

    trigger A: max = 4 -> insert counter 5 (id 101)
    trigger B: max = 4 -> insert counter 5 (id 102)     <- duplicate

=============================================================================
VERIFY AND REPAIR
=============================================================================

After inserting, each trigger re-reads all rows of (pipeline, counter):

    first row (lowest id) is ours  -> done
    otherwise                      -> counter = current max + 1, update, re-check

The check runs under a tenacity retry bounded by
``duplicate_verification_attempts`` (default 5). A trigger that is still
not first after the last attempt fails with DuplicateReleaseCounterError.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from gitops_manifest.errors import DuplicateReleaseCounterError
from gitops_manifest.models import DeploymentType, OverrideStatus, PipelineOverride

if TYPE_CHECKING:
    from gitops_manifest.interfaces import PipelineOverrideRepository

logger = structlog.get_logger(__name__)


class ReleaseCounterConflict(Exception):
    """Another row holds the counter with a lower id; the counter was moved."""


class PipelineOverrideAllocator:
    """Creates pipeline override rows with collision-free release counters."""

    def __init__(self, repository: PipelineOverrideRepository, max_attempts: int = 5) -> None:
        self._repository = repository
        self._max_attempts = max_attempts

    async def allocate(
        self,
        *,
        pipeline_id: int,
        env_config_override_id: int,
        ci_artifact_id: int,
        cd_workflow_id: int = 0,
        deployment_type: DeploymentType = DeploymentType.DEPLOY,
        user_id: int = 0,
        triggered_at: datetime | None = None,
    ) -> PipelineOverride:
        """
        Insert a new override with status NEW and a verified release counter.

        Raises:
            DuplicateReleaseCounterError: Repair attempts exhausted.
        """
        triggered_at = triggered_at or datetime.now(UTC)
        current = await self._repository.get_current_release_counter(pipeline_id)
        override = await self._repository.save(
            PipelineOverride(
                id=0,
                pipeline_id=pipeline_id,
                env_config_override_id=env_config_override_id,
                ci_artifact_id=ci_artifact_id,
                pipeline_release_counter=current + 1,
                deployment_type=deployment_type,
                status=OverrideStatus.NEW,
                cd_workflow_id=cd_workflow_id,
                created_by=user_id,
                created_on=triggered_at,
                updated_by=user_id,
                updated_on=triggered_at,
            )
        )
        await self.verify_unique(override)
        logger.info(
            "Allocated pipeline override",
            pipeline_id=pipeline_id,
            pipeline_override_id=override.id,
            release_counter=override.pipeline_release_counter,
        )
        return override

    async def verify_unique(self, override: PipelineOverride) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type(ReleaseCounterConflict),
                reraise=True,
            ):
                with attempt:
                    await self._check_and_repair(override)
        except ReleaseCounterConflict as e:
            logger.error(
                "Release counter still duplicated",
                pipeline_id=override.pipeline_id,
                pipeline_override_id=override.id,
                attempts=self._max_attempts,
            )
            raise DuplicateReleaseCounterError(override.id, self._max_attempts) from e

    async def _check_and_repair(self, override: PipelineOverride) -> None:
        rows = await self._repository.find_by_pipeline_and_release_counter(
            override.pipeline_id, override.pipeline_release_counter
        )
        if rows and rows[0].id == override.id:
            return

        current = await self._repository.get_current_release_counter(override.pipeline_id)
        logger.warning(
            "Duplicate release counter, reallocating",
            pipeline_id=override.pipeline_id,
            pipeline_override_id=override.id,
            duplicate=override.pipeline_release_counter,
            reallocated=current + 1,
        )
        override.pipeline_release_counter = current + 1
        await self._repository.update(override)
        raise ReleaseCounterConflict(override.pipeline_release_counter)
