# ABOUTME: Sync executor applying ordered patches to the cluster
# ABOUTME: Per-patch retries with exponential backoff; aborts on the first non-transient failure

"""
Sync Executor.

Patches are applied strictly in the order the diff engine produced them.

    ConflictTransient   retried up to retry_bound attempts with exponential
                        backoff; the resource is re-read before every retry
                        so the next write carries the current resourceVersion
                        (a Create that meanwhile exists becomes an Update, an
                        Update whose target vanished becomes a Create)
    ValidationRejected  not retried; remaining patches are skipped
    ClusterUnreachable  not retried; remaining patches are skipped

The SyncResult always lists exactly the patches that succeeded before the
abort point, plus the offending patch in ``failures``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_sync.errors import ConflictTransient, SyncError
from gitops_sync.models import PatchFailure, PatchOp, SyncResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gitops_sync.models import Patch
    from gitops_sync.utils.client import ClusterClient

logger = structlog.get_logger(__name__)


class SyncExecutor:
    """Applies one pass worth of patches for one Application."""

    def __init__(
        self,
        client: ClusterClient,
        retry_bound: int = 3,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 10.0,
        timeout: float = 120.0,
        dry_run: bool = False,
    ) -> None:
        self._client = client
        self._retry_bound = retry_bound
        self._backoff_multiplier = backoff_multiplier
        self._backoff_max = backoff_max
        self._timeout = timeout
        self._dry_run = dry_run

    async def apply(self, patches: Sequence[Patch], revision: str) -> SyncResult:
        """
        Apply ``patches`` in order and report what happened.

        Never raises SyncError: failures are recorded in the returned result
        with stage "apply". A stage timeout is recorded as ConflictTransient
        against the patch that was in progress.
        """
        result = SyncResult(revision=revision, dry_run=self._dry_run)

        if self._dry_run:
            result.applied.extend(patches)
            logger.info("Dry run, patches planned only", patches=len(patches))
            return result.finish()

        current: Patch | None = None
        try:
            async with asyncio.timeout(self._timeout):
                for patch in patches:
                    current = patch
                    failure = await self._apply_one(patch)
                    if failure is not None:
                        result.failures.append(failure)
                        logger.warning(
                            "Patch failed, aborting remaining patches",
                            patch=patch.describe(),
                            error=failure.error,
                            remaining=len(patches) - len(result.applied) - 1,
                        )
                        return result.fail("apply", failure.message).finish()
                    result.applied.append(patch)
                    logger.info("Patch applied", patch=patch.describe())
        except TimeoutError:
            error = ConflictTransient(f"apply stage exceeded {self._timeout}s", stage="apply")
            if current is not None:
                result.failures.append(
                    PatchFailure(current, type(error).__name__, str(error))
                )
            logger.warning("Apply stage timed out", applied=len(result.applied))
            return result.fail("apply", error).finish()

        return result.finish()

    async def _apply_one(self, patch: Patch) -> PatchFailure | None:
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ConflictTransient),
                stop=stop_after_attempt(self._retry_bound),
                wait=wait_exponential(
                    multiplier=self._backoff_multiplier,
                    max=self._backoff_max,
                ),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        logger.debug("Retrying patch", patch=patch.describe(), attempt=attempts)
                    await self._send(patch, refresh=attempts > 1)
        except SyncError as e:
            e.stage = "apply"
            message = str(e)
            if isinstance(e, ConflictTransient):
                message = f"{message} (gave up after {attempts} attempts)"
            return PatchFailure(patch, type(e).__name__, message, attempts)
        return None

    async def _send(self, patch: Patch, refresh: bool) -> None:
        if patch.op == PatchOp.DELETE:
            await self._client.delete_resource(patch.ref)
            return

        op = patch.op
        version = patch.resource_version
        if refresh:
            current = await self._client.get_resource(patch.ref)
            if current is None:
                op = PatchOp.CREATE
            else:
                op = PatchOp.UPDATE
                version = current.resource_version

        if op == PatchOp.CREATE:
            await self._client.create_resource(patch.ref, patch.body)
        else:
            await self._client.update_resource(patch.ref, patch.body, version)
