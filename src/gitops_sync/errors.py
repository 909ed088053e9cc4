# ABOUTME: Error taxonomy for the GitOps sync controller
# ABOUTME: Every pass failure is one of these, tagged with the stage that raised it

"""
Error taxonomy for reconciliation passes.

=============================================================================
FAILURE CLASSES
=============================================================================

    FetchError          Manifest store unreachable or content malformed.
                        The next poll retries the same revision.

    ClusterUnreachable  The cluster API cannot be contacted at all.
                        The pass aborts before any patch is attempted
                        (or, mid-apply, aborts the remaining patches).

    ValidationRejected  The cluster refused one specific patch.
                        Remaining patches in the pass are skipped.

    ConflictTransient   Resource-version mismatch, throttling or timeout.
                        Retried with backoff, escalates when exhausted.

All four share SyncError so the reconciler can record any of them against
the Application without knowing which stage produced it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitops_sync.models import ResourceRef


class SyncError(Exception):
    """
    Base class for failures scoped to one Application's pass.

    Carries enough context for an operator to diagnose without re-running:
    the stage, the resource involved (if any), the HTTP status (if any) and
    the underlying cause.
    """

    stage = "sync"

    def __init__(
        self,
        message: str,
        *,
        ref: ResourceRef | None = None,
        code: int | None = None,
        cause: BaseException | None = None,
        stage: str | None = None,
    ) -> None:
        self.message = message
        self.ref = ref
        self.code = code
        self.cause = cause
        if stage:
            self.stage = stage
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"{type(self).__name__} [{self.stage}]"
        if self.code is not None:
            base += f" ({self.code})"
        base += f": {self.message}"
        if self.ref is not None:
            base += f" - {self.ref}"
        return base


class FetchError(SyncError):
    """Manifest store unreachable or returned malformed content."""

    stage = "fetch"


class ClusterUnreachable(SyncError):
    """Cluster API could not be contacted."""

    stage = "read"


class ValidationRejected(SyncError):
    """Cluster rejected a patch as invalid."""

    stage = "apply"


class ConflictTransient(SyncError):
    """Version conflict or timeout; safe to retry."""

    stage = "apply"
