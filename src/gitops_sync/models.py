# ABOUTME: Data model for the GitOps sync controller
# ABOUTME: Resource references, desired/live snapshots, patches, sync results, applications

"""
Data model shared by every stage of a reconciliation pass.

=============================================================================
LIFETIMES
=============================================================================

    Application    registered -> mutated by the reconciler -> deregistered
    DesiredState   fetched at one revision, immutable, superseded by a newer fetch
    LiveState      read once per pass, discarded afterwards
    Patch          exists only inside one pass
    SyncResult     appended to the Application's bounded history

Snapshots are frozen dataclasses so a stage can never mutate what an
earlier stage produced.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

    from gitops_sync.config import AppConfig


# Kinds that live outside any namespace. Their refs carry namespace "".
CLUSTER_SCOPED_KINDS = frozenset(
    [
        "Namespace",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "StorageClass",
        "PersistentVolume",
        "IngressClass",
        "APIService",
        "PriorityClass",
    ]
)


class SyncPolicy(StrEnum):
    """How an Application enters a pass."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


class SyncStatus(StrEnum):
    """Operator-visible sync status of an Application."""

    UNKNOWN = "Unknown"
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    SYNCING = "Syncing"
    FAILED = "Failed"


class PatchOp(StrEnum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class SyncPhase(StrEnum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


# =============================================================================
# RESOURCES
# =============================================================================


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Identity of a cluster resource: (kind, namespace, name)."""

    kind: str
    namespace: str
    name: str

    @property
    def cluster_scoped(self) -> bool:
        return self.kind in CLUSTER_SCOPED_KINDS

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class Manifest:
    """One declarative resource document from the manifest store."""

    kind: str
    name: str
    namespace: str
    spec: dict[str, Any]

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.namespace, self.name)


@dataclass(frozen=True)
class DesiredState:
    """Ordered manifest set at one revision."""

    revision: str
    manifests: tuple[Manifest, ...]

    @property
    def refs(self) -> list[ResourceRef]:
        return [m.ref for m in self.manifests]

    def __iter__(self) -> Iterator[Manifest]:
        return iter(self.manifests)

    def __len__(self) -> int:
        return len(self.manifests)


@dataclass(frozen=True)
class LiveResource:
    """A resource as the cluster currently reports it."""

    ref: ResourceRef
    spec: dict[str, Any]
    resource_version: str = ""


@dataclass(frozen=True)
class LiveState:
    """
    Snapshot of the cluster for a set of refs.

    A ref mapped to None was queried and found missing; a ref absent from
    the mapping was never queried.
    """

    resources: dict[ResourceRef, LiveResource | None] = field(default_factory=dict)

    def get(self, ref: ResourceRef) -> LiveResource | None:
        return self.resources.get(ref)

    def present(self) -> set[ResourceRef]:
        return {ref for ref, res in self.resources.items() if res is not None}

    def __contains__(self, ref: object) -> bool:
        return isinstance(ref, ResourceRef) and self.resources.get(ref) is not None


@dataclass(frozen=True)
class Patch:
    """Operation required to converge a single resource."""

    op: PatchOp
    ref: ResourceRef
    body: dict[str, Any] = field(default_factory=dict)
    resource_version: str = ""

    def describe(self) -> str:
        return f"{self.op} {self.ref}"


# =============================================================================
# RESULTS
# =============================================================================


@dataclass(frozen=True)
class PatchFailure:
    """Patch that could not be applied and why."""

    patch: Patch
    error: str
    message: str
    attempts: int = 1


@dataclass
class SyncResult:
    """Outcome of one reconciliation pass."""

    revision: str
    phase: SyncPhase = SyncPhase.SUCCEEDED
    applied: list[Patch] = field(default_factory=list)
    failures: list[PatchFailure] = field(default_factory=list)
    stage: str | None = None
    error: str | None = None
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.phase == SyncPhase.SUCCEEDED

    def fail(self, stage: str, error: BaseException | str) -> SyncResult:
        self.phase = SyncPhase.FAILED
        self.stage = stage
        self.error = str(error)
        return self

    def finish(self) -> SyncResult:
        self.finished_at = datetime.now(UTC)
        return self

    def summary(self) -> str:
        text = f"{self.phase} revision={self.revision or '-'} applied={len(self.applied)}"
        if self.stage:
            text += f" stage={self.stage}"
        if self.dry_run:
            text += " (dry-run)"
        return text


# =============================================================================
# APPLICATION
# =============================================================================


@dataclass
class Application:
    """
    A registered Application and its reconciliation state.

    Only the reconciler mutates these fields, apart from ``last_seen_revision``
    which the watcher advances after a successful fetch. A re-registered
    Application is a new object and so starts with no revision. ``applied``
    is the set of refs this Application is known to own; the diff engine only
    ever deletes refs from that set.
    """

    config: AppConfig
    status: SyncStatus = SyncStatus.UNKNOWN
    history: deque[SyncResult] = field(default_factory=deque)
    applied: set[ResourceRef] = field(default_factory=set)
    desired: DesiredState | None = None
    last_seen_revision: str | None = None
    last_synced_revision: str | None = None
    last_error: str | None = None
    in_flight: bool = False

    @classmethod
    def from_config(cls, config: AppConfig) -> Application:
        return cls(config=config, history=deque(maxlen=config.history_depth))

    @property
    def name(self) -> str:
        return self.config.name

    def record(self, result: SyncResult) -> None:
        # deque(maxlen) evicts the oldest entry
        self.history.append(result)

    def recent(self, limit: int | None = None) -> list[SyncResult]:
        """History newest-first."""
        items = list(reversed(self.history))
        return items[:limit] if limit else items
