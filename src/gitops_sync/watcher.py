# ABOUTME: Manifest store watcher producing desired-state snapshots
# ABOUTME: Tracks the last-seen revision per Application and validates fetched manifests

"""Manifest Store Watcher."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from gitops_sync.errors import FetchError
from gitops_sync.models import CLUSTER_SCOPED_KINDS, DesiredState, Manifest

if TYPE_CHECKING:
    from gitops_sync.models import Application
    from gitops_sync.utils.store import ManifestStoreClient

logger = structlog.get_logger(__name__)


class ManifestDocument(BaseModel):
    """Shape every manifest document must have."""

    model_config = {"extra": "ignore"}

    kind: str = Field(min_length=1)
    name: str = Field(min_length=1)
    namespace: str | None = None
    spec: dict[str, Any] = Field(default_factory=dict)


def parse_manifests(items: list[Any], default_namespace: str) -> tuple[Manifest, ...]:
    """
    Validate raw documents into Manifests, preserving declaration order.

    Namespaced kinds without a namespace take ``default_namespace``;
    cluster-scoped kinds always get "".

    Raises:
        FetchError: a document is malformed or two documents share a ref.
    """
    manifests: list[Manifest] = []
    seen = set()
    for index, item in enumerate(items):
        try:
            doc = ManifestDocument.model_validate(item)
        except ValidationError as e:
            raise FetchError(f"malformed manifest at index {index}: {e}", cause=e) from e

        if doc.kind in CLUSTER_SCOPED_KINDS:
            namespace = ""
        else:
            namespace = doc.namespace or default_namespace
        manifest = Manifest(kind=doc.kind, name=doc.name, namespace=namespace, spec=doc.spec)

        if manifest.ref in seen:
            raise FetchError(f"duplicate manifest {manifest.ref}", ref=manifest.ref)
        seen.add(manifest.ref)
        manifests.append(manifest)
    return tuple(manifests)


class ManifestWatcher:
    """
    Produces a DesiredState when an Application's revision changes.

    The last-seen revision is kept on the Application and only advanced
    after a fetch fully succeeds, so a failed fetch is retried at the same
    revision on the next poll.
    """

    def __init__(self, store: ManifestStoreClient) -> None:
        self._store = store

    async def poll(self, app: Application, force: bool = False) -> DesiredState | None:
        """
        Fetch the manifest set at the latest revision.

        Args:
            app: Application whose source to poll.
            force: Fetch even if the revision is unchanged (manual syncs,
                   retries of a failed revision, self-heal).

        Returns:
            The new DesiredState, or None if the revision is unchanged.

        Raises:
            FetchError: store unreachable or content malformed.
        """
        cfg = app.config
        log = logger.bind(app=app.name, ref=cfg.target_revision)

        revision = await self._store.resolve_revision(cfg.repo_url, cfg.target_revision)
        if not force and revision == app.last_seen_revision:
            log.debug("Revision unchanged", revision=revision)
            return None

        items = await self._store.list_manifests(cfg.repo_url, revision, cfg.repo_path)
        manifests = parse_manifests(items, cfg.target_namespace)

        app.last_seen_revision = revision
        log.info("Fetched manifests", revision=revision, count=len(manifests))
        return DesiredState(revision=revision, manifests=manifests)
