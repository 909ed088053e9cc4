# ABOUTME: Cluster state reader building live-state snapshots
# ABOUTME: Missing resources are recorded explicitly; an unreachable cluster aborts the pass

"""Cluster State Reader."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from gitops_sync.models import LiveResource, LiveState, ResourceRef

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_sync.utils.client import ClusterClient

logger = structlog.get_logger(__name__)


class ClusterStateReader:
    """Reads the live state of a set of resources, one query at a time."""

    def __init__(self, client: ClusterClient) -> None:
        self._client = client

    async def read(self, refs: Iterable[ResourceRef]) -> LiveState:
        """
        Query each ref and snapshot the result.

        Duplicate refs are read once. A missing resource maps to None.

        Raises:
            ClusterUnreachable: the cluster API could not be contacted or
                answered with an unexpected error.
        """
        resources: dict[ResourceRef, LiveResource | None] = {}
        for ref in refs:
            if ref in resources:
                continue
            resources[ref] = await self._client.get_resource(ref)

        missing = sum(1 for res in resources.values() if res is None)
        logger.debug("Read live state", resources=len(resources), missing=missing)
        return LiveState(resources=resources)
