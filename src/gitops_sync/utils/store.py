# ABOUTME: Manifest store client for the GitOps sync controller
# ABOUTME: Resolves revision pointers and fetches manifest documents at a revision

"""
Manifest store client.

The manifest store is a revision-addressed view of the CD repository:

    GET /api/v1/repos/revision?repo=<url>&ref=<branch|tag|HEAD>
        -> {"revision": "4f2a9c1..."}

    GET /api/v1/repos/manifests?repo=<url>&revision=<sha>&path=<dir>
        -> {"items": [{"kind": "...", "name": "...", "namespace": "...", "spec": {...}}]}

Every failure (transport, HTTP status, undecodable body) is raised as
FetchError. Timeouts are retried with exponential backoff before giving up.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_sync.errors import FetchError

logger = structlog.get_logger(__name__)


class ManifestStoreClient:
    """
    Async manifest store client.

        async with ManifestStoreClient("https://store.example.com") as store:
            revision = await store.resolve_revision(repo_url, "main")
            items = await store.list_manifests(repo_url, revision, "apps/web")
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        attempts: int = 3,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._attempts = attempts
        self._backoff_multiplier = backoff_multiplier
        self._backoff_max = backoff_max
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ManifestStoreClient:
        self._client = httpx.AsyncClient(base_url=f"{self._url}/api/v1", timeout=self._timeout)
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(path=path, repo=params.get("repo"))
        log.debug("Manifest store request")

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TimeoutException),
                stop=stop_after_attempt(self._attempts),
                wait=wait_exponential(
                    multiplier=self._backoff_multiplier,
                    max=self._backoff_max,
                ),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise FetchError("manifest store timed out", cause=e) from e
        except httpx.TransportError as e:
            raise FetchError(f"cannot reach manifest store: {e}", cause=e) from e

        if response.status_code >= 400:
            message = f"HTTP {response.status_code}"
            try:
                message = response.json().get("message", message)
            except Exception:
                if response.text:
                    message = response.text[:200]
            log.warning("Manifest store error", status=response.status_code, message=message)
            raise FetchError(message, code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise FetchError("manifest store returned a non-JSON body", cause=e) from e
        if not isinstance(data, dict):
            raise FetchError("manifest store returned a non-object body")
        return data

    async def resolve_revision(self, repo_url: str, ref: str) -> str:
        """Resolve a branch, tag or HEAD to a concrete revision."""
        data = await self._request("/repos/revision", {"repo": repo_url, "ref": ref})
        revision = data.get("revision")
        if not isinstance(revision, str) or not revision:
            raise FetchError(f"no revision for ref '{ref}'")
        return revision

    async def list_manifests(self, repo_url: str, revision: str, path: str) -> list[Any]:
        """
        Raw manifest documents under ``path`` at ``revision``.

        Documents are returned unvalidated; the watcher owns validation.
        """
        data = await self._request(
            "/repos/manifests",
            {"repo": repo_url, "revision": revision, "path": path},
        )
        items = data.get("items")
        if items is None:
            return []
        if not isinstance(items, list):
            raise FetchError("'items' is not a list")
        return items
