# ABOUTME: Cluster API client wrapper with error classification and read retries
# ABOUTME: Async get/create/update/delete of typed resources with optimistic-concurrency tokens

"""
Cluster API client.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The controller talks to a Kubernetes-like cluster API over HTTP. This module:

1. ADDRESSES resources by (kind, namespace, name)
2. CLASSIFIES every failure into the controller's error taxonomy
3. RETRIES idempotent reads on transient failures
4. POOLS connections: one client is shared by every Application's reader
   and executor stages

=============================================================================
CLUSTER API OVERVIEW
=============================================================================

    GET    /api/v1/namespaces/{ns}/{kind}/{name}   read one resource (404 = missing)
    POST   /api/v1/namespaces/{ns}/{kind}          create
    PUT    /api/v1/namespaces/{ns}/{kind}/{name}   update (resourceVersion required)
    DELETE /api/v1/namespaces/{ns}/{kind}/{name}   delete

Cluster-scoped kinds (Namespace, ClusterRole, ...) use /api/v1/cluster/{kind}
instead of the namespaces prefix. ``{kind}`` is lower-cased.

Resource documents look like:

    {"kind": "Deployment", "name": "app", "namespace": "web",
     "spec": {...}, "resourceVersion": "4711"}

=============================================================================
ERROR CLASSIFICATION
=============================================================================

    connect error, 500, 502, other 5xx     -> ClusterUnreachable
    request timeout, 409, 429, 503, 504    -> ConflictTransient
    400, 403, 422, other 4xx               -> ValidationRejected

A PUT carrying a stale resourceVersion is answered with 409, so optimistic
concurrency conflicts surface as ConflictTransient and the executor retries
them after re-reading the current version.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_sync.errors import ClusterUnreachable, ConflictTransient, ValidationRejected
from gitops_sync.models import LiveResource, ResourceRef

if TYPE_CHECKING:
    from gitops_sync.errors import SyncError

logger = structlog.get_logger(__name__)

TRANSIENT_STATUS = frozenset([409, 429, 503, 504])


def resource_path(ref: ResourceRef, *, collection: bool = False) -> str:
    """
    API path for a resource (or its collection, for create).

    Example:
        resource_path(ResourceRef("Deployment", "web", "app"))
        -> "/namespaces/web/deployment/app"
    """
    kind = ref.kind.lower()
    base = f"/cluster/{kind}" if ref.cluster_scoped else f"/namespaces/{ref.namespace}/{kind}"
    return base if collection else f"{base}/{ref.name}"


def classify_status(
    code: int,
    message: str,
    ref: ResourceRef | None = None,
) -> SyncError:
    """Map an HTTP error status to the controller's error taxonomy."""
    if code in TRANSIENT_STATUS:
        return ConflictTransient(message, ref=ref, code=code)
    if 400 <= code < 500:
        return ValidationRejected(message, ref=ref, code=code)
    return ClusterUnreachable(message, ref=ref, code=code)


class ClusterClient:
    """
    Async cluster API client.

    LIFECYCLE:
    ----------
        async with ClusterClient("https://cluster.example.com") as client:
            live = await client.get_resource(ref)

    The underlying httpx.AsyncClient (and its connection pool) exists only
    inside the ``async with`` block.

    READ RETRIES:
    -------------
    ``get_resource`` is idempotent, so transient failures are retried up to
    ``read_attempts`` times with exponential backoff before surfacing.
    Writes are never retried here: the executor owns write retries because
    it must re-read the resource version between attempts.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        insecure: bool = False,
        read_attempts: int = 3,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 10.0,
    ) -> None:
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._insecure = insecure
        self._read_attempts = read_attempts
        self._backoff_multiplier = backoff_multiplier
        self._backoff_max = backoff_max
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ClusterClient:
        self._client = httpx.AsyncClient(
            base_url=f"{self._url}/api/v1",
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
            verify=not self._insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        ref: ResourceRef | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Send one request and classify transport failures.

        Returns the raw response for any status below 400 and for 404 (the
        callers decide what "missing" means). Every other error status is
        raised as a SyncError subclass.
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path)
        log.debug("Cluster API request")

        try:
            response = await self._client.request(method, path, json=json_data)
        except httpx.TimeoutException as e:
            raise ConflictTransient("request timed out", ref=ref, cause=e) from e
        except httpx.TransportError as e:
            raise ClusterUnreachable(f"cannot reach cluster API: {e}", ref=ref, cause=e) from e

        if response.status_code >= 400 and response.status_code != 404:
            message = f"HTTP {response.status_code}"
            try:
                message = response.json().get("message", message)
            except Exception:
                if response.text:
                    message = response.text[:200]
            log.warning("Cluster API error", status=response.status_code, message=message)
            raise classify_status(response.status_code, message, ref)

        return response

    @staticmethod
    def _decode(response: httpx.Response, ref: ResourceRef) -> dict[str, Any] | None:
        """JSON object body of a successful response, or None when it is empty."""
        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError as e:
            raise ClusterUnreachable(
                "cluster API returned a non-JSON body", ref=ref, code=response.status_code, cause=e
            ) from e
        if not isinstance(data, dict):
            raise ClusterUnreachable(
                "cluster API returned a non-object body", ref=ref, code=response.status_code
            )
        return data

    @staticmethod
    def _to_live(ref: ResourceRef, data: dict[str, Any]) -> LiveResource:
        spec = data.get("spec") or {}
        return LiveResource(
            ref=ref,
            spec=spec if isinstance(spec, dict) else {},
            resource_version=str(data.get("resourceVersion", "")),
        )

    # =========================================================================
    # RESOURCE OPERATIONS
    # =========================================================================

    async def get_resource(self, ref: ResourceRef) -> LiveResource | None:
        """
        Read one resource.

        Returns:
            The live resource, or None if the cluster reports it missing.

        Raises:
            ClusterUnreachable: cluster down, still timing out after retries,
                an unexpected error status, or a malformed body.
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ConflictTransient),
                stop=stop_after_attempt(self._read_attempts),
                wait=wait_exponential(
                    multiplier=self._backoff_multiplier,
                    max=self._backoff_max,
                ),
                reraise=True,
            ):
                with attempt:
                    response = await self._request("GET", resource_path(ref), ref)
        except ConflictTransient as e:
            raise ClusterUnreachable(
                f"read kept failing after {self._read_attempts} attempts: {e.message}",
                ref=ref,
                code=e.code,
                cause=e,
            ) from e
        except ValidationRejected as e:
            raise ClusterUnreachable(
                f"read refused with HTTP {e.code}: {e.message}", ref=ref, code=e.code, cause=e
            ) from e

        if response.status_code == 404:
            return None
        return self._to_live(ref, self._decode(response, ref) or {})

    async def create_resource(self, ref: ResourceRef, body: dict[str, Any]) -> LiveResource:
        """Create a resource. 409 (already exists) surfaces as ConflictTransient."""
        payload = {"kind": ref.kind, "name": ref.name, "namespace": ref.namespace, "spec": body}
        response = await self._request(
            "POST", resource_path(ref, collection=True), ref, json_data=payload
        )
        if response.status_code == 404:
            # Collection missing, typically the namespace does not exist yet
            raise ValidationRejected("collection not found", ref=ref, code=404)
        return self._to_live(ref, self._decode(response, ref) or payload)

    async def update_resource(
        self,
        ref: ResourceRef,
        body: dict[str, Any],
        resource_version: str,
    ) -> LiveResource:
        """
        Replace a resource's spec.

        ``resource_version`` is the token read from the cluster. If the
        resource changed since, the cluster answers 409 (ConflictTransient).
        If it disappeared, 404 is reported as ConflictTransient too so the
        executor re-reads and creates it instead.
        """
        payload = {
            "kind": ref.kind,
            "name": ref.name,
            "namespace": ref.namespace,
            "spec": body,
            "resourceVersion": resource_version,
        }
        response = await self._request("PUT", resource_path(ref), ref, json_data=payload)
        if response.status_code == 404:
            raise ConflictTransient("resource disappeared before update", ref=ref, code=404)
        return self._to_live(ref, self._decode(response, ref) or payload)

    async def delete_resource(self, ref: ResourceRef) -> None:
        """Delete a resource. Deleting something already gone is a no-op."""
        await self._request("DELETE", resource_path(ref), ref)
