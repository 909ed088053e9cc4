# ABOUTME: Unit tests for the cluster API client
# ABOUTME: Tests path building, status classification, read retries and write semantics

import json

import httpx
import pytest
import respx

from gitops_sync.errors import ClusterUnreachable, ConflictTransient, ValidationRejected
from gitops_sync.models import ResourceRef
from gitops_sync.utils.client import ClusterClient, classify_status, resource_path

BASE_URL = "https://cluster.example.com/api/v1"
DEPLOYMENT = ResourceRef("Deployment", "web", "frontend")
NAMESPACE = ResourceRef("Namespace", "", "web")


def make_client(**kwargs) -> ClusterClient:
    return ClusterClient(
        "https://cluster.example.com/",
        backoff_multiplier=0,
        backoff_max=0,
        **kwargs,
    )


@pytest.mark.unit
class TestResourcePath:
    """Tests for resource_path."""

    def test_namespaced(self):
        assert resource_path(DEPLOYMENT) == "/namespaces/web/deployment/frontend"

    def test_cluster_scoped(self):
        assert resource_path(NAMESPACE) == "/cluster/namespace/web"

    def test_collection(self):
        assert resource_path(DEPLOYMENT, collection=True) == "/namespaces/web/deployment"
        assert resource_path(NAMESPACE, collection=True) == "/cluster/namespace"


@pytest.mark.unit
class TestClassifyStatus:
    """Tests for mapping HTTP statuses onto the error taxonomy."""

    @pytest.mark.parametrize("code", [409, 429, 503, 504])
    def test_transient(self, code: int):
        assert isinstance(classify_status(code, "busy"), ConflictTransient)

    @pytest.mark.parametrize("code", [400, 403, 422])
    def test_rejected(self, code: int):
        error = classify_status(code, "invalid", DEPLOYMENT)
        assert isinstance(error, ValidationRejected)
        assert error.ref == DEPLOYMENT
        assert error.code == code

    @pytest.mark.parametrize("code", [500, 502])
    def test_unreachable(self, code: int):
        assert isinstance(classify_status(code, "boom"), ClusterUnreachable)


@pytest.mark.unit
class TestClusterClientLifecycle:
    """Tests for the async context manager."""

    async def test_request_outside_context_raises(self):
        client = make_client()
        with pytest.raises(RuntimeError, match="not initialized"):
            await client.get_resource(DEPLOYMENT)

    async def test_closes_on_exit(self):
        client = make_client()
        async with client:
            assert client._client is not None
        assert client._client is None


@pytest.mark.unit
class TestGetResource:
    """Tests for ClusterClient.get_resource."""

    @respx.mock
    async def test_returns_live_resource(self):
        respx.get(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            return_value=httpx.Response(
                200, json={"spec": {"replicas": 2}, "resourceVersion": "17"}
            )
        )

        async with make_client() as client:
            live = await client.get_resource(DEPLOYMENT)

        assert live is not None
        assert live.ref == DEPLOYMENT
        assert live.spec == {"replicas": 2}
        assert live.resource_version == "17"

    @respx.mock
    async def test_missing_returns_none(self):
        respx.get(f"{BASE_URL}/cluster/namespace/web").mock(
            return_value=httpx.Response(404, json={"message": "not found"})
        )

        async with make_client() as client:
            assert await client.get_resource(NAMESPACE) is None

    @respx.mock
    async def test_retries_transient_then_succeeds(self):
        route = respx.get(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(200, json={"spec": {}, "resourceVersion": "1"}),
            ]
        )

        async with make_client() as client:
            live = await client.get_resource(DEPLOYMENT)

        assert live is not None
        assert route.call_count == 2

    @respx.mock
    async def test_exhausted_retries_become_unreachable(self):
        route = respx.get(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            return_value=httpx.Response(503)
        )

        async with make_client(read_attempts=2) as client:
            with pytest.raises(ClusterUnreachable, match="2 attempts"):
                await client.get_resource(DEPLOYMENT)

        assert route.call_count == 2

    @respx.mock
    async def test_connection_error_is_unreachable(self):
        respx.get(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            side_effect=httpx.ConnectError("refused")
        )

        async with make_client() as client:
            with pytest.raises(ClusterUnreachable):
                await client.get_resource(DEPLOYMENT)

    @respx.mock
    async def test_server_error_not_retried(self):
        route = respx.get(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            return_value=httpx.Response(500, json={"message": "etcd down"})
        )

        async with make_client() as client:
            with pytest.raises(ClusterUnreachable, match="etcd down"):
                await client.get_resource(DEPLOYMENT)

        assert route.call_count == 1

    @respx.mock
    async def test_forbidden_read_is_unreachable(self):
        route = respx.get(f"{BASE_URL}/cluster/namespace/web").mock(
            return_value=httpx.Response(403, json={"message": "forbidden"})
        )

        async with make_client() as client:
            with pytest.raises(ClusterUnreachable, match="HTTP 403: forbidden") as exc_info:
                await client.get_resource(NAMESPACE)

        assert exc_info.value.code == 403
        assert route.call_count == 1

    @respx.mock
    async def test_non_json_body_is_unreachable(self):
        respx.get(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            return_value=httpx.Response(200, text="<html>proxy login</html>")
        )

        async with make_client() as client:
            with pytest.raises(ClusterUnreachable, match="non-JSON"):
                await client.get_resource(DEPLOYMENT)


@pytest.mark.unit
class TestWrites:
    """Tests for create, update and delete."""

    @respx.mock
    async def test_create_posts_to_collection(self):
        route = respx.post(f"{BASE_URL}/namespaces/web/deployment").mock(
            return_value=httpx.Response(201, json={"spec": {"replicas": 2}, "resourceVersion": "1"})
        )

        async with make_client() as client:
            live = await client.create_resource(DEPLOYMENT, {"replicas": 2})

        assert live.resource_version == "1"
        body = json.loads(route.calls[0].request.content)
        assert body == {
            "kind": "Deployment",
            "name": "frontend",
            "namespace": "web",
            "spec": {"replicas": 2},
        }

    @respx.mock
    async def test_create_conflict_is_transient(self):
        respx.post(f"{BASE_URL}/namespaces/web/deployment").mock(
            return_value=httpx.Response(409, json={"message": "already exists"})
        )

        async with make_client() as client:
            with pytest.raises(ConflictTransient, match="already exists"):
                await client.create_resource(DEPLOYMENT, {})

    @respx.mock
    async def test_create_into_missing_namespace_rejected(self):
        respx.post(f"{BASE_URL}/namespaces/web/deployment").mock(
            return_value=httpx.Response(404)
        )

        async with make_client() as client:
            with pytest.raises(ValidationRejected, match="collection not found"):
                await client.create_resource(DEPLOYMENT, {})

    @respx.mock
    async def test_create_with_non_json_body_is_unreachable(self):
        respx.post(f"{BASE_URL}/namespaces/web/deployment").mock(
            return_value=httpx.Response(201, text="created")
        )

        async with make_client() as client:
            with pytest.raises(ClusterUnreachable, match="non-JSON") as exc_info:
                await client.create_resource(DEPLOYMENT, {})

        assert exc_info.value.code == 201

    @respx.mock
    async def test_create_with_list_body_is_unreachable(self):
        respx.post(f"{BASE_URL}/namespaces/web/deployment").mock(
            return_value=httpx.Response(201, json=["created"])
        )

        async with make_client() as client:
            with pytest.raises(ClusterUnreachable, match="non-object"):
                await client.create_resource(DEPLOYMENT, {})

    @respx.mock
    async def test_update_sends_resource_version(self):
        route = respx.put(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            return_value=httpx.Response(200, json={"spec": {}, "resourceVersion": "8"})
        )

        async with make_client() as client:
            await client.update_resource(DEPLOYMENT, {"replicas": 3}, "7")

        assert json.loads(route.calls[0].request.content)["resourceVersion"] == "7"

    @respx.mock
    async def test_update_rejected(self):
        respx.put(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            return_value=httpx.Response(422, json={"message": "replicas must be >= 0"})
        )

        async with make_client() as client:
            with pytest.raises(ValidationRejected, match="replicas"):
                await client.update_resource(DEPLOYMENT, {"replicas": -1}, "7")

    @respx.mock
    async def test_update_of_vanished_resource_is_transient(self):
        respx.put(f"{BASE_URL}/namespaces/web/deployment/frontend").mock(
            return_value=httpx.Response(404)
        )

        async with make_client() as client:
            with pytest.raises(ConflictTransient) as exc_info:
                await client.update_resource(DEPLOYMENT, {}, "7")

        assert exc_info.value.code == 404

    @respx.mock
    async def test_delete_missing_is_noop(self):
        route = respx.delete(f"{BASE_URL}/cluster/namespace/web").mock(
            return_value=httpx.Response(404)
        )

        async with make_client() as client:
            await client.delete_resource(NAMESPACE)

        assert route.called

    @respx.mock
    async def test_timeout_is_transient(self):
        respx.delete(f"{BASE_URL}/cluster/namespace/web").mock(
            side_effect=httpx.ReadTimeout("slow")
        )

        async with make_client() as client:
            with pytest.raises(ConflictTransient, match="timed out"):
                await client.delete_resource(NAMESPACE)
