# ABOUTME: Unit tests for the platform resource API client
# ABOUTME: Tests path building, request handling, error classification and secret masking

import json

import httpx
import pytest
import respx
from pydantic import SecretStr

from gitops_reconciler.config import ClusterInstance
from gitops_reconciler.utils.client import (
    FIELD_MANAGER,
    PlatformClient,
    PlatformError,
    mask_secrets,
    plural_for,
    resource_path,
)

BASE_URL = "https://kube.example.com"


@pytest.fixture
def instance() -> ClusterInstance:
    """Create a cluster instance for respx-based tests."""
    return ClusterInstance(
        url=BASE_URL,
        token=SecretStr("test-token"),
        name="in-cluster",
        insecure=True,
    )


@pytest.mark.unit
class TestResourcePaths:
    """Tests for REST path construction."""

    @pytest.mark.parametrize(
        ("kind", "plural"),
        [
            ("Deployment", "deployments"),
            ("Ingress", "ingresses"),
            ("NetworkPolicy", "networkpolicies"),
            ("StorageClass", "storageclasses"),
            ("Gateway", "gateways"),
            ("Endpoints", "endpoints"),
        ],
    )
    def test_plural_for(self, kind: str, plural: str):
        """Test kind to resource plural mapping."""
        assert plural_for(kind) == plural

    def test_core_group_namespaced(self):
        """Test core group paths go under /api."""
        assert (
            resource_path("v1", "ConfigMap", "default", "settings")
            == "/api/v1/namespaces/default/configmaps/settings"
        )

    def test_named_group_collection(self):
        """Test named group collections go under /apis without a name segment."""
        assert resource_path("apps/v1", "Deployment", "prod") == "/apis/apps/v1/namespaces/prod/deployments"

    def test_cluster_scoped(self):
        """Test cluster-scoped resources omit the namespace segment."""
        assert resource_path("v1", "Namespace", "", "prod") == "/api/v1/namespaces/prod"
        assert (
            resource_path("apiextensions.k8s.io/v1", "CustomResourceDefinition", name="widgets.example.com")
            == "/apis/apiextensions.k8s.io/v1/customresourcedefinitions/widgets.example.com"
        )


@pytest.mark.unit
class TestMaskSecrets:
    """Tests for secret masking."""

    def test_masks_sensitive_keys(self):
        """Test that values under sensitive keys are replaced."""
        data = {"token": "abc", "nested": {"password": "pw", "name": "web"}}

        masked = mask_secrets(data)

        assert masked["token"] == "***MASKED***"
        assert masked["nested"]["password"] == "***MASKED***"
        assert masked["nested"]["name"] == "web"

    def test_masks_patterns_in_strings(self):
        """Test that bearer tokens and key=value secrets are masked inside text."""
        masked = mask_secrets("Authorization: Bearer eyJhbGci api_key=12345")

        assert "eyJhbGci" not in masked
        assert "12345" not in masked

    def test_walks_lists(self):
        """Test that list items are masked individually."""
        assert mask_secrets([{"secret": "x"}, 3]) == [{"secret": "***MASKED***"}, 3]


@pytest.mark.unit
class TestPlatformError:
    """Tests for PlatformError classification."""

    @pytest.mark.parametrize("code", [0, 408, 409, 429, 500, 503, 504])
    def test_transient_codes(self, code: int):
        """Test timeouts, conflicts, throttling and server errors are transient."""
        assert PlatformError(code, "x", transient=None if code else True).transient is True

    @pytest.mark.parametrize("code", [400, 401, 403, 404, 422])
    def test_terminal_codes(self, code: int):
        """Test schema rejections and permission denials are terminal."""
        assert PlatformError(code, "x").transient is False

    def test_str_with_details(self):
        """Test string form includes details when present."""
        error = PlatformError(422, "Deployment.apps \"web\" is invalid", details="Invalid")
        assert str(error) == 'Platform API error (422): Deployment.apps "web" is invalid - Invalid'

    def test_str_without_details(self):
        """Test string form without details."""
        assert str(PlatformError(403, "forbidden")) == "Platform API error (403): forbidden"


@pytest.mark.unit
class TestPlatformClient:
    """Tests for PlatformClient requests."""

    async def test_context_manager_not_entered(self, instance: ClusterInstance):
        """Test calls outside `async with` fail loudly."""
        client = PlatformClient(instance)

        with pytest.raises(RuntimeError, match="Client not initialized"):
            await client.get("v1", "ConfigMap", "settings", "default")

    async def test_context_manager_closes_client(self, instance: ClusterInstance):
        """Test async with creates the httpx client and closes it on exit."""
        client = PlatformClient(instance)

        async with client as entered:
            assert entered is client
            assert client._client is not None
            assert client.name == "in-cluster"

        assert client._client is None

    @respx.mock
    async def test_get_returns_live_resource(self, instance: ClusterInstance):
        """Test get decodes the object and fills in apiVersion/kind."""
        route = respx.get(f"{BASE_URL}/api/v1/namespaces/default/configmaps/settings").mock(
            return_value=httpx.Response(200, json={"metadata": {"name": "settings", "namespace": "default"}, "data": {"a": "1"}})
        )

        async with PlatformClient(instance) as client:
            live = await client.get("v1", "ConfigMap", "settings", "default")

        assert live is not None
        assert str(live.key) == "ConfigMap/default/settings"
        assert live.manifest["data"] == {"a": "1"}
        assert route.calls.last.request.headers["Authorization"] == "Bearer test-token"

    @respx.mock
    async def test_get_not_found_returns_none(self, instance: ClusterInstance):
        """Test a 404 means the resource does not exist."""
        respx.get(f"{BASE_URL}/apis/apps/v1/namespaces/default/deployments/web").mock(
            return_value=httpx.Response(404, json={"kind": "Status", "message": "not found", "reason": "NotFound"})
        )

        async with PlatformClient(instance) as client:
            assert await client.get("apps/v1", "Deployment", "web", "default") is None

    @respx.mock
    async def test_list_with_label_selector(self, instance: ClusterInstance):
        """Test list sends the selector and injects apiVersion/kind into items."""
        route = respx.get(f"{BASE_URL}/apis/apps/v1/deployments").mock(
            return_value=httpx.Response(
                200,
                json={
                    "items": [
                        {"metadata": {"name": "web", "namespace": "default"}},
                        {"metadata": {"name": "api", "namespace": "prod"}},
                    ]
                },
            )
        )

        async with PlatformClient(instance) as client:
            items = await client.list(
                "apps/v1", "Deployment", label_selector="app.kubernetes.io/instance=guestbook"
            )

        assert [str(i.key) for i in items] == ["Deployment/default/web", "Deployment/prod/api"]
        assert items[0].manifest["apiVersion"] == "apps/v1"
        params = route.calls.last.request.url.params
        assert params["labelSelector"] == "app.kubernetes.io/instance=guestbook"

    @respx.mock
    async def test_list_unserved_kind_is_empty(self, instance: ClusterInstance):
        """Test a kind the platform does not serve lists as empty."""
        respx.get(f"{BASE_URL}/apis/example.com/v1/widgets").mock(return_value=httpx.Response(404))

        async with PlatformClient(instance) as client:
            assert await client.list("example.com/v1", "Widget") == []

    @respx.mock
    async def test_apply_uses_server_side_apply(self, instance: ClusterInstance):
        """Test apply sends a PATCH with the apply content type and field manager."""
        manifest = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "settings", "namespace": "default"},
            "data": {"a": "1"},
        }
        route = respx.patch(f"{BASE_URL}/api/v1/namespaces/default/configmaps/settings").mock(
            return_value=httpx.Response(200, json={**manifest, "metadata": {**manifest["metadata"], "uid": "1"}})
        )

        async with PlatformClient(instance) as client:
            live = await client.apply(manifest)

        request = route.calls.last.request
        assert request.headers["Content-Type"] == "application/apply-patch+yaml"
        assert request.url.params["fieldManager"] == FIELD_MANAGER
        assert request.url.params["force"] == "true"
        assert "dryRun" not in request.url.params
        assert json.loads(request.content) == manifest
        assert live.manifest["metadata"]["uid"] == "1"

    @respx.mock
    async def test_apply_dry_run(self, instance: ClusterInstance):
        """Test dry-run applies ask the server not to persist."""
        route = respx.patch(f"{BASE_URL}/api/v1/namespaces/default/configmaps/settings").mock(
            return_value=httpx.Response(200, json={})
        )
        manifest = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "settings", "namespace": "default"}}

        async with PlatformClient(instance) as client:
            live = await client.apply(manifest, dry_run=True)

        assert route.calls.last.request.url.params["dryRun"] == "All"
        assert live.manifest["metadata"]["name"] == "settings"

    @respx.mock
    async def test_apply_rejection_is_terminal(self, instance: ClusterInstance):
        """Test a 422 Status body becomes a terminal PlatformError."""
        respx.patch(f"{BASE_URL}/apis/apps/v1/namespaces/default/deployments/web").mock(
            return_value=httpx.Response(
                422,
                json={"kind": "Status", "message": "spec.replicas: Invalid value: -1", "reason": "Invalid"},
            )
        )
        manifest = {"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "web", "namespace": "default"}}

        async with PlatformClient(instance) as client:
            with pytest.raises(PlatformError) as exc_info:
                await client.apply(manifest)

        assert exc_info.value.code == 422
        assert exc_info.value.message == "spec.replicas: Invalid value: -1"
        assert exc_info.value.details == "Invalid"
        assert exc_info.value.transient is False

    @respx.mock
    async def test_conflict_is_transient(self, instance: ClusterInstance):
        """Test an optimistic-lock conflict is classified as retryable."""
        respx.patch(f"{BASE_URL}/api/v1/namespaces/default/configmaps/settings").mock(
            return_value=httpx.Response(409, json={"message": "the object has been modified", "reason": "Conflict"})
        )
        manifest = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "settings", "namespace": "default"}}

        async with PlatformClient(instance) as client:
            with pytest.raises(PlatformError) as exc_info:
                await client.apply(manifest)

        assert exc_info.value.transient is True

    @respx.mock
    async def test_non_json_error_body(self, instance: ClusterInstance):
        """Test error bodies that are not JSON end up masked in details."""
        respx.get(f"{BASE_URL}/api/v1/namespaces/default/secrets/db").mock(
            return_value=httpx.Response(502, text="bad gateway token=abc123")
        )

        async with PlatformClient(instance) as client:
            with pytest.raises(PlatformError) as exc_info:
                await client.get("v1", "Secret", "db", "default")

        assert exc_info.value.message == "HTTP 502"
        assert "abc123" not in (exc_info.value.details or "")
        assert exc_info.value.transient is True

    @respx.mock
    async def test_connection_error_is_transient(self, instance: ClusterInstance):
        """Test transport failures become transient PlatformErrors with code 0."""
        respx.get(f"{BASE_URL}/api/v1/namespaces/default/configmaps/settings").mock(
            side_effect=httpx.ConnectError("connection refused")
        )

        async with PlatformClient(instance) as client:
            with pytest.raises(PlatformError) as exc_info:
                await client.get("v1", "ConfigMap", "settings", "default")

        assert exc_info.value.code == 0
        assert exc_info.value.transient is True

    @respx.mock
    async def test_delete_background_propagation(self, instance: ClusterInstance):
        """Test delete asks for background propagation."""
        route = respx.delete(f"{BASE_URL}/apis/apps/v1/namespaces/default/deployments/web").mock(
            return_value=httpx.Response(200, json={"kind": "Status", "status": "Success"})
        )

        async with PlatformClient(instance) as client:
            await client.delete("apps/v1", "Deployment", "web", "default")

        assert route.calls.last.request.url.params["propagationPolicy"] == "Background"

    @respx.mock
    async def test_delete_missing_is_success(self, instance: ClusterInstance):
        """Test deleting an already deleted resource does not raise."""
        respx.delete(f"{BASE_URL}/api/v1/namespaces/default/configmaps/old").mock(
            return_value=httpx.Response(404, json={"message": "not found"})
        )

        async with PlatformClient(instance) as client:
            await client.delete("v1", "ConfigMap", "old", "default")

    @respx.mock
    async def test_delete_forbidden_raises(self, instance: ClusterInstance):
        """Test permission denial on delete is terminal."""
        respx.delete(f"{BASE_URL}/api/v1/namespaces/default/configmaps/old").mock(
            return_value=httpx.Response(403, json={"message": "forbidden", "reason": "Forbidden"})
        )

        async with PlatformClient(instance) as client:
            with pytest.raises(PlatformError) as exc_info:
                await client.delete("v1", "ConfigMap", "old", "default")

        assert exc_info.value.code == 403
        assert exc_info.value.transient is False
