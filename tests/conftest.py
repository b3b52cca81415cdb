# ABOUTME: Pytest fixtures and configuration for GitOps reconciler tests
# ABOUTME: Provides settings, an in-memory platform, manifest directories and Application builders

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from gitops_reconciler.config import (
    ApplicationSpec,
    ClusterInstance,
    LoopSettings,
    SecuritySettings,
    ServerSettings,
)
from gitops_reconciler.source import SourceTracker
from gitops_reconciler.utils.client import PlatformClient
from gitops_reconciler.utils.safety import SafetyGuard

from builders import FakePlatform, ManifestDir


# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def mock_cluster() -> ClusterInstance:
    """Create a cluster configuration for testing."""
    return ClusterInstance(
        url="https://kube.example.com",
        token=SecretStr("test-token"),
        name="in-cluster",
        insecure=True,
    )


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings that allow triggers and prune confirmations."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def loop_settings() -> LoopSettings:
    """Loop timings short enough for tests: no backoff waits, sub-second health deadline."""
    return LoopSettings(
        poll_interval=0.05,
        health_timeout=0.2,
        health_poll_interval=0.01,
        apply_attempts=3,
        apply_backoff_min=0,
        apply_backoff_max=0,
        max_concurrent_applies=4,
        error_backoff_base=0.01,
        error_backoff_max=0.05,
        history_limit=5,
        dry_run=False,
    )


@pytest.fixture
def mock_server_settings(
    mock_cluster: ClusterInstance,
    mock_security_settings: SecuritySettings,
    loop_settings: LoopSettings,
    tmp_path: Path,
) -> ServerSettings:
    """Create server settings with one cluster and no declared applications."""
    return ServerSettings(
        kube_api_url=mock_cluster.url,
        kube_token=mock_cluster.token,
        kube_insecure=mock_cluster.insecure,
        workdir=tmp_path / "work",
        loop=loop_settings,
        security=mock_security_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


# =============================================================================
# SOURCES, PLATFORM, APPLICATIONS
# =============================================================================


@pytest.fixture
def platform() -> FakePlatform:
    """Create an empty in-memory cluster."""
    return FakePlatform()


@pytest.fixture
def manifests(tmp_path: Path) -> ManifestDir:
    """Create an empty manifest directory."""
    return ManifestDir(tmp_path / "repo")


@pytest.fixture
def source(tmp_path: Path) -> SourceTracker:
    """Create a source tracker with its own workdir."""
    return SourceTracker(tmp_path / "work")


@pytest.fixture
def make_app(manifests: ManifestDir) -> Callable[..., ApplicationSpec]:
    """Build ApplicationSpecs sourced from the `manifests` directory."""

    def build(
        name: str = "guestbook",
        *,
        auto_sync: bool = True,
        prune: bool = True,
        self_heal: bool = False,
        path: str = ".",
        cluster: str = "in-cluster",
        repo_url: str | None = None,
        **extra: Any,
    ) -> ApplicationSpec:
        return ApplicationSpec.model_validate(
            {
                "name": name,
                "source": {"repoURL": repo_url or manifests.url, "path": path},
                "destination": {"cluster": cluster, "namespace": "default"},
                "syncPolicy": {"autoSync": auto_sync, "prune": prune, "selfHeal": self_heal},
                **extra,
            }
        )

    return build


@pytest.fixture
def mock_platform_client(mock_cluster: ClusterInstance) -> AsyncMock:
    """Create a mock platform client."""
    client = AsyncMock(spec=PlatformClient)
    client._instance = mock_cluster
    client.name = mock_cluster.name
    client.list.return_value = []
    client.get.return_value = None
    return client


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def kube_api_url() -> str | None:
    """Get the cluster API URL from environment."""
    return os.environ.get("KUBE_API_URL")


@pytest.fixture
def kube_token() -> str | None:
    """Get the cluster token from environment."""
    return os.environ.get("KUBE_TOKEN")


@pytest.fixture
def kube_insecure() -> bool:
    """Get the TLS verification setting from environment."""
    return os.environ.get("KUBE_INSECURE", "false").lower() == "true"


@pytest.fixture
async def live_platform_client(
    kube_api_url: str | None,
    kube_token: str | None,
    kube_insecure: bool,
) -> AsyncIterator[PlatformClient | None]:
    """Create a live platform client for integration tests."""
    if not kube_api_url or not kube_token:
        yield None
        return

    instance = ClusterInstance(
        url=kube_api_url,
        token=SecretStr(kube_token),
        name="integration-test",
        insecure=kube_insecure,
    )
    client = PlatformClient(instance)

    async with client:
        yield client
