# ABOUTME: Pytest fixtures and configuration for GitOps sync controller tests
# ABOUTME: Provides settings, application configs, in-memory cluster/store and a wired reconciler

import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakes import FakeClusterClient, FakeStore, doc

from gitops_sync.config import AppConfig, ControllerSettings, SecuritySettings
from gitops_sync.models import Application, SyncPolicy
from gitops_sync.reader import ClusterStateReader
from gitops_sync.reconciler import Reconciler
from gitops_sync.utils.logging import AuditLogger
from gitops_sync.utils.safety import SafetyGuard
from gitops_sync.watcher import ManifestWatcher

STORE_URL = "https://store.example.com"
CLUSTER_URL = "https://cluster.example.com"


@pytest.fixture
def security_settings() -> SecuritySettings:
    """Security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        dry_run=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def settings(security_settings: SecuritySettings) -> ControllerSettings:
    """Controller settings with zero backoff so retries do not sleep."""
    return ControllerSettings(
        store_url=STORE_URL,
        cluster_url=CLUSTER_URL,
        fetch_timeout=5,
        read_timeout=5,
        apply_timeout=5,
        backoff_multiplier=0,
        backoff_max=0,
        poll_jitter=0,
        security=security_settings,
    )


@pytest.fixture
def app_config() -> AppConfig:
    """Manual application targeting namespace 'web'."""
    return AppConfig(
        name="web",
        repo_url="https://git.example.com/platform/cd.git",
        repo_path="apps/web",
        target_namespace="web",
    )


@pytest.fixture
def auto_config() -> AppConfig:
    """Automatic application with a short poll interval."""
    return AppConfig(
        name="api",
        repo_url="https://git.example.com/platform/cd.git",
        repo_path="apps/api",
        target_namespace="api",
        sync_policy=SyncPolicy.AUTOMATIC,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def application(app_config: AppConfig) -> Application:
    return Application.from_config(app_config)


@pytest.fixture
def web_manifests() -> list[dict]:
    """Deployment, Service and Namespace for the 'web' application, out of install order."""
    return [
        doc("Deployment", "frontend", replicas=2, image="web:1"),
        doc("Service", "frontend", port=80),
        doc("Namespace", "web"),
    ]


@pytest.fixture
def cluster() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture
def store(web_manifests: list[dict]) -> FakeStore:
    return FakeStore("rev-1", web_manifests)


@pytest.fixture
def audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def reconciler(
    store: FakeStore,
    cluster: FakeClusterClient,
    settings: ControllerSettings,
    audit_logger: MagicMock,
) -> Reconciler:
    """Reconciler wired to the in-memory store and cluster."""
    return Reconciler(
        ManifestWatcher(store),
        ClusterStateReader(cluster),
        cluster,
        settings,
        audit=audit_logger,
    )


@pytest.fixture
def safety_guard(security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def store_url() -> str | None:
    """Manifest store URL from environment."""
    return os.environ.get("GITOPS_TEST_STORE_URL")


@pytest.fixture
def cluster_url() -> str | None:
    """Cluster API URL from environment."""
    return os.environ.get("GITOPS_TEST_CLUSTER_URL")
