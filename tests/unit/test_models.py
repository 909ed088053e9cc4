# ABOUTME: Unit tests for the data model
# ABOUTME: Tests resource refs, live snapshots, sync results, and application history

import pytest

from gitops_sync.config import AppConfig
from gitops_sync.errors import ClusterUnreachable, FetchError
from gitops_sync.models import (
    Application,
    LiveResource,
    LiveState,
    Patch,
    PatchOp,
    ResourceRef,
    SyncPhase,
    SyncResult,
)

DEPLOYMENT = ResourceRef("Deployment", "web", "frontend")
NS = ResourceRef("Namespace", "", "web")


@pytest.mark.unit
class TestResourceRef:
    """Tests for ResourceRef."""

    def test_str(self):
        assert str(DEPLOYMENT) == "Deployment/web/frontend"
        assert str(NS) == "Namespace/web"

    def test_cluster_scoped(self):
        assert NS.cluster_scoped
        assert not DEPLOYMENT.cluster_scoped

    def test_hashable_and_ordered(self):
        assert {DEPLOYMENT, ResourceRef("Deployment", "web", "frontend")} == {DEPLOYMENT}
        assert sorted([NS, DEPLOYMENT]) == [DEPLOYMENT, NS]


@pytest.mark.unit
class TestLiveState:
    """Tests for LiveState."""

    def test_missing_is_not_present(self):
        live = LiveState({DEPLOYMENT: LiveResource(DEPLOYMENT, {}), NS: None})

        assert DEPLOYMENT in live
        assert NS not in live
        assert "Deployment/web/frontend" not in live
        assert live.present() == {DEPLOYMENT}


@pytest.mark.unit
class TestErrors:
    """Tests for the error taxonomy."""

    def test_str_carries_stage_code_and_ref(self):
        error = ClusterUnreachable("etcd down", ref=DEPLOYMENT, code=500)
        assert str(error) == "ClusterUnreachable [read] (500): etcd down - Deployment/web/frontend"

    def test_stage_override(self):
        assert FetchError("x", stage="custom").stage == "custom"
        assert FetchError("x").stage == "fetch"


@pytest.mark.unit
class TestSyncResult:
    """Tests for SyncResult."""

    def test_fail_and_summary(self):
        result = SyncResult(revision="abc")
        result.applied.append(Patch(PatchOp.CREATE, NS))

        result.fail("apply", ValueError("rejected")).finish()

        assert result.phase == SyncPhase.FAILED
        assert result.error == "rejected"
        assert result.finished_at >= result.started_at
        assert result.summary() == "Failed revision=abc applied=1 stage=apply"

    def test_dry_run_summary(self):
        assert SyncResult(revision="", dry_run=True).summary() == (
            "Succeeded revision=- applied=0 (dry-run)"
        )


@pytest.mark.unit
class TestApplication:
    """Tests for Application history."""

    def test_history_bounded_and_recent_newest_first(self):
        app = Application.from_config(AppConfig(name="web", repo_url="r", history_depth=2))

        for revision in ("a", "b", "c"):
            app.record(SyncResult(revision=revision))

        assert [r.revision for r in app.recent()] == ["c", "b"]
        assert [r.revision for r in app.recent(1)] == ["c"]
        assert app.name == "web"
