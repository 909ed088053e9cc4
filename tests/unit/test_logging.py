# ABOUTME: Unit tests for logging utilities
# ABOUTME: Tests correlation IDs, configure_logging, and the AuditLogger trail

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from gitops_sync.models import Patch, PatchFailure, PatchOp, ResourceRef, SyncResult
from gitops_sync.utils.logging import (
    AuditLogger,
    add_correlation_id,
    configure_logging,
    correlation_id,
    correlation_scope,
    get_correlation_id,
    new_correlation_id,
    set_correlation_id,
)

DEPLOYMENT = ResourceRef("Deployment", "web", "frontend")


@pytest.mark.unit
class TestCorrelationId:
    """Tests for correlation ID generation and context management."""

    def test_get_correlation_id_generates_new_when_empty(self):
        correlation_id.set("")

        cid = get_correlation_id()

        assert len(cid) == 8
        int(cid, 16)

    def test_get_correlation_id_returns_existing(self):
        set_correlation_id("test1234")

        assert get_correlation_id() == "test1234"

    def test_new_correlation_id_replaces_current(self):
        set_correlation_id("old00000")

        cid = new_correlation_id()

        assert cid != "old00000"
        assert correlation_id.get() == cid

    def test_get_correlation_id_preserves_value(self):
        correlation_id.set("")

        assert get_correlation_id() == get_correlation_id()

    def test_correlation_scope_restores_previous(self):
        set_correlation_id("request1")

        with correlation_scope() as cid:
            assert correlation_id.get() == cid
            assert cid != "request1"
            assert len(cid) == 8

        assert correlation_id.get() == "request1"


@pytest.mark.unit
class TestAddCorrelationId:
    """Tests for the add_correlation_id processor function."""

    def test_adds_correlation_id_to_event_dict(self):
        set_correlation_id("proc1234")
        event_dict = {"event": "test_event"}

        result = add_correlation_id(MagicMock(), "info", event_dict)

        assert result["correlation_id"] == "proc1234"
        assert result["event"] == "test_event"

    def test_generates_correlation_id_if_not_set(self):
        correlation_id.set("")

        result = add_correlation_id(MagicMock(), "info", {"event": "test_event"})

        assert len(result["correlation_id"]) == 8


@pytest.mark.unit
class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_console_output_by_default(self):
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging()

            mock_structlog.dev.ConsoleRenderer.assert_called_once()
            mock_structlog.processors.JSONRenderer.assert_not_called()
            mock_structlog.configure.assert_called_once()

    def test_json_output(self):
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging(json_output=True)

            mock_structlog.processors.JSONRenderer.assert_called_once()
            mock_structlog.dev.ConsoleRenderer.assert_not_called()

    def test_level_is_applied(self):
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging(level="debug")

            mock_structlog.make_filtering_bound_logger.assert_called_once_with(10)

    def test_processors_include_correlation_id_before_renderer(self):
        with patch("gitops_sync.utils.logging.structlog") as mock_structlog:
            configure_logging()

            processors = mock_structlog.configure.call_args[1]["processors"]
            assert processors[0] is mock_structlog.contextvars.merge_contextvars
            assert processors[3] is add_correlation_id
            assert len(processors) == 5


@pytest.mark.unit
class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_log_to_file(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(log_path=log_file)
        set_correlation_id("file1234")

        audit.log("register_application", "web", "success", {"repo": "r"})

        entry = json.loads(log_file.read_text().strip())
        assert entry["action"] == "register_application"
        assert entry["target"] == "web"
        assert entry["result"] == "success"
        assert entry["correlation_id"] == "file1234"
        assert entry["details"] == {"repo": "r"}
        assert entry["timestamp"].endswith("+00:00")

    def test_log_without_details_omits_key(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        AuditLogger(log_path=log_file).log("list_applications", "all", "success")

        entry = json.loads(log_file.read_text().strip())
        assert "details" not in entry

    def test_log_appends_to_file(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(log_path=log_file)

        audit.log("a1", "web", "success")
        audit.log("a2", "web", "success")

        lines = log_file.read_text().strip().split("\n")
        assert [json.loads(line)["action"] for line in lines] == ["a1", "a2"]

    def test_log_to_stdout(self):
        audit = AuditLogger(log_path=None)

        with patch.object(audit, "_logger") as mock_logger:
            audit.log("sync_application", "web", "accepted")

            mock_logger.info.assert_called_once_with(
                "audit",
                action="sync_application",
                target="web",
                result="accepted",
                details=None,
            )

    def test_log_blocked(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        AuditLogger(log_path=log_file).log_blocked("sync_application", "web", "read-only")

        entry = json.loads(log_file.read_text().strip())
        assert entry["result"] == "blocked"
        assert entry["details"] == {"reason": "read-only"}

    def test_log_error(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        AuditLogger(log_path=log_file).log_error("register_application", "web", "taken")

        entry = json.loads(log_file.read_text().strip())
        assert entry["result"] == "error"
        assert entry["details"] == {"error": "taken"}


@pytest.mark.unit
class TestAuditLoggerLogPass:
    """Tests for recording reconciliation passes."""

    def test_successful_pass(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        result = SyncResult(revision="abc123")
        result.applied.append(Patch(PatchOp.CREATE, DEPLOYMENT))

        AuditLogger(log_path=log_file).log_pass("web", result.finish())

        entry = json.loads(log_file.read_text().strip())
        assert entry["action"] == "reconcile"
        assert entry["result"] == "Succeeded"
        assert entry["details"] == {
            "revision": "abc123",
            "applied": ["Create Deployment/web/frontend"],
        }

    def test_failed_pass_includes_stage_and_failures(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        patch_ = Patch(PatchOp.UPDATE, DEPLOYMENT)
        result = SyncResult(revision="abc123")
        result.failures.append(PatchFailure(patch_, "ValidationRejected", "bad spec"))
        result.fail("apply", "bad spec").finish()

        AuditLogger(log_path=log_file).log_pass("web", result)

        details = json.loads(log_file.read_text().strip())["details"]
        assert details["stage"] == "apply"
        assert details["error"] == "bad spec"
        assert details["failed"] == ["Update Deployment/web/frontend"]

    def test_dry_run_flagged(self, tmp_path: Path):
        log_file = tmp_path / "audit.log"
        result = SyncResult(revision="abc123", dry_run=True).finish()

        AuditLogger(log_path=log_file).log_pass("web", result)

        assert json.loads(log_file.read_text().strip())["details"]["dry_run"] is True
