# ABOUTME: FastMCP server exposing the GitOps sync controller to operators
# ABOUTME: Wires clients, watcher, reader and reconciler; defines register/status/sync/history tools

"""GitOps sync controller - operator surface and process entry point."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field, ValidationError

from gitops_sync.config import AppConfig, ControllerSettings, load_settings
from gitops_sync.models import SyncPolicy, SyncStatus
from gitops_sync.reader import ClusterStateReader
from gitops_sync.reconciler import Reconciler
from gitops_sync.utils.client import ClusterClient
from gitops_sync.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_sync.utils.safety import SafetyGuard
from gitops_sync.utils.store import ManifestStoreClient
from gitops_sync.watcher import ManifestWatcher

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_sync.models import Application, SyncResult

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ControllerSettings | None = None
_reconciler: Reconciler | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, open pooled clients, register Applications, start polling."""
    global _settings, _reconciler, _safety_guard, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.log_json)
    logger.info("Starting GitOps sync controller")

    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    store = ManifestStoreClient(
        _settings.store_url,
        timeout=_settings.request_timeout,
        backoff_multiplier=_settings.backoff_multiplier,
        backoff_max=_settings.backoff_max,
    )
    cluster = ClusterClient(
        _settings.cluster_url,
        timeout=_settings.request_timeout,
        insecure=_settings.cluster_insecure,
        backoff_multiplier=_settings.backoff_multiplier,
        backoff_max=_settings.backoff_max,
    )

    async with store, cluster:
        _reconciler = Reconciler(
            ManifestWatcher(store),
            ClusterStateReader(cluster),
            cluster,
            _settings,
            audit=_audit_logger,
        )
        for app_config in _settings.applications:
            _reconciler.register(app_config)
        await _reconciler.start()

        try:
            yield {"settings": _settings, "reconciler": _reconciler}
        finally:
            await _reconciler.stop()
            _reconciler = None

    logger.info("GitOps sync controller stopped")


mcp = FastMCP("gitops-sync", lifespan=lifespan)


def get_settings() -> ControllerSettings:
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_reconciler() -> Reconciler:
    if not _reconciler:
        raise RuntimeError("Server not initialized")
    return _reconciler


def get_safety_guard() -> SafetyGuard:
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _request_id(ctx: MCPContext) -> str:
    return ctx.request_id if hasattr(ctx, "request_id") else ""


def _status_marker(status: SyncStatus) -> str:
    return "[OK]" if status == SyncStatus.SYNCED else "[!]"


def format_result(result: SyncResult) -> list[str]:
    """Render one SyncResult for operators (errors masked)."""
    guard = get_safety_guard()
    finished = result.finished_at.isoformat() if result.finished_at else "-"
    lines = [f"- {finished} {result.summary()}"]
    for patch in result.applied:
        lines.append(f"    applied: {patch.describe()}")
    for failure in result.failures:
        lines.append(
            f"    failed:  {failure.patch.describe()} "
            f"[{failure.error}, attempts={failure.attempts}] {guard.mask(failure.message)}"
        )
    if result.error and not result.failures:
        lines.append(f"    error:   {guard.mask(result.error)}")
    return lines


def format_application(app: Application) -> str:
    cfg = app.config
    lines = [
        f"Application: {app.name}",
        "",
        "Source:",
        f"  Repository: {cfg.repo_url}",
        f"  Path: {cfg.repo_path}",
        f"  Target Revision: {cfg.target_revision}",
        "",
        "Destination:",
        f"  Namespace: {cfg.target_namespace}",
        "",
        "Sync Policy:",
        f"  Policy: {cfg.sync_policy}",
        f"  Poll Interval: {cfg.poll_interval_seconds}s",
        f"  Retry Bound: {cfg.retry_bound}",
        f"  Prune: {cfg.prune}",
        f"  Self Heal: {cfg.self_heal}",
        "",
        "Status:",
        f"  Sync: {app.status} {_status_marker(app.status)}",
        f"  Last Synced Revision: {app.last_synced_revision or 'never'}",
        f"  Owned Resources: {len(app.applied)}",
    ]
    if app.in_flight:
        lines.append("  A pass is in flight")
    if app.last_error:
        lines.extend(["", "Last Error:", f"  {get_safety_guard().mask(app.last_error)}"])
    if app.history:
        lines.extend(["", "Last Pass:"])
        lines.extend(format_result(app.history[-1]))
    return "\n".join(lines)


# =============================================================================
# REGISTRATION
# =============================================================================


class RegisterApplicationParams(BaseModel):
    """Parameters for register_application tool."""

    name: str = Field(description="Application name (DNS label)")
    repo_url: str = Field(description="Manifest repository URL")
    repo_path: str = Field(default=".", description="Path to manifests in the repository")
    target_revision: str = Field(default="HEAD", description="Branch, tag or HEAD to track")
    target_namespace: str = Field(default="default", description="Destination namespace")
    sync_policy: SyncPolicy = Field(default=SyncPolicy.MANUAL, description="manual or automatic")
    poll_interval_seconds: float = Field(default=180.0, description="Polling interval")
    retry_bound: int = Field(default=3, description="Attempts per patch")
    history_depth: int = Field(default=10, description="Sync results retained")
    prune: bool = Field(default=True, description="Delete owned resources removed from Git")
    self_heal: bool = Field(default=False, description="Correct drift at unchanged revisions")


@mcp.tool()
async def register_application(params: RegisterApplicationParams, ctx: MCPContext) -> str:
    """
    Register an Application with the controller.

    Automatic Applications start polling immediately; manual ones only
    sync when sync_application is called.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_write_operation("register_application")
    if blocked:
        get_audit_logger().log_blocked("register_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        config = AppConfig.model_validate(params.model_dump())
        get_reconciler().register(config)
    except (ValidationError, ValueError) as e:
        get_audit_logger().log_error("register_application", params.name, str(e))
        return f"Cannot register '{params.name}': {e}"

    get_audit_logger().log_write(
        "register_application",
        params.name,
        "success",
        {"repo": config.repo_url, "path": config.repo_path, "policy": str(config.sync_policy)},
    )
    return f"Application '{config.name}' registered ({config.sync_policy})."


class ApplicationNameParams(BaseModel):
    """Parameters for tools addressing one Application."""

    name: str = Field(description="Application name")


@mcp.tool()
async def deregister_application(params: ApplicationNameParams, ctx: MCPContext) -> str:
    """
    Deregister an Application.

    Resources already applied to the cluster are left in place.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_write_operation("deregister_application")
    if blocked:
        get_audit_logger().log_blocked("deregister_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        app = get_reconciler().deregister(params.name)
    except ValueError as e:
        get_audit_logger().log_error("deregister_application", params.name, str(e))
        return str(e)

    get_safety_guard().forget(params.name)

    get_audit_logger().log_write(
        "deregister_application", params.name, "success", {"owned": len(app.applied)}
    )
    return (
        f"Application '{params.name}' deregistered. "
        f"{len(app.applied)} resource(s) left in place."
    )


# =============================================================================
# STATUS
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    status: SyncStatus | None = Field(
        default=None,
        description="Filter by sync status (Unknown, Synced, OutOfSync, Syncing, Failed)",
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """List registered Applications with their sync status."""
    set_correlation_id(_request_id(ctx))

    apps = get_reconciler().list_applications()
    if params.status:
        apps = [a for a in apps if a.status == params.status]

    get_audit_logger().log_read("list_applications", f"status={params.status}")

    if not apps:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(apps)} application(s):", ""]
    for app in apps:
        lines.append(
            f"- {app.name} [{app.config.sync_policy}] "
            f"sync={app.status} {_status_marker(app.status)} "
            f"revision={app.last_synced_revision or '-'} "
            f"dest={app.config.target_namespace}"
        )
    return "\n".join(lines)


@mcp.tool()
async def get_application_status(params: ApplicationNameParams, ctx: MCPContext) -> str:
    """Get configuration, sync status and last pass of one Application."""
    set_correlation_id(_request_id(ctx))

    try:
        app = get_reconciler().get(params.name)
    except ValueError as e:
        return str(e)

    get_audit_logger().log_read("get_application_status", params.name)
    return format_application(app)


class GetSyncHistoryParams(BaseModel):
    """Parameters for get_sync_history tool."""

    name: str = Field(description="Application name")
    limit: int = Field(default=10, ge=1, description="Maximum entries to return")


@mcp.tool()
async def get_sync_history(params: GetSyncHistoryParams, ctx: MCPContext) -> str:
    """List recent sync results for an Application, newest first."""
    set_correlation_id(_request_id(ctx))

    try:
        history = get_reconciler().history(params.name, params.limit)
    except ValueError as e:
        return str(e)

    get_audit_logger().log_read("get_sync_history", params.name)

    if not history:
        return f"No sync history for '{params.name}'."

    lines = [f"Sync history for '{params.name}' ({len(history)} entries):", ""]
    for result in history:
        lines.extend(format_result(result))
    return "\n".join(lines)


# =============================================================================
# SYNC
# =============================================================================


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    wait: bool = Field(default=True, description="Wait for the pass to finish")


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Trigger a manual sync pass.

    If a pass is already running for this Application the trigger is
    coalesced into it and nothing new is started.
    """
    set_correlation_id(_request_id(ctx))

    try:
        reconciler = get_reconciler()
        reconciler.get(params.name)
    except ValueError as e:
        return str(e)

    blocked = get_safety_guard().check_sync_operation(params.name)
    if blocked:
        get_audit_logger().log_blocked("sync_application", params.name, blocked.reason)
        return blocked.format_message()

    if not params.wait:
        accepted = reconciler.trigger(params.name)
        get_audit_logger().log_write(
            "sync_application", params.name, "accepted" if accepted else "coalesced"
        )
        if not accepted:
            return f"A pass is already in flight for '{params.name}'; trigger coalesced."
        return f"Sync started for '{params.name}'. Use get_application_status to follow it."

    await ctx.report_progress(0, 1, f"Syncing {params.name}")
    result = await reconciler.sync(params.name)
    if result is None:
        get_audit_logger().log_write("sync_application", params.name, "coalesced")
        return f"A pass is already in flight for '{params.name}'; trigger coalesced."

    get_audit_logger().log_write("sync_application", params.name, str(result.phase))
    app = reconciler.get(params.name)
    lines = [f"Sync of '{params.name}' finished: {app.status}", ""]
    lines.extend(format_result(result))
    return "\n".join(lines)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitops://applications")
async def get_applications_resource() -> str:
    """Registered Applications and their status."""
    apps = get_reconciler().list_applications()
    if not apps:
        return "No applications registered"
    return "\n".join(
        f"- {a.name}: {a.status} ({a.config.repo_url}/{a.config.repo_path})" for a in apps
    )


@mcp.resource("gitops://settings")
async def get_settings_resource() -> str:
    """Current controller and safety settings."""
    settings = get_settings()
    sec = settings.security
    return (
        "Controller Settings:\n"
        f"  Manifest store: {settings.store_url}\n"
        f"  Cluster API: {settings.cluster_url}\n"
        f"  Stage timeouts: fetch={settings.fetch_timeout}s read={settings.read_timeout}s "
        f"apply={settings.apply_timeout}s\n"
        f"  Backoff: multiplier={settings.backoff_multiplier}s max={settings.backoff_max}s\n"
        f"  Poll jitter: {settings.poll_jitter}\n"
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Dry run: {sec.dry_run}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} syncs per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps sync controller."""
    configure_logging(level="INFO")
    logger.info("GitOps sync controller starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Controller interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Controller error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
