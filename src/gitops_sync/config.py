# ABOUTME: Configuration management for the GitOps sync controller
# ABOUTME: Handles environment variables, per-application options, and operator safety settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module holds every tunable of the controller. It:

1. READS environment variables (GITOPS_STORE_URL, GITOPS_CLUSTER_URL, ...)
2. VALIDATES them at startup, not in the middle of a reconciliation pass
3. DESCRIBES each registered Application (AppConfig)

=============================================================================
THREE CONFIGURATION CLASSES
=============================================================================

1. AppConfig: options for ONE Application
   - where its manifests live (repo URL, path, revision pointer)
   - where they go (target namespace)
   - how it syncs (manual | automatic, poll interval, retry bound, ...)
   Created programmatically (operator registration) or from the
   GITOPS_APPLICATIONS JSON list, so it is a BaseModel, not BaseSettings.

2. SecuritySettings: operator guard rails (GITOPS_SECURITY_ prefix)
   - read-only mode, destructive-operation switch, dry-run, audit log,
     secret masking, rate limiting of manual syncs

3. ControllerSettings: the top-level container
   - manifest store and cluster endpoints
   - stage timeouts, backoff, polling jitter
   - logging
   - the initial list of Applications

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

    GITOPS_STORE_URL             -> Manifest store base URL
    GITOPS_CLUSTER_URL           -> Cluster API base URL
    GITOPS_CLUSTER_INSECURE      -> Skip TLS verification for the cluster API
    GITOPS_REQUEST_TIMEOUT       -> Per-HTTP-request timeout (seconds)
    GITOPS_FETCH_TIMEOUT         -> Watcher stage timeout (seconds)
    GITOPS_READ_TIMEOUT          -> Reader stage timeout (seconds)
    GITOPS_APPLY_TIMEOUT         -> Executor stage timeout (seconds)
    GITOPS_BACKOFF_MULTIPLIER    -> Exponential backoff multiplier (seconds)
    GITOPS_BACKOFF_MAX           -> Backoff ceiling (seconds)
    GITOPS_POLL_JITTER           -> Fractional jitter applied to poll intervals
    GITOPS_APPLICATIONS          -> JSON list of AppConfig objects
    GITOPS_LOG_LEVEL             -> DEBUG | INFO | WARNING | ERROR | CRITICAL
    GITOPS_LOG_JSON              -> Emit JSON log lines

    GITOPS_SECURITY_READ_ONLY            -> Block register/deregister/sync
    GITOPS_SECURITY_DISABLE_DESTRUCTIVE  -> Never issue Delete patches
    GITOPS_SECURITY_DRY_RUN              -> Plan patches without applying
    GITOPS_SECURITY_AUDIT_LOG            -> Path to JSON-lines audit log
    GITOPS_SECURITY_MASK_SECRETS         -> Mask secrets in operator output
    GITOPS_SECURITY_RATE_LIMIT_CALLS     -> Manual syncs per window
    GITOPS_SECURITY_RATE_LIMIT_WINDOW    -> Window length in seconds
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitops_sync.models import SyncPolicy


def normalize_url(v: str) -> str:
    """
    Add a scheme if missing and strip trailing slashes.

    API paths start with "/", so a base URL ending in "/" would produce
    "//api/v1/..." once joined.
    """
    if not v:
        return v
    if not v.startswith(("http://", "https://")):
        v = f"https://{v}"
    return v.rstrip("/")


# =============================================================================
# APPLICATION CONFIGURATION
# =============================================================================


class AppConfig(BaseModel):
    """
    Configuration for a single Application.

    The source is a (repo_url, repo_path, target_revision) triple: the
    controller resolves ``target_revision`` (a branch, tag or "HEAD") to a
    concrete revision on every poll and fetches the manifests found under
    ``repo_path`` at that revision.

    USAGE EXAMPLE:
    --------------
        app = AppConfig(
            name="guestbook",
            repo_url="https://git.example.com/platform/cd.git",
            repo_path="apps/guestbook",
            target_namespace="guestbook",
            sync_policy="automatic",
        )
    """

    model_config = {"extra": "ignore"}

    # -------------------------------------------------------------------------
    # IDENTITY AND SOURCE
    # -------------------------------------------------------------------------

    name: str = Field(
        pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$",
        max_length=63,
        description="Application identifier (DNS label)",
    )

    repo_url: str = Field(description="Manifest repository URL")

    repo_path: str = Field(default=".", description="Path of the manifest set inside the repo")
    # Leading and trailing slashes are stripped so "apps/web/" and "/apps/web"
    # address the same tree.

    target_revision: str = Field(default="HEAD", description="Branch, tag or HEAD to track")

    # -------------------------------------------------------------------------
    # DESTINATION
    # -------------------------------------------------------------------------

    target_namespace: str = Field(
        default="default",
        description="Namespace for namespaced manifests that do not declare one",
    )

    # -------------------------------------------------------------------------
    # SYNC BEHAVIOUR
    # -------------------------------------------------------------------------

    sync_policy: SyncPolicy = Field(
        default=SyncPolicy.MANUAL,
        description="manual: sync only on operator trigger; automatic: poll and sync",
    )

    poll_interval_seconds: float = Field(default=180.0, gt=0, description="Polling interval")

    retry_bound: int = Field(default=3, ge=1, le=10, description="Attempts per patch")

    history_depth: int = Field(default=10, ge=1, description="SyncResults retained")

    prune: bool = Field(default=True, description="Delete owned resources removed from the repo")

    self_heal: bool = Field(
        default=False,
        description="Re-diff on every poll even when the revision is unchanged",
    )
    # Without self_heal an unchanged revision means "nothing to do", so drift
    # introduced directly in the cluster goes unnoticed until the next commit.

    @field_validator("repo_url")
    @classmethod
    def validate_repo_url(cls, v: str) -> str:
        if not v:
            raise ValueError("repo_url must not be empty")
        return v.rstrip("/")

    @field_validator("repo_path")
    @classmethod
    def validate_repo_path(cls, v: str) -> str:
        return v.strip("/") or "."


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Operator guard rails.

    These gate what the operator surface (MCP tools) may do and how much of
    a plan is actually applied. Defaults leave the controller fully
    functional; production deployments tighten them per environment.
    """

    model_config = SettingsConfigDict(env_prefix="GITOPS_SECURITY_")

    read_only: bool = Field(
        default=False,
        description="Block register, deregister and manual sync from the operator surface",
    )

    disable_destructive: bool = Field(
        default=False,
        description="Never issue Delete patches, regardless of per-application prune",
    )

    dry_run: bool = Field(
        default=False,
        description="Compute and record patches without applying them",
    )

    audit_log: Path | None = Field(default=None, description="Path to audit log file")
    # JSON lines, one object per operator action or pass outcome.
    # When None, audit entries go through structlog instead.

    mask_secrets: bool = Field(default=True, description="Mask sensitive values in output")

    rate_limit_calls: int = Field(default=10, description="Manual syncs per application per window")

    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


# =============================================================================
# CONTROLLER SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Top-level controller configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.cluster_url            # Cluster API base URL
        settings.security.dry_run       # Nested security setting
        settings.applications           # Applications registered at startup
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # EXTERNAL SERVICES
    # -------------------------------------------------------------------------

    store_url: str = Field(default="http://localhost:8081", description="Manifest store URL")

    cluster_url: str = Field(default="http://localhost:8001", description="Cluster API URL")

    cluster_insecure: bool = Field(default=False, description="Skip TLS verification")

    request_timeout: float = Field(default=10.0, gt=0, description="HTTP request timeout")

    # -------------------------------------------------------------------------
    # STAGE TIMEOUTS
    # -------------------------------------------------------------------------
    # Each stage of a pass has its own budget. Exceeding it is reported as
    # that stage's failure class (FetchError, ClusterUnreachable,
    # ConflictTransient). The diff stage is pure computation and has none.

    fetch_timeout: float = Field(default=30.0, gt=0)
    read_timeout: float = Field(default=30.0, gt=0)
    apply_timeout: float = Field(default=120.0, gt=0)

    # -------------------------------------------------------------------------
    # RETRY AND POLLING
    # -------------------------------------------------------------------------

    backoff_multiplier: float = Field(default=1.0, ge=0, description="Backoff base in seconds")
    # wait = multiplier * 2 ** (attempt - 1), capped at backoff_max.
    # 0 disables waiting entirely (tests).

    backoff_max: float = Field(default=10.0, ge=0, description="Backoff ceiling in seconds")

    poll_jitter: float = Field(default=0.1, ge=0, lt=1, description="Fractional poll jitter")
    # A 180s interval with 0.1 jitter sleeps somewhere in [162s, 198s], so
    # Applications registered together do not poll the store in lockstep.

    # -------------------------------------------------------------------------
    # APPLICATIONS AND LOGGING
    # -------------------------------------------------------------------------

    applications: list[AppConfig] = Field(
        default_factory=list,
        description="Applications registered at startup",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    log_json: bool = Field(default=False, description="Emit JSON log lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @field_validator("store_url", "cluster_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return normalize_url(v)

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


def load_settings() -> ControllerSettings:
    """
    Load settings from the environment.

    If GITOPS_ENV_FILE is set, variables are also read from that file
    (useful for local development against a kind cluster).

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ControllerSettings(_env_file=os.environ.get("GITOPS_ENV_FILE"))  # type: ignore[call-arg]
