# ABOUTME: Structured logging with correlation IDs for the GitOps sync controller
# ABOUTME: Correlates every log line of one reconciliation pass and keeps an audit trail

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log line is a key/value event (JSON in
   production, coloured console output in development).

2. CORRELATION IDs: every reconciliation pass and every operator request
   gets a short ID. All stage logs of one pass (watcher, reader, diff,
   executor) carry it, so interleaved passes of different Applications can
   be untangled:

       {"correlation_id": "a1b2c3d4", "app": "web", "event": "Fetched manifests"}
       {"correlation_id": "9f8e7d6c", "app": "api", "event": "Fetched manifests"}
       {"correlation_id": "a1b2c3d4", "app": "web", "event": "Patch applied"}

3. AUDIT LOGGING: operator actions (register, deregister, manual sync) and
   pass outcomes are recorded as JSON lines for later investigation.

=============================================================================
CONTEXT VARIABLES
=============================================================================

Each Application's pass runs in its own asyncio task, and each task gets a
copy of the current context. Setting the correlation ID inside a pass
therefore never leaks into another Application's pass running concurrently.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator, MutableMapping
    from pathlib import Path

    from gitops_sync.models import SyncResult


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """Generate a fresh 8-character ID and make it current."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def get_correlation_id() -> str:
    """
    Get the current correlation ID, generating one if none is set.

    Code running outside a pass or request (startup, pollers between
    passes) still gets an ID so its logs stay correlatable.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
    return cid


def set_correlation_id(cid: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id.set(cid)


@contextmanager
def correlation_scope() -> Iterator[str]:
    """
    Make a fresh correlation ID current for the body of the block.

    The previous ID is restored on exit, so a pass run inside an operator
    request hands the request its own ID back.
    """
    token = correlation_id.set(str(uuid.uuid4())[:8])
    try:
        yield correlation_id.get()
    finally:
        correlation_id.reset(token)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor adding ``correlation_id`` to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: values bound with structlog.contextvars
       (the reconciler binds ``app`` for the duration of a pass)
    2. add_log_level
    3. TimeStamper: ISO 8601
    4. add_correlation_id
    5. JSONRenderer (json_output=True) or ConsoleRenderer

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines for log aggregators instead of console output.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit trail of operator actions and reconciliation outcomes.

    Every entry records:
    - timestamp: UTC ISO 8601
    - correlation_id: the pass or request that produced it
    - action: "register_application", "sync_application", "reconcile", ...
    - target: the Application name
    - result: "success", "accepted", "coalesced", "blocked", "error", or the
      pass phase ("Succeeded", "Failed")
    - details: optional context (revision, applied patches, error)

    TWO OUTPUT MODES:
    -----------------
    1. FILE: one JSON object per line, appended (never truncated)
    2. STDOUT: through structlog, alongside the normal logs

    EXAMPLE ENTRIES:
    ----------------
    {"timestamp": "...", "correlation_id": "abc12345", "action": "reconcile",
     "target": "web", "result": "Succeeded",
     "details": {"revision": "4f2a9c1", "applied": ["Update Deployment/web/app"]}}

    {"timestamp": "...", "correlation_id": "def67890",
     "action": "sync_application", "target": "web", "result": "blocked",
     "details": {"reason": "Controller is running in read-only mode"}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Args:
            log_path: Audit log file (parent directory must exist), or None
                      to route entries through structlog.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record one auditable action."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    # -------------------------------------------------------------------------
    # CONVENIENCE METHODS
    # -------------------------------------------------------------------------

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Record an operation refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})

    def log_pass(self, app: str, result: SyncResult) -> None:
        """
        Record the outcome of a reconciliation pass.

        Failed passes carry the failing stage and error so the audit trail
        alone is enough to see where a pass stopped.
        """
        details: dict[str, Any] = {
            "revision": result.revision,
            "applied": [p.describe() for p in result.applied],
        }
        if result.dry_run:
            details["dry_run"] = True
        if not result.succeeded:
            details["stage"] = result.stage
            details["error"] = result.error
            if result.failures:
                details["failed"] = [f.patch.describe() for f in result.failures]
        self.log("reconcile", app, str(result.phase), details)
