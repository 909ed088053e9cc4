# ABOUTME: Safety utilities for the GitOps sync controller operator surface
# ABOUTME: Implements read-only guard, manual-sync rate limiting, and secret masking

"""Safety utilities for operator-facing operations."""

from __future__ import annotations

import re
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from gitops_sync.config import SecuritySettings

logger = structlog.get_logger(__name__)

MASK = "***MASKED***"

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), rf"\1{MASK}"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), rf"\1{MASK}"),
]

SENSITIVE_KEYS = frozenset(
    [
        "token",
        "password",
        "secret",
        "api_key",
        "apikey",
        "api-key",
        "authorization",
        "credential",
        "credentials",
    ]
)


def mask_secrets(data: Any) -> Any:
    """
    Recursively mask sensitive values in strings, dicts and lists.

    Used only on what is shown to operators; the diff engine always works
    on unmasked specs.
    """
    if isinstance(data, str):
        for pattern, replacement in SECRET_PATTERNS:
            data = pattern.sub(replacement, data)
        return data
    if isinstance(data, dict):
        return {
            k: MASK if str(k).lower() in SENSITIVE_KEYS else mask_secrets(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_secrets(item) for item in data]
    return data


@dataclass
class OperationBlocked:
    """Response indicating an operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        """Format blocked message for the operator."""
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}"
        )


class RateLimiter:
    """Sliding-window rate limiter keyed by operation and target."""

    def __init__(self, max_calls: int = 10, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call for ``key``. Returns False if the key is over its limit."""
        now = time.time()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Gatekeeper for operator actions."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def mask(self, data: Any) -> Any:
        return mask_secrets(data) if self._settings.mask_secrets else data

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        """Register and deregister are refused in read-only mode."""
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Controller is running in read-only mode",
                setting="GITOPS_SECURITY_READ_ONLY",
            )
        return None

    def check_sync_operation(self, app: str) -> OperationBlocked | None:
        """Manual syncs are refused in read-only mode and rate limited per Application."""
        blocked = self.check_write_operation("sync_application")
        if blocked:
            return blocked

        if not self._rate_limiter.check(f"sync:{app}"):
            return OperationBlocked(
                operation="sync_application",
                reason=f"Rate limit exceeded for '{app}'",
                setting="GITOPS_SECURITY_RATE_LIMIT_CALLS",
            )
        return None

    def forget(self, app: str) -> None:
        """Drop rate limit state of a deregistered Application."""
        self._rate_limiter.reset(f"sync:{app}")
