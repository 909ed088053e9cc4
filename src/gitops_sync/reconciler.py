# ABOUTME: Reconciliation loop tying watcher, reader, diff engine and executor together
# ABOUTME: One pass in flight per Application, periodic jittered polling, coalesced manual triggers

"""
Reconciliation Loop.

=============================================================================
STATE MACHINE (per Application)
=============================================================================

    Idle --(automatic tick | manual trigger, nothing in flight)--> Syncing
    Syncing --> Synced | OutOfSync | Failed --> Idle

A trigger arriving while a pass is in flight is coalesced: it is dropped and
reported to the caller as not accepted. The running pass already fetches
the latest revision, so nothing is lost.

=============================================================================
ONE PASS
=============================================================================

    1. Watcher   poll(app)            FetchError        -> prior status kept
    2. Reader    read(desired+owned)  ClusterUnreachable -> Failed, no patches
    3. Diff      diff(...)            pure
    4. Executor  apply(patches)       partial failure   -> OutOfSync
                                      failure, 0 applied -> Failed

Each network stage runs under its own timeout; a timeout counts as that
stage's failure class. If the watcher reports no new revision the pass ends
quietly and nothing is recorded.

=============================================================================
CONCURRENCY
=============================================================================

Every automatic Application has its own poller task. Passes of different
Applications run concurrently and share the pooled cluster client; the
stages of one pass run strictly one after another. Because the in-flight
flag is claimed synchronously (no await between check and set), two
triggers can never both start a pass.
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

import structlog

from gitops_sync.diff import diff, owned_after
from gitops_sync.errors import ClusterUnreachable, FetchError, SyncError
from gitops_sync.executor import SyncExecutor
from gitops_sync.models import Application, SyncPolicy, SyncResult, SyncStatus
from gitops_sync.utils.logging import correlation_scope

if TYPE_CHECKING:
    from gitops_sync.config import AppConfig, ControllerSettings
    from gitops_sync.reader import ClusterStateReader
    from gitops_sync.utils.client import ClusterClient
    from gitops_sync.utils.logging import AuditLogger
    from gitops_sync.watcher import ManifestWatcher

logger = structlog.get_logger(__name__)

# Statuses whose revision is re-fetched on every automatic tick even if unchanged
_RETRY_STATUSES = frozenset([SyncStatus.FAILED, SyncStatus.OUT_OF_SYNC])


def jittered(interval: float, jitter: float) -> float:
    """``interval`` scaled by a random factor in [1 - jitter, 1 + jitter]."""
    return interval * random.uniform(1 - jitter, 1 + jitter)


class Reconciler:
    """Owns every registered Application and drives its passes."""

    def __init__(
        self,
        watcher: ManifestWatcher,
        reader: ClusterStateReader,
        client: ClusterClient,
        settings: ControllerSettings,
        audit: AuditLogger | None = None,
    ) -> None:
        self._watcher = watcher
        self._reader = reader
        self._client = client
        self._settings = settings
        self._audit = audit
        self._apps: dict[str, Application] = {}
        self._pollers: dict[str, asyncio.Task[None]] = {}
        self._passes: set[asyncio.Task[SyncResult | None]] = set()
        self._running = False

    # =========================================================================
    # REGISTRY
    # =========================================================================

    def register(self, config: AppConfig) -> Application:
        """Register an Application. Raises ValueError if the name is taken."""
        if config.name in self._apps:
            raise ValueError(f"Application '{config.name}' is already registered")
        app = Application.from_config(config)
        self._apps[config.name] = app
        logger.info("Application registered", app=config.name, policy=str(config.sync_policy))
        if self._running and config.sync_policy == SyncPolicy.AUTOMATIC:
            self._start_poller(app)
        return app

    def deregister(self, name: str) -> Application:
        """
        Remove an Application and stop polling it.

        A pass already in flight runs to completion against the detached
        Application object; its result and last-seen revision are not visible
        afterwards, so a later registration under the same name starts fresh.
        """
        app = self.get(name)
        del self._apps[name]
        poller = self._pollers.pop(name, None)
        if poller is not None:
            poller.cancel()
        logger.info("Application deregistered", app=name)
        return app

    def get(self, name: str) -> Application:
        if name not in self._apps:
            available = sorted(self._apps)
            raise ValueError(f"Unknown application '{name}'. Available: {available}")
        return self._apps[name]

    def list_applications(self) -> list[Application]:
        return [self._apps[name] for name in sorted(self._apps)]

    def history(self, name: str, limit: int | None = None) -> list[SyncResult]:
        """Sync history, newest first."""
        return self.get(name).recent(limit)

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def _claim(self, app: Application) -> SyncStatus | None:
        """Enter Syncing. Returns the prior status, or None if a pass is in flight."""
        if app.in_flight:
            logger.info("Pass already in flight, trigger coalesced", app=app.name)
            return None
        prior = app.status
        app.in_flight = True
        app.status = SyncStatus.SYNCING
        return prior

    def trigger(self, name: str) -> bool:
        """
        Start a manual pass in the background.

        Returns:
            True if a pass was started, False if coalesced into the one
            already in flight.
        """
        app = self.get(name)
        prior = self._claim(app)
        if prior is None:
            return False
        task = asyncio.create_task(self._run_pass(app, prior, force=True))
        self._passes.add(task)
        task.add_done_callback(self._pass_done)
        return True

    async def sync(self, name: str) -> SyncResult | None:
        """
        Run a manual pass and wait for it.

        Manual passes always re-fetch, even at an unchanged revision.

        Returns:
            The SyncResult, or None if coalesced into an in-flight pass.
        """
        app = self.get(name)
        prior = self._claim(app)
        if prior is None:
            return None
        return await self._run_pass(app, prior, force=True)

    async def reconcile(self, name: str) -> SyncResult | None:
        """
        One automatic tick for ``name``.

        Does nothing for manual Applications. Returns None when the tick was
        coalesced or the revision is unchanged.
        """
        app = self.get(name)
        if app.config.sync_policy != SyncPolicy.AUTOMATIC:
            return None
        force = app.config.self_heal or app.status in _RETRY_STATUSES
        prior = self._claim(app)
        if prior is None:
            return None
        return await self._run_pass(app, prior, force=force)

    def _pass_done(self, task: asyncio.Task[SyncResult | None]) -> None:
        self._passes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Manual pass crashed", error=str(task.exception()))

    # =========================================================================
    # THE PASS
    # =========================================================================

    async def _run_pass(
        self,
        app: Application,
        prior: SyncStatus,
        force: bool,
    ) -> SyncResult | None:
        with correlation_scope(), structlog.contextvars.bound_contextvars(app=app.name):
            try:
                result = await self._stages(app, prior, force)
            except Exception as e:
                app.status = SyncStatus.FAILED
                app.last_error = f"internal error: {e}"
                logger.exception("Pass crashed")
                raise
            finally:
                app.in_flight = False

            if result is not None:
                app.record(result)
                if self._audit is not None:
                    self._audit.log_pass(app.name, result)
                logger.info(
                    "Pass finished",
                    phase=str(result.phase),
                    revision=result.revision,
                    applied=len(result.applied),
                    status=str(app.status),
                )
            return result

    async def _stages(
        self,
        app: Application,
        prior: SyncStatus,
        force: bool,
    ) -> SyncResult | None:
        settings = self._settings

        # 1. Watcher
        try:
            desired = await asyncio.wait_for(
                self._watcher.poll(app, force=force), settings.fetch_timeout
            )
        except TimeoutError:
            error = FetchError(f"fetch stage exceeded {settings.fetch_timeout}s")
            return self._fetch_failed(app, prior, error)
        except FetchError as e:
            return self._fetch_failed(app, prior, e)

        if desired is None:
            app.status = prior
            return None

        app.desired = desired
        result = SyncResult(revision=desired.revision)

        # 2. Reader: desired refs plus everything owned, so deletes are visible
        refs = desired.refs + sorted(app.applied - set(desired.refs))
        try:
            live = await asyncio.wait_for(self._reader.read(refs), settings.read_timeout)
        except TimeoutError:
            unreachable = ClusterUnreachable(f"read stage exceeded {settings.read_timeout}s")
            return self._failed(app, result.fail("read", unreachable))
        except SyncError as e:
            e.stage = "read"
            return self._failed(app, result.fail("read", e))

        # 3. Diff
        prune = app.config.prune and not settings.security.disable_destructive
        patches = diff(desired, live, app.applied, prune=prune)
        logger.info("Computed patches", revision=desired.revision, patches=len(patches))

        # 4. Executor
        executor = SyncExecutor(
            self._client,
            retry_bound=app.config.retry_bound,
            backoff_multiplier=settings.backoff_multiplier,
            backoff_max=settings.backoff_max,
            timeout=settings.apply_timeout,
            dry_run=settings.security.dry_run,
        )
        result = await executor.apply(patches, desired.revision)

        if result.dry_run:
            app.status = SyncStatus.OUT_OF_SYNC if patches else SyncStatus.SYNCED
            return result

        app.applied = owned_after(desired, live, app.applied, result.applied)

        if result.succeeded:
            app.status = SyncStatus.SYNCED
            app.last_synced_revision = desired.revision
            app.last_error = None
            return result
        return self._failed(app, result)

    def _fetch_failed(self, app: Application, prior: SyncStatus, error: SyncError) -> SyncResult:
        # The previous status still describes the cluster; only the fetch failed.
        app.status = prior
        app.last_error = str(error)
        logger.warning("Fetch failed, will retry next poll", error=str(error))
        revision = app.last_seen_revision or ""
        return SyncResult(revision=revision).fail("fetch", error).finish()

    def _failed(self, app: Application, result: SyncResult) -> SyncResult:
        app.status = SyncStatus.OUT_OF_SYNC if result.applied else SyncStatus.FAILED
        app.last_error = result.error
        logger.warning("Pass failed", stage=result.stage, error=result.error)
        if result.finished_at is None:
            result.finish()
        return result

    # =========================================================================
    # POLLING
    # =========================================================================

    def _start_poller(self, app: Application) -> None:
        if app.name in self._pollers:
            return
        self._pollers[app.name] = asyncio.create_task(
            self._poll_loop(app.name), name=f"poll-{app.name}"
        )

    async def _poll_loop(self, name: str) -> None:
        app = self._apps.get(name)
        if app is None:
            return
        jitter = self._settings.poll_jitter
        # Spread the first ticks of Applications registered together
        await asyncio.sleep(random.uniform(0, app.config.poll_interval_seconds * jitter))

        while name in self._apps:
            app = self._apps[name]
            try:
                await self.reconcile(name)
            except Exception:
                # logged, retried on the next tick
                logger.exception("Reconcile tick failed", app=name)
            await asyncio.sleep(jittered(app.config.poll_interval_seconds, jitter))

    async def start(self) -> None:
        """Start pollers for every automatic Application."""
        self._running = True
        for app in self._apps.values():
            if app.config.sync_policy == SyncPolicy.AUTOMATIC:
                self._start_poller(app)
        logger.info("Reconciler started", applications=len(self._apps), pollers=len(self._pollers))

    async def stop(self) -> None:
        """Cancel pollers and wait for in-flight manual passes."""
        self._running = False
        pollers = list(self._pollers.values())
        self._pollers.clear()
        for task in pollers:
            task.cancel()
        await asyncio.gather(*pollers, return_exceptions=True)
        await asyncio.gather(*list(self._passes), return_exceptions=True)
        logger.info("Reconciler stopped")
