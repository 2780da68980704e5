"""
Reconciler Loop: the heartbeat of the kernel.

One loop per Application. Each pass:
  Source Tracker → Renderer → Observer → Diff Engine → Sync Executor → Health

States (per application):
  Unknown → OutOfSync → Syncing → (Synced | Error)
  Synced → OutOfSync on drift or source change
  Error → OutOfSync on the next retry (with backoff)

Passes for one application are serialized by a per-application lock; passes
for different applications run concurrently. Errors attach to the
application's status and never escape the loop.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set
from uuid import uuid4

import structlog

from gitops_kernel.cluster.platform import Platform
from gitops_kernel.diff.engine import DiffEngine
from gitops_kernel.errors import (
    ApplicationExists,
    ApplicationNotFound,
    GitOpsError,
    InvalidTransition,
    RenderValidationError,
    UnknownDestination,
)
from gitops_kernel.health.evaluator import HealthEvaluator
from gitops_kernel.history.store import SyncHistoryStore
from gitops_kernel.models.application import IN_CLUSTER_SERVER, Application
from gitops_kernel.models.diff import OperationPlan
from gitops_kernel.models.health import ApplicationHealth
from gitops_kernel.models.reconciler import BackoffState, ReconcilerConfig
from gitops_kernel.models.resource import DesiredResourceSet, LiveResourceSet, ResourceKey
from gitops_kernel.models.sync import (
    ApplicationPhase,
    ApplicationStatus,
    OperationResult,
    OperationStatus,
    SyncResult,
    SyncStatus,
)
from gitops_kernel.observer.live import LiveStateObserver
from gitops_kernel.render.renderer import DesiredStateRenderer
from gitops_kernel.source.backends import SourceBackend
from gitops_kernel.source.tracker import SourceTracker
from gitops_kernel.sync.executor import SyncExecutor
from gitops_kernel.sync.windows import blocking_window

logger = structlog.get_logger(__name__)

_ALLOWED_TRANSITIONS = {
    ApplicationPhase.UNKNOWN: {
        ApplicationPhase.OUT_OF_SYNC, ApplicationPhase.SYNCED, ApplicationPhase.ERROR,
    },
    ApplicationPhase.OUT_OF_SYNC: {
        ApplicationPhase.OUT_OF_SYNC, ApplicationPhase.SYNCING,
        ApplicationPhase.SYNCED, ApplicationPhase.ERROR,
    },
    ApplicationPhase.SYNCING: {ApplicationPhase.SYNCED, ApplicationPhase.ERROR},
    ApplicationPhase.SYNCED: {
        ApplicationPhase.SYNCED, ApplicationPhase.OUT_OF_SYNC, ApplicationPhase.ERROR,
    },
    ApplicationPhase.ERROR: {ApplicationPhase.ERROR, ApplicationPhase.OUT_OF_SYNC},
}


def transition(status: ApplicationStatus, target: ApplicationPhase) -> None:
    """Move an application to a new phase, enforcing the state machine."""
    if target not in _ALLOWED_TRANSITIONS[status.phase]:
        raise InvalidTransition(
            f"{status.application}: {status.phase.value} → {target.value} is not allowed"
        )
    status.phase = target


class ReconcilerLoop:
    """
    Owns the registered applications and drives their reconciliation.
    """

    def __init__(
        self,
        source: SourceBackend,
        platform: Platform,
        history_store: Optional[SyncHistoryStore] = None,
        config: Optional[ReconcilerConfig] = None,
        renderer: Optional[DesiredStateRenderer] = None,
        health_evaluator: Optional[HealthEvaluator] = None,
    ):
        self.config = config or ReconcilerConfig()
        self.platform = platform
        self.history = history_store or SyncHistoryStore()
        self.tracker = SourceTracker(source, timeout_seconds=self.config.operation_timeout_seconds)
        self.renderer = renderer or DesiredStateRenderer()
        self.observer = LiveStateObserver(platform, timeout_seconds=self.config.operation_timeout_seconds)
        self.diff_engine = DiffEngine()
        self.executor = SyncExecutor(platform, self.config, self.diff_engine)
        self.health = health_evaluator or HealthEvaluator()

        self._apps: Dict[str, Application] = {}
        self._status: Dict[str, ApplicationStatus] = {}
        self._desired: Dict[str, DesiredResourceSet] = {}
        self._failed_keys: Dict[str, Set[ResourceKey]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._wake: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    @property
    def status(self) -> str:
        """Current reconciler status."""
        return "running" if self._running else "stopped"

    def update_config(self, config: ReconcilerConfig) -> None:
        """Swap configuration at runtime; components pick it up on their next call."""
        self.config = config
        self.executor.config = config
        self.tracker.timeout_seconds = config.operation_timeout_seconds
        self.observer.timeout_seconds = config.operation_timeout_seconds

    # --- Application registry ---

    def register_application(self, app: Application) -> ApplicationStatus:
        """Register an application for reconciliation."""
        if app.name in self._apps:
            raise ApplicationExists(f"application {app.name} already exists")
        self._check_destination(app)
        self._apps[app.name] = app
        self._status[app.name] = ApplicationStatus(application=app.name)
        self._desired.pop(app.name, None)
        self._failed_keys.pop(app.name, None)
        self._locks.setdefault(app.name, asyncio.Lock())
        self.tracker.track(app)
        self.tracker.forget(app.name)
        logger.info("application_registered", application=app.name,
                    repo_url=app.source.repo_url, revision=app.source.revision)
        if self._running:
            self._start_task(app.name)
        return self._status[app.name]

    def update_application(self, app: Application) -> ApplicationStatus:
        """Replace an application's definition (source, destination or policy)."""
        old = self.get_application(app.name)
        self._check_destination(app)
        self._apps[app.name] = app
        self.tracker.track(app)
        if old != app:
            self.tracker.forget(app.name)
        if old.source != app.source or old.destination != app.destination:
            self._desired.pop(app.name, None)
            self._status[app.name].failed_hash = None
        logger.info("application_updated", application=app.name)
        self._wake_app(app.name)
        return self._status[app.name]

    def _check_destination(self, app: Application) -> None:
        """Every application deploys to the one platform this loop drives."""
        server = app.destination.server.rstrip("/")
        if server not in (IN_CLUSTER_SERVER, self.platform.server.rstrip("/")):
            raise UnknownDestination(
                f"application {app.name} targets {server}, "
                f"but this kernel manages {self.platform.server}"
            )

    def unregister_application(self, name: str) -> None:
        """Stop reconciling an application. Live resources are left in place."""
        self.get_application(name)
        self._apps.pop(name)
        self._status.pop(name, None)
        self._desired.pop(name, None)
        self._failed_keys.pop(name, None)
        self.tracker.untrack(name)
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
        self._wake.pop(name, None)
        logger.info("application_unregistered", application=name)

    async def delete_application(self, name: str, cascade: bool = False) -> List[OperationResult]:
        """
        Remove an application. With cascade, every live resource it owns is
        deleted first (reverse apply order).
        """
        app = self.get_application(name)
        results: List[OperationResult] = []
        if cascade:
            async with self._locks[name]:
                live = await self.observer.observe(app)
                empty = DesiredResourceSet(
                    application=name,
                    revision=app.source.revision,
                    content_hash="",
                    resources=[],
                    rendered_at=datetime.now(timezone.utc),
                )
                plan = self.diff_engine.plan(empty, live, app, prune=True)
                results = await self.executor.execute(app, plan)
        self.unregister_application(name)
        return results

    def get_application(self, name: str) -> Application:
        app = self._apps.get(name)
        if app is None:
            raise ApplicationNotFound(f"application {name} not found")
        return app

    def list_applications(self) -> List[Application]:
        return [self._apps[n] for n in sorted(self._apps)]

    def get_status(self, name: str) -> ApplicationStatus:
        self.get_application(name)
        return self._status[name]

    def get_health(self, name: str) -> Optional[ApplicationHealth]:
        return self.get_status(name).health

    # --- Notifications ---

    def notify(self, repo_url: str, revision: Optional[str] = None) -> List[str]:
        """Webhook entry point: wake every application tracking the pushed repository."""
        matched = self.tracker.notify(repo_url, revision)
        for name in matched:
            self._wake_app(name)
        return matched

    def _wake_app(self, name: str) -> None:
        event = self._wake.get(name)
        if event is not None:
            event.set()

    # --- Reconciliation ---

    async def reconcile_once(self) -> List[SyncResult]:
        """Run one pass for every application concurrently."""
        names = sorted(self._apps)
        results = await asyncio.gather(*(self.reconcile_application(n) for n in names))
        return [r for r in results if r is not None]

    async def reconcile_application(
        self, name: str, manual: bool = False, prune: Optional[bool] = None
    ) -> Optional[SyncResult]:
        """
        Run one reconciliation pass. Returns the recorded Sync Result, or None
        when the pass was skipped or changed nothing worth recording.
        """
        self.get_application(name)
        async with self._locks[name]:
            app = self._apps.get(name)
            if app is None:
                return None
            return await self._reconcile_locked(app, manual, prune)

    async def sync_application(self, name: str, prune: Optional[bool] = None) -> SyncResult:
        """Operator-triggered sync. Clears backoff and always records a result."""
        status = self.get_status(name)
        status.backoff = BackoffState()
        logger.info("manual_sync_requested", application=name, prune=prune)
        return await self.reconcile_application(name, manual=True, prune=prune)

    async def diff_application(self, name: str) -> OperationPlan:
        """Compute the current plan without applying it."""
        app = self.get_application(name)
        check = await self.tracker.check(app)
        desired = await self._desired_for(app, check.content_hash)
        live = await self.observer.observe(app)
        return self.diff_engine.plan(desired, live, app)

    async def _desired_for(self, app: Application, content_hash: str) -> DesiredResourceSet:
        cached = self._desired.get(app.name)
        if cached is not None and cached.content_hash == content_hash:
            return cached
        files = await self.tracker.fetch(app, content_hash)
        desired = self.renderer.render(app, content_hash, files)
        if self._apps.get(app.name) is app:
            self._desired[app.name] = desired
        return desired

    def _is_current(self, status: ApplicationStatus) -> bool:
        # False once the application was unregistered while its pass ran
        return self._status.get(status.application) is status

    def _mark_processed(self, status: ApplicationStatus, content_hash: str) -> None:
        if self._is_current(status):
            self.tracker.mark_processed(status.application, content_hash)

    async def _skip_automatic_pass(
        self, app: Application, status: ApplicationStatus, now: datetime
    ) -> bool:
        backoff = status.backoff
        if self.tracker.is_pending(app.name):
            return False
        if backoff.attention_required:
            # Only a new source revision resumes automatic retries
            try:
                check = await self.tracker.check(app)
            except GitOpsError:
                return True
            if check.content_hash == status.content_hash or check.content_hash == status.failed_hash:
                return True
            logger.info("attention_cleared_by_source_change", application=app.name,
                        content_hash=check.content_hash)
            status.backoff = BackoffState()
            return False
        return backoff.next_attempt_at is not None and now < backoff.next_attempt_at

    async def _reconcile_locked(
        self, app: Application, manual: bool, prune: Optional[bool]
    ) -> Optional[SyncResult]:
        status = self._status[app.name]
        started_at = datetime.now(timezone.utc)
        previous_phase = status.phase
        log = logger.bind(application=app.name, manual=manual)

        if not manual and await self._skip_automatic_pass(app, status, started_at):
            log.debug("pass_skipped", attention_required=status.backoff.attention_required)
            return None

        content_hash = None
        try:
            check = await self.tracker.check(app, force=manual)
            content_hash = check.content_hash
            if content_hash == status.failed_hash and not manual:
                # Rejected revision: wait for the source to move
                return None
            desired = await self._desired_for(app, content_hash)
            live = await self.observer.observe(app)
            plan = self.diff_engine.plan(desired, live, app, prune=prune)
        except RenderValidationError as e:
            self._mark_processed(status, content_hash)
            status.failed_hash = content_hash
            log.error("render_failed", content_hash=content_hash, error=str(e))
            return self._record_error(app, status, e, started_at, content_hash, manual)
        except GitOpsError as e:
            log.warning("pass_failed", error=str(e), transient=e.transient)
            return self._record_error(app, status, e, started_at, content_hash, manual)

        status.failed_hash = None
        status.revision = app.source.revision
        status.content_hash = content_hash
        status.last_reconciled_at = started_at
        if status.phase == ApplicationPhase.ERROR:
            transition(status, ApplicationPhase.OUT_OF_SYNC)

        if plan.is_empty:
            return self._record_in_sync(app, status, desired, live, started_at, previous_phase,
                                        manual, check.changed)

        transition(status, ApplicationPhase.OUT_OF_SYNC)
        status.sync_status = SyncStatus.OUT_OF_SYNC
        policy = app.sync_policy
        if not (manual or (policy.automated and (check.changed or policy.self_heal))):
            # Drift is reported but left alone
            self._mark_processed(status, content_hash)
            status.health = self.health.evaluate(desired, live, self._failed_keys.get(app.name))
            log.info("drift_detected", operations=len(plan.operations), self_heal=policy.self_heal)
            if previous_phase != ApplicationPhase.OUT_OF_SYNC:
                return self._append(app, status, SyncStatus.OUT_OF_SYNC, [], started_at,
                                    content_hash, manual, "drift detected, automatic sync disabled")
            return None

        window = blocking_window(policy.sync_windows, manual=manual)
        if window is not None:
            log.info("sync_blocked", window=window.schedule, kind=window.kind.value)
            if manual:
                return self._append(app, status, SyncStatus.OUT_OF_SYNC, [], started_at,
                                    content_hash, manual, f"blocked by {window.kind.value} window "
                                    f"{window.schedule}")
            return None

        return await self._sync(app, status, desired, plan, started_at, content_hash, manual)

    async def _sync(
        self,
        app: Application,
        status: ApplicationStatus,
        desired: DesiredResourceSet,
        plan: OperationPlan,
        started_at: datetime,
        content_hash: str,
        manual: bool,
    ) -> SyncResult:
        log = logger.bind(application=app.name, content_hash=content_hash)
        transition(status, ApplicationPhase.SYNCING)
        log.info("sync_started", operations=len(plan.operations))
        try:
            results = await self.executor.execute(app, plan)
        except asyncio.CancelledError:
            transition(status, ApplicationPhase.ERROR)
            status.last_error = "sync interrupted"
            raise
        except Exception as e:
            log.exception("sync_aborted")
            transition(status, ApplicationPhase.ERROR)
            status.sync_status = SyncStatus.ERROR
            message = f"sync aborted: {type(e).__name__}: {e}"
            status.last_error = message
            status.last_error_transient = True
            self._register_failure(app, status, transient=True)
            return self._append(app, status, SyncStatus.ERROR, [], started_at,
                                content_hash, manual, message)

        failed = {r.key for r in results if r.status == OperationStatus.FAILED}
        if self._is_current(status):
            self._failed_keys[app.name] = failed
        try:
            live_after = await self.observer.observe(app)
            status.health = self.health.evaluate(desired, live_after, failed)
        except GitOpsError as e:
            log.warning("post_sync_observe_failed", error=str(e))

        unsuccessful = [r for r in results if r.status != OperationStatus.SUCCEEDED]
        if unsuccessful:
            transition(status, ApplicationPhase.ERROR)
            status.sync_status = SyncStatus.ERROR
            message = f"{len(unsuccessful)} of {len(results)} operations did not succeed"
            status.last_error = message
            status.last_error_transient = True
            self._register_failure(app, status, transient=True)
            log.warning("sync_finished", status="error", failed=len(unsuccessful))
            return self._append(app, status, SyncStatus.ERROR, results, started_at,
                                content_hash, manual, message)

        transition(status, ApplicationPhase.SYNCED)
        status.sync_status = SyncStatus.SYNCED
        status.last_error = None
        status.backoff = BackoffState()
        self._mark_processed(status, content_hash)
        log.info("sync_finished", status="synced", operations=len(results))
        return self._append(app, status, SyncStatus.SYNCED, results, started_at,
                            content_hash, manual, f"{len(results)} operations applied")

    def _record_in_sync(
        self,
        app: Application,
        status: ApplicationStatus,
        desired: DesiredResourceSet,
        live: LiveResourceSet,
        started_at: datetime,
        previous_phase: ApplicationPhase,
        manual: bool,
        source_changed: bool,
    ) -> Optional[SyncResult]:
        transition(status, ApplicationPhase.SYNCED)
        status.sync_status = SyncStatus.SYNCED
        status.last_error = None
        status.backoff = BackoffState()
        self._failed_keys.pop(app.name, None)
        status.health = self.health.evaluate(desired, live)
        self._mark_processed(status, desired.content_hash)
        if manual or source_changed or previous_phase != ApplicationPhase.SYNCED:
            return self._append(app, status, SyncStatus.SYNCED, [], started_at,
                                desired.content_hash, manual, "live state matches desired state")
        return None

    def _record_error(
        self,
        app: Application,
        status: ApplicationStatus,
        error: GitOpsError,
        started_at: datetime,
        content_hash: Optional[str],
        manual: bool,
    ) -> SyncResult:
        transition(status, ApplicationPhase.ERROR)
        status.sync_status = SyncStatus.ERROR
        status.last_error = str(error)
        status.last_error_transient = error.transient
        self._register_failure(app, status, transient=error.transient)
        return self._append(app, status, SyncStatus.ERROR, [], started_at,
                            content_hash, manual, str(error))

    def _register_failure(self, app: Application, status: ApplicationStatus, transient: bool) -> None:
        """Exponential backoff; after max_retries the application needs an operator."""
        backoff = status.backoff
        backoff.consecutive_failures += 1
        if not transient:
            backoff.next_attempt_at = None
            return
        delay = min(
            self.config.backoff_base_seconds * (2 ** (backoff.consecutive_failures - 1)),
            self.config.backoff_max_seconds,
        )
        backoff.next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        if backoff.consecutive_failures >= self.config.max_retries:
            backoff.attention_required = True
        logger.warning(
            "backoff_scheduled",
            application=app.name,
            failures=backoff.consecutive_failures,
            delay_seconds=delay,
            attention_required=backoff.attention_required,
        )

    def _append(
        self,
        app: Application,
        status: ApplicationStatus,
        sync_status: SyncStatus,
        operations: List[OperationResult],
        started_at: datetime,
        content_hash: Optional[str],
        manual: bool,
        message: str,
    ) -> SyncResult:
        result = SyncResult(
            id=f"sync_{uuid4().hex[:12]}",
            application=app.name,
            revision=app.source.revision,
            content_hash=content_hash,
            status=sync_status,
            operations=operations,
            health=status.health,
            message=message,
            manual=manual,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        self.history.append(result)
        status.last_sync_result_id = result.id
        return result

    # --- Loop ---

    def _start_task(self, name: str) -> None:
        self._wake[name] = asyncio.Event()
        self._tasks[name] = asyncio.get_running_loop().create_task(self._app_loop(name))

    def _next_delay(self, name: str) -> float:
        delay = self.config.poll_interval_seconds
        status = self._status.get(name)
        if status is None or status.backoff.attention_required:
            return delay
        if status.backoff.next_attempt_at is not None:
            remaining = (status.backoff.next_attempt_at - datetime.now(timezone.utc)).total_seconds()
            delay = min(delay, max(remaining, 0.0))
        return delay

    async def _app_loop(self, name: str) -> None:
        wake = self._wake[name]
        while name in self._apps and not self._stop_event.is_set():
            wake.clear()
            try:
                await self.reconcile_application(name)
            except ApplicationNotFound:
                return
            except Exception:
                logger.exception("pass_crashed", application=name)
            try:
                await asyncio.wait_for(wake.wait(), timeout=self._next_delay(name))
            except asyncio.TimeoutError:
                continue

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run one loop per application until `stop_event` is set."""
        self._running = True
        self._stop_event = stop_event or asyncio.Event()
        try:
            for name in sorted(self._apps):
                self._start_task(name)
            await self._stop_event.wait()
        finally:
            tasks = list(self._tasks.values())
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._tasks.clear()
            self._wake.clear()
            self._running = False
