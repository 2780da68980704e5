"""
Sync Executor: applies an operation plan to the platform.

Behavioral Contract:
- Operations run in plan order (waves and kinds first, prunes last)
- Each operation is independent: a failure is recorded and the executor
  moves on; it never aborts the rest of the plan
- Operations inside a namespace whose creation failed are skipped
- Transient platform errors and timeouts are retried per operation with
  exponential delay, up to `apply_retries` extra attempts
- A write conflict re-reads the live object, re-diffs it and retries once
  (last-observed-wins); a second conflict fails the operation
- Every platform call is bounded by `operation_timeout_seconds`
"""

import asyncio
import copy
import json
import time
from typing import List, Optional, Set

import structlog

from gitops_kernel.cluster.platform import Platform
from gitops_kernel.diff.engine import DiffEngine, normalize
from gitops_kernel.errors import (
    ConflictError,
    GitOpsError,
    PlatformUnavailable,
    ResourceApplyError,
)
from gitops_kernel.models.application import Application
from gitops_kernel.models.diff import OperationAction, OperationPlan, PlannedOperation
from gitops_kernel.models.reconciler import ReconcilerConfig
from gitops_kernel.models.resource import LAST_APPLIED_ANNOTATION
from gitops_kernel.models.sync import OperationResult, OperationStatus

logger = structlog.get_logger(__name__)


def with_last_applied(manifest: dict) -> dict:
    """Copy of a desired manifest carrying its own normalized form as an annotation."""
    result = copy.deepcopy(manifest)
    metadata = result.setdefault("metadata", {})
    metadata.pop("resourceVersion", None)
    annotations = dict(metadata.get("annotations") or {})
    annotations[LAST_APPLIED_ANNOTATION] = json.dumps(
        normalize(manifest), sort_keys=True, separators=(",", ":")
    )
    metadata["annotations"] = annotations
    return result


class SyncExecutor:
    """Converges live state by running planned operations one at a time."""

    def __init__(
        self,
        platform: Platform,
        config: Optional[ReconcilerConfig] = None,
        diff_engine: Optional[DiffEngine] = None,
    ):
        self.platform = platform
        self.config = config or ReconcilerConfig()
        self.diff_engine = diff_engine or DiffEngine()

    async def execute(self, app: Application, plan: OperationPlan) -> List[OperationResult]:
        """Run every operation of the plan. Never raises for per-resource failures."""
        log = logger.bind(application=app.name, revision=plan.revision)
        start_time = time.monotonic()
        results: List[OperationResult] = []
        failed_namespaces: Set[str] = set()

        for operation in plan.operations:
            if operation.action != OperationAction.PRUNE and operation.key.namespace in failed_namespaces:
                results.append(OperationResult(
                    key=operation.key,
                    action=operation.action,
                    status=OperationStatus.SKIPPED,
                    message=f"namespace {operation.key.namespace} could not be created",
                ))
                continue

            result = await self._run(app, operation)
            results.append(result)

            if result.status == OperationStatus.FAILED:
                log.warning(
                    "operation_failed",
                    key=str(operation.key),
                    action=operation.action.value,
                    attempts=result.attempts,
                    error=result.message,
                )
                if operation.key.kind == "Namespace" and operation.action == OperationAction.CREATE:
                    failed_namespaces.add(operation.key.name)
            else:
                log.debug("operation_succeeded", key=str(operation.key), action=operation.action.value)

        log.info(
            "plan_executed",
            operations=len(results),
            failed=sum(1 for r in results if r.status == OperationStatus.FAILED),
            skipped=sum(1 for r in results if r.status == OperationStatus.SKIPPED),
            duration=round(time.monotonic() - start_time, 3),
        )
        return results

    async def _run(self, app: Application, operation: PlannedOperation) -> OperationResult:
        """Run one operation with retries and single conflict re-diff."""
        current: Optional[PlannedOperation] = operation
        attempts = 0
        conflict_retried = False

        while True:
            attempts += 1
            try:
                await self._dispatch(current)
                return OperationResult(
                    key=operation.key,
                    action=current.action,
                    status=OperationStatus.SUCCEEDED,
                    attempts=attempts,
                    conflict_retried=conflict_retried,
                )
            except ConflictError as e:
                if conflict_retried:
                    return self._failed(operation, attempts, f"conflict persisted: {e}", True)
                conflict_retried = True
                try:
                    current = await self._refresh(app, current)
                except GitOpsError as refresh_error:
                    return self._failed(operation, attempts, str(refresh_error), True)
                if current is None:
                    return OperationResult(
                        key=operation.key,
                        action=operation.action,
                        status=OperationStatus.SUCCEEDED,
                        attempts=attempts,
                        message="live state already matches after conflict",
                        conflict_retried=True,
                    )
            except PlatformUnavailable as e:
                if attempts > self.config.apply_retries:
                    return self._failed(operation, attempts, str(e), conflict_retried)
                delay = self.config.apply_retry_delay_seconds * (2 ** (attempts - 1))
                await asyncio.sleep(delay)
            except ResourceApplyError as e:
                return self._failed(operation, attempts, str(e), conflict_retried)

    @staticmethod
    def _failed(
        operation: PlannedOperation, attempts: int, message: str, conflict_retried: bool
    ) -> OperationResult:
        return OperationResult(
            key=operation.key,
            action=operation.action,
            status=OperationStatus.FAILED,
            attempts=attempts,
            message=message,
            conflict_retried=conflict_retried,
        )

    async def _call(self, awaitable, description: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.operation_timeout_seconds)
        except asyncio.TimeoutError:
            raise PlatformUnavailable(f"{description} timed out")

    async def _dispatch(self, operation: PlannedOperation) -> None:
        if operation.action == OperationAction.CREATE:
            await self._call(
                self.platform.create(with_last_applied(operation.manifest)),
                f"create {operation.key}",
            )
        elif operation.action == OperationAction.UPDATE:
            manifest = with_last_applied(operation.manifest)
            live_version = ((operation.live or {}).get("metadata") or {}).get("resourceVersion")
            if live_version is not None:
                manifest["metadata"]["resourceVersion"] = live_version
            await self._call(self.platform.update(manifest), f"update {operation.key}")
        elif operation.action == OperationAction.PRUNE:
            await self._call(self.platform.delete(operation.key), f"delete {operation.key}")

    async def _refresh(
        self, app: Application, operation: PlannedOperation
    ) -> Optional[PlannedOperation]:
        """Re-read the live object after a conflict and re-plan this one resource."""
        fresh = await self._call(self.platform.get(operation.key), f"get {operation.key}")
        logger.info("conflict_rediff", application=app.name, key=str(operation.key),
                    live_exists=fresh is not None)

        if operation.action == OperationAction.PRUNE:
            if fresh is None:
                return None
            return PlannedOperation(key=operation.key, action=OperationAction.PRUNE, live=fresh)

        if fresh is None:
            return PlannedOperation(
                key=operation.key, action=OperationAction.CREATE, manifest=operation.manifest
            )
        changes = self.diff_engine.compare_resource(
            operation.key, operation.manifest, fresh, app.ignore_differences
        )
        if not changes:
            return None
        return PlannedOperation(
            key=operation.key,
            action=OperationAction.UPDATE,
            manifest=operation.manifest,
            live=fresh,
            changes=changes,
        )
