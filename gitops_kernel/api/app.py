"""
GitOps Kernel API: FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Application registration
- Status, health and diff inspection
- Out-of-band syncs
- Git push webhooks
- Reconciler control
- Sync history queries
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from gitops_kernel.cluster.kubernetes import KubernetesPlatform
from gitops_kernel.cluster.platform import InMemoryPlatform, Platform
from gitops_kernel.config import get_settings
from gitops_kernel.errors import (
    ApplicationExists,
    ApplicationNotFound,
    GitOpsError,
    RenderValidationError,
    UnknownDestination,
)
from gitops_kernel.history.store import SyncHistoryStore
from gitops_kernel.models.application import Application
from gitops_kernel.models.reconciler import ReconcilerConfig
from gitops_kernel.observability.logging import configure_logging
from gitops_kernel.reconciler.loop import ReconcilerLoop
from gitops_kernel.source.backends import GitSource, SourceBackend


# --- Request/Response Models ---

class SyncRequest(BaseModel):
    prune: Optional[bool] = None            # Overrides the application's prune policy


class GitWebhookRequest(BaseModel):
    repo_url: str
    revision: Optional[str] = None          # e.g. "refs/heads/main"


class GitWebhookResponse(BaseModel):
    matched: List[str]


class ReconcilerTriggerResponse(BaseModel):
    results: list
    cycle_count: int


def _default_platform() -> Platform:
    settings = get_settings()
    if settings.kube_api_url:
        return KubernetesPlatform(
            settings.kube_api_url,
            token=settings.kube_token,
            verify=settings.kube_verify_tls,
            timeout=settings.operation_timeout_seconds,
        )
    return InMemoryPlatform()


# --- Application Factory ---

def create_app(
    source: Optional[SourceBackend] = None,
    platform: Optional[Platform] = None,
    history_store: Optional[SyncHistoryStore] = None,
    reconciler_config: Optional[ReconcilerConfig] = None,
    run_loop: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    With run_loop=True the reconciler loop runs in the background for the
    lifetime of the server.
    """
    settings = get_settings()
    configure_logging()

    src = source or GitSource(cache_dir=settings.git_cache_dir)
    pf = platform or _default_platform()
    hs = history_store or SyncHistoryStore(db_path=settings.history_db_path)
    config = reconciler_config or settings.reconciler_config()

    reconciler = ReconcilerLoop(
        source=src,
        platform=pf,
        history_store=hs,
        config=config,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_event = asyncio.Event()
        task = asyncio.create_task(reconciler.run_async(stop_event)) if run_loop else None
        yield
        stop_event.set()
        if task is not None:
            await task
        if isinstance(pf, KubernetesPlatform):
            await pf.close()

    app = FastAPI(
        title="GitOps Kernel API",
        description="Continuous reconciliation of declared configuration against a live platform",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.source = src
    app.state.platform = pf
    app.state.history_store = hs
    app.state.reconciler = reconciler

    def _status_or_404(name: str):
        try:
            return reconciler.get_status(name)
        except ApplicationNotFound:
            raise HTTPException(404, "Application not found")

    # === APPLICATIONS ===

    @app.post("/applications")
    def create_application(application: Application):
        """Register a new application."""
        try:
            status = reconciler.register_application(application)
        except ApplicationExists:
            raise HTTPException(409, "Application already exists")
        except UnknownDestination as e:
            raise HTTPException(400, str(e))
        return {
            "application": application.model_dump(mode="json"),
            "status": status.model_dump(mode="json"),
        }

    @app.get("/applications")
    def list_applications():
        """List all registered applications."""
        return [a.model_dump(mode="json") for a in reconciler.list_applications()]

    @app.get("/applications/{name}")
    def get_application(name: str):
        """Get one application with its current status."""
        status = _status_or_404(name)
        return {
            "application": reconciler.get_application(name).model_dump(mode="json"),
            "status": status.model_dump(mode="json"),
        }

    @app.put("/applications/{name}")
    def update_application(name: str, application: Application):
        """Replace an application's definition."""
        if application.name != name:
            raise HTTPException(400, "Application name cannot be changed")
        try:
            status = reconciler.update_application(application)
        except ApplicationNotFound:
            raise HTTPException(404, "Application not found")
        except UnknownDestination as e:
            raise HTTPException(400, str(e))
        return {
            "application": application.model_dump(mode="json"),
            "status": status.model_dump(mode="json"),
        }

    @app.delete("/applications/{name}")
    async def delete_application(name: str, cascade: bool = False):
        """Stop managing an application; cascade also deletes its live resources."""
        _status_or_404(name)
        try:
            results = await reconciler.delete_application(name, cascade=cascade)
        except GitOpsError as e:
            raise HTTPException(503, str(e))
        return {
            "status": "deleted",
            "application": name,
            "operations": [r.model_dump(mode="json") for r in results],
        }

    @app.get("/applications/{name}/status")
    def get_application_status(name: str):
        return _status_or_404(name).model_dump(mode="json")

    @app.get("/applications/{name}/health")
    def get_application_health(name: str):
        """Last evaluated health, per resource."""
        status = _status_or_404(name)
        if status.health is None:
            return {"status": "Unknown", "resources": []}
        return status.health.model_dump(mode="json")

    @app.get("/applications/{name}/history")
    def get_application_history(name: str, limit: int = 50):
        """Recent sync results, oldest first."""
        _status_or_404(name)
        return [r.model_dump(mode="json") for r in hs.query_by_application(name, limit=limit)]

    @app.get("/applications/{name}/diff")
    async def get_application_diff(name: str):
        """What a sync would do right now."""
        _status_or_404(name)
        try:
            plan = await reconciler.diff_application(name)
        except RenderValidationError as e:
            raise HTTPException(422, str(e))
        except GitOpsError as e:
            raise HTTPException(503, str(e))
        return plan.model_dump(mode="json")

    @app.post("/applications/{name}/sync")
    async def sync_application(name: str, req: Optional[SyncRequest] = None):
        """Out-of-band sync requested by an operator."""
        _status_or_404(name)
        prune = req.prune if req is not None else None
        result = await reconciler.sync_application(name, prune=prune)
        return result.model_dump(mode="json")

    # === WEBHOOKS ===

    @app.post("/webhooks/git")
    def git_webhook(req: GitWebhookRequest):
        """Push notification: wake the applications tracking this repository."""
        matched = reconciler.notify(req.repo_url, req.revision)
        return GitWebhookResponse(matched=matched)

    # === RECONCILER ===

    @app.get("/reconciler/status")
    def reconciler_status():
        """Current reconciler loop status."""
        applications = reconciler.list_applications()
        return {
            "status": reconciler.status,
            "config": reconciler.config.model_dump(),
            "registered_applications": len(applications),
            "phases": {a.name: reconciler.get_status(a.name).phase.value for a in applications},
            "attention_required": [
                a.name for a in applications
                if reconciler.get_status(a.name).backoff.attention_required
            ],
        }

    @app.post("/reconciler/trigger")
    async def trigger_reconciliation():
        """Force a reconciliation pass for every application."""
        results = await reconciler.reconcile_once()
        return ReconcilerTriggerResponse(
            results=[r.model_dump(mode="json") for r in results],
            cycle_count=len(results),
        )

    @app.get("/reconciler/config")
    def get_reconciler_config():
        """Current reconciler configuration."""
        return reconciler.config.model_dump()

    @app.put("/reconciler/config")
    def update_reconciler_config(config: ReconcilerConfig):
        """Update reconciler configuration."""
        reconciler.update_config(config)
        return config.model_dump()

    # === HISTORY ===

    @app.get("/history")
    def get_history(limit: int = 50):
        """Recent sync results across applications."""
        return [r.model_dump(mode="json") for r in hs.query_recent(limit=limit)]

    @app.get("/history/verify")
    def verify_history():
        """Verify chain integrity."""
        return {
            "integrity_valid": hs.verify_chain_integrity(),
            "total_records": hs.count(),
        }

    return app


# Default application instance
app = create_app(run_loop=True)
