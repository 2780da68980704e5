"""Sync Result: outcome of one reconciliation attempt, and per-application status."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from gitops_kernel.models.diff import OperationAction
from gitops_kernel.models.health import ApplicationHealth
from gitops_kernel.models.resource import ResourceKey
from gitops_kernel.models.reconciler import BackoffState


class SyncStatus(str, Enum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    ERROR = "Error"


class ApplicationPhase(str, Enum):
    """Per-application state machine."""
    UNKNOWN = "Unknown"
    OUT_OF_SYNC = "OutOfSync"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    ERROR = "Error"


class OperationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"     # Not attempted because something it depends on failed


class OperationResult(BaseModel):
    """What happened to one planned operation."""

    key: ResourceKey
    action: OperationAction
    status: OperationStatus
    attempts: int = 0
    message: Optional[str] = None
    conflict_retried: bool = False


class SyncResult(BaseModel):
    """
    The history entry for one reconciliation attempt.
    Append-only; hash-chained by the history store.
    """

    id: str
    application: str
    revision: Optional[str] = None
    content_hash: Optional[str] = None
    status: SyncStatus
    operations: List[OperationResult] = []
    health: Optional[ApplicationHealth] = None
    message: Optional[str] = None
    manual: bool = False                    # Triggered by an operator
    started_at: datetime
    finished_at: datetime

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None


class ApplicationStatus(BaseModel):
    """In-memory view of an application, refreshed every pass."""

    application: str
    phase: ApplicationPhase = ApplicationPhase.UNKNOWN
    sync_status: Optional[SyncStatus] = None
    health: Optional[ApplicationHealth] = None
    revision: Optional[str] = None
    content_hash: Optional[str] = None      # Last successfully rendered hash
    last_error: Optional[str] = None
    last_error_transient: bool = False
    failed_hash: Optional[str] = None       # Revision rejected by the renderer
    last_sync_result_id: Optional[str] = None
    last_reconciled_at: Optional[datetime] = None
    backoff: BackoffState = BackoffState()
