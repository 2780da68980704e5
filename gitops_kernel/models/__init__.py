"""gitops-kernel data models."""

from gitops_kernel.models.application import (
    Application,
    DestinationSpec,
    IgnoreDifference,
    SourceSpec,
    SyncPolicy,
    SyncWindow,
    SyncWindowKind,
)
from gitops_kernel.models.diff import (
    DiffType,
    FieldChange,
    OperationAction,
    OperationPlan,
    PlannedOperation,
    ResourceDiff,
)
from gitops_kernel.models.health import (
    ApplicationHealth,
    HealthStatus,
    ResourceHealth,
)
from gitops_kernel.models.reconciler import BackoffState, ReconcilerConfig
from gitops_kernel.models.resource import (
    DesiredResourceSet,
    LiveResourceSet,
    ResourceKey,
)
from gitops_kernel.models.sync import (
    ApplicationPhase,
    ApplicationStatus,
    OperationResult,
    OperationStatus,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "Application",
    "ApplicationHealth",
    "ApplicationPhase",
    "ApplicationStatus",
    "BackoffState",
    "DesiredResourceSet",
    "DestinationSpec",
    "DiffType",
    "FieldChange",
    "HealthStatus",
    "IgnoreDifference",
    "LiveResourceSet",
    "OperationAction",
    "OperationPlan",
    "OperationResult",
    "OperationStatus",
    "PlannedOperation",
    "ReconcilerConfig",
    "ResourceDiff",
    "ResourceHealth",
    "ResourceKey",
    "SourceSpec",
    "SyncPolicy",
    "SyncResult",
    "SyncStatus",
    "SyncWindow",
    "SyncWindowKind",
]
