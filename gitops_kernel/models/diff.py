"""Diff results and the operation plan derived from them."""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel

from gitops_kernel.models.resource import ResourceKey


class DiffType(str, Enum):
    UNCHANGED = "unchanged"
    MODIFIED = "modified"   # Present on both sides, fields differ
    MISSING = "missing"     # Desired but not live
    EXTRA = "extra"         # Live but not desired


class OperationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    PRUNE = "prune"


class FieldChange(BaseModel):
    """One differing field, addressed by JSON pointer."""

    path: str
    desired: Any = None
    live: Any = None


class ResourceDiff(BaseModel):
    """Comparison outcome for a single resource key."""

    key: ResourceKey
    diff_type: DiffType
    changes: List[FieldChange] = []
    requires_pruning: bool = False          # Extra and eligible for deletion


class PlannedOperation(BaseModel):
    """A single step in an operation plan."""

    key: ResourceKey
    action: OperationAction
    manifest: Optional[dict] = None         # Desired manifest for create/update
    live: Optional[dict] = None             # Observed manifest for update/prune
    changes: List[FieldChange] = []


class OperationPlan(BaseModel):
    """Deterministically ordered operations converging live to desired."""

    application: str
    revision: Optional[str] = None
    operations: List[PlannedOperation] = []
    diffs: List[ResourceDiff] = []

    @property
    def is_empty(self) -> bool:
        return len(self.operations) == 0

