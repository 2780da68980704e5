"""Application, the primary declaration object: what to deploy, and where."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# Address of the cluster the kernel itself runs against
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"


class SourceSpec(BaseModel):
    """Where the desired state lives."""

    repo_url: str
    revision: str = "HEAD"                  # Branch, tag or commit
    path: str = "."                         # Subdirectory holding the manifests


class DestinationSpec(BaseModel):
    """Where the desired state is deployed."""

    server: str = IN_CLUSTER_SERVER
    namespace: str = "default"


class SyncWindowKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class SyncWindow(BaseModel):
    """A cron-scheduled period during which syncs are allowed or denied."""

    kind: SyncWindowKind
    schedule: str                           # Cron expression marking the window start
    duration_minutes: int = Field(ge=1)
    manual_sync: bool = False               # Operators may still sync inside a blocking window


class SyncPolicy(BaseModel):
    """How the reconciler is allowed to converge live state."""

    automated: bool = True                  # Sync on source change without operator action
    prune: bool = False                     # Delete live resources no longer declared
    self_heal: bool = False                 # Correct drift even without a source change
    sync_windows: List[SyncWindow] = []


class IgnoreDifference(BaseModel):
    """Fields excluded from comparison for matching resources."""

    group: str = ""
    kind: str
    name: Optional[str] = None
    namespace: Optional[str] = None
    json_pointers: List[str]                # e.g. "/spec/replicas"


class Application(BaseModel):
    """A registered unit of reconciliation."""

    name: str = Field(min_length=1, max_length=253)
    source: SourceSpec
    destination: DestinationSpec = DestinationSpec()
    sync_policy: SyncPolicy = SyncPolicy()
    ignore_differences: List[IgnoreDifference] = []
