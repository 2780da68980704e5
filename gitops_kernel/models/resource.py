"""Resource sets: desired (rendered from source) and live (observed on the platform)."""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

# Label tying a live resource to the Application that manages it.
OWNERSHIP_LABEL = "app.kubernetes.io/instance"

# Annotations understood by the kernel.
LAST_APPLIED_ANNOTATION = "gitops-kernel/last-applied"
SYNC_WAVE_ANNOTATION = "gitops-kernel/sync-wave"
SYNC_OPTIONS_ANNOTATION = "gitops-kernel/sync-options"


def split_api_version(api_version: str) -> Tuple[str, str]:
    """Split "apps/v1" into ("apps", "v1"); core resources have an empty group."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


class ResourceKey(BaseModel):
    """Identity of a resource on the platform."""

    model_config = ConfigDict(frozen=True)

    group: str = ""
    kind: str
    namespace: str = ""                     # Empty for cluster-scoped kinds
    name: str

    @classmethod
    def from_manifest(cls, manifest: dict) -> "ResourceKey":
        metadata = manifest.get("metadata") or {}
        group, _ = split_api_version(manifest.get("apiVersion", ""))
        return cls(
            group=group,
            kind=manifest.get("kind", ""),
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name", ""),
        )

    def __str__(self) -> str:
        return f"{self.group}/{self.kind}/{self.namespace}/{self.name}"


def annotations_of(manifest: dict) -> Dict[str, str]:
    return (manifest.get("metadata") or {}).get("annotations") or {}


def sync_wave_of(manifest: dict) -> int:
    """Sync wave from annotation; non-integers fall back to wave 0."""
    value = annotations_of(manifest).get(SYNC_WAVE_ANNOTATION)
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def has_sync_option(manifest: dict, option: str) -> bool:
    """Check a comma-separated sync option such as "Prune=false"."""
    raw = annotations_of(manifest).get(SYNC_OPTIONS_ANNOTATION, "")
    options = {o.strip() for o in raw.split(",") if o.strip()}
    return option in options


class DesiredResourceSet(BaseModel):
    """Resources rendered from one source revision. Immutable."""

    model_config = ConfigDict(frozen=True)

    application: str
    revision: str
    content_hash: str
    resources: List[dict]
    rendered_at: datetime

    def by_key(self) -> Dict[ResourceKey, dict]:
        return {ResourceKey.from_manifest(r): r for r in self.resources}


class LiveResourceSet(BaseModel):
    """Resources observed on the platform for one application. Fresh per pass."""

    application: str
    resources: List[dict]
    observed_at: datetime

    def by_key(self) -> Dict[ResourceKey, dict]:
        return {ResourceKey.from_manifest(r): r for r in self.resources}

    def get(self, key: ResourceKey) -> Optional[dict]:
        return self.by_key().get(key)
