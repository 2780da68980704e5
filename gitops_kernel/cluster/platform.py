"""
Platform boundary: a declarative resource API (create/read/update/delete,
list by label selector).

The live cluster is an external resource: every call returns a fresh copy,
nothing is cached between calls. Writes use optimistic concurrency on
`metadata.resourceVersion`. Updates are applies: fields the kernel never
declared stay as the platform holds them.

InMemoryPlatform is a simulated cluster for the prototype and tests. It
injects the fields a real API server would (uid, resourceVersion,
generation, creationTimestamp, status), lets tests edit objects out of band,
advance rollouts, and inject faults.
"""

import asyncio
import copy
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from gitops_kernel.diff.engine import last_applied
from gitops_kernel.errors import ConflictError, PlatformUnavailable, ResourceApplyError
from gitops_kernel.models.application import IN_CLUSTER_SERVER
from gitops_kernel.models.resource import OWNERSHIP_LABEL, ResourceKey


class Platform(Protocol):
    """Pluggable target platform."""

    server: str                             # Cluster endpoint applications name as destination

    async def list(self, selector: Dict[str, str]) -> List[dict]: ...

    async def get(self, key: ResourceKey) -> Optional[dict]: ...

    async def create(self, manifest: dict) -> dict: ...

    async def update(self, manifest: dict) -> dict: ...

    async def delete(self, key: ResourceKey) -> bool: ...


def labels_match(manifest: dict, selector: Dict[str, str]) -> bool:
    labels = (manifest.get("metadata") or {}).get("labels") or {}
    return all(labels.get(k) == v for k, v in selector.items())


def apply_merge(live: Any, previous: Any, desired: Any) -> Any:
    """
    Three-way merge of an applied manifest onto a live object.

    Keys the previous apply declared and `desired` no longer does are removed;
    keys nobody declared (other controllers, admission defaults) are kept.
    Lists are replaced wholesale.
    """
    if not isinstance(desired, dict) or not isinstance(live, dict):
        return copy.deepcopy(desired)
    previous = previous if isinstance(previous, dict) else {}
    merged = copy.deepcopy(live)
    for key in previous:
        if key not in desired:
            merged.pop(key, None)
    for key, value in desired.items():
        merged[key] = apply_merge(live.get(key), previous.get(key), value)
    return merged


_WORKLOAD_KINDS = ("Deployment", "StatefulSet", "ReplicaSet", "ReplicationController")


class InMemoryPlatform:
    """Simulated cluster. Thread-unsafe; meant for a single event loop."""

    def __init__(self, latency_seconds: float = 0.0, server: str = IN_CLUSTER_SERVER):
        self.latency_seconds = latency_seconds
        self.server = server
        self._objects: Dict[ResourceKey, dict] = {}
        self._resource_version = 0
        self._available = True
        self._faults: Dict[Tuple[str, Optional[ResourceKey]], List[Exception]] = defaultdict(list)
        self.calls: List[Tuple[str, Optional[ResourceKey]]] = []

        # Concurrent writes per owning application, for mutual exclusion checks
        self._writes_in_flight: Dict[str, int] = defaultdict(int)
        self.max_concurrent_writes: Dict[str, int] = defaultdict(int)

    # --- Test / simulation controls ---

    def set_available(self, available: bool) -> None:
        self._available = available

    def fail_next(
        self, operation: str, error: Exception, key: Optional[ResourceKey] = None
    ) -> None:
        """Queue an error for the next `operation` call (optionally only for `key`)."""
        self._faults[(operation, key)].append(error)

    def edit(self, key: ResourceKey, mutate: Callable[[dict], None]) -> dict:
        """Out-of-band edit, as an operator running `kubectl edit` would."""
        obj = self._objects[key]
        before = copy.deepcopy(obj.get("spec"))
        mutate(obj)
        self._bump(obj, spec_changed=obj.get("spec") != before)
        return copy.deepcopy(obj)

    def remove(self, key: ResourceKey) -> None:
        """Out-of-band deletion."""
        self._objects.pop(key, None)

    def put_unmanaged(self, manifest: dict) -> dict:
        """Create an object directly, bypassing the write path."""
        key = ResourceKey.from_manifest(manifest)
        obj = self._materialize(manifest, None)
        self._objects[key] = obj
        return copy.deepcopy(obj)

    def set_status(self, key: ResourceKey, status: dict) -> None:
        self._objects[key]["status"] = copy.deepcopy(status)

    def snapshot(self, key: ResourceKey) -> Optional[dict]:
        obj = self._objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def rollout(self, key: Optional[ResourceKey] = None) -> None:
        """Let controllers catch up: workloads become ready, claims bind, pods run."""
        keys = [key] if key is not None else list(self._objects)
        for k in keys:
            obj = self._objects.get(k)
            if obj is not None:
                obj["status"] = self._settled_status(obj)

    # --- Platform protocol ---

    async def list(self, selector: Dict[str, str]) -> List[dict]:
        await self._enter("list", None)
        return [
            copy.deepcopy(obj)
            for key, obj in sorted(self._objects.items(), key=lambda kv: str(kv[0]))
            if labels_match(obj, selector)
        ]

    async def get(self, key: ResourceKey) -> Optional[dict]:
        await self._enter("get", key)
        return self.snapshot(key)

    async def create(self, manifest: dict) -> dict:
        key = ResourceKey.from_manifest(manifest)
        async with self._writing(manifest):
            await self._enter("create", key)
            if key in self._objects:
                raise ConflictError(f"{key} already exists", key=str(key))
            obj = self._materialize(manifest, None)
            self._objects[key] = obj
            return copy.deepcopy(obj)

    async def update(self, manifest: dict) -> dict:
        key = ResourceKey.from_manifest(manifest)
        async with self._writing(manifest):
            await self._enter("update", key)
            current = self._objects.get(key)
            if current is None:
                raise ResourceApplyError(f"{key} not found", key=str(key))
            expected = (manifest.get("metadata") or {}).get("resourceVersion")
            if expected is not None and expected != current["metadata"]["resourceVersion"]:
                raise ConflictError(
                    f"{key} was modified (resourceVersion {expected} is stale)", key=str(key)
                )
            merged = apply_merge(current, last_applied(current), manifest)
            obj = self._materialize(merged, current)
            self._objects[key] = obj
            return copy.deepcopy(obj)

    async def delete(self, key: ResourceKey) -> bool:
        live = self._objects.get(key)
        async with self._writing(live or {}):
            await self._enter("delete", key)
            return self._objects.pop(key, None) is not None

    # --- Internals ---

    async def _enter(self, operation: str, key: Optional[ResourceKey]) -> None:
        self.calls.append((operation, key))
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if not self._available:
            raise PlatformUnavailable("platform API is unreachable")
        for fault_key in ((operation, key), (operation, None)):
            queue = self._faults.get(fault_key)
            if queue:
                raise queue.pop(0)

    def _writing(self, manifest: dict) -> "_WriteTracker":
        owner = ((manifest.get("metadata") or {}).get("labels") or {}).get(OWNERSHIP_LABEL, "")
        return _WriteTracker(self, owner)

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _bump(self, obj: dict, spec_changed: bool) -> None:
        meta = obj["metadata"]
        meta["resourceVersion"] = self._next_version()
        if spec_changed:
            meta["generation"] = meta.get("generation", 1) + 1

    def _materialize(self, manifest: dict, current: Optional[dict]) -> dict:
        obj = copy.deepcopy(manifest)
        obj.pop("status", None)
        meta = obj.setdefault("metadata", {})
        if current is None:
            meta["uid"] = str(uuid4())
            meta["creationTimestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            meta["generation"] = 1
            meta["resourceVersion"] = self._next_version()
            obj["status"] = self._initial_status(obj)
        else:
            cur_meta = current["metadata"]
            meta["uid"] = cur_meta["uid"]
            meta["creationTimestamp"] = cur_meta["creationTimestamp"]
            meta["generation"] = cur_meta.get("generation", 1)
            meta["resourceVersion"] = cur_meta["resourceVersion"]
            if "status" in current:
                obj["status"] = copy.deepcopy(current["status"])
            self._bump(obj, spec_changed=obj.get("spec") != current.get("spec"))
        return obj

    def _initial_status(self, obj: dict) -> dict:
        kind = obj.get("kind")
        if kind in _WORKLOAD_KINDS:
            return {
                "observedGeneration": 1,
                "replicas": 0,
                "readyReplicas": 0,
                "updatedReplicas": 0,
                "availableReplicas": 0,
            }
        if kind == "DaemonSet":
            return {
                "observedGeneration": 1,
                "desiredNumberScheduled": 1,
                "updatedNumberScheduled": 0,
                "numberAvailable": 0,
                "numberReady": 0,
            }
        if kind == "Pod":
            return {"phase": "Pending"}
        if kind == "PersistentVolumeClaim":
            return {"phase": "Pending"}
        if kind == "Namespace":
            return {"phase": "Active"}
        if kind in ("Service", "Ingress"):
            return {"loadBalancer": {}}
        return {}

    def _settled_status(self, obj: dict) -> dict:
        kind = obj.get("kind")
        spec = obj.get("spec") or {}
        generation = obj["metadata"].get("generation", 1)
        if kind in _WORKLOAD_KINDS:
            replicas = spec.get("replicas", 1)
            return {
                "observedGeneration": generation,
                "replicas": replicas,
                "readyReplicas": replicas,
                "updatedReplicas": replicas,
                "availableReplicas": replicas,
            }
        if kind == "DaemonSet":
            return {
                "observedGeneration": generation,
                "desiredNumberScheduled": 1,
                "updatedNumberScheduled": 1,
                "numberAvailable": 1,
                "numberReady": 1,
            }
        if kind == "Pod":
            containers = spec.get("containers") or []
            return {
                "phase": "Running",
                "containerStatuses": [
                    {"name": c.get("name", ""), "ready": True, "state": {"running": {}}}
                    for c in containers
                ],
            }
        if kind == "PersistentVolumeClaim":
            return {"phase": "Bound"}
        if kind in ("Service", "Ingress"):
            return {"loadBalancer": {"ingress": [{"ip": "10.0.0.1"}]}}
        if kind == "Job":
            return {"succeeded": 1, "conditions": [{"type": "Complete", "status": "True"}]}
        return copy.deepcopy(obj.get("status") or {})


class _WriteTracker:
    """Counts in-flight writes per owning application."""

    def __init__(self, platform: InMemoryPlatform, owner: str):
        self.platform = platform
        self.owner = owner

    async def __aenter__(self) -> None:
        counts = self.platform._writes_in_flight
        counts[self.owner] += 1
        peak = self.platform.max_concurrent_writes
        peak[self.owner] = max(peak[self.owner], counts[self.owner])

    async def __aexit__(self, *args) -> None:
        self.platform._writes_in_flight[self.owner] -= 1
