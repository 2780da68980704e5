"""
Diff Engine: pure comparison of desired against live state.

Behavioral Contract:
- Every key present on either side is classified exactly once:
  unchanged | modified | missing | extra
- Comparison is structural, after dropping fields the platform injects
  (identifiers, versions, timestamps, the status subresource)
- Live fields the desired manifest does not mention are ignored unless the
  kernel applied them before (last-applied annotation); server defaults are
  never drift, removed fields are
- The plan is deterministic: same snapshots in, same plan out
- Extra resources become prune operations only when pruning is enabled
"""

import copy
import json
from typing import Any, List, Optional

from gitops_kernel.models.application import Application, IgnoreDifference
from gitops_kernel.models.diff import (
    DiffType,
    FieldChange,
    OperationAction,
    OperationPlan,
    PlannedOperation,
    ResourceDiff,
)
from gitops_kernel.models.resource import (
    LAST_APPLIED_ANNOTATION,
    DesiredResourceSet,
    LiveResourceSet,
    ResourceKey,
    has_sync_option,
    sync_wave_of,
)
from gitops_kernel.render.kinds import kind_rank

INJECTED_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "selfLink",
    "ownerReferences",
)

IGNORED_ANNOTATIONS = (
    LAST_APPLIED_ANNOTATION,
    "kubectl.kubernetes.io/last-applied-configuration",
    "deployment.kubernetes.io/revision",
)


def normalize(manifest: dict) -> dict:
    """Copy of a manifest without platform-injected fields."""
    result = copy.deepcopy(manifest)
    result.pop("status", None)
    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        for field in INJECTED_METADATA_FIELDS:
            metadata.pop(field, None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            for name in IGNORED_ANNOTATIONS:
                annotations.pop(name, None)
            if not annotations:
                metadata.pop("annotations", None)
    return result


def last_applied(manifest: dict) -> Optional[dict]:
    raw = ((manifest.get("metadata") or {}).get("annotations") or {}).get(LAST_APPLIED_ANNOTATION)
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _project(live: Any, desired: Any, applied: Any) -> Any:
    """Restrict `live` to the fields desired declares or the kernel applied before."""
    if isinstance(live, dict) and isinstance(desired, dict):
        result = {}
        for k, v in live.items():
            if k in desired:
                result[k] = _project(v, desired[k], applied.get(k) if isinstance(applied, dict) else None)
            elif isinstance(applied, dict) and k in applied:
                result[k] = v
        return result
    if isinstance(live, list) and isinstance(desired, list) and len(live) == len(desired):
        if not (isinstance(applied, list) and len(applied) == len(live)):
            applied = [None] * len(live)
        return [_project(lv, dv, av) for lv, dv, av in zip(live, desired, applied)]
    return live


def _escape(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _changes(desired: Any, live: Any, path: str = "") -> List[FieldChange]:
    if isinstance(desired, dict) and isinstance(live, dict):
        changes = []
        for k in sorted(set(desired) | set(live)):
            changes.extend(
                _changes(desired.get(k), live.get(k), f"{path}/{_escape(str(k))}")
            )
        return changes
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        changes = []
        for i, (d, l) in enumerate(zip(desired, live)):
            changes.extend(_changes(d, l, f"{path}/{i}"))
        return changes
    if desired != live:
        return [FieldChange(path=path or "/", desired=desired, live=live)]
    return []


def remove_pointer(document: dict, pointer: str) -> None:
    """Delete the value at a JSON pointer, if present."""
    tokens = [t.replace("~1", "/").replace("~0", "~") for t in pointer.lstrip("/").split("/")]
    node: Any = document
    for token in tokens[:-1]:
        if isinstance(node, dict):
            node = node.get(token)
        elif isinstance(node, list) and token.isdigit() and int(token) < len(node):
            node = node[int(token)]
        else:
            return
    last = tokens[-1]
    if isinstance(node, dict):
        node.pop(last, None)
    elif isinstance(node, list) and last.isdigit() and int(last) < len(node):
        node.pop(int(last))


def _ignore_rule_matches(rule: IgnoreDifference, key: ResourceKey) -> bool:
    if rule.group != key.group or rule.kind != key.kind:
        return False
    if rule.name is not None and rule.name != key.name:
        return False
    if rule.namespace is not None and rule.namespace != key.namespace:
        return False
    return True


def _order(key: ResourceKey, manifest: Optional[dict]) -> tuple:
    wave = sync_wave_of(manifest) if manifest else 0
    return (wave, kind_rank(key.kind), key.namespace, key.name, key.group)


class DiffEngine:
    """Computes per-resource diffs and the operation plan."""

    def compare_resource(
        self,
        key: ResourceKey,
        desired: dict,
        live: dict,
        ignore: Optional[List[IgnoreDifference]] = None,
    ) -> List[FieldChange]:
        """Field-level delta between one desired and one live manifest."""
        want = normalize(desired)
        have = _project(normalize(live), want, last_applied(live))
        for rule in ignore or []:
            if _ignore_rule_matches(rule, key):
                for pointer in rule.json_pointers:
                    remove_pointer(want, pointer)
                    remove_pointer(have, pointer)
        return _changes(want, have)

    def compare(
        self,
        desired: DesiredResourceSet,
        live: LiveResourceSet,
        app: Application,
        prune: Optional[bool] = None,
    ) -> List[ResourceDiff]:
        prune_enabled = app.sync_policy.prune if prune is None else prune
        desired_by_key = desired.by_key()
        live_by_key = live.by_key()

        diffs = []
        for key in set(desired_by_key) | set(live_by_key):
            want = desired_by_key.get(key)
            have = live_by_key.get(key)
            if want is not None and have is None:
                diffs.append(ResourceDiff(key=key, diff_type=DiffType.MISSING))
            elif want is None:
                if (have.get("metadata") or {}).get("ownerReferences"):
                    # Children of managed resources (pods of a deployment) are not ours to prune
                    continue
                diffs.append(ResourceDiff(
                    key=key,
                    diff_type=DiffType.EXTRA,
                    requires_pruning=prune_enabled and not has_sync_option(have, "Prune=false"),
                ))
            else:
                changes = self.compare_resource(key, want, have, app.ignore_differences)
                diffs.append(ResourceDiff(
                    key=key,
                    diff_type=DiffType.MODIFIED if changes else DiffType.UNCHANGED,
                    changes=changes,
                ))

        diffs.sort(key=lambda d: _order(d.key, desired_by_key.get(d.key) or live_by_key.get(d.key)))
        return diffs

    def plan(
        self,
        desired: DesiredResourceSet,
        live: LiveResourceSet,
        app: Application,
        prune: Optional[bool] = None,
    ) -> OperationPlan:
        """Ordered operations: creates and updates by wave and kind, then prunes in reverse."""
        desired_by_key = desired.by_key()
        live_by_key = live.by_key()
        diffs = self.compare(desired, live, app, prune=prune)

        applies = []
        prunes = []
        for diff in diffs:
            if diff.diff_type == DiffType.MISSING:
                applies.append(PlannedOperation(
                    key=diff.key,
                    action=OperationAction.CREATE,
                    manifest=desired_by_key[diff.key],
                ))
            elif diff.diff_type == DiffType.MODIFIED:
                applies.append(PlannedOperation(
                    key=diff.key,
                    action=OperationAction.UPDATE,
                    manifest=desired_by_key[diff.key],
                    live=live_by_key[diff.key],
                    changes=diff.changes,
                ))
            elif diff.diff_type == DiffType.EXTRA and diff.requires_pruning:
                prunes.append(PlannedOperation(
                    key=diff.key,
                    action=OperationAction.PRUNE,
                    live=live_by_key[diff.key],
                ))

        prunes.reverse()
        return OperationPlan(
            application=app.name,
            revision=desired.content_hash,
            operations=applies + prunes,
            diffs=diffs,
        )
