"""
Health Evaluator: classifies each resource's runtime condition.

Kind-specific rules read the live status subresource and return one of
Healthy / Progressing / Degraded / Missing / Unknown. Kinds with no rule
(ConfigMap, Secret, RBAC objects...) carry no runtime state and count as
Healthy. A rule that cannot make sense of the status returns Unknown.

Application health is the worst resource health by fixed precedence:
Degraded > Progressing > Missing > Unknown > Healthy.
"""

from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from gitops_kernel.models.health import (
    HEALTH_PRECEDENCE,
    ApplicationHealth,
    HealthStatus,
    ResourceHealth,
)
from gitops_kernel.models.resource import DesiredResourceSet, LiveResourceSet, ResourceKey

HealthRule = Callable[[dict], Tuple[HealthStatus, Optional[str]]]

_BAD_WAITING_REASONS = {
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "CreateContainerConfigError",
    "InvalidImageName",
}


def _condition(status: dict, condition_type: str) -> Optional[dict]:
    for c in status.get("conditions") or []:
        if c.get("type") == condition_type:
            return c
    return None


def _generation_pending(obj: dict, status: dict) -> bool:
    generation = (obj.get("metadata") or {}).get("generation")
    observed = status.get("observedGeneration")
    return generation is not None and observed is not None and observed < generation


def deployment_health(obj: dict) -> Tuple[HealthStatus, Optional[str]]:
    """Also used for StatefulSet, ReplicaSet and ReplicationController."""
    status = obj.get("status")
    if not isinstance(status, dict):
        return HealthStatus.UNKNOWN, "no status reported"

    progressing = _condition(status, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED, progressing.get("message") or "progress deadline exceeded"
    replica_failure = _condition(status, "ReplicaFailure")
    if replica_failure and replica_failure.get("status") == "True":
        return HealthStatus.DEGRADED, replica_failure.get("message") or "replica failure"

    if _generation_pending(obj, status):
        return HealthStatus.PROGRESSING, "waiting for rollout to be observed"

    desired = (obj.get("spec") or {}).get("replicas", 1)
    updated = status.get("updatedReplicas", status.get("replicas", 0)) or 0
    ready = status.get("readyReplicas", 0) or 0
    available = status.get("availableReplicas", ready) or 0
    current = status.get("replicas", 0) or 0

    if updated < desired:
        return HealthStatus.PROGRESSING, f"{updated} of {desired} replicas updated"
    if current > updated:
        return HealthStatus.PROGRESSING, f"{current - updated} old replicas pending termination"
    if ready < desired or available < desired:
        return HealthStatus.PROGRESSING, f"{ready} of {desired} replicas ready"
    return HealthStatus.HEALTHY, None


def daemonset_health(obj: dict) -> Tuple[HealthStatus, Optional[str]]:
    status = obj.get("status")
    if not isinstance(status, dict):
        return HealthStatus.UNKNOWN, "no status reported"
    if _generation_pending(obj, status):
        return HealthStatus.PROGRESSING, "waiting for rollout to be observed"
    desired = status.get("desiredNumberScheduled", 0) or 0
    updated = status.get("updatedNumberScheduled", 0) or 0
    available = status.get("numberAvailable", 0) or 0
    if updated < desired:
        return HealthStatus.PROGRESSING, f"{updated} of {desired} pods updated"
    if available < desired:
        return HealthStatus.PROGRESSING, f"{available} of {desired} pods available"
    return HealthStatus.HEALTHY, None


def pod_health(obj: dict) -> Tuple[HealthStatus, Optional[str]]:
    status = obj.get("status")
    if not isinstance(status, dict) or "phase" not in status:
        return HealthStatus.UNKNOWN, "no phase reported"

    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in _BAD_WAITING_REASONS:
            return HealthStatus.DEGRADED, f"{container.get('name')}: {waiting['reason']}"

    phase = status["phase"]
    if phase == "Succeeded":
        return HealthStatus.HEALTHY, None
    if phase == "Failed":
        return HealthStatus.DEGRADED, status.get("message") or "pod failed"
    if phase == "Pending":
        return HealthStatus.PROGRESSING, "pod pending"
    if phase == "Running":
        containers = status.get("containerStatuses") or []
        if containers and all(c.get("ready") for c in containers):
            return HealthStatus.HEALTHY, None
        return HealthStatus.PROGRESSING, "containers not ready"
    return HealthStatus.UNKNOWN, f"unrecognized phase {phase}"


def load_balancer_health(obj: dict) -> Tuple[HealthStatus, Optional[str]]:
    """Services of type LoadBalancer and Ingresses need an assigned address."""
    if obj.get("kind") == "Service" and (obj.get("spec") or {}).get("type") != "LoadBalancer":
        return HealthStatus.HEALTHY, None
    ingress = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress")
    if ingress:
        return HealthStatus.HEALTHY, None
    return HealthStatus.PROGRESSING, "waiting for load balancer address"


def pvc_health(obj: dict) -> Tuple[HealthStatus, Optional[str]]:
    phase = (obj.get("status") or {}).get("phase")
    if phase == "Bound":
        return HealthStatus.HEALTHY, None
    if phase == "Pending":
        return HealthStatus.PROGRESSING, "claim pending"
    if phase == "Lost":
        return HealthStatus.DEGRADED, "claim lost its volume"
    return HealthStatus.UNKNOWN, "no phase reported"


def job_health(obj: dict) -> Tuple[HealthStatus, Optional[str]]:
    status = obj.get("status") or {}
    failed = _condition(status, "Failed")
    if failed and failed.get("status") == "True":
        return HealthStatus.DEGRADED, failed.get("message") or "job failed"
    complete = _condition(status, "Complete")
    if complete and complete.get("status") == "True":
        return HealthStatus.HEALTHY, None
    return HealthStatus.PROGRESSING, "job running"


def namespace_health(obj: dict) -> Tuple[HealthStatus, Optional[str]]:
    phase = (obj.get("status") or {}).get("phase", "Active")
    if phase == "Terminating":
        return HealthStatus.PROGRESSING, "namespace terminating"
    return HealthStatus.HEALTHY, None


def aggregate(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Worst status by fixed precedence. No resources means Healthy."""
    present = set(statuses)
    for status in HEALTH_PRECEDENCE:
        if status in present:
            return status
    return HealthStatus.HEALTHY


class HealthEvaluator:
    """Maps live resources to health using a registry of kind rules."""

    def __init__(self):
        self._rules: Dict[str, HealthRule] = {}
        self._register_default_rules()

    def _register_default_rules(self) -> None:
        for kind in ("Deployment", "StatefulSet", "ReplicaSet", "ReplicationController"):
            self._rules[kind] = deployment_health
        self._rules["DaemonSet"] = daemonset_health
        self._rules["Pod"] = pod_health
        self._rules["Service"] = load_balancer_health
        self._rules["Ingress"] = load_balancer_health
        self._rules["PersistentVolumeClaim"] = pvc_health
        self._rules["Job"] = job_health
        self._rules["Namespace"] = namespace_health

    def register_rule(self, kind: str, rule: HealthRule) -> None:
        """Register a custom health rule for a kind."""
        self._rules[kind] = rule

    def resource_health(self, key: ResourceKey, live: Optional[dict]) -> ResourceHealth:
        if live is None:
            return ResourceHealth(key=key, status=HealthStatus.MISSING, message="not found on platform")
        rule = self._rules.get(key.kind)
        if rule is None:
            return ResourceHealth(key=key, status=HealthStatus.HEALTHY)
        try:
            status, message = rule(live)
        except (TypeError, ValueError, AttributeError) as e:
            return ResourceHealth(key=key, status=HealthStatus.UNKNOWN, message=f"unreadable status: {e}")
        return ResourceHealth(key=key, status=status, message=message)

    def evaluate(
        self,
        desired: DesiredResourceSet,
        live: LiveResourceSet,
        failed_keys: Optional[Set[ResourceKey]] = None,
    ) -> ApplicationHealth:
        """
        Health of every desired resource. Resources whose last apply failed
        are Degraded regardless of what the platform reports.
        """
        live_by_key = live.by_key()
        failed_keys = failed_keys or set()

        resources: List[ResourceHealth] = []
        for key in desired.by_key():
            if key in failed_keys:
                resources.append(ResourceHealth(
                    key=key, status=HealthStatus.DEGRADED, message="last apply failed"
                ))
                continue
            resources.append(self.resource_health(key, live_by_key.get(key)))

        return ApplicationHealth(
            status=aggregate(r.status for r in resources),
            resources=resources,
        )
