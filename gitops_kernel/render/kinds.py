"""
Kind Registry: the resource kinds the target platform accepts.

Each kind records its API group, accepted versions, REST plural, whether it
is namespaced, and the fields a manifest must carry. The registry drives
renderer validation, sync ordering, and URL construction for the
Kubernetes client.
"""

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from gitops_kernel.models.resource import ResourceKey, split_api_version


class KindSpec(BaseModel):
    kind: str
    group: str = ""
    versions: List[str] = ["v1"]
    plural: str
    namespaced: bool = True
    required_fields: List[str] = []         # Dotted paths, e.g. "spec.template"


# Apply order by kind. Prunes run in reverse.
KIND_ORDER = [
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]

_KIND_RANK = {kind: i for i, kind in enumerate(KIND_ORDER)}


def kind_rank(kind: str) -> int:
    """Position of a kind in apply order; unknown kinds sort last."""
    return _KIND_RANK.get(kind, len(KIND_ORDER))


_WORKLOAD_FIELDS = ["spec.selector", "spec.template"]

DEFAULT_KINDS = [
    KindSpec(kind="Namespace", plural="namespaces", namespaced=False),
    KindSpec(kind="ConfigMap", plural="configmaps"),
    KindSpec(kind="Secret", plural="secrets"),
    KindSpec(kind="ServiceAccount", plural="serviceaccounts"),
    KindSpec(kind="Service", plural="services", required_fields=["spec.ports"]),
    KindSpec(kind="Pod", plural="pods", required_fields=["spec.containers"]),
    KindSpec(kind="PersistentVolumeClaim", plural="persistentvolumeclaims"),
    KindSpec(kind="PersistentVolume", plural="persistentvolumes", namespaced=False),
    KindSpec(kind="ResourceQuota", plural="resourcequotas"),
    KindSpec(kind="LimitRange", plural="limitranges"),
    KindSpec(kind="ReplicationController", plural="replicationcontrollers"),
    KindSpec(kind="Deployment", group="apps", plural="deployments",
             required_fields=_WORKLOAD_FIELDS),
    KindSpec(kind="StatefulSet", group="apps", plural="statefulsets",
             required_fields=_WORKLOAD_FIELDS),
    KindSpec(kind="DaemonSet", group="apps", plural="daemonsets",
             required_fields=_WORKLOAD_FIELDS),
    KindSpec(kind="ReplicaSet", group="apps", plural="replicasets",
             required_fields=_WORKLOAD_FIELDS),
    KindSpec(kind="Job", group="batch", plural="jobs",
             required_fields=["spec.template"]),
    KindSpec(kind="CronJob", group="batch", plural="cronjobs",
             required_fields=["spec.schedule", "spec.jobTemplate"]),
    KindSpec(kind="Ingress", group="networking.k8s.io", plural="ingresses"),
    KindSpec(kind="IngressClass", group="networking.k8s.io", plural="ingressclasses",
             namespaced=False),
    KindSpec(kind="NetworkPolicy", group="networking.k8s.io", plural="networkpolicies"),
    KindSpec(kind="PodDisruptionBudget", group="policy", plural="poddisruptionbudgets"),
    KindSpec(kind="HorizontalPodAutoscaler", group="autoscaling", versions=["v2", "v1"],
             plural="horizontalpodautoscalers"),
    KindSpec(kind="StorageClass", group="storage.k8s.io", plural="storageclasses",
             namespaced=False),
    KindSpec(kind="Role", group="rbac.authorization.k8s.io", plural="roles"),
    KindSpec(kind="RoleBinding", group="rbac.authorization.k8s.io", plural="rolebindings",
             required_fields=["roleRef"]),
    KindSpec(kind="ClusterRole", group="rbac.authorization.k8s.io", plural="clusterroles",
             namespaced=False),
    KindSpec(kind="ClusterRoleBinding", group="rbac.authorization.k8s.io",
             plural="clusterrolebindings", namespaced=False, required_fields=["roleRef"]),
    KindSpec(kind="CustomResourceDefinition", group="apiextensions.k8s.io",
             plural="customresourcedefinitions", namespaced=False,
             required_fields=["spec.group", "spec.names"]),
    KindSpec(kind="APIService", group="apiregistration.k8s.io", plural="apiservices",
             namespaced=False),
]


class KindRegistry:
    """Known resource kinds, indexed by (group, kind)."""

    def __init__(self, kinds: Optional[List[KindSpec]] = None):
        self._kinds: Dict[Tuple[str, str], KindSpec] = {}
        for spec in (DEFAULT_KINDS if kinds is None else kinds):
            self.register(spec)

    def register(self, spec: KindSpec) -> None:
        """Register (or replace) a kind, e.g. a custom resource."""
        self._kinds[(spec.group, spec.kind)] = spec

    def get(self, group: str, kind: str) -> Optional[KindSpec]:
        return self._kinds.get((group, kind))

    def for_api_version(self, api_version: str, kind: str) -> Optional[KindSpec]:
        group, version = split_api_version(api_version)
        spec = self._kinds.get((group, kind))
        if spec is None or version not in spec.versions:
            return None
        return spec

    def for_key(self, key: ResourceKey) -> Optional[KindSpec]:
        return self._kinds.get((key.group, key.kind))

    def kinds(self) -> List[KindSpec]:
        return list(self._kinds.values())
