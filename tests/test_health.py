"""Tests for the Health Evaluator."""

from datetime import datetime, timezone

from gitops_kernel.health.evaluator import (
    HealthEvaluator,
    aggregate,
    deployment_health,
    job_health,
    load_balancer_health,
    pod_health,
    pvc_health,
)
from gitops_kernel.models.health import HealthStatus
from gitops_kernel.models.resource import DesiredResourceSet, LiveResourceSet, ResourceKey


def _deployment(replicas: int = 2, generation: int = 1, status: dict = None) -> dict:
    manifest = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "shop", "generation": generation},
        "spec": {"replicas": replicas},
    }
    if status is not None:
        manifest["status"] = status
    return manifest


def _configmap(name: str = "settings") -> dict:
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name, "namespace": "shop"}}


def _sets(desired: list, live: list):
    now = datetime.now(timezone.utc)
    return (
        DesiredResourceSet(application="guestbook", revision="main", content_hash="c0ffee",
                           resources=desired, rendered_at=now),
        LiveResourceSet(application="guestbook", resources=live, observed_at=now),
    )


class TestDeploymentHealth:
    def test_no_status(self):
        assert deployment_health(_deployment())[0] == HealthStatus.UNKNOWN

    def test_zero_of_two_is_progressing(self):
        status, message = deployment_health(_deployment(status={
            "observedGeneration": 1, "replicas": 0, "updatedReplicas": 0, "readyReplicas": 0,
        }))
        assert status == HealthStatus.PROGRESSING
        assert "0 of 2" in message

    def test_partially_ready_is_progressing(self):
        status, _ = deployment_health(_deployment(status={
            "observedGeneration": 1, "replicas": 2, "updatedReplicas": 2, "readyReplicas": 1,
            "availableReplicas": 1,
        }))
        assert status == HealthStatus.PROGRESSING

    def test_all_ready_is_healthy(self):
        status, _ = deployment_health(_deployment(status={
            "observedGeneration": 1, "replicas": 2, "updatedReplicas": 2, "readyReplicas": 2,
            "availableReplicas": 2,
        }))
        assert status == HealthStatus.HEALTHY

    def test_unobserved_generation_is_progressing(self):
        status, _ = deployment_health(_deployment(generation=3, status={
            "observedGeneration": 2, "replicas": 2, "updatedReplicas": 2, "readyReplicas": 2,
            "availableReplicas": 2,
        }))
        assert status == HealthStatus.PROGRESSING

    def test_old_replicas_pending(self):
        status, message = deployment_health(_deployment(status={
            "observedGeneration": 1, "replicas": 3, "updatedReplicas": 2, "readyReplicas": 3,
            "availableReplicas": 3,
        }))
        assert status == HealthStatus.PROGRESSING
        assert "old replicas" in message

    def test_progress_deadline_exceeded(self):
        status, _ = deployment_health(_deployment(status={
            "observedGeneration": 1,
            "replicas": 2,
            "conditions": [{"type": "Progressing", "status": "False",
                            "reason": "ProgressDeadlineExceeded"}],
        }))
        assert status == HealthStatus.DEGRADED


class TestOtherKinds:
    def test_pod_crash_loop(self):
        pod = {"kind": "Pod", "status": {"phase": "Running", "containerStatuses": [
            {"name": "web", "ready": False, "state": {"waiting": {"reason": "CrashLoopBackOff"}}},
        ]}}
        status, message = pod_health(pod)
        assert status == HealthStatus.DEGRADED
        assert "CrashLoopBackOff" in message

    def test_pod_running_ready(self):
        pod = {"kind": "Pod", "status": {"phase": "Running", "containerStatuses": [
            {"name": "web", "ready": True, "state": {"running": {}}},
        ]}}
        assert pod_health(pod)[0] == HealthStatus.HEALTHY

    def test_pod_pending(self):
        assert pod_health({"kind": "Pod", "status": {"phase": "Pending"}})[0] == HealthStatus.PROGRESSING

    def test_pvc(self):
        assert pvc_health({"status": {"phase": "Bound"}})[0] == HealthStatus.HEALTHY
        assert pvc_health({"status": {"phase": "Pending"}})[0] == HealthStatus.PROGRESSING
        assert pvc_health({"status": {"phase": "Lost"}})[0] == HealthStatus.DEGRADED

    def test_job(self):
        failed = {"status": {"conditions": [{"type": "Failed", "status": "True"}]}}
        complete = {"status": {"conditions": [{"type": "Complete", "status": "True"}]}}
        assert job_health(failed)[0] == HealthStatus.DEGRADED
        assert job_health(complete)[0] == HealthStatus.HEALTHY
        assert job_health({"status": {"active": 1}})[0] == HealthStatus.PROGRESSING

    def test_load_balancer(self):
        cluster_ip = {"kind": "Service", "spec": {"type": "ClusterIP"}}
        pending = {"kind": "Service", "spec": {"type": "LoadBalancer"}, "status": {"loadBalancer": {}}}
        ready = {"kind": "Service", "spec": {"type": "LoadBalancer"},
                 "status": {"loadBalancer": {"ingress": [{"ip": "10.0.0.1"}]}}}
        assert load_balancer_health(cluster_ip)[0] == HealthStatus.HEALTHY
        assert load_balancer_health(pending)[0] == HealthStatus.PROGRESSING
        assert load_balancer_health(ready)[0] == HealthStatus.HEALTHY


class TestAggregate:
    def test_precedence(self):
        assert aggregate([HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.PROGRESSING]) \
            == HealthStatus.DEGRADED
        assert aggregate([HealthStatus.MISSING, HealthStatus.PROGRESSING]) == HealthStatus.PROGRESSING
        assert aggregate([HealthStatus.UNKNOWN, HealthStatus.MISSING]) == HealthStatus.MISSING
        assert aggregate([HealthStatus.HEALTHY, HealthStatus.UNKNOWN]) == HealthStatus.UNKNOWN
        assert aggregate([HealthStatus.HEALTHY]) == HealthStatus.HEALTHY

    def test_empty_is_healthy(self):
        assert aggregate([]) == HealthStatus.HEALTHY


class TestEvaluator:
    def setup_method(self):
        self.evaluator = HealthEvaluator()

    def test_missing_resource(self):
        desired, live = _sets([_configmap()], [])
        health = self.evaluator.evaluate(desired, live)
        assert health.status == HealthStatus.MISSING
        assert health.resources[0].status == HealthStatus.MISSING

    def test_kinds_without_rules_are_healthy(self):
        desired, live = _sets([_configmap()], [_configmap()])
        assert self.evaluator.evaluate(desired, live).status == HealthStatus.HEALTHY

    def test_degraded_forces_application_degraded(self):
        """One Degraded resource makes the application Degraded regardless of the rest."""
        healthy = _deployment(status={
            "observedGeneration": 1, "replicas": 2, "updatedReplicas": 2, "readyReplicas": 2,
            "availableReplicas": 2,
        })
        desired, live = _sets(
            [_deployment(), _configmap("a"), _configmap("b")],
            [healthy, _configmap("a")],
        )
        failed = {ResourceKey(kind="ConfigMap", namespace="shop", name="a")}
        health = self.evaluator.evaluate(desired, live, failed_keys=failed)

        assert health.status == HealthStatus.DEGRADED
        by_name = {r.key.name: r.status for r in health.resources if r.key.kind == "ConfigMap"}
        assert by_name == {"a": HealthStatus.DEGRADED, "b": HealthStatus.MISSING}

    def test_custom_rule(self):
        self.evaluator.register_rule(
            "ConfigMap", lambda obj: (HealthStatus.PROGRESSING, "waiting for consumers")
        )
        desired, live = _sets([_configmap()], [_configmap()])
        health = self.evaluator.evaluate(desired, live)
        assert health.status == HealthStatus.PROGRESSING
        assert health.resources[0].message == "waiting for consumers"

    def test_broken_rule_is_unknown(self):
        def broken(obj):
            raise ValueError("unexpected status shape")

        self.evaluator.register_rule("ConfigMap", broken)
        desired, live = _sets([_configmap()], [_configmap()])
        assert self.evaluator.evaluate(desired, live).status == HealthStatus.UNKNOWN
