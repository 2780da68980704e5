"""
End-to-end scenarios: source → render → observe → diff → sync → health.

  1. A workload declaring 2 replicas against an empty cluster:
     Create, then Progressing while replicas come up, then Synced/Healthy.
  2. An operator deletes a managed resource out of band; with self-heal the
     next pass recreates it without any new commit.
"""

import asyncio

from gitops_kernel.cluster.platform import InMemoryPlatform
from gitops_kernel.history.store import SyncHistoryStore
from gitops_kernel.models.application import Application, DestinationSpec, SourceSpec, SyncPolicy
from gitops_kernel.models.diff import OperationAction
from gitops_kernel.models.health import HealthStatus
from gitops_kernel.models.reconciler import ReconcilerConfig
from gitops_kernel.models.resource import ResourceKey
from gitops_kernel.models.sync import ApplicationPhase, SyncStatus
from gitops_kernel.reconciler.loop import ReconcilerLoop
from gitops_kernel.source.backends import InMemorySource

REPO = "https://git.example.com/platform/guestbook.git"

DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 2
  selector:
    matchLabels: {app: web}
  template:
    metadata:
      labels: {app: web}
    spec:
      containers:
        - name: web
          image: nginx:1.25
"""

DEPLOYMENT_KEY = ResourceKey(group="apps", kind="Deployment", namespace="shop", name="web")


class ScenarioRuntime:
    """Set up the complete kernel runtime against simulated boundaries."""

    def setup_method(self):
        self.source = InMemorySource()
        self.platform = InMemoryPlatform()
        self.history = SyncHistoryStore(db_path=":memory:")
        self.loop = ReconcilerLoop(
            source=self.source,
            platform=self.platform,
            history_store=self.history,
            config=ReconcilerConfig(apply_retry_delay_seconds=0),
        )
        self.commit = self.source.commit(REPO, {"deploy/web.yaml": DEPLOYMENT}, revision="main")

    def register(self, **policy) -> Application:
        app = Application(
            name="guestbook",
            source=SourceSpec(repo_url=REPO, revision="main", path="deploy"),
            destination=DestinationSpec(namespace="shop"),
            sync_policy=SyncPolicy(**policy),
        )
        self.loop.register_application(app)
        return app

    def reconcile(self):
        return asyncio.run(self.loop.reconcile_application("guestbook"))

    def health(self) -> HealthStatus:
        return self.loop.get_health("guestbook").status


class TestReplicaRollout(ScenarioRuntime):
    def test_zero_to_two_replicas(self):
        self.register()
        assert self.platform.snapshot(DEPLOYMENT_KEY) is None

        # Step 1: nothing live, the pass creates the workload
        result = self.reconcile()
        assert result.status == SyncStatus.SYNCED
        assert [(op.key, op.action) for op in result.operations] == [(DEPLOYMENT_KEY, OperationAction.CREATE)]
        assert self.loop.get_status("guestbook").phase == ApplicationPhase.SYNCED
        assert self.health() == HealthStatus.PROGRESSING

        # Step 2: one replica up
        self.platform.set_status(DEPLOYMENT_KEY, {
            "observedGeneration": 1,
            "replicas": 1,
            "updatedReplicas": 1,
            "readyReplicas": 1,
            "availableReplicas": 1,
        })
        assert self.reconcile() is None
        assert self.health() == HealthStatus.PROGRESSING

        # Step 3: both replicas ready
        self.platform.rollout(DEPLOYMENT_KEY)
        assert self.reconcile() is None
        status = self.loop.get_status("guestbook")
        assert status.phase == ApplicationPhase.SYNCED
        assert status.sync_status == SyncStatus.SYNCED
        assert self.health() == HealthStatus.HEALTHY

        # Only the sync that changed something was recorded
        history = self.history.query_by_application("guestbook")
        assert [r.status for r in history] == [SyncStatus.SYNCED]
        assert history[0].content_hash == self.commit
        assert self.history.verify_chain_integrity()


class TestSelfHeal(ScenarioRuntime):
    def test_manual_delete_is_recreated(self):
        self.register(self_heal=True)
        self.reconcile()
        self.platform.rollout()
        self.reconcile()
        assert self.health() == HealthStatus.HEALTHY

        # Operator deletes the workload by hand
        self.platform.remove(DEPLOYMENT_KEY)

        resolves = self.source.resolve_calls
        result = self.reconcile()

        assert self.source.resolve_calls == resolves + 1
        assert result.content_hash == self.commit
        assert [(op.key, op.action) for op in result.operations] == [(DEPLOYMENT_KEY, OperationAction.CREATE)]
        assert self.platform.snapshot(DEPLOYMENT_KEY) is not None
        assert self.loop.get_status("guestbook").phase == ApplicationPhase.SYNCED
        assert self.health() == HealthStatus.PROGRESSING

    def test_manual_edit_is_reverted(self):
        self.register(self_heal=True)
        self.reconcile()
        self.platform.edit(DEPLOYMENT_KEY, lambda o: o["spec"].update(replicas=5))

        result = self.reconcile()

        assert [op.action for op in result.operations] == [OperationAction.UPDATE]
        assert self.platform.snapshot(DEPLOYMENT_KEY)["spec"]["replicas"] == 2

    def test_without_self_heal_drift_stays(self):
        self.register(self_heal=False)
        self.reconcile()
        self.platform.remove(DEPLOYMENT_KEY)

        result = self.reconcile()

        assert result.status == SyncStatus.OUT_OF_SYNC
        assert result.operations == []
        assert self.platform.snapshot(DEPLOYMENT_KEY) is None
        assert self.health() == HealthStatus.MISSING
