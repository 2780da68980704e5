"""Tests for data models, settings and the error taxonomy."""

import pytest
from pydantic import ValidationError

from gitops_kernel.config import Settings, get_settings, reset_settings
from gitops_kernel.errors import (
    ConflictError,
    PlatformUnavailable,
    RenderValidationError,
    ResourceApplyError,
    SourceUnavailable,
)
from gitops_kernel.models import (
    Application,
    ApplicationPhase,
    ApplicationStatus,
    ReconcilerConfig,
    ResourceKey,
    SourceSpec,
    SyncWindow,
    SyncWindowKind,
)
from gitops_kernel.models.resource import (
    SYNC_OPTIONS_ANNOTATION,
    SYNC_WAVE_ANNOTATION,
    has_sync_option,
    split_api_version,
    sync_wave_of,
)


def _manifest(annotations=None) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "settings", "namespace": "web", "annotations": annotations or {}},
        "data": {"mode": "prod"},
    }


class TestApplication:
    def test_defaults(self):
        app = Application(name="guestbook", source=SourceSpec(repo_url="https://git.example.com/gb.git"))
        assert app.source.revision == "HEAD"
        assert app.source.path == "."
        assert app.destination.namespace == "default"
        assert app.sync_policy.automated is True
        assert app.sync_policy.prune is False
        assert app.sync_policy.self_heal is False
        assert app.ignore_differences == []

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            Application(name="", source=SourceSpec(repo_url="https://git.example.com/gb.git"))

    def test_sync_window_needs_positive_duration(self):
        with pytest.raises(ValidationError):
            SyncWindow(kind=SyncWindowKind.DENY, schedule="0 22 * * *", duration_minutes=0)

    def test_json_roundtrip(self):
        app = Application.model_validate({
            "name": "guestbook",
            "source": {"repo_url": "https://git.example.com/gb.git", "revision": "main", "path": "deploy"},
            "sync_policy": {"prune": True, "sync_windows": [
                {"kind": "deny", "schedule": "0 22 * * *", "duration_minutes": 60},
            ]},
        })
        assert app.sync_policy.sync_windows[0].kind == SyncWindowKind.DENY
        assert Application.model_validate(app.model_dump(mode="json")) == app


class TestResourceKey:
    def test_core_group_is_empty(self):
        key = ResourceKey.from_manifest(_manifest())
        assert key.group == ""
        assert key.kind == "ConfigMap"
        assert key.namespace == "web"
        assert str(key) == "/ConfigMap/web/settings"

    def test_named_group(self):
        key = ResourceKey.from_manifest({
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "default"},
        })
        assert key.group == "apps"

    def test_cluster_scoped_has_no_namespace(self):
        key = ResourceKey.from_manifest({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "web"}})
        assert key.namespace == ""

    def test_keys_are_hashable_and_frozen(self):
        a = ResourceKey(kind="ConfigMap", namespace="web", name="settings")
        b = ResourceKey.from_manifest(_manifest())
        assert a == b
        assert len({a, b}) == 1
        with pytest.raises(ValidationError):
            a.name = "other"

    def test_split_api_version(self):
        assert split_api_version("v1") == ("", "v1")
        assert split_api_version("networking.k8s.io/v1") == ("networking.k8s.io", "v1")


class TestAnnotations:
    def test_sync_wave(self):
        assert sync_wave_of(_manifest()) == 0
        assert sync_wave_of(_manifest({SYNC_WAVE_ANNOTATION: "-1"})) == -1
        assert sync_wave_of(_manifest({SYNC_WAVE_ANNOTATION: "late"})) == 0

    def test_sync_options(self):
        manifest = _manifest({SYNC_OPTIONS_ANNOTATION: "Replace=true, Prune=false"})
        assert has_sync_option(manifest, "Prune=false")
        assert not has_sync_option(_manifest(), "Prune=false")


class TestReconcilerModels:
    def test_config_defaults(self):
        config = ReconcilerConfig()
        assert config.poll_interval_seconds == 180.0
        assert config.max_retries == 5
        assert config.backoff_max_seconds >= config.backoff_base_seconds

    def test_config_rejects_zero_poll_interval(self):
        with pytest.raises(ValidationError):
            ReconcilerConfig(poll_interval_seconds=0)

    def test_new_status_is_unknown(self):
        status = ApplicationStatus(application="guestbook")
        assert status.phase == ApplicationPhase.UNKNOWN
        assert status.backoff.consecutive_failures == 0
        assert status.backoff.attention_required is False

    def test_backoff_state_not_shared(self):
        a = ApplicationStatus(application="a")
        b = ApplicationStatus(application="b")
        a.backoff.consecutive_failures = 3
        assert b.backoff.consecutive_failures == 0


class TestSettings:
    def teardown_method(self):
        reset_settings()

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("GITOPS_POLL_INTERVAL_SECONDS", "5")
        monkeypatch.setenv("GITOPS_MAX_RETRIES", "2")
        reset_settings()
        settings = get_settings()
        assert settings.poll_interval_seconds == 5.0
        config = settings.reconciler_config()
        assert config.poll_interval_seconds == 5.0
        assert config.max_retries == 2

    def test_singleton(self):
        reset_settings()
        assert get_settings() is get_settings()

    def test_defaults_use_in_memory_history(self):
        settings = Settings()
        assert settings.history_db_path == ":memory:"
        assert settings.kube_api_url is None


class TestErrors:
    def test_transient_flags(self):
        assert SourceUnavailable("down").transient
        assert PlatformUnavailable("down").transient
        assert ConflictError("stale").transient
        assert not RenderValidationError("bad").transient
        assert not ResourceApplyError("rejected").transient

    def test_render_error_names_resource(self):
        error = RenderValidationError("missing kind", resource="app.yaml#0")
        assert str(error) == "app.yaml#0: missing kind"
        assert error.resource == "app.yaml#0"
