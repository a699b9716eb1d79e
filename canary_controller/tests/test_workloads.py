from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from canary_controller.src.errors import TargetNotFound, TransientAPIError, UnsupportedKind
from canary_controller.src.references import CONFIG_MAP, SECRET, scan_pod_spec
from canary_controller.src.workloads import (
    DaemonSetAdapter,
    DeploymentAdapter,
    StatefulSetAdapter,
    adapter_for,
)
from canary_controller.tests.fakes import (
    IMAGE_V2,
    NAMESPACE,
    WORKLOADS,
    FakeAppsApi,
    make_canary,
    podinfo_deployment,
)

RENAMES = {
    CONFIG_MAP: {"podinfo-config-env": "podinfo-config-env-primary"},
    SECRET: {"podinfo-secret-vol": "podinfo-secret-vol-primary"},
}


def _adapter(kind: str = "Deployment", apps: FakeAppsApi | None = None):
    apps = apps or FakeAppsApi()
    if apps.get(kind, "podinfo") is None:
        apps.put(WORKLOADS[kind]())
    return adapter_for(make_canary(kind), apps), apps


@pytest.mark.parametrize(
    ("kind", "adapter_cls"),
    [
        ("Deployment", DeploymentAdapter),
        ("DaemonSet", DaemonSetAdapter),
        ("StatefulSet", StatefulSetAdapter),
    ],
)
def test_adapter_for_selects_by_kind(kind: str, adapter_cls: type) -> None:
    adapter, _ = _adapter(kind)

    assert isinstance(adapter, adapter_cls)
    assert adapter.primary_name == "podinfo-primary"


def test_adapter_for_rejects_unknown_kind() -> None:
    with pytest.raises(UnsupportedKind) as exc_info:
        adapter_for(make_canary("CronJob"), FakeAppsApi())

    assert "CronJob" in str(exc_info.value)
    assert "Deployment" in str(exc_info.value)


def test_missing_target_raises_target_not_found() -> None:
    adapter = adapter_for(make_canary("Deployment"), FakeAppsApi())

    with pytest.raises(TargetNotFound):
        adapter.get()


def test_server_errors_are_transient() -> None:
    adapter, apps = _adapter("Deployment")
    apps.fail_next("read", ApiException(status=500, reason="boom"))

    with pytest.raises(TransientAPIError):
        adapter.get()


@pytest.mark.parametrize("kind", ["Deployment", "DaemonSet", "StatefulSet"])
def test_sync_primary_creates_relabelled_copy(kind: str) -> None:
    adapter, apps = _adapter(kind)

    assert adapter.sync_primary(RENAMES) is True

    primary = apps.get(kind, "podinfo-primary")
    assert primary.metadata.labels == {"name": "podinfo-primary"}
    assert primary.spec.selector.match_labels == {"name": "podinfo-primary"}
    # Only tracked label keys are suffixed.
    assert primary.spec.template.metadata.labels == {"name": "podinfo-primary", "version": "v1"}
    assert primary.metadata.owner_references[0].name == "podinfo"
    names = {ref.name for ref in scan_pod_spec(primary.spec.template.spec, NAMESPACE)}
    assert "podinfo-config-env-primary" in names
    assert "podinfo-secret-vol-primary" in names
    assert "podinfo-config-vol" in names


def test_sync_primary_leaves_target_untouched() -> None:
    adapter, apps = _adapter("Deployment")

    adapter.sync_primary(RENAMES)

    target = apps.get("Deployment", "podinfo")
    assert target.spec.template.metadata.labels == {"name": "podinfo", "version": "v1"}
    assert apps.writes == [("create", "Deployment", "podinfo-primary")]


def test_primary_selector_never_equals_target_selector() -> None:
    apps = FakeAppsApi()
    target = podinfo_deployment()
    target.metadata.labels = {"name": "podinfo-primary"}
    target.spec.selector.match_labels = {"name": "podinfo-primary"}
    target.spec.template.metadata.labels = {"name": "podinfo-primary"}
    apps.put(target)
    adapter = adapter_for(make_canary("Deployment"), apps)

    adapter.sync_primary(RENAMES)

    primary = apps.get("Deployment", "podinfo-primary")
    assert primary.spec.selector.match_labels == {"name": "podinfo-primary-primary"}
    assert primary.spec.template.metadata.labels == {"name": "podinfo-primary-primary"}
    assert primary.spec.selector.match_labels != target.spec.selector.match_labels


def test_sync_primary_is_idempotent() -> None:
    adapter, apps = _adapter("DaemonSet")
    adapter.sync_primary(RENAMES)

    assert adapter.sync_primary(RENAMES) is False
    assert apps.writes == [("create", "DaemonSet", "podinfo-primary")]


def test_sync_primary_updates_template_and_keeps_primary_scale() -> None:
    apps = FakeAppsApi()
    adapter, _ = _adapter("Deployment", apps)
    adapter.sync_primary(RENAMES)
    primary = apps.get("Deployment", "podinfo-primary")
    primary.spec.replicas = 5

    apps.put(podinfo_deployment(image=IMAGE_V2))
    adapter = adapter_for(make_canary("Deployment"), apps)

    assert adapter.sync_primary(RENAMES) is True
    primary = apps.get("Deployment", "podinfo-primary")
    assert primary.spec.template.spec.containers[0].image == IMAGE_V2
    assert primary.spec.replicas == 5


def test_sync_primary_retries_on_conflict() -> None:
    apps = FakeAppsApi()
    adapter, _ = _adapter("StatefulSet", apps)
    adapter.sync_primary(RENAMES)
    apps.put(WORKLOADS["StatefulSet"](image=IMAGE_V2))
    apps.fail_next("replace", ApiException(status=409, reason="Conflict"))

    adapter = adapter_for(make_canary("StatefulSet"), apps)
    assert adapter.sync_primary(RENAMES) is True

    assert apps.get("StatefulSet", "podinfo-primary").spec.template.spec.containers[0].image == IMAGE_V2


def test_spec_hash_tracks_pod_template_only() -> None:
    apps = FakeAppsApi()
    adapter, _ = _adapter("Deployment", apps)
    before = adapter.spec_hash()

    apps.put(podinfo_deployment(replicas=7))
    assert adapter_for(make_canary("Deployment"), apps).spec_hash() == before

    apps.put(podinfo_deployment(image=IMAGE_V2))
    assert adapter_for(make_canary("Deployment"), apps).spec_hash() != before


def test_set_replicas_patches_only_when_different() -> None:
    adapter, apps = _adapter("Deployment")

    adapter.set_replicas(2)
    assert apps.writes == []

    adapter.set_replicas(0)
    assert apps.writes == [("patch", "Deployment", "podinfo")]
    assert apps.get("Deployment", "podinfo").spec.replicas == 0
    assert adapter.replicas() == 0


def test_daemon_set_scaling_is_a_no_op() -> None:
    adapter, apps = _adapter("DaemonSet")
    adapter.sync_primary(RENAMES)

    adapter.set_replicas(0)

    assert adapter.replicas() is None
    assert adapter.primary_replicas() is None
    assert [write for write in apps.writes if write[0] == "patch"] == []


@pytest.mark.parametrize("kind", ["Deployment", "DaemonSet", "StatefulSet"])
def test_readiness_follows_workload_status(kind: str) -> None:
    adapter, apps = _adapter(kind)
    assert adapter.is_primary_ready() is False

    adapter.sync_primary(RENAMES)
    assert adapter.is_primary_ready() is True
    assert adapter.is_canary_ready() is True

    apps.not_ready.add("podinfo")
    apps.not_ready.add("podinfo-primary")
    assert adapter.is_primary_ready() is False
    assert adapter.is_canary_ready() is False


def test_primary_replicas_reads_primary_object() -> None:
    adapter, apps = _adapter("StatefulSet")
    assert adapter.primary_replicas() is None

    adapter.sync_primary(RENAMES)

    assert adapter.primary_replicas() == 2


def test_calls_carry_request_timeout() -> None:
    apps = MagicMock()
    apps.read_namespaced_deployment.return_value = podinfo_deployment()
    adapter = adapter_for(make_canary("Deployment"), apps, request_timeout=3.0)

    adapter.get()

    apps.read_namespaced_deployment.assert_called_once_with(
        name="podinfo", namespace=NAMESPACE, _request_timeout=3.0
    )
