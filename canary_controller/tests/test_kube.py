from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException, V1ConfigMap, V1ObjectMeta

from canary_controller.src.kube import (
    build_clients,
    load_kube_configuration,
    owner_reference,
    retry_on_conflict,
    stable_hash,
    to_plain,
)
from canary_controller.tests.fakes import make_canary


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("canary_controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("canary_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "canary_controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("canary_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("canary_controller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        core, apps, custom = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"
    assert custom.name == "custom"


def test_to_plain_uses_api_field_names() -> None:
    config_map = V1ConfigMap(metadata=V1ObjectMeta(name="podinfo", resource_version="7"), data={"a": "1"})

    assert to_plain(config_map) == {"metadata": {"name": "podinfo", "resourceVersion": "7"}, "data": {"a": "1"}}


def test_stable_hash_ignores_key_order() -> None:
    assert stable_hash({"a": 1, "b": {"c": 2, "d": 3}}) == stable_hash({"b": {"d": 3, "c": 2}, "a": 1})
    assert stable_hash({"a": 1}) != stable_hash({"a": 2})


def test_owner_reference_points_at_canary() -> None:
    reference = owner_reference(make_canary())

    assert reference.kind == "Canary"
    assert reference.api_version == "flagger.app/v1beta1"
    assert reference.name == "podinfo"
    assert reference.uid == "uid-podinfo"
    assert reference.controller is True


def test_retry_on_conflict_retries_until_success() -> None:
    write = MagicMock(side_effect=[ApiException(status=409, reason="Conflict"), "ok"])

    @retry_on_conflict
    def replace() -> str:
        return write()

    assert replace() == "ok"
    assert write.call_count == 2


def test_retry_on_conflict_does_not_retry_other_errors() -> None:
    write = MagicMock(side_effect=ApiException(status=422, reason="Invalid"))

    @retry_on_conflict
    def replace() -> None:
        write()

    with pytest.raises(ApiException):
        replace()
    write.assert_called_once()
