from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from canary_controller.src.config import LeaderElectionSettings
from canary_controller.src.leader import LeaderElector, LeaseRecord
from canary_controller.src.metrics import METRICS

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _make_elector(
    coordination_api: Any = None,
    identity: str = "pod-1",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
) -> LeaderElector:
    settings = LeaderElectionSettings(
        namespace="canary-system",
        lease_name="test-lease",
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )
    return LeaderElector(coordination_api or MagicMock(), settings, clock=lambda: NOW)


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 60, transitions: int = 0) -> V1Lease:
    return V1Lease(
        metadata=V1ObjectMeta(name="test-lease", namespace="canary-system", resource_version="5"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=NOW - timedelta(seconds=renewed_ago),
            acquire_time=NOW - timedelta(seconds=acquired_ago),
            lease_transitions=transitions,
        ),
    )


def test_creates_lease_when_not_found() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    assert _make_elector(coordination_api=api).try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.spec.acquire_time == NOW
    assert body.spec.lease_duration_seconds == 15


def test_renews_lease_when_already_holder() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-1", renewed_ago=5, acquired_ago=30)

    assert _make_elector(coordination_api=api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.renew_time == NOW
    assert body.spec.acquire_time == NOW - timedelta(seconds=30)
    assert body.spec.lease_transitions == 0
    assert body.metadata.resource_version == "5"


def test_does_not_acquire_when_another_holder_active() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=2)

    assert _make_elector(coordination_api=api).try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_takes_over_expired_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=60, transitions=3)

    assert _make_elector(coordination_api=api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.spec.acquire_time == NOW
    assert body.spec.lease_transitions == 4


def test_takes_over_released_lease() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease(None, renewed_ago=1)

    assert _make_elector(coordination_api=api).try_acquire_or_renew() is True


@pytest.mark.parametrize("verb", ["create", "replace"])
def test_lost_race_is_not_an_error(verb: str) -> None:
    api = MagicMock()
    if verb == "create":
        api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    else:
        api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=60)
    getattr(api, f"{verb}_namespaced_lease").side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(coordination_api=api).try_acquire_or_renew() is False


def test_api_errors_fail_the_round() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

    assert _make_elector(coordination_api=api).try_acquire_or_renew() is False


def test_lease_record_expiry() -> None:
    record = LeaseRecord(holder="pod-2", renew_time=NOW.replace(tzinfo=None), duration_seconds=None)

    assert record.expired(NOW + timedelta(seconds=14), default_duration=15) is False
    assert record.expired(NOW + timedelta(seconds=15), default_duration=15) is True
    assert LeaseRecord(holder=None, renew_time=NOW, duration_seconds=15).expired(NOW, 15) is True


def test_run_calls_on_started_leading() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(on_started_leading=on_started, on_stopped_leading=lambda: None, stop_event=stop)

    assert started.is_set()
    assert not elector.is_leader


def test_non_api_exception_does_not_crash_election_loop() -> None:
    api = MagicMock()
    call_count = 0

    def flaky_read(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise ConnectionError("network blip")
        raise ApiException(status=404, reason="Not Found")

    api.read_namespaced_lease.side_effect = flaky_read
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()

    elector.run(on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop)

    assert call_count >= 2


def test_release_lease_on_shutdown() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        _lease("pod-1", renewed_ago=1),
        _lease("pod-1", renewed_ago=0),
    ]
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()

    elector.run(on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop)

    released_body = api.replace_namespaced_lease.call_args_list[-1].kwargs["body"]
    assert released_body.spec.holder_identity is None


def test_constructor_rejects_invalid_timing_relationships() -> None:
    with pytest.raises(ValueError, match="renew_deadline_seconds must be smaller than lease_duration_seconds"):
        _make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)

    with pytest.raises(ValueError, match="retry_period_seconds must be smaller than renew_deadline_seconds"):
        _make_elector(renew_deadline_seconds=5, retry_period_seconds=5)


def test_loses_leadership_after_renew_deadline_expires() -> None:
    elector = _make_elector(renew_deadline_seconds=1)
    stop = threading.Event()
    stopped_calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1
        stop.set()

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector.lock, "release") as release_mock,
    ):
        mp.setattr(
            "canary_controller.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 1.5, 1.6]),
        )
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped_calls == 1
    release_mock.assert_not_called()


def test_keeps_leadership_when_failure_is_within_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped_calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1

    calls = 0

    def try_cycle() -> bool:
        nonlocal calls
        calls += 1
        if calls == 1:
            return True
        stop.set()
        return False

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "try_acquire_or_renew", side_effect=try_cycle),
        patch.object(elector.lock, "release") as release_mock,
    ):
        mp.setattr(
            "canary_controller.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 0.5, 0.6]),
        )
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped_calls == 1
    release_mock.assert_called_once()


def test_leader_metrics_track_acquire_latency_and_transitions() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    elector = _make_elector(coordination_api=api)
    stop = threading.Event()

    acquired_before = METRICS.leader_transitions_total.labels(transition="acquired")._value.get()
    lost_before = METRICS.leader_transitions_total.labels(transition="lost")._value.get()
    latency_sum_before = METRICS.leader_acquire_latency_seconds._sum.get()

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(
            "canary_controller.src.leader.time.monotonic",
            MagicMock(side_effect=[10.0, 14.0, 15.0]),
        )
        elector.run(on_started_leading=stop.set, on_stopped_leading=lambda: None, stop_event=stop)

    assert METRICS.leader_transitions_total.labels(transition="acquired")._value.get() == acquired_before + 1
    assert METRICS.leader_transitions_total.labels(transition="lost")._value.get() == lost_before + 1
    assert METRICS.leader_acquire_latency_seconds._sum.get() == pytest.approx(latency_sum_before + 4.0)
    assert METRICS.leader_state._value.get() == 0
