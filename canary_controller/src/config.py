from __future__ import annotations

import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def default_identity() -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name, giving
    each replica a stable identity for lease ownership.
    """
    return os.getenv("HOSTNAME") or os.getenv("POD_NAME") or socket.gethostname()


@dataclass(frozen=True)
class LeaderElectionSettings:
    enabled: bool = True
    namespace: str = "default"
    lease_name: str = "canary-controller-leader"
    identity: str = "unknown"
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    stop_timeout_seconds: int = 45


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        watch_namespace:  Namespace whose Canaries are reconciled; empty means all.
        group / version / plural: Canary custom resource coordinates.
        annotation_prefix: Prefix for controller-owned annotations.
        reconcile_interval_seconds: Period of the re-enqueue ticker.
        worker_threads:   Canaries reconciled concurrently.
        api_timeout_seconds: Per-call timeout for Kubernetes API requests.
    """

    watch_namespace: str = ""
    group: str = "flagger.app"
    version: str = "v1beta1"
    plural: str = "canaries"
    annotation_prefix: str = "flagger.app"
    reconcile_interval_seconds: int = 10
    worker_threads: int = 4
    api_timeout_seconds: int = 15
    health_port: int = 8080
    log_level: str = "INFO"
    leader_election: LeaderElectionSettings = LeaderElectionSettings()


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load controller settings from the environment.

    Every integer is range-checked here so a bad deployment manifest fails
    at startup with a clear message instead of misbehaving later.
    """
    values = env if env is not None else os.environ

    def _str(name: str, default: str) -> str:
        return values.get(name, default).strip()

    group = _str("CANARY_GROUP", "flagger.app")
    if not group:
        raise ValueError("CANARY_GROUP must be a non-empty string")

    leader = LeaderElectionSettings(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=_str("LEADER_ELECTION_NAMESPACE", "default"),
        lease_name=_str("LEADER_ELECTION_LEASE_NAME", "canary-controller-leader"),
        identity=_str("LEADER_ELECTION_IDENTITY", "") or default_identity(),
        lease_duration_seconds=env_int(
            "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
        ),
        renew_deadline_seconds=env_int(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
        ),
        retry_period_seconds=env_int(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values
        ),
        stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    )
    if leader.enabled:
        if leader.renew_deadline_seconds >= leader.lease_duration_seconds:
            raise ValueError(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                "LEADER_ELECTION_LEASE_DURATION_SECONDS"
            )
        if leader.retry_period_seconds >= leader.renew_deadline_seconds:
            raise ValueError(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
            )

    return ControllerSettings(
        watch_namespace=_str("WATCH_NAMESPACE", ""),
        group=group,
        version=_str("CANARY_VERSION", "v1beta1"),
        plural=_str("CANARY_PLURAL", "canaries"),
        annotation_prefix=_str("ANNOTATION_PREFIX", "flagger.app"),
        reconcile_interval_seconds=env_int("RECONCILE_INTERVAL_SECONDS", 10, minimum=1, env=values),
        worker_threads=env_int("WORKER_THREADS", 4, minimum=1, maximum=64, env=values),
        api_timeout_seconds=env_int("API_TIMEOUT_SECONDS", 15, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=_str("LOG_LEVEL", "INFO").upper() or "INFO",
        leader_election=leader,
    )
