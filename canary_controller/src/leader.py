from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import ApiException, CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta

from canary_controller.src.config import LeaderElectionSettings
from canary_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseRecord:
    holder: str | None
    renew_time: datetime | None
    duration_seconds: int | None

    def expired(self, now: datetime, default_duration: int) -> bool:
        if not self.holder or self.renew_time is None:
            return True
        renewed = self.renew_time if self.renew_time.tzinfo else self.renew_time.replace(tzinfo=UTC)
        return (now - renewed).total_seconds() >= (self.duration_seconds or default_duration)


class LeaseLock:
    """Thin wrapper around one ``coordination.k8s.io/v1`` Lease.

    Every write is optimistic: the replace carries the resourceVersion of
    the read it is based on, so two replicas racing for an expired lease
    cannot both win.  Losing a race shows up as ``False``, never as an
    exception.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        name: str,
        identity: str,
        duration_seconds: int,
    ) -> None:
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.name = name
        self.identity = identity
        self.duration_seconds = duration_seconds

    def read(self) -> tuple[V1Lease | None, LeaseRecord | None]:
        try:
            lease = self.coordination_api.read_namespaced_lease(name=self.name, namespace=self.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None, None
            raise
        spec = lease.spec or V1LeaseSpec()
        return lease, LeaseRecord(
            holder=spec.holder_identity,
            renew_time=spec.renew_time,
            duration_seconds=spec.lease_duration_seconds,
        )

    def create(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s created concurrently by another replica", self.name)
                return False
            raise
        return True

    def claim(self, lease: V1Lease, now: datetime) -> bool:
        """Write our identity into *lease*, renewing or taking it over."""
        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity != self.identity:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        elif spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s changed underneath us", self.name)
                return False
            raise
        return True

    def release(self) -> None:
        """Clear the holder so another replica can take over without waiting for expiry."""
        try:
            lease, record = self.read()
            if lease is None or record is None or record.holder != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.name, exc_info=True)


class LeaderElector:
    """Runs the controller only while this replica holds the leader lease.

    Each ``retry_period`` the elector tries to acquire or renew the lease.
    A leader that cannot renew keeps leading until ``renew_deadline`` has
    passed since its last successful renewal, then steps down so a new
    leader (which waits for ``lease_duration``) never overlaps with it.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        settings: LeaderElectionSettings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if settings.renew_deadline_seconds >= settings.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if settings.retry_period_seconds >= settings.renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.settings = settings
        self.lock = LeaseLock(
            coordination_api,
            namespace=settings.namespace,
            name=settings.lease_name,
            identity=settings.identity,
            duration_seconds=settings.lease_duration_seconds,
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def identity(self) -> str:
        return self.settings.identity

    def try_acquire_or_renew(self) -> bool:
        """Run one election round; return True if we hold the lease afterwards."""
        now = self._clock()
        try:
            lease, record = self.lock.read()
            if lease is None:
                return self.lock.create(now)
            if record.holder != self.identity and not record.expired(
                now, self.settings.lease_duration_seconds
            ):
                return False
            return self.lock.claim(lease, now)
        except ApiException as exc:
            LOGGER.warning(
                "Leader election round for lease %s failed: %s", self.settings.lease_name, exc.reason
            )
            return False

    def _step_down(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until *stop_event* is set, invoking the callbacks on leadership changes."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.settings.namespace,
            self.settings.lease_name,
            self.identity,
        )
        METRICS.leader_state.set(0)
        waiting_since = time.monotonic()
        last_renewal = waiting_since

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election round")
                held = False

            now = time.monotonic()
            if held:
                last_renewal = now
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(now - waiting_since)
                    on_started_leading()
            elif self._is_leader:
                if now - last_renewal < self.settings.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (elapsed %.2fs)",
                        self.settings.renew_deadline_seconds,
                        now - last_renewal,
                    )
                else:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without renewal", now - last_renewal
                    )
                    waiting_since = now
                    self._step_down(on_stopped_leading)
            stop_event.wait(timeout=self.settings.retry_period_seconds)

        if self._is_leader:
            self.lock.release()
            self._step_down(on_stopped_leading)
