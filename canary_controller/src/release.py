from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, AppsV1Api

from canary_controller.src.canary import Canary, CanaryStatus, Phase
from canary_controller.src.config_tracker import ConfigTracker
from canary_controller.src.errors import (
    TRANSPORT_ERRORS,
    AnalysisFailed,
    CanaryError,
    ConfigUnavailable,
    TargetNotFound,
    TransientAPIError,
    UnsupportedKind,
)
from canary_controller.src.metrics import METRICS
from canary_controller.src.routing import AnalysisRunner, TrafficRouter, Verdict
from canary_controller.src.store import CanaryStore, EventRecorder
from canary_controller.src.workloads import WorkloadAdapter, adapter_for


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_time(value: datetime) -> str:
    """Render *value* as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class ReleaseStateMachine:
    """Drives one Canary through its release phases.

    ``step`` performs the work of the canary's current phase and persists
    the outcome.  A phase change is written to the Canary status before any
    side effect of the next phase, so a restarted controller re-executes at
    most the current phase; every action here is idempotent to allow that.

    Invariants kept by the handlers:

    * the primary workload and its ``-primary`` config copies are written
      only while ``Initializing`` (first creation) and ``Promoting``;
    * promotion copies exactly the pod template hash and config fingerprint
      that passed analysis; anything else sends the canary back to
      ``Progressing`` with reset counters;
    * the canary weight is a function of passed checks while
      ``Progressing``, is held through ``Promoting`` and is 0 from
      ``Finalising`` on and in ``Failed``.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        tracker: ConfigTracker,
        router: TrafficRouter,
        runner: AnalysisRunner,
        store: CanaryStore,
        recorder: EventRecorder,
        annotation_prefix: str = "flagger.app",
        request_timeout: float | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.tracker = tracker
        self.router = router
        self.runner = runner
        self.store = store
        self.recorder = recorder
        self.annotation_prefix = annotation_prefix
        self.request_timeout = request_timeout
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: dict[Phase, Callable[[Canary, WorkloadAdapter], None]] = {
            Phase.INITIALIZING: self._initializing,
            Phase.INITIALIZED: self._idle,
            Phase.PROGRESSING: self._progressing,
            Phase.PROMOTING: self._promoting,
            Phase.FINALISING: self._finalising,
            Phase.SUCCEEDED: self._idle,
            Phase.FAILED: self._failed,
        }

    def step(self, canary: Canary) -> CanaryStatus:
        """Run one reconcile attempt for *canary* and return its resulting status.

        ``TransientAPIError`` is re-raised for the caller to retry; every other
        classified error is absorbed into the status condition.
        """
        phase = canary.status.phase
        METRICS.reconcile_total.labels(phase=phase.value).inc()
        started = time.monotonic()
        try:
            workload = adapter_for(
                canary,
                self.apps_api,
                annotation_prefix=self.annotation_prefix,
                request_timeout=self.request_timeout,
            )
            self._handlers[phase](canary, workload)
        except UnsupportedKind as exc:
            self._record_error(exc)
            # Permanent until the Canary spec is fixed; the status write is a
            # no-op on later attempts.
            if self._save(canary, reason=exc.reason, message=str(exc)):
                self.recorder.record(canary, exc.reason, str(exc), event_type="Warning")
        except TargetNotFound as exc:
            self._record_error(exc)
            if phase is not Phase.FAILED:
                self._fail(canary, None, reason=exc.reason, message=str(exc))
        except ConfigUnavailable as exc:
            self._record_error(exc)
            self.logger.warning("Canary %s/%s blocked: %s", canary.namespace, canary.name, exc)
            self._save(canary, reason=exc.reason, message=str(exc))
        except TransientAPIError as exc:
            self._record_error(exc)
            raise
        except (ApiException, *TRANSPORT_ERRORS) as exc:
            METRICS.reconcile_errors_total.labels(error=TransientAPIError.reason).inc()
            raise TransientAPIError(
                f"reconcile of canary {canary.namespace}/{canary.name} failed: {exc}"
            ) from exc
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        return canary.status

    @staticmethod
    def _record_error(exc: CanaryError) -> None:
        METRICS.reconcile_errors_total.labels(error=exc.reason).inc()

    def _save(
        self,
        canary: Canary,
        reason: str | None = None,
        message: str | None = None,
        **changes: Any,
    ) -> bool:
        """Persist a status change; identical status is not written again."""
        if reason is not None:
            changes["condition_reason"] = reason
        if message is not None:
            changes["condition_message"] = message
        status = canary.status.evolve(**changes)
        if status == canary.status:
            return False
        self.store.update_status(canary, status)
        METRICS.canary_weight.labels(namespace=canary.namespace, name=canary.name).set(
            status.canary_weight
        )
        METRICS.failed_checks.labels(namespace=canary.namespace, name=canary.name).set(
            status.failed_checks
        )
        return True

    def _transition(
        self,
        canary: Canary,
        phase: Phase,
        reason: str,
        message: str,
        event_type: str = "Normal",
        **changes: Any,
    ) -> None:
        previous = canary.status.phase
        self._save(
            canary,
            reason=reason,
            message=message,
            phase=phase,
            last_transition_time=format_time(self.now_fn()),
            **changes,
        )
        METRICS.phase_transitions_total.labels(phase=phase.value).inc()
        self.logger.info(
            "Canary %s/%s: %s -> %s", canary.namespace, canary.name, previous.value, phase.value
        )
        self.recorder.record(canary, reason, message, event_type=event_type)

    def _observe(self, workload: WorkloadAdapter) -> tuple[str, str]:
        """Return the target's current ``(pod template hash, config fingerprint)``."""
        tracked = self.tracker.track(workload)
        return workload.spec_hash(), tracked.fingerprint

    def _route(self, canary: Canary, canary_weight: int) -> None:
        self.router.set_weights(canary, 100 - canary_weight, canary_weight)

    def _fail(
        self,
        canary: Canary,
        workload: WorkloadAdapter | None,
        reason: str,
        message: str,
        **changes: Any,
    ) -> None:
        self._transition(
            canary,
            Phase.FAILED,
            reason=reason,
            message=message,
            event_type="Warning",
            canary_weight=0,
            **changes,
        )
        self._route(canary, 0)
        if workload is not None:
            workload.set_replicas(0)

    def _start_run(self, canary: Canary, spec_hash: str, config_hash: str, message: str) -> None:
        self._transition(
            canary,
            Phase.PROGRESSING,
            reason="Progressing",
            message=message,
            tracked_spec=spec_hash,
            tracked_config=config_hash,
            canary_weight=0,
            failed_checks=0,
            iterations=0,
            last_check_time=None,
        )

    @staticmethod
    def _drift_message(status: CanaryStatus, spec_hash: str, config_hash: str) -> str:
        changes = []
        if spec_hash != status.tracked_spec:
            changes.append("pod template")
        if config_hash != status.tracked_config:
            changes.append("referenced config")
        return f"New revision detected ({' and '.join(changes)} changed), starting canary analysis"

    def _initializing(self, canary: Canary, workload: WorkloadAdapter) -> None:
        workload.get()
        tracked = self.tracker.track(workload)
        renames = self.tracker.apply_primary(workload, canary, tracked)
        workload.sync_primary(renames)
        spec_hash = workload.spec_hash()
        if not workload.is_primary_ready():
            self._save(
                canary,
                reason="Initializing",
                message=f"Waiting for {workload.kind} {workload.primary_name} to become ready",
            )
            return

        self._route(canary, 0)
        workload.set_replicas(0)
        self._transition(
            canary,
            Phase.INITIALIZED,
            reason="Initialized",
            message=f"{workload.kind} {canary.namespace}/{workload.primary_name} initialized",
            last_applied_spec=spec_hash,
            last_applied_config=tracked.fingerprint,
            tracked_spec=spec_hash,
            tracked_config=tracked.fingerprint,
            canary_weight=0,
            failed_checks=0,
            iterations=0,
        )

    def _idle(self, canary: Canary, workload: WorkloadAdapter) -> None:
        status = canary.status
        spec_hash, config_hash = self._observe(workload)
        if spec_hash == status.last_applied_spec and config_hash == status.last_applied_config:
            return
        message = self._drift_message(
            status.evolve(
                tracked_spec=status.last_applied_spec,
                tracked_config=status.last_applied_config,
            ),
            spec_hash,
            config_hash,
        )
        self._start_run(canary, spec_hash, config_hash, message)

    def _check_due(self, canary: Canary) -> bool:
        last_check = parse_time(canary.status.last_check_time)
        if last_check is None:
            return True
        elapsed = (self.now_fn() - last_check).total_seconds()
        return elapsed >= canary.analysis.interval_seconds

    def _progressing(self, canary: Canary, workload: WorkloadAdapter) -> None:
        status = canary.status
        policy = canary.analysis
        spec_hash, config_hash = self._observe(workload)
        if spec_hash != status.tracked_spec or config_hash != status.tracked_config:
            message = self._drift_message(status, spec_hash, config_hash)
            self._save(
                canary,
                reason="Restarted",
                message=message.replace("starting", "restarting"),
                tracked_spec=spec_hash,
                tracked_config=config_hash,
                canary_weight=0,
                failed_checks=0,
                iterations=0,
                last_check_time=None,
            )
            self.recorder.record(canary, "Restarted", canary.status.condition_message)
            self._route(canary, 0)
            return

        replicas = workload.primary_replicas()
        if replicas is not None:
            workload.set_replicas(max(1, replicas))

        weight = status.canary_weight or policy.weight_for(status.iterations)
        if weight != status.canary_weight:
            self._save(canary, message=f"Advance canary weight {weight}", canary_weight=weight)
        self._route(canary, weight)

        if not self._check_due(canary):
            return

        try:
            verdict = self.runner.evaluate(canary, workload)
        except AnalysisFailed as exc:
            self.logger.info("Canary %s/%s check failed: %s", canary.namespace, canary.name, exc)
            verdict = Verdict.FAIL
        METRICS.analysis_verdicts_total.labels(verdict=verdict.value).inc()
        checked_at = format_time(self.now_fn())

        if verdict is Verdict.PENDING:
            self._save(
                canary,
                reason="Progressing",
                message="Analysis pending",
                last_check_time=checked_at,
            )
            return

        if verdict is Verdict.FAIL:
            failed = status.failed_checks + 1
            if failed >= policy.threshold:
                self._fail(
                    canary,
                    workload,
                    reason="AnalysisFailed",
                    message=f"Canary failed {failed} consecutive checks, rolling back",
                    failed_checks=failed,
                    last_check_time=checked_at,
                )
                return
            self._save(
                canary,
                reason="AnalysisFailed",
                message=f"Failed check {failed} of {policy.threshold}",
                failed_checks=failed,
                last_check_time=checked_at,
            )
            return

        iterations = status.iterations + 1
        if weight >= policy.max_weight:
            self._transition(
                canary,
                Phase.PROMOTING,
                reason="Promoting",
                message=f"Canary analysis passed at weight {weight}, promoting",
                iterations=iterations,
                failed_checks=0,
                last_check_time=checked_at,
            )
            return

        next_weight = policy.weight_for(iterations)
        self._save(
            canary,
            reason="Progressing",
            message=f"Advance canary weight {next_weight}",
            iterations=iterations,
            canary_weight=next_weight,
            failed_checks=0,
            last_check_time=checked_at,
        )
        self._route(canary, next_weight)

    def _promoting(self, canary: Canary, workload: WorkloadAdapter) -> None:
        status = canary.status
        tracked = self.tracker.track(workload)
        spec_hash = workload.spec_hash()
        if spec_hash != status.tracked_spec or tracked.fingerprint != status.tracked_config:
            message = self._drift_message(status, spec_hash, tracked.fingerprint)
            self._transition(
                canary,
                Phase.PROGRESSING,
                reason="Restarted",
                message=message.replace("starting", "restarting"),
                tracked_spec=spec_hash,
                tracked_config=tracked.fingerprint,
                canary_weight=0,
                failed_checks=0,
                iterations=0,
                last_check_time=None,
            )
            self._route(canary, 0)
            return

        renames = self.tracker.apply_primary(workload, canary, tracked)
        workload.sync_primary(renames)
        if not workload.is_primary_ready():
            self._save(
                canary,
                reason="Promoting",
                message=f"Waiting for {workload.kind} {workload.primary_name} rollout",
            )
            return

        self._transition(
            canary,
            Phase.FINALISING,
            reason="Finalising",
            message=f"{workload.kind} {canary.namespace}/{workload.primary_name} promoted",
            last_applied_spec=spec_hash,
            last_applied_config=tracked.fingerprint,
            canary_weight=0,
            failed_checks=0,
        )

    def _finalising(self, canary: Canary, workload: WorkloadAdapter) -> None:
        self._route(canary, 0)
        workload.set_replicas(0)
        self._transition(
            canary,
            Phase.SUCCEEDED,
            reason="Succeeded",
            message="Canary analysis completed successfully, promotion finished",
            canary_weight=0,
            failed_checks=0,
            iterations=0,
        )

    def _failed(self, canary: Canary, workload: WorkloadAdapter) -> None:
        # Rollback is re-applied on every attempt; the write that entered
        # Failed may have been persisted without it.
        status = canary.status
        self._route(canary, 0)
        if status.last_applied_spec:
            # Before initialization the target is the only copy serving.
            workload.set_replicas(0)
        spec_hash, config_hash = self._observe(workload)
        if spec_hash == status.tracked_spec and config_hash == status.tracked_config:
            return
        if not status.last_applied_spec:
            # The primary was never created; start over from scratch.
            self._transition(
                canary,
                Phase.INITIALIZING,
                reason="Initializing",
                message=f"{workload.kind} {canary.namespace}/{workload.name} found, initializing",
                failed_checks=0,
            )
            return
        self._start_run(canary, spec_hash, config_hash, self._drift_message(status, spec_hash, config_hash))
