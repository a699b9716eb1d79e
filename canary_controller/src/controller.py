from __future__ import annotations

import functools
import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi

from canary_controller.src.config import ControllerSettings
from canary_controller.src.config_tracker import ConfigTracker
from canary_controller.src.errors import TransientAPIError
from canary_controller.src.metrics import METRICS
from canary_controller.src.release import ReleaseStateMachine
from canary_controller.src.routing import (
    AnalysisRunner,
    KubernetesRouter,
    ReadinessAnalysisRunner,
    TrafficRouter,
)
from canary_controller.src.store import CanaryStore, EventRecorder

Key = tuple[str, str]

# Upper bound on back-to-back reconciles of one key after phase changes.
MAX_IMMEDIATE_REQUEUES = 10


class KeyedWorkQueue:
    """Registry guaranteeing at most one in-flight reconcile per canary key.

    A key enqueued while its reconcile is running is marked dirty instead of
    starting a second worker; the running worker picks the request up when
    it finishes.  Different keys never block each other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[Key] = set()
        self._dirty: set[Key] = set()

    def try_acquire(self, key: Key) -> bool:
        with self._lock:
            if key in self._active:
                self._dirty.add(key)
                return False
            self._active.add(key)
            return True

    def done(self, key: Key, requeue: bool = False) -> bool:
        """Finish a reconcile of *key*; return True if the worker must run it again."""
        with self._lock:
            again = requeue or key in self._dirty
            self._dirty.discard(key)
            if not again:
                self._active.discard(key)
            return again

    def release(self, key: Key) -> None:
        """Drop *key* without running it, e.g. when its queued work was cancelled."""
        with self._lock:
            self._active.discard(key)
            self._dirty.discard(key)

    def active(self) -> set[Key]:
        with self._lock:
            return set(self._active)


class CanaryController:
    """Reconciler loop: watches Canaries and runs the release state machine.

    Each known canary is reconciled on watch events that change its spec
    (``metadata.generation``) and on a periodic tick, because target
    workloads and referenced config are polled rather than watched.  A
    reconcile that moves the canary to another phase is re-run immediately
    so chains such as ``Finalising -> Succeeded`` do not wait for a tick.

    ``401`` / ``403`` responses from the Kubernetes API are treated as
    configuration errors (RBAC/auth) and terminate the loop.
    """

    def __init__(
        self,
        store: CanaryStore,
        machine: ReleaseStateMachine,
        namespace: str = "",
        reconcile_interval_seconds: int = 10,
        worker_threads: int = 4,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.machine = machine
        self.namespace = namespace
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self.worker_threads = worker_threads
        self.logger = logger or logging.getLogger(__name__)

        self.queue = KeyedWorkQueue()
        self.ready = threading.Event()
        self._known: dict[Key, int | None] = {}
        self._known_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def known_keys(self) -> list[Key]:
        with self._known_lock:
            return sorted(self._known)

    def reconcile(self, key: Key) -> bool:
        """Run one state machine step for *key*; return True if its phase changed."""
        namespace, name = key
        try:
            canary = self.store.get(namespace, name)
        except TransientAPIError as exc:
            self.logger.warning("Could not read canary %s/%s: %s", namespace, name, exc)
            return False
        if canary is None:
            self.logger.info("Canary %s/%s no longer exists", namespace, name)
            self.forget(key)
            return False

        before = canary.status.phase
        try:
            status = self.machine.step(canary)
        except TransientAPIError as exc:
            self.logger.warning(
                "Transient error reconciling canary %s/%s: %s; retrying on next tick",
                namespace,
                name,
                exc,
            )
            return False
        return status.phase is not before

    def _work(self, key: Key) -> None:
        METRICS.inflight_reconciles.inc()
        try:
            requeues = 0
            while True:
                try:
                    phase_changed = self.reconcile(key)
                except Exception:
                    self.logger.exception("Unexpected error reconciling canary %s/%s", *key)
                    phase_changed = False
                requeue = phase_changed and requeues < MAX_IMMEDIATE_REQUEUES
                if not self.queue.done(key, requeue=requeue):
                    break
                requeues += 1
        finally:
            METRICS.inflight_reconciles.dec()

    def enqueue(self, key: Key) -> bool:
        """Schedule a reconcile of *key* unless one is already running."""
        if not self.queue.try_acquire(key):
            return False
        executor = self._executor
        if executor is None:
            self._work(key)
        else:
            future = executor.submit(self._work, key)
            future.add_done_callback(functools.partial(self._work_finished, key))
        return True

    def _work_finished(self, key: Key, future: Future[None]) -> None:
        # A cancelled future never ran _work, so nothing called done() for it.
        if future.cancelled():
            self.queue.release(key)

    def enqueue_all(self) -> None:
        for key in self.known_keys():
            self.enqueue(key)

    def forget(self, key: Key) -> None:
        with self._known_lock:
            self._known.pop(key, None)
        for gauge in (METRICS.canary_weight, METRICS.failed_checks):
            try:
                gauge.remove(*key)
            except KeyError:
                pass

    @staticmethod
    def _object_key(obj: dict[str, Any]) -> tuple[Key | None, int | None]:
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            return None, None
        return (metadata.get("namespace") or "default", name), metadata.get("generation")

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> bool:
        """Process a single Canary watch event; return True if a reconcile was enqueued.

        Status-only updates (including the controller's own status writes)
        keep ``metadata.generation`` unchanged and are ignored.
        """
        key, generation = self._object_key(obj)
        if key is None:
            return False

        if event_type == "DELETED":
            self.forget(key)
            return False
        if event_type not in {"ADDED", "MODIFIED"}:
            return False

        with self._known_lock:
            seen = key in self._known
            previous_generation = self._known.get(key)
            self._known[key] = generation
        if seen and generation is not None and generation == previous_generation:
            return False
        return self.enqueue(key)

    def _sync_known(self, items: list[dict[str, Any]]) -> None:
        known: dict[Key, int | None] = {}
        for item in items:
            key, generation = self._object_key(item)
            if key is not None:
                known[key] = generation
        with self._known_lock:
            self._known = known

    def _tick(self, last_tick: float | None) -> float:
        """Enqueue every known canary when the reconcile interval has elapsed."""
        now = time.monotonic()
        if last_tick is not None and now - last_tick < self.reconcile_interval_seconds:
            return last_tick
        self.enqueue_all()
        return now

    def _list(self) -> str | None:
        raw = self.store.list_raw(self.namespace, _request_timeout=self.store.request_timeout)
        self._sync_known(raw.get("items") or [])
        return (raw.get("metadata") or {}).get("resourceVersion")

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list, then watch Canaries until shutdown.

        1. Retries the initial list with exponential backoff and jitter.
        2. Enqueues every listed canary, then opens a watch whose timeout is
           the reconcile interval; every expiry enqueues all known canaries.
        3. On ``410 Gone`` re-lists and resumes from the fresh resourceVersion.
        4. On transient errors backs off (capped at 30 s).
        5. On shutdown waits for in-flight reconciles to finish.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.ready.set()
                self.logger.info(
                    "Listed %d canaries; starting watch from resourceVersion %s",
                    len(self.known_keys()),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial canary list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial canary list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial canary list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        self._executor = ThreadPoolExecutor(
            max_workers=self.worker_threads, thread_name_prefix="canary-reconcile"
        )
        try:
            self._watch_loop(stop, resource_version)
        finally:
            executor, self._executor = self._executor, None
            executor.shutdown(wait=True, cancel_futures=True)
            self.ready.clear()

    def _watch_loop(self, stop: threading.Event, resource_version: str | None) -> None:
        backoff_seconds = 1
        watch_stream_count = 0
        last_tick: float | None = None

        while not self._should_stop(stop):
            last_tick = self._tick(last_tick)

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.store.list_raw,
                    self.namespace,
                    resource_version=resource_version,
                    timeout_seconds=self.reconcile_interval_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue
                    event_resource_version = (obj.get("metadata") or {}).get("resourceVersion")
                    if event_resource_version:
                        resource_version = event_resource_version
                    self.handle_event(str(event.get("type", "")), obj)
                    last_tick = self._tick(last_tick)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._list()
                        last_tick = None
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


def build_controller(
    settings: ControllerSettings,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    custom_api: CustomObjectsApi,
    router: TrafficRouter | None = None,
    runner: AnalysisRunner | None = None,
) -> CanaryController:
    """Wire a :class:`CanaryController` from settings and API clients.

    Without a mesh-specific router the controller uses
    :class:`KubernetesRouter`, and the built-in readiness check as analysis.
    """
    timeout = float(settings.api_timeout_seconds)
    store = CanaryStore(
        custom_api,
        group=settings.group,
        version=settings.version,
        plural=settings.plural,
        request_timeout=timeout,
    )
    machine = ReleaseStateMachine(
        apps_api=apps_api,
        tracker=ConfigTracker(
            core_api,
            annotation_prefix=settings.annotation_prefix,
            request_timeout=timeout,
        ),
        router=router or KubernetesRouter(),
        runner=runner or ReadinessAnalysisRunner(),
        store=store,
        recorder=EventRecorder(core_api),
        annotation_prefix=settings.annotation_prefix,
        request_timeout=timeout,
    )
    return CanaryController(
        store=store,
        machine=machine,
        namespace=settings.watch_namespace,
        reconcile_interval_seconds=settings.reconcile_interval_seconds,
        worker_threads=settings.worker_threads,
    )
