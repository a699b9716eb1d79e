from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import CoordinationV1Api

from canary_controller.src.config import ControllerSettings, load_settings
from canary_controller.src.controller import CanaryController, build_controller
from canary_controller.src.health import start_health_server
from canary_controller.src.kube import build_clients, load_kube_configuration
from canary_controller.src.leader import LeaderElector
from canary_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.threadName and record.threadName != "MainThread":
            log_entry["thread"] = record.threadName
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


class LeaderSupervisor:
    """Starts the reconciler loop on a thread while leading and stops it on handoff.

    If the previous loop does not stop within the configured timeout the
    whole process is shut down, because two replicas reconciling the same
    canaries would fight over primary objects.
    """

    def __init__(
        self,
        controller: CanaryController,
        shutdown_event: threading.Event,
        stop_timeout_seconds: int,
        leader_ready: threading.Event | None = None,
    ) -> None:
        self.controller = controller
        self.shutdown_event = shutdown_event
        self.stop_timeout_seconds = stop_timeout_seconds
        self.leader_ready = leader_ready
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def _run(self, stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            self.controller.run_forever(shutdown_event=stop)
            unexpected_exit = not stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Controller thread exited without a stop signal; terminating process")
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Controller thread crashed")
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error(
                    "Refusing to start a new reconciler loop while the previous one is still running"
                )
                self.shutdown_event.set()
                return

            self._stop = threading.Event()
            if self.leader_ready is not None:
                self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop,), name="canary-controller", daemon=True
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            if self.leader_ready is not None:
                self.leader_ready.clear()
            self.controller.request_stop()
            self._stop.set()
            if self._thread is None:
                return

            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def run(
    settings: ControllerSettings,
    controller: CanaryController,
    shutdown_event: threading.Event,
    leader_ready: threading.Event | None = None,
) -> None:
    """Run *controller* until *shutdown_event*, under leader election when enabled."""
    election = settings.leader_election
    if not election.enabled:
        controller.run_forever(shutdown_event=shutdown_event)
        return

    supervisor = LeaderSupervisor(
        controller,
        shutdown_event,
        stop_timeout_seconds=election.stop_timeout_seconds,
        leader_ready=leader_ready,
    )
    elector = LeaderElector(CoordinationV1Api(), election)
    elector.run(
        on_started_leading=supervisor.on_started_leading,
        on_stopped_leading=supervisor.on_stopped_leading,
        stop_event=shutdown_event,
    )
    supervisor.on_stopped_leading()


def main() -> None:
    """Controller entrypoint: load settings, start health serving and run the reconciler."""
    settings = load_settings()
    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api, custom_api = build_clients()
    controller = build_controller(settings, core_api, apps_api, custom_api)

    leader_ready = threading.Event() if settings.leader_election.enabled else None
    health_server = start_health_server(
        ready=controller.ready,
        port=settings.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    LOGGER.info(
        "Starting canary controller (namespace=%s, interval=%ss, workers=%d)",
        settings.watch_namespace or "*",
        settings.reconcile_interval_seconds,
        settings.worker_threads,
    )
    run(settings, controller, shutdown_event, leader_ready=leader_ready)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
