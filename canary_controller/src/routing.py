from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

from canary_controller.src.canary import Canary
from canary_controller.src.workloads import WorkloadAdapter

LOGGER = logging.getLogger(__name__)


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"


class TrafficRouter(Protocol):
    """Shifts traffic between the primary and canary workloads.

    Implementations are mesh or ingress specific.  ``primary_weight +
    canary_weight`` is always 100, and the call must be idempotent because
    a phase is re-executed after a controller restart.
    """

    def set_weights(self, canary: Canary, primary_weight: int, canary_weight: int) -> None: ...


class AnalysisRunner(Protocol):
    """Judges the canary once per analysis interval.

    Raising :class:`~canary_controller.src.errors.TransientAPIError` (for
    example on a metrics backend timeout) is not counted as a failed check.
    """

    def evaluate(self, canary: Canary, workload: WorkloadAdapter) -> Verdict: ...


class KubernetesRouter:
    """Router for plain Kubernetes services.

    Without a mesh, traffic follows pod counts, so weights are only recorded
    in the log and in the canary status.
    """

    def set_weights(self, canary: Canary, primary_weight: int, canary_weight: int) -> None:
        if primary_weight + canary_weight != 100:
            raise ValueError(
                f"weights must sum to 100, got primary={primary_weight} canary={canary_weight}"
            )
        LOGGER.debug(
            "Routing %s/%s: primary=%d canary=%d",
            canary.namespace,
            canary.name,
            primary_weight,
            canary_weight,
        )


class ReadinessAnalysisRunner:
    """Built-in check: the canary passes once its workload reports ready."""

    def evaluate(self, canary: Canary, workload: WorkloadAdapter) -> Verdict:
        if workload.is_canary_ready():
            return Verdict.PASS
        LOGGER.info(
            "Canary %s/%s %s %s not ready yet",
            canary.namespace,
            canary.name,
            workload.kind,
            workload.name,
        )
        return Verdict.PENDING
