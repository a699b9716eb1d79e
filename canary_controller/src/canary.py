from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

DEFAULT_TRACKED_LABELS = ("app", "name")
PRIMARY_SUFFIX = "-primary"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, None: 1}


class Phase(str, Enum):
    """Release phase recorded in the Canary status sub-resource."""

    INITIALIZING = "Initializing"
    INITIALIZED = "Initialized"
    PROGRESSING = "Progressing"
    PROMOTING = "Promoting"
    FINALISING = "Finalising"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


def primary_name(name: str) -> str:
    return f"{name}{PRIMARY_SUFFIX}"


def parse_duration(value: Any, default: float) -> float:
    """Parse ``30``, ``"30s"``, ``"1m"`` or ``"1h"`` into seconds."""
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if match is None:
        raise ValueError(f"invalid duration: {value!r}")
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


@dataclass(frozen=True)
class TargetRef:
    kind: str
    name: str
    api_version: str = "apps/v1"


@dataclass(frozen=True)
class AnalysisPolicy:
    """How a canary run is stepped and judged.

    Attributes:
        interval_seconds: Minimum time between two analysis evaluations.
        threshold:        Consecutive failed checks that trigger a rollback.
        max_weight:       Canary traffic percentage at which promotion starts.
        step_weight:      Traffic percentage added after every passed check.
    """

    interval_seconds: float = 60.0
    threshold: int = 5
    max_weight: int = 50
    step_weight: int = 10

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("analysis threshold must be >= 1")
        if not 0 < self.step_weight <= 100:
            raise ValueError("analysis stepWeight must be within 1..100")
        if not 0 < self.max_weight <= 100:
            raise ValueError("analysis maxWeight must be within 1..100")

    def weight_for(self, iterations: int) -> int:
        """Canary weight after *iterations* passed checks in the current run.

        Non-decreasing in *iterations* and capped at ``max_weight``.
        """
        return min(self.step_weight * (max(0, iterations) + 1), self.max_weight)

    @classmethod
    def from_spec(cls, analysis: Mapping[str, Any] | None) -> AnalysisPolicy:
        analysis = analysis or {}
        return cls(
            interval_seconds=parse_duration(analysis.get("interval"), 60.0),
            threshold=int(analysis.get("threshold", 5)),
            max_weight=int(analysis.get("maxWeight", 50)),
            step_weight=int(analysis.get("stepWeight", 10)),
        )


@dataclass(frozen=True)
class CanaryStatus:
    """Durable release state; everything a restarted controller resumes from.

    ``last_applied_*`` describe what the primary is running.  ``tracked_*``
    describe the candidate currently under analysis (or the candidate that
    failed, while in ``Failed``).
    """

    phase: Phase = Phase.INITIALIZING
    last_applied_spec: str = ""
    last_applied_config: str = ""
    tracked_spec: str = ""
    tracked_config: str = ""
    canary_weight: int = 0
    failed_checks: int = 0
    iterations: int = 0
    last_transition_time: str | None = None
    last_check_time: str | None = None
    condition_reason: str = ""
    condition_message: str = ""

    def evolve(self, **changes: Any) -> CanaryStatus:
        return replace(self, **changes)

    @property
    def condition_status(self) -> str:
        if self.phase in {Phase.INITIALIZED, Phase.SUCCEEDED}:
            return "True"
        if self.phase is Phase.FAILED:
            return "False"
        return "Unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "lastAppliedSpec": self.last_applied_spec,
            "lastAppliedConfig": self.last_applied_config,
            "trackedSpec": self.tracked_spec,
            "trackedConfig": self.tracked_config,
            "canaryWeight": self.canary_weight,
            "failedChecks": self.failed_checks,
            "iterations": self.iterations,
            "lastTransitionTime": self.last_transition_time,
            "lastCheckTime": self.last_check_time,
            "conditions": [
                {
                    "type": "Promoted",
                    "status": self.condition_status,
                    "reason": self.condition_reason,
                    "message": self.condition_message,
                }
            ],
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> CanaryStatus:
        if not raw:
            return cls()
        try:
            phase = Phase(raw.get("phase") or Phase.INITIALIZING.value)
        except ValueError:
            phase = Phase.INITIALIZING
        conditions = raw.get("conditions") or [{}]
        condition = conditions[0] if isinstance(conditions[0], Mapping) else {}
        return cls(
            phase=phase,
            last_applied_spec=str(raw.get("lastAppliedSpec") or ""),
            last_applied_config=str(raw.get("lastAppliedConfig") or ""),
            tracked_spec=str(raw.get("trackedSpec") or ""),
            tracked_config=str(raw.get("trackedConfig") or ""),
            canary_weight=int(raw.get("canaryWeight") or 0),
            failed_checks=int(raw.get("failedChecks") or 0),
            iterations=int(raw.get("iterations") or 0),
            last_transition_time=raw.get("lastTransitionTime"),
            last_check_time=raw.get("lastCheckTime"),
            condition_reason=str(condition.get("reason") or ""),
            condition_message=str(condition.get("message") or ""),
        )


@dataclass
class Canary:
    """A Canary custom object, decoded from the ``CustomObjectsApi`` payload."""

    namespace: str
    name: str
    target_ref: TargetRef
    analysis: AnalysisPolicy = field(default_factory=AnalysisPolicy)
    tracked_labels: tuple[str, ...] = DEFAULT_TRACKED_LABELS
    status: CanaryStatus = field(default_factory=CanaryStatus)
    uid: str = ""
    api_version: str = "flagger.app/v1beta1"
    resource_version: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> Canary:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        target = spec.get("targetRef") or {}
        if not target.get("kind") or not target.get("name"):
            raise ValueError(
                f"canary {metadata.get('namespace')}/{metadata.get('name')} "
                "has no spec.targetRef kind/name"
            )
        tracked = spec.get("trackedLabels")
        return cls(
            namespace=str(metadata.get("namespace") or "default"),
            name=str(metadata["name"]),
            uid=str(metadata.get("uid") or ""),
            resource_version=metadata.get("resourceVersion"),
            api_version=str(obj.get("apiVersion") or "flagger.app/v1beta1"),
            target_ref=TargetRef(
                kind=str(target["kind"]),
                name=str(target["name"]),
                api_version=str(target.get("apiVersion") or "apps/v1"),
            ),
            analysis=AnalysisPolicy.from_spec(spec.get("analysis")),
            tracked_labels=tuple(tracked) if tracked is not None else DEFAULT_TRACKED_LABELS,
            status=CanaryStatus.from_dict(obj.get("status")),
        )
