from __future__ import annotations

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError


class CanaryError(Exception):
    """Base class for errors surfaced by a reconcile attempt.

    ``reason`` is the short CamelCase string written to the Canary status
    condition and used as the ``error`` label on reconcile error metrics.
    """

    reason = "ReconcileError"


class ConfigUnavailable(CanaryError):
    """A referenced ConfigMap or Secret is missing or unreadable."""

    reason = "ConfigUnavailable"


class UnsupportedKind(CanaryError):
    """The canary target kind has no workload adapter."""

    reason = "UnsupportedKind"


class TargetNotFound(CanaryError):
    """The canary target workload no longer exists."""

    reason = "TargetNotFound"


class TransientAPIError(CanaryError):
    """Network, API server or analysis-runner hiccup; retried on the next tick."""

    reason = "TransientAPIError"


class AnalysisFailed(CanaryError):
    """The analysis runner returned an explicit failure verdict."""

    reason = "AnalysisFailed"


# Connection resets and ``_request_timeout`` expiries surface from urllib3.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    Urllib3HTTPError,
    TimeoutError,
    ConnectionError,
)


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def classify_api_exception(
    exc: ApiException,
    *,
    not_found: type[CanaryError],
    what: str,
) -> CanaryError:
    """Map a Kubernetes API failure onto the reconcile error taxonomy.

    ``404`` becomes *not_found* (``TargetNotFound`` for workloads,
    ``ConfigUnavailable`` for config objects).  Every other status is a
    :class:`TransientAPIError`.  Callers re-raise ``409`` themselves so
    conflict retries can see it.
    """
    if exc.status == 404:
        return not_found(f"{what} not found")
    return TransientAPIError(f"API call for {what} failed (status={exc.status}): {exc.reason}")
