from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any

from kubernetes.client import (
    ApiException,
    AppsV1Api,
    V1DaemonSet,
    V1DaemonSetSpec,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1StatefulSet,
    V1StatefulSetSpec,
)

from canary_controller.src.canary import Canary, primary_name
from canary_controller.src.errors import (
    TRANSPORT_ERRORS,
    TargetNotFound,
    TransientAPIError,
    UnsupportedKind,
    classify_api_exception,
    is_conflict,
)
from canary_controller.src.kube import owner_reference, retry_on_conflict, stable_hash
from canary_controller.src.metrics import METRICS
from canary_controller.src.references import rewrite_pod_spec


class WorkloadAdapter:
    """Kind-independent view of a canary target and its ``-primary`` copy.

    Subclasses only describe how their kind is read, written, scaled and
    judged ready; everything else (pod template access, label rewriting,
    primary synchronisation) is shared.  An adapter lives for a single
    reconcile attempt and caches the target object it reads.
    """

    kind = ""
    api_suffix = ""

    def __init__(
        self,
        apps_api: AppsV1Api,
        canary: Canary,
        annotation_prefix: str = "flagger.app",
        request_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.canary = canary
        self.namespace = canary.namespace
        self.name = canary.target_ref.name
        self.primary_name = primary_name(self.name)
        self.annotation_prefix = annotation_prefix
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)
        self._target: Any = None

    @property
    def hash_annotation(self) -> str:
        return f"{self.annotation_prefix}/template-hash"

    def _call(self, verb: str, **kwargs: Any) -> Any:
        method = getattr(self.apps_api, f"{verb}_namespaced_{self.api_suffix}")
        return method(namespace=self.namespace, _request_timeout=self.request_timeout, **kwargs)

    def _read(self, name: str) -> Any | None:
        try:
            return self._call("read", name=name)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise classify_api_exception(
                exc, not_found=TargetNotFound, what=f"{self.kind} {self.namespace}/{name}"
            ) from exc
        except TRANSPORT_ERRORS as exc:
            raise TransientAPIError(
                f"reading {self.kind} {self.namespace}/{name} failed: {exc}"
            ) from exc

    def get(self, refresh: bool = False) -> Any:
        """Return the canary target object, raising :class:`TargetNotFound` if it is gone."""
        if self._target is None or refresh:
            target = self._read(self.name)
            if target is None:
                raise TargetNotFound(f"{self.kind} {self.namespace}/{self.name} not found")
            self._target = target
        return self._target

    def get_primary(self) -> Any | None:
        return self._read(self.primary_name)

    def pod_template(self) -> Any:
        return self.get().spec.template.spec

    def spec_hash(self) -> str:
        """Digest of the target pod template; a change means a new release."""
        return stable_hash(self.get().spec.template)

    def _primary_labels(self, labels: Mapping[str, str] | None) -> dict[str, str]:
        """Suffix the tracked label values with ``-primary``.

        Selectors built from tracked labels (``app``, ``name`` by default) must
        not match canary pods, otherwise primary and canary would share
        services and selectors.  The suffix is added even to values that
        already end in ``-primary`` so the two selectors can never be equal.
        """
        result = dict(labels or {})
        for key in self.canary.tracked_labels:
            value = result.get(key)
            if value:
                result[key] = primary_name(value)
        return result

    def _build_primary(self, target: Any, renames: Mapping[str, Mapping[str, str]]) -> Any:
        template = copy.deepcopy(target.spec.template)
        if template.metadata is None:
            template.metadata = V1ObjectMeta()
        template.metadata.labels = self._primary_labels(template.metadata.labels)
        template.spec = rewrite_pod_spec(template.spec, renames)

        match_labels = getattr(target.spec.selector, "match_labels", None)
        selector = V1LabelSelector(match_labels=self._primary_labels(match_labels))
        metadata = V1ObjectMeta(
            name=self.primary_name,
            namespace=self.namespace,
            labels=self._primary_labels(getattr(target.metadata, "labels", None)),
            annotations={self.hash_annotation: stable_hash(template)},
            owner_references=[owner_reference(self.canary)],
        )
        return self._primary_object(target, metadata, selector, template)

    def _primary_object(self, target: Any, metadata: V1ObjectMeta, selector: Any, template: Any) -> Any:
        raise NotImplementedError

    @retry_on_conflict
    def sync_primary(self, renames: Mapping[str, Mapping[str, str]] | None = None) -> bool:
        """Create or update ``<name>-primary`` from the current target pod template.

        ConfigMap/Secret references listed in *renames* are pointed at their
        primary copies.  Returns ``True`` when a write was issued; an existing
        primary with the same template hash is left untouched.
        """
        body = self._build_primary(self.get(), renames or {})
        desired_hash = body.metadata.annotations[self.hash_annotation]
        existing = self.get_primary()
        try:
            if existing is None:
                self._call("create", body=body)
                self.logger.info("Created %s %s/%s", self.kind, self.namespace, self.primary_name)
            else:
                annotations = getattr(existing.metadata, "annotations", None) or {}
                if annotations.get(self.hash_annotation) == desired_hash:
                    return False
                body.metadata.resource_version = existing.metadata.resource_version
                self._keep_primary_scale(existing, body)
                self._call("replace", name=self.primary_name, body=body)
                self.logger.info("Updated %s %s/%s", self.kind, self.namespace, self.primary_name)
        except ApiException as exc:
            if is_conflict(exc):
                raise
            raise classify_api_exception(
                exc, not_found=TargetNotFound, what=f"{self.kind} {self.namespace}/{self.primary_name}"
            ) from exc
        METRICS.primary_writes_total.labels(kind=self.kind).inc()
        return True

    def _keep_primary_scale(self, existing: Any, body: Any) -> None:
        """Preserve the live primary replica count (it may be driven by an autoscaler)."""

    def replicas(self) -> int | None:
        """Desired replica count of the target, or ``None`` where the kind has none."""
        replicas = getattr(self.get().spec, "replicas", None)
        return 1 if replicas is None else int(replicas)

    def primary_replicas(self) -> int | None:
        primary = self.get_primary()
        if primary is None:
            return None
        replicas = getattr(primary.spec, "replicas", None)
        return 1 if replicas is None else int(replicas)

    def set_replicas(self, replicas: int) -> None:
        """Scale the canary target; no-op when already at *replicas*."""
        if self.replicas() == replicas:
            return
        try:
            self._call("patch", name=self.name, body={"spec": {"replicas": replicas}})
        except ApiException as exc:
            raise classify_api_exception(
                exc, not_found=TargetNotFound, what=f"{self.kind} {self.namespace}/{self.name}"
            ) from exc
        self.logger.info("Scaled %s %s/%s to %d", self.kind, self.namespace, self.name, replicas)
        self._target = None

    @staticmethod
    def _generation_observed(obj: Any) -> bool:
        generation = getattr(obj.metadata, "generation", None) or 0
        observed = getattr(obj.status, "observed_generation", None) or 0
        return observed >= generation

    def _is_ready(self, obj: Any) -> bool:
        raise NotImplementedError

    def is_primary_ready(self) -> bool:
        primary = self.get_primary()
        if primary is None or primary.status is None:
            return False
        return self._is_ready(primary)

    def is_canary_ready(self) -> bool:
        target = self.get(refresh=True)
        if target.status is None:
            return False
        return self._is_ready(target)


class DeploymentAdapter(WorkloadAdapter):
    kind = "Deployment"
    api_suffix = "deployment"

    def _primary_object(self, target: Any, metadata: V1ObjectMeta, selector: Any, template: Any) -> Any:
        spec = target.spec
        return V1Deployment(
            api_version="apps/v1",
            kind=self.kind,
            metadata=metadata,
            spec=V1DeploymentSpec(
                replicas=spec.replicas,
                selector=selector,
                template=template,
                strategy=spec.strategy,
                min_ready_seconds=spec.min_ready_seconds,
                revision_history_limit=spec.revision_history_limit,
                progress_deadline_seconds=spec.progress_deadline_seconds,
            ),
        )

    def _keep_primary_scale(self, existing: Any, body: Any) -> None:
        body.spec.replicas = existing.spec.replicas

    def _is_ready(self, obj: Any) -> bool:
        desired = 1 if obj.spec.replicas is None else obj.spec.replicas
        status = obj.status
        return (
            self._generation_observed(obj)
            and (status.updated_replicas or 0) >= desired
            and (status.available_replicas or 0) >= desired
        )


class DaemonSetAdapter(WorkloadAdapter):
    """DaemonSets run one pod per eligible node and cannot be scaled."""

    kind = "DaemonSet"
    api_suffix = "daemon_set"

    def replicas(self) -> int | None:
        return None

    def primary_replicas(self) -> int | None:
        return None

    def set_replicas(self, replicas: int) -> None:
        self.logger.debug(
            "Skipping scale of %s %s/%s: replica count not applicable",
            self.kind,
            self.namespace,
            self.name,
        )

    def _primary_object(self, target: Any, metadata: V1ObjectMeta, selector: Any, template: Any) -> Any:
        spec = target.spec
        return V1DaemonSet(
            api_version="apps/v1",
            kind=self.kind,
            metadata=metadata,
            spec=V1DaemonSetSpec(
                selector=selector,
                template=template,
                update_strategy=spec.update_strategy,
                min_ready_seconds=spec.min_ready_seconds,
                revision_history_limit=spec.revision_history_limit,
            ),
        )

    def _is_ready(self, obj: Any) -> bool:
        status = obj.status
        desired = status.desired_number_scheduled or 0
        return (
            self._generation_observed(obj)
            and (status.updated_number_scheduled or 0) >= desired
            and (status.number_ready or 0) >= desired
        )


class StatefulSetAdapter(WorkloadAdapter):
    kind = "StatefulSet"
    api_suffix = "stateful_set"

    def _primary_object(self, target: Any, metadata: V1ObjectMeta, selector: Any, template: Any) -> Any:
        spec = target.spec
        return V1StatefulSet(
            api_version="apps/v1",
            kind=self.kind,
            metadata=metadata,
            spec=V1StatefulSetSpec(
                replicas=spec.replicas,
                selector=selector,
                template=template,
                service_name=spec.service_name,
                pod_management_policy=spec.pod_management_policy,
                update_strategy=spec.update_strategy,
                volume_claim_templates=spec.volume_claim_templates,
                revision_history_limit=spec.revision_history_limit,
            ),
        )

    def _keep_primary_scale(self, existing: Any, body: Any) -> None:
        body.spec.replicas = existing.spec.replicas

    def _is_ready(self, obj: Any) -> bool:
        desired = 1 if obj.spec.replicas is None else obj.spec.replicas
        status = obj.status
        return (
            self._generation_observed(obj)
            and (status.updated_replicas or 0) >= desired
            and (status.ready_replicas or 0) >= desired
        )


ADAPTERS: dict[str, type[WorkloadAdapter]] = {
    DeploymentAdapter.kind: DeploymentAdapter,
    DaemonSetAdapter.kind: DaemonSetAdapter,
    StatefulSetAdapter.kind: StatefulSetAdapter,
}


def adapter_for(canary: Canary, apps_api: AppsV1Api, **kwargs: Any) -> WorkloadAdapter:
    """Select the workload adapter for the canary's ``targetRef.kind``."""
    adapter_cls = ADAPTERS.get(canary.target_ref.kind)
    if adapter_cls is None:
        raise UnsupportedKind(
            f"target kind {canary.target_ref.kind!r} is not supported "
            f"(supported: {', '.join(sorted(ADAPTERS))})"
        )
    return adapter_cls(apps_api, canary, **kwargs)
