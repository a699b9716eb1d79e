from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any, Protocol

from kubernetes.client import ApiException, CoreV1Api, V1ConfigMap, V1ObjectMeta, V1Secret

from canary_controller.src.canary import Canary, primary_name
from canary_controller.src.errors import (
    TRANSPORT_ERRORS,
    ConfigUnavailable,
    TransientAPIError,
    classify_api_exception,
    is_conflict,
)
from canary_controller.src.kube import owner_reference, retry_on_conflict
from canary_controller.src.metrics import METRICS
from canary_controller.src.references import (
    CONFIG_MAP,
    SECRET,
    ConfigRef,
    optional_refs,
    scan_pod_spec,
)

Renames = dict[str, dict[str, str]]


class PodTemplateSource(Protocol):
    namespace: str

    def pod_template(self) -> Any: ...


@dataclass(frozen=True)
class TrackedObject:
    """A referenced config object as observed during one ``track`` call.

    ``source`` is ``None`` for an optional reference whose object does not
    exist; such entries hash as empty content and are never copied.
    """

    ref: ConfigRef
    content_hash: str
    source: Any = None


@dataclass(frozen=True)
class TrackedConfig:
    fingerprint: str
    objects: dict[ConfigRef, TrackedObject] = field(default_factory=dict)


def _normalize(raw_data: Any) -> dict[str, str]:
    if not isinstance(raw_data, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw_data.items() if isinstance(k, str)}


def content_hash(obj: Any) -> str:
    """Return a SHA-256 digest of a ConfigMap or Secret payload.

    Covers ``data`` and ``binary_data`` with sorted keys, so any key added,
    removed or changed yields a different digest while metadata edits
    (labels, annotations, resourceVersion) do not.
    """
    payload = {
        "data": _normalize(getattr(obj, "data", None)),
        "binaryData": _normalize(getattr(obj, "binary_data", None)),
    }
    stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


EMPTY_CONTENT_HASH = content_hash(None)


def fingerprint(objects: Any) -> str:
    """Fold per-object content hashes into one digest, independent of input order."""
    digest = sha256()
    for tracked in sorted(objects, key=lambda item: item.ref):
        digest.update(f"{tracked.ref}={tracked.content_hash}\n".encode())
    return digest.hexdigest()


class ConfigTracker:
    """Fingerprints the ConfigMaps and Secrets a workload depends on and keeps
    their ``-primary`` copies in sync.

    The tracker keeps no state between calls: the last fingerprint lives in
    the Canary status and is compared by the release state machine.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        annotation_prefix: str = "flagger.app",
        request_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.annotation_prefix = annotation_prefix
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)

    @property
    def tracking_annotation(self) -> str:
        return f"{self.annotation_prefix}/config-tracking"

    @property
    def hash_annotation(self) -> str:
        return f"{self.annotation_prefix}/config-hash"

    def _tracking_disabled(self, obj: Any) -> bool:
        annotations = getattr(getattr(obj, "metadata", None), "annotations", None) or {}
        return str(annotations.get(self.tracking_annotation, "")).lower() == "disabled"

    def _read(self, kind: str, namespace: str, name: str) -> Any | None:
        reader = (
            self.core_api.read_namespaced_config_map
            if kind == CONFIG_MAP
            else self.core_api.read_namespaced_secret
        )
        try:
            return reader(name=name, namespace=namespace, _request_timeout=self.request_timeout)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise classify_api_exception(
                exc, not_found=ConfigUnavailable, what=f"{kind} {namespace}/{name}"
            ) from exc
        except TRANSPORT_ERRORS as exc:
            raise TransientAPIError(f"reading {kind} {namespace}/{name} failed: {exc}") from exc

    def track(self, workload: PodTemplateSource) -> TrackedConfig:
        """Scan *workload*'s pod template and fingerprint every referenced object.

        Raises :class:`ConfigUnavailable` when a required reference cannot be
        found; promotion must not proceed without canonical content to copy.
        """
        pod_spec = workload.pod_template()
        namespace = workload.namespace
        refs = scan_pod_spec(pod_spec, namespace)
        optional = optional_refs(pod_spec, namespace)

        objects: dict[ConfigRef, TrackedObject] = {}
        missing: list[str] = []
        for ref in sorted(refs):
            source = self._read(ref.kind, ref.namespace, ref.name)
            if source is None:
                if ref in optional:
                    objects[ref] = TrackedObject(ref=ref, content_hash=EMPTY_CONTENT_HASH)
                else:
                    missing.append(str(ref))
                continue
            if self._tracking_disabled(source):
                self.logger.debug("Config tracking disabled for %s", ref)
                continue
            objects[ref] = TrackedObject(ref=ref, content_hash=content_hash(source), source=source)

        if missing:
            raise ConfigUnavailable(f"referenced config not found: {', '.join(missing)}")

        return TrackedConfig(fingerprint=fingerprint(objects.values()), objects=objects)

    def apply_primary(
        self,
        workload: PodTemplateSource,
        canary: Canary,
        tracked: TrackedConfig | None = None,
    ) -> Renames:
        """Create or update the ``-primary`` copy of every tracked object.

        Returns the ``{kind: {name: primary_name}}`` map the workload adapter
        uses to point the primary pod template at the copies.  Objects whose
        primary copy already holds the same content are not written.
        """
        if tracked is None:
            tracked = self.track(workload)

        renames: Renames = {CONFIG_MAP: {}, SECRET: {}}
        for ref, tracked_object in sorted(tracked.objects.items()):
            if tracked_object.source is None:
                continue
            self._sync_primary_object(tracked_object, canary)
            renames[ref.kind][ref.name] = primary_name(ref.name)
        return renames

    def _primary_body(self, tracked_object: TrackedObject, canary: Canary) -> Any:
        ref = tracked_object.ref
        source = tracked_object.source
        source_meta = getattr(source, "metadata", None)
        metadata = V1ObjectMeta(
            name=primary_name(ref.name),
            namespace=ref.namespace,
            labels=dict(getattr(source_meta, "labels", None) or {}),
            annotations={self.hash_annotation: tracked_object.content_hash},
            owner_references=[owner_reference(canary)],
        )
        if ref.kind == CONFIG_MAP:
            return V1ConfigMap(
                metadata=metadata,
                data=getattr(source, "data", None),
                binary_data=getattr(source, "binary_data", None),
            )
        return V1Secret(
            metadata=metadata,
            type=getattr(source, "type", None),
            data=getattr(source, "data", None),
        )

    @retry_on_conflict
    def _sync_primary_object(self, tracked_object: TrackedObject, canary: Canary) -> bool:
        ref = tracked_object.ref
        target_name = primary_name(ref.name)
        existing = self._read(ref.kind, ref.namespace, target_name)
        if existing is not None and content_hash(existing) == tracked_object.content_hash:
            self.logger.debug("%s %s/%s is up to date", ref.kind, ref.namespace, target_name)
            return False

        body = self._primary_body(tracked_object, canary)
        try:
            if existing is None:
                create = (
                    self.core_api.create_namespaced_config_map
                    if ref.kind == CONFIG_MAP
                    else self.core_api.create_namespaced_secret
                )
                create(namespace=ref.namespace, body=body, _request_timeout=self.request_timeout)
                self.logger.info("Created %s %s/%s", ref.kind, ref.namespace, target_name)
            else:
                body.metadata.resource_version = existing.metadata.resource_version
                replace = (
                    self.core_api.replace_namespaced_config_map
                    if ref.kind == CONFIG_MAP
                    else self.core_api.replace_namespaced_secret
                )
                replace(
                    name=target_name,
                    namespace=ref.namespace,
                    body=body,
                    _request_timeout=self.request_timeout,
                )
                self.logger.info("Updated %s %s/%s", ref.kind, ref.namespace, target_name)
        except ApiException as exc:
            if is_conflict(exc):
                raise
            raise classify_api_exception(
                exc, not_found=ConfigUnavailable, what=f"{ref.kind} {ref.namespace}/{target_name}"
            ) from exc

        METRICS.primary_writes_total.labels(kind=ref.kind).inc()
        return True
