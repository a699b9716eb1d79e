from __future__ import annotations

import logging
import secrets
from typing import Any

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    CustomObjectsApi,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from canary_controller.src.canary import Canary, CanaryStatus
from canary_controller.src.errors import TRANSPORT_ERRORS, TransientAPIError, is_conflict
from canary_controller.src.kube import retry_on_conflict

LOGGER = logging.getLogger(__name__)


class CanaryStore:
    """Reads Canary custom objects and persists their status sub-resource.

    Status writes carry the last observed ``resourceVersion``; on ``409
    Conflict`` the object is re-read and the write retried, which is safe
    because the controller is the only writer of ``status``.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        group: str = "flagger.app",
        version: str = "v1beta1",
        plural: str = "canaries",
        request_timeout: float | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural
        self.request_timeout = request_timeout

    def list_raw(self, namespace: str = "", **kwargs: Any) -> dict[str, Any]:
        if namespace:
            return self.custom_api.list_namespaced_custom_object(
                self.group, self.version, namespace, self.plural, **kwargs
            )
        return self.custom_api.list_cluster_custom_object(
            self.group, self.version, self.plural, **kwargs
        )

    def list(self, namespace: str = "") -> tuple[list[Canary], str | None]:
        """Return every decodable Canary and the list ``resourceVersion``."""
        raw = self.list_raw(namespace, _request_timeout=self.request_timeout)
        canaries: list[Canary] = []
        for item in raw.get("items") or []:
            try:
                canaries.append(Canary.from_object(item))
            except (KeyError, TypeError, ValueError):
                metadata = item.get("metadata") or {}
                LOGGER.warning(
                    "Skipping invalid canary %s/%s",
                    metadata.get("namespace"),
                    metadata.get("name"),
                    exc_info=True,
                )
        resource_version = (raw.get("metadata") or {}).get("resourceVersion")
        return canaries, resource_version

    def get(self, namespace: str, name: str) -> Canary | None:
        try:
            raw = self.custom_api.get_namespaced_custom_object(
                self.group,
                self.version,
                namespace,
                self.plural,
                name,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise TransientAPIError(
                f"reading canary {namespace}/{name} failed (status={exc.status})"
            ) from exc
        except TRANSPORT_ERRORS as exc:
            raise TransientAPIError(f"reading canary {namespace}/{name} failed: {exc}") from exc
        return Canary.from_object(raw)

    @retry_on_conflict
    def _replace_status(self, canary: Canary, status: CanaryStatus) -> dict[str, Any]:
        body = {
            "apiVersion": canary.api_version,
            "kind": "Canary",
            "metadata": {
                "name": canary.name,
                "namespace": canary.namespace,
                "resourceVersion": canary.resource_version,
            },
            "status": status.to_dict(),
        }
        try:
            return self.custom_api.replace_namespaced_custom_object_status(
                self.group,
                self.version,
                canary.namespace,
                self.plural,
                canary.name,
                body,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if is_conflict(exc):
                latest = self.get(canary.namespace, canary.name)
                if latest is not None:
                    canary.resource_version = latest.resource_version
                raise
            raise TransientAPIError(
                f"writing status of canary {canary.namespace}/{canary.name} "
                f"failed (status={exc.status})"
            ) from exc

    def update_status(self, canary: Canary, status: CanaryStatus) -> Canary:
        """Persist *status* and return *canary* carrying it and the new resourceVersion."""
        response = self._replace_status(canary, status)
        metadata = (response or {}).get("metadata") or {}
        canary.resource_version = metadata.get("resourceVersion", canary.resource_version)
        canary.status = status
        return canary


class EventRecorder:
    """Emits ``core/v1`` Events against a Canary for ``kubectl describe`` visibility.

    Recording is best effort; a failed event never fails a reconcile.
    """

    def __init__(self, core_api: CoreV1Api | None, component: str = "canary-controller") -> None:
        self.core_api = core_api
        self.component = component

    def record(self, canary: Canary, reason: str, message: str, event_type: str = "Normal") -> None:
        log = LOGGER.warning if event_type == "Warning" else LOGGER.info
        log("%s/%s %s: %s", canary.namespace, canary.name, reason, message)
        if self.core_api is None:
            return

        event = CoreV1Event(
            metadata=V1ObjectMeta(
                name=f"{canary.name}.{secrets.token_hex(8)}",
                namespace=canary.namespace,
            ),
            involved_object=V1ObjectReference(
                api_version=canary.api_version,
                kind="Canary",
                name=canary.name,
                namespace=canary.namespace,
                uid=canary.uid or None,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
        )
        try:
            self.core_api.create_namespaced_event(namespace=canary.namespace, body=event)
        except Exception:
            LOGGER.warning(
                "Failed to record event %s for canary %s/%s",
                reason,
                canary.namespace,
                canary.name,
                exc_info=True,
            )
