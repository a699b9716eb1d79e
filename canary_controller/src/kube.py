from __future__ import annotations

import json
import logging
from hashlib import sha256
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, AppsV1Api, CoreV1Api, CustomObjectsApi, V1OwnerReference
from kubernetes.config.config_exception import ConfigException
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from canary_controller.src.canary import Canary
from canary_controller.src.errors import is_conflict

LOGGER = logging.getLogger(__name__)

_SERIALIZER = ApiClient()

# Optimistic-concurrency writes re-read the object on every attempt, so a
# conflict only needs a short pause before the next try.
retry_on_conflict = retry(
    retry=retry_if_exception(is_conflict),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def to_plain(obj: Any) -> Any:
    """Serialize a ``kubernetes.client`` model into plain JSON-compatible data (camelCase keys)."""
    return _SERIALIZER.sanitize_for_serialization(obj)


def stable_hash(obj: Any) -> str:
    """Return a SHA-256 hex digest of *obj* that does not depend on key order."""
    payload = json.dumps(to_plain(obj), sort_keys=True, separators=(",", ":"))
    return sha256(payload.encode("utf-8")).hexdigest()


def owner_reference(canary: Canary) -> V1OwnerReference:
    """Owner reference making an object garbage-collected together with *canary*."""
    return V1OwnerReference(
        api_version=canary.api_version,
        kind="Canary",
        name=canary.name,
        uid=canary.uid,
        controller=True,
        block_owner_deletion=True,
    )
