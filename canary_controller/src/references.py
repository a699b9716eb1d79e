from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

CONFIG_MAP = "ConfigMap"
SECRET = "Secret"


@dataclass(frozen=True, order=True)
class ConfigRef:
    """A ConfigMap or Secret that a pod template depends on.

    Ordering is ``(kind, namespace, name)`` so a collection of references
    can always be sorted into the same sequence before hashing.
    """

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


def _containers(pod_spec: Any) -> list[Any]:
    return [
        *(getattr(pod_spec, "init_containers", None) or []),
        *(getattr(pod_spec, "containers", None) or []),
    ]


def _is_optional(source: Any) -> bool:
    return bool(getattr(source, "optional", False))


def _iter_container_refs(container: Any) -> Iterator[tuple[str, str, bool]]:
    for env_var in getattr(container, "env", None) or []:
        value_from = getattr(env_var, "value_from", None)
        if value_from is None:
            continue
        cm_key = getattr(value_from, "config_map_key_ref", None)
        if cm_key is not None and cm_key.name:
            yield CONFIG_MAP, cm_key.name, _is_optional(cm_key)
        secret_key = getattr(value_from, "secret_key_ref", None)
        if secret_key is not None and secret_key.name:
            yield SECRET, secret_key.name, _is_optional(secret_key)

    for env_from in getattr(container, "env_from", None) or []:
        cm_ref = getattr(env_from, "config_map_ref", None)
        if cm_ref is not None and cm_ref.name:
            yield CONFIG_MAP, cm_ref.name, _is_optional(cm_ref)
        secret_ref = getattr(env_from, "secret_ref", None)
        if secret_ref is not None and secret_ref.name:
            yield SECRET, secret_ref.name, _is_optional(secret_ref)


def _iter_volume_refs(volume: Any) -> Iterator[tuple[str, str, bool]]:
    cm_source = getattr(volume, "config_map", None)
    if cm_source is not None and cm_source.name:
        yield CONFIG_MAP, cm_source.name, _is_optional(cm_source)

    secret_source = getattr(volume, "secret", None)
    if secret_source is not None and secret_source.secret_name:
        yield SECRET, secret_source.secret_name, _is_optional(secret_source)

    projected = getattr(volume, "projected", None)
    for projection in getattr(projected, "sources", None) or []:
        cm_projection = getattr(projection, "config_map", None)
        if cm_projection is not None and cm_projection.name:
            yield CONFIG_MAP, cm_projection.name, _is_optional(cm_projection)
        secret_projection = getattr(projection, "secret", None)
        if secret_projection is not None and secret_projection.name:
            yield SECRET, secret_projection.name, _is_optional(secret_projection)


def _iter_refs(pod_spec: Any, namespace: str) -> Iterator[tuple[ConfigRef, bool]]:
    """Yield every ``(ref, optional)`` occurrence in declaration order.

    Volumes are scanned from the pod spec itself, which covers every source a
    container mount can resolve to as well as volumes that are declared but
    mounted only by sidecars injected later.
    """
    for container in _containers(pod_spec):
        for kind, name, optional in _iter_container_refs(container):
            yield ConfigRef(kind, namespace, name), optional
    for volume in getattr(pod_spec, "volumes", None) or []:
        for kind, name, optional in _iter_volume_refs(volume):
            yield ConfigRef(kind, namespace, name), optional


def scan_pod_spec(pod_spec: Any, namespace: str) -> set[ConfigRef]:
    """Return the distinct ConfigMap and Secret references of a pod spec.

    The scan is purely structural; whether a referenced object exists is
    decided later by the config tracker.
    """
    return {ref for ref, _ in _iter_refs(pod_spec, namespace)}


def optional_refs(pod_spec: Any, namespace: str) -> set[ConfigRef]:
    """Return references that are declared ``optional: true`` everywhere they appear."""
    required: set[ConfigRef] = set()
    optional: set[ConfigRef] = set()
    for ref, is_optional in _iter_refs(pod_spec, namespace):
        (optional if is_optional else required).add(ref)
    return optional - required


def rewrite_pod_spec(pod_spec: Any, renames: Mapping[str, Mapping[str, str]]) -> Any:
    """Return a deep copy of *pod_spec* with ConfigMap/Secret names replaced.

    *renames* maps a kind (``ConfigMap`` or ``Secret``) to ``{old: new}``.
    Names absent from the map are left alone, so untracked or optional
    references keep pointing at the original objects.
    """
    rewritten = copy.deepcopy(pod_spec)
    cm_names = renames.get(CONFIG_MAP, {})
    secret_names = renames.get(SECRET, {})

    def _rename(source: Any, attr: str, names: Mapping[str, str]) -> None:
        if source is None:
            return
        current = getattr(source, attr, None)
        if current in names:
            setattr(source, attr, names[current])

    for container in _containers(rewritten):
        for env_var in getattr(container, "env", None) or []:
            value_from = getattr(env_var, "value_from", None)
            if value_from is None:
                continue
            _rename(getattr(value_from, "config_map_key_ref", None), "name", cm_names)
            _rename(getattr(value_from, "secret_key_ref", None), "name", secret_names)
        for env_from in getattr(container, "env_from", None) or []:
            _rename(getattr(env_from, "config_map_ref", None), "name", cm_names)
            _rename(getattr(env_from, "secret_ref", None), "name", secret_names)

    for volume in getattr(rewritten, "volumes", None) or []:
        _rename(getattr(volume, "config_map", None), "name", cm_names)
        _rename(getattr(volume, "secret", None), "secret_name", secret_names)
        projected = getattr(volume, "projected", None)
        for projection in getattr(projected, "sources", None) or []:
            _rename(getattr(projection, "config_map", None), "name", cm_names)
            _rename(getattr(projection, "secret", None), "name", secret_names)

    return rewritten
