"""Desired-state store with optimistic-concurrency updates."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

logger = logging.getLogger(__name__)

GROUP = "infrastructure.cluster.x-k8s.io"
VERSION = "v1beta1"
MACHINE_PLURAL = "cloudsigmamachines"
CLUSTER_PLURAL = "cloudsigmaclusters"


class StoreError(Exception):
    """Base error for desired-state store operations."""


class ConflictError(StoreError):
    """The record changed since it was read."""


class RecordNotFound(StoreError):
    """The record does not exist."""


def _meta(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.setdefault("metadata", {})


class CustomObjectStore:
    """
    Store backed by namespaced Kubernetes custom objects.

    ``replace`` and ``replace_status`` send the resourceVersion that was read,
    so the API server rejects writes based on a stale copy with 409.
    """

    def __init__(
        self,
        plural: str,
        group: str = GROUP,
        version: str = VERSION,
        api: Optional[client.CustomObjectsApi] = None,
    ):
        self.group = group
        self.version = version
        self.plural = plural
        self.api = api or client.CustomObjectsApi()

    def get(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return self.api.get_namespaced_custom_object(self.group, self.version, namespace, self.plural, name)
        except ApiException as e:
            raise self._translate(e, namespace, name) from e

    def list(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            if namespace:
                resp = self.api.list_namespaced_custom_object(self.group, self.version, namespace, self.plural)
            else:
                resp = self.api.list_cluster_custom_object(self.group, self.version, self.plural)
        except ApiException as e:
            raise self._translate(e, namespace or "", "") from e
        return list(resp.get("items") or [])

    def replace(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = _meta(obj)
        try:
            return self.api.replace_namespaced_custom_object(
                self.group, self.version, meta["namespace"], self.plural, meta["name"], obj
            )
        except ApiException as e:
            raise self._translate(e, meta.get("namespace", ""), meta.get("name", "")) from e

    def replace_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        meta = _meta(obj)
        try:
            return self.api.replace_namespaced_custom_object_status(
                self.group, self.version, meta["namespace"], self.plural, meta["name"], obj
            )
        except ApiException as e:
            raise self._translate(e, meta.get("namespace", ""), meta.get("name", "")) from e

    def watch(self, stop_event: threading.Event, timeout_seconds: int = 60) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event type, object) pairs until ``stop_event`` is set."""
        resource_version = None
        while not stop_event.is_set():
            w = watch.Watch()
            kwargs: Dict[str, Any] = {"timeout_seconds": timeout_seconds}
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                for event in w.stream(
                    self.api.list_cluster_custom_object, self.group, self.version, self.plural, **kwargs
                ):
                    if stop_event.is_set():
                        w.stop()
                        return
                    obj = event.get("object") or {}
                    resource_version = (obj.get("metadata") or {}).get("resourceVersion", resource_version)
                    yield event.get("type", ""), obj
            except ApiException as e:
                if e.status == 410:
                    resource_version = None
                    continue
                logger.warning(f"Watch on {self.plural} failed: {e}")
                stop_event.wait(5.0)

    def _translate(self, e: ApiException, namespace: str, name: str) -> Exception:
        if e.status == 404:
            return RecordNotFound(f"{self.plural} {namespace}/{name} not found")
        if e.status == 409:
            return ConflictError(f"{self.plural} {namespace}/{name} was modified concurrently")
        return e


def update_with_retry(
    store: Any,
    namespace: str,
    name: str,
    mutate: Callable[[Dict[str, Any]], bool],
    attempts: int = 5,
    status: bool = True,
) -> Optional[Dict[str, Any]]:
    """
    Re-fetch, mutate and write a record, retrying on version conflicts.

    ``mutate`` edits the fresh object in place and returns False when no
    write is needed. It may raise to abort the update.

    Returns:
        The stored object, or None if ``mutate`` declined to write.

    Raises:
        ConflictError: Every attempt hit a version conflict
    """
    last: Optional[ConflictError] = None
    for attempt in range(attempts):
        obj = store.get(namespace, name)
        if not mutate(obj):
            return None
        try:
            if status:
                return store.replace_status(obj)
            return store.replace(obj)
        except ConflictError as e:
            last = e
            logger.debug(f"Conflict writing {namespace}/{name} (attempt {attempt + 1}/{attempts})")
    raise ConflictError(f"gave up writing {namespace}/{name} after {attempts} conflicts") from last
