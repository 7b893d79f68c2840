"""Desired-state store backed by the Kubernetes custom objects API.

The store reads NLB objects, writes the status subresource, manages the
finalizer and streams change notifications. The kubernetes client is
blocking, so the async methods run it in the default executor; the watch
runs in its own thread and hands keys to the dispatcher.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import threading
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import CustomObjectsApi
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .models import NLB_KIND, NLBResource, NLBStatus, ResourceKey, ResourceKind

logger = logging.getLogger(__name__)

# Server-side watch timeout; the stream is reopened after it expires
WATCH_TIMEOUT_SECONDS = 300
MAX_WATCH_BACKOFF_SECONDS = 30


class StoreError(Exception):
    """Raised when the desired-state store rejects or fails a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class InvalidResourceError(StoreError):
    """Raised when a stored object does not validate against the schema."""

    pass


class ResourceStore(Protocol):
    """What the controller and dispatcher need from the desired-state store."""

    async def list_keys(self) -> list[ResourceKey]: ...

    async def get(self, key: ResourceKey) -> NLBResource | None: ...

    async def update_status(self, resource: NLBResource, status: NLBStatus) -> None: ...

    async def add_finalizer(self, resource: NLBResource, finalizer: str) -> None: ...

    async def remove_finalizer(self, resource: NLBResource, finalizer: str) -> None: ...


def _format_validation_error(error: ValidationError) -> str:
    messages = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    return "; ".join(messages)


def parse_resource(obj: dict[str, Any], kind: ResourceKind = NLB_KIND) -> NLBResource:
    """Validate a raw custom object.

    Raises:
        InvalidResourceError: If the object does not match the schema.
    """
    try:
        return kind.model.model_validate(obj)
    except ValidationError as e:
        metadata = obj.get("metadata") or {}
        name = f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"
        raise InvalidResourceError(
            f"Invalid {kind.kind} {name}: {_format_validation_error(e)}"
        ) from e


class KubernetesResourceStore:
    """ResourceStore over CustomObjectsApi.

    Args:
        api: Custom objects API client.
        kind: Resource kind descriptor (group, version, plural).
        namespace: Namespace to operate in; empty means all namespaces.
    """

    def __init__(
        self,
        api: CustomObjectsApi,
        kind: ResourceKind = NLB_KIND,
        namespace: str = "",
    ) -> None:
        self._api = api
        self._kind = kind
        self._namespace = namespace
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def _list_objects(self) -> dict[str, Any]:
        if self._namespace:
            return self._api.list_namespaced_custom_object(
                self._kind.group, self._kind.version, self._namespace, self._kind.plural
            )
        return self._api.list_cluster_custom_object(
            self._kind.group, self._kind.version, self._kind.plural
        )

    async def list_keys(self) -> list[ResourceKey]:
        try:
            response = await self._run(self._list_objects)
        except ApiException as e:
            raise StoreError(f"Failed to list {self._kind.plural}: {e.reason}", e.status) from e

        keys = []
        for item in response.get("items", []):
            metadata = item.get("metadata") or {}
            if metadata.get("name"):
                keys.append(ResourceKey(metadata.get("namespace", "default"), metadata["name"]))
        return keys

    async def get(self, key: ResourceKey) -> NLBResource | None:
        """Read one object; None if it no longer exists."""
        try:
            obj = await self._run(
                self._api.get_namespaced_custom_object,
                self._kind.group,
                self._kind.version,
                key.namespace,
                self._kind.plural,
                key.name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(f"Failed to get {key}: {e.reason}", e.status) from e
        return parse_resource(obj, self._kind)

    async def update_status(self, resource: NLBResource, status: NLBStatus) -> None:
        key = resource.key
        try:
            await self._run(
                self._api.patch_namespaced_custom_object_status,
                self._kind.group,
                self._kind.version,
                key.namespace,
                self._kind.plural,
                key.name,
                {"status": status.to_wire()},
            )
        except ApiException as e:
            raise StoreError(f"Failed to update status of {key}: {e.reason}", e.status) from e

    async def add_finalizer(self, resource: NLBResource, finalizer: str) -> None:
        if finalizer in resource.metadata.finalizers:
            return
        await self._patch_finalizers(resource, [*resource.metadata.finalizers, finalizer])

    async def remove_finalizer(self, resource: NLBResource, finalizer: str) -> None:
        if finalizer not in resource.metadata.finalizers:
            return
        try:
            await self._patch_finalizers(
                resource, [f for f in resource.metadata.finalizers if f != finalizer]
            )
        except StoreError as e:
            if e.status == 404:
                # Object already gone; nothing left to release
                return
            raise

    async def _patch_finalizers(self, resource: NLBResource, finalizers: list[str]) -> None:
        key = resource.key
        metadata: dict[str, Any] = {"finalizers": finalizers}
        # resourceVersion turns the merge patch into a conditional update
        if resource.metadata.resource_version:
            metadata["resourceVersion"] = resource.metadata.resource_version
        try:
            await self._run(
                self._api.patch_namespaced_custom_object,
                self._kind.group,
                self._kind.version,
                key.namespace,
                self._kind.plural,
                key.name,
                {"metadata": metadata},
            )
        except ApiException as e:
            raise StoreError(f"Failed to update finalizers of {key}: {e.reason}", e.status) from e

    # -------------------------------------------------------------------------
    # Watch
    # -------------------------------------------------------------------------

    def run_watch(self, on_key: Callable[[ResourceKey], None], stop: threading.Event) -> None:
        """Stream change notifications until `stop` is set (blocking).

        Each event's key is handed to `on_key`. Expired resource versions
        (410) restart the stream from a fresh list; other failures back off
        with jitter, capped at MAX_WATCH_BACKOFF_SECONDS.
        """
        backoff_seconds = 1
        resource_version: str | None = None

        if self._namespace:
            list_func = functools.partial(
                self._api.list_namespaced_custom_object,
                self._kind.group,
                self._kind.version,
                self._namespace,
                self._kind.plural,
            )
        else:
            list_func = functools.partial(
                self._api.list_cluster_custom_object,
                self._kind.group,
                self._kind.version,
                self._kind.plural,
            )

        while not stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                kwargs: dict[str, Any] = {"timeout_seconds": WATCH_TIMEOUT_SECONDS}
                if resource_version:
                    kwargs["resource_version"] = resource_version

                for event in watcher.stream(list_func, **kwargs):
                    if stop.is_set():
                        break
                    obj = event.get("object") or {}
                    metadata = obj.get("metadata") or {}
                    if metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]
                    if metadata.get("name"):
                        on_key(ResourceKey(metadata.get("namespace", "default"), metadata["name"]))

                backoff_seconds = 1
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Watch resource version expired, restarting from a fresh list")
                    resource_version = None
                    continue
                logger.error(
                    "Kubernetes API watch error",
                    extra={"status": e.status, "error": str(e.reason)},
                )
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Unexpected watch error")
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        logger.info("Watch stopped")

    def stop_watch(self) -> None:
        """Interrupt an open watch stream."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
