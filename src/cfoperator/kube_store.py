"""ResourceStore backed by a Kubernetes API server.

Custom records (Korifi and Calico kinds) go through ``CustomObjectsApi``;
Secrets through ``CoreV1Api``. The client is synchronous, so every call runs
in the default executor and is bounded by the store timeout.

Writes are JSON merge patches. Each patch carries the base record's
``metadata.resourceVersion``, which the API server treats as a
precondition: a stale base is answered with 409 and surfaces as
ConflictError, exactly like the in-memory store.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from pydantic import ValidationError

from .models import Resource, Secret
from .patch import SERVER_MANAGED_METADATA, object_merge_patch, status_merge_patch
from .store import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
    WatchEvent,
    WatchEventType,
    WatchHandler,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

DEFAULT_TIMEOUT_SECONDS = 30.0
WATCH_TIMEOUT_SECONDS = 300
WATCH_BACKOFF_MAX_SECONDS = 30.0

_WATCH_EVENT_TYPES = {t.value: t for t in WatchEventType}


def label_selector(labels: Mapping[str, str] | None) -> str | None:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def field_selector(fields: Mapping[str, str] | None) -> str | None:
    if not fields:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(fields.items()))


def group_version(kind: type[Resource]) -> tuple[str, str]:
    """Split ``group/version``; core kinds have an empty group."""
    if "/" not in kind.API_VERSION:
        return "", kind.API_VERSION
    group, version = kind.API_VERSION.split("/", 1)
    return group, version


class KubernetesStore:
    """Implementation of :class:`~cfoperator.store.ResourceStore` over the Kubernetes API."""

    def __init__(
        self,
        api_client: client.ApiClient | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        custom_api: Any = None,
        core_api: Any = None,
    ) -> None:
        self._api_client = api_client or client.ApiClient()
        self._custom = custom_api or client.CustomObjectsApi(self._api_client)
        self._core = core_api or client.CoreV1Api(self._api_client)
        self._timeout = timeout
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._watchers: list[watch.Watch] = []
        self._watchers_lock = threading.Lock()

    @classmethod
    def from_environment(cls, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> KubernetesStore:
        """Load in-cluster credentials, falling back to the local kubeconfig.

        Raises:
            StoreError: If neither configuration can be loaded.
        """
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            try:
                config.load_kube_config()
                logger.info("Loaded Kubernetes configuration from kubeconfig")
            except (ConfigException, OSError) as e:
                raise StoreError(f"Failed to load Kubernetes configuration: {e}") from e
        return cls(client.ApiClient(), timeout=timeout)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, kind: type[R], namespace: str | None, name: str) -> R:
        if kind is Secret:
            data = await self._call(
                kind, namespace, name, self._core.read_namespaced_secret, name=name, namespace=namespace
            )
            return kind.from_dict(self._to_dict(data))

        group, version = group_version(kind)
        if kind.NAMESPACED:
            data = await self._call(
                kind,
                namespace,
                name,
                self._custom.get_namespaced_custom_object,
                group=group,
                version=version,
                namespace=namespace,
                plural=kind.PLURAL,
                name=name,
            )
        else:
            data = await self._call(
                kind,
                None,
                name,
                self._custom.get_cluster_custom_object,
                group=group,
                version=version,
                plural=kind.PLURAL,
                name=name,
            )
        return kind.from_dict(data)

    async def list(
        self,
        kind: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
        fields: Mapping[str, str] | None = None,
    ) -> list[R]:
        selectors: dict[str, Any] = {}
        if (ls := label_selector(labels)) is not None:
            selectors["label_selector"] = ls
        if (fs := field_selector(fields)) is not None:
            selectors["field_selector"] = fs

        list_fn, kwargs = self._list_call(kind, namespace)
        data = await self._call(kind, namespace, "", list_fn, **kwargs, **selectors)
        items = self._to_dict(data).get("items") or []
        return [kind.from_dict(item) for item in items]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, obj: R) -> R:
        kind = type(obj)
        body = obj.to_dict()
        body.pop("status", None)
        for field_name in SERVER_MANAGED_METADATA:
            body["metadata"].pop(field_name, None)

        if kind is Secret:
            data = await self._call(
                kind,
                obj.namespace,
                obj.name,
                self._core.create_namespaced_secret,
                creating=True,
                namespace=obj.namespace,
                body=body,
            )
            return kind.from_dict(self._to_dict(data))

        group, version = group_version(kind)
        if kind.NAMESPACED:
            data = await self._call(
                kind,
                obj.namespace,
                obj.name,
                self._custom.create_namespaced_custom_object,
                creating=True,
                group=group,
                version=version,
                namespace=obj.namespace,
                plural=kind.PLURAL,
                body=body,
            )
        else:
            data = await self._call(
                kind,
                None,
                obj.name,
                self._custom.create_cluster_custom_object,
                creating=True,
                group=group,
                version=version,
                plural=kind.PLURAL,
                body=body,
            )
        return kind.from_dict(data)

    async def patch(self, obj: R, base: R) -> R:
        body = object_merge_patch(base, obj)
        body.pop("status", None)
        if not body:
            return await self.get(type(obj), obj.namespace, obj.name)
        return await self._patch(obj, self._with_version(body, base), status=False)

    async def patch_status(self, obj: R, base: R) -> R:
        body = status_merge_patch(base, obj)
        if not body:
            return await self.get(type(obj), obj.namespace, obj.name)
        return await self._patch(obj, self._with_version(body, base), status=True)

    async def delete(self, obj: Resource) -> None:
        kind = type(obj)
        if kind is Secret:
            await self._call(
                kind,
                obj.namespace,
                obj.name,
                self._core.delete_namespaced_secret,
                name=obj.name,
                namespace=obj.namespace,
            )
            return

        group, version = group_version(kind)
        if kind.NAMESPACED:
            await self._call(
                kind,
                obj.namespace,
                obj.name,
                self._custom.delete_namespaced_custom_object,
                group=group,
                version=version,
                namespace=obj.namespace,
                plural=kind.PLURAL,
                name=obj.name,
                propagation_policy="Background",
            )
        else:
            await self._call(
                kind,
                None,
                obj.name,
                self._custom.delete_cluster_custom_object,
                group=group,
                version=version,
                plural=kind.PLURAL,
                name=obj.name,
                propagation_policy="Background",
            )

    # ------------------------------------------------------------------
    # Watch
    # ------------------------------------------------------------------

    def watch(self, kind: type[Resource], handler: WatchHandler) -> None:
        """Stream changes of ``kind`` to ``handler`` from a daemon thread.

        The handler runs on the watch thread; it must hand work over to the
        event loop itself (the scheduler uses ``call_soon_threadsafe``).
        """
        thread = threading.Thread(
            target=self._watch_loop,
            args=(kind, handler),
            name=f"watch-{kind.PLURAL}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def close(self) -> None:
        """Stop all watch streams."""
        self._stop.set()
        with self._watchers_lock:
            for watcher in self._watchers:
                watcher.stop()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []

    def _watch_loop(self, kind: type[Resource], handler: WatchHandler) -> None:
        list_fn, kwargs = self._list_call(kind, None)
        resource_version: str | None = None
        backoff_seconds = 1.0

        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watchers_lock:
                self._watchers.append(watcher)
            try:
                stream_kwargs: dict[str, Any] = {"timeout_seconds": WATCH_TIMEOUT_SECONDS}
                if resource_version:
                    stream_kwargs["resource_version"] = resource_version
                for event in watcher.stream(list_fn, **kwargs, **stream_kwargs):
                    if self._stop.is_set():
                        break
                    resource_version = self._dispatch(kind, handler, event) or resource_version
                backoff_seconds = 1.0
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Watch resource version expired, restarting", extra={"kind": kind.KIND})
                    resource_version = None
                    continue
                logger.exception("Kubernetes API watch error", extra={"kind": kind.KIND, "status": e.status})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, WATCH_BACKOFF_MAX_SECONDS)
            except Exception:
                logger.exception("Unexpected watch error", extra={"kind": kind.KIND})
                self._stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, WATCH_BACKOFF_MAX_SECONDS)
            finally:
                watcher.stop()
                with self._watchers_lock:
                    if watcher in self._watchers:
                        self._watchers.remove(watcher)

    def _dispatch(
        self, kind: type[Resource], handler: WatchHandler, event: Mapping[str, Any]
    ) -> str | None:
        """Deliver one raw watch event; returns its resourceVersion."""
        event_type = _WATCH_EVENT_TYPES.get(str(event.get("type", "")))
        raw = event.get("object")
        if event_type is None or raw is None:
            return None
        data = self._to_dict(raw)
        try:
            obj = kind.from_dict(data)
        except ValidationError as e:
            logger.warning(
                "Skipping invalid record from watch",
                extra={"kind": kind.KIND, "error": str(e)},
            )
            return None
        handler(WatchEvent(type=event_type, obj=obj))
        return obj.metadata.resource_version

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _list_call(
        self, kind: type[Resource], namespace: str | None
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        if kind is Secret:
            if namespace:
                return self._core.list_namespaced_secret, {"namespace": namespace}
            return self._core.list_secret_for_all_namespaces, {}

        group, version = group_version(kind)
        if kind.NAMESPACED and namespace:
            return self._custom.list_namespaced_custom_object, {
                "group": group,
                "version": version,
                "namespace": namespace,
                "plural": kind.PLURAL,
            }
        return self._custom.list_cluster_custom_object, {
            "group": group,
            "version": version,
            "plural": kind.PLURAL,
        }

    async def _patch(self, obj: R, body: dict[str, Any], *, status: bool) -> R:
        kind = type(obj)
        if kind is Secret:
            data = await self._call(
                kind,
                obj.namespace,
                obj.name,
                self._core.patch_namespaced_secret,
                name=obj.name,
                namespace=obj.namespace,
                body=body,
            )
            return kind.from_dict(self._to_dict(data))

        group, version = group_version(kind)
        if kind.NAMESPACED:
            fn = (
                self._custom.patch_namespaced_custom_object_status
                if status
                else self._custom.patch_namespaced_custom_object
            )
            data = await self._call(
                kind,
                obj.namespace,
                obj.name,
                fn,
                group=group,
                version=version,
                namespace=obj.namespace,
                plural=kind.PLURAL,
                name=obj.name,
                body=body,
            )
        else:
            fn = (
                self._custom.patch_cluster_custom_object_status
                if status
                else self._custom.patch_cluster_custom_object
            )
            data = await self._call(
                kind,
                None,
                obj.name,
                fn,
                group=group,
                version=version,
                plural=kind.PLURAL,
                name=obj.name,
                body=body,
            )
        return kind.from_dict(data)

    @staticmethod
    def _with_version(body: dict[str, Any], base: Resource) -> dict[str, Any]:
        if base.metadata.resource_version:
            body.setdefault("metadata", {})["resourceVersion"] = base.metadata.resource_version
        return body

    def _to_dict(self, data: Any) -> dict[str, Any]:
        if isinstance(data, dict):
            return data
        return self._api_client.sanitize_for_serialization(data)

    async def _call(
        self,
        kind: type[Resource],
        namespace: str | None,
        name: str,
        fn: Callable[..., Any],
        /,
        *,
        creating: bool = False,
        **kwargs: Any,
    ) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: fn(**kwargs)),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            raise StoreError(
                f"Kubernetes API call for {kind.KIND} {namespace or ''}/{name} "
                f"timed out after {self._timeout}s"
            ) from e
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(kind.KIND, namespace if kind.NAMESPACED else None, name) from e
            if e.status == 409 and creating:
                raise AlreadyExistsError(f"{kind.KIND} {namespace or ''}/{name} already exists") from e
            if e.status == 409:
                raise ConflictError(f"{kind.KIND} {namespace or ''}/{name}: {e.reason}") from e
            raise StoreError(
                f"Kubernetes API error for {kind.KIND} {namespace or ''}/{name}: "
                f"{e.status} {e.reason}"
            ) from e
