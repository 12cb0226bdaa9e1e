from __future__ import annotations

import asyncio
import functools
import socket
import threading
from collections.abc import Callable, Iterator
from typing import Any

import structlog
from kubernetes import client, config, watch
from kubernetes.client import ApiClient
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import ProtocolError

from clusterdeck.exceptions import ClientConstructionError, KubernetesApiError, NotFoundError
from clusterdeck.schemas.cluster import ClusterRecord
from clusterdeck.services.cluster_registry import ClusterRegistry

logger = structlog.get_logger(__name__)

ALL_NAMESPACES = "all"


def _api_error(action: str, exc: ApiException) -> KubernetesApiError | NotFoundError:
    details = {"status": exc.status, "reason": exc.reason}
    if exc.status == 404:
        return NotFoundError(f"{action}: not found", details=details)
    return KubernetesApiError(f"{action} failed: {exc.reason or exc.status}", details=details)


def abort_response(response: Any) -> None:
    """Shut down the socket under a streaming urllib3 response.

    A read blocked on that socket in another thread returns immediately
    instead of waiting for the next chunk from the API server.
    """
    connection = getattr(response, "connection", None) or getattr(response, "_connection", None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        logger.debug("kube.response_abort_failed", error=str(exc))


class _AbortableStream:
    """Keeps hold of the live HTTP response so ``stop()`` can cut a blocked read short."""

    def __init__(self) -> None:
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._response: Any = None
        self._watch: watch.Watch | None = None

    def _capturing(self, func: Callable[..., Any]) -> Callable[..., Any]:
        # watch.Watch reads the docstring of func, so keep it via wraps
        @functools.wraps(func)
        def call(*args: Any, **kwargs: Any) -> Any:
            response = func(*args, **kwargs)
            with self._lock:
                self._response = response
                stopped = self._stopped.is_set()
            if stopped:
                abort_response(response)
            return response

        return call

    def stop(self) -> None:
        with self._lock:
            self._stopped.set()
            response = self._response
        if self._watch is not None:
            self._watch.stop()
        if response is not None:
            abort_response(response)


class PodWatch(_AbortableStream):
    """Blocking iterator over pod change notifications.

    Re-watches after each server-side timeout window and relists from scratch
    when the API server reports the resource version as expired (410).
    """

    def __init__(self, core_v1: client.CoreV1Api, namespace: str, timeout_seconds: int) -> None:
        super().__init__()
        self._core_v1 = core_v1
        self._namespace = namespace
        self._timeout_seconds = timeout_seconds

    def __iter__(self) -> Iterator[dict[str, Any]]:
        resource_version: str | None = None
        while not self._stopped.is_set():
            self._watch = watch.Watch()
            func, args = self._list_call()
            kwargs: dict[str, Any] = {"timeout_seconds": self._timeout_seconds}
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                for event in self._watch.stream(self._capturing(func), *args, **kwargs):
                    if self._stopped.is_set():
                        return
                    obj = event.get("object")
                    version = getattr(getattr(obj, "metadata", None), "resource_version", None)
                    if version:
                        resource_version = version
                    yield event
            except ApiException as exc:
                if exc.status != 410:
                    raise
                logger.info("kube.pod_watch_relist", namespace=self._namespace)
                resource_version = None
            except (OSError, ProtocolError):
                # The socket was shut down by stop()
                if self._stopped.is_set():
                    return
                raise

    def _list_call(self) -> tuple[Any, tuple[str, ...]]:
        if self._namespace == ALL_NAMESPACES:
            return self._core_v1.list_pod_for_all_namespaces, ()
        return self._core_v1.list_namespaced_pod, (self._namespace,)


class LogFollow(_AbortableStream):
    """Blocking iterator over container log lines, oldest first, then followed."""

    def __init__(
        self, core_v1: client.CoreV1Api, namespace: str, pod: str, container: str, tail_lines: int
    ) -> None:
        super().__init__()
        self._core_v1 = core_v1
        self._namespace = namespace
        self._pod = pod
        self._container = container
        self._tail_lines = tail_lines
        self._watch = watch.Watch()

    def __iter__(self) -> Iterator[str]:
        stream = self._watch.stream(
            self._capturing(self._core_v1.read_namespaced_pod_log),
            name=self._pod,
            namespace=self._namespace,
            container=self._container,
            follow=True,
            tail_lines=self._tail_lines,
        )
        try:
            for line in stream:
                if self._stopped.is_set():
                    return
                yield line
        except (OSError, ProtocolError):
            if self._stopped.is_set():
                return
            raise


class ClusterClient:
    """API handle bound to one registered cluster's isolated credential."""

    def __init__(self, cluster_id: str, api_client: ApiClient) -> None:
        self.cluster_id = cluster_id
        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)

    def list_namespaces(self) -> list[str]:
        try:
            items = self.core_v1.list_namespace().items
        except ApiException as exc:
            raise _api_error("List namespaces", exc) from exc
        return sorted(ns.metadata.name for ns in items if ns.metadata and ns.metadata.name)

    def list_pods(self, namespace: str) -> list[Any]:
        try:
            if namespace == ALL_NAMESPACES:
                return list(self.core_v1.list_pod_for_all_namespaces().items)
            return list(self.core_v1.list_namespaced_pod(namespace).items)
        except ApiException as exc:
            raise _api_error("List pods", exc) from exc

    def delete_pod(self, namespace: str, name: str) -> None:
        try:
            self.core_v1.delete_namespaced_pod(name=name, namespace=namespace)
        except ApiException as exc:
            raise _api_error(f"Delete pod {namespace}/{name}", exc) from exc

    def watch_pods(self, namespace: str, timeout_seconds: int) -> PodWatch:
        return PodWatch(self.core_v1, namespace, timeout_seconds)

    def follow_log(self, namespace: str, pod: str, container: str, tail_lines: int) -> LogFollow:
        return LogFollow(self.core_v1, namespace, pod, container, tail_lines)

    def close(self) -> None:
        try:
            self.api_client.close()
        except Exception as exc:  # pragma: no cover
            logger.debug("kube.client_close_failed", cluster_id=self.cluster_id, error=str(exc))


def build_api_client(bundle: dict[str, Any], context_name: str) -> ApiClient:
    return config.new_client_from_config_dict(bundle, context=context_name, persist_config=False)


class KubeClientFactory:
    """Resolves a cluster id to a working API client through the registry and vault."""

    def __init__(self, registry: ClusterRegistry, connect_timeout: float) -> None:
        self._registry = registry
        self._connect_timeout = connect_timeout

    async def for_cluster(self, cluster_id: str) -> ClusterClient:
        record = await self._registry.require(cluster_id)
        return await self.for_record(record)

    async def for_record(self, record: ClusterRecord) -> ClusterClient:
        bundle = await asyncio.to_thread(self._registry.vault.read_credential, record.config_path)
        try:
            api_client = await asyncio.wait_for(
                asyncio.to_thread(build_api_client, bundle, record.context_name),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("kube.client_timeout", cluster_id=record.id, timeout=self._connect_timeout)
            raise ClientConstructionError(
                f"Timed out building a client for cluster '{record.name}'",
                details={"cluster_id": record.id},
            ) from exc
        except (ConfigException, ValueError, TypeError, OSError) as exc:
            logger.warning("kube.client_failed", cluster_id=record.id, error=str(exc))
            raise ClientConstructionError(
                f"Cannot build a client for cluster '{record.name}': {exc}",
                details={"cluster_id": record.id},
            ) from exc
        return ClusterClient(record.id, api_client)
