"""
Watch/stream supervisor.

Turns a pod watch or log tail request into a keyed session task. A session
resolves its cluster client first (failures are returned to the caller and
nothing is started), then drains the blocking Kubernetes stream on a reader
thread of its own and emits each mapped item on the event channel. Every exit
path, including a cancel that lands before the task's first step, closes the
session's client and removes its own table entry.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Iterable, Optional

import structlog

from clusterdeck.exceptions import AppException, StreamError
from clusterdeck.schemas.events import SessionEvent, SessionEventType, SessionInfo, SessionKind
from clusterdeck.services.cluster_registry import ClusterRegistry
from clusterdeck.services.kube_client import ALL_NAMESPACES, ClusterClient, KubeClientFactory
from clusterdeck.services.pod_mapping import pod_to_summary
from clusterdeck.services.session_table import SessionHandle, SessionTable, spawn_session
from clusterdeck.websocket.manager import EventSink

logger = structlog.get_logger(__name__)

_DONE = object()

_WATCH_EVENT_TYPES = {
    "ADDED": SessionEventType.ADDED,
    "MODIFIED": SessionEventType.MODIFIED,
    "DELETED": SessionEventType.DELETED,
}


def pod_watch_key(cluster_id: str, namespace: Optional[str]) -> tuple[str, str, str]:
    return (SessionKind.POD_WATCH.value, cluster_id, namespace or ALL_NAMESPACES)


def pod_watch_event_name(cluster_id: str, namespace: Optional[str]) -> str:
    return f"pod_watch:{cluster_id}:{namespace or ALL_NAMESPACES}"


def log_tail_key(stream_id: str) -> tuple[str, str]:
    return (SessionKind.LOG_TAIL.value, stream_id)


def log_tail_event_name(stream_id: str) -> str:
    return f"container_logs:{stream_id}"


def map_watch_event(raw: dict[str, Any]) -> Optional[SessionEvent]:
    """Map one watch notification; returns None for types the GUI does not model."""
    kind = str(raw.get("type", "")).upper()
    if kind == "ERROR":
        status = raw.get("raw_object") or raw.get("object")
        message = status.get("message") if isinstance(status, dict) else str(status)
        raise StreamError(f"Watch failed: {message}")

    tag = _WATCH_EVENT_TYPES.get(kind)
    if tag is None:
        return None
    obj = raw.get("object")
    if obj is None or getattr(obj, "metadata", None) is None:
        return None
    return SessionEvent(type=tag, payload=pod_to_summary(obj).model_dump(mode="json"))


def map_log_line(line: Any) -> SessionEvent:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    return SessionEvent(type=SessionEventType.LINE, payload=line)


def error_event(exc: BaseException) -> SessionEvent:
    if isinstance(exc, AppException):
        payload = {"message": exc.message, "code": exc.code}
    else:
        payload = {"message": str(exc) or exc.__class__.__name__, "code": StreamError.code}
    return SessionEvent(type=SessionEventType.ERROR, payload=payload)


class SessionSupervisor:
    def __init__(
        self,
        registry: ClusterRegistry,
        clients: KubeClientFactory,
        sink: EventSink,
        table: SessionTable | None = None,
        *,
        watch_timeout_seconds: int = 300,
        log_tail_lines: int = 1000,
    ) -> None:
        self._registry = registry
        self._clients = clients
        self._sink = sink
        self._table = table or SessionTable()
        self._watch_timeout_seconds = watch_timeout_seconds
        self._log_tail_lines = log_tail_lines

    @property
    def table(self) -> SessionTable:
        return self._table

    async def start_resource_watch(self, cluster_id: str, namespace: Optional[str]) -> SessionInfo:
        namespace = namespace or ALL_NAMESPACES
        cluster = await self._clients.for_cluster(cluster_id)
        stream = cluster.watch_pods(namespace, self._watch_timeout_seconds)
        handle = await self._start(
            pod_watch_key(cluster_id, namespace),
            pod_watch_event_name(cluster_id, namespace),
            cluster_id,
            cluster,
            stream,
            map_watch_event,
        )
        logger.info("supervisor.watch_started", cluster_id=cluster_id, namespace=namespace)
        return session_info(handle)

    async def stop_resource_watch(self, cluster_id: str, namespace: Optional[str]) -> bool:
        stopped = await self._table.stop(pod_watch_key(cluster_id, namespace))
        logger.info("supervisor.watch_stopped", cluster_id=cluster_id, namespace=namespace, stopped=stopped)
        return stopped

    async def start_log_tail(
        self, cluster_id: str, namespace: str, pod: str, container: str, stream_id: str
    ) -> SessionInfo:
        cluster = await self._clients.for_cluster(cluster_id)
        stream = cluster.follow_log(namespace, pod, container, self._log_tail_lines)
        handle = await self._start(
            log_tail_key(stream_id),
            log_tail_event_name(stream_id),
            cluster_id,
            cluster,
            stream,
            map_log_line,
        )
        logger.info(
            "supervisor.log_tail_started", cluster_id=cluster_id, pod=f"{namespace}/{pod}", container=container
        )
        return session_info(handle)

    async def stop_log_tail(self, stream_id: str) -> bool:
        return await self._table.stop(log_tail_key(stream_id))

    async def stop_cluster_sessions(self, cluster_id: str) -> int:
        stopped = await self._table.stop_where(lambda handle: handle.cluster_id == cluster_id)
        if stopped:
            logger.info("supervisor.cluster_sessions_stopped", cluster_id=cluster_id, count=stopped)
        return stopped

    def list_sessions(self) -> list[SessionInfo]:
        return [session_info(handle) for handle in self._table.snapshot()]

    async def shutdown(self) -> None:
        stopped = await self._table.stop_all()
        logger.info("supervisor.shutdown", stopped=stopped)

    async def _start(
        self,
        key: tuple[str, ...],
        event_name: str,
        cluster_id: str,
        cluster: ClusterClient,
        stream: Iterable[Any],
        mapper: Callable[[Any], Optional[SessionEvent]],
    ) -> SessionHandle:
        async def run(handle: SessionHandle) -> None:
            await self._pump(handle, stream, mapper)

        factory = spawn_session(
            self._table,
            key,
            run,
            cluster_id=cluster_id,
            event_name=event_name,
            on_exit=_releaser(cluster, stream),
        )
        try:
            handle = await self._table.replace(key, factory)
        except BaseException:
            # Cancelled while the previous session was exiting; no task owns these yet
            _releaser(cluster, stream)()
            raise
        await self._registry.touch(cluster_id)
        return handle

    async def _pump(
        self,
        handle: SessionHandle,
        stream: Iterable[Any],
        mapper: Callable[[Any], Optional[SessionEvent]],
    ) -> None:
        reader = StreamReader(stream, handle.stop_event, name=f"session-reader:{handle.event_name}")
        reader.start()
        try:
            while True:
                item = await reader.next()
                if item is _DONE:
                    break
                event = mapper(item)
                if event is None:
                    continue
                await self._sink.emit(handle.event_name, event)
        except asyncio.CancelledError:
            logger.debug("supervisor.session_cancelled", key=handle.key)
            raise
        except Exception as exc:
            logger.warning("supervisor.session_failed", key=handle.key, error=str(exc))
            await self._sink.emit(handle.event_name, error_event(exc))
            return
        finally:
            reader.stop()

        logger.info("supervisor.session_ended", key=handle.key)
        await self._sink.emit(handle.event_name, SessionEvent(type=SessionEventType.ENDED))


class StreamReader:
    """Drains one blocking Kubernetes stream on its own daemon thread.

    Items reach the event loop through an asyncio queue. A read that is still
    blocked after its session stopped ties up only this thread, never a worker
    of the loop's default executor, and does not hold up interpreter exit.
    """

    def __init__(self, stream: Iterable[Any], stop_event: threading.Event, name: str) -> None:
        self._stream = stream
        self._stop_event = stop_event
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[tuple[bool, Any]] = asyncio.Queue()
        self._thread = threading.Thread(target=self._drain, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    async def next(self) -> Any:
        """The next item, ``_DONE`` at end of stream; re-raises the stream's failure."""
        failed, item = await self._queue.get()
        if failed:
            raise item
        return item

    def stop(self) -> None:
        self._stop_event.set()
        _stop_stream(self._stream)

    def _drain(self) -> None:
        try:
            for item in self._stream:
                if self._stop_event.is_set():
                    return
                self._hand_off(False, item)
        except Exception as exc:
            self._hand_off(True, exc)
        else:
            self._hand_off(False, _DONE)

    def _hand_off(self, failed: bool, item: Any) -> None:
        if self._stop_event.is_set():
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (failed, item))
        except RuntimeError:
            # Event loop already closed
            self._stop_event.set()


def _stop_stream(stream: Any) -> None:
    stop = getattr(stream, "stop", None)
    if callable(stop):
        stop()


def _releaser(cluster: ClusterClient, stream: Any) -> Callable[[], None]:
    def release() -> None:
        _stop_stream(stream)
        cluster.close()

    return release


def session_info(handle: SessionHandle) -> SessionInfo:
    key = tuple(handle.key) if isinstance(handle.key, tuple) else (str(handle.key),)
    return SessionInfo(
        key=[str(part) for part in key],
        kind=SessionKind(key[0]),
        cluster_id=handle.cluster_id or "",
        event_name=handle.event_name,
        started_at=handle.started_at,
    )
