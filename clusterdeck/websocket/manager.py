import asyncio
from typing import FrozenSet, Protocol, Set

import structlog
from fastapi import WebSocket

from clusterdeck.schemas.events import ChannelMessage, SessionEvent

logger = structlog.get_logger(__name__)


class EventSink(Protocol):
    async def emit(self, event_name: str, event: SessionEvent) -> None: ...


class ConnectionManager:
    """Fans session events out to every connected GUI window.

    A client whose send fails is dropped on the spot. Sessions keep running;
    the GUI resubscribes by reconnecting.
    """

    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def clients(self) -> FrozenSet[WebSocket]:
        return frozenset(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
            count = len(self._clients)
        logger.info("events.client_connected", clients=count)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)
            count = len(self._clients)
        logger.info("events.client_disconnected", clients=count)

    async def emit(self, event_name: str, event: SessionEvent) -> None:
        async with self._lock:
            clients = list(self._clients)
        if not clients:
            return

        frame = ChannelMessage(event=event_name, payload=event).model_dump_json()
        dropped = []
        for client in clients:
            try:
                await client.send_text(frame)
            except Exception as exc:
                logger.warning("events.send_failed", event_name=event_name, error=str(exc))
                dropped.append(client)

        if dropped:
            async with self._lock:
                self._clients.difference_update(dropped)
