from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from clusterdeck.dependencies import get_connection_manager
from clusterdeck.websocket.manager import ConnectionManager

router = APIRouter(prefix="/events", tags=["events"])


@router.websocket("/ws")
async def events_channel(
    websocket: WebSocket, manager: ConnectionManager = Depends(get_connection_manager)
) -> None:
    """Push-only channel: every session event is broadcast here as a JSON text frame."""
    await manager.connect(websocket)
    try:
        while True:
            # Inbound frames are ignored; reading keeps disconnect detection working.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)
