from clusterdeck.websocket.manager import ConnectionManager, EventSink

__all__ = ["ConnectionManager", "EventSink"]
