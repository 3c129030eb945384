"""Real-time fan-out of order and stock changes."""
import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket

from database import serialize_doc

logger = logging.getLogger(__name__)

ORDER_UPDATE = "order:update"
STOCK_UPDATE = "stock:update"

# Schedules a callable after the current request, e.g. BackgroundTasks.add_task
Defer = Callable[..., Any]


def guarded(fn: Callable[..., Any], *args: Any) -> None:
    """Runs a side effect; failures are logged, never raised."""
    try:
        fn(*args)
    except Exception:
        logger.exception("Side effect %s failed", getattr(fn, "__qualname__", fn))


def schedule(defer: Optional[Defer], fn: Callable[..., Any], *args: Any) -> None:
    if defer is None:
        guarded(fn, *args)
    else:
        defer(guarded, fn, *args)


class NotificationSink:
    """Receives state changes. The base sink drops them."""

    def publish_order_update(self, order: Dict[str, Any]) -> None:
        pass

    def publish_stock_update(self, variant: Dict[str, Any]) -> None:
        pass


class WebSocketHub(NotificationSink):
    def __init__(self):
        self._connections: Dict[WebSocket, Set[str]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        with self._lock:
            self._connections[websocket] = set()
        logger.debug("WebSocket connected (%d open)", len(self._connections))

    def disconnect(self, websocket: WebSocket) -> None:
        with self._lock:
            self._connections.pop(websocket, None)

    def join(self, websocket: WebSocket, room: str) -> None:
        with self._lock:
            rooms = self._connections.get(websocket)
            if rooms is not None:
                rooms.add(room)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def publish_order_update(self, order: Dict[str, Any]) -> None:
        self.emit(ORDER_UPDATE, order)

    def publish_stock_update(self, variant: Dict[str, Any]) -> None:
        self.emit(STOCK_UPDATE, variant)

    def emit(self, event: str, data: Any, room: Optional[str] = None) -> None:
        if not self._connections or self._loop is None:
            return
        message = {"event": event, "data": serialize_doc(data)}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        coro = self.broadcast(message, room)
        try:
            if running is self._loop:
                self._loop.create_task(coro)
            else:
                asyncio.run_coroutine_threadsafe(coro, self._loop)
        except RuntimeError:
            # Loop already closed; its sockets are gone with it.
            coro.close()
            logger.warning("Dropping %s: event loop is closed", event)
            with self._lock:
                self._connections.clear()
            self._loop = None

    async def broadcast(self, message: Dict[str, Any], room: Optional[str] = None) -> None:
        with self._lock:
            targets = [ws for ws, rooms in self._connections.items() if room is None or room in rooms]
        for websocket in targets:
            try:
                await websocket.send_json(message)
            except Exception:
                logger.warning("Dropping unreachable WebSocket client", exc_info=True)
                self.disconnect(websocket)
