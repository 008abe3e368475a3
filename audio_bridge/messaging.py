"""
Messaging gateway between the bridge and browser contexts.

Browser contexts (the extension shim, the studio tab, the in-page agent on the
music tab, the popup and external callers) connect over WebSocket, announce
themselves with a HELLO frame and then exchange JSON messages discriminated by
a ``type`` field.

Frames carrying a ``requestId`` expect a reply carrying ``replyTo`` with the
same value. Frames without one are notifications.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import websockets
from websockets.asyncio.server import ServerConnection, serve

from audio_bridge.errors import TransportError
from audio_bridge.models import TabId

logger = logging.getLogger(__name__)

# Handler for inbound requests: (message, sender context) -> reply payload
RequestHandler = Callable[[dict, TabId], Awaitable[Optional[dict]]]


class MessagingGateway(ABC):
    """Async request/response port to other browser contexts.

    ``send`` never raises for an unreachable destination: it returns ``None``,
    the "no response" sentinel, and callers treat that as an empty reply.
    """

    @abstractmethod
    async def send(self, destination: TabId, message: dict) -> Optional[dict]:
        """Send a request and wait for its reply, or None if there is none."""

    @abstractmethod
    async def notify(self, destination: TabId, message: dict) -> None:
        """Fire-and-forget delivery. Transport failures are logged, not raised."""


class WebSocketGateway(MessagingGateway):
    """WebSocket hub that routes messages between the bridge and contexts."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 8790,
        request_timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.request_timeout = request_timeout

        self._server = None
        self._handler: Optional[RequestHandler] = None
        self._contexts: Dict[TabId, ServerConnection] = {}
        # requestId -> (destination, future awaiting the reply)
        self._pending: Dict[str, Tuple[TabId, asyncio.Future]] = {}
        self._dispatch_tasks: Set[asyncio.Task] = set()

    def set_handler(self, handler: RequestHandler):
        """Register the handler for inbound requests and notifications."""
        self._handler = handler

    @property
    def contexts(self) -> list:
        return list(self._contexts)

    @property
    def bound_port(self) -> int:
        """Actual listening port (useful when started with port 0)."""
        if self._server is None:
            return self.port
        return next(iter(self._server.sockets)).getsockname()[1]

    async def start(self):
        """Start accepting context connections."""
        self._server = await serve(self._handle_connection, self.host, self.port)
        logger.info(f"Messaging gateway listening on ws://{self.host}:{self.bound_port}")

    async def stop(self):
        """Close every connection and fail outstanding requests."""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        for _, future in self._pending.values():
            if not future.done():
                future.set_result(None)
        self._pending.clear()

        for task in list(self._dispatch_tasks):
            task.cancel()
        self._contexts.clear()
        logger.info("Messaging gateway stopped")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, destination: TabId, message: dict) -> Optional[dict]:
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (destination, future)

        try:
            await self._transmit(destination, {**message, "requestId": request_id})
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except TransportError as e:
            logger.warning(f"No response for {message.get('type')}: {e}")
            return None
        except asyncio.TimeoutError:
            logger.warning(
                f"Timeout waiting for {message.get('type')} reply from {destination!r}"
            )
            return None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, destination: TabId, message: dict) -> None:
        try:
            await self._transmit(destination, message)
        except TransportError as e:
            logger.warning(f"Dropped {message.get('type')} notification: {e}")

    async def _transmit(self, destination: TabId, frame: dict):
        websocket = self._contexts.get(destination)
        if websocket is None:
            raise TransportError(f"context {destination!r} is not connected")

        try:
            await websocket.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"context {destination!r} closed: {e}") from e

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection):
        context = await self._register(websocket)
        if context is None:
            return

        try:
            async for raw in websocket:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON from context {context!r}")
                    continue

                if not isinstance(data, dict):
                    logger.warning(f"Ignoring non-object frame from context {context!r}")
                    continue

                if "replyTo" in data:
                    self._resolve(data)
                    continue

                # Handlers may issue their own requests, so the read loop
                # has to keep draining replies while they run.
                task = asyncio.create_task(self._dispatch(context, websocket, data))
                self._dispatch_tasks.add(task)
                task.add_done_callback(self._dispatch_tasks.discard)

        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Context {context!r} disconnected: {e}")
        finally:
            self._unregister(context, websocket)

    async def _register(self, websocket: ServerConnection) -> Optional[TabId]:
        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=self.request_timeout)
            hello = json.loads(raw)
        except asyncio.TimeoutError:
            logger.warning("Context connection timed out waiting for HELLO")
            await websocket.close(code=4001, reason="HELLO timeout")
            return None
        except (json.JSONDecodeError, websockets.exceptions.ConnectionClosed):
            logger.warning("Context connection closed before a valid HELLO")
            return None

        if not isinstance(hello, dict):
            hello = {}
        context = hello.get("context")
        if hello.get("type") != "HELLO" or not isinstance(context, (int, str)):
            logger.warning(f"Rejecting context: expected HELLO, got {raw!r:.80}")
            await websocket.close(code=4002, reason="HELLO required")
            return None

        previous = self._contexts.get(context)
        if previous is not None and previous is not websocket:
            logger.info(f"Context {context!r} reconnected, replacing previous connection")
            await previous.close(code=4000, reason="Replaced")

        self._contexts[context] = websocket
        await websocket.send(json.dumps({"type": "connected", "context": context}))
        logger.info(f"Context {context!r} connected. Total: {len(self._contexts)}")
        return context

    def _unregister(self, context: TabId, websocket: ServerConnection):
        if self._contexts.get(context) is not websocket:
            return  # already replaced by a newer connection
        del self._contexts[context]

        # Outstanding requests to this context will never be answered
        for request_id, (destination, future) in list(self._pending.items()):
            if destination == context and not future.done():
                future.set_result(None)

    def _resolve(self, data: dict):
        request_id = data.pop("replyTo")
        entry = self._pending.get(request_id)
        if entry is None:
            logger.debug(f"Reply for unknown or expired request {request_id}")
            return
        _, future = entry
        if not future.done():
            future.set_result(data)

    async def _dispatch(self, context: TabId, websocket: ServerConnection, data: dict):
        request_id = data.pop("requestId", None)
        reply: Any = None

        if self._handler is None:
            logger.warning(f"No handler registered, dropping {data.get('type')}")
        else:
            try:
                reply = await self._handler(data, context)
            except Exception as e:
                logger.error(f"Handler error for {data.get('type')}: {e}", exc_info=True)
                reply = {"success": False, "error": str(e)}

        if request_id is None:
            return

        frame = dict(reply) if isinstance(reply, dict) else {}
        frame["replyTo"] = request_id
        try:
            await websocket.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"Context {context!r} closed before reply to {data.get('type')}")
