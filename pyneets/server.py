"""WebSocket front end for the bridge (aiohttp).

Clients send JSON messages ``{"action": "...", ...params}`` and receive
``state_update`` broadcasts whenever the mirrored device state changes.
Every client gets its own queue and sender task so a slow or dead client
cannot hold up the others or the bridge.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from aiohttp import WSMsgType, web

from pyneets.bridge import CONNECTION_ACTIONS, NeetsAmpBridge
from pyneets.listener import AsyncQueueListener
from pyneets.state import DeviceSnapshot

_LOGGER = logging.getLogger(__name__)

CLIENT_QUEUE_SIZE = 50


def state_update_message(snapshot: DeviceSnapshot) -> dict:
    return {
        "type": "state_update",
        "state": snapshot.to_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def error_message(message: str) -> dict:
    return {"type": "error", "message": message}


class BridgeWebSocketServer:
    """Serves the bridge over WebSocket on ``/`` and ``/ws``, health on ``/health``."""

    def __init__(self, bridge: NeetsAmpBridge, host: str = "0.0.0.0", port: int = 8080):
        self._bridge = bridge
        self._host = host
        self._port = port
        self._clients: set[web.WebSocketResponse] = set()
        self._runner: Optional[web.AppRunner] = None

        self.app = web.Application()
        self.app.add_routes([
            web.get("/", self._handle_websocket),
            web.get("/ws", self._handle_websocket),
            web.get("/health", self._handle_health),
        ])

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self):
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        _LOGGER.info(f"WebSocket server listening on {self._host}:{self._port}")

    async def stop(self):
        for ws in list(self._clients):
            await ws.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        _LOGGER.info("WebSocket server stopped")

    async def _handle_health(self, request: web.Request) -> web.Response:
        status = self._bridge.get_connection_status()
        status["clients"] = self.client_count
        return web.json_response(status)

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        _LOGGER.info(f"New WebSocket connection from {request.remote}")

        listener = AsyncQueueListener(maxsize=CLIENT_QUEUE_SIZE)
        self._clients.add(ws)
        self._bridge.register_listener(listener)
        sender = asyncio.get_running_loop().create_task(self._send_events(ws, listener))
        try:
            await self._send_json(ws, state_update_message(self._bridge.get_state()))
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_message(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    _LOGGER.error(f"WebSocket error: {ws.exception()}")
        finally:
            self._bridge.unregister_listener(listener)
            self._clients.discard(ws)
            sender.cancel()
            _LOGGER.info("WebSocket client disconnected")
        return ws

    async def _send_events(self, ws: web.WebSocketResponse, listener: AsyncQueueListener):
        """Forward bridge events queued for one client."""
        while not ws.closed:
            event, payload = await listener.queue.get()
            if event == "state_changed":
                message = state_update_message(payload)
            elif event == "device_error":
                message = {"type": "device_error", "message": payload}
            elif event == "reconnect_exhausted":
                message = {"type": "connection_status", **self._bridge.get_connection_status()}
            else:
                continue
            if not await self._send_json(ws, message):
                return

    async def _handle_message(self, ws: web.WebSocketResponse, raw: str):
        try:
            data = json.loads(raw)
        except ValueError as e:
            _LOGGER.error(f"Error parsing WebSocket message: {e}")
            await self._send_json(ws, error_message("Invalid JSON format"))
            return
        if not isinstance(data, dict) or not isinstance(data.get("action"), str):
            await self._send_json(ws, error_message("Missing action"))
            return

        action = data["action"]
        params: dict[str, Any] = {key: value for key, value in data.items() if key != "action"}
        if not self._bridge.connected and action not in CONNECTION_ACTIONS:
            await self._send_json(ws, error_message("Not connected to NEETS amp"))
            return

        try:
            result = await self._bridge.submit(action, params)
        except Exception as e:
            _LOGGER.error(f"Error handling WebSocket message: {e}", exc_info=True)
            await self._send_json(ws, error_message("Internal server error"))
            return

        if action == "get_state":
            await self._send_json(ws, state_update_message(self._bridge.get_state()))
        elif action in CONNECTION_ACTIONS:
            await self._send_json(ws, {"type": "connection_status", **self._bridge.get_connection_status()})
        elif not result.success:
            await self._send_json(ws, error_message(result.message))

    async def _send_json(self, ws: web.WebSocketResponse, message: dict) -> bool:
        if ws.closed:
            return False
        try:
            await ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            _LOGGER.warning(f"Dropping WebSocket client after send failure: {e}")
            self._clients.discard(ws)
            return False
        return True
