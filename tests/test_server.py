"""Tests for the WebSocket front end."""

import asyncio

from aiohttp.test_utils import TestClient, TestServer

from pyneets.bridge import NeetsAmpBridge
from pyneets.server import BridgeWebSocketServer
from tests.fake_device import FakeNeetsDevice
from tests.test_connection import wait_for


def make_bridge(port):
    return NeetsAmpBridge("127.0.0.1", port, poll_interval=0, reconnect_delay=0.05, poll_step_delay=0.01)


async def open_client(bridge):
    server = BridgeWebSocketServer(bridge)
    client = TestClient(TestServer(server.app))
    await client.start_server()
    return server, client


def test_initial_state_is_sent_on_connect():
    async def scenario():
        bridge = make_bridge(1)
        server, client = await open_client(bridge)
        try:
            ws = await client.ws_connect("/ws")
            message = await ws.receive_json(timeout=2)
            assert message["type"] == "state_update"
            assert message["state"]["connected"] is False
            assert message["state"]["volume_percent"] == 37
            assert "timestamp" in message
            assert server.client_count == 1
            await ws.close()
        finally:
            await client.close()
            await bridge.async_shutdown()

    asyncio.run(scenario())


def test_bad_messages_get_errors():
    async def scenario():
        bridge = make_bridge(1)
        server, client = await open_client(bridge)
        try:
            ws = await client.ws_connect("/")
            await ws.receive_json(timeout=2)

            await ws.send_str("{not json")
            assert await ws.receive_json(timeout=2) == {"type": "error", "message": "Invalid JSON format"}

            await ws.send_json({"source": 2})
            assert await ws.receive_json(timeout=2) == {"type": "error", "message": "Missing action"}

            await ws.send_json({"action": "volume_up"})
            assert await ws.receive_json(timeout=2) == {"type": "error", "message": "Not connected to NEETS amp"}
            await ws.close()
        finally:
            await client.close()
            await bridge.async_shutdown()

    asyncio.run(scenario())


def test_health_endpoint():
    async def scenario():
        bridge = make_bridge(1)
        server, client = await open_client(bridge)
        try:
            response = await client.get("/health")
            assert response.status == 200
            data = await response.json()
            assert data["connected"] is False
            assert data["clients"] == 0
            assert data["port"] == 1
        finally:
            await client.close()
            await bridge.async_shutdown()

    asyncio.run(scenario())


def test_commands_and_broadcasts_with_device():
    async def scenario():
        device = FakeNeetsDevice()
        await device.start()
        bridge = make_bridge(device.port)
        server, client = await open_client(bridge)
        try:
            await bridge.async_connect()
            await wait_for(lambda: len(device.received) == 14)
            ws = await client.ws_connect("/ws")
            await ws.receive_json(timeout=2)

            await ws.send_json({"action": "volume_set", "value": -20})
            while True:
                message = await ws.receive_json(timeout=2)
                if message["type"] == "state_update" and message["state"]["volume_db"] == -20:
                    break
            assert message["state"]["volume_percent"] == 61
            assert message["state"]["volume_display"] == "-20dB"

            await ws.send_json({"action": "source_select", "source": 9})
            while True:
                message = await ws.receive_json(timeout=2)
                if message["type"] == "error":
                    break
            assert "source" in message["message"]

            await ws.send_json({"action": "connection_status"})
            while True:
                message = await ws.receive_json(timeout=2)
                if message["type"] == "connection_status":
                    break
            assert message["connected"] is True
            await ws.close()
        finally:
            await client.close()
            await bridge.async_shutdown()
            await device.stop()

    asyncio.run(scenario())


def test_device_error_is_forwarded():
    async def scenario():
        device = FakeNeetsDevice()
        await device.start()
        bridge = make_bridge(device.port)
        server, client = await open_client(bridge)
        try:
            await bridge.async_connect()
            ws = await client.ws_connect("/ws")
            await ws.receive_json(timeout=2)
            await device.push("NEUNIT=1,ERROR")
            while True:
                message = await ws.receive_json(timeout=2)
                if message["type"] == "device_error":
                    break
            assert message["message"] == "NEUNIT=1,ERROR"
            await ws.close()
        finally:
            await client.close()
            await bridge.async_shutdown()
            await device.stop()

    asyncio.run(scenario())


def test_client_is_unsubscribed_on_close():
    async def scenario():
        bridge = make_bridge(1)
        server, client = await open_client(bridge)
        try:
            ws = await client.ws_connect("/ws")
            await ws.receive_json(timeout=2)
            await ws.close()
            await wait_for(lambda: server.client_count == 0)
            assert bridge._notifier.listener_count == 0
        finally:
            await client.close()
            await bridge.async_shutdown()

    asyncio.run(scenario())
