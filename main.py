"""
Main command-line interface for pyneets.

This script runs the NEETS amp bridge or talks to the amp directly.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from pyneets.bridge import NeetsAmpBridge
from pyneets.config import BridgeConfig
from pyneets.healthcheck import run_health_check
from pyneets.listener import LoggingListener
from pyneets.server import BridgeWebSocketServer


async def serve(config: BridgeConfig):
    """Run the bridge and WebSocket server until interrupted."""
    bridge = NeetsAmpBridge.from_config(config)
    bridge.register_listener(LoggingListener(logging.getLogger("pyneets.events")))
    server = BridgeWebSocketServer(bridge, config.ws_host, config.ws_port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await server.start()
    await bridge.async_connect()
    try:
        await stop.wait()
    finally:
        print("Shutting down gracefully...")
        await bridge.async_shutdown()
        await server.stop()


async def show_status(config: BridgeConfig):
    """Connect, run a full status poll and print the device state."""
    print(f"Connecting to NEETS amp at {config.neets_host}:{config.neets_port}...")
    bridge = NeetsAmpBridge.from_config(config)
    if not await bridge.async_connect():
        print("Could not connect")
        await bridge.async_shutdown()
        return 1

    # Full poll is 14 queries 100ms apart
    await asyncio.sleep(2)

    state = bridge.get_state()
    print("-" * 60)
    print(f"{'Power:':16s} {'ON' if state.power else 'OFF'}")
    print(f"{'Source:':16s} {state.source or 'unknown'}")
    print(f"{'Volume:':16s} {state.volume_db}dB ({state.volume_percent}%){' MUTED' if state.mute else ''}")
    print(f"{'Mix mode:':16s} {'ON' if state.mix_mode else 'OFF'}")
    print(f"{'Mix volume:':16s} {state.mix_volume_db}dB ({state.mix_volume_percent}%){' MUTED' if state.mix_mute else ''}")
    for input_number, gain in enumerate(state.input_gains_db, start=1):
        print(f"{f'Input {input_number} gain:':16s} {gain:+d}dB")
    print(f"{'EQ low/mid/high:':16s} {state.eq_low_db:+d}/{state.eq_mid_db:+d}/{state.eq_high_db:+d}dB")
    print("-" * 60)

    await bridge.async_shutdown()
    return 0


async def send_action(config: BridgeConfig, action: str, params: dict):
    """Connect, submit one action and print the result."""
    bridge = NeetsAmpBridge.from_config(config)
    if not await bridge.async_connect():
        print("Could not connect")
        await bridge.async_shutdown()
        return 1

    result = await bridge.submit(action, params)
    print(json.dumps(result.to_dict(), indent=2))

    # Wait for the confirmation query to be answered
    await asyncio.sleep(1)
    await bridge.async_shutdown()
    return 0 if result.success else 1


async def health(config: BridgeConfig):
    report = await run_health_check(config)
    print(("✓" if report.websocket else "✗") + " WebSocket server")
    print(("✓" if report.neets else "✗") + " NEETS connection")
    print("Overall health: " + ("HEALTHY" if report.healthy else "UNHEALTHY"))
    return 0 if report.healthy else 1


def parse_params(pairs) -> dict:
    """Turn ``key=value`` arguments into a params dict, converting integers."""
    params = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator:
            raise argparse.ArgumentTypeError(f"Expected key=value, got '{pair}'")
        try:
            params[key] = int(value)
        except ValueError:
            params[key] = value
    return params


def main():
    config = BridgeConfig.from_env()

    parser = argparse.ArgumentParser(description="Bridge a NEETS amplifier to WebSocket clients")
    parser.add_argument("--host", default=config.neets_host, help=f"NEETS amp hostname or IP (default: {config.neets_host})")
    parser.add_argument("--port", type=int, default=config.neets_port, help=f"NEETS amp port (default: {config.neets_port})")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    serve_parser = subparsers.add_parser("serve", help="Run the bridge and WebSocket server")
    serve_parser.add_argument("--ws-host", default=config.ws_host, help=f"WebSocket listen address (default: {config.ws_host})")
    serve_parser.add_argument("--ws-port", type=int, default=config.ws_port, help=f"WebSocket port (default: {config.ws_port})")

    subparsers.add_parser("status", help="Show the amp status")

    send_parser = subparsers.add_parser("send", help="Submit one action, e.g. 'send source_select source=2'")
    send_parser.add_argument("action", help="Action name (power_on, volume_set, eq_adjust, ...)")
    send_parser.add_argument("params", nargs="*", help="Parameters as key=value")

    health_parser = subparsers.add_parser("healthcheck", help="Check the WebSocket server and amp reachability")
    health_parser.add_argument("--ws-port", type=int, default=config.ws_port, help=f"WebSocket port (default: {config.ws_port})")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    config.neets_host = args.host
    config.neets_port = args.port

    if args.command == "serve":
        config.ws_host = args.ws_host
        config.ws_port = args.ws_port
        asyncio.run(serve(config))
    elif args.command == "status":
        config.poll_interval = 0
        sys.exit(asyncio.run(show_status(config)))
    elif args.command == "send":
        config.poll_interval = 0
        try:
            params = parse_params(args.params)
        except argparse.ArgumentTypeError as e:
            parser.error(str(e))
        sys.exit(asyncio.run(send_action(config, args.action, params)))
    elif args.command == "healthcheck":
        config.ws_port = args.ws_port
        sys.exit(asyncio.run(health(config)))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
