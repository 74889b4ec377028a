"""Health check for a running bridge (used by container health probes)."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import aiohttp

from pyneets.config import BridgeConfig

_LOGGER = logging.getLogger(__name__)


@dataclass
class HealthReport:
    websocket: bool = False
    neets: bool = False
    timestamp: str = ""

    @property
    def healthy(self) -> bool:
        # The amp may be temporarily unreachable; only the WebSocket side is critical
        return self.websocket


async def check_websocket(url: str, timeout: float = 5.0) -> bool:
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.ws_connect(url) as ws:
                await ws.close()
        return True
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        _LOGGER.error(f"WebSocket server check failed: {e!r}")
        return False


async def check_neets(host: str, port: int, timeout: float = 5.0) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        _LOGGER.error(f"NEETS connection check failed: {e!r}")
        return False
    writer.close()
    await writer.wait_closed()
    return True


async def run_health_check(config: BridgeConfig, timeout: float = 5.0) -> HealthReport:
    ws_host = "localhost" if config.ws_host in ("0.0.0.0", "") else config.ws_host
    report = HealthReport(timestamp=datetime.now(timezone.utc).isoformat())
    report.websocket = await check_websocket(f"ws://{ws_host}:{config.ws_port}/", timeout)
    report.neets = await check_neets(config.neets_host, config.neets_port, timeout)
    _LOGGER.info(
        f"Health: websocket={'ok' if report.websocket else 'FAIL'} "
        f"neets={'ok' if report.neets else 'FAIL'} overall={'HEALTHY' if report.healthy else 'UNHEALTHY'}"
    )
    return report
