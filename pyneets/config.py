"""Bridge configuration.

Values come from constructor arguments, or from the environment for the
command line entry point. Intervals in the environment are milliseconds.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_NEETS_HOST = "192.168.10.109"
DEFAULT_NEETS_PORT = 5000
DEFAULT_WS_HOST = "0.0.0.0"
DEFAULT_WS_PORT = 8080


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


@dataclass
class BridgeConfig:
    neets_host: str = DEFAULT_NEETS_HOST
    neets_port: int = DEFAULT_NEETS_PORT
    ws_host: str = DEFAULT_WS_HOST
    ws_port: int = DEFAULT_WS_PORT
    poll_interval: float = 5.0  # seconds, 0 disables background polling
    reconnect_delay: float = 5.0  # seconds before the first reconnect attempt
    max_reconnect_delay: float = 30.0
    max_reconnect_attempts: int = 10
    connect_timeout: float = 5.0
    idle_timeout: Optional[float] = 30.0  # None disables the watchdog
    hold_initial_delay: float = 1.0
    hold_repeat_interval: float = 0.5
    poll_step_delay: float = 0.1

    @classmethod
    def from_env(cls, env: Mapping[str, str] = None) -> "BridgeConfig":
        """Build a config from NEETS_HOST, NEETS_PORT, WS_HOST, WS_PORT,
        POLL_INTERVAL, RECONNECT_DELAY and MAX_RECONNECT_ATTEMPTS."""
        env = os.environ if env is None else env
        return cls(
            neets_host=env.get("NEETS_HOST") or DEFAULT_NEETS_HOST,
            neets_port=_env_int(env, "NEETS_PORT", DEFAULT_NEETS_PORT),
            ws_host=env.get("WS_HOST") or DEFAULT_WS_HOST,
            ws_port=_env_int(env, "WS_PORT", DEFAULT_WS_PORT),
            poll_interval=_env_int(env, "POLL_INTERVAL", 5000) / 1000,
            reconnect_delay=_env_int(env, "RECONNECT_DELAY", 5000) / 1000,
            max_reconnect_attempts=_env_int(env, "MAX_RECONNECT_ATTEMPTS", 10),
        )
