"""Wire codec for the NEETS amp text protocol.

Every outbound record is ``NEUNIT=1,<TOKEN>\\r``. Inbound data arrives as an
arbitrary byte stream which may contain several records in one packet or a
record split across packets, so it has to be reassembled before parsing.
"""

import logging
from typing import Optional

_LOGGER = logging.getLogger(__name__)

# Session/unit prefix carried by every command and every status response
UNIT_MARKER = "NEUNIT=1,"
RECORD_SEPARATOR = b"\r"
ENCODING = "ascii"

QUERY = "?"

# Longest incomplete record kept between reads; status records are well under 100 bytes
MAX_BUFFER_SIZE = 4096


def encode(command: str) -> bytes:
    """Wrap a bare command token (e.g. ``POWER=ON``) into a wire record."""
    return f"{UNIT_MARKER}{command}\r".encode(ENCODING)


def feed(buffer: bytes, new_bytes: bytes) -> tuple[list[str], bytes]:
    """Append new bytes to the carry-over buffer and split out complete records.

    Returns the complete records (decoded, stripped, blanks dropped) and the
    incomplete tail which becomes the next carry-over buffer. A tail longer than
    MAX_BUFFER_SIZE is discarded. Undecodable bytes become U+FFFD so the
    interpreter reports the token as malformed.
    """
    data = buffer + new_bytes
    *complete, remainder = data.split(RECORD_SEPARATOR)
    records = []
    for raw in complete:
        record = raw.decode(ENCODING, errors="replace").strip()
        if record:
            records.append(record)
    if len(remainder) > MAX_BUFFER_SIZE:
        _LOGGER.warning(f"Discarding {len(remainder)} bytes without a record separator")
        remainder = b""
    return records, remainder


def format_db(value: int, signed: bool = False) -> str:
    """Format a dB value as the device expects it.

    Volume values are sent as ``-20``/``0``/``5``; gain and EQ values carry an
    explicit plus sign for positive numbers (``+3``).
    """
    if value > 0 and signed:
        return f"+{value}"
    return str(value)


def format_display_db(value: int) -> str:
    """Human readable dB string used in state snapshots (``+3dB``, ``0dB``)."""
    if value > 0:
        return f"+{value}dB"
    return f"{value}dB"


# ========== Command builders ==========

def command_power(on: Optional[bool]) -> str:
    if on is None:
        return f"POWER={QUERY}"
    return "POWER=ON" if on else "POWER=OFF"


def command_volume(db: Optional[int]) -> str:
    if db is None:
        return f"VOL={QUERY}"
    return f"VOL={format_db(db)}"


def command_source(source: Optional[int]) -> str:
    if source is None:
        return f"INPUT={QUERY}"
    return f"INPUT={source}"


def command_mute(on: Optional[bool]) -> str:
    if on is None:
        return f"MUTE={QUERY}"
    return "MUTE=ON" if on else "MUTE=OFF"


def command_mix_mode(enabled: Optional[bool]) -> str:
    # Mix mode is an input-1 setting on the device
    if enabled is None:
        return f"SETTINGS=INPUT,INPUT=1,MIX={QUERY}"
    return f"SETTINGS=INPUT,INPUT=1,MIX={'TRUE' if enabled else 'FALSE'}"


def command_mix_volume(db: Optional[int]) -> str:
    if db is None:
        return f"MIXVOL={QUERY}"
    return f"MIXVOL={format_db(db)}"


def command_mix_mute(on: Optional[bool]) -> str:
    if on is None:
        return f"MIXMUTE={QUERY}"
    return "MIXMUTE=ON" if on else "MIXMUTE=OFF"


def command_input_gain(input_number: int, db: Optional[int]) -> str:
    if db is None:
        return f"SETTINGS=INPUT,INPUT={input_number},GAIN={QUERY}"
    return f"SETTINGS=INPUT,INPUT={input_number},GAIN={format_db(db, signed=True)}"


def command_eq(band: str, db: Optional[int]) -> str:
    """EQ command for band ``low``, ``mid`` or ``high``."""
    token = f"EQ{band.upper()}"
    if db is None:
        return f"SETTINGS=OUTPUT,{token}={QUERY}"
    return f"SETTINGS=OUTPUT,{token}={format_db(db, signed=True)}"
