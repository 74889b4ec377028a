"""Turns decoded NEETS response records into field deltas.

Status responses look like:
    NEUNIT=1,POWER=ON
    NEUNIT=1,VOL=-20
    NEUNIT=1,SETTINGS=INPUT,INPUT=2,GAIN=+3
    NEUNIT=1,SETTINGS=OUTPUT,EQLOW=-4
A record may carry several tokens; each recognised one is extracted on its own.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional

from pyneets.codec import QUERY, UNIT_MARKER
from pyneets.exceptions import DeviceErrorSignal, MalformedResponseError

_LOGGER = logging.getLogger(__name__)

ERROR_MARKER = "ERROR"

# KEY=VALUE pairs, values run up to the next comma
TOKEN_PATTERN = re.compile(r"([A-Z]+)=([^,]*)")
SIGNED_INT_PATTERN = re.compile(r"^[+-]?\d+$")

INPUT_COUNT = 4


class FieldDelta(NamedTuple):
    """A single field change extracted from a record.

    ``index`` is only used by ``input_gain_db`` (0-based input index).
    """
    field: str
    value: Any
    index: Optional[int] = None


@dataclass
class Interpretation:
    deltas: list[FieldDelta] = field(default_factory=list)
    error: Optional[DeviceErrorSignal] = None
    malformed: list[MalformedResponseError] = field(default_factory=list)


def _parse_on_off(value: str) -> bool:
    if value == "ON":
        return True
    if value == "OFF":
        return False
    raise ValueError(value)


def _parse_true_false(value: str) -> bool:
    if value == "TRUE":
        return True
    if value == "FALSE":
        return False
    raise ValueError(value)


def _parse_signed_int(value: str) -> int:
    if not SIGNED_INT_PATTERN.match(value):
        raise ValueError(value)
    return int(value)


# Token -> (state field, value parser). New fields are added here only.
TOKEN_TABLE = {
    "POWER": ("power", _parse_on_off),
    "VOL": ("volume_db", _parse_signed_int),
    "INPUT": ("source", _parse_signed_int),
    "MUTE": ("mute", _parse_on_off),
    "MIX": ("mix_mode", _parse_true_false),
    "MIXVOL": ("mix_volume_db", _parse_signed_int),
    "MIXMUTE": ("mix_mute", _parse_on_off),
    "EQLOW": ("eq_low_db", _parse_signed_int),
    "EQMID": ("eq_mid_db", _parse_signed_int),
    "EQHIGH": ("eq_high_db", _parse_signed_int),
}


def tokenize(record: str) -> list[tuple[str, str]]:
    """Split a record into ordered (KEY, VALUE) pairs."""
    return [(key, value.strip()) for key, value in TOKEN_PATTERN.findall(record)]


def interpret(record: str) -> Interpretation:
    """Interpret one complete response record."""
    result = Interpretation()

    if ERROR_MARKER in record:
        result.error = DeviceErrorSignal(record)
        return result

    marker_position = record.find(UNIT_MARKER)
    if marker_position < 0:
        _LOGGER.debug(f"Ignoring record without unit marker: {record}")
        return result

    tokens = tokenize(record[marker_position + len(UNIT_MARKER):])
    # Within SETTINGS=INPUT the INPUT token selects which input the following
    # settings apply to, it is not a source change
    settings_scope = None
    selected_input = None

    for position, (key, value) in enumerate(tokens):
        if key == "SETTINGS":
            settings_scope = value
            continue

        if key == "INPUT":
            following = tokens[position + 1][0] if position + 1 < len(tokens) else None
            if settings_scope == "INPUT" or following == "GAIN":
                selected_input = value
                continue

        if key == "GAIN":
            delta = _interpret_gain(selected_input, value, result)
            if delta is not None:
                result.deltas.append(delta)
            continue

        entry = TOKEN_TABLE.get(key)
        if entry is None or value == QUERY:
            continue
        field_name, parser = entry
        try:
            result.deltas.append(FieldDelta(field_name, parser(value)))
        except ValueError:
            error = MalformedResponseError(key, value)
            _LOGGER.warning(f"{error} in record: {record}")
            result.malformed.append(error)

    return result


def _interpret_gain(selected_input: Optional[str], value: str, result: Interpretation) -> Optional[FieldDelta]:
    if selected_input is None or value == QUERY:
        return None
    try:
        input_number = _parse_signed_int(selected_input)
        gain = _parse_signed_int(value)
    except ValueError:
        error = MalformedResponseError("GAIN", f"INPUT={selected_input},GAIN={value}")
        _LOGGER.warning(str(error))
        result.malformed.append(error)
        return None
    if not (1 <= input_number <= INPUT_COUNT):
        _LOGGER.debug(f"Discarding gain for unknown input {input_number}")
        return None
    return FieldDelta("input_gain_db", gain, input_number - 1)
