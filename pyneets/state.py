"""Device state mirror for the NEETS amp."""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Iterable

from pyneets.codec import format_display_db
from pyneets.interpreter import INPUT_COUNT, FieldDelta

VOLUME_MIN_DB = -70
VOLUME_MAX_DB = 12
GAIN_MIN_DB = -12
GAIN_MAX_DB = 12
SOURCE_MIN = 0
SOURCE_MAX = 5

EQ_BANDS = ("low", "mid", "high")

# Field -> (min, max) for clamped integer fields
FIELD_RANGES = {
    "source": (SOURCE_MIN, SOURCE_MAX),
    "volume_db": (VOLUME_MIN_DB, VOLUME_MAX_DB),
    "mix_volume_db": (VOLUME_MIN_DB, VOLUME_MAX_DB),
    "input_gain_db": (GAIN_MIN_DB, GAIN_MAX_DB),
    "eq_low_db": (GAIN_MIN_DB, GAIN_MAX_DB),
    "eq_mid_db": (GAIN_MIN_DB, GAIN_MAX_DB),
    "eq_high_db": (GAIN_MIN_DB, GAIN_MAX_DB),
}
BOOLEAN_FIELDS = {"power", "mute", "mix_mode", "mix_mute"}
# Selections rather than levels: out of range reports are dropped, not clamped
DISCRETE_FIELDS = {"source"}


def clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


def clamp_field(field_name: str, value):
    """Clamp a value to the valid range of ``field_name``."""
    if field_name in BOOLEAN_FIELDS:
        return bool(value)
    minimum, maximum = FIELD_RANGES[field_name]
    return clamp(int(value), minimum, maximum)


def _percent(db: int, minimum: int, span: int) -> int:
    # Round half up, matching how the control surfaces display it
    percent = math.floor((db - minimum) * 100 / span + 0.5)
    return clamp(percent, 0, 100)


def volume_percent(db: int) -> int:
    """-70dB..+12dB as 0-100%."""
    return _percent(db, VOLUME_MIN_DB, VOLUME_MAX_DB - VOLUME_MIN_DB)


def gain_percent(db: int) -> int:
    """-12dB..+12dB as 0-100%."""
    return _percent(db, GAIN_MIN_DB, GAIN_MAX_DB - GAIN_MIN_DB)


@dataclass
class DeviceState:
    connected: bool = False
    power: bool = False
    source: int = 0
    volume_db: int = -40
    mute: bool = False
    mix_mode: bool = False
    mix_volume_db: int = -40
    mix_mute: bool = False
    input_gains_db: list[int] = field(default_factory=lambda: [0] * INPUT_COUNT)
    eq_low_db: int = 0
    eq_mid_db: int = 0
    eq_high_db: int = 0


@dataclass(frozen=True)
class DeviceSnapshot:
    """Immutable copy of the device state plus derived display values."""
    connected: bool
    power: bool
    source: int
    volume_db: int
    mute: bool
    mix_mode: bool
    mix_volume_db: int
    mix_mute: bool
    input_gains_db: tuple[int, ...]
    eq_low_db: int
    eq_mid_db: int
    eq_high_db: int

    @property
    def volume_percent(self) -> int:
        return volume_percent(self.volume_db)

    @property
    def mix_volume_percent(self) -> int:
        return volume_percent(self.mix_volume_db)

    @property
    def input_gains_percent(self) -> tuple[int, ...]:
        return tuple(gain_percent(gain) for gain in self.input_gains_db)

    def to_dict(self) -> dict:
        """JSON ready representation used by the transport layer."""
        data = asdict(self)
        data["input_gains_db"] = list(self.input_gains_db)
        data.update(
            volume_percent=self.volume_percent,
            mix_volume_percent=self.mix_volume_percent,
            input_gains_percent=list(self.input_gains_percent),
            volume_display=format_display_db(self.volume_db),
            mix_volume_display=format_display_db(self.mix_volume_db),
            input_gains_display=[format_display_db(gain) for gain in self.input_gains_db],
            eq_low_display=format_display_db(self.eq_low_db),
            eq_mid_display=format_display_db(self.eq_mid_db),
            eq_high_display=format_display_db(self.eq_high_db),
        )
        return data


class DeviceStateStore:
    """Single writer of the mirrored device state.

    All mutation happens on the bridge's event loop, through ``apply`` (device
    responses) or ``set_connected`` (connectivity transitions).
    """

    def __init__(self, state: DeviceState = None):
        self._logger = logging.getLogger(__name__)
        self._state = state if state is not None else DeviceState()

    def apply(self, deltas: Iterable[FieldDelta]) -> bool:
        """Apply a batch of deltas, returning True if anything visibly changed."""
        changed = False
        for delta in deltas:
            if delta.field in DISCRETE_FIELDS:
                minimum, maximum = FIELD_RANGES[delta.field]
                if not (minimum <= delta.value <= maximum):
                    self._logger.warning(f"Ignoring out of range {delta.field} {delta.value}")
                    continue
            try:
                value = clamp_field(delta.field, delta.value)
            except KeyError:
                self._logger.warning(f"Ignoring delta for unknown field {delta.field}")
                continue

            if delta.field == "input_gain_db":
                if delta.index is None or not (0 <= delta.index < INPUT_COUNT):
                    self._logger.warning(f"Ignoring gain delta for input index {delta.index}")
                    continue
                if self._state.input_gains_db[delta.index] != value:
                    self._state.input_gains_db[delta.index] = value
                    changed = True
                continue

            if getattr(self._state, delta.field) != value:
                self._logger.debug(f"{delta.field}: {getattr(self._state, delta.field)} -> {value}")
                setattr(self._state, delta.field, value)
                changed = True
        return changed

    def set_connected(self, connected: bool) -> bool:
        if self._state.connected == connected:
            return False
        self._state.connected = connected
        return True

    def snapshot(self) -> DeviceSnapshot:
        state = self._state
        return DeviceSnapshot(
            connected=state.connected,
            power=state.power,
            source=state.source,
            volume_db=state.volume_db,
            mute=state.mute,
            mix_mode=state.mix_mode,
            mix_volume_db=state.mix_volume_db,
            mix_mute=state.mix_mute,
            input_gains_db=tuple(state.input_gains_db),
            eq_low_db=state.eq_low_db,
            eq_mid_db=state.eq_mid_db,
            eq_high_db=state.eq_high_db,
        )

    # ========== Read accessors ==========

    @property
    def connected(self) -> bool:
        return self._state.connected

    @property
    def power(self) -> bool:
        return self._state.power

    @property
    def mute(self) -> bool:
        return self._state.mute

    @property
    def mix_mode(self) -> bool:
        return self._state.mix_mode

    @property
    def mix_mute(self) -> bool:
        return self._state.mix_mute

    @property
    def volume_db(self) -> int:
        return self._state.volume_db

    @property
    def mix_volume_db(self) -> int:
        return self._state.mix_volume_db

    def input_gain_db(self, input_number: int) -> int:
        """Gain of physical input 1-4."""
        return self._state.input_gains_db[input_number - 1]

    def eq_db(self, band: str) -> int:
        return getattr(self._state, f"eq_{band}_db")
