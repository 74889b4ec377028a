"""Command scheduling for the NEETS amp.

Everything sent to the device goes through here:
- direct commands, followed by a confirmation query after a short delay
- relative steps computed from the mirrored state (volume, gain, EQ)
- hold sequences: one immediate step, then repeats until released
- status polls: the full poll on connect and a light background poll

Timed multi-step sends are described as ``(offset, command)`` sequences and
run by ``run_sequence``. Offsets are seconds from the start of the sequence;
steps at offset 0 are sent synchronously.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from pyneets import codec
from pyneets.connection import ConnectionManager
from pyneets.exceptions import InvalidParameter, NotConnectedError
from pyneets.interpreter import INPUT_COUNT
from pyneets.state import (
    EQ_BANDS,
    GAIN_MAX_DB,
    GAIN_MIN_DB,
    SOURCE_MAX,
    VOLUME_MAX_DB,
    VOLUME_MIN_DB,
    DeviceStateStore,
    clamp,
)

# Confirmation query delays (seconds)
POWER_CONFIRM_DELAY = 0.25
SOURCE_CONFIRM_DELAY = 0.25
SETTING_CONFIRM_DELAY = 0.1

HOLD_CONTROLS = (
    "volume_up",
    "volume_down",
    "mix_volume_up",
    "mix_volume_down",
    "input_gain_up",
    "input_gain_down",
)


def full_status_queries() -> list[str]:
    """Every query of the full status poll, in the order the device gets them."""
    queries = [
        codec.command_power(None),
        codec.command_volume(None),
        codec.command_source(None),
        codec.command_mute(None),
        codec.command_mix_mode(None),
        codec.command_mix_volume(None),
        codec.command_mix_mute(None),
    ]
    queries += [codec.command_input_gain(input_number, None) for input_number in range(1, INPUT_COUNT + 1)]
    queries += [codec.command_eq(band, None) for band in EQ_BANDS]
    return queries


def light_status_queries() -> list[str]:
    return [codec.command_power(None), codec.command_volume(None), codec.command_source(None)]


def spaced(commands: Sequence[str], step_delay: float) -> list[tuple[float, str]]:
    """Turn a command list into a sequence with ``step_delay`` between sends."""
    return [(index * step_delay, command) for index, command in enumerate(commands)]


@dataclass
class CommandResult:
    success: bool
    action: str
    message: Optional[str] = None
    error: Optional[str] = None  # exception class name on failure
    data: Any = None

    def to_dict(self) -> dict:
        result = {"success": self.success, "action": self.action}
        if self.message is not None:
            result["message"] = self.message
        if self.error is not None:
            result["error"] = self.error
        if self.data is not None:
            result["data"] = self.data
        return result


class SequenceHandle:
    """A running command sequence. ``alive`` is checked before every send."""

    def __init__(self, name: str):
        self.name = name
        self.alive = True
        self.task: Optional[asyncio.Task[Any]] = None

    def cancel(self):
        self.alive = False
        if self.task is not None and not self.task.done():
            self.task.cancel()


@dataclass
class HoldOperation:
    """A pressed-and-held control. ``active`` is checked before every step."""
    key: str
    step: Callable[[], bool]
    active: bool = True
    steps_performed: int = 0
    initial_delay_task: Optional[asyncio.Task[Any]] = field(default=None, repr=False)
    repeat_task: Optional[asyncio.Task[Any]] = field(default=None, repr=False)

    def cancel(self):
        self.active = False
        for task in (self.initial_delay_task, self.repeat_task):
            if task is not None and not task.done():
                task.cancel()


class CommandScheduler:
    """Validates, sequences and sends commands for one bridge."""

    def __init__(
        self,
        connection: ConnectionManager,
        store: DeviceStateStore,
        poll_interval: float = 5.0,
        poll_step_delay: float = 0.1,
        hold_initial_delay: float = 1.0,
        hold_repeat_interval: float = 0.5,
    ):
        self._logger = logging.getLogger(__name__)
        self._connection = connection
        self._store = store
        self._poll_interval = poll_interval
        self._poll_step_delay = poll_step_delay
        self._hold_initial_delay = hold_initial_delay
        self._hold_repeat_interval = hold_repeat_interval

        self._holds: dict[str, HoldOperation] = {}
        self._sequences: set[SequenceHandle] = set()
        self._poll_task: Optional[asyncio.Task[Any]] = None

        self._actions: dict[str, Callable[[dict], CommandResult]] = {
            "power_on": self._power_on,
            "power_off": self._power_off,
            "power_toggle": self._power_toggle,
            "source_select": self._source_select,
            "volume_up": self._volume_up,
            "volume_down": self._volume_down,
            "volume_set": self._volume_set,
            "mute_on": self._mute_on,
            "mute_off": self._mute_off,
            "mute_toggle": self._mute_toggle,
            "mix_mode_toggle": self._mix_mode_toggle,
            "mix_volume_up": self._mix_volume_up,
            "mix_volume_down": self._mix_volume_down,
            "mix_mute_toggle": self._mix_mute_toggle,
            "input_gain_up": self._input_gain_up,
            "input_gain_down": self._input_gain_down,
            "input_gain_set": self._input_gain_set,
            "eq_adjust": self._eq_adjust,
            "eq_set": self._eq_set,
            "poll_status": self._poll_status,
        }
        for control in HOLD_CONTROLS:
            self._actions[f"{control}_hold_start"] = self._make_hold_start(control)
            self._actions[f"{control}_hold_stop"] = self._make_hold_stop(control)

    @property
    def actions(self) -> list[str]:
        return list(self._actions.keys())

    @property
    def active_holds(self) -> list[str]:
        return [key for key, hold in self._holds.items() if hold.active]

    # ========== Submission ==========

    def submit(self, action: str, params: dict = None) -> CommandResult:
        """Validate and run one action. Never raises for bad input."""
        params = params or {}
        handler = self._actions.get(action)
        if handler is None:
            self._logger.warning(f"Unknown action: {action}")
            return CommandResult(False, action, f"Unknown action: {action}", "InvalidParameter")
        try:
            return handler(params)
        except InvalidParameter as e:
            self._logger.warning(f"Rejected {action}: {e}")
            return CommandResult(False, action, str(e), type(e).__name__)
        except NotConnectedError as e:
            self._logger.warning(f"Skipped {action}: {e}")
            return CommandResult(False, action, str(e), type(e).__name__)

    def _require_connected(self):
        if not self._connection.connected:
            raise NotConnectedError("Not connected to NEETS amp")

    # ========== Sending ==========

    def send(self, command: str) -> bool:
        """Send one command now, skipping quietly while disconnected."""
        if not self._connection.connected:
            self._logger.debug(f"Not connected, skipping {command}")
            return False
        return self._connection.send(command)

    def run_sequence(self, steps: Sequence[tuple[float, str]], name: str = "sequence") -> SequenceHandle:
        """Send each command at its offset from now.

        Leading steps at offset 0 go out before this returns; the rest run in
        a task that is cancelled by ``cancel_sequences``.
        """
        handle = SequenceHandle(name)
        pending = list(steps)
        while pending and pending[0][0] <= 0:
            _, command = pending.pop(0)
            self.send(command)
        if pending:
            loop = asyncio.get_running_loop()
            handle.task = loop.create_task(self._run_sequence(handle, pending, loop.time()))
            self._sequences.add(handle)
            handle.task.add_done_callback(lambda _: self._sequences.discard(handle))
        else:
            handle.alive = False
        return handle

    async def _run_sequence(self, handle: SequenceHandle, steps, started: float):
        loop = asyncio.get_running_loop()
        for offset, command in steps:
            wait = started + offset - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            if not handle.alive:
                return
            self.send(command)
        handle.alive = False

    def cancel_sequences(self):
        for handle in list(self._sequences):
            handle.cancel()
        self._sequences.clear()

    def _set_and_confirm(self, command: str, query: str, delay: float, name: str) -> SequenceHandle:
        return self.run_sequence([(0, command), (delay, query)], name)

    # ========== Polling ==========

    def full_status_poll(self) -> SequenceHandle:
        self._logger.info("Requesting full device status")
        return self.run_sequence(spaced(full_status_queries(), self._poll_step_delay), "full_poll")

    def start_polling(self):
        self.stop_polling()
        if self._poll_interval and self._poll_interval > 0:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
            self._logger.info(f"Background poll started (interval={self._poll_interval}s)")

    def stop_polling(self):
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _poll_loop(self):
        """Periodically query power, volume and input to follow front panel changes."""
        while True:
            await asyncio.sleep(self._poll_interval)
            if not self._connection.connected:
                self._logger.debug("Poll tick skipped, not connected")
                continue
            self.run_sequence(spaced(light_status_queries(), self._poll_step_delay), "light_poll")

    # ========== Relative steps ==========

    def step_volume(self, direction: int) -> bool:
        """Move the main volume by ``direction`` dB. False at the range boundary."""
        current = self._store.volume_db
        target = clamp(current + direction, VOLUME_MIN_DB, VOLUME_MAX_DB)
        if target == current:
            self._logger.debug(f"Volume already at {current}dB, not stepping")
            return False
        self.run_sequence([(0, codec.command_volume(target)), (0, codec.command_volume(None))], "volume_step")
        return True

    def step_mix_volume(self, direction: int) -> bool:
        current = self._store.mix_volume_db
        target = clamp(current + direction, VOLUME_MIN_DB, VOLUME_MAX_DB)
        if target == current:
            self._logger.debug(f"Mix volume already at {current}dB, not stepping")
            return False
        self.run_sequence([(0, codec.command_mix_volume(target)), (0, codec.command_mix_volume(None))], "mix_volume_step")
        return True

    def step_input_gain(self, input_number: int, direction: int) -> bool:
        current = self._store.input_gain_db(input_number)
        target = clamp(current + direction, GAIN_MIN_DB, GAIN_MAX_DB)
        if target == current:
            self._logger.debug(f"Input {input_number} gain already at {current}dB, not stepping")
            return False
        self.run_sequence(
            [
                (0, codec.command_input_gain(input_number, target)),
                (0, codec.command_input_gain(input_number, None)),
            ],
            "gain_step",
        )
        return True

    def step_eq(self, band: str, direction: int) -> bool:
        current = self._store.eq_db(band)
        target = clamp(current + direction, GAIN_MIN_DB, GAIN_MAX_DB)
        if target == current:
            self._logger.debug(f"EQ {band} already at {current}dB, not stepping")
            return False
        self.run_sequence([(0, codec.command_eq(band, target)), (0, codec.command_eq(band, None))], "eq_step")
        return True

    def _step_for_control(self, control: str, input_number: Optional[int] = None) -> Callable[[], bool]:
        direction = 1 if control.endswith("_up") else -1
        if control.startswith("mix_volume"):
            return lambda: self.step_mix_volume(direction)
        if control.startswith("input_gain"):
            return lambda: self.step_input_gain(input_number, direction)
        return lambda: self.step_volume(direction)

    # ========== Hold sequences ==========

    def hold_start(self, key: str, step: Callable[[], bool]) -> bool:
        """Start a hold. Returns False if ``key`` is already being held."""
        existing = self._holds.get(key)
        if existing is not None and existing.active:
            self._logger.debug(f"Hold {key} already active")
            return False
        hold = HoldOperation(key, step)
        self._holds[key] = hold
        self._logger.info(f"Hold started: {key}")
        self._hold_step(hold)
        hold.initial_delay_task = asyncio.get_running_loop().create_task(self._hold_initial_delay_elapsed(hold))
        return True

    def hold_stop(self, key: str) -> bool:
        hold = self._holds.pop(key, None)
        if hold is None:
            return False
        hold.cancel()
        self._logger.info(f"Hold stopped: {key} after {hold.steps_performed} step(s)")
        return True

    def stop_all_holds(self):
        for key in list(self._holds.keys()):
            self.hold_stop(key)

    def _hold_step(self, hold: HoldOperation):
        if not self._connection.connected:
            self._logger.debug(f"Hold {hold.key} tick skipped, not connected")
            return
        if hold.step():
            hold.steps_performed += 1

    async def _hold_initial_delay_elapsed(self, hold: HoldOperation):
        await asyncio.sleep(self._hold_initial_delay)
        if not hold.active:
            return
        hold.repeat_task = asyncio.get_running_loop().create_task(self._hold_repeat(hold))

    async def _hold_repeat(self, hold: HoldOperation):
        while hold.active:
            await asyncio.sleep(self._hold_repeat_interval)
            if not hold.active:
                return
            self._hold_step(hold)

    def _make_hold_start(self, control: str) -> Callable[[dict], CommandResult]:
        action = f"{control}_hold_start"

        def handler(params: dict) -> CommandResult:
            input_number = None
            key = control
            if control.startswith("input_gain"):
                input_number = _int_param(params, "input", 1, INPUT_COUNT)
                key = f"{control}:{input_number}"
            self._require_connected()
            started = self.hold_start(key, self._step_for_control(control, input_number))
            return CommandResult(True, action, None if started else "Already held")

        return handler

    def _make_hold_stop(self, control: str) -> Callable[[dict], CommandResult]:
        action = f"{control}_hold_stop"

        def handler(params: dict) -> CommandResult:
            key = control
            if control.startswith("input_gain"):
                key = f"{control}:{_int_param(params, 'input', 1, INPUT_COUNT)}"
            stopped = self.hold_stop(key)
            return CommandResult(True, action, None if stopped else "Not held")

        return handler

    # ========== Teardown ==========

    def stop_all(self):
        """Cancel polls, holds and queued sequences (disconnect and shutdown)."""
        self.stop_polling()
        self.stop_all_holds()
        self.cancel_sequences()

    # ========== Action handlers ==========

    def _power_on(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(codec.command_power(True), codec.command_power(None), POWER_CONFIRM_DELAY, "power")
        return CommandResult(True, "power_on")

    def _power_off(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(codec.command_power(False), codec.command_power(None), POWER_CONFIRM_DELAY, "power")
        return CommandResult(True, "power_off")

    def _power_toggle(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(
            codec.command_power(not self._store.power), codec.command_power(None), POWER_CONFIRM_DELAY, "power"
        )
        return CommandResult(True, "power_toggle")

    def _source_select(self, params: dict) -> CommandResult:
        source = _int_param(params, "source", 1, SOURCE_MAX)
        self._require_connected()
        self._set_and_confirm(codec.command_source(source), codec.command_source(None), SOURCE_CONFIRM_DELAY, "source")
        return CommandResult(True, "source_select")

    def _volume_up(self, params: dict) -> CommandResult:
        self._require_connected()
        stepped = self.step_volume(1)
        return CommandResult(True, "volume_up", None if stepped else "At maximum")

    def _volume_down(self, params: dict) -> CommandResult:
        self._require_connected()
        stepped = self.step_volume(-1)
        return CommandResult(True, "volume_down", None if stepped else "At minimum")

    def _volume_set(self, params: dict) -> CommandResult:
        value = _int_param(params, "value", VOLUME_MIN_DB, VOLUME_MAX_DB)
        self._require_connected()
        self._set_and_confirm(codec.command_volume(value), codec.command_volume(None), SETTING_CONFIRM_DELAY, "volume")
        return CommandResult(True, "volume_set")

    def _mute_on(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(codec.command_mute(True), codec.command_mute(None), SETTING_CONFIRM_DELAY, "mute")
        return CommandResult(True, "mute_on")

    def _mute_off(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(codec.command_mute(False), codec.command_mute(None), SETTING_CONFIRM_DELAY, "mute")
        return CommandResult(True, "mute_off")

    def _mute_toggle(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(
            codec.command_mute(not self._store.mute), codec.command_mute(None), SETTING_CONFIRM_DELAY, "mute"
        )
        return CommandResult(True, "mute_toggle")

    def _mix_mode_toggle(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(
            codec.command_mix_mode(not self._store.mix_mode),
            codec.command_mix_mode(None),
            SETTING_CONFIRM_DELAY,
            "mix_mode",
        )
        return CommandResult(True, "mix_mode_toggle")

    def _mix_volume_up(self, params: dict) -> CommandResult:
        self._require_connected()
        stepped = self.step_mix_volume(1)
        return CommandResult(True, "mix_volume_up", None if stepped else "At maximum")

    def _mix_volume_down(self, params: dict) -> CommandResult:
        self._require_connected()
        stepped = self.step_mix_volume(-1)
        return CommandResult(True, "mix_volume_down", None if stepped else "At minimum")

    def _mix_mute_toggle(self, params: dict) -> CommandResult:
        self._require_connected()
        self._set_and_confirm(
            codec.command_mix_mute(not self._store.mix_mute),
            codec.command_mix_mute(None),
            SETTING_CONFIRM_DELAY,
            "mix_mute",
        )
        return CommandResult(True, "mix_mute_toggle")

    def _input_gain_up(self, params: dict) -> CommandResult:
        input_number = _int_param(params, "input", 1, INPUT_COUNT)
        self._require_connected()
        stepped = self.step_input_gain(input_number, 1)
        return CommandResult(True, "input_gain_up", None if stepped else "At maximum")

    def _input_gain_down(self, params: dict) -> CommandResult:
        input_number = _int_param(params, "input", 1, INPUT_COUNT)
        self._require_connected()
        stepped = self.step_input_gain(input_number, -1)
        return CommandResult(True, "input_gain_down", None if stepped else "At minimum")

    def _input_gain_set(self, params: dict) -> CommandResult:
        input_number = _int_param(params, "input", 1, INPUT_COUNT)
        value = _int_param(params, "value", GAIN_MIN_DB, GAIN_MAX_DB)
        self._require_connected()
        self._set_and_confirm(
            codec.command_input_gain(input_number, value),
            codec.command_input_gain(input_number, None),
            SETTING_CONFIRM_DELAY,
            "gain",
        )
        return CommandResult(True, "input_gain_set")

    def _eq_adjust(self, params: dict) -> CommandResult:
        band = _choice_param(params, "band", EQ_BANDS)
        direction = _choice_param(params, "direction", ("up", "down"))
        self._require_connected()
        stepped = self.step_eq(band, 1 if direction == "up" else -1)
        return CommandResult(True, "eq_adjust", None if stepped else "At limit")

    def _eq_set(self, params: dict) -> CommandResult:
        band = _choice_param(params, "band", EQ_BANDS)
        value = _int_param(params, "value", GAIN_MIN_DB, GAIN_MAX_DB)
        self._require_connected()
        self._set_and_confirm(codec.command_eq(band, value), codec.command_eq(band, None), SETTING_CONFIRM_DELAY, "eq")
        return CommandResult(True, "eq_set")

    def _poll_status(self, params: dict) -> CommandResult:
        self._require_connected()
        self.full_status_poll()
        return CommandResult(True, "poll_status")


def _int_param(params: dict, name: str, minimum: int, maximum: int) -> int:
    """Fetch an integer parameter and check it is within [minimum, maximum]."""
    if name not in params or params[name] is None:
        raise InvalidParameter(f"Missing parameter '{name}'")
    value = params[name]
    if isinstance(value, bool):
        raise InvalidParameter(f"Parameter '{name}' must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidParameter(f"Parameter '{name}' must be an integer, got {value!r}")
    if isinstance(value, float) and number != value:
        raise InvalidParameter(f"Parameter '{name}' must be an integer, got {value!r}")
    if not (minimum <= number <= maximum):
        raise InvalidParameter(f"Invalid {name} {number}, must be {minimum}-{maximum}")
    return number


def _choice_param(params: dict, name: str, choices: Sequence[str]) -> str:
    value = params.get(name)
    if not isinstance(value, str) or value.lower() not in choices:
        raise InvalidParameter(f"Invalid {name} {value!r}, must be one of {', '.join(choices)}")
    return value.lower()
