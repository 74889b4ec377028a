"""Tests for command validation, sequencing, holds and polling."""

import asyncio

import pytest

from pyneets.interpreter import FieldDelta
from pyneets.scheduler import CommandScheduler, full_status_queries, spaced
from pyneets.state import DeviceStateStore


class RecordingConnection:
    """Stands in for ConnectionManager; remembers every command sent."""

    def __init__(self, connected=True):
        self.connected = connected
        self.sent = []

    def send(self, command):
        if not self.connected:
            return False
        self.sent.append(command)
        return True


def make_scheduler(connected=True, **kwargs):
    connection = RecordingConnection(connected)
    store = DeviceStateStore()
    options = dict(poll_interval=0, poll_step_delay=0.01, hold_initial_delay=0.2, hold_repeat_interval=0.05)
    options.update(kwargs)
    return CommandScheduler(connection, store, **options), connection, store


def test_full_status_poll_order():
    assert full_status_queries() == [
        "POWER=?",
        "VOL=?",
        "INPUT=?",
        "MUTE=?",
        "SETTINGS=INPUT,INPUT=1,MIX=?",
        "MIXVOL=?",
        "MIXMUTE=?",
        "SETTINGS=INPUT,INPUT=1,GAIN=?",
        "SETTINGS=INPUT,INPUT=2,GAIN=?",
        "SETTINGS=INPUT,INPUT=3,GAIN=?",
        "SETTINGS=INPUT,INPUT=4,GAIN=?",
        "SETTINGS=OUTPUT,EQLOW=?",
        "SETTINGS=OUTPUT,EQMID=?",
        "SETTINGS=OUTPUT,EQHIGH=?",
    ]


def test_spaced_offsets():
    assert spaced(["A", "B", "C"], 0.1) == [(0, "A"), (0.1, "B"), (0.2, "C")]


def test_unknown_action_is_rejected():
    scheduler, connection, _ = make_scheduler()
    result = scheduler.submit("self_destruct", {})
    assert not result.success
    assert result.error == "InvalidParameter"
    assert connection.sent == []


@pytest.mark.parametrize("source", [0, 6, 7, -1, "two", None, True, 2.5])
def test_source_out_of_range_sends_nothing(source):
    scheduler, connection, _ = make_scheduler()
    result = scheduler.submit("source_select", {"source": source})
    assert not result.success
    assert result.error == "InvalidParameter"
    assert connection.sent == []


@pytest.mark.parametrize(
    "action, params",
    [
        ("volume_set", {"value": 13}),
        ("volume_set", {"value": -71}),
        ("input_gain_set", {"input": 5, "value": 0}),
        ("input_gain_set", {"input": 1, "value": 13}),
        ("input_gain_up", {"input": 0}),
        ("eq_set", {"band": "bass", "value": 0}),
        ("eq_adjust", {"band": "low", "direction": "sideways"}),
        ("input_gain_up_hold_start", {}),
    ],
)
def test_invalid_parameters_send_nothing(action, params):
    scheduler, connection, _ = make_scheduler()
    result = scheduler.submit(action, params)
    assert not result.success
    assert result.error == "InvalidParameter"
    assert connection.sent == []


def test_validation_happens_before_connection_check():
    scheduler, _, _ = make_scheduler(connected=False)
    assert scheduler.submit("volume_set", {"value": 50}).error == "InvalidParameter"
    assert scheduler.submit("volume_set", {"value": -10}).error == "NotConnectedError"


def test_direct_command_sends_confirmation_query():
    async def scenario():
        scheduler, connection, _ = make_scheduler()
        result = scheduler.submit("source_select", {"source": 3})
        assert result.success
        assert connection.sent == ["INPUT=3"]
        await asyncio.sleep(0.4)
        assert connection.sent == ["INPUT=3", "INPUT=?"]

    asyncio.run(scenario())


def test_string_integer_parameters_are_accepted():
    async def scenario():
        scheduler, connection, _ = make_scheduler()
        assert scheduler.submit("volume_set", {"value": "-20"}).success
        assert connection.sent[0] == "VOL=-20"
        scheduler.stop_all()

    asyncio.run(scenario())


def test_toggles_use_mirrored_state():
    async def scenario():
        scheduler, connection, store = make_scheduler()
        store.apply([FieldDelta("power", True), FieldDelta("mute", False), FieldDelta("mix_mode", True)])
        scheduler.submit("power_toggle")
        scheduler.submit("mute_toggle")
        scheduler.submit("mix_mode_toggle")
        scheduler.submit("mix_mute_toggle")
        assert connection.sent == [
            "POWER=OFF",
            "MUTE=ON",
            "SETTINGS=INPUT,INPUT=1,MIX=FALSE",
            "MIXMUTE=ON",
        ]
        scheduler.stop_all()

    asyncio.run(scenario())


def test_steps_send_set_then_query():
    async def scenario():
        scheduler, connection, store = make_scheduler()
        store.apply([FieldDelta("input_gain_db", 2, 1), FieldDelta("eq_mid_db", -3)])
        scheduler.submit("volume_down")
        scheduler.submit("input_gain_up", {"input": 2})
        scheduler.submit("eq_adjust", {"band": "MID", "direction": "up"})
        assert connection.sent == [
            "VOL=-41",
            "VOL=?",
            "SETTINGS=INPUT,INPUT=2,GAIN=+3",
            "SETTINGS=INPUT,INPUT=2,GAIN=?",
            "SETTINGS=OUTPUT,EQMID=-2",
            "SETTINGS=OUTPUT,EQMID=?",
        ]

    asyncio.run(scenario())


def test_steps_at_boundary_are_noops():
    scheduler, connection, store = make_scheduler()
    store.apply([
        FieldDelta("volume_db", 12),
        FieldDelta("mix_volume_db", -70),
        FieldDelta("input_gain_db", -12, 3),
        FieldDelta("eq_high_db", 12),
    ])
    assert scheduler.submit("volume_up").message == "At maximum"
    assert scheduler.submit("mix_volume_down").message == "At minimum"
    assert scheduler.submit("input_gain_down", {"input": 4}).message == "At minimum"
    assert scheduler.submit("eq_adjust", {"band": "high", "direction": "up"}).message == "At limit"
    assert connection.sent == []


def test_hold_released_before_initial_delay_steps_once():
    async def scenario():
        scheduler, connection, _ = make_scheduler(hold_initial_delay=0.2, hold_repeat_interval=0.05)
        assert scheduler.submit("volume_up_hold_start").success
        hold = scheduler._holds["volume_up"]
        await asyncio.sleep(0.1)
        assert scheduler.submit("volume_up_hold_stop").success
        await asyncio.sleep(0.4)
        assert hold.steps_performed == 1
        assert connection.sent.count("VOL=-39") == 1

    asyncio.run(scenario())


def test_hold_repeats_after_initial_delay():
    async def scenario():
        scheduler, connection, _ = make_scheduler(hold_initial_delay=0.05, hold_repeat_interval=0.05)
        scheduler.submit("mix_volume_down_hold_start")
        hold = scheduler._holds["mix_volume_down"]
        await asyncio.sleep(0.4)
        scheduler.submit("mix_volume_down_hold_stop")
        performed = hold.steps_performed
        assert performed >= 3
        await asyncio.sleep(0.2)
        assert hold.steps_performed == performed
        assert scheduler.active_holds == []

    asyncio.run(scenario())


def test_hold_start_twice_keeps_single_hold():
    async def scenario():
        scheduler, connection, _ = make_scheduler()
        assert scheduler.submit("input_gain_up_hold_start", {"input": 1}).message is None
        assert scheduler.submit("input_gain_up_hold_start", {"input": 1}).message == "Already held"
        assert scheduler.active_holds == ["input_gain_up:1"]
        assert connection.sent.count("SETTINGS=INPUT,INPUT=1,GAIN=+1") == 1
        scheduler.stop_all()

    asyncio.run(scenario())


def test_hold_stop_without_hold():
    scheduler, _, _ = make_scheduler()
    result = scheduler.submit("volume_down_hold_stop")
    assert result.success
    assert result.message == "Not held"


def test_hold_skips_ticks_while_disconnected():
    async def scenario():
        scheduler, connection, _ = make_scheduler(hold_initial_delay=0.05, hold_repeat_interval=0.05)
        scheduler.submit("volume_up_hold_start")
        hold = scheduler._holds["volume_up"]
        connection.connected = False
        await asyncio.sleep(0.3)
        assert hold.steps_performed == 1
        scheduler.stop_all()

    asyncio.run(scenario())


def test_full_status_poll_is_spaced():
    async def scenario():
        scheduler, connection, _ = make_scheduler(poll_step_delay=0.01)
        scheduler.full_status_poll()
        assert connection.sent == ["POWER=?"]
        await asyncio.sleep(0.5)
        assert connection.sent == full_status_queries()

    asyncio.run(scenario())


def test_background_poll_queries_power_volume_and_input():
    async def scenario():
        scheduler, connection, _ = make_scheduler(poll_interval=0.05, poll_step_delay=0.01)
        scheduler.start_polling()
        await asyncio.sleep(0.12)
        scheduler.stop_polling()
        assert connection.sent[:3] == ["POWER=?", "VOL=?", "INPUT=?"]
        assert set(connection.sent) == {"POWER=?", "VOL=?", "INPUT=?"}

    asyncio.run(scenario())


def test_stop_all_cancels_pending_steps():
    async def scenario():
        scheduler, connection, _ = make_scheduler()
        scheduler.submit("power_on")
        scheduler.full_status_poll()
        scheduler.submit("volume_up_hold_start")
        scheduler.stop_all()
        sent = list(connection.sent)
        await asyncio.sleep(0.5)
        assert connection.sent == sent
        assert scheduler.active_holds == []

    asyncio.run(scenario())


def test_command_result_dict():
    scheduler, _, _ = make_scheduler(connected=False)
    assert scheduler.submit("mute_on").to_dict() == {
        "success": False,
        "action": "mute_on",
        "message": "Not connected to NEETS amp",
        "error": "NotConnectedError",
    }
