"""Tests for the device state store."""

import dataclasses

import pytest

from pyneets.interpreter import FieldDelta, interpret
from pyneets.state import (
    FIELD_RANGES,
    DeviceStateStore,
    clamp_field,
    gain_percent,
    volume_percent,
)


def test_initial_state():
    snapshot = DeviceStateStore().snapshot()
    assert snapshot.connected is False
    assert snapshot.power is False
    assert snapshot.source == 0
    assert snapshot.volume_db == -40
    assert snapshot.mix_volume_db == -40
    assert snapshot.input_gains_db == (0, 0, 0, 0)
    assert snapshot.input_gains_percent == (50, 50, 50, 50)


def test_volume_scenario_from_query_response():
    store = DeviceStateStore()
    assert store.apply(interpret("NEUNIT=1,VOL=-20").deltas) is True
    snapshot = store.snapshot()
    assert snapshot.volume_db == -20
    assert snapshot.volume_percent == 61


@pytest.mark.parametrize("field_name", ["volume_db", "mix_volume_db", "eq_low_db", "eq_mid_db", "eq_high_db"])
@pytest.mark.parametrize("value", [-1000, -71, -70, -13, -12, 0, 5, 6, 12, 13, 1000])
def test_stored_value_is_always_clamped(field_name, value):
    minimum, maximum = FIELD_RANGES[field_name]

    clamped_first = DeviceStateStore()
    clamped_first.apply([FieldDelta(field_name, clamp_field(field_name, value))])
    applied_raw = DeviceStateStore()
    applied_raw.apply([FieldDelta(field_name, value)])

    stored = getattr(applied_raw.snapshot(), field_name)
    assert minimum <= stored <= maximum
    assert stored == getattr(clamped_first.snapshot(), field_name)


def test_gain_is_clamped_per_input():
    store = DeviceStateStore()
    store.apply([FieldDelta("input_gain_db", 40, 0), FieldDelta("input_gain_db", -40, 3)])
    assert store.snapshot().input_gains_db == (12, 0, 0, -12)


def test_same_delta_twice_reports_no_change():
    store = DeviceStateStore()
    deltas = [FieldDelta("volume_db", -10), FieldDelta("input_gain_db", 4, 2)]
    assert store.apply(deltas) is True
    assert store.apply(deltas) is False


def test_clamped_to_current_value_is_no_change():
    store = DeviceStateStore()
    store.apply([FieldDelta("volume_db", 12)])
    assert store.apply([FieldDelta("volume_db", 30)]) is False


def test_batch_with_one_real_change_reports_change():
    store = DeviceStateStore()
    store.apply([FieldDelta("power", True)])
    assert store.apply([FieldDelta("power", True), FieldDelta("mute", True)]) is True


def test_unknown_field_and_bad_gain_index_are_ignored():
    store = DeviceStateStore()
    assert store.apply([FieldDelta("balance", 3)]) is False
    assert store.apply([FieldDelta("input_gain_db", 3, 7)]) is False


@pytest.mark.parametrize("db", range(-70, 13))
def test_volume_percent_is_derived_from_db_only(db):
    store = DeviceStateStore()
    store.apply([FieldDelta("volume_db", db), FieldDelta("mix_volume_db", db)])
    snapshot = store.snapshot()
    assert snapshot.volume_percent == volume_percent(db)
    assert snapshot.mix_volume_percent == volume_percent(db)
    assert 0 <= snapshot.volume_percent <= 100


def test_percent_conversion_endpoints_and_rounding():
    assert volume_percent(-70) == 0
    assert volume_percent(12) == 100
    assert volume_percent(-20) == 61
    assert gain_percent(-12) == 0
    assert gain_percent(0) == 50
    assert gain_percent(12) == 100
    # 3 * 100 / 24 = 12.5 rounds half up
    assert gain_percent(-9) == 13


def test_set_connected_reports_transitions_only():
    store = DeviceStateStore()
    assert store.set_connected(True) is True
    assert store.set_connected(True) is False
    assert store.set_connected(False) is True


def test_snapshot_is_immutable_and_detached():
    store = DeviceStateStore()
    snapshot = store.snapshot()
    with pytest.raises(dataclasses.FrozenInstanceError):
        snapshot.volume_db = 0
    store.apply([FieldDelta("input_gain_db", 5, 0)])
    assert snapshot.input_gains_db == (0, 0, 0, 0)


def test_snapshot_dict_has_display_values():
    store = DeviceStateStore()
    store.apply([
        FieldDelta("volume_db", -20),
        FieldDelta("input_gain_db", 3, 1),
        FieldDelta("eq_high_db", -2),
    ])
    data = store.snapshot().to_dict()
    assert data["volume_db"] == -20
    assert data["volume_percent"] == 61
    assert data["volume_display"] == "-20dB"
    assert data["input_gains_db"] == [0, 3, 0, 0]
    assert data["input_gains_display"] == ["0dB", "+3dB", "0dB", "0dB"]
    assert data["input_gains_percent"] == [50, 63, 50, 50]
    assert data["eq_high_display"] == "-2dB"
    assert data["eq_low_display"] == "0dB"


@pytest.mark.parametrize("record", ["NEUNIT=1,INPUT=9", "NEUNIT=1,INPUT=-1"])
def test_out_of_range_source_report_is_dropped(record):
    store = DeviceStateStore()
    store.apply(interpret("NEUNIT=1,INPUT=3").deltas)
    assert store.apply(interpret(record).deltas) is False
    assert store.snapshot().source == 3


def test_source_report_in_range_is_applied():
    store = DeviceStateStore()
    assert store.apply(interpret("NEUNIT=1,INPUT=5").deltas) is True
    assert store.snapshot().source == 5
