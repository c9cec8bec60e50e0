"""Tests for bbtune data models and runtime helpers."""
import numpy as np
import pytest

from bbtune.errors import AnalysisCancelled, UnknownControllerTypeError, UnknownDesignMethodError
from bbtune.models import (
    AxisPID,
    AxisResponseMetrics,
    Complete,
    Confidence,
    DroneParameters,
    ErrorStatistics,
    LogMetadata,
    PIDContribution,
    TransientMetrics,
    Unavailable,
    is_finite_number,
)
from bbtune.runtime import CancellationToken, iter_chunks


def test_tagged_results():
    assert Complete(3).available
    assert Complete(3).value == 3
    missing = Unavailable("no gyro")
    assert not missing.available
    assert missing.reason == "no gyro"


@pytest.mark.parametrize("battery, cells, voltage", [("4S", 4, 14.8), ("6s", 6, 22.2), ("LiPo", 4, 14.8)])
def test_drone_battery(battery, cells, voltage):
    drone = DroneParameters(battery=battery)
    assert drone.cell_count == cells
    assert drone.battery_voltage == pytest.approx(voltage)


def test_log_metadata_sample_rate():
    assert LogMetadata(looptime_us=250).sample_rate == pytest.approx(4000.0)
    assert LogMetadata().sample_rate is None
    assert LogMetadata(looptime_us=0).sample_rate is None


def test_axis_pid_as_dict():
    assert AxisPID(45, 80, 30).as_dict() == {"p": 45, "i": 80, "d": 30, "f": 0}


def test_confidence_rank_order():
    assert Confidence.LOW.rank < Confidence.MEDIUM.rank < Confidence.HIGH.rank


def test_response_metrics_shortcuts():
    transient = TransientMetrics(rise_time_ms=20.0, overshoot_percent=5.0, settling_time_ms=60.0)
    metrics = AxisResponseMetrics("roll", Complete(transient), ErrorStatistics(), PIDContribution())
    assert metrics.rise_time_ms == 20.0
    assert metrics.overshoot_percent == 5.0
    assert metrics.settling_time_ms == 60.0

    missing = AxisResponseMetrics("roll", Unavailable("no step"), ErrorStatistics(), PIDContribution())
    assert missing.rise_time_ms is None
    assert missing.settling_time_ms is None


@pytest.mark.parametrize("value, expected", [
    (1, True), (2.5, True), (np.int64(3), True), (float("nan"), False),
    (float("inf"), False), ("7", False), (None, False),
])
def test_is_finite_number(value, expected):
    assert is_finite_number(value) is expected


def test_unknown_controller_error_message():
    err = UnknownControllerTypeError("X", ["P", "PI"])
    assert str(err) == "Unknown controller type 'X'; expected one of P, PI"
    assert err.known == ("P", "PI")


def test_unknown_design_method_error_message():
    err = UnknownDesignMethodError("lqr", ["imc", "cc"])
    assert str(err) == "Unknown design method 'lqr'; expected one of imc, cc"
    assert isinstance(err, KeyError)


# ---------- runtime ----------


def test_iter_chunks_covers_range():
    assert list(iter_chunks(5000, 2000)) == [(0, 2000), (2000, 4000), (4000, 5000)]
    assert list(iter_chunks(0)) == []


def test_iter_chunks_stops_when_cancelled():
    token = CancellationToken()
    chunks = iter_chunks(10, 2, cancel=token)
    assert next(chunks) == (0, 2)
    token.cancel()
    assert token.cancelled
    with pytest.raises(AnalysisCancelled):
        next(chunks)
