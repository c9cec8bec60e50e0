"""Tests for the full analysis pipeline (analyzer.py)."""
import math

import numpy as np
import pytest

from bbtune.analyzer import (
    analyze_channels,
    analyze_csv,
    analyze_log,
    generate_recommendation,
    run_analysis,
)
from bbtune.channels import ChannelRole, ChannelSet
from bbtune.errors import (
    AnalysisCancelled,
    InsufficientDataError,
    UnknownControllerTypeError,
    UnknownDesignMethodError,
)
from bbtune.models import AnalysisOptions, Complete, DroneParameters, FlightStyle, Unavailable
from bbtune.runtime import CancellationToken

import generate_test_log


def _resonance_channels(n=2000, sr=1000, freq=80.0, amplitude=20.0):
    """Roll gyro with a strong mechanical resonance over uniform noise."""
    rng = np.random.default_rng(42)
    t = np.arange(n) / sr
    gyro = amplitude * np.sin(2 * np.pi * freq * t) + rng.uniform(-2, 2, n)
    return ChannelSet.from_arrays(sr, GYRO_ROLL=gyro, RC_ROLL=np.full(n, 1500.0))


def _step_channels(n=400, sr=500, step_at=100, tau=0.05):
    """Roll setpoint steps 0 -> 300 deg/s; gyro follows a first-order lag."""
    t = np.arange(n) / sr
    setpoint = np.zeros(n)
    setpoint[step_at:] = 300.0
    gyro = np.zeros(n)
    gyro[step_at:] = 300.0 * (1 - np.exp(-(t[step_at:] - t[step_at]) / tau))
    return ChannelSet.from_arrays(
        sr, TIME=t, GYRO_ROLL=gyro, SETPOINT_ROLL=setpoint, RC_ROLL=1500.0 + setpoint / 2
    )


def _full_channels(n=3000, sr=1000):
    rng = np.random.default_rng(42)
    t = np.arange(n) / sr
    arrays = {"RC_THROTTLE": np.full(n, 1500.0)}
    for name in ("ROLL", "PITCH", "YAW"):
        sp = np.zeros(n)
        sp[500:1000] = 200.0
        sp[1800:2300] = -150.0
        arrays[f"SETPOINT_{name}"] = sp
        arrays[f"RC_{name}"] = 1500.0 + sp / 2
        arrays[f"GYRO_{name}"] = sp + 5 * np.sin(2 * np.pi * 150 * t) + rng.normal(0, 1, n)
        arrays[f"P_{name}"] = rng.normal(0, 5, n)
        arrays[f"I_{name}"] = rng.normal(0, 1, n)
        arrays[f"D_{name}"] = rng.normal(0, 3, n)
    for m in range(4):
        arrays[f"MOTOR_{m}"] = 1400.0 + rng.normal(0, 20, n)
    return ChannelSet.from_arrays(sr, **arrays)


def _rows_from(channels, names):
    """Flatten a channel set back to decoded-log string rows."""
    columns = {name: channels.get(ChannelRole(name)) for name in names}
    return [{name: f"{columns[name][k]:.4f}" for name in names} for k in range(len(channels))]


# ---------- scenarios ----------


class TestResonanceScenario:
    """80 Hz frame resonance on the roll gyro."""

    def test_dominant_frequency_and_bands(self):
        report = analyze_channels(_resonance_channels())
        roll = report.spectra["roll"]
        assert isinstance(roll, Complete)
        assert abs(roll.value.dominant_frequency - 80.0) <= 5.0
        assert roll.value.band("Mechanical Mid").severity > roll.value.band("PropWash").severity
        assert report.dominant_frequencies["roll"] == roll.value.dominant_frequency

    def test_notch_contains_resonance(self):
        report = analyze_channels(_resonance_channels())
        notch = report.filters.dyn_notch
        assert notch.min_hz <= 80 <= notch.max_hz
        assert f"set dyn_notch_min_hz = {notch.min_hz}" in report.commands
        assert any("Mechanical Mid" in note for note in report.filters.notes)

    @pytest.mark.parametrize("freq, sr", [(15.0, 1000), (900.0, 4000)])
    def test_resonance_outside_notch_range_still_reports(self, freq, sr):
        report = analyze_channels(_resonance_channels(n=4096, sr=sr, freq=freq))
        notch = report.filters.dyn_notch
        assert 80 <= notch.min_hz < notch.max_hz <= 600
        assert report.commands[-1] == "save"


class TestStepScenario:
    """First-order step response on roll."""

    def test_rise_time_and_overshoot(self):
        report = analyze_channels(_step_channels())
        roll = report.responses["roll"]
        assert isinstance(roll, Complete)
        assert roll.value.rise_time_ms == pytest.approx(0.05 * math.log(9) * 1000, rel=0.1)
        assert roll.value.overshoot_percent == pytest.approx(0.0, abs=1e-9)


class TestModelDesign:
    """Optional model-based design per axis."""

    def test_off_by_default(self):
        report = analyze_channels(_step_channels())
        assert report.model_designs == {}

    def test_first_order_design_on_roll(self):
        options = AnalysisOptions(design_method="imc", model_order=1)
        report = analyze_channels(_step_channels(), options=options)
        roll = report.model_designs["roll"]
        assert isinstance(roll, Complete)
        assert roll.value.method == "imc"
        assert roll.value.model.time_constant == pytest.approx(0.25)
        for axis in ("pitch", "yaw"):
            assert isinstance(report.model_designs[axis], Unavailable)

    def test_unknown_method_raises_before_analysis(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(UnknownDesignMethodError):
            run_analysis(_step_channels(), AnalysisOptions(design_method="lqr"), cancel=token)


# ---------- isolation / degraded input ----------


class TestAxisIsolation:
    """A broken axis never takes the others down."""

    def test_missing_axes_are_unavailable(self):
        report = analyze_channels(_resonance_channels())
        assert isinstance(report.spectra["roll"], Complete)
        for axis in ("pitch", "yaw"):
            assert isinstance(report.spectra[axis], Unavailable)
            assert isinstance(report.responses[axis], Unavailable)
            assert isinstance(report.harmonics[axis], Unavailable)
            assert report.dominant_frequencies[axis] is None
        assert report.commands[-1] == "save"

    def test_gyro_without_command(self):
        n = 2000
        channels = ChannelSet.from_arrays(
            1000,
            GYRO_ROLL=np.zeros(n),
            RC_ROLL=np.full(n, 1500.0),
            GYRO_PITCH=np.sin(np.arange(n) / 3.0),
        )
        report = analyze_channels(channels)
        assert isinstance(report.spectra["pitch"], Complete)
        assert isinstance(report.responses["pitch"], Unavailable)
        assert "rcCommand[1]" in report.responses["pitch"].reason

    def test_short_axis_response_unavailable(self):
        n = 50
        channels = ChannelSet.from_arrays(1000, GYRO_ROLL=np.zeros(n), RC_ROLL=np.full(n, 1500.0))
        report = analyze_channels(channels)
        assert isinstance(report.spectra["roll"], Complete)
        response = report.responses["roll"]
        assert isinstance(response, Unavailable)
        assert "100" in response.reason
        assert report.critical["roll"].confidence.value == "low"

    def test_no_spectra_uses_default_filters(self):
        n = 20
        channels = ChannelSet.from_arrays(1000, GYRO_ROLL=np.zeros(n), RC_ROLL=np.full(n, 1500.0))
        report = analyze_channels(channels)
        assert isinstance(report.spectra["roll"], Unavailable)
        assert report.filters.gyro_lowpass_hz == 120
        assert report.commands[-1] == "save"


# ---------- options ----------


def test_parallel_matches_serial():
    channels = _full_channels()
    serial = run_analysis(channels, AnalysisOptions(parallel=False))
    parallel = run_analysis(channels, AnalysisOptions(parallel=True))
    for axis in ("roll", "pitch", "yaw"):
        assert serial.spectra[axis].value.dominant_frequency == parallel.spectra[axis].value.dominant_frequency
        assert serial.critical[axis] == parallel.critical[axis]


@pytest.mark.parametrize("parallel", [False, True])
def test_cancelled_before_start(parallel):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(AnalysisCancelled):
        run_analysis(_full_channels(), AnalysisOptions(parallel=parallel), cancel=token)


def test_cancelled_during_preparation():
    rows = _rows_from(_resonance_channels(), ["gyroADC[0]", "rcCommand[0]"])
    token = CancellationToken()
    token.cancel()
    with pytest.raises(AnalysisCancelled):
        analyze_log(rows, cancel=token)


def test_unknown_controller_type_propagates():
    with pytest.raises(UnknownControllerTypeError):
        analyze_channels(_full_channels(), options=AnalysisOptions(controller_type="PIDTurbo"))


def test_explicit_controller_type():
    report = analyze_channels(_full_channels(), options=AnalysisOptions(controller_type="PID"))
    assert report.pid.controller_type == "PID"


def test_flight_profile_from_full_log():
    analysis = run_analysis(_full_channels())
    profile = analysis.flight_profile
    assert 0.0 <= profile.aggressiveness <= 1.0
    assert 0.0 <= profile.smoothness <= 1.0
    assert profile.motor_usage.average == pytest.approx(0.4, abs=0.01)
    assert analysis.gyro_noise is not None
    assert analysis.motor_hz is None
    assert analysis.common_frequencies


def test_generate_recommendation_is_deterministic():
    analysis = run_analysis(_full_channels())
    drone = DroneParameters(flight_style=FlightStyle.RACING)
    first = generate_recommendation(analysis, drone)
    second = generate_recommendation(analysis, drone)
    assert first == second
    assert first[0].controller_type == "PIDRacing"


# ---------- row / CSV entry points ----------


def test_analyze_log_too_few_rows():
    rows = [{"gyroADC[0]": "1.0"}] * 5
    with pytest.raises(InsufficientDataError):
        analyze_log(rows)


def test_analyze_log_with_headers():
    rows = _rows_from(_resonance_channels(), ["gyroADC[0]", "rcCommand[0]"])
    headers = {"looptime": "1000", "Firmware revision": "Betaflight 4.2.9", "rollPID": "40,70,30"}
    report = analyze_log(rows, headers=headers)
    assert report.sample_rate == pytest.approx(1000.0)
    assert report.filters.firmware_version == "4.2"
    assert report.filters.gyro_lowpass2_hz is None
    assert any(note.startswith("Roll:") for note in report.pid.notes)


def test_analyze_csv_end_to_end(tmp_path):
    rows, fieldnames, headers = generate_test_log.generate_log(n=4000)
    csv_path = tmp_path / "flight.csv"
    header_path = tmp_path / "flight_headers.txt"
    generate_test_log.write_csv(str(csv_path), rows, fieldnames)
    generate_test_log.write_headers(str(header_path), headers)

    report = analyze_csv(str(csv_path), str(header_path), options=AnalysisOptions(parallel=True))

    assert report.sample_count == 4000
    assert report.sample_rate == pytest.approx(generate_test_log.SAMPLE_RATE)
    for axis in ("roll", "pitch", "yaw"):
        assert isinstance(report.spectra[axis], Complete)
    assert isinstance(report.responses["roll"], Complete)
    assert report.responses["roll"].value.rise_time_ms > 0
    assert isinstance(report.filter_effect, Complete)
    assert 0.0 <= report.filter_effect.value.reduction_ratio <= 1.0
    assert report.filters.firmware_version == "4.4"
    assert any(note.startswith("Gyro low-pass 250 -> ") for note in report.filters.notes)
    assert report.commands[-1] == "save"
    assert report.commands[0].startswith("set p_roll = ")


def test_analyze_csv_without_headers(tmp_path):
    rows, fieldnames, _ = generate_test_log.generate_log(n=1000)
    csv_path = tmp_path / "flight.csv"
    generate_test_log.write_csv(str(csv_path), rows, fieldnames)
    report = analyze_csv(str(csv_path))
    # Rate comes from the time column
    assert report.sample_rate == pytest.approx(generate_test_log.SAMPLE_RATE)
    assert report.filters.firmware_version == "4.3"


def test_outlook_against_logged_pids():
    rows = _rows_from(_full_channels(), ["gyroADC[0]", "rcCommand[0]", "setpoint[0]"])
    report = analyze_log(rows, headers={"looptime": "1000", "rollPID": "40,70,30"})
    assert set(report.pid.performance) == {"roll"}
    assert 0.0 <= report.pid.confidence_score <= 1.0
