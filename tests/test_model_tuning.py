"""Tests for bbtune.model_tuning -- identification, model-based design and simulation."""
import math

import numpy as np
import pytest

from bbtune.channels import ChannelSet
from bbtune.errors import (
    DegenerateSignalError,
    InsufficientDataError,
    UnknownDesignMethodError,
    UnsupportedModelError,
)
from bbtune.model_tuning import (
    DESIGN_METHODS,
    analyze_simulated_response,
    design_axis,
    design_cohen_coon,
    design_imc,
    design_pid,
    design_robust,
    design_ziegler_nichols,
    evaluate_pid_quality,
    identify_arx,
    identify_first_order,
    identify_second_order,
    identify_system,
    normalize,
    performance_changes,
    recommendation_confidence,
    scale_and_round,
    score_response,
    simulate_response,
    stick_activity,
)
from bbtune.models import AxisPID, ModelGains, SimulatedResponse, SystemModel


FIRST = SystemModel(order=1, gain=1.0, time_constant=0.1)
SECOND = SystemModel(order=2, gain=1.0, t1=1.0, t2=1.4, natural_frequency=1.0, damping_ratio=0.7)


def _step_input(n):
    u = np.ones(n)
    u[0] = 0.0
    return u


# ---------- helpers ----------


def test_normalize():
    np.testing.assert_allclose(normalize([2.0, 4.0, 6.0]), [0.0, 0.5, 1.0])
    np.testing.assert_array_equal(normalize(np.full(5, 3.0)), np.zeros(5))


@pytest.mark.parametrize("value, expected", [
    (4.26, 4.3),
    (9.94, 9.9),
    (12.5, 13.0),
    (104.17, 104.0),
])
def test_scale_and_round(value, expected):
    assert scale_and_round(value) == pytest.approx(expected)


# ---------- identification ----------


class TestIdentification:
    """First-order, second-order and ARX fits."""

    def test_first_order_time_constant(self):
        sr, tau = 100, 0.5
        t = np.arange(500) / sr
        y = 2.0 * (1 - np.exp(-t / tau))
        model = identify_first_order(_step_input(500), y, sr)
        assert model.order == 1
        assert model.gain == pytest.approx(2.0, rel=1e-3)
        assert model.time_constant == pytest.approx(tau, abs=0.011)

    def test_constant_command_is_degenerate(self):
        with pytest.raises(DegenerateSignalError):
            identify_first_order(np.zeros(200), np.arange(200.0), 100)

    def test_second_order_from_decrement(self):
        sr, zeta, wn = 1000, 0.1, 4 * np.pi
        t = np.arange(3000) / sr
        wd = wn * np.sqrt(1 - zeta ** 2)
        y = np.exp(-zeta * wn * t) * np.cos(wd * t)
        model = identify_second_order(_step_input(3000), y, sr)
        assert model.order == 2
        assert model.damping_ratio == pytest.approx(zeta, rel=0.02)
        assert model.natural_frequency == pytest.approx(wn, rel=0.01)
        assert model.t1 == pytest.approx(1 / model.natural_frequency ** 2)
        assert model.t2 == pytest.approx(2 * model.damping_ratio / model.natural_frequency)

    def test_second_order_defaults_without_oscillation(self):
        t = np.arange(500) / 100
        model = identify_second_order(_step_input(500), 1 - np.exp(-t), 100)
        assert model.damping_ratio == 0.7
        assert model.natural_frequency == 1.0

    def test_arx_recovers_coefficients(self):
        rng = np.random.default_rng(42)
        u = rng.normal(0, 1, 500)
        y = np.zeros(500)
        for k in range(2, 500):
            y[k] = 1.5 * y[k - 1] - 0.7 * y[k - 2] + 0.5 * u[k - 1] + 0.2 * u[k - 2]
        model = identify_arx(u, y)
        assert model.a == pytest.approx((1.0, -1.5, 0.7), abs=1e-6)
        assert model.b == pytest.approx((0.5, 0.2), abs=1e-6)

    def test_arx_too_short(self):
        with pytest.raises(InsufficientDataError):
            identify_arx(np.arange(5.0), np.arange(5.0))

    def test_identify_system_dispatches_by_order(self):
        rng = np.random.default_rng(42)
        u = rng.normal(0, 1, 300)
        y = np.convolve(u, [0.0, 0.5, 0.3], mode="full")[:300]
        assert len(identify_system(u, y, 500, order=3).a) == 4

    def test_identify_system_rejects_bad_input(self):
        with pytest.raises(UnsupportedModelError):
            identify_system(np.arange(200.0), np.arange(200.0), 500, order=0)
        with pytest.raises(InsufficientDataError):
            identify_system(np.arange(50.0), np.arange(50.0), 500)


# ---------- design ----------


class TestDesign:
    """Gain formulas per method and model order."""

    def test_imc_first_order(self):
        gains = design_imc(SystemModel(order=1, gain=2.0, time_constant=0.5))
        assert gains == ModelGains(p=0.6, i=125.0, d=0.0)

    def test_imc_second_order(self):
        gains = design_imc(SECOND)
        assert gains.p == pytest.approx(2.5)
        assert gains.i == pytest.approx(104.0)
        assert gains.d == pytest.approx(146.0)

    def test_cohen_coon(self):
        gains = design_cohen_coon(SystemModel(order=1, gain=1.0, time_constant=1.0))
        assert gains.p == pytest.approx(1.2)
        assert gains.i == pytest.approx(95.0)
        assert gains.d == pytest.approx(46.0)

    def test_ziegler_nichols_second_order(self):
        model = SystemModel(order=2, gain=1.0, t1=1.0, t2=0.5, natural_frequency=2 * math.pi)
        gains = design_ziegler_nichols(model)
        assert gains.p == pytest.approx(0.6)
        assert gains.i == pytest.approx(120.0)
        assert gains.d == pytest.approx(7.5)

    def test_robust_first_order(self):
        gains = design_robust(SystemModel(order=1, gain=1.0, time_constant=1.0))
        assert gains.p == pytest.approx(0.5)
        assert gains.i == pytest.approx(57.0)
        assert gains.d == pytest.approx(26.0)

    def test_order_limits(self):
        arx = SystemModel(order=3, a=(1.0, 0.1, 0.1, 0.1), b=(1.0, 0.0, 0.0))
        with pytest.raises(UnsupportedModelError):
            design_imc(arx)
        with pytest.raises(UnsupportedModelError):
            design_cohen_coon(SECOND)

    def test_zero_gain_model_is_degenerate(self):
        with pytest.raises(DegenerateSignalError):
            design_imc(SystemModel(order=1, gain=0.0, time_constant=0.5))

    def test_design_pid_dispatch(self):
        model = SystemModel(order=1, gain=1.0, time_constant=1.0)
        assert design_pid(model, "cc") == design_cohen_coon(model)
        assert set(DESIGN_METHODS) == {"imc", "zn", "cc", "robust"}

    def test_unknown_method(self):
        with pytest.raises(UnknownDesignMethodError) as info:
            design_pid(FIRST, "bogus")
        assert isinstance(info.value, KeyError)
        assert "bogus" in str(info.value)


# ---------- simulation / scoring ----------


class TestSimulation:
    """Closed-loop simulation and response metrics."""

    def test_imc_loop_tracks_setpoint(self):
        response = simulate_response(FIRST, 1.0, design_imc(FIRST), steps=1000)
        assert len(response) == 1000
        assert response[0] == 0.0
        result = analyze_simulated_response(response, 1.0)
        assert result.steady_state_error < 1e-3
        assert result.overshoot_percent < 5.0
        assert result.settling_steps < 1000

    def test_second_order_loop_is_stable(self):
        response = simulate_response(SECOND, 1.0, design_imc(SECOND), steps=1000)
        assert np.all(np.isfinite(response))
        assert response[-1] == pytest.approx(1.0, abs=0.02)

    def test_setpoint_trace_is_held_at_last_value(self):
        setpoints = np.zeros(50)
        setpoints[10:] = 1.0
        response = simulate_response(FIRST, setpoints, design_imc(FIRST), steps=500)
        assert response[9] == 0.0
        assert response[10] > 0.0
        assert response[-1] == pytest.approx(1.0, abs=0.01)

    def test_response_metrics(self):
        response = [0.0, 0.5, 1.2] + [1.0] * 20
        result = analyze_simulated_response(response, 1.0)
        assert result == SimulatedResponse(overshoot_percent=pytest.approx(20.0), settling_steps=3,
                                           steady_state_error=0.0)

    def test_unsettled_response(self):
        result = analyze_simulated_response([0.0] * 15, 1.0)
        assert result.overshoot_percent == 0.0
        assert result.settling_steps == 15
        assert result.steady_state_error == pytest.approx(1.0)

    def test_diverged_response(self):
        with pytest.raises(DegenerateSignalError):
            analyze_simulated_response([0.0, math.inf], 1.0)

    def test_score(self):
        assert score_response(SimulatedResponse(10.0, 50, 0.02)) == pytest.approx(17.0)
        assert score_response(SimulatedResponse(10.0, 50, 0.02), overshoot_weight=0.0) == pytest.approx(7.0)

    def test_quality_prefers_designed_gains(self):
        designed = evaluate_pid_quality(design_imc(FIRST), FIRST, 1.0)
        sluggish = evaluate_pid_quality(ModelGains(p=0.01, i=0.0, d=0.0), FIRST, 1.0)
        assert designed < sluggish

    def test_diverging_gains_cost_infinity(self):
        assert evaluate_pid_quality(ModelGains(p=-50.0, i=0.0, d=0.0), FIRST, 1.0, steps=1000) == math.inf


def test_design_axis_from_logged_step():
    n, sr, tau = 400, 500, 0.05
    t = np.arange(n) / sr
    setpoint = np.zeros(n)
    setpoint[100:] = 300.0
    gyro = np.zeros(n)
    gyro[100:] = 300.0 * (1 - np.exp(-(t[100:] - t[100]) / tau))
    channels = ChannelSet.from_arrays(sr, TIME=t, GYRO_ROLL=gyro, SETPOINT_ROLL=setpoint)

    design = design_axis("roll", channels.axis("roll"), sr, method="imc", order=1)
    assert design.axis == "roll"
    assert design.method == "imc"
    assert design.model.time_constant == pytest.approx(0.25)
    assert design.gains == ModelGains(p=0.6, i=250.0, d=0.0)
    assert math.isfinite(design.quality)


# ---------- recommendation outlook ----------


def test_performance_changes():
    current = {"roll": AxisPID(p=40, i=80, d=30), "yaw": AxisPID(p=40, i=80, d=0)}
    recommended = {
        "roll": AxisPID(p=48, i=80, d=24),
        "pitch": AxisPID(p=48, i=80, d=24),
        "yaw": AxisPID(p=40, i=80, d=5),
    }
    changes = performance_changes(current, recommended)
    assert set(changes) == {"roll", "yaw"}
    roll = changes["roll"]
    assert roll.responsiveness == pytest.approx(0.1)
    assert roll.stability == pytest.approx(-0.06)
    assert roll.settling_time == pytest.approx(0.0)
    assert roll.overshoot == pytest.approx(0.08)
    assert roll.noise_rejection == pytest.approx(0.12)
    # No current D gives no basis for a D estimate
    assert changes["yaw"].noise_rejection == pytest.approx(0.0)


def test_stick_activity():
    assert stick_activity(np.full(100, 1500.0)) == 0.0
    assert stick_activity(np.arange(100.0)) == pytest.approx(0.1)
    assert stick_activity(np.tile([0.0, 20.0], 50)) == 1.0
    # Decimated to every 4th sample
    assert stick_activity(np.arange(20000.0)) == pytest.approx(0.4)
    assert stick_activity([1500.0]) == 0.0


@pytest.mark.parametrize("count, activity, expected", [
    (20000, 0.6, 0.9),
    (5000, 0.3, 0.7),
    (500, 0.1, 0.4),
])
def test_recommendation_confidence(count, activity, expected):
    assert recommendation_confidence(count, activity) == pytest.approx(expected)
