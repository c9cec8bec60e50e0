"""Model-based PID design.

Fits a low-order plant model to an axis' command (input) and gyro
(output), derives controller gains from the model and scores a gain set by
simulating the closed loop.

Both traces are min-max normalized before identification, so a model's
gain is a ratio of normalized ranges rather than a physical quantity.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, Mapping, Sequence, Union

import numpy as np

from .errors import (
    DegenerateSignalError,
    InsufficientDataError,
    UnknownDesignMethodError,
    UnsupportedModelError,
)
from .models import (
    AXES,
    AxisData,
    AxisPID,
    ModelDesign,
    ModelGains,
    PerformanceChange,
    SimulatedResponse,
    SystemModel,
)

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

MIN_SAMPLES = 100
TIME_CONSTANT_LEVEL = 0.632      # first-order output at t = T
STEADY_TAIL = 0.1                # fraction of the trace treated as steady state
DEFAULT_ZETA = 0.7
DEFAULT_WN = 1.0

RESPONSE_TIME_S = 0.2
TARGET_DAMPING = 0.7
ROBUSTNESS = 0.5
COHEN_COON_DEAD_TIME = 0.1       # dead time as a fraction of T

SIM_DT = 0.01
SIM_STEPS = 200
INTEGRAL_LIMIT = 100.0
SIM_SETTLING_BAND = 0.02
SIM_SETTLING_RUN = 10

STICK_SAMPLES = 5000
STICK_CHANGE_SCALE = 10.0        # command change per sample that counts as full activity


# ── Helpers ──────────────────────────────────────────────────────────────────

def normalize(data) -> np.ndarray:
    """Min-max scale to [0, 1]; a constant trace becomes all zeros."""
    data = np.asarray(data, dtype=np.float64)
    lo, hi = float(np.min(data)), float(np.max(data))
    if hi == lo:
        return np.zeros_like(data)
    return (data - lo) / (hi - lo)


def scale_and_round(value: float) -> float:
    """Betaflight-style rounding: one decimal below 10, integers above."""
    if value < 10:
        return math.floor(value * 10 + 0.5) / 10
    return float(math.floor(value + 0.5))


def _range_gain(u: np.ndarray, y: np.ndarray) -> float:
    u_span = float(np.max(u) - np.min(u))
    y_span = float(np.max(y) - np.min(y))
    if u_span == 0:
        raise DegenerateSignalError("command trace is constant")
    if y_span == 0:
        raise DegenerateSignalError("gyro trace is constant")
    return y_span / u_span


def _require_positive(**values: float) -> None:
    for name, value in values.items():
        if not math.isfinite(value) or value <= 0:
            raise DegenerateSignalError(f"model {name} must be positive, got {value}")


def _gains(kp: float, ki: float, kd: float) -> ModelGains:
    # I and D are scaled by 100 into Betaflight units
    return ModelGains(
        p=scale_and_round(kp),
        i=scale_and_round(ki * 100.0),
        d=scale_and_round(kd * 100.0),
    )


# ── System identification ────────────────────────────────────────────────────

def identify_first_order(u, y, sample_rate: float) -> SystemModel:
    """``K / (T s + 1)``: gain from the output/input ranges, T from the 63.2% point."""
    u = np.asarray(u, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    gain = _range_gain(u, y)

    tail = max(1, int(len(y) * STEADY_TAIL))
    steady = float(np.mean(y[-tail:]))
    above = np.where(y >= TIME_CONSTANT_LEVEL * steady)[0]
    index = int(above[0]) if len(above) else 0
    if index == 0:
        raise DegenerateSignalError("response never rises to 63.2% of its steady state")

    return SystemModel(order=1, gain=gain, time_constant=index / sample_rate)


def identify_second_order(u, y, sample_rate: float) -> SystemModel:
    """``K / (T1 s^2 + T2 s + 1)`` from the first two output maxima.

    The logarithmic decrement between them gives the damping ratio and
    their spacing the damped frequency; the natural frequency is in rad/s. With fewer than two maxima the
    damping defaults to 0.7 and the natural frequency to 1.
    """
    u = np.asarray(u, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    gain = _range_gain(u, y)

    i = np.arange(1, len(y) - 1)
    peaks = i[(y[i] > y[i - 1]) & (y[i] > y[i + 1])]

    zeta, wn = DEFAULT_ZETA, DEFAULT_WN
    # A growing second maximum gives no usable decrement
    if len(peaks) >= 2 and y[peaks[0]] > y[peaks[1]] > 0:
        delta = math.log(y[peaks[0]] / y[peaks[1]])
        zeta = delta / (2 * math.pi * math.sqrt(1 + (delta / (2 * math.pi)) ** 2))
        damped_hz = sample_rate / float(peaks[1] - peaks[0])
        wn = 2 * math.pi * damped_hz / math.sqrt(1 - zeta ** 2)

    return SystemModel(
        order=2,
        gain=gain,
        t1=1.0 / wn ** 2,
        t2=2.0 * zeta / wn,
        natural_frequency=wn,
        damping_ratio=zeta,
    )


def identify_arx(u, y, na: int = 2, nb: int = 2, nk: int = 1) -> SystemModel:
    """Least-squares ARX fit ``A(q) y = B(q) u(t - nk)``.

    Raises
    ------
    InsufficientDataError
        Fewer regression rows than parameters.
    """
    u = np.asarray(u, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    n = len(y)
    start = max(na, nb + nk - 1)
    if n - start < na + nb:
        raise InsufficientDataError("ARX identification", start + na + nb, n)

    columns = [-y[start - j:n - j] for j in range(1, na + 1)]
    columns += [u[start - nk - j:n - nk - j] for j in range(nb)]
    phi = np.column_stack(columns)
    theta, *_ = np.linalg.lstsq(phi, y[start:], rcond=None)

    return SystemModel(
        order=na,
        a=(1.0,) + tuple(float(v) for v in theta[:na]),
        b=tuple(float(v) for v in theta[na:]),
    )


def identify_system(command, measured, sample_rate: float, order: int = 2) -> SystemModel:
    """Plant model of one axis; orders above 2 fit an ARX model of that order.

    Raises
    ------
    InsufficientDataError
        Fewer than 100 samples.
    DegenerateSignalError
        A constant trace, or a response that never rises.
    UnsupportedModelError
        ``order`` below 1.
    """
    if order < 1:
        raise UnsupportedModelError(f"model order must be at least 1, got {order}")
    n = min(len(command), len(measured))
    if n < MIN_SAMPLES:
        raise InsufficientDataError("system identification", MIN_SAMPLES, n)

    u = normalize(np.asarray(command, dtype=np.float64)[:n])
    y = normalize(np.asarray(measured, dtype=np.float64)[:n])
    if order == 1:
        return identify_first_order(u, y, sample_rate)
    if order == 2:
        return identify_second_order(u, y, sample_rate)
    return identify_arx(u, y, na=order, nb=order)


# ── Controller design ────────────────────────────────────────────────────────

def design_imc(model: SystemModel, response_time: float = RESPONSE_TIME_S,
               robustness: float = ROBUSTNESS) -> ModelGains:
    """Internal-model-control tuning; larger ``robustness`` slows the loop."""
    lam = response_time * (1 + 2 * robustness)
    if model.order == 1:
        _require_positive(gain=model.gain, time_constant=model.time_constant)
        kp = model.time_constant / (model.gain * lam)
        return _gains(kp, kp / model.time_constant, 0.0)
    if model.order == 2:
        _require_positive(gain=model.gain, t1=model.t1)
        lag = model.t1 + model.t2
        if lag == 0:
            raise DegenerateSignalError("model has T1 + T2 == 0")
        kp = model.t1 / (model.gain * lam)
        return _gains(kp, kp / lag, kp * model.t2 / lag)
    raise UnsupportedModelError("IMC design needs a first- or second-order model")


def design_ziegler_nichols(model: SystemModel) -> ModelGains:
    """Classic Ziegler-Nichols rule on the model's ultimate gain and period."""
    if model.order == 1:
        _require_positive(gain=model.gain, time_constant=model.time_constant)
        ku = 4 * model.time_constant / (model.gain * math.pi)
        tu = 4 * model.time_constant
    elif model.order == 2:
        _require_positive(gain=model.gain, natural_frequency=model.natural_frequency)
        ku = 1.0 / model.gain
        tu = 2 * math.pi / model.natural_frequency
    else:
        raise UnsupportedModelError("Ziegler-Nichols design needs a first- or second-order model")
    kp = 0.6 * ku
    return _gains(kp, kp / (0.5 * tu), kp * 0.125 * tu)


def design_cohen_coon(model: SystemModel) -> ModelGains:
    """Cohen-Coon rule, assuming a dead time of a tenth of T."""
    if model.order != 1:
        raise UnsupportedModelError("Cohen-Coon design needs a first-order model")
    k, t = model.gain, model.time_constant
    _require_positive(gain=k, time_constant=t)
    r = COHEN_COON_DEAD_TIME
    kp = (1 / k) * (1.33 + 0.33 * r) / (1 + r)
    ki = kp / (t * (1.35 + 0.27 * r) / (1 + 0.6 * r))
    kd = kp * t * (0.37 + 0.22 * r) / (1 + 0.6 * r)
    return _gains(kp, ki, kd)


def design_robust(model: SystemModel, damping: float = TARGET_DAMPING,
                  robustness: float = ROBUSTNESS) -> ModelGains:
    """AMIGO-style rule for first order; damping placement for second order."""
    if model.order == 1:
        k, t = model.gain, model.time_constant
        _require_positive(gain=k, time_constant=t)
        t_mod = t * (1 + robustness)
        kp = (0.2 + 0.45 * t / t_mod) / k
        ti = t * (0.4 * t_mod + 0.8 * t) / (t_mod + 0.1 * t)
        td = t * 0.5 * t_mod / (0.3 * t_mod + t)
        return _gains(kp, kp / ti, kp * td)
    if model.order == 2:
        _require_positive(gain=model.gain, natural_frequency=model.natural_frequency)
        wn = model.natural_frequency
        kp = (1 / model.gain) * (1 + robustness)
        ki = kp * wn * wn / (2 + robustness)
        kd = kp * 2 * (damping + (damping - model.damping_ratio) * (1 + robustness)) / wn
        return _gains(kp, ki, kd)
    raise UnsupportedModelError("robust design needs a first- or second-order model")


_DESIGNERS = {
    "imc": lambda model: design_imc(model),
    "zn": design_ziegler_nichols,
    "cc": design_cohen_coon,
    "robust": lambda model: design_robust(model),
}
DESIGN_METHODS = tuple(_DESIGNERS)


def design_pid(model: SystemModel, method: str = "imc") -> ModelGains:
    """Gains for *model* with one of :data:`DESIGN_METHODS`."""
    try:
        designer = _DESIGNERS[method]
    except KeyError:
        raise UnknownDesignMethodError(method, DESIGN_METHODS) from None
    return designer(model)


# ── Closed-loop simulation ───────────────────────────────────────────────────

Setpoints = Union[float, Sequence[float], np.ndarray]


def _setpoint_at(setpoints: Setpoints, step: int) -> float:
    if np.ndim(setpoints) == 0:
        return float(setpoints)
    return float(setpoints[min(step, len(setpoints) - 1)])


def _final_setpoint(setpoints: Setpoints) -> float:
    if np.ndim(setpoints) == 0:
        return float(setpoints)
    return float(setpoints[-1])


def simulate_response(
    model: SystemModel,
    setpoints: Setpoints,
    gains: ModelGains,
    dt: float = SIM_DT,
    steps: int = SIM_STEPS,
) -> np.ndarray:
    """Closed-loop output of *model* under a PIDF controller, starting at rest.

    *setpoints* is a constant or a per-step trace (held at its last value).
    Gains are in Betaflight scale, so I, D and F are divided by 100 back to
    model units. The integral is clamped to +/-100. First-order models use
    the exact zero-order-hold step, second-order models the finite-difference
    recursion ``y[k] = a1 y[k-1] - a2 y[k-2] + b u`` and ARX models their own
    polynomials with the current effort as ``u[k-1]``.
    """
    kp, ki, kd, kf = gains.p, gains.i / 100.0, gains.d / 100.0, gains.f / 100.0
    response = [0.0]
    efforts = [0.0]
    output = prev_output = prev_error = integral = prev_setpoint = 0.0

    if model.order == 1:
        alpha = 1.0 - math.exp(-dt / model.time_constant)
    elif model.order == 2:
        damping = dt * model.t2 / model.t1
        a1 = 2.0 - damping - dt * dt / model.t1
        a2 = 1.0 - damping
        b = dt * dt * model.gain / model.t1

    for step in range(1, steps):
        setpoint = _setpoint_at(setpoints, step)
        error = setpoint - output
        integral = max(-INTEGRAL_LIMIT, min(INTEGRAL_LIMIT, integral + error * dt))
        effort = (
            kp * error
            + ki * integral
            + kd * (error - prev_error) / dt
            + kf * (setpoint - prev_setpoint) / dt
        )
        efforts.append(effort)

        if model.order == 1:
            output += (model.gain * effort - output) * alpha
        elif model.order == 2:
            output, prev_output = a1 * output - a2 * prev_output + b * effort, output
        else:
            value = 0.0
            for j in range(1, len(model.a)):
                if step - j >= 0:
                    value -= model.a[j] * response[step - j]
            for j in range(len(model.b)):
                if step - j >= 0:
                    value += model.b[j] * efforts[step - j]
            output = value

        response.append(output)
        prev_error = error
        prev_setpoint = setpoint

    return np.asarray(response, dtype=np.float64)


def analyze_simulated_response(response, setpoints: Setpoints) -> SimulatedResponse:
    """Overshoot, 2% settling step and final error of a simulated response.

    Raises
    ------
    DegenerateSignalError
        The simulation diverged.
    """
    response = np.asarray(response, dtype=np.float64)
    if len(response) == 0 or not np.all(np.isfinite(response)):
        raise DegenerateSignalError("simulated loop diverged")
    final = _final_setpoint(setpoints)

    overshoot = (float(np.max(response)) - final) / abs(final) * 100.0 if final != 0 else 0.0

    band = abs(final) * SIM_SETTLING_BAND
    within = np.abs(response - final) <= band
    settling = len(response)
    for i in range(len(response)):
        if within[i:i + SIM_SETTLING_RUN].all():
            settling = i
            break

    return SimulatedResponse(
        overshoot_percent=max(0.0, overshoot),
        settling_steps=settling,
        steady_state_error=float(abs(response[-1] - final)),
    )


def score_response(
    response: SimulatedResponse,
    overshoot_weight: float = 1.0,
    settling_weight: float = 1.0,
    steady_state_weight: float = 1.0,
) -> float:
    """Weighted cost of a simulated response; lower is better."""
    return (
        overshoot_weight * response.overshoot_percent
        + settling_weight * response.settling_steps / 10.0
        + steady_state_weight * response.steady_state_error * 100.0
    )


def evaluate_pid_quality(
    gains: ModelGains,
    model: SystemModel,
    setpoints: Setpoints,
    steps: int = 100,
    dt: float = SIM_DT,
    overshoot_weight: float = 1.0,
    settling_weight: float = 1.0,
    steady_state_weight: float = 1.0,
) -> float:
    """Simulated cost of *gains* on *model*; a diverging loop costs ``inf``."""
    response = simulate_response(model, setpoints, gains, dt=dt, steps=steps)
    try:
        simulated = analyze_simulated_response(response, setpoints)
    except DegenerateSignalError as exc:
        logger.debug("Gains %s rejected: %s", gains, exc)
        return math.inf
    return score_response(simulated, overshoot_weight, settling_weight, steady_state_weight)


def design_axis(
    axis: str,
    data: AxisData,
    sample_rate: float,
    method: str = "imc",
    order: int = 2,
) -> ModelDesign:
    """Identify, design and score one axis against a unit setpoint step."""
    model = identify_system(data.command, data.gyro, sample_rate, order)
    gains = design_pid(model, method)
    simulated = analyze_simulated_response(simulate_response(model, 1.0, gains), 1.0)
    logger.debug("%s %s design: %s", axis, method, gains)
    return ModelDesign(
        axis=axis,
        model=model,
        method=method,
        gains=gains,
        response=simulated,
        quality=score_response(simulated),
    )


# ── Recommendation outlook ───────────────────────────────────────────────────

def _ratio(new: float, old: float) -> float:
    # No current value means no basis for a change estimate
    return new / old if old else 1.0


def performance_changes(
    current: Mapping[str, AxisPID],
    recommended: Mapping[str, AxisPID],
) -> Dict[str, PerformanceChange]:
    """Expected effect of moving each axis from *current* to *recommended*.

    P drives responsiveness and stability, I the settling time, D overshoot
    and noise rejection. Positive values are improvements.
    """
    changes = {}
    for axis in AXES:
        if axis not in current or axis not in recommended:
            continue
        old, new = current[axis], recommended[axis]
        p = _ratio(new.p, old.p)
        i = _ratio(new.i, old.i)
        d = _ratio(new.d, old.d)
        changes[axis] = PerformanceChange(
            responsiveness=(p - 1) * 0.5,
            stability=(1 - p) * 0.3 if p > 1 else (1 - p) * 0.2,
            settling_time=(i - 1) * 0.4 if i > 1 else (1 - i) * -0.3,
            overshoot=(1 - d) * -0.5 if d > 1 else (1 - d) * 0.4,
            noise_rejection=(1 - d) * 0.6 if d < 1 else (d - 1) * -0.5,
        )
    return changes


def stick_activity(command) -> float:
    """Mean absolute command change per sample, scaled to [0, 1].

    Long logs are decimated to at most 5000 points first.
    """
    command = np.asarray(command, dtype=np.float64)
    stride = max(1, len(command) // STICK_SAMPLES)
    sampled = command[::stride]
    if len(sampled) < 2:
        return 0.0
    return min(1.0, float(np.mean(np.abs(np.diff(sampled)))) / STICK_CHANGE_SCALE)


def recommendation_confidence(sample_count: int, activity: float) -> float:
    """0..1 trust in a recommendation given log length and stick activity."""
    confidence = 0.7
    if sample_count > 10000:
        confidence += 0.1
    elif sample_count < 1000:
        confidence -= 0.2
    if activity > 0.5:
        confidence += 0.1
    elif activity < 0.2:
        confidence -= 0.1
    return min(1.0, max(0.0, confidence))
