"""PID recommendation engine.

Seeds gains from a Ziegler-Nichols ultimate gain/period estimate, bends them
for the airframe (prop size, weight, battery, motor kV, frame geometry) and
the detected flight style, then scales them into Betaflight CLI units.
"""
from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional

from .analyzers.critical import DEFAULT_CRITICAL
from .analyzers.flight_profile import pid_adjustments
from .errors import UnknownControllerTypeError
from .models import (
    AXES,
    AxisPID,
    CriticalParameters,
    DroneParameters,
    FlightProfile,
    FlightStyle,
    PIDRecommendation,
)

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

# Ziegler-Nichols coefficients: Kp = kp*Ku, Ki = ki*Ku/Tu, Kd = kd*Ku*Tu
ZN_COEFFICIENTS: Dict[str, Dict[str, float]] = {
    "P":            {"kp": 0.5,  "ki": 0.0,  "kd": 0.0},
    "PI":           {"kp": 0.45, "ki": 0.54, "kd": 0.0},
    "PD":           {"kp": 0.8,  "ki": 0.0,  "kd": 0.1},
    "PID":          {"kp": 0.6,  "ki": 1.2,  "kd": 0.075},
    "PIDFreeStyle": {"kp": 0.45, "ki": 0.9,  "kd": 0.06},
    "PIDCinematic": {"kp": 0.35, "ki": 0.75, "kd": 0.05},
    "PIDRacing":    {"kp": 0.5,  "ki": 0.9,  "kd": 0.075},
}

_STYLE_CONTROLLER = {
    FlightStyle.RACING: "PIDRacing",
    FlightStyle.CINEMATIC: "PIDCinematic",
    FlightStyle.FREESTYLE: "PIDFreeStyle",
    FlightStyle.MIXED: "PIDFreeStyle",
}

# Raw gain -> CLI units
_SCALE = {"p": 25.0, "i": 35.0, "d": 400.0}

# Safety clamp ranges
_CLAMP_P = (20, 80)
_CLAMP_I = (30, 120)
_CLAMP_D = (10, 50)
_CLAMP_D_YAW = (0, 20)

_YAW_FACTOR = {"kp": 0.8, "ki": 1.2, "kd": 0.5}
_H_FRAME_ROLL = {"kp": 0.95, "ki": 1.05}

FEEDFORWARD_BASE = 30
FEEDFORWARD_MAX = 100
_CLAMP_MASTER = (0.5, 1.5)

# Nominal pack voltage thresholds (3S / 4S)
_LOW_VOLTAGE = 11.1
_HIGH_VOLTAGE = 14.8

DEFAULT_PIDS = {
    "roll":  AxisPID(p=40, i=80, d=25, f=30),
    "pitch": AxisPID(p=40, i=80, d=25, f=30),
    "yaw":   AxisPID(p=50, i=80, d=0,  f=0),
}

# Tuning-note thresholds
_NOISY_GYRO = 0.5            # gyro std / 100
_SLOW_RESPONSE_S = 0.15
_FAST_RESPONSE_S = 0.05


# ── Helpers ──────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]."""
    return max(lo, min(hi, value))


def _scaled(value: float, scale: float, bounds) -> int:
    lo, hi = bounds
    if math.isnan(value):
        return int(lo)
    return int(_clamp(round(_clamp(value * scale, -1e9, 1e9)), lo, hi))


def controller_for_style(style: Optional[FlightStyle]) -> str:
    if style is None:
        return "PIDFreeStyle"
    return _STYLE_CONTROLLER[FlightStyle(style)]


def zn_gains(ku: float, tu: float, controller_type: str) -> Dict[str, float]:
    """Raw Ziegler-Nichols gains for an archetype.

    Raises
    ------
    UnknownControllerTypeError
    """
    try:
        c = ZN_COEFFICIENTS[controller_type]
    except KeyError:
        raise UnknownControllerTypeError(controller_type, ZN_COEFFICIENTS) from None
    return {
        "kp": c["kp"] * ku,
        "ki": c["ki"] * ku / tu,
        "kd": c["kd"] * ku * tu,
    }


def apply_drone_adjustments(gains: Dict[str, float], drone: DroneParameters) -> Dict[str, float]:
    """Sequential multipliers for prop size, weight, battery voltage and motor kV."""
    g = dict(gains)

    if drone.size_inches <= 3:
        g["kp"] *= 1.3
        g["kd"] *= 1.2
        g["ki"] *= 0.8
    elif drone.size_inches >= 7:
        g["kp"] *= 0.8
        g["ki"] *= 1.3
        g["kd"] *= 0.7

    if drone.weight_grams < 250:
        g["kp"] *= 1.2
        g["ki"] *= 0.9
    elif drone.weight_grams > 600:
        g["kp"] *= 0.9
        g["ki"] *= 1.3
        g["kd"] *= 0.8

    voltage = drone.battery_voltage
    if voltage > _HIGH_VOLTAGE:
        g["kp"] *= 0.9
    elif voltage < _LOW_VOLTAGE:
        g["kp"] *= 1.1

    if drone.motor_kv > 2500:
        g["kp"] *= 0.9
        g["kd"] *= 1.1
    elif drone.motor_kv < 1800:
        g["kp"] *= 1.1
        g["ki"] *= 1.1

    return g


def scale_axis(gains: Dict[str, float], axis: str, feedforward: int = 0) -> AxisPID:
    """Convert raw gains to clamped Betaflight integers."""
    d_bounds = _CLAMP_D_YAW if axis == "yaw" else _CLAMP_D
    return AxisPID(
        p=_scaled(gains["kp"], _SCALE["p"], _CLAMP_P),
        i=_scaled(gains["ki"], _SCALE["i"], _CLAMP_I),
        d=_scaled(gains["kd"], _SCALE["d"], d_bounds),
        f=int(feedforward),
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def feedforward_for_axis(axis: str, drone: DroneParameters, style: Optional[FlightStyle]) -> int:
    """Feedforward for one axis, rounded to an integer after every factor."""
    value = FEEDFORWARD_BASE
    if axis == "yaw":
        value = _round_half_up(value * 0.5)
    elif axis == "pitch":
        value = _round_half_up(value * 1.1)

    if style == FlightStyle.RACING:
        value = _round_half_up(value * 1.3)
    elif style == FlightStyle.CINEMATIC:
        value = _round_half_up(value * 0.7)

    if drone.size_inches <= 3:
        value = _round_half_up(value * 1.2)
    elif drone.size_inches >= 7:
        value = _round_half_up(value * 0.8)

    if drone.weight_grams > 600:
        value = _round_half_up(value * 0.9)
    elif drone.weight_grams < 250:
        value = _round_half_up(value * 1.1)

    return int(_clamp(value, 0, FEEDFORWARD_MAX))


def master_multiplier(drone: DroneParameters) -> float:
    """Single aggressiveness knob derived from weight, size and motor kV."""
    m = 1.0
    if drone.weight_grams > 600:
        m *= 0.9
    elif drone.weight_grams < 250:
        m *= 1.1

    if drone.size_inches < 3:
        m *= 1.2
    elif drone.size_inches > 6:
        m *= 0.85

    if drone.motor_kv > 2500:
        m *= 0.9
    elif drone.motor_kv < 1800:
        m *= 1.1

    return round(_clamp(m, *_CLAMP_MASTER), 2)


def apply_master_multiplier(axes: Dict[str, AxisPID], multiplier: float) -> Dict[str, AxisPID]:
    """Scale every term by *multiplier* and re-clamp to the native ranges."""
    out = {}
    for axis, pid in axes.items():
        d_bounds = _CLAMP_D_YAW if axis == "yaw" else _CLAMP_D
        out[axis] = AxisPID(
            p=int(_clamp(round(pid.p * multiplier), *_CLAMP_P)),
            i=int(_clamp(round(pid.i * multiplier), *_CLAMP_I)),
            d=int(_clamp(round(pid.d * multiplier), *d_bounds)),
            f=int(_clamp(round(pid.f * multiplier), 0, FEEDFORWARD_MAX)),
        )
    return out


def advanced_settings(drone: DroneParameters, style: Optional[FlightStyle]) -> Dict[str, object]:
    """TPA, anti-gravity, I-term relax/windup and throttle limit."""
    if drone.weight_grams > 600:
        tpa_breakpoint, tpa_rate, anti_gravity, windup = 1350, 70, 4000, 60
    elif drone.weight_grams < 250:
        tpa_breakpoint, tpa_rate, anti_gravity, windup = 1600, 50, 3000, 40
    else:
        tpa_breakpoint, tpa_rate, anti_gravity, windup = 1500, 65, 3500, 50

    relax_cutoff = {FlightStyle.RACING: 20, FlightStyle.CINEMATIC: 10}.get(style, 15)
    cinematic = style == FlightStyle.CINEMATIC

    return {
        "tpa_breakpoint": tpa_breakpoint,
        "tpa_rate": tpa_rate,
        "anti_gravity_gain": anti_gravity,
        "iterm_relax": "RPY",
        "iterm_relax_type": "GYRO",
        "iterm_relax_cutoff": relax_cutoff,
        "iterm_windup": windup,
        "throttle_limit_type": "SCALE" if cinematic else "OFF",
        "throttle_limit_percent": 80 if cinematic else 100,
    }


def tuning_notes(
    style: Optional[FlightStyle],
    gyro_noise: Optional[float] = None,
    response_time_s: Optional[float] = None,
    current: Optional[Dict[str, AxisPID]] = None,
    recommended: Optional[Dict[str, AxisPID]] = None,
) -> List[str]:
    notes = []
    if gyro_noise is not None and gyro_noise > _NOISY_GYRO:
        notes.append("High gyro noise detected. Lower D and improve filtering.")
    if response_time_s is not None:
        if response_time_s > _SLOW_RESPONSE_S:
            notes.append("Slow response. Try raising P for a quicker reaction.")
        elif response_time_s < _FAST_RESPONSE_S:
            notes.append("Very fast response. Consider lowering P to avoid overshoot.")
    if style == FlightStyle.RACING:
        notes.append("Racing: raise feedforward (F) for a sharper stick response.")
    elif style == FlightStyle.CINEMATIC:
        notes.append("Cinematic: lower feedforward (F) and D for smoother footage.")

    for axis, pid in (current or {}).items():
        new = (recommended or {}).get(axis)
        if new is None:
            continue
        changes = [
            f"{term.upper()} {getattr(pid, term)} -> {getattr(new, term)}"
            for term in ("p", "i", "d", "f")
            if getattr(pid, term) != getattr(new, term)
        ]
        if changes:
            notes.append(f"{axis.capitalize()}: " + ", ".join(changes))
    return notes


def default_recommendation(reason: str) -> PIDRecommendation:
    """Safe static gains used whenever the calculation cannot complete."""
    return PIDRecommendation(
        axes={axis: AxisPID(**pid.as_dict()) for axis, pid in DEFAULT_PIDS.items()},
        master_multiplier=1.0,
        controller_type="default",
        critical=DEFAULT_CRITICAL,
        advanced=advanced_settings(DroneParameters(), None),
        notes=[f"Using default PID values: {reason}"],
        fallback=True,
    )


# ── Public API ───────────────────────────────────────────────────────────────

def calculate_pids(
    critical: CriticalParameters,
    drone: DroneParameters,
    profile: Optional[FlightProfile] = None,
    controller_type: Optional[str] = None,
) -> PIDRecommendation:
    """Per-axis P/I/D/F from a critical-parameter estimate.

    Raises
    ------
    UnknownControllerTypeError
        *controller_type* is not a known archetype.
    """
    style = drone.flight_style or (profile.style if profile is not None else None)
    controller = controller_type or controller_for_style(style)

    base = zn_gains(critical.ultimate_gain, critical.ultimate_period_s, controller)
    if profile is not None:
        adj = pid_adjustments(profile.style)
        base = {"kp": base["kp"] * adj["p"], "ki": base["ki"] * adj["i"], "kd": base["kd"] * adj["d"]}
    base = apply_drone_adjustments(base, drone)

    axes = {}
    for axis in AXES:
        gains = dict(base)
        if axis == "yaw":
            for term, factor in _YAW_FACTOR.items():
                gains[term] *= factor
        elif axis == "roll" and drone.frame_type.upper() == "H":
            for term, factor in _H_FRAME_ROLL.items():
                gains[term] *= factor
        axes[axis] = scale_axis(gains, axis, feedforward_for_axis(axis, drone, style))

    multiplier = master_multiplier(drone)
    return PIDRecommendation(
        axes=apply_master_multiplier(axes, multiplier),
        master_multiplier=multiplier,
        controller_type=controller,
        critical=critical,
        advanced=advanced_settings(drone, style),
    )


def recommend_pids(
    critical: CriticalParameters,
    drone: Optional[DroneParameters] = None,
    profile: Optional[FlightProfile] = None,
    controller_type: Optional[str] = None,
    gyro_noise: Optional[float] = None,
    response_time_s: Optional[float] = None,
    current: Optional[Dict[str, AxisPID]] = None,
) -> PIDRecommendation:
    """PID recommendation with notes; falls back to safe defaults on failure.

    Only :class:`UnknownControllerTypeError` propagates.
    """
    drone = drone or DroneParameters()
    try:
        rec = calculate_pids(critical, drone, profile, controller_type)
    except UnknownControllerTypeError:
        raise
    except (ArithmeticError, ValueError, TypeError, KeyError) as exc:
        logger.warning("PID calculation failed, using defaults: %s", exc)
        return default_recommendation(str(exc))

    style = drone.flight_style or (profile.style if profile is not None else None)
    rec.notes = tuning_notes(style, gyro_noise, response_time_s, current, rec.axes)
    return rec
