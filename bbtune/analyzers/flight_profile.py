"""Flight profile classification from stick, gyro and motor traces.

The profile decides which Ziegler-Nichols archetype seeds the PID
recommendation and how hard the filter recommendation leans on latency
versus noise rejection.
"""
from __future__ import annotations

import logging
from typing import Dict, Sequence

import numpy as np

from ..models import FlightProfile, FlightStyle, MotorUsage, ThrottleProfile

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

RATE_PERCENTILE = 90
RATE_SCALE = 100.0
RC_CENTER = 1500.0
RC_HALF_RANGE = 500.0
EXTREME_STICK = 0.8
RATE_WEIGHT = 0.7
EXTREME_WEIGHT = 0.3
SMOOTHNESS_SCALE = 50.0
THROTTLE_BINS = 10
PUNCHOUT_SHARE = 0.4         # top two bins
HOVER_SHARE = 0.5            # middle three bins
MOTOR_PERCENTILE = 95
MOTOR_BALANCE_SCALE = 100.0

_PID_ADJUSTMENTS = {
    FlightStyle.RACING:    {"p": 1.2,  "i": 0.8,  "d": 1.15},
    FlightStyle.FREESTYLE: {"p": 1.0,  "i": 1.0,  "d": 1.1},
    FlightStyle.CINEMATIC: {"p": 0.85, "i": 1.15, "d": 0.9},
    FlightStyle.MIXED:     {"p": 1.0,  "i": 1.0,  "d": 1.0},
}

_FILTER_ADJUSTMENTS = {
    FlightStyle.RACING:    {"gyro": 1.2, "dterm": 1.1},
    FlightStyle.CINEMATIC: {"gyro": 0.8, "dterm": 0.85},
}


# ── Helpers ──────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _percentile(values: np.ndarray, pct: float) -> float:
    """Lower-rank percentile: ``sorted[floor(p * (n - 1))]``."""
    if len(values) == 0:
        return 0.0
    return float(np.percentile(values, pct, method="lower"))


# ── Features ─────────────────────────────────────────────────────────────────

def compute_aggressiveness(rc_axes: Sequence[np.ndarray]) -> float:
    """Blend of stick rate (90th pct |delta| / 100) and time at extreme stick."""
    rc_axes = [np.asarray(a, dtype=np.float64) for a in rc_axes if len(a) > 0]
    if not rc_axes:
        return 0.0
    rates = [_percentile(np.abs(np.diff(a)), RATE_PERCENTILE) for a in rc_axes]
    rate_component = float(np.mean(rates)) / RATE_SCALE

    normalized = np.abs(np.vstack([(a - RC_CENTER) / RC_HALF_RANGE for a in rc_axes]))
    extreme_component = float(np.mean(np.any(normalized > EXTREME_STICK, axis=0)))

    return _clamp(RATE_WEIGHT * rate_component + EXTREME_WEIGHT * extreme_component)


def compute_smoothness(gyro_axes: Sequence[np.ndarray]) -> float:
    """1 - (average RMS of the gyro second difference) / 50, clamped to [0, 1]."""
    rms = [
        float(np.sqrt(np.mean(np.diff(np.asarray(g, dtype=np.float64), n=2) ** 2)))
        for g in gyro_axes
        if len(g) > 2
    ]
    if not rms:
        return 1.0
    return _clamp(1.0 - float(np.mean(rms)) / SMOOTHNESS_SCALE)


def classify_throttle(throttle: np.ndarray) -> ThrottleProfile:
    """Punchouts, hovering or mixed from a 10-bin throttle histogram."""
    throttle = np.asarray(throttle, dtype=np.float64)
    if len(throttle) == 0:
        return ThrottleProfile.MIXED
    normalized = (throttle - 1000.0) / 1000.0
    bins = np.clip(np.floor(normalized * THROTTLE_BINS), 0, THROTTLE_BINS - 1).astype(int)
    share = np.bincount(bins, minlength=THROTTLE_BINS) / len(throttle)

    if share[-2:].sum() > PUNCHOUT_SHARE:
        return ThrottleProfile.PUNCHOUTS
    if share[4:7].sum() > HOVER_SHARE:
        return ThrottleProfile.HOVERING
    return ThrottleProfile.MIXED


def compute_motor_usage(motors: Sequence[np.ndarray]) -> MotorUsage:
    """Average/peak output normalized to [0, 1] and balance across motors."""
    motors = [np.asarray(m, dtype=np.float64) for m in motors if len(m) > 0]
    if not motors:
        return MotorUsage()
    means = np.array([np.mean(m) for m in motors])
    peaks = np.array([np.percentile(m, MOTOR_PERCENTILE) for m in motors])
    return MotorUsage(
        average=_clamp((float(np.mean(means)) - 1000.0) / 1000.0),
        peak=_clamp((float(np.mean(peaks)) - 1000.0) / 1000.0),
        balance=_clamp(1.0 - float(np.std(means)) / MOTOR_BALANCE_SCALE),
    )


def decide_style(
    aggressiveness: float,
    smoothness: float,
    throttle: ThrottleProfile,
) -> FlightStyle:
    """First matching rule wins."""
    if aggressiveness > 0.7 and throttle is ThrottleProfile.PUNCHOUTS:
        return FlightStyle.RACING
    if smoothness > 0.7 and throttle is ThrottleProfile.HOVERING:
        return FlightStyle.CINEMATIC
    if 0.4 < aggressiveness < 0.8:
        return FlightStyle.FREESTYLE
    return FlightStyle.MIXED


def neutral_profile() -> FlightProfile:
    return FlightProfile(
        style=FlightStyle.MIXED,
        aggressiveness=0.5,
        smoothness=0.5,
        throttle_profile=ThrottleProfile.MIXED,
        motor_usage=MotorUsage(),
    )


def classify_flight(
    rc_axes: Sequence[np.ndarray],
    throttle: np.ndarray,
    gyro_axes: Sequence[np.ndarray],
    motors: Sequence[np.ndarray] = (),
) -> FlightProfile:
    """Classify piloting style from roll/pitch/yaw sticks, throttle, gyro and motors.

    Numeric failures fall back to a neutral mixed profile.
    """
    try:
        with np.errstate(invalid="raise", divide="raise", over="raise"):
            aggressiveness = compute_aggressiveness(rc_axes)
            smoothness = compute_smoothness(gyro_axes)
            throttle_profile = classify_throttle(throttle)
            motor_usage = compute_motor_usage(motors)
    except (FloatingPointError, ValueError) as exc:
        logger.warning("Flight profile fell back to neutral: %s", exc)
        return neutral_profile()

    return FlightProfile(
        style=decide_style(aggressiveness, smoothness, throttle_profile),
        aggressiveness=aggressiveness,
        smoothness=smoothness,
        throttle_profile=throttle_profile,
        motor_usage=motor_usage,
    )


# ── Tuning multipliers ───────────────────────────────────────────────────────

def pid_adjustments(style: FlightStyle) -> Dict[str, float]:
    """P/I/D multipliers for a flight style."""
    return dict(_PID_ADJUSTMENTS[FlightStyle(style)])


def filter_adjustments(profile: FlightProfile) -> Dict[str, float]:
    """Gyro/D-term cutoff multipliers for a flight profile.

    Racing loosens filtering, cinematic tightens it; hard-working or
    unbalanced motors tighten it further.
    """
    adj = dict(_FILTER_ADJUSTMENTS.get(profile.style, {"gyro": 1.0, "dterm": 1.0}))
    usage = profile.motor_usage
    if usage.peak > 0.85:
        adj["gyro"] *= 0.9
        adj["dterm"] *= 0.9
    if usage.balance < 0.7:
        adj["gyro"] *= 0.9
        adj["dterm"] *= 0.85
    return adj
