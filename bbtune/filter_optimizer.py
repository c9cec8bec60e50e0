"""Filter recommendation engine.

Places the gyro and D-term low-pass cutoffs below the lowest significant
noise peak, centres the dynamic notch on the dominant resonance and sizes
the RPM filter for the target firmware generation.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

import numpy as np

from .analyzers.flight_profile import filter_adjustments
from .analyzers.spectrum import peak_width_hz
from .models import (
    DMin,
    DynamicNotch,
    FilterRecommendation,
    FilterSettings,
    FlightProfile,
    FlightStyle,
    RPMFilter,
    SpectrumResult,
)

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_GYRO_LPF = 120
DEFAULT_DTERM_LPF = 100
DEFAULT_NOTCH = (80, 500)
DEFAULT_NOTCH_Q = 250

MIN_NOISE_HZ = 80            # never place the gyro cutoff off a peak below this
GYRO_FACTOR = 0.9
DTERM_FACTOR = 0.85
_CLAMP_GYRO = (70, 150)
_CLAMP_DTERM = (60, 120)

NOTCH_LOW_FACTOR = 0.7
NOTCH_HIGH_FACTOR = 1.5
_CLAMP_NOTCH = (80, 600)
SEPARATED_PEAKS_HZ = 100
NOTCH_MARGIN_HZ = 30
NOISY_NOTCH_LEVEL = 60.0

PROBLEM_BAND_SEVERITY = 6.0

# firmware generation -> limits
_FIRMWARE = {
    "4.2": {"max_notch_q": 250, "rpm_harmonics": 2, "lowpass2": False},
    "4.3": {"max_notch_q": 500, "rpm_harmonics": 3, "lowpass2": True},
    "4.4": {"max_notch_q": 600, "rpm_harmonics": 3, "lowpass2": True},
}

RPM_Q = 500
RPM_MIN_HZ = 80
D_MIN = DMin(roll=22, pitch=24, boost_gain=20)
D_MIN_DTERM_BELOW = 80


# ── Helpers ──────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]."""
    return max(lo, min(hi, value))


def firmware_generation(version: Optional[str]) -> str:
    """Nearest supported Betaflight generation for a version string.

    ``"Betaflight 4.4.2 (8e5d...)"`` -> ``"4.4"``; unknown -> ``"4.3"``.
    """
    match = re.search(r"(\d+)\.(\d+)", version or "")
    if not match:
        return "4.3"
    value = float(f"{match.group(1)}.{match.group(2)}")
    if value <= 4.2:
        return "4.2"
    if value <= 4.3:
        return "4.3"
    return "4.4"


def notch_q_for_width(width_hz: float) -> int:
    """Narrow, stable resonances get a sharper notch."""
    if width_hz <= 0:
        return DEFAULT_NOTCH_Q
    if width_hz < 5:
        return 500
    if width_hz < 10:
        return 300
    if width_hz > 20:
        return 120
    return DEFAULT_NOTCH_Q


def motor_frequency_hz(erpm: Sequence[np.ndarray], motor_poles: int) -> Optional[float]:
    """Mean mechanical motor frequency from logged eRPM (in hundreds of eRPM)."""
    values = [np.asarray(e, dtype=np.float64) for e in erpm if len(e) > 0]
    if not values or motor_poles <= 0:
        return None
    spinning = np.concatenate(values)
    spinning = spinning[spinning > 0]
    if len(spinning) == 0:
        return None
    return float(np.mean(spinning)) * 100.0 / (motor_poles / 2.0) / 60.0


def compute_cutoffs(spectrum: SpectrumResult) -> tuple[int, int]:
    """Base gyro/D-term cutoffs from the lowest significant noise frequency."""
    if not spectrum.peaks:
        return DEFAULT_GYRO_LPF, DEFAULT_DTERM_LPF
    candidates = [p.frequency for p in spectrum.peaks]
    if spectrum.dominant_frequency > 0:
        candidates.append(spectrum.dominant_frequency)
    lowest = max(MIN_NOISE_HZ, min(candidates))
    gyro = int(_clamp(int(GYRO_FACTOR * lowest), *_CLAMP_GYRO))
    dterm = int(_clamp(int(DTERM_FACTOR * gyro), *_CLAMP_DTERM))
    return gyro, dterm


def compute_dynamic_notch(spectrum: SpectrumResult, generation: str = "4.3") -> DynamicNotch:
    """Notch range around the dominant peak, widened for two distant peaks."""
    count = 5 if spectrum.noise_level > NOISY_NOTCH_LEVEL else 3
    if not spectrum.peaks:
        return DynamicNotch(min_hz=DEFAULT_NOTCH[0], max_hz=DEFAULT_NOTCH[1], q=DEFAULT_NOTCH_Q, count=count)

    dominant = spectrum.dominant_frequency or spectrum.peaks[0].frequency
    lo = max(_CLAMP_NOTCH[0], round(dominant * NOTCH_LOW_FACTOR))
    hi = min(_CLAMP_NOTCH[1], round(dominant * NOTCH_HIGH_FACTOR))

    if len(spectrum.peaks) >= 2:
        f1, f2 = spectrum.peaks[0].frequency, spectrum.peaks[1].frequency
        if abs(f1 - f2) > SEPARATED_PEAKS_HZ:
            lo = max(_CLAMP_NOTCH[0], round(min(f1, f2) - NOTCH_MARGIN_HZ))
            hi = min(_CLAMP_NOTCH[1], round(max(f1, f2) + NOTCH_MARGIN_HZ))

    # Resonance outside the notch's working range
    if lo >= hi:
        logger.debug("Notch range %s-%s Hz is empty for %.1f Hz; using defaults", lo, hi, dominant)
        lo, hi = DEFAULT_NOTCH

    q = min(notch_q_for_width(peak_width_hz(spectrum, dominant)), _FIRMWARE[generation]["max_notch_q"])
    return DynamicNotch(min_hz=int(lo), max_hz=int(hi), q=int(q), count=count)


def filter_notes(
    spectrum: SpectrumResult,
    profile: Optional[FlightProfile],
    dshot_bidir: bool,
    motor_hz: Optional[float],
    current: Optional[FilterSettings],
    gyro: int,
    dterm: int,
) -> List[str]:
    notes = []
    dominant = spectrum.dominant_frequency
    if spectrum.peaks and dominant > 0:
        if dominant < 100:
            notes.append(f"Low-frequency noise at {dominant:.1f} Hz, usually frame or FC mounting. Check the stack mounting.")
        elif dominant < 200:
            notes.append(f"Mid-frequency noise at {dominant:.1f} Hz, typical of props. Check prop balance and bearings.")
        else:
            notes.append(f"High-frequency noise at {dominant:.1f} Hz, often motors or ESC. Check motors and ESC settings.")

    problem = sorted(
        (b for b in spectrum.bands if b.severity > PROBLEM_BAND_SEVERITY),
        key=lambda b: b.severity,
        reverse=True,
    )
    if problem:
        worst = problem[0]
        notes.append(
            f"Problem band: {worst.name} ({worst.min_hz:g}-{worst.max_hz:g} Hz). "
            f"Probable cause: {worst.probable_cause}."
        )

    style = profile.style if profile is not None else None
    if style == FlightStyle.RACING:
        notes.append("Racing filters: less filtering for response, needs clean hardware.")
    elif style == FlightStyle.CINEMATIC:
        notes.append("Cinematic filters: more filtering for smooth, stable footage.")
    elif style == FlightStyle.FREESTYLE:
        notes.append("Freestyle filters: balanced between latency and noise rejection.")

    if motor_hz is not None:
        notes.append(f"Average motor frequency {motor_hz:.0f} Hz; RPM filter harmonics track its multiples.")
    if not dshot_bidir:
        notes.append("Enable bidirectional DShot to use the RPM filter if your ESCs support telemetry.")

    if current is not None:
        if round(current.gyro_lowpass_hz) != gyro:
            notes.append(f"Gyro low-pass {current.gyro_lowpass_hz:g} -> {gyro} Hz")
        if round(current.dterm_lowpass_hz) != dterm:
            notes.append(f"D-term low-pass {current.dterm_lowpass_hz:g} -> {dterm} Hz")
    return notes


def default_recommendation(firmware_version: str = "4.3", reason: str = "") -> FilterRecommendation:
    generation = firmware_generation(firmware_version)
    return _versioned(
        gyro=DEFAULT_GYRO_LPF,
        dterm=DEFAULT_DTERM_LPF,
        notch=DynamicNotch(min_hz=DEFAULT_NOTCH[0], max_hz=DEFAULT_NOTCH[1], q=DEFAULT_NOTCH_Q),
        generation=generation,
        notes=[f"Using default filter values: {reason}"] if reason else [],
        fallback=True,
    )


def _versioned(gyro, dterm, notch, generation, notes, fallback=False) -> FilterRecommendation:
    fw = _FIRMWARE[generation]
    rec = FilterRecommendation(
        gyro_lowpass_hz=int(gyro),
        dterm_lowpass_hz=int(dterm),
        dyn_notch=notch,
        rpm_filter=RPMFilter(harmonics=fw["rpm_harmonics"], q=RPM_Q, min_hz=RPM_MIN_HZ),
        firmware_version=generation,
        notes=notes,
        fallback=fallback,
    )
    if fw["lowpass2"]:
        rec.gyro_lowpass2_hz = int(round(gyro * 1.5))
        rec.dterm_lowpass2_hz = int(round(dterm * 1.4))
        if dterm < D_MIN_DTERM_BELOW:
            rec.d_min = DMin(D_MIN.roll, D_MIN.pitch, D_MIN.boost_gain)
    return rec


# ── Public API ───────────────────────────────────────────────────────────────

def recommend_filters(
    spectrum: SpectrumResult,
    profile: Optional[FlightProfile] = None,
    firmware_version: str = "4.3",
    current: Optional[FilterSettings] = None,
    dshot_bidir: bool = False,
    motor_hz: Optional[float] = None,
) -> FilterRecommendation:
    """Filter settings for an (usually cross-axis aggregated) gyro spectrum.

    ``current`` only feeds the change notes; the cutoffs depend on the
    spectrum and flight profile alone. Numeric failures return the default
    recommendation.
    """
    generation = firmware_generation(firmware_version)
    try:
        gyro, dterm = compute_cutoffs(spectrum)
        if profile is not None:
            adj = filter_adjustments(profile)
            gyro = int(_clamp(round(gyro * adj["gyro"]), *_CLAMP_GYRO))
            dterm = int(_clamp(round(dterm * adj["dterm"]), *_CLAMP_DTERM))
        notch = compute_dynamic_notch(spectrum, generation)
    except (ArithmeticError, ValueError, IndexError) as exc:
        logger.warning("Filter calculation failed, using defaults: %s", exc)
        return default_recommendation(generation, str(exc))

    notes = filter_notes(spectrum, profile, dshot_bidir, motor_hz, current, gyro, dterm)
    return _versioned(gyro, dterm, notch, generation, notes)
