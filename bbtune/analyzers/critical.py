"""Ziegler-Nichols critical parameter estimation adapted to multirotors.

Instead of driving the loop to marginal oscillation, the ultimate gain and
period are inferred from how the tracking error rings after large stick
transitions that are already in the log.
"""
from __future__ import annotations

import logging
import math
from typing import List, Mapping, Optional, Tuple

import numpy as np

from ..models import CriticalParameters, Confidence

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

MIN_SAMPLES = 100
TRANSITION_THRESHOLD = 50.0          # |delta command| that opens a segment
STABLE_THRESHOLD = TRANSITION_THRESHOLD / 2
STABLE_LOOKAHEAD = 10
STABLE_RUN = 5                       # stable deltas needed within the lookahead
SEGMENT_LEAD = 20
SEGMENT_TAIL = 30
MIN_SEGMENT_LENGTH = 30
DEFAULT_DAMPING = 0.5

_CLAMP_KU = (40.0, 120.0)
_CLAMP_TU = (0.01, 0.1)

DEFAULT_CRITICAL = CriticalParameters(
    ultimate_gain=60.0,
    ultimate_period_s=0.025,
    confidence=Confidence.LOW,
    damping_ratio=DEFAULT_DAMPING,
    peak_count=0,
)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def find_transition_segments(command: np.ndarray) -> List[Tuple[int, int]]:
    """``(start, end)`` index pairs around large-then-stable command changes."""
    command = np.asarray(command, dtype=np.float64)
    n = len(command)
    deltas = np.abs(np.diff(command))        # deltas[i - 1] is the change into sample i
    segments = []
    in_transition = False
    start = 0
    for i in range(1, n):
        change = deltas[i - 1]
        if not in_transition and change > TRANSITION_THRESHOLD:
            in_transition = True
            start = max(0, i - SEGMENT_LEAD)
        elif in_transition and change < STABLE_THRESHOLD:
            ahead = deltas[i - 1:min(n - 1, i - 1 + STABLE_LOOKAHEAD)]
            if np.count_nonzero(ahead < STABLE_THRESHOLD) >= STABLE_RUN:
                end = min(n - 1, i + SEGMENT_TAIL)
                if end - start > MIN_SEGMENT_LENGTH:
                    segments.append((start, end))
                in_transition = False
    return segments


def find_error_peaks(error: np.ndarray) -> np.ndarray:
    """Indices of local maxima and minima of the error, away from the edges."""
    error = np.asarray(error, dtype=np.float64)
    if len(error) < 5:
        return np.zeros(0, dtype=int)
    i = np.arange(2, len(error) - 2)
    centre, left, right = error[i], error[i - 1], error[i + 1]
    extrema = ((centre > left) & (centre > right)) | ((centre < left) & (centre < right))
    return i[extrema]


def estimate_damping(peak_values: np.ndarray) -> float:
    """``-ln(mean |p[k]| / |p[k-2]|) / 2pi`` over alternating peaks, clamped to [0, 1]."""
    if len(peak_values) < 3:
        return DEFAULT_DAMPING
    amps = np.abs(np.asarray(peak_values, dtype=np.float64))
    ratios = [amps[k] / amps[k - 2] for k in range(2, len(amps), 2) if amps[k - 2] > 0]
    if not ratios:
        return DEFAULT_DAMPING
    mean_ratio = float(np.mean(ratios))
    if mean_ratio <= 0:
        return 1.0
    return _clamp(-math.log(mean_ratio) / (2.0 * math.pi), 0.0, 1.0)


def _confidence(peak_count: int, damping: float) -> Confidence:
    pairs = max(0, peak_count - 1)
    if pairs >= 3 and damping < 0.3:
        return Confidence.HIGH
    if pairs < 3 or damping > 0.7:
        return Confidence.LOW
    return Confidence.MEDIUM


def analyze_segment(error: np.ndarray, sample_rate: float) -> Optional[CriticalParameters]:
    """Ku/Tu estimate from one segment's error trace, or None without ringing."""
    peaks = find_error_peaks(error)
    if len(peaks) < 2:
        return None

    period = float(np.mean(np.diff(peaks))) / sample_rate
    damping = estimate_damping(error[peaks])
    gain = _CLAMP_KU[1] if damping >= 1.0 else 1.0 / (1.0 - damping)

    return CriticalParameters(
        ultimate_gain=_clamp(gain, *_CLAMP_KU),
        ultimate_period_s=_clamp(period, *_CLAMP_TU),
        confidence=_confidence(len(peaks), damping),
        damping_ratio=damping,
        peak_count=int(len(peaks)),
    )


def estimate_critical_parameters(
    command: np.ndarray,
    measured: np.ndarray,
    sample_rate: float,
) -> CriticalParameters:
    """Best Ku/Tu estimate for one axis.

    Never raises: short logs or logs without usable transitions return
    ``{Ku=60, Tu=0.025, confidence=low}``.
    """
    command = np.asarray(command, dtype=np.float64)
    measured = np.asarray(measured, dtype=np.float64)
    n = min(len(command), len(measured))
    if n < MIN_SAMPLES or sample_rate <= 0:
        return DEFAULT_CRITICAL

    error = command[:n] - measured[:n]
    best: Optional[CriticalParameters] = None
    for start, end in find_transition_segments(command[:n]):
        result = analyze_segment(error[start:end + 1], sample_rate)
        if result is None:
            continue
        if best is None or result.confidence.rank > best.confidence.rank:
            best = result
        if best.confidence is Confidence.HIGH:
            break

    if best is None:
        logger.debug("No usable transition segments; using default critical parameters")
        return DEFAULT_CRITICAL
    return best


def select_critical_parameters(per_axis: Mapping[str, CriticalParameters]) -> CriticalParameters:
    """Pick the estimate that seeds the PID engine.

    Roll is preferred when it is at least medium confidence, then pitch;
    otherwise both are averaged and flagged low confidence.
    """
    roll = per_axis.get("roll", DEFAULT_CRITICAL)
    pitch = per_axis.get("pitch", DEFAULT_CRITICAL)

    for candidate in sorted((roll, pitch), key=lambda c: -c.confidence.rank):
        if candidate.confidence is not Confidence.LOW:
            return candidate

    return CriticalParameters(
        ultimate_gain=(roll.ultimate_gain + pitch.ultimate_gain) / 2.0,
        ultimate_period_s=(roll.ultimate_period_s + pitch.ultimate_period_s) / 2.0,
        confidence=Confidence.LOW,
        damping_ratio=(roll.damping_ratio + pitch.damping_ratio) / 2.0,
        peak_count=min(roll.peak_count, pitch.peak_count),
    )
