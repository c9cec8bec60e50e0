"""Time-domain response analysis.

Finds step-like changes in a commanded axis and measures how the gyro
follows them: rise time, overshoot, settling time and, when the response
rings, its damping ratio and oscillation frequency. Also computes
whole-log tracking error statistics and how the controller effort splits
across the P/I/D/F terms.

A slow rise means P too low, overshoot means P too high or D too low, and
long settling with ringing means poor P/D balance.
"""
from __future__ import annotations

import logging
import math
from typing import List, Optional

import numpy as np

from ..errors import DegenerateSignalError, InsufficientDataError
from ..models import (
    AxisResponseMetrics,
    Complete,
    ErrorStatistics,
    PIDContribution,
    StepEvent,
    TransientMetrics,
    Unavailable,
)

logger = logging.getLogger(__name__)

STEP_THRESHOLD = 30.0        # command units between consecutive samples
RESPONSE_WINDOW = 100        # samples captured after a step
MIN_WINDOW_POINTS = 20       # a window shorter than this is incomplete
MIN_STEP_MAGNITUDE = 5.0
SETTLING_BAND = 0.05         # fraction of the target value
SETTLING_RUN = 10            # samples that must stay inside the band
RISE_FALLBACK_FACTOR = 0.6   # rise ~= 0.6 * settling when crossings are missing
PEAK_SKIP_S = 0.005          # ignore the first 5 ms when looking for ringing
MIN_RESPONSE_SAMPLES = 100


def detect_steps(
    command: np.ndarray,
    measured: np.ndarray,
    time: np.ndarray,
    threshold: float = STEP_THRESHOLD,
    window: int = RESPONSE_WINDOW,
) -> List[StepEvent]:
    """Find every sample where the command jumps by more than *threshold*.

    Each step captures up to *window* samples of the measured response,
    starting at the step, and starts from the command held before it.
    Times are relative to the step in seconds.
    """
    command = np.asarray(command, dtype=np.float64)
    measured = np.asarray(measured, dtype=np.float64)
    time = np.asarray(time, dtype=np.float64)

    jumps = np.where(np.abs(np.diff(command)) > threshold)[0] + 1
    steps = []
    for i in jumps:
        stop = min(len(measured), i + window)
        steps.append(StepEvent(
            index=int(i),
            target=float(command[i]),
            start_value=float(command[i - 1]),
            times=time[i:stop] - time[i],
            values=measured[i:stop].copy(),
        ))
    return steps


def select_step(steps: List[StepEvent]) -> Optional[StepEvent]:
    """Largest complete step, or None when nothing is big enough to measure."""
    complete = [s for s in steps if s.complete]
    if not complete:
        return None
    best = max(complete, key=lambda s: s.magnitude)
    if best.magnitude < MIN_STEP_MAGNITUDE:
        return None
    return best


def settling_index(values: np.ndarray, target: float, band: float, run: int = SETTLING_RUN) -> Optional[int]:
    """First index from which *run* consecutive samples stay within *band* of target."""
    within = (np.abs(np.asarray(values) - target) <= band).astype(np.int64)
    if len(within) < run:
        return None
    counts = np.convolve(within, np.ones(run, dtype=np.int64), mode="valid")
    hits = np.where(counts == run)[0]
    if len(hits) == 0:
        return None
    return int(hits[0])


def measure_transient(
    times: np.ndarray,
    values: np.ndarray,
    target: float,
    start_value: float,
) -> TransientMetrics:
    """Rise time, overshoot, settling time and ringing of one step response.

    Parameters
    ----------
    times : 1-D array
        Seconds since the step.
    values : 1-D array
        Measured response.
    target, start_value : float
        Commanded values after and before the step.

    Raises
    ------
    DegenerateSignalError
        The commanded range is zero.
    """
    times = np.asarray(times, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    span = target - start_value
    if span == 0 or len(values) == 0:
        raise DegenerateSignalError("step has zero commanded range")

    # --- Settling time ---
    idx = settling_index(values, target, SETTLING_BAND * abs(target))
    settling_s = times[idx] if idx is not None else times[-1]

    # --- Rise time: 10% to 90% of the commanded range ---
    progress = (values - start_value) / span
    idx_10 = _first_crossing(progress, 0.1)
    idx_90 = _first_crossing(progress, 0.9)
    if idx_10 is not None and idx_90 is not None and idx_90 >= idx_10:
        rise_s = times[idx_90] - times[idx_10]
    else:
        rise_s = RISE_FALLBACK_FACTOR * settling_s
    delay_s = times[idx_10] if idx_10 is not None else 0.0

    # --- Overshoot ---
    peak_value = values[int(np.argmax(np.abs(values - start_value)))]
    overshoot = max(0.0, (peak_value - target) / span * 100.0)

    damping, osc_hz, decay = _ringing(times, values, target)

    return TransientMetrics(
        rise_time_ms=float(rise_s * 1000.0),
        overshoot_percent=float(overshoot),
        settling_time_ms=float(settling_s * 1000.0),
        delay_ms=float(delay_s * 1000.0),
        damping_ratio=damping,
        oscillation_hz=osc_hz,
        decay_rate=decay,
        step_magnitude=float(abs(span)),
    )


def _ringing(times: np.ndarray, values: np.ndarray, target: float):
    """(damping ratio, oscillation Hz, decay rate 1/s) from response maxima."""
    start = int(np.searchsorted(times, PEAK_SKIP_S))
    seg = values[start:]
    if len(seg) < 3:
        return 0.0, 0.0, 0.0
    interior = np.arange(1, len(seg) - 1)
    is_peak = (seg[interior] > seg[interior - 1]) & (seg[interior] > seg[interior + 1])
    peak_idx = interior[is_peak] + start
    if len(peak_idx) < 2:
        return 0.0, 0.0, 0.0

    amplitudes = np.abs(values[peak_idx] - target)
    ratios = [a / b for a, b in zip(amplitudes[:-1], amplitudes[1:]) if b > 0]
    period = float(np.mean(np.diff(times[peak_idx])))
    osc_hz = 1.0 / period if period > 0 else 0.0
    if not ratios or np.mean(ratios) <= 0:
        return 0.0, osc_hz, 0.0

    log_dec = math.log(float(np.mean(ratios)))
    damping = log_dec / math.sqrt(4.0 * math.pi ** 2 + log_dec ** 2)
    return float(min(1.0, max(0.0, damping))), osc_hz, float(log_dec * osc_hz)


def compute_error_statistics(
    command: np.ndarray,
    measured: np.ndarray,
    error: Optional[np.ndarray] = None,
) -> ErrorStatistics:
    """Tracking error over the whole log.

    Uses the logged error channel when given, else ``command - measured``.
    ``mean_error`` is the mean absolute error.
    """
    if error is None:
        error = np.asarray(command, dtype=np.float64) - np.asarray(measured, dtype=np.float64)
    error = np.asarray(error, dtype=np.float64)
    if len(error) == 0:
        return ErrorStatistics()
    mse = float(np.mean(error ** 2))
    mean_abs = float(np.mean(np.abs(error)))
    return ErrorStatistics(
        rms_error=math.sqrt(mse),
        mean_error=mean_abs,
        std_deviation=math.sqrt(max(0.0, mse - mean_abs ** 2)),
        max_error=float(np.max(np.abs(error))),
    )


def compute_pid_contribution(p, i, d, f=None) -> PIDContribution:
    """Share of summed |term| effort from each of P, I, D and F."""
    sums = [float(np.sum(np.abs(t))) if t is not None else 0.0 for t in (p, i, d, f)]
    total = sum(sums)
    if total <= 0:
        return PIDContribution()
    return PIDContribution(*(s / total for s in sums))


def analyze_axis_response(
    axis: str,
    command: np.ndarray,
    measured: np.ndarray,
    time: np.ndarray,
    p_term=None,
    i_term=None,
    d_term=None,
    f_term=None,
    error: Optional[np.ndarray] = None,
    threshold: float = STEP_THRESHOLD,
    window: int = RESPONSE_WINDOW,
) -> AxisResponseMetrics:
    """Full response metrics for one axis.

    Raises
    ------
    InsufficientDataError
        Fewer than 100 samples.
    """
    n = len(measured)
    if n < MIN_RESPONSE_SAMPLES:
        raise InsufficientDataError(f"{axis} response analysis", MIN_RESPONSE_SAMPLES, n)

    step = select_step(detect_steps(command, measured, time, threshold, window))
    if step is None:
        transient = Unavailable("no complete step larger than 5 units")
    else:
        try:
            transient = Complete(measure_transient(step.times, step.values, step.target, step.start_value))
        except DegenerateSignalError as exc:
            logger.debug("%s transient unavailable: %s", axis, exc)
            transient = Unavailable(str(exc))

    return AxisResponseMetrics(
        axis=axis,
        transient=transient,
        errors=compute_error_statistics(command, measured, error),
        pid_contribution=compute_pid_contribution(p_term, i_term, d_term, f_term),
    )


def _first_crossing(signal: np.ndarray, threshold: float) -> int | None:
    """Find the first index where signal crosses above threshold."""
    indices = np.where(signal >= threshold)[0]
    if len(indices) == 0:
        return None
    return int(indices[0])
