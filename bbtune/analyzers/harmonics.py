"""Harmonic distortion of a spectrum as a stability proxy."""
from __future__ import annotations

import math
from typing import Mapping, Optional, Tuple

import numpy as np

from ..errors import DegenerateSignalError
from ..models import HarmonicAnalysis, SpectrumResult

OSCILLATION_THD = 30.0       # percent


def find_fundamental(magnitudes: np.ndarray) -> int:
    """Index of the largest bin, excluding DC. 0 when there is nothing to find."""
    magnitudes = np.asarray(magnitudes, dtype=np.float64)
    if len(magnitudes) < 2:
        return 0
    return int(np.argmax(magnitudes[1:])) + 1


def _thd(magnitudes: np.ndarray, fundamental_index: int) -> float:
    if fundamental_index <= 0 or fundamental_index >= len(magnitudes):
        raise DegenerateSignalError("no fundamental bin")
    fundamental = float(magnitudes[fundamental_index])
    if fundamental == 0.0:
        raise DegenerateSignalError("fundamental magnitude is zero")
    harmonics = magnitudes[2 * fundamental_index::fundamental_index]
    return math.sqrt(float(np.sum(harmonics ** 2))) / fundamental * 100.0


def compute_thd(magnitudes: np.ndarray, fundamental_index: Optional[int] = None) -> Tuple[float, int]:
    """Total harmonic distortion in percent.

    Sums the magnitudes at every integer multiple of the fundamental bin up
    to the end of the spectrum. Returns ``(thd_percent, fundamental_index)``;
    THD is 0 for an empty spectrum or a zero fundamental.
    """
    magnitudes = np.asarray(magnitudes, dtype=np.float64)
    if fundamental_index is None:
        fundamental_index = find_fundamental(magnitudes)
    try:
        return _thd(magnitudes, fundamental_index), fundamental_index
    except DegenerateSignalError:
        return 0.0, fundamental_index


def analyze_harmonics(
    spectrum: SpectrumResult,
    term_spectra: Optional[Mapping[str, SpectrumResult]] = None,
) -> HarmonicAnalysis:
    """THD, stability score and oscillation flag for a gyro spectrum.

    ``term_spectra`` maps ``"p"``/``"i"``/``"d"`` to the spectra of the
    matching PID-term channels; each is evaluated at the gyro's fundamental.
    """
    thd, idx = compute_thd(spectrum.magnitudes)
    fundamental_hz = float(spectrum.frequencies[idx]) if 0 < idx < len(spectrum.frequencies) else 0.0

    term_thd = {}
    for term, term_spectrum in (term_spectra or {}).items():
        term_thd[term], _ = compute_thd(term_spectrum.magnitudes, idx)

    return HarmonicAnalysis(
        fundamental_index=idx,
        fundamental_hz=fundamental_hz,
        thd_percent=thd,
        stability_score=100.0 - min(100.0, thd),
        oscillation_detected=thd > OSCILLATION_THD,
        term_thd=term_thd,
    )


def axis_correlation(a: np.ndarray, b: np.ndarray) -> float:
    """Zero-lag Pearson correlation between two axes; 0 when either is flat."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    n = min(len(a), len(b))
    if n < 2:
        return 0.0
    a = a[:n] - np.mean(a[:n])
    b = b[:n] - np.mean(b[:n])
    denom = math.sqrt(float(np.sum(a ** 2)) * float(np.sum(b ** 2)))
    if denom == 0.0:
        return 0.0
    return float(np.sum(a * b) / denom)
