"""Tests for bbtune.analyzers.harmonics -- THD and stability score."""
import numpy as np
import pytest

from bbtune.analyzers.harmonics import (
    OSCILLATION_THD,
    analyze_harmonics,
    axis_correlation,
    compute_thd,
    find_fundamental,
)
from bbtune.analyzers.spectrum import analyze_spectrum


SAMPLE_RATE = 1024


def _sine(freq, amplitude=10.0, n=1024):
    t = np.arange(n) / SAMPLE_RATE
    return amplitude * np.sin(2 * np.pi * freq * t)


# ---------- compute_thd ----------


def test_zero_spectrum_thd_is_zero():
    thd, _ = compute_thd(np.zeros(512))
    assert thd == 0.0


def test_empty_spectrum_thd_is_zero():
    thd, idx = compute_thd(np.zeros(0))
    assert thd == 0.0
    assert idx == 0


def test_thd_invariant_to_scaling():
    rng = np.random.default_rng(42)
    mags = np.abs(rng.normal(0, 1, 512))
    base, idx = compute_thd(mags)
    for scale in (0.01, 3.0, 1e4):
        scaled, scaled_idx = compute_thd(mags * scale)
        assert scaled == pytest.approx(base, rel=1e-9)
        assert scaled_idx == idx


def test_thd_from_known_harmonics():
    mags = np.zeros(100)
    mags[10] = 1.0
    mags[20] = 0.3
    mags[30] = 0.4
    thd, idx = compute_thd(mags)
    assert idx == 10
    assert thd == pytest.approx(50.0)


def test_fundamental_skips_dc():
    mags = np.array([100.0, 1.0, 5.0, 2.0])
    assert find_fundamental(mags) == 2


# ---------- analyze_harmonics ----------


class TestAnalyzeHarmonics:
    """Stability score and oscillation flag for gyro spectra."""

    def test_clean_sine_is_stable(self):
        result = analyze_harmonics(analyze_spectrum(_sine(50), SAMPLE_RATE))
        assert result.fundamental_hz == pytest.approx(50.0, abs=1.0)
        assert result.thd_percent < 5.0
        assert result.stability_score == pytest.approx(100.0 - result.thd_percent)
        assert not result.oscillation_detected

    def test_distorted_signal_flags_oscillation(self):
        signal = _sine(50, 10.0) + _sine(100, 6.0) + _sine(150, 5.0)
        result = analyze_harmonics(analyze_spectrum(signal, SAMPLE_RATE))
        assert result.thd_percent > OSCILLATION_THD
        assert result.oscillation_detected
        assert 0.0 <= result.stability_score < 70.0

    def test_term_thd_uses_gyro_fundamental(self):
        gyro = analyze_spectrum(_sine(50), SAMPLE_RATE)
        d_term = analyze_spectrum(_sine(50, 2.0) + _sine(100, 2.0), SAMPLE_RATE)
        result = analyze_harmonics(gyro, {"d": d_term})
        assert result.term_thd["d"] == pytest.approx(100.0, rel=0.05)

    def test_empty_spectrum(self):
        result = analyze_harmonics(analyze_spectrum(np.zeros(8), SAMPLE_RATE))
        assert result.thd_percent == 0.0
        assert result.stability_score == 100.0
        assert result.fundamental_hz == 0.0


# ---------- axis_correlation ----------


def test_axis_correlation():
    a = _sine(30)
    assert axis_correlation(a, a) == pytest.approx(1.0)
    assert axis_correlation(a, -a) == pytest.approx(-1.0)
    assert axis_correlation(a, np.zeros_like(a)) == 0.0
