"""Spectral analysis: windowed FFT, peak detection and noise bands."""
from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import find_peaks

from ..models import FilterEffect, FrequencyBand, SpectralPeak, SpectrumResult
from .fft import fft, next_power_of_two

logger = logging.getLogger(__name__)

MIN_FFT_SAMPLES = 32
PEAK_MEAN_FACTOR = 3.0       # candidate peaks must exceed 3x the mean magnitude
MIN_PEAK_HZ = 10.0           # below this is translation/DC, not noise
NOISE_BAND_HZ = (20.0, 500.0)
NOISE_SCALE = 100.0
BAND_PEAK_LIMIT = 3
COMMON_FREQUENCY_TOLERANCE_HZ = 5.0

# (name, min_hz, max_hz, probable cause)
BAND_CATALOG: Tuple[Tuple[str, float, float, str], ...] = (
    ("PropWash", 5, 30, "Turbulence, Tuning Issues"),
    ("Mechanical Low", 30, 60, "Frame Vibrations, Motor Balance"),
    ("Mechanical Mid", 60, 120, "Props, Motor Mounts"),
    ("Mechanical High", 120, 180, "Motors, Bearings"),
    ("Aliasing", 180, 300, "Gyro Sampling, High-Freq Noise"),
    ("Electrical", 300, 500, "ESC, PWM Issues"),
)


def compute_spectrum(signal: np.ndarray, sample_rate: float) -> Tuple[np.ndarray, np.ndarray]:
    """Single-sided normalized magnitude spectrum.

    The signal is zero-padded to the next power of two N, Hann-windowed and
    transformed; the first N/2 magnitudes are divided by N/2.

    Returns
    -------
    freqs : np.ndarray
        Bin centre frequencies in Hz.
    magnitudes : np.ndarray
    """
    signal = np.asarray(signal, dtype=np.float64)
    n = next_power_of_two(len(signal))
    padded = np.zeros(n, dtype=np.float64)
    padded[:len(signal)] = signal
    spectrum = fft(padded * np.hanning(n))

    half = n // 2
    magnitudes = np.abs(spectrum[:half]) / half
    freqs = np.arange(half) * sample_rate / n
    return freqs, magnitudes


def find_spectral_peaks(
    freqs: np.ndarray,
    magnitudes: np.ndarray,
    max_peaks: Optional[int] = None,
) -> List[SpectralPeak]:
    """Strict local maxima above 3x the mean magnitude, strongest first.

    Peaks under 10 Hz are discarded.
    """
    if len(magnitudes) < 3:
        return []
    threshold = PEAK_MEAN_FACTOR * float(np.mean(magnitudes))
    idx, _ = find_peaks(magnitudes)
    # Flat tops are not peaks
    idx = idx[(magnitudes[idx] > magnitudes[idx - 1]) & (magnitudes[idx] > magnitudes[idx + 1])]
    peaks = [
        SpectralPeak(frequency=float(freqs[i]), amplitude=float(magnitudes[i]))
        for i in idx
        if magnitudes[i] > threshold and freqs[i] >= MIN_PEAK_HZ
    ]
    peaks.sort(key=lambda p: p.amplitude, reverse=True)
    if max_peaks is not None:
        peaks = peaks[:max_peaks]
    return peaks


def compute_bands(
    freqs: np.ndarray,
    magnitudes: np.ndarray,
    peaks: Sequence[SpectralPeak] = (),
) -> List[FrequencyBand]:
    """Aggregate the spectrum into the fixed noise-band catalog."""
    bands = []
    for name, lo, hi, cause in BAND_CATALOG:
        in_band = (freqs >= lo) & (freqs <= hi)
        if np.any(in_band):
            avg = float(np.mean(magnitudes[in_band]))
            peak = float(np.max(magnitudes[in_band]))
        else:
            avg = peak = 0.0
        band_peaks = [p for p in peaks if lo <= p.frequency <= hi][:BAND_PEAK_LIMIT]
        bands.append(FrequencyBand(
            name=name,
            min_hz=lo,
            max_hz=hi,
            probable_cause=cause,
            severity=10.0 * avg + 5.0 * peak,
            average_amplitude=avg,
            peak_amplitude=peak,
            peaks=band_peaks,
        ))
    return bands


def compute_noise_level(freqs: np.ndarray, magnitudes: np.ndarray) -> float:
    """Mean magnitude over 20-500 Hz, scaled x100."""
    lo, hi = NOISE_BAND_HZ
    in_band = (freqs >= lo) & (freqs <= hi)
    if not np.any(in_band):
        return 0.0
    return float(np.mean(magnitudes[in_band])) * NOISE_SCALE


def empty_spectrum(sample_rate: float) -> SpectrumResult:
    """Zero-valued result used when a channel is too short to transform."""
    empty = np.zeros(0)
    return SpectrumResult(
        peaks=[],
        dominant_frequency=0.0,
        bands=compute_bands(empty, empty),
        noise_level=0.0,
        frequencies=empty,
        magnitudes=empty,
        sample_rate=sample_rate,
        fft_size=0,
    )


def analyze_spectrum(
    channel: np.ndarray,
    sample_rate: float,
    max_peaks: Optional[int] = 10,
) -> SpectrumResult:
    """Peaks, dominant frequency, noise bands and noise level of a channel.

    Channels with fewer than 32 samples produce an empty result instead of
    an error; check ``result.is_empty``.
    """
    channel = np.asarray(channel, dtype=np.float64)
    if len(channel) < MIN_FFT_SAMPLES:
        logger.debug("Spectrum skipped: %d samples < %d", len(channel), MIN_FFT_SAMPLES)
        return empty_spectrum(sample_rate)

    freqs, magnitudes = compute_spectrum(channel, sample_rate)
    peaks = find_spectral_peaks(freqs, magnitudes, max_peaks)
    return SpectrumResult(
        peaks=peaks,
        dominant_frequency=peaks[0].frequency if peaks else 0.0,
        bands=compute_bands(freqs, magnitudes, peaks),
        noise_level=compute_noise_level(freqs, magnitudes),
        frequencies=freqs,
        magnitudes=magnitudes,
        sample_rate=sample_rate,
        fft_size=2 * len(magnitudes),
    )


# ---------------------------------------------------------------------------
# Cross-axis helpers
# ---------------------------------------------------------------------------

def aggregate_spectra(spectra: Mapping[str, SpectrumResult]) -> SpectrumResult:
    """Merge per-axis spectra into one view for the filter engine.

    Peaks are pooled and re-sorted, band averages are averaged, band peaks
    take the maximum, and noise levels are averaged.
    """
    results = [s for s in spectra.values() if not s.is_empty]
    if not results:
        rates = [s.sample_rate for s in spectra.values()]
        return empty_spectrum(rates[0] if rates else 0.0)

    peaks = sorted((p for s in results for p in s.peaks), key=lambda p: p.amplitude, reverse=True)

    bands = []
    for i, (name, lo, hi, cause) in enumerate(BAND_CATALOG):
        avg = float(np.mean([s.bands[i].average_amplitude for s in results]))
        peak = float(max(s.bands[i].peak_amplitude for s in results))
        bands.append(FrequencyBand(
            name=name,
            min_hz=lo,
            max_hz=hi,
            probable_cause=cause,
            severity=10.0 * avg + 5.0 * peak,
            average_amplitude=avg,
            peak_amplitude=peak,
            peaks=[p for p in peaks if lo <= p.frequency <= hi][:BAND_PEAK_LIMIT],
        ))

    first = results[0]
    if all(len(s.magnitudes) == len(first.magnitudes) for s in results):
        magnitudes = np.mean([s.magnitudes for s in results], axis=0)
    else:
        magnitudes = first.magnitudes

    return SpectrumResult(
        peaks=peaks,
        dominant_frequency=peaks[0].frequency if peaks else 0.0,
        bands=bands,
        noise_level=float(np.mean([s.noise_level for s in results])),
        frequencies=first.frequencies,
        magnitudes=magnitudes,
        sample_rate=first.sample_rate,
        fft_size=first.fft_size,
    )


def find_common_frequencies(
    spectra: Mapping[str, SpectrumResult],
    tolerance_hz: float = COMMON_FREQUENCY_TOLERANCE_HZ,
) -> List[float]:
    """Peak frequencies that show up on more than one axis.

    Peaks within ``tolerance_hz`` of each other are treated as the same
    frequency; the returned value is their mean.
    """
    tagged = sorted(
        (p.frequency, axis) for axis, s in spectra.items() for p in s.peaks
    )
    common: List[float] = []
    cluster: List[Tuple[float, str]] = []
    for freq, axis in tagged:
        if cluster and freq - cluster[0][0] > tolerance_hz:
            if len({a for _, a in cluster}) > 1:
                common.append(float(np.mean([f for f, _ in cluster])))
            cluster = []
        cluster.append((freq, axis))
    if cluster and len({a for _, a in cluster}) > 1:
        common.append(float(np.mean([f for f, _ in cluster])))
    return common


def peak_width_hz(spectrum: SpectrumResult, frequency: float) -> float:
    """Half-power (-3 dB) width of the spectral peak nearest *frequency*."""
    if spectrum.is_empty or len(spectrum.frequencies) < 2:
        return 0.0
    mags = spectrum.magnitudes
    centre = int(np.argmin(np.abs(spectrum.frequencies - frequency)))
    half_power = mags[centre] / np.sqrt(2.0)
    left = centre
    while left > 0 and mags[left - 1] >= half_power:
        left -= 1
    right = centre
    while right < len(mags) - 1 and mags[right + 1] >= half_power:
        right += 1
    bin_width = spectrum.frequencies[1] - spectrum.frequencies[0]
    return float((right - left + 1) * bin_width)


def compare_filtering(
    filtered: np.ndarray,
    unfiltered: np.ndarray,
    sample_rate: float,
) -> FilterEffect:
    """Noise reduction between the unfiltered and filtered gyro traces."""
    raw = analyze_spectrum(unfiltered, sample_rate, max_peaks=None)
    out = analyze_spectrum(filtered, sample_rate, max_peaks=None)
    if raw.noise_level <= 0:
        reduction = 0.0
    else:
        reduction = float(np.clip(1.0 - out.noise_level / raw.noise_level, 0.0, 1.0))
    return FilterEffect(
        unfiltered_noise=raw.noise_level,
        filtered_noise=out.noise_level,
        reduction_ratio=reduction,
    )
