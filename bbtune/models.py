"""Data models for bbtune."""
from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Generic, List, Optional, Tuple, TypeVar, Union

import numpy as np

T = TypeVar("T")

AXES = ("roll", "pitch", "yaw")


# ── Tagged measurement results ───────────────────────────────────────────────

@dataclass(frozen=True)
class Complete(Generic[T]):
    """A measurement that was actually computed."""
    value: T

    @property
    def available(self) -> bool:
        return True


@dataclass(frozen=True)
class Unavailable:
    """A measurement that could not be computed, with the reason why."""
    reason: str

    @property
    def available(self) -> bool:
        return False


Measurement = Union[Complete[T], Unavailable]


# ── Enumerations ─────────────────────────────────────────────────────────────

class FlightStyle(str, Enum):
    RACING = "racing"
    FREESTYLE = "freestyle"
    CINEMATIC = "cinematic"
    MIXED = "mixed"


class ThrottleProfile(str, Enum):
    PUNCHOUTS = "punchouts"
    HOVERING = "hovering"
    MIXED = "mixed"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


# ── Configuration ────────────────────────────────────────────────────────────

@dataclass
class DroneParameters:
    """Physical description of the airframe used to scale PID gains."""
    size_inches: float = 5.0        # prop size
    weight_grams: float = 400.0
    battery: str = "4S"
    motor_kv: float = 2300.0
    frame_type: str = "X"           # X or H
    flight_style: Optional[FlightStyle] = FlightStyle.FREESTYLE
    firmware_version: str = "4.3"

    @property
    def cell_count(self) -> int:
        digits = "".join(ch for ch in self.battery if ch.isdigit())
        return int(digits) if digits else 4

    @property
    def battery_voltage(self) -> float:
        """Nominal pack voltage (3.7 V per cell)."""
        return self.cell_count * 3.7


@dataclass
class AnalysisOptions:
    """Knobs for a single pipeline run."""
    sample_rate: Optional[float] = None     # Hz; derived from headers when None
    max_peaks: int = 10
    step_threshold: float = 30.0
    response_window: int = 100
    parallel: bool = False
    controller_type: Optional[str] = None   # None -> pick from flight style
    design_method: Optional[str] = None     # "imc", "zn", "cc" or "robust"; None skips it
    model_order: int = 2


@dataclass
class FilterSettings:
    """Filter configuration currently flashed on the flight controller."""
    gyro_lowpass_hz: float = 250
    gyro_lowpass2_hz: float = 500
    dterm_lowpass_hz: float = 75
    dterm_lowpass2_hz: float = 150
    dyn_notch_count: int = 3
    dyn_notch_q: int = 300
    dyn_notch_min_hz: float = 150
    dyn_notch_max_hz: float = 600
    rpm_harmonics: int = 3
    rpm_min_hz: float = 100
    rpm_q: int = 500


@dataclass
class AxisPID:
    """P/I/D/F gains for one axis, in Betaflight CLI units."""
    p: int
    i: int
    d: int
    f: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class LogMetadata:
    """Header information that accompanies the sample rows."""
    firmware_version: str = "unknown"
    looptime_us: Optional[float] = None
    motor_poles: int = 14
    dshot_bidir: bool = False
    pids: Dict[str, AxisPID] = field(default_factory=dict)
    filters: Optional[FilterSettings] = None

    @property
    def sample_rate(self) -> Optional[float]:
        if self.looptime_us and self.looptime_us > 0:
            return 1e6 / self.looptime_us
        return None


# ── Channel data ─────────────────────────────────────────────────────────────

@dataclass
class AxisData:
    """Time-series data for one axis (roll, pitch, or yaw)."""
    name: str
    gyro: np.ndarray            # Filtered gyro (deg/s)
    command: np.ndarray         # Setpoint when logged, else RC command
    time: np.ndarray            # Time in seconds
    p_term: np.ndarray
    i_term: np.ndarray
    d_term: np.ndarray
    f_term: np.ndarray
    error: Optional[np.ndarray] = None          # Logged axisError
    gyro_unfiltered: Optional[np.ndarray] = None


# ── Spectral results ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SpectralPeak:
    frequency: float            # Hz
    amplitude: float            # normalized magnitude


@dataclass
class FrequencyBand:
    """One named noise band and how much energy the spectrum puts in it."""
    name: str
    min_hz: float
    max_hz: float
    probable_cause: str
    severity: float = 0.0
    average_amplitude: float = 0.0
    peak_amplitude: float = 0.0
    peaks: List[SpectralPeak] = field(default_factory=list)


@dataclass
class SpectrumResult:
    """Output of the spectral analyzer for a single channel."""
    peaks: List[SpectralPeak]
    dominant_frequency: float
    bands: List[FrequencyBand]
    noise_level: float
    frequencies: np.ndarray
    magnitudes: np.ndarray
    sample_rate: float
    fft_size: int = 0

    @property
    def is_empty(self) -> bool:
        return self.fft_size == 0

    def band(self, name: str) -> FrequencyBand:
        for band in self.bands:
            if band.name == name:
                return band
        raise KeyError(name)


@dataclass
class FilterEffect:
    """How much the on-board filtering reduced gyro noise."""
    unfiltered_noise: float
    filtered_noise: float
    reduction_ratio: float      # 0 = no reduction, 1 = all noise removed


# ── Time-domain results ──────────────────────────────────────────────────────

@dataclass
class StepEvent:
    """A detected command step and the captured response window."""
    index: int
    target: float
    start_value: float
    times: np.ndarray           # seconds, relative to the step
    values: np.ndarray

    @property
    def magnitude(self) -> float:
        return abs(self.target - self.start_value)

    @property
    def complete(self) -> bool:
        return len(self.values) >= 20     # points needed to characterize a transient


@dataclass
class TransientMetrics:
    rise_time_ms: float
    overshoot_percent: float
    settling_time_ms: float
    delay_ms: float = 0.0
    damping_ratio: float = 0.0
    oscillation_hz: float = 0.0
    decay_rate: float = 0.0
    step_magnitude: float = 0.0


@dataclass
class ErrorStatistics:
    rms_error: float = 0.0
    mean_error: float = 0.0
    std_deviation: float = 0.0
    max_error: float = 0.0


@dataclass
class PIDContribution:
    """Fraction of total controller effort from each term."""
    p: float = 0.0
    i: float = 0.0
    d: float = 0.0
    f: float = 0.0


@dataclass
class AxisResponseMetrics:
    axis: str
    transient: Measurement
    errors: ErrorStatistics
    pid_contribution: PIDContribution

    def _transient_field(self, name: str) -> Optional[float]:
        if isinstance(self.transient, Complete):
            return getattr(self.transient.value, name)
        return None

    @property
    def rise_time_ms(self) -> Optional[float]:
        return self._transient_field("rise_time_ms")

    @property
    def overshoot_percent(self) -> Optional[float]:
        return self._transient_field("overshoot_percent")

    @property
    def settling_time_ms(self) -> Optional[float]:
        return self._transient_field("settling_time_ms")


@dataclass
class HarmonicAnalysis:
    fundamental_index: int
    fundamental_hz: float
    thd_percent: float
    stability_score: float
    oscillation_detected: bool
    term_thd: Dict[str, float] = field(default_factory=dict)   # p/i/d -> THD%


# ── Flight profile ───────────────────────────────────────────────────────────

@dataclass
class MotorUsage:
    average: float = 0.0
    peak: float = 0.0
    balance: float = 1.0


@dataclass
class FlightProfile:
    style: FlightStyle
    aggressiveness: float
    smoothness: float
    throttle_profile: ThrottleProfile
    motor_usage: MotorUsage = field(default_factory=MotorUsage)


# ── Tuning results ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CriticalParameters:
    """Ziegler-Nichols ultimate gain / period estimate for one axis."""
    ultimate_gain: float
    ultimate_period_s: float
    confidence: Confidence
    damping_ratio: float = 0.5
    peak_count: int = 0


@dataclass
class PIDRecommendation:
    axes: Dict[str, AxisPID]
    master_multiplier: float = 1.0
    controller_type: str = "PIDFreeStyle"
    critical: Optional[CriticalParameters] = None
    advanced: Dict[str, Union[int, str]] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    fallback: bool = False
    performance: Dict[str, PerformanceChange] = field(default_factory=dict)
    confidence_score: Optional[float] = None   # 0..1, from log length and stick activity


@dataclass(frozen=True)
class SystemModel:
    """Plant model identified from an axis' command and gyro traces.

    Order 1 is ``K / (T s + 1)``, order 2 is ``K / (T1 s^2 + T2 s + 1)``;
    higher orders are ARX polynomials ``a`` (``a[0] == 1``) and ``b``.
    """
    order: int
    gain: float = 0.0
    time_constant: float = 0.0
    t1: float = 0.0
    t2: float = 0.0
    natural_frequency: float = 0.0
    damping_ratio: float = 0.0
    a: Tuple[float, ...] = ()
    b: Tuple[float, ...] = ()


@dataclass(frozen=True)
class ModelGains:
    """Gains from a model-based design, already in Betaflight scale.

    Values under 10 keep one decimal.
    """
    p: float
    i: float
    d: float
    f: float = 0.0


@dataclass(frozen=True)
class SimulatedResponse:
    overshoot_percent: float
    settling_steps: int
    steady_state_error: float


@dataclass
class ModelDesign:
    """Model-based PID design for one axis and its simulated quality."""
    axis: str
    model: SystemModel
    method: str
    gains: ModelGains
    response: SimulatedResponse
    quality: float                  # lower is better


@dataclass(frozen=True)
class PerformanceChange:
    """Expected relative change when moving from current to recommended gains."""
    responsiveness: float = 0.0
    stability: float = 0.0
    settling_time: float = 0.0
    overshoot: float = 0.0
    noise_rejection: float = 0.0


@dataclass
class DynamicNotch:
    min_hz: int
    max_hz: int
    q: int
    count: int = 3


@dataclass
class RPMFilter:
    harmonics: int
    q: int
    min_hz: int


@dataclass
class DMin:
    roll: int
    pitch: int
    boost_gain: int


@dataclass
class FilterRecommendation:
    gyro_lowpass_hz: int
    dterm_lowpass_hz: int
    dyn_notch: DynamicNotch
    rpm_filter: RPMFilter
    firmware_version: str = "4.3"
    gyro_lowpass2_hz: Optional[int] = None
    dterm_lowpass2_hz: Optional[int] = None
    d_min: Optional[DMin] = None
    notes: List[str] = field(default_factory=list)
    fallback: bool = False


# ── Report ───────────────────────────────────────────────────────────────────

@dataclass
class AnalysisReport:
    """Everything one pipeline run produced, ready for presentation."""
    spectra: Dict[str, Measurement]
    responses: Dict[str, Measurement]
    harmonics: Dict[str, Measurement]
    critical: Dict[str, CriticalParameters]
    flight_profile: FlightProfile
    pid: PIDRecommendation
    filters: FilterRecommendation
    commands: List[str]
    sample_rate: float
    sample_count: int
    common_frequencies: List[float] = field(default_factory=list)
    filter_effect: Optional[Measurement] = None
    model_designs: Dict[str, Measurement] = field(default_factory=dict)

    @property
    def dominant_frequencies(self) -> Dict[str, Optional[float]]:
        out = {}
        for axis, result in self.spectra.items():
            out[axis] = result.value.dominant_frequency if isinstance(result, Complete) else None
        return out


def is_finite_number(value) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and math.isfinite(float(value))


@dataclass
class AnalysisResult:
    """Per-axis measurements from one pipeline run, before recommendations."""
    spectra: Dict[str, Measurement]
    responses: Dict[str, Measurement]
    harmonics: Dict[str, Measurement]
    critical: Dict[str, CriticalParameters]
    flight_profile: FlightProfile
    sample_rate: float
    sample_count: int
    common_frequencies: List[float] = field(default_factory=list)
    filter_effect: Optional[Measurement] = None
    gyro_noise: Optional[float] = None          # mean gyro std / 100
    motor_hz: Optional[float] = None            # mean mechanical motor frequency
    model_designs: Dict[str, Measurement] = field(default_factory=dict)
    stick_activity: float = 0.0
