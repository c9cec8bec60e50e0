"""Report assembly and Betaflight CLI command generation."""
from __future__ import annotations

from typing import Dict, List, Optional

from .errors import InvalidRecommendationError
from .models import (
    AXES,
    AnalysisReport,
    CriticalParameters,
    FilterRecommendation,
    FlightProfile,
    PIDRecommendation,
    is_finite_number,
)


def _check_int(name: str, value) -> None:
    if not is_finite_number(value) or float(value) != int(value):
        raise InvalidRecommendationError(f"{name} must be a finite integer, got {value!r}")


def validate_pid_recommendation(pid: PIDRecommendation) -> None:
    """Reject recommendations with a missing axis or non-integer gains."""
    for axis in AXES:
        if axis not in pid.axes:
            raise InvalidRecommendationError(f"PID recommendation is missing the {axis} axis")
        values = pid.axes[axis]
        for term in ("p", "i", "d", "f"):
            _check_int(f"{term}_{axis}", getattr(values, term))
    for key, value in pid.advanced.items():
        if not isinstance(value, str):
            _check_int(key, value)


def validate_filter_recommendation(filters: FilterRecommendation) -> None:
    """Reject filter recommendations with non-finite or fractional values."""
    _check_int("gyro_lowpass_hz", filters.gyro_lowpass_hz)
    _check_int("dterm_lowpass_hz", filters.dterm_lowpass_hz)
    for name in ("gyro_lowpass2_hz", "dterm_lowpass2_hz"):
        value = getattr(filters, name)
        if value is not None:
            _check_int(name, value)
    notch = filters.dyn_notch
    for name in ("min_hz", "max_hz", "q", "count"):
        _check_int(f"dyn_notch_{name}", getattr(notch, name))
    if notch.min_hz > notch.max_hz:
        raise InvalidRecommendationError(
            f"dyn_notch_min_hz {notch.min_hz} exceeds dyn_notch_max_hz {notch.max_hz}"
        )
    rpm = filters.rpm_filter
    for name in ("harmonics", "q", "min_hz"):
        _check_int(f"rpm_filter_{name}", getattr(rpm, name))
    if filters.d_min is not None:
        for name in ("roll", "pitch", "boost_gain"):
            _check_int(f"d_min_{name}", getattr(filters.d_min, name))


def generate_commands(pid: PIDRecommendation, filters: FilterRecommendation) -> List[str]:
    """Ordered ``set <key> = <value>`` lines ending with ``save``.

    Raises
    ------
    InvalidRecommendationError
        Either recommendation is malformed.
    """
    validate_pid_recommendation(pid)
    validate_filter_recommendation(filters)

    lines: List[str] = []

    def _set(key: str, value) -> None:
        if not isinstance(value, str):
            value = int(value)
        lines.append(f"set {key} = {value}")

    for axis in AXES:
        values = pid.axes[axis]
        for term in ("p", "i", "d", "f"):
            _set(f"{term}_{axis}", getattr(values, term))

    _set("gyro_lowpass_hz", filters.gyro_lowpass_hz)
    _set("dterm_lowpass_hz", filters.dterm_lowpass_hz)
    if filters.gyro_lowpass2_hz is not None:
        _set("gyro_lowpass2_hz", filters.gyro_lowpass2_hz)
    if filters.dterm_lowpass2_hz is not None:
        _set("dterm_lowpass2_hz", filters.dterm_lowpass2_hz)

    _set("dyn_notch_min_hz", filters.dyn_notch.min_hz)
    _set("dyn_notch_max_hz", filters.dyn_notch.max_hz)
    _set("dyn_notch_q", filters.dyn_notch.q)
    _set("dyn_notch_count", filters.dyn_notch.count)

    _set("rpm_filter_harmonics", filters.rpm_filter.harmonics)
    _set("rpm_filter_q", filters.rpm_filter.q)
    _set("rpm_filter_min_hz", filters.rpm_filter.min_hz)

    if filters.d_min is not None:
        _set("d_min_roll", filters.d_min.roll)
        _set("d_min_pitch", filters.d_min.pitch)
        _set("d_min_boost", filters.d_min.boost_gain)

    for key, value in pid.advanced.items():
        _set(key, value)

    lines.append("save")
    return lines


def build_report(
    spectra: Dict,
    responses: Dict,
    harmonics: Dict,
    critical: Dict[str, CriticalParameters],
    flight_profile: FlightProfile,
    pid: PIDRecommendation,
    filters: FilterRecommendation,
    sample_rate: float,
    sample_count: int,
    common_frequencies: Optional[List[float]] = None,
    filter_effect=None,
    model_designs=None,
) -> AnalysisReport:
    """Bundle every result of a run; commands are generated here."""
    return AnalysisReport(
        spectra=dict(spectra),
        responses=dict(responses),
        harmonics=dict(harmonics),
        critical=dict(critical),
        flight_profile=flight_profile,
        pid=pid,
        filters=filters,
        commands=generate_commands(pid, filters),
        sample_rate=sample_rate,
        sample_count=sample_count,
        common_frequencies=list(common_frequencies or []),
        filter_effect=filter_effect,
        model_designs=dict(model_designs or {}),
    )
