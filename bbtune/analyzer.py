"""Full analysis pipeline -- wires all analyzers together.

This is the main entry point for bbtune. Presentation code calls
``analyze_log()`` with parsed rows and headers, or ``run_analysis()`` and
``generate_recommendation()`` separately when it already holds a
:class:`ChannelSet`.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np

from .analyzers.critical import (
    DEFAULT_CRITICAL,
    estimate_critical_parameters,
    select_critical_parameters,
)
from .analyzers.flight_profile import classify_flight
from .analyzers.harmonics import analyze_harmonics
from .analyzers.spectrum import (
    aggregate_spectra,
    analyze_spectrum,
    compare_filtering,
    empty_spectrum,
    find_common_frequencies,
)
from .analyzers.step_response import analyze_axis_response
from .channels import AXIS_ROLES, GYRO_ROLES, RC_ROLES, ChannelRole, ChannelSet, prepare_channels
from .errors import (
    AnalysisCancelled,
    DegenerateSignalError,
    InsufficientDataError,
    MissingChannelError,
    UnknownDesignMethodError,
)
from .filter_optimizer import motor_frequency_hz, recommend_filters
from .model_tuning import (
    DESIGN_METHODS,
    design_axis,
    performance_changes,
    recommendation_confidence,
    stick_activity,
)
from .models import (
    AXES,
    AnalysisOptions,
    AnalysisReport,
    AnalysisResult,
    Complete,
    DroneParameters,
    FilterRecommendation,
    LogMetadata,
    PIDRecommendation,
    Unavailable,
)
from .parser import metadata_from_headers, parse_headers, read_csv_rows
from .pid_optimizer import recommend_pids
from .report import build_report
from .runtime import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

# Failures that only cost one axis its measurements
_AXIS_ERRORS = (MissingChannelError, InsufficientDataError, DegenerateSignalError, ValueError, ArithmeticError)


def _analyze_axis(channels: ChannelSet, axis: str, options: AnalysisOptions, cancel):
    """Spectrum, harmonics, response and critical parameters for one axis."""
    check_cancelled(cancel)
    roles = AXIS_ROLES[axis]
    sample_rate = channels.sample_rate

    # 1. Spectrum of the filtered gyro
    try:
        gyro = channels.get(roles["gyro"])
        spectrum = analyze_spectrum(gyro, sample_rate, options.max_peaks)
        if spectrum.is_empty:
            spectrum_result = Unavailable("fewer than 32 samples")
        else:
            spectrum_result = Complete(spectrum)
    except AnalysisCancelled:
        raise
    except _AXIS_ERRORS as exc:
        logger.warning("%s spectrum unavailable: %s", axis, exc)
        spectrum_result = Unavailable(str(exc))

    # 2. Harmonic distortion, with per-term THD at the gyro fundamental
    if isinstance(spectrum_result, Complete):
        term_spectra = {
            term: analyze_spectrum(channels.get(roles[term]), sample_rate, None)
            for term in ("p", "i", "d")
            if channels.has(roles[term])
        }
        harmonic_result = Complete(analyze_harmonics(spectrum_result.value, term_spectra))
    else:
        harmonic_result = Unavailable(spectrum_result.reason)

    check_cancelled(cancel)

    # 3. Step response and error statistics; 4. critical parameters
    try:
        data = channels.axis(axis)
        response_result = Complete(analyze_axis_response(
            axis,
            data.command,
            data.gyro,
            data.time,
            data.p_term,
            data.i_term,
            data.d_term,
            data.f_term,
            error=data.error,
            threshold=options.step_threshold,
            window=options.response_window,
        ))
        critical = estimate_critical_parameters(data.command, data.gyro, sample_rate)
    except AnalysisCancelled:
        raise
    except _AXIS_ERRORS as exc:
        logger.warning("%s response unavailable: %s", axis, exc)
        response_result = Unavailable(str(exc))
        critical = DEFAULT_CRITICAL

    # 5. Model-based design
    design_result = None
    if options.design_method is not None:
        try:
            design_result = Complete(design_axis(
                axis, channels.axis(axis), sample_rate, options.design_method, options.model_order
            ))
        except AnalysisCancelled:
            raise
        except _AXIS_ERRORS as exc:
            logger.warning("%s model design unavailable: %s", axis, exc)
            design_result = Unavailable(str(exc))

    return spectrum_result, response_result, harmonic_result, critical, design_result


def run_analysis(
    channels: ChannelSet,
    options: Optional[AnalysisOptions] = None,
    metadata: Optional[LogMetadata] = None,
    cancel: Optional[CancellationToken] = None,
) -> AnalysisResult:
    """Run every analyzer over a prepared channel set.

    Roll, pitch and yaw are independent; with ``options.parallel`` they run
    on a thread pool. A failing axis is reported as ``Unavailable`` and the
    others continue.

    Raises
    ------
    UnknownDesignMethodError
        ``options.design_method`` is set but not one of ``DESIGN_METHODS``.
    AnalysisCancelled
    """
    options = options or AnalysisOptions()
    metadata = metadata or LogMetadata()
    if options.design_method is not None and options.design_method not in DESIGN_METHODS:
        raise UnknownDesignMethodError(options.design_method, DESIGN_METHODS)
    logger.debug("Analyzing %d samples at %.1f Hz", len(channels), channels.sample_rate)

    if options.parallel:
        with ThreadPoolExecutor(max_workers=len(AXES)) as pool:
            results = list(pool.map(lambda a: _analyze_axis(channels, a, options, cancel), AXES))
    else:
        results = [_analyze_axis(channels, axis, options, cancel) for axis in AXES]

    spectra, responses, harmonics, critical, designs = {}, {}, {}, {}, {}
    for axis, (spectrum, resp, harm, crit, design) in zip(AXES, results):
        spectra[axis] = spectrum
        responses[axis] = resp
        harmonics[axis] = harm
        critical[axis] = crit
        if design is not None:
            designs[axis] = design

    check_cancelled(cancel)

    # 5. Flight profile
    profile = classify_flight(
        rc_axes=[channels.get(r) for r in RC_ROLES if channels.has(r)],
        throttle=channels.get(ChannelRole.RC_THROTTLE) if channels.has(ChannelRole.RC_THROTTLE) else np.zeros(0),
        gyro_axes=[channels.get(r) for r in GYRO_ROLES if channels.has(r)],
        motors=channels.motors(),
    )

    complete = {a: s.value for a, s in spectra.items() if isinstance(s, Complete)}

    filter_effect = Unavailable("no unfiltered gyro channel")
    if channels.has(ChannelRole.GYRO_UNFILT_ROLL) and channels.has(ChannelRole.GYRO_ROLL):
        filter_effect = Complete(compare_filtering(
            channels.get(ChannelRole.GYRO_ROLL),
            channels.get(ChannelRole.GYRO_UNFILT_ROLL),
            channels.sample_rate,
        ))

    gyro_std = [float(np.std(channels.get(r))) for r in GYRO_ROLES if channels.has(r)]
    activity = [stick_activity(channels.get(r)) for r in RC_ROLES if channels.has(r)]

    return AnalysisResult(
        spectra=spectra,
        responses=responses,
        harmonics=harmonics,
        critical=critical,
        flight_profile=profile,
        sample_rate=channels.sample_rate,
        sample_count=len(channels),
        common_frequencies=find_common_frequencies(complete),
        filter_effect=filter_effect,
        gyro_noise=float(np.mean(gyro_std)) / 100.0 if gyro_std else None,
        motor_hz=motor_frequency_hz(channels.erpm(), metadata.motor_poles),
        model_designs=designs,
        stick_activity=float(np.mean(activity)) if activity else 0.0,
    )


def generate_recommendation(
    analysis: AnalysisResult,
    drone: Optional[DroneParameters] = None,
    metadata: Optional[LogMetadata] = None,
    options: Optional[AnalysisOptions] = None,
) -> Tuple[PIDRecommendation, FilterRecommendation]:
    """PID and filter recommendations from a finished analysis.

    These are the synchronization points: they need every axis.
    """
    drone = drone or DroneParameters()
    metadata = metadata or LogMetadata()
    options = options or AnalysisOptions()

    roll = analysis.responses.get("roll")
    rise_ms = roll.value.rise_time_ms if isinstance(roll, Complete) else None

    pid = recommend_pids(
        select_critical_parameters(analysis.critical),
        drone=drone,
        profile=analysis.flight_profile,
        controller_type=options.controller_type,
        gyro_noise=analysis.gyro_noise,
        response_time_s=rise_ms / 1000.0 if rise_ms is not None else None,
        current=metadata.pids or None,
    )
    if metadata.pids:
        pid.performance = performance_changes(metadata.pids, pid.axes)
    pid.confidence_score = recommendation_confidence(analysis.sample_count, analysis.stick_activity)

    firmware = metadata.firmware_version
    if not firmware or firmware == "unknown":
        firmware = drone.firmware_version
    spectra = {a: s.value for a, s in analysis.spectra.items() if isinstance(s, Complete)}
    if not spectra:
        logger.warning("No usable gyro spectrum; filter recommendation uses defaults")
    filters = recommend_filters(
        aggregate_spectra(spectra) if spectra else empty_spectrum(analysis.sample_rate),
        profile=analysis.flight_profile,
        firmware_version=firmware,
        current=metadata.filters,
        dshot_bidir=metadata.dshot_bidir,
        motor_hz=analysis.motor_hz,
    )
    return pid, filters


def analyze_channels(
    channels: ChannelSet,
    drone: Optional[DroneParameters] = None,
    metadata: Optional[LogMetadata] = None,
    options: Optional[AnalysisOptions] = None,
    cancel: Optional[CancellationToken] = None,
) -> AnalysisReport:
    """Analysis plus recommendations for a prepared channel set."""
    analysis = run_analysis(channels, options, metadata, cancel)
    pid, filters = generate_recommendation(analysis, drone, metadata, options)
    return build_report(
        spectra=analysis.spectra,
        responses=analysis.responses,
        harmonics=analysis.harmonics,
        critical=analysis.critical,
        flight_profile=analysis.flight_profile,
        pid=pid,
        filters=filters,
        sample_rate=analysis.sample_rate,
        sample_count=analysis.sample_count,
        common_frequencies=analysis.common_frequencies,
        filter_effect=analysis.filter_effect,
        model_designs=analysis.model_designs,
    )


def analyze_log(
    rows: Sequence[Mapping[str, object]],
    fieldnames: Optional[Iterable[str]] = None,
    headers: Optional[Mapping[str, str]] = None,
    drone: Optional[DroneParameters] = None,
    options: Optional[AnalysisOptions] = None,
    cancel: Optional[CancellationToken] = None,
) -> AnalysisReport:
    """One-call pipeline from raw rows (and optional header mapping) to a report.

    Raises
    ------
    InsufficientDataError
        Fewer than 10 rows survive validation.
    UnknownControllerTypeError
        ``options.controller_type`` is not a known archetype.
    UnknownDesignMethodError
        ``options.design_method`` is not a known design method.
    AnalysisCancelled
    """
    options = options or AnalysisOptions()
    metadata = metadata_from_headers(headers) if headers else LogMetadata()
    channels = prepare_channels(rows, fieldnames, options.sample_rate, metadata, cancel)
    return analyze_channels(channels, drone, metadata, options, cancel)


def analyze_csv(
    csv_path: str,
    header_path: Optional[str] = None,
    drone: Optional[DroneParameters] = None,
    options: Optional[AnalysisOptions] = None,
    cancel: Optional[CancellationToken] = None,
) -> AnalysisReport:
    """Convenience wrapper around :func:`analyze_log` for decoded CSV files."""
    rows, fieldnames = read_csv_rows(csv_path)
    headers = parse_headers(header_path) if header_path else None
    return analyze_log(rows, fieldnames, headers, drone, options, cancel)
