"""Decoded blackbox log adapter.

Two ingestion paths feed the analysis core:
1. ``read_csv_rows``  -- rows of a blackbox_decode / Explorer CSV export
2. ``parse_headers``  -- ``H key:value`` header lines

``metadata_from_headers`` turns the header mapping into :class:`LogMetadata`
(firmware, loop time, motor poles, bidirectional DShot, PIDs, filters).
Binary ``.bbl``/``.bfl`` decoding is left to blackbox_decode.
"""
from __future__ import annotations

import csv
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import AXES, AxisPID, FilterSettings, LogMetadata

# ---------------------------------------------------------------------------
# CSV rows
# ---------------------------------------------------------------------------

def read_csv_rows(csv_path: str) -> Tuple[List[Dict[str, str]], List[str]]:
    """Read a decoded CSV log into ``(rows, fieldnames)``.

    Values are left as strings; sample preparation parses them.
    """
    with open(csv_path, "r", newline="") as fh:
        reader = csv.DictReader(fh)
        fieldnames = [name.strip() for name in (reader.fieldnames or [])]
        rows = [
            {key.strip(): value for key, value in row.items() if key is not None}
            for row in reader
        ]
    if not rows:
        raise ValueError(f"CSV file is empty: {csv_path}")
    return rows, fieldnames


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------

def parse_header_lines(lines: Iterable[str]) -> Dict[str, str]:
    """Parse ``H key:value`` lines, stopping at the first non-header line."""
    headers: Dict[str, str] = {}
    for line in lines:
        line = line.rstrip("\n\r")
        if not line.startswith("H "):
            break
        # Strip the "H " prefix, then split on the FIRST colon
        payload = line[2:]
        colon_idx = payload.find(":")
        if colon_idx < 0:
            continue
        headers[payload[:colon_idx].strip()] = payload[colon_idx + 1:].strip()
    return headers


def parse_headers(path: str) -> Dict[str, str]:
    """Parse the header block at the start of a log or header dump file."""
    with open(path, "r", errors="replace") as fh:
        return parse_header_lines(fh)


# ---------------------------------------------------------------------------
# Typed extraction
# ---------------------------------------------------------------------------

def _float(headers: Mapping[str, str], default: float, *keys: str) -> float:
    for key in keys:
        try:
            return float(headers[key])
        except (KeyError, ValueError):
            continue
    return default


def _int(headers: Mapping[str, str], default: int, *keys: str) -> int:
    return int(_float(headers, default, *keys))


def split_pid(value: str) -> Optional[AxisPID]:
    """``"P,I,D[,F]"`` -> :class:`AxisPID`; None when fewer than three numbers."""
    parts = [p.strip() for p in value.split(",")]
    try:
        numbers = [int(float(p)) for p in parts if p]
    except ValueError:
        return None
    if len(numbers) < 3:
        return None
    return AxisPID(p=numbers[0], i=numbers[1], d=numbers[2], f=numbers[3] if len(numbers) > 3 else 0)


def pids_from_headers(headers: Mapping[str, str]) -> Dict[str, AxisPID]:
    """Current PIDs from ``rollPID``/``pitchPID``/``yawPID`` headers.

    Feedforward falls back to the per-axis ``feedforward_weight`` header
    (``"roll,pitch,yaw"``) when the PID string carries only three values.
    """
    ff = [p.strip() for p in headers.get("feedforward_weight", headers.get("ff_weight", "")).split(",")]
    pids = {}
    for idx, axis in enumerate(AXES):
        raw = headers.get(f"{axis}PID")
        if raw is None:
            continue
        pid = split_pid(raw)
        if pid is None:
            continue
        if pid.f == 0 and idx < len(ff) and ff[idx].replace(".", "", 1).isdigit():
            pid.f = int(float(ff[idx]))
        pids[axis] = pid
    return pids


def filters_from_headers(headers: Mapping[str, str]) -> FilterSettings:
    """Current filter settings; missing keys fall back to dataclass defaults."""
    d = FilterSettings()
    return FilterSettings(
        gyro_lowpass_hz=_float(headers, d.gyro_lowpass_hz, "gyro_lowpass_hz", "gyro_lpf1_static_hz"),
        gyro_lowpass2_hz=_float(headers, d.gyro_lowpass2_hz, "gyro_lowpass2_hz", "gyro_lpf2_static_hz"),
        dterm_lowpass_hz=_float(headers, d.dterm_lowpass_hz, "dterm_lowpass_hz", "dterm_lpf1_static_hz"),
        dterm_lowpass2_hz=_float(headers, d.dterm_lowpass2_hz, "dterm_lowpass2_hz", "dterm_lpf2_static_hz"),
        dyn_notch_count=_int(headers, d.dyn_notch_count, "dyn_notch_count"),
        dyn_notch_q=_int(headers, d.dyn_notch_q, "dyn_notch_q"),
        dyn_notch_min_hz=_float(headers, d.dyn_notch_min_hz, "dyn_notch_min_hz"),
        dyn_notch_max_hz=_float(headers, d.dyn_notch_max_hz, "dyn_notch_max_hz"),
        rpm_harmonics=_int(headers, d.rpm_harmonics, "gyro_rpm_notch_harmonics", "rpm_filter_harmonics"),
        rpm_min_hz=_float(headers, d.rpm_min_hz, "rpm_filter_min_hz", "gyro_rpm_notch_min"),
        rpm_q=_int(headers, d.rpm_q, "rpm_filter_q", "gyro_rpm_notch_q"),
    )


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().upper() in ("1", "ON", "TRUE", "YES")


def metadata_from_headers(headers: Mapping[str, str]) -> LogMetadata:
    """Everything the analysis needs from the header block."""
    looptime = _float(headers, 0.0, "looptime")
    return LogMetadata(
        firmware_version=headers.get("Firmware revision", headers.get("firmwareVersion", "unknown")),
        looptime_us=looptime if looptime > 0 else None,
        motor_poles=_int(headers, 14, "motor_poles", "motorPoles"),
        dshot_bidir=_flag(headers.get("dshot_bidir")),
        pids=pids_from_headers(headers),
        filters=filters_from_headers(headers),
    )
