"""Tests for bbtune.parser -- decoded CSV rows and header extraction."""
import csv

import pytest

from bbtune.models import AxisPID
from bbtune.parser import (
    filters_from_headers,
    metadata_from_headers,
    parse_header_lines,
    parse_headers,
    pids_from_headers,
    read_csv_rows,
    split_pid,
)


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

HEADER_LINES = [
    "H Product:Blackbox flight data recorder by Nicholas Sherlock\n",
    "H Firmware revision:Betaflight 4.3.1 (8d4f005) STM32F405\n",
    "H looptime:125\n",
    "H rollPID:45,80,30,120\n",
    "H pitchPID:47,84,34\n",
    "H yawPID:45,80,0\n",
    "H feedforward_weight:120,125,100\n",
    "H gyro_lowpass_hz:250\n",
    "H dterm_lpf1_static_hz:75\n",
    "H dyn_notch_min_hz:100\n",
    "H dshot_bidir:ON\n",
    "H motor_poles:12\n",
    "I some binary frame follows\n",
    "H ignored:1\n",
]


def _write_csv(path, n=20):
    fieldnames = [" time", "gyroADC[0]", "motor[0]"]
    with open(path, "w", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        for i in range(n):
            writer.writerow({" time": str(i * 125), "gyroADC[0]": str(i * 0.5), "motor[0]": "1300"})


# ---------------------------------------------------------------------------
# CSV rows
# ---------------------------------------------------------------------------

def test_read_csv_rows(tmp_path):
    path = tmp_path / "log.csv"
    _write_csv(str(path))
    rows, fieldnames = read_csv_rows(str(path))
    assert fieldnames == ["time", "gyroADC[0]", "motor[0]"]
    assert len(rows) == 20
    assert rows[2]["time"] == "250"
    assert rows[2]["gyroADC[0]"] == "1.0"


def test_read_csv_rows_empty(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("time,gyroADC[0]\n")
    with pytest.raises(ValueError, match="empty"):
        read_csv_rows(str(path))


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

def test_parse_header_lines_stops_at_first_frame():
    headers = parse_header_lines(HEADER_LINES)
    assert headers["looptime"] == "125"
    assert headers["Firmware revision"].startswith("Betaflight 4.3.1")
    assert "ignored" not in headers


def test_parse_header_value_keeps_later_colons():
    headers = parse_header_lines(["H Log start datetime:2024-05-01T10:20:30.000+00:00\n"])
    assert headers["Log start datetime"] == "2024-05-01T10:20:30.000+00:00"


def test_parse_headers_from_file(tmp_path):
    path = tmp_path / "log_headers.txt"
    path.write_text("".join(HEADER_LINES))
    assert parse_headers(str(path)) == parse_header_lines(HEADER_LINES)


@pytest.mark.parametrize("raw, expected", [
    ("45,80,30,120", AxisPID(45, 80, 30, 120)),
    ("45, 80, 30", AxisPID(45, 80, 30, 0)),
    ("45.0,80,30", AxisPID(45, 80, 30, 0)),
    ("45,80", None),
    ("a,b,c", None),
])
def test_split_pid(raw, expected):
    assert split_pid(raw) == expected


def test_pids_from_headers_with_feedforward_fallback():
    pids = pids_from_headers(parse_header_lines(HEADER_LINES))
    assert pids["roll"] == AxisPID(45, 80, 30, 120)
    assert pids["pitch"] == AxisPID(47, 84, 34, 125)
    assert pids["yaw"] == AxisPID(45, 80, 0, 100)


def test_pids_from_headers_missing_axes():
    assert pids_from_headers({"rollPID": "garbage"}) == {}


def test_filters_from_headers_alternate_keys_and_defaults():
    filters = filters_from_headers(parse_header_lines(HEADER_LINES))
    assert filters.gyro_lowpass_hz == 250
    assert filters.dterm_lowpass_hz == 75
    assert filters.dyn_notch_min_hz == 100
    assert filters.dyn_notch_max_hz == 600       # default


class TestMetadata:
    """Header block -> LogMetadata."""

    def test_full_header(self):
        meta = metadata_from_headers(parse_header_lines(HEADER_LINES))
        assert meta.firmware_version.startswith("Betaflight 4.3.1")
        assert meta.looptime_us == 125
        assert meta.sample_rate == pytest.approx(8000.0)
        assert meta.motor_poles == 12
        assert meta.dshot_bidir is True
        assert set(meta.pids) == {"roll", "pitch", "yaw"}

    def test_empty_header(self):
        meta = metadata_from_headers({})
        assert meta.firmware_version == "unknown"
        assert meta.looptime_us is None
        assert meta.sample_rate is None
        assert meta.motor_poles == 14
        assert meta.dshot_bidir is False
        assert meta.pids == {}

    def test_bad_looptime_ignored(self):
        meta = metadata_from_headers({"looptime": "fast"})
        assert meta.looptime_us is None
