#!/usr/bin/env python3
"""Generate a synthetic decoded blackbox log for exercising bbtune.

The quad is modelled as an under-damped second-order loop following stick
steps on roll/pitch/yaw, with a frame resonance and broadband motor noise
added to the gyro. Output is a blackbox_decode-style CSV plus a header
dump (``H key:value`` lines).

Usage:
    python generate_test_log.py [output.csv]
"""
from __future__ import annotations

import csv
import sys
from typing import Dict, List, Tuple

import numpy as np
from scipy import signal

SAMPLE_RATE = 2000           # Hz
LOOPTIME_US = 1_000_000 // SAMPLE_RATE
N_SAMPLES = 8000

# (time_s, roll, pitch, yaw) stick deflections in RC units around 1500
STICK_EVENTS = [
    (0.5, 250, 0, 0),
    (1.0, 0, 0, 0),
    (1.5, 0, -200, 0),
    (2.0, 0, 0, 0),
    (2.5, -300, 0, 150),
    (3.0, 0, 0, 0),
    (3.4, 0, 250, 0),
    (3.7, 0, 0, 0),
]

RATE_PER_RC = 1.4            # deg/s of setpoint per RC unit of deflection


# ──────────────────────────────────────────────────────────────────────
# Signal models
# ──────────────────────────────────────────────────────────────────────
def stick_inputs(n: int) -> np.ndarray:
    """RC commands, shape (3, n), held between stick events."""
    rc = np.full((3, n), 1500.0)
    t = np.arange(n) / SAMPLE_RATE
    for when, roll, pitch, yaw in STICK_EVENTS:
        mask = t >= when
        rc[0, mask] = 1500 + roll
        rc[1, mask] = 1500 + pitch
        rc[2, mask] = 1500 + yaw
    return rc


def closed_loop_response(setpoint: np.ndarray, zeta: float, natural_hz: float) -> np.ndarray:
    """Second-order loop response discretized with the bilinear transform."""
    wn = 2 * np.pi * natural_hz
    b, a = signal.bilinear([wn ** 2], [1.0, 2 * zeta * wn, wn ** 2], fs=SAMPLE_RATE)
    return signal.lfilter(b, a, setpoint)


def gyro_noise(n: int, resonance_hz: float, rng, amplitude: float = 6.0) -> np.ndarray:
    t = np.arange(n) / SAMPLE_RATE
    resonance = amplitude * np.sin(2 * np.pi * resonance_hz * t)
    broadband = rng.normal(0, 0.8, size=n)
    return resonance + broadband


def pid_terms(setpoint: np.ndarray, gyro: np.ndarray, kp: float, ki: float, kd: float):
    """Rough P/I/D/F term traces in Betaflight output units."""
    error = setpoint - gyro
    p = kp * error * 0.004
    i = np.clip(np.cumsum(ki * error) / SAMPLE_RATE * 0.002, -50, 50)
    d = np.zeros_like(gyro)
    d[1:] = -kd * np.diff(gyro) * 0.02
    f = np.zeros_like(setpoint)
    f[1:] = np.diff(setpoint) * 0.2
    return p, i, d, f


# ──────────────────────────────────────────────────────────────────────
# Log assembly
# ──────────────────────────────────────────────────────────────────────
FIELDNAMES = (
    ["loopIteration", "time"]
    + [f"axisP[{i}]" for i in range(3)]
    + [f"axisI[{i}]" for i in range(3)]
    + [f"axisD[{i}]" for i in range(3)]
    + [f"axisF[{i}]" for i in range(3)]
    + [f"rcCommand[{i}]" for i in range(4)]
    + [f"setpoint[{i}]" for i in range(3)]
    + [f"gyroADC[{i}]" for i in range(3)]
    + [f"gyroUnfilt[{i}]" for i in range(3)]
    + [f"motor[{i}]" for i in range(4)]
)


def generate_log(
    n: int = N_SAMPLES,
    resonance_hz: float = 140.0,
    seed: int = 42,
) -> Tuple[List[Dict[str, str]], List[str], Dict[str, str]]:
    """Build ``(rows, fieldnames, headers)`` for a synthetic flight."""
    rng = np.random.default_rng(seed)
    rc = stick_inputs(n)
    throttle = 1450 + 80 * np.sin(2 * np.pi * 0.3 * np.arange(n) / SAMPLE_RATE)

    columns: Dict[str, np.ndarray] = {
        "loopIteration": np.arange(n),
        "time": np.arange(n) * LOOPTIME_US,
        "rcCommand[3]": throttle,
    }
    pid_sum = []
    for axis, (zeta, wn_hz, gains) in enumerate([
        (0.45, 18.0, (45, 80, 30)),
        (0.5, 17.0, (47, 84, 34)),
        (0.7, 10.0, (45, 80, 0)),
    ]):
        setpoint = (rc[axis] - 1500) * RATE_PER_RC
        clean = closed_loop_response(setpoint, zeta, wn_hz)
        unfiltered = clean + gyro_noise(n, resonance_hz, rng)
        filtered = clean + 0.3 * (unfiltered - clean)
        p, i, d, f = pid_terms(setpoint, filtered, *gains)

        columns[f"rcCommand[{axis}]"] = rc[axis]
        columns[f"setpoint[{axis}]"] = setpoint
        columns[f"gyroADC[{axis}]"] = filtered
        columns[f"gyroUnfilt[{axis}]"] = unfiltered
        columns[f"axisP[{axis}]"] = p
        columns[f"axisI[{axis}]"] = i
        columns[f"axisD[{axis}]"] = d
        columns[f"axisF[{axis}]"] = f
        pid_sum.append(p + i + d)

    roll, pitch, yaw = pid_sum
    mix = [(+1, -1, -1), (+1, +1, +1), (-1, -1, +1), (-1, +1, -1)]
    for m, (r, pt, y) in enumerate(mix):
        motor = throttle + 0.5 * (r * roll + pt * pitch + y * yaw)
        columns[f"motor[{m}]"] = np.clip(motor, 1000, 2000)

    rows = [
        {name: f"{columns[name][k]:.3f}" if name not in ("loopIteration", "time") else str(int(columns[name][k]))
         for name in FIELDNAMES}
        for k in range(n)
    ]
    headers = {
        "Firmware revision": "Betaflight 4.4.2 (8e5d4c3b1) STM32F7X2",
        "looptime": str(LOOPTIME_US),
        "motor_poles": "14",
        "dshot_bidir": "0",
        "rollPID": "45,80,30,120",
        "pitchPID": "47,84,34,125",
        "yawPID": "45,80,0,120",
        "gyro_lowpass_hz": "250",
        "dterm_lowpass_hz": "75",
        "dyn_notch_min_hz": "150",
        "dyn_notch_max_hz": "600",
    }
    return rows, list(FIELDNAMES), headers


def write_csv(path: str, rows: List[Dict[str, str]], fieldnames: List[str]) -> None:
    with open(path, "w", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)


def write_headers(path: str, headers: Dict[str, str]) -> None:
    with open(path, "w") as fh:
        for key, value in headers.items():
            fh.write(f"H {key}:{value}\n")


# ──────────────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────────────
def main():
    out = sys.argv[1] if len(sys.argv) > 1 else "test_log.csv"
    rows, fieldnames, headers = generate_log()
    write_csv(out, rows, fieldnames)
    header_path = out.rsplit(".", 1)[0] + "_headers.txt"
    write_headers(header_path, headers)
    print(f"Wrote {len(rows)} samples to {out} and headers to {header_path}")


if __name__ == "__main__":
    main()
