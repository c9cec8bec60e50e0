"""Iterative radix-2 FFT with cached plans.

A plan owns the bit-reversal permutation, the twiddle-factor table and a
work buffer for one power-of-two size. Plans are cached so the roll, pitch
and yaw channels of a log share a single set of tables.
"""
from __future__ import annotations

import logging
import threading
from functools import lru_cache

import numpy as np

logger = logging.getLogger(__name__)


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n (and >= 2)."""
    size = 2
    while size < n:
        size <<= 1
    return size


def _bit_reverse_indices(size: int) -> np.ndarray:
    bits = size.bit_length() - 1
    idx = np.arange(size)
    rev = np.zeros(size, dtype=np.intp)
    for b in range(bits):
        rev |= ((idx >> b) & 1) << (bits - 1 - b)
    return rev


class FFTPlan:
    """Precomputed tables for an in-place Cooley-Tukey transform of one size."""

    def __init__(self, size: int):
        if size < 2 or size & (size - 1):
            raise ValueError(f"FFT size must be a power of two >= 2, got {size}")
        self.size = size
        self._bitrev = _bit_reverse_indices(size)
        self._twiddles = np.exp(-2j * np.pi * np.arange(size // 2) / size)
        self._buffer = np.empty(size, dtype=np.complex128)
        self._lock = threading.Lock()

    def transform(self, data: np.ndarray) -> np.ndarray:
        """Forward DFT of *data* (length must equal the plan size)."""
        data = np.asarray(data)
        if len(data) != self.size:
            raise ValueError(f"Expected {self.size} samples, got {len(data)}")

        with self._lock:
            buf = self._buffer
            buf[:] = data[self._bitrev]

            half = 1
            while half < self.size:
                step = self.size // (2 * half)
                tw = self._twiddles[::step][:half]
                blocks = buf.reshape(-1, 2 * half)
                odd = blocks[:, half:] * tw
                blocks[:, half:] = blocks[:, :half] - odd
                blocks[:, :half] += odd
                half *= 2

            return buf.copy()


@lru_cache(maxsize=16)
def get_plan(size: int) -> FFTPlan:
    logger.debug("Building FFT plan for N=%d", size)
    return FFTPlan(size)


def fft(data: np.ndarray) -> np.ndarray:
    """Forward FFT; *data* length must be a power of two."""
    return get_plan(len(data)).transform(data)
