"""Tests for bbtune.analyzers.fft -- iterative radix-2 FFT with cached plans."""
import numpy as np
import pytest

from bbtune.analyzers.fft import FFTPlan, fft, get_plan, next_power_of_two


# ---------- next_power_of_two ----------


@pytest.mark.parametrize("n, expected", [(0, 2), (1, 2), (2, 2), (3, 4), (32, 32), (33, 64), (2000, 2048)])
def test_next_power_of_two(n, expected):
    assert next_power_of_two(n) == expected


# ---------- transform ----------


@pytest.mark.parametrize("size", [2, 4, 8, 64, 1024, 4096])
def test_fft_matches_numpy(size):
    rng = np.random.default_rng(42)
    data = rng.normal(0, 1, size)
    np.testing.assert_allclose(fft(data), np.fft.fft(data), rtol=1e-9, atol=1e-9)


def test_fft_complex_input_matches_numpy():
    rng = np.random.default_rng(42)
    data = rng.normal(0, 1, 256) + 1j * rng.normal(0, 1, 256)
    np.testing.assert_allclose(fft(data), np.fft.fft(data), rtol=1e-9, atol=1e-9)


def test_fft_does_not_alias_plan_buffer():
    """Results from consecutive calls must not overwrite each other."""
    a = fft(np.ones(16))
    b = fft(np.zeros(16))
    assert a[0] == pytest.approx(16.0)
    assert b[0] == pytest.approx(0.0)


# ---------- plans ----------


class TestPlans:
    """Plan construction and caching."""

    def test_rejects_non_power_of_two(self):
        with pytest.raises(ValueError):
            FFTPlan(12)

    def test_rejects_wrong_length(self):
        plan = FFTPlan(8)
        with pytest.raises(ValueError):
            plan.transform(np.zeros(7))

    def test_plans_are_cached_per_size(self):
        assert get_plan(512) is get_plan(512)
        assert get_plan(512) is not get_plan(1024)
