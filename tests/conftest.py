import numpy as np
import pytest

from peakdecon.data import Curve, PeakCandidate
from peakdecon.fitting.peak_functions import FWHM_TO_SIGMA, gaussian_peak


def gaussian_curve(centers, amplitudes, fwhm, x_min, x_max, spacing=0.05, noise=0.0, seed=0,
                   curve_id="synthetic"):
    """Sum of Gaussians sampled on a regular grid with seeded white noise."""
    x = np.arange(x_min, x_max + spacing / 2, spacing)
    sigma = fwhm / FWHM_TO_SIGMA
    y = np.zeros_like(x)
    for center, amplitude in zip(centers, amplitudes):
        y += gaussian_peak(x, amplitude, center, sigma)
    if noise > 0:
        y += np.random.default_rng(seed).normal(0.0, noise, size=x.size)
    return Curve(x, y, curve_id=curve_id)


def candidate(center, amplitude, fwhm, peak_id="", **kwargs):
    """Upstream candidate with boundaries at center +/- fwhm."""
    return PeakCandidate(center=center, amplitude=amplitude, fwhm=fwhm,
                         left_boundary=center - fwhm, right_boundary=center + fwhm,
                         peak_id=peak_id, **kwargs)


@pytest.fixture
def isolated_curve():
    return gaussian_curve([10.0], [100.0], 0.5, 7.0, 13.0, noise=2.0, seed=1)


@pytest.fixture
def clean_isolated_curve():
    return gaussian_curve([10.0], [100.0], 0.5, 7.0, 13.0, noise=0.2, seed=2)


@pytest.fixture
def medium_overlap_curve():
    return gaussian_curve([10.0, 10.3], [100.0, 100.0], 0.5, 8.0, 12.5, noise=5.0, seed=3)


@pytest.fixture
def medium_overlap_candidates():
    return [candidate(10.0, 100.0, 0.5, "left"), candidate(10.3, 100.0, 0.5, "right")]


@pytest.fixture
def nested_low_snr_curve():
    return gaussian_curve([9.9, 10.0, 10.1], [25.0, 25.0, 25.0], 0.5, 8.0, 12.0, noise=5.0, seed=4)


@pytest.fixture
def nested_low_snr_candidates():
    # identical supports: every pairwise overlap is exactly 1
    peaks = []
    for i, center in enumerate([9.9, 10.0, 10.1]):
        peaks.append(PeakCandidate(center=center, amplitude=25.0, fwhm=0.5,
                                   left_boundary=9.4, right_boundary=10.6, peak_id=f"nested_{i}"))
    return peaks


@pytest.fixture
def mixed_curve():
    """One isolated peak, one light pair and one far singleton."""
    return gaussian_curve([4.0, 8.0, 8.7, 14.0], [80.0, 100.0, 90.0, 60.0], 0.5, 1.0, 17.0,
                          noise=1.0, seed=5)


@pytest.fixture
def mixed_candidates():
    return [candidate(4.0, 80.0, 0.5, "a"), candidate(8.0, 100.0, 0.5, "b"),
            candidate(8.7, 90.0, 0.5, "c"), candidate(14.0, 60.0, 0.5, "d")]
