import numpy as np
import pytest

from peakdecon.data import PeakCandidate, ShapeType
from peakdecon.errors import InsufficientData
from peakdecon.fitting.multi_peak_fitter import (
    GroupFit,
    MultiPeakFitter,
    calculate_fit_statistics,
    seed_coefficients
)
from peakdecon.fitting.peak_detection import PeakDetector
from peakdecon.fitting.peak_functions import FWHM_TO_SIGMA
from peakdecon.fitting.peak_shapes import get_shape

from conftest import candidate, gaussian_curve


def test_joint_fit_splits_medium_overlap(medium_overlap_candidates):
    curve = gaussian_curve([10.0, 10.3], [100.0, 100.0], 0.5, 8.0, 12.5, noise=1.0, seed=3)
    peaks = PeakDetector.complete_candidates(curve, medium_overlap_candidates)
    group_fit = MultiPeakFitter().fit(curve, peaks)

    assert group_fit.r_squared > 0.95
    assert group_fit.n_points > 0
    assert [p.center for p in peaks] == pytest.approx([10.0, 10.3], abs=0.05)

    expected_area = 100.0 * (0.5 / FWHM_TO_SIGMA) * np.sqrt(2 * np.pi)
    for peak in peaks:
        assert peak.area == pytest.approx(expected_area, rel=0.15)
        assert peak.fit.r_squared == group_fit.r_squared
        assert peak.fit.parameter_errors.shape == (3,)
        assert peak.metadata["group_size"] == 2
        assert peak.is_valid()


def test_fit_window_is_union_of_members():
    curve = gaussian_curve([5.0], [10.0], 0.5, 0.0, 10.0)
    peaks = [PeakCandidate(center=4.0, amplitude=1.0, fwhm=0.5, left_boundary=2.0, right_boundary=4.5),
             PeakCandidate(center=6.0, amplitude=1.0, fwhm=0.5)]
    assert MultiPeakFitter(fit_window_size=2.0).fit_window(curve, peaks) == pytest.approx((2.0, 7.0))


def test_fit_window_is_clipped_to_the_curve():
    curve = gaussian_curve([1.0], [10.0], 0.5, 0.0, 10.0)
    peaks = [PeakCandidate(center=0.5, amplitude=1.0, fwhm=1.0)]
    lo, hi = MultiPeakFitter().fit_window(curve, peaks)
    assert lo == curve.x[0]
    assert hi == pytest.approx(3.5)


def test_fit_window_respects_limits():
    curve = gaussian_curve([5.0, 6.2], [100.0, 60.0], 0.5, 2.0, 9.0)
    peaks = PeakDetector.complete_candidates(curve, [candidate(5.0, 100.0, 0.5)])
    group_fit = MultiPeakFitter().fit(curve, peaks, limits=(-np.inf, 5.6))

    assert group_fit.window[1] <= 5.6
    assert peaks[0].metadata["window"] == group_fit.window
    assert peaks[0].center == pytest.approx(5.0, abs=0.01)


def test_prior_scale_sets_the_pull_towards_the_seeds():
    curve = gaussian_curve([10.0], [100.0], 0.5, 8.0, 12.0)
    loose = PeakDetector.complete_candidates(curve, [candidate(10.2, 100.0, 0.5)])
    tight = PeakDetector.complete_candidates(curve, [candidate(10.2, 100.0, 0.5)])

    MultiPeakFitter().fit(curve, loose, regularization=1.0, prior_scale=[1e3, 1e3, 1e3])
    MultiPeakFitter().fit(curve, tight, regularization=1.0, prior_scale=[1e3, 1e-5, 1e3])

    assert loose[0].center == pytest.approx(10.0, abs=1e-3)
    assert tight[0].center == pytest.approx(10.2, abs=1e-3)


def test_group_fit_combines_per_peak_statistics():
    fits = [GroupFit(0.99, 10.0, 1.0, 5, True, "levenberg_marquardt", (1.0, 2.0), 20),
            GroupFit(0.95, 4.0, 2.0, 9, False, "levenberg_marquardt", (3.0, 4.0), 15, fallback="grid_search")]
    combined = GroupFit.combine(fits)

    assert combined.r_squared == 0.95
    assert combined.residual_sum_squares == 14.0
    assert combined.standard_error == 2.0
    assert combined.iterations == 9
    assert not combined.converged
    assert combined.window == (1.0, 4.0)
    assert combined.n_points == 35
    assert combined.optimizer == "levenberg_marquardt"
    assert combined.fallback == "grid_search"
    assert GroupFit.combine(fits, "curve_fit").optimizer == "curve_fit"


def test_too_few_samples_raises():
    curve = gaussian_curve([1.0], [10.0], 0.5, 0.0, 2.0, spacing=0.5)
    peaks = [candidate(1.0, 10.0, 0.1), candidate(1.1, 10.0, 0.1)]
    with pytest.raises(InsufficientData) as info:
        MultiPeakFitter(fit_window_size=1.0).fit(curve, peaks)
    assert info.value.required == 6


def test_seed_prefers_matching_coefficients():
    shape = get_shape(ShapeType.GAUSSIAN)
    peak = PeakCandidate(center=2.0, amplitude=5.0, fwhm=1.0, coefficients=[4.0, 2.1, 0.3])
    np.testing.assert_array_equal(seed_coefficients(peak, shape, 0.1), [4.0, 2.1, 0.3])

    peak.coefficients = np.array([4.0, 2.1, 0.3, 0.5])
    seeded = seed_coefficients(peak, shape, 0.1)
    assert seeded[:2] == pytest.approx([5.0, 2.0])
    assert seeded[2] == pytest.approx(1.0 / FWHM_TO_SIGMA)


def test_fit_statistics():
    y = np.array([1.0, 2.0, 3.0, 4.0, 5.0])
    perfect = calculate_fit_statistics(y, y, 2)
    assert perfect["r_squared"] == 1.0
    assert perfect["rss"] == 0.0

    mean_model = calculate_fit_statistics(y, np.full_like(y, y.mean()), 1)
    assert mean_model["r_squared"] == pytest.approx(0.0)
    assert mean_model["rss"] == pytest.approx(10.0)
    assert mean_model["standard_error"] == pytest.approx(np.sqrt(10.0 / 4))

    # worse than the mean gives a negative R², not clamped
    assert calculate_fit_statistics(y, y[::-1], 1)["r_squared"] < 0


def test_lorentzian_member_gets_its_own_area():
    curve = gaussian_curve([5.0, 7.0], [50.0, 50.0], 0.6, 0.0, 12.0, noise=0.2, seed=9)
    peaks = PeakDetector.complete_candidates(curve, [candidate(5.0, 50.0, 0.6),
                                                     candidate(7.0, 50.0, 0.6, shape="lorentzian")])
    MultiPeakFitter().fit(curve, peaks)

    gaussian, lorentzian = peaks
    assert gaussian.shape is ShapeType.GAUSSIAN
    assert lorentzian.shape is ShapeType.LORENTZIAN
    assert gaussian.area == pytest.approx(get_shape(ShapeType.GAUSSIAN).area(gaussian.coefficients))
    assert lorentzian.area == pytest.approx(get_shape(ShapeType.LORENTZIAN).area(lorentzian.coefficients))
    assert gaussian.center == pytest.approx(5.0, abs=0.02)
