import numpy as np
import pytest

from peakdecon.data import Curve, PeakCandidate
from peakdecon.overlap.analyzer import NOISELESS_SNR, OverlapAnalyzer, overlap_metric, peak_support

from conftest import candidate, gaussian_curve


@pytest.mark.parametrize("a, b, expected", [
    ((0.0, 1.0), (2.0, 3.0), 0.0),
    ((0.0, 1.0), (1.0, 2.0), 0.0),
    ((0.0, 2.0), (1.0, 3.0), 0.5),
    ((0.0, 4.0), (1.0, 2.0), 1.0),
    ((9.5, 10.5), (9.8, 10.8), 0.7),
])
def test_overlap_metric(a, b, expected):
    assert overlap_metric(a, b) == pytest.approx(expected)
    assert overlap_metric(b, a) == pytest.approx(expected)


def test_support_falls_back_to_fwhm():
    peak = PeakCandidate(center=5.0, amplitude=1.0, fwhm=0.4)
    assert peak_support(peak) == (4.6, 5.4)


def test_groups_are_transitive_and_ordered(mixed_curve, mixed_candidates):
    analysis = OverlapAnalyzer().analyze(mixed_curve, mixed_candidates)

    members = [group.members for group in analysis.groups]
    assert members == [[0], [1, 2], [3]]
    assert analysis.groups[1].max_overlap == pytest.approx(0.3)
    assert analysis.groups[0].max_overlap == 0.0
    assert analysis.groups[1].span == pytest.approx((7.5, 9.2))
    assert analysis.min_spacing == pytest.approx(0.7)


def test_chained_overlaps_form_one_group():
    curve = gaussian_curve([1.0, 1.6, 2.2], [10.0, 10.0, 10.0], 0.5, 0.0, 4.0, noise=0.1)
    # first and last do not touch but are linked through the middle one
    peaks = [candidate(1.0, 10.0, 0.5), candidate(1.6, 10.0, 0.5), candidate(2.2, 10.0, 0.5)]
    analysis = OverlapAnalyzer().analyze(curve, peaks)

    assert len(analysis.groups) == 1
    assert analysis.groups[0].members == [0, 1, 2]
    assert (0, 2) not in analysis.pair_metrics


def test_groups_partition_random_candidates():
    rng = np.random.default_rng(21)
    curve = gaussian_curve([], [], 0.5, 0.0, 50.0, noise=1.0)
    peaks = [candidate(float(c), 10.0, float(w))
             for c, w in zip(rng.uniform(1.0, 49.0, 60), rng.uniform(0.1, 1.5, 60))]

    analysis = OverlapAnalyzer().analyze(curve, peaks)
    seen = [index for group in analysis.groups for index in group.members]

    assert sorted(seen) == list(range(len(peaks)))
    for (i, j), metric in analysis.pair_metrics.items():
        assert 0 < metric <= 1
        assert analysis.group_of(i) is analysis.group_of(j)


def test_local_snr_uses_curve_noise(medium_overlap_curve, medium_overlap_candidates):
    analysis = OverlapAnalyzer().analyze(medium_overlap_curve, medium_overlap_candidates)
    group = analysis.groups[0]

    assert group.max_overlap == pytest.approx(0.7)
    assert group.snr == pytest.approx(100.0 / medium_overlap_curve.noise_level)
    assert 10 < group.snr < 40


def test_noiseless_curve_reports_fixed_snr():
    x = np.linspace(0.0, 10.0, 101)
    curve = Curve(x, np.zeros_like(x), noise=0.0)
    peaks = [candidate(5.0, 3.0, 0.5)]
    assert OverlapAnalyzer().local_snr(curve, peaks) == NOISELESS_SNR


def test_resolution_metadata(medium_overlap_curve, medium_overlap_candidates):
    OverlapAnalyzer().analyze(medium_overlap_curve, medium_overlap_candidates)
    for peak in medium_overlap_candidates:
        assert peak.metadata["resolution"] == pytest.approx(0.3)
