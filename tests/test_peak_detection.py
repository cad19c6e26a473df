import pytest

from peakdecon import DecompositionConfig, DecompositionWorkflow
from peakdecon.data import DetectionAlgorithm
from peakdecon.errors import InvalidConfiguration
from peakdecon.fitting.peak_detection import PeakDetector

from conftest import gaussian_curve


@pytest.fixture
def two_peak_curve():
    return gaussian_curve([5.0, 8.0], [100.0, 60.0], 0.5, 0.0, 13.0, noise=1.0, seed=13)


@pytest.mark.parametrize("algorithm", ["simple", "cwt", "derivative"])
def test_detectors_find_both_peaks(two_peak_curve, algorithm):
    peaks = PeakDetector.detect(two_peak_curve, threshold=0.2, algorithm=algorithm)

    assert [p.center for p in peaks] == pytest.approx([5.0, 8.0], abs=0.1)
    assert [p.fwhm for p in peaks] == pytest.approx([0.5, 0.5], rel=0.3)
    for peak in peaks:
        assert peak.detection_algorithm is DetectionAlgorithm(algorithm)
        assert peak.metadata["prominence"] > 0
        assert peak.left_boundary < peak.center < peak.right_boundary


def test_min_peak_distance_keeps_the_higher_peak(two_peak_curve):
    peaks = PeakDetector.detect(two_peak_curve, threshold=0.2, min_peak_distance=4.0, algorithm="derivative")
    assert [p.center for p in peaks] == pytest.approx([5.0], abs=0.1)


def test_unknown_detector_is_rejected(two_peak_curve):
    with pytest.raises(InvalidConfiguration):
        PeakDetector.detect(two_peak_curve, algorithm="upstream")
    with pytest.raises(InvalidConfiguration):
        PeakDetector.detect(two_peak_curve, algorithm="template")


def test_workflow_uses_the_configured_detector(two_peak_curve):
    config = DecompositionConfig(detection_algorithm="cwt")
    result = DecompositionWorkflow(config).run(two_peak_curve)

    assert len(result.peaks) == 2
    assert all(p.detection_algorithm is DetectionAlgorithm.CWT for p in result.peaks)
    with pytest.raises(InvalidConfiguration):
        DecompositionConfig(detection_algorithm="manual").validate()
