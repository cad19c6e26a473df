import numpy as np
import pytest

from peakdecon import DecompositionConfig, DecompositionWorkflow
from peakdecon.data import Curve, PeakCandidate, ShapeType
from peakdecon.overlap.strategy import StrategyDecision
from peakdecon.workflow.controller import WorkflowState

from conftest import candidate, gaussian_curve


def _coefficients(result):
    return [p.coefficients for p in result.peaks]


def test_medium_overlap_scenario(medium_overlap_curve, medium_overlap_candidates):
    result = DecompositionWorkflow().run(medium_overlap_curve, medium_overlap_candidates)

    assert result.groups[0].decision is StrategyDecision.MEDIUM_OVERLAP
    assert result.statistics.strategy_name == "sharpen_cwt"
    assert result.success
    assert [p.center for p in result.peaks] == pytest.approx([10.0, 10.3], abs=0.05)
    for peak in result.peaks:
        assert peak.fit.r_squared >= 0.9
        assert peak.strategy == "sharpen_cwt"
        assert peak.area > 0


def test_isolated_peak_scenario_with_detection(isolated_curve):
    config = DecompositionConfig()
    result = DecompositionWorkflow(config).run(isolated_curve)

    assert len(result.peaks) == 1
    peak = result.peaks[0]
    assert result.groups[0].decision is StrategyDecision.SINGLE_PEAK
    assert peak.strategy == "single_peak"
    assert not peak.failed
    assert peak.fit.r_squared >= 0.95
    assert peak.fit.iterations < config.optimizer.max_iterations
    assert peak.center == pytest.approx(10.0, rel=0.01)
    assert peak.amplitude == pytest.approx(100.0, rel=0.05)


def test_extreme_overlap_scenario_reports_quality_failure(nested_low_snr_curve, nested_low_snr_candidates):
    config = DecompositionConfig(min_rsquared=0.99)
    result = DecompositionWorkflow(config).run(nested_low_snr_curve, nested_low_snr_candidates)

    assert result.groups[0].decision is StrategyDecision.EXTREME_OVERLAP_LOW_SNR
    assert result.statistics.strategy_name == "extreme_overlap"
    assert len(result.peaks) == 3
    assert not result.accepted_peaks
    for peak in result.peaks:
        assert peak.failed
        assert peak.failure_reason in ("quality", "post_check")
        assert peak.metadata["processing_pipeline"] == "sharpen_cwt_emg_nlls"
        assert peak.shape is ShapeType.EMG

    attempts = result.peaks[0].metadata["attempts"]
    assert len(attempts) == 2
    assert attempts[1]["optimizer"] == "simulated_annealing"
    assert not any(a["accepted"] for a in attempts)
    assert result.transitions[-1].target is WorkflowState.FAIL


def test_rerun_is_bit_identical(nested_low_snr_curve, nested_low_snr_candidates):
    workflow = DecompositionWorkflow(DecompositionConfig(min_rsquared=0.99))
    first = workflow.run(nested_low_snr_curve, nested_low_snr_candidates)
    second = workflow.run(nested_low_snr_curve, nested_low_snr_candidates)

    for a, b in zip(_coefficients(first), _coefficients(second)):
        np.testing.assert_array_equal(a, b)
    assert [p.fit.r_squared for p in first.peaks] == [p.fit.r_squared for p in second.peaks]


def test_parallel_matches_sequential(mixed_curve, mixed_candidates):
    sequential = DecompositionWorkflow(DecompositionConfig()).run(mixed_curve, mixed_candidates)
    parallel = DecompositionWorkflow(DecompositionConfig(parallel=True, max_workers=2)).run(
        mixed_curve, mixed_candidates)

    assert [p.peak_id for p in parallel.peaks] == [p.peak_id for p in sequential.peaks]
    for a, b in zip(_coefficients(sequential), _coefficients(parallel)):
        np.testing.assert_array_equal(a, b)
    assert parallel.transitions == sequential.transitions


def test_mixed_curve_statistics(mixed_curve, mixed_candidates):
    result = DecompositionWorkflow().run(mixed_curve, mixed_candidates)
    stats = result.statistics

    assert stats.strategy_name == "mixed"
    assert stats.strategy_counts == {"fbf": 1, "single_peak": 2}
    assert stats.input_peak_count == stats.output_peak_count == 4
    assert stats.group_count == 3
    assert stats.failed_peak_count == 0
    assert 0 < stats.quality_score <= 1
    assert stats.processing_time_ms > 0
    for stage in ("detect", "analyze_overlap", "select_strategy", "resolve_overlap", "joint_fit",
                  "validate_quality"):
        assert stage in stats.stage_times
    assert set(result.to_dataframe()["peak_id"]) == {"a", "b", "c", "d"}


def test_inputs_are_not_modified(mixed_curve, mixed_candidates):
    DecompositionWorkflow().run(mixed_curve, mixed_candidates)
    for peak in mixed_candidates:
        assert peak.fit is None
        assert peak.strategy is None
        assert not peak.metadata


def test_transitions_and_logs(medium_overlap_curve, medium_overlap_candidates):
    result = DecompositionWorkflow().run(medium_overlap_curve, medium_overlap_candidates)

    targets = [t.target for t in result.transitions]
    assert targets == [
        WorkflowState.DETECT,
        WorkflowState.ANALYZE_OVERLAP,
        WorkflowState.SELECT_STRATEGY,
        WorkflowState.RESOLVE_OVERLAP,
        WorkflowState.JOINT_FIT,
        WorkflowState.VALIDATE_QUALITY,
        WorkflowState.ACCEPT,
    ]
    assert result.transitions[0].source is None
    assert result.transitions[3].source is WorkflowState.SELECT_STRATEGY
    assert result.transitions[3].group == 0

    attempts = result.peaks[0].metadata["attempts"]
    assert len(attempts) == 1 and attempts[0]["accepted"]
    assert any("start -> detect" in line for line in result.logs)
    assert any(line.startswith("INFO") and "Decomposed" in line for line in result.logs)


def test_failed_group_does_not_affect_others(mixed_curve, mixed_candidates):
    # a support narrower than the sample spacing cannot be fitted
    tiny = PeakCandidate(center=14.0, amplitude=60.0, fwhm=0.001, left_boundary=13.999,
                         right_boundary=14.001, peak_id="tiny")
    result = DecompositionWorkflow().run(mixed_curve, mixed_candidates[:3] + [tiny])

    assert list(result.errors) == [2]
    assert result.errors[2].startswith("insufficient_data")
    assert not result.success

    failed = result.failed_peaks
    assert [p.peak_id for p in failed] == ["tiny"]
    assert failed[0].failure_reason == "insufficient_data"
    assert [p.peak_id for p in result.accepted_peaks] == ["a", "b", "c"]


def test_forced_strategy(isolated_curve):
    config = DecompositionConfig(forced_strategy="emg_nlls")
    result = DecompositionWorkflow(config).run(isolated_curve)

    assert result.groups[0].decision is StrategyDecision.SINGLE_PEAK
    assert result.statistics.strategy_name == "emg_nlls"
    assert result.peaks[0].shape is ShapeType.EMG
    assert result.peaks[0].metadata["emg_nlls_fitted"]


def test_empty_curve_returns_no_peaks():
    curve = gaussian_curve([], [], 0.5, 0.0, 10.0, noise=1.0, seed=11)
    result = DecompositionWorkflow().run(curve, [])

    assert result.peaks == []
    assert result.statistics.strategy_name == "none"
    assert not result.success


def test_sloped_baseline_is_removed_before_fitting():
    clean = gaussian_curve([10.0], [100.0], 0.5, 7.0, 13.0, noise=0.5, seed=10)
    slope = 30.0 + 2.0 * (clean.x - 10.0)
    curve = Curve(clean.x, clean.y + slope)
    result = DecompositionWorkflow().run(curve, [candidate(10.0, 100.0, 0.5)])

    peak = result.peaks[0]
    assert not peak.failed
    assert peak.amplitude == pytest.approx(100.0, rel=0.03)
    assert peak.fwhm == pytest.approx(0.5, rel=0.05)
    assert peak.fit.r_squared > 0.99
    np.testing.assert_allclose(result.baseline, slope, atol=0.5)
    assert "correct_baseline" in result.statistics.stage_times


def test_detected_heights_exclude_the_baseline():
    clean = gaussian_curve([10.0], [100.0], 0.5, 7.0, 13.0, noise=0.5, seed=10)
    curve = Curve(clean.x, clean.y + 40.0)
    result = DecompositionWorkflow().run(curve)

    assert len(result.peaks) == 1
    assert result.peaks[0].amplitude == pytest.approx(100.0, rel=0.03)
    assert np.median(result.baseline) == pytest.approx(40.0, abs=0.5)


def test_baseline_correction_can_be_disabled(isolated_curve):
    result = DecompositionWorkflow(DecompositionConfig(baseline="none")).run(isolated_curve)
    assert result.baseline is None
    assert result.peaks[0].amplitude == pytest.approx(100.0, rel=0.05)
