"""
Decomposition Workflow
======================

Drives one curve through the decomposition state machine:

    DETECT -> ANALYZE_OVERLAP -> SELECT_STRATEGY -> RESOLVE_OVERLAP
    -> JOINT_FIT -> VALIDATE_QUALITY -> {ACCEPT, REJECT_AND_RETRY, FAIL}

RESOLVE_OVERLAP to VALIDATE_QUALITY run per overlap group with a bounded
retry counter. A rejected group is rerun once with the escalated optimizer
(Levenberg-Marquardt or gradient descent -> simulated annealing); the
attempt with the higher mean R² is kept. Peaks that cannot be resolved are
returned with a failure flag, never dropped.

Groups are independent, so they can run in worker processes; outcomes are
merged in group order, which makes parallel and sequential runs identical.
"""

import logging
import time
from concurrent.futures import ProcessPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing import cpu_count
from typing import List, Optional

import numpy as np

from peakdecon.config import DecompositionConfig
from peakdecon.errors import (
    ConvergenceFailure,
    InsufficientData,
    InvalidConfiguration,
    NumericalInstability
)
from peakdecon.fitting.baseline_functions import estimate_baseline, subtract_baseline
from peakdecon.fitting.parameter_optimizer import escalate
from peakdecon.fitting.peak_detection import PeakDetector
from peakdecon.fitting.result_analyzer import ResultAnalyzer
from peakdecon.fitting.shape_analyzer import ShapeAnalyzer
from peakdecon.overlap.analyzer import OverlapAnalyzer
from peakdecon.overlap.strategy import build_strategy, select_strategy
from peakdecon.workflow.statistics import ProcessingStatistics, StageTimer

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "peakdecon"

# Failure reasons recorded on peaks
ERROR_REASONS = (
    (InsufficientData, "insufficient_data"),
    (InvalidConfiguration, "invalid_configuration"),
    (NumericalInstability, "numerical_instability"),
    (ConvergenceFailure, "convergence_failure"),
)


class WorkflowState(Enum):
    DETECT = "detect"
    ANALYZE_OVERLAP = "analyze_overlap"
    SELECT_STRATEGY = "select_strategy"
    RESOLVE_OVERLAP = "resolve_overlap"
    JOINT_FIT = "joint_fit"
    VALIDATE_QUALITY = "validate_quality"
    ACCEPT = "accept"
    REJECT_AND_RETRY = "reject_and_retry"
    FAIL = "fail"


@dataclass(frozen=True)
class Transition:
    source: Optional[WorkflowState]
    target: WorkflowState
    group: Optional[int] = None


class _TransitionLog:

    def __init__(self, group=None):
        self.group = group
        self.state = None
        self.transitions = []

    def move(self, target):
        transition = Transition(self.state, target, self.group)
        self.transitions.append(transition)
        if self.group is None:
            logger.info("%s -> %s", _state_name(self.state), target.value)
        else:
            logger.info("group %d: %s -> %s", self.group, _state_name(self.state), target.value)
        self.state = target
        return transition


def _state_name(state):
    return state.value if state is not None else "start"


class _ListHandler(logging.Handler):

    def __init__(self, records, level):
        super().__init__(level)
        self.records = records
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record):
        self.records.append(self.format(record))


@contextmanager
def capture_logs(level=logging.INFO):
    """Collect formatted records of the package logger for the duration of the block."""
    records = []
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    handler = _ListHandler(records, level)
    previous_level = package_logger.level
    if package_logger.getEffectiveLevel() > level:
        package_logger.setLevel(level)
    package_logger.addHandler(handler)
    try:
        yield records
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)


@dataclass
class GroupOutcome:
    """Result of processing one overlap group."""
    index: int
    strategy: str
    peaks: list
    transitions: list
    stage_times: dict
    logs: list
    error: Optional[str] = None


def validation_problems(peak, config):
    """Quality thresholds a fitted peak does not meet (empty when it passes)."""
    if peak.fit is None:
        return ["peak was not fitted"]
    problems = []
    if not peak.fit.r_squared >= config.min_rsquared:
        problems.append(f"R² {peak.fit.r_squared:.4f} below {config.min_rsquared}")
    if peak.amplitude <= 0 or peak.amplitude < config.min_amplitude:
        problems.append(f"amplitude {peak.amplitude:.4g} below {config.min_amplitude}")
    if not peak.fit.standard_error <= config.max_standard_error:
        problems.append(f"standard error {peak.fit.standard_error:.4g} above {config.max_standard_error}")
    if not peak.is_valid():
        problems.append("boundaries, amplitude or width are inconsistent")
    return problems


def _mean_r_squared(peaks):
    values = [p.fit.r_squared for p in peaks if p.fit is not None]
    return float(np.mean(values)) if values else -np.inf


def process_group(curve, peaks, index, strategy_name, config):
    """
    Run one overlap group through RESOLVE_OVERLAP .. ACCEPT/FAIL.

    Module level so it can be shipped to worker processes; the input peaks
    are not modified.

    Returns
    -------
    GroupOutcome
    """
    with capture_logs() as logs:
        stats = ProcessingStatistics()
        log = _TransitionLog(index)
        log.state = WorkflowState.SELECT_STRATEGY

        originals = [p.copy() for p in peaks]
        for peak in originals:
            peak.clear_failure()
            peak.strategy = strategy_name

        optimizer = config.optimizer
        attempts = []
        best = None
        attempt = 1
        retries = 0
        error = None

        while True:
            working = [p.copy() for p in originals]
            log.move(WorkflowState.RESOLVE_OVERLAP)
            try:
                strategy = build_strategy(strategy_name, config.strategy_options(strategy_name),
                                          config.fit_window_size)
                with StageTimer(stats, WorkflowState.RESOLVE_OVERLAP.value):
                    strategy.prepare(curve, working)
                log.move(WorkflowState.JOINT_FIT)
                with StageTimer(stats, WorkflowState.JOINT_FIT.value):
                    group_fit = strategy.fit(curve, working, optimizer, attempt=attempt)
            except (InsufficientData, InvalidConfiguration, NumericalInstability, ConvergenceFailure) as exc:
                reason = next(tag for kind, tag in ERROR_REASONS if isinstance(exc, kind))
                logger.warning("group %d (%s) attempt %d failed: %s", index, strategy_name, attempt, exc)
                attempts.append({'attempt': attempt, 'strategy': strategy_name, 'optimizer': optimizer.kind,
                                 'accepted': False, 'error': f"{reason}: {exc}"})
                if best is None:
                    error = f"{reason}: {exc}"
                    for peak in originals:
                        peak.mark_failed(reason, str(exc))
                break

            log.move(WorkflowState.VALIDATE_QUALITY)
            with StageTimer(stats, WorkflowState.VALIDATE_QUALITY.value):
                problems = [validation_problems(p, config) for p in working if not p.failed]
                accepted = group_fit.converged and not any(problems) and not any(p.failed for p in working)
                record = dict(group_fit.to_metadata(), attempt=attempt, strategy=strategy_name,
                              accepted=accepted)
                attempts.append(record)
                mean_r2 = _mean_r_squared(working)
                if best is None or mean_r2 > best[0]:
                    best = (mean_r2, working, group_fit)

            if accepted:
                break
            stronger = escalate(optimizer)
            if retries >= config.max_retries or stronger is None:
                break
            log.move(WorkflowState.REJECT_AND_RETRY)
            logger.info("group %d: retrying with %s", index, stronger.kind)
            optimizer = stronger
            retries += 1
            attempt += 1

        if best is None:
            final = originals
        else:
            final, final_fit = best[1], best[2]
            with StageTimer(stats, WorkflowState.VALIDATE_QUALITY.value):
                for peak in final:
                    if peak.failed:
                        continue
                    problems = validation_problems(peak, config)
                    if problems:
                        peak.mark_failed("quality", "; ".join(problems))
                    elif not final_fit.converged:
                        peak.mark_failed("convergence_failure",
                                         f"{final_fit.optimizer} stopped after {final_fit.iterations} iterations")
        for peak in final:
            peak.metadata['attempts'] = [dict(a) for a in attempts]

        if any(p.failed for p in final):
            log.move(WorkflowState.FAIL)
        else:
            log.move(WorkflowState.ACCEPT)

    return GroupOutcome(index=index, strategy=strategy_name, peaks=final, transitions=log.transitions,
                        stage_times=dict(stats.stage_times), logs=logs, error=error)


@dataclass
class DecompositionResult:
    """
    Output of :meth:`DecompositionWorkflow.run`.

    Attributes:
        peaks: All peaks sorted by center, failed ones included
        groups: Overlap groups with their strategy decisions
        statistics: Aggregate processing statistics
        transitions: Every state transition, in order
        logs: Log records captured during the run
        errors: Per-group errors, keyed by group index
        baseline: Baseline subtracted from the curve before fitting
    """
    peaks: list
    groups: list
    statistics: ProcessingStatistics
    transitions: List[Transition] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    errors: dict = field(default_factory=dict)
    baseline: Optional[np.ndarray] = None

    @property
    def accepted_peaks(self):
        return [p for p in self.peaks if not p.failed]

    @property
    def failed_peaks(self):
        return [p for p in self.peaks if p.failed]

    @property
    def success(self):
        return bool(self.accepted_peaks) and not self.errors

    def to_dataframe(self):
        return ResultAnalyzer.peaks_to_dataframe(self.peaks)


class DecompositionWorkflow:
    """
    Decompose curves into fitted peaks.

    Examples
    --------
    >>> workflow = DecompositionWorkflow(DecompositionConfig(min_rsquared=0.9))
    >>> result = workflow.run(curve)
    >>> result.statistics.strategy_name, len(result.peaks)
    """

    def __init__(self, config=None):
        self.config = (config if config is not None else DecompositionConfig()).validate()
        self.analyzer = OverlapAnalyzer()

    def run(self, curve, candidates=None):
        """
        Decompose one curve.

        Parameters
        ----------
        curve : Curve
        candidates : list of PeakCandidate, optional
            Upstream detections; when None, peaks are detected on the curve.
            The given objects are copied, never modified.

        Returns
        -------
        DecompositionResult
        """
        config = self.config
        start = time.perf_counter()
        stats = ProcessingStatistics()
        log = _TransitionLog()

        with capture_logs() as logs:
            log.move(WorkflowState.DETECT)
            with StageTimer(stats, WorkflowState.DETECT.value):
                peaks = self._detect(curve, candidates)
            with StageTimer(stats, "correct_baseline"):
                curve, baseline = self._correct_baseline(curve, peaks, detected=candidates is None)
            stats.input_peak_count = len(peaks)

            log.move(WorkflowState.ANALYZE_OVERLAP)
            with StageTimer(stats, WorkflowState.ANALYZE_OVERLAP.value):
                analysis = self.analyzer.analyze(curve, peaks)

            log.move(WorkflowState.SELECT_STRATEGY)
            with StageTimer(stats, WorkflowState.SELECT_STRATEGY.value):
                strategy_names = []
                for group in analysis.groups:
                    group.assign_decision(select_strategy(group.max_overlap, group.snr))
                    name = config.forced_strategy or group.decision.strategy_name
                    strategy_names.append(name)
                    logger.info("group %d: %d peak(s), overlap %.3f, SNR %.1f -> %s", group.index,
                                group.size, group.max_overlap, group.snr, name)

        outcomes = self._process_groups(curve, peaks, analysis.groups, strategy_names)

        transitions = list(log.transitions)
        errors = {}
        result_peaks = []
        for outcome in outcomes:
            transitions.extend(outcome.transitions)
            logs.extend(outcome.logs)
            for stage, elapsed in outcome.stage_times.items():
                stats.add_stage_time(stage, elapsed)
            if outcome.error is not None:
                errors[outcome.index] = outcome.error
            result_peaks.extend(outcome.peaks)
        result_peaks.sort(key=lambda p: p.center)

        accepted = [p for p in result_peaks if not p.failed]
        stats.record_strategies(strategy_names)
        stats.group_count = len(analysis.groups)
        stats.output_peak_count = len(result_peaks)
        stats.failed_peak_count = len(result_peaks) - len(accepted)
        stats.quality_score = float(np.mean([p.quality_score for p in accepted])) if accepted else 0.0
        stats.processing_time_ms = (time.perf_counter() - start) * 1000.0

        with capture_logs() as summary_logs:
            logger.info("Decomposed %s: %d peak(s), %d accepted, %d failed, strategy %s, %.1f ms",
                        curve.curve_id, len(result_peaks), len(accepted), stats.failed_peak_count,
                        stats.strategy_name, stats.processing_time_ms)
        logs.extend(summary_logs)

        return DecompositionResult(peaks=result_peaks, groups=analysis.groups, statistics=stats,
                                   transitions=transitions, logs=logs, errors=errors, baseline=baseline)

    def _detect(self, curve, candidates):
        config = self.config
        if candidates is None:
            peaks = PeakDetector.detect(curve, threshold=config.peak_detection_threshold,
                                        min_peak_distance=config.min_peak_distance,
                                        smoothing_points=config.smoothing_points,
                                        shape=config.default_shape,
                                        algorithm=config.detection_algorithm)
        else:
            peaks = PeakDetector.complete_candidates(curve, candidates)
        if config.auto_shape:
            ShapeAnalyzer().assign_shapes(curve, peaks)
        return peaks

    def _correct_baseline(self, curve, peaks, detected):
        """Curve with the configured baseline removed, and the baseline itself.

        Heights of peaks found by the built-in detector include the baseline
        and are lowered by it; upstream amplitudes are kept as given.
        """
        config = self.config
        if config.baseline == "none":
            return curve, None
        baseline = estimate_baseline(curve, peaks, method=config.baseline, order=config.baseline_order)
        if detected:
            for peak in peaks:
                offset = float(np.interp(peak.center, curve.x, baseline))
                peak.amplitude = max(peak.amplitude - offset, curve.noise_level)
        logger.info("Subtracted %s baseline from %s (mean %.4g)", config.baseline, curve.curve_id,
                    float(np.mean(baseline)))
        return subtract_baseline(curve, baseline), baseline

    def _worker_count(self):
        if self.config.max_workers is not None:
            return self.config.max_workers
        return max(1, int(cpu_count() * 0.75))

    def _process_groups(self, curve, peaks, groups, strategy_names):
        tasks = [(curve, [peaks[k] for k in group.members], group.index, name, self.config)
                 for group, name in zip(groups, strategy_names)]

        if not self.config.parallel or len(tasks) < 2:
            return [process_group(*task) for task in tasks]

        workers = min(self._worker_count(), len(tasks))
        logger.info("Processing %d groups with %d worker processes", len(tasks), workers)
        with ProcessPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(process_group, *task) for task in tasks]
            outcomes = [future.result() for future in futures]
        return sorted(outcomes, key=lambda outcome: outcome.index)
