"""Processing statistics and stage timing for a decomposition run."""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class ProcessingStatistics:
    """
    Aggregate statistics of one workflow run.

    Attributes:
        strategy_name: Strategy applied to every group, or "mixed"
        strategy_counts: Number of groups per strategy
        input_peak_count: Candidates entering the fit stages
        output_peak_count: Peaks returned (failed ones included)
        processing_time_ms: Wall time of the whole run
        stage_times: Wall time per workflow stage, in ms
        quality_score: Mean quality score of the accepted peaks
        group_count: Number of overlap groups
        failed_peak_count: Peaks returned with a failure flag
    """
    strategy_name: str = "none"
    strategy_counts: Dict[str, int] = field(default_factory=dict)
    input_peak_count: int = 0
    output_peak_count: int = 0
    processing_time_ms: float = 0.0
    stage_times: Dict[str, float] = field(default_factory=dict)
    quality_score: float = 0.0
    group_count: int = 0
    failed_peak_count: int = 0

    def record_strategies(self, names):
        counts = Counter(names)
        self.strategy_counts = dict(sorted(counts.items()))
        if not counts:
            self.strategy_name = "none"
        elif len(counts) == 1:
            self.strategy_name = next(iter(counts))
        else:
            self.strategy_name = "mixed"

    def add_stage_time(self, stage, elapsed_ms):
        self.stage_times[stage] = self.stage_times.get(stage, 0.0) + elapsed_ms

    def to_dict(self):
        return {
            'strategy_name': self.strategy_name,
            'strategy_counts': dict(self.strategy_counts),
            'input_peak_count': self.input_peak_count,
            'output_peak_count': self.output_peak_count,
            'processing_time_ms': self.processing_time_ms,
            'stage_times': dict(self.stage_times),
            'quality_score': self.quality_score,
            'group_count': self.group_count,
            'failed_peak_count': self.failed_peak_count,
        }


class StageTimer:
    """
    Context manager adding its elapsed wall time to a stage.

    >>> stats = ProcessingStatistics()
    >>> with StageTimer(stats, "detect"):
    ...     pass
    >>> "detect" in stats.stage_times
    True
    """

    def __init__(self, statistics, stage):
        self.statistics = statistics
        self.stage = stage
        self.elapsed_ms = 0.0
        self._start = None

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
        self.statistics.add_stage_time(self.stage, self.elapsed_ms)
        return False
