"""Overlap analysis, strategy selection and the resolution strategies."""

from .analyzer import OverlapAnalysis, OverlapAnalyzer, OverlapGroup, overlap_metric
from .strategy import STRATEGIES, StrategyDecision, build_strategy, select_strategy
from .single_peak import SinglePeakStrategy
from .fbf import FBFStrategy
from .sharpen_cwt import SharpenCWTStrategy
from .emg_nlls import EMGNLLSStrategy
from .extreme_overlap import ExtremeOverlapStrategy

__all__ = [
    # Analysis
    'OverlapAnalysis',
    'OverlapAnalyzer',
    'OverlapGroup',
    'overlap_metric',
    # Selection
    'STRATEGIES',
    'StrategyDecision',
    'build_strategy',
    'select_strategy',
    # Strategies
    'SinglePeakStrategy',
    'FBFStrategy',
    'SharpenCWTStrategy',
    'EMGNLLSStrategy',
    'ExtremeOverlapStrategy'
]
