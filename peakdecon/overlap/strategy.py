"""
Strategy Selector
=================

Maps an overlap group's metric and signal-to-noise ratio to a resolution
strategy:

==========================  ============================  =================
overlap                     SNR                           decision
==========================  ============================  =================
< 0.1                       any                           SinglePeak
0.1 - 0.5                   any                           LightOverlap
0.5 - 1.0                   any                           MediumOverlap
>= 1.0                      < 10                          ExtremeOverlapLowSNR
>= 1.0                      >= 10                         MediumOverlap
==========================  ============================  =================

The last row keeps fully nested peaks with a strong signal on the
SharpenCWT path; there is no dedicated high-overlap/high-SNR strategy.
"""

from enum import Enum

from peakdecon.errors import InvalidConfiguration
from peakdecon.overlap.emg_nlls import EMGNLLSStrategy
from peakdecon.overlap.extreme_overlap import ExtremeOverlapStrategy
from peakdecon.overlap.fbf import FBFStrategy
from peakdecon.overlap.sharpen_cwt import SharpenCWTStrategy
from peakdecon.overlap.single_peak import SinglePeakStrategy

LIGHT_OVERLAP_THRESHOLD = 0.1
MEDIUM_OVERLAP_THRESHOLD = 0.5
EXTREME_OVERLAP_THRESHOLD = 1.0
LOW_SNR_THRESHOLD = 10.0


class StrategyDecision(Enum):
    SINGLE_PEAK = "single_peak"
    LIGHT_OVERLAP = "light_overlap"
    MEDIUM_OVERLAP = "medium_overlap"
    EXTREME_OVERLAP_LOW_SNR = "extreme_overlap_low_snr"

    @property
    def strategy_name(self):
        return _STRATEGY_NAMES[self]

    @property
    def rank(self):
        """Processing intensity, used to order decisions."""
        return _RANKS[self]


_STRATEGY_NAMES = {
    StrategyDecision.SINGLE_PEAK: "single_peak",
    StrategyDecision.LIGHT_OVERLAP: "fbf",
    StrategyDecision.MEDIUM_OVERLAP: "sharpen_cwt",
    StrategyDecision.EXTREME_OVERLAP_LOW_SNR: "extreme_overlap",
}

_RANKS = {
    StrategyDecision.SINGLE_PEAK: 0,
    StrategyDecision.LIGHT_OVERLAP: 1,
    StrategyDecision.MEDIUM_OVERLAP: 2,
    StrategyDecision.EXTREME_OVERLAP_LOW_SNR: 3,
}


def select_strategy(overlap, snr):
    """Classify an overlap group from its overlap metric and SNR."""
    if overlap < LIGHT_OVERLAP_THRESHOLD:
        return StrategyDecision.SINGLE_PEAK
    if overlap < MEDIUM_OVERLAP_THRESHOLD:
        return StrategyDecision.LIGHT_OVERLAP
    if overlap < EXTREME_OVERLAP_THRESHOLD:
        return StrategyDecision.MEDIUM_OVERLAP
    if snr < LOW_SNR_THRESHOLD:
        return StrategyDecision.EXTREME_OVERLAP_LOW_SNR
    return StrategyDecision.MEDIUM_OVERLAP


STRATEGIES = {
    "single_peak": SinglePeakStrategy,
    "fbf": FBFStrategy,
    "sharpen_cwt": SharpenCWTStrategy,
    "emg_nlls": EMGNLLSStrategy,
    "extreme_overlap": ExtremeOverlapStrategy,
}


def build_strategy(name, options=None, fit_window_size=3.0):
    """Instantiate a strategy by name with its option dictionary."""
    if name not in STRATEGIES:
        raise InvalidConfiguration(f"Unknown overlap strategy: {name!r}")
    options = dict(options or {})
    try:
        return STRATEGIES[name](fit_window_size=fit_window_size, **options)
    except TypeError as exc:
        raise InvalidConfiguration(f"Invalid options for strategy {name!r}: {exc}") from exc
