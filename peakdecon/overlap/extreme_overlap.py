"""
Combined pipeline for fully nested peaks at low signal-to-noise.

Runs an aggressive SharpenCWT refinement, converts the members to EMG and
fits them jointly with tight EMG-NLLS settings. Fitted peaks that are not
physically plausible are flagged instead of dropped.
"""

import logging

from peakdecon.overlap.emg_nlls import EMGNLLSStrategy
from peakdecon.overlap.sharpen_cwt import SharpenCWTStrategy

logger = logging.getLogger(__name__)

PIPELINE = "sharpen_cwt_emg_nlls"


class ExtremeOverlapStrategy:

    name = "extreme_overlap"

    def __init__(self, sharpen_strength=2.0, cwt_scales=(1, 30), kernel_size=7, noise_threshold=0.05,
                 max_iterations=200, convergence_threshold=1e-8, regularization=0.001,
                 fit_window_size=3.0):
        self.sharpen = SharpenCWTStrategy(sharpen_strength=sharpen_strength, cwt_scales=cwt_scales,
                                          kernel_size=kernel_size, noise_threshold=noise_threshold,
                                          fit_window_size=fit_window_size)
        self.emg = EMGNLLSStrategy(max_iterations=max_iterations,
                                   convergence_threshold=convergence_threshold,
                                   regularization=regularization, fit_window_size=fit_window_size)
        self.fit_window_size = fit_window_size

    def prepare(self, curve, peaks):
        self.sharpen.prepare(curve, peaks)
        self.emg.prepare(curve, peaks)
        for peak in peaks:
            peak.strategy = self.name
            peak.metadata['processing_pipeline'] = PIPELINE

    def fit(self, curve, peaks, optimizer, attempt=1):
        group_fit = self.emg.fit(curve, peaks, optimizer, attempt=attempt)
        peaks.sort(key=lambda p: p.center)
        x_min, x_max = curve.x_range
        for peak in peaks:
            problem = self.implausibility(peak, x_min, x_max)
            if problem:
                logger.warning("Peak %s failed the post-check: %s", peak.peak_id, problem)
                peak.mark_failed("post_check", problem)
        return group_fit

    @staticmethod
    def implausibility(peak, x_min, x_max):
        """Reason a fitted peak is implausible, or None."""
        if peak.amplitude <= 0:
            return "non-positive amplitude"
        if peak.fwhm <= 0:
            return "non-positive width"
        if not x_min <= peak.center <= x_max:
            return "center outside the curve"
        if peak.fwhm > 0.5 * (x_max - x_min):
            return "width exceeds half the curve span"
        return None
