"""Direct fit for groups without meaningful overlap."""

import numpy as np

from peakdecon.fitting.multi_peak_fitter import GroupFit, MultiPeakFitter
from peakdecon.fitting.peak_shapes import get_shape


class SinglePeakStrategy:
    """Fits every member of a group on its own, with no preprocessing.

    Each member's window stops halfway to the neighbouring member centers.
    """

    name = "single_peak"

    def __init__(self, fit_window_size=3.0):
        self.fit_window_size = fit_window_size

    def prepare(self, curve, peaks):
        for peak in peaks:
            peak.strategy = self.name
            shape = get_shape(peak.shape)
            if peak.coefficients is None or len(peak.coefficients) != shape.n_params:
                fwhm = peak.fwhm if peak.fwhm > 0 else 0.01 * curve.span
                peak.coefficients = shape.initial_guess(peak.center, peak.amplitude, fwhm)

    def fit(self, curve, peaks, optimizer, attempt=1):
        fitter = MultiPeakFitter(optimizer, self.fit_window_size)
        centers = np.sort([p.center for p in peaks])
        limits = []
        for peak in peaks:
            below = centers[centers < peak.center]
            above = centers[centers > peak.center]
            limits.append((0.5 * (below[-1] + peak.center) if len(below) else -np.inf,
                           0.5 * (peak.center + above[0]) if len(above) else np.inf))
        fits = [fitter.fit(curve, [peak], attempt=attempt, limits=cell) for peak, cell in zip(peaks, limits)]
        return GroupFit.combine(fits)
