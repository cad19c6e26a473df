"""
EMG non-linear least squares for tailing peaks in a strongly overlapped group.

Every member is converted to an exponentially modified Gaussian and the
group is fitted jointly with a light Tikhonov pull towards the converted
starting point.
"""

import logging

import numpy as np

from peakdecon.data.peak import ShapeType
from peakdecon.errors import InsufficientData, InvalidConfiguration
from peakdecon.fitting.multi_peak_fitter import MultiPeakFitter
from peakdecon.fitting.parameter_optimizer import LevenbergMarquardtConfig
from peakdecon.fitting.peak_functions import FWHM_TO_SIGMA, exponentially_modified_gaussian

logger = logging.getLogger(__name__)

# Samples needed per member inside the fit region
MIN_SAMPLES_PER_PEAK = 4
# Fit region half-width around the member centers, in units of the widest FWHM
REGION_WIDTHS = 3.0
INITIAL_TAU_RATIO = 0.5


def emg_apex(coefficients, n_points=2001):
    """(position, height) of the maximum of an EMG on a dense grid."""
    amplitude, mu, sigma, tau = coefficients
    grid = np.linspace(mu - 3 * sigma, mu + 3 * sigma + 5 * tau, n_points)
    values = exponentially_modified_gaussian(grid, amplitude, mu, sigma, tau)
    k = int(np.argmax(values))
    return float(grid[k]), float(values[k])


class EMGNLLSStrategy:
    """
    Joint EMG fit of a peak group.

    A fitted peak's ``center`` and ``amplitude`` are the mean and height of
    the underlying Gaussian. The maximum of the tailed curve is recorded in
    ``metadata['apex_position']`` and ``metadata['apex_height']``.

    Parameters
    ----------
    max_iterations : int
        Levenberg-Marquardt iteration cap
    convergence_threshold : float
        Levenberg-Marquardt relative tolerance
    regularization : float
        Weight of the pull towards the starting coefficients
    """

    name = "emg_nlls"

    def __init__(self, max_iterations=100, convergence_threshold=1e-6, regularization=0.01,
                 fit_window_size=3.0):
        if max_iterations < 1:
            raise InvalidConfiguration("emg_nlls.max_iterations must be positive")
        if convergence_threshold <= 0:
            raise InvalidConfiguration("emg_nlls.convergence_threshold must be positive")
        if regularization < 0:
            raise InvalidConfiguration("emg_nlls.regularization must be non-negative")
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.regularization = regularization
        self.fit_window_size = fit_window_size

    def fit_region(self, peaks):
        widest = max(p.fwhm for p in peaks)
        return (min(p.center for p in peaks) - REGION_WIDTHS * widest,
                max(p.center for p in peaks) + REGION_WIDTHS * widest)

    def prepare(self, curve, peaks):
        for peak in peaks:
            peak.strategy = self.name
            if peak.fwhm <= 0:
                peak.fwhm = peak.support_width / 2 if peak.has_boundaries else 0.01 * curve.span
            sigma = peak.fwhm / FWHM_TO_SIGMA
            peak.shape = ShapeType.EMG
            peak.coefficients = np.array([peak.amplitude, peak.center, sigma, INITIAL_TAU_RATIO * sigma])

        lo, hi = self.fit_region(peaks)
        x, _ = curve.segment(lo, hi)
        required = MIN_SAMPLES_PER_PEAK * len(peaks)
        if len(x) < required:
            raise InsufficientData(
                f"EMG fit region [{lo:.4g}, {hi:.4g}] has {len(x)} samples, {required} needed",
                required=required, available=len(x)
            )
        logger.debug("EMG seeds for %d peak(s) on [%.4g, %.4g], %d samples", len(peaks), lo, hi, len(x))

    def optimizer_for(self, optimizer):
        """This strategy's Levenberg-Marquardt settings, or the escalated optimizer unchanged."""
        if optimizer is None or isinstance(optimizer, LevenbergMarquardtConfig):
            damping = optimizer.damping_factor if optimizer is not None else 0.1
            return LevenbergMarquardtConfig(max_iterations=self.max_iterations,
                                            convergence_threshold=self.convergence_threshold,
                                            damping_factor=damping)
        return optimizer

    def fit(self, curve, peaks, optimizer, attempt=1):
        fitter = MultiPeakFitter(self.optimizer_for(optimizer), fit_window_size=REGION_WIDTHS)
        group_fit = fitter.fit(curve, peaks, regularization=self.regularization, attempt=attempt)
        for peak in peaks:
            sigma, tau = peak.coefficients[2], peak.coefficients[3]
            peak.metadata['emg_nlls_fitted'] = True
            peak.metadata['asymmetry_ratio'] = float(tau / sigma) if sigma > 0 else float("inf")
            apex_position, apex_height = emg_apex(peak.coefficients)
            peak.metadata['apex_position'] = apex_position
            peak.metadata['apex_height'] = apex_height
        return group_fit
