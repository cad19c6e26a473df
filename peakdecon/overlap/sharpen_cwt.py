"""
Sharpening and wavelet refinement for medium overlap.

The curve is sharpened by subtracting its second derivative scaled by the
squared peak width, ``y - k * sigma^2 * y''``, with ``y''`` taken from a
quadratic Savitzky-Golay filter spanning about one sigma either side. The
sharpened curve is correlated with Ricker wavelets over a range of scales.
For every peak the scale with the strongest response at its center is
kept, and the center is moved to the response maximum inside its own cell
when that maximum is a genuine interior maximum above the noise threshold.

The joint fit runs on the original curve with a Tikhonov pull towards the
refined seeds. The pull is weighted by the noise level, so a noisy pair
cannot trade amplitude between its members to shave a little off the
residual.
"""

import logging

import numpy as np
from scipy.signal import fftconvolve, savgol_filter

from peakdecon.errors import InvalidConfiguration
from peakdecon.fitting.multi_peak_fitter import MultiPeakFitter
from peakdecon.fitting.peak_functions import FWHM_TO_SIGMA
from peakdecon.fitting.peak_shapes import get_shape

logger = logging.getLogger(__name__)

# Boundaries are re-estimated where the sharpened curve drops below this
# fraction of the peak amplitude
BOUNDARY_FRACTION = 0.05
BOUNDARY_LIMIT = 3.0


def check_kernel_size(size):
    if size < 3 or size % 2 == 0:
        raise InvalidConfiguration(f"Sharpening kernel size must be odd and >= 3, got {size}")
    return size


def sharpen(y, strength, kernel_size, sigma_points=1.0):
    """
    Sharpened copy of ``y``, clipped at zero.

    Parameters
    ----------
    y : ndarray
        Intensities on a regular grid
    strength : float
        Weight ``k`` of the second-derivative term
    kernel_size : int
        Smallest odd Savitzky-Golay window
    sigma_points : float
        Peak sigma in samples; sets the derivative scale and widens the
        window to at least +/- sigma_points
    """
    check_kernel_size(kernel_size)
    y = np.asarray(y, dtype=float)
    half = max(kernel_size // 2, int(np.ceil(sigma_points)))
    window = min(2 * half + 1, len(y) if len(y) % 2 else len(y) - 1)
    if window < 3:
        return np.maximum(0.0, y)
    second = savgol_filter(y, window_length=window, polyorder=2, deriv=2, mode="nearest")
    return np.maximum(0.0, y - strength * sigma_points ** 2 * second)


def group_sigma_points(curve, peaks):
    """Median member sigma of a group, in samples."""
    widths = [p.fwhm for p in peaks if p.fwhm > 0]
    if not widths:
        return 1.0
    return max(1.0, float(np.median(widths)) / FWHM_TO_SIGMA / curve.spacing)


def seed_prior_scale(peaks, noise_level):
    """
    Per-coefficient scale of the pull towards the seeds, divided by the noise.

    Centers are scaled by a quarter of the member FWHM, amplitudes and widths
    by half their seed value. A coefficient that has moved by its scale adds
    ``regularization`` noise variances to the objective.
    """
    scales = []
    for peak in peaks:
        shape = get_shape(peak.shape)
        for kind, value in zip(shape.bound_kinds, peak.coefficients):
            if kind == "center":
                scale = peak.fwhm / 4 if peak.fwhm > 0 else 1.0
            elif kind in ("amplitude", "width"):
                scale = max(0.5 * abs(value), noise_level)
            else:
                scale = max(abs(value), 1.0)
            scales.append(scale / noise_level)
    return np.asarray(scales, dtype=float)


def ricker(points, scale):
    """Ricker (Mexican hat) wavelet sampled on ``points`` samples."""
    t = np.arange(points) - (points - 1) / 2.0
    norm = 2 / (np.sqrt(3 * scale) * np.pi ** 0.25)
    return norm * (1 - (t / scale) ** 2) * np.exp(-t ** 2 / (2 * scale ** 2))


def wavelet_responses(y, scales):
    """
    Ricker responses of ``y`` at each scale.

    Each wavelet is normalised by its L1 norm so responses at different
    scales are comparable.

    Returns
    -------
    ndarray
        Shape (len(scales), len(y))
    """
    n = len(y)
    responses = np.zeros((len(scales), n))
    for row, scale in enumerate(scales):
        points = min(10 * scale + 1, n if n % 2 else n - 1)
        wavelet = ricker(points, scale)
        responses[row] = fftconvolve(y, wavelet, mode="same") / np.sum(np.abs(wavelet))
    return responses


class SharpenCWTStrategy:
    """
    Resolve medium overlap by sharpening and wavelet-based center refinement.

    Parameters
    ----------
    sharpen_strength : float
        Weight of the second-derivative term
    cwt_scales : tuple of int
        Inclusive (smallest, largest) wavelet scale in samples
    kernel_size : int
        Odd size >= 3 of the sharpening kernel
    noise_threshold : float
        Minimum response, relative to the strongest response at the chosen
        scale, for a center to be moved
    regularization : float
        Weight of the pull towards the refined seeds, in units of the
        noise level (0 fits without it)
    """

    name = "sharpen_cwt"

    def __init__(self, sharpen_strength=1.5, cwt_scales=(1, 20), kernel_size=5, noise_threshold=0.1,
                 regularization=64.0, fit_window_size=3.0):
        check_kernel_size(kernel_size)
        cwt_scales = tuple(int(s) for s in cwt_scales)
        if len(cwt_scales) != 2 or cwt_scales[0] < 1 or cwt_scales[1] < cwt_scales[0]:
            raise InvalidConfiguration(f"cwt_scales must be (min, max) with 1 <= min <= max, got {cwt_scales}")
        if sharpen_strength < 0:
            raise InvalidConfiguration("sharpen_strength must be non-negative")
        if not 0 <= noise_threshold < 1:
            raise InvalidConfiguration("noise_threshold must be in [0, 1)")
        if regularization < 0:
            raise InvalidConfiguration("sharpen_cwt.regularization must be non-negative")
        self.sharpen_strength = sharpen_strength
        self.cwt_scales = cwt_scales
        self.kernel_size = kernel_size
        self.noise_threshold = noise_threshold
        self.regularization = regularization
        self.fit_window_size = fit_window_size

    def prepare(self, curve, peaks):
        sharpened = sharpen(curve.y, self.sharpen_strength, self.kernel_size, group_sigma_points(curve, peaks))
        scales = np.arange(self.cwt_scales[0], self.cwt_scales[1] + 1)
        responses = wavelet_responses(sharpened, scales)

        ordered = sorted(peaks, key=lambda p: p.center)
        for i, peak in enumerate(ordered):
            peak.strategy = self.name
            left_limit = peak.center - peak.fwhm / 2
            right_limit = peak.center + peak.fwhm / 2
            if i > 0:
                left_limit = max(left_limit, 0.5 * (ordered[i - 1].center + peak.center))
            if i < len(ordered) - 1:
                right_limit = min(right_limit, 0.5 * (peak.center + ordered[i + 1].center))
            self._refine(curve, peak, scales, responses, (left_limit, right_limit))

        for peak in peaks:
            self._estimate_boundaries(curve, peak, sharpened)
            shape = get_shape(peak.shape)
            fwhm = peak.fwhm if peak.fwhm > 0 else 0.01 * curve.span
            peak.coefficients = shape.initial_guess(peak.center, peak.amplitude, fwhm)

    def _refine(self, curve, peak, scales, responses, cell):
        idx = int(np.argmin(np.abs(curve.x - peak.center)))
        best = int(np.argmax(responses[:, idx]))
        response = responses[best]
        peak.metadata['cwt_scale'] = int(scales[best])
        peak.metadata['cwt_response'] = float(response[idx])
        peak.metadata['cwt_enhanced'] = False

        in_cell = np.flatnonzero((curve.x >= cell[0]) & (curve.x <= cell[1]))
        if len(in_cell) < 3:
            return
        local = response[in_cell]
        j = int(np.argmax(local))
        # a maximum on the cell edge belongs to the neighbour or the merged envelope
        if j == 0 or j == len(local) - 1:
            return
        margin = self.noise_threshold * np.max(response)
        if local[j] <= 0 or local[j] < margin:
            return
        # the flat top of an unresolved envelope does not fall off towards the neighbour
        if local[j] - local[0] < margin or local[j] - local[-1] < margin:
            return

        k = in_cell[j]
        new_center = float(curve.x[k])
        denom = response[k - 1] - 2 * response[k] + response[k + 1]
        if denom < 0:
            new_center += 0.5 * curve.spacing * (response[k - 1] - response[k + 1]) / denom
        new_center = float(np.clip(new_center, peak.center - peak.fwhm / 4, peak.center + peak.fwhm / 4))

        old_intensity = curve.intensity_at(peak.center)
        if old_intensity > 0:
            peak.amplitude *= curve.intensity_at(new_center) / old_intensity
        logger.debug("Peak %s moved %.4g -> %.4g (scale %d)", peak.peak_id, peak.center,
                     new_center, peak.metadata['cwt_scale'])
        peak.center = new_center
        peak.metadata['cwt_enhanced'] = True
        peak.metadata['cwt_response'] = float(local[j])

    @staticmethod
    def _estimate_boundaries(curve, peak, sharpened):
        """Walk out on the sharpened curve to BOUNDARY_FRACTION of the amplitude."""
        if peak.fwhm <= 0:
            return
        idx = int(np.argmin(np.abs(curve.x - peak.center)))
        level = BOUNDARY_FRACTION * max(peak.amplitude, sharpened[idx])
        lo_limit = peak.center - BOUNDARY_LIMIT * peak.fwhm
        hi_limit = peak.center + BOUNDARY_LIMIT * peak.fwhm

        left = idx
        while left > 0 and curve.x[left - 1] >= lo_limit and sharpened[left] > level:
            left -= 1
        right = idx
        while right < curve.point_count - 1 and curve.x[right + 1] <= hi_limit and sharpened[right] > level:
            right += 1

        left_x = min(float(curve.x[left]), peak.center - curve.spacing / 2)
        right_x = max(float(curve.x[right]), peak.center + curve.spacing / 2)
        peak.left_boundary = left_x
        peak.right_boundary = right_x

    def fit(self, curve, peaks, optimizer, attempt=1):
        fitter = MultiPeakFitter(optimizer, self.fit_window_size)
        if self.regularization <= 0 or curve.noise_level <= 0:
            return fitter.fit(curve, peaks, attempt=attempt)
        prior_scale = seed_prior_scale(peaks, curve.noise_level)
        return fitter.fit(curve, peaks, regularization=self.regularization, attempt=attempt,
                          prior_scale=prior_scale)
