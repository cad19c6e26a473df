"""Peak detection module for the Detect stage.

Finds peak candidates on a Savitzky-Golay smoothed curve with
``scipy.signal.find_peaks``, a wavelet transform (``find_peaks_cwt``) or
the zero crossings of the first derivative, and completes candidates
handed in by an upstream detector (missing FWHM, boundaries or amplitude).
"""

import logging

import numpy as np
from scipy.signal import find_peaks, find_peaks_cwt, peak_prominences, peak_widths, savgol_filter

from peakdecon.data.peak import DetectionAlgorithm, PeakCandidate, ShapeType
from peakdecon.errors import InvalidConfiguration
from peakdecon.fitting.shape_analyzer import ShapeAnalyzer

logger = logging.getLogger(__name__)

# Confidence recorded for peaks found by the built-in detector
DETECTION_CONFIDENCE = 0.8

DETECTORS = (DetectionAlgorithm.SIMPLE, DetectionAlgorithm.CWT, DetectionAlgorithm.DERIVATIVE)


def _thin(indices, y, distance):
    """Keep the highest of any maxima closer than ``distance`` samples."""
    kept = []
    for i in sorted(indices, key=lambda k: -y[k]):
        if all(abs(i - k) >= distance for k in kept):
            kept.append(i)
    return np.asarray(sorted(kept), dtype=int)


class PeakDetector:
    """Peak detection and candidate completion."""

    @staticmethod
    def smooth(y, smoothing_points=5):
        """Savitzky-Golay smoothing with a window of 2 * smoothing_points + 1.

        Returns the input unchanged when smoothing_points is 0 or the curve is
        too short for a quadratic filter.
        """
        if smoothing_points <= 0:
            return np.array(y, dtype=float)
        window_length = min(smoothing_points * 2 + 1, len(y) - 1)
        if window_length % 2 == 0:
            window_length -= 1
        if window_length < 3:
            return np.array(y, dtype=float)
        return savgol_filter(y, window_length=window_length, polyorder=2)

    @staticmethod
    def detect(curve, threshold=0.1, min_peak_distance=0.5, smoothing_points=5,
               shape=ShapeType.GAUSSIAN, algorithm=DetectionAlgorithm.SIMPLE):
        """Detect peaks on a curve.

        Args:
            curve: Curve to search
            threshold: Minimum peak height above the baseline, as a fraction
                of the intensity range
            min_peak_distance: Minimum distance between peaks in x units
            smoothing_points: Half-window for Savitzky-Golay smoothing (0 = none)
            shape: Shape tag given to the new candidates
            algorithm: ``simple`` (local maxima), ``cwt`` (ridge lines of a
                Ricker wavelet transform) or ``derivative`` (downward zero
                crossings of the smoothed first derivative)

        Returns:
            List of PeakCandidate with center, amplitude, fwhm and boundaries set
        """
        if not 0 < threshold < 1:
            raise InvalidConfiguration("peak_detection_threshold must be in (0, 1)")
        if min_peak_distance < 0:
            raise InvalidConfiguration("min_peak_distance must be non-negative")
        try:
            algorithm = DetectionAlgorithm(algorithm)
        except ValueError:
            algorithm = None
        if algorithm not in DETECTORS:
            raise InvalidConfiguration(f"Detection algorithm must be one of {[a.value for a in DETECTORS]}")

        x, y = curve.x, curve.y
        y_smooth = PeakDetector.smooth(y, smoothing_points)

        y_range = np.max(y_smooth) - np.min(y_smooth)
        min_height = np.min(y_smooth) + y_range * threshold
        min_prominence = y_range * threshold / 2
        distance = max(1, int(np.ceil(min_peak_distance / curve.spacing)))

        if algorithm is DetectionAlgorithm.SIMPLE:
            peaks, properties = find_peaks(
                y_smooth,
                height=min_height,
                prominence=min_prominence,
                distance=distance
            )
            prominences = properties['prominences']
        else:
            if algorithm is DetectionAlgorithm.CWT:
                widths = np.arange(1, max(2, len(y_smooth) // 20) + 1)
                raw = np.asarray(find_peaks_cwt(y_smooth, widths), dtype=int)
            else:
                raw = PeakDetector._derivative_maxima(y_smooth, smoothing_points)
            raw = raw[y_smooth[raw] >= min_height]
            peaks = _thin(raw, y_smooth, distance)
            prominences = peak_prominences(y_smooth, peaks)[0] if len(peaks) else np.zeros(0)
            keep = prominences >= min_prominence
            peaks, prominences = peaks[keep], prominences[keep]

        if len(peaks) == 0:
            logger.info("No peaks above %.3g found on %s", min_height, curve.curve_id)
            return []

        _, _, left_ips, right_ips = peak_widths(y_smooth, peaks, rel_height=0.5)
        index = np.arange(len(x))

        candidates = []
        for i, peak_idx in enumerate(peaks):
            left_x = np.interp(left_ips[i], index, x)
            right_x = np.interp(right_ips[i], index, x)
            candidate = PeakCandidate(
                center=float(x[peak_idx]),
                amplitude=float(y_smooth[peak_idx]),
                fwhm=float(right_x - left_x),
                shape=shape,
                detection_algorithm=algorithm,
                detection_threshold=float(min_height),
                peak_id=f"peak_{i}",
                metadata={
                    'detection_confidence': DETECTION_CONFIDENCE,
                    'prominence': float(prominences[i]),
                },
            )
            candidate.set_boundaries(x[0], x[-1])
            candidates.append(candidate)

        logger.info("Detected %d peak(s) on %s with %s", len(candidates), curve.curve_id, algorithm.value)
        return candidates

    @staticmethod
    def _derivative_maxima(y_smooth, smoothing_points):
        """Samples where the first derivative crosses zero going downwards."""
        window = min(max(smoothing_points, 1) * 2 + 1, len(y_smooth) if len(y_smooth) % 2 else len(y_smooth) - 1)
        if window < 3:
            slope = np.gradient(y_smooth)
        else:
            slope = savgol_filter(y_smooth, window_length=window, polyorder=2, deriv=1)
        crossings = np.flatnonzero((slope[:-1] > 0) & (slope[1:] <= 0))
        # the higher of the two samples around each crossing
        return np.where(y_smooth[crossings + 1] > y_smooth[crossings], crossings + 1, crossings)

    @staticmethod
    def measure_fwhm(curve, center):
        """FWHM measured by walking out from ``center`` to half its intensity."""
        left_hw, right_hw = ShapeAnalyzer.half_widths(curve, center)
        width = left_hw + right_hw
        return width if width > 0 else curve.spacing

    @staticmethod
    def complete_candidates(curve, candidates, default_shape=None):
        """Copy upstream candidates and fill in what the workflow needs.

        Args:
            curve: Curve the candidates belong to
            candidates: Candidates from an upstream detector
            default_shape: Shape applied to every candidate when given

        Returns:
            New list of PeakCandidate; the inputs are not modified
        """
        completed = []
        for i, original in enumerate(candidates):
            peak = original.copy()
            if not peak.peak_id:
                peak.peak_id = f"peak_{i}"
            if default_shape is not None:
                peak.shape = ShapeType.parse(default_shape)
            if peak.amplitude <= 0:
                peak.amplitude = curve.intensity_at(peak.center)
            if peak.fwhm <= 0:
                if peak.has_boundaries:
                    peak.fwhm = peak.support_width / 2
                else:
                    peak.fwhm = PeakDetector.measure_fwhm(curve, peak.center)
            if not peak.has_boundaries:
                peak.set_boundaries(curve.x[0], curve.x[-1])
            peak.metadata.setdefault('detection_confidence', DETECTION_CONFIDENCE)
            completed.append(peak)
        return completed
