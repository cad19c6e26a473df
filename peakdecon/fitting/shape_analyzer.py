"""Automatic peak shape selection from measured asymmetry and tailing."""

import logging

import numpy as np
from scipy.integrate import trapezoid

from peakdecon.data.peak import ShapeType

logger = logging.getLogger(__name__)


class ShapeAnalyzer:
    """
    Recommend a shape family for a detected peak.

    Asymmetry is (right half-width - left half-width) / FWHM measured at half
    maximum. Tailing is the fraction of the peak area lying beyond
    center + 2 * mean half-width on the right. Tailing peaks get EMG,
    asymmetric ones BiGaussian, everything else Gaussian.
    """

    def __init__(self, tailing_threshold=0.3, asymmetry_threshold=0.2):
        self.tailing_threshold = tailing_threshold
        self.asymmetry_threshold = asymmetry_threshold

    @staticmethod
    def half_widths(curve, center):
        idx = int(np.clip(np.searchsorted(curve.x, center), 0, curve.point_count - 1))
        half = curve.y[idx] / 2.0

        left = idx
        while left > 0 and curve.y[left] > half:
            left -= 1
        right = idx
        while right < curve.point_count - 1 and curve.y[right] > half:
            right += 1

        return float(curve.x[idx] - curve.x[left]), float(curve.x[right] - curve.x[idx])

    def analyze(self, curve, peak):
        left_hw, right_hw = self.half_widths(curve, peak.center)
        fwhm = left_hw + right_hw
        if fwhm <= 0:
            return {'asymmetry': 0.0, 'tailing': 0.0, 'recommended': ShapeType.GAUSSIAN}

        asymmetry = (right_hw - left_hw) / fwhm
        mean_hw = fwhm / 2
        x, y = curve.segment(peak.center - 6 * mean_hw, peak.center + 6 * mean_hw)
        y = np.clip(y, 0.0, None)
        total = trapezoid(y, x) if len(x) > 1 else 0.0
        tail_mask = x >= peak.center + 2 * mean_hw
        tail = trapezoid(y[tail_mask], x[tail_mask]) if np.count_nonzero(tail_mask) > 1 else 0.0
        tailing = tail / total if total > 0 else 0.0

        if tailing > self.tailing_threshold:
            recommended = ShapeType.EMG
        elif abs(asymmetry) > self.asymmetry_threshold:
            recommended = ShapeType.BIGAUSSIAN
        else:
            recommended = ShapeType.GAUSSIAN

        return {'asymmetry': float(asymmetry), 'tailing': float(tailing), 'recommended': recommended}

    def assign_shapes(self, curve, peaks):
        """Set each peak's shape to the recommended family, in place."""
        for peak in peaks:
            analysis = self.analyze(curve, peak)
            peak.shape = analysis['recommended']
            peak.coefficients = None
            peak.metadata['asymmetry'] = analysis['asymmetry']
            peak.metadata['tailing'] = analysis['tailing']
            logger.debug("Peak %s at %.4g: asymmetry %.3f, tailing %.3f -> %s", peak.peak_id,
                         peak.center, analysis['asymmetry'], analysis['tailing'], peak.shape.value)
        return peaks
