"""
Result Analyzer Module
======================

Summaries of decomposed peaks: per-peak statistics (area %, height %,
FWHM, fit quality) and pandas tables for display by collaborators.

Classes
-------
ResultAnalyzer
    Static methods for peak statistics and result tables
"""

import numpy as np
import pandas as pd

from peakdecon.fitting.peak_shapes import get_shape


class ResultAnalyzer:
    """
    Result analysis tools for decomposed peaks.

    All methods are static and can be called directly on the class.

    Methods
    -------
    calculate_peak_statistics(peaks)
        Statistics for every peak, including its share of total area/height
    peaks_to_dataframe(peaks)
        One row per peak with coefficients, fit statistics and flags

    Examples
    --------
    >>> stats = ResultAnalyzer.calculate_peak_statistics(result.peaks)
    >>> for peak in stats:
    ...     print(f"Peak {peak['peak_number']}: Area = {peak['area']:.2f}, "
    ...           f"FWHM = {peak['fwhm']:.3f}")
    """

    @staticmethod
    def calculate_peak_statistics(peaks):
        """
        Calculate per-peak statistics.

        Parameters
        ----------
        peaks : list of PeakCandidate
            Decomposed peaks

        Returns
        -------
        list of dict
            One dictionary per peak containing:
            - peak_number : int - Peak index (1-based, sorted by center)
            - peak_id : str
            - center, amplitude, fwhm, area : float
            - area_percent : float - Percentage of total area
            - height_percent : float - Percentage of the largest amplitude
            - r_squared : float or None
            - failed : bool
        """
        if not peaks:
            return []

        ordered = sorted(peaks, key=lambda p: p.center)
        total_area = sum(max(p.area, 0.0) for p in ordered)
        max_height = max(p.amplitude for p in ordered)

        stats = []
        for i, peak in enumerate(ordered, start=1):
            stats.append({
                'peak_number': i,
                'peak_id': peak.peak_id,
                'center': peak.center,
                'amplitude': peak.amplitude,
                'fwhm': peak.fwhm,
                'area': peak.area,
                'area_percent': 100.0 * peak.area / total_area if total_area > 0 else 0.0,
                'height_percent': 100.0 * peak.amplitude / max_height if max_height > 0 else 0.0,
                'r_squared': peak.fit.r_squared if peak.fit is not None else None,
                'failed': peak.failed,
            })
        return stats

    @staticmethod
    def peaks_to_dataframe(peaks):
        """
        Tabulate peaks.

        Parameters
        ----------
        peaks : list of PeakCandidate

        Returns
        -------
        pandas.DataFrame
            One row per peak; coefficient columns are prefixed with ``param_``
            and their uncertainties with ``error_``
        """
        rows = []
        for peak in peaks:
            row = peak.to_dict()
            if peak.coefficients is not None:
                shape = get_shape(peak.shape)
                errors = (peak.fit.parameter_errors if peak.fit is not None
                          else np.full(shape.n_params, np.nan))
                for name, value, error in zip(shape.parameter_names, peak.coefficients, errors):
                    row[f'param_{name}'] = value
                    row[f'error_{name}'] = error
            rows.append(row)
        return pd.DataFrame(rows)
