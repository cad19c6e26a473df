"""
Peak data model: shape tags, fit results and peak candidates.

A :class:`PeakCandidate` is created by detection (or handed in by an
upstream detector) and is updated in place as it moves through strategy
processing, fitting and validation. Its final state is the output.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np


class ShapeType(Enum):
    """Peak shape families supported by the shape model."""
    GAUSSIAN = "gaussian"
    LORENTZIAN = "lorentzian"
    PSEUDO_VOIGT = "pseudo_voigt"
    EMG = "emg"
    BIGAUSSIAN = "bigaussian"
    VOIGT_EXPONENTIAL_TAIL = "voigt_exponential_tail"
    PEARSON_IV = "pearson_iv"
    NLC = "nlc"
    GMG_BAYESIAN = "gmg_bayesian"

    @classmethod
    def parse(cls, value):
        """Accept a ShapeType, its value or its name (case-insensitive)."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        for member in cls:
            if key in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown peak shape: {value!r}")


class DetectionAlgorithm(Enum):
    SIMPLE = "simple"
    CWT = "cwt"
    DERIVATIVE = "derivative"
    UPSTREAM = "upstream"


@dataclass
class FitResult:
    """
    Statistics of one fit attempt.

    Attributes:
        r_squared: Coefficient of determination, not clamped (may be negative)
        residual_sum_squares: Sum of squared residuals over the fit window
        iterations: Optimizer iterations used
        converged: Whether the optimizer met its convergence criterion
        standard_error: Residual standard error sqrt(RSS / dof)
        parameter_errors: One-sigma uncertainty per coefficient
        covariance: Coefficient covariance matrix when available
        optimizer: Name of the algorithm that produced the fit
        attempt: 1 for the first attempt, 2 for the escalated retry
    """
    r_squared: float
    residual_sum_squares: float
    iterations: int
    converged: bool
    standard_error: float
    parameter_errors: np.ndarray
    covariance: Optional[np.ndarray] = None
    optimizer: str = ""
    attempt: int = 1


@dataclass
class PeakCandidate:
    """
    A peak as it moves through the decomposition pipeline.

    Attributes:
        center: Peak center coordinate
        amplitude: Peak height
        left_boundary: Left edge of the peak support (NaN until known)
        right_boundary: Right edge of the peak support (NaN until known)
        fwhm: Full width at half maximum (0 until known)
        shape: Shape family used for fitting
        coefficients: Fit coefficients in the shape's parameter order
        detection_algorithm: How the candidate was found
        detection_threshold: Intensity threshold used by the detector
        peak_id: Identifier, assigned by the workflow when empty
        area: Integral of the fitted shape
        fit: Statistics of the latest fit attempt
        strategy: Name of the overlap strategy applied to this peak
        failed: True when the peak could not be resolved
        failure_reason: Short tag explaining the failure
        metadata: Free-form processing annotations
    """
    center: float
    amplitude: float
    left_boundary: float = float("nan")
    right_boundary: float = float("nan")
    fwhm: float = 0.0
    shape: ShapeType = ShapeType.GAUSSIAN
    coefficients: Optional[np.ndarray] = None
    detection_algorithm: DetectionAlgorithm = DetectionAlgorithm.UPSTREAM
    detection_threshold: float = 0.0
    peak_id: str = ""
    area: float = 0.0
    fit: Optional[FitResult] = None
    strategy: Optional[str] = None
    failed: bool = False
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.shape = ShapeType.parse(self.shape)
        if self.coefficients is not None:
            self.coefficients = np.asarray(self.coefficients, dtype=float)

    @property
    def has_boundaries(self) -> bool:
        return (np.isfinite(self.left_boundary) and np.isfinite(self.right_boundary)
                and self.left_boundary < self.right_boundary)

    @property
    def support_width(self) -> float:
        return self.right_boundary - self.left_boundary if self.has_boundaries else 0.0

    def is_valid(self) -> bool:
        """Check ``left < center < right``, ``amplitude > 0`` and ``fwhm > 0``."""
        return (self.has_boundaries
                and self.left_boundary < self.center < self.right_boundary
                and self.amplitude > 0
                and self.fwhm > 0)

    @property
    def quality_score(self) -> float:
        """Weighted peak quality in [0, 1].

        0.4 * R² + 0.2 * symmetry + 0.2 * detection confidence + 0.2 * resolution
        """
        r2 = float(np.clip(self.fit.r_squared, 0.0, 1.0)) if self.fit is not None else 0.0
        symmetry = self.metadata.get("symmetry", 1.0)
        confidence = self.metadata.get("detection_confidence", 0.8)
        resolution = self.metadata.get("resolution", 1.0)
        score = 0.4 * r2 + 0.2 * symmetry + 0.2 * confidence + 0.2 * resolution
        return float(np.clip(score, 0.0, 1.0))

    def set_boundaries(self, x_min=-np.inf, x_max=np.inf, factor=1.0):
        """Set the support to ``center +/- factor * fwhm`` clipped to [x_min, x_max].

        Clipping never moves a boundary past the center.
        """
        half_width = factor * self.fwhm
        left = self.center - half_width
        right = self.center + half_width
        if x_min < self.center:
            left = max(left, x_min)
        if x_max > self.center:
            right = min(right, x_max)
        self.left_boundary = float(left)
        self.right_boundary = float(right)

    def mark_failed(self, reason, message=None):
        self.failed = True
        self.failure_reason = reason
        if message:
            self.metadata["failure_message"] = message

    def clear_failure(self):
        self.failed = False
        self.failure_reason = None
        self.metadata.pop("failure_message", None)

    def copy(self):
        return copy.deepcopy(self)

    def to_dict(self):
        """Flat summary used for tables."""
        row = {
            'peak_id': self.peak_id,
            'shape': self.shape.value,
            'center': self.center,
            'amplitude': self.amplitude,
            'fwhm': self.fwhm,
            'area': self.area,
            'left_boundary': self.left_boundary,
            'right_boundary': self.right_boundary,
            'strategy': self.strategy,
            'failed': self.failed,
            'failure_reason': self.failure_reason,
            'quality_score': self.quality_score,
        }
        if self.fit is not None:
            row.update({
                'r_squared': self.fit.r_squared,
                'rss': self.fit.residual_sum_squares,
                'standard_error': self.fit.standard_error,
                'iterations': self.fit.iterations,
                'converged': self.fit.converged,
                'optimizer': self.fit.optimizer,
                'attempt': self.fit.attempt,
            })
        return row
