"""Core data model: curves, peak candidates and fit results."""

from .curve import Curve, estimate_noise
from .peak import (
    ShapeType,
    DetectionAlgorithm,
    FitResult,
    PeakCandidate
)

__all__ = [
    'Curve',
    'estimate_noise',
    'ShapeType',
    'DetectionAlgorithm',
    'FitResult',
    'PeakCandidate'
]
