"""peakdecon - decomposition of overlapping peaks in sampled curves.

Typical use:

>>> from peakdecon import Curve, DecompositionWorkflow, preset
>>> result = DecompositionWorkflow(preset("overlapping_peaks")).run(Curve(x, y))
>>> result.to_dataframe()
"""

import logging

from .config import DecompositionConfig, preset
from .data import Curve, FitResult, PeakCandidate, ShapeType
from .errors import (
    ConvergenceFailure,
    DecompositionError,
    InsufficientData,
    InvalidConfiguration,
    NumericalInstability
)
from .workflow import DecompositionResult, DecompositionWorkflow, WorkflowState

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    'DecompositionConfig',
    'preset',
    'Curve',
    'FitResult',
    'PeakCandidate',
    'ShapeType',
    'ConvergenceFailure',
    'DecompositionError',
    'InsufficientData',
    'InvalidConfiguration',
    'NumericalInstability',
    'DecompositionResult',
    'DecompositionWorkflow',
    'WorkflowState'
]
