"""Decomposition workflow: state machine, per-group processing and statistics."""

from .controller import (
    DecompositionResult,
    DecompositionWorkflow,
    GroupOutcome,
    Transition,
    WorkflowState,
    capture_logs,
    process_group,
    validation_problems
)
from .statistics import ProcessingStatistics, StageTimer

__all__ = [
    'DecompositionResult',
    'DecompositionWorkflow',
    'GroupOutcome',
    'Transition',
    'WorkflowState',
    'capture_logs',
    'process_group',
    'validation_problems',
    'ProcessingStatistics',
    'StageTimer'
]
