"""
data - Core data structures and configuration

Observation and prediction tables, estimation windows, gridded
surfaces, column configuration and the error hierarchy.
"""

from .config import (
    EnviConfig,
    KernelOptions,
    CORRECTION_METHODS,
    BANDWIDTH_RULES,
    EDGE_CORRECTIONS,
    EnviError,
    InputContractError,
    InvalidParameterError,
    GeometryError,
    BoundaryWarning,
    validate_alpha,
    validate_correction_method,
)

from .core import (
    ObservationRecord,
    PredictionRecord,
    ObservationTable,
    PredictionTable,
    EstimationWindow,
    GridSurface,
    RiskSurface,
    CorrectionResult,
)

__all__ = [
    # Configuration
    'EnviConfig',
    'KernelOptions',
    'CORRECTION_METHODS',
    'BANDWIDTH_RULES',
    'EDGE_CORRECTIONS',
    'validate_alpha',
    'validate_correction_method',

    # Exceptions
    'EnviError',
    'InputContractError',
    'InvalidParameterError',
    'GeometryError',
    'BoundaryWarning',

    # Tables and surfaces
    'ObservationRecord',
    'PredictionRecord',
    'ObservationTable',
    'PredictionTable',
    'EstimationWindow',
    'GridSurface',
    'RiskSurface',
    'CorrectionResult',
]
