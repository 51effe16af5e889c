# src/envi/__init__.py

"""
envi - Ecological niche estimation in covariate space

Presence and absence observations are mapped into the space of two
environmental covariates, where a kernel density ratio gives the log
relative risk of presence. The surface is tested for significance,
projected back onto geographic prediction locations, validated by
k-fold cross-validation and stress-tested by perturbing observation
coordinates.
"""

# Core data structures
from .data.config import (
    EnviConfig,
    KernelOptions,
    EnviError,
    InputContractError,
    InvalidParameterError,
    GeometryError,
    BoundaryWarning,
)
from .data.core import ObservationTable, PredictionTable, EstimationWindow, GridSurface, RiskSurface

# Workflows
from .model.niche import estimate_niche, EstimateResult
from .model.perturb import perturb_niche, PerturbResult

# Import submodules
from . import data
from . import spatial
from . import model

__version__ = '0.1.0'

__all__ = [
    # Configuration
    'EnviConfig',
    'KernelOptions',

    # Errors
    'EnviError',
    'InputContractError',
    'InvalidParameterError',
    'GeometryError',
    'BoundaryWarning',

    # Core classes
    'ObservationTable',
    'PredictionTable',
    'EstimationWindow',
    'GridSurface',
    'RiskSurface',

    # Workflows
    'estimate_niche',
    'EstimateResult',
    'perturb_niche',
    'PerturbResult',

    # Submodules
    'data',
    'spatial',
    'model',
]
