"""
model - Estimation, testing and validation

engine : Kernel density-ratio estimator on a covariate grid
risk : Relative risk estimation within a window
correction : Multiple testing correction of cell-wise p-values
crossval : k-fold cross-validation of the risk surface
diagnostics : ROC / precision-recall summaries of cross-validation
execution : Serial or process-parallel iteration with reproducible seeds
niche : Complete niche estimation workflow
perturb : Sensitivity of the estimate to positional uncertainty
"""

from .engine import KernelDensityRatio, select_bandwidth
from .risk import estimate_risk, estimate_from_table
from .correction import critical_p_value
from .crossval import (
    CrossValidationFold,
    FoldPrediction,
    CrossValidationResult,
    make_folds,
    validate_kfold,
    cross_validate,
)
from .diagnostics import CVDiagnostics, cv_diagnostics
from .execution import Reducer, ListReducer, spawn_seeds, run_iterations
from .niche import EstimateResult, estimate_niche
from .perturb import (
    PerturbationIteration,
    AggregateStatistics,
    RunningSurfaceStatistics,
    PerturbResult,
    jitter,
    perturb_observations,
    group_levels,
    perturb_niche,
)

__all__ = [
    # Estimation
    'KernelDensityRatio',
    'select_bandwidth',
    'estimate_risk',
    'estimate_from_table',
    'critical_p_value',

    # Cross-validation
    'CrossValidationFold',
    'FoldPrediction',
    'CrossValidationResult',
    'make_folds',
    'validate_kfold',
    'cross_validate',
    'CVDiagnostics',
    'cv_diagnostics',

    # Execution
    'Reducer',
    'ListReducer',
    'spawn_seeds',
    'run_iterations',

    # Workflows
    'EstimateResult',
    'estimate_niche',
    'PerturbationIteration',
    'AggregateStatistics',
    'RunningSurfaceStatistics',
    'PerturbResult',
    'jitter',
    'perturb_observations',
    'group_levels',
    'perturb_niche',
]
