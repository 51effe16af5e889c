"""
niche.py - Ecological niche model from a log relative risk surface

Estimates the ecological niche of a species from presence and
(pseudo-)absence observations over two covariates: the log ratio of the
presence and absence kernel densities in covariate space, with
asymptotic p-values, optionally projected into geographic space and
checked by k-fold cross-validation.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from ..data.config import (
    EnviConfig,
    InputContractError,
    InvalidParameterError,
    KernelOptions,
    validate_alpha,
    validate_correction_method,
)
from ..data.core import CorrectionResult, EstimationWindow, ObservationTable, PredictionTable, RiskSurface
from ..spatial.boundaries import BoundaryWindows, as_window, build_windows
from ..spatial.raster import project_surface
from .correction import critical_p_value
from .crossval import CrossValidationResult, cross_validate, validate_kfold
from .diagnostics import CVDiagnostics, cv_diagnostics
from .execution import validate_workers
from .risk import confine_to_window, estimate_risk, resolve_kernel


@dataclass
class EstimateResult:
    """
    Output of `estimate_niche`.

    Attributes
    ----------
    surface : RiskSurface
        Log relative risk and p-value surfaces
    presence, absence : np.ndarray
        Covariate coordinates (n × 2) of the points inside the window
    windows : BoundaryWindows
        Inner, outer and used estimation windows
    correction : CorrectionResult
        Critical p-value for significance tests
    observations : pd.DataFrame
        The observation table used
    predictions : pd.DataFrame or None
        Prediction locations with 'rr' and 'pval' (predict=True)
    cv : CrossValidationResult or None
        Pooled held-out predictions (cv=True)
    diagnostics : CVDiagnostics or None
        ROC / precision-recall metrics (cv=True)
    """

    surface: RiskSurface
    presence: np.ndarray
    absence: np.ndarray
    windows: BoundaryWindows
    correction: CorrectionResult
    observations: pd.DataFrame
    predictions: pd.DataFrame | None = None
    cv: CrossValidationResult | None = None
    diagnostics: CVDiagnostics | None = None

    @property
    def p_critical(self) -> float:
        return self.correction.critical_p

    @property
    def inner_poly(self) -> EstimationWindow:
        return self.windows.inner

    @property
    def outer_poly(self) -> EstimationWindow:
        return self.windows.outer

    def significant(self) -> np.ndarray:
        """Two-sided significance mask of the surface cells."""
        return self.correction.significant(self.surface.p_value.values)


def _as_observations(obs_locs, config: EnviConfig, require_group: bool = False) -> ObservationTable:
    if isinstance(obs_locs, ObservationTable):
        return obs_locs
    return ObservationTable.from_dataframe(obs_locs, config, require_group=require_group)


def _as_predictions(predict_locs, config: EnviConfig) -> PredictionTable | None:
    if predict_locs is None or isinstance(predict_locs, PredictionTable):
        return predict_locs
    return PredictionTable.from_dataframe(predict_locs, config)


def estimate_niche(obs_locs,
                   predict: bool = False,
                   predict_locs=None,
                   conserve: bool = True,
                   alpha: float = 0.05,
                   p_correct: str = "none",
                   cv: bool = False,
                   kfold: int = 10,
                   balance: bool = False,
                   parallel: bool = False,
                   n_core: int = 2,
                   poly_buffer: float | None = None,
                   obs_window=None,
                   kernel: KernelOptions | dict | None = None,
                   engine=None,
                   seed: int | None = None,
                   config: EnviConfig | None = None,
                   verbose: bool = False) -> EstimateResult:
    """
    Estimate an ecological niche with a log relative risk surface.

    Parameters
    ----------
    obs_locs : pd.DataFrame or ObservationTable
        Observations with columns id, lon, lat, presence (0/1), cov1, cov2
    predict : bool
        Predict the niche at `predict_locs` in geographic space
    predict_locs : pd.DataFrame or PredictionTable, optional
        Prediction locations with columns lon, lat, cov1, cov2
    conserve : bool
        If True, estimate within the hull around the observations;
        otherwise within the hull around `predict_locs`
    alpha : float
        Two-tailed significance level in (0, 1)
    p_correct : str
        Multiple testing correction: 'none', 'FDR', 'Sidak', 'Bonferroni'
    cv : bool
        Run k-fold cross-validation
    kfold : int
        Number of folds (>= 2)
    balance : bool
        Undersample absences so every test fold has prevalence 0.5
    parallel : bool
        Run the folds in worker processes
    n_core : int
        Number of worker processes
    poly_buffer : float, optional
        Window buffer in covariate units. Default: 1/100 of the smaller
        side of the inner hull's bounding box.
    obs_window : Polygon or array, optional
        Custom estimation window
    kernel : KernelOptions or dict, optional
        Bandwidth rule, edge correction and grid resolution
    engine : optional
        Density-ratio engine (default KernelDensityRatio)
    seed : int, optional
        Seed for cross-validation
    config : EnviConfig, optional
        Column names of the input tables
    verbose : bool
        Print progress

    Returns
    -------
    EstimateResult

    Raises
    ------
    InputContractError
        Bad table schema, missing companion arguments, invalid custom window
    InvalidParameterError
        alpha, p_correct, kfold, n_core or poly_buffer out of range
    GeometryError
        Hull with fewer than 3 distinct points or zero area

    Examples
    --------
    >>> res = estimate_niche(obs_locs, predict=True, predict_locs=grid, cv=True, seed=1)
    >>> res.surface.summary()
    >>> res.diagnostics.pooled_auc
    """
    config = config or EnviConfig()

    # ---- Argument checks (before any estimation work) ----
    observations = _as_observations(obs_locs, config)
    predictions = _as_predictions(predict_locs, config)
    alpha = validate_alpha(alpha)
    p_correct = validate_correction_method(p_correct)
    kernel = resolve_kernel(kernel)

    if predict and predictions is None:
        raise InputContractError("If the argument 'predict' is True, must specify the argument 'predict_locs'")
    if not conserve and predictions is None:
        raise InputContractError("If the argument 'conserve' is False, must specify the argument 'predict_locs'")
    if observations.n_presence == 0 or observations.n_absence == 0:
        raise InputContractError(
            f"'obs_locs' needs presence and absence observations "
            f"(presence={observations.n_presence}, absence={observations.n_absence})"
        )
    if cv:
        kfold = validate_kfold(kfold, fit=True)
        if balance and observations.n_absence < observations.n_presence:
            raise InputContractError(
                "balance=True needs at least as many absence as presence observations "
                f"(presence={observations.n_presence}, absence={observations.n_absence})"
            )
    if parallel:
        validate_workers(n_core)
    if poly_buffer is not None and not poly_buffer >= 0:
        raise InvalidParameterError(f"'poly_buffer' must be a non-negative number, got {poly_buffer}")
    if obs_window is not None:
        obs_window = as_window(obs_window)

    if verbose:
        print(f"\n[Niche] Estimating relative risk surface "
              f"({observations.n_presence:,} presence, {observations.n_absence:,} absence)...")

    # ---- Windows ----
    windows = build_windows(
        observations.covariates,
        predict_covariates=None if predictions is None else predictions.covariates,
        conserve=conserve,
        poly_buffer=poly_buffer,
        obs_window=obs_window,
        verbose=verbose,
    )
    window = windows.window

    # ---- Full fit ----
    xy = observations.covariates
    is_presence = observations.presence == 1
    presence = confine_to_window(xy[is_presence], window, "presence")
    absence = confine_to_window(xy[~is_presence], window, "absence")
    surface = estimate_risk(presence, absence, window, kernel=kernel, engine=engine)

    correction = critical_p_value(surface.p_value.values, method=p_correct, alpha=alpha)
    if verbose:
        n_sig = int(correction.significant(surface.p_value.values).sum())
        print(f"  ✓ Surface: bandwidth={surface.bandwidth:.4g}, "
              f"critical p={correction.critical_p:.4g} ({p_correct}), {n_sig:,} significant cells")

    result = EstimateResult(
        surface=surface,
        presence=presence,
        absence=absence,
        windows=windows,
        correction=correction,
        observations=observations.to_dataframe(config),
    )

    # ---- Prediction ----
    if predict:
        if verbose:
            print("\n[Niche] Predicting area of interest...")
        result.predictions = project_surface(surface, predictions, config, verbose=verbose)

    # ---- Cross-validation ----
    if cv:
        result.cv = cross_validate(
            observations,
            window,
            kfold=kfold,
            balance=balance,
            kernel=kernel,
            engine=engine,
            parallel=parallel,
            n_core=n_core,
            seed=seed,
            verbose=verbose,
        )
        result.diagnostics = cv_diagnostics(result.cv, verbose=verbose)

    return result
