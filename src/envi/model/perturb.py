"""
perturb.py - Spatial perturbation sensitivity analysis

Repeats the niche estimate with observation coordinates randomly
jittered, to see how positional uncertainty propagates through the
covariate values into the relative risk surface.

Each trial:
1. Displaces every observation uniformly within a disc whose radius
   depends on its perturbation group (radius 0 = unchanged)
2. Re-reads both covariates at the new coordinates and drops points
   that land where a covariate is undefined
3. Estimates the surface within the outer window (hull around the
   prediction locations) and applies the multiple testing correction
4. Marks cells with p < critical/2 or p > 1 - critical/2 as significant

Across trials, cell-wise statistics are accumulated as results arrive:
mean and standard deviation of the log relative risk, mean p-value and
the proportion of trials in which the cell was significant, plus the
median critical p-value.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from functools import partial

import numpy as np
import pandas as pd

from ..data.config import (
    BoundaryWarning,
    EnviConfig,
    GeometryError,
    InputContractError,
    InvalidParameterError,
    KernelOptions,
    validate_alpha,
    validate_correction_method,
)
from ..data.core import (
    CorrectionResult,
    EstimationWindow,
    GridSurface,
    ObservationTable,
    PredictionTable,
    RiskSurface,
)
from ..spatial.boundaries import BoundaryWindows, build_windows
from ..spatial.raster import covariates_to_predictions, extract_covariates, project_grids
from .correction import critical_p_value
from .execution import Reducer, run_iterations, spawn_seeds, validate_workers
from .risk import estimate_from_table, resolve_kernel


@dataclass
class PerturbationIteration:
    """
    Result of one Monte Carlo trial.

    Attributes
    ----------
    index : int
        Trial number
    observations : ObservationTable
        Perturbed observations used for the fit
    surface : RiskSurface
        Fitted surface
    correction : CorrectionResult
        Critical p-value of this trial
    significant : np.ndarray
        Boolean significance grid
    """

    index: int
    observations: ObservationTable
    surface: RiskSurface
    correction: CorrectionResult
    significant: np.ndarray


@dataclass
class AggregateStatistics:
    """
    Cell-wise summary of all perturbation trials.

    Attributes
    ----------
    lrr_mean, lrr_sd : GridSurface
        Mean and standard deviation (n - 1 denominator) of log relative risk
    pval_mean : GridSurface
        Mean p-value
    pval_prop : GridSurface
        Proportion of trials in which the cell was significant
    critical_values : np.ndarray
        Critical p-value of each trial, in trial order
    n_sim : int
        Number of trials
    window : EstimationWindow
        Window shared by all trials
    """

    lrr_mean: GridSurface
    lrr_sd: GridSurface
    pval_mean: GridSurface
    pval_prop: GridSurface
    critical_values: np.ndarray
    n_sim: int
    window: EstimationWindow

    @property
    def alpha_median(self) -> float:
        """Median of the per-trial critical p-values."""
        return float(np.median(self.critical_values))

    def grids(self) -> dict[str, GridSurface]:
        return {
            "lrr_mean": self.lrr_mean,
            "lrr_sd": self.lrr_sd,
            "pval_mean": self.pval_mean,
            "pval_prop": self.pval_prop,
        }

    def to_dataframe(self, config: EnviConfig | None = None) -> pd.DataFrame:
        """One row per cell with at least one non-missing trial."""
        config = config or EnviConfig()
        centers = self.lrr_mean.cell_centers()
        df = pd.DataFrame({config.cov1_col: centers[:, 0], config.cov2_col: centers[:, 1]})
        for name, grid in self.grids().items():
            df[name] = grid.values.ravel()
        return df.dropna(subset=["lrr_mean"]).reset_index(drop=True)

    def __repr__(self) -> str:
        return f"AggregateStatistics(n_sim={self.n_sim}, shape={self.lrr_mean.shape}, alpha_median={self.alpha_median:.4g})"


class RunningSurfaceStatistics(Reducer):
    """
    Streaming cell-wise statistics over trials.

    Welford's online update for the mean and variance of log relative
    risk; running sums for the p-value mean and significance count.
    Missing cells in a trial are skipped for that cell. The grid
    geometry is fixed by the first trial; a trial on a different grid
    raises GeometryError.
    """

    def __init__(self):
        self.n_sim = 0
        self._x = None
        self._y = None
        self._window = None
        self._critical = []

    def _start(self, grid: GridSurface, window: EstimationWindow) -> None:
        shape = grid.shape
        self._x, self._y, self._window = grid.x, grid.y, window
        self._count = np.zeros(shape)
        self._mean = np.zeros(shape)
        self._m2 = np.zeros(shape)
        self._p_count = np.zeros(shape)
        self._p_sum = np.zeros(shape)
        self._sig_count = np.zeros(shape)

    def update(self, item: PerturbationIteration) -> None:
        grid = item.surface.log_rr
        if self._x is None:
            self._start(grid, item.surface.window)
        elif not grid.same_geometry(GridSurface(self._x, self._y, self._mean)):
            raise GeometryError(
                f"Perturbation trial {item.index} produced a grid that differs from the first trial's grid"
            )

        v = grid.values
        ok = ~np.isnan(v)
        self._count[ok] += 1
        delta = np.where(ok, v - self._mean, 0.0)
        self._mean[ok] += delta[ok] / self._count[ok]
        self._m2[ok] += delta[ok] * (v[ok] - self._mean[ok])

        p = item.surface.p_value.values
        p_ok = ~np.isnan(p)
        self._p_count[p_ok] += 1
        self._p_sum[p_ok] += p[p_ok]

        self._sig_count += item.significant
        self._critical.append(item.correction.critical_p)
        self.n_sim += 1

    def result(self) -> AggregateStatistics:
        if self.n_sim == 0:
            raise InputContractError("No perturbation trials were run")

        with np.errstate(invalid="ignore", divide="ignore"):
            mean = np.where(self._count > 0, self._mean, np.nan)
            sd = np.where(self._count > 1, np.sqrt(self._m2 / (self._count - 1)), np.nan)
            pval_mean = np.where(self._p_count > 0, self._p_sum / self._p_count, np.nan)
        prop = np.where(self._p_count > 0, self._sig_count / self.n_sim, np.nan)

        def grid(values):
            return GridSurface(self._x, self._y, values)

        critical = np.asarray(self._critical)
        return AggregateStatistics(
            lrr_mean=grid(mean),
            lrr_sd=grid(sd),
            pval_mean=grid(pval_mean),
            pval_prop=grid(prop),
            critical_values=critical,
            n_sim=self.n_sim,
            window=self._window,
        )


@dataclass
class PerturbResult:
    """
    Output of `perturb_niche`.

    Attributes
    ----------
    sim : AggregateStatistics
        Cell-wise summary surfaces
    predict : pd.DataFrame or None
        Summary statistics at the prediction locations (predict=True)
    windows : BoundaryWindows
        Windows of the first trial, shared by all trials
    """

    sim: AggregateStatistics
    predict: pd.DataFrame | None
    windows: BoundaryWindows


# ========== Perturbation ==========

def jitter(lon: np.ndarray, lat: np.ndarray, radius: float, rng: np.random.Generator) -> tuple[np.ndarray, np.ndarray]:
    """
    Displace points uniformly within a disc of `radius`.

    The same number of draws is made for any radius, so the random
    stream does not depend on the radii.
    """
    n = len(lon)
    r = radius * np.sqrt(rng.random(n))
    theta = rng.uniform(0, 2 * np.pi, n)
    return lon + r * np.cos(theta), lat + r * np.sin(theta)


def perturb_observations(observations: ObservationTable,
                         levels: np.ndarray,
                         radii: np.ndarray,
                         covariates: tuple[GridSurface, GridSurface],
                         rng: np.random.Generator) -> ObservationTable:
    """
    One random perturbation of the observations.

    Groups are jittered in the order of `levels`, recombined, given the
    covariate values at their new coordinates, and points whose new
    covariates are undefined are dropped.
    """
    parts = []
    for level, radius in zip(levels, radii):
        sub = observations.subset(observations.group == level)
        lon, lat = jitter(sub.lon, sub.lat, radius, rng)
        parts.append(sub.with_coordinates(lon, lat, sub.cov1, sub.cov2))

    moved = ObservationTable.concat(parts)
    cov1, cov2 = extract_covariates(covariates, moved.lon, moved.lat)
    moved = moved.with_coordinates(moved.lon, moved.lat, cov1, cov2)
    return moved.subset(np.isfinite(cov1) & np.isfinite(cov2))


def _run_trial(i: int,
               seed: np.random.SeedSequence,
               observations: ObservationTable,
               levels: np.ndarray,
               radii: np.ndarray,
               covariates: tuple[GridSurface, GridSurface],
               window: EstimationWindow,
               kernel: KernelOptions,
               engine,
               p_correct: str,
               alpha: float) -> PerturbationIteration:
    rng = np.random.default_rng(seed)
    perturbed = perturb_observations(observations, levels, radii, covariates, rng)
    surface = estimate_from_table(perturbed, window, kernel=kernel, engine=engine)
    correction = critical_p_value(surface.p_value.values, method=p_correct, alpha=alpha)
    return PerturbationIteration(
        index=i,
        observations=perturbed,
        surface=surface,
        correction=correction,
        significant=correction.significant(surface.p_value.values),
    )


def group_levels(group) -> np.ndarray:
    """
    Perturbation group levels, in the order radii are given.

    A categorical column contributes its declared categories (used or
    not); any other column its sorted unique labels.
    """
    dtype = getattr(group, "dtype", None)
    if isinstance(dtype, pd.CategoricalDtype):
        return np.asarray(dtype.categories)
    return np.unique(np.asarray(group))


def _prepare_observations(obs_locs, covariates, config: EnviConfig) -> ObservationTable:
    """Observation table with a group column; covariates are read from the rasters if absent."""
    if isinstance(obs_locs, ObservationTable):
        if obs_locs.group is None:
            raise InputContractError(f"'obs_locs' needs a perturbation group column '{config.group_col}'")
        return obs_locs

    if not isinstance(obs_locs, pd.DataFrame):
        raise InputContractError(f"'obs_locs' must be a pandas DataFrame, got {type(obs_locs).__name__}")

    df = obs_locs
    if config.cov1_col not in df.columns or config.cov2_col not in df.columns:
        for col in (config.lon_col, config.lat_col):
            if col not in df.columns:
                raise InputContractError(f"'obs_locs' is missing required column '{col}'")
        cov1, cov2 = extract_covariates(covariates, df[config.lon_col].to_numpy(float), df[config.lat_col].to_numpy(float))
        df = df.assign(**{config.cov1_col: cov1, config.cov2_col: cov2})
        keep = np.isfinite(cov1) & np.isfinite(cov2)
        if not keep.all():
            warnings.warn(
                f"{int((~keep).sum())} observation(s) lie outside the covariate rasters and were excluded",
                BoundaryWarning,
                stacklevel=3,
            )
            df = df.loc[keep]

    return ObservationTable.from_dataframe(df, config, require_group=True)


def perturb_niche(obs_locs,
                  covariates,
                  predict: bool = True,
                  predict_locs=None,
                  radii=None,
                  n_sim: int = 2,
                  alpha: float = 0.05,
                  p_correct: str = "none",
                  parallel: bool = False,
                  n_core: int = 2,
                  poly_buffer: float | None = None,
                  kernel: KernelOptions | dict | None = None,
                  engine=None,
                  seed: int | None = None,
                  config: EnviConfig | None = None,
                  verbose: bool = False) -> PerturbResult:
    """
    Sensitivity of the niche estimate to positional uncertainty.

    Parameters
    ----------
    obs_locs : pd.DataFrame or ObservationTable
        Observations with columns id, lon, lat, presence, group and
        optionally cov1, cov2 (read from `covariates` when absent)
    covariates : sequence of two GridSurface
        Covariate rasters in geographic space, on one grid
    predict : bool
        Project the summary surfaces onto the prediction locations
    predict_locs : pd.DataFrame or PredictionTable, optional
        Prediction locations (lon, lat, cov1, cov2). Default: every
        raster cell where both covariates are defined.
    radii : sequence of float, optional
        Jitter radius per group, aligned with `group_levels` of the group
        column: its declared categories when categorical, otherwise the
        sorted labels.
        Default: 0 for every group (no perturbation).
    n_sim : int
        Number of Monte Carlo trials
    alpha : float
        Two-tailed significance level in (0, 1)
    p_correct : str
        'none', 'FDR', 'Sidak' or 'Bonferroni'
    parallel : bool
        Run trials in worker processes
    n_core : int
        Number of worker processes
    poly_buffer : float, optional
        Window buffer (default from the first trial's inner hull)
    kernel : KernelOptions or dict, optional
        Density-ratio engine settings
    engine : optional
        Density-ratio engine (default KernelDensityRatio)
    seed : int, optional
        Root seed; identical seeds give identical results whether run
        serially or in parallel
    config : EnviConfig, optional
        Column names
    verbose : bool
        Print progress

    Returns
    -------
    PerturbResult

    Examples
    --------
    >>> res = perturb_niche(obs, (elev, grad), radii=[10, 100, 500], n_sim=100, seed=1)
    >>> res.sim.pval_prop
    >>> res.predict[['lon', 'lat', 'lrr_mean', 'pval_prop']]
    """
    config = config or EnviConfig()

    # ---- Argument checks (before any estimation work) ----
    if not isinstance(covariates, (list, tuple)) or len(covariates) != 2 or not all(
        isinstance(c, GridSurface) for c in covariates
    ):
        raise InputContractError("'covariates' must be a sequence of two GridSurface rasters")
    covariates = tuple(covariates)
    if not covariates[0].same_geometry(covariates[1]):
        raise InputContractError("'covariates' rasters must share one grid geometry")

    observations = _prepare_observations(obs_locs, covariates, config)
    if isinstance(obs_locs, pd.DataFrame):
        levels = group_levels(obs_locs[config.group_col])
    else:
        levels = group_levels(observations.group)

    if radii is None:
        radii = np.zeros(len(levels))
        if verbose:
            print("The argument 'radii' is unspecified and the observation coordinates are not perturbed")
    radii = np.asarray(radii, dtype=float).ravel()
    if len(radii) != len(levels):
        raise InvalidParameterError(
            f"The argument 'radii' must have a length equal to the number of group levels "
            f"({len(levels)}), got {len(radii)}"
        )
    if np.any(~np.isfinite(radii)) or np.any(radii < 0):
        raise InvalidParameterError("The argument 'radii' must contain non-negative numbers")

    alpha = validate_alpha(alpha)
    p_correct = validate_correction_method(p_correct)
    if int(n_sim) != n_sim or n_sim < 1:
        raise InvalidParameterError(f"'n_sim' must be an integer of at least 1, got {n_sim}")
    n_sim = int(n_sim)
    if parallel:
        validate_workers(n_core)
    if poly_buffer is not None and not poly_buffer >= 0:
        raise InvalidParameterError(f"'poly_buffer' must be a non-negative number, got {poly_buffer}")
    kernel = resolve_kernel(kernel)

    if predict_locs is None:
        predictions = covariates_to_predictions(covariates)
    elif isinstance(predict_locs, pd.DataFrame):
        predictions = PredictionTable.from_dataframe(predict_locs, config)
    else:
        predictions = predict_locs

    if verbose:
        print(f"\n[Perturb] Randomly perturbing the spatial coordinates and estimating ecological niche "
              f"({n_sim} trials, {len(levels)} groups)...")

    # ---- Window fixed by the first trial ----
    seeds = spawn_seeds(seed, n_sim)
    first = perturb_observations(observations, levels, radii, covariates, np.random.default_rng(seeds[0]))
    windows = build_windows(
        first.covariates,
        predict_covariates=predictions.covariates,
        conserve=False,
        poly_buffer=poly_buffer,
        verbose=verbose,
    )

    # ---- Trials ----
    func = partial(
        _run_trial,
        observations=observations,
        levels=levels,
        radii=radii,
        covariates=covariates,
        window=windows.outer,
        kernel=kernel,
        engine=engine,
        p_correct=p_correct,
        alpha=alpha,
    )
    sim = run_iterations(
        func, seeds, RunningSurfaceStatistics(), parallel=parallel, n_core=n_core, verbose=verbose, label="trials"
    )
    if verbose:
        print(f"  ✓ Median critical p-value: {sim.alpha_median:.4g}")

    # ---- Projection ----
    projected = None
    if predict:
        if verbose:
            print("\n[Perturb] Predicting area of interest...")
        projected = project_grids(sim.grids(), predictions, config)
        outside = ~windows.outer.contains(predictions.covariates)
        projected.loc[outside, list(sim.grids())] = np.nan
        if verbose:
            n_ok = int(projected["lrr_mean"].notna().sum())
            print(f"  ✓ Projected {n_ok:,}/{len(projected):,} locations")

    return PerturbResult(sim=sim, predict=projected, windows=windows)
