"""
crossval.py - K-fold cross-validation of the relative risk model

Partition -> fold loop -> pool:
- Partition: observations are split into k random folds of near-equal
  size. With `balance=True`, presences and absences are split
  separately and each absence test fold is undersampled (uniformly,
  without replacement) to the size of its presence test fold, so every
  test fold has prevalence 0.5.
- Fold loop: a fresh surface is fitted on the training rows only;
  missing cells are set to the neutral log relative risk 0 and the
  surface is read at each held-out point.
- Pool: (predicted log relative risk, label) pairs from all folds are
  concatenated for the discrimination metrics.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial

import numpy as np
import pandas as pd

from ..data.config import EnviConfig, InputContractError, InvalidParameterError, KernelOptions
from ..data.core import EstimationWindow, ObservationTable
from .execution import ListReducer, as_seed_sequence, run_iterations
from .risk import estimate_from_table


@dataclass(frozen=True)
class CrossValidationFold:
    """Row indices of one fold's training and testing subsets."""

    k: int
    train: np.ndarray
    test: np.ndarray

    def __post_init__(self):
        if np.intersect1d(self.train, self.test).size:
            raise InputContractError(f"Fold {self.k}: training and testing rows overlap")


@dataclass
class FoldPrediction:
    """Held-out predictions of one fold."""

    k: int
    ids: np.ndarray
    predictions: np.ndarray
    labels: np.ndarray


@dataclass
class CrossValidationResult:
    """
    Pooled held-out predictions from k-fold cross-validation.

    Attributes
    ----------
    folds : list of FoldPrediction
        Per-fold predictions, in fold order
    balance : bool
        Whether test folds were balanced to prevalence 0.5
    """

    folds: list
    balance: bool = False

    @property
    def n_folds(self) -> int:
        return len(self.folds)

    @property
    def cv_predictions_rr(self) -> list[np.ndarray]:
        return [f.predictions for f in self.folds]

    @property
    def cv_labels(self) -> list[np.ndarray]:
        return [f.labels for f in self.folds]

    @property
    def predictions(self) -> np.ndarray:
        """Pooled predicted log relative risk."""
        return np.concatenate(self.cv_predictions_rr) if self.folds else np.array([])

    @property
    def labels(self) -> np.ndarray:
        """Pooled presence (1) / absence (0) labels."""
        return np.concatenate(self.cv_labels) if self.folds else np.array([], dtype=int)

    def to_dataframe(self, config: EnviConfig | None = None) -> pd.DataFrame:
        config = config or EnviConfig()
        return pd.DataFrame(
            {
                "fold": np.concatenate([np.full(len(f.ids), f.k) for f in self.folds]),
                config.id_col: np.concatenate([f.ids for f in self.folds]),
                "rr": self.predictions,
                config.presence_col: self.labels,
            }
        )


# ========== Partition ==========

def validate_kfold(kfold: int, fit: bool = False) -> int:
    """
    Check the fold count.

    Partitioning accepts any k >= 1. Fitting needs k >= 2: with a single
    fold every row is held out and the training set is empty.
    """
    if int(kfold) != kfold or kfold < 1:
        raise InvalidParameterError(f"The 'kfold' argument must be an integer of at least 1, got {kfold}")
    if fit and kfold < 2:
        raise InvalidParameterError(
            "The 'kfold' argument must be at least 2 for cross-validation: with a single fold "
            "every observation is held out and the training set is empty"
        )
    return int(kfold)


def _split(indices: np.ndarray, kfold: int, rng: np.random.Generator) -> list[np.ndarray]:
    """Random permutation cut into k contiguous, near-equal segments."""
    return np.array_split(rng.permutation(indices), kfold)


def make_folds(presence: np.ndarray,
               kfold: int,
               balance: bool = False,
               seed: int | np.random.SeedSequence | None = None) -> list[CrossValidationFold]:
    """
    Partition observations into k folds.

    Parameters
    ----------
    presence : np.ndarray
        Presence (1) / absence (0) label per observation
    kfold : int
        Number of folds (>= 1)
    balance : bool
        Balance each test fold to prevalence 0.5 by undersampling
        absences
    seed : int or SeedSequence, optional
        Seed for the partition and the undersampling

    Returns
    -------
    list of CrossValidationFold
    """
    kfold = validate_kfold(kfold)

    presence = np.asarray(presence)
    n = len(presence)
    all_idx = np.arange(n)
    partition_seed, sample_seed = as_seed_sequence(seed).spawn(2)
    rng = np.random.default_rng(partition_seed)

    if not balance:
        segments = _split(all_idx, kfold, rng)
        return [
            CrossValidationFold(k=k, train=np.setdiff1d(all_idx, seg), test=np.sort(seg))
            for k, seg in enumerate(segments)
        ]

    pres_idx = all_idx[presence == 1]
    abs_idx = all_idx[presence == 0]
    if len(abs_idx) < len(pres_idx):
        raise InputContractError(
            f"balance=True undersamples absences and needs at least as many absences ({len(abs_idx)}) "
            f"as presences ({len(pres_idx)})"
        )

    pres_segments = _split(pres_idx, kfold, rng)
    abs_segments = _split(abs_idx, kfold, rng)
    sample_rngs = [np.random.default_rng(s) for s in sample_seed.spawn(kfold)]

    folds = []
    for k in range(kfold):
        test_pres = pres_segments[k]
        test_abs = sample_rngs[k].choice(abs_segments[k], size=len(test_pres), replace=False)
        held_out = np.concatenate([test_pres, abs_segments[k]])
        folds.append(
            CrossValidationFold(
                k=k,
                train=np.setdiff1d(all_idx, held_out),
                test=np.concatenate([test_pres, test_abs]),
            )
        )
    return folds


# ========== Fold loop ==========

def _fit_fold(i: int,
              seed: np.random.SeedSequence,
              observations: ObservationTable,
              folds: list[CrossValidationFold],
              window: EstimationWindow,
              kernel: KernelOptions,
              engine) -> FoldPrediction:
    fold = folds[i]
    training = observations.subset(fold.train)
    testing = observations.subset(fold.test)

    surface = estimate_from_table(training, window, kernel=kernel, engine=engine)

    # Missing cells and points off the grid get the null value log(rr) = 0
    rr = surface.log_rr.filled(0.0).lookup(testing.cov1, testing.cov2)
    rr = np.nan_to_num(rr, nan=0.0)

    return FoldPrediction(k=fold.k, ids=testing.ids, predictions=rr, labels=testing.presence.copy())


def cross_validate(observations: ObservationTable,
                   window: EstimationWindow,
                   kfold: int = 10,
                   balance: bool = False,
                   kernel: KernelOptions | None = None,
                   engine=None,
                   parallel: bool = False,
                   n_core: int = 2,
                   seed: int | np.random.SeedSequence | None = None,
                   verbose: bool = False) -> CrossValidationResult:
    """
    K-fold cross-validation of the relative risk surface.

    Parameters
    ----------
    observations : ObservationTable
        All presence and absence observations
    window : EstimationWindow
        Window every fold is estimated in
    kfold : int
        Number of folds (>= 2)
    balance : bool
        Prevalence 0.5 in every test fold
    kernel : KernelOptions, optional
        Density-ratio engine settings
    engine : optional
        Density-ratio engine (default KernelDensityRatio)
    parallel : bool
        Fit folds in worker processes
    n_core : int
        Number of worker processes
    seed : int or SeedSequence, optional
        Root seed; identical seeds give identical results whether run
        serially or in parallel
    verbose : bool
        Print progress

    Returns
    -------
    CrossValidationResult

    Examples
    --------
    >>> cv = cross_validate(obs, windows.window, kfold=10, balance=True, seed=1)
    >>> cv.predictions.shape, cv.labels.mean()
    """
    kfold = validate_kfold(kfold, fit=True)
    if verbose:
        print(f"\n[Cross-validation] {kfold}-fold (balance={balance})...")

    partition_seed, loop_seed = as_seed_sequence(seed).spawn(2)
    folds = make_folds(observations.presence, kfold, balance=balance, seed=partition_seed)

    func = partial(_fit_fold, observations=observations, folds=folds, window=window, kernel=kernel, engine=engine)
    fold_results = run_iterations(
        func,
        loop_seed.spawn(len(folds)),
        ListReducer(),
        parallel=parallel,
        n_core=n_core,
        verbose=verbose,
        label="folds",
    )

    result = CrossValidationResult(folds=fold_results, balance=balance)
    if verbose:
        print(f"  ✓ Pooled {len(result.labels):,} held-out predictions from {result.n_folds} folds")
    return result
