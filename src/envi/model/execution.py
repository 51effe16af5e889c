"""
execution.py - Serial or joblib-parallel iteration with reproducible seeds

Cross-validation folds and Monte Carlo trials share one loop shape:
n independent iterations, each returning a self-contained result that
the caller folds into an accumulator.

Reproducibility: iteration i always receives the i-th child of
SeedSequence(seed), whatever the worker count, and results are reduced
in iteration order, so serial and parallel runs give identical numbers.
"""

from __future__ import annotations

from typing import Any, Callable

import numpy as np
from joblib import Parallel, delayed

from ..data.config import InvalidParameterError


class Reducer:
    """
    Accumulator fed with iteration results in iteration order.

    Subclasses implement `update` (fold one result in) and `result`
    (return the combined value).
    """

    def update(self, item: Any) -> None:
        raise NotImplementedError

    def result(self) -> Any:
        raise NotImplementedError


class ListReducer(Reducer):
    """Collects results into a list, preserving iteration order."""

    def __init__(self):
        self._items = []

    def update(self, item: Any) -> None:
        self._items.append(item)

    def result(self) -> list:
        return list(self._items)


def as_seed_sequence(seed: int | np.random.SeedSequence | None) -> np.random.SeedSequence:
    if isinstance(seed, np.random.SeedSequence):
        return seed
    return np.random.SeedSequence(seed)


def spawn_seeds(seed: int | np.random.SeedSequence | None, n: int) -> list[np.random.SeedSequence]:
    """Independent child seeds, one per iteration."""
    return as_seed_sequence(seed).spawn(n)


def validate_workers(n_core: int) -> int:
    if int(n_core) != n_core or n_core < 1:
        raise InvalidParameterError(f"n_core must be an integer of at least 1, got {n_core}")
    return int(n_core)


def run_iterations(func: Callable[[int, np.random.SeedSequence], Any],
                   seeds: list[np.random.SeedSequence],
                   reducer: Reducer,
                   parallel: bool = False,
                   n_core: int = 2,
                   verbose: bool = False,
                   label: str = "iterations") -> Any:
    """
    Run `func(i, seeds[i])` for every iteration and reduce the results.

    Parameters
    ----------
    func : callable
        Function taking
        the iteration index and its SeedSequence
    seeds : list of SeedSequence
        One seed per iteration (see `spawn_seeds`); the list length fixes
        the iteration count
    reducer : Reducer
        Receives each result in iteration order
    parallel : bool
        Run iterations on `n_core` joblib workers
    n_core : int
        Number of joblib workers
    verbose : bool
        Print progress
    label : str
        Name used in progress messages

    Returns
    -------
    object
        `reducer.result()`

    Notes
    -----
    Any failing iteration aborts the whole call; pending iterations are
    cancelled and the exception propagates to the caller.
    """
    n_iter = len(seeds)

    if parallel:
        n_core = validate_workers(n_core)
        if verbose:
            print(f"  Running {n_iter} {label} on {n_core} workers...")
        # results stream back in submission order
        tasks = (delayed(func)(i, child) for i, child in enumerate(seeds))
        for item in Parallel(n_jobs=n_core, return_as="generator")(tasks):
            reducer.update(item)
    else:
        if verbose:
            print(f"  Running {n_iter} {label}...")
        for i, child in enumerate(seeds):
            reducer.update(func(i, child))
            if verbose and n_iter >= 10 and (i + 1) % max(1, n_iter // 10) == 0:
                print(f"    {i + 1}/{n_iter}")

    if verbose:
        print(f"  ✓ Completed {n_iter} {label}")

    return reducer.result()
