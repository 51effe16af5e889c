"""
correction.py - Multiple testing correction for risk surfaces

Each cell of a relative risk surface is a separate test of
H0: log relative risk = 0. These functions turn a nominal alpha and the
surface's p-values into a single critical p-value:

- 'none'       : alpha
- 'Bonferroni' : alpha / m
- 'Sidak'      : 1 - (1 - alpha)^(1/m)
- 'FDR'        : Benjamini-Hochberg step-up; the largest p(i) with
                 p(i) <= (i / m) * alpha. If no p-value qualifies the
                 critical value falls back to alpha.

m is the number of non-missing cells.
"""

from __future__ import annotations

import numpy as np

from ..data.config import InvalidParameterError, validate_alpha, validate_correction_method
from ..data.core import CorrectionResult


def _fdr_critical(p_sorted: np.ndarray, alpha: float) -> float:
    m = len(p_sorted)
    ranks = np.arange(1, m + 1)
    passing = np.nonzero(p_sorted <= ranks / m * alpha)[0]
    if len(passing) == 0:
        return alpha
    return float(p_sorted[passing[-1]])


def critical_p_value(p_values: np.ndarray,
                     method: str = "none",
                     alpha: float = 0.05) -> CorrectionResult:
    """
    Critical p-value for one surface.

    Parameters
    ----------
    p_values : np.ndarray
        P-values of one surface (any shape). Missing values are dropped.
    method : str
        'none', 'FDR', 'Sidak' or 'Bonferroni' (case-insensitive)
    alpha : float
        Nominal significance level in (0, 1)

    Returns
    -------
    CorrectionResult

    Raises
    ------
    InvalidParameterError
        Unknown method, alpha outside (0, 1), or no non-missing p-values
        for a method that needs them.

    Examples
    --------
    >>> res = critical_p_value(surface.p_value.values, method='FDR', alpha=0.05)
    >>> sig = res.significant(surface.p_value.values)
    """
    method = validate_correction_method(method)
    alpha = validate_alpha(alpha)

    p = np.asarray(p_values, dtype=float).ravel()
    p = p[~np.isnan(p)]
    m = len(p)

    if method == "none":
        return CorrectionResult(critical_p=alpha, method=method, alpha=alpha, n_tests=m)

    if m == 0:
        raise InvalidParameterError(f"'{method}' correction needs at least one non-missing p-value")

    if method == "Bonferroni":
        critical = alpha / m
    elif method == "Sidak":
        critical = 1 - (1 - alpha) ** (1 / m)
    else:
        critical = _fdr_critical(np.sort(p), alpha)

    return CorrectionResult(critical_p=float(critical), method=method, alpha=alpha, n_tests=m)
