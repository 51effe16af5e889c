"""
risk.py - Relative risk surface estimation within a window

Thin wrapper around the density-ratio engine: confines the presence and
absence points to the estimation window, always requests p-values, and
returns the resulting RiskSurface. Inputs are never modified.
"""

from __future__ import annotations

import warnings

import numpy as np

from ..data.config import BoundaryWarning, KernelOptions
from ..data.core import EstimationWindow, ObservationTable, RiskSurface
from .engine import KernelDensityRatio


def resolve_kernel(kernel: KernelOptions | dict | None) -> KernelOptions:
    """Accept KernelOptions, a dict of its fields, or None (defaults)."""
    if kernel is None:
        return KernelOptions()
    if isinstance(kernel, KernelOptions):
        return kernel
    return KernelOptions(**kernel)


def confine_to_window(xy: np.ndarray, window: EstimationWindow, label: str) -> np.ndarray:
    """
    Points inside the window.

    Points outside are dropped with a BoundaryWarning.
    """
    xy = np.asarray(xy, dtype=float).reshape(-1, 2)
    inside = window.contains(xy)
    n_out = int((~inside).sum())
    if n_out:
        warnings.warn(
            f"{n_out} {label} point(s) lie outside the {window.role} estimation window and were excluded",
            BoundaryWarning,
            stacklevel=3,
        )
    return xy[inside]


def estimate_risk(presence_xy: np.ndarray,
                  absence_xy: np.ndarray,
                  window: EstimationWindow,
                  kernel: KernelOptions | dict | None = None,
                  engine=None) -> RiskSurface:
    """
    Log relative risk surface of presence versus absence.

    Parameters
    ----------
    presence_xy, absence_xy : np.ndarray
        Covariate coordinates (n × 2) of presence and absence points
    window : EstimationWindow
        Estimation window; points outside are excluded with a warning
    kernel : KernelOptions or dict, optional
        Bandwidth rule, edge correction and resolution
    engine : optional
        Density-ratio engine with a `fit(presence_xy, absence_xy, window,
        options, tolerate)` method. Default: KernelDensityRatio().

    Returns
    -------
    RiskSurface
        Positive log_rr favours presence; p-values are upper-tail
        asymptotic normal p-values under log_rr = 0.
    """
    engine = engine or KernelDensityRatio()
    presence = confine_to_window(presence_xy, window, "presence")
    absence = confine_to_window(absence_xy, window, "absence")
    return engine.fit(presence, absence, window, resolve_kernel(kernel), tolerate=True)


def estimate_from_table(observations: ObservationTable,
                        window: EstimationWindow,
                        kernel: KernelOptions | dict | None = None,
                        engine=None) -> RiskSurface:
    """`estimate_risk` on the presence and absence rows of an ObservationTable."""
    xy = observations.covariates
    is_presence = observations.presence == 1
    return estimate_risk(xy[is_presence], xy[~is_presence], window, kernel=kernel, engine=engine)
