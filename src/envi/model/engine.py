"""
engine.py - Kernel density-ratio engine

Default implementation of the density-ratio collaborator used by the
estimator: fixed-bandwidth Gaussian kernel densities of the presence and
absence patterns binned and smoothed on a regular grid over the window,
their log ratio, and asymptotic p-values for H0: log relative risk = 0.

Any object with the same `fit` signature can be passed to the estimator
instead.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.ndimage import gaussian_filter
from scipy.stats import norm

from ..data.config import InputContractError, KernelOptions
from ..data.core import EstimationWindow, GridSurface, RiskSurface

# Roughness of the 2D Gaussian kernel, integral of K^2
RK_GAUSSIAN = 1 / (4 * np.pi)


def _robust_scale(xy: np.ndarray) -> float:
    """Mean over both axes of min(sd, IQR / 1.34)."""
    sd = np.std(xy, axis=0, ddof=1)
    q75, q25 = np.percentile(xy, [75, 25], axis=0)
    iqr = (q75 - q25) / 1.34
    scale = np.where(iqr > 0, np.minimum(sd, iqr), sd)
    return float(np.mean(scale))


def select_bandwidth(xy: np.ndarray, rule: str | float = "oversmooth") -> float:
    """
    Global bandwidth for a 2D point pattern.

    Parameters
    ----------
    xy : np.ndarray
        Points (n × 2)
    rule : str or float
        'oversmooth' (Terrell's maximal smoothing principle),
        'scott', 'silverman', or a fixed positive value

    Returns
    -------
    float
    """
    if not isinstance(rule, str):
        return float(rule)

    n = len(xy)
    if n < 2:
        raise InputContractError(f"Need at least 2 points to select a bandwidth, got {n}")

    if rule == "oversmooth":
        h = _robust_scale(xy) * ((243 * RK_GAUSSIAN) / (35 * n)) ** (1 / 6)
    elif rule == "scott":
        h = float(np.mean(np.std(xy, axis=0, ddof=1))) * n ** (-1 / 6)
    elif rule == "silverman":
        h = _robust_scale(xy) * n ** (-1 / 6)
    else:
        raise InputContractError(f"Unknown bandwidth rule: '{rule}'")

    if not h > 0:
        raise InputContractError("Bandwidth is zero: points have no spread in covariate space")
    return h


def _sigma_cells(h: float, dx: float, dy: float) -> tuple[float, float]:
    """Bandwidth in grid cells, (rows, cols) order for scipy.ndimage."""
    return h / dy, h / dx


@dataclass
class KernelDensityRatio:
    """
    Fixed-bandwidth Gaussian kernel estimate of log(f / g).

    Points are binned onto the estimation grid and smoothed with
    scipy.ndimage.gaussian_filter. Kernel mass falling outside the grid
    is lost (mode='constant'), and the window-mass surface used for
    edge correction is the same filter applied to the window mask.

    Attributes
    ----------
    truncate : float
        Kernel support in bandwidths, passed to gaussian_filter
    """

    truncate: float = 4.0

    def fit(self,
            presence_xy: np.ndarray,
            absence_xy: np.ndarray,
            window: EstimationWindow,
            options: KernelOptions | None = None,
            tolerate: bool = True) -> RiskSurface:
        """
        Estimate the log relative risk surface within a window.

        Parameters
        ----------
        presence_xy, absence_xy : np.ndarray
            Covariate coordinates of presence / absence points (n × 2),
            all inside `window`
        window : EstimationWindow
            Estimation window
        options : KernelOptions, optional
            Bandwidth rule, edge correction and grid resolution
        tolerate : bool
            If True, compute asymptotic p-values; otherwise the p-value
            grid is all missing.

        Returns
        -------
        RiskSurface
        """
        options = options or KernelOptions()
        presence_xy = np.asarray(presence_xy, dtype=float).reshape(-1, 2)
        absence_xy = np.asarray(absence_xy, dtype=float).reshape(-1, 2)
        n_f, n_g = len(presence_xy), len(absence_xy)
        if n_f == 0 or n_g == 0:
            raise InputContractError(
                f"Both presence and absence points are required inside the window "
                f"(presence={n_f}, absence={n_g})"
            )

        h = select_bandwidth(np.vstack([presence_xy, absence_xy]), options.bandwidth)

        # Grid over the window bounding box
        m = int(options.resolution)
        xmin, ymin, xmax, ymax = window.bounds
        x_edges = np.linspace(xmin, xmax, m + 1)
        y_edges = np.linspace(ymin, ymax, m + 1)
        gx = (x_edges[:-1] + x_edges[1:]) / 2
        gy = (y_edges[:-1] + y_edges[1:]) / 2
        gxx, gyy = np.meshgrid(gx, gy)
        inside = window.contains(np.column_stack([gxx.ravel(), gyy.ravel()])).reshape(m, m)
        mask = inside.astype(float)
        sigma = _sigma_cells(h, x_edges[1] - x_edges[0], y_edges[1] - y_edges[0])
        cell_area = (x_edges[1] - x_edges[0]) * (y_edges[1] - y_edges[0])

        q = self._smooth(mask, sigma)
        f = self._density(presence_xy, x_edges, y_edges, mask, sigma, q, options.edge, cell_area)
        g = self._density(absence_xy, x_edges, y_edges, mask, sigma, q, options.edge, cell_area)

        with np.errstate(divide="ignore", invalid="ignore"):
            log_rr = np.log(f) - np.log(g)
        log_rr[~inside | ~np.isfinite(log_rr)] = np.nan

        if tolerate:
            p_value = self._asymptotic_p(log_rr, f, g, n_f, n_g, h, mask, sigma, q, options.edge)
        else:
            p_value = np.full_like(log_rr, np.nan)

        return RiskSurface(
            log_rr=GridSurface(gx, gy, log_rr),
            p_value=GridSurface(gx, gy, p_value),
            bandwidth=h,
            window=window,
            n_presence=n_f,
            n_absence=n_g,
            params={"bandwidth": options.bandwidth, "edge": options.edge, "resolution": m},
        )

    def _smooth(self, grid: np.ndarray, sigma: tuple[float, float]) -> np.ndarray:
        return gaussian_filter(grid, sigma=sigma, mode="constant", cval=0.0, truncate=self.truncate)

    def _density(self, xy, x_edges, y_edges, mask, sigma, q, edge, cell_area) -> np.ndarray:
        weights = np.full(len(xy), 1.0 / len(xy))
        if edge == "diggle":
            # window mass at each point's own cell
            cols = np.clip(np.searchsorted(x_edges, xy[:, 0], side="right") - 1, 0, len(x_edges) - 2)
            rows = np.clip(np.searchsorted(y_edges, xy[:, 1], side="right") - 1, 0, len(y_edges) - 2)
            weights = weights / np.maximum(q[rows, cols], 1e-12)

        counts, _, _ = np.histogram2d(xy[:, 1], xy[:, 0], bins=[y_edges, x_edges], weights=weights)
        dens = self._smooth(counts, sigma)
        if edge == "uniform":
            dens = dens / np.maximum(q, 1e-12)

        dens = np.where(mask > 0, dens, np.nan)
        total = np.nansum(dens) * cell_area
        return dens / total

    def _asymptotic_p(self, log_rr, f, g, n_f, n_g, h, mask, sigma, q, edge) -> np.ndarray:
        """
        Upper-tail p-values P = 1 - Phi(log_rr / se).

        se^2 = RK / h^2 * (1/n_f + 1/n_g) / pooled density, scaled by
        q2 / q^2 under edge correction, where q2 is the window mass of
        K^2 (a Gaussian of bandwidth h / sqrt(2)).
        """
        pooled = (n_f * f + n_g * g) / (n_f + n_g)
        if edge == "none":
            edge_factor = 1.0
        else:
            q2 = self._smooth(mask, (sigma[0] / np.sqrt(2), sigma[1] / np.sqrt(2)))
            edge_factor = q2 / np.maximum(q, 1e-12) ** 2

        with np.errstate(divide="ignore", invalid="ignore"):
            var = RK_GAUSSIAN / h**2 * (1 / n_f + 1 / n_g) / pooled * edge_factor
            z = log_rr / np.sqrt(var)
        p = norm.sf(z)
        p[np.isnan(log_rr)] = np.nan
        return p
