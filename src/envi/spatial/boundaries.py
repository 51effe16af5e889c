"""
boundaries.py - Estimation windows in covariate space

Builds the polygons that bound where the relative risk surface is
estimated:
- inner window: hull around the observation covariates
- outer window: hull around the prediction-location covariates

Hulls are concave by default (tighter than convex, so the surface does
not extend into covariate combinations with no evidence) and buffered
outward so points lying on the hull survive the point-in-polygon test.
Very large inputs fall back to a convex hull.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np
import shapely
from scipy.spatial import ConvexHull, QhullError
from shapely.geometry import MultiPoint, Polygon
from shapely.geometry.polygon import orient

from ..data.config import BoundaryWarning, GeometryError, InputContractError
from ..data.core import EstimationWindow

# Above this many points the outer hull is convex rather than concave
CONVEX_HULL_THRESHOLD = 5_000_000

# Passed to shapely.concave_hull; 0 = tightest, 1 = convex
DEFAULT_CONCAVITY = 0.3


@dataclass(frozen=True)
class BoundaryWindows:
    """
    Windows computed for one estimation call.

    Attributes
    ----------
    inner : EstimationWindow
        Buffered hull around the observations
    outer : EstimationWindow
        Buffered hull around the prediction locations, or `inner`
        when no prediction locations were given
    window : EstimationWindow
        The window used for estimation (inner, outer or custom)
    """

    inner: EstimationWindow
    outer: EstimationWindow
    window: EstimationWindow

    @property
    def buffer(self) -> float:
        return self.inner.buffer


def _clean_points(points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=float)
    if points.ndim != 2 or points.shape[1] != 2:
        raise GeometryError(f"Hull input must be an (n × 2) array, got shape {points.shape}")
    return points[np.all(np.isfinite(points), axis=1)]


def compute_hull(points: np.ndarray,
                 method: str = "concave",
                 concavity: float = DEFAULT_CONCAVITY,
                 convex_threshold: int = CONVEX_HULL_THRESHOLD):
    """
    Enclosing hull of a 2D point set.

    Parameters
    ----------
    points : np.ndarray
        Points (n × 2). Rows with missing values are ignored.
    method : str
        'concave' or 'convex'. 'concave' is replaced by 'convex' when
        the number of points exceeds `convex_threshold`.
    concavity : float
        Ratio passed to shapely.concave_hull (0 = tightest, 1 = convex)
    convex_threshold : int
        Point count above which the convex hull is used

    Returns
    -------
    shapely geometry
        Polygon, or LineString when all points are collinear

    Raises
    ------
    GeometryError
        Fewer than 3 distinct points.
    """
    pts = _clean_points(points)
    n_distinct = len(np.unique(pts, axis=0)) if len(pts) else 0
    if n_distinct < 3:
        raise GeometryError(f"Need at least 3 distinct points to compute a hull, got {n_distinct}")

    if method not in ("concave", "convex"):
        raise GeometryError(f"Unknown hull method: '{method}'. Use 'concave' or 'convex'.")

    if method == "convex" or len(pts) > convex_threshold:
        try:
            hull = ConvexHull(pts)
        except QhullError:
            # all points collinear
            return MultiPoint(pts).convex_hull
        ring = pts[np.append(hull.vertices, hull.vertices[0])]
        return Polygon(ring)

    hull = shapely.concave_hull(MultiPoint(pts), ratio=concavity)
    if hull.is_empty or hull.area == 0:
        # all points collinear
        return MultiPoint(pts).convex_hull
    return hull


def default_buffer(hull) -> float:
    """1/100 of the smaller side of the hull's bounding box."""
    xmin, ymin, xmax, ymax = hull.bounds
    return abs(min(xmax - xmin, ymax - ymin)) / 100


def buffer_hull(hull, distance: float, role: str = "inner") -> EstimationWindow:
    """
    Buffer a hull outward and wrap it as an EstimationWindow.

    Only the exterior ring of the buffered geometry is kept.
    """
    if distance < 0:
        raise GeometryError(f"poly_buffer must be non-negative, got {distance}")
    geom = hull.buffer(distance) if distance > 0 else hull
    if not isinstance(geom, Polygon) or geom.is_empty or geom.area <= 0:
        raise GeometryError(
            f"Degenerate {role} window: hull of collinear points has zero area "
            f"(buffer={distance}). Provide a positive 'poly_buffer' or more varied covariates."
        )
    polygon = orient(Polygon(geom.exterior.coords), sign=1.0)
    return EstimationWindow(polygon=polygon, buffer=float(distance), role=role)


def as_window(obs_window) -> EstimationWindow:
    """
    Convert a user-supplied window to an EstimationWindow.

    Accepts an EstimationWindow, a shapely Polygon, or a closed
    coordinate ring (n × 2).
    """
    if isinstance(obs_window, EstimationWindow):
        return obs_window
    if isinstance(obs_window, Polygon):
        return EstimationWindow(polygon=orient(obs_window, sign=1.0), buffer=0.0, role="custom")
    ring = np.asarray(obs_window, dtype=float) if not isinstance(obs_window, (str, bytes)) else None
    if ring is None or ring.ndim != 2 or ring.shape[1] != 2 or len(ring) < 3:
        raise InputContractError(
            "'obs_window' must be a shapely Polygon, an EstimationWindow, or a coordinate ring (n × 2)"
        )
    return EstimationWindow(polygon=orient(Polygon(ring), sign=1.0), buffer=0.0, role="custom")


def build_windows(obs_covariates: np.ndarray,
                  predict_covariates: np.ndarray | None = None,
                  conserve: bool = True,
                  poly_buffer: float | None = None,
                  obs_window=None,
                  concavity: float = DEFAULT_CONCAVITY,
                  convex_threshold: int = CONVEX_HULL_THRESHOLD,
                  verbose: bool = False) -> BoundaryWindows:
    """
    Compute inner and outer estimation windows.

    Parameters
    ----------
    obs_covariates : np.ndarray
        Observation covariates (n × 2)
    predict_covariates : np.ndarray, optional
        Prediction-location covariates (m × 2). Rows with missing values
        are ignored.
    conserve : bool
        If True, estimate within the inner window; otherwise within the
        outer window (requires `predict_covariates`).
    poly_buffer : float, optional
        Buffer distance in covariate units. Default: 1/100 of the smaller
        bounding-box side of the inner hull. The same distance is applied
        to both windows.
    obs_window : Polygon or array, optional
        Custom estimation window; overrides the inner/outer choice.
    concavity : float
        Ratio for shapely.concave_hull
    convex_threshold : int
        Prediction-location count above which the outer hull is convex
    verbose : bool
        Print progress

    Returns
    -------
    BoundaryWindows

    Raises
    ------
    GeometryError
        Too few points, degenerate hull, or outer policy without
        prediction locations.
    """
    if not conserve and predict_covariates is None:
        raise GeometryError("Estimating within the outer window (conserve=False) requires prediction locations")

    inner_hull = compute_hull(obs_covariates, method="concave", concavity=concavity)
    if poly_buffer is None:
        poly_buffer = default_buffer(inner_hull)
    inner = buffer_hull(inner_hull, poly_buffer, role="inner")

    if predict_covariates is None:
        outer = inner
    else:
        n_pred = len(_clean_points(predict_covariates))
        method = "convex" if n_pred > convex_threshold else "concave"
        outer_hull = compute_hull(predict_covariates, method=method, concavity=concavity,
                                  convex_threshold=convex_threshold)
        outer = buffer_hull(outer_hull, poly_buffer, role="outer")
        if not outer.covers_window(inner, tolerance=poly_buffer * 1e-6):
            warnings.warn(
                "Inner window (observations) is not contained in the outer window "
                "(prediction locations); some observations may fall outside the outer window",
                BoundaryWarning,
                stacklevel=2,
            )

    if obs_window is not None:
        window = as_window(obs_window)
    else:
        window = inner if conserve else outer

    if verbose:
        print(f"  ✓ Windows: inner area={inner.area:.4g}, outer area={outer.area:.4g}, "
              f"buffer={poly_buffer:.4g}, using {window.role}")

    return BoundaryWindows(inner=inner, outer=outer, window=window)
