"""
core.py - Data structures for envi

Contains:
- ObservationRecord / PredictionRecord: one row of the input tables
- ObservationTable / PredictionTable: column-wise numpy storage of the tables
- EstimationWindow: polygon in covariate space within which densities are estimated
- GridSurface: regular grid of values with nearest-cell lookup
- RiskSurface: log relative risk and p-value grids from one fit
- CorrectionResult: critical p-value from a multiple testing correction
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, NamedTuple

import numpy as np
import pandas as pd
import shapely
from shapely.geometry import Polygon

from .config import EnviConfig, GeometryError, InputContractError


class ObservationRecord(NamedTuple):
    """One presence or absence observation."""

    id: object
    lon: float
    lat: float
    presence: int
    cov1: float
    cov2: float
    group: object = None


class PredictionRecord(NamedTuple):
    """One prediction location."""

    lon: float
    lat: float
    cov1: float
    cov2: float


def _require_columns(df: pd.DataFrame, columns: list[str], argument: str) -> None:
    if not isinstance(df, pd.DataFrame):
        raise InputContractError(f"'{argument}' must be a pandas DataFrame, got {type(df).__name__}")
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise InputContractError(f"'{argument}' is missing required columns {missing}; expected columns {columns}")


@dataclass
class ObservationTable:
    """
    Column-wise container for presence/absence observations.

    Uses numpy arrays for fast computation. Instances are never modified
    in place; `subset` and `with_coordinates` return new tables.
    """

    ids: np.ndarray
    lon: np.ndarray
    lat: np.ndarray
    presence: np.ndarray
    cov1: np.ndarray
    cov2: np.ndarray
    group: np.ndarray | None = None

    def __post_init__(self):
        """Validate all arrays have same length."""
        arrays = [self.ids, self.lon, self.lat, self.presence, self.cov1, self.cov2]
        if self.group is not None:
            arrays.append(self.group)
        lengths = [len(a) for a in arrays]
        if len(set(lengths)) != 1:
            raise InputContractError(f"Observation arrays have different lengths: {lengths}")

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def n_presence(self) -> int:
        return int(np.sum(self.presence == 1))

    @property
    def n_absence(self) -> int:
        return int(np.sum(self.presence == 0))

    @property
    def covariates(self) -> np.ndarray:
        """Covariate coordinates (n × 2)."""
        return np.column_stack([self.cov1, self.cov2])

    @property
    def coords(self) -> np.ndarray:
        """Geographic coordinates (n × 2)."""
        return np.column_stack([self.lon, self.lat])

    def subset(self, indices: np.ndarray) -> ObservationTable:
        """
        Subset by integer indices or boolean mask.

        Parameters
        ----------
        indices : np.ndarray
            Integer indices or boolean mask of rows to keep

        Returns
        -------
        ObservationTable
            New table with the subset
        """
        return ObservationTable(
            ids=self.ids[indices],
            lon=self.lon[indices],
            lat=self.lat[indices],
            presence=self.presence[indices],
            cov1=self.cov1[indices],
            cov2=self.cov2[indices],
            group=None if self.group is None else self.group[indices],
        )

    def with_coordinates(self, lon: np.ndarray, lat: np.ndarray, cov1: np.ndarray, cov2: np.ndarray) -> ObservationTable:
        """New table with replaced geographic coordinates and covariates."""
        return ObservationTable(
            ids=self.ids, lon=lon, lat=lat, presence=self.presence, cov1=cov1, cov2=cov2, group=self.group
        )

    @classmethod
    def concat(cls, tables: Iterable[ObservationTable]) -> ObservationTable:
        tables = list(tables)
        has_group = all(t.group is not None for t in tables)
        return cls(
            ids=np.concatenate([t.ids for t in tables]),
            lon=np.concatenate([t.lon for t in tables]),
            lat=np.concatenate([t.lat for t in tables]),
            presence=np.concatenate([t.presence for t in tables]),
            cov1=np.concatenate([t.cov1 for t in tables]),
            cov2=np.concatenate([t.cov2 for t in tables]),
            group=np.concatenate([t.group for t in tables]) if has_group else None,
        )

    def records(self) -> Iterator[ObservationRecord]:
        group = self.group if self.group is not None else [None] * len(self)
        for row in zip(self.ids, self.lon, self.lat, self.presence, self.cov1, self.cov2, group):
            yield ObservationRecord(*row)

    @classmethod
    def from_records(cls, records: Iterable[ObservationRecord]) -> ObservationTable:
        rows = list(records)
        if not rows:
            raise InputContractError("'observations' must contain at least one record")
        cols = list(zip(*rows))
        group = None if all(g is None for g in cols[6]) else np.asarray(cols[6])
        return cls(
            ids=np.asarray(cols[0]),
            lon=np.asarray(cols[1], dtype=float),
            lat=np.asarray(cols[2], dtype=float),
            presence=np.asarray(cols[3], dtype=int),
            cov1=np.asarray(cols[4], dtype=float),
            cov2=np.asarray(cols[5], dtype=float),
            group=group,
        )

    @classmethod
    def from_dataframe(
        cls, df: pd.DataFrame, config: EnviConfig | None = None, require_group: bool = False
    ) -> ObservationTable:
        """
        Create from DataFrame, checking the observation schema.

        Parameters
        ----------
        df : pd.DataFrame
            Observation table with id, lon, lat, presence, cov1, cov2
            (and group) columns
        config : EnviConfig, optional
            Column names. Defaults to EnviConfig().
        require_group : bool
            If True, the perturbation group column must be present

        Returns
        -------
        ObservationTable

        Raises
        ------
        InputContractError
            Missing columns, presence values outside {0, 1}, or non-finite
            coordinates.
        """
        config = config or EnviConfig()
        _require_columns(df, config.observation_columns(with_group=require_group), "obs_locs")

        presence = pd.to_numeric(df[config.presence_col], errors="coerce").to_numpy()
        if not np.all(np.isin(presence, [0, 1])):
            raise InputContractError(f"'obs_locs' column '{config.presence_col}' must only contain 0 or 1")

        numeric = {}
        for col in (config.lon_col, config.lat_col, config.cov1_col, config.cov2_col):
            values = pd.to_numeric(df[col], errors="coerce").to_numpy(dtype=float)
            if not np.all(np.isfinite(values)):
                raise InputContractError(f"'obs_locs' column '{col}' contains missing or non-finite values")
            numeric[col] = values

        group = None
        if config.group_col in df.columns:
            group = df[config.group_col].to_numpy()

        return cls(
            ids=df[config.id_col].to_numpy(),
            lon=numeric[config.lon_col],
            lat=numeric[config.lat_col],
            presence=presence.astype(int),
            cov1=numeric[config.cov1_col],
            cov2=numeric[config.cov2_col],
            group=group,
        )

    def to_dataframe(self, config: EnviConfig | None = None) -> pd.DataFrame:
        config = config or EnviConfig()
        data = {
            config.id_col: self.ids,
            config.lon_col: self.lon,
            config.lat_col: self.lat,
            config.presence_col: self.presence,
            config.cov1_col: self.cov1,
            config.cov2_col: self.cov2,
        }
        if self.group is not None:
            data[config.group_col] = self.group
        return pd.DataFrame(data)


@dataclass
class PredictionTable:
    """Column-wise container for prediction locations."""

    lon: np.ndarray
    lat: np.ndarray
    cov1: np.ndarray
    cov2: np.ndarray

    def __post_init__(self):
        lengths = [len(self.lon), len(self.lat), len(self.cov1), len(self.cov2)]
        if len(set(lengths)) != 1:
            raise InputContractError(f"Prediction arrays have different lengths: {lengths}")

    def __len__(self) -> int:
        return len(self.lon)

    @property
    def covariates(self) -> np.ndarray:
        return np.column_stack([self.cov1, self.cov2])

    @property
    def complete(self) -> np.ndarray:
        """Boolean mask of rows with both covariates defined."""
        return np.isfinite(self.cov1) & np.isfinite(self.cov2)

    def records(self) -> Iterator[PredictionRecord]:
        for row in zip(self.lon, self.lat, self.cov1, self.cov2):
            yield PredictionRecord(*row)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, config: EnviConfig | None = None) -> PredictionTable:
        """
        Create from DataFrame with lon, lat, cov1, cov2 columns.

        Missing covariate values are allowed; those rows are ignored when
        building windows and receive missing predictions.
        """
        config = config or EnviConfig()
        _require_columns(df, config.prediction_columns(), "predict_locs")
        return cls(
            lon=pd.to_numeric(df[config.lon_col], errors="coerce").to_numpy(dtype=float),
            lat=pd.to_numeric(df[config.lat_col], errors="coerce").to_numpy(dtype=float),
            cov1=pd.to_numeric(df[config.cov1_col], errors="coerce").to_numpy(dtype=float),
            cov2=pd.to_numeric(df[config.cov2_col], errors="coerce").to_numpy(dtype=float),
        )

    def to_dataframe(self, config: EnviConfig | None = None) -> pd.DataFrame:
        config = config or EnviConfig()
        return pd.DataFrame(
            {
                config.lon_col: self.lon,
                config.lat_col: self.lat,
                config.cov1_col: self.cov1,
                config.cov2_col: self.cov2,
            }
        )


@dataclass(frozen=True)
class EstimationWindow:
    """
    Closed polygon in covariate space bounding a density estimate.

    Attributes
    ----------
    polygon : shapely.geometry.Polygon
        Window polygon, oriented counter-clockwise
    buffer : float
        Outward buffer distance applied to the hull
    role : str
        'inner' (observations), 'outer' (prediction locations) or 'custom'
    """

    polygon: Polygon
    buffer: float = 0.0
    role: str = "inner"

    def __post_init__(self):
        if not isinstance(self.polygon, Polygon):
            raise GeometryError(f"Window must be a Polygon, got {type(self.polygon).__name__}")
        if self.polygon.is_empty or not self.polygon.area > 0:
            raise GeometryError(f"Degenerate {self.role} window: polygon has zero area")

    @property
    def area(self) -> float:
        return float(self.polygon.area)

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """(xmin, ymin, xmax, ymax)"""
        return tuple(float(b) for b in self.polygon.bounds)

    @property
    def ring(self) -> np.ndarray:
        """Ordered, closed exterior coordinate ring (n × 2)."""
        return np.asarray(self.polygon.exterior.coords)

    def contains(self, xy: np.ndarray) -> np.ndarray:
        """Boolean mask of points strictly inside the window."""
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        return shapely.contains_xy(self.polygon, xy[:, 0], xy[:, 1])

    def covers_window(self, other: EstimationWindow, tolerance: float = 0.0) -> bool:
        """True if `other` lies within this window (up to `tolerance`)."""
        return bool(self.polygon.buffer(tolerance).covers(other.polygon))


@dataclass
class GridSurface:
    """
    Regular grid of values indexed by cell centers.

    Attributes
    ----------
    x : np.ndarray
        Ascending cell-center x coordinates (nx,)
    y : np.ndarray
        Ascending cell-center y coordinates (ny,)
    values : np.ndarray
        Cell values (ny × nx); NaN outside the surface support
    """

    x: np.ndarray
    y: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        if self.values.shape != (len(self.y), len(self.x)):
            raise GeometryError(
                f"Grid values shape {self.values.shape} does not match coordinates ({len(self.y)}, {len(self.x)})"
            )

    @property
    def shape(self) -> tuple[int, int]:
        return self.values.shape

    @property
    def dx(self) -> float:
        return float(self.x[1] - self.x[0]) if len(self.x) > 1 else 1.0

    @property
    def dy(self) -> float:
        return float(self.y[1] - self.y[0]) if len(self.y) > 1 else 1.0

    @property
    def extent(self) -> tuple[float, float, float, float]:
        """Outer cell edges (xmin, ymin, xmax, ymax)."""
        return (
            float(self.x[0] - self.dx / 2),
            float(self.y[0] - self.dy / 2),
            float(self.x[-1] + self.dx / 2),
            float(self.y[-1] + self.dy / 2),
        )

    def cell_index(self, px: np.ndarray, py: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Row/column of the cell containing each point.

        Returns
        -------
        rows, cols : np.ndarray
            Integer cell indices (clipped to the grid)
        inside : np.ndarray
            Boolean mask of points within the grid extent
        """
        px = np.asarray(px, dtype=float)
        py = np.asarray(py, dtype=float)
        xmin, ymin, xmax, ymax = self.extent
        inside = (px >= xmin) & (px <= xmax) & (py >= ymin) & (py <= ymax)
        with np.errstate(invalid="ignore"):
            cols = np.floor((np.nan_to_num(px, nan=xmin) - xmin) / self.dx).astype(int)
            rows = np.floor((np.nan_to_num(py, nan=ymin) - ymin) / self.dy).astype(int)
        cols = np.clip(cols, 0, len(self.x) - 1)
        rows = np.clip(rows, 0, len(self.y) - 1)
        return rows, cols, inside

    def lookup(self, px: np.ndarray, py: np.ndarray) -> np.ndarray:
        """
        Value of the cell containing each point.

        Points outside the grid extent, and points falling in missing
        cells, get NaN.
        """
        rows, cols, inside = self.cell_index(px, py)
        out = np.full(len(rows), np.nan)
        out[inside] = self.values[rows[inside], cols[inside]]
        return out

    def same_geometry(self, other: GridSurface) -> bool:
        return (
            self.shape == other.shape
            and np.allclose(self.x, other.x, rtol=0, atol=1e-12 * max(1.0, np.abs(self.x).max()))
            and np.allclose(self.y, other.y, rtol=0, atol=1e-12 * max(1.0, np.abs(self.y).max()))
        )

    def filled(self, fill_value: float = 0.0) -> GridSurface:
        """Copy with missing cells replaced by `fill_value`."""
        return GridSurface(self.x, self.y, np.where(np.isnan(self.values), fill_value, self.values))

    def cell_centers(self) -> np.ndarray:
        """Cell centers in row-major order (ny*nx × 2)."""
        gx, gy = np.meshgrid(self.x, self.y)
        return np.column_stack([gx.ravel(), gy.ravel()])


@dataclass
class RiskSurface:
    """
    Output of one density-ratio fit.

    Attributes
    ----------
    log_rr : GridSurface
        Log relative risk, log(presence density / absence density).
        Positive values favour presence.
    p_value : GridSurface
        Upper-tail asymptotic p-values for H0: log_rr = 0, on the same grid
    bandwidth : float
        Kernel bandwidth used for both densities
    window : EstimationWindow
        Window the surface was estimated in
    """

    log_rr: GridSurface
    p_value: GridSurface
    bandwidth: float
    window: EstimationWindow
    n_presence: int = 0
    n_absence: int = 0
    params: dict = field(default_factory=dict)

    def __post_init__(self):
        if not self.log_rr.same_geometry(self.p_value):
            raise GeometryError("log relative risk and p-value grids must share one geometry")

    @property
    def shape(self) -> tuple[int, int]:
        return self.log_rr.shape

    def valid_p_values(self) -> np.ndarray:
        """Non-missing p-values, flattened row-major."""
        p = self.p_value.values.ravel()
        return p[~np.isnan(p)]

    def to_dataframe(self, config: EnviConfig | None = None) -> pd.DataFrame:
        """One row per non-missing cell with covariate coordinates, rr and pval."""
        config = config or EnviConfig()
        centers = self.log_rr.cell_centers()
        df = pd.DataFrame(
            {
                config.cov1_col: centers[:, 0],
                config.cov2_col: centers[:, 1],
                "rr": self.log_rr.values.ravel(),
                "pval": self.p_value.values.ravel(),
            }
        )
        return df.dropna(subset=["rr"]).reset_index(drop=True)

    def summary(self) -> dict:
        rr = self.log_rr.values
        return {
            "shape": self.shape,
            "bandwidth": self.bandwidth,
            "n_presence": self.n_presence,
            "n_absence": self.n_absence,
            "n_cells": int(np.sum(~np.isnan(rr))),
            "max_log_rr": float(np.nanmax(rr)) if np.any(~np.isnan(rr)) else np.nan,
            "min_log_rr": float(np.nanmin(rr)) if np.any(~np.isnan(rr)) else np.nan,
        }

    def __repr__(self) -> str:
        s = self.summary()
        return f"RiskSurface(shape={s['shape']}, bandwidth={s['bandwidth']:.4g}, n_cells={s['n_cells']})"


@dataclass(frozen=True)
class CorrectionResult:
    """Critical p-value from a multiple testing correction."""

    critical_p: float
    method: str
    alpha: float
    n_tests: int

    @property
    def lower_tail(self) -> float:
        return self.critical_p / 2

    @property
    def upper_tail(self) -> float:
        return 1 - self.critical_p / 2

    def significant(self, p_values: np.ndarray) -> np.ndarray:
        """
        Two-sided significance mask for upper-tail p-values.

        A cell is significant when its p-value is below critical/2 or
        above 1 - critical/2. Missing p-values are not significant.
        """
        p = np.asarray(p_values, dtype=float)
        with np.errstate(invalid="ignore"):
            return (p < self.lower_tail) | (p > self.upper_tail)
