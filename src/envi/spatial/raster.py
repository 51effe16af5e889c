"""
raster.py - Gridded surfaces and geographic projection

Moves values between regular grids and point locations:
- Building covariate rasters from gridded xyz tables
- Extracting covariate values at geographic coordinates
- Deriving prediction locations from a pair of covariate rasters
- Projecting covariate-space surfaces onto prediction locations
  (nearest-cell lookup)
- Exporting prediction tables to GeoDataFrames
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import geopandas as gpd

import numpy as np
import pandas as pd

from ..data.config import EnviConfig, GeometryError, InputContractError
from ..data.core import GridSurface, PredictionTable, RiskSurface

# ========== Rasters ==========

def raster_from_xyz(df: pd.DataFrame,
                    x_col: str,
                    y_col: str,
                    value_col: str) -> GridSurface:
    """
    Build a GridSurface from a table of regularly gridded points.

    Parameters
    ----------
    df : pd.DataFrame
        One row per grid cell center
    x_col, y_col : str
        Cell-center coordinate columns
    value_col : str
        Column holding the cell value

    Returns
    -------
    GridSurface
        Cells absent from `df` are missing (NaN).

    Examples
    --------
    >>> elev = raster_from_xyz(dem, 'lon', 'lat', 'elev')
    >>> elev.lookup([10.5], [42.0])
    """
    for col in (x_col, y_col, value_col):
        if col not in df.columns:
            raise InputContractError(f"Column '{col}' not found in raster table")

    grid = df.pivot_table(index=y_col, columns=x_col, values=value_col, aggfunc="mean", dropna=False)
    grid = grid.sort_index(axis=0).sort_index(axis=1)
    x = grid.columns.to_numpy(dtype=float)
    y = grid.index.to_numpy(dtype=float)

    for name, centers in (("x", x), ("y", y)):
        if len(centers) > 2:
            steps = np.diff(centers)
            if not np.allclose(steps, steps[0], rtol=1e-6):
                raise GeometryError(f"Raster {name} coordinates are not regularly spaced")

    return GridSurface(x=x, y=y, values=grid.to_numpy(dtype=float))


def extract_covariates(covariates: tuple[GridSurface, GridSurface],
                       lon: np.ndarray,
                       lat: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Covariate values at geographic coordinates; NaN off the rasters."""
    cov1, cov2 = covariates
    return cov1.lookup(lon, lat), cov2.lookup(lon, lat)


def covariates_to_predictions(covariates: tuple[GridSurface, GridSurface]) -> PredictionTable:
    """
    Prediction locations from two covariate rasters.

    One location per cell center at which both covariates are defined.
    """
    cov1, cov2 = covariates
    if not cov1.same_geometry(cov2):
        raise InputContractError("'covariates' rasters must share one grid geometry")

    centers = cov1.cell_centers()
    v1 = cov1.values.ravel()
    v2 = cov2.values.ravel()
    keep = np.isfinite(v1) & np.isfinite(v2)
    return PredictionTable(lon=centers[keep, 0], lat=centers[keep, 1], cov1=v1[keep], cov2=v2[keep])


# ========== Projection ==========

def project_grids(grids: dict[str, GridSurface],
                  predict_locs: PredictionTable,
                  config: EnviConfig | None = None) -> pd.DataFrame:
    """
    Project covariate-space grids onto prediction locations.

    Each prediction location is matched to the grid cell containing its
    covariate pair. Locations outside the grid, or in a missing cell,
    get NaN; no default is substituted.

    Parameters
    ----------
    grids : dict of str -> GridSurface
        Output column name -> surface
    predict_locs : PredictionTable
        Prediction locations
    config : EnviConfig, optional
        Column names for the location columns

    Returns
    -------
    pd.DataFrame
        Prediction table plus one column per grid
    """
    out = predict_locs.to_dataframe(config)
    for name, grid in grids.items():
        out[name] = grid.lookup(predict_locs.cov1, predict_locs.cov2)
    return out


def project_surface(surface: RiskSurface,
                    predict_locs: PredictionTable,
                    config: EnviConfig | None = None,
                    verbose: bool = False) -> pd.DataFrame:
    """
    Predict log relative risk and p-value at prediction locations.

    Returns
    -------
    pd.DataFrame
        Prediction table plus 'rr' and 'pval' columns
    """
    out = project_grids({"rr": surface.log_rr, "pval": surface.p_value}, predict_locs, config)
    if verbose:
        n_ok = int(out["rr"].notna().sum())
        print(f"  ✓ Predicted {n_ok:,}/{len(out):,} locations inside the surface support")
    return out


# ========== Export ==========

def to_geodataframe(predictions: pd.DataFrame,
                    config: EnviConfig | None = None,
                    crs=None,
                    to_crs=None) -> gpd.GeoDataFrame:
    """
    Convert a prediction table to a point GeoDataFrame.

    Parameters
    ----------
    predictions : pd.DataFrame
        Output of `project_surface` or a perturbation projection
    config : EnviConfig, optional
        Names of the longitude/latitude columns
    crs : optional
        Coordinate reference system of lon/lat (anything geopandas accepts)
    to_crs : optional
        Reproject to this CRS (requires `crs`)

    Returns
    -------
    gpd.GeoDataFrame

    Examples
    --------
    >>> gdf = to_geodataframe(result.predictions, crs='EPSG:4326', to_crs='EPSG:3857')
    >>> gdf.to_file('niche.geojson', driver='GeoJSON')
    """
    try:
        import geopandas as gpd
    except ImportError:
        raise ImportError("GeoPandas required. Install with: pip install geopandas")

    config = config or EnviConfig()
    if to_crs is not None and crs is None:
        raise InputContractError("'to_crs' requires the source 'crs'")

    gdf = gpd.GeoDataFrame(
        predictions.copy(),
        geometry=gpd.points_from_xy(predictions[config.lon_col], predictions[config.lat_col]),
        crs=crs,
    )
    if to_crs is not None:
        gdf = gdf.to_crs(to_crs)
    return gdf
