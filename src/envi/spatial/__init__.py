"""
spatial - Windows and rasters

boundaries : Estimation windows in covariate space
    Concave (or convex) hulls around observation and prediction
    covariates, buffered into the inner and outer windows.

raster : Gridded surfaces and geographic projection
    Covariate rasters, covariate extraction at coordinates, projection
    of covariate-space surfaces onto prediction locations and
    GeoDataFrame export.

Usage
-----
>>> import envi
>>>
>>> windows = envi.spatial.build_windows(obs.covariates, pred.covariates)
>>> windows.window.area
>>> elev = envi.spatial.raster_from_xyz(dem, 'lon', 'lat', 'elev')
"""

from .boundaries import (
    BoundaryWindows,
    compute_hull,
    default_buffer,
    buffer_hull,
    as_window,
    build_windows,
)

from .raster import (
    raster_from_xyz,
    extract_covariates,
    covariates_to_predictions,
    project_grids,
    project_surface,
    to_geodataframe,
)

__all__ = [
    # Windows
    'BoundaryWindows',
    'compute_hull',
    'default_buffer',
    'buffer_hull',
    'as_window',
    'build_windows',

    # Rasters
    'raster_from_xyz',
    'extract_covariates',
    'covariates_to_predictions',
    'project_grids',
    'project_surface',
    'to_geodataframe',
]
