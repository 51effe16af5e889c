"""
config.py - Configuration and error types for envi

Contains:
- EnviConfig: Column names of observation and prediction tables
- KernelOptions: Settings passed to the density-ratio engine
- EnviError and subclasses, BoundaryWarning
"""

from __future__ import annotations

from dataclasses import dataclass

# Correction method tags, in canonical spelling
CORRECTION_METHODS = ("none", "FDR", "Sidak", "Bonferroni")

BANDWIDTH_RULES = ("oversmooth", "scott", "silverman")
EDGE_CORRECTIONS = ("uniform", "diggle", "none")


class EnviError(Exception):
    """Base exception for envi errors."""

    pass


class InputContractError(EnviError):
    """Raised when an input table or companion argument is missing or malformed."""

    pass


class InvalidParameterError(EnviError, ValueError):
    """Raised when a scalar parameter is outside its allowed range."""

    pass


class GeometryError(EnviError):
    """Raised when a window cannot be built or is degenerate."""

    pass


class BoundaryWarning(UserWarning):
    """Observations lie outside an estimation window or the covariate rasters."""

    pass


@dataclass
class EnviConfig:
    """Configuration for envi column names."""

    # Observation table
    id_col: str = "id"
    lon_col: str = "lon"
    lat_col: str = "lat"
    presence_col: str = "presence"
    cov1_col: str = "cov1"
    cov2_col: str = "cov2"
    group_col: str = "group"

    def observation_columns(self, with_group: bool = False) -> list[str]:
        """
        Ordered column names of the observation table.

        Parameters
        ----------
        with_group : bool
            Append the perturbation group column.

        Returns
        -------
        list of str
        """
        cols = [self.id_col, self.lon_col, self.lat_col, self.presence_col, self.cov1_col, self.cov2_col]
        if with_group:
            cols.append(self.group_col)
        return cols

    def prediction_columns(self) -> list[str]:
        """Ordered column names of the prediction table."""
        return [self.lon_col, self.lat_col, self.cov1_col, self.cov2_col]


@dataclass(frozen=True)
class KernelOptions:
    """
    Settings for the density-ratio engine.

    Attributes
    ----------
    bandwidth : str or float
        'oversmooth', 'scott', 'silverman', or a fixed positive bandwidth
        in covariate units.
    edge : str
        Edge correction: 'uniform', 'diggle' or 'none'.
    resolution : int
        Number of grid cells per side of the estimation grid.
    """

    bandwidth: str | float = "oversmooth"
    edge: str = "uniform"
    resolution: int = 128

    def __post_init__(self):
        if isinstance(self.bandwidth, str):
            if self.bandwidth not in BANDWIDTH_RULES:
                raise InvalidParameterError(
                    f"kernel bandwidth must be one of {BANDWIDTH_RULES} or a positive number, "
                    f"got '{self.bandwidth}'"
                )
        elif not self.bandwidth > 0:
            raise InvalidParameterError(f"kernel bandwidth must be positive, got {self.bandwidth}")

        if self.edge not in EDGE_CORRECTIONS:
            raise InvalidParameterError(f"kernel edge must be one of {EDGE_CORRECTIONS}, got '{self.edge}'")

        if int(self.resolution) != self.resolution or self.resolution < 8:
            raise InvalidParameterError(f"kernel resolution must be an integer >= 8, got {self.resolution}")


def validate_alpha(alpha: float) -> float:
    """Check that the nominal significance level lies strictly in (0, 1)."""
    if not 0 < alpha < 1:
        raise InvalidParameterError(f"alpha must be a numeric value between 0 and 1 (exclusive), got {alpha}")
    return float(alpha)


def validate_correction_method(method: str) -> str:
    """
    Resolve a correction method tag to its canonical spelling.

    Matching is case-insensitive: 'fdr', 'FDR' and 'Fdr' all resolve to 'FDR'.
    """
    lookup = {m.lower(): m for m in CORRECTION_METHODS}
    key = str(method).lower()
    if key not in lookup:
        raise InvalidParameterError(f"Unknown correction method: '{method}'. Use one of {CORRECTION_METHODS}.")
    return lookup[key]
