"""
conftest.py - Shared test fixtures for envi

pytest reads this file before running any test. Every fixture defined
here is injected by name into any test that asks for it:

    @pytest.fixture
    def my_fixture():
        return something_useful

    def test_something(my_fixture):
        assert my_fixture == expected

All random data is generated from a fixed seed so every run sees the
same observations.
"""

import numpy as np
import pandas as pd
import pytest
from envi.data.core import GridSurface

# ===========================================================================
# Constants - the size of our fake datasets
# ===========================================================================

N_PRESENCE = 100  # presence observations in the uniform scenario
N_ABSENCE = 300  # absence observations in the uniform scenario
N_RASTER = 40  # covariate raster cells per side
N_GROUPED = 200  # observations in the perturbation scenario
RESOLUTION = 32  # estimation grid cells per side (small = fast tests)


# ===========================================================================
# Fixture 1: uniform presence / absence observations
# ===========================================================================


@pytest.fixture
def uniform_obs():
    """
    100 presence + 300 absence points drawn uniformly on the unit square.

    Covariates equal the coordinates, so covariate space and geographic
    space coincide. There is no real niche: log relative risk should
    hover around 0 everywhere.
    """
    rng = np.random.default_rng(42)
    n = N_PRESENCE + N_ABSENCE
    cov = rng.uniform(0, 1, (n, 2))

    return pd.DataFrame(
        {
            "id": np.arange(n),
            "lon": cov[:, 0],
            "lat": cov[:, 1],
            "presence": [1] * N_PRESENCE + [0] * N_ABSENCE,
            "cov1": cov[:, 0],
            "cov2": cov[:, 1],
        }
    )


# ===========================================================================
# Fixture 2: observations with a real niche
# ===========================================================================


@pytest.fixture
def niche_obs():
    """
    Presences clustered around (0.3, 0.3); absences uniform.

    Cross-validated predictions should separate the two classes well
    (AUC clearly above 0.5).
    """
    rng = np.random.default_rng(7)
    presence = np.clip(rng.normal(0.3, 0.08, (N_PRESENCE, 2)), 0, 1)
    absence = rng.uniform(0, 1, (N_ABSENCE, 2))
    cov = np.vstack([presence, absence])
    n = len(cov)

    return pd.DataFrame(
        {
            "id": [f"obs_{i}" for i in range(n)],
            "lon": cov[:, 0],
            "lat": cov[:, 1],
            "presence": [1] * N_PRESENCE + [0] * N_ABSENCE,
            "cov1": cov[:, 0],
            "cov2": cov[:, 1],
        }
    )


# ===========================================================================
# Fixture 3: prediction locations on a regular grid
# ===========================================================================


@pytest.fixture
def prediction_grid():
    """30 × 30 prediction locations covering the unit square."""
    centers = (np.arange(30) + 0.5) / 30
    gx, gy = np.meshgrid(centers, centers)

    return pd.DataFrame(
        {
            "lon": gx.ravel(),
            "lat": gy.ravel(),
            "cov1": gx.ravel(),
            "cov2": gy.ravel(),
        }
    )


# ===========================================================================
# Fixture 4: covariate rasters
# ===========================================================================


@pytest.fixture
def covariate_rasters():
    """
    Two 40 × 40 rasters over the unit square.

    cov1 = x (longitude) and cov2 = y (latitude) at every cell center.
    """
    centers = (np.arange(N_RASTER) + 0.5) / N_RASTER
    gx, gy = np.meshgrid(centers, centers)
    return (
        GridSurface(x=centers, y=centers, values=gx.copy()),
        GridSurface(x=centers, y=centers, values=gy.copy()),
    )


# ===========================================================================
# Fixture 5: grouped observations for perturbation
# ===========================================================================


@pytest.fixture
def grouped_obs(covariate_rasters):
    """
    200 observations in three perturbation groups ('a', 'b', 'c').

    Locations stay within the span of the raster cell centers, and the
    covariates are read from the rasters, exactly as the perturbation
    engine does after moving a point. Rows are sorted by group, the
    order in which the perturbation engine recombines groups.
    """
    cov1, cov2 = covariate_rasters
    rng = np.random.default_rng(2024)

    lon = rng.uniform(cov1.x[0], cov1.x[-1], N_GROUPED)
    lat = rng.uniform(cov1.y[0], cov1.y[-1], N_GROUPED)
    presence = (rng.random(N_GROUPED) < 0.3).astype(int)
    presence[:5] = 1  # at least a few of each class
    presence[5:10] = 0

    df = pd.DataFrame(
        {
            "id": np.arange(N_GROUPED),
            "lon": lon,
            "lat": lat,
            "presence": presence,
            "cov1": cov1.lookup(lon, lat),
            "cov2": cov2.lookup(lon, lat),
            "group": rng.choice(["a", "b", "c"], N_GROUPED),
        }
    )
    return df.sort_values("group", kind="stable").reset_index(drop=True)


@pytest.fixture
def small_kernel():
    """Kernel settings with a coarse grid so tests run quickly."""
    return {"resolution": RESOLUTION}
