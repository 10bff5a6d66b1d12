"""Pytest configuration and fixtures for watershed tests."""
import sys
from pathlib import Path

# Add src/ to Python path for imports when the package is not installed
src_root = Path(__file__).parent.parent / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))

import numpy as np
import pytest

from watershed.grid import Raster


def make_valley(rows=20, cols=15, cell_size=10.0, nodata=None):
    """V-shaped valley along the centre column, falling toward the south edge.

    The single lowest cell is the bottom-centre cell, so every cell drains
    to one outlet.
    """
    r = np.arange(rows, dtype=np.float64)[:, None]
    c = np.arange(cols, dtype=np.float64)[None, :]
    centre = cols // 2
    dem = 100.0 - r + 2.0 * np.abs(c - centre)
    return Raster.from_array(dem, cell_size=cell_size, origin=(1000.0, 5000.0), nodata=nodata)


def make_central_pit():
    """5x5 bowl: pit at the centre, rising outward, one low notch at (0, 2)."""
    dem = np.full((5, 5), 10.0)
    dem[1:4, 1:4] = 5.0
    dem[2, 2] = 1.0
    dem[0, 2] = 9.0
    return Raster.from_array(dem, cell_size=1.0)


@pytest.fixture
def valley_dem():
    """20x15 valley DEM with 10 m cells."""
    return make_valley()


@pytest.fixture
def pit_dem():
    """5x5 DEM with a single central pit."""
    return make_central_pit()


@pytest.fixture
def sample_dem():
    """Create a small synthetic DEM with random pits for testing."""
    rng = np.random.default_rng(42)
    x = np.linspace(-10, 10, 40)
    y = np.linspace(-10, 10, 40)
    X, Y = np.meshgrid(x, y)
    # Tilted plane with noise: plenty of small depressions
    Z = 1000 + 2.0 * Y + 0.5 * X + rng.normal(0, 1.5, X.shape)
    return Raster.from_array(Z, cell_size=30.0, origin=(500000.0, 4200000.0))
