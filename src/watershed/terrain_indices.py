"""
Terrain indices derived from the conditioned DEM and flow accumulation.

- Slope (degrees) from Horn's 3x3 finite-difference gradient
- Topographic wetness index: ln(specific catchment area / tan(slope))
- Zonal aggregation of any index over a watershed mask
"""

import logging
from typing import Dict, Optional

import numpy as np
from scipy import ndimage

from watershed.config import TAN_SLOPE_EPSILON
from watershed.exceptions import EmptyZone
from watershed.grid import FlowAccumulationGrid, Raster, WatershedMask

logger = logging.getLogger(__name__)

# Horn (1981) weights; dividing by 8 * cell size gives dz/dx and dz/dy
_HORN_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
_HORN_Y = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float64)


def _fill_nodata_nearest(values: np.ndarray, valid: np.ndarray) -> np.ndarray:
    """Replace invalid cells with the value of the nearest valid cell."""
    if valid.all():
        return values
    indices = ndimage.distance_transform_edt(
        ~valid, return_distances=False, return_indices=True
    )
    return values[tuple(indices)]


def compute_slope(dem: Raster) -> Raster:
    """
    Calculate slope in degrees using Horn's method.

    Uses the 8 neighbours of each cell with the grid's real cell sizes.
    Neighbours that are no-data take the value of the nearest valid cell,
    and grid edges are padded by replication, so every valid cell gets a
    finite slope.

    Args:
        dem: Digital elevation model (normally conditioned)

    Returns:
        Float64 Raster of slope in degrees [0, 90); NaN on no-data cells
    """
    valid = dem.valid_mask
    slope = np.full(dem.shape, np.nan, dtype=np.float64)
    if not valid.any():
        logger.warning("DEM has no valid cells; slope is entirely no-data")
        return dem.with_data(slope, nodata=np.nan)

    values = _fill_nodata_nearest(dem.filled(np.nan), valid)
    dx, dy = dem.cell_size

    dz_dx = ndimage.correlate(values, _HORN_X, mode="nearest") / (8.0 * dx)
    dz_dy = ndimage.correlate(values, _HORN_Y, mode="nearest") / (8.0 * dy)

    slope[valid] = np.degrees(np.arctan(np.hypot(dz_dx, dz_dy)))[valid]

    logger.info(
        "Slope range: %.2f to %.2f degrees", np.nanmin(slope), np.nanmax(slope)
    )
    return dem.with_data(slope, nodata=np.nan)


def compute_wetness_index(
    accumulation: FlowAccumulationGrid,
    slope: Raster,
    cell_area: Optional[float] = None,
    tan_epsilon: float = TAN_SLOPE_EPSILON,
) -> Raster:
    """
    Compute the topographic wetness index.

    Specific catchment area is the upstream area per unit contour width:
    ``sca = accumulation * cell_area / sqrt(cell_area)``, taking the cell
    width as the contour length. The index is ``ln(sca / tan(slope))``
    with ``tan(slope)`` clamped to ``tan_epsilon`` so flat cells give a
    large finite value instead of infinity.

    Args:
        accumulation: Flow accumulation grid (cell counts)
        slope: Slope raster in degrees on the same grid
        cell_area: Area of one cell in squared map units (defaults to the
            grid's own cell area)
        tan_epsilon: Lower clamp for tan(slope); tunable

    Returns:
        Float64 Raster of wetness index; NaN where either input is no-data

    Raises:
        GridGeometryMismatch: If the grids differ in geometry
        ValueError: If cell_area or tan_epsilon is not positive
    """
    accumulation.require_same_geometry(slope, "compute_wetness_index")
    if cell_area is None:
        cell_area = accumulation.cell_area
    if cell_area <= 0:
        raise ValueError(f"cell_area must be > 0, got {cell_area}")
    if tan_epsilon <= 0:
        raise ValueError(f"tan_epsilon must be > 0, got {tan_epsilon}")

    valid = accumulation.valid_mask & slope.valid_mask
    contour_width = np.sqrt(cell_area)

    twi = np.full(accumulation.shape, np.nan, dtype=np.float64)
    sca = accumulation.data[valid].astype(np.float64) * cell_area / contour_width
    tan_slope = np.maximum(np.tan(np.radians(slope.data[valid])), tan_epsilon)
    twi[valid] = np.log(sca / tan_slope)

    n_flat = int(np.count_nonzero(np.tan(np.radians(slope.data[valid])) < tan_epsilon))
    logger.info(
        "Wetness index computed for %d cells (%d clamped flat cells)", int(valid.sum()), n_flat
    )
    return accumulation.with_data(twi, nodata=np.nan)


def _zone_values(index: Raster, mask: WatershedMask) -> np.ndarray:
    index.require_same_geometry(mask, "zonal aggregation")
    selected = np.asarray(mask.data, dtype=bool) & index.valid_mask
    if not selected.any():
        label = mask.pour_point.label if mask.pour_point is not None else None
        raise EmptyZone(f"Zone '{label or '<unlabelled>'}' selects zero valid cells", label=label)
    return index.data[selected].astype(np.float64)


def zonal_mean(index: Raster, mask: WatershedMask) -> float:
    """
    Mean of ``index`` over cells where the mask is True and the index is valid.

    Raises:
        GridGeometryMismatch: If the grids differ in geometry
        EmptyZone: If no valid cell is selected
    """
    return float(np.mean(_zone_values(index, mask)))


def zonal_statistics(index: Raster, mask: WatershedMask) -> Dict[str, float]:
    """Count, mean, min, max and standard deviation of ``index`` within a mask."""
    values = _zone_values(index, mask)
    return {
        "count": int(values.size),
        "mean": float(np.mean(values)),
        "min": float(np.min(values)),
        "max": float(np.max(values)),
        "std": float(np.std(values)),
    }
