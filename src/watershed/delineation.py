"""
Watershed delineation from a D8 flow direction grid.

Collects every cell whose flow path reaches a pour point by walking the
implicit upstream graph breadth-first: neighbour n is upstream of cell c
iff n's direction code points at c. An explicit work queue is used, so
catchment size is limited by memory only, never by recursion depth.
"""

import logging
from collections import deque
from typing import Union

import numpy as np
import rasterio.features
import shapely.geometry
from shapely.geometry import MultiPolygon, Polygon
from shapely.ops import unary_union

from watershed.exceptions import EmptyZone
from watershed.grid import (
    D8_CODES,
    D8_COL_OFFSETS,
    D8_ROW_OFFSETS,
    FlowDirectionGrid,
    PourPoint,
    WatershedMask,
)

logger = logging.getLogger(__name__)

# For each neighbour offset k, the code the neighbour must hold to drain
# into the centre cell is the opposite direction: (k + 4) % 8.
_UPSTREAM_CHECKS = [
    (int(D8_ROW_OFFSETS[k]), int(D8_COL_OFFSETS[k]), int(D8_CODES[(k + 4) % 8]))
    for k in range(8)
]


def delineate_watershed(direction: FlowDirectionGrid, pour_point: PourPoint) -> WatershedMask:
    """
    Delineate the catchment draining to a pour point.

    Args:
        direction: D8 flow direction grid
        pour_point: Outlet location (normally already snapped to a stream)

    Returns:
        WatershedMask on the direction grid's geometry, True for the pour
        point's cell and every cell upstream of it

    Raises:
        PointOutsideGrid: If the pour point is off the grid
        ValueError: If the pour point falls on a no-data cell
    """
    start = direction.cell_of(pour_point)
    if not direction.valid_mask[start]:
        raise ValueError(
            f"Pour point '{pour_point.label}' falls on a no-data cell {start}"
        )

    codes = direction.data
    rows, cols = direction.shape
    mask = np.zeros((rows, cols), dtype=bool)
    mask[start] = True

    queue = deque([start])
    while queue:
        r, c = queue.popleft()
        for dr, dc, inflow_code in _UPSTREAM_CHECKS:
            nr, nc = r + dr, c + dc
            if not (0 <= nr < rows and 0 <= nc < cols):
                continue
            if mask[nr, nc] or codes[nr, nc] != inflow_code:
                continue
            mask[nr, nc] = True
            queue.append((nr, nc))

    watershed = WatershedMask.like(direction, mask, pour_point=pour_point)
    logger.info(
        "Delineated watershed '%s' at cell %s: %d cells",
        pour_point.label, start, watershed.cell_count,
    )
    return watershed


def watershed_boundary(mask: WatershedMask) -> Union[Polygon, MultiPolygon]:
    """
    Vectorize a watershed mask into its boundary polygon (map coordinates).

    Raises:
        EmptyZone: If the mask selects no cells
    """
    if mask.cell_count == 0:
        label = mask.pour_point.label if mask.pour_point is not None else None
        raise EmptyZone(
            f"Cannot build a boundary for empty watershed '{label or '<unlabelled>'}'",
            label=label,
        )

    cells = np.array(mask.data, dtype=bool)
    shapes = rasterio.features.shapes(
        cells.astype(np.uint8),
        mask=cells,
        transform=mask.transform,
        connectivity=8,
    )
    polygons = [shapely.geometry.shape(geom) for geom, value in shapes if value == 1]
    return unary_union(polygons)
