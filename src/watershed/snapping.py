"""
Pour point snapping.

Moves a user-supplied pour point onto the nearest stream cell so that the
delineated watershed follows the drainage network rather than a hillslope
next to it.
"""

import logging
import math
from typing import Iterator, Optional, Tuple

from watershed.exceptions import NoStreamWithinRadius
from watershed.grid import FlowAccumulationGrid, PourPoint, StreamMask

logger = logging.getLogger(__name__)


def _ring_cells(row: int, col: int, k: int) -> Iterator[Tuple[int, int]]:
    """Cells at Chebyshev distance exactly ``k`` from (row, col)."""
    if k == 0:
        yield row, col
        return
    for c in range(col - k, col + k + 1):
        yield row - k, c
        yield row + k, c
    for r in range(row - k + 1, row + k):
        yield r, col - k
        yield r, col + k


def snap_pour_point(
    point: PourPoint,
    streams: StreamMask,
    max_distance: float,
    accumulation: Optional[FlowAccumulationGrid] = None,
) -> PourPoint:
    """
    Relocate a pour point to the nearest stream cell within a radius.

    Searches outward ring by ring from the cell containing the point.
    Candidates are ranked by Euclidean distance from the point to the
    stream cell centre, then by highest flow accumulation, then by
    (row, col). The search stops as soon as no farther ring can hold a
    closer cell, and never goes beyond ``max_distance``.

    Args:
        point: Pour point to snap
        streams: Stream mask
        max_distance: Search radius in map units
        accumulation: Optional accumulation grid used to break distance ties

    Returns:
        The original point if it already lies in a stream cell, otherwise a
        new PourPoint (same label and CRS) at the chosen stream cell centre

    Raises:
        ValueError: If max_distance is negative
        PointOutsideGrid: If the point is not on the grid
        GridGeometryMismatch: If accumulation does not share the mask geometry
        NoStreamWithinRadius: If no stream cell lies within max_distance
    """
    if max_distance < 0:
        raise ValueError(f"max_distance must be >= 0, got {max_distance}")
    if accumulation is not None:
        streams.require_same_geometry(accumulation, "snap_pour_point")

    row, col = streams.cell_of(point)
    if streams.data[row, col]:
        logger.debug("Pour point '%s' already on stream cell (%d, %d)", point.label, row, col)
        return point

    min_cell = min(streams.cell_size)
    max_rings = int(math.ceil(max_distance / min_cell)) if min_cell > 0 else 0

    best = None
    best_key = None
    for k in range(1, max_rings + 1):
        # Every cell in ring k is at least (k - 0.5) cells from the point
        if best_key is not None and best_key[0] < (k - 0.5) * min_cell:
            break

        for r, c in _ring_cells(row, col, k):
            if not streams.in_bounds(r, c) or not streams.data[r, c]:
                continue
            x, y = streams.rowcol_to_xy(r, c)
            distance = math.hypot(x - point.x, y - point.y)
            if distance > max_distance:
                continue
            acc = int(accumulation.data[r, c]) if accumulation is not None else 0
            key = (distance, -acc, r, c)
            if best_key is None or key < best_key:
                best_key = key
                best = (r, c, x, y)

    if best is None:
        raise NoStreamWithinRadius(point, max_distance, (row, col))

    r, c, x, y = best
    logger.info(
        "Snapped pour point '%s' from cell (%d, %d) to stream cell (%d, %d), distance %.2f",
        point.label, row, col, r, c, best_key[0],
    )
    return point.moved_to(x, y)
