"""
D8 flow routing: flow direction and flow accumulation.

Each valid cell drains to the single neighbour of its 8 with the steepest
downhill slope (ESRI power-of-2 codes, see watershed.grid). Accumulation
counts every cell whose flow path passes through a cell, including itself.

Two accumulation paths are provided:

- route(): accumulates in strict elevation-descending order using the
  DEM the directions were derived from
- accumulate_flow(): accumulates from a direction grid alone using Kahn's
  topological sort, with cycle detection (for grids loaded from disk)
"""

import logging
from typing import Tuple

import numpy as np
from numba import jit, prange

from watershed.exceptions import FlowCycleError, UndefinedFlowDirection
from watershed.grid import (
    D8_CODES,
    D8_COL_OFFSETS,
    D8_DISTANCES,
    D8_PRIORITY,
    D8_ROW_OFFSETS,
    DIRECTION_NODATA,
    DIRECTION_UNDEFINED,
    FlowAccumulationGrid,
    FlowDirectionGrid,
    Raster,
)

logger = logging.getLogger(__name__)

_VALID_CODES = {DIRECTION_UNDEFINED, DIRECTION_NODATA, *[int(c) for c in D8_CODES]}


@jit(nopython=True, parallel=True, cache=True)
def _compute_flow_direction_jit(dem: np.ndarray, valid: np.ndarray, flow_dir: np.ndarray) -> None:
    """
    JIT-compiled steepest-descent direction per cell (modifies flow_dir in place).

    Rows are processed in parallel; each worker writes only its own row.
    """
    rows, cols = dem.shape

    for i in prange(rows):
        for j in range(cols):
            if not valid[i, j]:
                flow_dir[i, j] = DIRECTION_NODATA
                continue

            max_slope = 0.0
            best_dir = DIRECTION_UNDEFINED
            current_elev = dem[i, j]

            # Strict > keeps the first direction in priority order on ties
            for p in range(8):
                k = D8_PRIORITY[p]
                ni = i + D8_ROW_OFFSETS[k]
                nj = j + D8_COL_OFFSETS[k]
                if 0 <= ni < rows and 0 <= nj < cols and valid[ni, nj]:
                    slope = (current_elev - dem[ni, nj]) / D8_DISTANCES[k]
                    if slope > max_slope:
                        max_slope = slope
                        best_dir = D8_CODES[k]

            flow_dir[i, j] = best_dir


@jit(nopython=True, cache=True)
def _direction_index(code):
    for k in range(8):
        if D8_CODES[k] == code:
            return k
    return -1


@jit(nopython=True, cache=True)
def _accumulate_in_order_jit(
    flow_dir: np.ndarray, order: np.ndarray, accumulation: np.ndarray
) -> None:
    """Push each cell's count to its receiver, visiting cells in ``order``."""
    cols = flow_dir.shape[1]
    for idx in range(order.shape[0]):
        flat_idx = order[idx]
        i = flat_idx // cols
        j = flat_idx % cols
        k = _direction_index(flow_dir[i, j])
        if k < 0:
            continue
        ni = i + D8_ROW_OFFSETS[k]
        nj = j + D8_COL_OFFSETS[k]
        accumulation[ni, nj] += accumulation[i, j]


@jit(nopython=True, cache=True)
def _accumulate_topological_jit(flow_dir: np.ndarray, accumulation: np.ndarray) -> np.ndarray:
    """
    Kahn's algorithm accumulation.

    Returns
    -------
    np.ndarray (int64)
        Remaining in-degree per cell. Any positive entry belongs to a cycle
        (or drains from one).
    """
    rows, cols = flow_dir.shape

    # Count how many cells flow INTO each cell
    contributor_count = np.zeros((rows, cols), dtype=np.int64)
    for i in range(rows):
        for j in range(cols):
            k = _direction_index(flow_dir[i, j])
            if k >= 0:
                contributor_count[i + D8_ROW_OFFSETS[k], j + D8_COL_OFFSETS[k]] += 1

    queue = np.zeros(rows * cols, dtype=np.int64)
    queue_size = 0
    for i in range(rows):
        for j in range(cols):
            if contributor_count[i, j] == 0 and flow_dir[i, j] != DIRECTION_NODATA:
                queue[queue_size] = i * cols + j
                queue_size += 1

    queue_pos = 0
    while queue_pos < queue_size:
        flat_idx = queue[queue_pos]
        queue_pos += 1
        i = flat_idx // cols
        j = flat_idx % cols

        k = _direction_index(flow_dir[i, j])
        if k < 0:
            continue
        ni = i + D8_ROW_OFFSETS[k]
        nj = j + D8_COL_OFFSETS[k]
        accumulation[ni, nj] += accumulation[i, j]
        contributor_count[ni, nj] -= 1
        if contributor_count[ni, nj] == 0:
            queue[queue_size] = ni * cols + nj
            queue_size += 1

    return contributor_count


def _check_directions(flow_dir: np.ndarray) -> None:
    """Reject unknown codes and directions pointing off the grid or into no-data."""
    present = set(np.unique(flow_dir).tolist())
    unknown = present - _VALID_CODES
    if unknown:
        raise ValueError(f"Invalid D8 codes in direction grid: {sorted(unknown)}")

    rows, cols = flow_dir.shape
    for k, code in enumerate(D8_CODES):
        rr, cc = np.nonzero(flow_dir == code)
        if rr.size == 0:
            continue
        nr = rr + D8_ROW_OFFSETS[k]
        nc = cc + D8_COL_OFFSETS[k]
        outside = (nr < 0) | (nr >= rows) | (nc < 0) | (nc >= cols)
        if outside.any():
            bad = int(np.argmax(outside))
            raise ValueError(
                f"Direction {int(code)} at ({rr[bad]}, {cc[bad]}) points outside the grid"
            )
        if (flow_dir[nr, nc] == DIRECTION_NODATA).any():
            bad = int(np.argmax(flow_dir[nr, nc] == DIRECTION_NODATA))
            raise ValueError(
                f"Direction {int(code)} at ({rr[bad]}, {cc[bad]}) points into a no-data cell"
            )


def compute_flow_direction(dem: Raster) -> FlowDirectionGrid:
    """
    Compute D8 flow direction from a DEM.

    Each valid cell points at the neighbour with maximum downhill slope
    (elevation drop / distance, distance 1 orthogonal and sqrt(2)
    diagonal). Equal slopes are resolved by the fixed priority
    S, E, W, N, SE, SW, NE, NW. No-data neighbours are never chosen.

    Parameters
    ----------
    dem : Raster
        Digital elevation model, normally conditioned by resolve_depressions()

    Returns
    -------
    FlowDirectionGrid
        ESRI D8 codes; 0 where no neighbour is lower (outlet or sink),
        255 on no-data cells
    """
    values = dem.data.astype(np.float64)
    valid = np.array(dem.valid_mask)
    flow_dir = np.zeros(dem.shape, dtype=np.uint8)
    _compute_flow_direction_jit(values, valid, flow_dir)
    return FlowDirectionGrid.like(dem, flow_dir)


def _initial_accumulation(flow_dir: np.ndarray) -> np.ndarray:
    accumulation = np.ones(flow_dir.shape, dtype=np.int64)
    accumulation[flow_dir == DIRECTION_NODATA] = 0
    return accumulation


def route(
    dem: Raster, *, require_conditioned: bool = True
) -> Tuple[FlowDirectionGrid, FlowAccumulationGrid]:
    """
    Compute D8 flow direction and flow accumulation for a DEM.

    Accumulation processes valid cells in strict elevation-descending
    order; since every defined direction points strictly downhill, each
    cell's count is final before it is passed on. Single O(rows*cols)
    pass after the sort.

    Parameters
    ----------
    dem : Raster
        Conditioned digital elevation model
    require_conditioned : bool, default True
        Raise if any valid cell away from the grid boundary has no
        downslope neighbour. Boundary cells (grid edge or next to
        no-data) are outlets and may legitimately be undefined.

    Returns
    -------
    direction : FlowDirectionGrid
    accumulation : FlowAccumulationGrid
        Cell counts (>= 1 on valid cells, 0 on no-data)

    Raises
    ------
    UndefinedFlowDirection
        If ``require_conditioned`` and interior sinks remain
    """
    direction = compute_flow_direction(dem)

    interior_sinks = direction.undefined_mask & ~dem.boundary_mask
    n_outlets = int(np.count_nonzero(direction.undefined_mask & dem.boundary_mask))
    if interior_sinks.any():
        cells = list(zip(*np.nonzero(interior_sinks)))
        if require_conditioned:
            raise UndefinedFlowDirection(cells)
        logger.warning("%d interior cell(s) have no downslope neighbour", len(cells))

    flow_dir = np.array(direction.data)
    elevations = dem.data.astype(np.float64).ravel()
    valid_flat = np.flatnonzero(dem.valid_mask.ravel())
    order = valid_flat[np.argsort(-elevations[valid_flat], kind="stable")]

    accumulation = _initial_accumulation(flow_dir)
    _accumulate_in_order_jit(flow_dir, order.astype(np.int64), accumulation)

    logger.info(
        "Routed %d valid cells: %d boundary outlet(s), max accumulation %d",
        valid_flat.size, n_outlets, int(accumulation.max()) if accumulation.size else 0,
    )
    return direction, FlowAccumulationGrid.like(dem, accumulation)


def accumulate_flow(direction: FlowDirectionGrid) -> FlowAccumulationGrid:
    """
    Compute flow accumulation from a direction grid alone.

    Uses topological sorting (Kahn's algorithm): cells with no
    contributors are processed first and each passes its count to its
    receiver once all of its own contributors are done.

    Parameters
    ----------
    direction : FlowDirectionGrid
        D8 directions (0 = outlet/undefined, 255 = no-data)

    Returns
    -------
    FlowAccumulationGrid

    Raises
    ------
    ValueError
        If the grid holds unknown codes or directions leaving the grid
    FlowCycleError
        If the directions form a cycle
    """
    flow_dir = np.array(direction.data, dtype=np.uint8)
    _check_directions(flow_dir)

    accumulation = _initial_accumulation(flow_dir)
    remaining = _accumulate_topological_jit(flow_dir, accumulation)

    if (remaining > 0).any():
        raise FlowCycleError(list(zip(*np.nonzero(remaining > 0))))

    return FlowAccumulationGrid.like(direction, accumulation)
