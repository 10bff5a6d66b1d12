"""
Grid model for hydrological analysis.

Defines the raster value types that flow between pipeline stages:

- Raster: a read-only 2D grid with affine transform, CRS and no-data value
- FlowDirectionGrid: D8 flow directions (ESRI power-of-2 encoding)
- FlowAccumulationGrid: upstream cell counts
- StreamMask / WatershedMask: boolean grids
- PourPoint: a labelled map coordinate

Every stage returns a new grid and never writes into its inputs; arrays
are flagged read-only on construction to enforce this.
"""

from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Optional, Tuple

import numpy as np
from affine import Affine
from scipy import ndimage

from watershed.exceptions import GridGeometryMismatch, PointOutsideGrid


# ==============================================================================
# D8 FLOW DIRECTION ENCODING (ESRI ArcGIS Convention)
# ==============================================================================
#
# D8 Neighbor Geometry:
#   8  4  2
#  16  x  1
#  32 64 128
#
#   1 = East       : (0, +1), distance = 1
#   2 = Northeast  : (-1, +1), distance = sqrt(2)
#   4 = North      : (-1, 0), distance = 1
#   8 = Northwest  : (-1, -1), distance = sqrt(2)
#  16 = West       : (0, -1), distance = 1
#  32 = Southwest  : (+1, -1), distance = sqrt(2)
#  64 = South      : (+1, 0), distance = 1
# 128 = Southeast  : (+1, +1), distance = sqrt(2)

# (row_offset, col_offset) -> direction_code
D8_DIRECTIONS = {
    (0, 1): 1,
    (-1, 1): 2,
    (-1, 0): 4,
    (-1, -1): 8,
    (0, -1): 16,
    (1, -1): 32,
    (1, 0): 64,
    (1, 1): 128,
}

# direction_code -> (row_offset, col_offset)
D8_OFFSETS = {v: k for k, v in D8_DIRECTIONS.items()}

# Array forms, index k in 0..7 follows the code order above (for numba kernels)
D8_CODES = np.array([1, 2, 4, 8, 16, 32, 64, 128], dtype=np.uint8)
D8_ROW_OFFSETS = np.array([0, -1, -1, -1, 0, 1, 1, 1], dtype=np.int64)
D8_COL_OFFSETS = np.array([1, 1, 0, -1, -1, -1, 0, 1], dtype=np.int64)
D8_DISTANCES = np.array(
    [1.0, np.sqrt(2.0), 1.0, np.sqrt(2.0), 1.0, np.sqrt(2.0), 1.0, np.sqrt(2.0)],
    dtype=np.float64,
)

# Tie-breaking priority when slopes are equal: S, E, W, N, SE, SW, NE, NW
D8_PRIORITY = np.array([6, 0, 4, 2, 7, 5, 1, 3], dtype=np.int64)

DIRECTION_UNDEFINED = 0
DIRECTION_NODATA = 255
ACCUMULATION_NODATA = 0


@dataclass(frozen=True)
class PourPoint:
    """A labelled map coordinate where a watershed's drainage is evaluated."""

    label: str
    x: float
    y: float
    crs: Optional[Any] = None

    def moved_to(self, x: float, y: float) -> "PourPoint":
        """Return a copy of this point at a new location (same label and CRS)."""
        return PourPoint(label=self.label, x=float(x), y=float(y), crs=self.crs)


@dataclass(frozen=True, eq=False)
class Raster:
    """
    Immutable 2D grid of numeric cells.

    Attributes:
        data: 2D array of cell values (copied and made read-only)
        transform: Affine transform mapping (col, row) to map (x, y)
        nodata: Sentinel for missing cells. NaN is accepted; for float
            grids NaN cells are always treated as no-data.
        crs: Coordinate reference system (any rasterio-compatible value)
    """

    data: np.ndarray
    transform: Affine = field(default_factory=Affine.identity)
    nodata: Optional[float] = None
    crs: Optional[Any] = None

    def __post_init__(self):
        array = np.array(self.data, copy=True)
        if array.ndim != 2:
            raise ValueError(f"Raster data must be 2D, got shape {array.shape}")
        array.setflags(write=False)
        object.__setattr__(self, "data", array)

    @classmethod
    def from_array(
        cls,
        data,
        cell_size: float = 1.0,
        origin: Tuple[float, float] = (0.0, 0.0),
        nodata: Optional[float] = None,
        crs: Optional[Any] = None,
    ) -> "Raster":
        """
        Build a north-up raster from an array.

        Args:
            data: 2D array of values
            cell_size: Square cell size in map units
            origin: Map coordinate (x, y) of the upper-left corner
            nodata: No-data sentinel
            crs: Coordinate reference system
        """
        transform = Affine(cell_size, 0.0, origin[0], 0.0, -cell_size, origin[1])
        return cls(data=data, transform=transform, nodata=nodata, crs=crs)

    @classmethod
    def like(cls, other: "Raster", data, nodata: Optional[float] = None, **kwargs):
        """
        Create a grid of this class sharing ``other``'s geometry and CRS.

        When ``nodata`` is None the class default sentinel is used.
        """
        if nodata is not None:
            kwargs["nodata"] = nodata
        return cls(data=data, transform=other.transform, crs=other.crs, **kwargs)

    def with_data(self, data, nodata: Optional[float] = None) -> "Raster":
        """Plain Raster on this grid's geometry holding new values."""
        return Raster.like(self, data, nodata=nodata)

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    @property
    def geometry(self) -> Tuple[Tuple[int, int], Affine]:
        return self.shape, self.transform

    @property
    def cell_size(self) -> Tuple[float, float]:
        """Cell resolution (x, y) in map units."""
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def cell_area(self) -> float:
        dx, dy = self.cell_size
        return dx * dy

    def same_geometry(self, other: "Raster") -> bool:
        return self.shape == other.shape and self.transform.almost_equals(other.transform)

    def require_same_geometry(self, other: "Raster", context: str = "") -> None:
        """Raise GridGeometryMismatch unless ``other`` shares this grid's geometry."""
        if not self.same_geometry(other):
            raise GridGeometryMismatch(self.geometry, other.geometry, context)

    def xy_to_rowcol(self, x: float, y: float) -> Tuple[int, int]:
        """Index of the cell containing map coordinate (x, y)."""
        col, row = ~self.transform * (x, y)
        return int(np.floor(row)), int(np.floor(col))

    def rowcol_to_xy(self, row: int, col: int) -> Tuple[float, float]:
        """Map coordinate of the centre of cell (row, col)."""
        x, y = self.transform * (col + 0.5, row + 0.5)
        return float(x), float(y)

    def in_bounds(self, row: int, col: int) -> bool:
        return 0 <= row < self.rows and 0 <= col < self.cols

    def contains_xy(self, x: float, y: float) -> bool:
        return self.in_bounds(*self.xy_to_rowcol(x, y))

    def cell_of(self, point: PourPoint) -> Tuple[int, int]:
        """Cell containing a pour point; raises PointOutsideGrid if off-grid."""
        row, col = self.xy_to_rowcol(point.x, point.y)
        if not self.in_bounds(row, col):
            raise PointOutsideGrid(point)
        return row, col

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    @cached_property
    def valid_mask(self) -> np.ndarray:
        """Boolean mask of cells holding valid samples."""
        mask = np.ones(self.shape, dtype=bool)
        if np.issubdtype(self.data.dtype, np.floating):
            mask &= ~np.isnan(self.data)
        if self.nodata is not None and not np.isnan(self.nodata):
            mask &= self.data != self.nodata
        mask.setflags(write=False)
        return mask

    @cached_property
    def boundary_mask(self) -> np.ndarray:
        """
        Valid cells where water may leave the grid.

        A boundary cell is a valid cell on the outer edge of the grid or
        8-adjacent to a no-data cell.
        """
        invalid = ~self.valid_mask
        boundary = ndimage.binary_dilation(invalid, structure=np.ones((3, 3), dtype=bool))
        boundary[0, :] = True
        boundary[-1, :] = True
        boundary[:, 0] = True
        boundary[:, -1] = True
        boundary &= self.valid_mask
        boundary.setflags(write=False)
        return boundary

    @property
    def valid_count(self) -> int:
        return int(np.count_nonzero(self.valid_mask))

    def filled(self, fill_value: float = np.nan) -> np.ndarray:
        """Float64 copy of the data with no-data cells replaced by ``fill_value``."""
        out = self.data.astype(np.float64)
        out[~self.valid_mask] = fill_value
        return out

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(shape={self.shape}, dtype={self.data.dtype}, "
            f"cell_size={self.cell_size}, nodata={self.nodata})"
        )


@dataclass(frozen=True, eq=False, repr=False)
class FlowDirectionGrid(Raster):
    """D8 flow directions; 0 = undefined (no downslope neighbour), 255 = no-data."""

    nodata: Optional[float] = DIRECTION_NODATA

    def downstream(self, row: int, col: int) -> Optional[Tuple[int, int]]:
        """Index of the cell that (row, col) drains into, or None."""
        code = int(self.data[row, col])
        offset = D8_OFFSETS.get(code)
        if offset is None:
            return None
        nr, nc = row + offset[0], col + offset[1]
        if not self.in_bounds(nr, nc):
            return None
        return nr, nc

    @property
    def undefined_mask(self) -> np.ndarray:
        return (self.data == DIRECTION_UNDEFINED) & self.valid_mask


@dataclass(frozen=True, eq=False, repr=False)
class FlowAccumulationGrid(Raster):
    """Number of cells (including itself) draining through each cell; 0 = no-data."""

    nodata: Optional[float] = ACCUMULATION_NODATA


@dataclass(frozen=True, eq=False, repr=False)
class StreamMask(Raster):
    """Boolean grid, True on stream-channel cells."""

    threshold: Optional[int] = None

    @property
    def cell_count(self) -> int:
        return int(np.count_nonzero(self.data))


@dataclass(frozen=True, eq=False, repr=False)
class WatershedMask(Raster):
    """Boolean grid, True on every cell draining to ``pour_point``."""

    pour_point: Optional[PourPoint] = None

    @property
    def cell_count(self) -> int:
        return int(np.count_nonzero(self.data))

    @property
    def area(self) -> float:
        """Catchment area in squared map units."""
        return self.cell_count * self.cell_area
