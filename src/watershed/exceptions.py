"""
Exception classes for the watershed delineation pipeline.

Every error raised by a pipeline stage derives from WatershedError and
carries the offending cell indices (and, where relevant, coordinates) so
callers can retry with adjusted parameters: a larger snap radius, a
longer breach distance, a different pour point.
"""

from typing import List, Optional, Sequence, Tuple

Cell = Tuple[int, int]


class WatershedError(Exception):
    """Base exception for watershed pipeline errors."""

    def __init__(self, message: str, cells: Optional[Sequence[Cell]] = None):
        super().__init__(message)
        self.cells: List[Cell] = [(int(r), int(c)) for r, c in (cells or [])]


class UnresolvableDepression(WatershedError):
    """Depressions remain after the resolver hit its iteration cap or stalled."""

    def __init__(self, cells: Sequence[Cell], iterations: int):
        self.iterations = iterations
        preview = ", ".join(f"({r}, {c})" for r, c in list(cells)[:10])
        more = f" (+{len(cells) - 10} more)" if len(cells) > 10 else ""
        super().__init__(
            f"{len(cells)} depression cell(s) unresolved after {iterations} pass(es): "
            f"{preview}{more}",
            cells,
        )


class UndefinedFlowDirection(WatershedError):
    """Interior sink cells reached the routing stage without conditioning."""

    def __init__(self, cells: Sequence[Cell]):
        preview = ", ".join(f"({r}, {c})" for r, c in list(cells)[:10])
        super().__init__(
            f"{len(cells)} interior cell(s) have no downslope neighbour: {preview}. "
            "Condition the DEM with resolve_depressions() before routing.",
            cells,
        )


class FlowCycleError(WatershedError):
    """The flow direction grid contains a cycle."""

    def __init__(self, cells: Sequence[Cell]):
        super().__init__(
            f"Cycle detected in flow network: {len(cells)} cell(s) never reached "
            "in-degree 0",
            cells,
        )


class NoStreamWithinRadius(WatershedError):
    """No stream cell lies within the snap radius of a pour point."""

    def __init__(self, point, max_distance: float, cell: Optional[Cell] = None):
        self.point = point
        self.max_distance = max_distance
        super().__init__(
            f"No stream cell within {max_distance:g} of pour point "
            f"'{point.label}' at ({point.x:g}, {point.y:g})",
            [cell] if cell is not None else None,
        )


class PointOutsideGrid(WatershedError):
    """A pour point does not fall on the raster grid."""

    def __init__(self, point):
        self.point = point
        super().__init__(
            f"Pour point '{point.label}' at ({point.x:g}, {point.y:g}) is outside the grid"
        )


class EmptyZone(WatershedError):
    """A zonal aggregation selected zero valid cells."""

    def __init__(self, message: str, label: Optional[str] = None):
        self.label = label
        super().__init__(message)


class GridGeometryMismatch(WatershedError):
    """Two grids handed to one stage do not share rows, cols and transform."""

    def __init__(self, expected, actual, context: str = ""):
        self.expected = expected
        self.actual = actual
        where = f" in {context}" if context else ""
        super().__init__(
            f"Grid geometry mismatch{where}: expected shape {expected[0]} with "
            f"transform {tuple(expected[1])[:6]}, got shape {actual[0]} with "
            f"transform {tuple(actual[1])[:6]}"
        )
