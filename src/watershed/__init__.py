"""
Watershed delineation and terrain analysis package.

Core functionality:
- Raster grid model with D8 flow direction / accumulation grids
- Depression resolution (constrained breaching + priority-flood fill)
- D8 flow routing, stream extraction and pour point snapping
- Watershed delineation and terrain indices (slope, wetness index)
"""

from .grid import (
    FlowAccumulationGrid,
    FlowDirectionGrid,
    PourPoint,
    Raster,
    StreamMask,
    WatershedMask,
)
from .depressions import fill_depressions, identify_sinks, resolve_depressions
from .flow_routing import accumulate_flow, compute_flow_direction, route
from .streams import extract_streams
from .snapping import snap_pour_point
from .delineation import delineate_watershed, watershed_boundary
from .terrain_indices import (
    compute_slope,
    compute_wetness_index,
    zonal_mean,
    zonal_statistics,
)
from .pipeline import PipelineResult, WatershedResult, run_pipeline

__all__ = [
    "Raster",
    "FlowDirectionGrid",
    "FlowAccumulationGrid",
    "StreamMask",
    "WatershedMask",
    "PourPoint",
    "identify_sinks",
    "fill_depressions",
    "resolve_depressions",
    "compute_flow_direction",
    "route",
    "accumulate_flow",
    "extract_streams",
    "snap_pour_point",
    "delineate_watershed",
    "watershed_boundary",
    "compute_slope",
    "compute_wetness_index",
    "zonal_mean",
    "zonal_statistics",
    "run_pipeline",
    "PipelineResult",
    "WatershedResult",
]
