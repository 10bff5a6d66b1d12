"""
End-to-end watershed delineation pipeline.

Runs the DEM-wide stages once, then the per-point stages for every pour
point:

1. Depression resolution (breach + fill)
2. D8 flow direction and accumulation
3. Stream extraction
4. Slope and topographic wetness index
5. Per pour point: snap -> delineate -> zonal statistics

Each stage consumes the previous stage's full output grid; nothing is
read back from disk between stages.

Example:
    from watershed.io import read_raster, read_pour_points
    from watershed.pipeline import run_pipeline

    dem = read_raster("data/dem.tif")
    points = read_pour_points("data/outlets.geojson")
    result = run_pipeline(dem, points, stream_threshold=300, snap_distance=200.0)
    for row in result.summary():
        print(row)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from tqdm import tqdm

from watershed.config import WatershedConfig
from watershed.delineation import delineate_watershed
from watershed.depressions import resolve_depressions
from watershed.flow_routing import route
from watershed.grid import (
    FlowAccumulationGrid,
    FlowDirectionGrid,
    PourPoint,
    Raster,
    StreamMask,
    WatershedMask,
)
from watershed.snapping import snap_pour_point
from watershed.streams import extract_streams
from watershed.terrain_indices import compute_slope, compute_wetness_index, zonal_mean

logger = logging.getLogger(__name__)


@dataclass
class WatershedResult:
    """Delineation output for one pour point."""

    label: str
    original_point: PourPoint
    snapped_point: PourPoint
    mask: WatershedMask
    mean_wetness_index: float
    mean_slope: float

    @property
    def cell_count(self) -> int:
        return self.mask.cell_count

    @property
    def area(self) -> float:
        return self.mask.area

    def summary(self) -> Dict[str, object]:
        return {
            "label": self.label,
            "x": self.snapped_point.x,
            "y": self.snapped_point.y,
            "snap_distance": (
                (self.snapped_point.x - self.original_point.x) ** 2
                + (self.snapped_point.y - self.original_point.y) ** 2
            ) ** 0.5,
            "cells": self.cell_count,
            "area": self.area,
            "mean_twi": self.mean_wetness_index,
            "mean_slope": self.mean_slope,
        }


@dataclass
class PipelineResult:
    """All grids produced for a DEM plus per-pour-point watershed results."""

    conditioned_dem: Raster
    flow_direction: FlowDirectionGrid
    flow_accumulation: FlowAccumulationGrid
    streams: StreamMask
    slope: Raster
    wetness_index: Raster
    watersheds: Dict[str, WatershedResult] = field(default_factory=dict)

    def summary(self) -> List[Dict[str, object]]:
        return [ws.summary() for ws in self.watersheds.values()]


def run_pipeline(
    dem: Raster,
    pour_points: Sequence[PourPoint],
    *,
    stream_threshold: int,
    snap_distance: float,
    config: Optional[WatershedConfig] = None,
) -> PipelineResult:
    """
    Delineate watersheds and terrain statistics for a set of pour points.

    Args:
        dem: Raw digital elevation model
        pour_points: Outlets to delineate (labels must be unique)
        stream_threshold: Channel initiation threshold in cells (required;
            an empirical, study-area specific choice)
        snap_distance: Maximum pour point snap distance in map units
        config: Tunable parameters (defaults if None)

    Returns:
        PipelineResult with every intermediate grid and one WatershedResult
        per pour point, keyed by label

    Raises:
        ValueError: On duplicate labels or invalid thresholds
        UnresolvableDepression, UndefinedFlowDirection: From conditioning/routing
        NoStreamWithinRadius, PointOutsideGrid, EmptyZone: From per-point stages
    """
    config = config or WatershedConfig()

    labels = [p.label for p in pour_points]
    if len(set(labels)) != len(labels):
        raise ValueError(f"Pour point labels must be unique: {labels}")

    logger.info("=" * 60)
    logger.info("WATERSHED PIPELINE: DEM %s, %d pour point(s)", dem.shape, len(pour_points))
    logger.info("=" * 60)

    logger.info("1. Resolving depressions (%s)...", config.resolve_method)
    conditioned = resolve_depressions(
        dem,
        method=config.resolve_method,
        max_breach_depth=config.max_breach_depth,
        max_breach_length=config.max_breach_length,
        epsilon=config.epsilon,
        max_iterations=config.max_iterations,
    )

    logger.info("2. Routing flow (D8)...")
    direction, accumulation = route(
        conditioned, require_conditioned=config.require_conditioned
    )

    logger.info("3. Extracting streams (threshold=%s cells)...", stream_threshold)
    streams = extract_streams(accumulation, stream_threshold)

    logger.info("4. Computing slope and wetness index...")
    slope = compute_slope(conditioned)
    twi = compute_wetness_index(accumulation, slope, tan_epsilon=config.tan_slope_epsilon)

    result = PipelineResult(
        conditioned_dem=conditioned,
        flow_direction=direction,
        flow_accumulation=accumulation,
        streams=streams,
        slope=slope,
        wetness_index=twi,
    )

    logger.info("5. Delineating %d watershed(s)...", len(pour_points))
    for point in tqdm(pour_points, desc="Delineating watersheds", disable=len(pour_points) < 2):
        snapped = snap_pour_point(point, streams, snap_distance, accumulation)
        mask = delineate_watershed(direction, snapped)
        result.watersheds[point.label] = WatershedResult(
            label=point.label,
            original_point=point,
            snapped_point=snapped,
            mask=mask,
            mean_wetness_index=zonal_mean(twi, mask),
            mean_slope=zonal_mean(slope, mask),
        )

    return result
