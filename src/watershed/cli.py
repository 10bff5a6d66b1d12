"""
Command line entry point for watershed delineation.

Run with:
    watershed-delineate data/dem.tif data/outlets.geojson --threshold 300 --snap-distance 200
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from watershed.config import DEFAULT_LOG_LEVEL, RESOLVE_METHODS, WatershedConfig, configure_logging
from watershed.exceptions import WatershedError
from watershed.io import read_pour_points, read_raster, write_pour_points, write_raster, write_watersheds
from watershed.pipeline import run_pipeline

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watershed-delineate",
        description="Delineate watersheds and terrain statistics for pour points on a DEM",
    )
    parser.add_argument("dem", type=Path, help="Path to DEM raster (GeoTIFF)")
    parser.add_argument("pour_points", type=Path, help="Vector file of pour points")
    parser.add_argument(
        "--threshold", type=int, required=True,
        help="Stream initiation threshold in cells (study-area specific)",
    )
    parser.add_argument(
        "--snap-distance", type=float, required=True,
        help="Maximum pour point snap distance in map units",
    )
    parser.add_argument("--label-field", default="label", help="Pour point label attribute")
    parser.add_argument("--output-dir", type=Path, default=Path("output"), help="Output directory")
    parser.add_argument("--config", type=Path, help="JSON file of WatershedConfig overrides")
    parser.add_argument("--method", choices=RESOLVE_METHODS, help="Depression resolution method")
    parser.add_argument("--plot", action="store_true", help="Save a diagnostic PNG per watershed")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    output_dir = args.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    configure_logging(
        "DEBUG" if args.verbose else DEFAULT_LOG_LEVEL,
        log_file=output_dir / "watershed.log",
    )

    try:
        config = WatershedConfig.from_json(args.config) if args.config else WatershedConfig()
        if args.method:
            config = replace(config, resolve_method=args.method)

        dem = read_raster(args.dem)
        points = read_pour_points(args.pour_points, label_field=args.label_field, crs=dem.crs)
        result = run_pipeline(
            dem,
            points,
            stream_threshold=args.threshold,
            snap_distance=args.snap_distance,
            config=config,
        )
    except (WatershedError, ValueError, FileNotFoundError) as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1

    write_raster(result.conditioned_dem, output_dir / "dem_conditioned.tif")
    write_raster(result.flow_direction, output_dir / "flow_direction.tif")
    write_raster(result.flow_accumulation, output_dir / "flow_accumulation.tif")
    write_raster(result.streams, output_dir / "streams.tif")
    write_raster(result.slope, output_dir / "slope.tif")
    write_raster(result.wetness_index, output_dir / "wetness_index.tif")

    watersheds = list(result.watersheds.values())
    write_pour_points(
        [ws.snapped_point for ws in watersheds], output_dir / "snapped_points.geojson", crs=dem.crs
    )
    write_watersheds(watersheds, output_dir / "watersheds.geojson", crs=dem.crs)

    with open(output_dir / "summary.json", "w") as f:
        json.dump(
            {"config": config.to_dict(), "watersheds": result.summary()}, f, indent=2
        )

    if args.plot:
        from watershed.diagnostics import plot_watershed

        for ws in watersheds:
            plot_watershed(
                result.conditioned_dem,
                ws.mask,
                output_dir / f"watershed_{ws.label}.png",
                streams=result.streams,
                pour_points=[ws.original_point, ws.snapped_point],
            )

    for row in result.summary():
        logger.info(
            "%s: %d cells, area %.1f, mean TWI %.3f, mean slope %.2f",
            row["label"], row["cells"], row["area"], row["mean_twi"], row["mean_slope"],
        )
    logger.info("Outputs written to %s", output_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
