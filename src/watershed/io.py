"""
Raster and vector I/O adapters.

The pipeline itself only exchanges in-memory grids and points; these
adapters persist them (GeoTIFF via rasterio, vector points and polygons
via geopandas) and supply DEMs from local elevation tiles.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.merge import merge
from shapely.geometry import Point
from tqdm import tqdm

from watershed.delineation import watershed_boundary
from watershed.grid import PourPoint, Raster

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def read_raster(path: PathLike, band: int = 1) -> Raster:
    """
    Read one band of a raster file.

    Args:
        path: Raster file (any format rasterio can open)
        band: 1-based band index

    Returns:
        Raster with the file's transform, CRS and no-data value

    Raises:
        FileNotFoundError: If the file does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Raster file not found: {path}")

    with rasterio.open(path) as src:
        data = src.read(band)
        raster = Raster(data=data, transform=src.transform, nodata=src.nodata, crs=src.crs)

    logger.info("Read %s: shape %s, cell size %s", path.name, raster.shape, raster.cell_size)
    return raster


def write_raster(raster: Raster, path: PathLike) -> Path:
    """
    Write a raster to a single-band LZW-compressed GeoTIFF.

    Boolean grids are stored as uint8 (0/1). int64 grids (accumulation
    counts) are stored as int32 when their values fit.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = raster.data
    if data.dtype == bool:
        data = data.astype(np.uint8)
    elif data.dtype == np.int64 and (data.size == 0 or np.abs(data).max() < 2**31):
        data = data.astype(np.int32)
    height, width = data.shape

    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=1,
        dtype=data.dtype,
        crs=raster.crs,
        transform=raster.transform,
        nodata=raster.nodata,
        compress="lzw",
    ) as dst:
        dst.write(data, 1)

    logger.debug("Wrote %s", path)
    return path


def read_pour_points(
    path: PathLike, label_field: str = "label", crs: Optional[object] = None
) -> List[PourPoint]:
    """
    Load pour points from a vector file.

    Args:
        path: Any vector format geopandas can read (GeoJSON, GPKG, SHP, ...)
        label_field: Attribute holding each point's label. If absent, the
            row index is used.
        crs: Reproject points to this CRS before returning them

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a geometry is not a point or labels repeat
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pour point file not found: {path}")

    gdf = gpd.read_file(path)
    if crs is not None and gdf.crs is not None:
        gdf = gdf.to_crs(crs)

    points = []
    for idx, row in gdf.iterrows():
        geom = row.geometry
        if geom is None or geom.geom_type != "Point":
            raise ValueError(f"Feature {idx} in {path.name} is not a point")
        label = str(row[label_field]) if label_field in gdf.columns else str(idx)
        points.append(PourPoint(label=label, x=float(geom.x), y=float(geom.y), crs=gdf.crs))

    labels = [p.label for p in points]
    if len(set(labels)) != len(labels):
        raise ValueError(f"Duplicate pour point labels in {path.name}")

    logger.info("Loaded %d pour point(s) from %s", len(points), path.name)
    return points


def write_pour_points(
    points: Sequence[PourPoint], path: PathLike, crs: Optional[object] = None
) -> Path:
    """Write pour points (label + coordinate) to a vector file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if crs is None and points:
        crs = points[0].crs

    gdf = gpd.GeoDataFrame(
        {"label": [p.label for p in points]},
        geometry=[Point(p.x, p.y) for p in points],
        crs=crs,
    )
    gdf.to_file(path)
    return path


def write_watersheds(results: Iterable, path: PathLike, crs: Optional[object] = None) -> Path:
    """
    Write watershed boundaries with their statistics as polygons.

    Args:
        results: WatershedResult objects (see watershed.pipeline)
        path: Output vector file
        crs: CRS for the output (defaults to the masks' CRS)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    records = []
    geometries = []
    for result in results:
        records.append(result.summary())
        geometries.append(watershed_boundary(result.mask))
        if crs is None:
            crs = result.mask.crs

    gdf = gpd.GeoDataFrame(records, geometry=geometries, crs=crs)
    gdf.to_file(path)
    logger.info("Wrote %d watershed polygon(s) to %s", len(records), path)
    return path


class LocalElevationSource:
    """
    Elevation source backed by a directory of local DEM tiles.

    Merges every tile matching ``pattern`` that intersects the requested
    bounds into a single Raster.
    """

    def __init__(self, directory: PathLike, pattern: str = "*.tif", recursive: bool = False):
        self.directory = Path(directory)
        self.pattern = pattern
        self.recursive = recursive

        if not self.directory.is_dir():
            raise ValueError(f"Directory does not exist: {self.directory}")

    def tiles(self) -> List[Path]:
        glob_func = self.directory.rglob if self.recursive else self.directory.glob
        return sorted(glob_func(self.pattern))

    def fetch(
        self,
        bounds: Optional[Tuple[float, float, float, float]] = None,
        resolution: Optional[float] = None,
    ) -> Raster:
        """
        Merge local tiles into a DEM.

        Args:
            bounds: (left, bottom, right, top) in the tiles' CRS, or None for
                the union of all tiles
            resolution: Output cell size, or None to keep the tiles' own

        Raises:
            ValueError: If no tiles match the pattern
        """
        files = self.tiles()
        if not files:
            raise ValueError(f"No files matching '{self.pattern}' found in {self.directory}")

        datasets = []
        try:
            for file in tqdm(files, desc="Opening DEM tiles"):
                datasets.append(rasterio.open(file))

            nodata = datasets[0].nodata
            merged, transform = merge(datasets, bounds=bounds, res=resolution, nodata=nodata)
            crs = datasets[0].crs
        finally:
            for ds in datasets:
                ds.close()

        dem = Raster(data=merged[0], transform=transform, nodata=nodata, crs=crs)
        logger.info("Merged %d tile(s) into DEM of shape %s", len(files), dem.shape)
        return dem
