"""
Diagnostic plotting for watershed results.

Renders a DEM with the delineated catchment, stream network and pour
points overlaid, for checking snapping and delineation by eye.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from watershed.grid import PourPoint, Raster, StreamMask, WatershedMask

logger = logging.getLogger(__name__)


def plot_watershed(
    dem: Raster,
    mask: WatershedMask,
    output_path: Path,
    streams: Optional[StreamMask] = None,
    pour_points: Sequence[PourPoint] = (),
    title: Optional[str] = None,
    cmap: str = "terrain",
) -> Path:
    """
    Save a PNG of the hill-shaded DEM with a watershed overlay.

    Args:
        dem: Elevation raster for the base layer
        mask: Watershed mask to outline and tint
        output_path: PNG file to write
        streams: Optional stream mask drawn in blue
        pour_points: Points to mark (e.g. original and snapped outlet)
        title: Figure title (defaults to the mask's pour point label)
        cmap: Colormap for elevation

    Returns:
        Path to the saved plot
    """
    import matplotlib

    matplotlib.use("Agg")  # Non-interactive backend
    import matplotlib.pyplot as plt
    from matplotlib.colors import LightSource

    dem.require_same_geometry(mask, "plot_watershed")
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    elev = np.ma.masked_invalid(dem.filled(np.nan))
    left, top = dem.transform.c, dem.transform.f
    right = left + dem.transform.a * dem.cols
    bottom = top + dem.transform.e * dem.rows
    extent = (left, right, bottom, top)

    fig, ax = plt.subplots(figsize=(8, 8))

    dx, dy = dem.cell_size
    shade = LightSource(azdeg=315, altdeg=45).hillshade(
        elev.filled(np.nanmin(elev) if elev.count() else 0.0), dx=dx, dy=dy
    )
    ax.imshow(shade, cmap="gray", extent=extent, interpolation="nearest")
    im = ax.imshow(elev, cmap=cmap, alpha=0.6, extent=extent, interpolation="nearest")
    plt.colorbar(im, ax=ax, label="Elevation", shrink=0.7)

    tint = np.ma.masked_where(~np.asarray(mask.data, dtype=bool), np.ones(mask.shape))
    ax.imshow(tint, cmap="autumn", alpha=0.35, extent=extent, interpolation="nearest")
    ax.contour(
        np.asarray(mask.data, dtype=float),
        levels=[0.5],
        colors="red",
        linewidths=1.5,
        extent=extent,
        origin="upper",
    )

    if streams is not None:
        stream_layer = np.ma.masked_where(~np.asarray(streams.data, dtype=bool), np.ones(streams.shape))
        ax.imshow(stream_layer, cmap="winter", extent=extent, interpolation="nearest")

    for point in pour_points:
        ax.plot(point.x, point.y, marker="o", markersize=7, markeredgecolor="black")
        ax.annotate(point.label, (point.x, point.y), xytext=(4, 4), textcoords="offset points")

    if title is None and mask.pour_point is not None:
        title = f"Watershed '{mask.pour_point.label}' ({mask.cell_count:,} cells)"
    if title:
        ax.set_title(title)

    plt.tight_layout()
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)

    logger.info("Saved watershed plot to %s", output_path)
    return output_path
