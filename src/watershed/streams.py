"""
Stream extraction from flow accumulation.

A cell is a stream cell iff its accumulation reaches the threshold. The
threshold is a modelling assumption (channel initiation area) chosen per
study area; it is not derived from the data and has no default.
"""

import logging

import numpy as np

from watershed.grid import FlowAccumulationGrid, StreamMask

logger = logging.getLogger(__name__)


def extract_streams(accumulation: FlowAccumulationGrid, threshold: int) -> StreamMask:
    """
    Threshold flow accumulation into a binary stream-channel mask.

    Args:
        accumulation: Flow accumulation grid (cell counts)
        threshold: Minimum upstream cell count for a channel. Raising it
            can only remove stream cells, never add them.

    Returns:
        StreamMask on the accumulation grid's geometry (no-data cells are
        never streams)

    Raises:
        ValueError: If threshold < 1
    """
    if threshold is None or threshold < 1:
        raise ValueError(f"Stream threshold must be >= 1 cell, got {threshold}")

    streams = (accumulation.data >= threshold) & accumulation.valid_mask
    mask = StreamMask.like(accumulation, streams, threshold=int(threshold))

    n_valid = accumulation.valid_count
    pct = 100.0 * mask.cell_count / n_valid if n_valid else 0.0
    logger.info(
        "Extracted %d stream cells (%.2f%% of valid cells) at threshold %d",
        mask.cell_count, pct, threshold,
    )
    if mask.cell_count == 0:
        logger.warning(
            "No stream cells at threshold %d (max accumulation %d)",
            threshold, int(np.max(accumulation.data)) if accumulation.data.size else 0,
        )
    return mask
