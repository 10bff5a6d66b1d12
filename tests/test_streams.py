"""Tests for stream extraction."""

import numpy as np
import pytest

from watershed.flow_routing import route
from watershed.grid import FlowAccumulationGrid, Raster
from watershed.streams import extract_streams


def _accumulation(values):
    template = Raster.from_array(np.zeros(np.shape(values)), cell_size=10.0)
    return FlowAccumulationGrid.like(template, np.asarray(values, dtype=np.int64))


class TestExtractStreams:
    def test_threshold_is_inclusive(self):
        streams = extract_streams(_accumulation([[1, 4, 5, 9]]), threshold=5)
        np.testing.assert_array_equal(streams.data, [[False, False, True, True]])
        assert streams.threshold == 5
        assert streams.cell_count == 2

    def test_valley_channel_follows_centre_column(self, valley_dem):
        _, accumulation = route(valley_dem)
        streams = extract_streams(accumulation, threshold=50)

        assert streams.data[19, 7]
        assert not streams.data[0, 0]
        assert streams.same_geometry(valley_dem)

    def test_raising_threshold_only_removes_cells(self, sample_dem):
        from watershed.depressions import resolve_depressions

        _, accumulation = route(resolve_depressions(sample_dem))
        previous = None
        for threshold in (1, 2, 5, 10, 50, 200):
            streams = extract_streams(accumulation, threshold)
            if previous is not None:
                # New mask must be a subset of the previous one
                assert not np.any(streams.data & ~previous)
            previous = streams.data

    def test_threshold_one_marks_every_valid_cell(self, valley_dem):
        _, accumulation = route(valley_dem)
        streams = extract_streams(accumulation, threshold=1)
        assert streams.cell_count == valley_dem.valid_count

    def test_nodata_cells_never_streams(self):
        # Accumulation nodata is 0, so a threshold of 1 still excludes it
        streams = extract_streams(_accumulation([[0, 3], [7, 0]]), threshold=1)
        np.testing.assert_array_equal(streams.data, [[False, True], [True, False]])

    def test_threshold_above_max_gives_empty_mask(self, caplog):
        streams = extract_streams(_accumulation([[1, 2], [3, 4]]), threshold=100)
        assert streams.cell_count == 0
        assert "No stream cells" in caplog.text

    @pytest.mark.parametrize("threshold", [0, -5, None])
    def test_invalid_threshold_rejected(self, threshold):
        with pytest.raises(ValueError, match="threshold"):
            extract_streams(_accumulation([[1, 2]]), threshold=threshold)
