"""
Integration tests for the end-to-end pipeline, raster/vector I/O and CLI.

Uses the valley fixture: every cell drains to the bottom-centre outlet
(19, 7), and the centre column is the main channel.
"""

import json

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point, Polygon

from watershed.cli import main
from watershed.config import WatershedConfig
from watershed.diagnostics import plot_watershed
from watershed.exceptions import NoStreamWithinRadius
from watershed.grid import PourPoint, Raster
from watershed.io import (
    LocalElevationSource,
    read_pour_points,
    read_raster,
    write_pour_points,
    write_raster,
    write_watersheds,
)
from watershed.pipeline import run_pipeline

from conftest import make_valley

CRS = "EPSG:32610"


def _valley_points(dem):
    outlet = PourPoint("outlet", *dem.rowcol_to_xy(19, 7))
    # Hillslope cell beside the channel; nearest channel cells are (9, 7) and (10, 7)
    side = PourPoint("side", *dem.rowcol_to_xy(10, 6))
    return [outlet, side]


class TestRunPipeline:
    def test_valley_watersheds(self, valley_dem):
        result = run_pipeline(
            valley_dem, _valley_points(valley_dem), stream_threshold=20, snap_distance=15.0
        )

        outlet = result.watersheds["outlet"]
        assert outlet.cell_count == 300
        assert outlet.area == pytest.approx(300 * 100.0)
        assert outlet.snapped_point is outlet.original_point

        side = result.watersheds["side"]
        # Snapped to the higher-accumulation channel cell among equidistant ones
        assert (side.snapped_point.x, side.snapped_point.y) == valley_dem.rowcol_to_xy(10, 7)
        assert side.cell_count == result.flow_accumulation.data[10, 7] == 109

    def test_grids_share_geometry(self, valley_dem):
        result = run_pipeline(
            valley_dem, _valley_points(valley_dem), stream_threshold=20, snap_distance=15.0
        )
        for grid in (
            result.conditioned_dem,
            result.flow_direction,
            result.flow_accumulation,
            result.streams,
            result.slope,
            result.wetness_index,
        ):
            assert grid.same_geometry(valley_dem)

    def test_summary_rows(self, valley_dem):
        result = run_pipeline(
            valley_dem, _valley_points(valley_dem), stream_threshold=20, snap_distance=15.0
        )
        rows = {row["label"]: row for row in result.summary()}

        assert set(rows) == {"outlet", "side"}
        assert rows["outlet"]["snap_distance"] == 0.0
        assert rows["side"]["snap_distance"] == pytest.approx(10.0)
        for row in rows.values():
            assert np.isfinite(row["mean_twi"])
            assert 0.0 <= row["mean_slope"] < 90.0

    def test_pit_dem_is_conditioned_first(self, sample_dem):
        point = PourPoint("low", *sample_dem.rowcol_to_xy(0, 20))
        result = run_pipeline(
            sample_dem,
            [point],
            stream_threshold=5,
            snap_distance=200.0,
            config=WatershedConfig(resolve_method="fill"),
        )
        assert result.watersheds["low"].cell_count >= 5

    def test_duplicate_labels_rejected(self, valley_dem):
        points = [PourPoint("a", 1075.0, 4805.0), PourPoint("a", 1075.0, 4895.0)]
        with pytest.raises(ValueError, match="unique"):
            run_pipeline(valley_dem, points, stream_threshold=20, snap_distance=15.0)

    def test_threshold_is_required(self, valley_dem):
        with pytest.raises(TypeError):
            run_pipeline(valley_dem, _valley_points(valley_dem), snap_distance=15.0)
        with pytest.raises(ValueError, match="threshold"):
            run_pipeline(
                valley_dem, _valley_points(valley_dem), stream_threshold=0, snap_distance=15.0
            )

    def test_snap_failure_propagates(self, valley_dem):
        far = PourPoint("ridge", *valley_dem.rowcol_to_xy(0, 0))
        with pytest.raises(NoStreamWithinRadius):
            run_pipeline(valley_dem, [far], stream_threshold=200, snap_distance=20.0)


class TestRasterIO:
    def test_round_trip(self, tmp_path):
        dem = make_valley(nodata=-9999.0)
        dem = Raster(
            data=np.where(np.eye(20, 15, dtype=bool), -9999.0, dem.data),
            transform=dem.transform,
            nodata=-9999.0,
            crs=CRS,
        )
        path = write_raster(dem, tmp_path / "dem.tif")
        loaded = read_raster(path)

        np.testing.assert_array_equal(loaded.data, dem.data)
        assert loaded.same_geometry(dem)
        assert loaded.nodata == -9999.0
        assert loaded.crs.to_epsg() == 32610
        np.testing.assert_array_equal(loaded.valid_mask, dem.valid_mask)

    def test_bool_written_as_uint8(self, tmp_path, valley_dem):
        from watershed.grid import StreamMask

        streams = StreamMask.like(valley_dem, valley_dem.data < 90.0, threshold=1)
        loaded = read_raster(write_raster(streams, tmp_path / "streams.tif"))
        assert loaded.data.dtype == np.uint8
        np.testing.assert_array_equal(loaded.data.astype(bool), streams.data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Raster file not found"):
            read_raster(tmp_path / "nope.tif")


class TestPourPointIO:
    def test_round_trip(self, tmp_path):
        points = [PourPoint("a", 1075.0, 4805.0), PourPoint("b", 1065.0, 4895.0)]
        path = write_pour_points(points, tmp_path / "points.gpkg", crs=CRS)
        loaded = read_pour_points(path)

        assert [(p.label, p.x, p.y) for p in loaded] == [
            ("a", 1075.0, 4805.0),
            ("b", 1065.0, 4895.0),
        ]
        assert loaded[0].crs.to_epsg() == 32610

    def test_custom_label_field_and_index_fallback(self, tmp_path):
        gdf = gpd.GeoDataFrame(
            {"name": ["north", "south"]},
            geometry=[Point(0, 1), Point(0, 0)],
            crs=CRS,
        )
        path = tmp_path / "named.gpkg"
        gdf.to_file(path)

        assert [p.label for p in read_pour_points(path, label_field="name")] == ["north", "south"]
        assert [p.label for p in read_pour_points(path, label_field="id")] == ["0", "1"]

    def test_non_point_rejected(self, tmp_path):
        gdf = gpd.GeoDataFrame(
            {"label": ["poly"]},
            geometry=[Polygon([(0, 0), (1, 0), (1, 1)])],
            crs=CRS,
        )
        path = tmp_path / "poly.gpkg"
        gdf.to_file(path)
        with pytest.raises(ValueError, match="not a point"):
            read_pour_points(path)

    def test_duplicate_labels_rejected(self, tmp_path):
        gdf = gpd.GeoDataFrame(
            {"label": ["x", "x"]}, geometry=[Point(0, 0), Point(1, 1)], crs=CRS
        )
        path = tmp_path / "dupes.gpkg"
        gdf.to_file(path)
        with pytest.raises(ValueError, match="Duplicate"):
            read_pour_points(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_pour_points(tmp_path / "nope.gpkg")


class TestWatershedOutputs:
    def test_write_watersheds(self, tmp_path, valley_dem):
        result = run_pipeline(
            valley_dem, _valley_points(valley_dem), stream_threshold=20, snap_distance=15.0
        )
        path = write_watersheds(result.watersheds.values(), tmp_path / "ws.gpkg", crs=CRS)
        gdf = gpd.read_file(path)

        assert sorted(gdf["label"]) == ["outlet", "side"]
        areas = dict(zip(gdf["label"], gdf.geometry.area))
        assert areas["outlet"] == pytest.approx(30000.0)
        assert areas["side"] == pytest.approx(10900.0)
        assert "mean_twi" in gdf.columns

    def test_plot_watershed(self, tmp_path, valley_dem):
        result = run_pipeline(
            valley_dem, _valley_points(valley_dem), stream_threshold=20, snap_distance=15.0
        )
        ws = result.watersheds["side"]
        out = plot_watershed(
            result.conditioned_dem,
            ws.mask,
            tmp_path / "plots" / "side.png",
            streams=result.streams,
            pour_points=[ws.original_point, ws.snapped_point],
        )
        assert out.exists()
        assert out.stat().st_size > 0


class TestLocalElevationSource:
    def test_merges_adjacent_tiles(self, tmp_path, valley_dem):
        left = Raster.from_array(
            valley_dem.data[:, :8], cell_size=10.0, origin=(1000.0, 5000.0), crs=CRS
        )
        right = Raster.from_array(
            valley_dem.data[:, 8:], cell_size=10.0, origin=(1080.0, 5000.0), crs=CRS
        )
        write_raster(left, tmp_path / "tile_a.tif")
        write_raster(right, tmp_path / "tile_b.tif")

        source = LocalElevationSource(tmp_path)
        assert len(source.tiles()) == 2
        dem = source.fetch()

        assert dem.shape == valley_dem.shape
        np.testing.assert_allclose(dem.data, valley_dem.data)
        assert dem.transform.almost_equals(valley_dem.transform)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            LocalElevationSource(tmp_path / "nowhere")

    def test_no_matching_tiles(self, tmp_path):
        with pytest.raises(ValueError, match="No files"):
            LocalElevationSource(tmp_path, pattern="*.hgt").fetch()


class TestCLI:
    def _inputs(self, tmp_path):
        valley = make_valley()
        dem = Raster(data=valley.data, transform=valley.transform, crs=CRS)
        dem_path = write_raster(dem, tmp_path / "dem.tif")
        points_path = write_pour_points(_valley_points(dem), tmp_path / "points.gpkg", crs=CRS)
        return dem_path, points_path

    def test_writes_all_outputs(self, tmp_path):
        dem_path, points_path = self._inputs(tmp_path)
        out = tmp_path / "out"

        code = main([
            str(dem_path), str(points_path),
            "--threshold", "20",
            "--snap-distance", "15",
            "--output-dir", str(out),
        ])

        assert code == 0
        for name in (
            "dem_conditioned.tif",
            "flow_direction.tif",
            "flow_accumulation.tif",
            "streams.tif",
            "slope.tif",
            "wetness_index.tif",
            "snapped_points.geojson",
            "watersheds.geojson",
            "summary.json",
            "watershed.log",
        ):
            assert (out / name).exists(), name

        summary = json.loads((out / "summary.json").read_text())
        cells = {row["label"]: row["cells"] for row in summary["watersheds"]}
        assert cells == {"outlet": 300, "side": 109}
        assert summary["config"]["resolve_method"] == "breach"

        accumulation = read_raster(out / "flow_accumulation.tif")
        assert accumulation.data.max() == 300

    def test_method_and_config_file(self, tmp_path):
        dem_path, points_path = self._inputs(tmp_path)
        config_path = tmp_path / "cfg.json"
        config_path.write_text(json.dumps({"epsilon": 0.001}))
        out = tmp_path / "out"

        code = main([
            str(dem_path), str(points_path),
            "--threshold", "20",
            "--snap-distance", "15",
            "--output-dir", str(out),
            "--config", str(config_path),
            "--method", "fill",
        ])

        assert code == 0
        summary = json.loads((out / "summary.json").read_text())
        assert summary["config"]["resolve_method"] == "fill"
        assert summary["config"]["epsilon"] == 0.001

    def test_method_override_keeps_config_validation(self, tmp_path):
        dem_path, points_path = self._inputs(tmp_path)
        config_path = tmp_path / "cfg.json"
        config_path.write_text(json.dumps({"epsilon": -1.0}))

        code = main([
            str(dem_path), str(points_path),
            "--threshold", "20",
            "--snap-distance", "15",
            "--output-dir", str(tmp_path / "out"),
            "--config", str(config_path),
            "--method", "fill",
        ])

        assert code == 1

    def test_snap_failure_returns_error_code(self, tmp_path):
        dem_path, points_path = self._inputs(tmp_path)
        code = main([
            str(dem_path), str(points_path),
            "--threshold", "20",
            "--snap-distance", "1",
            "--output-dir", str(tmp_path / "out"),
        ])
        assert code == 1

    def test_missing_dem_returns_error_code(self, tmp_path):
        code = main([
            str(tmp_path / "missing.tif"), str(tmp_path / "points.gpkg"),
            "--threshold", "20",
            "--snap-distance", "15",
            "--output-dir", str(tmp_path / "out"),
        ])
        assert code == 1

    def test_threshold_required(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["dem.tif", "points.gpkg", "--snap-distance", "15"])
