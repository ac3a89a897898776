# tests/unit/test_parallel.py

import pytest
import numpy as np
from rasterio.transform import Affine
from shapely.geometry import Point, box

from zonalspatial.exceptions import GeometryMismatch, ParallelExtractionError
from zonalspatial.raster import Grid, MemoryEstimate, estimate_bytes, estimate_memory
from zonalspatial.zonal import (
    Aggregator,
    OverlayPolicy,
    RowStatus,
    GeometryBatch,
    chunk_ranges,
    chunk_grid,
    extract_parallel,
    extract_points,
    extract_polygons
)

from helpers import assert_results_equal

@pytest.fixture
def large_grid():
    rng = np.random.default_rng(42)
    values = rng.random((2, 40, 50))
    return Grid(values, Affine.translation(0, 40) * Affine.scale(1, -1), crs="EPSG:32619")

@pytest.fixture
def scattered_polygons():
    rng = np.random.default_rng(7)
    polys = []
    for x, y, size in zip(rng.uniform(-5, 50, 60), rng.uniform(-5, 40, 60), rng.uniform(0.2, 6, 60)):
        polys.append(box(x, y, x + size, y + size))
    return polys

@pytest.fixture
def scattered_points():
    rng = np.random.default_rng(11)
    return [Point(x, y) for x, y in zip(rng.uniform(-2, 52, 80), rng.uniform(-2, 42, 80))]

def test_chunk_ranges():
    assert chunk_ranges(0, 4) == []
    assert chunk_ranges(10, 2, chunk_size=4) == [(0, 4), (4, 8), (8, 10)]
    assert chunk_ranges(100, 2) == [(0, 64), (64, 100)]
    with pytest.raises(ValueError):
        chunk_ranges(10, 2, chunk_size=0)

def test_chunk_grid_is_padded(large_grid):
    batch = GeometryBatch([box(10.2, 10.2, 12.5, 12.5)], [0])
    sub = chunk_grid(large_grid, batch, OverlayPolicy())
    assert sub.bounds == (9.0, 9.0, 14.0, 14.0)

def test_chunk_grid_outside_is_single_cell(large_grid):
    batch = GeometryBatch([box(500, 500, 501, 501), None], [0, 1])
    sub = chunk_grid(large_grid, batch, OverlayPolicy())
    assert sub.shape == (2, 1, 1)
    assert sub.offset == (0, 0)

    result = extract_parallel(large_grid, batch.geometries, n_jobs=2, chunk_size=1)
    assert result.statuses == [RowStatus.OUT_OF_BOUNDS, RowStatus.INVALID_GEOMETRY]

def test_chunk_grid_keeps_parent_frame(fractional_grid):
    poly = box(*fractional_grid.coords_of((12, 10)), *fractional_grid.coords_of((10, 12)))
    sub = chunk_grid(fractional_grid, GeometryBatch([poly], [0]), OverlayPolicy())
    row_off, col_off = sub.offset
    assert sub.cell_bounds(0, 0) == fractional_grid.cell_bounds(row_off, col_off)

@pytest.mark.parametrize("policy", [
    OverlayPolicy(),
    OverlayPolicy(area_weighted=True),
    OverlayPolicy(area_weighted=True, normalize_weights=True, small_polygon_fallback=False),
])
def test_parallel_polygons_match_sequential(large_grid, scattered_polygons, policy):
    sequential = extract_polygons(large_grid, scattered_polygons, aggregator="mean", policy=policy)
    parallel = extract_parallel(
        large_grid, scattered_polygons, kind="polygons", aggregator="mean",
        policy=policy, n_jobs=2, chunk_size=7
    )
    assert_results_equal(sequential, parallel)

@pytest.mark.parametrize("policy", [
    OverlayPolicy(),
    OverlayPolicy(point_interpolation="bilinear"),
    OverlayPolicy(point_interpolation="bilinear", edge_fallback="missing"),
    OverlayPolicy(point_buffer_radius=2.5),
])
def test_parallel_points_match_sequential(large_grid, scattered_points, policy):
    sequential = extract_points(large_grid, scattered_points, policy=policy, aggregator="median")
    parallel = extract_parallel(
        large_grid, scattered_points, kind="points", aggregator="median",
        policy=policy, n_jobs=3, chunk_size=9
    )
    assert_results_equal(sequential, parallel)

def test_parallel_process_backend(large_grid, scattered_polygons):
    sequential = extract_polygons(large_grid, scattered_polygons, aggregator="sum")
    parallel = extract_parallel(
        large_grid, scattered_polygons, aggregator="sum", n_jobs=2, chunk_size=20, backend="loky"
    )
    assert_results_equal(sequential, parallel)

def test_parallel_batch_checks_run_first(large_grid, scattered_polygons):
    with pytest.raises(GeometryMismatch):
        extract_parallel(large_grid, scattered_polygons + [Point(1, 1)], kind="polygons", n_jobs=2)

def test_parallel_unknown_kind(large_grid, scattered_polygons):
    with pytest.raises(ValueError):
        extract_parallel(large_grid, scattered_polygons, kind="lines")

def _explode_on_large(values, weights):
    if values.size > 20:
        raise RuntimeError("too many cells")
    return float(np.mean(values))

def test_chunk_failure_reports_partial_result(large_grid):
    polygons = [box(1, 1, 2, 2), box(3, 3, 4, 4), box(0, 0, 30, 30), box(5, 5, 6, 6)]
    agg = Aggregator("fragile", _explode_on_large)

    with pytest.raises(ParallelExtractionError) as exc:
        extract_parallel(large_grid, polygons, aggregator=agg, n_jobs=2, chunk_size=2)

    err = exc.value
    assert [idx for idx, _ in err.failures] == [1]
    assert isinstance(err.failures[0][1], RuntimeError)
    assert err.partial is not None
    assert err.partial.geometry_ids == [0, 1]
    assert all(s == RowStatus.OK for s in err.partial.statuses)

def test_parallel_empty_input(large_grid):
    result = extract_parallel(large_grid, [], kind="points")
    assert len(result) == 0
    assert result.layer_names == ("b1", "b2")

def _centre_aligned_boxes(grid, n, seed=3):
    """Boxes whose edges run exactly through cell centres."""
    rng = np.random.default_rng(seed)
    polys = []
    for (row, col), (dr, dc) in zip(rng.integers(2, 195, size=(n, 2)), rng.integers(1, 4, size=(n, 2))):
        xmin, ymin = grid.coords_of((int(row + dr), int(col)))
        xmax, ymax = grid.coords_of((int(row), int(col + dc)))
        polys.append(box(xmin, ymin, xmax, ymax))
    return polys

def test_centre_on_edge_matches_sequential(fractional_grid):
    poly = box(*fractional_grid.coords_of((12, 10)), *fractional_grid.coords_of((10, 12)))

    sequential = extract_polygons(fractional_grid, [poly])
    parallel = extract_parallel(fractional_grid, [poly], n_jobs=1, chunk_size=1)

    assert sequential[0].cell_count == 9
    assert parallel[0].cell_count == 9
    assert parallel.values[0, 0] == sequential.values[0, 0] == 2212.0

@pytest.mark.parametrize("policy", [
    OverlayPolicy(),
    OverlayPolicy(area_weighted=True),
])
def test_fractional_grid_polygons_match_sequential(fractional_grid, policy):
    polys = _centre_aligned_boxes(fractional_grid, 400)
    sequential = extract_polygons(fractional_grid, polys, policy=policy)
    parallel = extract_parallel(fractional_grid, polys, policy=policy, n_jobs=2, chunk_size=1)

    assert_results_equal(sequential, parallel)
    assert [r.cell_count for r in sequential] == [r.cell_count for r in parallel]

@pytest.mark.parametrize("policy", [
    OverlayPolicy(point_interpolation="bilinear"),
    OverlayPolicy(point_buffer_radius=0.1),
])
def test_fractional_grid_points_match_sequential(fractional_grid, policy):
    rng = np.random.default_rng(5)
    points = []
    for row, col in rng.integers(0, 200, size=(150, 2)):
        # Cell centres and lower-left cell corners
        points.append(Point(*fractional_grid.coords_of((int(row), int(col)))))
        minx, miny, _, _ = fractional_grid.cell_bounds(int(row), int(col))
        points.append(Point(minx, miny))

    sequential = extract_points(fractional_grid, points, policy=policy)
    parallel = extract_parallel(fractional_grid, points, kind="points", policy=policy, n_jobs=2, chunk_size=1)

    assert_results_equal(sequential, parallel)
    assert [r.cell_count for r in sequential] == [r.cell_count for r in parallel]

def test_memory_check_sized_from_chunk_grids(large_grid, monkeypatch):
    seen = []

    def fake_estimate(source, **kwargs):
        seen.append(source)
        return MemoryEstimate(0, 0, True, "")

    monkeypatch.setattr("zonalspatial.zonal.parallel.estimate_memory", fake_estimate)

    polygons = [box(1, 1, 2, 2), box(5, 5, 15, 15), box(20, 20, 21, 21)]
    extract_parallel(large_grid, polygons, n_jobs=2, chunk_size=1, backend="loky")

    assert len(seen) == 1
    grids = seen[0]
    # The two largest chunk grids, one per worker
    assert [g.shape for g in grids] == [(2, 12, 12), (2, 3, 3)]
    assert sum(estimate_bytes(g) for g in grids) < estimate_bytes(large_grid)

def test_estimate_memory_sums_grids(large_grid):
    parts = [large_grid.window((0, 10), (0, 10)), large_grid.window((10, 20), (0, 5))]
    check = estimate_memory(parts, safety_factor=1.0, min_free_gb=0.0)
    assert check.total_required_bytes == 2 * (100 + 50) * 8
