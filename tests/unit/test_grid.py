# tests/unit/test_grid.py

import pickle

import pytest
import numpy as np
from rasterio.transform import Affine

from zonalspatial.exceptions import GridValidationError
from zonalspatial.raster import Grid, Storage, CellIndex

def test_grid_metadata(example_grid):
    assert example_grid.shape == (1, 4, 4)
    assert example_grid.bounds == (0.0, 0.0, 4.0, 4.0)
    assert example_grid.resolution == (1.0, 1.0)
    assert example_grid.cell_area == 1.0
    assert example_grid.storage == Storage.IN_MEMORY
    assert example_grid.crs.to_epsg() == 32619
    assert example_grid.layer_labels() == ["b1"]

def test_2d_values_are_promoted():
    grid = Grid(np.zeros((3, 5)), Affine.translation(0, 3) * Affine.scale(1, -1))
    assert grid.shape == (1, 3, 5)

def test_values_are_immutable(example_grid):
    with pytest.raises(ValueError):
        example_grid.values[0, 0, 0] = 100

def test_grid_copies_input_array():
    arr = np.ones((2, 2))
    grid = Grid(arr, Affine.translation(0, 2) * Affine.scale(1, -1))
    arr[0, 0] = 5
    assert grid.values[0, 0, 0] == 1

@pytest.mark.parametrize("transform", [
    Affine.translation(0, 4) * Affine.scale(1, 1),     # south-up
    Affine(1, 0.5, 0, 0, -1, 4),                       # rotated
])
def test_unsupported_transforms(transform):
    with pytest.raises(GridValidationError):
        Grid(np.zeros((4, 4)), transform)

def test_empty_grid_rejected():
    with pytest.raises(GridValidationError):
        Grid(np.zeros((0, 4)), Affine.translation(0, 4) * Affine.scale(1, -1))

def test_index_round_trip(example_grid):
    for linear in range(16):
        x, y = example_grid.coords_of(linear)
        idx = example_grid.index_of(x, y)
        assert idx == CellIndex(*example_grid.row_col(linear), linear)

def test_worked_example_lookup(example_grid):
    idx = example_grid.index_of(0.5, 3.5)
    assert (idx.row, idx.col, idx.linear) == (0, 0, 0)
    assert example_grid.values[0, idx.row, idx.col] == 1

def test_shared_lines_belong_to_half_open_cell(example_grid):
    # x=1 starts column 1, y=3 starts the interval [3, 4) of row 0
    idx = example_grid.index_of(1.0, 3.0)
    assert (idx.row, idx.col) == (0, 1)

def test_grid_edges(example_grid):
    assert example_grid.index_of(0.0, 0.0) == CellIndex(3, 0, 12)
    assert example_grid.index_of(4.0, 2.0) is None
    assert example_grid.index_of(2.0, 4.0) is None
    assert example_grid.index_of(-0.1, 2.0) is None

def test_near_line_coordinates_are_snapped(example_grid):
    idx = example_grid.index_of(1.0 - 1e-12, 2.5)
    assert idx.col == 1

def test_nan_coordinates_are_outside(example_grid):
    rows, cols = example_grid.indices_of([np.nan, 1.5], [1.5, 1.5])
    assert rows.tolist() == [-1, 2]
    assert cols.tolist() == [-1, 1]

def test_linear_index_bounds(example_grid):
    assert example_grid.linear_index(3, 3) == 15
    with pytest.raises(IndexError):
        example_grid.linear_index(4, 0)
    with pytest.raises(IndexError):
        example_grid.row_col(16)

def test_cell_window(example_grid):
    assert example_grid.cell_window((0, 2, 4, 4)) == ((0, 2), (0, 4))
    assert example_grid.cell_window((1.2, 1.2, 1.4, 1.4)) == ((2, 3), (1, 2))
    assert example_grid.cell_window((4, 0, 5, 4)) is None
    assert example_grid.cell_window((-10, -10, 10, 10)) == ((0, 4), (0, 4))

def test_nodata_mask(nodata_grid):
    mask = nodata_grid.nodata_mask()
    assert mask.sum() == 1
    assert mask[0, 0, 1]

def test_layer_by_name(two_layer_grid):
    assert two_layer_grid.layer("nir")[0, 0] == 10
    assert two_layer_grid.layer(1)[0, 0] == 1
    assert two_layer_grid.layer_labels() == ["red", "nir"]
    with pytest.raises(KeyError):
        two_layer_grid.layer("swir")

def test_window_keeps_georeference(example_grid):
    sub = example_grid.window((1, 3), (2, 4))
    assert sub.shape == (1, 2, 2)
    assert sub.bounds == (2.0, 1.0, 4.0, 3.0)
    assert sub.values[0, 0, 0] == 7

def test_deferred_grid_reads_on_access(example_grid):
    calls = []

    def reader(window=None):
        calls.append(window)
        if window is None:
            return example_grid.values.copy()
        (r0, r1), (c0, c1) = window
        return example_grid.values[:, r0:r1, c0:c1].copy()

    lazy = Grid.deferred(reader, (1, 4, 4), "float64", example_grid.transform, crs=example_grid.crs)
    assert lazy.storage == Storage.FILE_BACKED
    assert not lazy.is_loaded

    block = lazy.read_window((0, 1), (0, 2))
    assert block[0].tolist() == [[1, 2]]
    assert not lazy.is_loaded

    assert lazy.values.sum() == 136
    assert lazy.is_loaded
    assert calls == [((0, 1), (0, 2)), None]

def test_pickle_preserves_immutability(example_grid):
    restored = pickle.loads(pickle.dumps(example_grid))
    assert restored == example_grid
    with pytest.raises(ValueError):
        restored.values[0, 0, 0] = 0

def test_equality_and_with_values(example_grid):
    assert example_grid == example_grid.copy()
    doubled = example_grid.with_values(example_grid.values * 2)
    assert doubled != example_grid
    assert doubled.transform == example_grid.transform

def test_window_shares_parent_frame(fractional_grid):
    sub = fractional_grid.window((37, 61), (12, 45), view=True)
    assert sub.offset == (37, 12)
    assert fractional_grid.offset == (0, 0)

    rows, cols = np.meshgrid(np.arange(sub.nrows), np.arange(sub.ncols), indexing="ij")
    rows, cols = rows.ravel(), cols.ravel()
    np.testing.assert_array_equal(
        np.array(sub.centers(rows, cols)),
        np.array(fractional_grid.centers(rows + 37, cols + 12))
    )

    x, y = fractional_grid.coords_of((50, 20))
    assert sub.index_of(x, y)[:2] == (13, 8)

    nested = sub.window((5, 10), (3, 9))
    assert nested.offset == (42, 15)
    assert nested.cell_bounds(0, 0) == fractional_grid.cell_bounds(42, 15)
    assert nested.bounds[0] == fractional_grid.cell_bounds(42, 15)[0]
    assert nested.bounds[3] == fractional_grid.cell_bounds(42, 15)[3]

    restored = pickle.loads(pickle.dumps(nested))
    assert restored.offset == (42, 15)
    assert restored.coords_of((0, 0)) == fractional_grid.coords_of((42, 15))

def test_cell_corners_map_back_to_their_cell(fractional_grid):
    assert fractional_grid.cell_bounds(0, 0)[0] == 0.3
    assert fractional_grid.cell_bounds(0, 0)[3] == 20.7

    rows, cols = np.divmod(np.arange(200 * 200), 200)
    minx, miny, maxx, _ = fractional_grid.cell_edges(rows, cols)

    found_rows, found_cols = fractional_grid.indices_of(minx, miny)
    np.testing.assert_array_equal(found_rows, rows)
    np.testing.assert_array_equal(found_cols, cols)

    # The right edge starts the next column
    _, right_cols = fractional_grid.indices_of(maxx, miny)
    np.testing.assert_array_equal(right_cols, np.where(cols < 199, cols + 1, -1))

def test_window_cell_bounds_match_parent(fractional_grid):
    sub = fractional_grid.window((100, 120), (150, 170))
    for row, col in [(0, 0), (7, 13), (19, 19)]:
        edges = sub.cell_bounds(row, col)
        assert edges == fractional_grid.cell_bounds(row + 100, col + 150)
        assert sub.index_of(edges[0], edges[1])[:2] == (row, col)
