# tests/helpers.py

import numpy as np
from zonalspatial.raster import Grid
from zonalspatial.zonal import OverlayResult, RowStatus

def assert_grid_integrity(current: Grid, reference: Grid, tolerance: float = 0.01):
    """Check that cell values haven't drifted significantly."""
    curr_mean = np.nanmean(current.values)
    ref_mean = np.nanmean(reference.values)
    diff = abs(curr_mean - ref_mean)
    assert diff < tolerance, f"Mean drift too high: {diff:.6f} (Tol: {tolerance})"

def assert_grid_match(r1: Grid, r2: Grid):
    """Strictly verify two grids share the exact same georeference."""
    assert r1.crs == r2.crs, \
        f"CRS mismatch: {r1.crs} != {r2.crs}"

    assert r1.shape == r2.shape, \
        f"Shape mismatch: {r1.shape} != {r2.shape}"

    assert np.allclose(np.array(r1.transform), np.array(r2.transform), atol=1e-9), \
        "Transform mismatch (Pixel alignment error)"

def assert_results_equal(a: OverlayResult, b: OverlayResult):
    """Row-by-row equality of two results, NaN compared equal to NaN."""
    assert len(a) == len(b), f"Row count mismatch: {len(a)} != {len(b)}"
    assert a.layer_names == b.layer_names
    assert a.geometry_ids == b.geometry_ids
    assert a.statuses == b.statuses
    np.testing.assert_allclose(a.values, b.values, equal_nan=True)

def assert_missing(result: OverlayResult, index: int, status: RowStatus):
    row = result[index]
    assert row.status == status, f"Row {index}: expected {status}, got {row.status}"
    assert row.is_missing, f"Row {index} should be missing, got {row.values}"
