# src/zonalspatial/raster/geom.py

"""
This module provides grid-level geometric transforms: crop, mosaic, reproject, stack and split.

Every function returns a new Grid; inputs are never modified.
"""

import logging
import math
from pathlib import Path
from typing import Union, List, Optional, Tuple

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine
from rasterio.warp import Resampling, calculate_default_transform, reproject as rio_reproject

from zonalspatial.exceptions import GridValidationError

from .io import load, resolve_grid
from .layer import Grid

log = logging.getLogger(__name__)

__all__ = [
    "crop",
    "mosaic",
    "reproject",
    "stack_bands",
    "split_bands"
]

# Relative tolerance when comparing resolutions and grid-line offsets.
_ALIGN_TOL = 1e-6

@resolve_grid
def crop(
    grid: Grid,
    bounds: Tuple[float, float, float, float],
    view: bool = False
) -> Grid:
    """
    Crop a grid to geographic bounds, snapping outward to whole cells.

    FILE_BACKED grids that were never materialized only read the cropped window from disk.

    Args:
        grid (Grid): Input grid.
        bounds (Tuple): (minx, miny, maxx, maxy) in the same CRS as the grid.
        view (bool): Share the parent's in-memory values read-only instead of copying.

    Returns:
        Grid: A new cropped Grid.

    Raises:
        GridValidationError: If the bounds do not overlap the grid.
    """
    window = grid.cell_window(bounds)
    if window is None:
        raise GridValidationError(f"Crop bounds {bounds} do not overlap grid bounds {grid.bounds}")

    row_slice, col_slice = window
    log.debug(f"Cropping grid to rows {row_slice} cols {col_slice}")
    return grid.window(row_slice, col_slice, view=view)

def _resolve_all(grids: List[Union[str, Path, Grid]]) -> List[Grid]:
    return [load(g) if isinstance(g, (str, Path)) else g for g in grids]

def _grid_offset(value: float, origin: float, step: float, what: str) -> int:
    offset = (value - origin) / step
    nearest = round(offset)
    if abs(offset - nearest) > _ALIGN_TOL * max(1.0, abs(offset)):
        raise GridValidationError(f"Grids are not aligned: {what} offset of {offset:.6f} cells")
    return int(nearest)

def mosaic(
    grids: List[Union[str, Path, Grid]],
    method: str = "first"
) -> Grid:
    """
    Combine aligned grids into one Grid covering their union.

    All inputs must share CRS, resolution, layer count and grid lines. Cells not
    covered by any input, or only by no-data cells, are set to the no-data value.

    Args:
        grids: Paths or Grid objects.
        method: 'first' keeps the first valid value seen for a cell, 'last' the last one.

    Returns:
        Grid: The mosaicked Grid.
    """
    if not grids:
        raise ValueError("Cannot mosaic an empty list of grids.")
    if method not in ("first", "last"):
        raise ValueError(f"Unknown mosaic method '{method}'. Must be 'first' or 'last'.")

    resolved = _resolve_all(grids)
    ref = resolved[0]
    w, h = ref.resolution

    for g in resolved[1:]:
        if g.crs != ref.crs:
            raise GridValidationError(f"CRS mismatch in mosaic: {g.crs} != {ref.crs}")
        if g.nlayers != ref.nlayers:
            raise GridValidationError(f"Layer count mismatch in mosaic: {g.nlayers} != {ref.nlayers}")
        gw, gh = g.resolution
        if not (math.isclose(gw, w, rel_tol=_ALIGN_TOL) and math.isclose(gh, h, rel_tol=_ALIGN_TOL)):
            raise GridValidationError(f"Resolution mismatch in mosaic: {g.resolution} != {ref.resolution}")

    left = min(g.bounds[0] for g in resolved)
    top = max(g.bounds[3] for g in resolved)
    right = max(g.bounds[2] for g in resolved)
    bottom = min(g.bounds[1] for g in resolved)

    ncols = _grid_offset(right, left, w, "x extent")
    nrows = _grid_offset(top, bottom, h, "y extent")

    dtype = np.result_type(*[g.dtype for g in resolved])
    nodata = ref.nodata
    if nodata is None:
        dtype = np.result_type(dtype, np.float32)
        nodata = np.nan

    out = np.full((ref.nlayers, nrows, ncols), nodata, dtype=dtype)
    filled = np.zeros(out.shape, dtype=bool)

    for g in resolved:
        col0 = _grid_offset(g.bounds[0], left, w, "x origin")
        row0 = _grid_offset(top, g.bounds[3], h, "y origin")
        rows = slice(row0, row0 + g.nrows)
        cols = slice(col0, col0 + g.ncols)

        valid = ~g.nodata_mask(g.values)
        if method == "first":
            valid &= ~filled[:, rows, cols]
        out[:, rows, cols] = np.where(valid, g.values, out[:, rows, cols])
        filled[:, rows, cols] |= valid

    log.info(f"Mosaicked {len(resolved)} grids into shape {out.shape}")

    return Grid(
        out,
        Affine.translation(left, top) * Affine.scale(w, -h),
        crs=ref.crs,
        nodata=nodata,
        band_names=ref.band_names,
        copy=False
    )

@resolve_grid
def reproject(
    grid: Grid,
    target_crs: Union[str, CRS],
    resolution: Optional[float] = None,
    resampling: Resampling = Resampling.nearest
) -> Grid:
    """
    Reprojects a Grid to a new Coordinate Reference System (CRS).

    The warp itself is delegated to rasterio.warp.

    Args:
        grid (Grid): The input grid (auto-resolved from path or object).
        target_crs (str | CRS): Destination CRS (EPSG code or proj string).
        resolution (float, optional): Force a specific resolution in destination units.
                               If None, preserves the original cell density.
        resampling (Resampling): Interpolation method (default: nearest).
                                 Use Resampling.bilinear for continuous data.

    Returns:
        Grid: A new Grid in the target CRS.
    """
    if grid.crs is None:
        raise GridValidationError("Grid has no CRS. Cannot reproject.")

    dst_crs = CRS.from_user_input(target_crs)

    log.info(f"Reprojecting grid to {dst_crs} (Resampling: {resampling.name})")

    dst_transform, dst_width, dst_height = calculate_default_transform(
        grid.crs,
        dst_crs,
        grid.ncols,
        grid.nrows,
        *grid.bounds,
        resolution=resolution
    )

    dtype = grid.dtype
    nodata = grid.nodata
    if nodata is None:
        dtype = np.result_type(dtype, np.float32)
        nodata = np.nan

    new_data = np.full((grid.nlayers, dst_height, dst_width), nodata, dtype=dtype)

    rio_reproject(
        source=np.asarray(grid.values, dtype=dtype),
        destination=new_data,
        src_transform=grid.transform,
        src_crs=grid.crs,
        src_nodata=nodata,
        dst_transform=dst_transform,
        dst_crs=dst_crs,
        dst_nodata=nodata,
        resampling=resampling
    )

    return Grid(
        new_data,
        dst_transform,
        crs=dst_crs,
        nodata=nodata,
        band_names=grid.band_names,
        copy=False
    )

def stack_bands(grids: List[Union[str, Path, Grid]]) -> Grid:
    """
    Combines a list of Grids into a single multi-layer Grid.

    All inputs must share the same transform and dimensions.

    Args:
        grids: List of paths or Grid objects.

    Returns:
        Grid: A single multi-layer Grid.

    Raises:
        GridValidationError: If dimensions or transforms mismatch.
    """
    if not grids:
        raise ValueError("Cannot stack empty list of grids.")

    resolved = _resolve_all(grids)
    ref = resolved[0]

    for g in resolved[1:]:
        if (g.nrows, g.ncols) != (ref.nrows, ref.ncols):
            raise GridValidationError(f"Dimension mismatch: {(g.nrows, g.ncols)} != {(ref.nrows, ref.ncols)}")
        if not np.allclose(np.array(g.transform), np.array(ref.transform), atol=1e-9):
            raise GridValidationError("Transform mismatch while stacking grids")

    stacked = np.concatenate([g.values for g in resolved], axis=0)

    new_band_names = {}
    offset = 0
    for g in resolved:
        for name, idx in g.band_names.items():
            new_band_names[name] = offset + idx
        offset += g.nlayers

    log.info(f"Stacked {len(resolved)} grids into new shape {stacked.shape}")

    return Grid(
        stacked,
        ref.transform,
        crs=ref.crs,
        nodata=ref.nodata,
        band_names=new_band_names,
        copy=False
    )

@resolve_grid
def split_bands(grid: Grid) -> List[Grid]:
    """
    Splits a multi-layer Grid into a list of single-layer Grids.

    Args:
        grid: Multi-layer input grid.

    Returns:
        List[Grid]: One Grid per layer.
    """
    idx_to_name = {v: k for k, v in grid.band_names.items()}
    outputs = []

    for i in range(grid.nlayers):
        band_name = idx_to_name.get(i + 1)
        outputs.append(Grid(
            grid.values[i:i + 1],
            grid.transform,
            crs=grid.crs,
            nodata=grid.nodata,
            band_names={band_name: 1} if band_name else {}
        ))

    log.info(f"Split grid into {len(outputs)} single-layer grids.")
    return outputs
