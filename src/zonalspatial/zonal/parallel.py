# src/zonalspatial/zonal/parallel.py

"""
This module splits a zonal extraction into independent chunks and runs them with joblib.

Chunks are contiguous slices of the geometry batch. Each chunk receives its own
grid, cropped to the chunk's geometries plus a margin wide enough for bilinear
neighbours, centroid fallbacks and point buffers, so workers never share state.
Rows keep their global input position and are merged back in input order.
"""

import logging
import math
import os
from typing import List, Optional, Tuple, Union

from joblib import Parallel, delayed

from zonalspatial.exceptions import ParallelExtractionError
from zonalspatial.raster.geom import crop
from zonalspatial.raster.io import resolve_grid
from zonalspatial.raster.layer import Grid
from zonalspatial.raster.resources import estimate_bytes, estimate_memory

from .aggregate import Aggregator, as_aggregator
from .extract import (
    POINT_TYPES,
    POLYGON_TYPES,
    GeometryBatch,
    GeometryInput,
    check_batch,
    extract_batch,
    resolve_geometries
)
from .policy import OverlayPolicy
from .result import OverlayResult

log = logging.getLogger(__name__)

__all__ = [
    "chunk_ranges",
    "chunk_grid",
    "extract_parallel"
]

PROCESS_BACKENDS = ("loky", "multiprocessing")
MIN_CHUNK_SIZE = 64

def _effective_jobs(n_jobs: int) -> int:
    if n_jobs == 0:
        raise ValueError("n_jobs must be non-zero")
    if n_jobs < 0:
        return max(1, (os.cpu_count() or 1) + 1 + n_jobs)
    return n_jobs

def chunk_ranges(n: int, n_jobs: int, chunk_size: Optional[int] = None) -> List[Tuple[int, int]]:
    """
    Contiguous [start, stop) slices covering range(n).

    Without an explicit chunk_size, aims for about 4 chunks per worker, never
    smaller than MIN_CHUNK_SIZE geometries.
    """
    if n == 0:
        return []
    if chunk_size is None:
        chunk_size = max(MIN_CHUNK_SIZE, math.ceil(n / (4 * _effective_jobs(n_jobs))))
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [(start, min(start + chunk_size, n)) for start in range(0, n, chunk_size)]

def chunk_grid(grid: Grid, batch: GeometryBatch, policy: OverlayPolicy) -> Grid:
    """
    The part of `grid` a chunk can possibly read.

    The chunk bounds are padded by one cell (bilinear neighbours, boundary cells)
    and by the point buffer radius. Chunks with nothing on the grid get a single
    cell window, since every row resolves without reading values.
    """
    bounds = batch.bounds()
    if bounds is None:
        return grid.window((0, 1), (0, 1), view=True)

    w, h = grid.resolution
    radius = policy.point_buffer_radius or 0.0
    pad_x, pad_y = w + radius, h + radius
    minx, miny, maxx, maxy = bounds
    padded = (minx - pad_x, miny - pad_y, maxx + pad_x, maxy + pad_y)

    if grid.cell_window(padded) is None:
        return grid.window((0, 1), (0, 1), view=True)
    return crop(grid, padded, view=True)

def _run_chunk(
    index: int,
    grid: Grid,
    batch: GeometryBatch,
    kind: str,
    aggregator: Aggregator,
    policy: OverlayPolicy,
    start: int
) -> Tuple[int, Optional[OverlayResult], Optional[BaseException]]:
    try:
        return index, extract_batch(grid, batch, kind, aggregator, policy, start=start), None
    except Exception as e:
        return index, None, e

@resolve_grid
def extract_parallel(
    grid: Grid,
    geometries: GeometryInput,
    kind: str = "polygons",
    aggregator: Union[str, Aggregator] = "mean",
    policy: Optional[OverlayPolicy] = None,
    n_jobs: int = -1,
    chunk_size: Optional[int] = None,
    backend: str = "threading",
    id_col: Optional[str] = None,
    strict: Optional[bool] = None
) -> OverlayResult:
    """
    Chunked equivalent of extract_points / extract_polygons.

    Produces the same rows, in the same order, as the sequential extractor.
    Batch checks (CRS, geometry types) run once, before any chunk is dispatched.

    Args:
        grid (Grid | str | Path): The grid.
        geometries: Points or polygons, as accepted by the sequential extractors.
        kind (str): 'points' or 'polygons'.
        aggregator (str | Aggregator): Reduction; must be picklable for process backends.
        policy (OverlayPolicy): Overlay policy.
        n_jobs (int): joblib worker count (-1 = all cores).
        chunk_size (int): Geometries per chunk (default: about 4 chunks per worker).
        backend (str): joblib backend ('threading', 'loky' or 'multiprocessing').
        id_col (str): Identifier column for GeoDataFrame inputs.
        strict (bool): Override the aggregator's missing policy.

    Returns:
        OverlayResult: One row per geometry, in input order.

    Raises:
        GeometryMismatch: From the batch checks.
        ParallelExtractionError: If any chunk failed; `partial` holds the rows of the chunks that succeeded.
    """
    if kind not in ("points", "polygons"):
        raise ValueError(f"Unknown geometry kind '{kind}'. Must be 'points' or 'polygons'.")

    policy = policy or OverlayPolicy()
    agg = as_aggregator(aggregator, strict=strict)
    batch = resolve_geometries(geometries, id_col=id_col)
    allowed = POINT_TYPES if kind == "points" else POLYGON_TYPES
    check_batch(grid, batch, allowed, f"extract_parallel[{kind}]")

    ranges = chunk_ranges(len(batch), n_jobs, chunk_size)
    if not ranges:
        return extract_batch(grid, batch, kind, agg, policy)

    subsets = [batch.subset(start, stop) for start, stop in ranges]
    grids = [chunk_grid(grid, sub, policy) for sub in subsets]

    if backend in PROCESS_BACKENDS:
        # Each worker holds one pickled chunk grid at a time
        workers = min(_effective_jobs(n_jobs), len(grids))
        largest = sorted(grids, key=estimate_bytes, reverse=True)[:workers]
        check = estimate_memory(largest)
        if not check.is_safe:
            log.warning(f"Process backend may exhaust memory ({check.reason}). Consider backend='threading'.")

    log.info(f"Extracting {len(batch)} {kind} in {len(ranges)} chunks (n_jobs={n_jobs}, backend={backend})")

    tasks = [
        delayed(_run_chunk)(index, sub_grid, sub, kind, agg, policy, start)
        for index, (sub_grid, sub, (start, _)) in enumerate(zip(grids, subsets, ranges))
    ]

    outputs = Parallel(n_jobs=n_jobs, backend=backend)(tasks)

    parts = []
    failures = []
    for index, part, error in outputs:
        if error is not None:
            log.error(f"Chunk {index} {ranges[index]} failed: {error}")
            failures.append((index, error))
        else:
            parts.append(part)

    if failures:
        partial = OverlayResult.concat(parts) if parts else None
        raise ParallelExtractionError(failures, partial=partial)

    result = OverlayResult.concat(parts)
    log.info(f"Parallel extraction done: {dict(result.status_counts())}")
    return result
