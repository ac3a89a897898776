# src/zonalspatial/zonal/overlay.py

"""
This module resolves a single geometry to the grid cells it draws from and their weights.

It is the geometric half of zonal extraction: no values are read here, only
(row, col, weight) triples, so the same overlay can be reused for any layer
and any aggregator.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import numpy as np
import shapely
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity

from zonalspatial.exceptions import InvalidGeometry
from zonalspatial.raster.layer import Grid

from .policy import OverlayPolicy, PointInterpolation, EdgeFallback
from .result import RowStatus

log = logging.getLogger(__name__)

__all__ = [
    "CellWeights",
    "point_cells",
    "polygon_cells"
]

_POLYGON_TYPES = ("Polygon", "MultiPolygon")

@dataclass(frozen=True)
class CellWeights:
    """
    Contributing cells of one geometry.

    Args:
        rows, cols: Int64 arrays of cell indices (rows from the top).
        weights: Float64 array of weights, one per cell.
        fallback: True when the cells came from a fallback rule (small polygon or bilinear edge).
    """
    rows: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))
    cols: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))
    weights: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float64))
    fallback: bool = False

    def __len__(self) -> int:
        return int(self.rows.shape[0])

    @property
    def weight_sum(self) -> float:
        return float(np.sum(self.weights))

    def linear(self, ncols: int) -> np.ndarray:
        return self.rows * ncols + self.cols

    def normalized(self) -> 'CellWeights':
        total = self.weight_sum
        if total <= 0:
            return self
        return CellWeights(self.rows, self.cols, self.weights / total, self.fallback)

    @classmethod
    def single(cls, row: int, col: int, fallback: bool = False) -> 'CellWeights':
        return cls(
            np.array([row], dtype=np.int64),
            np.array([col], dtype=np.int64),
            np.array([1.0]),
            fallback
        )

def _geometry_problem(geom: Optional[BaseGeometry]) -> Optional[str]:
    if geom is None:
        return "Null geometry"
    if geom.is_empty:
        return "Empty geometry"
    if not geom.is_valid:
        reason = explain_validity(geom)
        if geom.geom_type in _POLYGON_TYPES and geom.area == 0:
            return f"Zero-area polygon ({reason})"
        return reason
    return None

def _window_cells(row_slice: Tuple[int, int], col_slice: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    rows, cols = np.meshgrid(
        np.arange(*row_slice, dtype=np.int64),
        np.arange(*col_slice, dtype=np.int64),
        indexing="ij"
    )
    return rows.ravel(), cols.ravel()

def polygon_cells(
    grid: Grid,
    polygon: BaseGeometry,
    policy: Optional[OverlayPolicy] = None,
    geometry_id: Any = None
) -> Tuple[RowStatus, CellWeights]:
    """
    Resolve a polygon to its contributing cells.

    Steps:
        1. Reject malformed shapes (null, empty, invalid, zero area) with InvalidGeometry.
        2. Intersect the polygon bounding box with the grid extent (empty → OUT_OF_BOUNDS).
        3. Enumerate the cells whose box overlaps the bounding box.
        4. Keep cells whose centre intersects the polygon (boundary included), or, when
           area_weighted, weight each cell by its covered fraction.
        5. With no cell kept, fall back to the cell holding the polygon centroid if the
           policy allows it (otherwise EMPTY_OVERLAY).
        6. Optionally normalize the weights to sum to 1.

    Args:
        grid: The grid, in the same CRS as the polygon.
        polygon: Polygon or MultiPolygon.
        policy: Overlay policy (defaults to OverlayPolicy()).
        geometry_id: Identifier reported in InvalidGeometry.

    Returns:
        (RowStatus, CellWeights)

    Raises:
        InvalidGeometry: If the polygon is malformed.
    """
    policy = policy or OverlayPolicy()

    problem = _geometry_problem(polygon)
    if problem is None and polygon.geom_type not in _POLYGON_TYPES:
        problem = f"Expected Polygon or MultiPolygon, got {polygon.geom_type}"
    if problem is not None:
        raise InvalidGeometry(problem, geometry_id)

    window = grid.cell_window(polygon.bounds)
    if window is None:
        return RowStatus.OUT_OF_BOUNDS, CellWeights()

    rows, cols = _window_cells(*window)

    if policy.area_weighted:
        boxes = shapely.box(*grid.cell_edges(rows, cols))
        weights = shapely.area(shapely.intersection(boxes, polygon)) / grid.cell_area
    else:
        xs, ys = grid.centers(rows, cols)
        weights = shapely.intersects_xy(polygon, xs, ys).astype(np.float64)

    keep = weights > 0
    cells = CellWeights(rows[keep], cols[keep], np.asarray(weights[keep], dtype=np.float64))

    if len(cells) == 0:
        if not policy.small_polygon_fallback:
            return RowStatus.EMPTY_OVERLAY, cells
        centroid = polygon.centroid
        idx = grid.index_of(centroid.x, centroid.y)
        if idx is None:
            return RowStatus.EMPTY_OVERLAY, cells
        log.debug(f"Polygon {geometry_id} covers no cell centre, using centroid cell {idx}")
        cells = CellWeights.single(idx.row, idx.col, fallback=True)

    if policy.normalize_weights:
        cells = cells.normalized()

    return RowStatus.OK, cells

def _point_problem(point: Optional[BaseGeometry]) -> Optional[str]:
    problem = _geometry_problem(point)
    if problem is not None:
        return problem
    if point.geom_type != "Point":
        return f"Expected Point, got {point.geom_type}"
    if not (math.isfinite(point.x) and math.isfinite(point.y)):
        return "Point has non-finite coordinates"
    return None

def _buffer_cells(grid: Grid, x: float, y: float, row: int, col: int, radius: float) -> CellWeights:
    w, h = grid.resolution
    reach_c = int(math.ceil(radius / w)) + 1
    reach_r = int(math.ceil(radius / h)) + 1
    rows, cols = _window_cells(
        (max(0, row - reach_r), min(grid.nrows, row + reach_r + 1)),
        (max(0, col - reach_c), min(grid.ncols, col + reach_c + 1))
    )
    cx, cy = grid.centers(rows, cols)
    dist2 = (cx - x) ** 2 + (cy - y) ** 2
    keep = dist2 <= radius * radius * (1 + 1e-12) + 1e-18
    return CellWeights(rows[keep], cols[keep], np.ones(int(keep.sum()), dtype=np.float64))

def _bilinear_cells(grid: Grid, x: float, y: float) -> Optional[CellWeights]:
    """Bilinear kernel over the 4 nearest centres, or None if a weighted neighbour is off the grid."""
    # Kernel position is taken in the anchor frame, then shifted to this grid's indices
    row_f, col_f = grid.frame_position(x, y)
    col_f, row_f = float(col_f) - 0.5, float(row_f) - 0.5
    c0 = math.floor(col_f)
    r0 = math.floor(row_f)
    tx = col_f - c0
    ty = row_f - r0
    row_off, col_off = grid.offset
    c0, r0 = c0 - col_off, r0 - row_off

    rows = np.array([r0, r0, r0 + 1, r0 + 1], dtype=np.int64)
    cols = np.array([c0, c0 + 1, c0, c0 + 1], dtype=np.int64)
    weights = np.array([
        (1 - tx) * (1 - ty),
        tx * (1 - ty),
        (1 - tx) * ty,
        tx * ty
    ])

    keep = weights > 0
    rows, cols, weights = rows[keep], cols[keep], weights[keep]
    inside = (rows >= 0) & (rows < grid.nrows) & (cols >= 0) & (cols < grid.ncols)
    if not inside.all():
        return None
    return CellWeights(rows, cols, weights)

def point_cells(
    grid: Grid,
    point: BaseGeometry,
    policy: Optional[OverlayPolicy] = None,
    geometry_id: Any = None
) -> Tuple[RowStatus, CellWeights]:
    """
    Resolve a point to its contributing cells.

    A point outside the grid extent is OUT_OF_BOUNDS in every mode. Inside the
    extent, the buffer radius wins over the interpolation mode:

    - point_buffer_radius=R: every cell whose centre lies within distance R (weight 1 each);
      EMPTY_OVERLAY if none.
    - BILINEAR: the 4 nearest centres with bilinear weights. If a neighbour with positive
      weight is off the grid, edge_fallback picks the enclosing cell (NEAREST) or
      EMPTY_OVERLAY (MISSING).
    - NEAREST: the enclosing cell.

    Raises:
        InvalidGeometry: If the point is null, empty, not a Point or has non-finite coordinates.
    """
    policy = policy or OverlayPolicy()

    problem = _point_problem(point)
    if problem is not None:
        raise InvalidGeometry(problem, geometry_id)

    x, y = point.x, point.y
    idx = grid.index_of(x, y)
    if idx is None:
        return RowStatus.OUT_OF_BOUNDS, CellWeights()

    if policy.point_buffer_radius is not None:
        cells = _buffer_cells(grid, x, y, idx.row, idx.col, policy.point_buffer_radius)
        if len(cells) == 0:
            return RowStatus.EMPTY_OVERLAY, cells
        return RowStatus.OK, cells

    if policy.point_interpolation == PointInterpolation.BILINEAR:
        cells = _bilinear_cells(grid, x, y)
        if cells is not None:
            return RowStatus.OK, cells
        if policy.edge_fallback == EdgeFallback.MISSING:
            return RowStatus.EMPTY_OVERLAY, CellWeights()
        return RowStatus.OK, CellWeights.single(idx.row, idx.col, fallback=True)

    return RowStatus.OK, CellWeights.single(idx.row, idx.col)
