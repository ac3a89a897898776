# src/zonalspatial/zonal/extract.py

"""
This module performs zonal extraction: per-geometry summaries of grid values.

It manages the interaction between a Grid and a geometry collection. Batch
checks (CRS, geometry dimensionality) run before any geometry is touched and
abort the call with GeometryMismatch. Each geometry is then resolved to its
contributing cells (see overlay.py) and reduced layer by layer with an
Aggregator. A malformed geometry only marks its own row as INVALID_GEOMETRY.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
from rasterio.crs import CRS
from shapely.geometry.base import BaseGeometry

from zonalspatial.exceptions import GeometryMismatch, InvalidGeometry
from zonalspatial.raster.io import resolve_grid
from zonalspatial.raster.layer import Grid
from zonalspatial.vector.io import load_vector
from zonalspatial.vector.layer import Vector

from .aggregate import Aggregator, MissingPolicy, as_aggregator, get_aggregator
from .overlay import CellWeights, point_cells, polygon_cells
from .policy import OverlayPolicy
from .result import OverlayResult, OverlayRow, RowStatus

log = logging.getLogger(__name__)

__all__ = [
    "GeometryBatch",
    "resolve_geometries",
    "check_batch",
    "extract_batch",
    "extract_points",
    "extract_polygons"
]

GeometryInput = Union[str, Path, Vector, gpd.GeoDataFrame, gpd.GeoSeries, Sequence[BaseGeometry]]

POINT_TYPES = frozenset({"Point"})
POLYGON_TYPES = frozenset({"Polygon", "MultiPolygon"})

class GeometryBatch:
    """
    Geometries, their identifiers and their CRS, detached from the container they came in.
    """
    def __init__(self, geometries: List[Optional[BaseGeometry]], ids: List[Any], crs: Any = None):
        if len(geometries) != len(ids):
            raise ValueError(f"Got {len(ids)} identifiers for {len(geometries)} geometries")
        self.geometries = geometries
        self.ids = ids
        self.crs = crs

    def __len__(self) -> int:
        return len(self.geometries)

    def subset(self, start: int, stop: int) -> 'GeometryBatch':
        return GeometryBatch(self.geometries[start:stop], self.ids[start:stop], self.crs)

    def bounds(self) -> Optional[Tuple[float, float, float, float]]:
        """Total bounds of the non-empty geometries, or None if there are none."""
        present = [g for g in self.geometries if g is not None and not g.is_empty]
        if not present:
            return None
        b = np.array([g.bounds for g in present])
        b = b[np.isfinite(b).all(axis=1)]
        if len(b) == 0:
            return None
        return (float(b[:, 0].min()), float(b[:, 1].min()), float(b[:, 2].max()), float(b[:, 3].max()))

def resolve_geometries(geometries: GeometryInput, id_col: Optional[str] = None) -> GeometryBatch:
    """
    Normalize any supported geometry container into a GeometryBatch.

    Args:
        geometries: Vector file path, Vector, GeoDataFrame, GeoSeries or a sequence of shapely geometries.
        id_col: Column holding identifiers (GeoDataFrame/Vector only). Defaults to the index.
                Plain sequences use their position.
    """
    if isinstance(geometries, (str, Path)):
        geometries = load_vector(geometries)
    if isinstance(geometries, Vector):
        geometries = geometries.data

    if isinstance(geometries, gpd.GeoDataFrame):
        if id_col is not None:
            if id_col not in geometries.columns:
                raise KeyError(f"Identifier column '{id_col}' not found in {geometries.columns.tolist()}")
            ids = geometries[id_col].tolist()
        else:
            ids = geometries.index.tolist()
        return GeometryBatch(list(geometries.geometry), ids, geometries.crs)

    if isinstance(geometries, gpd.GeoSeries):
        return GeometryBatch(list(geometries), geometries.index.tolist(), geometries.crs)

    geoms = list(geometries)
    for g in geoms:
        if g is not None and not isinstance(g, BaseGeometry):
            raise TypeError(f"Expected shapely geometries, got {type(g).__name__}")
    return GeometryBatch(geoms, list(range(len(geoms))), None)

def check_batch(grid: Grid, batch: GeometryBatch, allowed_types: frozenset, operation: str):
    """
    Batch-fatal checks, run before any geometry is processed.

    Raises:
        GeometryMismatch: If both CRS are known and differ, or if the batch holds
            geometry types the operation cannot overlay.
    """
    if batch.crs is not None and grid.crs is not None:
        geom_crs = CRS.from_user_input(batch.crs)
        if geom_crs != grid.crs:
            raise GeometryMismatch(
                f"{operation}: geometry CRS {geom_crs.to_string()} does not match grid CRS "
                f"{grid.crs.to_string()}. Reproject the geometries first (vector.to_crs)."
            )
    elif batch.crs is not None or grid.crs is not None:
        log.warning(f"{operation}: CRS unknown on one side, assuming geometries are in the grid CRS")

    found = {g.geom_type for g in batch.geometries if g is not None and not g.is_empty}
    unexpected = found - allowed_types
    if unexpected:
        raise GeometryMismatch(
            f"{operation} expects {sorted(allowed_types)} geometries, got {sorted(unexpected)}"
        )

def _summarize(grid: Grid, cells: CellWeights, reducer: Aggregator) -> Tuple[float, ...]:
    block = grid.values[:, cells.rows, cells.cols]
    missing = grid.nodata_mask(block)
    return tuple(reducer(block[i], cells.weights, missing[i]) for i in range(grid.nlayers))

def extract_batch(
    grid: Grid,
    batch: GeometryBatch,
    kind: str,
    aggregator: Aggregator,
    policy: OverlayPolicy,
    start: int = 0
) -> OverlayResult:
    """
    Overlay an already checked batch. Row positions start at `start`.

    This is the stateless worker shared by the public extractors and by the parallel
    dispatcher; it performs no CRS or type checks of its own.
    """
    if kind == "points":
        resolve = point_cells
        if policy.point_buffer_radius is None:
            # Single cells and bilinear kernels are weighted means of the cells
            reducer = get_aggregator("mean", strict=aggregator.missing == MissingPolicy.STRICT)
        else:
            reducer = aggregator
    elif kind == "polygons":
        resolve = polygon_cells
        reducer = aggregator
    else:
        raise ValueError(f"Unknown geometry kind '{kind}'. Must be 'points' or 'polygons'.")

    rows = []
    for i, (geom, geom_id) in enumerate(zip(batch.geometries, batch.ids)):
        position = start + i
        try:
            status, cells = resolve(grid, geom, policy, geometry_id=geom_id)
        except InvalidGeometry as e:
            log.warning(f"Geometry {geom_id} is invalid: {e}")
            rows.append(OverlayRow.missing(position, geom_id, grid.nlayers, RowStatus.INVALID_GEOMETRY, str(e)))
            continue

        if status != RowStatus.OK:
            rows.append(OverlayRow.missing(position, geom_id, grid.nlayers, status))
            continue

        rows.append(OverlayRow(
            position=position,
            geometry_id=geom_id,
            values=_summarize(grid, cells, reducer),
            status=status,
            cell_count=len(cells),
            weight_sum=cells.weight_sum
        ))

    return OverlayResult(rows, grid.layer_labels(), aggregator=reducer.name)

@resolve_grid
def extract_points(
    grid: Grid,
    points: GeometryInput,
    policy: Optional[OverlayPolicy] = None,
    aggregator: Union[str, Aggregator] = "mean",
    id_col: Optional[str] = None,
    strict: Optional[bool] = None
) -> OverlayResult:
    """
    Sample grid values at point locations.

    Args:
        grid (Grid | str | Path): The grid (a path is loaded first).
        points: Point geometries in the grid CRS (Vector, GeoDataFrame, GeoSeries, path or sequence).
        policy (OverlayPolicy): Nearest/bilinear sampling or buffer radius. Defaults to nearest cell.
        aggregator (str | Aggregator): Reduction across the cells of a buffer. Nearest and bilinear
            sampling always use a weighted mean and only borrow the aggregator's missing policy.
        id_col (str): Identifier column for GeoDataFrame inputs.
        strict (bool): Override the aggregator's missing policy (True = any no-data cell → missing).

    Returns:
        OverlayResult: One row per point, in input order.

    Raises:
        GeometryMismatch: If the CRS differ or non-point geometries are supplied.
    """
    policy = policy or OverlayPolicy()
    agg = as_aggregator(aggregator, strict=strict)
    batch = resolve_geometries(points, id_col=id_col)
    check_batch(grid, batch, POINT_TYPES, "extract_points")

    result = extract_batch(grid, batch, "points", agg, policy)
    log.info(f"Extracted {len(result)} points: {dict(result.status_counts())}")
    return result

@resolve_grid
def extract_polygons(
    grid: Grid,
    polygons: GeometryInput,
    aggregator: Union[str, Aggregator] = "mean",
    policy: Optional[OverlayPolicy] = None,
    id_col: Optional[str] = None,
    strict: Optional[bool] = None
) -> OverlayResult:
    """
    Zonal statistics: summarize the cells covered by each polygon.

    Args:
        grid (Grid | str | Path): The grid (a path is loaded first).
        polygons: Polygon/MultiPolygon geometries in the grid CRS.
        aggregator (str | Aggregator | Callable): Reduction over (value, weight) pairs.
        policy (OverlayPolicy): Centroid or area-weighted overlay, fallback and normalization.
        id_col (str): Identifier column for GeoDataFrame inputs.
        strict (bool): Override the aggregator's missing policy.

    Returns:
        OverlayResult: One row per polygon, in input order. Malformed polygons yield
            INVALID_GEOMETRY rows; the rest of the batch is still processed.

    Raises:
        GeometryMismatch: If the CRS differ or non-polygon geometries are supplied.
    """
    policy = policy or OverlayPolicy()
    agg = as_aggregator(aggregator, strict=strict)
    batch = resolve_geometries(polygons, id_col=id_col)
    check_batch(grid, batch, POLYGON_TYPES, "extract_polygons")

    result = extract_batch(grid, batch, "polygons", agg, policy)
    log.info(f"Extracted {len(result)} polygons ({agg.name}): {dict(result.status_counts())}")
    return result
