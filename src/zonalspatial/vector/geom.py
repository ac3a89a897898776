# src/zonalspatial/vector/geom.py

"""
This module provides geometric checks and preparation steps for vector data.

Reprojection here is always explicit and caller-requested; the zonal
extractors never reproject on their own.
"""

from typing import Optional, List
import logging

import pandas as pd
from shapely.validation import explain_validity

from zonalspatial.vector.layer import Vector
from zonalspatial.vector.io import resolve_vector

log = logging.getLogger(__name__)

__all__ = [
    "to_crs",
    "validate",
    "geometry_errors",
    "prepare_geometries"
]

ID_COLUMN = "geometry_id"

def to_crs(vector: Vector, target_crs) -> Vector:
    if vector.crs is None:
        raise ValueError("Vector has no CRS. Cannot reproject.")

    log.info(f"Reprojecting {len(vector)} features from {vector.crs} to {target_crs}")
    return Vector(vector.data.to_crs(target_crs))

def geometry_errors(vector: Vector) -> List[Optional[str]]:
    """
    Per-row validity report: None for a usable geometry, otherwise the reason it is malformed.

    Null and empty geometries, shapely-invalid shapes (self-intersections, bad rings)
    and polygons of zero area are reported.
    """
    reasons = []
    for geom in vector.data.geometry:
        if geom is None:
            reasons.append("Null geometry")
        elif geom.is_empty:
            reasons.append("Empty geometry")
        elif not geom.is_valid:
            reasons.append(explain_validity(geom))
        elif geom.geom_type in ("Polygon", "MultiPolygon") and geom.area == 0:
            reasons.append("Zero-area polygon")
        else:
            reasons.append(None)
    return reasons

def validate(vector: Vector, fix_invalid: bool = True, drop_invalid: bool = True) -> Vector:
    gdf = vector.data.copy()
    invalid_mask = pd.Series([r is not None for r in geometry_errors(vector)], index=gdf.index)

    if not invalid_mask.any():
        return Vector(gdf)

    log.warning(f"Found {int(invalid_mask.sum())} invalid geometries out of {len(gdf)}")

    if fix_invalid:
        fixable = invalid_mask & gdf.geometry.notna()
        gdf.loc[fixable, 'geometry'] = gdf.loc[fixable, 'geometry'].buffer(0)
        still_invalid = pd.Series(
            [r is not None for r in geometry_errors(Vector(gdf))], index=gdf.index
        )
        if still_invalid.any() and drop_invalid:
            gdf = gdf[~still_invalid]
    elif drop_invalid:
        gdf = gdf[~invalid_mask]

    return Vector(gdf)

@resolve_vector
def prepare_geometries(
    vector: Vector,
    id_col: Optional[str] = None,
    do_validate: bool = False,
    fix_invalid: bool = True
) -> Vector:
    """
    Standardizes a vector layer for zonal extraction.

    This function handles:
    1. Optional geometry validation (repair, then drop what cannot be repaired)
    2. ID column standardization → 'geometry_id'

    Args:
        vector: The input Vector object (a path or GeoDataFrame is resolved first).
        id_col: Name of the column holding feature identifiers.
                If None or missing, the DataFrame index is used.
        do_validate: Run validate() before extraction. Off by default so that
                     malformed shapes surface as per-row errors instead of vanishing.
        fix_invalid: If do_validate, attempt buffer(0) repair before dropping.

    Returns:
        Vector: A copy with a unique 'geometry_id' column.
    """
    if do_validate:
        vector = validate(vector, fix_invalid=fix_invalid, drop_invalid=True)
        if len(vector) == 0:
            raise ValueError("No valid geometries remaining after validation!")

    gdf = vector.data.copy()

    if id_col and id_col in gdf.columns:
        if id_col != ID_COLUMN:
            gdf = gdf.rename(columns={id_col: ID_COLUMN})
        if gdf[ID_COLUMN].duplicated().any():
            log.warning(f"Column '{id_col}' has duplicated values; falling back to the index")
            gdf[ID_COLUMN] = gdf.index
    else:
        if id_col:
            log.warning(f"Column '{id_col}' not found; using the index as geometry_id")
        gdf[ID_COLUMN] = gdf.index

    return Vector(gdf)
