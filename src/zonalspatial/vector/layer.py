# src/zonalspatial/vector/layer.py

"""
This module defines the geometry collection that zonal extraction overlays on grids.

A Vector wraps a GeoDataFrame together with its CRS. It is treated as a value:
reprojection, validation and identifier preparation all return a new Vector.
"""

import logging
from typing import List, Optional, Tuple

import geopandas as gpd

log = logging.getLogger(__name__)

__all__ = [
    "Vector"
]

POINT_KIND = "points"
POLYGON_KIND = "polygons"

_KINDS = {
    "Point": POINT_KIND,
    "Polygon": POLYGON_KIND,
    "MultiPolygon": POLYGON_KIND
}

class Vector:
    """
    Point or polygon features with a coordinate reference.

    Attributes:
        data (gpd.GeoDataFrame): The wrapped features.
    """
    def __init__(self, data: gpd.GeoDataFrame):
        if not isinstance(data, gpd.GeoDataFrame):
            raise TypeError(f"Expected GeoDataFrame, got {type(data)}")
        self._data = data

    @property
    def data(self) -> gpd.GeoDataFrame:
        return self._data

    @property
    def geometry(self) -> gpd.GeoSeries:
        return self._data.geometry

    @property
    def crs(self):
        return self._data.crs

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(float(v) for v in self._data.total_bounds)

    @property
    def columns(self) -> List[str]:
        return self._data.columns.tolist()

    @property
    def geom_types(self) -> List[str]:
        """Distinct geometry type names, ignoring null and empty geometries."""
        geoms = self._data.geometry
        present = geoms[~(geoms.isna() | geoms.is_empty)]
        return sorted(present.geom_type.unique().tolist())

    @property
    def kind(self) -> Optional[str]:
        """
        'points' or 'polygons' when every present geometry belongs to that family.

        Returns None for empty layers and for mixed or unsupported geometry types.
        """
        kinds = {_KINDS.get(t) for t in self.geom_types}
        if len(kinds) != 1 or None in kinds:
            return None
        return kinds.pop()

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"<Vector features={len(self._data)} kind={self.kind} crs={self.crs}>"
