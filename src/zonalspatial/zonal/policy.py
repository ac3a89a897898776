# src/zonalspatial/zonal/policy.py

"""
This module defines the overlay policy that decides which cells a geometry draws from and how they are weighted.
"""

import json
import logging
from dataclasses import dataclass, asdict, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

log = logging.getLogger(__name__)

__all__ = [
    "PointInterpolation",
    "EdgeFallback",
    "OverlayPolicy"
]

class PointInterpolation(Enum):
    """
    How a point without a buffer reads the grid.

    Options:
        NEAREST: Value of the enclosing cell.
        BILINEAR: Bilinear kernel over the 4 nearest cell centres.
    """
    NEAREST = "nearest"
    BILINEAR = "bilinear"

class EdgeFallback(Enum):
    """
    What bilinear interpolation does when one of the 4 neighbours lies outside the grid.

    Options:
        NEAREST: Use the enclosing cell's value instead.
        MISSING: Report the point as missing.
    """
    NEAREST = "nearest"
    MISSING = "missing"

@dataclass(frozen=True)
class OverlayPolicy:
    """
    Configuration for resolving geometries to contributing cells.

    Args:
        centroid_only (bool): Polygon includes a cell iff the cell centre is inside it or on its boundary.
        small_polygon_fallback (bool): If no cell is included, use the cell containing the polygon centroid.
        area_weighted (bool): Weight each cell by the fraction of its area covered by the polygon.
            Takes precedence over centroid_only.
        normalize_weights (bool): Rescale a polygon's weights to sum to 1.
        point_buffer_radius (float | None): If set, points use every cell whose centre lies
            within this distance (inclusive). Takes precedence over point_interpolation.
        point_interpolation (PointInterpolation): NEAREST or BILINEAR.
        edge_fallback (EdgeFallback): Bilinear behaviour at the grid edge.
    """
    centroid_only: bool = True
    small_polygon_fallback: bool = True
    area_weighted: bool = False
    normalize_weights: bool = False
    point_buffer_radius: Optional[float] = None
    point_interpolation: PointInterpolation = PointInterpolation.NEAREST
    edge_fallback: EdgeFallback = EdgeFallback.NEAREST

    def __post_init__(self):
        # Accept plain strings for the enum fields
        if not isinstance(self.point_interpolation, PointInterpolation):
            object.__setattr__(self, "point_interpolation", PointInterpolation(self.point_interpolation))
        if not isinstance(self.edge_fallback, EdgeFallback):
            object.__setattr__(self, "edge_fallback", EdgeFallback(self.edge_fallback))

        if self.point_buffer_radius is not None:
            radius = float(self.point_buffer_radius)
            if radius < 0:
                raise ValueError(f"point_buffer_radius must be >= 0, got {radius}")
            object.__setattr__(self, "point_buffer_radius", radius)

        if not (self.centroid_only or self.area_weighted):
            raise ValueError("At least one of centroid_only or area_weighted must be enabled")

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> 'OverlayPolicy':
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise ValueError(f"Unknown overlay policy options: {sorted(unknown)}. Valid: {sorted(known)}")
        return cls(**options)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'OverlayPolicy':
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Policy file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            options = json.load(f)
        log.debug(f"Loaded overlay policy from {path.name}: {options}")
        return cls.from_dict(options)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["point_interpolation"] = self.point_interpolation.value
        out["edge_fallback"] = self.edge_fallback.value
        return out

    def replace(self, **changes) -> 'OverlayPolicy':
        return OverlayPolicy.from_dict({**self.to_dict(), **changes})
