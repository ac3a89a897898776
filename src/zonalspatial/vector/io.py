# src/zonalspatial/vector/io.py

"""
This module reads and writes point and polygon layers using GeoPandas (pyogrio engine).
"""

from pathlib import Path
from typing import Union, Callable, Optional, Tuple
from functools import wraps
import logging

import geopandas as gpd

from zonalspatial.vector.layer import Vector

log = logging.getLogger(__name__)

__all__ = [
    "load_vector",
    "save_vector",
    "resolve_vector"
]

def load_vector(
    path: Union[str, Path],
    bbox: Optional[Tuple[float, float, float, float]] = None,
    layer: Optional[str] = None,
    engine: str = "pyogrio",
    **kwargs
) -> Vector:
    """
    Read a vector file into a Vector.

    Args:
        path: Any OGR-readable file (GeoPackage, Shapefile, GeoJSON...).
        bbox: Optional (minx, miny, maxx, maxy) filter in the file's CRS, e.g. a grid extent,
              so that features that cannot touch the grid are never read.
        layer: Layer name for multi-layer containers.
        engine: GeoPandas I/O engine.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Vector file not found: {path}")

    if layer is not None:
        kwargs["layer"] = layer
    if bbox is not None:
        kwargs["bbox"] = tuple(bbox)

    gdf = gpd.read_file(path, engine=engine, **kwargs)
    log.debug(f"Loaded {len(gdf)} features from {path.name}")
    return Vector(gdf)

def save_vector(
    vector: Vector,
    path: Union[str, Path],
    driver: Optional[str] = None,
    engine: str = "pyogrio",
    **kwargs
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    vector.data.to_file(path, driver=driver, engine=engine, **kwargs)
    log.debug(f"Saved {len(vector)} features to {path.name}")
    return path

def resolve_vector(func: Callable):
    """
    Decorator: the first argument may be a path, a GeoDataFrame or a Vector; the function receives a Vector.
    """
    @wraps(func)
    def wrapper(input_obj: Union[str, Path, Vector, gpd.GeoDataFrame], *args, **kwargs):
        if isinstance(input_obj, (str, Path)):
            vector_obj = load_vector(input_obj)
        elif isinstance(input_obj, Vector):
            vector_obj = input_obj
        elif isinstance(input_obj, gpd.GeoDataFrame):
            vector_obj = Vector(input_obj)
        else:
            raise TypeError(f"Expected file path, GeoDataFrame or Vector object, got {type(input_obj)}")

        return func(vector_obj, *args, **kwargs)
    return wrapper
