# src/zonalspatial/raster/io.py

"""
This module handles all disk-based operations for raster data.

Decoding is delegated to rasterio/GDAL; this module only turns an opened
dataset into a Grid (eagerly or file-backed) and writes Grids back out.
"""

import logging
from functools import wraps
from pathlib import Path
from typing import Union, Optional, List, Dict, Any, Callable, Tuple

import numpy as np
import rasterio
from rasterio.windows import Window

from .layer import Grid
from .resources import estimate_memory
from .utils import resolve_envi_path, extract_band_indices, extract_band_names

log = logging.getLogger(__name__)

__all__ = [
    "RasterReader",
    "load",
    "save",
    "read_info",
    "resolve_grid"
]

class RasterReader:
    """
    Picklable callable that reads bands of a raster file, whole or by window.

    Used as the backing store of FILE_BACKED grids so that worker processes can
    re-open the file instead of receiving the whole array.
    """
    def __init__(self, path: Union[str, Path], indexes: List[int], driver: Optional[str] = None):
        self.path = Path(path)
        self.indexes = list(indexes)
        self.driver = driver

    def __call__(self, window: Optional[Tuple[Tuple[int, int], Tuple[int, int]]] = None) -> np.ndarray:
        rio_window = Window.from_slices(*window) if window is not None else None
        try:
            with rasterio.open(self.path, driver=self.driver) as src:
                return src.read(self.indexes, window=rio_window)
        except rasterio.RasterioIOError as e:
            raise IOError(f"Failed to read raster from {self.path}: {e}") from e

    def __repr__(self) -> str:
        return f"<RasterReader path={self.path} indexes={self.indexes}>"

def load(
    path: Union[str, Path],
    bands: Optional[Union[int, List[int]]] = None,
    window: Optional[Window] = None,
    driver: Optional[str] = None,
    lazy: bool = False,
    check_memory: bool = True
) -> Grid:
    """
    Load a raster from disk as a Grid.

    Args:
        path: Path to raster file. All supported GDAL formats are accepted.
        bands: Specific band(s) to load (None=all, int=single, list=subset).
        window: Optional rasterio Window object to load only a spatial subset.
        driver: Optional GDAL driver name.
        lazy: If True, returns a FILE_BACKED Grid that reads values on first access.
              Ignored when a window is given.
        check_memory: If True (default) and the whole file is read eagerly,
                      estimates required RAM first.

    Returns:
        Grid: IN_MEMORY or FILE_BACKED grid.

    Raises:
        FileNotFoundError: If the file does not exist.
        MemoryError: If check_memory is True and the file is too large to load eagerly.
        IOError: If rasterio cannot read the file.
    """
    path = resolve_envi_path(Path(path))

    if not path.exists():
        raise FileNotFoundError(f"Raster file not found: {path}")

    log.debug(f"Loading raster: {path.name}")

    try:
        with rasterio.open(path, driver=driver) as src:
            indices = extract_band_indices(src, bands)
            band_names = extract_band_names(src, indices)

            if lazy and window is None:
                return Grid.deferred(
                    RasterReader(path, indices, driver=driver),
                    shape=(len(indices), src.height, src.width),
                    dtype=src.dtypes[indices[0] - 1],
                    transform=src.transform,
                    crs=src.crs,
                    nodata=src.nodata,
                    band_names=band_names,
                    source=path
                )

            if check_memory and window is None:
                estimate = estimate_memory(path, bands=len(indices))
                if not estimate.is_safe:
                    log.error(f"Insufficient memory to load {path.name}: {estimate.reason}")
                    raise MemoryError(
                        f"Insufficient memory to load {path.name}: {estimate.reason}\n"
                        "Tip: use load(..., lazy=True) and crop before extracting."
                    )

            data = src.read(indices, window=window)
            transform = src.window_transform(window) if window is not None else src.transform

            return Grid(
                data,
                transform,
                crs=src.crs,
                nodata=src.nodata,
                band_names=band_names,
                copy=False,
                source=path
            )

    except rasterio.RasterioIOError as e:
        raise IOError(f"Failed to read raster from {path}: {e}") from e

def save(
    grid: Grid,
    path: Union[str, Path],
    **profile_kwargs
) -> Path:
    """
    Write a Grid to disk.

    Args:
        grid: Grid object to save
        path: Output file path. All supported GDAL formats are accepted.
        **profile_kwargs: Override default rasterio profile settings.

    Returns:
        Path: The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    profile = grid.profile.copy()
    profile.update(profile_kwargs)

    log.info(f"Saving grid {grid.shape} → {path}")

    try:
        with rasterio.open(path, 'w', **profile) as dst:
            dst.write(grid.values)

            for name, idx in grid.band_names.items():
                if 1 <= idx <= grid.nlayers:
                    dst.set_band_description(idx, name)

    except Exception as e:
        raise IOError(f"Failed to save raster to {path}: {e}") from e
    return path

def read_info(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Inspects a raster file and returns its spatial metadata and band descriptions without reading cells.
    """
    path = resolve_envi_path(Path(path))
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    try:
        with rasterio.open(path) as src:
            band_names = {}
            for i in src.indexes:
                desc = src.descriptions[i - 1]
                band_names[desc or f"b{i}"] = i

            return {
                'crs': src.crs,
                'transform': src.transform,
                'bounds': tuple(src.bounds),
                'resolution': src.res,
                'width': src.width,
                'height': src.height,
                'count': src.count,
                'dtypes': src.dtypes,
                'driver': src.driver,
                'nodata': src.nodata,
                'band_names': band_names
            }
    except rasterio.RasterioIOError as e:
        raise IOError(f"Failed to read metadata from {path}: {e}") from e

def resolve_grid(func: Callable):
    """
    Decorator: Resolves polymorphic raster inputs.

    Ensures that the first argument of the decorated function is always a
    Grid, regardless of whether the user passed a file path or a Grid.

    Behavior:
    1. Input is path (str/Path) -> load() (Cold Start).
    2. Input is Grid object -> Passes through (Warm Start).
    """
    @wraps(func)
    def wrapper(input_obj: Union[str, Path, Grid], *args, **kwargs):
        if isinstance(input_obj, (str, Path)):
            try:
                grid = load(input_obj)
            except Exception:
                log.error(f"Auto-loading failed for {input_obj}")
                raise
        elif isinstance(input_obj, Grid):
            grid = input_obj
        else:
            raise TypeError(
                f"Function {func.__name__} expects a file path or Grid object, "
                f"got {type(input_obj).__name__}"
            )
        return func(grid, *args, **kwargs)

    return wrapper
