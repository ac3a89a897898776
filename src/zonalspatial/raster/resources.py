# src/zonalspatial/raster/resources.py

"""
This module performs static memory analysis on rasters and system hardware.

It answers one question before heavy work starts: will the cell values fit
in RAM, once for a full load and once per worker for parallel extraction.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union, Optional, Sequence

import numpy as np
import psutil
import rasterio

from .layer import Grid
from .utils import resolve_envi_path

log = logging.getLogger(__name__)

__all__ = [
    "MemoryEstimate",
    "estimate_memory",
    "estimate_bytes"
]

DEFAULT_SAFETY_FACTOR = 3.0
MIN_FREE_GB = 2.0

@dataclass(frozen=True)
class MemoryEstimate:
    """
    Estimation of memory requirements and safety for materializing a raster.

    Args:
        total_required_bytes: Total bytes required (raw size times safety factor)
        available_system_bytes: Currently available system memory in bytes
        is_safe: True if the load leaves at least the minimum free memory
        reason: Explanation for the safety assessment
    """
    total_required_bytes: int
    available_system_bytes: int
    is_safe: bool
    reason: str

def estimate_bytes(
    source: Union[str, Path, Grid],
    bands: Optional[int] = None
) -> int:
    """
    Raw uncompressed size in bytes of the cell values of a Grid or raster file.

    Args:
        source: Grid object or path to a raster file.
        bands: Optional number of bands to consider (default all).
    """
    if isinstance(source, Grid):
        num_bands = bands if bands is not None else source.nlayers
        return int(num_bands * source.nrows * source.ncols * np.dtype(source.dtype).itemsize)

    path = resolve_envi_path(Path(source))
    with rasterio.open(path) as src:
        num_bands = bands if bands is not None else src.count
        bytes_per_pixel = sum(np.dtype(src.dtypes[i]).itemsize for i in range(num_bands))
        return int(src.width * src.height * bytes_per_pixel)

def estimate_memory(
    source: Union[str, Path, Grid, Sequence[Grid]],
    bands: Optional[int] = None,
    copies: int = 1,
    safety_factor: float = DEFAULT_SAFETY_FACTOR,
    min_free_gb: float = MIN_FREE_GB
) -> MemoryEstimate:
    """
    Checks whether `copies` materialized copies of the raster fit in RAM safely.

    Args:
        source: Grid object, path to a raster file, or a sequence of Grids held at once
                (e.g. the chunk grids in flight across workers).
        bands: Optional number of bands to consider (default all).
        copies: How many independent copies will live at once (e.g. one per worker process).
        safety_factor: Multiplier to account for NumPy/Python overhead (default 3.0).
        min_free_gb: Minimum free GB to leave available after loading (default 2.0).

    Returns:
        MemoryEstimate: Contains total required bytes, available bytes, safety boolean, and reason.
    """
    if isinstance(source, (list, tuple)):
        raw_bytes = sum(estimate_bytes(g, bands=bands) for g in source)
    else:
        raw_bytes = estimate_bytes(source, bands=bands)
    raw_bytes *= max(1, copies)
    overhead_bytes = int(raw_bytes * (safety_factor - 1.0))
    total_required = raw_bytes + overhead_bytes

    mem = psutil.virtual_memory()
    min_free_bytes = int(min_free_gb * (1024**3))
    is_safe = (total_required + min_free_bytes) <= mem.available

    reason = f"Req: {total_required/1e9:.2f}GB, Avail: {mem.available/1e9:.2f}GB"

    return MemoryEstimate(total_required, mem.available, is_safe, reason)
