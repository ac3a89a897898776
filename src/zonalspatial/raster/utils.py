# src/zonalspatial/raster/utils.py

"""
This module provides shared utility functions for raster operations.

Functions include path resolution for ENVI files,
band selection and naming, and other common tasks.
"""
import logging
from pathlib import Path
from typing import Union, List, Optional, Dict

import rasterio

log = logging.getLogger(__name__)

__all__ = [
    "resolve_envi_path",
    "extract_band_indices",
    "extract_band_names",
    "layer_names"
]

def resolve_envi_path(path: Union[str, Path]) -> Path:
    """
    Resolve ENVI header/binary file confusion.
    If 'image.hdr' is passed, redirects to 'image' (binary).
    """
    path = Path(path)
    if path.suffix.lower() == '.hdr':
        binary_path = path.with_suffix('')
        if binary_path.exists():
            log.debug(f"Redirecting {path.name} to binary file {binary_path.name}")
            return binary_path
    return path

def extract_band_indices(
    src: rasterio.DatasetReader,
    bands: Optional[Union[int, List[int]]]
) -> List[int]:
    """
    Normalize band selection to a list of 1-based indices.
    """
    if bands is None:
        return list(src.indexes)
    elif isinstance(bands, int):
        return [bands]
    return list(bands)

def extract_band_names(
    src: rasterio.DatasetReader,
    indices: List[int]
) -> Dict[str, int]:
    """
    Extract descriptions/names for specific bands.
    """
    band_names = {}
    for i, idx in enumerate(indices):
        if 0 <= (idx - 1) < len(src.descriptions):
            desc = src.descriptions[idx - 1]
            if desc:
                band_names[desc] = i + 1
    return band_names

def layer_names(band_names: Dict[str, int], count: int) -> List[str]:
    """
    Ordered layer labels for `count` layers, falling back to 'b1', 'b2', ... for unnamed layers.
    """
    idx_to_name = {v: k for k, v in band_names.items()}
    return [idx_to_name.get(i + 1, f"b{i + 1}") for i in range(count)]
