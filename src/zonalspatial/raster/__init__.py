# src/zonalspatial/raster/__init__.py
#
# Copyright (c) The zonalspatial project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The raster subpackage provides the immutable Grid value and its collaborators:
I/O through rasterio, memory estimation and grid-level transforms.
"""
# Core data structure
from .layer import (
    Grid,
    Storage,
    CellIndex
)

# I/O operations
from .io import (
    RasterReader,
    load,
    save,
    read_info,
    resolve_grid
)

# Resource management
from .resources import (
    MemoryEstimate,
    estimate_memory,
    estimate_bytes
)

# Geometry utilities
from .geom import (
    crop,
    mosaic,
    reproject,
    stack_bands,
    split_bands
)

# Shared utilities
from .utils import (
    resolve_envi_path,
    extract_band_names,
    extract_band_indices,
    layer_names
)

__all__ = [
    # Utils
    "resolve_envi_path",
    "extract_band_names",
    "extract_band_indices",
    "layer_names",

    # Layer
    "Grid",
    "Storage",
    "CellIndex",

    # I/O
    "RasterReader",
    "load",
    "save",
    "read_info",
    "resolve_grid",

    # Resources
    "MemoryEstimate",
    "estimate_memory",
    "estimate_bytes",

    # Geom utilities
    "crop",
    "mosaic",
    "reproject",
    "stack_bands",
    "split_bands"
]
