# src/zonalspatial/zonal/__init__.py
#
# Copyright (c) The zonalspatial project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The zonal subpackage overlays point and polygon collections on grids and
summarizes the covered cells into one row per geometry.
"""

# Configuration
from .policy import (
    OverlayPolicy,
    PointInterpolation,
    EdgeFallback
)

# Reductions
from .aggregate import (
    Aggregator,
    MissingPolicy,
    AGGREGATORS,
    get_aggregator,
    as_aggregator
)

# Results
from .result import (
    RowStatus,
    OverlayRow,
    OverlayResult
)

# Cell resolution
from .overlay import (
    CellWeights,
    point_cells,
    polygon_cells
)

# Extraction
from .extract import (
    GeometryBatch,
    resolve_geometries,
    check_batch,
    extract_batch,
    extract_points,
    extract_polygons
)

from .parallel import (
    chunk_ranges,
    chunk_grid,
    extract_parallel
)

__all__ = [
    # Configuration
    "OverlayPolicy",
    "PointInterpolation",
    "EdgeFallback",

    # Reductions
    "Aggregator",
    "MissingPolicy",
    "AGGREGATORS",
    "get_aggregator",
    "as_aggregator",

    # Results
    "RowStatus",
    "OverlayRow",
    "OverlayResult",

    # Cell resolution
    "CellWeights",
    "point_cells",
    "polygon_cells",

    # Extraction
    "GeometryBatch",
    "resolve_geometries",
    "check_batch",
    "extract_batch",
    "extract_points",
    "extract_polygons",
    "chunk_ranges",
    "chunk_grid",
    "extract_parallel"
]
