# src/zonalspatial/vector/__init__.py
#
# Copyright (c) The zonalspatial project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The vector subpackage provides the point and polygon collections that zonal
extraction overlays on grids: I/O, explicit reprojection and validation.
"""

# I/O and data structure
from .layer import (
    Vector
)

from .io import (
    load_vector,
    save_vector,
    resolve_vector
)

# Geometric checks and preparation
from .geom import (
    ID_COLUMN,
    to_crs,
    validate,
    geometry_errors,
    prepare_geometries
)

__all__ = [
    # I/O and data structure
    "Vector",
    "load_vector",
    "save_vector",
    "resolve_vector",

    # Geometric checks and preparation
    "ID_COLUMN",
    "to_crs",
    "validate",
    "geometry_errors",
    "prepare_geometries"
]
