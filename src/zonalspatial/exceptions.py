# src/zonalspatial/exceptions.py

"""
This module defines the exception hierarchy shared by the raster, vector and zonal subpackages.

Batch-fatal problems (GeometryMismatch) stop an extraction call before any
geometry is processed. Per-geometry problems (InvalidGeometry) are recorded on
the affected result row and never abort the batch.
"""

from typing import Any, List, Optional, Tuple

__all__ = [
    "ZonalError",
    "GridValidationError",
    "GeometryMismatch",
    "InvalidGeometry",
    "ParallelExtractionError"
]

class ZonalError(Exception):
    """Base class for every error raised by zonalspatial."""

class GridValidationError(ZonalError):
    """Raised when a Grid is malformed or two grids cannot be combined."""

class GeometryMismatch(ZonalError):
    """Raised when geometries and grid disagree on CRS or geometry dimensionality."""

class InvalidGeometry(ZonalError):
    """
    Raised for a single malformed geometry (null, empty, self-intersecting, zero-area).

    Args:
        message: Human readable reason, usually shapely's explain_validity output.
        geometry_id: Identifier of the offending geometry, if known.
    """
    def __init__(self, message: str, geometry_id: Any = None):
        super().__init__(message)
        self.geometry_id = geometry_id

class ParallelExtractionError(ZonalError):
    """
    Raised when one or more chunks of a parallel extraction failed.

    Attributes:
        failures: List of (chunk_index, exception) pairs.
        partial: OverlayResult assembled from the chunks that succeeded, or None.
    """
    def __init__(self, failures: List[Tuple[int, BaseException]], partial: Optional[Any] = None):
        details = "; ".join(f"chunk {idx}: {type(err).__name__}: {err}" for idx, err in failures)
        super().__init__(f"{len(failures)} chunk(s) failed during parallel extraction ({details})")
        self.failures = failures
        self.partial = partial
