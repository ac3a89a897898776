# src/zonalspatial/raster/layer.py

"""
This module defines the Grid, the immutable raster value every zonal operation reads from.

A Grid synchronizes a (Layers, Rows, Cols) NumPy array with its geospatial
context (north-up Affine transform, CRS, nodata sentinel, band names). Cell
values are exposed read-only and every transform returns a new Grid.
"""

import copy
import logging
import math
from enum import Enum
from pathlib import Path
from typing import Union, Optional, Dict, Any, Tuple, List, NamedTuple, Callable

import numpy as np
from numba import jit
from rasterio.crs import CRS
from rasterio.transform import Affine

from zonalspatial.exceptions import GridValidationError

from .utils import layer_names

log = logging.getLogger(__name__)

__all__ = [
    "Grid",
    "Storage",
    "CellIndex"
]

# Offsets closer than this to a grid line are snapped onto it.
_LINE_EPS = 1e-9

class Storage(Enum):
    """
    Where the cell values of a Grid live.

    Modes:
        IN_MEMORY: Values were supplied as (or already read into) a NumPy array.
        FILE_BACKED: Metadata is known, values are read from the source file on first access.
    """
    IN_MEMORY = "in_memory"
    FILE_BACKED = "file_backed"

class CellIndex(NamedTuple):
    row: int
    col: int
    linear: int

@jit(nopython=True, cache=True)
def _locate_cells(
    xs: np.ndarray,
    ys: np.ndarray,
    left: float,
    top: float,
    cell_w: float,
    cell_h: float,
    row_off: int,
    col_off: int,
    nrows: int,
    ncols: int
):
    """
    Assigns coordinates to cells using half-open [min, max) intervals on both axes.

    Offsets are measured from the anchor origin, so a window of a grid
    assigns exactly the cells its parent would.

    Args:
        xs, ys: Float64 coordinate arrays of equal length.
        left, top: Anchor origin (upper-left corner of the outermost grid).
        cell_w, cell_h: Positive cell dimensions.
        row_off, col_off: Position of this grid's first cell relative to the anchor.
        nrows, ncols: Grid dimensions.

    Returns:
        Tuple of (rows, cols) int64 arrays. Rows count from the top; -1 marks coordinates outside the grid.
    """
    n = xs.shape[0]
    rows = np.full(n, -1, dtype=np.int64)
    cols = np.full(n, -1, dtype=np.int64)
    for i in range(n):
        fx = (xs[i] - left) / cell_w
        fy = (top - ys[i]) / cell_h
        # NaN and infinities fail these comparisons
        if not (fx >= col_off - 1 and fx <= col_off + ncols + 1):
            continue
        if not (fy >= row_off - 1 and fy <= row_off + nrows + 1):
            continue
        nx = math.floor(fx + 0.5)
        ny = math.floor(fy + 0.5)
        if abs(fx - nx) < _LINE_EPS:
            fx = float(nx)
        if abs(fy - ny) < _LINE_EPS:
            fy = float(ny)
        c = int(math.floor(fx)) - col_off
        # y counts down from the top, so a point on a line belongs to the row above it
        r = int(math.ceil(fy)) - 1 - row_off
        if c < 0 or r < 0 or c >= ncols or r >= nrows:
            continue
        rows[i] = r
        cols[i] = c
    return rows, cols

def _snap_floor(value: float) -> int:
    nearest = round(value)
    if abs(value - nearest) < _LINE_EPS:
        return int(nearest)
    return math.floor(value)

def _snap_ceil(value: float) -> int:
    nearest = round(value)
    if abs(value - nearest) < _LINE_EPS:
        return int(nearest)
    return math.ceil(value)

class Grid:
    """
    An immutable rectangular array of cell values with spatial referencing.

    Attributes:
        values (np.ndarray): Read-only cell array in (Layers, Rows, Cols) format.
        transform (Affine): North-up affine transform (no rotation, positive cell width, negative cell height).
        crs (CRS | None): Coordinate Reference System, None when unknown.
        nodata (float | int | None): Sentinel marking cells without a valid measurement.
        band_names (Dict[str, int]): Mapping of semantic names to 1-based layer indices.
        storage (Storage): IN_MEMORY or FILE_BACKED.
        source (Path | None): File the grid was read from, if any.
    """

    def __init__(
        self,
        values: np.ndarray,
        transform: Affine,
        crs: Optional[Union[CRS, str]] = None,
        nodata: Optional[Union[float, int]] = None,
        band_names: Optional[Dict[str, int]] = None,
        copy: bool = True,
        source: Optional[Union[str, Path]] = None
    ):
        """
        Initialize a Grid from an in-memory array.

        Args:
            values: 2D (Rows, Cols) or 3D (Layers, Rows, Cols) array.
                    2D arrays are promoted to a single layer.
            transform: North-up affine transform mapping cell corners to coordinates.
            crs: Coordinate Reference System (CRS object, EPSG/WKT string, or None).
            nodata: Value indicating no data.
            band_names: Optional mapping of names to 1-based layer indices ('Red': 1).
            copy: If True (default) the array is copied. If False the Grid wraps a
                  read-only view of the caller's array, which the caller must not mutate.
            source: Optional path the values were read from.

        Raises:
            GridValidationError: If dimensions or transform are unsupported.
        """
        if not isinstance(values, np.ndarray):
            raise TypeError(f"Values must be numpy.ndarray, got {type(values)}")
        if values.ndim not in (2, 3):
            raise GridValidationError(f"Values must be 2D or 3D, got shape {values.shape}")
        if values.ndim == 2:
            values = values[np.newaxis, :, :]

        values = values.copy() if copy else values.view()
        values.setflags(write=False)

        self._setup(values.shape, values.dtype, transform, crs, nodata, band_names)
        self._values = values
        self._reader = None
        self._storage = Storage.IN_MEMORY
        self._source = Path(source) if source is not None else None

    @classmethod
    def deferred(
        cls,
        reader: Callable[..., np.ndarray],
        shape: Tuple[int, int, int],
        dtype: Any,
        transform: Affine,
        crs: Optional[Union[CRS, str]] = None,
        nodata: Optional[Union[float, int]] = None,
        band_names: Optional[Dict[str, int]] = None,
        source: Optional[Union[str, Path]] = None
    ) -> 'Grid':
        """
        Build a FILE_BACKED Grid whose values are produced by `reader` on first access.

        Args:
            reader: Callable returning the full (Layers, Rows, Cols) array when called
                    without arguments, or a sub-array when called with
                    `window=((row0, row1), (col0, col1))`. Must be picklable for process pools.
            shape: (Layers, Rows, Cols) of the data the reader will produce.
            dtype: NumPy dtype of the data.
        """
        grid = cls.__new__(cls)
        grid._setup(tuple(shape), np.dtype(dtype), transform, crs, nodata, band_names)
        grid._values = None
        grid._reader = reader
        grid._storage = Storage.FILE_BACKED
        grid._source = Path(source) if source is not None else None
        return grid

    def _setup(self, shape, dtype, transform, crs, nodata, band_names):
        if len(shape) != 3 or min(shape) <= 0:
            raise GridValidationError(f"Grid dimensions must all be positive, got {shape}")
        if not isinstance(transform, Affine):
            raise TypeError(f"Transform must be rasterio.Affine, got {type(transform)}")
        if transform.b != 0 or transform.d != 0:
            raise GridValidationError("Rotated transforms are not supported")
        if transform.a <= 0 or transform.e >= 0:
            raise GridValidationError(
                f"Only north-up grids are supported (cell width > 0, cell height < 0), "
                f"got ({transform.a}, {transform.e})"
            )
        if isinstance(crs, str):
            crs = CRS.from_user_input(crs)

        self._shape = shape
        self._dtype = dtype
        self._transform = transform
        self._crs = crs
        self._nodata = nodata
        self._band_names = dict(band_names or {})
        # (left, top, row offset, col offset) of the outermost grid this one was windowed from
        self._anchor = (transform.c, transform.f, 0, 0)

    def _anchored(self, grid: 'Grid', row0: int = 0, col0: int = 0) -> 'Grid':
        left, top, row_off, col_off = self._anchor
        grid._anchor = (left, top, row_off + row0, col_off + col0)
        return grid

    # Dynamic metadata properties

    @property
    def values(self) -> np.ndarray:
        """Read-only cell data, loaded from the source on first access for FILE_BACKED grids."""
        if self._values is None:
            log.debug(f"Materializing file-backed grid from {self._source}")
            data = np.asarray(self._reader())
            if data.ndim == 2:
                data = data[np.newaxis, :, :]
            if data.shape != self._shape:
                raise GridValidationError(
                    f"Reader returned shape {data.shape}, expected {self._shape}"
                )
            data.setflags(write=False)
            self._values = data
        return self._values

    @property
    def data(self) -> np.ndarray:
        return self.values

    @property
    def is_loaded(self) -> bool:
        return self._values is not None

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def source(self) -> Optional[Path]:
        return self._source

    @property
    def transform(self) -> Affine:
        return self._transform

    @property
    def crs(self) -> Optional[CRS]:
        return self._crs

    @property
    def nodata(self) -> Optional[Union[float, int]]:
        return self._nodata

    @property
    def band_names(self) -> Dict[str, int]:
        return dict(self._band_names)

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def nlayers(self) -> int:
        return self._shape[0]

    @property
    def nrows(self) -> int:
        return self._shape[1]

    @property
    def ncols(self) -> int:
        return self._shape[2]

    @property
    def count(self) -> int:
        return self.nlayers

    @property
    def height(self) -> int:
        return self.nrows

    @property
    def width(self) -> int:
        return self.ncols

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Returns (Layers, Rows, Cols)."""
        return self._shape

    @property
    def resolution(self) -> Tuple[float, float]:
        """Returns (cell width, cell height), both positive."""
        return (self._transform.a, -self._transform.e)

    @property
    def cell_area(self) -> float:
        w, h = self.resolution
        return w * h

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top) in CRS units."""
        left, top, row_off, col_off = self._anchor
        w, h = self.resolution
        return (
            left + col_off * w,
            top - (row_off + self.nrows) * h,
            left + (col_off + self.ncols) * w,
            top - row_off * h
        )

    @property
    def offset(self) -> Tuple[int, int]:
        """(row, col) of this grid's first cell in the grid it was windowed from, (0, 0) otherwise."""
        return self._anchor[2], self._anchor[3]

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        return self.bounds

    @property
    def profile(self) -> Dict[str, Any]:
        """
        Generates a Rasterio-compliant profile based on current state.
        """
        return {
            'driver': 'GTiff',
            'dtype': self._dtype,
            'nodata': self._nodata,
            'width': self.ncols,
            'height': self.nrows,
            'count': self.nlayers,
            'crs': self._crs,
            'transform': self._transform,
            'compress': 'lzw',
            'tiled': self.ncols >= 256 and self.nrows >= 256
        }

    # Cell indexing

    def linear_index(self, row: int, col: int) -> int:
        self._check_cell(row, col)
        return row * self.ncols + col

    def row_col(self, linear: int) -> Tuple[int, int]:
        if not (0 <= linear < self.nrows * self.ncols):
            raise IndexError(f"Linear index {linear} out of range (0-{self.nrows * self.ncols - 1})")
        return divmod(int(linear), self.ncols)

    def indices_of(self, xs: Any, ys: Any) -> Tuple[np.ndarray, np.ndarray]:
        """
        Vectorised coordinate lookup.

        Returns:
            (rows, cols) int64 arrays, -1 where the coordinate lies outside the grid.
        """
        xs = np.atleast_1d(np.asarray(xs, dtype=np.float64))
        ys = np.atleast_1d(np.asarray(ys, dtype=np.float64))
        if xs.shape != ys.shape:
            raise ValueError(f"Coordinate arrays differ in shape: {xs.shape} vs {ys.shape}")
        left, top, row_off, col_off = self._anchor
        w, h = self.resolution
        return _locate_cells(
            xs.ravel(), ys.ravel(), left, top, w, h, row_off, col_off, self.nrows, self.ncols
        )

    def index_of(self, x: float, y: float) -> Optional[CellIndex]:
        """
        Returns the cell enclosing (x, y), or None if the coordinate lies outside the grid.

        A coordinate on a line shared by two cells belongs to the cell whose
        half-open [min, max) interval contains it, so the right and top edges
        of the grid are outside. Coordinates within a billionth of a cell of a
        line are treated as lying on it.
        """
        rows, cols = self.indices_of([x], [y])
        row, col = int(rows[0]), int(cols[0])
        if row < 0:
            return None
        return CellIndex(row, col, row * self.ncols + col)

    def coords_of(self, index: Union[int, Tuple[int, int]]) -> Tuple[float, float]:
        """Returns the centre (x, y) of a cell given its linear index or (row, col) pair."""
        if isinstance(index, tuple):
            row, col = index
            self._check_cell(row, col)
        else:
            row, col = self.row_col(index)
        xs, ys = self.centers(np.array([row]), np.array([col]))
        return (float(xs[0]), float(ys[0]))

    def frame_position(self, xs: Any, ys: Any) -> Tuple[np.ndarray, np.ndarray]:
        """
        Continuous (row, col) positions of coordinates, measured in cells from the anchor origin.

        Subtract `offset` after any rounding to get indices into this grid.
        """
        left, top, _, _ = self._anchor
        w, h = self.resolution
        return (top - np.asarray(ys, dtype=np.float64)) / h, (np.asarray(xs, dtype=np.float64) - left) / w

    def centers(
        self,
        rows: np.ndarray,
        cols: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorised cell centres for arrays of rows and cols."""
        left, top, row_off, col_off = self._anchor
        w, h = self.resolution
        rows = np.asarray(rows, dtype=np.int64) + row_off
        cols = np.asarray(cols, dtype=np.int64) + col_off
        return (left + (cols + 0.5) * w, top - (rows + 0.5) * h)

    def cell_edges(
        self,
        rows: np.ndarray,
        cols: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Vectorised (minx, miny, maxx, maxy) arrays of cell boxes."""
        left, top, row_off, col_off = self._anchor
        w, h = self.resolution
        rows = np.asarray(rows, dtype=np.int64) + row_off
        cols = np.asarray(cols, dtype=np.int64) + col_off
        return (
            left + cols * w,
            top - (rows + 1) * h,
            left + (cols + 1) * w,
            top - rows * h
        )

    def cell_bounds(self, row: int, col: int) -> Tuple[float, float, float, float]:
        """
        Returns (minx, miny, maxx, maxy) of a cell.

        Edges come from the same anchor arithmetic as `index_of`, so the
        lower-left corner always maps back to this cell.
        """
        self._check_cell(row, col)
        edges = self.cell_edges(np.array([row]), np.array([col]))
        return tuple(float(e[0]) for e in edges)

    def cell_window(
        self,
        bounds: Tuple[float, float, float, float]
    ) -> Optional[Tuple[Tuple[int, int], Tuple[int, int]]]:
        """
        Half-open (row, col) ranges of the cells whose box overlaps `bounds`.

        Args:
            bounds: (minx, miny, maxx, maxy) in the grid CRS.

        Returns:
            ((row0, row1), (col0, col1)), or None if the bounds do not overlap the grid.
        """
        minx, miny, maxx, maxy = bounds
        if any(math.isnan(v) for v in bounds):
            return None
        left, top, row_off, col_off = self._anchor
        w, h = self.resolution

        def cols_at(x):
            return min(max((x - left) / w, col_off - 1), col_off + self.ncols + 1)

        def rows_at(y):
            return min(max((top - y) / h, row_off - 1), row_off + self.nrows + 1)

        col0 = _snap_floor(cols_at(minx)) - col_off
        col1 = _snap_ceil(cols_at(maxx)) - col_off
        row0 = _snap_floor(rows_at(maxy)) - row_off
        row1 = _snap_ceil(rows_at(miny)) - row_off
        # Degenerate bounds inside a cell still select that cell
        col1, row1 = max(col1, col0 + 1), max(row1, row0 + 1)

        col0, col1 = max(0, col0), min(self.ncols, col1)
        row0, row1 = max(0, row0), min(self.nrows, row1)
        if col0 >= col1 or row0 >= row1:
            return None
        return (row0, row1), (col0, col1)

    def _check_cell(self, row: int, col: int):
        if not (0 <= row < self.nrows and 0 <= col < self.ncols):
            raise IndexError(f"Cell ({row}, {col}) outside grid of {self.nrows}x{self.ncols}")

    # Values

    def nodata_mask(self, array: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Boolean mask of missing cells (nodata sentinel or NaN) for `array`, or the whole grid.
        """
        arr = self.values if array is None else np.asarray(array)
        if np.issubdtype(arr.dtype, np.floating):
            mask = np.isnan(arr)
            if self._nodata is not None and not np.isnan(self._nodata):
                mask |= (arr == self._nodata)
            return mask
        if self._nodata is None or (isinstance(self._nodata, float) and np.isnan(self._nodata)):
            return np.zeros(arr.shape, dtype=bool)
        return arr == self._nodata

    def layer(self, identifier: Union[int, str]) -> np.ndarray:
        """
        Retrieve a specific layer by 1-based index or semantic name.

        Returns:
            np.ndarray: Read-only 2D array of the layer.
        """
        if isinstance(identifier, str):
            if identifier not in self._band_names:
                raise KeyError(f"Band name '{identifier}' not found in {list(self._band_names.keys())}")
            idx = self._band_names[identifier]
        else:
            idx = identifier

        if not (1 <= idx <= self.nlayers):
            raise IndexError(f"Layer index {idx} out of range (1-{self.nlayers})")

        return self.values[idx - 1]

    def read_window(
        self,
        row_slice: Tuple[int, int],
        col_slice: Tuple[int, int]
    ) -> np.ndarray:
        """
        Returns the (Layers, rows, cols) block for half-open row/col ranges.

        FILE_BACKED grids that were never materialized read only the window from disk.
        """
        (row0, row1), (col0, col1) = row_slice, col_slice
        if not (0 <= row0 < row1 <= self.nrows and 0 <= col0 < col1 <= self.ncols):
            raise IndexError(f"Window rows {row_slice} cols {col_slice} outside grid of {self.nrows}x{self.ncols}")
        if self._values is None:
            block = np.asarray(self._reader(window=((row0, row1), (col0, col1))))
            if block.ndim == 2:
                block = block[np.newaxis, :, :]
            return block
        return self._values[:, row0:row1, col0:col1]

    def window(
        self,
        row_slice: Tuple[int, int],
        col_slice: Tuple[int, int],
        view: bool = False
    ) -> 'Grid':
        """
        Returns a new Grid covering the half-open row/col ranges.

        The window keeps its parent's anchor, so centres, edges and lookups on it
        are bit-identical to the same cells of the parent.

        Args:
            view: If True and the values are already in memory, the new Grid shares
                  them read-only instead of copying.
        """
        (row0, _), (col0, _) = row_slice, col_slice
        block = self.read_window(row_slice, col_slice)
        left, top, row_off, col_off = self._anchor
        w, h = self.resolution
        sub_transform = Affine(w, 0.0, left + (col_off + col0) * w, 0.0, -h, top - (row_off + row0) * h)
        sub = Grid(
            block,
            sub_transform,
            crs=self._crs,
            nodata=self._nodata,
            band_names=self._band_names,
            copy=not (view and self._values is not None)
        )
        return self._anchored(sub, row0, col0)

    def with_values(
        self,
        values: np.ndarray,
        band_names: Optional[Dict[str, int]] = None,
        nodata: Optional[Union[float, int]] = None
    ) -> 'Grid':
        """Returns a new Grid on the same georeference with different values."""
        if values.ndim == 2:
            values = values[np.newaxis, :, :]
        if values.shape[1:] != self._shape[1:]:
            raise GridValidationError(
                f"New values {values.shape[1:]} do not match grid dimensions {self._shape[1:]}"
            )
        if band_names is None:
            band_names = self._band_names if values.shape[0] == self.nlayers else {}
        return self._anchored(Grid(
            values,
            self._transform,
            crs=self._crs,
            nodata=self._nodata if nodata is None else nodata,
            band_names=band_names
        ))

    def copy(self) -> 'Grid':
        """Returns an IN_MEMORY deep copy of the Grid."""
        return self._anchored(Grid(
            self.values,
            copy.deepcopy(self._transform),
            crs=copy.deepcopy(self._crs),
            nodata=self._nodata,
            band_names=self._band_names,
            source=self._source
        ))

    def layer_labels(self) -> List[str]:
        return layer_names(self._band_names, self.nlayers)

    def __getstate__(self) -> Dict[str, Any]:
        return self.__dict__.copy()

    def __setstate__(self, state: Dict[str, Any]):
        self.__dict__.update(state)
        if self._values is not None:
            self._values.setflags(write=False)

    def __repr__(self) -> str:
        return (f"<Grid shape={self.shape} dtype={self._dtype} storage={self._storage.value} "
                f"crs={self._crs} bounds={self.bounds}>")

    def __eq__(self, other: object) -> bool:
        """Checks equality based on metadata and cell values."""
        if not isinstance(other, Grid):
            return NotImplemented

        meta_eq = (
            self._transform == other.transform and
            self._crs == other.crs and
            (self._nodata == other.nodata or
             (self._nodata is not None and other.nodata is not None and
              np.isnan(self._nodata) and np.isnan(other.nodata))) and
            self.shape == other.shape
        )
        if not meta_eq:
            return False

        return np.array_equal(self.values, other.values, equal_nan=np.issubdtype(self._dtype, np.floating))

    __hash__ = None

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        """Allows np.array(grid) to work directly."""
        if dtype is not None:
            return self.values.astype(dtype)
        return self.values
