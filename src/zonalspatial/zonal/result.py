# src/zonalspatial/zonal/result.py

"""
This module defines the overlay result: one row per input geometry, in input order.

Rows carry their input position so that results computed in independent
chunks can be concatenated back into the original order.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import polars as pl

log = logging.getLogger(__name__)

__all__ = [
    "RowStatus",
    "OverlayRow",
    "OverlayResult"
]

class RowStatus(Enum):
    """
    Outcome of the overlay for one geometry.

    Options:
        OK: At least one contributing cell (values may still be NaN if every cell was no-data).
        OUT_OF_BOUNDS: Geometry lies entirely outside the grid extent.
        EMPTY_OVERLAY: Geometry overlaps the grid but no cell qualified under the policy.
        INVALID_GEOMETRY: Geometry is malformed; see the row's error message.
    """
    OK = "ok"
    OUT_OF_BOUNDS = "out_of_bounds"
    EMPTY_OVERLAY = "empty_overlay"
    INVALID_GEOMETRY = "invalid_geometry"

@dataclass(frozen=True)
class OverlayRow:
    position: int
    geometry_id: Any
    values: Tuple[float, ...]
    status: RowStatus = RowStatus.OK
    error: Optional[str] = None
    cell_count: int = 0
    weight_sum: float = 0.0

    @property
    def is_missing(self) -> bool:
        return all(np.isnan(v) for v in self.values)

    @classmethod
    def missing(
        cls,
        position: int,
        geometry_id: Any,
        nlayers: int,
        status: RowStatus,
        error: Optional[str] = None
    ) -> 'OverlayRow':
        return cls(position, geometry_id, (np.nan,) * nlayers, status, error)

class OverlayResult:
    """
    Ordered per-geometry summaries of a zonal extraction.

    Attributes:
        rows (Tuple[OverlayRow, ...]): One row per input geometry, sorted by input position.
        layer_names (Tuple[str, ...]): One label per grid layer.
        aggregator (str | None): Name of the reduction that produced the values.
    """
    def __init__(
        self,
        rows: Iterable[OverlayRow],
        layer_names: Sequence[str],
        aggregator: Optional[str] = None
    ):
        self.rows = tuple(rows)
        self.layer_names = tuple(layer_names)
        self.aggregator = aggregator

        for row in self.rows:
            if len(row.values) != len(self.layer_names):
                raise ValueError(
                    f"Row {row.position} has {len(row.values)} values for {len(self.layer_names)} layers"
                )

    @classmethod
    def concat(cls, parts: Sequence['OverlayResult']) -> 'OverlayResult':
        """Merge results computed on disjoint chunks, restoring input order by row position."""
        if not parts:
            raise ValueError("Cannot concatenate an empty list of results.")
        names = parts[0].layer_names
        for part in parts[1:]:
            if part.layer_names != names:
                raise ValueError(f"Layer mismatch while concatenating: {part.layer_names} != {names}")
        rows = sorted((row for part in parts for row in part.rows), key=lambda r: r.position)
        return cls(rows, names, aggregator=parts[0].aggregator)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[OverlayRow]:
        return iter(self.rows)

    def __getitem__(self, idx: int) -> OverlayRow:
        return self.rows[idx]

    def __repr__(self) -> str:
        return f"<OverlayResult rows={len(self.rows)} layers={list(self.layer_names)} statuses={dict(self.status_counts())}>"

    @property
    def values(self) -> np.ndarray:
        """(n_geometries, n_layers) float array, NaN where missing."""
        if not self.rows:
            return np.empty((0, len(self.layer_names)), dtype=np.float64)
        return np.array([row.values for row in self.rows], dtype=np.float64)

    @property
    def geometry_ids(self) -> List[Any]:
        return [row.geometry_id for row in self.rows]

    @property
    def statuses(self) -> List[RowStatus]:
        return [row.status for row in self.rows]

    @property
    def missing_mask(self) -> np.ndarray:
        return np.isnan(self.values)

    @property
    def errors(self) -> Dict[Any, str]:
        return {row.geometry_id: row.error for row in self.rows if row.error is not None}

    def status_counts(self) -> Counter:
        return Counter(row.status.value for row in self.rows)

    def column(self, layer: Union[int, str]) -> np.ndarray:
        idx = self.layer_names.index(layer) if isinstance(layer, str) else layer
        return self.values[:, idx]

    def to_dicts(self) -> List[Dict[str, Any]]:
        records = []
        for row in self.rows:
            record = {"geometry_id": _plain(row.geometry_id)}
            record.update({name: (None if np.isnan(v) else float(v)) for name, v in zip(self.layer_names, row.values)})
            record.update({
                "status": row.status.value,
                "error": row.error,
                "cell_count": row.cell_count
            })
            records.append(record)
        return records

    def to_polars(self) -> pl.DataFrame:
        """
        Tabular view: geometry_id, one Float64 column per layer (null where missing), status, error, cell_count.
        """
        values = self.values
        columns = [pl.Series("geometry_id", [_plain(i) for i in self.geometry_ids], strict=False)]
        for j, name in enumerate(self.layer_names):
            columns.append(pl.Series(name, values[:, j], dtype=pl.Float64).fill_nan(None))
        columns.extend([
            pl.Series("status", [row.status.value for row in self.rows], dtype=pl.Utf8),
            pl.Series("error", [row.error for row in self.rows], dtype=pl.Utf8),
            pl.Series("cell_count", [row.cell_count for row in self.rows], dtype=pl.Int64),
        ])
        return pl.DataFrame(columns)

    def to_geodataframe(self, geometries: gpd.GeoDataFrame, prefix: str = "") -> gpd.GeoDataFrame:
        """
        Attach the summaries to the geometries they were computed for.

        Args:
            geometries: The GeoDataFrame (or Vector.data) passed to the extractor, in the same order.
            prefix: Optional prefix for the layer columns.
        """
        if len(geometries) != len(self.rows):
            raise ValueError(f"Got {len(geometries)} geometries for {len(self.rows)} result rows")
        out = geometries.copy()
        values = self.values
        for j, name in enumerate(self.layer_names):
            out[f"{prefix}{name}"] = values[:, j]
        out["status"] = [row.status.value for row in self.rows]
        return out

def _plain(value: Any) -> Any:
    return value.item() if isinstance(value, np.generic) else value
