# src/zonalspatial/zonal/aggregate.py

"""
This module defines aggregators: reductions of (value, weight) pairs to one summary value.

An aggregator only ever sees the valid cells of one geometry and one layer.
Empty input, all-missing input and, in strict mode, any missing input
short-circuit to NaN before the reduction runs.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Optional, Union

import numpy as np

log = logging.getLogger(__name__)

__all__ = [
    "MissingPolicy",
    "Aggregator",
    "AGGREGATORS",
    "get_aggregator",
    "as_aggregator"
]

class MissingPolicy(Enum):
    """
    How an aggregator treats no-data cells among the contributing cells.

    Options:
        EXCLUDE: Drop no-data cells and reduce the rest (default).
        STRICT: Any no-data cell makes the summary missing.
    """
    EXCLUDE = "exclude"
    STRICT = "strict"

@dataclass(frozen=True)
class Aggregator:
    """
    A named reduction with a missing-value policy.

    Args:
        name (str): Label used in logs and output columns.
        func (Callable): func(values, weights) -> float over valid cells with positive weight.
            Must be picklable (module-level) to be used with process-based parallelism.
        missing (MissingPolicy): EXCLUDE or STRICT.
    """
    name: str
    func: Callable[[np.ndarray, np.ndarray], float]
    missing: MissingPolicy = MissingPolicy.EXCLUDE

    def __call__(
        self,
        values: np.ndarray,
        weights: Optional[np.ndarray] = None,
        missing_mask: Optional[np.ndarray] = None
    ) -> float:
        """
        Reduce one geometry's cells for one layer.

        Args:
            values: Cell values.
            weights: Cell weights (defaults to 1 for every cell).
            missing_mask: True where the cell is no-data. NaN values are always missing.

        Returns:
            float: The summary value, or NaN when missing.
        """
        values = np.asarray(values, dtype=np.float64).ravel()
        if values.size == 0:
            return np.nan

        if weights is None:
            weights = np.ones_like(values)
        else:
            weights = np.asarray(weights, dtype=np.float64).ravel()
            if weights.shape != values.shape:
                raise ValueError(f"weights shape {weights.shape} does not match values shape {values.shape}")

        missing = np.isnan(values)
        if missing_mask is not None:
            missing |= np.asarray(missing_mask, dtype=bool).ravel()

        if missing.all():
            return np.nan
        if missing.any():
            if self.missing == MissingPolicy.STRICT:
                return np.nan
            values, weights = values[~missing], weights[~missing]

        keep = weights > 0
        if not keep.any():
            return np.nan
        return float(self.func(values[keep], weights[keep]))

    def strict(self) -> 'Aggregator':
        return replace(self, missing=MissingPolicy.STRICT)

    def excluding(self) -> 'Aggregator':
        return replace(self, missing=MissingPolicy.EXCLUDE)

    @classmethod
    def unweighted(
        cls,
        func: Callable[[np.ndarray], float],
        name: Optional[str] = None,
        missing: MissingPolicy = MissingPolicy.EXCLUDE
    ) -> 'Aggregator':
        """Wraps a one-argument reducer (e.g. numpy.ptp); weights only select the cells."""
        return cls(name or getattr(func, "__name__", "custom"), _Unweighted(func), missing)

class _Unweighted:
    def __init__(self, func: Callable[[np.ndarray], float]):
        self.func = func

    def __call__(self, values: np.ndarray, weights: np.ndarray) -> float:
        return self.func(values)

def _mean(values: np.ndarray, weights: np.ndarray) -> float:
    return np.average(values, weights=weights)

def _sum(values: np.ndarray, weights: np.ndarray) -> float:
    return np.sum(values * weights)

def _min(values: np.ndarray, weights: np.ndarray) -> float:
    return np.min(values)

def _max(values: np.ndarray, weights: np.ndarray) -> float:
    return np.max(values)

def _median(values: np.ndarray, weights: np.ndarray) -> float:
    # lower value wins on an exact half split
    order = np.argsort(values, kind="stable")
    cumulative = np.cumsum(weights[order])
    idx = np.searchsorted(cumulative, 0.5 * cumulative[-1], side="left")
    return values[order][min(idx, len(values) - 1)]

def _std(values: np.ndarray, weights: np.ndarray) -> float:
    mean = np.average(values, weights=weights)
    return np.sqrt(np.average((values - mean) ** 2, weights=weights))

def _count(values: np.ndarray, weights: np.ndarray) -> float:
    return np.sum(weights)

def _majority(values: np.ndarray, weights: np.ndarray) -> float:
    uniques, inverse = np.unique(values, return_inverse=True)
    totals = np.bincount(inverse.ravel(), weights=weights)
    return uniques[np.argmax(totals)]

AGGREGATORS: Dict[str, Aggregator] = {
    "mean": Aggregator("mean", _mean),
    "sum": Aggregator("sum", _sum),
    "min": Aggregator("min", _min),
    "max": Aggregator("max", _max),
    "median": Aggregator("median", _median),
    "std": Aggregator("std", _std),
    "count": Aggregator("count", _count),
    "majority": Aggregator("majority", _majority),
}

def get_aggregator(name: str, strict: bool = False) -> Aggregator:
    key = name.lower()
    if key not in AGGREGATORS:
        raise ValueError(f"Unknown aggregator '{name}'. Must be one of: {sorted(AGGREGATORS)}")
    agg = AGGREGATORS[key]
    return agg.strict() if strict else agg

def as_aggregator(
    obj: Union[str, Aggregator, Callable[[np.ndarray, np.ndarray], float]],
    strict: Optional[bool] = None
) -> Aggregator:
    """
    Resolve a name, an Aggregator, or a two-argument callable func(values, weights).

    Args:
        strict: If given, overrides the missing policy of the resolved aggregator.
    """
    if isinstance(obj, Aggregator):
        agg = obj
    elif isinstance(obj, str):
        agg = get_aggregator(obj)
    elif callable(obj):
        agg = Aggregator(getattr(obj, "__name__", "custom"), obj)
    else:
        raise TypeError(f"Expected aggregator name, Aggregator or callable, got {type(obj).__name__}")

    if strict is None:
        return agg
    return agg.strict() if strict else agg.excluding()
