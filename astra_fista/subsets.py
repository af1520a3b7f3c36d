"""Ordered-subsets planning.

The projection angles are binned into ``subsets`` equal-width angular bins and
the views are re-ordered round-robin over the bins, so that each consecutive
block of the re-ordered list spans the whole angular range.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List

import numpy as np

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubsetPlan:
    """Per-subset view counts and the global view order.

    ``order[sum(bins[:k]):sum(bins[:k+1])]`` are the view indices processed by
    the ``k``-th sub-iteration of every outer iteration.
    """
    bins: np.ndarray  # (S,) int
    order: np.ndarray  # (A,) int, permutation of 0..A-1

    @property
    def n_subsets(self) -> int:
        return int(self.bins.size)

    def chunks(self) -> Iterator[np.ndarray]:
        start = 0
        for count in self.bins:
            yield self.order[start:start + int(count)]
            start += int(count)


def bin_angles(angles: np.ndarray, subsets: int) -> np.ndarray:
    """Count the angles falling in ``subsets`` equal-width bins over ``[min, max]``.

    The last bin is closed at ``+inf`` so that the maximum angle is included.
    """
    angles = np.asarray(angles, dtype=np.float64).ravel()
    edges = np.linspace(angles.min(), angles.max(), subsets + 1)[:-1]
    which = np.searchsorted(edges, angles, side='right') - 1
    return np.bincount(which, minlength=subsets).astype(np.int64)


def plan_subsets(angles: np.ndarray, subsets: int) -> SubsetPlan:
    """Build the ordered-subsets plan for ``angles``.

    Parameters
    ----------
    angles : (A,) array
        Projection angles in acquisition order, grouped by angular bin
        (monotonic acquisitions satisfy this)
    subsets : int
        Number of subsets ``S``, ``1 <= S <= A``

    Returns
    -------
    SubsetPlan
        Bins left empty by irregular angle spacing are dropped with a warning,
        so ``plan.n_subsets`` may be smaller than ``subsets``.
    """
    angles = np.asarray(angles, dtype=np.float64).ravel()
    if int(subsets) != subsets or subsets < 1:
        raise ConfigurationError(f"number of subsets must be a positive integer, got {subsets}")
    subsets = int(subsets)
    if angles.size < subsets:
        raise ConfigurationError(
            f"cannot split {angles.size} projections into {subsets} subsets"
        )

    bins = bin_angles(angles, subsets)
    if np.any(bins == 0):
        logger.warning(
            "Angular binning into %d subsets leaves empty subsets %s; dropping them",
            subsets, bins.tolist(),
        )
        bins = bins[bins > 0]
        subsets = int(bins.size)
    offsets = np.concatenate(([0], np.cumsum(bins)[:-1]))

    order: List[int] = []
    for ii in range(int(bins.max())):
        for jj in range(subsets):
            if bins[jj] > ii:
                order.append(ii + int(offsets[jj]))

    return SubsetPlan(bins=bins, order=np.asarray(order, dtype=np.int64))
