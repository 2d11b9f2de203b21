"""
Concordance-at-the-top (CAT) curves between two gene rankings.

For every rank cutoff i the CAT value is the fraction of genes shared by the
top-i lists of both rankings. Two analyses that agree on the strongest
signals give a curve near 1 at small i; unrelated rankings follow the
chance line i/n.

Reference:
    Irizarry et al. (2005) "Multiple-laboratory comparison of microarray
    platforms" Nature Methods 2:345-350
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping

import numpy as np
import pandas as pd
from numpy.typing import NDArray

__all__ = ['CATCurve', 'cat_curve', 'cat_table']

RankBy = Literal["abs", "signed", "ascending"]


@dataclass(frozen=True)
class CATCurve:
    """Concordance at each rank cutoff 1..max_rank."""

    ranks: NDArray[np.int64]
    concordance: NDArray[np.float64]
    n_features: int

    @property
    def max_rank(self) -> int:
        return int(self.ranks[-1]) if len(self.ranks) else 0

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({'rank': self.ranks, 'concordance': self.concordance})


def _rank_positions(values: NDArray[np.float64], rank_by: RankBy) -> NDArray[np.int64]:
    """0-based rank position of every feature; ties keep feature order."""
    if rank_by == "abs":
        key = -np.abs(values)
    elif rank_by == "signed":
        key = -values
    elif rank_by == "ascending":
        key = values
    else:
        raise ValueError(f"Unknown rank_by '{rank_by}'; use 'abs', 'signed' or 'ascending'")

    key = np.where(np.isnan(key), np.inf, key)
    order = np.argsort(key, kind='stable')
    positions = np.empty(len(values), dtype=np.int64)
    positions[order] = np.arange(len(values))
    return positions


def cat_curve(
    stat_a: pd.Series,
    stat_b: pd.Series,
    max_rank: int | None = None,
    rank_by: RankBy = "abs",
) -> CATCurve:
    """
    Concordance-at-the-top curve of two statistics.

    Statistics are aligned on their shared feature index (in the order of
    `stat_a`). A feature is in both top-i lists exactly when the larger of
    its two rank positions is below i, so the whole curve is a cumulative
    count of those maxima.

    Args:
        stat_a: Statistic per feature (e.g. moderated t)
        stat_b: Statistic per feature for the other analysis
        max_rank: Largest cutoff; all shared features when None
        rank_by: "abs" ranks by |stat| descending, "signed" by stat
            descending, "ascending" by stat ascending (p-values)

    Returns:
        CATCurve

    Raises:
        ValueError: If the statistics share no features
    """
    shared = stat_a.index.intersection(stat_b.index, sort=False)
    if len(shared) == 0:
        raise ValueError("Statistics share no features")

    a = stat_a.loc[shared].to_numpy(dtype=float)
    b = stat_b.loc[shared].to_numpy(dtype=float)
    n = len(shared)

    if max_rank is None:
        max_rank = n
    max_rank = int(min(max_rank, n))
    if max_rank < 1:
        raise ValueError(f"max_rank must be >= 1, got {max_rank}")

    deepest = np.maximum(_rank_positions(a, rank_by), _rank_positions(b, rank_by))
    overlap = np.cumsum(np.bincount(deepest, minlength=n))[:max_rank]
    ranks = np.arange(1, max_rank + 1)

    return CATCurve(ranks=ranks, concordance=overlap / ranks, n_features=n)


def cat_table(
    reference: pd.Series,
    others: Mapping[str, pd.Series],
    max_rank: int | None = None,
    rank_by: RankBy = "abs",
) -> pd.DataFrame:
    """
    Long-format CAT curves of several analyses against one reference.

    Returns:
        DataFrame with columns `adjustment`, `rank`, `concordance`.
    """
    frames = []
    for name, stat in others.items():
        curve = cat_curve(reference, stat, max_rank=max_rank, rank_by=rank_by)
        frame = curve.to_frame()
        frame.insert(0, 'adjustment', name)
        frames.append(frame)

    if not frames:
        return pd.DataFrame(columns=['adjustment', 'rank', 'concordance'])
    return pd.concat(frames, ignore_index=True)
