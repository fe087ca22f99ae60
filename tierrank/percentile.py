# tierrank/percentile.py — Outlier-trimmed, tie-aware percentile ranking
from typing import Sequence

import numpy as np
import pandas as pd
from scipy.stats import percentileofscore

from tierrank.config import CFG
from tierrank.ranks import score_to_rank


def trimmed_reference(values: Sequence[float], trim_percent: float = None,
                      min_group_size: int = None) -> np.ndarray:
    """
    Sorted reference distribution with both tails cut.

    Groups with fewer than `min_group_size` values are returned whole. Larger
    groups lose max(1, floor(n * trim_percent)) values from each end.
    """
    trim_percent   = CFG["trim_percent"] if trim_percent is None else trim_percent
    min_group_size = CFG["trim_min_group_size"] if min_group_size is None else min_group_size

    ref = np.sort(np.asarray([v for v in values if not pd.isna(v)], dtype=float))
    n = len(ref)
    if n < min_group_size or trim_percent <= 0:
        return ref
    k = max(1, int(np.floor(n * trim_percent)))
    if n - 2 * k < 1:
        return ref
    return ref[k:n - k]


def percentile_rank(value: float, values: Sequence[float],
                    lower_is_better: bool = True,
                    trim_percent: float = None, min_group_size: int = None) -> float:
    """
    0-100 position of `value` within its group.

    rank = (#below) + (#equal + 1) / 2 against the trimmed reference;
    percentile = (rank - 1) / (N - 1) * 100, inverted when lower is better.
    A reference of one value gives 50. Values outside the trimmed reference
    saturate at 0 / 100.
    """
    ref = trimmed_reference(values, trim_percent, min_group_size)
    n = len(ref)
    if n == 0 or pd.isna(value):
        return np.nan
    if n == 1:
        return 50.0

    # kind="mean" is (#below + #below-or-equal) / 2N * 100; recover the tie-averaged rank from it
    pos  = percentileofscore(ref, value, kind="mean")
    rank = pos / 100 * n + 0.5
    pct  = (rank - 1) / (n - 1) * 100
    pct  = float(np.clip(pct, 0, 100))
    if lower_is_better:
        pct = 100 - pct
    return round(pct, 2)


def percentile_to_rank(percentile: float) -> str:
    """≥90 S, ≥80 A, ≥70 B, ≥60 C, else D."""
    if pd.isna(percentile):
        return "D"
    return score_to_rank(percentile)


def group_percentile(df: pd.DataFrame, col: str, group_col: str = "ingredient",
                     lower_is_better: bool = True,
                     trim_percent: float = None, min_group_size: int = None) -> pd.Series:
    """Column-wise percentile_rank within each group; every row is ranked, trimmed or not."""
    result = pd.Series(np.nan, index=df.index, dtype=float)
    if col not in df.columns or df.empty:
        return result
    for _, grp in df.groupby(group_col, sort=False):
        values = grp[col].tolist()
        result.loc[grp.index] = grp[col].apply(
            lambda x: percentile_rank(x, values, lower_is_better, trim_percent, min_group_size)
        )
    return result
