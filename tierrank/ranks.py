# tierrank/ranks.py — Tier rank scale helpers (D < C < B < A < S < S+)
from tierrank.config import (
    AXIS_RANKS, FULFILLMENT_THRESHOLDS, RANK_ORDINAL, RANK_THRESHOLDS, RANKS,
)


def is_valid_rank(rank) -> bool:
    return isinstance(rank, str) and rank in RANKS


def rank_to_number(rank) -> int:
    """Ordinal value of a rank; unknown / missing ranks are 0."""
    return RANK_ORDINAL.get(rank, 0) if isinstance(rank, str) else 0


def number_to_rank(num: float) -> str:
    if num >= 6: return "S+"
    if num >= 5: return "S"
    if num >= 4: return "A"
    if num >= 3: return "B"
    if num >= 2: return "C"
    return "D"


def score_to_rank(score: float) -> str:
    """0-100 score (or percentile) → axis rank: ≥90 S, ≥80 A, ≥70 B, ≥60 C, else D."""
    for threshold, rank in RANK_THRESHOLDS:
        if score >= threshold:
            return rank
    return "D"


def fulfillment_to_rank(ratio: float) -> str:
    for threshold, rank in FULFILLMENT_THRESHOLDS:
        if ratio >= threshold:
            return rank
    return "D"


def upgrade_rank(rank: str) -> str:
    """One step up the axis scale; S stays S (axis ranks never reach S+)."""
    order = AXIS_RANKS[::-1]   # D, C, B, A, S
    idx = order.index(rank)
    return order[min(idx + 1, len(order) - 1)]
