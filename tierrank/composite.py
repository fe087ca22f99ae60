# tierrank/composite.py — Axis aggregation into overallRank
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from tierrank.config import (
    AXIS_FIELDS, CFG, RANK_VALUES, WEIGHT_MAP, EngineTables,
)
from tierrank.content import content_rank
from tierrank.metrics import metrics_frame
from tierrank.models import ProductMetrics, RankedProduct, Scores, TierRatings
from tierrank.percentile import group_percentile, percentile_to_rank
from tierrank.ranks import rank_to_number, score_to_rank
from tierrank.utils import round_half_up

AxisRanks = Union[TierRatings, Mapping[str, str]]


def _axis(ratings: AxisRanks) -> Dict[str, str]:
    if isinstance(ratings, TierRatings):
        return dict(zip(AXIS_FIELDS, ratings.axis_ranks()))
    return {f: ratings[f] for f in AXIS_FIELDS}


def adjusted_scores(metrics: ProductMetrics) -> Tuple[float, float]:
    """Evidence +10 (cap 100) for ≥5 references; safety −10 (floor 0) for ≥3 warnings."""
    evidence = metrics.evidence_score
    safety   = metrics.safety_score
    if metrics.reference_count >= CFG["evidence_bonus_refs"]:
        evidence = min(100, evidence + CFG["evidence_bonus"])
    if metrics.warning_count >= CFG["safety_penalty_warns"]:
        safety = max(0, safety - CFG["safety_penalty"])
    return round(evidence, 2), round(safety, 2)


def is_hard_fail(ratings: AxisRanks) -> bool:
    axis = _axis(ratings)
    return axis["safetyRank"] == "D" or axis["evidenceRank"] == "D"


def is_five_crown(ratings: AxisRanks) -> bool:
    return all(r == "S" for r in _axis(ratings).values())


def weighted_score(ratings: AxisRanks, weights: Mapping[str, float]) -> float:
    axis = _axis(ratings)
    return round(sum(w * RANK_VALUES[axis[WEIGHT_MAP[k]]] for k, w in weights.items()), 2)


def calculate_overall_rank(ratings: AxisRanks, category: Optional[str],
                           tables: EngineTables) -> Tuple[str, Optional[float]]:
    """
    Five axis ranks → (overallRank, weighted score).

    Hard-fail (safety or evidence D) is checked first and short-circuits to D,
    then five-crown (all S) gives S+. Neither rule produces a weighted score.
    """
    if is_hard_fail(ratings):
        return "D", None
    if is_five_crown(ratings):
        return "S+", None
    score = weighted_score(ratings, tables.weights_for(category))
    return score_to_rank(score), score


def overall_tier_score(ratings: AxisRanks) -> int:
    """Sum of axis ordinals (5..25), used for sorting reports."""
    return sum(rank_to_number(r) for r in _axis(ratings).values())


# ════════════════════════════════════════════════════════════
#  GROUP RANKING
# ════════════════════════════════════════════════════════════

def rank_group(group: Sequence[ProductMetrics], tables: EngineTables,
               **trim) -> List[RankedProduct]:
    """Rank every member of one ingredient group; members are independent of other groups."""
    if not group:
        return []
    df = metrics_frame(group)
    df["price_pct"] = group_percentile(df, "price", lower_is_better=True, **trim)
    df["cost_pct"]  = group_percentile(df, "cost_per_unit", lower_is_better=True, **trim)

    ranked = []
    for m, price_pct, cost_pct in zip(group, df["price_pct"], df["cost_pct"]):
        content, content_details = content_rank(m, group, tables, **trim)
        evidence, safety = adjusted_scores(m)
        axis = {
            "priceRank":             percentile_to_rank(price_pct),
            "costEffectivenessRank": percentile_to_rank(cost_pct),
            "contentRank":           content,
            "evidenceRank":          score_to_rank(evidence),
            "safetyRank":            score_to_rank(safety),
        }
        overall, wscore = calculate_overall_rank(axis, m.category, tables)
        ranked.append(RankedProduct(
            metrics=m,
            tier_ratings=TierRatings(overallRank=overall, **axis),
            scores=Scores(evidence=evidence, safety=safety,
                          overall=round_half_up((evidence + safety) / 2)),
            weighted_score=wscore,
            details={
                "price_percentile": price_pct,
                "cost_percentile":  cost_pct,
                "content":          content_details,
                "group_size":       len(group),
            },
        ))
    return ranked
