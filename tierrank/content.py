# tierrank/content.py — Hybrid content evaluation (dose fulfillment + best-in-group bonus)
from typing import Optional, Sequence, Tuple

from tierrank.config import CFG, EngineTables
from tierrank.models import ProductMetrics
from tierrank.percentile import percentile_rank, percentile_to_rank
from tierrank.ranks import fulfillment_to_rank, upgrade_rank


def recommended_dose(ingredient: str, tables: EngineTables) -> Optional[float]:
    """Exact name first, then the longest table key contained in the name (or containing it)."""
    if not ingredient:
        return None
    doses = tables.recommended_doses
    if ingredient in doses:
        return doses[ingredient]
    matches = [key for key in doses if key in ingredient or ingredient in key]
    if not matches:
        return None
    return doses[max(matches, key=len)]


def is_group_max(amount: float, amounts: Sequence[float]) -> bool:
    top = max(amounts)
    if top <= 0:
        return False
    return abs(amount - top) / top < CFG["max_amount_tolerance"]


def content_rank(metrics: ProductMetrics, group: Sequence[ProductMetrics],
                 tables: EngineTables, **trim) -> Tuple[str, dict]:
    """
    Content axis rank for one product of `group`.

    Known dose: fulfillment ratio thresholds (≥5 S, ≥2 A, ≥1 B, ≥0.5 C),
    then one step up when the product carries the group's largest daily
    amount. Unknown dose: plain percentile of daily amount, higher is better.

    Returns (rank, details) where details records how the rank was reached.
    """
    amounts = [m.daily_amount for m in group]
    dose = recommended_dose(metrics.ingredient, tables)

    if dose is None:
        pct = percentile_rank(metrics.daily_amount, amounts, lower_is_better=False, **trim)
        return percentile_to_rank(pct), {"method": "relative", "percentile": pct}

    ratio = metrics.daily_amount / dose
    base = fulfillment_to_rank(ratio)
    rank = base
    bonus = False
    # S already tops the axis scale; upgrade_rank leaves it unchanged
    if len(group) > 1 and base != "S" and is_group_max(metrics.daily_amount, amounts):
        rank = upgrade_rank(base)
        bonus = True
    return rank, {
        "method": "absolute",
        "recommended_dose": dose,
        "fulfillment_ratio": round(ratio, 3),
        "base_rank": base,
        "group_max_bonus": bonus,
    }
