# tierrank/metrics.py — Per-product metric extraction
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from tierrank.config import (
    CFG, EVIDENCE_DEFAULT, EVIDENCE_LEVEL_SCORES, SAFETY_DEFAULT,
    SAFETY_LEVEL_SCORES, EngineTables,
)
from tierrank.models import IngredientEntry, ProductMetrics, ProductRecord, SkipRecord
from tierrank.utils import _finite, round_half_up, short


def canonical_name(name: str) -> str:
    """Default normalizer: collapse whitespace. Alias resolution is plugged in by the caller."""
    return " ".join(str(name).split())


def evidence_level_to_score(level) -> float:
    return EVIDENCE_LEVEL_SCORES.get(level, EVIDENCE_DEFAULT)


def safety_level_to_score(level) -> float:
    return SAFETY_LEVEL_SCORES.get(level, SAFETY_DEFAULT)


def is_multi_ingredient(ingredients: Sequence[IngredientEntry]) -> bool:
    keys = {ing.key if ing.key is not None else f"#{i}" for i, ing in enumerate(ingredients)}
    return len(keys) >= CFG["multi_ingredient_min"]


def top_ingredients(ingredients: Sequence[IngredientEntry], n: int = None) -> List[IngredientEntry]:
    """Largest per-serving amounts first; ties keep label order."""
    n = n or CFG["multi_ingredient_topn"]
    return sorted(ingredients, key=lambda i: i.amount_per_serving, reverse=True)[:n]


def compute_product_scores(ingredients: Iterable[IngredientEntry],
                           servings_per_day: float) -> Tuple[float, float, int]:
    """
    Amount-weighted evidence / safety scores across the given ingredients.

    Each ingredient's rating (S/A/B/C/D or unset) maps to a fixed 0-100 score
    and is weighted by its share of the total daily amount. Ingredients with
    no positive amount carry no weight; with nothing left the defaults
    (evidence 50, safety 75) apply.

    Returns (evidence, safety, overall) with overall = mean rounded half up.
    """
    spd = servings_per_day if servings_per_day and servings_per_day > 0 else 1
    rows = [
        (ing.amount_per_serving * spd,
         evidence_level_to_score(ing.evidence_level),
         safety_level_to_score(ing.safety_level))
        for ing in ingredients
        if ing.amount_per_serving and ing.amount_per_serving > 0
    ]
    total = sum(r[0] for r in rows)
    if not rows or total <= 0:
        return (EVIDENCE_DEFAULT, SAFETY_DEFAULT,
                round_half_up((EVIDENCE_DEFAULT + SAFETY_DEFAULT) / 2))

    evidence = round(sum(amt / total * ev for amt, ev, _ in rows), 2)
    safety   = round(sum(amt / total * sf for amt, _, sf in rows), 2)
    return evidence, safety, round_half_up((evidence + safety) / 2)


def extract_metrics(record: ProductRecord, tables: EngineTables,
                    normalize: Callable[[str], str] = canonical_name
                    ) -> Tuple[Optional[ProductMetrics], Optional[str]]:
    """ProductRecord → (ProductMetrics, None), or (None, skip reason)."""
    primary = record.primary
    if primary is None:
        return None, "no ingredients"
    if primary.key is None:
        return None, "primary ingredient not resolved"
    if not primary.amount_per_serving > 0:
        return None, f"primary ingredient amount {primary.amount_per_serving}"
    if not record.price > 0:
        return None, f"invalid price {record.price}"
    if not record.servings_per_container > 0:
        return None, f"invalid servingsPerContainer {record.servings_per_container}"
    if not record.servings_per_day > 0:
        return None, f"invalid servingsPerDay {record.servings_per_day}"

    multi = is_multi_ingredient(record.ingredients)
    # trace ingredients must not dilute cost / quality of multi-ingredient products
    considered = top_ingredients(record.ingredients) if multi else list(record.ingredients)

    content_per_serving = sum(max(i.amount_per_serving, 0) for i in considered)
    cost_per_unit = record.price / (content_per_serving * record.servings_per_container)
    cost_per_day  = record.price / (record.servings_per_container / record.servings_per_day)
    daily_amount  = primary.amount_per_serving * record.servings_per_day
    evidence, safety, overall = compute_product_scores(considered, record.servings_per_day)

    if not _finite(cost_per_unit, cost_per_day, daily_amount, evidence, safety):
        return None, "non-finite metric (NaN/Infinity)"

    ingredient = normalize(primary.name or primary.ingredient_id)
    return ProductMetrics(
        product_id=record.product_id,
        product_name=record.name,
        ingredient=ingredient,
        category=tables.category_for(ingredient, multi),
        price=record.price,
        cost_per_unit=cost_per_unit,
        cost_per_day=cost_per_day,
        daily_amount=daily_amount,
        evidence_score=evidence,
        safety_score=safety,
        overall_score=overall,
        reference_count=record.reference_count,
        warning_count=record.warning_count,
        multi_ingredient=multi,
    ), None


def build_metrics(records: Iterable[ProductRecord], tables: EngineTables,
                  normalize: Callable[[str], str] = canonical_name,
                  verbose: bool = True) -> Tuple[List[ProductMetrics], List[SkipRecord]]:
    metrics, skipped = [], []
    for rec in records:
        m, reason = extract_metrics(rec, tables, normalize)
        if m is None:
            skipped.append(SkipRecord(rec.product_id, rec.name, reason))
            if verbose:
                print(f"  ⚠️  Skipped: {short(rec.name)} [{rec.product_id}] ({reason})")
            continue
        metrics.append(m)
    return metrics, skipped


def metrics_frame(metrics: Sequence[ProductMetrics]) -> pd.DataFrame:
    cols = list(ProductMetrics.__dataclass_fields__)
    return pd.DataFrame([m.to_dict() for m in metrics], columns=cols)
