# tierrank/grouping.py — Partition products by canonical primary ingredient
from functools import reduce
from typing import Dict, Iterable, Tuple

from tierrank.models import ProductMetrics

Groups = Dict[str, Tuple[ProductMetrics, ...]]


def add_to_group(groups: Groups, metrics: ProductMetrics) -> Groups:
    """Return a new mapping with `metrics` appended to its ingredient's group."""
    key = metrics.ingredient
    return {**groups, key: groups.get(key, ()) + (metrics,)}


def group_by_ingredient(metrics: Iterable[ProductMetrics]) -> Groups:
    """
    One group per canonical primary ingredient.

    Only the first-listed ingredient counts, so a multi-ingredient product
    lands in exactly one group and is ranked exactly once. Groups keep first
    appearance order; members keep input order.
    """
    return reduce(add_to_group, metrics, {})
