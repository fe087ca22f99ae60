# tierrank/export_json.py — JSON export of computed rankings
import json
import os

from tierrank.composite import overall_tier_score
from tierrank.config import CFG
from tierrank.utils import iso, utc_now


def export_json(result, json_path: str = None) -> str:
    """Rankings, update list and skips as one JSON document."""
    def safe(v, nd=4):
        if v is None:
            return None
        f = float(v)
        return None if f != f else round(f, nd)   # NaN → None

    records = []
    for r in result.ranked:
        m = r.metrics
        records.append({
            "productId":      m.product_id,
            "productName":    m.product_name,
            "ingredient":     m.ingredient,
            "category":       m.category,
            "multiIngredient": m.multi_ingredient,
            "price":          safe(m.price, 2),
            "costPerUnit":    safe(m.cost_per_unit),
            "costPerDay":     safe(m.cost_per_day, 2),
            "dailyAmount":    safe(m.daily_amount, 2),
            "tierRatings":    r.tier_ratings.to_dict(),
            "scores":         r.scores.to_dict(),
            "weightedScore":  safe(r.weighted_score, 2),
            "tierScore":      overall_tier_score(r.tier_ratings),
            "pricePercentile": safe(r.details.get("price_percentile"), 2),
            "costPercentile":  safe(r.details.get("cost_percentile"), 2),
            "content":        r.details.get("content"),
        })

    payload = {
        "generated": iso(utc_now()),
        "count":     len(records),
        "applied":   result.applied,
        "updates":   [u.product_id for u in result.updates],
        "skipped":   [{"productId": s.product_id, "productName": s.product_name,
                       "reason": s.reason} for s in result.skipped],
        "data":      records,
    }
    json_path = json_path or CFG["output_json"]
    os.makedirs(os.path.dirname(json_path) or ".", exist_ok=True)
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, separators=(",", ":"))
    print(f"✅  JSON → {json_path}  ({len(records)} products, {len(result.updates)} updates)")
    return json_path
