# tierrank/summary.py — Console run report
import pandas as pd

from tierrank.config import AXIS_FIELDS, CFG, FRIENDLY_NAMES
from tierrank.utils import short


def _fmt_ratings(tr) -> str:
    if tr is None:
        return "(none)"
    return "/".join(getattr(tr, f) for f in AXIS_FIELDS) + f" → {tr.overallRank}"


def updates_frame(updates) -> pd.DataFrame:
    rows = []
    for u in updates:
        tr = u.ranked.tier_ratings
        rows.append({
            "productName": short(u.record.name, 40),
            "ingredient":  u.ranked.metrics.ingredient,
            "oldRatings":  _fmt_ratings(u.old_ratings),
            **{f: getattr(tr, f) for f in AXIS_FIELDS},
            "overallRank": tr.overallRank,
        })
    return pd.DataFrame(rows)


def print_run_report(result, limit: int = None):
    limit = limit or CFG["report_limit"]

    print("\n" + "=" * 65)
    print("  RANK UPDATES")
    print("=" * 65)
    print(f"  Ranked:  {len(result.ranked)}")
    print(f"  Skipped: {len(result.skipped)}")
    print(f"  Updates needed: {len(result.updates)}")

    if result.updates:
        df = updates_frame(result.updates[:limit]).rename(columns=FRIENDLY_NAMES)
        print(df.to_string(index=False))
        if len(result.updates) > limit:
            print(f"  ... and {len(result.updates) - limit} more")

    if result.skipped:
        print("\n  SKIPPED PRODUCTS")
        print("-" * 45)
        for s in result.skipped:
            print(f"  ⚠️  {short(s.product_name)} [{s.product_id}]: {s.reason}")

    if result.applied:
        print("\n  WRITE-BACK")
        print("-" * 45)
        print(f"  ✅  Success: {result.success}")
        if result.failure:
            print(f"  ❌  Failed:  {result.failure}")
        if result.history:
            print(f"  📝  History entries: {len(result.history)}")
    elif result.updates:
        print("\n  Preview only. Run with --fix to apply.")
