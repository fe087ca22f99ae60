"""Check stored tier ranks for integrity problems. Exits 1 when critical errors exist."""
import argparse
import os
import sys

from tierrank.config import CFG
from tierrank.history import RankHistoryLog
from tierrank.integrity import batch_check_integrity, generate_integrity_report
from tierrank.pipeline import apply_integrity_fixes
from tierrank.store import JsonFileStore, load_products
from tierrank.utils import short


def print_results(results, names, verbose=False) -> int:
    print("=" * 65)
    print(f"  RANK INTEGRITY CHECK  ({len(results)} products)")
    print("=" * 65)
    n_critical = 0
    for pid, res in results.items():
        if res.is_valid and not (verbose and res.warnings):
            continue
        print(f"\n  {short(names.get(pid))} [{pid}]  confidence {res.confidence:.2f}")
        for e in res.errors:
            print(f"    ❌  [{e.severity}] {e.field}: {e.message}")
        if verbose:
            for w in res.warnings:
                print(f"    ⚠️  {w.field}: {w.message} → {w.recommendation}")
        n_critical += len(res.critical_errors)

    valid = sum(1 for r in results.values() if r.is_valid)
    print(f"\n  Valid: {valid}/{len(results)}")
    print(f"  Errors: {sum(len(r.errors) for r in results.values())}"
          f"  Warnings: {sum(len(r.warnings) for r in results.values())}"
          f"  Critical: {n_critical}")
    return n_critical


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("products", nargs="?", default="products.json")
    parser.add_argument("--report", action="store_true", help="write a markdown report")
    parser.add_argument("--verbose", action="store_true", help="list warnings too")
    parser.add_argument("--fix", action="store_true",
                        help="apply confident suggestions and impossible-combination fixes")
    parser.add_argument("--history", default=CFG["output_history"])
    args = parser.parse_args(argv)

    records = load_products(args.products)
    results = batch_check_integrity(records)
    names = {r.product_id: r.name for r in records}
    n_critical = print_results(results, names, args.verbose)

    if args.report:
        os.makedirs(CFG["artifacts_dir"], exist_ok=True)
        path = os.path.join(CFG["artifacts_dir"], "rank_integrity_report.md")
        with open(path, "w", encoding="utf-8") as f:
            f.write(generate_integrity_report(results, records))
        print(f"✅  Report → {path}")

    if args.fix:
        print("\n  Applying integrity fixes...")
        fixed = apply_integrity_fixes(records, results, JsonFileStore(args.products),
                                      RankHistoryLog.load(args.history))
        print(f"  ✅  Fixed: {len(fixed.applied)}  📝  History entries: {len(fixed.history)}")
        if fixed.failures:
            print(f"  ❌  Failed: {len(fixed.failures)}")
        records = load_products(args.products)
        results = batch_check_integrity(records)
        n_critical = sum(len(r.critical_errors) for r in results.values())

    if n_critical:
        print(f"\n❌  {n_critical} critical errors found")
        return 1
    print("\n✅  No critical errors")
    return 0


if __name__ == "__main__":
    sys.exit(main())
