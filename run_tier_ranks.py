"""Compute tier ranks for every in-stock product. Preview by default; --fix writes them back."""
import argparse
import os
import sys

from tierrank.config import CFG, load_tables
from tierrank.distribution import plot_distribution, print_distribution
from tierrank.export_excel import style_and_export
from tierrank.export_json import export_json
from tierrank.history import RankHistoryLog
from tierrank.pipeline import run_pipeline
from tierrank.store import JsonFileStore, load_products


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("products", nargs="?", default="products.json",
                        help="product documents (JSON list)")
    parser.add_argument("--fix", action="store_true", help="write the new ranks back")
    parser.add_argument("--tables", default=None, help="directory holding the lookup tables")
    parser.add_argument("--history", default=CFG["output_history"])
    args = parser.parse_args(argv)

    tables = load_tables(args.tables)    # ConfigError is fatal
    os.makedirs(CFG["artifacts_dir"], exist_ok=True)

    records = load_products(args.products)
    store = JsonFileStore(args.products) if args.fix else None
    history = RankHistoryLog.load(args.history) if args.fix else None

    # each write is committed to the products file as it succeeds
    result = run_pipeline(records, tables, store=store, apply=args.fix, history_log=history)

    print_distribution(result.ranked)
    print("\n  Generating charts...")
    plot_distribution(result.ranked)
    print("\n  Exporting Excel...")
    style_and_export(result)
    print("\n  Exporting JSON...")
    export_json(result)

    print("\n✅  DONE!")
    return 1 if result.failure else 0


if __name__ == "__main__":
    sys.exit(main())
