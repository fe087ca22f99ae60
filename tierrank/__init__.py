# tierrank/__init__.py — Supplement Tier Ranking & Integrity Engine
#
# Converts per-product price / content / evidence / safety data into
# comparable tier ranks (D < C < B < A < S < S+) and audits stored ranks.
# Import modules directly: `from tierrank.pipeline import run_pipeline`
#
# Module layout:
#   config.py        — CFG, rank constants, lookup tables (EngineTables, load_tables)
#   utils.py         — _safe(), _finite(), timestamp helpers
#   ranks.py         — rank scale: ordinal, score → rank, upgrade
#   models.py        — ProductRecord, ProductMetrics, TierRatings, Scores
#   metrics.py       — per-product metric extraction (multi-ingredient rule)
#   grouping.py      — group by canonical primary ingredient
#   percentile.py    — trimmed, tie-aware percentile ranking
#   content.py       — dose fulfillment + best-in-group bonus
#   composite.py     — hard-fail / five-crown / weighted overall rank
#   integrity.py     — stored rank checks, markdown report, fix proposals
#   history.py       — rank change log, confidence, anomaly detection, CSV
#   store.py         — product loading + RankStore write-back
#   pipeline.py      — preview / apply orchestration
#   summary.py       — console report
#   distribution.py  — rank counts + charts
#   export_excel.py  — Excel export + formatting
#   export_json.py   — JSON export

__version__ = "1.0"
