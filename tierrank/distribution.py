# tierrank/distribution.py — Rank distribution analysis + charts
import os

import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns

from tierrank.composite import overall_tier_score
from tierrank.config import CFG, FRIENDLY_NAMES, RANKS, RATING_FIELDS

RANK_COLORS = {
    "S+": "#8E24AA", "S": "#1E88E5", "A": "#43A047",
    "B": "#FDD835", "C": "#FB8C00", "D": "#E53935",
}


def ratings_frame(ranked) -> pd.DataFrame:
    rows = []
    for r in ranked:
        rows.append({
            "productId":   r.product_id,
            "productName": r.metrics.product_name,
            "ingredient":  r.metrics.ingredient,
            "category":    r.metrics.category,
            **r.tier_ratings.to_dict(),
            "tierScore":   overall_tier_score(r.tier_ratings),
        })
    return pd.DataFrame(rows)


def rank_distribution(ranked) -> pd.DataFrame:
    """Counts per rank (rows S+..D) for each rating field (columns)."""
    df = ratings_frame(ranked)
    counts = {
        f: df[f].value_counts().reindex(RANKS, fill_value=0) if f in df.columns
        else pd.Series(0, index=list(RANKS))
        for f in RATING_FIELDS
    }
    return pd.DataFrame(counts).astype(int)


def print_distribution(ranked):
    dist = rank_distribution(ranked)
    print("\n  RANK DISTRIBUTION")
    print("-" * 65)
    print(dist.rename(columns=FRIENDLY_NAMES).to_string())


def plot_distribution(ranked, out_dir: str = None):
    out_dir = out_dir or CFG["artifacts_dir"]
    os.makedirs(out_dir, exist_ok=True)
    sns.set_style("whitegrid")
    dist = rank_distribution(ranked)

    # Overall rank counts
    fig, ax = plt.subplots(figsize=(8, 5))
    overall = dist["overallRank"]
    x = range(len(overall))
    ax.bar(x, overall.values,
           color=[RANK_COLORS[r] for r in overall.index], edgecolor="white")
    for xi, n in zip(x, overall.values):
        ax.text(xi, n, str(n), ha="center", va="bottom", fontsize=9)
    ax.set_xticks(list(x))
    ax.set_xticklabels(overall.index)
    ax.set_xlabel("Overall Rank")
    ax.set_ylabel("# Products")
    ax.set_title("Overall Rank Distribution", fontsize=13, fontweight="bold")
    plt.tight_layout()
    plt.savefig(os.path.join(out_dir, "overall_rank_dist.png"), dpi=150)
    plt.close()

    # Per-axis heatmap
    fig, ax = plt.subplots(figsize=(10, 5))
    sns.heatmap(dist.rename(columns=FRIENDLY_NAMES), annot=True, fmt="d",
                cmap="YlGnBu", cbar=False, ax=ax)
    ax.set_title("Rank Counts by Axis", fontsize=13, fontweight="bold")
    plt.tight_layout()
    plt.savefig(os.path.join(out_dir, "axis_rank_heatmap.png"), dpi=150)
    plt.close()
    print(f"✅  Charts → {out_dir}/*.png")
