# tierrank/config.py — Configuration, rank constants, lookup tables
import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

# ════════════════════════════════════════════════════════════
#  CONFIGURATION
# ════════════════════════════════════════════════════════════
CFG = {
    # Percentile ranker — outlier trimming
    "trim_percent":        0.05,   # per tail
    "trim_min_group_size": 10,     # groups smaller than this are never trimmed

    # Hybrid content evaluator
    "max_amount_tolerance": 0.001,  # 0.1% — "is the group maximum"

    # Multi-ingredient rule
    "multi_ingredient_min":  4,    # > 3 distinct ingredients
    "multi_ingredient_topn": 5,

    # Aggregator bonuses / penalties
    "evidence_bonus_refs":   5,
    "evidence_bonus":        10,
    "safety_penalty_warns":  3,
    "safety_penalty":        10,

    # Integrity checker
    "max_age_days":          7,
    "min_cost_per_mg":       0.001,
    "max_cost_per_mg":       10,
    "max_price":             999_999,
    "max_servings_per_day":  10,

    # History / anomaly detection
    "frequent_window_days":  30,
    "frequent_min_changes":  3,
    "frequent_high_changes": 5,
    "manual_confidence_min": 0.8,

    # Run / output
    "report_limit":          30,
    "max_workers_write":     8,
    "write_retries":         2,
    "output_excel":          "artifacts/tier_rank_updates.xlsx",
    "output_json":           "artifacts/tier_rankings.json",
    "output_history":        "artifacts/rank_history.jsonl",
    "artifacts_dir":         "artifacts",
}
assert 0 <= CFG["trim_percent"] < 0.5, "Trim percent must be in [0, 0.5)"

# ── Rank scale ──────────────────────────────────────────────
RANKS      = ("S+", "S", "A", "B", "C", "D")
AXIS_RANKS = ("S", "A", "B", "C", "D")
RANK_ORDINAL = {"D": 1, "C": 2, "B": 3, "A": 4, "S": 5, "S+": 6}
RANK_VALUES  = {"S": 100, "A": 85, "B": 75, "C": 65, "D": 50}   # aggregation scale
RANK_THRESHOLDS = ((90, "S"), (80, "A"), (70, "B"), (60, "C"))

FULFILLMENT_THRESHOLDS = ((5.0, "S"), (2.0, "A"), (1.0, "B"), (0.5, "C"))

# ingredient rating → 0-100 score
EVIDENCE_LEVEL_SCORES = {"S": 95, "A": 85, "B": 75, "C": 65, "D": 55}
SAFETY_LEVEL_SCORES   = {"S": 100, "A": 90, "B": 80, "C": 70, "D": 60}
EVIDENCE_DEFAULT = 50
SAFETY_DEFAULT   = 75

# stored score ranges per rank (integrity checker)
EXPECTED_SCORE_RANGES = {
    "S+": (95, 100),
    "S":  (90, 100),
    "A":  (80, 89),
    "B":  (70, 79),
    "C":  (60, 69),
    "D":  (0, 59),
}

AXIS_FIELDS = (
    "priceRank", "costEffectivenessRank", "contentRank",
    "evidenceRank", "safetyRank",
)
RATING_FIELDS = AXIS_FIELDS + ("overallRank",)

WEIGHT_KEYS = (
    "priceWeight", "costEffectivenessWeight", "contentWeight",
    "evidenceWeight", "safetyWeight",
)
# weight key → TierRatings field
WEIGHT_MAP = dict(zip(WEIGHT_KEYS, AXIS_FIELDS))

DEFAULT_CATEGORY = "その他"
MULTI_CATEGORY   = "マルチビタミン"

SOURCE_CONFIDENCE = {
    "auto-calculation": 0.95,
    "sync":             0.90,
    "fix":              0.85,
    "manual":           0.70,
}
HISTORY_SOURCES = tuple(SOURCE_CONFIDENCE)

SEVERITY_WEIGHTS = {"critical": 40, "high": 25, "medium": 15, "low": 5}

RISK_RECOMMENDATIONS = (
    (80, "Urgent: full re-verification of the data and manual review required"),
    (60, "Warning: recalculate ranks and rerun the integrity check"),
    (40, "Caution: keep monitoring this product"),
    (20, "Minor issues: address in the next routine maintenance"),
    (0,  "Normal: no action needed"),
)

FRIENDLY_NAMES = {
    "productId":             "Product ID",
    "productName":           "Product",
    "ingredient":            "Ingredient",
    "category":              "Category",
    "price":                 "Price (¥)",
    "costPerUnit":           "Cost / mg (¥)",
    "dailyAmount":           "Daily Amount (mg)",
    "evidenceScore":         "Evidence Score",
    "safetyScore":           "Safety Score",
    "priceRank":             "Price",
    "costEffectivenessRank": "Cost-Eff.",
    "contentRank":           "Content",
    "evidenceRank":          "Evidence",
    "safetyRank":            "Safety",
    "overallRank":           "Overall",
    "oldRatings":            "Current",
}

DATA_DIR = Path(__file__).resolve().parent / "data"


# ════════════════════════════════════════════════════════════
#  LOOKUP TABLES
# ════════════════════════════════════════════════════════════

class ConfigError(Exception):
    """Lookup tables are missing or malformed; ranking cannot run."""


@dataclass(frozen=True)
class EngineTables:
    """Immutable lookup tables injected into every ranking stage."""
    category_weights: Mapping[str, Mapping[str, float]]
    ingredient_categories: Mapping[str, str]
    recommended_doses: Mapping[str, float]

    def weights_for(self, category: Optional[str]) -> Mapping[str, float]:
        return self.category_weights.get(category or DEFAULT_CATEGORY,
                                         self.category_weights[DEFAULT_CATEGORY])

    def category_for(self, ingredient: str, multi_ingredient: bool = False) -> str:
        cat = self.ingredient_categories.get(ingredient)
        if cat:
            return cat
        if multi_ingredient and MULTI_CATEGORY in self.category_weights:
            return MULTI_CATEGORY
        return DEFAULT_CATEGORY


def _read_json(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object")
    return data


def _validate_weights(raw: dict) -> dict:
    weights = {}
    for cat, vec in raw.items():
        if cat.startswith("_"):
            continue
        if not isinstance(vec, dict):
            raise ConfigError(f"weights for '{cat}' must be an object")
        missing = [k for k in WEIGHT_KEYS if k not in vec]
        if missing:
            raise ConfigError(f"weights for '{cat}' missing {missing}")
        try:
            clean = {k: float(vec[k]) for k in WEIGHT_KEYS}
        except (TypeError, ValueError) as e:
            raise ConfigError(f"weights for '{cat}' must be numbers") from e
        if any(w < 0 for w in clean.values()):
            raise ConfigError(f"negative weight in '{cat}'")
        if abs(sum(clean.values()) - 1.0) > 1e-6:
            raise ConfigError(f"weights for '{cat}' sum to {sum(clean.values()):.4f}, expected 1.0")
        weights[cat] = MappingProxyType(clean)
    if DEFAULT_CATEGORY not in weights:
        raise ConfigError(f"weight matrix has no default category '{DEFAULT_CATEGORY}'")
    return weights


def build_tables(category_weights: dict,
                 ingredient_categories: Optional[dict] = None,
                 recommended_doses: Optional[dict] = None) -> EngineTables:
    """Validate raw dicts into EngineTables (fixture tables in tests go through here too)."""
    weights = _validate_weights(category_weights)
    categories = {
        k: v for k, v in (ingredient_categories or {}).items()
        if not k.startswith("_") and isinstance(v, str)
    }
    # comment keys and non-numeric entries are ignored
    doses = {
        k: float(v) for k, v in (recommended_doses or {}).items()
        if not k.startswith("_") and isinstance(v, (int, float))
        and not isinstance(v, bool) and v > 0
    }
    return EngineTables(
        category_weights=MappingProxyType(weights),
        ingredient_categories=MappingProxyType(categories),
        recommended_doses=MappingProxyType(doses),
    )


def load_tables(directory=None) -> EngineTables:
    """Load the three JSON tables; any failure is fatal (ConfigError)."""
    base = Path(directory) if directory else DATA_DIR
    return build_tables(
        _read_json(base / "category_weights.json"),
        _read_json(base / "ingredient_categories.json"),
        _read_json(base / "recommended_daily_intake.json"),
    )
