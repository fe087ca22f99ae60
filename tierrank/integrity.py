# tierrank/integrity.py — Stored rank integrity checks, batch report, fix proposals
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Union

import numpy as np

from tierrank.config import (
    AXIS_FIELDS, CFG, EXPECTED_SCORE_RANGES, RATING_FIELDS,
)
from tierrank.models import ProductRecord
from tierrank.ranks import is_valid_rank, score_to_rank
from tierrank.utils import _safe, iso, parse_timestamp, utc_now

# error types
RANK_MISMATCH          = "RANK_MISMATCH"
IMPOSSIBLE_COMBINATION = "IMPOSSIBLE_COMBINATION"
MISSING_DATA           = "MISSING_DATA"
INVALID_VALUE          = "INVALID_VALUE"
# warning types
OUTDATED   = "OUTDATED"
SUSPICIOUS = "SUSPICIOUS"
INCOMPLETE = "INCOMPLETE"

# running-confidence multipliers
_CONF = {
    "missing_ratings": 0.5,
    "missing_field":   0.9,
    "invalid_value":   0.7,
    "score_mismatch":  0.95,
    "impossible":      0.5,
    "price_cost":      0.9,
    "outdated":        0.95,
    "cost_band":       0.8,
}


@dataclass(frozen=True)
class IntegrityError:
    type: str
    field: str
    message: str
    current_value: object = None
    expected_value: object = None
    severity: str = "high"


@dataclass(frozen=True)
class IntegrityWarning:
    type: str
    field: str
    message: str
    recommendation: str


@dataclass(frozen=True)
class IntegritySuggestion:
    field: str
    current_value: object
    suggested_value: object
    reason: str
    confidence: float


@dataclass(frozen=True)
class IntegrityCheckResult:
    is_valid: bool
    errors: tuple = ()
    warnings: tuple = ()
    suggestions: tuple = ()
    confidence: float = 1.0

    @property
    def critical_errors(self) -> List[IntegrityError]:
        return [e for e in self.errors if e.severity == "critical"]

    def to_dict(self) -> dict:
        return asdict(self)


class _Findings:
    """Accumulator for one product's check run; confidence only ever goes down."""

    def __init__(self):
        self.errors, self.warnings, self.suggestions = [], [], []
        self.confidence = 1.0

    def error(self, factor: Optional[str], **kw):
        self.errors.append(IntegrityError(**kw))
        if factor:
            self.confidence *= _CONF[factor]

    def warn(self, factor: Optional[str], **kw):
        self.warnings.append(IntegrityWarning(**kw))
        if factor:
            self.confidence *= _CONF[factor]

    def suggest(self, **kw):
        self.suggestions.append(IntegritySuggestion(**kw))

    def result(self) -> IntegrityCheckResult:
        return IntegrityCheckResult(
            is_valid=not self.errors,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            suggestions=tuple(self.suggestions),
            confidence=round(self.confidence, 6),
        )


# ════════════════════════════════════════════════════════════
#  SINGLE-PRODUCT CHECK
# ════════════════════════════════════════════════════════════

def _check_fields(tr: dict, f: _Findings):
    for name in RATING_FIELDS:
        value = tr.get(name)
        path = f"tierRatings.{name}"
        if value is None or value == "":
            f.error("missing_field", type=MISSING_DATA, field=path,
                    message=f"{name} is not set", severity="high")
        elif not is_valid_rank(value):
            f.error("invalid_value", type=INVALID_VALUE, field=path,
                    message=f"invalid rank value: {value!r}", current_value=value,
                    expected_value="one of S+, S, A, B, C, D", severity="critical")
        elif name in AXIS_FIELDS and value == "S+":
            f.error("invalid_value", type=INVALID_VALUE, field=path,
                    message=f"{name} cannot be S+ (only overallRank can)",
                    current_value=value, expected_value="one of S, A, B, C, D",
                    severity="high")


def _check_legacy_evidence(record: ProductRecord, tr: dict, f: _Findings):
    new = tr.get("evidenceRank")
    if record.evidence_level and new and record.evidence_level != new:
        f.error(None, type=RANK_MISMATCH, field="evidenceLevel vs tierRatings.evidenceRank",
                message="legacy evidenceLevel disagrees with tierRatings.evidenceRank",
                current_value=f"legacy: {record.evidence_level}, new: {new}",
                expected_value="both equal", severity="high")
        f.suggest(field="evidenceLevel", current_value=record.evidence_level,
                  suggested_value=new, reason="adopt the tierRatings value", confidence=0.9)


def _score_fits(score: float, rank: str) -> bool:
    """Integer bands; a fractional score belongs to a band until the next band starts."""
    lo, hi = EXPECTED_SCORE_RANGES[rank]
    if hi >= 100:
        return lo <= score <= hi
    return lo <= score < hi + 1


def _check_scores(record: ProductRecord, tr: dict, f: _Findings):
    scores = record.scores if isinstance(record.scores, dict) else {}
    for key, rank_field in (("safety", "safetyRank"), ("evidence", "evidenceRank")):
        score = _safe(scores.get(key))
        rank  = tr.get(rank_field)
        if np.isnan(score) or not is_valid_rank(rank):
            continue
        lo, hi = EXPECTED_SCORE_RANGES[rank]
        if _score_fits(score, rank):
            continue
        expected = score_to_rank(score)
        f.warn("score_mismatch", type=SUSPICIOUS, field=f"scores.{key} vs tierRatings.{rank_field}",
               message=f"{key} score {score:g} does not fit rank {rank} (expected {lo}-{hi})",
               recommendation=f"a score of {score:g} maps to rank {expected}")
        # the stored score may be the stale side, so this stays below the auto-adopt bar
        f.suggest(field=f"tierRatings.{rank_field}", current_value=rank,
                  suggested_value=expected, reason=f"matches stored {key} score {score:g}",
                  confidence=0.7)


def _check_combinations(tr: dict, f: _Findings):
    axis = {k: tr.get(k) for k in AXIS_FIELDS}
    overall = tr.get("overallRank")

    if overall == "S+" and not all(v == "S" for v in axis.values()):
        f.error("impossible", type=IMPOSSIBLE_COMBINATION, field="tierRatings.overallRank",
                message="S+ requires all five axis ranks to be S",
                current_value=dict(tr), expected_value="all five axis ranks S",
                severity="critical")

    hard_fail = axis["safetyRank"] == "D" or axis["evidenceRank"] == "D"
    if hard_fail and is_valid_rank(overall) and overall != "D":
        f.error("impossible", type=IMPOSSIBLE_COMBINATION, field="tierRatings.overallRank",
                message="safety or evidence D forces overallRank D",
                current_value=overall, expected_value="D", severity="critical")

    if axis["priceRank"] == "D" and axis["costEffectivenessRank"] == "S":
        f.warn("price_cost", type=SUSPICIOUS, field="tierRatings",
               message="price D with cost-effectiveness S is unusual",
               recommendation="recalculate ranks")


def calculation_lag_days(record: ProductRecord) -> Optional[float]:
    """Days from lastCalculatedAt to the last edit; None when either is missing."""
    updated = parse_timestamp(record.updated_at)
    calculated = parse_timestamp(record.last_calculated_at)
    if updated is None or calculated is None:
        return None
    return (updated - calculated).total_seconds() / 86400


def is_outdated(record: ProductRecord) -> bool:
    days = calculation_lag_days(record)
    return days is not None and days > CFG["max_age_days"]


def _check_freshness(record: ProductRecord, f: _Findings):
    if is_outdated(record):
        days = calculation_lag_days(record)
        f.warn("outdated", type=OUTDATED, field="lastCalculatedAt",
               message=f"ranks were calculated {int(days)} days before the last update",
               recommendation="recalculate ranks")


def _check_raw_values(record: ProductRecord, f: _Findings):
    price = record.price
    if not np.isnan(price) and (price <= 0 or price > CFG["max_price"]):
        f.error("invalid_value", type=INVALID_VALUE, field="priceJPY",
                message=f"price out of range: ¥{price:g}", current_value=price,
                expected_value=f"0 < price ≤ {CFG['max_price']}", severity="high")

    spd = record.servings_per_day
    if not np.isnan(spd) and spd > CFG["max_servings_per_day"]:
        f.warn(None, type=INCOMPLETE, field="servingsPerDay",
               message=f"servingsPerDay {spd:g} exceeds {CFG['max_servings_per_day']}",
               recommendation="check the label data")

    amount = _safe(record.ingredient_amount)
    if np.isnan(amount) and record.primary is not None:
        amount = record.primary.amount_per_serving
    spc = record.servings_per_container
    if not (price > 0 and amount > 0 and spc > 0):
        return
    cost_per_mg = price / (amount * spc)
    if cost_per_mg < CFG["min_cost_per_mg"]:
        f.warn("cost_band", type=SUSPICIOUS, field="calculated costPerMg",
               message=f"cost per mg ¥{cost_per_mg:.6f} is abnormally low",
               recommendation="possible data entry error, check the label data")
    elif cost_per_mg > CFG["max_cost_per_mg"]:
        f.warn("cost_band", type=SUSPICIOUS, field="calculated costPerMg",
               message=f"cost per mg ¥{cost_per_mg:.2f} is abnormally high",
               recommendation="possible data entry error, check the label data")


def check_rank_integrity(product: Union[ProductRecord, dict]) -> IntegrityCheckResult:
    """
    Run every integrity check against one stored product.

    Checks never stop early: each finding is recorded and multiplies the
    running confidence down from 1.0. The product is valid when no errors
    (warnings are fine) were found.
    """
    record = product if isinstance(product, ProductRecord) else ProductRecord.from_dict(product)
    f = _Findings()

    tr = record.tier_ratings
    if not isinstance(tr, dict):
        f.error("missing_ratings", type=MISSING_DATA, field="tierRatings",
                message="tierRatings is not set", severity="critical")
        tr = None

    if tr is not None:
        _check_fields(tr, f)
        _check_legacy_evidence(record, tr, f)
        _check_scores(record, tr, f)
        _check_combinations(tr, f)
    _check_freshness(record, f)
    _check_raw_values(record, f)
    return f.result()


def batch_check_integrity(products: Iterable[Union[ProductRecord, dict]]
                          ) -> Dict[str, IntegrityCheckResult]:
    out = {}
    for p in products:
        record = p if isinstance(p, ProductRecord) else ProductRecord.from_dict(p)
        out[record.product_id] = check_rank_integrity(record)
    return out


# ════════════════════════════════════════════════════════════
#  REPORT
# ════════════════════════════════════════════════════════════

def generate_integrity_report(results: Mapping[str, IntegrityCheckResult],
                              products: Iterable[Union[ProductRecord, dict]]) -> str:
    """Markdown report: summary counts, each critical error, recommended actions."""
    names = {}
    for p in products:
        record = p if isinstance(p, ProductRecord) else ProductRecord.from_dict(p)
        names[record.product_id] = record.name

    total    = len(results)
    valid    = sum(1 for r in results.values() if r.is_valid)
    errors   = sum(len(r.errors) for r in results.values())
    warnings = sum(len(r.warnings) for r in results.values())
    critical = [(pid, e) for pid, r in results.items() for e in r.critical_errors]
    valid_pct = valid / total * 100 if total else 0.0

    lines = [
        "# Rank Integrity Report",
        "",
        "## Summary",
        f"- Products checked: {total}",
        f"- Valid: {valid} ({valid_pct:.1f}%)",
        f"- Errors: {errors}",
        f"- Warnings: {warnings}",
        f"- Critical errors: {len(critical)}",
        "",
    ]
    if critical:
        lines += ["## ⚠️ Critical errors (action required)", ""]
        for pid, e in critical:
            lines.append(f"### {names.get(pid) or 'Unknown'} ({pid})")
            lines.append(f"- **Field**: {e.field}")
            lines.append(f"- **Error**: {e.message}")
            if e.current_value is not None:
                lines.append(f"- **Current**: {e.current_value}")
            if e.expected_value is not None:
                lines.append(f"- **Expected**: {e.expected_value}")
            lines.append("")
    lines += [
        "## Recommended actions",
        "1. Correct the data of products with critical errors by hand",
        "2. Run the tier rank recalculation (run_tier_ranks.py --fix)",
        "3. Re-run the integrity check to confirm",
        "",
    ]
    return "\n".join(lines)


# ════════════════════════════════════════════════════════════
#  FIX PROPOSALS
# ════════════════════════════════════════════════════════════

def propose_integrity_fixes(result: IntegrityCheckResult, adopt_suggestions: bool = True,
                            fix_mismatches: bool = False, refresh_timestamp: bool = False,
                            now=None) -> dict:
    """
    Field patch a remediation process could apply. Nothing is written here.

    Dotted suggestion fields ("tierRatings.safetyRank") become nested dicts.
    Only suggestions at or above CFG["manual_confidence_min"] are adopted.
    """
    fixes = {}

    def put(path: str, value):
        parts = path.split(".")
        target = fixes
        for p in parts[:-1]:
            target = target.setdefault(p, {})
        target[parts[-1]] = value

    if adopt_suggestions:
        for s in result.suggestions:
            if s.confidence >= CFG["manual_confidence_min"]:
                put(s.field, s.suggested_value)

    if fix_mismatches:
        for e in result.errors:
            if e.type == IMPOSSIBLE_COMBINATION and is_valid_rank(e.expected_value):
                put(e.field, e.expected_value)

    if refresh_timestamp:
        fixes["lastCalculatedAt"] = iso(now or utc_now())
    return fixes
