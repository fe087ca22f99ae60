# tierrank/models.py — Record and value types shared by every stage
from dataclasses import asdict, dataclass, field
from typing import Optional, Tuple

from tierrank.config import AXIS_FIELDS, RATING_FIELDS
from tierrank.ranks import is_valid_rank
from tierrank.utils import _safe


def _count(val) -> int:
    """references / warnings arrive either as arrays or as plain counts."""
    if val is None:
        return 0
    if isinstance(val, (list, tuple)):
        return len(val)
    n = _safe(val, 0)
    return int(n) if n > 0 else 0


@dataclass(frozen=True)
class IngredientEntry:
    ingredient_id: Optional[str]
    name: Optional[str]
    amount_per_serving: float
    evidence_level: Optional[str] = None
    safety_level: Optional[str] = None

    @property
    def key(self) -> Optional[str]:
        return self.ingredient_id or self.name

    @classmethod
    def from_dict(cls, d: dict) -> "IngredientEntry":
        ing = d.get("ingredient") or {}
        return cls(
            ingredient_id=ing.get("_id") or d.get("ingredientId"),
            name=ing.get("name") or d.get("name"),
            amount_per_serving=_safe(d.get("amountMgPerServing", d.get("amountPerServing")), 0.0),
            evidence_level=ing.get("evidenceLevel") or d.get("evidenceLevel"),
            safety_level=ing.get("safetyLevel") or d.get("safetyLevel"),
        )


@dataclass(frozen=True)
class TierRatings:
    priceRank: str
    costEffectivenessRank: str
    contentRank: str
    evidenceRank: str
    safetyRank: str
    overallRank: str

    def axis_ranks(self) -> Tuple[str, ...]:
        return tuple(getattr(self, f) for f in AXIS_FIELDS)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "TierRatings":
        return cls(**{f: d[f] for f in RATING_FIELDS})


@dataclass(frozen=True)
class Scores:
    evidence: float
    safety: float
    overall: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ProductRecord:
    """
    One catalog product as delivered by the content store.

    Stored rank data is kept exactly as persisted: `tier_ratings` is the raw
    mapping (possibly incomplete or holding invalid values) and the legacy
    `evidence_level` sits beside it. `stored_ratings()` is the only place the
    two shapes are reconciled into a typed TierRatings.
    """
    product_id: str
    name: str
    price: float
    servings_per_container: float
    servings_per_day: float
    ingredients: Tuple[IngredientEntry, ...] = ()
    reference_count: int = 0
    warning_count: int = 0
    tier_ratings: Optional[dict] = None
    scores: Optional[dict] = None
    evidence_level: Optional[str] = None
    last_calculated_at: Optional[str] = None
    updated_at: Optional[str] = None
    ingredient_amount: Optional[float] = None

    @property
    def primary(self) -> Optional[IngredientEntry]:
        return self.ingredients[0] if self.ingredients else None

    def stored_ratings(self) -> Optional[TierRatings]:
        tr = self.tier_ratings
        if not isinstance(tr, dict):
            return None
        if not all(is_valid_rank(tr.get(f)) for f in RATING_FIELDS):
            return None
        return TierRatings.from_dict(tr)

    @classmethod
    def from_dict(cls, d: dict) -> "ProductRecord":
        return cls(
            product_id=str(d.get("_id") or d.get("productId") or ""),
            name=d.get("name") or "",
            price=_safe(d.get("priceJPY", d.get("price"))),
            servings_per_container=_safe(d.get("servingsPerContainer")),
            servings_per_day=_safe(d.get("servingsPerDay")),
            ingredients=tuple(IngredientEntry.from_dict(i) for i in (d.get("ingredients") or [])),
            reference_count=_count(d.get("references", d.get("referenceCount"))),
            warning_count=_count(d.get("warnings", d.get("warningCount"))),
            tier_ratings=d.get("tierRatings"),
            scores=d.get("scores"),
            evidence_level=d.get("evidenceLevel"),
            last_calculated_at=d.get("lastCalculatedAt"),
            updated_at=d.get("_updatedAt"),
            ingredient_amount=d.get("ingredientAmount"),
        )


@dataclass(frozen=True)
class ProductMetrics:
    product_id: str
    product_name: str
    ingredient: str
    category: str
    price: float
    cost_per_unit: float
    cost_per_day: float
    daily_amount: float
    evidence_score: float
    safety_score: float
    overall_score: int
    reference_count: int
    warning_count: int
    multi_ingredient: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SkipRecord:
    product_id: str
    product_name: str
    reason: str


@dataclass(frozen=True)
class RankedProduct:
    """Engine output for one product: new ratings + the scores behind them."""
    metrics: ProductMetrics
    tier_ratings: TierRatings
    scores: Scores
    weighted_score: Optional[float] = None
    details: dict = field(default_factory=dict)

    @property
    def product_id(self) -> str:
        return self.metrics.product_id
