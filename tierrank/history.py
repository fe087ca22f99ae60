# tierrank/history.py — Rank change history, change confidence, anomaly detection
import json
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from tierrank.config import (
    CFG, HISTORY_SOURCES, RISK_RECOMMENDATIONS,
    SEVERITY_WEIGHTS, SOURCE_CONFIDENCE,
)
from tierrank.models import TierRatings
from tierrank.ranks import rank_to_number
from tierrank.utils import iso, parse_timestamp, utc_now

CSV_COLUMNS = [
    "Product ID", "Product Name", "Timestamp", "Field", "Old Value",
    "New Value", "Delta", "Source", "User ID", "Reason", "Confidence",
]

INSUFFICIENT_DATA = "Insufficient history to detect anomalies"


@dataclass(frozen=True)
class RankChange:
    field: str
    old_value: Optional[str]
    new_value: Optional[str]
    delta: int

    def to_dict(self) -> dict:
        return {"field": self.field, "oldValue": self.old_value,
                "newValue": self.new_value, "delta": self.delta}

    @classmethod
    def from_dict(cls, d: dict) -> "RankChange":
        return cls(d["field"], d.get("oldValue"), d.get("newValue"), int(d.get("delta", 0)))


@dataclass(frozen=True)
class RankChangeHistory:
    """One write-once history event. Corrections are new events, never edits."""
    product_id: str
    product_name: str
    timestamp: str
    changes: tuple
    source: str
    confidence: float
    user_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def total_delta(self) -> int:
        return sum(abs(c.delta) for c in self.changes)

    def to_dict(self) -> dict:
        return {
            "productId":   self.product_id,
            "productName": self.product_name,
            "timestamp":   self.timestamp,
            "changes":     [c.to_dict() for c in self.changes],
            "source":      self.source,
            "userId":      self.user_id,
            "reason":      self.reason,
            "confidence":  self.confidence,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RankChangeHistory":
        return cls(
            product_id=d["productId"],
            product_name=d.get("productName") or "",
            timestamp=d["timestamp"],
            changes=tuple(RankChange.from_dict(c) for c in d.get("changes") or []),
            source=d["source"],
            confidence=float(d["confidence"]),
            user_id=d.get("userId"),
            reason=d.get("reason"),
        )


@dataclass(frozen=True)
class RankAnomaly:
    type: str
    description: str
    severity: str
    affected_field: str
    evidence: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AnomalyReport:
    has_anomaly: bool
    anomalies: tuple
    risk_score: int
    recommendation: str


# ════════════════════════════════════════════════════════════
#  RECORDING
# ════════════════════════════════════════════════════════════

def _as_mapping(ratings) -> Mapping[str, Optional[str]]:
    if ratings is None:
        return {}
    if isinstance(ratings, TierRatings):
        return ratings.to_dict()
    return ratings


def calculate_change_confidence(changes: Sequence[RankChange], source: str) -> float:
    """
    Source base (auto-calculation .95, sync .90, fix .85, manual .70, other .5),
    ×0.7 if total |delta| > 10 else ×0.85 if > 5, ×0.9 for more than 4
    changed fields, clamped to [0.1, 1.0].
    """
    confidence = SOURCE_CONFIDENCE.get(source, 0.5)
    total = sum(abs(c.delta) for c in changes)
    if total > 10:
        confidence *= 0.7
    elif total > 5:
        confidence *= 0.85
    if len(changes) > 4:
        confidence *= 0.9
    return round(max(0.1, min(1.0, confidence)), 6)


def record_rank_change(product_id: str, product_name: str,
                       old: Union[TierRatings, Mapping, None],
                       new: Union[TierRatings, Mapping],
                       source: str, user_id: Optional[str] = None,
                       reason: Optional[str] = None, now=None) -> RankChangeHistory:
    """Diff two rank sets field by field; identical inputs give an event with no changes."""
    if source not in HISTORY_SOURCES:
        raise ValueError(f"unknown history source {source!r}, expected one of {HISTORY_SOURCES}")
    old_map, new_map = _as_mapping(old), _as_mapping(new)
    changes = tuple(
        RankChange(f, old_map.get(f), new_map[f],
                   rank_to_number(new_map[f]) - rank_to_number(old_map.get(f)))
        for f in new_map
        if old_map.get(f) != new_map[f]
    )
    return RankChangeHistory(
        product_id=product_id,
        product_name=product_name,
        timestamp=iso(now or utc_now()),
        changes=changes,
        source=source,
        confidence=calculate_change_confidence(changes, source),
        user_id=user_id,
        reason=reason,
    )


# ════════════════════════════════════════════════════════════
#  ANOMALY DETECTION
# ════════════════════════════════════════════════════════════

def _ordered(history: Iterable[RankChangeHistory], product_id: str) -> List[RankChangeHistory]:
    entries = [h for h in history if h.product_id == product_id]
    return sorted(entries, key=lambda h: parse_timestamp(h.timestamp) or utc_now())


def replay_ranks(entries: Sequence[RankChangeHistory]) -> dict:
    """Ranks resulting from applying every change in order."""
    ranks = {}
    for entry in entries:
        for c in entry.changes:
            ranks[c.field] = c.new_value
    return ranks


def _sudden_jumps(entries) -> List[RankAnomaly]:
    out = []
    for entry in entries:
        for c in entry.changes:
            if abs(c.delta) >= 2:
                out.append(RankAnomaly(
                    type="SUDDEN_JUMP",
                    description=f"{c.field} jumped from {c.old_value} to {c.new_value}",
                    severity="high" if abs(c.delta) >= 3 else "medium",
                    affected_field=c.field,
                    evidence=c.to_dict(),
                ))
    return out


def _frequent_changes(entries, now) -> List[RankAnomaly]:
    since = now - timedelta(days=CFG["frequent_window_days"])
    counts = Counter(
        c.field
        for entry in entries
        if (parse_timestamp(entry.timestamp) or since) > since
        for c in entry.changes
    )
    return [
        RankAnomaly(
            type="FREQUENT_CHANGE",
            description=f"{f} changed {n} times in {CFG['frequent_window_days']} days",
            severity="high" if n >= CFG["frequent_high_changes"] else "medium",
            affected_field=f,
            evidence={"changeCount": n, "periodDays": CFG["frequent_window_days"]},
        )
        for f, n in counts.items()
        if n >= CFG["frequent_min_changes"]
    ]


def _inconsistent_pattern(entries) -> List[RankAnomaly]:
    current = replay_ranks(entries)
    if current.get("priceRank") == "D" and current.get("costEffectivenessRank") == "S":
        return [RankAnomaly(
            type="INCONSISTENT_PATTERN",
            description="price D with cost-effectiveness S is contradictory",
            severity="high",
            affected_field="tierRatings",
            evidence={"priceRank": "D", "costEffectivenessRank": "S"},
        )]
    return []


def _manual_overrides(entries) -> List[RankAnomaly]:
    return [
        RankAnomaly(
            type="MANUAL_OVERRIDE",
            description=f"manual change detected (confidence {h.confidence * 100:.0f}%)",
            severity="high" if h.confidence < 0.5 else "low",
            affected_field="all",
            evidence={"timestamp": h.timestamp, "userId": h.user_id, "reason": h.reason},
        )
        for h in entries
        if h.source == "manual" and h.confidence < CFG["manual_confidence_min"]
    ]


def risk_recommendation(risk_score: int) -> str:
    for threshold, text in RISK_RECOMMENDATIONS:
        if risk_score >= threshold:
            return text
    return RISK_RECOMMENDATIONS[-1][1]


def detect_rank_anomalies(history: Iterable[RankChangeHistory], product_id: str,
                          now=None) -> AnomalyReport:
    """
    Scan one product's history for suspicious patterns.

    Needs at least two events. Risk score is the capped sum of severity
    weights; the recommendation follows from its band.
    """
    entries = _ordered(history, product_id)
    if len(entries) < 2:
        return AnomalyReport(False, (), 0, INSUFFICIENT_DATA)

    now = parse_timestamp(now) if now is not None else utc_now()
    anomalies = (
        _sudden_jumps(entries)
        + _frequent_changes(entries, now)
        + _inconsistent_pattern(entries)
        + _manual_overrides(entries)
    )
    risk = min(100, sum(SEVERITY_WEIGHTS.get(a.severity, 0) for a in anomalies))
    return AnomalyReport(bool(anomalies), tuple(anomalies), risk, risk_recommendation(risk))


# ════════════════════════════════════════════════════════════
#  APPEND-ONLY LOG
# ════════════════════════════════════════════════════════════

class RankHistoryLog:
    """In-memory event list mirrored to a JSON-lines file; lines are only ever appended."""

    def __init__(self, path: Optional[str] = None, entries: Iterable[RankChangeHistory] = ()):
        self.path = path
        self._entries = list(entries)

    @classmethod
    def load(cls, path: str) -> "RankHistoryLog":
        entries = []
        if os.path.exists(path):
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        entries.append(RankChangeHistory.from_dict(json.loads(line)))
        return cls(path, entries)

    @property
    def entries(self) -> tuple:
        return tuple(self._entries)

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self.entries)

    def append(self, entry: RankChangeHistory) -> None:
        self._entries.append(entry)
        if self.path:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def save(self, path: Optional[str] = None) -> str:
        """Write the whole log to `path` (default: its own file) through a temp file."""
        path = path or self.path
        if not path:
            raise ValueError("no path to save the history log to")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            for e in self._entries:
                f.write(json.dumps(e.to_dict(), ensure_ascii=False) + "\n")
        os.replace(tmp, path)
        print(f"💾  History saved → {path}  ({len(self._entries)} entries)")
        return path

    def for_product(self, product_id: str) -> List[RankChangeHistory]:
        return _ordered(self._entries, product_id)


# ════════════════════════════════════════════════════════════
#  STATISTICS + EXPORT
# ════════════════════════════════════════════════════════════

def generate_history_statistics(history: Iterable[RankChangeHistory]) -> dict:
    entries = list(history)
    total = len(entries)
    by_source = Counter(h.source for h in entries)

    per_product = {}
    for h in entries:
        name, count = per_product.get(h.product_id, (h.product_name, 0))
        per_product[h.product_id] = (name, count + len(h.changes))
    most_changed = sorted(
        ({"productId": pid, "productName": name, "changeCount": n}
         for pid, (name, n) in per_product.items()),
        key=lambda d: d["changeCount"], reverse=True,
    )[:10]

    suspicious = sum(
        1 for h in entries
        if h.confidence < 0.7 or any(abs(c.delta) >= 2 for c in h.changes)
    )
    return {
        "totalChanges":        total,
        "changesBySource":     dict(by_source),
        "mostChangedProducts": most_changed,
        "averageConfidence":   sum(h.confidence for h in entries) / total if total else 0.0,
        "anomalyRate":         suspicious / total if total else 0.0,
    }


def history_frame(history: Iterable[RankChangeHistory]) -> pd.DataFrame:
    """One row per changed field per event."""
    rows = [
        [h.product_id, h.product_name, h.timestamp, c.field, c.old_value or "",
         c.new_value or "", str(c.delta), h.source, h.user_id or "",
         h.reason or "", f"{h.confidence:.2f}"]
        for h in history
        for c in h.changes
    ]
    return pd.DataFrame(rows, columns=CSV_COLUMNS)


def export_history_csv(history: Iterable[RankChangeHistory], path: Optional[str] = None):
    """CSV text when `path` is None, otherwise written to `path`."""
    df = history_frame(history)
    if path is None:
        return df.to_csv(index=False, lineterminator="\n")
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    df.to_csv(path, index=False, lineterminator="\n", encoding="utf-8")
    print(f"✅  History CSV → {path}  ({len(df)} rows)")
    return path
