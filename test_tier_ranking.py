"""
Unit tests for the tier ranking core (metrics, grouping, percentile,
content, aggregation).
Run: python -m pytest test_tier_ranking.py -v
"""

import itertools
import json
import os
import sys
from dataclasses import replace

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(__file__))

from tierrank.composite import (
    adjusted_scores, calculate_overall_rank, is_five_crown, overall_tier_score,
    rank_group, weighted_score,
)
from tierrank.config import AXIS_FIELDS, AXIS_RANKS, ConfigError, build_tables, load_tables
from tierrank.content import content_rank, recommended_dose
from tierrank.grouping import add_to_group, group_by_ingredient
from tierrank.metrics import build_metrics, compute_product_scores, extract_metrics
from tierrank.models import IngredientEntry, ProductRecord, TierRatings
from tierrank.percentile import (
    group_percentile, percentile_rank, percentile_to_rank, trimmed_reference,
)
from tierrank.ranks import number_to_rank, rank_to_number, score_to_rank, upgrade_rank
from tierrank.utils import _safe, round_half_up


# ═══════════════════════════════════════════════════
#  HELPERS: fixture tables + product builders
# ═══════════════════════════════════════════════════

DEFAULT_WEIGHTS = {
    "priceWeight": 0.10, "costEffectivenessWeight": 0.25, "contentWeight": 0.10,
    "evidenceWeight": 0.25, "safetyWeight": 0.30,
}
EVEN_WEIGHTS = {k: 0.2 for k in DEFAULT_WEIGHTS}


def make_tables(**doses):
    return build_tables(
        {"_comment": "fixture", "その他": DEFAULT_WEIGHTS,
         "ミネラル": EVEN_WEIGHTS, "マルチビタミン": EVEN_WEIGHTS},
        {"カルシウム": "ミネラル"},
        {"_comment": "fixture", "ビタミンC": 100, "カルシウム": 700,
         "乳酸菌": "varies by strain", **doses},
    )


TABLES = make_tables()


def make_doc(ingredients=(("ビタミンC", 1000, "A", "S"),), **kwargs):
    """Content-store style product document; ingredients are (name, mg, evidence, safety)."""
    doc = {
        "_id": "p1",
        "name": "Test Product",
        "priceJPY": 1000,
        "servingsPerContainer": 30,
        "servingsPerDay": 1,
        "ingredients": [
            {"ingredient": {"_id": f"ing-{n}", "name": n, "evidenceLevel": ev, "safetyLevel": sf},
             "amountMgPerServing": mg}
            for n, mg, ev, sf in ingredients
        ],
        "references": [],
        "warnings": [],
    }
    doc.update(kwargs)
    return doc


def make_record(**kwargs):
    return ProductRecord.from_dict(make_doc(**kwargs))


def make_metrics(pid="p1", price=1000, amount=1000, name="ビタミンC", ev="A", sf="S", **kwargs):
    rec = make_record(_id=pid, priceJPY=price, ingredients=[(name, amount, ev, sf)], **kwargs)
    m, reason = extract_metrics(rec, TABLES)
    assert m is not None, reason
    return m


def ratings(**kw):
    base = dict(priceRank="B", costEffectivenessRank="B", contentRank="B",
                evidenceRank="B", safetyRank="B", overallRank="B")
    base.update(kw)
    return TierRatings(**base)


# ═══════════════════════════════════════════════════
#  TEST: utilities + rank scale
# ═══════════════════════════════════════════════════

class TestSafe:
    def test_normal_value(self):
        assert _safe("42") == 42.0

    def test_none_and_nan_return_default(self):
        assert np.isnan(_safe(None))
        assert _safe(float("nan"), 0) == 0

    def test_bool_is_not_a_number(self):
        assert np.isnan(_safe(True))

    @pytest.mark.parametrize("val,expected", [(62.5, 63), (92.5, 93), (77.49, 77), (0.5, 1), (80.0, 80)])
    def test_round_half_up(self, val, expected):
        assert round_half_up(val) == expected


class TestRankScale:
    def test_ordinal_scale_is_fixed(self):
        assert [rank_to_number(r) for r in ("D", "C", "B", "A", "S", "S+")] == [1, 2, 3, 4, 5, 6]

    def test_unknown_rank_is_zero(self):
        assert rank_to_number("X") == 0
        assert rank_to_number(None) == 0

    def test_number_round_trip(self):
        for r in ("D", "C", "B", "A", "S", "S+"):
            assert number_to_rank(rank_to_number(r)) == r

    @pytest.mark.parametrize("score,rank", [
        (100, "S"), (90, "S"), (89.99, "A"), (80, "A"), (70, "B"), (60, "C"), (59.9, "D"), (0, "D"),
    ])
    def test_score_thresholds(self, score, rank):
        assert score_to_rank(score) == rank

    def test_upgrade_caps_at_s(self):
        assert upgrade_rank("D") == "C"
        assert upgrade_rank("A") == "S"
        assert upgrade_rank("S") == "S"


# ═══════════════════════════════════════════════════
#  TEST: lookup tables
# ═══════════════════════════════════════════════════

class TestTables:
    def test_bundled_tables_load(self):
        tables = load_tables()
        assert "その他" in tables.category_weights
        assert tables.recommended_doses["ビタミンC"] == 100
        assert "_comment" not in tables.recommended_doses
        assert "乳酸菌" not in tables.recommended_doses, "non-numeric doses must be dropped"

    def test_tables_are_read_only(self):
        with pytest.raises(TypeError):
            TABLES.recommended_doses["ビタミンC"] = 1

    def test_weights_must_sum_to_one(self):
        bad = dict(DEFAULT_WEIGHTS, safetyWeight=0.5)
        with pytest.raises(ConfigError):
            build_tables({"その他": bad})

    def test_default_category_required(self):
        with pytest.raises(ConfigError):
            build_tables({"ミネラル": EVEN_WEIGHTS})

    def test_missing_weight_key(self):
        partial = {k: v for k, v in DEFAULT_WEIGHTS.items() if k != "contentWeight"}
        with pytest.raises(ConfigError):
            build_tables({"その他": partial})

    def test_unreadable_directory_is_fatal(self, tmp_path):
        with pytest.raises(ConfigError):
            load_tables(tmp_path)

    def test_malformed_json_is_fatal(self, tmp_path):
        for name in ("category_weights.json", "ingredient_categories.json",
                     "recommended_daily_intake.json"):
            (tmp_path / name).write_text("{}", encoding="utf-8")
        (tmp_path / "category_weights.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_tables(tmp_path)

    def test_fixture_directory_loads(self, tmp_path):
        (tmp_path / "category_weights.json").write_text(
            json.dumps({"その他": DEFAULT_WEIGHTS}), encoding="utf-8")
        (tmp_path / "ingredient_categories.json").write_text("{}", encoding="utf-8")
        (tmp_path / "recommended_daily_intake.json").write_text(
            json.dumps({"亜鉛": 10}), encoding="utf-8")
        tables = load_tables(tmp_path)
        assert tables.recommended_doses == {"亜鉛": 10.0}

    def test_unknown_category_uses_default_weights(self):
        assert dict(TABLES.weights_for("未知")) == DEFAULT_WEIGHTS


# ═══════════════════════════════════════════════════
#  TEST: metric extraction
# ═══════════════════════════════════════════════════

class TestMetricExtractor:
    def test_basic_metrics(self):
        m, reason = extract_metrics(make_record(servingsPerDay=2), TABLES)
        assert reason is None
        assert m.daily_amount == 2000
        assert m.cost_per_unit == pytest.approx(1000 / (1000 * 30))
        assert m.cost_per_day == pytest.approx(1000 / 15)
        assert m.ingredient == "ビタミンC"

    @pytest.mark.parametrize("field,value", [
        ("priceJPY", 0), ("priceJPY", -5), ("servingsPerContainer", 0),
        ("servingsPerDay", 0), ("priceJPY", None),
    ])
    def test_invalid_numbers_skip(self, field, value):
        m, reason = extract_metrics(make_record(**{field: value}), TABLES)
        assert m is None
        assert reason

    def test_zero_primary_amount_skips(self):
        m, reason = extract_metrics(make_record(ingredients=[("ビタミンC", 0, "A", "A")]), TABLES)
        assert m is None
        assert "amount" in reason

    def test_no_ingredients_skips(self):
        m, reason = extract_metrics(make_record(ingredients=[]), TABLES)
        assert m is None
        assert reason == "no ingredients"

    def test_unresolved_primary_skips(self):
        rec = replace(make_record(), ingredients=(IngredientEntry(None, None, 100.0),))
        m, reason = extract_metrics(rec, TABLES)
        assert m is None

    def test_non_finite_metric_skips(self):
        m, reason = extract_metrics(make_record(priceJPY=float("inf")), TABLES)
        assert m is None
        assert "non-finite" in reason

    def test_amount_weighted_scores(self):
        rec = make_record(ingredients=[("X", 600, "S", None), ("Y", 400, "D", None)])
        m, _ = extract_metrics(rec, TABLES)
        assert m.evidence_score == pytest.approx(0.6 * 95 + 0.4 * 55)
        assert m.safety_score == 75, "unset safety levels default to 75"
        assert m.overall_score == 77

    def test_scores_default_without_positive_amounts(self):
        assert compute_product_scores([IngredientEntry("a", "a", 0.0, "S", "S")], 1) == (50, 75, 63), \
            "62.5 rounds half up"

    def test_multi_ingredient_uses_top_five(self):
        ings = [("X", 10, "D", "D"), ("A", 500, "D", "D"), ("B", 300, "D", "D"),
                ("C", 200, "D", "D"), ("E", 100, "D", "D"), ("T", 1, "S", "S")]
        m, _ = extract_metrics(make_record(ingredients=ings, priceJPY=1110,
                                           servingsPerContainer=1), TABLES)
        assert m.multi_ingredient
        assert m.cost_per_unit == pytest.approx(1.0), "trace ingredient must not dilute cost"
        assert m.evidence_score == 55
        assert m.safety_score == 60

    def test_three_ingredients_use_full_list(self):
        ings = [("X", 100, "A", "A"), ("Y", 100, "A", "A"), ("Z", 100, "A", "A")]
        m, _ = extract_metrics(make_record(ingredients=ings, priceJPY=300,
                                           servingsPerContainer=1), TABLES)
        assert not m.multi_ingredient
        assert m.cost_per_unit == pytest.approx(1.0)

    def test_category_mapping(self):
        m, _ = extract_metrics(make_record(ingredients=[("カルシウム", 300, "A", "A")]), TABLES)
        assert m.category == "ミネラル"
        m, _ = extract_metrics(make_record(ingredients=[("謎成分", 300, "A", "A")]), TABLES)
        assert m.category == "その他"

    def test_unmapped_multi_ingredient_category(self):
        ings = [(n, 100, "A", "A") for n in ("P", "Q", "R", "S")]
        m, _ = extract_metrics(make_record(ingredients=ings), TABLES)
        assert m.category == "マルチビタミン"

    def test_custom_normalizer(self):
        rec = make_record(ingredients=[("vitamin c", 100, "A", "A")])
        m, _ = extract_metrics(rec, TABLES, normalize=lambda s: "ビタミンC")
        assert m.ingredient == "ビタミンC"

    def test_build_metrics_lists_every_skip(self):
        recs = [make_record(_id="ok"), make_record(_id="bad", priceJPY=0)]
        metrics, skipped = build_metrics(recs, TABLES, verbose=False)
        assert [m.product_id for m in metrics] == ["ok"]
        assert [s.product_id for s in skipped] == ["bad"]


# ═══════════════════════════════════════════════════
#  TEST: grouping
# ═══════════════════════════════════════════════════

class TestGrouping:
    def test_groups_by_primary_ingredient_only(self):
        a = make_metrics("a", name="ビタミンC")
        b = make_metrics("b", name="亜鉛")
        c = make_metrics("c", name="ビタミンC")
        groups = group_by_ingredient([a, b, c])
        assert list(groups) == ["ビタミンC", "亜鉛"]
        assert [m.product_id for m in groups["ビタミンC"]] == ["a", "c"]

    def test_multi_ingredient_product_ranked_once(self):
        rec = make_record(ingredients=[("ビタミンC", 100, "A", "A"), ("亜鉛", 10, "A", "A")])
        m, _ = extract_metrics(rec, TABLES)
        groups = group_by_ingredient([m])
        assert sum(len(g) for g in groups.values()) == 1

    def test_add_to_group_is_pure(self):
        before = {}
        after = add_to_group(before, make_metrics())
        assert before == {}
        assert len(after["ビタミンC"]) == 1


# ═══════════════════════════════════════════════════
#  TEST: percentile ranker
# ═══════════════════════════════════════════════════

class TestPercentile:
    def test_single_value_is_midpoint(self):
        assert percentile_rank(42, [42]) == 50.0

    def test_ties_share_mean_rank(self):
        # 20 sits at rank 2.5 of 4 → 50
        assert percentile_rank(20, [10, 20, 20, 30]) == 50.0
        assert percentile_rank(10, [10, 20, 20, 30]) == 100.0
        assert percentile_rank(30, [10, 20, 20, 30]) == 0.0

    def test_higher_is_better(self):
        assert percentile_rank(30, [10, 20, 30], lower_is_better=False) == 100.0

    def test_monotone_for_lower_is_better(self):
        values = [500, 1000, 1000, 1100, 1200, 1200, 1300, 1350, 1400, 1500, 1700, 9000, 12000]
        pct = [percentile_rank(v, values) for v in sorted(values)]
        assert all(a >= b for a, b in zip(pct, pct[1:])), f"not monotone: {pct}"

    def test_no_trimming_below_ten(self):
        values = [100, 200, 300, 400, 500, 600, 700, 800, 5000]
        for v in values:
            assert percentile_rank(v, values) == percentile_rank(v, values, trim_percent=0)
        assert len(trimmed_reference(values)) == 9

    def test_scenario_a_outliers_trimmed_but_ranked(self):
        prices = [500] + [1000 + 50 * i for i in range(10)] + [9000]
        ref = trimmed_reference(prices)
        assert 500 not in ref and 9000 not in ref
        assert len(ref) == 10
        # against the trimmed reference ¥1000 is the cheapest of 10
        assert percentile_rank(1000, prices) == 100.0
        assert percentile_rank(1000, prices, trim_percent=0) < 100.0
        # outliers still get a rank, saturated at the tails
        assert percentile_to_rank(percentile_rank(500, prices)) == "S"
        assert percentile_to_rank(percentile_rank(9000, prices)) == "D"

    def test_trim_settings_can_be_overridden(self):
        values = list(range(1, 9))
        assert len(trimmed_reference(values, min_group_size=5)) == 6

    def test_group_percentile_is_per_group(self):
        import pandas as pd
        df = pd.DataFrame({"ingredient": ["a", "a", "b", "b"], "price": [1, 2, 100, 200]})
        pct = group_percentile(df, "price")
        assert list(pct) == [100.0, 0.0, 100.0, 0.0]

    def test_percentile_to_rank_thresholds(self):
        assert percentile_to_rank(90) == "S"
        assert percentile_to_rank(79.9) == "B"
        assert percentile_to_rank(float("nan")) == "D"


# ═══════════════════════════════════════════════════
#  TEST: hybrid content evaluator
# ═══════════════════════════════════════════════════

class TestContent:
    def test_dose_lookup_prefers_longest_key(self):
        tables = make_tables(ビタミンB1=1.2, ビタミンB12=0.0024)
        assert recommended_dose("ビタミンB12（シアノコバラミン）", tables) == 0.0024
        assert recommended_dose("ビタミンB1（チアミン）", tables) == 1.2

    def test_scenario_b_fulfillment_one_is_b(self):
        tables = make_tables(テスト成分=1000)
        m = make_metrics(name="テスト成分", amount=1000)
        rank, details = content_rank(m, [m], tables)
        assert details["fulfillment_ratio"] == 1.0
        assert details["base_rank"] == "B"
        assert rank == "B", "single-member group gets no best-in-group bonus"

    def test_group_max_gets_one_step(self):
        top = make_metrics("top", amount=150)    # 1.5x of 100mg → B
        low = make_metrics("low", amount=60)     # 0.6x → C
        group = [top, low]
        assert content_rank(top, group, TABLES)[0] == "A"
        assert content_rank(low, group, TABLES)[0] == "C"

    def test_bonus_within_tolerance(self):
        a = make_metrics("a", amount=150)
        b = make_metrics("b", amount=149.9)
        assert content_rank(b, [a, b], TABLES)[1]["group_max_bonus"]

    def test_s_is_already_capped(self):
        top = make_metrics("top", amount=600)
        low = make_metrics("low", amount=50)
        rank, details = content_rank(top, [top, low], TABLES)
        assert rank == "S"
        assert not details["group_max_bonus"]

    @pytest.mark.parametrize("amount,rank", [
        (500, "S"), (200, "A"), (100, "B"), (50, "C"), (49, "D"),
    ])
    def test_fulfillment_thresholds(self, amount, rank):
        m = make_metrics(amount=amount)
        assert content_rank(m, [m], TABLES)[0] == rank

    def test_unknown_dose_falls_back_to_relative(self):
        group = [make_metrics(str(a), name="謎成分", amount=a) for a in (100, 200, 300)]
        ranks = [content_rank(m, group, TABLES) for m in group]
        assert all(d["method"] == "relative" for _, d in ranks)
        assert [r for r, _ in ranks] == ["D", "D", "S"]

    def test_dose_lookup_exact_then_substring(self):
        assert recommended_dose("ビタミンC", TABLES) == 100
        assert recommended_dose("ビタミンC（アスコルビン酸）", TABLES) == 100
        assert recommended_dose("乳酸菌", TABLES) is None
        assert recommended_dose("不明", TABLES) is None


# ═══════════════════════════════════════════════════
#  TEST: weighted aggregator
# ═══════════════════════════════════════════════════

class TestAggregator:
    def test_hard_fail_overrides_everything(self):
        for others in itertools.product(AXIS_RANKS, repeat=3):
            for fail_field in ("safetyRank", "evidenceRank"):
                axis = dict(zip(("priceRank", "costEffectivenessRank", "contentRank"), others))
                axis.update(safetyRank="S", evidenceRank="S")
                axis[fail_field] = "D"
                rank, score = calculate_overall_rank(axis, "その他", TABLES)
                assert rank == "D", f"{axis} → {rank}"
                assert score is None

    def test_five_crown_iff_all_s(self):
        for combo in itertools.product(AXIS_RANKS, repeat=5):
            axis = dict(zip(AXIS_FIELDS, combo))
            rank, _ = calculate_overall_rank(axis, "その他", TABLES)
            assert (rank == "S+") == all(r == "S" for r in combo), f"{axis} → {rank}"

    def test_scenario_c_resolves_by_weights(self):
        axis = dict(priceRank="S", costEffectivenessRank="S", contentRank="S",
                    evidenceRank="A", safetyRank="A")
        assert not is_five_crown(axis)
        rank, score = calculate_overall_rank(axis, "その他", TABLES)
        assert score == pytest.approx(91.75)
        assert rank == "S"

    def test_category_weights_apply(self):
        axis = dict(priceRank="D", costEffectivenessRank="S", contentRank="B",
                    evidenceRank="A", safetyRank="C")
        even = weighted_score(axis, TABLES.weights_for("ミネラル"))
        assert even == pytest.approx((50 + 100 + 75 + 85 + 65) / 5)

    def test_reference_bonus_capped(self):
        m = make_metrics(ev="S", references=list(range(5)))
        evidence, _ = adjusted_scores(m)
        assert evidence == 100

    def test_warning_penalty(self):
        m = make_metrics(sf="A", warnings=["a", "b", "c"])
        _, safety = adjusted_scores(m)
        assert safety == 80

    def test_overall_tier_score(self):
        assert overall_tier_score(ratings()) == 15
        assert overall_tier_score(dict(zip(AXIS_FIELDS, "SSSSS"))) == 25


class TestRankGroup:
    def test_group_ranks_and_scores(self):
        group = [
            make_metrics("cheap", price=500, amount=600, ev="S", sf="S"),
            make_metrics("mid", price=1000, amount=100, ev="B", sf="A"),
            make_metrics("dear", price=3000, amount=50, ev="A", sf="D", warnings=["a", "b", "c"]),
        ]
        ranked = {r.product_id: r for r in rank_group(group, TABLES)}
        cheap = ranked["cheap"].tier_ratings
        assert cheap.priceRank == "S"
        assert cheap.costEffectivenessRank == "S"
        assert cheap.contentRank == "S"
        assert cheap.overallRank == "S+"
        assert ranked["dear"].tier_ratings.safetyRank == "D"
        assert ranked["dear"].tier_ratings.overallRank == "D"
        assert ranked["mid"].scores.evidence == 75

    def test_adjusted_scores_are_reported(self):
        m = make_metrics(ev="B", references=list(range(6)))
        (r,) = rank_group([m], TABLES)
        assert r.scores.evidence == 85
        assert r.tier_ratings.evidenceRank == "A"
        assert r.scores.overall == 93, "92.5 rounds half up"

    def test_empty_group(self):
        assert rank_group([], TABLES) == []

    def test_deterministic(self):
        group = [make_metrics(str(i), price=p) for i, p in enumerate([900, 1200, 700, 1200])]
        assert rank_group(group, TABLES) == rank_group(group, TABLES)
