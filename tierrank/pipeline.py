# tierrank/pipeline.py — Batch orchestration (preview / apply, integrity fixes)
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from tqdm import tqdm

from tierrank.composite import rank_group
from tierrank.config import CFG, EngineTables
from tierrank.grouping import group_by_ingredient
from tierrank.history import RankChangeHistory, RankHistoryLog, record_rank_change
from tierrank.integrity import IntegrityCheckResult, is_outdated, propose_integrity_fixes
from tierrank.metrics import build_metrics, canonical_name
from tierrank.models import ProductRecord, RankedProduct, SkipRecord, TierRatings
from tierrank.store import RankStore
from tierrank.summary import print_run_report
from tierrank.utils import iso, short, utc_now


@dataclass(frozen=True)
class RankUpdate:
    record: ProductRecord
    ranked: RankedProduct

    @property
    def product_id(self) -> str:
        return self.record.product_id

    @property
    def old_ratings(self) -> Optional[TierRatings]:
        return self.record.stored_ratings()


@dataclass
class RunResult:
    ranked: List[RankedProduct] = field(default_factory=list)
    updates: List[RankUpdate] = field(default_factory=list)
    skipped: List[SkipRecord] = field(default_factory=list)
    applied: bool = False
    success: int = 0
    failure: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)
    history: List[RankChangeHistory] = field(default_factory=list)


def needs_update(record: ProductRecord, ranked: RankedProduct) -> bool:
    """
    Stored ratings absent or different, stored scores absent / zero / the 50
    default, or the stored calculation is missing or outdated.
    """
    stored = record.stored_ratings()
    if stored is None or stored != ranked.tier_ratings:
        return True
    scores = record.scores if isinstance(record.scores, dict) else {}
    for key in ("evidence", "safety"):
        val = scores.get(key)
        if not val or val == 50:
            return True
    # an unchanged result still has to refresh lastCalculatedAt
    return not record.last_calculated_at or is_outdated(record)


def compute_rankings(records: Sequence[ProductRecord], tables: EngineTables,
                     normalize: Callable[[str], str] = canonical_name,
                     verbose: bool = True, **trim
                     ) -> Tuple[List[RankedProduct], List[SkipRecord]]:
    """Extract → group → rank. Pure: nothing is written. Output follows input order."""
    metrics, skipped = build_metrics(records, tables, normalize, verbose=verbose)
    groups = group_by_ingredient(metrics)
    if verbose:
        print(f"  {len(metrics)} products in {len(groups)} ingredient groups "
              f"({len(skipped)} skipped)")

    by_id = {}
    for members in groups.values():
        for r in rank_group(members, tables, **trim):
            by_id[r.product_id] = r
    order = [m.product_id for m in metrics]
    return [by_id[pid] for pid in order], skipped


def _write_one(store: RankStore, update: RankUpdate, calculated_at: str,
               retries: int) -> Tuple[bool, Optional[str]]:
    last_error = None
    for _ in range(retries + 1):
        try:
            store.write_ranks(update.product_id, update.ranked.tier_ratings,
                              update.ranked.scores, calculated_at)
            return True, None
        except Exception as e:
            last_error = f"{type(e).__name__}: {e}"
    return False, last_error


def apply_updates(updates: Sequence[RankUpdate], store: RankStore, result: RunResult,
                  history_log: Optional[RankHistoryLog] = None, now=None) -> RunResult:
    """
    One independent write per product, fanned out over a thread pool.

    A failed product never aborts the others; history events are recorded
    here on the collecting thread, only for successful writes that replaced
    an existing valid rank set.
    """
    now = now or utc_now()
    calculated_at = iso(now)
    retries = CFG["write_retries"]

    with ThreadPoolExecutor(max_workers=CFG["max_workers_write"]) as executor:
        futures = {executor.submit(_write_one, store, u, calculated_at, retries): u
                   for u in updates}
        for future in tqdm(as_completed(futures), total=len(futures), desc="Writing ranks"):
            u = futures[future]
            ok, err = future.result()
            if not ok:
                result.failure += 1
                result.failures.append((u.product_id, err))
                print(f"  ❌  {short(u.record.name)} [{u.product_id}]: {err}")
                continue
            result.success += 1
            old = u.old_ratings
            if old is not None and old != u.ranked.tier_ratings:
                entry = record_rank_change(u.product_id, u.record.name, old,
                                           u.ranked.tier_ratings, "auto-calculation", now=now)
                result.history.append(entry)
                if history_log is not None:
                    history_log.append(entry)
    return result


@dataclass
class FixResult:
    applied: Dict[str, dict] = field(default_factory=dict)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    history: List[RankChangeHistory] = field(default_factory=list)


def apply_integrity_fixes(records: Sequence[ProductRecord],
                          results: Mapping[str, IntegrityCheckResult], store: RankStore,
                          history_log: Optional[RankHistoryLog] = None,
                          fix_mismatches: bool = True, now=None) -> FixResult:
    """
    Commit each product's integrity-fix patch through `store`, one product at a time.

    Corrected tierRatings fields are recorded as `fix` history events once the
    patch is committed. A failed patch is reported and skipped.
    """
    now = now or utc_now()
    out = FixResult()
    for rec in records:
        res = results.get(rec.product_id)
        if res is None:
            continue
        patch = propose_integrity_fixes(res, fix_mismatches=fix_mismatches)
        if not patch:
            continue
        try:
            store.patch_fields(rec.product_id, patch)
        except Exception as e:
            err = f"{type(e).__name__}: {e}"
            out.failures.append((rec.product_id, err))
            print(f"  ❌  {short(rec.name)} [{rec.product_id}]: {err}")
            continue
        out.applied[rec.product_id] = patch
        print(f"  🔧  {short(rec.name)} [{rec.product_id}]: {', '.join(sorted(patch))}")

        rank_patch = patch.get("tierRatings")
        if rank_patch:
            old = dict(rec.tier_ratings or {})
            entry = record_rank_change(rec.product_id, rec.name, old, {**old, **rank_patch},
                                       "fix", reason="integrity fix", now=now)
            out.history.append(entry)
            if history_log is not None:
                history_log.append(entry)
    return out


def run_pipeline(records: Sequence[ProductRecord], tables: EngineTables,
                 store: Optional[RankStore] = None, apply: bool = False,
                 history_log: Optional[RankHistoryLog] = None,
                 normalize: Callable[[str], str] = canonical_name,
                 now=None, verbose: bool = True, **trim) -> RunResult:
    """Preview (default) computes and reports only; apply also writes every needed update."""
    if apply and store is None:
        raise ValueError("apply mode needs a RankStore")

    if verbose:
        print("=" * 65)
        print(f"  TIER RANK CALCULATION  ({'APPLY' if apply else 'PREVIEW'})")
        print(f"  {len(records)} products")
        print("=" * 65)

    ranked, skipped = compute_rankings(records, tables, normalize, verbose, **trim)
    records_by_id = {r.product_id: r for r in records}
    updates = [RankUpdate(records_by_id[r.product_id], r)
               for r in ranked if needs_update(records_by_id[r.product_id], r)]
    result = RunResult(ranked=ranked, updates=updates, skipped=skipped, applied=apply)

    if apply and updates:
        apply_updates(updates, store, result, history_log, now)

    if verbose:
        print_run_report(result)
    return result
