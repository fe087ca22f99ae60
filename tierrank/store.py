# tierrank/store.py — Product loading + rank write-back capability
import copy
import json
import os
import threading
from typing import Dict, List, Mapping, Optional

from tierrank.models import ProductRecord, Scores, TierRatings


class RankStore:
    """
    Write-back capability handed to the pipeline.

    `write_ranks` replaces one product's rank fields in a single commit and
    raises on failure; the pipeline retries and tallies per product.
    `patch_fields` commits an integrity-fix patch the same way.
    """

    def write_ranks(self, product_id: str, tier_ratings: TierRatings,
                    scores: Scores, calculated_at: str) -> None:
        raise NotImplementedError

    def patch_fields(self, product_id: str, fields: Mapping) -> None:
        raise NotImplementedError


def _merge(doc: dict, fields: Mapping):
    for key, value in fields.items():
        if isinstance(value, Mapping) and isinstance(doc.get(key), dict):
            _merge(doc[key], value)
        else:
            doc[key] = copy.deepcopy(value)


class JsonFileStore(RankStore):
    """
    Product documents kept in one JSON file.

    Every write is committed on its own: the document is changed in memory and
    the file is rewritten atomically (temp file + os.replace). A failed commit
    restores the in-memory document and re-raises, so a write counted as a
    success is always on disk.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        self._envelope = data if isinstance(data, dict) else None
        self._docs = _documents(data, path)
        self._by_id: Dict[str, dict] = {str(d.get("_id")): d for d in self._docs}

    def _update(self, product_id: str, change) -> None:
        with self._lock:
            doc = self._by_id.get(product_id)
            if doc is None:
                raise KeyError(f"product {product_id} not in {self.path}")
            before = copy.deepcopy(doc)
            change(doc)
            try:
                self._commit(self.path)
            except Exception:
                doc.clear()
                doc.update(before)
                raise

    def write_ranks(self, product_id, tier_ratings, scores, calculated_at):
        def change(doc):
            doc["tierRatings"] = tier_ratings.to_dict()
            doc["scores"] = scores.to_dict()
            doc["lastCalculatedAt"] = calculated_at
        self._update(product_id, change)

    def patch_fields(self, product_id, fields):
        self._update(product_id, lambda doc: _merge(doc, fields))

    def _commit(self, path: str) -> None:
        tmp = path + ".tmp"
        data = self._docs if self._envelope is None else dict(self._envelope, products=self._docs)
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def save(self, path: Optional[str] = None) -> str:
        """Write every document to `path` (a copy, or the store file itself)."""
        path = path or self.path
        with self._lock:
            self._commit(path)
        print(f"💾  Products saved → {path}")
        return path


def _documents(data, path: str) -> List[dict]:
    if isinstance(data, dict):
        data = data.get("products", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of products")
    return data


def _read_documents(path: str) -> List[dict]:
    with open(path, encoding="utf-8") as f:
        return _documents(json.load(f), path)


def in_stock(doc: dict) -> bool:
    return doc.get("availability", "in-stock") == "in-stock"


def load_products(path: str) -> List[ProductRecord]:
    """Read product documents and keep in-stock ones, in file order."""
    docs = _read_documents(path)
    kept = [d for d in docs if in_stock(d)]
    if len(kept) < len(docs):
        print(f"  Availability filter: {len(docs)} → {len(kept)} "
              f"(removed {len(docs) - len(kept)})")
    return [ProductRecord.from_dict(d) for d in kept]
