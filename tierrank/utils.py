# tierrank/utils.py — Shared utility functions
from datetime import datetime, timezone
from typing import Optional

import numpy as np


def _safe(val, default=np.nan):
    """Safely convert value to float, returning default for None/NaN/non-numeric."""
    if val is None or isinstance(val, bool):
        return default
    try:
        f = float(val)
        return default if np.isnan(f) else f
    except (TypeError, ValueError):
        return default


def _finite(*vals) -> bool:
    return all(v is not None and np.isfinite(v) for v in vals)


def parse_timestamp(val) -> Optional[datetime]:
    """ISO-8601 string (trailing Z allowed) or datetime → aware UTC datetime."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        dt = val
    else:
        try:
            dt = datetime.fromisoformat(str(val).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def short(name: str, width: int = 60) -> str:
    name = name or ""
    return name if len(name) <= width else name[:width] + "..."


def round_half_up(val: float) -> int:
    """Nearest integer, .5 rounding up (Python's round() goes to even)."""
    return int(np.floor(val + 0.5))
