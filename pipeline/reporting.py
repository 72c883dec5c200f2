"""
pipeline/reporting.py
---------------------
Dashboard and annual-report aggregations over the stored rows.

All views share one preparation step (``reporting_frame``):

1. optional inclusive date filter; once a bound is given, rows without
   a usable date are dropped,
2. rows empty on every activity column (Date, Energykhw, Litres_Fuel,
   CloudHours, StorageCloud, DataTransferCloud, Price) are dropped,
3. exact duplicates (same full-row key as the dedup gate) are dropped,
   first occurrence wins.

Numbers in the sheet may be text with a decimal comma (``"12,5"``) or a
unit suffix (``"120 kWh"``); ``to_number`` reads the leading numeric
prefix and falls back to 0.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from pipeline import config
from pipeline.dedup import build_row_key
from pipeline.models import (
    AmountStats,
    CategorySpend,
    DashboardSummary,
    HistogramBucket,
    MonthlyPoint,
    SHEET_HEADERS,
)
from pipeline.store import pad_row

log = logging.getLogger("pipeline.reporting")

ACTIVITY_COLUMNS = [
    "Date", "Energykhw", "Litres_Fuel", "CloudHours",
    "StorageCloud", "DataTransferCloud", "Price",
]

# output metric -> sheet column
METRICS: Dict[str, str] = {
    "totalPriceEur":       "Price",
    "totalEnergyKwh":      "Energykhw",
    "totalFuelLitres":     "Litres_Fuel",
    "totalCloudHours":     "CloudHours",
    "totalStorageGbMonth": "StorageCloud",
    "totalTransferGb":     "DataTransferCloud",
}

UNKNOWN_MONTH = "Unknown"
UNCATEGORIZED = "Uncategorized"
HISTOGRAM_BUCKETS = 10

_FLOAT_PREFIX = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------
def to_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    s = str(value).replace(",", ".", 1)
    m = _FLOAT_PREFIX.match(s)
    return float(m.group(0)) if m else 0.0


def _is_empty_cell(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (int, float)):
        return value == 0 or (isinstance(value, float) and math.isnan(value))
    return False


def _has_date(d: Any) -> bool:
    return d is not None and not pd.isna(d)


def parse_row_date(value: Any, tz_name: str = config.PIPELINE_TIMEZONE) -> Optional[pd.Timestamp]:
    """Sheet date cell -> naive local timestamp, or None when absent/unparsable."""
    if _is_empty_cell(value) or isinstance(value, (bool, int, float)):
        return None
    ts = pd.to_datetime(str(value), errors="coerce")
    if pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(tz_name).tz_localize(None)
    return ts


def parse_bound(value: Optional[str], tz_name: str = config.PIPELINE_TIMEZONE) -> Optional[pd.Timestamp]:
    """Filter bound; blank means open.  Raises ValueError when unparsable."""
    if value is None or not str(value).strip():
        return None
    ts = pd.to_datetime(str(value).strip())
    if pd.isna(ts):
        raise ValueError(f"invalid date bound: {value!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_convert(tz_name).tz_localize(None)
    return ts


def year_bounds(year: int) -> tuple:
    return f"{year:04d}-01-01", f"{year:04d}-12-31"


# ---------------------------------------------------------------------------
# Frame preparation
# ---------------------------------------------------------------------------
def _empty_frame() -> pd.DataFrame:
    return pd.DataFrame(columns=SHEET_HEADERS + ["_date", "_month", "_category"] + list(METRICS))


def reporting_frame(
    rows: Sequence[Sequence[Any]],
    start: Optional[str] = None,
    end: Optional[str] = None,
    tz_name: str = config.PIPELINE_TIMEZONE,
) -> pd.DataFrame:
    start_ts, end_ts = parse_bound(start, tz_name), parse_bound(end, tz_name)
    filtered = start_ts is not None or end_ts is not None

    df = pd.DataFrame([pad_row(r) for r in rows], columns=SHEET_HEADERS, dtype=object)
    if df.empty:
        return _empty_frame()

    keys = [build_row_key(r) for r in df[SHEET_HEADERS].itertuples(index=False, name=None)]
    df["_key"] = keys
    df["_date"] = pd.Series([parse_row_date(v, tz_name) for v in df["Date"]], index=df.index, dtype=object)

    def in_range(d: Any) -> bool:
        if not _has_date(d):
            return not filtered
        if start_ts is not None and d < start_ts:
            return False
        if end_ts is not None and d > end_ts:
            return False
        return True

    keep = df["_date"].map(in_range).astype(bool)
    all_empty = df[ACTIVITY_COLUMNS].apply(lambda col: col.map(_is_empty_cell)).all(axis=1)
    df = df[keep & ~all_empty].drop_duplicates(subset="_key", keep="first")
    if df.empty:
        return _empty_frame()

    df = df.copy()
    for metric, column in METRICS.items():
        df[metric] = df[column].map(to_number).astype(float)
    df["_month"] = df["_date"].map(lambda d: d.strftime("%Y-%m") if _has_date(d) else UNKNOWN_MONTH)
    df["_category"] = df["Category"].map(
        lambda c: str(c).strip() if not _is_empty_cell(c) and str(c).strip() else UNCATEGORIZED
    )
    return df.drop(columns=["_key"])


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------
def dashboard_summary(rows, start: Optional[str] = None, end: Optional[str] = None) -> DashboardSummary:
    df = reporting_frame(rows, start, end)
    if df.empty:
        return DashboardSummary()
    totals = {metric: float(df[metric].sum()) for metric in METRICS}
    return DashboardSummary(totalInvoices=int(len(df)), **totals)


def monthly_time_series(rows, start: Optional[str] = None, end: Optional[str] = None) -> List[MonthlyPoint]:
    df = reporting_frame(rows, start, end)
    if df.empty:
        return []
    grouped = df.groupby("_month")[list(METRICS)].sum().sort_index()
    return [
        MonthlyPoint(month=str(month), **{m: float(v) for m, v in values.items()})
        for month, values in grouped.iterrows()
    ]


def spend_by_category(rows, start: Optional[str] = None, end: Optional[str] = None) -> List[CategorySpend]:
    df = reporting_frame(rows, start, end)
    if df.empty:
        return []
    grouped = df.groupby("_category")["totalPriceEur"].sum().sort_index()
    return [CategorySpend(category=str(cat), totalPriceEur=float(total)) for cat, total in grouped.items()]


def invoice_amounts(rows, start: Optional[str] = None, end: Optional[str] = None) -> List[float]:
    """Positive prices of the kept rows, in sheet order."""
    df = reporting_frame(rows, start, end)
    if df.empty:
        return []
    return [float(v) for v in df["totalPriceEur"] if v > 0]


def available_years(rows, tz_name: str = config.PIPELINE_TIMEZONE) -> List[int]:
    years = set()
    for row in rows:
        cells = pad_row(row)
        d = parse_row_date(cells[SHEET_HEADERS.index("Date")], tz_name)
        if _has_date(d):
            years.add(int(d.year))
    return sorted(years)


# ---------------------------------------------------------------------------
# Distribution helpers
# ---------------------------------------------------------------------------
def compute_simple_stats(values: Sequence[float]) -> AmountStats:
    if not values:
        return AmountStats()
    ordered = sorted(float(v) for v in values)
    n = len(ordered)
    return AmountStats(
        count=n,
        min=ordered[0],
        max=ordered[-1],
        mean=sum(ordered) / n,
        median=ordered[math.floor(0.5 * (n - 1))],
        p90=ordered[math.floor(0.9 * (n - 1))],
    )


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def histogram_buckets(values: Sequence[float], bucket_count: int = HISTOGRAM_BUCKETS) -> List[HistogramBucket]:
    if not values:
        return []
    ordered = sorted(float(v) for v in values)
    lo, hi = ordered[0], ordered[-1]
    if lo == hi:
        return [HistogramBucket(label=str(_round_half_up(lo)), count=len(ordered))]

    span = hi - lo
    if span < bucket_count:
        bucket_count = max(3, math.floor(span) or 3)
    size = span / bucket_count

    counts = [0] * bucket_count
    for v in ordered:
        idx = math.floor((v - lo) / size)
        counts[min(max(idx, 0), bucket_count - 1)] += 1

    buckets = []
    for i, count in enumerate(counts):
        start = lo + i * size
        buckets.append(HistogramBucket(
            label=f"{_round_half_up(start)} - {_round_half_up(start + size)}",
            count=count,
        ))
    return buckets
