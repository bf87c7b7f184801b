"""
Temporal pattern analysis: bucket incidents by hour, day, weekday or month,
per incident category, then fit a least-squares trend to each category's
series.

The same buckets feed the reporting statistics: totals, verified counts and
average severity per period, category and type.

Weekday output is always zero-filled to seven entries per category, Sunday
first, so the trend sees an evenly spaced series.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .params import Checker, TimeRange
from .records import IncidentStatus, PerformanceMonitor, PointFilter, iso, utcnow

logger = logging.getLogger(__name__)

GROUPINGS = ("hour", "day", "weekday", "month")
STATISTICS_GROUPINGS = ("hour", "day", "week", "month")
WEEKDAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def linear_trend(values: Sequence[float]) -> float:
    """OLS slope of values against x = 1..n."""
    n = len(values)
    if n < 2:
        return 0.0
    x = np.arange(1, n + 1, dtype=float)
    y = np.asarray(values, dtype=float)
    denom = n * float((x * x).sum()) - float(x.sum()) ** 2
    if denom == 0:
        return 0.0
    return (n * float((x * y).sum()) - float(x.sum()) * float(y.sum())) / denom


def variability(values: Sequence[float]) -> float:
    """Coefficient of variation (population std / mean); 0 for a zero mean."""
    if len(values) < 2:
        return 0.0
    y = np.asarray(values, dtype=float)
    mean = float(y.mean())
    if mean == 0:
        return 0.0
    return float(y.std()) / mean


def trend_significance(trend: float, var: float, points: int) -> str:
    magnitude = abs(trend)
    if points < 5:
        return "insufficient-data"
    if magnitude < 0.1 and var > 0.5:
        return "not-significant"
    if magnitude > 0.5 and var < 0.3:
        return "highly-significant"
    if magnitude > 0.2:
        return "significant"
    return "moderate"


def interpret(count_trend: float, severity_trend: float, significance: str) -> str:
    direction = "increasing" if count_trend > 0.1 else "decreasing" if count_trend < -0.1 else "stable"
    severity = "worsening" if severity_trend > 0.05 else "improving" if severity_trend < -0.05 else "stable"
    text = f"Incident frequency is {direction}"
    if severity != "stable":
        text += f" with {severity} severity"
    if significance == "highly-significant":
        text += " (high confidence)"
    elif significance == "not-significant":
        text += " (low confidence due to variability)"
    return text


@dataclass(frozen=True)
class TemporalParams:
    time_range: TimeRange
    group_by: str = "day"
    type_ids: Tuple[int, ...] = ()

    @classmethod
    def parse(cls, query: Mapping[str, Any]) -> "TemporalParams":
        c = Checker()
        tr = c.time_range("time_range", query.get("time_range"), "30d")
        group_by = c.choice("group_by", query.get("group_by"), GROUPINGS, "day")
        type_ids = c.id_list("incident_types", query.get("incident_types"))
        c.raise_if_errors("Invalid temporal parameters")
        return cls(tr, group_by, type_ids)


def _bucket(ts: pd.Series, group_by: str) -> pd.Series:
    if group_by == "hour":
        return ts.dt.floor("h")
    if group_by == "week":
        # weeks start on Monday
        return ts.dt.to_period("W").dt.start_time
    if group_by == "weekday":
        # pandas counts Monday as 0
        return (ts.dt.dayofweek + 1) % 7
    if group_by == "month":
        return ts.dt.to_period("M").dt.to_timestamp()
    return ts.dt.floor("D")


def _period_label(value: Any, group_by: str) -> str:
    if group_by == "weekday":
        return WEEKDAYS[int(value)]
    return pd.Timestamp(value).isoformat()


@dataclass(frozen=True)
class StatisticsParams:
    time_range: TimeRange
    group_by: str = "day"
    include_expired: bool = False

    @classmethod
    def parse(cls, query: Mapping[str, Any]) -> "StatisticsParams":
        c = Checker()
        tr = c.time_range("time_range", query.get("time_range"), "30d")
        group_by = c.choice("group_by", query.get("group_by"), STATISTICS_GROUPINGS, "day")
        include_expired = c.flag("include_expired", query.get("include_expired"))
        c.raise_if_errors("Invalid statistics parameters")
        return cls(tr, group_by, include_expired)


class TemporalPatternAnalyzer:
    def __init__(self, repository, monitor: Optional[PerformanceMonitor] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.monitor = monitor or PerformanceMonitor()
        self.clock = clock

    async def analyze(self, params: TemporalParams) -> Dict[str, Any]:
        t0 = time.perf_counter()
        now = self.clock()
        logger.info("Temporal: group_by=%s time_range=%s types=%s",
                    params.group_by, params.time_range.original, list(params.type_ids))
        incidents = await self.repository.select(PointFilter(
            statuses=(IncidentStatus.ACTIVE,),
            since=now - params.time_range.delta,
            type_ids=params.type_ids,
            newest_first=False,
            now=now,
        ))
        df = pd.DataFrame({
            "created_at": pd.to_datetime([i.created_at for i in incidents]),
            "severity": [i.severity for i in incidents],
            "category": [i.category or "other" for i in incidents],
            "type_ids": [i.type_id for i in incidents],
            "color": [i.incident_type.color if i.incident_type else None for i in incidents],
        })
        patterns = self.bucket_patterns(df, params.group_by)
        trends = self.category_trends(patterns)

        elapsed = (time.perf_counter() - t0) * 1000.0
        self.monitor.record("temporal_analysis", elapsed, pattern_count=len(patterns), group_by=params.group_by)
        logger.info("Temporal: %d buckets, %d trends in %.1f ms", len(patterns), len(trends), elapsed)
        return {
            "patterns": patterns,
            "trends": trends,
            "metadata": {
                "time_range": params.time_range.to_dict(),
                "group_by": params.group_by,
                "incident_types": list(params.type_ids),
                "total_patterns": len(patterns),
                "execution_ms": round(elapsed, 2),
                "analysis_date": iso(now),
            },
        }

    async def statistics(self, params: StatisticsParams) -> Dict[str, Any]:
        """Reporting totals per (period, category, type), newest period first."""
        t0 = time.perf_counter()
        now = self.clock()
        statuses = (IncidentStatus.ACTIVE, IncidentStatus.EXPIRED) if params.include_expired else (IncidentStatus.ACTIVE,)
        incidents = await self.repository.select(PointFilter(
            statuses=statuses,
            since=now - params.time_range.delta,
            include_expired=params.include_expired,
            newest_first=False,
            now=now,
        ))
        df = pd.DataFrame({
            "created_at": pd.to_datetime([i.created_at for i in incidents]),
            "severity": [i.severity for i in incidents],
            "verified": [bool(i.verified) for i in incidents],
            "category": [i.category or "other" for i in incidents],
            "incident_type": [i.incident_type.name if i.incident_type else None for i in incidents],
        })
        rows = self.period_statistics(df, params.group_by)

        elapsed = (time.perf_counter() - t0) * 1000.0
        self.monitor.record("incident_statistics", elapsed, row_count=len(rows), group_by=params.group_by)
        logger.info("Statistics: %d rows over %d incidents in %.1f ms", len(rows), len(incidents), elapsed)
        return {
            "statistics": rows,
            "parameters": {
                "time_range": params.time_range.to_dict(),
                "group_by": params.group_by,
                "include_expired": params.include_expired,
            },
        }

    @staticmethod
    def period_statistics(df: pd.DataFrame, group_by: str) -> List[Dict[str, Any]]:
        if df.empty:
            return []
        df = df.assign(bucket=_bucket(df["created_at"], group_by), incident_type=df["incident_type"].fillna("unknown"))
        grouped = df.groupby(["bucket", "category", "incident_type"]).agg(
            total_incidents=("severity", "size"),
            verified_incidents=("verified", "sum"),
            avg_severity=("severity", "mean"),
        ).reset_index()
        grouped = grouped.sort_values(["bucket", "total_incidents", "category", "incident_type"],
                                      ascending=[False, False, True, True])
        return [
            {
                "time_period": pd.Timestamp(r.bucket).isoformat(),
                "category": r.category,
                "incident_type": r.incident_type,
                "total_incidents": int(r.total_incidents),
                "verified_incidents": int(r.verified_incidents),
                "avg_severity": round(float(r.avg_severity), 2),
            }
            for r in grouped.itertuples(index=False)
        ]

    @staticmethod
    def bucket_patterns(df: pd.DataFrame, group_by: str) -> List[Dict[str, Any]]:
        """Per (bucket, category) statistics, ordered by bucket then category."""
        if df.empty:
            return []
        df = df.assign(bucket=_bucket(df["created_at"], group_by), hour=df["created_at"].dt.hour)
        grouped = df.groupby(["bucket", "category"]).agg(
            incident_count=("severity", "size"),
            avg_severity=("severity", "mean"),
            severity_stddev=("severity", "std"),
            min_severity=("severity", "min"),
            max_severity=("severity", "max"),
            type_ids=("type_ids", lambda s: sorted({int(v) for v in s})),
            color=("color", "first"),
            hour_distribution=("hour", list),
        ).reset_index()
        totals = grouped.groupby("category")["incident_count"].transform("sum")
        grouped["relative_frequency"] = grouped["incident_count"] / totals

        rows: Dict[Tuple[Any, str], Dict[str, Any]] = {}
        for r in grouped.itertuples(index=False):
            rows[(r.bucket, r.category)] = {
                "period": _period_label(r.bucket, group_by),
                "category": r.category,
                "incident_count": int(r.incident_count),
                "avg_severity": round(float(r.avg_severity), 2),
                "severity_stddev": 0.0 if pd.isna(r.severity_stddev) else round(float(r.severity_stddev), 2),
                "min_severity": int(r.min_severity),
                "max_severity": int(r.max_severity),
                "type_ids": list(r.type_ids),
                "color": r.color if isinstance(r.color, str) else None,
                "relative_frequency": float(r.relative_frequency),
                "hour_distribution": [int(h) for h in r.hour_distribution],
            }

        categories = sorted(grouped["category"].unique())
        if group_by == "weekday":
            buckets: List[Any] = list(range(7))
            colors = {key[1]: row["color"] for key, row in rows.items() if row["color"]}
            out = []
            for day in buckets:
                for cat in categories:
                    out.append(rows.get((day, cat)) or {
                        "period": WEEKDAYS[day],
                        "category": cat,
                        "incident_count": 0,
                        "avg_severity": 0.0,
                        "severity_stddev": 0.0,
                        "min_severity": 0,
                        "max_severity": 0,
                        "type_ids": [],
                        "color": colors.get(cat) or "#999999",
                        "relative_frequency": 0.0,
                        "hour_distribution": [],
                    })
            return out
        return [rows[key] for key in sorted(rows, key=lambda k: (k[0], k[1]))]

    @staticmethod
    def category_trends(patterns: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Trend summary per category; categories with fewer than two buckets are skipped."""
        series: Dict[str, List[Dict[str, Any]]] = {}
        for p in patterns:
            series.setdefault(p["category"], []).append(p)

        trends = []
        for category in sorted(series):
            data = series[category]
            if len(data) < 2:
                continue
            counts = [d["incident_count"] for d in data]
            severities = [d["avg_severity"] for d in data]
            freqs = [d["relative_frequency"] for d in data]
            count_trend = linear_trend(counts)
            severity_trend = linear_trend(severities)
            count_var = variability(counts)
            significance = trend_significance(count_trend, count_var, len(data))
            peak = max(data, key=lambda d: d["incident_count"])
            trends.append({
                "category": category,
                "count_trend": round(count_trend, 3),
                "severity_trend": round(severity_trend, 3),
                "frequency_trend": round(linear_trend(freqs), 3),
                "count_variability": round(count_var, 3),
                "severity_variability": round(variability(severities), 3),
                "trend_significance": significance,
                "interpretation": interpret(count_trend, severity_trend, significance),
                "data_points": len(data),
                "peak_period": peak["period"],
                "average_count": round(sum(counts) / len(counts), 2),
                "average_severity": round(sum(severities) / len(severities), 2),
            })
        return trends
