from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from . import geo
from .hotspots import MAX_GRID_CELLS, grid_frame
from .params import Checker
from .records import Bounds, IncidentStatus, PerformanceMonitor, PointFilter, iso, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterParams:
    bounds: Optional[Bounds] = None
    cluster_count: int = 10
    min_severity: int = 1
    include_expired: bool = False

    @classmethod
    def parse(cls, query: Mapping[str, Any]) -> "ClusterParams":
        c = Checker()
        bounds = c.bounds(query.get("north"), query.get("south"), query.get("east"), query.get("west"))
        k = c.integer("cluster_count", query.get("cluster_count"), 2, 50, 10)
        min_sev = c.integer("min_severity", query.get("min_severity"), 1, 5, 1)
        include_expired = c.flag("include_expired", query.get("include_expired"))
        c.raise_if_errors("Invalid cluster parameters")
        return cls(bounds, k, min_sev, include_expired)


@dataclass(frozen=True)
class HeatmapParams:
    bounds: Optional[Bounds] = None
    grid_size: int = 50
    min_severity: int = 1
    time_range_hours: int = 24
    include_expired: bool = False

    @classmethod
    def parse(cls, query: Mapping[str, Any], max_grid_cells: float = MAX_GRID_CELLS) -> "HeatmapParams":
        c = Checker()
        bounds = c.bounds(query.get("north"), query.get("south"), query.get("east"), query.get("west"))
        grid = c.integer("grid_size", query.get("grid_size"), 10, 200, 50)
        min_sev = c.integer("min_severity", query.get("min_severity"), 1, 5, 1)
        hours = c.integer("time_range", query.get("time_range"), 1, 168, 24)
        include_expired = c.flag("include_expired", query.get("include_expired"))
        c.grid_guard(bounds, grid, max_grid_cells)
        c.raise_if_errors("Invalid heatmap parameters")
        return cls(bounds, grid, min_sev, hours, include_expired)


class ClusterHeatmapGenerator:
    """Map-ready cluster summaries and weighted heatmap points."""

    def __init__(self, repository, store, monitor: Optional[PerformanceMonitor] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.store = store
        self.monitor = monitor or PerformanceMonitor()
        self.clock = clock

    async def clusters(self, params: ClusterParams) -> Dict[str, Any]:
        t0 = time.perf_counter()
        now = self.clock()
        logger.info("Clusters: k=%d min_severity=%d bounds=%s", params.cluster_count, params.min_severity,
                    params.bounds.to_dict() if params.bounds else None)
        incidents = await self.repository.select(PointFilter(
            statuses=(IncidentStatus.ACTIVE,),
            bounds=params.bounds,
            min_severity=params.min_severity,
            include_expired=params.include_expired,
            now=now,
        ))
        clusters: List[Dict[str, Any]] = []
        if incidents:
            labels = self.store.kmeans([(i.latitude, i.longitude) for i in incidents], params.cluster_count)
            df = pd.DataFrame({
                "cluster": labels,
                "lat": [i.latitude for i in incidents],
                "lon": [i.longitude for i in incidents],
                "severity": [i.severity for i in incidents],
                "category": [i.category for i in incidents],
                "created_at": pd.to_datetime([i.created_at for i in incidents]),
            })
            for cid, g in df.groupby("cluster"):
                clusters.append({
                    "cluster_id": int(cid),
                    "incident_count": int(len(g)),
                    "avg_severity": round(float(g["severity"].mean()), 2),
                    "max_severity": int(g["severity"].max()),
                    "min_severity": int(g["severity"].min()),
                    "center": {"latitude": float(g["lat"].mean()), "longitude": float(g["lon"].mean())},
                    "categories": sorted({c for c in g["category"] if c}),
                    "timespan": {
                        "oldest": iso(g["created_at"].min().to_pydatetime()),
                        "newest": iso(g["created_at"].max().to_pydatetime()),
                    },
                })
            clusters.sort(key=lambda c: (-c["incident_count"], c["cluster_id"]))

        elapsed = (time.perf_counter() - t0) * 1000.0
        self.monitor.record("clustering", elapsed, cluster_count=len(clusters))
        logger.info("Clusters: %d clusters over %d incidents in %.1f ms", len(clusters), len(incidents), elapsed)
        return {
            "clusters": clusters,
            "parameters": {
                "cluster_count": params.cluster_count,
                "min_severity": params.min_severity,
                "include_expired": params.include_expired,
                "bounds": params.bounds.to_dict() if params.bounds else None,
            },
            "total_incidents": len(incidents),
        }

    async def heatmap(self, params: HeatmapParams) -> Dict[str, Any]:
        t0 = time.perf_counter()
        now = self.clock()
        logger.info("Heatmap: grid=%d hours=%d min_severity=%d", params.grid_size, params.time_range_hours,
                    params.min_severity)
        incidents = await self.repository.select(PointFilter(
            statuses=(IncidentStatus.ACTIVE,),
            bounds=params.bounds,
            since=now - timedelta(hours=params.time_range_hours),
            min_severity=params.min_severity,
            include_expired=params.include_expired,
            now=now,
        ))
        points: List[Dict[str, Any]] = []
        if incidents:
            df = grid_frame(incidents, params.grid_size)
            cells = df.groupby(["row", "col"]).agg(count=("id", "size"), severity=("severity", "mean")).reset_index()
            for row, col, count, severity in cells[["row", "col", "count", "severity"]].itertuples(index=False):
                lat, lon = geo.cell_center(int(row), int(col), params.grid_size)
                points.append({
                    "latitude": lat,
                    "longitude": lon,
                    "intensity": round(float(count) * float(severity), 2),
                    "count": int(count),
                    "severity": round(float(severity), 2),
                })
            points.sort(key=lambda p: (-p["intensity"], -p["count"]))

        elapsed = (time.perf_counter() - t0) * 1000.0
        self.monitor.record("heatmap", elapsed, point_count=len(points))
        logger.info("Heatmap: %d points from %d incidents in %.1f ms", len(points), len(incidents), elapsed)
        return {
            "heatmap_points": points,
            "parameters": {
                "grid_size": params.grid_size,
                "time_range_hours": params.time_range_hours,
                "min_severity": params.min_severity,
                "bounds": params.bounds.to_dict() if params.bounds else None,
            },
            "max_intensity": float(np.max([p["intensity"] for p in points])) if points else 0.0,
        }
