"""
Density and hotspot analysis over a regular lat/lon grid.

Incidents are snapped to cells of side 1/grid_size degrees, aggregated per
cell, scored (count x average severity) and classified. Both entry points
check the grid against the requested bounds before touching the store.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from . import geo
from .params import Checker, TimeRange
from .records import Bounds, Incident, IncidentStatus, PerformanceMonitor, PointFilter, iso, utcnow

logger = logging.getLogger(__name__)

RESOLUTIONS = {"low": 50, "medium": 100, "high": 200}
MAX_GRID_CELLS = 200_000


def significance_by_count(count: int) -> str:
    if count >= 10:
        return "high"
    if count >= 5:
        return "medium"
    return "low"


def risk_levels(scores: np.ndarray) -> List[str]:
    """critical >= mean + sample std, high >= mean, else moderate. One cell has no std."""
    if len(scores) == 0:
        return []
    mean = float(np.mean(scores))
    std = float(np.std(scores, ddof=1)) if len(scores) > 1 else None
    out = []
    for s in scores:
        if std is not None and s >= mean + std:
            out.append("critical")
        elif s >= mean:
            out.append("high")
        else:
            out.append("moderate")
    return out


def grid_frame(incidents: List[Incident], cells_per_degree: float) -> pd.DataFrame:
    """One row per incident with its (row, col) grid cell."""
    lats = np.array([i.latitude for i in incidents], dtype=float)
    lons = np.array([i.longitude for i in incidents], dtype=float)
    rows, cols = geo.snap_cells(lats, lons, cells_per_degree)
    return pd.DataFrame({
        "id": [i.id for i in incidents],
        "row": rows,
        "col": cols,
        "severity": [i.severity for i in incidents],
        "type_id": [i.type_id for i in incidents],
        "type_name": [i.incident_type.name if i.incident_type else None for i in incidents],
        "created_at": pd.to_datetime([i.created_at for i in incidents]),
    })


@dataclass(frozen=True)
class HotspotParams:
    time_range: TimeRange
    grid_size: int = 100
    min_incidents: int = 3
    max_points: int = 500
    type_ids: Tuple[int, ...] = ()
    bounds: Optional[Bounds] = None

    @classmethod
    def parse(cls, query: Mapping[str, Any], max_grid_cells: float = MAX_GRID_CELLS) -> "HotspotParams":
        c = Checker()
        tr = c.time_range("time_range", query.get("time_range"), "30d")
        grid = c.integer("grid_size", query.get("grid_size"), 10, 500, 100)
        min_inc = c.integer("min_incidents", query.get("min_incidents"), 1, 50, 3)
        max_pts = c.integer("max_points", query.get("max_points"), 10, 2000, 500)
        type_ids = c.id_list("incident_types", query.get("incident_types"))
        bounds = c.bounds(query.get("north"), query.get("south"), query.get("east"), query.get("west"))
        c.grid_guard(bounds, grid, max_grid_cells)
        c.raise_if_errors("Invalid hotspot parameters")
        return cls(tr, grid, min_inc, max_pts, type_ids, bounds)


@dataclass(frozen=True)
class DensityParams:
    time_range: TimeRange
    resolution: str = "medium"
    normalize: bool = False
    cell_size: Optional[float] = None
    bounds: Optional[Bounds] = None

    @property
    def grid_size(self) -> int:
        return RESOLUTIONS[self.resolution]

    @property
    def cell_deg(self) -> float:
        return self.cell_size if self.cell_size else 1.0 / self.grid_size

    @classmethod
    def parse(cls, query: Mapping[str, Any], max_grid_cells: float = MAX_GRID_CELLS) -> "DensityParams":
        c = Checker()
        tr = c.time_range("time_range", query.get("time_range"), "30d")
        resolution = c.choice("resolution", query.get("resolution"), tuple(RESOLUTIONS), "medium")
        normalize = c.flag("normalize", query.get("normalize"))
        cell_size = c.number("cell_size", query.get("cell_size"), 0.00001, 1.0)
        bounds = c.bounds(query.get("north"), query.get("south"), query.get("east"), query.get("west"))
        per_degree = 1.0 / cell_size if cell_size else RESOLUTIONS[resolution]
        c.grid_guard(bounds, per_degree, max_grid_cells)
        c.raise_if_errors("Invalid density parameters")
        return cls(tr, resolution, normalize, cell_size, bounds)


class HotspotAnalyzer:
    def __init__(self, repository, monitor: Optional[PerformanceMonitor] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.monitor = monitor or PerformanceMonitor()
        self.clock = clock

    async def generate_hotspots(self, params: HotspotParams) -> Dict[str, Any]:
        t0 = time.perf_counter()
        now = self.clock()
        logger.info(
            "Hotspots: time_range=%s grid=%d min_incidents=%d max_points=%d",
            params.time_range.original, params.grid_size, params.min_incidents, params.max_points,
        )
        incidents = await self.repository.select(PointFilter(
            statuses=(IncidentStatus.ACTIVE,),
            since=now - params.time_range.delta,
            bounds=params.bounds,
            type_ids=params.type_ids,
            limit=params.max_points,
            newest_first=True,
            now=now,
        ))
        hotspots = self.score_cells(incidents, params.grid_size, params.min_incidents)

        elapsed = (time.perf_counter() - t0) * 1000.0
        self.monitor.record("hotspot_generation", elapsed, hotspot_count=len(hotspots), grid_size=params.grid_size)
        logger.info("Hotspots: %d cells from %d incidents in %.1f ms", len(hotspots), len(incidents), elapsed)
        return {
            "hotspots": hotspots,
            "metadata": {
                "time_range": params.time_range.to_dict(),
                "grid_size": params.grid_size,
                "grid_resolution": 1.0 / params.grid_size,
                "min_incidents": params.min_incidents,
                "incidents_considered": len(incidents),
                "total_hotspots": len(hotspots),
                "max_score": hotspots[0]["hotspot_score"] if hotspots else 0,
                "execution_ms": round(elapsed, 2),
                "analysis_date": iso(now),
            },
        }

    @staticmethod
    def score_cells(incidents: List[Incident], grid_size: int, min_incidents: int) -> List[Dict[str, Any]]:
        if not incidents:
            return []
        df = grid_frame(incidents, grid_size)
        cells = df.groupby(["row", "col"]).agg(
            incident_count=("id", "size"),
            avg_severity=("severity", "mean"),
            total_severity=("severity", "sum"),
            incident_ids=("id", list),
            incident_types=("type_name", lambda s: sorted({t for t in s if t})),
        ).reset_index()
        cells = cells[cells["incident_count"] >= min_incidents]
        if cells.empty:
            return []

        scores = (cells["incident_count"] * cells["avg_severity"]).to_numpy(dtype=float)
        max_score = float(scores.max())
        risks = risk_levels(scores)
        out = []
        for (_, cell), score, risk in zip(cells.iterrows(), scores, risks):
            lat, lon = geo.cell_center(int(cell["row"]), int(cell["col"]), grid_size)
            count = int(cell["incident_count"])
            out.append({
                "latitude": lat,
                "longitude": lon,
                "incident_count": count,
                "avg_severity": round(float(cell["avg_severity"]), 2),
                "total_severity": int(cell["total_severity"]),
                "hotspot_score": round(float(score), 2),
                "normalized_score": float(score) / max_score if max_score > 0 else 0.0,
                "risk_level": risk,
                "significance_level": significance_by_count(count),
                "incident_ids": [int(i) for i in cell["incident_ids"]],
                "incident_types": list(cell["incident_types"]),
            })
        out.sort(key=lambda h: (-h["hotspot_score"], -h["incident_count"]))
        return out

    async def calculate_density(self, params: DensityParams) -> Dict[str, Any]:
        t0 = time.perf_counter()
        now = self.clock()
        logger.info(
            "Density: resolution=%s cell=%.5f normalize=%s time_range=%s",
            params.resolution, params.cell_deg, params.normalize, params.time_range.original,
        )
        incidents = await self.repository.select(PointFilter(
            statuses=(IncidentStatus.ACTIVE,),
            since=now - params.time_range.delta,
            bounds=params.bounds,
            now=now,
        ))
        grid = self.density_cells(incidents, params.cell_deg, params.normalize)

        elapsed = (time.perf_counter() - t0) * 1000.0
        self.monitor.record("density_calculation", elapsed, cell_count=len(grid), resolution=params.resolution)
        logger.info("Density: %d cells from %d incidents in %.1f ms", len(grid), len(incidents), elapsed)
        return {
            "grid": grid,
            "metadata": {
                "resolution": params.resolution,
                "grid_size": params.grid_size,
                "grid_resolution": params.cell_deg,
                "cell_count": len(grid),
                "max_density": max((g["density_score"] for g in grid), default=0) if params.normalize else 1,
                "normalized": params.normalize,
                "time_range": params.time_range.to_dict(),
                "bounds": params.bounds.to_dict() if params.bounds else None,
                "execution_ms": round(elapsed, 2),
                "analysis_date": iso(now),
            },
        }

    @staticmethod
    def density_cells(incidents: List[Incident], cell_deg: float, normalize: bool) -> List[Dict[str, Any]]:
        if not incidents:
            return []
        df = grid_frame(incidents, 1.0 / cell_deg)
        df["hour"] = df["created_at"].dt.hour
        cells = df.groupby(["row", "col"]).agg(
            incident_count=("id", "size"),
            avg_severity=("severity", "mean"),
            severity_stddev=("severity", "std"),
            total_severity=("severity", "sum"),
            type_distribution=("type_id", list),
            hour_distribution=("hour", list),
            earliest=("created_at", "min"),
            latest=("created_at", "max"),
        ).reset_index()

        counts = cells["incident_count"].to_numpy(dtype=float)
        avg_count = float(counts.mean())
        count_std = float(np.std(counts, ddof=1)) if len(counts) > 1 else None
        scores = (cells["incident_count"] * cells["avg_severity"]).to_numpy(dtype=float)
        max_score = float(scores.max()) if normalize else 1.0

        out = []
        for (_, cell), score in zip(cells.iterrows(), scores):
            lat, lon = geo.cell_center(int(cell["row"]), int(cell["col"]), 1.0 / cell_deg)
            count = int(cell["incident_count"])
            if count_std is not None and count >= avg_count + count_std:
                significance = "high"
            elif count >= avg_count:
                significance = "medium"
            else:
                significance = "low"
            area = geo.cell_area_km2(lat, cell_deg)
            span_h = (cell["latest"] - cell["earliest"]).total_seconds() / 3600.0
            std = cell["severity_stddev"]
            out.append({
                "latitude": lat,
                "longitude": lon,
                "incident_count": count,
                "avg_severity": round(float(cell["avg_severity"]), 2),
                "severity_stddev": 0.0 if pd.isna(std) else round(float(std), 2),
                "total_severity": int(cell["total_severity"]),
                "density_score": round(float(score), 2),
                "density_per_km2": count / area if area > 0 else None,
                "normalized_density": float(score) / max_score if normalize and max_score > 0 else None,
                "density_significance": significance,
                "type_diversity": len(set(cell["type_distribution"])),
                "type_distribution": [int(t) for t in cell["type_distribution"]],
                "hour_distribution": [int(h) for h in cell["hour_distribution"]],
                "activity_span_hours": round(span_h, 2),
                "earliest_incident": iso(cell["earliest"].to_pydatetime()),
                "latest_incident": iso(cell["latest"].to_pydatetime()),
            })
        out.sort(key=lambda g: -g["density_score"])
        return out
