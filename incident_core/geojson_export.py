from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from shapely.geometry import Point

from . import geo
from .params import Checker, TimeRange
from .records import Bounds, IncidentStatus, PerformanceMonitor, PointFilter, iso, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportParams:
    time_range: TimeRange
    bbox: Optional[Bounds] = None
    type_ids: Tuple[int, ...] = ()
    include_buffers: bool = False
    buffer_distance: float = 500.0
    max_incidents: int = 1000

    @classmethod
    def parse(cls, query: Mapping[str, Any]) -> "ExportParams":
        c = Checker()
        tr = c.time_range("time_range", query.get("time_range"), "30d")
        if query.get("bbox"):
            bbox = c.bbox("bbox", query.get("bbox"))
        else:
            bbox = c.bounds(query.get("north"), query.get("south"), query.get("east"), query.get("west"))
        type_ids = c.id_list("incident_types", query.get("incident_types"))
        include_buffers = c.flag("include_buffers", query.get("include_buffers"))
        dist = c.number("buffer_distance", query.get("buffer_distance"), 10, 5000, 500.0)
        max_inc = c.integer("max_incidents", query.get("max_incidents"), 1, 5000, 1000)
        c.raise_if_errors("Invalid export parameters")
        return cls(tr, bbox, type_ids, include_buffers, dist, max_inc)


class GeoJsonExporter:
    """Active incidents as a GeoJSON FeatureCollection (EPSG:4326)."""

    def __init__(self, repository, store, monitor: Optional[PerformanceMonitor] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.store = store
        self.monitor = monitor or PerformanceMonitor()
        self.clock = clock

    async def export(self, params: ExportParams) -> Dict[str, Any]:
        t0 = time.perf_counter()
        now = self.clock()
        incidents = await self.repository.select(PointFilter(
            statuses=(IncidentStatus.ACTIVE,),
            since=now - params.time_range.delta,
            bounds=params.bbox,
            type_ids=params.type_ids,
            limit=params.max_incidents,
            now=now,
        ))
        features = []
        for i in incidents:
            it = i.incident_type
            props = {
                "id": i.id,
                "description": i.description,
                "incident_type": it.name if it else None,
                "type_id": i.type_id,
                "severity": i.severity,
                "verified": i.verified,
                "status": i.status.value,
                "reporter_id": i.reported_by,
                "created_at": iso(i.created_at),
                "updated_at": iso(i.updated_at),
                "color": it.color if it else None,
                "icon": it.icon if it else None,
                "priority_level": it.priority if it else None,
                "longitude": i.longitude,
                "latitude": i.latitude,
            }
            if params.include_buffers:
                props["buffer"] = geo.to_geojson(self.store.buffer(i.latitude, i.longitude, params.buffer_distance))
                props["buffer_distance"] = params.buffer_distance
            features.append({
                "type": "Feature",
                "geometry": geo.to_geojson(Point(i.longitude, i.latitude)),
                "properties": props,
            })

        elapsed = (time.perf_counter() - t0) * 1000.0
        self.monitor.record("geojson_export", elapsed, feature_count=len(features))
        logger.info("GeoJSON export: %d features (buffers=%s) in %.1f ms", len(features), params.include_buffers, elapsed)
        return {
            "type": "FeatureCollection",
            "features": features,
            "metadata": {
                "count": len(features),
                "time_range": params.time_range.to_dict(),
                "export_date": iso(now),
                "includes_buffers": params.include_buffers,
                "buffer_distance": params.buffer_distance if params.include_buffers else None,
                "execution_ms": round(elapsed, 2),
                "bbox": params.bbox.to_dict() if params.bbox else None,
                "filters": {"incident_types": list(params.type_ids) or None, "max_incidents": params.max_incidents},
            },
            "crs": {"type": "name", "properties": {"name": "EPSG:4326"}},
        }
