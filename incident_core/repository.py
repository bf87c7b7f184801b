"""
Incident repository: typed CRUD and lifecycle state on top of the spatial store.

The store object is duck-typed; `app.spatial_store.SpatialStore` is the
production implementation. Everything returned from here is a record from
`incident_core.records`, never a raw row.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import Expired, NotFound
from .params import Checker
from .records import (
    Incident,
    IncidentStatus,
    IncidentType,
    PointFilter,
    VerificationOutcome,
    iso,
    transition,
    utcnow,
)

logger = logging.getLogger(__name__)

SORT_FIELDS = ("distance", "created_at", "severity")


@dataclass(frozen=True)
class SearchParams:
    latitude: float
    longitude: float
    radius_m: float
    type_ids: Tuple[int, ...] = ()
    severities: Tuple[int, ...] = ()
    verified: Optional[bool] = None
    include_expired: bool = False
    page: int = 1
    page_size: int = 20
    sort_by: str = "distance"
    sort_order: str = "asc"

    @classmethod
    def parse(
        cls,
        query: Mapping[str, Any],
        default_radius_m: float = 5000,
        max_radius_m: float = 50000,
        max_page_size: int = 100,
    ) -> "SearchParams":
        """Radius and page size above their maxima are clamped, not rejected."""
        c = Checker()
        lat, lon = c.coordinate("latitude", query.get("latitude"), "longitude", query.get("longitude"))
        radius = c.number("radius", query.get("radius"), 1, math.inf, default_radius_m)
        type_ids = c.id_list("type_id", query.get("type_id"))
        severities = c.id_list("severity", query.get("severity"))
        for s in severities:
            if s > 5:
                c.fail("severity", "severity must be between 1 and 5")
                break
        verified = query.get("verified")
        verified = None if verified in (None, "") else c.flag("verified", verified)
        include_expired = c.flag("include_expired", query.get("include_expired"))
        page = c.integer("page", query.get("page"), 1, 1_000_000, 1)
        page_size = c.integer("limit", query.get("limit"), 1, 1_000_000, 20)
        sort_by = c.choice("sort_by", query.get("sort_by"), SORT_FIELDS, "distance")
        sort_order = c.choice("sort_order", query.get("sort_order"), ("asc", "desc"), "asc")
        c.raise_if_errors("Invalid search parameters")
        return cls(
            latitude=lat,
            longitude=lon,
            radius_m=min(radius, max_radius_m),
            type_ids=type_ids,
            severities=severities,
            verified=verified,
            include_expired=include_expired,
            page=page,
            page_size=min(page_size, max_page_size),
            sort_by=sort_by,
            sort_order=sort_order,
        )


class IncidentRepository:
    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    # ---------- reads ----------
    async def get(self, incident_id: int) -> Incident:
        """Deleted incidents read as missing."""
        incident = await self.store.get_incident(incident_id)
        if incident is None or incident.status is IncidentStatus.DELETED:
            raise NotFound(f"Incident {incident_id} not found")
        return incident

    async def get_type(self, type_id: int) -> IncidentType:
        it = await self.store.get_type(type_id)
        if it is None:
            raise NotFound(f"Incident type {type_id} not found")
        return it

    async def list_types(self) -> List[IncidentType]:
        return await self.store.list_types()

    async def select(self, flt: PointFilter) -> List[Incident]:
        if flt.now is None:
            flt.now = self.clock()
        return await self.store.select_points(flt)

    async def count(self, flt: PointFilter) -> int:
        if flt.now is None:
            flt.now = self.clock()
        return await self.store.count_points(flt)

    async def verifications(self, incident_id: int) -> List[Dict[str, Any]]:
        """Verification records of a live or expired incident, newest first."""
        await self.get(incident_id)
        rows = await self.store.list_verifications(incident_id)
        return [{**r, "verified_at": iso(r["verified_at"])} for r in rows]

    # ---------- writes ----------
    async def create(self, values: Dict[str, Any], incident_type: IncidentType, reporter_id: int) -> Incident:
        now = self.clock()
        row = {
            **values,
            "type_id": incident_type.id,
            "reported_by": reporter_id,
            "status": IncidentStatus.ACTIVE.value,
            "verification_count": 0,
            "verified": False,
            "created_at": now,
            "updated_at": now,
            "expires_at": incident_type.expiry_from(now),
        }
        new_id = await self.store.insert_incident(row)
        logger.info("Repository: incident %s created by user %s", new_id, reporter_id)
        return await self.get(new_id)

    async def _refused(self, incident_id: int) -> Exception:
        """Why a conditional write matched no row."""
        current = await self.store.get_incident(incident_id)
        if current is None or current.status is IncidentStatus.DELETED:
            return NotFound(f"Incident {incident_id} not found")
        return Expired(f"Incident {incident_id} is no longer active")

    async def apply_patch(self, incident: Incident, patch: Dict[str, Any]) -> Incident:
        """Write `patch` only while the incident is still active and unexpired."""
        now = self.clock()
        if incident.effective_status(now) is not IncidentStatus.ACTIVE:
            raise Expired(f"Incident {incident.id} is no longer active")
        ok = await self.store.update_incident(
            incident.id, {**patch, "updated_at": now}, expected=(IncidentStatus.ACTIVE,), unexpired_at=now
        )
        if not ok:
            raise await self._refused(incident.id)
        return await self.get(incident.id)

    async def soft_delete(self, incident: Incident, actor_id: int) -> Incident:
        now = self.clock()
        current = incident.effective_status(now)
        target = transition(current, IncidentStatus.DELETED)
        ok = await self.store.update_incident(
            incident.id,
            {"status": target.value, "deleted_at": now, "deleted_by": actor_id, "updated_at": now},
            expected=(IncidentStatus.ACTIVE, IncidentStatus.EXPIRED),
        )
        if not ok:
            raise NotFound(f"Incident {incident.id} not found")
        logger.info("Repository: incident %s soft-deleted by user %s", incident.id, actor_id)
        deleted = await self.store.get_incident(incident.id)
        return deleted if deleted is not None else incident

    async def add_verification(self, incident_id: int, verifier_id: int, quorum: int) -> VerificationOutcome:
        return await self.store.add_verification(incident_id, verifier_id, quorum)

    async def expire_due(self) -> List[Incident]:
        """Move every active incident past its expiry to `expired`. Returns the ones this call moved."""
        now = self.clock()
        due = await self.store.select_points(PointFilter(
            statuses=(IncidentStatus.ACTIVE,), expires_before=now, now=now, newest_first=False,
        ))
        moved: List[Incident] = []
        for incident in due:
            target = transition(incident.status, IncidentStatus.EXPIRED)
            ok = await self.store.update_incident(
                incident.id, {"status": target.value, "updated_at": now}, expected=(IncidentStatus.ACTIVE,)
            )
            if ok:
                incident.status = target
                incident.updated_at = now
                moved.append(incident)
        if moved:
            logger.info("Repository: expired %d incidents", len(moved))
        return moved

    # ---------- radius search ----------
    async def search(self, params: SearchParams) -> Dict[str, Any]:
        now = self.clock()
        flt = PointFilter(
            statuses=(IncidentStatus.ACTIVE,),
            type_ids=params.type_ids,
            severities=params.severities,
            verified=params.verified,
            include_expired=params.include_expired,
            now=now,
        )
        hits = await self.store.within_radius(params.latitude, params.longitude, params.radius_m, flt)

        reverse = params.sort_order == "desc"
        if params.sort_by == "distance":
            hits.sort(key=lambda h: (h[1], h[0].id), reverse=reverse)
        elif params.sort_by == "severity":
            hits.sort(key=lambda h: (h[0].severity, h[0].created_at or now), reverse=reverse)
        else:
            hits.sort(key=lambda h: (h[0].created_at or now, h[0].id), reverse=reverse)

        total = len(hits)
        total_pages = math.ceil(total / params.page_size) if total else 0
        start = (params.page - 1) * params.page_size
        page = hits[start:start + params.page_size]

        incidents = []
        for incident, dist in page:
            item = incident.to_dict(now)
            item["distance_m"] = round(dist, 2)
            incidents.append(item)

        logger.info(
            "Repository: radius search (%.5f, %.5f) r=%sm -> %d of %d",
            params.latitude, params.longitude, params.radius_m, len(incidents), total,
        )
        return {
            "incidents": incidents,
            "pagination": {
                "page": params.page,
                "limit": params.page_size,
                "total": total,
                "total_pages": total_pages,
                "has_next": params.page < total_pages,
                "has_prev": params.page > 1,
            },
            "search": {
                "center": {"latitude": params.latitude, "longitude": params.longitude},
                "radius_m": params.radius_m,
                "sort_by": params.sort_by,
                "sort_order": params.sort_order,
            },
        }
