"""
Spatial store adapter.

The one place that talks to the database. Rows are turned into the typed
records of `incident_core.records` before they leave this module, driver
errors are translated into the service's error taxonomy, and geometry
primitives (geodesic buffer, area, union, intersection, distance, k-means)
are exposed next to the point queries so analyzers never reach past the
store for them.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from pyproj.exceptions import GeodError
from shapely.errors import GEOSException
from shapely.geometry.base import BaseGeometry
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from incident_core import geo
from incident_core.errors import Conflict, Expired, SpatialOperationFailure, Transient
from incident_core.records import (
    Incident,
    IncidentStatus,
    IncidentType,
    PointFilter,
    VerificationOutcome,
    utcnow,
)

from .models import IncidentRow, IncidentTypeRow, VerificationRow

logger = logging.getLogger(__name__)


class SpatialStore:
    def __init__(self, sessions: async_sessionmaker, query_timeout: Optional[float] = None):
        self._sessions = sessions
        self.query_timeout = query_timeout

    # ---------- plumbing ----------
    @asynccontextmanager
    async def _session(self):
        try:
            async with self._sessions() as session:
                yield session
        except (asyncio.TimeoutError, OperationalError, InterfaceError) as exc:
            logger.warning("SpatialStore: transient failure: %s", exc.__class__.__name__)
            raise Transient("Spatial store unavailable, retry later") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise Transient("Spatial store connection lost, retry later") from exc
            raise

    async def _execute(self, session: AsyncSession, stmt):
        if self.query_timeout:
            return await asyncio.wait_for(session.execute(stmt), self.query_timeout)
        return await session.execute(stmt)

    async def ping(self) -> bool:
        async with self._session() as session:
            await self._execute(session, select(1))
        return True

    # ---------- incident types ----------
    async def add_type(self, **values: Any) -> IncidentType:
        """Administrative seeding. `severity_range` may be a list or a JSON string."""
        rng = values.get("severity_range", [1, 5])
        if not isinstance(rng, str):
            values["severity_range"] = f"[{int(rng[0])}, {int(rng[1])}]"
        async with self._session() as session:
            row = IncidentTypeRow(**values)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                raise Conflict(f"Incident type '{values.get('name')}' already exists") from exc
            return IncidentType.from_row(row)

    async def get_type(self, type_id: int) -> Optional[IncidentType]:
        async with self._session() as session:
            row = await session.get(IncidentTypeRow, type_id)
            return IncidentType.from_row(row) if row is not None else None

    async def list_types(self) -> List[IncidentType]:
        async with self._session() as session:
            res = await self._execute(session, select(IncidentTypeRow).order_by(IncidentTypeRow.id))
            return [IncidentType.from_row(r) for r in res.scalars().all()]

    # ---------- incidents ----------
    async def insert_incident(self, values: Dict[str, Any]) -> int:
        async with self._session() as session:
            row = IncidentRow(**values)
            session.add(row)
            await session.commit()
            return row.id

    async def get_incident(self, incident_id: int) -> Optional[Incident]:
        stmt = (
            select(IncidentRow, IncidentTypeRow)
            .join(IncidentTypeRow, IncidentTypeRow.id == IncidentRow.type_id)
            .where(IncidentRow.id == incident_id)
        )
        async with self._session() as session:
            res = await self._execute(session, stmt)
            pair = res.first()
            return Incident.from_row(pair[0], pair[1]) if pair else None

    async def update_incident(
        self,
        incident_id: int,
        values: Dict[str, Any],
        expected: Sequence[IncidentStatus] = (IncidentStatus.ACTIVE,),
        unexpired_at: Optional[Any] = None,
    ) -> bool:
        """
        Conditional single-row update: applies only while the row is still in one
        of the `expected` statuses (and, when given, not past expiry). The row lock
        taken by the UPDATE serializes racing writers on the same incident.
        """
        stmt = (
            update(IncidentRow)
            .where(IncidentRow.id == incident_id, IncidentRow.status.in_([IncidentStatus(s).value for s in expected]))
            .values(**values)
        )
        if unexpired_at is not None:
            stmt = stmt.where(or_(IncidentRow.expires_at.is_(None), IncidentRow.expires_at > unexpired_at))
        async with self._session() as session:
            res = await self._execute(session, stmt)
            await session.commit()
            return res.rowcount == 1

    async def add_verification(self, incident_id: int, user_id: int, quorum: int) -> VerificationOutcome:
        """
        Record one verification and evaluate the quorum in the same transaction.

        The count is bumped with an in-database increment, then the promotion is a
        compare-and-set (`verified = false AND count >= quorum`), so among any number
        of concurrent verifiers exactly one sees the promotion succeed.
        """
        now = utcnow()
        async with self._session() as session:
            async with session.begin():
                session.add(VerificationRow(incident_id=incident_id, user_id=user_id, created_at=now))
                try:
                    await session.flush()
                except IntegrityError as exc:
                    raise Conflict("Incident already verified by this user") from exc

                bumped = await self._execute(
                    session,
                    update(IncidentRow)
                    .where(IncidentRow.id == incident_id, IncidentRow.status == IncidentStatus.ACTIVE.value)
                    .values(verification_count=IncidentRow.verification_count + 1, updated_at=now),
                )
                if bumped.rowcount != 1:
                    raise Expired("Incident is no longer active")

                promoted = await self._execute(
                    session,
                    update(IncidentRow)
                    .where(
                        IncidentRow.id == incident_id,
                        IncidentRow.verified.is_(False),
                        IncidentRow.verification_count >= quorum,
                    )
                    .values(verified=True),
                )
                state = await self._execute(
                    session,
                    select(IncidentRow.verification_count, IncidentRow.verified).where(IncidentRow.id == incident_id),
                )
                count, verified = state.one()
        return VerificationOutcome(
            incident_id=incident_id,
            verification_count=int(count),
            is_verified=bool(verified),
            promoted=promoted.rowcount == 1,
        )

    async def list_verifications(self, incident_id: int) -> List[Dict[str, Any]]:
        stmt = (
            select(VerificationRow)
            .where(VerificationRow.incident_id == incident_id)
            .order_by(VerificationRow.created_at.desc(), VerificationRow.id.desc())
        )
        async with self._session() as session:
            res = await self._execute(session, stmt)
            return [
                {"id": r.id, "user_id": r.user_id, "verified_at": r.created_at}
                for r in res.scalars().all()
            ]

    # ---------- point queries ----------
    def _filtered(self, stmt, flt: PointFilter):
        now = flt.now or utcnow()
        if flt.statuses:
            stmt = stmt.where(IncidentRow.status.in_([IncidentStatus(s).value for s in flt.statuses]))
        if not flt.include_expired:
            stmt = stmt.where(or_(IncidentRow.expires_at.is_(None), IncidentRow.expires_at > now))
        if flt.expires_before is not None:
            stmt = stmt.where(IncidentRow.expires_at.is_not(None), IncidentRow.expires_at <= flt.expires_before)
        if flt.since is not None:
            stmt = stmt.where(IncidentRow.created_at >= flt.since)
        if flt.bounds is not None:
            b = flt.bounds
            stmt = stmt.where(
                IncidentRow.latitude.between(b.south, b.north),
                IncidentRow.longitude.between(b.west, b.east),
            )
        if flt.type_ids:
            stmt = stmt.where(IncidentRow.type_id.in_(flt.type_ids))
        if flt.ids:
            stmt = stmt.where(IncidentRow.id.in_(flt.ids))
        if flt.min_severity is not None:
            stmt = stmt.where(IncidentRow.severity >= flt.min_severity)
        if flt.severities:
            stmt = stmt.where(IncidentRow.severity.in_(flt.severities))
        if flt.verified is not None:
            stmt = stmt.where(IncidentRow.verified.is_(flt.verified))
        return stmt

    async def select_points(self, flt: PointFilter) -> List[Incident]:
        order = IncidentRow.created_at.desc() if flt.newest_first else IncidentRow.created_at.asc()
        stmt = self._filtered(
            select(IncidentRow, IncidentTypeRow).join(IncidentTypeRow, IncidentTypeRow.id == IncidentRow.type_id),
            flt,
        ).order_by(order, IncidentRow.id.desc() if flt.newest_first else IncidentRow.id.asc())
        if flt.limit:
            stmt = stmt.limit(flt.limit)
        async with self._session() as session:
            res = await self._execute(session, stmt)
            return [Incident.from_row(r, t) for r, t in res.all()]

    async def count_points(self, flt: PointFilter) -> int:
        stmt = self._filtered(select(func.count(IncidentRow.id)), flt)
        async with self._session() as session:
            res = await self._execute(session, stmt)
            return int(res.scalar_one())

    async def within_radius(self, lat: float, lon: float, radius_m: float, flt: PointFilter) -> List[Tuple[Incident, float]]:
        """Points within `radius_m` meters (geodesic), each paired with its distance."""
        south, north, west, east = geo.degree_box(lat, lon, radius_m)
        stmt = self._filtered(
            select(IncidentRow, IncidentTypeRow).join(IncidentTypeRow, IncidentTypeRow.id == IncidentRow.type_id),
            flt,
        ).where(IncidentRow.latitude.between(south, north))
        if west >= -180 and east <= 180:
            stmt = stmt.where(IncidentRow.longitude.between(west, east))
        async with self._session() as session:
            res = await self._execute(session, stmt)
            candidates = [Incident.from_row(r, t) for r, t in res.all()]
        if not candidates:
            return []
        dists = self.distances(lat, lon, candidates)
        return [(inc, float(d)) for inc, d in zip(candidates, dists) if d <= radius_m]

    # ---------- geometry primitives ----------
    def _geometry(self, fn: Callable, *args):
        try:
            return fn(*args)
        except (GEOSException, GeodError, ValueError) as exc:
            raise SpatialOperationFailure(f"Spatial operation failed: {exc}") from exc

    def distance(self, a: geo.LatLon, b: geo.LatLon) -> float:
        return self._geometry(geo.distance_m, a, b)

    def distances(self, lat: float, lon: float, incidents: Sequence[Incident]) -> np.ndarray:
        return self._geometry(
            geo.distances_m, (lat, lon), [i.latitude for i in incidents], [i.longitude for i in incidents]
        )

    def buffer(self, lat: float, lon: float, radius_m: float) -> BaseGeometry:
        return self._geometry(geo.geodesic_buffer, lat, lon, radius_m)

    def area(self, geom: BaseGeometry) -> float:
        return self._geometry(geo.area_m2, geom)

    def union(self, geoms: Iterable[BaseGeometry]) -> BaseGeometry:
        return self._geometry(geo.union, list(geoms))

    def intersection(self, a: BaseGeometry, b: BaseGeometry) -> BaseGeometry:
        return self._geometry(a.intersection, b)

    def intersecting(self, geoms: Sequence[BaseGeometry]) -> Dict[int, List[int]]:
        return self._geometry(geo.intersecting_pairs, geoms)

    def kmeans(self, points: Sequence[geo.LatLon], k: int) -> np.ndarray:
        return self._geometry(geo.kmeans_labels, points, k)
