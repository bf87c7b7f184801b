import asyncio

import pytest

from app import db
from app.spatial_store import SpatialStore
from incident_core.errors import NotFound, Transient
from incident_core.records import IncidentStatus, PointFilter
from incident_core.repository import SearchParams

CENTER = (40.0, -74.0)


async def _ring(env):
    """Five incidents about 111 m apart heading north, plus one far away."""
    ids = []
    for i in range(1, 6):
        ids.append(await env.seed(CENTER[0] + 0.001 * i, CENTER[1], severity=2 + i % 3))
    far = await env.seed(41.0, -74.0)
    return ids, far


def _search(**extra):
    q = {"latitude": str(CENTER[0]), "longitude": str(CENTER[1]), "radius": "1000"}
    q.update(extra)
    return SearchParams.parse(q)


class TestSearch:
    def test_distance_order_and_radius(self, run):
        async def scenario(env):
            ids, far = await _ring(env)
            out = await env.repository.search(_search())
            got = [i["id"] for i in out["incidents"]]
            assert got == ids
            assert far not in got
            dists = [i["distance_m"] for i in out["incidents"]]
            assert dists == sorted(dists)
            assert 100 < dists[0] < 125
        run(scenario)

    def test_pagination(self, run):
        async def scenario(env):
            ids, _ = await _ring(env)
            first = await env.repository.search(_search(limit="2", page="1"))
            last = await env.repository.search(_search(limit="2", page="3"))
            assert first["pagination"] == {
                "page": 1, "limit": 2, "total": 5, "total_pages": 3, "has_next": True, "has_prev": False,
            }
            assert [i["id"] for i in first["incidents"]] == ids[:2]
            assert [i["id"] for i in last["incidents"]] == ids[4:]
            assert last["pagination"]["has_next"] is False
        run(scenario)

    def test_filters(self, run):
        async def scenario(env):
            await _ring(env)
            pothole = await env.seed(40.002, -74.0, severity=1, type_id=env.pothole.id)
            only = await env.repository.search(_search(type_id=str(env.pothole.id)))
            assert [i["id"] for i in only["incidents"]] == [pothole]
            severe = await env.repository.search(_search(severity="4"))
            assert all(i["severity"] == 4 for i in severe["incidents"])
        run(scenario)

    def test_expired_excluded_unless_requested(self, run):
        async def scenario(env):
            stale = await env.seed(40.001, -74.0, expires_at=env.clock())
            out = await env.repository.search(_search())
            assert out["incidents"] == []
            out = await env.repository.search(_search(include_expired="true"))
            assert [i["id"] for i in out["incidents"]] == [stale]
            assert out["incidents"][0]["is_expired"] is True
        run(scenario)

    def test_sort_by_severity_desc(self, run):
        async def scenario(env):
            await _ring(env)
            out = await env.repository.search(_search(sort_by="severity", sort_order="desc"))
            sev = [i["severity"] for i in out["incidents"]]
            assert sev == sorted(sev, reverse=True)
        run(scenario)


class TestStore:
    def test_deleted_reads_as_missing(self, run):
        async def scenario(env):
            iid = await env.seed(40.0, -74.0, status=IncidentStatus.DELETED.value)
            with pytest.raises(NotFound):
                await env.repository.get(iid)
            assert await env.repository.count(PointFilter()) == 0
        run(scenario)

    def test_types_round_trip(self, run):
        async def scenario(env):
            types = await env.repository.list_types()
            assert [t.name for t in types] == ["Crash", "Pothole"]
            assert types[0].severity_range.as_list() == [2, 5]
            with pytest.raises(NotFound):
                await env.repository.get_type(42)
        run(scenario)

    def test_verification_records_newest_first(self, run):
        async def scenario(env):
            iid = await env.seed(40.0, -74.0)
            await env.lifecycle.verify(iid, 2)
            await env.lifecycle.verify(iid, 3)
            records = await env.repository.verifications(iid)
            assert [r["user_id"] for r in records] == [3, 2]
            assert all(isinstance(r["verified_at"], str) for r in records)

            gone = await env.seed(40.0, -74.0, status=IncidentStatus.DELETED.value)
            with pytest.raises(NotFound):
                await env.repository.verifications(gone)
        run(scenario)

    def test_unreachable_database_is_transient(self, tmp_path):
        async def scenario():
            engine = db.make_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}")
            store = SpatialStore(db.make_sessionmaker(engine))
            try:
                with pytest.raises(Transient):
                    await store.ping()
            finally:
                await engine.dispose()
        asyncio.run(scenario())
