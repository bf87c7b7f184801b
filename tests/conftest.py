import asyncio
from datetime import datetime, timedelta

import pytest

from app import db
from app.spatial_store import SpatialStore
from incident_core.consensus import VerificationConsensus
from incident_core.distribution import DistributionHub
from incident_core.lifecycle import IncidentLifecycle
from incident_core.records import Incident, IncidentStatus
from incident_core.repository import IncidentRepository

# A Friday
START = datetime(2024, 3, 15, 12, 0, 0)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now = self.now + timedelta(**kw)


class Env:
    """Everything one scenario needs, wired against a throwaway SQLite file."""

    def __init__(self, engine, store, clock, quorum):
        self.engine = engine
        self.store = store
        self.clock = clock
        self.repository = IncidentRepository(store, clock=clock)
        self.consensus = VerificationConsensus(self.repository, quorum=quorum)
        self.hub = DistributionHub()
        self.lifecycle = IncidentLifecycle(self.repository, self.consensus, self.hub)
        self.crash = None
        self.pothole = None

    async def seed(self, lat, lon, severity=3, type_id=None, created_at=None, reported_by=1, **extra):
        """Insert a row directly, bypassing the write path (no broadcast, free timestamps)."""
        ts = created_at or self.clock()
        values = {
            "type_id": type_id or self.crash.id,
            "latitude": lat,
            "longitude": lon,
            "severity": severity,
            "reported_by": reported_by,
            "status": IncidentStatus.ACTIVE.value,
            "verification_count": 0,
            "verified": False,
            "created_at": ts,
            "updated_at": ts,
            "expires_at": None,
        }
        values.update(extra)
        return await self.store.insert_incident(values)


async def build_env(url: str, quorum: int = 3) -> Env:
    engine = db.make_engine(url)
    await db.create_tables(engine)
    env = Env(engine, SpatialStore(db.make_sessionmaker(engine)), Clock(), quorum)
    env.crash = await env.store.add_type(
        name="Crash", category="accident", severity_range=[2, 5], default_severity=3,
        auto_expire_hours=4, color="#ff0000", icon="car", priority=1,
    )
    env.pothole = await env.store.add_type(
        name="Pothole", category="road", severity_range=[1, 3], default_severity=1, color="#888888",
    )
    return env


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'incidents.db'}"


@pytest.fixture
def run(db_url):
    """run(scenario, quorum=3): await scenario(env) inside a single event loop."""
    def _run(scenario, quorum: int = 3):
        async def main():
            env = await build_env(db_url, quorum)
            try:
                return await scenario(env)
            finally:
                await env.engine.dispose()
        return asyncio.run(main())
    return _run


def make_incident(id=1, lat=40.71, lon=-74.0, severity=3, reported_by=1, type_id=1, created_at=None):
    return Incident(
        id=id, type_id=type_id, description=None, severity=severity,
        latitude=lat, longitude=lon, reported_by=reported_by,
        created_at=created_at or START,
    )


def drain(sub):
    out = []
    while not sub.outbox.empty():
        out.append(sub.outbox.get_nowait())
    return out


def events(messages, name=None):
    names = [m["event"] for m in messages]
    return names if name is None else [m for m in messages if m["event"] == name]
