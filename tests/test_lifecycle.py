import asyncio

import pytest

from conftest import drain, events
from incident_core.errors import Conflict, Expired, Forbidden, NotFound, ValidationError
from incident_core.records import IncidentStatus

REPORT = {"latitude": 40.7128, "longitude": -74.006, "description": "Two cars, right lane"}


class TestCreate:
    def test_default_severity_and_expiry(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            assert incident.severity == 3
            assert incident.status is IncidentStatus.ACTIVE
            assert incident.verification_count == 0 and not incident.verified
            assert (incident.expires_at - incident.created_at).total_seconds() == 4 * 3600
            assert incident.incident_type.name == "Crash"
        run(scenario)

    def test_severity_outside_type_range(self, run):
        async def scenario(env):
            with pytest.raises(ValidationError) as ei:
                await env.lifecycle.create({**REPORT, "type_id": env.crash.id, "severity": 1}, reporter_id=1)
            assert "between 2 and 5" in ei.value.message
            assert await env.store.count_points(_all()) == 0
        run(scenario)

    def test_unknown_type(self, run):
        async def scenario(env):
            with pytest.raises(NotFound):
                await env.lifecycle.create({**REPORT, "type_id": 999}, reporter_id=1)
        run(scenario)

    def test_invalid_fields_reported_together(self, run):
        async def scenario(env):
            with pytest.raises(ValidationError) as ei:
                await env.lifecycle.create({"latitude": 95, "longitude": 0, "affected_lanes": 11}, reporter_id=1)
            fields = {d["field"] for d in ei.value.details}
            assert fields == {"latitude", "type_id", "affected_lanes"}
        run(scenario)

    def test_broadcasts_created(self, run):
        async def scenario(env):
            watcher = await env.hub.connect(99)
            drain(watcher)
            await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            assert events(drain(watcher)) == ["new_incident"]
        run(scenario)


class TestUpdateDelete:
    def test_owner_update_reports_changed_fields(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            result = await env.lifecycle.update(incident.id, {"severity": 4, "description": REPORT["description"]}, 1)
            assert result.changed_fields == ["severity"]
            assert result.incident.severity == 4
        run(scenario)

    def test_non_owner_update_forbidden_without_side_effects(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            watcher = await env.hub.connect(5)
            drain(watcher)
            with pytest.raises(Forbidden):
                await env.lifecycle.update(incident.id, {"severity": 5}, actor_id=2)
            assert (await env.repository.get(incident.id)).severity == 3
            assert drain(watcher) == []
        run(scenario)

    def test_privileged_user_may_update(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            reporter = await env.hub.connect(1)
            drain(reporter)
            await env.lifecycle.update(incident.id, {"affected_lanes": 2}, actor_id=2, is_privileged=True)
            assert "user_notification" in events(drain(reporter))
        run(scenario)

    def test_empty_patch_rejected(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            with pytest.raises(ValidationError) as ei:
                await env.lifecycle.update(incident.id, {"status": "expired"}, 1)
            assert ei.value.message == "No valid fields to update"
        run(scenario)

    def test_update_severity_checked_against_type(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            with pytest.raises(ValidationError):
                await env.lifecycle.update(incident.id, {"severity": 1}, 1)
        run(scenario)

    def test_soft_delete_hides_incident(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            deleted = await env.lifecycle.delete(incident.id, 1)
            assert deleted.status is IncidentStatus.DELETED
            assert deleted.deleted_by == 1
            with pytest.raises(NotFound):
                await env.repository.get(incident.id)
            with pytest.raises(NotFound):
                await env.lifecycle.delete(incident.id, 1)
        run(scenario)

    def test_non_owner_delete_forbidden(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            with pytest.raises(Forbidden):
                await env.lifecycle.delete(incident.id, 2)
            assert (await env.repository.get(incident.id)).status is IncidentStatus.ACTIVE
        run(scenario)


class TestVerification:
    def test_quorum_promotes_once(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            watcher = await env.hub.connect(50)
            drain(watcher)
            outcomes = [await env.lifecycle.verify(incident.id, uid) for uid in (2, 3, 4, 5)]
            assert [o.verification_count for o in outcomes] == [1, 2, 3, 4]
            assert [o.promoted for o in outcomes] == [False, False, True, False]
            assert [o.is_verified for o in outcomes] == [False, False, True, True]
            assert len(events(drain(watcher), "incident_verified")) == 1
        run(scenario)

    def test_self_verification_counts(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            outcome = await env.lifecycle.verify(incident.id, 1)
            assert outcome.verification_count == 1
        run(scenario)

    def test_duplicate_verification_conflicts(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            await env.lifecycle.verify(incident.id, 2)
            with pytest.raises(Conflict):
                await env.lifecycle.verify(incident.id, 2)
            assert (await env.repository.get(incident.id)).verification_count == 1
        run(scenario)

    def test_concurrent_verifications_promote_exactly_once(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            watcher = await env.hub.connect(50)
            drain(watcher)
            outcomes = await asyncio.gather(*(env.lifecycle.verify(incident.id, uid) for uid in range(10, 15)))
            assert sum(o.promoted for o in outcomes) == 1
            assert sorted(o.verification_count for o in outcomes) == [1, 2, 3, 4, 5]
            current = await env.repository.get(incident.id)
            assert current.verified and current.verification_count == 5
            assert len(events(drain(watcher), "incident_verified")) == 1
        run(scenario)

    def test_verifier_gets_progress_notification(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            verifier = await env.hub.connect(2)
            drain(verifier)
            await env.lifecycle.verify(incident.id, 2)
            notes = events(drain(verifier), "user_notification")
            assert notes[0]["type"] == "verification_recorded"
            assert notes[0]["verification_count"] == 1
        run(scenario)


class TestExpiry:
    def test_sweep_moves_due_incidents_once(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            keeper = await env.lifecycle.create({**REPORT, "type_id": env.pothole.id}, reporter_id=1)
            watcher = await env.hub.connect(50)
            drain(watcher)

            env.clock.advance(hours=5)
            moved = await env.lifecycle.expire_due()
            assert [i.id for i in moved] == [incident.id]
            assert events(drain(watcher)) == ["incident_expired"]
            assert await env.lifecycle.expire_due() == []

            assert (await env.repository.get(incident.id)).status is IncidentStatus.EXPIRED
            assert (await env.repository.get(keeper.id)).status is IncidentStatus.ACTIVE
        run(scenario)

    def test_expired_incident_is_read_only(self, run):
        async def scenario(env):
            incident = await env.lifecycle.create({**REPORT, "type_id": env.crash.id}, reporter_id=1)
            env.clock.advance(hours=5)
            # past expiry but not yet swept: still refused
            with pytest.raises(Expired):
                await env.lifecycle.update(incident.id, {"severity": 4}, 1)
            with pytest.raises(Expired):
                await env.lifecycle.verify(incident.id, 2)
            # expired incidents can still be deleted
            deleted = await env.lifecycle.delete(incident.id, 1)
            assert deleted.status is IncidentStatus.DELETED
        run(scenario)


def _all():
    from incident_core.records import PointFilter
    return PointFilter(statuses=tuple(IncidentStatus))
