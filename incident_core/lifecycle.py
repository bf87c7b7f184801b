"""
Incident lifecycle orchestrator: the write path.

create / update / delete / verify go through the repository (and the
consensus engine for verify), and on success hand the event to the
distribution hub. Input is checked before the store is touched.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from .consensus import VerificationConsensus
from .distribution import DistributionHub
from .errors import Expired, Forbidden, ValidationError
from .params import Checker
from .records import Incident, IncidentStatus, VerificationOutcome
from .repository import IncidentRepository

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("description", "severity", "address", "estimated_duration_minutes", "affected_lanes")


def _check_fields(c: Checker, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Shared checks for the optional descriptive fields."""
    out: Dict[str, Any] = {}
    if "description" in data:
        out["description"] = c.text("description", data.get("description"), 1000)
    if "severity" in data:
        out["severity"] = c.integer("severity", data.get("severity"), 1, 5)
    if "address" in data:
        out["address"] = c.text("address", data.get("address"), 200)
    if "estimated_duration_minutes" in data:
        out["estimated_duration_minutes"] = c.integer(
            "estimated_duration_minutes", data.get("estimated_duration_minutes"), 1, 43200
        )
    if "affected_lanes" in data:
        out["affected_lanes"] = c.integer("affected_lanes", data.get("affected_lanes"), 1, 10)
    return out


def _severity_in_range(severity: int, incident_type) -> None:
    rng = incident_type.severity_range
    if not rng.contains(severity):
        raise ValidationError(
            f"Severity must be between {rng.minimum} and {rng.maximum} for this incident type",
            [{"field": "severity", "message": f"must be between {rng.minimum} and {rng.maximum}"}],
        )


@dataclass
class UpdateResult:
    incident: Incident
    changed_fields: List[str] = field(default_factory=list)


class IncidentLifecycle:
    def __init__(self, repository: IncidentRepository, consensus: VerificationConsensus, hub: DistributionHub):
        self.repository = repository
        self.consensus = consensus
        self.hub = hub

    async def get(self, incident_id: int) -> Incident:
        return await self.repository.get(incident_id)

    async def create(self, data: Mapping[str, Any], reporter_id: int) -> Incident:
        c = Checker()
        lat, lon = c.coordinate("latitude", data.get("latitude"), "longitude", data.get("longitude"))
        if data.get("type_id") in (None, ""):
            c.fail("type_id", "type_id is required")
        type_id = c.integer("type_id", data.get("type_id"), 1, 2**31 - 1)
        values = _check_fields(c, data)
        requires_verification = c.flag("verification_required", data.get("verification_required"))
        c.raise_if_errors("Invalid incident data")

        incident_type = await self.repository.get_type(type_id)
        severity = values.get("severity")
        if severity is None:
            severity = incident_type.default_severity
        _severity_in_range(severity, incident_type)

        values.update(
            latitude=lat,
            longitude=lon,
            severity=severity,
            requires_verification=requires_verification or incident_type.requires_verification,
        )
        incident = await self.repository.create(values, incident_type, reporter_id)
        logger.info("Lifecycle: user %s created incident %s (%s)", reporter_id, incident.id, incident_type.name)
        await self.hub.publish_created(incident)
        return incident

    def _check_owner(self, incident: Incident, actor_id: int, is_privileged: bool) -> None:
        if not is_privileged and incident.reported_by != actor_id:
            logger.info("Lifecycle: user %s denied on incident %s", actor_id, incident.id)
            raise Forbidden("Not authorized to modify this incident")

    async def update(self, incident_id: int, patch: Mapping[str, Any], actor_id: int, is_privileged: bool = False) -> UpdateResult:
        c = Checker()
        values = {k: v for k, v in _check_fields(c, patch).items() if k in UPDATABLE_FIELDS}
        c.raise_if_errors("Invalid incident update")
        values = {k: v for k, v in values.items() if v is not None}
        if not values:
            raise ValidationError(
                "No valid fields to update",
                [{"field": "body", "message": f"provide at least one of: {', '.join(UPDATABLE_FIELDS)}"}],
            )

        current = await self.repository.get(incident_id)
        self._check_owner(current, actor_id, is_privileged)
        if current.effective_status(self.repository.clock()) is not IncidentStatus.ACTIVE:
            raise Expired(f"Incident {incident_id} is no longer active")
        if "severity" in values:
            _severity_in_range(values["severity"], current.incident_type or await self.repository.get_type(current.type_id))

        changed = [k for k in UPDATABLE_FIELDS if k in values and getattr(current, k) != values[k]]
        updated = await self.repository.apply_patch(current, values)
        logger.info("Lifecycle: user %s updated incident %s fields=%s", actor_id, incident_id, changed)
        await self.hub.publish_updated(updated, changed, actor_id)
        return UpdateResult(updated, changed)

    async def delete(self, incident_id: int, actor_id: int, is_privileged: bool = False) -> Incident:
        current = await self.repository.get(incident_id)
        self._check_owner(current, actor_id, is_privileged)
        deleted = await self.repository.soft_delete(current, actor_id)
        logger.info("Lifecycle: user %s deleted incident %s", actor_id, incident_id)
        await self.hub.publish_deleted(deleted, actor_id)
        return deleted

    async def verify(self, incident_id: int, verifier_id: int) -> VerificationOutcome:
        outcome = await self.consensus.verify(incident_id, verifier_id)
        incident = await self.repository.get(incident_id)
        if outcome.promoted:
            await self.hub.publish_verified(incident, outcome)
        else:
            await self.hub.notify_user(verifier_id, {
                "type": "verification_recorded",
                "incident_id": incident_id,
                "verification_count": outcome.verification_count,
                "is_verified": outcome.is_verified,
            })
        return outcome

    async def expire_due(self) -> List[Incident]:
        moved = await self.repository.expire_due()
        for incident in moved:
            await self.hub.publish_expired(incident)
        return moved
