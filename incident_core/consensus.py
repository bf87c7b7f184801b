from __future__ import annotations
import logging

from .errors import Expired, ValidationError
from .records import VerificationOutcome, verification_state

logger = logging.getLogger(__name__)


class VerificationConsensus:
    """
    Community verification. One record per (incident, verifier); the
    `verified` flag flips once, when the count reaches `quorum`.

    The increment and the flip happen in the store inside one transaction
    (see `SpatialStore.add_verification`), so `outcome.promoted` is true for
    exactly one caller no matter how verifications interleave.
    """

    def __init__(self, repository, quorum: int = 3):
        if int(quorum) < 1:
            raise ValidationError("quorum must be at least 1", [{"field": "quorum", "message": "must be >= 1"}])
        self.repository = repository
        self.quorum = int(quorum)

    async def verify(self, incident_id: int, verifier_id: int) -> VerificationOutcome:
        incident = await self.repository.get(incident_id)
        if incident.is_expired(self.repository.clock()):
            raise Expired(f"Incident {incident_id} is no longer active")
        outcome = await self.repository.add_verification(incident_id, verifier_id, self.quorum)
        logger.info(
            "Consensus: incident %s verified by user %s (%d/%d, %s%s)",
            incident_id, verifier_id, outcome.verification_count, self.quorum,
            verification_state(outcome.verification_count, self.quorum).value,
            ", promoted" if outcome.promoted else "",
        )
        return outcome
