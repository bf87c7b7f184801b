from __future__ import annotations
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from . import geo
from .errors import NotFound, ValidationError
from .records import Bounds, Incident, VerificationOutcome, iso, utcnow

logger = logging.getLogger(__name__)

GLOBAL = "global"


def user_channel(user_id: int) -> str:
    return f"user-{user_id}"


def incident_channel(incident_id: int) -> str:
    return f"incident-{incident_id}"


@dataclass
class Subscription:
    """Everything the hub knows about one live connection."""
    connection_id: str
    user_id: int
    outbox: "asyncio.Queue[dict]"
    regions: Set[str] = field(default_factory=set)
    focus: Set[int] = field(default_factory=set)
    connected_at: datetime = field(default_factory=utcnow)

    def channels(self) -> Set[str]:
        out = {GLOBAL, user_channel(self.user_id)}
        out.update(self.regions)
        out.update(incident_channel(i) for i in self.focus)
        return out


class DistributionHub:
    """
    Owned registry of live connections and their channel memberships.

    Two maps, both mutated only under `_lock`:
      connection id -> Subscription
      channel       -> connection ids
    A channel entry is dropped as soon as its last member leaves.

    Delivery is fire-and-forget: each event is put on the member's bounded
    outbox; a full outbox drops the event for that member only.

    Membership lives in this process. Running several service instances
    needs a shared pub/sub layer in front of `_deliver`, otherwise viewers on
    another instance miss the broadcast.
    """

    def __init__(self, region_precision: int = 10, queue_size: int = 512, max_region_cells: int = 400):
        self.region_precision = int(region_precision)
        self.queue_size = int(queue_size)
        self.max_region_cells = int(max_region_cells)
        self._lock = asyncio.Lock()
        self._subs: Dict[str, Subscription] = {}
        self._channels: Dict[str, Set[str]] = {}
        self._ids = itertools.count(1)
        self.total_connections = 0
        self.events_emitted = 0
        self.deliveries_dropped = 0

    # ---------- membership (call with the lock held) ----------
    def _join(self, conn_id: str, channel: str) -> None:
        self._channels.setdefault(channel, set()).add(conn_id)

    def _leave(self, conn_id: str, channel: str) -> None:
        members = self._channels.get(channel)
        if members is None:
            return
        members.discard(conn_id)
        if not members:
            del self._channels[channel]

    def _sub(self, conn_id: str) -> Subscription:
        sub = self._subs.get(conn_id)
        if sub is None:
            raise NotFound(f"Unknown connection {conn_id}")
        return sub

    # ---------- connection lifecycle ----------
    async def connect(self, user_id: int, connection_id: Optional[str] = None) -> Subscription:
        async with self._lock:
            conn_id = connection_id or f"conn-{next(self._ids)}"
            sub = Subscription(connection_id=conn_id, user_id=user_id, outbox=asyncio.Queue(maxsize=self.queue_size))
            self._subs[conn_id] = sub
            self._join(conn_id, GLOBAL)
            self._join(conn_id, user_channel(user_id))
            self.total_connections += 1
        logger.info("Hub: connect %s user=%s active=%d", conn_id, user_id, len(self._subs))
        self._put(sub, {
            "event": "connected",
            "message": "Connected to incident real-time service",
            "connection_id": conn_id,
            "user": {"id": user_id},
            "timestamp": iso(utcnow()),
        })
        return sub

    async def disconnect(self, connection_id: str) -> None:
        """Drops every membership of the connection. Unknown ids are ignored."""
        async with self._lock:
            sub = self._subs.pop(connection_id, None)
            if sub is None:
                return
            for channel in sub.channels():
                self._leave(connection_id, channel)
        logger.info("Hub: disconnect %s user=%s active=%d", connection_id, sub.user_id, len(self._subs))

    # ---------- subscriptions ----------
    def regions_for(self, bounds: Bounds) -> List[str]:
        cells = geo.region_cell_count(bounds.north, bounds.south, bounds.east, bounds.west, self.region_precision)
        if cells > self.max_region_cells:
            raise ValidationError(
                "Area too large for a live subscription",
                [{"field": "bounds", "message": f"bounds span {cells} regions, limit {self.max_region_cells}"}],
            )
        return geo.region_ids_for_bounds(bounds.north, bounds.south, bounds.east, bounds.west, self.region_precision)

    async def subscribe_area(self, connection_id: str, bounds: Bounds) -> List[str]:
        regions = self.regions_for(bounds)
        async with self._lock:
            sub = self._sub(connection_id)
            for r in regions:
                sub.regions.add(r)
                self._join(connection_id, r)
        logger.debug("Hub: %s subscribed to %d regions", connection_id, len(regions))
        return regions

    async def unsubscribe_area(self, connection_id: str, bounds: Optional[Bounds] = None) -> List[str]:
        """Leave the regions under `bounds`, or every region when bounds is None."""
        async with self._lock:
            sub = self._sub(connection_id)
            if bounds is None:
                regions = sorted(sub.regions)
            else:
                regions = [r for r in geo.region_ids_for_bounds(
                    bounds.north, bounds.south, bounds.east, bounds.west, self.region_precision
                ) if r in sub.regions]
            for r in regions:
                sub.regions.discard(r)
                self._leave(connection_id, r)
        logger.debug("Hub: %s unsubscribed from %d regions", connection_id, len(regions))
        return regions

    async def focus(self, connection_id: str, incident_id: int) -> str:
        channel = incident_channel(incident_id)
        async with self._lock:
            sub = self._sub(connection_id)
            sub.focus.add(incident_id)
            self._join(connection_id, channel)
        return channel

    async def blur(self, connection_id: str, incident_id: int) -> None:
        async with self._lock:
            sub = self._sub(connection_id)
            sub.focus.discard(incident_id)
            self._leave(connection_id, incident_channel(incident_id))

    # ---------- delivery ----------
    def _put(self, sub: Subscription, message: Dict[str, Any]) -> bool:
        try:
            sub.outbox.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.deliveries_dropped += 1
            logger.warning("Hub: outbox full for %s, dropped %s", sub.connection_id, message.get("event"))
            return False

    async def send(self, connection_id: str, message: Dict[str, Any]) -> bool:
        """Direct reply to one connection (acks, pong, errors)."""
        async with self._lock:
            sub = self._subs.get(connection_id)
        if sub is None:
            return False
        return self._put(sub, {**message, "timestamp": message.get("timestamp") or iso(utcnow())})

    async def _deliver(self, routes: Iterable[Tuple[str, str]], body: Dict[str, Any]) -> int:
        """
        routes: (channel, event name) pairs. Each member of a channel gets one
        message tagged with that channel. Returns the number of deliveries made.
        """
        async with self._lock:
            targets = [
                (channel, name, [self._subs[c] for c in self._channels.get(channel, ()) if c in self._subs])
                for channel, name in routes
            ]
        delivered = 0
        for channel, name, subs in targets:
            for sub in subs:
                if self._put(sub, {"event": name, "channel": channel, **body}):
                    delivered += 1
        self.events_emitted += 1
        return delivered

    def region_of(self, incident: Incident) -> str:
        return geo.region_id(incident.latitude, incident.longitude, self.region_precision)

    # ---------- lifecycle events ----------
    async def publish_created(self, incident: Incident) -> int:
        body = {"type": "incident_created", "incident": incident.summary(), "timestamp": iso(utcnow())}
        region = self.region_of(incident)
        logger.debug("Hub: created incident=%s region=%s", incident.id, region)
        return await self._deliver([(GLOBAL, "new_incident"), (region, "area_incident")], body)

    async def _publish_change(self, incident: Incident, actor_id: Optional[int], kind: str, body: Dict[str, Any]) -> int:
        routes = [(GLOBAL, f"incident_{kind}"), (incident_channel(incident.id), f"incident_detail_{kind}")]
        n = await self._deliver(routes, body)
        if actor_id is not None and actor_id != incident.reported_by:
            n += await self.notify_user(incident.reported_by, {
                "type": f"incident_{kind}",
                "message": f"Your incident #{incident.id} was {kind} by another user",
                "incident_id": incident.id,
                "actor_id": actor_id,
            })
        return n

    async def publish_updated(self, incident: Incident, changed_fields: List[str], actor_id: Optional[int]) -> int:
        body = {
            "type": "incident_updated",
            "incident": incident.summary(),
            "changed_fields": list(changed_fields),
            "updated_by": actor_id,
            "timestamp": iso(utcnow()),
        }
        return await self._publish_change(incident, actor_id, "updated", body)

    async def publish_deleted(self, incident: Incident, actor_id: Optional[int]) -> int:
        body = {
            "type": "incident_deleted",
            "incident": incident.summary(),
            "deleted_by": actor_id,
            "timestamp": iso(utcnow()),
        }
        return await self._publish_change(incident, actor_id, "deleted", body)

    async def publish_verified(self, incident: Incident, outcome: VerificationOutcome) -> int:
        body = {
            "type": "incident_verified",
            "incident": incident.summary(),
            "verification": {
                "verification_count": outcome.verification_count,
                "is_verified": outcome.is_verified,
            },
            "timestamp": iso(utcnow()),
        }
        return await self._publish_change(incident, None, "verified", body)

    async def publish_expired(self, incident: Incident) -> int:
        body = {"type": "incident_expired", "incident": incident.summary(), "timestamp": iso(utcnow())}
        return await self._deliver(
            [(GLOBAL, "incident_expired"), (incident_channel(incident.id), "incident_detail_expired")], body
        )

    async def notify_user(self, user_id: int, notification: Dict[str, Any]) -> int:
        body = {**notification, "timestamp": iso(utcnow())}
        body.setdefault("type", "notification")
        return await self._deliver([(user_channel(user_id), "user_notification")], body)

    # ---------- introspection ----------
    def members(self, channel: str) -> Set[str]:
        return set(self._channels.get(channel, ()))

    def channel_names(self) -> List[str]:
        return sorted(self._channels)

    def stats(self) -> Dict[str, Any]:
        return {
            "total_connections": self.total_connections,
            "active_connections": len(self._subs),
            "events_emitted": self.events_emitted,
            "deliveries_dropped": self.deliveries_dropped,
            "channels": len(self._channels),
        }
