"""
Typed records handed out at the repository boundary, plus the incident
state machine.

Rows coming back from the store are converted here exactly once, so the
rest of the code never sees JSON-encoded severity ranges or raw columns.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import Expired


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


# ---------- incident state machine ----------
class IncidentStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    DELETED = "deleted"


_TRANSITIONS = {
    IncidentStatus.ACTIVE: {IncidentStatus.EXPIRED, IncidentStatus.DELETED},
    IncidentStatus.EXPIRED: {IncidentStatus.DELETED},
    IncidentStatus.DELETED: set(),
}


def transition(current: IncidentStatus, target: IncidentStatus) -> IncidentStatus:
    """The only place a status change is decided. Raises Expired on an illegal move."""
    current = IncidentStatus(current)
    target = IncidentStatus(target)
    if target not in _TRANSITIONS[current]:
        raise Expired(f"Cannot move incident from {current.value} to {target.value}")
    return target


class VerificationState(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


def verification_state(count: int, quorum: int) -> VerificationState:
    return VerificationState.VERIFIED if count >= quorum else VerificationState.UNVERIFIED


# ---------- value types ----------
@dataclass(frozen=True)
class SeverityRange:
    minimum: int
    maximum: int

    @classmethod
    def parse(cls, raw: Any) -> "SeverityRange":
        """Accepts "[2, 5]", [2, 5] or (2, 5)."""
        if isinstance(raw, str):
            raw = json.loads(raw)
        lo, hi = (int(v) for v in raw)
        if lo > hi:
            lo, hi = hi, lo
        return cls(lo, hi)

    def contains(self, severity: int) -> bool:
        return self.minimum <= severity <= self.maximum

    def as_list(self) -> List[int]:
        return [self.minimum, self.maximum]


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    def span(self) -> Tuple[float, float]:
        return abs(self.north - self.south), abs(self.east - self.west)

    def estimated_cells(self, cells_per_degree: float) -> float:
        d_lat, d_lon = self.span()
        return d_lat * cells_per_degree * d_lon * cells_per_degree

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def to_dict(self) -> Dict[str, float]:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}


@dataclass(frozen=True)
class IncidentType:
    id: int
    name: str
    category: str
    severity_range: SeverityRange
    default_severity: int
    requires_verification: bool = False
    auto_expire_hours: Optional[float] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    priority: Optional[int] = None

    @classmethod
    def from_row(cls, row: Any) -> "IncidentType":
        return cls(
            id=row.id,
            name=row.name,
            category=row.category or "other",
            severity_range=SeverityRange.parse(row.severity_range),
            default_severity=int(row.default_severity),
            requires_verification=bool(row.requires_verification),
            auto_expire_hours=float(row.auto_expire_hours) if row.auto_expire_hours else None,
            icon=row.icon,
            color=row.color,
            priority=row.priority,
        )

    def expiry_from(self, created_at: datetime) -> Optional[datetime]:
        if not self.auto_expire_hours:
            return None
        return created_at + timedelta(hours=self.auto_expire_hours)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "severity_range": self.severity_range.as_list(),
            "default_severity": self.default_severity,
            "requires_verification": self.requires_verification,
            "auto_expire_hours": self.auto_expire_hours,
            "icon": self.icon,
            "color": self.color,
            "priority": self.priority,
        }


@dataclass
class Incident:
    id: int
    type_id: int
    description: Optional[str]
    severity: int
    latitude: float
    longitude: float
    reported_by: int
    status: IncidentStatus = IncidentStatus.ACTIVE
    address: Optional[str] = None
    estimated_duration_minutes: Optional[int] = None
    affected_lanes: Optional[int] = None
    verification_count: int = 0
    verified: bool = False
    requires_verification: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[int] = None
    incident_type: Optional[IncidentType] = None

    @classmethod
    def from_row(cls, row: Any, type_row: Any = None) -> "Incident":
        return cls(
            id=row.id,
            type_id=row.type_id,
            description=row.description,
            severity=int(row.severity),
            latitude=float(row.latitude),
            longitude=float(row.longitude),
            reported_by=row.reported_by,
            status=IncidentStatus(row.status),
            address=row.address,
            estimated_duration_minutes=row.estimated_duration_minutes,
            affected_lanes=row.affected_lanes,
            verification_count=int(row.verification_count or 0),
            verified=bool(row.verified),
            requires_verification=bool(row.requires_verification),
            created_at=row.created_at,
            updated_at=row.updated_at,
            expires_at=row.expires_at,
            deleted_at=row.deleted_at,
            deleted_by=row.deleted_by,
            incident_type=IncidentType.from_row(type_row) if type_row is not None else None,
        )

    def effective_status(self, now: Optional[datetime] = None) -> IncidentStatus:
        """Active incidents past their expiry read as expired even before the sweep runs."""
        if self.status is IncidentStatus.ACTIVE and self.expires_at is not None:
            if self.expires_at <= (now or utcnow()):
                return IncidentStatus.EXPIRED
        return self.status

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.effective_status(now) is IncidentStatus.EXPIRED

    @property
    def category(self) -> Optional[str]:
        return self.incident_type.category if self.incident_type else None

    def summary(self) -> Dict[str, Any]:
        """Compact form used in real-time payloads."""
        return {
            "id": self.id,
            "type_id": self.type_id,
            "incident_type": self.incident_type.name if self.incident_type else None,
            "severity": self.severity,
            "status": self.status.value,
            "verified": self.verified,
            "verification_count": self.verification_count,
            "location": {"latitude": self.latitude, "longitude": self.longitude},
            "reported_by": self.reported_by,
        }

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        it = self.incident_type
        return {
            "id": self.id,
            "type_id": self.type_id,
            "description": self.description,
            "severity": self.severity,
            "address": self.address,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "affected_lanes": self.affected_lanes,
            "status": self.status.value,
            "verified": self.verified,
            "verification_count": self.verification_count,
            "requires_verification": self.requires_verification,
            "is_expired": self.is_expired(now),
            "location": {"latitude": self.latitude, "longitude": self.longitude},
            "incident_type": {
                "name": it.name,
                "category": it.category,
                "icon": it.icon,
                "color": it.color,
            } if it else None,
            "reported_by": self.reported_by,
            "timestamps": {
                "created_at": iso(self.created_at),
                "updated_at": iso(self.updated_at),
                "expires_at": iso(self.expires_at),
                "deleted_at": iso(self.deleted_at),
            },
        }


@dataclass(frozen=True)
class VerificationOutcome:
    incident_id: int
    verification_count: int
    is_verified: bool
    promoted: bool


@dataclass
class PointFilter:
    """Selection handed to the store's point queries."""
    statuses: Tuple[IncidentStatus, ...] = (IncidentStatus.ACTIVE,)
    since: Optional[datetime] = None
    bounds: Optional[Bounds] = None
    type_ids: Tuple[int, ...] = ()
    ids: Tuple[int, ...] = ()
    min_severity: Optional[int] = None
    severities: Tuple[int, ...] = ()
    verified: Optional[bool] = None
    include_expired: bool = True
    expires_before: Optional[datetime] = None
    now: Optional[datetime] = None
    limit: Optional[int] = None
    newest_first: bool = True


@dataclass
class TimingLog:
    """Execution time per call for one analysis kind."""
    entries: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, execution_ms: float, **extra: Any) -> None:
        self.entries.append({"timestamp": utcnow(), "execution_ms": execution_ms, **extra})
        del self.entries[:-1000]

    def summary(self) -> Optional[Dict[str, Any]]:
        if not self.entries:
            return None
        times = [e["execution_ms"] for e in self.entries]
        return {
            "count": len(times),
            "avg_ms": sum(times) / len(times),
            "min_ms": min(times),
            "max_ms": max(times),
            "last_used": iso(self.entries[-1]["timestamp"]),
        }


class PerformanceMonitor:
    """Timing logs keyed by analysis kind; shared by every analyzer of one service."""

    def __init__(self):
        self.logs: Dict[str, TimingLog] = {}

    def record(self, kind: str, execution_ms: float, **extra: Any) -> None:
        self.logs.setdefault(kind, TimingLog()).record(execution_ms, **extra)

    def summary(self) -> Dict[str, Any]:
        return {kind: log.summary() for kind, log in sorted(self.logs.items())}
