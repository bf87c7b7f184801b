from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from .db import Base


def _utcnow():
    return datetime.utcnow()


class IncidentTypeRow(Base):
    __tablename__ = "incident_types"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    category = Column(String, index=True)
    severity_range = Column(String, nullable=False, default="[1, 5]")  # JSON "[min, max]"
    default_severity = Column(Integer, nullable=False, default=3)
    requires_verification = Column(Boolean, default=False)
    auto_expire_hours = Column(Float)
    icon = Column(String)
    color = Column(String)
    priority = Column(Integer)
    created_at = Column(DateTime, default=_utcnow)


class IncidentRow(Base):
    __tablename__ = "incidents"
    id = Column(Integer, primary_key=True)
    type_id = Column(Integer, ForeignKey("incident_types.id"), nullable=False, index=True)
    description = Column(Text)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String)
    severity = Column(Integer, nullable=False)
    estimated_duration_minutes = Column(Integer)
    affected_lanes = Column(Integer)
    status = Column(String(16), nullable=False, default="active", index=True)
    verification_count = Column(Integer, nullable=False, default=0)
    verified = Column(Boolean, nullable=False, default=False)
    requires_verification = Column(Boolean, default=False)
    reported_by = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime, default=_utcnow, index=True)
    updated_at = Column(DateTime, default=_utcnow)
    expires_at = Column(DateTime)
    deleted_at = Column(DateTime)
    deleted_by = Column(Integer)

    __table_args__ = (
        Index("idx_incidents_lat_lon", "latitude", "longitude"),
    )


class VerificationRow(Base):
    __tablename__ = "incident_verifications"
    id = Column(Integer, primary_key=True)
    incident_id = Column(Integer, ForeignKey("incidents.id"), nullable=False)
    user_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("incident_id", "user_id", name="uq_verification_incident_user"),
    )
