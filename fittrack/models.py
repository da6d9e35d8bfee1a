from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base

ACTIVITY_TYPES = (
    "Running",
    "Walking",
    "Cycling",
    "Swimming",
    "Hiking",
    "Yoga",
    "Weight Training",
    "Other",
)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the convention for every stored timestamp."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    activities = relationship(
        "FitnessActivity",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    verifications = relationship(
        "EmailVerification",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class FitnessActivity(Base):
    __tablename__ = "fitness_activities"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_type = Column(String(50), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    distance_km = Column(Float)
    calories_burned = Column(Integer, nullable=False)
    activity_time = Column(DateTime, nullable=False, index=True)
    notes = Column(Text)
    is_public = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="activities")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.user.username if self.user else None,
            "activity_type": self.activity_type,
            "duration_minutes": self.duration_minutes,
            "distance_km": self.distance_km,
            "calories_burned": self.calories_burned,
            "activity_time": self.activity_time.isoformat() if self.activity_time else None,
            "notes": self.notes,
            "is_public": bool(self.is_public),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EmailVerification(Base):
    __tablename__ = "email_verifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    purpose = Column(String(30), nullable=False)  # email_change, password_reset, account_deletion
    new_email = Column(String(255))
    verification_code = Column(String(6), nullable=False)
    used_at = Column(DateTime)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="verifications")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    username = Column(String(50), index=True)
    event_type = Column(String(50), nullable=False, index=True)
    resource_type = Column(String(50))
    resource_id = Column(Integer)
    changes = Column(JSON)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    path = Column(String(255))
    method = Column(String(10))
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username,
            "event_type": self.event_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "changes": self.changes,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "path": self.path,
            "method": self.method,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
