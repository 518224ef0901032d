"""
Compliance Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Boolean, Date, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR THE DEADLINE ENGINE
# =============================================================================

class EventStatus(str, Enum):
    """States in the compliance event lifecycle."""
    PENDING = "pending"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    WAIVED = "waived"


class EventPriority(str, Enum):
    """Obligation priority, assigned by the rules provider."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IntervalUnit(str, Enum):
    """Recurrence granularity."""
    YEAR = "year"
    QUARTER = "quarter"
    MONTH = "month"


class Channel(str, Enum):
    """Notification delivery channels."""
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class NotificationReason(str, Enum):
    """Why a notification fired."""
    DEADLINE_APPROACHING = "deadline_approaching"
    OVERDUE = "overdue"
    ESCALATION = "escalation"
    RECURRENCE_CREATED = "recurrence_created"


class DeliveryOutcome(str, Enum):
    """Outcome of a notification delivery attempt."""
    SENT = "sent"
    FAILED = "failed"
    THROTTLED = "throttled"


class InteractionType(str, Enum):
    """User reactions to a delivered notification."""
    DISMISSED = "dismissed"
    OPENED = "opened"
    CLICKED = "clicked"


class ActorType(str, Enum):
    """Actor types for the status log."""
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


TERMINAL_STATUSES = (EventStatus.COMPLETED, EventStatus.WAIVED)
ACTIVE_STATUSES = (EventStatus.PENDING, EventStatus.DUE_SOON, EventStatus.OVERDUE)


# =============================================================================
# BUSINESS ENTITIES (read by the engine, owned by the CRUD layer)
# =============================================================================

class BusinessEntityDB(Base):
    """Business entity whose obligations the engine tracks."""
    __tablename__ = "business_entities"

    id = Column(String(36), primary_key=True)  # UUID
    owner_user_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    entity_type = Column(String(50), nullable=False)   # LLC, Corporation, S-Corp, ...
    jurisdiction = Column(String(10), nullable=False)  # 2-letter state code
    formation_date = Column(Date, nullable=False)      # Anchor for obligation offsets

    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    events = relationship("ComplianceEventDB", back_populates="entity")


# =============================================================================
# COMPLIANCE EVENTS
# =============================================================================

class ComplianceEventDB(Base):
    """
    One obligation instance (cycle) for a business entity.
    Never deleted - only transitioned to a terminal status.
    """
    __tablename__ = "compliance_events"

    id = Column(String(36), primary_key=True)  # UUID
    entity_id = Column(String(36), ForeignKey("business_entities.id"), nullable=False, index=True)

    # Obligation
    event_type = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True)  # tax, state_filing, compliance, licensing
    due_date = Column(Date, nullable=False)

    # Recurrence (both null for one-time obligations)
    recurrence_unit = Column(SQLEnum(IntervalUnit), nullable=True)
    recurrence_count = Column(Integer, nullable=True)

    # Cycle identifier - due date truncated to recurrence granularity
    cycle_key = Column(String(20), nullable=False)

    priority = Column(SQLEnum(EventPriority), default=EventPriority.MEDIUM, nullable=False)

    # State Machine
    status = Column(SQLEnum(EventStatus), default=EventStatus.PENDING, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(36), nullable=True)
    waived_by = Column(String(36), nullable=True)
    waived_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    entity = relationship("BusinessEntityDB", back_populates="events")
    status_log = relationship("EventStatusLogDB", back_populates="event")

    __table_args__ = (
        UniqueConstraint("entity_id", "event_type", "cycle_key", name="uq_compliance_event_cycle"),
        Index("ix_compliance_events_status_due", "status", "due_date"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class EventStatusLogDB(Base):
    """
    Immutable log of lifecycle transitions.
    Append-only - records every status change.
    """
    __tablename__ = "event_status_log"

    id = Column(String(36), primary_key=True)  # UUID
    event_id = Column(String(36), ForeignKey("compliance_events.id"), nullable=False, index=True)

    from_status = Column(SQLEnum(EventStatus), nullable=True)  # NULL for creation
    to_status = Column(SQLEnum(EventStatus), nullable=False)

    trigger = Column(String(100), nullable=False)  # materialized, time_elapsed, marked_completed, ...
    actor = Column(SQLEnum(ActorType), nullable=False)
    actor_id = Column(String(36), nullable=True)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    event = relationship("ComplianceEventDB", back_populates="status_log")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationRecordDB(Base):
    """
    One delivery attempt on one channel.
    Written regardless of outcome; immutable once written.
    Weak reference to the event - history survives waiver.
    """
    __tablename__ = "notification_records"

    id = Column(String(36), primary_key=True)  # UUID
    event_id = Column(String(36), nullable=False, index=True)  # no FK - audit trail
    user_id = Column(String(36), nullable=False, index=True)
    channel = Column(SQLEnum(Channel), nullable=False)

    dedup_key = Column(String(64), nullable=False)
    reason = Column(SQLEnum(NotificationReason), nullable=False)
    score = Column(Integer, nullable=True)

    delivery_outcome = Column(SQLEnum(DeliveryOutcome), nullable=False)
    attempts = Column(Integer, default=1)
    error_message = Column(Text, nullable=True)

    sent_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_notification_records_user_dedup", "user_id", "dedup_key"),
    )


class NotificationClaimDB(Base):
    """
    Exclusive right to deliver one condition to one user on one channel.
    Inserted by the gate before dispatch; the unique constraint is what keeps
    concurrent sweeps from both sending. Outcome is NULL until dispatch settles it.
    """
    __tablename__ = "notification_claims"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False)
    dedup_key = Column(String(64), nullable=False)
    channel = Column(SQLEnum(Channel), nullable=False)
    event_id = Column(String(36), nullable=False)

    outcome = Column(SQLEnum(DeliveryOutcome), nullable=True)
    claimed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "dedup_key", "channel", name="uq_notification_claim"),
    )


class NotificationInteractionDB(Base):
    """User reaction to a delivered notification (dismiss/open/click)."""
    __tablename__ = "notification_interactions"

    id = Column(String(36), primary_key=True)  # UUID
    record_id = Column(String(36), ForeignKey("notification_records.id"), nullable=False, index=True)
    event_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    interaction = Column(SQLEnum(InteractionType), nullable=False)
    occurred_at = Column(DateTime, nullable=False)


class RateCounterDB(Base):
    """
    Per-user notification counter for one rate window.
    Incremented with a conditional UPDATE - never read-then-write.
    """
    __tablename__ = "notification_rate_counters"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False)
    window_bucket = Column(String(32), nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "window_bucket", name="uq_rate_counter_user_window"),
    )


class ChannelPreferenceDB(Base):
    """Per-user channel toggles and contact details."""
    __tablename__ = "channel_preferences"

    user_id = Column(String(36), primary_key=True)

    email_enabled = Column(Boolean, default=True)
    sms_enabled = Column(Boolean, default=False)
    in_app_enabled = Column(Boolean, default=True)

    email_address = Column(String(255), nullable=True)
    phone_number = Column(String(20), nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InAppNotificationDB(Base):
    """In-app inbox entry shown on the dashboard."""
    __tablename__ = "in_app_notifications"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    event_id = Column(String(36), nullable=True)

    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    priority_level = Column(String(20), nullable=True)  # critical, high, normal, low
    action_url = Column(String(255), nullable=True)
    is_read = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# SWEEP BOOKKEEPING
# =============================================================================

class SweepRunDB(Base):
    """One run of the periodic sweep."""
    __tablename__ = "sweep_runs"

    id = Column(String(36), primary_key=True)  # UUID
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String(20), default="running")  # running, completed, cancelled

    events_transitioned = Column(Integer, default=0)
    notifications_sent = Column(Integer, default=0)
    result = Column(JSON, nullable=True)


class SweepCheckpointDB(Base):
    """Marks an entity as processed within a sweep run."""
    __tablename__ = "sweep_checkpoints"

    id = Column(String(36), primary_key=True)  # UUID
    sweep_run_id = Column(String(36), ForeignKey("sweep_runs.id"), nullable=False, index=True)
    entity_id = Column(String(36), nullable=False)
    processed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("sweep_run_id", "entity_id", name="uq_sweep_checkpoint_entity"),
    )
