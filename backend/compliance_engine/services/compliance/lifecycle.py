"""
Lifecycle Tracker

Deterministic state machine for compliance events.
Statuses only move forward; completed and waived are terminal.
All transitions are logged immutably.

derive_status() is the single source of truth for time-driven transitions -
both the sweep and on-demand reads call it.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    ComplianceEventDB, EventStatusLogDB,
    EventStatus, EventPriority, ActorType, ACTIVE_STATUSES,
)
from ...models.engine_models import StatusChange
from .clock import as_naive_utc


logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATUS_CONFIG = {
    EventStatus.PENDING: {
        "description": "Obligation materialized, due date outside the due-soon window",
        "allowed_transitions": [
            EventStatus.DUE_SOON,
            EventStatus.OVERDUE,
            EventStatus.COMPLETED,
            EventStatus.WAIVED,
        ],
        "rank": 0,
        "entry_authority": "SYSTEM",
    },
    EventStatus.DUE_SOON: {
        "description": "Due date within the due-soon window",
        "allowed_transitions": [
            EventStatus.OVERDUE,
            EventStatus.COMPLETED,
            EventStatus.WAIVED,
        ],
        "rank": 1,
        "entry_authority": "SYSTEM",
    },
    EventStatus.OVERDUE: {
        "description": "Due date passed without completion",
        "allowed_transitions": [
            EventStatus.COMPLETED,
            EventStatus.WAIVED,
        ],
        "rank": 2,
        "entry_authority": "SYSTEM",
    },
    EventStatus.COMPLETED: {
        "description": "Obligation fulfilled",
        "allowed_transitions": [],  # Terminal state
        "rank": 3,
        "entry_authority": "USER",
    },
    EventStatus.WAIVED: {
        "description": "Administrative override",
        "allowed_transitions": [],  # Terminal state
        "rank": 3,
        "entry_authority": "ADMIN",
    },
}

PRIORITY_ESCALATION = {
    EventPriority.LOW: EventPriority.MEDIUM,
    EventPriority.MEDIUM: EventPriority.HIGH,
    EventPriority.HIGH: EventPriority.HIGH,
}


class InvalidTransition(Exception):
    """Raised when a requested transition is not allowed from the current status."""
    pass


class EventNotFound(Exception):
    """Raised when a compliance event does not exist."""
    pass


def is_terminal(status: EventStatus) -> bool:
    return len(STATUS_CONFIG[status]["allowed_transitions"]) == 0


def can_transition(from_status: EventStatus, to_status: EventStatus) -> bool:
    return to_status in STATUS_CONFIG[from_status]["allowed_transitions"]


def derive_status(
    status: EventStatus,
    due_date: date,
    now: datetime,
    due_soon_window_days: int,
) -> EventStatus:
    """
    Time-driven status for an event. Pure function.

    - terminal statuses never change
    - overdue once today is past the due date
    - due_soon once today is inside the window before the due date
    - never returns a status ranked below the current one
    """
    if is_terminal(status):
        return status

    today = now.date()
    if today > due_date:
        computed = EventStatus.OVERDUE
    elif today >= due_date - timedelta(days=due_soon_window_days):
        computed = EventStatus.DUE_SOON
    else:
        computed = EventStatus.PENDING

    if STATUS_CONFIG[computed]["rank"] < STATUS_CONFIG[status]["rank"]:
        return status
    return computed


def days_until_due(due_date: date, now: datetime) -> int:
    """Whole days from today to the due date; negative once overdue."""
    return (due_date - now.date()).days


class LifecycleTracker:
    """
    Owns status and completed_at on ComplianceEvent rows.

    Core Principles:
    - Time-driven transitions come only from derive_status()
    - Completion and waiver are explicit and rejected on terminal events
    - Every transition writes an EventStatusLogDB row
    - Listeners receive a StatusChange for each transition
    """

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or EngineConfig()
        self.listeners: List[Callable[[StatusChange], None]] = []

    def subscribe(self, listener: Callable[[StatusChange], None]) -> None:
        """Register a callback for status_changed signals."""
        self.listeners.append(listener)

    def get_event(self, event_id: str) -> ComplianceEventDB:
        event = self.db.get(ComplianceEventDB, event_id)
        if event is None:
            raise EventNotFound(f"Compliance event {event_id} not found")
        return event

    def refresh(self, event: ComplianceEventDB, now: Optional[datetime] = None) -> Optional[StatusChange]:
        """
        Re-derive an event's status. No-op for terminal events.

        Returns the StatusChange when the status moved, else None.
        """
        now = as_naive_utc(now)
        new_status = derive_status(event.status, event.due_date, now, self.config.due_soon_window_days)
        if new_status == event.status:
            return None
        return self._apply(event, new_status, trigger="time_elapsed", actor=ActorType.SYSTEM, now=now)

    def refresh_entity(self, entity_id: str, now: Optional[datetime] = None) -> List[StatusChange]:
        """Re-derive every active event of one entity."""
        now = as_naive_utc(now)
        events = self.db.query(ComplianceEventDB).filter(
            ComplianceEventDB.entity_id == entity_id,
            ComplianceEventDB.status.in_(ACTIVE_STATUSES),
        ).all()

        changes = []
        for event in events:
            change = self.refresh(event, now)
            if change:
                changes.append(change)
        return changes

    def mark_completed(self, event_id: str, by: str, now: Optional[datetime] = None) -> ComplianceEventDB:
        """
        Mark an event done.

        AUTHORITY: USER - valid from pending, due_soon or overdue.
        """
        now = as_naive_utc(now)
        event = self.get_event(event_id)
        self._require(event, EventStatus.COMPLETED)

        event.completed_at = now
        event.completed_by = by
        self._apply(event, EventStatus.COMPLETED, trigger="marked_completed",
                    actor=ActorType.USER, now=now, actor_id=by)
        return event

    def mark_waived(self, event_id: str, by: str, reason: str, now: Optional[datetime] = None) -> ComplianceEventDB:
        """
        Administrative override.

        AUTHORITY: ADMIN - valid from any non-terminal status.
        """
        if not reason or not reason.strip():
            raise ValueError("A waiver reason is required")

        now = as_naive_utc(now)
        event = self.get_event(event_id)
        self._require(event, EventStatus.WAIVED)

        event.waived_by = by
        event.waived_reason = reason
        self._apply(event, EventStatus.WAIVED, trigger="waived",
                    actor=ActorType.ADMIN, now=now, actor_id=by, reason=reason)
        return event

    def escalate_priority(self, event: ComplianceEventDB, now: Optional[datetime] = None) -> bool:
        """Bump priority one level. Returns True when it changed."""
        if is_terminal(event.status):
            return False
        escalated = PRIORITY_ESCALATION[event.priority]
        if escalated == event.priority:
            return False

        logger.info(f"Escalating priority of event {event.id}: {event.priority.value} -> {escalated.value}")
        event.priority = escalated
        event.updated_at = as_naive_utc(now)
        return True

    def _require(self, event: ComplianceEventDB, to_status: EventStatus) -> None:
        if not can_transition(event.status, to_status):
            raise InvalidTransition(
                f"Cannot transition event {event.id} from {event.status.value} to {to_status.value}"
            )

    def _apply(
        self,
        event: ComplianceEventDB,
        to_status: EventStatus,
        trigger: str,
        actor: ActorType,
        now: datetime,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StatusChange:
        from_status = event.status

        self.db.add(EventStatusLogDB(
            id=str(uuid4()),
            event_id=event.id,
            from_status=from_status,
            to_status=to_status,
            trigger=trigger,
            actor=actor,
            actor_id=actor_id,
            reason=reason,
            created_at=now,
        ))

        event.status = to_status
        event.updated_at = now

        change = StatusChange(
            event_id=event.id,
            entity_id=event.entity_id,
            from_status=from_status,
            to_status=to_status,
            changed_at=now,
            trigger=trigger,
        )
        for listener in self.listeners:
            listener(change)
        return change
