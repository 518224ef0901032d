"""
Compliance Service

Query and command surface consumed by the API layer.
Reads lazily materialize and re-derive statuses for the requested entity,
so the dashboard is correct even between sweeps.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...database import SessionLocal
from ...models.db_models import (
    BusinessEntityDB, ComplianceEventDB, InAppNotificationDB, NotificationRecordDB,
    NotificationInteractionDB, EventStatus, InteractionType,
)
from .clock import as_naive_utc
from .inbox import NotificationInbox
from .lifecycle import LifecycleTracker, days_until_due
from .materializer import EntityNotFound, EventMaterializer
from .profile import NotificationProfileService
from .recurrence_generator import RecurrenceGenerator
from .rules_provider import RulesProvider, StaticRulesProvider
from .scorer import NotificationScorer, score_to_urgency
from .sweep import ComplianceSweep


logger = logging.getLogger(__name__)


class RecordNotFound(Exception):
    """Raised when a notification record does not exist."""
    pass


def event_to_dict(event: ComplianceEventDB, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_naive_utc(now)
    days_left = days_until_due(event.due_date, now)
    return {
        "id": event.id,
        "entity_id": event.entity_id,
        "event_type": event.event_type,
        "title": event.title,
        "description": event.description,
        "category": event.category,
        "due_date": event.due_date.isoformat(),
        "days_until_due": days_left,
        "recurrence": {
            "interval_unit": event.recurrence_unit.value,
            "interval_count": event.recurrence_count,
        } if event.recurrence_unit else None,
        "priority": event.priority.value,
        "status": event.status.value,
        "completed_at": event.completed_at.isoformat() if event.completed_at else None,
        "completed_by": event.completed_by,
        "waived_reason": event.waived_reason,
    }


class ComplianceService:
    """
    Facade over the deadline engine.

    Usage:
        service = ComplianceService(db)
        upcoming = service.list_upcoming(entity_id, within_days=30)
        service.mark_completed(event_id, by=user_id)
    """

    def __init__(
        self,
        db: Session,
        rules_provider: Optional[RulesProvider] = None,
        config: Optional[EngineConfig] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.rules_provider = rules_provider or StaticRulesProvider()
        self.session_factory = session_factory
        self.materializer = EventMaterializer(db, self.rules_provider, self.config)
        self.tracker = LifecycleTracker(db, self.config)
        self.generator = RecurrenceGenerator(db, self.materializer, self.config)
        self.scorer = NotificationScorer(self.config)
        self.inbox = NotificationInbox(db, self.config)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def refresh_entity(self, entity_id: str, now: Optional[datetime] = None) -> int:
        """
        On-demand counterpart of one sweep step: materialize, spawn missing
        cycles and re-derive statuses. Returns the number of transitions.
        """
        now = as_naive_utc(now)
        self.materializer.materialize(entity_id, now=now)
        self.generator.catch_up(entity_id, now)
        changes = self.tracker.refresh_entity(entity_id, now)
        self.db.commit()
        return len(changes)

    def list_upcoming(self, entity_id: str, within_days: int, now: Optional[datetime] = None) -> List[ComplianceEventDB]:
        """Active, not yet overdue events due within the next `within_days` days."""
        now = as_naive_utc(now)
        self.refresh_entity(entity_id, now)
        today = now.date()

        return self.db.query(ComplianceEventDB).filter(
            ComplianceEventDB.entity_id == entity_id,
            ComplianceEventDB.status.in_([EventStatus.PENDING, EventStatus.DUE_SOON]),
            ComplianceEventDB.due_date >= today,
            ComplianceEventDB.due_date <= today + timedelta(days=within_days),
        ).order_by(ComplianceEventDB.due_date, ComplianceEventDB.event_type).all()

    def list_overdue(self, entity_id: str, now: Optional[datetime] = None) -> List[ComplianceEventDB]:
        now = as_naive_utc(now)
        self.refresh_entity(entity_id, now)

        return self.db.query(ComplianceEventDB).filter(
            ComplianceEventDB.entity_id == entity_id,
            ComplianceEventDB.status == EventStatus.OVERDUE,
        ).order_by(ComplianceEventDB.due_date, ComplianceEventDB.event_type).all()

    def dashboard(self, entity_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Status counts plus upcoming and overdue events for one entity."""
        now = as_naive_utc(now)
        entity = self.db.get(BusinessEntityDB, entity_id)
        if entity is None:
            raise EntityNotFound(f"Business entity {entity_id} not found")

        upcoming = self.list_upcoming(entity_id, self.config.look_ahead_days, now)
        overdue = self.list_overdue(entity_id, now)

        counts = {status.value: 0 for status in EventStatus}
        for event in self.db.query(ComplianceEventDB).filter(ComplianceEventDB.entity_id == entity_id).all():
            counts[event.status.value] += 1

        # Urgency comes from the same score the notifications use
        profile = NotificationProfileService(self.db, self.config).build_profile(entity.owner_user_id, now)

        def annotated(event: ComplianceEventDB) -> Dict[str, Any]:
            result = self.scorer.evaluate(event, profile, now)
            score = result.score if result else 0
            item = event_to_dict(event, now)
            item["priority_score"] = score
            item["urgency"] = score_to_urgency(score)
            return item

        return {
            "entity_id": entity.id,
            "entity_name": entity.name,
            "as_of": now.isoformat(),
            "counts": counts,
            "total_events": sum(counts.values()),
            "upcoming": [annotated(event) for event in upcoming],
            "overdue": [annotated(event) for event in overdue],
        }

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def materialize(self, entity_id: str, look_ahead_days: Optional[int] = None,
                    now: Optional[datetime] = None) -> List[ComplianceEventDB]:
        created = self.materializer.materialize(entity_id, look_ahead_days, now)
        self.db.commit()
        return created

    def mark_completed(self, event_id: str, by: str, now: Optional[datetime] = None) -> ComplianceEventDB:
        """Complete the event and spawn its next cycle if it recurs."""
        event = self.tracker.mark_completed(event_id, by, now)
        self.generator.on_terminal(event, now)
        self.db.commit()
        logger.info(f"Event {event_id} marked completed by {by}")
        return event

    def mark_waived(self, event_id: str, by: str, reason: str, now: Optional[datetime] = None) -> ComplianceEventDB:
        event = self.tracker.mark_waived(event_id, by, reason, now)
        self.generator.on_terminal(event, now)
        self.db.commit()
        logger.info(f"Event {event_id} waived by {by}: {reason}")
        return event

    def record_interaction(
        self,
        record_id: str,
        interaction: InteractionType,
        now: Optional[datetime] = None,
    ) -> NotificationInteractionDB:
        """Capture a dismiss/open/click on a delivered notification."""
        record = self.db.get(NotificationRecordDB, record_id)
        if record is None:
            raise RecordNotFound(f"Notification record {record_id} not found")

        row = NotificationInteractionDB(
            id=str(uuid4()),
            record_id=record.id,
            event_id=record.event_id,
            user_id=record.user_id,
            interaction=interaction,
            occurred_at=as_naive_utc(now),
        )
        self.db.add(row)
        self.db.commit()
        return row

    # =========================================================================
    # IN-APP INBOX
    # =========================================================================

    def list_notifications(self, user_id: str, unread_only: bool = False,
                           limit: int = 10) -> List[InAppNotificationDB]:
        return self.inbox.list_notifications(user_id, unread_only, limit)

    def mark_notification_read(self, user_id: str, notification_id: str,
                               now: Optional[datetime] = None) -> InAppNotificationDB:
        row = self.inbox.mark_read(user_id, notification_id, now)
        self.db.commit()
        return row

    def mark_all_notifications_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        count = self.inbox.mark_all_read(user_id, now)
        self.db.commit()
        logger.info(f"Marked {count} notifications read for user {user_id}")
        return count

    def notification_stats(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.inbox.statistics(user_id, now)

    def run_sweep(self, now: Optional[datetime] = None, resume_run_id: Optional[str] = None,
                  **sweep_kwargs) -> Dict[str, Any]:
        sweep = ComplianceSweep(
            session_factory=self.session_factory,
            rules_provider=self.rules_provider,
            config=self.config,
            **sweep_kwargs,
        )
        return sweep.run(now=now, resume_run_id=resume_run_id)
