"""
Recurrence Generator

Spawns the next cycle of a recurring obligation once its predecessor reaches
a terminal status. The next due date is the next date of the series the
previous cycle belongs to, counted from the series base, so neither a late
completion nor month-end clamping shifts the calendar.
"""
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    BusinessEntityDB, ComplianceEventDB, EventStatusLogDB, EventStatus, TERMINAL_STATUSES,
)
from ...models.engine_models import Recurrence
from .clock import as_naive_utc
from .materializer import EventMaterializer
from .recurrence import first_due_date, next_in_series, recurrence_from_columns


logger = logging.getLogger(__name__)

RECURRENCE_TRIGGER = "recurrence_created"


class RecurrenceGenerator:
    """
    Usage:
        generator = RecurrenceGenerator(db, materializer)
        next_event = generator.on_terminal(event)
    """

    def __init__(self, db: Session, materializer: EventMaterializer, config: Optional[EngineConfig] = None):
        self.db = db
        self.materializer = materializer
        self.config = config or EngineConfig()

    def on_terminal(self, event: ComplianceEventDB, now: Optional[datetime] = None) -> Optional[ComplianceEventDB]:
        """
        Next cycle for a completed or waived event.

        Returns None for one-time obligations and non-terminal events. Calling
        it again returns the same next event without creating another.
        """
        next_event, _ = self._spawn(event, now)
        return next_event

    def _spawn(self, event: ComplianceEventDB, now: Optional[datetime]) -> Tuple[Optional[ComplianceEventDB], bool]:
        if event.status not in TERMINAL_STATUSES:
            return None, False

        recurrence = recurrence_from_columns(event.recurrence_unit, event.recurrence_count)
        if recurrence is None:
            return None, False

        next_due = self.next_due_date(event, recurrence)
        next_event, created = self.materializer.create_event_if_absent(
            entity_id=event.entity_id,
            event_type=event.event_type,
            title=event.title,
            description=event.description or "",
            category=event.category,
            priority=event.priority,
            recurrence=recurrence,
            due_date=next_due,
            now=now,
            trigger=RECURRENCE_TRIGGER,
        )
        if created:
            logger.info(
                f"Spawned next {event.event_type} cycle for entity {event.entity_id}: "
                f"due {next_due.isoformat()} (after {event.status.value} {event.id})"
            )
        return next_event, created

    def next_due_date(self, event: ComplianceEventDB, recurrence: Recurrence) -> date:
        """The series date that follows `event.due_date`."""
        base = self.series_base(event, recurrence)
        return next_in_series(base, recurrence, event.due_date + timedelta(days=1))

    def series_base(self, event: ComplianceEventDB, recurrence: Recurrence) -> date:
        """
        First date of the series `event` lies on.

        Tries the template's own series, then the entity's earliest cycle of
        this type. An event on neither starts a series of its own.
        """
        bases = []
        entity = self.db.get(BusinessEntityDB, event.entity_id)
        if entity is not None:
            for template in self.materializer.load_templates(entity):
                if template.event_type == event.event_type and template.recurrence == recurrence:
                    bases.append(first_due_date(entity.formation_date, template))

        earliest = self.db.query(func.min(ComplianceEventDB.due_date)).filter(
            ComplianceEventDB.entity_id == event.entity_id,
            ComplianceEventDB.event_type == event.event_type,
            ComplianceEventDB.recurrence_unit == recurrence.interval_unit,
            ComplianceEventDB.recurrence_count == recurrence.interval_count,
        ).scalar()
        if earliest is not None:
            bases.append(earliest)

        for base in bases:
            if base <= event.due_date and next_in_series(base, recurrence, event.due_date) == event.due_date:
                return base
        return event.due_date

    def catch_up(self, entity_id: str, now: Optional[datetime] = None) -> List[ComplianceEventDB]:
        """
        Spawn missing next cycles for the entity's latest terminal events.

        Covers terminal transitions that happened outside on_terminal (e.g.
        a crash between completion and spawn). Only cycles due within the
        look-ahead horizon are created; later ones are left to the
        materializer.
        """
        now = as_naive_utc(now)
        horizon = now.date() + timedelta(days=self.config.look_ahead_days)

        latest = self.db.query(
            ComplianceEventDB.event_type,
            func.max(ComplianceEventDB.due_date).label("due_date"),
        ).filter(
            ComplianceEventDB.entity_id == entity_id,
        ).group_by(ComplianceEventDB.event_type).subquery()

        tails = self.db.query(ComplianceEventDB).join(
            latest,
            (ComplianceEventDB.event_type == latest.c.event_type)
            & (ComplianceEventDB.due_date == latest.c.due_date),
        ).filter(
            ComplianceEventDB.entity_id == entity_id,
            ComplianceEventDB.status.in_(TERMINAL_STATUSES),
            ComplianceEventDB.recurrence_unit.isnot(None),
        ).all()

        spawned = []
        for event in tails:
            recurrence = recurrence_from_columns(event.recurrence_unit, event.recurrence_count)
            if self.next_due_date(event, recurrence) > horizon:
                continue
            next_event, created = self._spawn(event, now)
            if created:
                spawned.append(next_event)
        return spawned

    def spawned_event_ids(self, entity_id: str) -> Set[str]:
        """Pending events of the entity that were created by recurrence."""
        rows = self.db.query(ComplianceEventDB.id).join(
            EventStatusLogDB, EventStatusLogDB.event_id == ComplianceEventDB.id,
        ).filter(
            ComplianceEventDB.entity_id == entity_id,
            ComplianceEventDB.status == EventStatus.PENDING,
            EventStatusLogDB.from_status.is_(None),
            EventStatusLogDB.trigger == RECURRENCE_TRIGGER,
        ).all()
        return {row.id for row in rows}
