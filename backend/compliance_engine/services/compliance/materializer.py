"""
Event Materializer

AUTHORITY: SYSTEM
Expands obligation templates into concrete ComplianceEvent rows for a bounded
look-ahead horizon.

Key behaviors:
- One event per (entity, event type, cycle) - enforced by a unique constraint
- Re-running for the same entity and window creates nothing new
- Unsupported jurisdictions and rules-provider failures yield zero events
- A lost creation race (IntegrityError) is a benign no-op
"""
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    BusinessEntityDB, ComplianceEventDB, EventStatusLogDB,
    EventStatus, EventPriority, ActorType,
)
from ...models.engine_models import ObligationTemplate, Recurrence, UnsupportedJurisdiction
from .clock import as_naive_utc
from .recurrence import cycle_key, next_occurrence
from .rules_provider import RulesProvider


logger = logging.getLogger(__name__)


class EntityNotFound(Exception):
    """Raised when the business entity does not exist."""
    pass


class EventMaterializer:
    """
    Creates ComplianceEvent rows from obligation templates.

    Usage:
        materializer = EventMaterializer(db, StaticRulesProvider())
        created = materializer.materialize(entity_id, look_ahead_days=90)
    """

    def __init__(self, db: Session, rules_provider: RulesProvider, config: Optional[EngineConfig] = None):
        self.db = db
        self.rules_provider = rules_provider
        self.config = config or EngineConfig()

    def materialize(
        self,
        entity_id: str,
        look_ahead_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[ComplianceEventDB]:
        """
        Create events whose next due date falls within [today, today + look_ahead_days].

        Returns only the events created by this call.
        """
        entity = self.db.get(BusinessEntityDB, entity_id)
        if entity is None:
            raise EntityNotFound(f"Business entity {entity_id} not found")

        now = as_naive_utc(now)
        days = self.config.look_ahead_days if look_ahead_days is None else look_ahead_days
        today = now.date()
        horizon = today + timedelta(days=days)

        created = []
        for template in self.load_templates(entity):
            due_date = next_occurrence(entity.formation_date, template, today)
            if due_date is None or due_date > horizon:
                continue

            event, was_created = self.create_event_if_absent(
                entity_id=entity.id,
                event_type=template.event_type,
                title=template.title,
                description=template.description,
                category=template.category,
                priority=template.priority,
                recurrence=template.recurrence,
                due_date=due_date,
                now=now,
            )
            if was_created:
                created.append(event)

        if created:
            logger.info(f"Materialized {len(created)} events for entity {entity.id}")
        return created

    def load_templates(self, entity: BusinessEntityDB) -> List[ObligationTemplate]:
        """Ask the rules provider; any failure counts as zero obligations."""
        try:
            result = self.rules_provider.lookup(entity.entity_type, entity.jurisdiction)
        except Exception as e:
            logger.warning(
                f"Rules provider failed for entity {entity.id} "
                f"({entity.entity_type}/{entity.jurisdiction}): {e}"
            )
            return []

        if isinstance(result, UnsupportedJurisdiction):
            logger.warning(f"No obligations for entity {entity.id}: {result.reason}")
            return []

        return list(result.templates)

    def find_event(self, entity_id: str, event_type: str, cycle: str) -> Optional[ComplianceEventDB]:
        return self.db.query(ComplianceEventDB).filter(
            ComplianceEventDB.entity_id == entity_id,
            ComplianceEventDB.event_type == event_type,
            ComplianceEventDB.cycle_key == cycle,
        ).first()

    def create_event_if_absent(
        self,
        entity_id: str,
        event_type: str,
        title: str,
        due_date: date,
        recurrence: Optional[Recurrence],
        priority: EventPriority = EventPriority.MEDIUM,
        description: str = "",
        category: Optional[str] = None,
        now: Optional[datetime] = None,
        trigger: str = "materialized",
    ) -> Tuple[ComplianceEventDB, bool]:
        """
        Insert the event for this cycle unless one already exists.

        The pre-check is an optimization; the unique constraint on
        (entity_id, event_type, cycle_key) is what guarantees a single row.

        Returns (event, created)
        """
        cycle = cycle_key(due_date, recurrence)

        existing = self.find_event(entity_id, event_type, cycle)
        if existing is not None:
            return existing, False

        now = as_naive_utc(now)
        event = ComplianceEventDB(
            id=str(uuid4()),
            entity_id=entity_id,
            event_type=event_type,
            title=title,
            description=description,
            category=category,
            due_date=due_date,
            recurrence_unit=recurrence.interval_unit if recurrence else None,
            recurrence_count=recurrence.interval_count if recurrence else None,
            cycle_key=cycle,
            priority=priority,
            status=EventStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        try:
            with self.db.begin_nested():
                self.db.add(event)
                self.db.flush()
        except IntegrityError:
            # Another writer created this cycle first
            logger.debug(f"Duplicate cycle {entity_id}/{event_type}/{cycle} - keeping existing event")
            winner = self.find_event(entity_id, event_type, cycle)
            if winner is None:
                raise
            return winner, False

        self.db.add(EventStatusLogDB(
            id=str(uuid4()),
            event_id=event.id,
            from_status=None,
            to_status=EventStatus.PENDING,
            trigger=trigger,
            actor=ActorType.SYSTEM,
            created_at=now,
        ))

        return event, True
