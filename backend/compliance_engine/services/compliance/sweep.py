"""
Compliance Sweep

AUTHORITY: SYSTEM - Runs on the scheduler trigger, no user intervention.

Phase 1 (parallel, one session per entity):
  materialize -> recurrence catch-up -> lifecycle refresh -> score candidates
  Each entity commits on its own and is checkpointed, so a cancelled or
  crashed run can be resumed without redoing finished entities.

Phase 2 (sequential, per user):
  throttle & dedup gate -> dispatch -> priority escalation
"""
import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...database import SessionLocal
from ...models.db_models import (
    BusinessEntityDB, ComplianceEventDB, SweepRunDB, SweepCheckpointDB,
    Channel, DeliveryOutcome, NotificationReason, ACTIVE_STATUSES,
)
from ...models.engine_models import NotificationCandidate, StatusChange
from .clock import as_naive_utc, utcnow
from .dispatcher import Dispatcher
from .lifecycle import LifecycleTracker
from .materializer import EventMaterializer
from .profile import NotificationProfileService
from .recurrence_generator import RecurrenceGenerator
from .rules_provider import RulesProvider, StaticRulesProvider
from .scorer import NotificationScorer
from .senders import HttpSmsSender, SmtpEmailSender
from .throttle_gate import ThrottleGate, REJECT_DUPLICATE


logger = logging.getLogger(__name__)


@dataclass
class EntitySweepOutcome:
    entity_id: str
    events_created: int = 0
    events_transitioned: int = 0
    transitions: List[StatusChange] = field(default_factory=list)
    candidates: List[NotificationCandidate] = field(default_factory=list)
    error: Optional[str] = None


def default_dispatcher_factory(config: EngineConfig) -> Callable[[Session], Dispatcher]:
    """Dispatcher wired to the SMTP and SMS senders configured in the environment."""
    email_sender = SmtpEmailSender.from_env(timeout=config.sender_timeout_seconds)
    sms_sender = HttpSmsSender.from_env(timeout=config.sender_timeout_seconds)

    def factory(db: Session) -> Dispatcher:
        return Dispatcher(db, email_sender=email_sender, sms_sender=sms_sender, config=config)

    return factory


class ComplianceSweep:
    """
    Periodic batch pass over all active entities.

    Usage:
        sweep = ComplianceSweep()
        result = sweep.run()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        rules_provider: Optional[RulesProvider] = None,
        config: Optional[EngineConfig] = None,
        dispatcher_factory: Optional[Callable[[Session], Dispatcher]] = None,
    ):
        self.session_factory = session_factory
        self.rules_provider = rules_provider or StaticRulesProvider()
        self.config = config or EngineConfig()
        self.dispatcher_factory = dispatcher_factory or default_dispatcher_factory(self.config)
        self.scorer = NotificationScorer(self.config)
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop between entities; the run can be resumed later."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, now: Optional[datetime] = None, resume_run_id: Optional[str] = None) -> Dict[str, Any]:
        now = as_naive_utc(now)
        self._cancelled.clear()

        db = self.session_factory()
        try:
            run, done = self._start_run(db, now, resume_run_id)
            entity_ids = [
                row.id for row in db.query(BusinessEntityDB.id).filter(
                    BusinessEntityDB.is_active.is_(True),
                ).order_by(BusinessEntityDB.id).all()
                if row.id not in done
            ]
            run_id = run.id
            db.commit()

            # Phase 1
            outcomes = self._process_entities(run_id, entity_ids, now)

            errors = [
                {"entity_id": o.entity_id, "error": o.error}
                for o in outcomes if o.error
            ]
            candidates = [c for o in outcomes if not o.error for c in o.candidates]

            # Phase 2
            delivery = self._deliver(db, candidates, now)
            errors.extend(delivery.pop("errors"))

            summary = {
                "run_id": run_id,
                "run_date": now.isoformat(),
                "status": "cancelled" if self.cancelled else "completed",
                "entities_processed": len(outcomes),
                "entities_skipped": len(done) + len(entity_ids) - len(outcomes),
                "events_created": sum(o.events_created for o in outcomes),
                "events_transitioned": sum(o.events_transitioned for o in outcomes),
                "candidates": len(candidates),
                **delivery,
                "errors": len(errors),
                "details": {
                    "errors": errors,
                    "transitions": [
                        {
                            "event_id": change.event_id,
                            "entity_id": change.entity_id,
                            "from_status": change.from_status.value,
                            "to_status": change.to_status.value,
                            "trigger": change.trigger,
                        }
                        for o in outcomes for change in o.transitions
                    ],
                },
            }

            run = db.get(SweepRunDB, run_id)
            run.status = summary["status"]
            run.events_transitioned = (run.events_transitioned or 0) + summary["events_transitioned"]
            run.notifications_sent = (run.notifications_sent or 0) + summary["notifications_sent"]
            if not self.cancelled:
                run.completed_at = utcnow()
            run.result = summary
            db.commit()
        finally:
            db.close()

        logger.info(
            f"Sweep {summary['run_id']} {summary['status']}: "
            f"{summary['entities_processed']} entities, "
            f"{summary['events_transitioned']} transitions, "
            f"{summary['notifications_sent']} notifications sent, "
            f"{summary['deferred']} deferred, {summary['errors']} errors"
        )
        return summary

    def _start_run(self, db: Session, now: datetime, resume_run_id: Optional[str]):
        if resume_run_id:
            run = db.get(SweepRunDB, resume_run_id)
            if run is None:
                raise ValueError(f"Sweep run {resume_run_id} not found")
            done = {
                row.entity_id for row in db.query(SweepCheckpointDB.entity_id).filter(
                    SweepCheckpointDB.sweep_run_id == run.id,
                ).all()
            }
            run.status = "running"
            logger.info(f"Resuming sweep {run.id}: {len(done)} entities already processed")
            return run, done

        run = SweepRunDB(id=str(uuid4()), started_at=now, status="running",
                         events_transitioned=0, notifications_sent=0)
        db.add(run)
        return run, set()

    # =========================================================================
    # PHASE 1 - PER ENTITY
    # =========================================================================

    def _process_entities(self, run_id: str, entity_ids: List[str], now: datetime) -> List[EntitySweepOutcome]:
        workers = max(1, self.config.sweep_workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._process_entity, run_id, entity_id, now) for entity_id in entity_ids]
            results = [f.result() for f in futures]
        return [r for r in results if r is not None]

    def _process_entity(self, run_id: str, entity_id: str, now: datetime) -> Optional[EntitySweepOutcome]:
        if self.cancelled:
            return None

        outcome = EntitySweepOutcome(entity_id=entity_id)
        db = self.session_factory()
        try:
            materializer = EventMaterializer(db, self.rules_provider, self.config)
            generator = RecurrenceGenerator(db, materializer, self.config)
            tracker = LifecycleTracker(db, self.config)
            tracker.subscribe(outcome.transitions.append)

            created = materializer.materialize(entity_id, now=now)
            spawned = generator.catch_up(entity_id, now)
            tracker.refresh_entity(entity_id, now)

            outcome.events_created = len(created) + len(spawned)
            outcome.events_transitioned = len(outcome.transitions)
            outcome.candidates = self.collect_candidates(db, entity_id, generator, now)

            db.add(SweepCheckpointDB(
                id=str(uuid4()),
                sweep_run_id=run_id,
                entity_id=entity_id,
                processed_at=utcnow(),
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Sweep failed for entity {entity_id}: {e}")
            outcome = EntitySweepOutcome(entity_id=entity_id, error=str(e))
        finally:
            db.close()

        return outcome

    def collect_candidates(
        self,
        db: Session,
        entity_id: str,
        generator: RecurrenceGenerator,
        now: datetime,
    ) -> List[NotificationCandidate]:
        """Score every active event of one entity for its owner."""
        entity = db.get(BusinessEntityDB, entity_id)
        profile = NotificationProfileService(db, self.config).build_profile(entity.owner_user_id, now)
        spawned_ids = generator.spawned_event_ids(entity_id)

        events = db.query(ComplianceEventDB).filter(
            ComplianceEventDB.entity_id == entity_id,
            ComplianceEventDB.status.in_(ACTIVE_STATUSES),
        ).all()

        candidates = []
        for event in events:
            trigger = NotificationReason.RECURRENCE_CREATED if event.id in spawned_ids else None
            result = self.scorer.evaluate(event, profile, now, trigger=trigger)
            if result is None:
                continue
            candidates.append(NotificationCandidate(
                event_id=event.id,
                user_id=entity.owner_user_id,
                channel=Channel.IN_APP,
                computed_priority_score=result.score,
                reason=result.reason,
                status=event.status,
                due_date=event.due_date,
                entity_id=entity_id,
                escalated=result.escalated,
            ))
        return candidates

    # =========================================================================
    # PHASE 2 - PER USER
    # =========================================================================

    def _deliver(self, db: Session, candidates: List[NotificationCandidate], now: datetime) -> Dict[str, Any]:
        stats = {
            "notifications_sent": 0,
            "notifications_failed": 0,
            "deferred": 0,
            "duplicates": 0,
            "suppressed": 0,
            "errors": [],
        }

        by_user = defaultdict(list)
        for candidate in candidates:
            by_user[candidate.user_id].append(candidate)

        gate = ThrottleGate(db, self.config)
        dispatcher = self.dispatcher_factory(db)
        tracker = LifecycleTracker(db, self.config)

        for user_id in sorted(by_user):
            if self.cancelled:
                break
            try:
                deliverable = []
                for candidate in by_user[user_id]:
                    candidate.channels = dispatcher.channels_for(candidate)
                    if candidate.channels:
                        deliverable.append(candidate)
                    else:
                        stats["suppressed"] += 1

                for candidate, decision in gate.admit_batch(deliverable, now):
                    if not decision.accepted:
                        if decision.deferred:
                            stats["deferred"] += 1
                        elif decision.reason == REJECT_DUPLICATE:
                            stats["duplicates"] += 1
                        continue

                    # A retry of a failed channel must not bump priority a second time
                    first_delivery = not gate.already_notified(user_id, decision.dedup_key, now)
                    result = dispatcher.dispatch(
                        candidate, decision.dedup_key, now, channels=list(decision.channels),
                    )
                    db.flush()
                    if result.outcome == DeliveryOutcome.SENT:
                        stats["notifications_sent"] += 1
                        if candidate.reason == NotificationReason.ESCALATION and first_delivery:
                            tracker.escalate_priority(db.get(ComplianceEventDB, candidate.event_id), now)
                    else:
                        stats["notifications_failed"] += 1
                db.commit()
            except Exception as e:
                db.rollback()
                logger.warning(f"Notification delivery failed for user {user_id}: {e}")
                stats["errors"].append({"user_id": user_id, "error": str(e)})

        return stats
