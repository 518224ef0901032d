"""
Throttle & Dedup Gate

AUTHORITY: SYSTEM
Last check before dispatch. Guarantees no notification storms:

- Dedup: a candidate whose (event, status, due-date bucket) was already
  delivered to the user on a channel is not sent there again. The bucket
  only changes when days-left crosses a boundary or the scorer escalates,
  so an event notifies a handful of times in its life.
- Each admitted channel is claimed with an INSERT against a unique
  (user, dedup key, channel) constraint, so two workers can never both
  deliver the same condition.
- Rate limit: at most K admissions per user per rate window, counted with a
  conditional UPDATE on a shared row (atomic across workers).
- Rate-limited candidates are deferred, not dropped - the next sweep scores
  them again. Each deferral leaves a throttled record for the audit trail.
"""
import hashlib
import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from sqlalchemy import or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    NotificationRecordDB, NotificationClaimDB, RateCounterDB,
    Channel, EventStatus, DeliveryOutcome,
)
from ...models.engine_models import AdmitDecision, NotificationCandidate
from .clock import as_naive_utc
from .lifecycle import days_until_due


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)

REJECT_DUPLICATE = "duplicate"
REJECT_RATE_LIMITED = "rate_limited"


# =============================================================================
# DEDUP KEY
# =============================================================================

def due_date_bucket(
    status: EventStatus,
    due_date: date,
    now: datetime,
    boundaries: Iterable[int],
    escalated: bool = False,
) -> str:
    """
    Coarse position of the due date relative to now.

    Upcoming: the smallest boundary at or above days-left (d30, d14, d7, d1),
    or "far" beyond the largest. Overdue: "overdue", or "overdue_escalated"
    once the scorer has escalated the event. Days overdue alone never move
    the bucket, so an acknowledged overdue event keeps its key.
    """
    days_left = days_until_due(due_date, now)

    if status == EventStatus.OVERDUE or days_left < 0:
        return "overdue_escalated" if escalated else "overdue"

    for boundary in sorted(boundaries):
        if days_left <= boundary:
            return f"d{boundary}"
    return "far"


def compute_dedup_key(event_id: str, status: EventStatus, bucket: str) -> str:
    """Deterministic fingerprint of a notification's underlying condition."""
    raw = f"{event_id}|{status.value}|{bucket}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:40]


def settle_claim(
    db: Session,
    user_id: str,
    dedup_key: str,
    channel: Channel,
    outcome: DeliveryOutcome,
    now: datetime,
) -> bool:
    """Stamp the delivery outcome on a channel claim. False when no claim exists."""
    updated = db.query(NotificationClaimDB).filter(
        NotificationClaimDB.user_id == user_id,
        NotificationClaimDB.dedup_key == dedup_key,
        NotificationClaimDB.channel == channel,
    ).update({
        NotificationClaimDB.outcome: outcome,
        NotificationClaimDB.claimed_at: now,
    }, synchronize_session=False)
    return updated == 1


# =============================================================================
# GATE
# =============================================================================

class ThrottleGate:
    """
    Admits or rejects notification candidates.

    Usage:
        gate = ThrottleGate(db, config)
        decisions = gate.admit_batch(candidates, now)
        # decision.channels lists the channels claimed for dispatch
    """

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or EngineConfig()

    def dedup_key_for(self, candidate: NotificationCandidate, now: Optional[datetime] = None) -> str:
        now = as_naive_utc(now)
        bucket = due_date_bucket(
            candidate.status,
            candidate.due_date,
            now,
            self.config.sorted_boundaries(),
            escalated=candidate.escalated,
        )
        return compute_dedup_key(candidate.event_id, candidate.status, bucket)

    def admit(self, candidate: NotificationCandidate, now: Optional[datetime] = None) -> AdmitDecision:
        """
        Dedup check per channel, claim, then atomic rate-limit consume.

        Channels already delivered (or recently failed) for this key are
        skipped; the candidate is a duplicate only when none is left. Claims
        and the rate slot are taken inside one savepoint so a deferral
        releases the claims again.
        """
        now = as_naive_utc(now)
        key = self.dedup_key_for(candidate, now)

        open_channels = [
            channel for channel in candidate.delivery_channels()
            if not self.already_notified(candidate.user_id, key, now, channel)
        ]
        if not open_channels:
            return AdmitDecision.reject(key, REJECT_DUPLICATE)

        savepoint = self.db.begin_nested()
        claimed = [channel for channel in open_channels if self.claim(candidate, key, channel, now)]
        if not claimed:
            savepoint.rollback()
            logger.info(f"Event {candidate.event_id} already claimed for user {candidate.user_id}")
            return AdmitDecision.reject(key, REJECT_DUPLICATE)

        if not self.try_consume(candidate.user_id, now):
            savepoint.rollback()
            logger.info(
                f"Rate limit reached for user {candidate.user_id}; "
                f"deferring event {candidate.event_id} (score {candidate.computed_priority_score})"
            )
            self.record_throttled(candidate, key, claimed[0], now)
            return AdmitDecision.reject(key, REJECT_RATE_LIMITED, deferred=True)

        savepoint.commit()
        return AdmitDecision.accept(key, claimed)

    def admit_batch(
        self,
        candidates: List[NotificationCandidate],
        now: Optional[datetime] = None,
    ) -> List[Tuple[NotificationCandidate, AdmitDecision]]:
        """
        Admit in priority order: score descending, earliest due date first.

        Highest-scored candidates take the remaining rate budget; the rest
        are deferred.
        """
        now = as_naive_utc(now)
        seen: Set[Tuple[str, str]] = set()
        results = []

        for candidate in sorted(candidates, key=lambda c: c.sort_key()):
            key = self.dedup_key_for(candidate, now)
            if (candidate.user_id, key) in seen:
                results.append((candidate, AdmitDecision.reject(key, REJECT_DUPLICATE)))
                continue

            decision = self.admit(candidate, now)
            if decision.accepted:
                seen.add((candidate.user_id, key))
            results.append((candidate, decision))

        return results

    def already_notified(
        self,
        user_id: str,
        dedup_key: str,
        now: datetime,
        channel: Optional[Channel] = None,
    ) -> bool:
        """
        True when a record blocks this key, on `channel` or on any channel.

        Sent records block for the life of the bucket. Failed records block
        only until failed_retry_after_hours have passed. Throttled records
        never block.
        """
        retry_cutoff = now - timedelta(hours=self.config.failed_retry_after_hours)

        query = self.db.query(NotificationRecordDB.id).filter(
            NotificationRecordDB.user_id == user_id,
            NotificationRecordDB.dedup_key == dedup_key,
            or_(
                NotificationRecordDB.delivery_outcome == DeliveryOutcome.SENT,
                and_(
                    NotificationRecordDB.delivery_outcome == DeliveryOutcome.FAILED,
                    NotificationRecordDB.sent_at > retry_cutoff,
                ),
            ),
        )
        if channel is not None:
            query = query.filter(NotificationRecordDB.channel == channel)
        return query.first() is not None

    def claim(self, candidate: NotificationCandidate, dedup_key: str, channel: Channel, now: datetime) -> bool:
        """
        Take the exclusive right to deliver `dedup_key` on `channel`.

        A failed or abandoned claim older than the retry window is taken over
        with a conditional UPDATE. Otherwise a new row is inserted; losing the
        unique constraint to another worker means the key is already taken.
        """
        retry_cutoff = now - timedelta(hours=self.config.failed_retry_after_hours)

        reclaimed = self.db.query(NotificationClaimDB).filter(
            NotificationClaimDB.user_id == candidate.user_id,
            NotificationClaimDB.dedup_key == dedup_key,
            NotificationClaimDB.channel == channel,
            or_(
                NotificationClaimDB.outcome == DeliveryOutcome.FAILED,
                NotificationClaimDB.outcome.is_(None),
            ),
            NotificationClaimDB.claimed_at <= retry_cutoff,
        ).update({
            NotificationClaimDB.outcome: None,
            NotificationClaimDB.claimed_at: now,
        }, synchronize_session=False)
        if reclaimed == 1:
            return True

        try:
            with self.db.begin_nested():
                self.db.add(NotificationClaimDB(
                    id=str(uuid4()),
                    user_id=candidate.user_id,
                    dedup_key=dedup_key,
                    channel=channel,
                    event_id=candidate.event_id,
                    claimed_at=now,
                ))
                self.db.flush()
            return True
        except IntegrityError:
            logger.debug(f"Claim on {channel.value} for user {candidate.user_id} key {dedup_key} already held")
            return False

    def record_throttled(
        self,
        candidate: NotificationCandidate,
        dedup_key: str,
        channel: Channel,
        now: datetime,
    ) -> NotificationRecordDB:
        record = NotificationRecordDB(
            id=str(uuid4()),
            event_id=candidate.event_id,
            user_id=candidate.user_id,
            channel=channel,
            dedup_key=dedup_key,
            reason=candidate.reason,
            score=candidate.computed_priority_score,
            delivery_outcome=DeliveryOutcome.THROTTLED,
            attempts=0,
            error_message="rate limit reached",
            sent_at=now,
        )
        self.db.add(record)
        return record

    # =========================================================================
    # RATE LIMIT
    # =========================================================================

    def window_bucket(self, now: datetime) -> str:
        """Fixed rate window containing `now`."""
        hours = max(1, self.config.rate_window_hours)
        index = int((now - EPOCH).total_seconds() // 3600) // hours
        return f"{hours}h-{index}"

    def try_consume(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """
        Atomically take one slot from the user's window budget.

        UPDATE ... SET count = count + 1 WHERE count < limit; the first
        admission in a window inserts the row, and a concurrent insert falls
        back to the conditional update.
        """
        limit = self.config.rate_limit_per_window
        if limit <= 0:
            return False

        bucket = self.window_bucket(as_naive_utc(now))
        if self._conditional_increment(user_id, bucket, limit):
            return True

        exists = self.db.query(RateCounterDB.id).filter(
            RateCounterDB.user_id == user_id,
            RateCounterDB.window_bucket == bucket,
        ).first()
        if exists is not None:
            return False

        try:
            with self.db.begin_nested():
                self.db.add(RateCounterDB(
                    id=str(uuid4()),
                    user_id=user_id,
                    window_bucket=bucket,
                    count=1,
                ))
                self.db.flush()
            return True
        except IntegrityError:
            logger.debug(f"Concurrent counter creation for user {user_id} window {bucket}")
            return self._conditional_increment(user_id, bucket, limit)

    def remaining(self, user_id: str, now: Optional[datetime] = None) -> int:
        bucket = self.window_bucket(as_naive_utc(now))
        used = self.db.query(RateCounterDB.count).filter(
            RateCounterDB.user_id == user_id,
            RateCounterDB.window_bucket == bucket,
        ).scalar() or 0
        return max(0, self.config.rate_limit_per_window - used)

    def _conditional_increment(self, user_id: str, bucket: str, limit: int) -> bool:
        updated = self.db.query(RateCounterDB).filter(
            RateCounterDB.user_id == user_id,
            RateCounterDB.window_bucket == bucket,
            RateCounterDB.count < limit,
        ).update({RateCounterDB.count: RateCounterDB.count + 1}, synchronize_session=False)
        return updated == 1
