"""
Notification Inbox

Read side of the in-app channel plus per-user delivery statistics.

Reading an inbox entry counts as opening the notification: an OPENED
interaction is recorded against the in-app delivery record, which feeds the
profile (acknowledgement, open rate) the scorer uses next sweep.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    ComplianceEventDB, InAppNotificationDB, NotificationRecordDB, NotificationInteractionDB,
    Channel, DeliveryOutcome, InteractionType,
)
from .clock import as_naive_utc
from .throttle_gate import ThrottleGate


logger = logging.getLogger(__name__)

PRIORITY_LEVELS = ("critical", "high", "normal", "low")


class NotificationNotFound(Exception):
    """Raised when an inbox entry does not exist for the user."""
    pass


def inbox_entry_to_dict(row: InAppNotificationDB) -> Dict[str, Any]:
    return {
        "id": row.id,
        "event_id": row.event_id,
        "title": row.title,
        "message": row.message,
        "priority_level": row.priority_level,
        "action_url": row.action_url,
        "is_read": bool(row.is_read),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class NotificationInbox:
    """
    Usage:
        inbox = NotificationInbox(db, config)
        entries = inbox.list_notifications(user_id, unread_only=True)
        inbox.mark_read(user_id, entries[0].id)
        stats = inbox.statistics(user_id)
    """

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or EngineConfig()

    # =========================================================================
    # INBOX
    # =========================================================================

    def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 10,
    ) -> List[InAppNotificationDB]:
        """
        Unread entries first, most urgent level first, then newest.

        Read entries follow the unread ones, newest first.
        """
        rank = case(
            *[
                ((InAppNotificationDB.is_read.is_(False)) & (InAppNotificationDB.priority_level == level), i + 1)
                for i, level in enumerate(PRIORITY_LEVELS)
            ],
            (InAppNotificationDB.is_read.is_(False), len(PRIORITY_LEVELS) + 1),
            else_=len(PRIORITY_LEVELS) + 2,
        )

        query = self.db.query(InAppNotificationDB).filter(InAppNotificationDB.user_id == user_id)
        if unread_only:
            query = query.filter(InAppNotificationDB.is_read.is_(False))

        return query.order_by(
            rank,
            InAppNotificationDB.created_at.desc(),
            InAppNotificationDB.id,
        ).limit(limit).all()

    def mark_read(self, user_id: str, notification_id: str, now: Optional[datetime] = None) -> InAppNotificationDB:
        """Mark one entry read. Marking an already read entry changes nothing."""
        row = self.db.get(InAppNotificationDB, notification_id)
        if row is None or row.user_id != user_id:
            raise NotificationNotFound(f"Notification {notification_id} not found for user {user_id}")

        if not row.is_read:
            self._open(row, as_naive_utc(now))
        return row

    def mark_all_read(self, user_id: str, now: Optional[datetime] = None) -> int:
        now = as_naive_utc(now)
        unread = self.db.query(InAppNotificationDB).filter(
            InAppNotificationDB.user_id == user_id,
            InAppNotificationDB.is_read.is_(False),
        ).all()

        for row in unread:
            self._open(row, now)
        return len(unread)

    def _open(self, row: InAppNotificationDB, now: datetime) -> None:
        row.is_read = True
        if row.event_id is None:
            return

        record = self.db.query(NotificationRecordDB).filter(
            NotificationRecordDB.user_id == row.user_id,
            NotificationRecordDB.event_id == row.event_id,
            NotificationRecordDB.channel == Channel.IN_APP,
            NotificationRecordDB.delivery_outcome == DeliveryOutcome.SENT,
        ).order_by(NotificationRecordDB.sent_at.desc()).first()
        if record is None:
            logger.debug(f"No in-app delivery record for notification {row.id}; read without interaction")
            return

        self.db.add(NotificationInteractionDB(
            id=str(uuid4()),
            record_id=record.id,
            event_id=record.event_id,
            user_id=record.user_id,
            interaction=InteractionType.OPENED,
            occurred_at=now,
        ))

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def statistics(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Delivery and engagement figures for one user over the profile lookback.

        All figures are derived from delivery records, inbox entries and
        interactions; nothing is stored.
        """
        now = as_naive_utc(now)
        since = now - timedelta(days=self.config.profile_lookback_days)

        records = self.db.query(NotificationRecordDB).filter(
            NotificationRecordDB.user_id == user_id,
            NotificationRecordDB.sent_at >= since,
            NotificationRecordDB.sent_at <= now,
        )

        by_outcome = {outcome.value: 0 for outcome in DeliveryOutcome}
        for outcome, count in records.with_entities(
            NotificationRecordDB.delivery_outcome, func.count(NotificationRecordDB.id),
        ).group_by(NotificationRecordDB.delivery_outcome).all():
            by_outcome[outcome.value] = count

        sent = records.filter(NotificationRecordDB.delivery_outcome == DeliveryOutcome.SENT)
        by_channel = {channel.value: 0 for channel in Channel}
        for channel, count in sent.with_entities(
            NotificationRecordDB.channel, func.count(NotificationRecordDB.id),
        ).group_by(NotificationRecordDB.channel).all():
            by_channel[channel.value] = count

        by_reason = {
            reason.value: count
            for reason, count in sent.with_entities(
                NotificationRecordDB.reason, func.count(NotificationRecordDB.id),
            ).group_by(NotificationRecordDB.reason).all()
        }

        inbox_window = (
            InAppNotificationDB.user_id == user_id,
            InAppNotificationDB.created_at >= since,
            InAppNotificationDB.created_at <= now,
        )
        inbox = self.db.query(InAppNotificationDB).filter(*inbox_window)
        inbox_total = inbox.count()
        unread = inbox.filter(InAppNotificationDB.is_read.is_(False)).count()

        priority_breakdown = {
            (level or "unknown"): count
            for level, count in inbox.with_entities(
                InAppNotificationDB.priority_level, func.count(InAppNotificationDB.id),
            ).group_by(InAppNotificationDB.priority_level).all()
        }

        category_breakdown = {
            (category or "uncategorized"): count
            for category, count in self.db.query(
                ComplianceEventDB.category, func.count(InAppNotificationDB.id),
            ).select_from(InAppNotificationDB).outerjoin(
                ComplianceEventDB, ComplianceEventDB.id == InAppNotificationDB.event_id,
            ).filter(*inbox_window).group_by(ComplianceEventDB.category).all()
        }

        interactions = {interaction.value: 0 for interaction in InteractionType}
        for interaction, count in self.db.query(
            NotificationInteractionDB.interaction, func.count(NotificationInteractionDB.id),
        ).filter(
            NotificationInteractionDB.user_id == user_id,
            NotificationInteractionDB.occurred_at >= since,
            NotificationInteractionDB.occurred_at <= now,
        ).group_by(NotificationInteractionDB.interaction).all():
            interactions[interaction.value] = count

        read_rate = (inbox_total - unread) / inbox_total if inbox_total > 0 else 0.0

        return {
            "user_id": user_id,
            "as_of": now.isoformat(),
            "lookback_days": self.config.profile_lookback_days,
            "deliveries": {
                "by_outcome": by_outcome,
                "by_channel": by_channel,
                "by_reason": by_reason,
            },
            "inbox": {
                "total": inbox_total,
                "unread": unread,
                "priority_breakdown": priority_breakdown,
                "category_breakdown": category_breakdown,
                "read_rate": round(read_rate, 3),
            },
            "interactions": interactions,
            "rate_limit": {
                "limit": self.config.rate_limit_per_window,
                "window_hours": self.config.rate_window_hours,
                "remaining": ThrottleGate(self.db, self.config).remaining(user_id, now),
            },
        }
