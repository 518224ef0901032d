"""
User Notification Profile

Builds the read-only UserNotificationProfile the scorer consumes from
recorded deliveries and interactions. Nothing here is persisted.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    NotificationRecordDB, NotificationInteractionDB, DeliveryOutcome, InteractionType,
)
from ...models.engine_models import UserNotificationProfile
from .clock import as_naive_utc


ACKNOWLEDGING = (InteractionType.OPENED, InteractionType.CLICKED)


class NotificationProfileService:
    """Aggregates recent dismiss/open/click behavior per user."""

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or EngineConfig()

    def build_profile(self, user_id: str, now: Optional[datetime] = None) -> UserNotificationProfile:
        now = as_naive_utc(now)
        since = now - timedelta(days=self.config.profile_lookback_days)

        interactions = self.db.query(NotificationInteractionDB).filter(
            NotificationInteractionDB.user_id == user_id,
            NotificationInteractionDB.occurred_at <= now,
        ).order_by(NotificationInteractionDB.occurred_at.desc()).all()

        event_interactions: Dict[str, List[InteractionType]] = {}
        acknowledged = set()
        acknowledged_records_recent = set()
        for row in interactions:
            event_interactions.setdefault(row.event_id, []).append(row.interaction)
            if row.interaction in ACKNOWLEDGING:
                acknowledged.add(row.event_id)
                if row.occurred_at >= since:
                    acknowledged_records_recent.add(row.record_id)

        recent_records = self.db.query(NotificationRecordDB).filter(
            NotificationRecordDB.user_id == user_id,
            NotificationRecordDB.delivery_outcome == DeliveryOutcome.SENT,
            NotificationRecordDB.sent_at >= since,
            NotificationRecordDB.sent_at <= now,
        ).all()

        recent_count = len(recent_records)
        recent_ids = {r.id for r in recent_records}
        opened = len(acknowledged_records_recent & recent_ids)
        open_rate = opened / recent_count if recent_count > 0 else 0.0

        return UserNotificationProfile(
            user_id=user_id,
            event_interactions=event_interactions,
            acknowledged_events=acknowledged,
            recent_notification_count=recent_count,
            open_rate=open_rate,
            is_engaged=(
                recent_count >= self.config.engagement_min_recent
                and open_rate > self.config.engagement_min_open_rate
            ),
        )
