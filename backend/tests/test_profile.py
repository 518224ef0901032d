"""
Tests for the computed UserNotificationProfile.
"""
from datetime import datetime, timedelta
from uuid import uuid4

from compliance_engine.models.db_models import (
    NotificationRecordDB, NotificationInteractionDB,
    Channel, DeliveryOutcome, InteractionType, NotificationReason,
)
from compliance_engine.services.compliance.profile import NotificationProfileService


NOW = datetime(2024, 3, 1, 12, 0)


def add_record(db, event_id, sent_at, outcome=DeliveryOutcome.SENT, user_id="user-1"):
    record = NotificationRecordDB(
        id=str(uuid4()),
        event_id=event_id,
        user_id=user_id,
        channel=Channel.IN_APP,
        dedup_key=uuid4().hex,
        reason=NotificationReason.DEADLINE_APPROACHING,
        score=70,
        delivery_outcome=outcome,
        attempts=1,
        sent_at=sent_at,
    )
    db.add(record)
    db.commit()
    return record


def add_interaction(db, record, interaction, occurred_at):
    db.add(NotificationInteractionDB(
        id=str(uuid4()),
        record_id=record.id,
        event_id=record.event_id,
        user_id=record.user_id,
        interaction=interaction,
        occurred_at=occurred_at,
    ))
    db.commit()


class TestNotificationProfile:

    def test_empty_history(self, db, config):
        profile = NotificationProfileService(db, config).build_profile("user-1", NOW)

        assert profile.recent_notification_count == 0
        assert profile.open_rate == 0.0
        assert profile.is_engaged is False

    def test_engaged_user(self, db, config):
        records = [add_record(db, f"evt-{i}", NOW - timedelta(days=i + 1)) for i in range(5)]
        add_interaction(db, records[0], InteractionType.OPENED, NOW - timedelta(hours=2))
        add_interaction(db, records[1], InteractionType.CLICKED, NOW - timedelta(hours=1))

        profile = NotificationProfileService(db, config).build_profile("user-1", NOW)

        assert profile.recent_notification_count == 5
        assert profile.open_rate == 0.4
        assert profile.is_engaged is True
        assert profile.acknowledged_events == {"evt-0", "evt-1"}

    def test_old_records_fall_out_of_window(self, db, config):
        for i in range(5):
            add_record(db, f"evt-{i}", NOW - timedelta(days=45))
        add_record(db, "evt-recent", NOW - timedelta(days=1))
        add_record(db, "evt-failed", NOW - timedelta(days=1), outcome=DeliveryOutcome.FAILED)

        profile = NotificationProfileService(db, config).build_profile("user-1", NOW)

        assert profile.recent_notification_count == 1

    def test_dismissals_most_recent_first(self, db, config):
        record = add_record(db, "evt-1", NOW - timedelta(days=3))
        add_interaction(db, record, InteractionType.OPENED, NOW - timedelta(days=3))
        for hours in (30, 20, 10):
            add_interaction(db, record, InteractionType.DISMISSED, NOW - timedelta(hours=hours))

        profile = NotificationProfileService(db, config).build_profile("user-1", NOW)

        assert profile.dismissal_streak("evt-1") == 3
        assert profile.event_interactions["evt-1"][-1] == InteractionType.OPENED
