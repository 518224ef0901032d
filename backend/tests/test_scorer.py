"""
Tests for the Notification Scorer.

Base by status, priority weight, days-to-due adjustment, escalation,
engagement boost, damping and the overdue floor.
"""
import pytest
from datetime import date, datetime
from unittest.mock import MagicMock

from compliance_engine.config import EngineConfig
from compliance_engine.models.db_models import (
    EventStatus, EventPriority, InteractionType, NotificationReason,
)
from compliance_engine.models.engine_models import UserNotificationProfile
from compliance_engine.services.compliance.scorer import (
    NotificationScorer, score_to_priority_level, score_to_urgency,
)


NOW = datetime(2024, 1, 1, 9, 0)


def make_event(status, due_date, priority=EventPriority.MEDIUM, event_id="evt-1"):
    event = MagicMock()
    event.id = event_id
    event.status = status
    event.due_date = due_date
    event.priority = priority
    return event


def dismissed(n, event_id="evt-1"):
    return UserNotificationProfile(
        user_id="user-1",
        event_interactions={event_id: [InteractionType.DISMISSED] * n},
    )


EMPTY = UserNotificationProfile.empty("user-1")


# =============================================================================
# TEST: BASE SCORES
# =============================================================================

class TestBaseScores:

    def test_due_soon_high_priority(self):
        """60 x 1.2 + (30 - 9 days left) = 93."""
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 10), EventPriority.HIGH)
        result = NotificationScorer().evaluate(event, EMPTY, NOW)

        assert result.score == 93
        assert result.reason == NotificationReason.DEADLINE_APPROACHING

    def test_due_soon_medium_far_out(self):
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 26))
        assert NotificationScorer().score(event, EMPTY, NOW) == 65

    def test_due_today_is_clamped(self):
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 1), EventPriority.HIGH)
        assert NotificationScorer().score(event, EMPTY, NOW) == 100

    def test_overdue(self):
        event = make_event(EventStatus.OVERDUE, date(2023, 12, 30), EventPriority.LOW)
        result = NotificationScorer().evaluate(event, EMPTY, NOW)

        assert result.score == 63
        assert result.reason == NotificationReason.OVERDUE
        assert result.escalated is False

    @pytest.mark.parametrize("status", [EventStatus.PENDING, EventStatus.COMPLETED, EventStatus.WAIVED])
    def test_silent_statuses(self, status):
        event = make_event(status, date(2024, 1, 10))
        assert NotificationScorer().score(event, EMPTY, NOW) is None

    def test_recurrence_created(self):
        event = make_event(EventStatus.PENDING, date(2024, 12, 1))
        result = NotificationScorer().evaluate(event, EMPTY, NOW, trigger=NotificationReason.RECURRENCE_CREATED)

        assert result.score == 30
        assert result.reason == NotificationReason.RECURRENCE_CREATED

    def test_deterministic(self):
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 20), EventPriority.LOW)
        scorer = NotificationScorer()
        assert scorer.score(event, EMPTY, NOW) == scorer.score(event, EMPTY, NOW)


# =============================================================================
# TEST: MODIFIERS
# =============================================================================

class TestModifiers:

    def test_escalation_after_threshold(self):
        event = make_event(EventStatus.OVERDUE, date(2023, 12, 20), EventPriority.LOW)
        result = NotificationScorer().evaluate(event, EMPTY, NOW)

        assert result.reason == NotificationReason.ESCALATION
        assert result.escalated is True
        assert result.score == 78  # 90 x 0.7 + 15

    def test_no_escalation_once_acknowledged(self):
        event = make_event(EventStatus.OVERDUE, date(2023, 12, 20), EventPriority.LOW)
        profile = UserNotificationProfile(user_id="user-1", acknowledged_events={"evt-1"})
        result = NotificationScorer().evaluate(event, profile, NOW)

        assert result.reason == NotificationReason.OVERDUE
        assert result.score == 63

    def test_engagement_boost(self):
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 21))
        profile = UserNotificationProfile(user_id="user-1", is_engaged=True)

        assert NotificationScorer().score(event, profile, NOW) == 75

    def test_damping_after_repeated_dismissals(self):
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 21))
        scorer = NotificationScorer()

        assert scorer.score(event, dismissed(2), NOW) == 70
        assert scorer.score(event, dismissed(3), NOW) == 35

    def test_open_breaks_dismissal_streak(self):
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 21))
        profile = UserNotificationProfile(
            user_id="user-1",
            event_interactions={"evt-1": [InteractionType.OPENED] + [InteractionType.DISMISSED] * 5},
        )
        assert NotificationScorer().score(event, profile, NOW) == 70

    @pytest.mark.parametrize("priority", list(EventPriority))
    @pytest.mark.parametrize("dismissals", [0, 3, 10])
    def test_overdue_floor(self, priority, dismissals):
        """Damping never pushes an overdue event below the floor."""
        event = make_event(EventStatus.OVERDUE, date(2023, 12, 31), priority)
        score = NotificationScorer().score(event, dismissed(dismissals), NOW)

        assert score is not None
        assert score >= 40

    def test_below_threshold_is_silent(self):
        event = make_event(EventStatus.DUE_SOON, date(2024, 1, 30), EventPriority.LOW)
        scorer = NotificationScorer(EngineConfig(min_notify_score=30))

        assert scorer.score(event, dismissed(3), NOW) is None


# =============================================================================
# TEST: PRIORITY BANDS
# =============================================================================

class TestPriorityBands:

    @pytest.mark.parametrize("score,level", [(100, "critical"), (90, "critical"), (89, "high"),
                                             (70, "high"), (40, "normal"), (39, "low")])
    def test_priority_level(self, score, level):
        assert score_to_priority_level(score) == level

    @pytest.mark.parametrize("score,urgency", [(95, "immediate"), (80, "within_hour"),
                                               (60, "within_day"), (59, "within_week")])
    def test_urgency(self, score, urgency):
        assert score_to_urgency(score) == urgency
