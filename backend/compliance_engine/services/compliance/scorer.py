"""
Notification Scorer

Decides whether an event warrants a notification and how urgent it is.

score() is a pure function of (event, profile, now, config): the same inputs
always give the same score, which lets the dedup gate reason about whether a
condition has already been notified.

Algorithm:
1. Base by status (overdue / due_soon; pending never notifies on its own)
2. Priority weight multiplies the base
3. due_soon gains +1 per day inside the window, capped
4. Escalation bonus once overdue past N days with nothing acknowledged
5. Engagement boost for users who read their notifications
6. Damping after repeated dismissals of the same event
7. Overdue floor - damping never silences an overdue obligation
8. Below the minimum threshold -> no notification
"""
from datetime import datetime
from typing import Optional

from ...config import EngineConfig
from ...models.db_models import EventStatus, NotificationReason
from ...models.engine_models import ScoreResult, UserNotificationProfile
from .clock import as_naive_utc
from .lifecycle import days_until_due


# =============================================================================
# PRIORITY BANDS
# =============================================================================

def score_to_priority_level(score: int) -> str:
    if score >= 90:
        return "critical"
    if score >= 70:
        return "high"
    if score >= 40:
        return "normal"
    return "low"


def score_to_urgency(score: int) -> str:
    if score >= 95:
        return "immediate"
    if score >= 80:
        return "within_hour"
    if score >= 60:
        return "within_day"
    return "within_week"


class NotificationScorer:
    """
    Computes a 0-100 priority score for a candidate notification.

    Usage:
        scorer = NotificationScorer(config)
        result = scorer.evaluate(event, profile, now)
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def score(self, event, profile: UserNotificationProfile, now: Optional[datetime] = None) -> Optional[int]:
        """Priority score, or None when the event should not notify."""
        result = self.evaluate(event, profile, now)
        return result.score if result else None

    def evaluate(
        self,
        event,
        profile: UserNotificationProfile,
        now: Optional[datetime] = None,
        trigger: Optional[NotificationReason] = None,
    ) -> Optional[ScoreResult]:
        """
        Score with reason.

        `trigger` lets the recurrence path score a freshly created (pending)
        cycle; every other path leaves it None.
        """
        config = self.config
        now = as_naive_utc(now)
        weight = config.priority_weight(event.priority.value)
        days_left = days_until_due(event.due_date, now)
        escalated = False

        if event.status == EventStatus.OVERDUE:
            raw = config.base_score_overdue * weight
            reason = NotificationReason.OVERDUE
            days_overdue = -days_left
            if days_overdue > config.escalation_after_days and event.id not in profile.acknowledged_events:
                raw += config.escalation_bonus
                reason = NotificationReason.ESCALATION
                escalated = True
        elif event.status == EventStatus.DUE_SOON:
            raw = config.base_score_due_soon * weight
            days_closer = max(0, config.due_soon_window_days - max(days_left, 0))
            raw += min(config.days_adjustment_cap, days_closer)
            reason = NotificationReason.DEADLINE_APPROACHING
        elif event.status == EventStatus.PENDING and trigger == NotificationReason.RECURRENCE_CREATED:
            raw = config.base_score_recurrence_created * weight
            reason = NotificationReason.RECURRENCE_CREATED
        else:
            # pending on its own, completed, waived
            return None

        if profile.is_engaged:
            raw += config.engagement_boost

        if profile.dismissal_streak(event.id) >= config.damping_dismissal_count:
            raw *= config.damping_multiplier

        if event.status == EventStatus.OVERDUE:
            raw = max(raw, config.overdue_score_floor)

        final = int(round(min(100.0, max(0.0, raw))))
        if final < config.min_notify_score:
            return None

        return ScoreResult(score=final, reason=reason, escalated=escalated)
