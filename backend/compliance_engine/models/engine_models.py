"""
Compliance Engine - In-Memory Engine Models

Value objects passed between the engine stages. None of these are persisted
directly; the ORM models in db_models hold durable state.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Set, Tuple, Union

from .db_models import (
    EventStatus, EventPriority, IntervalUnit, Channel, NotificationReason,
    DeliveryOutcome, InteractionType,
)


# =============================================================================
# RULES PROVIDER OUTPUT
# =============================================================================

@dataclass(frozen=True)
class Recurrence:
    """Recurrence rule: every `interval_count` `interval_unit`s."""
    interval_unit: IntervalUnit
    interval_count: int = 1

    def __post_init__(self):
        if self.interval_count < 1:
            raise ValueError(f"interval_count must be >= 1, got {self.interval_count}")


@dataclass(frozen=True)
class ObligationTemplate:
    """
    A recurring or one-time regulatory requirement.

    The first due date is `anchor + anchor_offset_days`; recurring
    obligations repeat from there by `recurrence`.
    """
    event_type: str
    title: str
    recurrence: Optional[Recurrence]
    anchor_offset_days: int = 0
    description: str = ""
    priority: EventPriority = EventPriority.MEDIUM
    category: str = "compliance"


@dataclass(frozen=True)
class SupportedRules:
    """Lookup hit: the entity type/jurisdiction pair has obligations."""
    templates: List[ObligationTemplate]


@dataclass(frozen=True)
class UnsupportedJurisdiction:
    """Lookup miss: no rules for this pair. A valid state, not an error."""
    entity_type: str
    jurisdiction: str
    reason: str


RuleLookup = Union[SupportedRules, UnsupportedJurisdiction]


# =============================================================================
# LIFECYCLE SIGNALS
# =============================================================================

@dataclass(frozen=True)
class StatusChange:
    """Emitted by the lifecycle tracker on every status transition."""
    event_id: str
    entity_id: str
    from_status: EventStatus
    to_status: EventStatus
    changed_at: datetime
    trigger: str

    signal: str = "status_changed"


# =============================================================================
# SCORING
# =============================================================================

@dataclass
class UserNotificationProfile:
    """
    Computed view of a user's recent reactions to notifications.

    `event_interactions` lists interactions per event, most recent first.
    """
    user_id: str
    event_interactions: Dict[str, List[InteractionType]] = field(default_factory=dict)
    acknowledged_events: Set[str] = field(default_factory=set)
    recent_notification_count: int = 0
    open_rate: float = 0.0
    is_engaged: bool = False

    def dismissal_streak(self, event_id: str) -> int:
        """Number of consecutive most-recent dismissals for an event."""
        streak = 0
        for interaction in self.event_interactions.get(event_id, []):
            if interaction != InteractionType.DISMISSED:
                break
            streak += 1
        return streak

    @classmethod
    def empty(cls, user_id: str) -> "UserNotificationProfile":
        return cls(user_id=user_id)


@dataclass(frozen=True)
class ScoreResult:
    """Score with the reason that produced it."""
    score: int
    reason: NotificationReason
    escalated: bool = False


@dataclass
class NotificationCandidate:
    """A notification the scorer wants to send. Ephemeral until dispatched."""
    event_id: str
    user_id: str
    channel: Channel
    computed_priority_score: int
    reason: NotificationReason
    status: EventStatus
    due_date: date
    entity_id: Optional[str] = None
    escalated: bool = False

    # Enabled channels resolved for this candidate; empty means only `channel`
    channels: List[Channel] = field(default_factory=list)

    def sort_key(self):
        """Highest score first, then earliest due date."""
        return (-self.computed_priority_score, self.due_date, self.event_id)

    def delivery_channels(self) -> List[Channel]:
        return list(self.channels) or [self.channel]


# =============================================================================
# GATE & DISPATCH
# =============================================================================

@dataclass(frozen=True)
class AdmitDecision:
    """Result of the throttle & dedup gate."""
    accepted: bool
    dedup_key: str
    reason: Optional[str] = None  # duplicate, rate_limited
    deferred: bool = False
    channels: Tuple[Channel, ...] = ()  # claimed for delivery

    @classmethod
    def accept(cls, dedup_key: str, channels: Tuple[Channel, ...] = ()) -> "AdmitDecision":
        return cls(accepted=True, dedup_key=dedup_key, channels=tuple(channels))

    @classmethod
    def reject(cls, dedup_key: str, reason: str, deferred: bool = False) -> "AdmitDecision":
        return cls(accepted=False, dedup_key=dedup_key, reason=reason, deferred=deferred)


@dataclass
class ChannelAttempt:
    """Delivery result on one channel."""
    channel: Channel
    outcome: DeliveryOutcome
    attempts: int
    record_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DispatchResult:
    """Aggregate delivery result for one candidate."""
    event_id: str
    user_id: str
    dedup_key: str
    attempts: List[ChannelAttempt] = field(default_factory=list)

    @property
    def outcome(self) -> DeliveryOutcome:
        if not self.attempts:
            return DeliveryOutcome.FAILED
        if any(a.outcome == DeliveryOutcome.SENT for a in self.attempts):
            return DeliveryOutcome.SENT
        return DeliveryOutcome.FAILED

    def to_dict(self) -> Dict:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "dedup_key": self.dedup_key,
            "outcome": self.outcome.value,
            "channels": [
                {
                    "channel": a.channel.value,
                    "outcome": a.outcome.value,
                    "attempts": a.attempts,
                    "error": a.error,
                }
                for a in self.attempts
            ],
        }
