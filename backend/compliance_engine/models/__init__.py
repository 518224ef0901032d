"""Compliance Engine - Data Models"""
from .db_models import (
    # Enums
    EventStatus, EventPriority, IntervalUnit, Channel, NotificationReason,
    DeliveryOutcome, InteractionType, ActorType,
    TERMINAL_STATUSES, ACTIVE_STATUSES,
    # ORM
    BusinessEntityDB, ComplianceEventDB, EventStatusLogDB, NotificationRecordDB,
    NotificationClaimDB, NotificationInteractionDB, RateCounterDB, ChannelPreferenceDB, InAppNotificationDB,
    SweepRunDB, SweepCheckpointDB,
)
from .engine_models import (
    Recurrence, ObligationTemplate, SupportedRules, UnsupportedJurisdiction, RuleLookup,
    StatusChange, UserNotificationProfile, ScoreResult, NotificationCandidate,
    AdmitDecision, ChannelAttempt, DispatchResult,
)

__all__ = [
    "EventStatus", "EventPriority", "IntervalUnit", "Channel", "NotificationReason",
    "DeliveryOutcome", "InteractionType", "ActorType",
    "TERMINAL_STATUSES", "ACTIVE_STATUSES",
    "BusinessEntityDB", "ComplianceEventDB", "EventStatusLogDB", "NotificationRecordDB",
    "NotificationClaimDB", "NotificationInteractionDB", "RateCounterDB", "ChannelPreferenceDB", "InAppNotificationDB",
    "SweepRunDB", "SweepCheckpointDB",
    "Recurrence", "ObligationTemplate", "SupportedRules", "UnsupportedJurisdiction", "RuleLookup",
    "StatusChange", "UserNotificationProfile", "ScoreResult", "NotificationCandidate",
    "AdmitDecision", "ChannelAttempt", "DispatchResult",
]
