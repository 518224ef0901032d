"""
Compliance Deadline Services

Rules Provider -> Event Materializer -> Lifecycle Tracker -> Notification Scorer
-> Throttle & Dedup Gate -> Dispatcher, with the Recurrence Generator feeding
new cycles back into the tracker and the sweep driving it all periodically.
"""

from .rules_provider import (
    RulesProvider, StaticRulesProvider, MappingRulesProvider, RulesProviderError,
)
from .materializer import EventMaterializer, EntityNotFound
from .lifecycle import LifecycleTracker, InvalidTransition, EventNotFound, derive_status
from .scorer import NotificationScorer, score_to_priority_level, score_to_urgency
from .profile import NotificationProfileService
from .throttle_gate import ThrottleGate, compute_dedup_key, due_date_bucket, settle_claim
from .preferences import PreferenceStore, DatabasePreferenceStore, Contact
from .senders import (
    EmailSender, SmsSender, InAppSender, SenderError,
    SmtpEmailSender, HttpSmsSender, DatabaseInAppSender,
)
from .dispatcher import Dispatcher
from .inbox import NotificationInbox, NotificationNotFound, inbox_entry_to_dict
from .recurrence_generator import RecurrenceGenerator
from .sweep import ComplianceSweep
from .compliance_service import ComplianceService, RecordNotFound, event_to_dict

__all__ = [
    # Rules
    'RulesProvider',
    'StaticRulesProvider',
    'MappingRulesProvider',
    'RulesProviderError',
    # Events
    'EventMaterializer',
    'EntityNotFound',
    'LifecycleTracker',
    'InvalidTransition',
    'EventNotFound',
    'derive_status',
    'RecurrenceGenerator',
    # Notifications
    'NotificationScorer',
    'score_to_priority_level',
    'score_to_urgency',
    'NotificationProfileService',
    'ThrottleGate',
    'compute_dedup_key',
    'due_date_bucket',
    'settle_claim',
    'PreferenceStore',
    'DatabasePreferenceStore',
    'Contact',
    'EmailSender',
    'SmsSender',
    'InAppSender',
    'SenderError',
    'SmtpEmailSender',
    'HttpSmsSender',
    'DatabaseInAppSender',
    'Dispatcher',
    'NotificationInbox',
    'NotificationNotFound',
    'inbox_entry_to_dict',
    # Orchestration
    'ComplianceSweep',
    'ComplianceService',
    'RecordNotFound',
    'event_to_dict',
]
