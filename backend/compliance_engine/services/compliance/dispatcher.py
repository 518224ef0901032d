"""
Dispatcher

AUTHORITY: SYSTEM
Delivers admitted candidates on every channel the user has enabled and the
score qualifies for, and writes one NotificationRecord per channel
attempted, whatever the outcome. A user with no usable channel gets nothing.

A sender failure never propagates: it is retried with exponential backoff
and then recorded as failed. Each record settles the gate's claim for its
channel, so a failed channel is retried later without resending the others.
"""
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    ComplianceEventDB, NotificationRecordDB, Channel, DeliveryOutcome,
)
from ...models.engine_models import ChannelAttempt, DispatchResult, NotificationCandidate
from .clock import as_naive_utc
from .lifecycle import EventNotFound
from .messages import NotificationMessage, build_message
from .preferences import Contact, DatabasePreferenceStore, PreferenceStore
from .senders import DatabaseInAppSender, EmailSender, InAppSender, SmsSender
from .throttle_gate import settle_claim


logger = logging.getLogger(__name__)

CHANNEL_ORDER = (Channel.IN_APP, Channel.EMAIL, Channel.SMS)

# Hard ceiling on attempts per channel per dispatch
MAX_ATTEMPTS_CAP = 3


class Dispatcher:
    """
    Sends notifications through the channel senders.

    Usage:
        dispatcher = Dispatcher(db, email_sender=SmtpEmailSender.from_env())
        result = dispatcher.dispatch(candidate, decision.dedup_key, now)
    """

    def __init__(
        self,
        db: Session,
        preference_store: Optional[PreferenceStore] = None,
        email_sender: Optional[EmailSender] = None,
        sms_sender: Optional[SmsSender] = None,
        in_app_sender: Optional[InAppSender] = None,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.preference_store = preference_store or DatabasePreferenceStore(db)
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.in_app_sender = in_app_sender or DatabaseInAppSender(db)
        self.config = config or EngineConfig()
        self.sleep = sleep

    @property
    def max_attempts(self) -> int:
        return max(1, min(self.config.max_send_attempts, MAX_ATTEMPTS_CAP))

    def channels_for(self, candidate: NotificationCandidate) -> List[Channel]:
        """
        Enabled channels in delivery order, minus those the score does not
        reach (email below email_min_score, SMS below sms_min_score).

        Empty when the user has turned every channel off.
        """
        prefs = self.preference_store.get_channels(candidate.user_id)
        score = candidate.computed_priority_score
        min_scores = {
            Channel.EMAIL: self.config.email_min_score,
            Channel.SMS: self.config.sms_min_score,
        }
        return [
            channel for channel in CHANNEL_ORDER
            if prefs.get(channel) and score >= min_scores.get(channel, 0)
        ]

    def dispatch(
        self,
        candidate: NotificationCandidate,
        dedup_key: str,
        now: Optional[datetime] = None,
        channels: Optional[List[Channel]] = None,
    ) -> DispatchResult:
        """
        Deliver on `channels` (the gate's claimed channels), or on every
        channel from channels_for when not given.
        """
        now = as_naive_utc(now)
        if channels is None:
            channels = self.channels_for(candidate)
        event = self.db.get(ComplianceEventDB, candidate.event_id)
        if event is None:
            raise EventNotFound(f"Compliance event {candidate.event_id} not found")

        result = DispatchResult(
            event_id=candidate.event_id,
            user_id=candidate.user_id,
            dedup_key=dedup_key,
        )
        if not channels:
            logger.info(f"No channel enabled for user {candidate.user_id}; event {candidate.event_id} not sent")
            return result

        entity_name = event.entity.name if event.entity is not None else None
        message = build_message(event, candidate.reason, candidate.computed_priority_score, now, entity_name)
        contact = self.preference_store.get_contact(candidate.user_id)

        for channel in channels:
            send, missing = self._resolve_sender(channel, candidate, message, contact, now)
            if send is None:
                logger.warning(f"Cannot deliver event {candidate.event_id} on {channel.value}: {missing}")
                attempt = ChannelAttempt(channel=channel, outcome=DeliveryOutcome.FAILED, attempts=0, error=missing)
            else:
                attempt = self._send_with_retry(channel, candidate, send)

            record = self._record(candidate, dedup_key, attempt, now)
            settle_claim(self.db, candidate.user_id, dedup_key, channel, attempt.outcome, now)
            attempt.record_id = record.id
            result.attempts.append(attempt)

        logger.info(
            f"Dispatched event {candidate.event_id} to user {candidate.user_id}: "
            f"{result.outcome.value} ({', '.join(a.channel.value + '=' + a.outcome.value for a in result.attempts)})"
        )
        return result

    def _resolve_sender(
        self,
        channel: Channel,
        candidate: NotificationCandidate,
        message: NotificationMessage,
        contact: Contact,
        now: datetime,
    ) -> Tuple[Optional[Callable[[], bool]], Optional[str]]:
        """Bind the send call for a channel, or explain why it cannot be made."""
        if channel == Channel.IN_APP:
            if self.in_app_sender is None:
                return None, "in-app channel not configured"
            return (lambda: self.in_app_sender.send_in_app(
                candidate.user_id, candidate.event_id, message.title, message.body, message.priority_level,
                created_at=now,
            )), None

        if channel == Channel.EMAIL:
            if self.email_sender is None:
                return None, "email channel not configured"
            if not contact.email:
                return None, "no email address on file"
            return (lambda: self.email_sender.send_email(contact.email, message.title, message.body)), None

        if channel == Channel.SMS:
            if self.sms_sender is None:
                return None, "sms channel not configured"
            if not contact.phone:
                return None, "no phone number on file"
            return (lambda: self.sms_sender.send_sms(contact.phone, message.short_body)), None

        return None, f"unknown channel {channel}"

    def _send_with_retry(
        self,
        channel: Channel,
        candidate: NotificationCandidate,
        send: Callable[[], bool],
    ) -> ChannelAttempt:
        error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if send():
                    return ChannelAttempt(channel=channel, outcome=DeliveryOutcome.SENT, attempts=attempt)
                error = "sender reported failure"
            except Exception as e:
                error = str(e) or e.__class__.__name__

            logger.warning(
                f"{channel.value} delivery attempt {attempt}/{self.max_attempts} failed "
                f"for event {candidate.event_id}: {error}"
            )
            if attempt < self.max_attempts:
                self.sleep(self.config.retry_backoff_seconds * (2 ** (attempt - 1)))

        return ChannelAttempt(
            channel=channel,
            outcome=DeliveryOutcome.FAILED,
            attempts=self.max_attempts,
            error=error,
        )

    def _record(
        self,
        candidate: NotificationCandidate,
        dedup_key: str,
        attempt: ChannelAttempt,
        now: datetime,
    ) -> NotificationRecordDB:
        record = NotificationRecordDB(
            id=str(uuid4()),
            event_id=candidate.event_id,
            user_id=candidate.user_id,
            channel=attempt.channel,
            dedup_key=dedup_key,
            reason=candidate.reason,
            score=candidate.computed_priority_score,
            delivery_outcome=attempt.outcome,
            attempts=attempt.attempts,
            error_message=attempt.error,
            sent_at=now,
        )
        self.db.add(record)
        return record
