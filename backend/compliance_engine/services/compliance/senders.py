"""
Channel Senders

External delivery collaborators. Each sender returns True on success and
raises SenderError (or returns False) on failure; the dispatcher records the
outcome either way.
"""
import logging
import os
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Optional
from uuid import uuid4

import httpx
from sqlalchemy.orm import Session

from ...models.db_models import InAppNotificationDB
from .clock import utcnow


logger = logging.getLogger(__name__)


class SenderError(Exception):
    """Raised when an external channel rejects or cannot take a message."""
    pass


class EmailSender:
    def send_email(self, to: str, subject: str, body: str) -> bool:
        raise NotImplementedError


class SmsSender:
    def send_sms(self, to: str, body: str) -> bool:
        raise NotImplementedError


class InAppSender:
    def send_in_app(
        self,
        user_id: str,
        event_id: str,
        title: str,
        body: str,
        priority_level: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> bool:
        raise NotImplementedError


# =============================================================================
# EMAIL (SMTP)
# =============================================================================

class SmtpEmailSender(EmailSender):
    """Plain-text email over SMTP with STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.username = username or from_address
        self.password = password
        self.timeout = timeout

    @classmethod
    def from_env(cls, timeout: float = 10.0) -> Optional["SmtpEmailSender"]:
        """Build from SMTP_* variables; None when email is not configured."""
        host = os.getenv("SMTP_HOST")
        from_address = os.getenv("SMTP_FROM_EMAIL")
        if not host or not from_address:
            return None
        return cls(
            host=host,
            port=int(os.getenv("SMTP_PORT", 587)),
            from_address=from_address,
            username=os.getenv("SMTP_USERNAME"),
            password=os.getenv("SMTP_PASSWORD"),
            timeout=timeout,
        )

    def send_email(self, to: str, subject: str, body: str) -> bool:
        message = EmailMessage()
        message["From"] = self.from_address
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise SenderError(f"SMTP delivery to {to} failed: {e}") from e

        logger.debug(f"Email sent to {to}: {subject}")
        return True


# =============================================================================
# SMS (HTTP GATEWAY)
# =============================================================================

class HttpSmsSender(SmsSender):
    """SMS through a JSON messaging API (Telnyx-compatible payload)."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_number: str,
        messaging_profile_id: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.from_number = from_number
        self.messaging_profile_id = messaging_profile_id
        self.client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_env(cls, timeout: float = 10.0) -> Optional["HttpSmsSender"]:
        """Build from SMS_* variables; None when SMS is not configured."""
        api_key = os.getenv("SMS_API_KEY")
        from_number = os.getenv("SMS_FROM_NUMBER")
        if not api_key or not from_number:
            return None
        return cls(
            api_url=os.getenv("SMS_API_URL", "https://api.telnyx.com/v2/messages"),
            api_key=api_key,
            from_number=from_number,
            messaging_profile_id=os.getenv("SMS_MESSAGING_PROFILE_ID"),
            timeout=timeout,
        )

    def send_sms(self, to: str, body: str) -> bool:
        payload = {
            "from": self.from_number,
            "to": to,
            "text": body,
        }
        if self.messaging_profile_id:
            payload["messaging_profile_id"] = self.messaging_profile_id

        try:
            response = self.client.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise SenderError(f"SMS gateway unreachable: {e}") from e

        if response.status_code >= 400:
            raise SenderError(f"SMS sending failed: {response.status_code} {response.text[:200]}")
        logger.debug(f"SMS sent to {to}")
        return True


# =============================================================================
# IN-APP (DATABASE INBOX)
# =============================================================================

class DatabaseInAppSender(InAppSender):
    """Writes the notification into the user's dashboard inbox."""

    def __init__(self, db: Session, action_url: str = "/compliance-dashboard"):
        self.db = db
        self.action_url = action_url

    def send_in_app(
        self,
        user_id: str,
        event_id: str,
        title: str,
        body: str,
        priority_level: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> bool:
        self.db.add(InAppNotificationDB(
            id=str(uuid4()),
            user_id=user_id,
            event_id=event_id,
            title=title,
            message=body,
            priority_level=priority_level,
            action_url=self.action_url,
            is_read=False,
            created_at=created_at or utcnow(),
        ))
        return True
