"""
Notification copy.

Subject lines and bodies for every channel. SMS gets the short form.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ...models.db_models import NotificationReason
from .lifecycle import days_until_due
from .scorer import score_to_priority_level


SMS_MAX_LENGTH = 160


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    body: str
    short_body: str
    priority_level: str


def _plural(n: int) -> str:
    return "" if n == 1 else "s"


def build_title(title: str, reason: NotificationReason, days_left: int) -> str:
    if reason == NotificationReason.RECURRENCE_CREATED:
        return f"New cycle scheduled: {title}"
    if days_left < 0:
        days_over = -days_left
        prefix = "ESCALATED" if reason == NotificationReason.ESCALATION else "OVERDUE"
        return f"{prefix}: {title} ({days_over} day{_plural(days_over)} past due)"
    if days_left == 0:
        return f"DUE TODAY: {title}"
    if days_left == 1:
        return f"Due Tomorrow: {title}"
    if days_left <= 7:
        return f"URGENT: {title} due in {days_left} days"
    if days_left <= 30:
        return f"Reminder: {title} due in {days_left} days"
    return f"Upcoming: {title} due in {days_left} days"


def build_message(
    event,
    reason: NotificationReason,
    score: int,
    now: datetime,
    entity_name: Optional[str] = None,
) -> NotificationMessage:
    """Render the notification for one event."""
    days_left = days_until_due(event.due_date, now)
    title = build_title(event.title, reason, days_left)
    due_text = event.due_date.strftime("%B %d, %Y")

    lines = [title, ""]
    if entity_name:
        lines.append(f"Business: {entity_name}")
    lines.append(f"Due date: {due_text}")
    if event.description:
        lines.append("")
        lines.append(event.description)
    if reason == NotificationReason.ESCALATION:
        lines.append("")
        lines.append("This obligation is still open. Late filings can carry penalties "
                     "and may put the business out of good standing.")
    lines.append("")
    lines.append("Mark it completed from your compliance dashboard once filed.")

    short_body = f"{title}. Due {due_text}."
    if len(short_body) > SMS_MAX_LENGTH:
        short_body = short_body[:SMS_MAX_LENGTH - 3] + "..."

    return NotificationMessage(
        title=title,
        body="\n".join(lines),
        short_body=short_body,
        priority_level=score_to_priority_level(score),
    )
