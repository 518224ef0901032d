"""
Preference Store

Channel toggles and contact details per user.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ...models.db_models import ChannelPreferenceDB, Channel


# Used when a user has never saved preferences
DEFAULT_CHANNELS = {
    Channel.EMAIL: True,
    Channel.SMS: False,
    Channel.IN_APP: True,
}


@dataclass(frozen=True)
class Contact:
    email: Optional[str] = None
    phone: Optional[str] = None


class PreferenceStore:
    def get_channels(self, user_id: str) -> Dict[Channel, bool]:
        raise NotImplementedError

    def get_contact(self, user_id: str) -> Contact:
        raise NotImplementedError


class DatabasePreferenceStore(PreferenceStore):
    """Preference store over the channel_preferences table."""

    def __init__(self, db: Session):
        self.db = db

    def _row(self, user_id: str) -> Optional[ChannelPreferenceDB]:
        return self.db.get(ChannelPreferenceDB, user_id)

    def get_channels(self, user_id: str) -> Dict[Channel, bool]:
        row = self._row(user_id)
        if row is None:
            return dict(DEFAULT_CHANNELS)
        return {
            Channel.EMAIL: bool(row.email_enabled),
            Channel.SMS: bool(row.sms_enabled),
            Channel.IN_APP: bool(row.in_app_enabled),
        }

    def get_contact(self, user_id: str) -> Contact:
        row = self._row(user_id)
        if row is None:
            return Contact()
        return Contact(email=row.email_address, phone=row.phone_number)
