"""Profile editing with the display-name cooldown, and account deletion."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from engine import NAME_CHANGE_COOLDOWN_DAYS
from medspg.auth import AuthGateway, UserSession
from medspg.errors import AccountDeletionError, BackendError, NameChangeRestrictedError

logger = logging.getLogger(__name__)

NAME_CHANGE_COOLDOWN = timedelta(days=NAME_CHANGE_COOLDOWN_DAYS)

# (table, owner column) in deletion order
ACCOUNT_TABLES = [
    ("profiles", "id"),
    ("user_points", "user_id"),
    ("posts", "author_id"),
    ("replies", "author_id"),
    ("votes", "user_id"),
]


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_change_name(last_name_change, now: Optional[datetime] = None) -> bool:
    last = _parse_timestamp(last_name_change)
    if last is None:
        return True
    return (now or _utcnow()) - last >= NAME_CHANGE_COOLDOWN


def days_until_name_change(last_name_change, now: Optional[datetime] = None) -> int:
    last = _parse_timestamp(last_name_change)
    if last is None:
        return 0
    remaining = NAME_CHANGE_COOLDOWN - ((now or _utcnow()) - last)
    if remaining <= timedelta(0):
        return 0
    return remaining.days + (1 if remaining.seconds or remaining.microseconds else 0)


class ProfileService:
    """Loads, creates and saves the signed-in user's profile row."""

    def __init__(self, db, auth: Optional[AuthGateway] = None):
        self.db = db
        self.auth = auth

    def load_or_create(self, user: UserSession) -> Dict:
        profile = self.db.get_profile(user.id)
        if profile:
            return profile

        new_profile = {
            "id": user.id,
            "display_name": user.display_name,
            "college": None,
            "year": None,
            "status": None,
            "last_name_change": None,
        }
        try:
            return self.db.upsert_profile(new_profile)
        except BackendError as e:
            # The signup trigger may have created the row in the meantime.
            logger.error(f"Error creating profile for {user.id}: {e}")
            profile = self.db.get_profile(user.id)
            if profile:
                return profile
            raise

    def save(
        self,
        user: UserSession,
        profile: Dict,
        display_name: str,
        college: str = "",
        year: str = "",
        status: str = "",
        now: Optional[datetime] = None,
    ) -> Dict:
        """
        Save profile edits.

        Raises:
            NameChangeRestrictedError: display name changed inside the cooldown
            BackendError: the profile update failed
        """
        now = now or _utcnow()
        update_data = {
            "college": college or None,
            "year": year or None,
            "status": status or None,
        }

        display_name = display_name.strip()
        if display_name and display_name != profile.get("display_name"):
            last = profile.get("last_name_change")
            if not can_change_name(last, now):
                raise NameChangeRestrictedError(days_until_name_change(last, now))
            update_data["display_name"] = display_name
            update_data["last_name_change"] = now.isoformat()
            if self.auth is not None:
                try:
                    self.auth.update_display_name(display_name)
                    user.metadata["display_name"] = display_name
                except BackendError as e:
                    logger.warning(f"Profile saved but auth metadata not updated: {e}")

        self.db.update_profile(user.id, update_data)
        logger.info(f"Profile updated for {user.id}: {sorted(update_data)}")
        return {**profile, **update_data}


def delete_account(db, user_id: str) -> None:
    """
    Best-effort cascade over every table the user owns rows in.

    Every step is attempted even after a failure and nothing is rolled back.

    Raises:
        AccountDeletionError: listing the tables whose delete failed
    """
    failed = []
    for table, column in ACCOUNT_TABLES:
        try:
            db.delete_owned_rows(table, column, user_id)
        except BackendError as e:
            logger.error(f"Account deletion step failed for {table}: {e}")
            failed.append(table)
    if failed:
        raise AccountDeletionError(failed)
    logger.info(f"Deleted account data for {user_id}")
