"""Signed-in user session, passed explicitly into every engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from supabase import Client

from medspg.errors import BackendError, NotAuthenticatedError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UserSession:
    """Identity of the signed-in user (id, email and auth metadata)."""

    id: str
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        for key in ("display_name", "full_name", "name"):
            value = self.metadata.get(key)
            if value:
                return value
        if self.email:
            return self.email.split("@")[0]
        return "Anonymous"

    @classmethod
    def from_auth_user(cls, user: Any) -> "UserSession":
        return cls(id=str(user.id), email=user.email, metadata=dict(user.user_metadata or {}))


def require_user(user: Optional[UserSession]) -> UserSession:
    """Return the user or raise; the UI redirects to the landing page."""
    if user is None:
        raise NotAuthenticatedError("Please sign in to continue.")
    return user


class AuthGateway:
    """Thin wrapper over Supabase auth so pages never touch client.auth directly."""

    def __init__(self, client: Client):
        self.client = client

    def current_user(self) -> Optional[UserSession]:
        try:
            response = self.client.auth.get_user()
        except Exception as e:
            logger.warning(f"No active auth session: {e}")
            return None
        if response is None or response.user is None:
            return None
        return UserSession.from_auth_user(response.user)

    def sign_in(self, email: str, password: str) -> UserSession:
        try:
            response = self.client.auth.sign_in_with_password({"email": email, "password": password})
        except Exception as e:
            logger.error(f"Sign-in failed for {email}: {e}")
            raise BackendError(str(e)) from e
        return UserSession.from_auth_user(response.user)

    def sign_up(self, email: str, password: str, display_name: str) -> Optional[UserSession]:
        """Create an account. Returns None while email confirmation is pending."""
        try:
            response = self.client.auth.sign_up({
                "email": email,
                "password": password,
                "options": {"data": {"display_name": display_name}},
            })
        except Exception as e:
            logger.error(f"Sign-up failed for {email}: {e}")
            raise BackendError(str(e)) from e
        if response.session is None or response.user is None:
            return None
        return UserSession.from_auth_user(response.user)

    def sign_out(self) -> None:
        try:
            self.client.auth.sign_out()
        except Exception as e:
            logger.error(f"Sign-out failed: {e}")
            raise BackendError(str(e)) from e

    def update_display_name(self, display_name: str) -> None:
        try:
            self.client.auth.update_user({"data": {"display_name": display_name}})
        except Exception as e:
            raise BackendError(f"Failed to update auth metadata: {e}") from e

    def on_change(self, callback: Callable[[str, Optional[UserSession]], None]):
        """Subscribe to sign-in/sign-out events; returns the subscription handle."""

        def _handler(event, session):
            user = UserSession.from_auth_user(session.user) if session and session.user else None
            callback(str(event), user)

        return self.client.auth.on_auth_state_change(_handler)
