"""
Auth Store
Session, user and profile for the signed-in user. The profile is fetched once
per sign-in and held until sign-out or a local profile update.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from .base import Store
from ..models import AuthEvent, Profile, Session, User
from ..services.auth_service import AuthService, AuthSubscription
from ...core.exceptions import AuthRequiredError, RoadPatrolError

logger = logging.getLogger(__name__)

UNAUTHENTICATED = "unauthenticated"
AUTHENTICATING = "authenticating"
AUTHENTICATED = "authenticated"


class AuthStoreState(BaseModel):
    status: str = UNAUTHENTICATED
    session: Optional[Session] = None
    user: Optional[User] = None
    profile: Optional[Profile] = None
    is_initialized: bool = False
    error: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.status == AUTHENTICATED


class AuthStore(Store[AuthStoreState]):
    def __init__(self, auth: AuthService):
        super().__init__(AuthStoreState())
        self.auth = auth
        self._subscription: Optional[AuthSubscription] = None

    async def initialize(self) -> None:
        """Adopt any existing session and start listening for auth events."""
        if self._subscription is None:
            self._subscription = self.auth.on_auth_state_change(self.handle_auth_event)

        session = self.auth.get_session()
        if session is not None and session.user is not None:
            await self._signed_in(session)
        self.set_state(is_initialized=True)

    def sign_in(self, provider: Optional[str] = None) -> str:
        """Start OAuth; returns the URL to open. Completion arrives as SIGNED_IN."""
        self.set_state(status=AUTHENTICATING, error=None)
        return self.auth.sign_in_with_oauth(provider)

    async def handle_auth_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        if event == AuthEvent.SIGNED_IN and session is not None:
            await self._signed_in(session)
        elif event == AuthEvent.SIGNED_OUT:
            self._signed_out()

    async def _signed_in(self, session: Session) -> None:
        user = session.user
        current = self.state.profile
        profile = current if current is not None and user is not None and current.id == user.id else None

        self.set_state(status=AUTHENTICATED, session=session, user=user, error=None)
        if profile is None and user is not None:
            try:
                profile = await self.auth.get_user_profile(user.id)
            except RoadPatrolError as e:
                logger.error(f"Error loading profile for {user.id}: {e.message}")
            self.set_state(profile=profile)

    def _signed_out(self) -> None:
        self.set_state(status=UNAUTHENTICATED, session=None, user=None, profile=None)

    async def sign_out(self) -> None:
        await self.auth.sign_out()
        self._signed_out()

    async def update_profile(self, updates: Dict[str, Any]) -> Profile:
        """
        Save profile changes and merge them into the held profile.

        Raises:
            AuthRequiredError: nobody is signed in
        """
        user = self.state.user
        if user is None:
            raise AuthRequiredError()

        saved = await self.auth.update_user_profile(user.id, updates)
        base = self.state.profile.model_dump() if self.state.profile is not None else {}
        profile = Profile.model_validate({**base, **saved.model_dump(exclude_unset=True), **updates})
        self.set_state(profile=profile)
        return profile

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
