"""
Auth Service
OAuth sign-in against the hosted auth API, the current session, auth state
listeners and the cached user profile.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

from ..cache import TTLCache, PROFILE
from ..models import AuthEvent, Profile, Session, User
from ...core.config import Settings, settings as default_settings
from ...core.exceptions import AuthRequiredError, RoadPatrolError, ValidationError
from ...infrastructure.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

AuthListener = Callable[[AuthEvent, Optional[Session]], Union[None, Awaitable[None]]]


class AuthSubscription:
    """Returned by on_auth_state_change; ``unsubscribe()`` stops delivery."""

    def __init__(self, listeners: List[AuthListener], listener: AuthListener):
        self._listeners = listeners
        self._listener = listener

    def unsubscribe(self) -> None:
        if self._listener in self._listeners:
            self._listeners.remove(self._listener)


class AuthService:
    def __init__(
        self,
        client: SupabaseClient,
        cache: TTLCache,
        config: Optional[Settings] = None,
    ):
        self.client = client
        self.cache = cache
        self.config = config or default_settings
        self._session: Optional[Session] = None
        self._listeners: List[AuthListener] = []

    # ------------------------------------------------------------------
    # Sign-in flow
    # ------------------------------------------------------------------

    def sign_in_with_oauth(self, provider: Optional[str] = None) -> str:
        """Authorization URL to open in a browser; the provider redirects back to the app."""
        redirect_to = f"{self.config.APP_URL}{self.config.OAUTH_REDIRECT_PATH}"
        query = urlencode({
            "provider": provider or self.config.OAUTH_PROVIDER,
            "redirect_to": redirect_to,
        })
        return f"{self.client.auth_url}/authorize?{query}"

    async def handle_redirect(self, redirect_url: str) -> Session:
        """
        Complete sign-in from the redirect URL's fragment
        (``#access_token=...&refresh_token=...&expires_at=...``).

        Raises:
            ValidationError: the URL carries no access token
        """
        fragment = urlsplit(redirect_url).fragment
        params = dict(parse_qsl(fragment))
        if not params.get("access_token"):
            raise ValidationError("Sign-in redirect is missing an access token")

        session = Session(
            access_token=params["access_token"],
            refresh_token=params.get("refresh_token"),
            expires_at=int(params["expires_at"]) if params.get("expires_at", "").isdigit() else None,
        )
        self.client.set_auth(session.access_token)
        user = await self._fetch_user()
        session.user = user
        await self.set_session(session)
        return session

    async def set_session(self, session: Union[Session, Dict[str, Any], None]) -> None:
        """Adopt a session (SIGNED_IN) or clear it with None (SIGNED_OUT)."""
        if session is None:
            await self._clear_session()
            return
        if not isinstance(session, Session):
            session = Session.model_validate(session)
        self._session = session
        self.client.set_auth(session.access_token)
        logger.info(f"Signed in as {session.user.id if session.user else 'unknown user'}")
        await self._emit(AuthEvent.SIGNED_IN, session)

    def get_session(self) -> Optional[Session]:
        return self._session

    async def get_current_user(self) -> Optional[User]:
        """Current user from the auth API, or the session's copy if that call fails."""
        if self._session is None:
            return None
        try:
            return await self._fetch_user()
        except RoadPatrolError as e:
            logger.warning(f"Could not refresh current user: {e.message}")
            return self._session.user

    async def _fetch_user(self) -> User:
        response = await self.client.request("GET", f"{self.client.auth_url}/user")
        return User.model_validate(response.json())

    async def sign_out(self) -> None:
        if self._session is not None:
            try:
                await self.client.request("POST", f"{self.client.auth_url}/logout")
            except RoadPatrolError as e:
                logger.warning(f"Remote sign-out failed: {e.message}")
        await self._clear_session()

    async def _clear_session(self) -> None:
        self._session = None
        self.client.set_auth(None)
        await self._emit(AuthEvent.SIGNED_OUT, None)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_auth_state_change(self, callback: AuthListener) -> AuthSubscription:
        self._listeners.append(callback)
        return AuthSubscription(self._listeners, callback)

    async def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Auth listener failed on {event.value}: {e}")

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def get_user_profile(self, user_id: str, skip_cache: bool = False) -> Optional[Profile]:
        """Cached profile; on error the cached copy (however stale) or None."""
        if not skip_cache:
            cached = self.cache.get(PROFILE, user_id)
            if cached is not None:
                return cached

        try:
            response = await self.client.table("profiles").select("*").eq("id", user_id).maybe_single().execute()
        except RoadPatrolError as e:
            logger.error(f"Error fetching profile {user_id}: {e.message}")
            return self.cache.peek(PROFILE, user_id)

        if response.data is None:
            return None
        profile = Profile.model_validate(response.data)
        self.cache.set(PROFILE, user_id, profile)
        return profile

    async def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Profile:
        if self._session is None:
            raise AuthRequiredError()

        response = await (
            self.client.table("profiles")
            .update(updates)
            .eq("id", user_id)
            .select()
            .single()
            .execute()
        )
        self.cache.invalidate(PROFILE, user_id)
        return Profile.model_validate(response.data)
