"""Session store: the current principal, its cached copy, and auth actions.

Startup never waits on the network. ``restore_cached`` presents a still-valid
cached session at once; ``revalidate`` checks it with the identity provider in
the background, bounded by a timeout. A failed revalidation does not log out a
session whose token has not expired yet.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import structlog

from ..domain.models import Principal
from ..storage import LocalStore
from .background import fire_and_forget

logger = structlog.get_logger()

SESSION_KEY = "session"


class AuthError(Exception):
    """Identity provider rejected the request. The message is user-facing."""


class SessionEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


SessionCallback = Callable[[SessionEvent, Optional[Principal]], None]


class IdentityProvider(ABC):
    """Contract the session store needs from the identity provider."""

    @abstractmethod
    async def sign_up(self, email: str, password: str, redirect_to: str) -> Optional[Principal]:
        """Register. Returns None when email confirmation is pending."""
        pass

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> Principal:
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> Principal:
        pass

    @abstractmethod
    async def get_user(self, access_token: str) -> Dict[str, Any]:
        """Return the user record ``{id, email, ...}`` for a token."""
        pass

    @abstractmethod
    async def sign_out(self, access_token: str) -> None:
        pass

    @abstractmethod
    def oauth_url(self, provider: str, redirect_to: str) -> str:
        pass


def principal_from_token_response(data: Dict[str, Any], now: Optional[float] = None) -> Principal:
    now = time.time() if now is None else now
    user = data.get("user") or {}
    expires_at = data.get("expires_at") or int(now) + int(data.get("expires_in") or 3600)
    return Principal(
        id=user["id"],
        email=user.get("email") or "",
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=int(expires_at),
    )


class GoTrueProvider(IdentityProvider):
    """Identity provider over the hosted auth REST API."""

    def __init__(
        self, base_url: str, anon_key: str, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/auth/v1"
        self.anon_key = anon_key
        self._http = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self.anon_key, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _post(
        self,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._http.post(
                f"{self.base_url}/{path}",
                json=json,
                params=params,
                headers=self._headers(access_token),
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Authentication service unreachable: {e}") from e
        if response.status_code >= 400:
            raise AuthError(_error_message(response))
        return response.json() if response.content else {}

    async def sign_up(self, email: str, password: str, redirect_to: str) -> Optional[Principal]:
        data = await self._post(
            "signup",
            json={"email": email, "password": password},
            params={"redirect_to": redirect_to},
        )
        if data.get("access_token"):
            return principal_from_token_response(data)
        return None

    async def sign_in_with_password(self, email: str, password: str) -> Principal:
        data = await self._post(
            "token",
            json={"email": email, "password": password},
            params={"grant_type": "password"},
        )
        return principal_from_token_response(data)

    async def refresh(self, refresh_token: str) -> Principal:
        data = await self._post(
            "token",
            json={"refresh_token": refresh_token},
            params={"grant_type": "refresh_token"},
        )
        return principal_from_token_response(data)

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        try:
            response = await self._http.get(
                f"{self.base_url}/user", headers=self._headers(access_token)
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Authentication service unreachable: {e}") from e
        if response.status_code >= 400:
            raise AuthError(_error_message(response))
        return response.json()

    async def sign_out(self, access_token: str) -> None:
        await self._post("logout", access_token=access_token)

    def oauth_url(self, provider: str, redirect_to: str) -> str:
        query = urlencode({"provider": provider, "redirect_to": redirect_to})
        return f"{self.base_url}/authorize?{query}"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"Authentication failed ({response.status_code})"
    for field in ("msg", "error_description", "message", "error"):
        if isinstance(body, dict) and body.get(field):
            return str(body[field])
    return f"Authentication failed ({response.status_code})"


class SessionStore:
    """Owns the current principal for one client."""

    def __init__(
        self,
        provider: IdentityProvider,
        storage: LocalStore,
        *,
        redirect_to: str = "http://localhost:8000/",
        init_timeout: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.storage = storage
        self.redirect_to = redirect_to
        self.init_timeout = init_timeout
        self._clock = clock
        self._principal: Optional[Principal] = None
        self._callbacks: List[SessionCallback] = []
        self._pending_refresh: Optional[Principal] = None
        self.generation = 0
        self.loading = True

    @property
    def principal(self) -> Optional[Principal]:
        return self._principal

    def is_current(self, generation: int) -> bool:
        """True while no sign-in or sign-out has happened since ``generation``."""
        return generation == self.generation and self._principal is not None

    def subscribe(self, callback: SessionCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _emit(self, event: SessionEvent) -> None:
        logger.info(
            "session_transition",
            session_event=event.value,
            user_id=self._principal.id if self._principal else None,
        )
        for callback in list(self._callbacks):
            callback(event, self._principal)

    def _set_principal(self, principal: Optional[Principal], event: SessionEvent) -> None:
        if event != SessionEvent.TOKEN_REFRESHED:
            self.generation += 1
        self._principal = principal
        if principal is None:
            self.storage.remove(SESSION_KEY)
        else:
            self.storage.set(SESSION_KEY, principal.to_cache())
        self.loading = False
        self._emit(event)

    def restore_cached(self) -> Optional[Principal]:
        """Present the cached session without touching the network."""
        data = self.storage.get(SESSION_KEY)
        principal = None
        if data:
            try:
                principal = Principal.from_cache(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("cached_session_invalid", error=str(e))
                self.storage.remove(SESSION_KEY)

        if principal is not None and principal.is_expired(self._clock()):
            if principal.refresh_token:
                # Keep it aside for revalidate() to refresh; nothing to show yet.
                self._pending_refresh = principal
                logger.info("cached_session_expired", user_id=principal.id)
                return None
            logger.info("cached_session_discarded", user_id=principal.id)
            self.storage.remove(SESSION_KEY)
            principal = None

        if principal is None:
            self.loading = False
            return None

        self.generation += 1
        self._principal = principal
        self.loading = False
        self._emit(SessionEvent.INITIAL_SESSION)
        return principal

    async def revalidate(self) -> Optional[Principal]:
        """Confirm the presented session with the identity provider."""
        expired, self._pending_refresh = self._pending_refresh, None
        if expired is not None:
            self.loading = True
            generation = self.generation
            try:
                refreshed = await asyncio.wait_for(
                    self.provider.refresh(expired.refresh_token), timeout=self.init_timeout
                )
            except (AuthError, asyncio.TimeoutError) as e:
                if self.generation != generation:
                    return self._principal
                logger.warning("session_refresh_failed", user_id=expired.id, error=str(e))
                self.storage.remove(SESSION_KEY)
                self.loading = False
                return None
            if self.generation != generation:
                # Signed in or out while the refresh was in flight.
                logger.info("stale_session_refresh_ignored", user_id=expired.id)
                return self._principal
            self._set_principal(refreshed, SessionEvent.SIGNED_IN)
            return refreshed

        principal = self._principal
        if principal is None:
            self.loading = False
            return None

        generation = self.generation
        try:
            user = await asyncio.wait_for(
                self.provider.get_user(principal.access_token), timeout=self.init_timeout
            )
        except (AuthError, asyncio.TimeoutError) as e:
            if not self.is_current(generation):
                return self._principal
            if principal.is_expired(self._clock()):
                logger.warning("session_revalidation_failed", user_id=principal.id, error=str(e))
                self._set_principal(None, SessionEvent.SIGNED_OUT)
                return None
            logger.warning(
                "session_revalidation_failed_keeping_cache", user_id=principal.id, error=str(e)
            )
            return principal

        if not self.is_current(generation):
            return self._principal
        fresh = principal.model_copy(
            update={"id": user.get("id", principal.id), "email": user.get("email") or principal.email}
        )
        if fresh.id != principal.id:
            self._set_principal(fresh, SessionEvent.SIGNED_IN)
        elif fresh != principal:
            self._set_principal(fresh, SessionEvent.TOKEN_REFRESHED)
        logger.info("session_revalidated", user_id=fresh.id)
        return fresh

    async def sign_up(self, email: str, password: str) -> Optional[Principal]:
        principal = await self.provider.sign_up(email, password, self.redirect_to)
        if principal is None:
            logger.info("sign_up_confirmation_pending", email=email)
            return None
        self._set_principal(principal, SessionEvent.SIGNED_IN)
        return principal

    async def sign_in(self, email: str, password: str) -> Principal:
        principal = await self.provider.sign_in_with_password(email, password)
        self._set_principal(principal, SessionEvent.SIGNED_IN)
        return principal

    def sign_in_with_oauth(self, provider: str) -> str:
        """URL the caller must navigate to; the flow completes out of process."""
        return self.provider.oauth_url(provider, self.redirect_to)

    async def complete_oauth(
        self, access_token: str, refresh_token: Optional[str] = None, expires_in: int = 3600
    ) -> Principal:
        user = await self.provider.get_user(access_token)
        principal = principal_from_token_response(
            {
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_in": expires_in,
                "user": user,
            },
            now=self._clock(),
        )
        self._set_principal(principal, SessionEvent.SIGNED_IN)
        return principal

    async def refresh(self) -> Optional[Principal]:
        principal = self._principal
        if principal is None or not principal.refresh_token:
            return principal
        generation = self.generation
        refreshed = await self.provider.refresh(principal.refresh_token)
        if not self.is_current(generation):
            return self._principal
        self._set_principal(refreshed, SessionEvent.TOKEN_REFRESHED)
        return refreshed

    async def sign_out(self) -> None:
        """Clear local state now; invalidate remotely in the background."""
        principal = self._principal
        self._pending_refresh = None
        self._set_principal(None, SessionEvent.SIGNED_OUT)
        if principal is not None:
            fire_and_forget(
                lambda: self.provider.sign_out(principal.access_token),
                "remote_sign_out",
                user_id=principal.id,
            )
