"""Shared fixtures: in-memory services and fakes for the external APIs."""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from webai_chat.domain.models import Message, Principal
from webai_chat.repositories.memory import InMemoryRepository
from webai_chat.services.llm import InferenceError, InferenceReply
from webai_chat.services.session import AuthError, IdentityProvider
from webai_chat.storage import LocalStore

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_principal(
    user_id: str = "user-1",
    email: str = "ada@example.com",
    expires_in: int = 3600,
    refresh_token: Optional[str] = "refresh-1",
) -> Principal:
    return Principal(
        id=user_id,
        email=email,
        access_token=f"token-{user_id}",
        refresh_token=refresh_token,
        expires_at=int(time.time()) + expires_in,
    )


class FakeIdentityProvider(IdentityProvider):
    """Identity provider holding accounts in memory."""

    def __init__(self, confirm_email: bool = False):
        self.confirm_email = confirm_email
        self.accounts: Dict[str, Dict[str, str]] = {}
        self.signed_out: List[str] = []
        self.fail_get_user = False
        self.fail_refresh = False
        self.fail_sign_out = False

    def _principal(self, email: str) -> Principal:
        account = self.accounts[email]
        return make_principal(account["id"], email)

    async def sign_up(self, email: str, password: str, redirect_to: str) -> Optional[Principal]:
        if email in self.accounts:
            raise AuthError("User already registered")
        self.accounts[email] = {"id": f"user-{len(self.accounts) + 1}", "password": password}
        if self.confirm_email:
            return None
        return self._principal(email)

    async def sign_in_with_password(self, email: str, password: str) -> Principal:
        account = self.accounts.get(email)
        if account is None or account["password"] != password:
            raise AuthError("Invalid login credentials")
        return self._principal(email)

    async def refresh(self, refresh_token: str) -> Principal:
        if self.fail_refresh:
            raise AuthError("Invalid Refresh Token")
        return make_principal(refresh_token="refresh-2")

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        if self.fail_get_user:
            raise AuthError("invalid JWT")
        user_id = access_token.replace("token-", "", 1)
        for email, account in self.accounts.items():
            if account["id"] == user_id:
                return {"id": user_id, "email": email}
        return {"id": user_id, "email": "ada@example.com"}

    async def sign_out(self, access_token: str) -> None:
        if self.fail_sign_out:
            raise AuthError("network down")
        self.signed_out.append(access_token)

    def oauth_url(self, provider: str, redirect_to: str) -> str:
        return f"https://auth.example.com/authorize?provider={provider}"


class FakeInference:
    """Inference client returning a canned reply and recording calls."""

    def __init__(self, reply: Optional[InferenceReply] = None, error: bool = False):
        self.reply = reply or InferenceReply(content="Hello there")
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def complete(
        self, api_key: str, model: str, messages: Sequence[Message]
    ) -> InferenceReply:
        self.calls.append({"api_key": api_key, "model": model, "messages": list(messages)})
        if self.error:
            raise InferenceError("API error: 500")
        return self.reply


class CountingRepository(InMemoryRepository):
    """In-memory repository that counts increment procedure calls."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.increment_calls = 0

    async def increment_message_usage(self, user_id: str, *, token: str) -> bool:
        self.increment_calls += 1
        return await super().increment_message_usage(user_id, token=token)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def repository(clock):
    return CountingRepository(clock=clock)


@pytest.fixture
def principal():
    return make_principal()


@pytest.fixture
def store():
    return LocalStore()


@pytest.fixture
def provider():
    return FakeIdentityProvider()
