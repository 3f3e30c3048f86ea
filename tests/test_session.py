"""Tests for the session store and the hosted auth provider."""

import asyncio
import json
import time

import httpx
import pytest

from webai_chat.services.session import (
    SESSION_KEY,
    AuthError,
    GoTrueProvider,
    SessionEvent,
    SessionStore,
    principal_from_token_response,
)
from webai_chat.storage import LocalStore

from conftest import FakeIdentityProvider, make_principal


def record_events(session):
    events = []
    session.subscribe(lambda event, principal: events.append((event, principal)))
    return events


@pytest.mark.asyncio
async def test_sign_up_signs_in_directly(provider, store):
    session = SessionStore(provider, store)
    events = record_events(session)

    principal = await session.sign_up("ada@example.com", "secret")

    assert session.principal == principal
    assert events == [(SessionEvent.SIGNED_IN, principal)]
    assert store.get(SESSION_KEY)["user"]["id"] == principal.id


@pytest.mark.asyncio
async def test_sign_up_pending_confirmation(store):
    session = SessionStore(FakeIdentityProvider(confirm_email=True), store)
    assert await session.sign_up("ada@example.com", "secret") is None
    assert session.principal is None


@pytest.mark.asyncio
async def test_sign_in_error_is_verbatim(provider, store):
    session = SessionStore(provider, store)
    with pytest.raises(AuthError, match="Invalid login credentials"):
        await session.sign_in("nobody@example.com", "wrong")
    assert session.principal is None


@pytest.mark.asyncio
async def test_sign_out_is_immediate_and_swallows_remote_failure(provider, store):
    session = SessionStore(provider, store)
    await session.sign_up("ada@example.com", "secret")
    generation = session.generation
    events = record_events(session)
    provider.fail_sign_out = True

    await session.sign_out()

    assert session.principal is None
    assert not session.is_current(generation)
    assert store.get(SESSION_KEY) is None
    assert events == [(SessionEvent.SIGNED_OUT, None)]
    # Let the detached remote logout run; its failure must not escape.
    await asyncio.sleep(0.01)


def test_restore_cached_presents_valid_session(provider, store):
    principal = make_principal()
    store.set(SESSION_KEY, principal.to_cache())
    session = SessionStore(provider, store)
    events = record_events(session)

    assert session.restore_cached() == principal
    assert session.loading is False
    assert events == [(SessionEvent.INITIAL_SESSION, principal)]


def test_restore_cached_drops_expired_session_without_refresh_token(provider, store):
    store.set(SESSION_KEY, make_principal(expires_in=-60, refresh_token=None).to_cache())
    session = SessionStore(provider, store)

    assert session.restore_cached() is None
    assert session.loading is False
    assert store.get(SESSION_KEY) is None


def test_restore_cached_ignores_corrupt_blob(provider, store):
    store.set(SESSION_KEY, {"access_token": "x"})
    session = SessionStore(provider, store)
    assert session.restore_cached() is None
    assert store.get(SESSION_KEY) is None


@pytest.mark.asyncio
async def test_expired_session_is_refreshed_on_revalidate(provider, store):
    store.set(SESSION_KEY, make_principal(expires_in=-60).to_cache())
    session = SessionStore(provider, store)
    events = record_events(session)

    assert session.restore_cached() is None
    assert session.loading is True
    refreshed = await session.revalidate()

    assert refreshed.refresh_token == "refresh-2"
    assert session.principal == refreshed
    assert events == [(SessionEvent.SIGNED_IN, refreshed)]


@pytest.mark.asyncio
async def test_sign_out_during_startup_refresh_stays_signed_out(store):
    """A refresh that completes after sign-out must not sign the user back in."""
    gate = asyncio.Event()

    class SlowRefreshProvider(FakeIdentityProvider):
        async def refresh(self, refresh_token):
            await gate.wait()
            return await super().refresh(refresh_token)

    store.set(SESSION_KEY, make_principal(expires_in=-60).to_cache())
    session = SessionStore(SlowRefreshProvider(), store)
    session.restore_cached()
    events = record_events(session)

    refresh = asyncio.create_task(session.revalidate())
    await asyncio.sleep(0)
    await session.sign_out()
    gate.set()

    assert await refresh is None
    assert session.principal is None
    assert store.get(SESSION_KEY) is None
    assert events == [(SessionEvent.SIGNED_OUT, None)]


@pytest.mark.asyncio
async def test_failed_revalidation_keeps_unexpired_session(provider, store):
    principal = make_principal()
    store.set(SESSION_KEY, principal.to_cache())
    provider.fail_get_user = True
    session = SessionStore(provider, store)
    session.restore_cached()

    assert await session.revalidate() == principal
    assert session.principal == principal


@pytest.mark.asyncio
async def test_revalidation_is_bounded_by_timeout(store):
    class HangingProvider(FakeIdentityProvider):
        async def get_user(self, access_token):
            await asyncio.sleep(10)

    principal = make_principal()
    store.set(SESSION_KEY, principal.to_cache())
    session = SessionStore(HangingProvider(), store, init_timeout=0.01)
    session.restore_cached()

    assert await session.revalidate() == principal


@pytest.mark.asyncio
async def test_refresh_emits_token_refreshed_without_new_generation(provider, store):
    session = SessionStore(provider, store)
    await session.sign_up("ada@example.com", "secret")
    generation = session.generation
    events = record_events(session)

    refreshed = await session.refresh()

    assert session.is_current(generation)
    assert events == [(SessionEvent.TOKEN_REFRESHED, refreshed)]


@pytest.mark.asyncio
async def test_complete_oauth_adopts_tokens(provider, store):
    session = SessionStore(provider, store, clock=lambda: 1000.0)
    principal = await session.complete_oauth("token-user-9", "r", expires_in=60)

    assert principal.id == "user-9"
    assert principal.expires_at == 1060
    assert session.sign_in_with_oauth("google").endswith("provider=google")


def test_principal_from_token_response_uses_expires_in():
    principal = principal_from_token_response(
        {"access_token": "a", "expires_in": 120, "user": {"id": "u", "email": "e@x.io"}},
        now=500.0,
    )
    assert principal.expires_at == 620
    assert principal.email == "e@x.io"


def gotrue(handler):
    return GoTrueProvider(
        "https://proj.supabase.co", "anon", httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


@pytest.mark.asyncio
async def test_gotrue_password_sign_in():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["apikey"] = request.headers["apikey"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "access_token": "at",
                "refresh_token": "rt",
                "expires_at": int(time.time()) + 3600,
                "user": {"id": "u1", "email": "ada@example.com"},
            },
        )

    principal = await gotrue(handler).sign_in_with_password("ada@example.com", "pw")

    assert seen["url"] == "https://proj.supabase.co/auth/v1/token?grant_type=password"
    assert seen["apikey"] == "anon"
    assert seen["body"] == {"email": "ada@example.com", "password": "pw"}
    assert principal.id == "u1"
    assert principal.refresh_token == "rt"


@pytest.mark.asyncio
async def test_gotrue_error_message_is_surfaced():
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Email not confirmed"})

    with pytest.raises(AuthError, match="Email not confirmed"):
        await gotrue(handler).sign_in_with_password("ada@example.com", "pw")


@pytest.mark.asyncio
async def test_gotrue_sign_up_pending_confirmation():
    def handler(request):
        return httpx.Response(200, json={"id": "u1", "email": "ada@example.com"})

    assert await gotrue(handler).sign_up("ada@example.com", "pw", "http://localhost:8000/") is None


def test_gotrue_oauth_url():
    provider = GoTrueProvider("https://proj.supabase.co/", "anon", httpx.AsyncClient())
    url = provider.oauth_url("github", "http://localhost:8000/")
    assert url.startswith("https://proj.supabase.co/auth/v1/authorize?provider=github")
    assert "redirect_to=http%3A%2F%2Flocalhost%3A8000%2F" in url


def test_cached_session_round_trips_through_file(tmp_path, provider):
    path = tmp_path / "state.json"
    principal = make_principal()
    LocalStore(path).set(SESSION_KEY, principal.to_cache())

    session = SessionStore(provider, LocalStore(path))
    assert session.restore_cached() == principal
