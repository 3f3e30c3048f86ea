"""Profile and quota service.

The profile cache has a single writer, ``offer``. Fetches and pushed updates
both go through it: a result is dropped when the session it was fetched for is
gone, or when it is older (by ``updated_at``) than what is already cached.
"""

import asyncio
import math
from datetime import date, datetime, timezone
from typing import Callable, Optional, Union

import structlog

from ..domain.models import Principal, Tier, UserProfile, utcnow
from ..repositories.base import PersistenceError, Repository
from ..storage import LocalStore
from .session import SessionStore
from .tier_policy import UNLIMITED, daily_allowance

logger = structlog.get_logger()

PROFILE_KEY = "profile"

Remaining = Union[int, float]


def _utc_date(value: datetime) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


def needs_reset(profile: UserProfile, now: datetime) -> bool:
    """True when the usage counter was last reset on an earlier UTC day."""
    if profile.last_usage_reset is None:
        return True
    return _utc_date(profile.last_usage_reset) != _utc_date(now)


def derive_remaining(profile: UserProfile, now: datetime) -> Remaining:
    """Remaining messages for ``profile`` without touching storage."""
    if profile.tier == Tier.PRO:
        return UNLIMITED
    allowance = daily_allowance(profile.tier)
    if needs_reset(profile, now):
        return allowance
    return max(0, allowance - profile.messages_used_today)


class ProfileService:
    """Loads profiles, computes remaining quota and consumes it."""

    def __init__(
        self,
        repository: Repository,
        session: Optional[SessionStore] = None,
        storage: Optional[LocalStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._session = session
        self._storage = storage
        self._clock = clock
        self._profile: Optional[UserProfile] = None
        self._remaining: Remaining = 0
        self._load_lock = asyncio.Lock()

    @property
    def profile(self) -> Optional[UserProfile]:
        return self._profile

    @property
    def tier(self) -> Tier:
        return self._profile.tier if self._profile else Tier.FREE

    @property
    def remaining(self) -> Remaining:
        """Last known remaining messages."""
        return self._remaining

    def _generation(self) -> Optional[int]:
        return self._session.generation if self._session else None

    def _is_stale(self, generation: Optional[int]) -> bool:
        return (
            generation is not None
            and self._session is not None
            and not self._session.is_current(generation)
        )

    def offer(self, profile: UserProfile, generation: Optional[int] = None) -> bool:
        """Apply ``profile`` to the cache unless it is stale. Returns True if applied."""
        if self._is_stale(generation):
            logger.info("stale_profile_ignored", user_id=profile.id)
            return False
        current = self._profile
        if current is not None and current.id == profile.id and profile.updated_at < current.updated_at:
            logger.info("outdated_profile_ignored", user_id=profile.id)
            return False
        self._profile = profile
        self._remaining = derive_remaining(profile, self._clock())
        if self._storage is not None:
            self._storage.set(PROFILE_KEY, profile.model_dump(mode="json"))
        return True

    def apply_remote_update(self, profile: UserProfile) -> bool:
        """Entry point for pushed profile changes, such as a tier upgrade."""
        if self._profile is not None and self._profile.id != profile.id:
            return False
        applied = self.offer(profile)
        if applied:
            logger.info(
                "profile_updated_remotely", user_id=profile.id, tier=profile.tier.value
            )
        return applied

    def restore_cached(self, user_id: str) -> Optional[UserProfile]:
        """Show the cached profile blob for ``user_id`` before any fetch completes."""
        if self._storage is None:
            return None
        data = self._storage.get(PROFILE_KEY)
        if not data or data.get("id") != user_id:
            return None
        try:
            profile = UserProfile.model_validate(data)
        except ValueError as e:
            logger.warning("cached_profile_invalid", error=str(e))
            return None
        self.offer(profile)
        return profile

    def clear(self) -> None:
        self._profile = None
        self._remaining = 0
        if self._storage is not None:
            self._storage.remove(PROFILE_KEY)

    async def get_or_create_profile(self, principal: Principal) -> UserProfile:
        """Look up by id, then by email; create a free profile if neither exists."""
        generation = self._generation()
        token = principal.access_token
        async with self._load_lock:
            profile = await self._repository.get_profile(principal.id, token=token)
            if profile is None and principal.email:
                profile = await self._repository.get_profile_by_email(principal.email, token=token)
                if profile is not None:
                    logger.info("profile_matched_by_email", user_id=principal.id, profile_id=profile.id)
            if profile is None:
                now = self._clock()
                draft = UserProfile(
                    id=principal.id,
                    email=principal.email,
                    tier=Tier.FREE,
                    messages_used_today=0,
                    last_usage_reset=now,
                    created_at=now,
                    updated_at=now,
                )
                try:
                    profile = await self._repository.create_profile(draft, token=token)
                    logger.info("profile_created", user_id=principal.id)
                except PersistenceError:
                    profile = await self._repository.get_profile(principal.id, token=token)
                    if profile is None:
                        raise
        self.offer(profile, generation)
        return profile

    async def refresh(self, principal: Principal) -> Optional[UserProfile]:
        """Re-read the profile and offer it to the cache."""
        generation = self._generation()
        profile = await self._repository.get_profile(principal.id, token=principal.access_token)
        if profile is not None:
            self.offer(profile, generation)
        return profile

    async def remaining_messages(self, principal: Principal) -> Remaining:
        """Remaining messages today, resetting a stale counter as a side effect."""
        generation = self._generation()
        token = principal.access_token
        try:
            profile = await self._repository.get_profile(principal.id, token=token)
        except PersistenceError as e:
            logger.warning("remaining_messages_read_failed", user_id=principal.id, error=str(e))
            return self._remaining if self._profile is not None else 0

        if profile is None:
            return 0
        if profile.tier == Tier.PRO:
            self.offer(profile, generation)
            return UNLIMITED

        now = self._clock()
        if needs_reset(profile, now):
            reset = {"messages_used_today": 0, "last_usage_reset": now}
            try:
                stored = await self._repository.update_profile(principal.id, reset, token=token)
            except PersistenceError as e:
                logger.error("usage_reset_failed", user_id=principal.id, error=str(e))
                stored = None
            profile = stored or profile.model_copy(update=reset)
            logger.info("daily_usage_reset", user_id=principal.id)

        remaining = max(0, daily_allowance(profile.tier) - profile.messages_used_today)
        self.offer(profile, generation)
        return remaining

    async def increment_usage(self, principal: Principal) -> bool:
        """Consume one message. False, with nothing changed, when none remain."""
        remaining = await self.remaining_messages(principal)
        if remaining <= 0:
            logger.info("usage_limit_reached", user_id=principal.id)
            return False
        if math.isinf(remaining):
            return True

        generation = self._generation()
        token = principal.access_token
        try:
            incremented = await self._repository.increment_message_usage(principal.id, token=token)
        except PersistenceError as e:
            logger.warning("increment_procedure_failed", user_id=principal.id, error=str(e))
            current = await self._repository.get_profile(principal.id, token=token)
            if current is None:
                return False
            await self._repository.update_profile(
                principal.id,
                {
                    "messages_used_today": current.messages_used_today + 1,
                    "last_usage_reset": self._clock(),
                },
                token=token,
            )
            incremented = True

        if not incremented:
            return False
        if self._profile is not None and self._profile.id == principal.id and not self._is_stale(generation):
            self._profile = self._profile.model_copy(
                update={"messages_used_today": self._profile.messages_used_today + 1}
            )
            self._remaining = max(0, remaining - 1)
        return True

    async def consume_message(self, principal: Principal) -> bool:
        """Spend one unit of quota for a send."""
        if self.tier == Tier.PRO:
            return True
        if self._profile is not None and self._remaining <= 0:
            return False
        return await self.increment_usage(principal)


class ProfileWatcher:
    """Polls the signed-in user's profile so remote tier changes show up."""

    def __init__(self, profiles: ProfileService, session: SessionStore, interval: float = 60.0) -> None:
        self.profiles = profiles
        self.session = session
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                principal = self.session.principal
                if principal is not None:
                    await self.profiles.refresh(principal)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("profile_poll_error", error=str(e))
