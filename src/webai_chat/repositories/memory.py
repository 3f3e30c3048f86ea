"""In-memory repository implementation."""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..domain.models import Conversation, Message, Tier, UserProfile, utcnow
from ..services.tier_policy import FREE_DAILY_MESSAGES
from .base import PersistenceError, ProfileCallback, Repository

logger = structlog.get_logger()


class InMemoryRepository(Repository):
    """In-memory stand-in for the hosted data service.

    Mirrors the server-side semantics the client relies on: cascading
    conversation deletes, the conversation timestamp trigger, and the
    increment and tier-update procedures.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        """Initialize the repository storage."""
        self._clock = clock
        self._profiles: Dict[str, UserProfile] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._subscribers: Dict[str, List[ProfileCallback]] = defaultdict(list)
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized")

    async def get_profile(self, user_id: str, *, token: str) -> Optional[UserProfile]:
        """Retrieve a profile by user ID."""
        async with self._async_lock:
            profile = self._profiles.get(user_id)
            return profile.model_copy() if profile else None

    async def get_profile_by_email(self, email: str, *, token: str) -> Optional[UserProfile]:
        """Retrieve a profile by email address."""
        async with self._async_lock:
            for profile in self._profiles.values():
                if profile.email == email:
                    return profile.model_copy()
            return None

    async def create_profile(self, profile: UserProfile, *, token: str) -> UserProfile:
        """Insert a new profile."""
        async with self._async_lock:
            if profile.id in self._profiles:
                raise PersistenceError(f"Profile {profile.id} already exists")
            self._profiles[profile.id] = profile.model_copy()
            logger.info("profile_created", user_id=profile.id)
            return profile.model_copy()

    async def update_profile(
        self, user_id: str, fields: Dict[str, Any], *, token: str
    ) -> Optional[UserProfile]:
        """Update profile columns, returning the stored row."""
        async with self._async_lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return None
            updated = profile.model_copy(update=fields)
            self._profiles[user_id] = updated
            return updated.model_copy()

    async def increment_message_usage(self, user_id: str, *, token: str) -> bool:
        """Increment usage unless the free-tier limit is reached."""
        async with self._async_lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return False
            if profile.tier == Tier.PRO:
                return True
            if profile.messages_used_today >= FREE_DAILY_MESSAGES:
                return False
            self._profiles[user_id] = profile.model_copy(
                update={
                    "messages_used_today": profile.messages_used_today + 1,
                    "last_usage_reset": self._clock(),
                }
            )
            return True

    async def update_user_tier(
        self,
        user_id: str,
        tier: Tier,
        *,
        token: str,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> None:
        """Apply a tier change and push it to profile subscribers."""
        async with self._async_lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return
            updated = profile.model_copy(
                update={
                    "tier": tier,
                    "stripe_customer_id": customer_id or profile.stripe_customer_id,
                    "stripe_subscription_id": subscription_id or profile.stripe_subscription_id,
                    "updated_at": self._clock(),
                }
            )
            self._profiles[user_id] = updated
            callbacks = list(self._subscribers.get(user_id, []))
        logger.info("user_tier_updated", user_id=user_id, tier=tier.value)
        for callback in callbacks:
            callback(updated.model_copy())

    def subscribe_profile(self, user_id: str, callback: ProfileCallback) -> Callable[[], None]:
        self._subscribers[user_id].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers.get(user_id, []):
                self._subscribers[user_id].remove(callback)

        return unsubscribe

    async def list_conversations(
        self, user_id: str, *, token: str, limit: int = 100, offset: int = 0
    ) -> List[Conversation]:
        """List a user's conversations, most recently updated first."""
        async with self._async_lock:
            conversations = sorted(
                (c for c in self._conversations.values() if c.user_id == user_id),
                key=lambda c: c.updated_at,
                reverse=True,
            )
            return [c.model_copy() for c in conversations[offset : offset + limit]]

    async def create_conversation(
        self, user_id: str, title: str, model_id: Optional[str], *, token: str
    ) -> Conversation:
        """Create a new conversation."""
        now = self._clock()
        conversation = Conversation(
            user_id=user_id, title=title, model_id=model_id, created_at=now, updated_at=now
        )
        async with self._async_lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            logger.info("conversation_created", conversation_id=conversation.id)
        return conversation.model_copy()

    async def update_conversation(
        self, conversation_id: str, fields: Dict[str, Any], *, token: str
    ) -> None:
        """Update conversation columns."""
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise PersistenceError(f"Conversation {conversation_id} not found")
            self._conversations[conversation_id] = conversation.model_copy(
                update={**fields, "updated_at": self._clock()}
            )

    async def delete_conversation(self, conversation_id: str, *, token: str) -> bool:
        """Delete a conversation and its messages."""
        async with self._async_lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            self._messages.pop(conversation_id, None)
            logger.info("conversation_deleted", conversation_id=conversation_id)
            return True

    async def add_message(self, message: Message, *, token: str) -> Message:
        """Add a message to a conversation."""
        async with self._async_lock:
            conversation = self._conversations.get(message.conversation_id)
            if not conversation:
                logger.error(
                    "conversation_not_found_for_message",
                    conversation_id=message.conversation_id,
                )
                raise PersistenceError(f"Conversation {message.conversation_id} not found")

            stored = message.model_copy(deep=True)
            self._messages[message.conversation_id].append(stored)
            conversation.updated_at = self._clock()

            logger.info(
                "message_added",
                conversation_id=message.conversation_id,
                message_role=message.role.value,
            )
            return stored.model_copy(deep=True)

    async def get_messages(
        self, conversation_id: str, *, token: str, limit: int = 1000, offset: int = 0
    ) -> List[Message]:
        """Get messages for a conversation in creation order."""
        async with self._async_lock:
            messages = sorted(self._messages.get(conversation_id, []), key=lambda m: m.created_at)
            return [m.model_copy(deep=True) for m in messages[offset : offset + limit]]
