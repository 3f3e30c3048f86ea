"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import Conversation, Message, Tier, UserProfile

ProfileCallback = Callable[[UserProfile], None]


class PersistenceError(Exception):
    """Raised when a remote read or write against the data service fails."""


class Repository(ABC):
    """Abstract base class for repositories.

    Every call carries the caller's bearer token; row-level access control on
    the data service is keyed on it.
    """

    @abstractmethod
    async def get_profile(self, user_id: str, *, token: str) -> Optional[UserProfile]:
        """Retrieve a profile by user ID."""
        pass

    @abstractmethod
    async def get_profile_by_email(self, email: str, *, token: str) -> Optional[UserProfile]:
        """Retrieve a profile by email address."""
        pass

    @abstractmethod
    async def create_profile(self, profile: UserProfile, *, token: str) -> UserProfile:
        """Insert a new profile."""
        pass

    @abstractmethod
    async def update_profile(
        self, user_id: str, fields: Dict[str, Any], *, token: str
    ) -> Optional[UserProfile]:
        """Update profile columns, returning the stored row."""
        pass

    @abstractmethod
    async def increment_message_usage(self, user_id: str, *, token: str) -> bool:
        """Run the server-side increment-with-check procedure."""
        pass

    @abstractmethod
    async def update_user_tier(
        self,
        user_id: str,
        tier: Tier,
        *,
        token: str,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> None:
        """Run the tier-update procedure used by the billing webhook."""
        pass

    @abstractmethod
    async def list_conversations(
        self, user_id: str, *, token: str, limit: int = 100, offset: int = 0
    ) -> List[Conversation]:
        """List a user's conversations, most recently updated first."""
        pass

    @abstractmethod
    async def create_conversation(
        self, user_id: str, title: str, model_id: Optional[str], *, token: str
    ) -> Conversation:
        """Create a new conversation."""
        pass

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, fields: Dict[str, Any], *, token: str
    ) -> None:
        """Update conversation columns."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str, *, token: str) -> bool:
        """Delete a conversation and its messages."""
        pass

    @abstractmethod
    async def add_message(self, message: Message, *, token: str) -> Message:
        """Add a message to a conversation."""
        pass

    @abstractmethod
    async def get_messages(
        self, conversation_id: str, *, token: str, limit: int = 1000, offset: int = 0
    ) -> List[Message]:
        """Get messages for a conversation in creation order."""
        pass

    def subscribe_profile(self, user_id: str, callback: ProfileCallback) -> Callable[[], None]:
        """Register for pushed profile updates. Returns an unsubscribe callable.

        Repositories without a push channel return a no-op; callers poll instead.
        """
        return lambda: None
