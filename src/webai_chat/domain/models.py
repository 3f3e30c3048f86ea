"""Domain models for the chat application."""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Chat"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Subscription tier."""

    FREE = "free"
    PRO = "pro"


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Principal(BaseModel):
    """Authenticated user as issued by the identity provider."""

    id: str
    email: str = ""
    access_token: str
    expires_at: int  # epoch seconds
    refresh_token: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at

    def to_cache(self) -> Dict[str, Any]:
        """Serialize to the cached session mapping."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user": {"id": self.id, "email": self.email},
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "Principal":
        user = data.get("user") or {}
        return cls(
            id=user["id"],
            email=user.get("email") or "",
            access_token=data["access_token"],
            expires_at=int(data["expires_at"]),
            refresh_token=data.get("refresh_token"),
        )


class UserProfile(BaseModel):
    """Per-user tier and usage record."""

    id: str
    email: str = ""
    tier: Tier = Tier.FREE
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    messages_used_today: int = Field(default=0, ge=0)
    last_usage_reset: Optional[datetime] = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ImageAttachment(BaseModel):
    """User supplied image, inlined as a data URL."""

    url: str
    name: Optional[str] = None


class Message(BaseModel):
    """Message model."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    conversation_id: str
    role: Role = Role.USER
    content: str
    attachments: List[ImageAttachment] = []
    reasoning: Optional[str] = None
    images: List[str] = []
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """Conversation model."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    title: str = DEFAULT_TITLE
    model_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    messages: List[Message] = []
