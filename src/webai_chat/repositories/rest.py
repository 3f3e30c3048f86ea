"""Repository backed by the hosted database's auto-generated REST layer."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..domain.models import Conversation, Message, Tier, UserProfile
from .base import PersistenceError, Repository

logger = structlog.get_logger()


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in fields.items()
    }


class RestRepository(Repository):
    """PostgREST client scoped by the caller's bearer token.

    The anon key identifies the project; the user's access token is what
    row-level security evaluates, so a service-wide key is never sent.
    """

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/rest/v1"
        self.anon_key = anon_key
        self._http = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        try:
            response = await self._http.request(
                method,
                f"{self.base_url}/{path}",
                params=params,
                json=json,
                headers=self._headers(token),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("rest_request_failed", method=method, path=path, error=str(e))
            raise PersistenceError(f"{method} {path} failed: {e}") from e
        if not response.content:
            return None
        return response.json()

    async def get_profile(self, user_id: str, *, token: str) -> Optional[UserProfile]:
        rows = await self._request(
            "GET", "user_profiles", token=token, params={"id": f"eq.{user_id}", "select": "*"}
        )
        return UserProfile.model_validate(rows[0]) if rows else None

    async def get_profile_by_email(self, email: str, *, token: str) -> Optional[UserProfile]:
        rows = await self._request(
            "GET", "user_profiles", token=token, params={"email": f"eq.{email}", "select": "*"}
        )
        return UserProfile.model_validate(rows[0]) if rows else None

    async def create_profile(self, profile: UserProfile, *, token: str) -> UserProfile:
        body = profile.model_dump(
            mode="json",
            include={"id", "email", "tier", "messages_used_today", "last_usage_reset"},
        )
        rows = await self._request("POST", "user_profiles", token=token, json=body)
        return UserProfile.model_validate(rows[0]) if rows else profile

    async def update_profile(
        self, user_id: str, fields: Dict[str, Any], *, token: str
    ) -> Optional[UserProfile]:
        rows = await self._request(
            "PATCH",
            "user_profiles",
            token=token,
            params={"id": f"eq.{user_id}"},
            json=_jsonable(fields),
        )
        return UserProfile.model_validate(rows[0]) if rows else None

    async def increment_message_usage(self, user_id: str, *, token: str) -> bool:
        result = await self._request(
            "POST", "rpc/increment_message_usage", token=token, json={"user_uuid": user_id}
        )
        return bool(result)

    async def update_user_tier(
        self,
        user_id: str,
        tier: Tier,
        *,
        token: str,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> None:
        await self._request(
            "POST",
            "rpc/update_user_tier",
            token=token,
            json={
                "user_uuid": user_id,
                "new_tier": tier.value,
                "customer_id": customer_id,
                "subscription_id": subscription_id,
            },
        )

    async def list_conversations(
        self, user_id: str, *, token: str, limit: int = 100, offset: int = 0
    ) -> List[Conversation]:
        rows = await self._request(
            "GET",
            "conversations",
            token=token,
            params={
                "user_id": f"eq.{user_id}",
                "select": "*",
                "order": "updated_at.desc",
                "limit": limit,
                "offset": offset,
            },
        )
        return [Conversation.model_validate(row) for row in rows or []]

    async def create_conversation(
        self, user_id: str, title: str, model_id: Optional[str], *, token: str
    ) -> Conversation:
        rows = await self._request(
            "POST",
            "conversations",
            token=token,
            json={"user_id": user_id, "title": title, "model_id": model_id},
        )
        if not rows:
            raise PersistenceError("Conversation insert returned no row")
        return Conversation.model_validate(rows[0])

    async def update_conversation(
        self, conversation_id: str, fields: Dict[str, Any], *, token: str
    ) -> None:
        await self._request(
            "PATCH",
            "conversations",
            token=token,
            params={"id": f"eq.{conversation_id}"},
            json=_jsonable(fields),
        )

    async def delete_conversation(self, conversation_id: str, *, token: str) -> bool:
        rows = await self._request(
            "DELETE", "conversations", token=token, params={"id": f"eq.{conversation_id}"}
        )
        return bool(rows)

    async def add_message(self, message: Message, *, token: str) -> Message:
        # The messages table stores text only; attachments, reasoning and
        # generated images stay in the local copy.
        body = message.model_dump(
            mode="json", include={"id", "conversation_id", "role", "content", "created_at"}
        )
        rows = await self._request("POST", "messages", token=token, json=body)
        return Message.model_validate(rows[0]) if rows else message

    async def get_messages(
        self, conversation_id: str, *, token: str, limit: int = 1000, offset: int = 0
    ) -> List[Message]:
        rows = await self._request(
            "GET",
            "messages",
            token=token,
            params={
                "conversation_id": f"eq.{conversation_id}",
                "select": "*",
                "order": "created_at.asc",
                "limit": limit,
                "offset": offset,
            },
        )
        return [Message.model_validate(row) for row in rows or []]
