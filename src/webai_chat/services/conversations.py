"""Conversation store with local-first writes.

Local state is updated first and returned to the caller; remote persistence
runs on a per-conversation ordered background queue. A conversation started
locally has a tentative ``local-...`` id until the data service assigns one;
``_rewrite_id`` is the only place that moves references over.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set
from uuid import uuid4

import structlog

from ..domain.models import (
    DEFAULT_TITLE,
    Conversation,
    ImageAttachment,
    Message,
    Principal,
    Role,
    utcnow,
)
from ..repositories.base import PersistenceError, Repository
from ..storage import LocalStore
from .background import BackgroundWriter

logger = structlog.get_logger()

TITLE_LIMIT = 30
LOCAL_PREFIX = "local-"
CURRENT_CHAT_KEY = "current_chat"


def derive_title(content: str) -> str:
    """Conversation title from its first message."""
    if not content.strip():
        return DEFAULT_TITLE
    if len(content) > TITLE_LIMIT:
        return content[:TITLE_LIMIT] + "..."
    return content


class ConversationNotFound(KeyError):
    pass


@dataclass(eq=False)
class ConversationKey:
    """Two-state conversation id: tentative local id, then the remote id."""

    local_id: str
    remote_id: Optional[str] = None
    unsynced: List[Message] = field(default_factory=list)
    title_dirty: bool = False
    deleted: bool = False

    @property
    def current(self) -> str:
        return self.remote_id or self.local_id

    @property
    def tentative(self) -> bool:
        return self.remote_id is None


class ConversationStore:
    """Conversations and messages for the bound principal."""

    def __init__(
        self,
        repository: Repository,
        writer: Optional[BackgroundWriter] = None,
        storage: Optional[LocalStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._writer = writer or BackgroundWriter()
        self._storage = storage
        self._clock = clock
        self._principal: Optional[Principal] = None
        self._conversations: Dict[str, Conversation] = {}
        self._keys: Dict[str, ConversationKey] = {}
        self._loaded: Set[str] = set()
        self._active_id: Optional[str] = None

    @property
    def active_id(self) -> Optional[str]:
        """Conversation shown in the chat view; persisted across restarts."""
        return self._active_id

    @active_id.setter
    def active_id(self, value: Optional[str]) -> None:
        if value == self._active_id:
            return
        self._active_id = value
        if self._storage is None:
            return
        if value is None or value.startswith(LOCAL_PREFIX):
            self._storage.remove(CURRENT_CHAT_KEY)
        else:
            self._storage.set(CURRENT_CHAT_KEY, value)

    def bind(self, principal: Principal) -> None:
        if self._principal is not None and self._principal.id != principal.id:
            self.reset()
        self._principal = principal

    def reset(self) -> None:
        """Forget everything local. Queued writes still run with the token they captured."""
        self._principal = None
        self._conversations.clear()
        self._keys.clear()
        self._loaded.clear()
        self.active_id = None

    def _require_principal(self) -> Principal:
        if self._principal is None:
            raise PermissionError("No signed-in user")
        return self._principal

    def _key(self, conversation_id: str) -> ConversationKey:
        key = self._keys.get(conversation_id)
        if key is None or key.local_id not in self._conversations:
            raise ConversationNotFound(conversation_id)
        return key

    def _register(self, conversation: Conversation, key: ConversationKey) -> None:
        self._conversations[key.local_id] = conversation
        self._keys[key.local_id] = key
        if key.remote_id:
            self._keys[key.remote_id] = key

    def get(self, conversation_id: str) -> Optional[Conversation]:
        key = self._keys.get(conversation_id)
        return self._conversations.get(key.local_id) if key else None

    def is_tentative(self, conversation_id: str) -> bool:
        return self._key(conversation_id).tentative

    def select(self, conversation_id: Optional[str]) -> None:
        self.active_id = self._key(conversation_id).current if conversation_id else None

    def local_conversations(self) -> List[Conversation]:
        """Local view, most recently updated first."""
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    async def list_conversations(self, limit: int = 100) -> List[Conversation]:
        """Merge remote conversations into the local view and return it."""
        principal = self._require_principal()
        try:
            remote = await self._repository.list_conversations(
                principal.id, token=principal.access_token, limit=limit
            )
        except PersistenceError as e:
            logger.error("list_conversations_failed", user_id=principal.id, error=str(e))
            remote = []
        for conversation in remote:
            if conversation.id in self._keys:
                continue
            conversation.messages = []
            self._register(
                conversation, ConversationKey(local_id=conversation.id, remote_id=conversation.id)
            )
        if self._active_id is None and self._storage is not None:
            saved = self._storage.get(CURRENT_CHAT_KEY)
            if saved in self._keys:
                self._active_id = self._keys[saved].current
        return self.local_conversations()[:limit]

    async def load_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation in creation order."""
        key = self._key(conversation_id)
        conversation = self._conversations[key.local_id]
        if not key.tentative and key.local_id not in self._loaded:
            principal = self._require_principal()
            try:
                remote = await self._repository.get_messages(
                    key.remote_id, token=principal.access_token
                )
            except PersistenceError as e:
                logger.error("load_messages_failed", conversation_id=key.current, error=str(e))
            else:
                known = {m.id for m in remote}
                local_only = [m for m in conversation.messages if m.id not in known]
                conversation.messages = remote + local_only
                self._loaded.add(key.local_id)
        conversation.messages.sort(key=lambda m: m.created_at)
        return list(conversation.messages)

    async def create_conversation(
        self, title: str = DEFAULT_TITLE, model_id: Optional[str] = None
    ) -> Conversation:
        """Create a conversation remotely and track it."""
        principal = self._require_principal()
        conversation = await self._repository.create_conversation(
            principal.id, title, model_id, token=principal.access_token
        )
        conversation.messages = []
        self._register(
            conversation, ConversationKey(local_id=conversation.id, remote_id=conversation.id)
        )
        self._loaded.add(conversation.id)
        logger.info("conversation_created", conversation_id=conversation.id)
        return conversation

    def start_conversation(
        self, model_id: Optional[str] = None, title: str = DEFAULT_TITLE
    ) -> Conversation:
        """Materialize a tentative conversation locally and make it active."""
        principal = self._require_principal()
        now = self._clock()
        key = ConversationKey(local_id=f"{LOCAL_PREFIX}{uuid4()}")
        conversation = Conversation(
            id=key.local_id,
            user_id=principal.id,
            title=title,
            model_id=model_id,
            created_at=now,
            updated_at=now,
        )
        self._register(conversation, key)
        self.active_id = key.local_id
        logger.info("conversation_started_locally", conversation_id=key.local_id)
        return conversation

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        key = self._key(conversation_id)
        conversation = self._conversations[key.local_id]
        conversation.title = title
        key.title_dirty = True
        self._schedule_sync(key)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove locally at once, then delete remotely (messages cascade)."""
        principal = self._require_principal()
        key = self._key(conversation_id)
        key.deleted = True
        self._conversations.pop(key.local_id, None)
        self._loaded.discard(key.local_id)
        if self.active_id in (key.local_id, key.remote_id):
            remaining = self.local_conversations()
            self.active_id = remaining[0].id if remaining else None

        if key.tentative:
            self._forget(key)
            return True
        try:
            deleted = await self._repository.delete_conversation(
                key.remote_id, token=principal.access_token
            )
        except PersistenceError as e:
            logger.error("delete_conversation_failed", conversation_id=key.remote_id, error=str(e))
            return False
        finally:
            # A failed delete lets the next listing bring the conversation back.
            self._forget(key)
        logger.info("conversation_deleted", conversation_id=key.remote_id)
        return deleted

    def _forget(self, key: ConversationKey) -> None:
        for conversation_id in (key.local_id, key.remote_id):
            if self._keys.get(conversation_id) is key:
                del self._keys[conversation_id]

    def append_message(
        self,
        conversation_id: Optional[str],
        role: Role,
        content: str,
        *,
        attachments: Optional[List[ImageAttachment]] = None,
        reasoning: Optional[str] = None,
        images: Optional[List[str]] = None,
        model_id: Optional[str] = None,
    ) -> Message:
        """Add a message locally and queue its persistence.

        With no ``conversation_id`` a tentative conversation is started first.
        """
        if conversation_id is None:
            conversation_id = self.start_conversation(model_id).id
        key = self._key(conversation_id)
        conversation = self._conversations[key.local_id]

        message = Message(
            conversation_id=key.current,
            role=role,
            content=content,
            attachments=attachments or [],
            reasoning=reasoning,
            images=images or [],
            created_at=self._clock(),
        )
        conversation.messages.append(message)
        conversation.updated_at = message.created_at
        # An unloaded remote thread may hold earlier messages that are not here.
        history_known = key.tentative or key.local_id in self._loaded
        if conversation.title == DEFAULT_TITLE and history_known:
            title = derive_title(conversation.messages[0].content)
            if title != DEFAULT_TITLE:
                conversation.title = title
                key.title_dirty = True

        key.unsynced.append(message)
        self.active_id = key.current
        self._schedule_sync(key)
        return message

    def _schedule_sync(self, key: ConversationKey) -> None:
        principal = self._require_principal()
        conversation = self._conversations[key.local_id]
        self._writer.submit(
            key.local_id,
            lambda: self._sync(key, conversation, principal),
            event="conversation_sync",
        )

    async def _sync(
        self, key: ConversationKey, conversation: Conversation, principal: Principal
    ) -> None:
        if key.deleted:
            return
        token = principal.access_token

        if key.tentative:
            created = await self._repository.create_conversation(
                principal.id, conversation.title, conversation.model_id, token=token
            )
            if key.deleted:
                # Deleted locally while the create was in flight.
                await self._repository.delete_conversation(created.id, token=token)
                return
            key.title_dirty = created.title != conversation.title
            self._rewrite_id(key, created.id, conversation)

        if key.title_dirty:
            key.title_dirty = False
            try:
                await self._repository.update_conversation(
                    key.remote_id, {"title": conversation.title}, token=token
                )
            except PersistenceError:
                key.title_dirty = True
                raise

        while key.unsynced:
            await self._repository.add_message(key.unsynced[0], token=token)
            key.unsynced.pop(0)

    def _rewrite_id(
        self, key: ConversationKey, remote_id: str, conversation: Conversation
    ) -> None:
        """Move every reference from the tentative id to ``remote_id``."""
        old_id = key.current
        key.remote_id = remote_id
        if key.local_id in self._conversations:
            self._keys[remote_id] = key
            self._loaded.add(key.local_id)
        conversation.id = remote_id
        for message in conversation.messages:
            message.conversation_id = remote_id
        for message in key.unsynced:
            message.conversation_id = remote_id
        if self.active_id == old_id:
            self.active_id = remote_id
        logger.info("conversation_id_resolved", local_id=key.local_id, remote_id=remote_id)

    async def flush(self) -> None:
        """Wait for queued persistence to finish."""
        await self._writer.flush()
