"""Chat orchestrator: gate a send, consume quota, call inference, record the result.

One send moves through IDLE -> VALIDATING -> (BLOCKED | SENDING) ->
(DELIVERED | FAILED) -> IDLE. Gating decisions are recorded in the thread as
synthesized assistant messages rather than raised.
"""

from enum import Enum
from typing import Callable, List, Optional

import structlog
from pydantic import BaseModel

from ..domain.models import ImageAttachment, Message, Principal, Role, Tier
from ..repositories.base import PersistenceError
from .conversations import ConversationStore
from .llm import InferenceClient, InferenceError, compose_reply
from .profiles import ProfileService
from .tier_policy import is_model_allowed

logger = structlog.get_logger()

MODEL_LOCKED_NOTICE = (
    '🔒 The model "{model}" is only available to Pro users. '
    "Please upgrade to Pro or select a free model in Settings."
)
LIMIT_REACHED_NOTICE = (
    "⚠️ You have reached your daily message limit. Upgrade to Pro for unlimited "
    "messages, or wait until tomorrow for your limit to reset."
)
NOT_SENT_NOTICE = "⚠️ Unable to send message. You may have reached your daily limit."
ERROR_NOTICE = (
    "Sorry, there was an error processing your request. "
    "Please check your API key and try again."
)


class SendState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"


class BlockReason(str, Enum):
    MODEL_LOCKED = "model_locked"
    LIMIT_REACHED = "limit_reached"
    NOT_CONSUMED = "not_consumed"
    NEED_CREDENTIAL = "need_credential"


class SendOutcome(BaseModel):
    """What one send did to the thread."""

    state: SendState
    conversation_id: Optional[str] = None
    messages: List[Message] = []
    reason: Optional[BlockReason] = None
    need_credential: bool = False


class CredentialResolver:
    """User-supplied inference key first, then the configured default."""

    def __init__(self, user_key: Callable[[], Optional[str]], default_key: Optional[str] = None):
        self._user_key = user_key
        self._default_key = default_key

    def resolve(self) -> Optional[str]:
        return self._user_key() or self._default_key or None


class ChatOrchestrator:
    """Runs sends for one client, one at a time."""

    def __init__(
        self,
        profiles: ProfileService,
        conversations: ConversationStore,
        inference: InferenceClient,
        credentials: CredentialResolver,
    ) -> None:
        self.profiles = profiles
        self.conversations = conversations
        self.inference = inference
        self.credentials = credentials
        self.state = SendState.IDLE

    def _transition(self, state: SendState) -> None:
        logger.debug("send_state", previous=self.state.value, state=state.value)
        self.state = state

    async def send(
        self,
        principal: Principal,
        content: str,
        model_id: str,
        conversation_id: Optional[str] = None,
        attachments: Optional[List[ImageAttachment]] = None,
    ) -> SendOutcome:
        """Validate and send one user message."""
        attachments = attachments or []
        if not content.strip() and not attachments:
            return SendOutcome(state=SendState.IDLE, conversation_id=conversation_id)
        if self.state is not SendState.IDLE:
            logger.warning("send_ignored_busy", state=self.state.value)
            return SendOutcome(state=SendState.IDLE, conversation_id=conversation_id)

        self._transition(SendState.VALIDATING)
        try:
            outcome = await self._send(principal, content, model_id, conversation_id, attachments)
        finally:
            self._transition(SendState.IDLE)
        logger.info(
            "send_finished",
            state=outcome.state.value,
            reason=outcome.reason.value if outcome.reason else None,
            model=model_id,
            conversation_id=outcome.conversation_id,
        )
        return outcome

    async def _send(
        self,
        principal: Principal,
        content: str,
        model_id: str,
        conversation_id: Optional[str],
        attachments: List[ImageAttachment],
    ) -> SendOutcome:
        tier = self.profiles.tier

        if not is_model_allowed(model_id, tier):
            return self._block(
                conversation_id, content, attachments, model_id,
                MODEL_LOCKED_NOTICE.format(model=model_id), BlockReason.MODEL_LOCKED,
            )

        if tier == Tier.FREE:
            remaining = await self.profiles.remaining_messages(principal)
            if remaining <= 0:
                return self._block(
                    conversation_id, content, attachments, model_id,
                    LIMIT_REACHED_NOTICE, BlockReason.LIMIT_REACHED,
                )

        api_key = self.credentials.resolve()
        if not api_key:
            self._transition(SendState.BLOCKED)
            return SendOutcome(
                state=SendState.BLOCKED,
                conversation_id=conversation_id,
                reason=BlockReason.NEED_CREDENTIAL,
                need_credential=True,
            )

        self._transition(SendState.SENDING)
        try:
            consumed = await self.profiles.consume_message(principal)
        except PersistenceError as e:
            logger.error("consume_message_failed", user_id=principal.id, error=str(e))
            consumed = False
        if not consumed:
            return self._block(
                conversation_id, content, attachments, model_id,
                NOT_SENT_NOTICE, BlockReason.NOT_CONSUMED,
            )

        user_message = self.conversations.append_message(
            conversation_id, Role.USER, content, attachments=attachments, model_id=model_id
        )
        conversation = self.conversations.get(user_message.conversation_id)
        history = list(conversation.messages) if conversation else [user_message]

        try:
            reply = await self.inference.complete(api_key, model_id, history)
        except InferenceError as e:
            logger.error("inference_failed", model=model_id, error=str(e))
            self._transition(SendState.FAILED)
            error_message = self.conversations.append_message(
                user_message.conversation_id, Role.ASSISTANT, ERROR_NOTICE
            )
            return SendOutcome(
                state=SendState.FAILED,
                conversation_id=error_message.conversation_id,
                messages=[user_message, error_message],
            )

        composed = compose_reply(reply)
        assistant_message = self.conversations.append_message(
            user_message.conversation_id,
            Role.ASSISTANT,
            composed.content,
            reasoning=composed.reasoning,
            images=composed.images,
        )
        self._transition(SendState.DELIVERED)
        return SendOutcome(
            state=SendState.DELIVERED,
            conversation_id=assistant_message.conversation_id,
            messages=[user_message, assistant_message],
        )

    def _block(
        self,
        conversation_id: Optional[str],
        content: str,
        attachments: List[ImageAttachment],
        model_id: str,
        notice: str,
        reason: BlockReason,
    ) -> SendOutcome:
        self._transition(SendState.BLOCKED)
        user_message = self.conversations.append_message(
            conversation_id, Role.USER, content, attachments=attachments, model_id=model_id
        )
        notice_message = self.conversations.append_message(
            user_message.conversation_id, Role.ASSISTANT, notice
        )
        return SendOutcome(
            state=SendState.BLOCKED,
            conversation_id=notice_message.conversation_id,
            messages=[user_message, notice_message],
            reason=reason,
        )
