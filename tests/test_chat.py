"""Tests for the send path: gating, quota consumption and reply handling."""

import asyncio

import pytest

from webai_chat.domain.models import ImageAttachment, Role, Tier, UserProfile
from webai_chat.services.chat import (
    ERROR_NOTICE,
    BlockReason,
    ChatOrchestrator,
    CredentialResolver,
    SendState,
)
from webai_chat.services.conversations import LOCAL_PREFIX, ConversationStore
from webai_chat.services.llm import InferenceReply
from webai_chat.services.profiles import ProfileService
from webai_chat.services.tier_policy import DEFAULT_MODEL

from conftest import NOW, CountingRepository, FakeInference

PRO_MODEL = "anthropic/claude-3-opus"


class Harness:
    def __init__(self, repository, clock, principal, inference=None, api_key="sk-user"):
        self.repository = repository
        self.principal = principal
        self.inference = inference or FakeInference()
        self.profiles = ProfileService(repository, clock=clock)
        self.conversations = ConversationStore(repository)
        self.conversations.bind(principal)
        self.chat = ChatOrchestrator(
            self.profiles,
            self.conversations,
            self.inference,
            CredentialResolver(lambda: api_key),
        )

    async def seed(self, **fields):
        profile = UserProfile(
            id=self.principal.id,
            email=self.principal.email,
            last_usage_reset=NOW,
            created_at=NOW,
            updated_at=NOW,
            **fields,
        )
        await self.repository.create_profile(profile, token="t")
        await self.profiles.get_or_create_profile(self.principal)

    async def used(self):
        profile = await self.repository.get_profile(self.principal.id, token="t")
        return profile.messages_used_today

    async def send(self, content, model=DEFAULT_MODEL, **kwargs):
        return await self.chat.send(self.principal, content, model, **kwargs)


@pytest.fixture
def harness(repository, clock, principal):
    return Harness(repository, clock, principal)


@pytest.mark.asyncio
async def test_locked_model_on_free_tier(harness):
    """A pro-only model is refused in-thread without inference or quota use."""
    await harness.seed()

    outcome = await harness.send("hello", model=PRO_MODEL)

    assert outcome.state == SendState.BLOCKED
    assert outcome.reason == BlockReason.MODEL_LOCKED
    assert harness.inference.calls == []
    user, notice = outcome.messages
    assert (user.role, user.content) == (Role.USER, "hello")
    assert notice.role == Role.ASSISTANT
    assert "Pro users" in notice.content
    assert await harness.used() == 0
    assert harness.repository.increment_calls == 0


@pytest.mark.asyncio
async def test_quota_exhausted(harness):
    await harness.seed(messages_used_today=10)

    outcome = await harness.send("hi")

    assert outcome.reason == BlockReason.LIMIT_REACHED
    assert "daily message limit" in outcome.messages[-1].content
    assert harness.repository.increment_calls == 0
    assert harness.inference.calls == []


@pytest.mark.asyncio
async def test_local_first_persistence(harness):
    """The new conversation is listed at once and keeps its messages under the permanent id."""
    await harness.seed()

    outcome = await harness.send("first message")

    assert outcome.state == SendState.DELIVERED
    listed = harness.conversations.local_conversations()
    assert len(listed) == 1
    assert listed[0].title == "first message"
    local_messages = [(m.id, m.content) for m in listed[0].messages]

    await harness.conversations.flush()

    permanent_id = harness.conversations.active_id
    assert not permanent_id.startswith(LOCAL_PREFIX)
    messages = await harness.conversations.load_messages(permanent_id)
    assert [(m.id, m.content) for m in messages] == local_messages
    stored = await harness.repository.get_messages(permanent_id, token="t")
    assert [m.content for m in stored] == ["first message", "Hello there"]
    assert await harness.used() == 1


@pytest.mark.asyncio
async def test_mixed_response_payload(repository, clock, principal):
    reply = InferenceReply(content="", reasoning="Thinking it through", images=["a.png", "b.png"])
    harness = Harness(repository, clock, principal, inference=FakeInference(reply))
    await harness.seed()

    outcome = await harness.send("draw two cats")

    assistant = outcome.messages[-1]
    assert assistant.content == "Thinking it through"
    assert assistant.reasoning is None
    assert assistant.images == ["a.png", "b.png"]


@pytest.mark.asyncio
async def test_missing_credential_appends_nothing(repository, clock, principal):
    harness = Harness(repository, clock, principal, api_key=None)
    await harness.seed()

    outcome = await harness.send("hello")

    assert outcome.state == SendState.BLOCKED
    assert outcome.need_credential is True
    assert outcome.messages == []
    assert harness.conversations.local_conversations() == []
    assert harness.repository.increment_calls == 0


@pytest.mark.asyncio
async def test_default_credential_used_when_user_has_none(repository, clock, principal):
    harness = Harness(repository, clock, principal)
    harness.chat.credentials = CredentialResolver(lambda: None, "sk-default")
    await harness.seed()

    await harness.send("hello")

    assert harness.inference.calls[0]["api_key"] == "sk-default"


@pytest.mark.asyncio
async def test_inference_failure_appends_generic_error(repository, clock, principal):
    harness = Harness(repository, clock, principal, inference=FakeInference(error=True))
    await harness.seed()

    outcome = await harness.send("hello")

    assert outcome.state == SendState.FAILED
    assert outcome.messages[-1].content == ERROR_NOTICE
    assert len(harness.inference.calls) == 1
    assert await harness.used() == 1


@pytest.mark.asyncio
async def test_pro_user_skips_quota(harness):
    await harness.seed(tier=Tier.PRO, messages_used_today=40)

    outcome = await harness.send("hello", model=PRO_MODEL)

    assert outcome.state == SendState.DELIVERED
    assert harness.repository.increment_calls == 0
    assert harness.inference.calls[0]["model"] == PRO_MODEL


@pytest.mark.asyncio
async def test_full_history_is_sent(harness):
    await harness.seed()
    first = await harness.send("one")
    await harness.send("two", conversation_id=first.conversation_id)

    sent = harness.inference.calls[1]["messages"]
    assert [m.content for m in sent] == ["one", "Hello there", "two"]


@pytest.mark.asyncio
async def test_attachments_reach_inference(harness):
    await harness.seed()
    image = ImageAttachment(url="data:image/png;base64,AAAA", name="cat.png")

    outcome = await harness.send("", attachments=[image])

    assert outcome.state == SendState.DELIVERED
    assert harness.inference.calls[0]["messages"][0].attachments == [image]


@pytest.mark.asyncio
async def test_empty_send_is_ignored(harness):
    await harness.seed()
    outcome = await harness.send("   ")
    assert outcome.state == SendState.IDLE
    assert harness.inference.calls == []


@pytest.mark.asyncio
async def test_unconsumed_quota_blocks_send(clock, principal):
    class RefusingRepository(CountingRepository):
        async def increment_message_usage(self, user_id, *, token):
            self.increment_calls += 1
            return False

    harness = Harness(RefusingRepository(clock=clock), clock, principal)
    await harness.seed()

    outcome = await harness.send("hello")

    assert outcome.reason == BlockReason.NOT_CONSUMED
    assert "Unable to send message" in outcome.messages[-1].content
    assert harness.inference.calls == []


@pytest.mark.asyncio
async def test_send_while_busy_is_ignored(repository, clock, principal):
    gate = asyncio.Event()

    class SlowInference(FakeInference):
        async def complete(self, api_key, model, messages):
            await gate.wait()
            return await super().complete(api_key, model, messages)

    harness = Harness(repository, clock, principal, inference=SlowInference())
    await harness.seed()

    first = asyncio.create_task(harness.send("one"))
    while harness.chat.state != SendState.SENDING:
        await asyncio.sleep(0)
    second = await harness.send("two")
    gate.set()
    first_outcome = await first

    assert second.state == SendState.IDLE
    assert second.messages == []
    assert first_outcome.state == SendState.DELIVERED
    assert len(harness.inference.calls) == 1
    assert harness.chat.state == SendState.IDLE
