"""Composition root: one explicitly constructed client per signed-in user."""

from typing import Callable, List, Optional

import structlog

from .config import Settings
from .domain.models import ImageAttachment, Principal, UserProfile
from .repositories.base import PersistenceError, Repository
from .repositories.rest import RestRepository
from .services.background import BackgroundWriter, fire_and_forget
from .services.billing import BillingClient
from .services.chat import ChatOrchestrator, CredentialResolver, SendOutcome
from .services.conversations import ConversationStore
from .services.llm import InferenceClient
from .services.profiles import ProfileService, ProfileWatcher
from .services.session import GoTrueProvider, IdentityProvider, SessionEvent, SessionStore
from .services.tier_policy import DEFAULT_MODEL
from .storage import LocalStore, Preferences

logger = structlog.get_logger()


class ChatClient:
    """Owns every component and reacts to session transitions.

    Sign-in binds the stores to the new principal and loads its profile;
    sign-out tears all user state down.
    """

    def __init__(
        self,
        settings: Settings,
        provider: IdentityProvider,
        repository: Repository,
        inference: InferenceClient,
        billing: BillingClient,
        storage: Optional[LocalStore] = None,
    ) -> None:
        self.settings = settings
        self.storage = storage or LocalStore(settings.state_path)
        self.preferences = Preferences(self.storage, DEFAULT_MODEL)
        self.repository = repository
        self.inference = inference
        self.billing = billing
        self.writer = BackgroundWriter()
        self.session = SessionStore(
            provider,
            self.storage,
            redirect_to=settings.app_origin.rstrip("/") + "/",
            init_timeout=settings.session_init_timeout,
        )
        self.profiles = ProfileService(repository, session=self.session, storage=self.storage)
        self.conversations = ConversationStore(
            repository, writer=self.writer, storage=self.storage
        )
        self.orchestrator = ChatOrchestrator(
            self.profiles,
            self.conversations,
            inference,
            CredentialResolver(lambda: self.preferences.api_key, settings.openrouter_api_key),
        )
        self.watcher = ProfileWatcher(
            self.profiles, self.session, interval=settings.profile_poll_interval
        )
        self._unsubscribe_profile: Callable[[], None] = lambda: None
        self.session.subscribe(self._on_session_change)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatClient":
        return cls(
            settings,
            provider=GoTrueProvider(settings.supabase_url, settings.supabase_anon_key),
            repository=RestRepository(settings.supabase_url, settings.supabase_anon_key),
            inference=InferenceClient(
                settings.inference_url, referer=settings.app_origin, title=settings.app_title
            ),
            billing=BillingClient(settings.billing_api_url),
        )

    async def start(self) -> None:
        """Show any cached session now and revalidate it in the background."""
        self.session.restore_cached()
        fire_and_forget(self.session.revalidate, "session_revalidate")
        await self.watcher.start()

    async def stop(self) -> None:
        await self.watcher.stop()
        await self.writer.flush()
        await self.writer.cleanup()
        for resource in (self.repository, self.inference, self.billing, self.session.provider):
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()
        logger.info("client_stopped")

    def _on_session_change(self, event: SessionEvent, principal: Optional[Principal]) -> None:
        self._unsubscribe_profile()
        self._unsubscribe_profile = lambda: None
        if principal is None:
            self.profiles.clear()
            self.conversations.reset()
            return

        self.conversations.bind(principal)
        self._unsubscribe_profile = self.repository.subscribe_profile(
            principal.id, self.profiles.apply_remote_update
        )
        if event == SessionEvent.TOKEN_REFRESHED:
            return
        self.profiles.restore_cached(principal.id)
        fire_and_forget(
            lambda: self._load_profile(principal), "profile_load", user_id=principal.id
        )

    async def _load_profile(self, principal: Principal) -> None:
        await self.profiles.get_or_create_profile(principal)
        await self.profiles.remaining_messages(principal)

    def require_principal(self) -> Principal:
        principal = self.session.principal
        if principal is None:
            raise PermissionError("Not signed in")
        return principal

    async def ensure_profile(self) -> UserProfile:
        principal = self.require_principal()
        profile = self.profiles.profile
        if profile is None or profile.id != principal.id:
            profile = await self.profiles.get_or_create_profile(principal)
        return profile

    async def load_profile(self) -> Optional[UserProfile]:
        """Like ``ensure_profile``, but a data service failure keeps whatever is cached.

        With nothing cached the free tier's policy applies.
        """
        try:
            return await self.ensure_profile()
        except PersistenceError as e:
            logger.warning("profile_unavailable", error=str(e))
            return self.profiles.profile

    async def send(
        self,
        content: str,
        conversation_id: Optional[str] = None,
        model_id: Optional[str] = None,
        attachments: Optional[List[ImageAttachment]] = None,
    ) -> SendOutcome:
        principal = self.require_principal()
        await self.load_profile()
        return await self.orchestrator.send(
            principal,
            content,
            model_id or self.preferences.model,
            conversation_id=conversation_id,
            attachments=attachments,
        )
