"""
FastAPI Application Module

Local HTTP surface of the chat client. One process serves one user: the
ChatClient built at startup owns the session, profile, conversations and
billing flow, and every route goes through it.

Key Features:
- Email/password and OAuth sign-in against the identity provider
- Tier-gated model selection and daily message quota
- Local-first conversation history persisted in the background
- Billing checkout/portal redirects
- Structured logging, Prometheus metrics and OpenTelemetry tracing
"""

import math
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..client import ChatClient
from ..config import Settings, configure_logging
from ..domain.models import DEFAULT_TITLE, Conversation, ImageAttachment, Message, Principal
from ..services.billing import PRICING_PLANS, BillingError, PricingPlan
from ..services.chat import SendOutcome
from ..services.conversations import ConversationNotFound
from ..services.session import AuthError
from ..services.tier_policy import (
    MODEL_CATALOG,
    daily_allowance,
    is_model_allowed,
    usage_banner,
)

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests by endpoint", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total errors by endpoint", registry=CUSTOM_REGISTRY)
CHAT_SENDS = Counter(
    "chat_sends_total", "Chat sends by final state", ["state"], registry=CUSTOM_REGISTRY
)

logger = get_logger()


class Credentials(BaseModel):
    email: str
    password: str


class OAuthCallback(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600


class ChatRequest(BaseModel):
    """Defines the structure for chat send requests"""
    content: str = ""
    conversation_id: Optional[str] = None
    model_id: Optional[str] = None
    attachments: List[ImageAttachment] = []


class ConversationCreate(BaseModel):
    title: str = DEFAULT_TITLE
    model_id: Optional[str] = None


class ConversationRename(BaseModel):
    title: str


class SettingsUpdate(BaseModel):
    theme: Optional[Literal["light", "dark"]] = None
    model_id: Optional[str] = None
    api_key: Optional[str] = None


class CheckoutRequest(BaseModel):
    price_id: str


def _finite(value: Union[int, float]) -> Optional[int]:
    """JSON-safe quota number; None stands for unlimited."""
    return None if math.isinf(value) else int(value)


def _session_view(client: ChatClient) -> Dict[str, Any]:
    principal = client.session.principal
    return {
        "loading": client.session.loading,
        "user": {"id": principal.id, "email": principal.email} if principal else None,
    }


def get_client(request: Request) -> ChatClient:
    """Returns the client owned by this application"""
    return request.app.state.client


def require_principal(client: ChatClient = Depends(get_client)) -> Principal:
    """Rejects requests made while signed out"""
    principal = client.session.principal
    if principal is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal


def create_app(client: Optional[ChatClient] = None) -> FastAPI:
    """Build the application around ``client`` (or one built from the environment)."""
    if client is None:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        client = ChatClient.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        await client.start()
        logger.info("application_startup_complete")

        yield

        await client.stop()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="webAI Chat",
        description="Tier-gated multi-model chat client",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.client = client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[client.settings.app_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Counts and logs requests"""
        REQUESTS.inc()
        logger.info("request_started", path=request.url.path)
        try:
            return await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    @app.get("/session")
    async def get_session(client: ChatClient = Depends(get_client)) -> Dict[str, Any]:
        """Current user, if any, and whether startup is still resolving"""
        return _session_view(client)

    @app.post("/auth/signup")
    async def sign_up(
        credentials: Credentials, client: ChatClient = Depends(get_client)
    ) -> Dict[str, Any]:
        """Registers a user; may require email confirmation before sign-in"""
        try:
            principal = await client.session.sign_up(credentials.email, credentials.password)
        except AuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"confirmation_required": principal is None, **_session_view(client)}

    @app.post("/auth/login")
    async def sign_in(
        credentials: Credentials, client: ChatClient = Depends(get_client)
    ) -> Dict[str, Any]:
        """Signs in with email and password"""
        try:
            await client.session.sign_in(credentials.email, credentials.password)
        except AuthError as e:
            logger.info("sign_in_rejected", email=credentials.email, error=str(e))
            raise HTTPException(status_code=400, detail=str(e))
        return _session_view(client)

    @app.get("/auth/oauth/{provider}")
    async def sign_in_with_oauth(
        provider: str, client: ChatClient = Depends(get_client)
    ) -> RedirectResponse:
        """Sends the browser to the provider's consent screen"""
        return RedirectResponse(client.session.sign_in_with_oauth(provider), status_code=303)

    @app.post("/auth/callback")
    async def complete_oauth(
        callback: OAuthCallback, client: ChatClient = Depends(get_client)
    ) -> Dict[str, Any]:
        """Adopts the tokens handed back by the OAuth redirect"""
        try:
            await client.session.complete_oauth(
                callback.access_token, callback.refresh_token, callback.expires_in
            )
        except AuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _session_view(client)

    @app.post("/auth/logout")
    async def sign_out(client: ChatClient = Depends(get_client)) -> Dict[str, Any]:
        """Signs out immediately; remote invalidation is best-effort"""
        await client.session.sign_out()
        return _session_view(client)

    @app.get("/usage")
    async def get_usage(
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> Dict[str, Any]:
        """Tier, remaining messages and the banner for the selected model"""
        await client.load_profile()
        remaining = await client.profiles.remaining_messages(principal)
        tier = client.profiles.tier
        allowance = daily_allowance(tier)
        return {
            "tier": tier.value,
            "remaining": _finite(remaining),
            "daily_allowance": _finite(allowance),
            "used": None if math.isinf(allowance) else int(allowance - remaining),
            "model_id": client.preferences.model,
            "banner": usage_banner(client.preferences.model, tier, remaining),
        }

    @app.get("/models")
    async def list_models(
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> List[Dict[str, Any]]:
        """Model catalogue with availability for the current tier"""
        tier = client.profiles.tier
        return [
            {
                "id": model.id,
                "name": model.name,
                "provider": model.provider,
                "tier": model.tier.value,
                "allowed": is_model_allowed(model.id, tier),
                "selected": model.id == client.preferences.model,
            }
            for model in MODEL_CATALOG
        ]

    @app.get("/settings")
    async def get_settings(client: ChatClient = Depends(get_client)) -> Dict[str, Any]:
        """Persisted theme, model and whether a personal key is set"""
        return {
            "theme": client.preferences.theme,
            "model_id": client.preferences.model,
            "has_api_key": client.preferences.api_key is not None,
        }

    @app.put("/settings")
    async def update_settings(
        update: SettingsUpdate,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> Dict[str, Any]:
        """Updates preferences; a model must be allowed for the current tier"""
        if update.model_id is not None:
            await client.load_profile()
            if not is_model_allowed(update.model_id, client.profiles.tier):
                raise HTTPException(
                    status_code=403, detail="The selected model requires a Pro subscription"
                )
            client.preferences.model = update.model_id
        if update.theme is not None:
            client.preferences.theme = update.theme
        if update.api_key is not None:
            client.preferences.api_key = update.api_key
        return await get_settings(client)

    @app.get("/conversations", response_model=List[Conversation])
    async def list_conversations(
        limit: int = 100,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> List[Conversation]:
        """Conversation list, most recently updated first"""
        conversations = await client.conversations.list_conversations(limit=limit)
        return [c.model_copy(update={"messages": []}) for c in conversations]

    @app.post("/conversations", response_model=Conversation)
    async def create_conversation(
        body: ConversationCreate,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> Conversation:
        """Starts a new conversation thread"""
        try:
            return await client.conversations.create_conversation(body.title, body.model_id)
        except Exception as e:
            logger.error("create_conversation_error", error=str(e))
            raise HTTPException(status_code=500, detail="Failed to create conversation")

    @app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
    async def get_messages(
        conversation_id: str,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> List[Message]:
        """Opens a conversation: its history in creation order"""
        try:
            messages = await client.conversations.load_messages(conversation_id)
            client.conversations.select(conversation_id)
            return messages
        except ConversationNotFound:
            raise HTTPException(status_code=404, detail="Conversation not found")

    @app.patch("/conversations/{conversation_id}", response_model=Conversation)
    async def rename_conversation(
        conversation_id: str,
        body: ConversationRename,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> Conversation:
        """Renames a conversation"""
        try:
            conversation = client.conversations.rename_conversation(conversation_id, body.title)
        except ConversationNotFound:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation.model_copy(update={"messages": []})

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(
        conversation_id: str,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> Dict[str, Any]:
        """Deletes a conversation and its messages"""
        try:
            deleted = await client.conversations.delete_conversation(conversation_id)
        except ConversationNotFound:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"deleted": deleted, "active_id": client.conversations.active_id}

    @app.post("/chat", response_model=SendOutcome)
    async def send_message(
        body: ChatRequest,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> SendOutcome:
        """
        Sends a user message through tier and quota gating.
        A missing inference key is reported with need_credential so the
        caller can route to /settings.
        """
        try:
            outcome = await client.send(
                body.content,
                conversation_id=body.conversation_id,
                model_id=body.model_id,
                attachments=body.attachments,
            )
        except ConversationNotFound:
            raise HTTPException(status_code=404, detail="Conversation not found")
        CHAT_SENDS.labels(state=outcome.state.value).inc()
        return outcome

    @app.get("/pricing", response_model=List[PricingPlan])
    async def list_plans() -> List[PricingPlan]:
        """Plans offered on the pricing page"""
        return PRICING_PLANS

    @app.post("/billing/checkout")
    async def start_checkout(
        body: CheckoutRequest,
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> RedirectResponse:
        """Redirects to the hosted checkout page"""
        profile = await client.load_profile()
        try:
            customer_id = profile.stripe_customer_id if profile else None
            url = await client.billing.create_checkout_url(
                body.price_id, principal, customer_id=customer_id
            )
        except BillingError:
            raise HTTPException(
                status_code=502, detail="Failed to start checkout. Please try again."
            )
        return RedirectResponse(url, status_code=303)

    @app.post("/billing/portal")
    async def open_portal(
        principal: Principal = Depends(require_principal),
        client: ChatClient = Depends(get_client),
    ) -> RedirectResponse:
        """Redirects to the hosted subscription management page"""
        profile = await client.load_profile()
        if profile is None:
            raise HTTPException(status_code=503, detail="Billing is temporarily unavailable")
        if not profile.stripe_customer_id:
            raise HTTPException(status_code=400, detail="No subscription to manage")
        try:
            url = await client.billing.create_portal_url(profile.stripe_customer_id)
        except BillingError:
            raise HTTPException(
                status_code=502, detail="Failed to open billing portal. Please try again."
            )
        return RedirectResponse(url, status_code=303)

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app
