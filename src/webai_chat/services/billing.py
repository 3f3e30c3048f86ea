"""Billing redirect flow: obtain hosted checkout/portal URLs from the billing backend.

Nothing is persisted across the redirect. The subscription webhook (not part
of this package) updates the profile tier, which reaches the client as a
profile update.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel

from ..domain.models import Principal
from .tier_policy import FREE_DAILY_MESSAGES

logger = structlog.get_logger()


class BillingError(Exception):
    """The billing backend did not return a usable hosted-flow URL."""


class PricingPlan(BaseModel):
    id: str
    name: str
    price: str
    period: str
    description: str
    features: List[str]
    price_id: Optional[str] = None
    popular: bool = False


PRICING_PLANS: List[PricingPlan] = [
    PricingPlan(
        id="free",
        name="Free",
        price="$0",
        period="forever",
        description="Perfect for trying out the service",
        features=[
            f"{FREE_DAILY_MESSAGES} messages per day",
            "Basic AI models",
            "Llama 3.1, Mixtral, GPT-3.5",
        ],
    ),
    PricingPlan(
        id="pro_monthly",
        name="Pro Monthly",
        price="$9.99",
        period="/month",
        description="For power users who need more",
        features=["Unlimited messages", "All AI models", "GPT-4, Claude Opus, Gemini Pro"],
        price_id="price_pro_monthly",
        popular=True,
    ),
    PricingPlan(
        id="pro_yearly",
        name="Pro Yearly",
        price="$99.99",
        period="/year",
        description="Best value - save 17%",
        features=["Everything in Pro Monthly", "2 months free"],
        price_id="price_pro_yearly",
    ),
]


class BillingClient:
    """Client for the backend-proxied checkout and portal endpoints."""

    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _hosted_url(self, endpoint: str, body: Dict[str, Any]) -> str:
        try:
            response = await self._http.post(f"{self.base_url}/{endpoint}", json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("billing_request_failed", endpoint=endpoint, error=str(e))
            raise BillingError(f"{endpoint} failed") from e

        url = data.get("url") if isinstance(data, dict) else None
        if not url:
            logger.error("billing_url_missing", endpoint=endpoint)
            raise BillingError(f"{endpoint} returned no URL")
        return url

    async def create_checkout_url(
        self, price_id: str, principal: Principal, customer_id: Optional[str] = None
    ) -> str:
        """Hosted checkout URL for upgrading ``principal`` to ``price_id``."""
        url = await self._hosted_url(
            "create-checkout-session",
            {
                "priceId": price_id,
                "userId": principal.id,
                "email": principal.email,
                "customerId": customer_id,
            },
        )
        logger.info("checkout_session_created", user_id=principal.id, price_id=price_id)
        return url

    async def create_portal_url(self, customer_id: str) -> str:
        """Hosted portal URL for managing an existing subscription."""
        url = await self._hosted_url("create-portal-session", {"customerId": customer_id})
        logger.info("portal_session_created", customer_id=customer_id)
        return url
