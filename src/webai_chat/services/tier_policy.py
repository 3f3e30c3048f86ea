"""Tier gating: which models a tier may use and how many messages it gets.

Everything here is static data plus pure functions. The UI gating state, the
send path and the in-memory data service all read the same constants.
"""

import math
from typing import List, NamedTuple, Optional, Union

from ..domain.models import Tier

UNLIMITED = math.inf

FREE_DAILY_MESSAGES = 10

DEFAULT_MODEL = "meta-llama/llama-3.1-70b-instruct"

FREE_MODELS = frozenset(
    {
        "meta-llama/llama-3.1-70b-instruct",
        "meta-llama/llama-3.1-8b-instruct",
        "mistralai/mixtral-8x7b-instruct",
        "google/gemini-flash-1.5",
        "openai/gpt-3.5-turbo",
    }
)


class ModelInfo(NamedTuple):
    id: str
    name: str
    provider: str
    tier: Tier


MODEL_CATALOG: List[ModelInfo] = [
    ModelInfo("anthropic/claude-opus-4.5", "Claude Opus 4.5", "Anthropic", Tier.PRO),
    ModelInfo("anthropic/claude-sonnet-4", "Claude Sonnet 4", "Anthropic", Tier.PRO),
    ModelInfo("anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", "Anthropic", Tier.PRO),
    ModelInfo("anthropic/claude-3-opus", "Claude 3 Opus", "Anthropic", Tier.PRO),
    ModelInfo("openai/gpt-4o", "GPT-4o", "OpenAI", Tier.PRO),
    ModelInfo("openai/gpt-4-turbo", "GPT-4 Turbo", "OpenAI", Tier.PRO),
    ModelInfo("openai/gpt-4", "GPT-4", "OpenAI", Tier.PRO),
    ModelInfo("openai/gpt-3.5-turbo", "GPT-3.5 Turbo", "OpenAI", Tier.FREE),
    ModelInfo("google/gemini-pro-1.5", "Gemini Pro 1.5", "Google", Tier.PRO),
    ModelInfo("google/gemini-flash-1.5", "Gemini Flash 1.5", "Google", Tier.FREE),
    ModelInfo("meta-llama/llama-3.1-405b-instruct", "Llama 3.1 405B", "Meta", Tier.PRO),
    ModelInfo("meta-llama/llama-3.1-70b-instruct", "Llama 3.1 70B", "Meta", Tier.FREE),
    ModelInfo("meta-llama/llama-3.1-8b-instruct", "Llama 3.1 8B", "Meta", Tier.FREE),
    ModelInfo("mistralai/mistral-large", "Mistral Large", "Mistral", Tier.PRO),
    ModelInfo("mistralai/mixtral-8x7b-instruct", "Mixtral 8x7B", "Mistral", Tier.FREE),
]

MODEL_LOCKED = "model_locked"
LIMIT_REACHED = "limit_reached"


def is_model_allowed(model_id: str, tier: Tier) -> bool:
    if tier == Tier.PRO:
        return True
    return model_id in FREE_MODELS


def daily_allowance(tier: Tier) -> Union[int, float]:
    """Messages per day; ``UNLIMITED`` for pro."""
    if tier == Tier.PRO:
        return UNLIMITED
    return FREE_DAILY_MESSAGES


def available_models(tier: Tier) -> List[ModelInfo]:
    return [model for model in MODEL_CATALOG if is_model_allowed(model.id, tier)]


def usage_banner(model_id: str, tier: Tier, remaining: Union[int, float]) -> Optional[str]:
    """Banner to show above the chat input, if any.

    A locked model takes precedence over an exhausted quota.
    """
    if not is_model_allowed(model_id, tier):
        return MODEL_LOCKED
    if tier == Tier.FREE and remaining <= 0:
        return LIMIT_REACHED
    return None
