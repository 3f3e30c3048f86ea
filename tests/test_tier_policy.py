"""Tests for tier gating."""

import math

import pytest

from webai_chat.domain.models import Tier
from webai_chat.services.tier_policy import (
    DEFAULT_MODEL,
    FREE_MODELS,
    LIMIT_REACHED,
    MODEL_CATALOG,
    MODEL_LOCKED,
    available_models,
    daily_allowance,
    is_model_allowed,
    usage_banner,
)


@pytest.mark.parametrize("model", [m.id for m in MODEL_CATALOG] + ["unknown/model"])
def test_model_access_by_tier(model):
    """Pro may use anything; free only the free set."""
    assert is_model_allowed(model, Tier.PRO)
    assert is_model_allowed(model, Tier.FREE) == (model in FREE_MODELS)


def test_daily_allowance():
    assert daily_allowance(Tier.FREE) == 10
    assert math.isinf(daily_allowance(Tier.PRO))


def test_catalog_agrees_with_free_set():
    """Every catalogue entry marked free is in the free set and vice versa."""
    free_in_catalog = {m.id for m in MODEL_CATALOG if m.tier == Tier.FREE}
    assert free_in_catalog == set(FREE_MODELS)
    assert DEFAULT_MODEL in FREE_MODELS


def test_available_models():
    assert {m.id for m in available_models(Tier.FREE)} == set(FREE_MODELS)
    assert len(available_models(Tier.PRO)) == len(MODEL_CATALOG)


def test_usage_banner():
    """Locked model wins over an exhausted quota."""
    assert usage_banner("openai/gpt-4", Tier.FREE, 0) == MODEL_LOCKED
    assert usage_banner("openai/gpt-4", Tier.FREE, 5) == MODEL_LOCKED
    assert usage_banner(DEFAULT_MODEL, Tier.FREE, 0) == LIMIT_REACHED
    assert usage_banner(DEFAULT_MODEL, Tier.FREE, 3) is None
    assert usage_banner("openai/gpt-4", Tier.PRO, math.inf) is None
