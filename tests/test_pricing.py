from __future__ import annotations

import allure
import pytest

from jobgate.budget.pricing import DEFAULT_AI_PRICING, ModelPricing, PricingTable

pytestmark = [
    allure.epic("Cost Control"),
    allure.feature("AI Pricing"),
]


def test_parse_supports_provider_and_global_wildcards() -> None:
    table = PricingTable.parse(
        "anthropic:claude-haiku:0.8:4.0, anthropic:*:3.0:15.0, *:*:1.0:2.0",
    )

    assert table.lookup(provider="anthropic", model="claude-haiku") == ModelPricing(0.8, 4.0)
    assert table.lookup(provider="Anthropic", model="claude-opus") == ModelPricing(3.0, 15.0)
    assert table.lookup(provider="openai", model="gpt") == ModelPricing(1.0, 2.0)


def test_default_pricing_has_no_global_fallback() -> None:
    table = PricingTable.parse(DEFAULT_AI_PRICING)

    assert table.lookup(provider="openai", model="gpt") is None
    assert table.estimate_cost_cents(provider="openai", model="gpt", input_tokens=10) is None


def test_cost_is_rounded_up_to_whole_cents() -> None:
    table = PricingTable.parse(DEFAULT_AI_PRICING)

    assert table.estimate_cost_cents(
        provider="anthropic",
        model="any",
        input_tokens=1_000_000,
    ) == 300
    assert table.estimate_cost_cents(provider="anthropic", model="any", input_tokens=1) == 1
    assert table.estimate_cost_cents(provider="anthropic", model="any", input_tokens=0) == 0
    assert table.estimate_cost_cents(
        provider="anthropic",
        model="any",
        input_tokens=0,
        output_tokens=2_000_000,
    ) == 3_000


@pytest.mark.parametrize(
    "raw",
    [
        "anthropic:claude:3.0",
        "anthropic:claude:cheap:15.0",
        "anthropic:claude:-1:15.0",
    ],
)
def test_malformed_entries_are_rejected(raw: str) -> None:
    with pytest.raises(ValueError):
        PricingTable.parse(raw)


def test_empty_entries_are_skipped() -> None:
    assert PricingTable.parse(" , ").entries == {}
