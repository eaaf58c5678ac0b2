"""Token cost estimation for AI provider calls."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

DEFAULT_AI_PRICING = "anthropic:*:3.0:15.0"


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


@dataclass(slots=True, frozen=True)
class PricingTable:
    """Pricing lookup with `provider:*` and `*:*` wildcards."""

    entries: dict[tuple[str, str], ModelPricing] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str) -> PricingTable:
        """Parse `provider:model:input_per_1m:output_per_1m` entries separated by `,`.

        Malformed entries raise ValueError so a bad `JOBGATE_AI_PRICING`
        fails at startup instead of silently pricing usage at zero.
        """

        parsed: dict[tuple[str, str], ModelPricing] = {}
        for entry in raw.split(","):
            value = entry.strip()
            if not value:
                continue
            parts = [part.strip() for part in value.split(":")]
            if len(parts) != 4:
                raise ValueError(
                    f"Invalid AI pricing entry {value!r}; "
                    "expected 'provider:model:input_per_1m:output_per_1m'.",
                )
            provider, model, input_price, output_price = parts
            try:
                pricing = ModelPricing(
                    input_per_1m=float(input_price),
                    output_per_1m=float(output_price),
                )
            except ValueError as error:
                raise ValueError(f"Invalid AI pricing numbers in entry {value!r}.") from error
            if pricing.input_per_1m < 0 or pricing.output_per_1m < 0:
                raise ValueError(f"AI pricing must be >= 0 in entry {value!r}.")
            parsed[(provider.lower(), model)] = pricing
        return cls(entries=parsed)

    def lookup(self, *, provider: str, model: str) -> ModelPricing | None:
        provider_key = provider.strip().lower()
        for key in ((provider_key, model.strip()), (provider_key, "*"), ("*", "*")):
            pricing = self.entries.get(key)
            if pricing is not None:
                return pricing
        return None

    def estimate_cost_cents(
        self,
        *,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int = 0,
    ) -> int | None:
        """Estimated cost in whole cents, rounded up; None when no pricing matches."""

        pricing = self.lookup(provider=provider, model=model)
        if pricing is None:
            return None
        usd = (input_tokens / 1_000_000) * pricing.input_per_1m + (
            output_tokens / 1_000_000
        ) * pricing.output_per_1m
        return math.ceil(round(usd * 100, 9))
