from __future__ import annotations

from decimal import ROUND_CEILING, Decimal

from server.creditproxy.billing.pricing import PricingEntry, PricingTable

_ONE_MILLION = Decimal(1_000_000)


def compute_cost_cents(entry: PricingEntry, tokens_in: int, tokens_out: int) -> int:
    # Rounded up to whole cents so a request is never undercharged.
    tokens_in = max(0, int(tokens_in))
    tokens_out = max(0, int(tokens_out))
    raw = (
        Decimal(tokens_in) * Decimal(entry.input_cents_per_million)
        + Decimal(tokens_out) * Decimal(entry.output_cents_per_million)
    ) / _ONE_MILLION
    return int(raw.quantize(Decimal("1"), rounding=ROUND_CEILING))


def cost_for_model(pricing: PricingTable, model: str, tokens_in: int, tokens_out: int) -> int:
    return compute_cost_cents(pricing.lookup(model), tokens_in, tokens_out)
