from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "anthropic/claude-opus-4-6"


@dataclass(frozen=True)
class PricingEntry:
    model_id: str
    input_cents_per_million: int
    output_cents_per_million: int


DEFAULT_PRICING: tuple[PricingEntry, ...] = (
    PricingEntry("anthropic/claude-opus-4-6", 1500, 7500),
    PricingEntry("anthropic/claude-sonnet-4-5", 300, 1500),
    PricingEntry("openai/gpt-5.2", 250, 1000),
    PricingEntry("openai/gpt-4.1", 200, 800),
    PricingEntry("google/gemini-2.5-pro", 125, 500),
    PricingEntry("xai/grok-3", 300, 1500),
    PricingEntry("deepseek/deepseek-chat", 27, 110),
)


class PricingTable:
    """Immutable model -> price lookup with a designated fallback entry."""

    def __init__(self, entries: Iterable[PricingEntry], *, default_model: str = DEFAULT_MODEL) -> None:
        rows = {entry.model_id: entry for entry in entries}
        if default_model not in rows:
            raise ValueError(f"Default pricing model {default_model!r} is missing from the table.")
        self._entries: Mapping[str, PricingEntry] = MappingProxyType(rows)
        self.default_model = default_model

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> Mapping[str, PricingEntry]:
        return self._entries

    def lookup(self, model_id: str) -> PricingEntry:
        entry = self._entries.get(model_id)
        if entry is None:
            return self._entries[self.default_model]
        return entry


def _parse_price(value, *, field: str, model_id: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Pricing for {model_id!r} has a non-numeric {field!r} value.")
    if value < 0:
        raise ValueError(f"Pricing for {model_id!r} has a negative {field!r} value.")
    return int(value)


def parse_pricing_overrides(payload: object) -> list[PricingEntry]:
    if not isinstance(payload, dict):
        raise ValueError("Pricing file must contain a JSON object keyed by model id.")
    entries: list[PricingEntry] = []
    for model_id, prices in payload.items():
        if not isinstance(prices, dict):
            raise ValueError(f"Pricing for {model_id!r} must be an object with 'input' and 'output'.")
        entries.append(
            PricingEntry(
                model_id=str(model_id),
                input_cents_per_million=_parse_price(prices.get("input"), field="input", model_id=model_id),
                output_cents_per_million=_parse_price(prices.get("output"), field="output", model_id=model_id),
            )
        )
    return entries


def load_pricing_table(pricing_file: Path | None = None) -> PricingTable:
    rows: dict[str, PricingEntry] = {entry.model_id: entry for entry in DEFAULT_PRICING}
    if pricing_file is not None:
        payload = json.loads(pricing_file.read_text(encoding="utf-8"))
        overrides = parse_pricing_overrides(payload)
        for entry in overrides:
            rows[entry.model_id] = entry
        logger.info("Loaded %d pricing overrides from %s", len(overrides), pricing_file)
    return PricingTable(rows.values())
