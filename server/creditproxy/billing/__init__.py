from __future__ import annotations

__all__ = [
    "Admission",
    "CreditGuard",
    "CreditBalance",
    "LedgerError",
    "UsageRecord",
    "build_ledger",
    "load_pricing_table",
    "compute_cost_cents",
    "extract_from_document",
    "extract_from_event",
]

from server.creditproxy.billing.costing import compute_cost_cents
from server.creditproxy.billing.guard import Admission, CreditGuard
from server.creditproxy.billing.ledger import CreditBalance, LedgerError, UsageRecord, build_ledger
from server.creditproxy.billing.pricing import load_pricing_table
from server.creditproxy.billing.usage import extract_from_document, extract_from_event
