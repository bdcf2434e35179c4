from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Protocol

from server.creditproxy.config import Settings


class LedgerError(RuntimeError):
    pass


@dataclass(frozen=True)
class CreditBalance:
    user_id: str
    period_start: dt.datetime
    total_cost_cents: int
    cap_cents: int

    @property
    def remaining_cents(self) -> int:
        return self.cap_cents - self.total_cost_cents


@dataclass(frozen=True)
class UsageRecord:
    instance_id: str
    user_id: str
    tokens_in: int
    tokens_out: int
    cost_cents: int
    model: str
    timestamp: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.UTC))


class LedgerStore(Protocol):
    def get_balance(self, user_id: str) -> CreditBalance | None: ...

    def create_balance(self, user_id: str, *, cap_cents: int) -> CreditBalance: ...

    def increment_total_cost(self, user_id: str, amount_cents: int) -> int: ...

    def append_usage(self, record: UsageRecord) -> None: ...


def build_ledger(settings: Settings) -> LedgerStore:
    if settings.ledger_backend == "sql":
        from server.creditproxy.billing.sql_ledger import SqlLedger

        return SqlLedger(db_url=settings.db_url)

    from server.creditproxy.billing.rest_ledger import RestLedger

    return RestLedger(
        base_url=settings.supabase_url,
        api_key=settings.supabase_key,
        timeout_seconds=settings.ledger_timeout_seconds,
        cas_attempts=settings.ledger_cas_attempts,
    )
