"""Admission checks and post-request settlement against the credit ledger."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import TypeVar

import anyio
import anyio.to_thread

from server.creditproxy.billing.costing import cost_for_model
from server.creditproxy.billing.ledger import LedgerError, LedgerStore, UsageRecord
from server.creditproxy.billing.pricing import PricingTable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Admission:
    admitted: bool
    remaining_cents: int | None
    # True when the ledger could not be reached and the configured policy decided.
    degraded: bool = False


class CreditGuard:
    def __init__(
        self,
        *,
        ledger: LedgerStore,
        pricing: PricingTable,
        instance_id: str,
        default_cap_cents: int,
        ledger_timeout_seconds: float,
        fail_open: bool = True,
    ) -> None:
        self.ledger = ledger
        self.pricing = pricing
        self.instance_id = instance_id
        self.default_cap_cents = default_cap_cents
        self.ledger_timeout_seconds = ledger_timeout_seconds
        self.fail_open = fail_open
        self._settle_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def call_ledger(self, fn: Callable[..., T], *args, **kwargs) -> T:
        # The worker thread is abandoned on timeout so a hung store cannot hold the request.
        try:
            with anyio.fail_after(self.ledger_timeout_seconds):
                return await anyio.to_thread.run_sync(partial(fn, *args, **kwargs), abandon_on_cancel=True)
        except TimeoutError as e:
            raise LedgerError(
                f"Ledger call {getattr(fn, '__name__', fn)} timed out after {self.ledger_timeout_seconds}s"
            ) from e

    async def check_admission(self, user_id: str) -> Admission:
        try:
            balance = await self.call_ledger(self.ledger.get_balance, user_id)
            if balance is None:
                balance = await self.call_ledger(
                    self.ledger.create_balance, user_id, cap_cents=self.default_cap_cents
                )
                logger.info("Created credit balance for user %s (cap %d cents)", user_id, balance.cap_cents)
        except LedgerError as e:
            policy = "admitting" if self.fail_open else "rejecting"
            logger.warning("Credit check failed for user %s, %s request: %s", user_id, policy, e)
            return Admission(admitted=self.fail_open, remaining_cents=None, degraded=True)

        remaining = balance.remaining_cents
        return Admission(admitted=remaining > 0, remaining_cents=remaining)

    async def settle(self, user_id: str, model: str, tokens_in: int, tokens_out: int) -> int:
        cost_cents = cost_for_model(self.pricing, model, tokens_in, tokens_out)
        record = UsageRecord(
            instance_id=self.instance_id,
            user_id=user_id,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_cents=cost_cents,
            model=model,
        )
        try:
            await self.call_ledger(self.ledger.append_usage, record)
        except LedgerError as e:
            logger.error("Usage log failed for user %s: %s", user_id, e)

        if cost_cents > 0:
            async with self._settle_locks[user_id]:
                try:
                    await self.call_ledger(self.ledger.increment_total_cost, user_id, cost_cents)
                except LedgerError as e:
                    logger.error("Balance update of %d cents failed for user %s: %s", cost_cents, user_id, e)
        return cost_cents
