"""Credit ledger backed by a PostgREST (Supabase) HTTP endpoint."""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field

import requests

from server.creditproxy.billing.ledger import CreditBalance, LedgerError, UsageRecord

logger = logging.getLogger(__name__)

_BALANCE_COLUMNS = "user_id,period_start,total_cost_cents,cap_cents"


def _parse_timestamp(value) -> dt.datetime:
    if isinstance(value, str) and value:
        try:
            ts = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            ts = None
        if ts is not None:
            return ts if ts.tzinfo else ts.replace(tzinfo=dt.UTC)
    return dt.datetime.now(dt.UTC)


def _balance_from_row(row: dict) -> CreditBalance:
    try:
        return CreditBalance(
            user_id=str(row["user_id"]),
            period_start=_parse_timestamp(row.get("period_start")),
            total_cost_cents=int(row["total_cost_cents"]),
            cap_cents=int(row["cap_cents"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise LedgerError(f"Malformed credit_balance row: {row!r}") from e


@dataclass
class RestLedger:
    base_url: str
    api_key: str
    timeout_seconds: float = 5.0
    cas_attempts: int = 5
    balance_table: str = "credit_balance"
    usage_table: str = "ai_usage"
    _session: requests.Session = field(default_factory=requests.Session, repr=False)

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict | None = None,
        prefer: str | None = None,
    ):
        if not self.base_url or not self.api_key:
            raise LedgerError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
        url = f"{self.base_url.rstrip('/')}/rest/v1/{table}"
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise LedgerError(f"Ledger {method} {table} failed: {e}") from e
        if not resp.ok:
            snippet = (resp.text or "")[:300]
            raise LedgerError(f"Ledger {method} {table} failed: {resp.status_code} {snippet}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise LedgerError(f"Ledger {method} {table} returned malformed JSON") from e

    def _rows(self, payload) -> list[dict]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise LedgerError(f"Expected a list of rows, got {type(payload).__name__}")
        return [row for row in payload if isinstance(row, dict)]

    def get_balance(self, user_id: str) -> CreditBalance | None:
        payload = self._request(
            "GET",
            self.balance_table,
            params={
                "user_id": f"eq.{user_id}",
                "select": _BALANCE_COLUMNS,
                "order": "period_start.desc",
                "limit": "1",
            },
        )
        rows = self._rows(payload)
        return _balance_from_row(rows[0]) if rows else None

    def create_balance(self, user_id: str, *, cap_cents: int) -> CreditBalance:
        balance = CreditBalance(
            user_id=user_id,
            period_start=dt.datetime.now(dt.UTC),
            total_cost_cents=0,
            cap_cents=cap_cents,
        )
        payload = self._request(
            "POST",
            self.balance_table,
            json_body={
                "user_id": balance.user_id,
                "period_start": balance.period_start.isoformat(),
                "total_cost_cents": balance.total_cost_cents,
                "cap_cents": balance.cap_cents,
            },
            prefer="return=representation",
        )
        rows = self._rows(payload)
        return _balance_from_row(rows[0]) if rows else balance

    def increment_total_cost(self, user_id: str, amount_cents: int) -> int:
        # Compare-and-swap on the current period row: the PATCH only matches while
        # its total is unchanged.
        for attempt in range(self.cas_attempts):
            balance = self.get_balance(user_id)
            if balance is None:
                raise LedgerError(f"No credit balance for user {user_id}")
            new_total = balance.total_cost_cents + int(amount_cents)
            payload = self._request(
                "PATCH",
                self.balance_table,
                params={
                    "user_id": f"eq.{user_id}",
                    "period_start": f"eq.{balance.period_start.isoformat()}",
                    "total_cost_cents": f"eq.{balance.total_cost_cents}",
                },
                json_body={"total_cost_cents": new_total},
                prefer="return=representation",
            )
            if self._rows(payload):
                return new_total
            logger.debug("Balance for %s changed concurrently (attempt %d), retrying", user_id, attempt + 1)
        raise LedgerError(f"Balance update for user {user_id} lost {self.cas_attempts} races")

    def append_usage(self, record: UsageRecord) -> None:
        self._request(
            "POST",
            self.usage_table,
            json_body={
                "deployment_id": record.instance_id,
                "user_id": record.user_id,
                "tokens_in": record.tokens_in,
                "tokens_out": record.tokens_out,
                "cost_cents": record.cost_cents,
                "model": record.model,
                "created_at": record.timestamp.isoformat(),
            },
            prefer="return=minimal",
        )
