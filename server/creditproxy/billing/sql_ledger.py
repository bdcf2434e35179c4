from __future__ import annotations

import datetime as dt

from sqlalchemy import desc, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from server.creditproxy.billing.ledger import CreditBalance, LedgerError, UsageRecord
from server.creditproxy.core.db import create_schema, ledger_session
from server.creditproxy.core.models import CreditBalanceRow, UsageRow


def _aware(ts: dt.datetime) -> dt.datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=dt.UTC)


def _to_balance(row: CreditBalanceRow) -> CreditBalance:
    return CreditBalance(
        user_id=row.user_id,
        period_start=_aware(row.period_start),
        total_cost_cents=int(row.total_cost_cents or 0),
        cap_cents=int(row.cap_cents),
    )


def _current_row(db: Session, user_id: str) -> CreditBalanceRow | None:
    return db.scalar(
        select(CreditBalanceRow)
        .where(CreditBalanceRow.user_id == user_id)
        .order_by(desc(CreditBalanceRow.period_start))
        .limit(1)
    )


class SqlLedger:
    """Credit ledger stored in any SQLAlchemy-supported database."""

    def __init__(self, *, db_url: str) -> None:
        self.db_url = db_url
        create_schema(db_url)

    def get_balance(self, user_id: str) -> CreditBalance | None:
        try:
            with ledger_session(self.db_url) as db:
                row = _current_row(db, user_id)
                return _to_balance(row) if row else None
        except SQLAlchemyError as e:
            raise LedgerError(f"Balance read failed: {e}") from e

    def create_balance(self, user_id: str, *, cap_cents: int) -> CreditBalance:
        try:
            with ledger_session(self.db_url) as db:
                row = CreditBalanceRow(
                    user_id=user_id,
                    period_start=dt.datetime.now(dt.UTC),
                    total_cost_cents=0,
                    cap_cents=cap_cents,
                )
                db.add(row)
                db.flush()
                return _to_balance(row)
        except SQLAlchemyError as e:
            raise LedgerError(f"Balance create failed: {e}") from e

    def increment_total_cost(self, user_id: str, amount_cents: int) -> int:
        try:
            with ledger_session(self.db_url) as db:
                current_id = (
                    select(CreditBalanceRow.id)
                    .where(CreditBalanceRow.user_id == user_id)
                    .order_by(desc(CreditBalanceRow.period_start))
                    .limit(1)
                    .scalar_subquery()
                )
                # The write comes first so the transaction never upgrades from a stale read.
                result = db.execute(
                    update(CreditBalanceRow)
                    .where(CreditBalanceRow.id == current_id)
                    .values(total_cost_cents=CreditBalanceRow.total_cost_cents + int(amount_cents))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise LedgerError(f"No credit balance for user {user_id}")
                row = _current_row(db, user_id)
                return int(row.total_cost_cents or 0)
        except SQLAlchemyError as e:
            raise LedgerError(f"Balance update failed: {e}") from e

    def append_usage(self, record: UsageRecord) -> None:
        try:
            with ledger_session(self.db_url) as db:
                db.add(
                    UsageRow(
                        deployment_id=record.instance_id,
                        user_id=record.user_id,
                        tokens_in=record.tokens_in,
                        tokens_out=record.tokens_out,
                        cost_cents=record.cost_cents,
                        model=record.model,
                        created_at=record.timestamp,
                    )
                )
        except SQLAlchemyError as e:
            raise LedgerError(f"Usage append failed: {e}") from e
