"""
Collaborators the procurement core talks to.

The supplier credit ledger, funding accounts and currency rates belong to other
parts of the system; the core only needs the narrow operations below. The
Pg* implementations run on the caller's cursor so every call joins the
transition's transaction (a rollback undoes ledger and account movements too).
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException

from ..config import settings
from ..money import dec

OVERDRAFT_REJECTED = "overdraft_rejected"
DEBIT_OK = "ok"


class PgSupplierCreditLedger:
    def __init__(self, cur):
        self.cur = cur

    def get_balance(self, supplier_id: str) -> Decimal:
        # Row lock serializes concurrent allocations against the same supplier.
        self.cur.execute(
            """
            SELECT balance
            FROM supplier_credit_balances
            WHERE supplier_id = %s
            FOR UPDATE
            """,
            (supplier_id,),
        )
        row = self.cur.fetchone()
        return dec(row["balance"]) if row else Decimal("0")

    def _post(self, supplier_id: str, kind: str, amount: Decimal, memo: str) -> Decimal:
        signed = amount if kind == "credit" else -amount
        self.cur.execute(
            """
            INSERT INTO supplier_credit_balances (supplier_id, balance)
            VALUES (%s, %s)
            ON CONFLICT (supplier_id) DO UPDATE
            SET balance = supplier_credit_balances.balance + EXCLUDED.balance,
                updated_at = now()
            RETURNING balance
            """,
            (supplier_id, signed),
        )
        balance_after = dec(self.cur.fetchone()["balance"])
        self.cur.execute(
            """
            INSERT INTO supplier_credit_entries (id, supplier_id, kind, amount, balance_after, memo)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
            """,
            (supplier_id, kind, amount, balance_after, memo),
        )
        return balance_after

    def credit(self, supplier_id: str, amount: Decimal, memo: str) -> Decimal:
        return self._post(supplier_id, "credit", dec(amount), memo)

    def debit(self, supplier_id: str, amount: Decimal, memo: str) -> Decimal:
        return self._post(supplier_id, "debit", dec(amount), memo)


class PgFundingAccounts:
    def __init__(self, cur, default_overdraft_limit: Optional[Decimal] = None):
        self.cur = cur
        self.default_overdraft_limit = default_overdraft_limit

    def _lock(self, account_id: str) -> dict:
        self.cur.execute(
            """
            SELECT id, name, current_balance, overdraft_limit, is_active
            FROM funding_accounts
            WHERE id = %s
            FOR UPDATE
            """,
            (account_id,),
        )
        row = self.cur.fetchone()
        if not row or not row.get("is_active", True):
            raise HTTPException(status_code=404, detail="payment account not found")
        return row

    def overdraft_limit(self, account_id: str) -> Optional[Decimal]:
        row = self._lock(account_id)
        if row.get("overdraft_limit") is not None:
            return dec(row["overdraft_limit"])
        return self.default_overdraft_limit

    def get_balance(self, account_id: str) -> Decimal:
        return dec(self._lock(account_id)["current_balance"])

    def debit(self, account_id: str, amount: Decimal) -> str:
        row = self._lock(account_id)
        limit = dec(row["overdraft_limit"]) if row.get("overdraft_limit") is not None else self.default_overdraft_limit
        after = dec(row["current_balance"]) - dec(amount)
        if limit is not None and after < -limit:
            return OVERDRAFT_REJECTED
        self.cur.execute(
            """
            UPDATE funding_accounts
            SET current_balance = current_balance - %s,
                updated_at = now()
            WHERE id = %s
            """,
            (amount, account_id),
        )
        return DEBIT_OK


class PgCurrencyRates:
    def __init__(self, cur):
        self.cur = cur

    def get_rate(self, code: str) -> Optional[Decimal]:
        self.cur.execute("SELECT rate FROM currency_rates WHERE code = %s", (code,))
        row = self.cur.fetchone()
        return dec(row["rate"]) if row else None

    def set_rate(self, code: str, rate: Decimal) -> Optional[Decimal]:
        # Last write wins; returns the previous rate for the audit trail.
        previous = self.get_rate(code)
        self.cur.execute(
            """
            INSERT INTO currency_rates (code, rate, is_active)
            VALUES (%s, %s, true)
            ON CONFLICT (code) DO UPDATE
            SET rate = EXCLUDED.rate, is_active = true, updated_at = now()
            """,
            (code, rate),
        )
        return previous


@dataclass(frozen=True)
class Ledgers:
    credits: Any
    accounts: Any
    rates: Any


def pg_ledgers(cur) -> Ledgers:
    return Ledgers(
        credits=PgSupplierCreditLedger(cur),
        accounts=PgFundingAccounts(cur, default_overdraft_limit=settings.funding_overdraft_limit),
        rates=PgCurrencyRates(cur),
    )
