from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from ..logs import json_log
from ..money import dec, q_home
from .ledgers import OVERDRAFT_REJECTED


def payment_breakdown(order_total_home: Decimal, supplier_credit_balance: Decimal) -> dict:
    # Supplier credit first, funding account covers the remainder.
    total = q_home(dec(order_total_home))
    from_credit = q_home(min(total, max(Decimal("0"), dec(supplier_credit_balance))))
    from_account = total - from_credit
    return {
        "from_supplier_credit": from_credit,
        "from_funding_account": from_account,
        "total": total,
    }


def check_overdraft(account_balance: Decimal, draw: Decimal, overdraft_limit: Optional[Decimal]):
    if overdraft_limit is None:
        return
    after = dec(account_balance) - dec(draw)
    if after < -dec(overdraft_limit):
        raise HTTPException(status_code=409, detail="overdraft rejected: payment exceeds funding account overdraft limit")


def payment_memo(order_no: str, breakdown: dict) -> str:
    parts = [f"Payment for {order_no}"]
    if breakdown["from_supplier_credit"] > 0:
        parts.append(f"supplier credit used: {breakdown['from_supplier_credit']}")
    if breakdown["from_funding_account"] > 0:
        parts.append(f"paid from funding account: {breakdown['from_funding_account']}")
    return " - ".join(parts)


def allocate_payment(order: dict, account_id: str, ledgers) -> tuple[dict, dict]:
    """
    Settle an order's home-currency obligation from supplier credit and a funding account.

    All checks happen before the first debit. Must run inside the caller's
    transaction: a rejected funding-account debit raises, and the rollback also
    reverses the supplier-credit debit.
    """
    if not (account_id or "").strip():
        raise HTTPException(status_code=400, detail="payment account is required to confirm order")

    total_home = dec(order.get("total_amount")) * dec(order.get("exchange_rate"))
    credit_balance = ledgers.credits.get_balance(order["supplier_id"])
    account_balance = ledgers.accounts.get_balance(account_id)
    breakdown = payment_breakdown(total_home, credit_balance)
    check_overdraft(account_balance, breakdown["from_funding_account"], ledgers.accounts.overdraft_limit(account_id))

    memo = payment_memo(order.get("order_no") or str(order.get("id")), breakdown)
    if breakdown["from_supplier_credit"] > 0:
        ledgers.credits.debit(order["supplier_id"], breakdown["from_supplier_credit"], memo)
    if breakdown["from_funding_account"] > 0:
        if ledgers.accounts.debit(account_id, breakdown["from_funding_account"]) == OVERDRAFT_REJECTED:
            raise HTTPException(status_code=409, detail="overdraft rejected: payment exceeds funding account overdraft limit")

    order = dict(order)
    order["payment_account_id"] = account_id
    order["payment_amount"] = breakdown["total"]
    order["supplier_credit_used"] = breakdown["from_supplier_credit"]
    order["funding_account_amount"] = breakdown["from_funding_account"]
    json_log(
        "info",
        "procurement.payment.allocated",
        order_id=order.get("id"),
        order_no=order.get("order_no"),
        payment_account_id=account_id,
        supplier_credit_before=credit_balance,
        funding_balance_before=account_balance,
        **breakdown,
    )
    return order, {**breakdown, "funding_balance_after": account_balance - breakdown["from_funding_account"]}
