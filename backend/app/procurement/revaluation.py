from __future__ import annotations

from decimal import Decimal

from fastapi import HTTPException

from ..logs import json_log
from ..money import dec
from .costing import final_unit_cost, home_unit_price, line_total


def revalue_lines(lines: list[dict], new_rate: Decimal) -> list[dict]:
    # Redistributed loss (loss_share) rides along untouched.
    new_rate = dec(new_rate)
    out = []
    for ln in lines:
        row = dict(ln)
        row["home_unit_price"] = home_unit_price(row.get("supplier_unit_price"), new_rate)
        row["line_total"] = line_total(row["home_unit_price"], row.get("ordered_qty"))
        row["final_unit_cost"] = final_unit_cost(row)
        out.append(row)
    return out


def apply_rate_change(order: dict, lines: list[dict], new_rate: Decimal, rates) -> tuple[dict, list[dict], dict]:
    """
    Revalue an order at a new exchange rate and publish the rate globally.

    The registry update is deliberate: later orders in the same currency inherit
    the rate. Returns (order, lines, change) where change records old/new rates
    for the audit log and the response summary.
    """
    new_rate = dec(new_rate)
    if new_rate <= 0:
        raise HTTPException(status_code=400, detail="exchange_rate must be > 0")
    order = dict(order)
    old_rate = dec(order.get("exchange_rate"))
    order["exchange_rate"] = new_rate
    lines = revalue_lines(lines, new_rate)

    currency = order.get("currency_code")
    previous_registry_rate = rates.set_rate(currency, new_rate)
    json_log(
        "info",
        "procurement.currency.rate_updated",
        currency=currency,
        old_rate=previous_registry_rate,
        new_rate=new_rate,
        order_id=order.get("id"),
        order_no=order.get("order_no"),
    )
    change = {
        "currency": currency,
        "order_old_rate": old_rate,
        "registry_old_rate": previous_registry_rate,
        "new_rate": new_rate,
    }
    return order, lines, change
