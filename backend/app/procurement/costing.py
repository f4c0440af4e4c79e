from __future__ import annotations

from decimal import Decimal

from fastapi import HTTPException

from ..money import dec


def validate_line_input(qty: Decimal, unit_price: Decimal, label: str = "line"):
    if dec(qty) < 0:
        raise HTTPException(status_code=400, detail=f"{label}: quantity must be >= 0")
    if dec(unit_price) < 0:
        raise HTTPException(status_code=400, detail=f"{label}: unit price must be >= 0")


def home_unit_price(supplier_unit_price: Decimal, exchange_rate: Decimal) -> Decimal:
    return dec(supplier_unit_price) * dec(exchange_rate)


def line_total(home_price: Decimal, ordered_qty: Decimal) -> Decimal:
    return dec(home_price) * dec(ordered_qty)


def final_unit_cost(line: dict) -> Decimal:
    # Landed cost: purchase value + freight + any redistributed loss.
    return dec(line.get("line_total")) + dec(line.get("shipping_cost")) + dec(line.get("loss_share"))


def costed_draft_lines(lines_in, exchange_rate: Decimal):
    """
    Normalize draft lines and derive home-currency costs.

    Returns (lines, total_amount) where total_amount is in the supplier currency.
    """
    exchange_rate = dec(exchange_rate)
    if exchange_rate < 0:
        raise HTTPException(status_code=400, detail="exchange_rate must be >= 0")
    out = []
    total_amount = Decimal("0")
    for idx, ln in enumerate(lines_in or [], start=1):
        qty = dec(getattr(ln, "quantity", 0))
        price = dec(getattr(ln, "supplier_unit_price", 0))
        validate_line_input(qty, price, label=f"line {idx}")
        unit_home = home_unit_price(price, exchange_rate)
        total_home = line_total(unit_home, qty)
        total_amount += price * qty
        row = {
            "item_id": getattr(ln, "item_id"),
            "supplier_unit_price": price,
            "ordered_qty": qty,
            "home_unit_price": unit_home,
            "line_total": total_home,
            "unit_weight": dec(getattr(ln, "unit_weight", 0)),
            "extra_weight": dec(getattr(ln, "extra_weight", 0)),
            "shipping_rate_per_kg": Decimal("0"),
            "shipping_cost": Decimal("0"),
            "loss_share": Decimal("0"),
        }
        row["final_unit_cost"] = final_unit_cost(row)
        out.append(row)
    return out, total_amount


def surviving_qty(line: dict) -> Decimal:
    # Units actually on hand. A line with no recorded receipt holds none.
    return max(Decimal("0"), dec(line.get("received_qty")))


def order_cost_summary(order: dict, lines: list[dict]) -> dict:
    rate = dec(order.get("exchange_rate"))
    supplier_total = sum((dec(l.get("supplier_unit_price")) * dec(l.get("ordered_qty")) for l in lines), Decimal("0"))
    home_total = supplier_total * rate
    shipping_total = sum((dec(l.get("shipping_cost")) for l in lines), Decimal("0"))
    lost_value = sum((dec(l.get("lost_value")) for l in lines), Decimal("0"))
    ordered_qty = sum((dec(l.get("ordered_qty")) for l in lines), Decimal("0"))
    lost_qty = sum((dec(l.get("lost_qty")) for l in lines), Decimal("0"))
    effective_qty = ordered_qty - lost_qty
    landed_total = sum((final_unit_cost(l) for l in lines), Decimal("0"))
    avg = (landed_total / effective_qty) if effective_qty > 0 else Decimal("0")
    return {
        "total_supplier_cost": supplier_total,
        "total_home_cost": home_total,
        "total_shipping_cost": shipping_total,
        "total_lost_value": lost_value,
        "total_ordered_qty": ordered_qty,
        "total_lost_qty": lost_qty,
        "effective_qty": effective_qty,
        "total_landed_cost": landed_total,
        "average_landed_cost_per_unit": avg,
    }
