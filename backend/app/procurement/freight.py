from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from ..money import dec
from .costing import final_unit_cost

GRAMS_PER_KG = Decimal("1000")


def freight_qty(line: dict, use_received: bool) -> Decimal:
    ordered = dec(line.get("ordered_qty"))
    if use_received and line.get("received_qty") is not None:
        # Over-received units ride free: freight is charged on at most the ordered qty.
        return min(dec(line.get("received_qty")), ordered)
    return ordered


def line_weight_kg(line: dict, qty: Decimal) -> Decimal:
    per_unit_g = dec(line.get("unit_weight")) + dec(line.get("extra_weight"))
    return per_unit_g * qty / GRAMS_PER_KG


def apportion_freight(
    lines: list[dict],
    rate_per_kg: Optional[Decimal],
    *,
    total_weight: Optional[Decimal] = None,
    use_received: bool = False,
) -> tuple[list[dict], Decimal]:
    """
    Spread a per-kg shipping rate over lines by weight.

    Lines without a weight fall back to an equal split of the order's total_weight
    (kg). When rate_per_kg is None each line keeps its own stored rate.
    Returns (lines, total_shipping_cost); inputs are not mutated.
    """
    if rate_per_kg is not None and dec(rate_per_kg) < 0:
        raise HTTPException(status_code=400, detail="shipping_rate_per_kg must be >= 0")
    total_weight = dec(total_weight)
    count = len(lines)
    out = []
    total_shipping = Decimal("0")
    for ln in lines:
        row = dict(ln)
        rate = dec(rate_per_kg) if rate_per_kg is not None else dec(row.get("shipping_rate_per_kg"))
        weight_kg = line_weight_kg(row, freight_qty(row, use_received))
        if weight_kg <= 0 and total_weight > 0 and count > 0:
            weight_kg = total_weight / count
        row["shipping_rate_per_kg"] = rate
        row["shipping_cost"] = weight_kg * rate
        row["final_unit_cost"] = final_unit_cost(row)
        total_shipping += row["shipping_cost"]
        out.append(row)
    return out, total_shipping
