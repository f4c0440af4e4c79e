from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from ..logs import json_log
from ..money import dec, q_home, q_pct
from .costing import final_unit_cost, surviving_qty
from .freight import GRAMS_PER_KG, apportion_freight


def loss_metrics(ordered_qty: Decimal, received_qty: Decimal) -> dict:
    ordered = dec(ordered_qty)
    received = dec(received_qty)
    lost = max(Decimal("0"), ordered - received)
    found = max(Decimal("0"), received - ordered)
    lost_pct = (lost / ordered * Decimal("100")) if ordered > 0 else Decimal("0")
    found_pct = (found / ordered * Decimal("100")) if ordered > 0 else Decimal("0")
    return {"lost_qty": lost, "found_qty": found, "lost_pct": lost_pct, "found_pct": found_pct}


def refund_eligible(lost_pct: Decimal, threshold_pct: Decimal) -> bool:
    # Strictly above the threshold; judged per line, never on the order average.
    return dec(lost_pct) > dec(threshold_pct)


def credit_note_no(order_no: str, on: date) -> str:
    return f"CN-{order_no}-{on.strftime('%Y%m%d')}"


def _receipt_field(rec, name: str):
    if isinstance(rec, dict):
        return rec.get(name)
    return getattr(rec, name, None)


def reconcile_receipt(order: dict, lines: list[dict], receipts, *, threshold_pct: Decimal) -> tuple[list[dict], dict]:
    """
    Compare ordered vs received quantities and work out refunds and freight.

    `receipts` carries one entry per order line: id, received_quantity (defaults
    to the ordered qty), unit_weight, extra_weight and an optional per-line
    shipping_rate_per_kg. Returns (lines, result); no ledger is touched here.
    """
    by_id = {}
    for rec in receipts or []:
        lid = str(_receipt_field(rec, "id") or "")
        if not lid:
            raise HTTPException(status_code=400, detail="receipt line id is required")
        by_id[lid] = rec

    known = {str(l["id"]) for l in lines}
    unknown = sorted(set(by_id) - known)
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown order line: {unknown[0]}")
    missing = sorted(known - set(by_id))
    if missing:
        raise HTTPException(status_code=400, detail="received quantities are required for every order line")

    rate = dec(order.get("exchange_rate"))
    notes = []
    updated = []
    total_refund = Decimal("0")
    total_weight_g = Decimal("0")
    total_ordered = Decimal("0")
    total_received = Decimal("0")
    for ln in lines:
        rec = by_id[str(ln["id"])]
        row = dict(ln)
        ordered = dec(row.get("ordered_qty"))
        received_raw = _receipt_field(rec, "received_quantity")
        received = ordered if received_raw is None else dec(received_raw)
        unit_weight = dec(_receipt_field(rec, "unit_weight"))
        extra_weight = dec(_receipt_field(rec, "extra_weight"))
        if received < 0 or unit_weight < 0 or extra_weight < 0:
            raise HTTPException(status_code=400, detail="received quantity and weights must be >= 0")
        line_rate = _receipt_field(rec, "shipping_rate_per_kg")
        if line_rate is not None:
            if dec(line_rate) < 0:
                raise HTTPException(status_code=400, detail="shipping_rate_per_kg must be >= 0")
            row["shipping_rate_per_kg"] = dec(line_rate)

        m = loss_metrics(ordered, received)
        row["received_qty"] = received
        row["lost_qty"] = m["lost_qty"]
        row["unit_weight"] = unit_weight
        row["extra_weight"] = extra_weight

        line_refund = Decimal("0")
        if m["lost_qty"] > 0 and refund_eligible(m["lost_pct"], threshold_pct):
            line_refund = m["lost_qty"] * dec(row.get("supplier_unit_price")) * rate
            total_refund += line_refund
        if m["found_qty"] > 0:
            json_log(
                "warning",
                "procurement.receipt.over_received",
                order_id=order.get("id"),
                order_no=order.get("order_no"),
                line_id=row["id"],
                ordered_qty=ordered,
                received_qty=received,
            )

        total_weight_g += (unit_weight + extra_weight) * received
        total_ordered += ordered
        total_received += received
        notes.append(
            {
                "line_id": str(row["id"]),
                "item_id": row.get("item_id"),
                "ordered_qty": ordered,
                "received_qty": received,
                "lost_qty": m["lost_qty"],
                "found_qty": m["found_qty"],
                "lost_percentage": q_pct(m["lost_pct"]),
                "found_percentage": q_pct(m["found_pct"]),
                "refund_eligible": line_refund > 0,
                "line_refund": q_home(line_refund),
                "supplier_unit_price": row.get("supplier_unit_price"),
                "home_unit_price": row.get("home_unit_price"),
                "line_total": row.get("line_total"),
            }
        )
        updated.append(row)

    total_weight_kg = total_weight_g / GRAMS_PER_KG
    updated, total_shipping = apportion_freight(updated, None, total_weight=total_weight_kg, use_received=True)
    cost_by_line = {str(r["id"]): r for r in updated}
    for n in notes:
        r = cost_by_line[n["line_id"]]
        n["shipping_cost"] = r["shipping_cost"]
        n["final_unit_cost"] = r["final_unit_cost"]

    total_lost = max(Decimal("0"), total_ordered - total_received)
    lost_pct = (total_lost / total_ordered * Decimal("100")) if total_ordered > 0 else Decimal("0")
    return updated, {
        "total_refund": q_home(total_refund),
        "total_weight": total_weight_kg,
        "total_shipping_cost": total_shipping,
        "total_ordered_qty": total_ordered,
        "total_received_qty": total_received,
        "total_lost_qty": total_lost,
        "total_lost_percentage": q_pct(lost_pct),
        "notes": notes,
    }


def settle_refund(order: dict, total_refund: Decimal, credits, *, today: date) -> tuple[dict, Optional[dict]]:
    # Auto-credit the supplier and issue a credit note; nothing happens for a zero refund.
    order = dict(order)
    order["refund_amount"] = dec(total_refund)
    if dec(total_refund) <= 0:
        return order, None
    order_no = order.get("order_no") or str(order.get("id"))
    memo = f"Auto-credit for PO {order_no} - refund for items with loss above threshold (total refund: {total_refund})"
    credits.credit(order["supplier_id"], dec(total_refund), memo)
    order["refund_auto_credited"] = True
    order["credit_note_no"] = credit_note_no(order_no, today)
    json_log(
        "info",
        "procurement.refund.credited",
        order_id=order.get("id"),
        order_no=order_no,
        supplier_id=order["supplier_id"],
        amount=total_refund,
        credit_note_no=order["credit_note_no"],
    )
    return order, {"credit_note_no": order["credit_note_no"], "amount": dec(total_refund), "memo": memo}


def _mark_field(mark, name: str):
    if isinstance(mark, dict):
        return mark.get(name)
    return getattr(mark, name, None)


def redistribute_loss(lines: list[dict], marks) -> tuple[list[dict], dict]:
    """
    Spread the value of explicitly lost units over the surviving lines.

    Each line with a positive received_qty absorbs total_lost_value in proportion to its line_total
    against the whole order's line_total. The supplier ledger is not touched.
    """
    by_id = {str(l["id"]): dict(l) for l in lines}
    total_lost_value = Decimal("0")
    marked = 0
    for mark in marks or []:
        lid = str(_mark_field(mark, "id") or "")
        if lid not in by_id:
            raise HTTPException(status_code=400, detail=f"unknown order line: {lid}")
        lost_qty = dec(_mark_field(mark, "lost_quantity"))
        if lost_qty < 0:
            raise HTTPException(status_code=400, detail="lost_quantity must be >= 0")
        if lost_qty == 0:
            continue
        row = by_id[lid]
        ordered = dec(row.get("ordered_qty"))
        given_price = _mark_field(mark, "lost_item_price")
        lost_value = dec(given_price) if given_price is not None else lost_qty * dec(row.get("home_unit_price"))
        row["lost_qty"] = lost_qty
        row["lost_value"] = lost_value
        row["received_qty"] = max(Decimal("0"), ordered - lost_qty)
        total_lost_value += lost_value
        marked += 1

    out = [by_id[str(l["id"])] for l in lines]
    grand_total = sum((dec(r.get("line_total")) for r in out), Decimal("0"))
    if total_lost_value > 0 and grand_total > 0:
        for r in out:
            if surviving_qty(r) > 0:
                share = dec(r.get("line_total")) / grand_total
                r["loss_share"] = dec(r.get("loss_share")) + total_lost_value * share
                r["final_unit_cost"] = final_unit_cost(r)
    return out, {"marked_lines": marked, "total_lost_value": total_lost_value}
