"""
Purchase order state machine.

Each transition runs its side effect (payment, freight, reconciliation, stocking,
loss redistribution), appends one status event and writes the outbox/audit rows,
all on the caller's cursor inside a single transaction. Any exception leaves the
order exactly as it was.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from fastapi import HTTPException

from ..config import settings
from ..logs import json_log
from ..money import dec, q_home
from . import store
from .costing import order_cost_summary
from .freight import apportion_freight
from .history import append_status_event
from .ledgers import pg_ledgers
from .payment import allocate_payment
from .reconciliation import reconcile_receipt, redistribute_loss, settle_refund
from .revaluation import apply_rate_change

FLOW = (
    "draft",
    "payment_confirmed",
    "supplier_dispatched",
    "warehouse_received",
    "shipped_to_destination",
    "arrived_at_destination",
    "in_transit_to_hub",
    "received_at_hub",
    "partially_completed",
    "completed",
    "lost",
)

TERMINAL = frozenset({"completed", "lost"})

TRANSITIONS = {
    "draft": {"payment_confirmed", "lost"},
    "payment_confirmed": {"supplier_dispatched", "lost"},
    "supplier_dispatched": {"warehouse_received", "lost"},
    "warehouse_received": {"shipped_to_destination", "lost"},
    "shipped_to_destination": {"arrived_at_destination", "lost"},
    "arrived_at_destination": {"in_transit_to_hub", "lost"},
    "in_transit_to_hub": {"received_at_hub", "partially_completed", "lost"},
    "received_at_hub": {"completed", "lost"},
    "partially_completed": {"completed", "lost"},
    "completed": set(),
    "lost": set(),
}

EVENT_PAYMENT_CONFIRMED = "purchase.payment_confirmed"
EVENT_REFUND_ISSUED = "purchase.refund_issued"
EVENT_STOCK_RECEIVED = "purchase.stock_received"


# Stable codes for rejected transitions, matched on the HTTPException detail prefix.
REJECTION_REASONS = (
    ("invalid status", "invalid_status"),
    ("invalid transition", "invalid_transition"),
    ("order is closed", "order_closed"),
    ("order is already", "already_in_status"),
    ("order not found", "order_not_found"),
    ("order has no lines", "order_has_no_lines"),
    ("payment account is required", "payment_account_required"),
    ("payment account not found", "payment_account_not_found"),
    ("overdraft rejected", "overdraft_rejected"),
    ("exchange_rate", "invalid_exchange_rate"),
    ("receipts are required", "receipts_required"),
    ("received quantities are required", "receipts_required"),
    ("unknown order line", "unknown_order_line"),
)


def rejection_reason(status_code: int, detail) -> str:
    text = str(detail or "")
    for prefix, code in REJECTION_REASONS:
        if text.startswith(prefix):
            return code
    if status_code == 409:
        return "policy_rejected"
    if status_code == 404:
        return "not_found"
    return "validation_failed"


def allowed_targets(status: str, *, permissive: bool = False) -> set:
    if status in TERMINAL:
        return set()
    if permissive and status != "draft":
        # Legacy mode: any move is accepted, except back to draft.
        return {s for s in FLOW if s not in {status, "draft"}}
    return set(TRANSITIONS.get(status) or ())


def assert_transition(current: str, target: str, *, permissive: bool = False):
    if target not in FLOW:
        raise HTTPException(status_code=400, detail="invalid status")
    if current in TERMINAL:
        raise HTTPException(status_code=409, detail=f"order is closed ({current})")
    if target == current:
        raise HTTPException(status_code=409, detail=f"order is already {current}")
    if target not in allowed_targets(current, permissive=permissive):
        raise HTTPException(status_code=409, detail=f"invalid transition: {current} -> {target}")


def _clean(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    return str(v).strip() or None


def _keep(new: Optional[str], old: Optional[str]) -> Optional[str]:
    v = _clean(new)
    return v if v is not None else old


def apply_transition(
    order: dict,
    lines: list[dict],
    data,
    ledgers,
    *,
    next_order_no: Callable[[], str],
    today: Optional[date] = None,
    threshold_pct: Optional[Decimal] = None,
    lead_days: Optional[int] = None,
    permissive: Optional[bool] = None,
) -> dict:
    """
    Compute a transition's effect on in-memory rows.

    Collaborator calls (ledger, funding account, rate registry) happen here; DB
    writes of the order itself are left to transition_order. Returns a dict with
    order, lines, events, summary, message and comment.
    """
    today = today or date.today()
    threshold_pct = settings.refund_loss_threshold_pct if threshold_pct is None else threshold_pct
    lead_days = settings.default_lead_days if lead_days is None else lead_days
    permissive = settings.permissive_transitions if permissive is None else permissive

    current = order["status"]
    target = data.status
    assert_transition(current, target, permissive=permissive)

    order = dict(order)
    lines = [dict(l) for l in lines]
    events = []
    summary: dict = {}
    message = f"Status updated to {target}"
    comment = data.comment

    if current == "draft" and target == "payment_confirmed":
        if not lines:
            raise HTTPException(status_code=400, detail="order has no lines")
        if not _clean(data.payment_account_id):
            raise HTTPException(status_code=400, detail="payment account is required to confirm order")
        if data.exchange_rate is not None and dec(data.exchange_rate) <= 0:
            raise HTTPException(status_code=400, detail="exchange_rate must be > 0")

        if not _clean(order.get("order_no")):
            order["order_no"] = next_order_no()
        if not order.get("expected_delivery_date"):
            order["expected_delivery_date"] = today + timedelta(days=lead_days)
        if data.exchange_rate is not None:
            order, lines, change = apply_rate_change(order, lines, data.exchange_rate, ledgers.rates)
            summary["currency"] = change

        order, breakdown = allocate_payment(order, _clean(data.payment_account_id), ledgers)
        summary["payment"] = breakdown
        events.append(
            (
                EVENT_PAYMENT_CONFIRMED,
                {
                    "purchase_order_id": str(order["id"]),
                    "order_no": order["order_no"],
                    "supplier_id": str(order["supplier_id"]),
                    "payment_account_id": order["payment_account_id"],
                    "payment_amount": breakdown["total"],
                    "supplier_credit_used": breakdown["from_supplier_credit"],
                    "funding_account_amount": breakdown["from_funding_account"],
                },
            )
        )
        message = f"Order confirmed and payment processed. PO number: {order['order_no']}"
        if "currency" in summary:
            message += f" | {order.get('currency_code')} exchange rate updated to {q_home(dec(data.exchange_rate))}"

    elif current == "payment_confirmed" and target == "supplier_dispatched":
        order["courier_name"] = _keep(data.courier_name, order.get("courier_name"))
        order["tracking_number"] = _keep(data.tracking_number, order.get("tracking_number"))
        message = f"Supplier dispatch recorded. Courier: {order.get('courier_name') or '-'}"

    elif current == "warehouse_received" and target == "shipped_to_destination":
        order["lot_number"] = _keep(data.lot_number, order.get("lot_number"))
        message = f"Shipped to destination. Lot number: {order.get('lot_number') or '-'}"

    elif current == "shipped_to_destination" and target == "arrived_at_destination":
        if data.shipping_method is not None:
            order["shipping_method"] = data.shipping_method
        if data.total_weight is not None:
            if dec(data.total_weight) < 0:
                raise HTTPException(status_code=400, detail="total_weight must be >= 0")
            order["total_weight"] = dec(data.total_weight)
        lines, total_shipping = apportion_freight(
            lines,
            data.shipping_rate_per_kg,
            total_weight=order.get("total_weight"),
            use_received=False,
        )
        order["total_shipping_cost"] = total_shipping
        summary["freight"] = {"total_shipping_cost": total_shipping, "total_weight": order.get("total_weight")}
        message = f"Goods arrived at destination. Total shipping cost: {q_home(total_shipping)}"

    elif current == "arrived_at_destination" and target == "in_transit_to_hub":
        order["destination_tracking_no"] = _keep(data.destination_tracking_no, order.get("destination_tracking_no"))
        message = f"In transit to hub. Tracking: {order.get('destination_tracking_no') or '-'}"

    elif current == "in_transit_to_hub" and target in {"received_at_hub", "partially_completed"}:
        if not data.receipts:
            raise HTTPException(status_code=400, detail="receipts are required to receive an order")
        lines, result = reconcile_receipt(order, lines, data.receipts, threshold_pct=threshold_pct)
        order["total_weight"] = result["total_weight"]
        order["total_shipping_cost"] = result["total_shipping_cost"]
        order, refund = settle_refund(order, result["total_refund"], ledgers.credits, today=today)
        notes = list(result["notes"])
        if refund:
            order["refunded_at"] = datetime.now(timezone.utc)
            notes.append({"info": f"Supplier credit auto-credited with {refund['amount']} (credit note {refund['credit_note_no']})."})
            events.append(
                (
                    EVENT_REFUND_ISSUED,
                    {
                        "purchase_order_id": str(order["id"]),
                        "order_no": order.get("order_no"),
                        "supplier_id": str(order["supplier_id"]),
                        "credit_note_no": refund["credit_note_no"],
                        "amount": refund["amount"],
                    },
                )
            )
        order["receiving_notes"] = notes
        summary["receipt"] = {k: v for k, v in result.items() if k != "notes"}
        summary["refund"] = refund

        units = f"Received {result['total_received_qty']}/{result['total_ordered_qty']} units"
        lost = f"Lost: {result['total_lost_qty']} units ({result['total_lost_percentage']}%)"
        if not _clean(comment):
            comment = f"{units}. {lost}. Refund: {result['total_refund']}."
        message = f"Received at hub. {units} ({result['total_lost_percentage']}% lost)."
        if refund:
            message += f" Auto-credited {refund['amount']} to supplier credit."

    elif target == "completed" and current in {"received_at_hub", "partially_completed"}:
        stocked = []
        for ln in lines:
            received = dec(ln.get("received_qty"))
            if received > 0:
                ln["stocked_qty"] = received
                stocked.append({"line_id": str(ln["id"]), "item_id": ln.get("item_id"), "qty": received, "unit_cost": ln.get("final_unit_cost")})
        events.append(
            (
                EVENT_STOCK_RECEIVED,
                {"purchase_order_id": str(order["id"]), "order_no": order.get("order_no"), "lines": stocked},
            )
        )
        summary["stock"] = {"lines": len(stocked), "qty": sum((s["qty"] for s in stocked), Decimal("0"))}
        if not _clean(comment):
            comment = "Approved and stocked."
        message = "Order approved and stock posted"

    elif target == "lost":
        if data.lost_items:
            lines, result = redistribute_loss(lines, data.lost_items)
            summary["loss"] = result
            message = f"Order marked lost. Lost value {q_home(result['total_lost_value'])} redistributed over surviving lines"
        else:
            message = "Order marked lost"

    order["status"] = target
    summary["costs"] = order_cost_summary(order, lines)
    return {
        "order": order,
        "lines": lines,
        "events": events,
        "summary": summary,
        "message": message,
        "comment": comment,
    }


def transition_order(cur, order_id: str, data, user_id: Optional[str], ledgers=None) -> dict:
    before = store.lock_order(cur, order_id)
    lines_before = store.load_lines(cur, order_id)
    ledgers = ledgers or pg_ledgers(cur)

    out = apply_transition(
        before,
        lines_before,
        data,
        ledgers,
        next_order_no=lambda: store.next_doc_no(cur, "PO"),
    )
    order = out["order"]
    changed = store.save_order(cur, before, order)
    store.save_lines(cur, lines_before, out["lines"])
    entry = append_status_event(cur, order_id, before["status"], order["status"], out["comment"], user_id)
    for event_type, payload in out["events"]:
        store.emit_event(cur, event_type, order_id, payload)
    store.audit(
        cur,
        user_id,
        "purchase_order_status",
        order_id,
        {"from": before["status"], "to": order["status"], "changed": changed},
    )
    json_log(
        "info",
        "procurement.order.transitioned",
        order_id=order_id,
        order_no=order.get("order_no"),
        from_status=before["status"],
        to_status=order["status"],
        user_id=user_id,
    )
    return {
        "order": order,
        "lines": out["lines"],
        "history": entry,
        "summary": out["summary"],
        "message": out["message"],
    }


def apply_order_edit(order: dict, lines: list[dict], data, rates) -> dict:
    """
    Field edits on a confirmed, still-open order.

    A new exchange rate revalues every line (and the global registry); a new
    per-kg freight rate re-runs apportionment on the best-known quantities.
    """
    if order["status"] in TERMINAL:
        raise HTTPException(status_code=409, detail=f"order is closed ({order['status']})")
    if order["status"] == "draft":
        raise HTTPException(status_code=409, detail="draft orders are edited through the draft endpoint")

    order = dict(order)
    lines = [dict(l) for l in lines]
    summary: dict = {}

    for field in ("courier_name", "tracking_number", "lot_number", "destination_tracking_no"):
        v = getattr(data, field, None)
        if v is not None:
            order[field] = _clean(v)
    if data.shipping_method is not None:
        order["shipping_method"] = data.shipping_method
    if data.expected_delivery_date is not None:
        order["expected_delivery_date"] = data.expected_delivery_date
    if data.total_weight is not None:
        if dec(data.total_weight) < 0:
            raise HTTPException(status_code=400, detail="total_weight must be >= 0")
        order["total_weight"] = dec(data.total_weight)

    if data.exchange_rate is not None:
        order, lines, change = apply_rate_change(order, lines, data.exchange_rate, rates)
        summary["currency"] = change

    if data.shipping_rate_per_kg is not None:
        use_received = any(l.get("received_qty") is not None for l in lines)
        lines, total_shipping = apportion_freight(
            lines,
            data.shipping_rate_per_kg,
            total_weight=order.get("total_weight"),
            use_received=use_received,
        )
        order["total_shipping_cost"] = total_shipping
        summary["freight"] = {"total_shipping_cost": total_shipping, "total_weight": order.get("total_weight")}

    summary["costs"] = order_cost_summary(order, lines)
    return {"order": order, "lines": lines, "summary": summary}


def edit_order(cur, order_id: str, data, user_id: Optional[str], ledgers=None) -> dict:
    before = store.lock_order(cur, order_id)
    lines_before = store.load_lines(cur, order_id)
    ledgers = ledgers or pg_ledgers(cur)

    out = apply_order_edit(before, lines_before, data, ledgers.rates)
    changed = store.save_order(cur, before, out["order"])
    store.save_lines(cur, lines_before, out["lines"])
    details = {"changed": changed}
    if "currency" in out["summary"]:
        details["currency"] = out["summary"]["currency"]
    store.audit(cur, user_id, "purchase_order_updated", order_id, details)
    return out
