from fastapi import APIRouter, Depends, HTTPException, Query
from datetime import date
from decimal import Decimal
from typing import Optional

from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..money import dec
from ..procurement import store
from ..procurement.costing import costed_draft_lines, order_cost_summary
from ..procurement.history import list_status_events
from ..procurement.ledgers import PgCurrencyRates
from ..procurement.lifecycle import FLOW, allowed_targets, edit_order, rejection_reason, transition_order
from ..procurement.revaluation import revalue_lines
from ..procurement.schemas import (
    ApproveStockIn,
    PurchaseOrderDraftIn,
    PurchaseOrderDraftUpdateIn,
    PurchaseOrderUpdateIn,
    TransitionIn,
)

router = APIRouter(prefix="/purchases/orders", tags=["purchases"])

ACTIVE_STATUSES = (
    "payment_confirmed",
    "supplier_dispatched",
    "warehouse_received",
    "shipped_to_destination",
    "arrived_at_destination",
    "in_transit_to_hub",
)


def _order_payload(order: dict, lines: list) -> dict:
    return {
        "order": order,
        "lines": lines,
        "summary": order_cost_summary(order, lines),
        "allowed_transitions": sorted(allowed_targets(order["status"], permissive=settings.permissive_transitions)),
    }


@router.get("", dependencies=[Depends(require_permission("purchases:read"))])
def list_purchase_orders(
    q: str = Query("", description="Search order no"),
    status: str = Query("", description="Filter by status"),
    supplier_id: str = Query("", description="Filter by supplier id"),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
):
    st = (status or "").strip().lower()
    if st and st != "all" and st not in FLOW:
        raise HTTPException(status_code=400, detail="invalid status")
    qq = (q or "").strip()
    sid = (supplier_id or "").strip()

    with get_conn() as conn:
        with conn.cursor() as cur:
            sql = """
                SELECT po.id, po.order_no, po.status, po.supplier_id, po.currency_code,
                       po.order_date, po.expected_delivery_date, po.exchange_rate,
                       po.total_amount, po.total_shipping_cost, po.payment_amount,
                       po.refund_amount, po.credit_note_no, po.created_at,
                       (SELECT COUNT(*) FROM purchase_order_lines l WHERE l.purchase_order_id = po.id) AS line_count
                FROM purchase_orders po
                WHERE 1=1
            """
            params: list = []
            if st and st != "all":
                sql += " AND po.status = %s"
                params.append(st)
            if sid:
                sql += " AND po.supplier_id = %s"
                params.append(sid)
            if qq:
                sql += " AND COALESCE(po.order_no, '') ILIKE %s"
                params.append(f"%{qq}%")
            if from_date:
                sql += " AND po.order_date >= %s"
                params.append(from_date)
            if to_date:
                sql += " AND po.order_date <= %s"
                params.append(to_date)
            sql += " ORDER BY po.created_at DESC LIMIT %s"
            params.append(limit)
            cur.execute(sql, params)
            return {"orders": cur.fetchall()}


@router.get("/stats", dependencies=[Depends(require_permission("purchases:read"))])
def purchase_order_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS total_orders,
                       COUNT(*) FILTER (WHERE status = 'draft') AS draft_orders,
                       COUNT(*) FILTER (WHERE status = ANY(%s)) AS active_orders,
                       COUNT(*) FILTER (WHERE status = 'completed') AS completed_orders,
                       COUNT(*) FILTER (WHERE status = 'lost') AS lost_orders,
                       COALESCE(SUM(total_amount), 0) AS total_value_supplier_currency,
                       COALESCE(SUM(refund_amount), 0) AS total_refunded
                FROM purchase_orders
                """,
                (list(ACTIVE_STATUSES),),
            )
            return {"stats": cur.fetchone()}


@router.get("/{order_id}", dependencies=[Depends(require_permission("purchases:read"))])
def get_purchase_order(order_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            order = store.get_order(cur, order_id)
            lines = store.load_lines(cur, order_id)
            return _order_payload(order, lines)


@router.get("/{order_id}/history", dependencies=[Depends(require_permission("purchases:read"))])
def get_purchase_order_history(order_id: str):
    # Reads the event log only; works even if the order row is gone.
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"history": list_status_events(cur, order_id)}


@router.post("/drafts", dependencies=[Depends(require_permission("purchases:write"))])
def create_purchase_order_draft(data: PurchaseOrderDraftIn, user=Depends(get_current_user)):
    if not (data.supplier_id or "").strip():
        raise HTTPException(status_code=400, detail="supplier_id is required")
    if not data.lines:
        raise HTTPException(status_code=400, detail="at least one line is required")
    if data.order_date and data.expected_delivery_date and data.expected_delivery_date <= data.order_date:
        raise HTTPException(status_code=400, detail="expected_delivery_date must be after order_date")
    currency = data.currency_code or settings.supplier_currency

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                rate = data.exchange_rate
                if rate is None:
                    rate = PgCurrencyRates(cur).get_rate(currency)
                if rate is None or dec(rate) <= 0:
                    raise HTTPException(status_code=400, detail="exchange_rate is required")
                normalized, total_amount = costed_draft_lines(data.lines, rate)

                cur.execute(
                    """
                    INSERT INTO purchase_orders
                      (id, supplier_id, currency_code, status, order_date, expected_delivery_date,
                       exchange_rate, total_amount, created_by_user_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, 'draft', %s, %s,
                       %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        data.supplier_id.strip(),
                        currency,
                        data.order_date or date.today(),
                        data.expected_delivery_date,
                        dec(rate),
                        total_amount,
                        user["user_id"],
                    ),
                )
                order_id = cur.fetchone()["id"]
                store.insert_lines(cur, order_id, normalized)
                store.audit(
                    cur,
                    user["user_id"],
                    "purchase_order_draft_created",
                    order_id,
                    {"supplier_id": data.supplier_id, "lines": len(normalized), "total_amount": total_amount},
                )
                return {"id": order_id, "total_amount": total_amount}


@router.patch("/{order_id}/draft", dependencies=[Depends(require_permission("purchases:write"))])
def update_purchase_order_draft(order_id: str, data: PurchaseOrderDraftUpdateIn, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                row = store.lock_order(cur, order_id)
                if row["status"] != "draft":
                    raise HTTPException(status_code=400, detail="only draft orders can be edited")

                rate = dec(patch.get("exchange_rate")) if data.exchange_rate is not None else dec(row["exchange_rate"])
                if rate <= 0:
                    raise HTTPException(status_code=400, detail="exchange_rate must be > 0")
                order_date = data.order_date or row.get("order_date")
                expected = data.expected_delivery_date or row.get("expected_delivery_date")
                if order_date and expected and expected <= order_date:
                    raise HTTPException(status_code=400, detail="expected_delivery_date must be after order_date")

                if data.lines is not None:
                    if not data.lines:
                        raise HTTPException(status_code=400, detail="at least one line is required")
                    # Drafts replace lines wholesale.
                    normalized, total_amount = costed_draft_lines(data.lines, rate)
                    store.delete_lines(cur, order_id)
                    store.insert_lines(cur, order_id, normalized)
                else:
                    existing = store.load_lines(cur, order_id)
                    revalued = revalue_lines(existing, rate)
                    store.save_lines(cur, existing, revalued)
                    total_amount = sum(
                        (dec(l["supplier_unit_price"]) * dec(l["ordered_qty"]) for l in existing),
                        Decimal("0"),
                    )

                cur.execute(
                    """
                    UPDATE purchase_orders
                    SET order_date = %s,
                        expected_delivery_date = %s,
                        exchange_rate = %s,
                        total_amount = %s,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (order_date, expected, rate, total_amount, order_id),
                )
                store.audit(cur, user["user_id"], "purchase_order_draft_updated", order_id, {"updated": sorted(patch.keys())})
                return {"ok": True, "total_amount": total_amount}


@router.patch("/{order_id}", dependencies=[Depends(require_permission("purchases:write"))])
def update_purchase_order(order_id: str, data: PurchaseOrderUpdateIn, user=Depends(get_current_user)):
    if not data.model_dump(exclude_none=True):
        return {"ok": True}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                out = edit_order(cur, order_id, data, user["user_id"])
                return {"ok": True, **_order_payload(out["order"], out["lines"]), "changes": out["summary"]}


def _rejected_transition(order_id: str, exc: HTTPException) -> HTTPException:
    # Runs after the transaction rolled back, so this is the order as it was before the call.
    reason = rejection_reason(exc.status_code, exc.detail)
    detail = {"reason": reason, "message": exc.detail}
    if reason != "order_not_found":
        with get_conn() as conn:
            with conn.cursor() as cur:
                order = store.get_order(cur, order_id)
                detail["order"] = _order_payload(order, store.load_lines(cur, order_id))
    return HTTPException(status_code=exc.status_code, detail=detail)


@router.post("/{order_id}/status", dependencies=[Depends(require_permission("purchases:write"))])
def update_purchase_order_status(order_id: str, data: TransitionIn, user=Depends(get_current_user)):
    try:
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    out = transition_order(cur, order_id, data, user["user_id"])
                    payload = _order_payload(out["order"], out["lines"])
                    payload["derived"] = out["summary"]
                    payload["history_entry"] = out["history"]
                    payload["message"] = out["message"]
                    return payload
    except HTTPException as exc:
        raise _rejected_transition(order_id, exc) from exc


@router.post("/{order_id}/approve-stock", dependencies=[Depends(require_permission("purchases:write"))])
def approve_and_stock(order_id: str, data: ApproveStockIn, user=Depends(get_current_user)):
    return update_purchase_order_status(order_id, TransitionIn(status="completed", comment=data.comment), user=user)


@router.delete("/{order_id}", dependencies=[Depends(require_permission("purchases:write"))])
def delete_purchase_order(order_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                row = store.lock_order(cur, order_id)
                if row["status"] != "draft":
                    raise HTTPException(status_code=409, detail="only draft orders can be deleted")
                store.delete_lines(cur, order_id)
                cur.execute("DELETE FROM purchase_orders WHERE id = %s AND status = 'draft'", (order_id,))
                store.audit(cur, user["user_id"], "purchase_order_deleted", order_id, {"supplier_id": str(row["supplier_id"])})
                return {"ok": True}
