from __future__ import annotations

import json
from typing import Iterable, Optional

from fastapi import HTTPException

ORDER_SELECT = """
    SELECT id, order_no, supplier_id, currency_code, status, order_date, expected_delivery_date,
           exchange_rate, total_amount, total_weight, total_shipping_cost,
           payment_account_id, payment_amount, supplier_credit_used, funding_account_amount,
           refund_amount, refund_auto_credited, credit_note_no, refunded_at, receiving_notes,
           courier_name, tracking_number, lot_number, destination_tracking_no, shipping_method,
           created_by_user_id, created_at, updated_at
    FROM purchase_orders
"""

# Columns the engine may write after creation. Anything else is fixed.
ORDER_MUTABLE = (
    "status",
    "order_no",
    "exchange_rate",
    "expected_delivery_date",
    "total_weight",
    "total_shipping_cost",
    "payment_account_id",
    "payment_amount",
    "supplier_credit_used",
    "funding_account_amount",
    "refund_amount",
    "refund_auto_credited",
    "credit_note_no",
    "refunded_at",
    "receiving_notes",
    "courier_name",
    "tracking_number",
    "lot_number",
    "destination_tracking_no",
    "shipping_method",
)

LINE_SELECT = """
    SELECT id, purchase_order_id, line_no, item_id, supplier_unit_price, ordered_qty,
           home_unit_price, line_total, unit_weight, extra_weight,
           shipping_rate_per_kg, shipping_cost, loss_share, final_unit_cost,
           received_qty, lost_qty, lost_value, stocked_qty
    FROM purchase_order_lines
"""

LINE_MUTABLE = (
    "home_unit_price",
    "line_total",
    "unit_weight",
    "extra_weight",
    "shipping_rate_per_kg",
    "shipping_cost",
    "loss_share",
    "final_unit_cost",
    "received_qty",
    "lost_qty",
    "lost_value",
    "stocked_qty",
)

_JSON_COLUMNS = {"receiving_notes"}


def next_doc_no(cur, doc_type: str) -> str:
    cur.execute("SELECT next_document_no(%s) AS doc_no", (doc_type,))
    return cur.fetchone()["doc_no"]


def get_order(cur, order_id: str, *, for_update: bool = False) -> dict:
    sql = ORDER_SELECT + " WHERE id = %s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (order_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="order not found")
    return row


def lock_order(cur, order_id: str) -> dict:
    # Serializes transitions on one order; other orders are unaffected.
    return get_order(cur, order_id, for_update=True)


def load_lines(cur, order_id: str) -> list[dict]:
    cur.execute(LINE_SELECT + " WHERE purchase_order_id = %s ORDER BY line_no ASC, id ASC", (order_id,))
    return cur.fetchall() or []


def changed_columns(before: dict, after: dict, columns: Iterable[str]) -> list[str]:
    return [c for c in columns if c in after and after.get(c) != before.get(c)]


def _set_clause(cols: list[str]) -> str:
    parts = []
    for c in cols:
        parts.append(f"{c} = %s::jsonb" if c in _JSON_COLUMNS else f"{c} = %s")
    return ", ".join(parts)


def _value(col: str, v):
    if col in _JSON_COLUMNS and v is not None and not isinstance(v, str):
        return json.dumps(v, default=str)
    return v


def save_order(cur, before: dict, after: dict) -> list[str]:
    cols = changed_columns(before, after, ORDER_MUTABLE)
    if not cols:
        return []
    cur.execute(
        f"UPDATE purchase_orders SET {_set_clause(cols)}, updated_at = now() WHERE id = %s",
        tuple(_value(c, after.get(c)) for c in cols) + (before["id"],),
    )
    return cols


def save_lines(cur, before: list[dict], after: list[dict]) -> int:
    old_by_id = {str(l["id"]): l for l in before}
    touched = 0
    for ln in after:
        old = old_by_id.get(str(ln["id"])) or {}
        cols = changed_columns(old, ln, LINE_MUTABLE)
        if not cols:
            continue
        cur.execute(
            f"UPDATE purchase_order_lines SET {_set_clause(cols)} WHERE id = %s",
            tuple(ln.get(c) for c in cols) + (ln["id"],),
        )
        touched += 1
    return touched


def insert_lines(cur, order_id: str, lines: list[dict]):
    for idx, ln in enumerate(lines, start=1):
        cur.execute(
            """
            INSERT INTO purchase_order_lines
              (id, purchase_order_id, line_no, item_id, supplier_unit_price, ordered_qty,
               home_unit_price, line_total, unit_weight, extra_weight,
               shipping_rate_per_kg, shipping_cost, loss_share, final_unit_cost)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s,
               %s, %s, %s, %s,
               %s, %s, %s, %s)
            """,
            (
                order_id,
                idx,
                ln["item_id"],
                ln["supplier_unit_price"],
                ln["ordered_qty"],
                ln["home_unit_price"],
                ln["line_total"],
                ln["unit_weight"],
                ln["extra_weight"],
                ln["shipping_rate_per_kg"],
                ln["shipping_cost"],
                ln["loss_share"],
                ln["final_unit_cost"],
            ),
        )


def delete_lines(cur, order_id: str):
    cur.execute("DELETE FROM purchase_order_lines WHERE purchase_order_id = %s", (order_id,))


def emit_event(cur, event_type: str, order_id: str, payload: dict):
    # Outbox row; the inventory and journal services consume these.
    cur.execute(
        """
        INSERT INTO events (id, event_type, source_type, source_id, payload_json)
        VALUES (gen_random_uuid(), %s, 'purchase_order', %s, %s::jsonb)
        """,
        (event_type, order_id, json.dumps(payload, default=str)),
    )


def audit(cur, user_id: Optional[str], action: str, order_id: str, details: dict):
    cur.execute(
        """
        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, 'purchase_order', %s, %s::jsonb)
        """,
        (user_id, action, order_id, json.dumps(details, default=str)),
    )
