from typing import Optional


def append_status_event(
    cur,
    order_id: str,
    previous_status: Optional[str],
    new_status: str,
    comment: Optional[str],
    actor_user_id: Optional[str],
) -> dict:
    # seq is per order; the order row is already locked FOR UPDATE by the caller.
    cur.execute(
        """
        INSERT INTO purchase_order_status_events
          (id, purchase_order_id, seq, previous_status, new_status, comment, actor_user_id)
        VALUES
          (gen_random_uuid(), %s,
           (SELECT COALESCE(MAX(seq), 0) + 1 FROM purchase_order_status_events WHERE purchase_order_id = %s),
           %s, %s, %s, %s)
        RETURNING id, purchase_order_id, seq, previous_status, new_status, comment, actor_user_id, created_at
        """,
        (order_id, order_id, previous_status, new_status, (comment or "").strip() or None, actor_user_id),
    )
    return cur.fetchone()


def list_status_events(cur, order_id: str) -> list:
    cur.execute(
        """
        SELECT e.id, e.seq, e.previous_status, e.new_status, e.comment,
               e.actor_user_id, u.email AS actor_email, e.created_at
        FROM purchase_order_status_events e
        LEFT JOIN users u ON u.id = e.actor_user_id
        WHERE e.purchase_order_id = %s
        ORDER BY e.seq ASC
        """,
        (order_id,),
    )
    return cur.fetchall() or []
